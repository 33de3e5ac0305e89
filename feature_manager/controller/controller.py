"""
ClusterSummary reconciler.

A ClusterSummary asks for a set of features (role policies, the kyverno
policy engine, the prometheus monitoring stack) to be deployed to one target
cluster. Each reconciliation pass decides per feature whether what was
deployed is still current and deploys or removes it otherwise.

Key Concepts:
    - Feature hash: the hash of the configuration a feature was last deployed
      with is kept in the ClusterSummary status. A feature already
      provisioned with the current hash is not deployed again.
    - Partial failure: every feature is attempted on each pass. A failing
      feature is recorded as Failed in status and the pass is retried later,
      without affecting the status of the other features.
    - Finalizer: added before anything is deployed and only removed once all
      features have been removed from the target cluster.

Dependencies:
    - feature_manager.store.Store: For reading resources and persisting status.
    - feature_manager.deployer.Deployer: For applying content to target clusters.
    - feature_manager.controller.reference_index.ReferenceIndex: Updated with
      the objects each ClusterSummary references.
"""

from collections.abc import Sequence
from dataclasses import dataclass
import logging
import random
import string

from feature_manager.config import ReconcilerConfig
from feature_manager.deployer import Deployer
from feature_manager.exceptions import DeployError, InputException
from feature_manager.manifest import (
    ClusterFeature,
    ClusterSummary,
    Cluster,
    FeatureStatus,
    NamedResource,
    CLUSTER_FEATURE_KIND,
    CLUSTER_SUMMARY_KIND,
)
from feature_manager.scope import ClusterSummaryScope
from feature_manager.store import Store

from .features import FEATURES, Feature, FeatureContext
from .reference_index import ReferenceIndex

_LOGGER = logging.getLogger(__name__)

POLICY_PREFIX = "cs"
POLICY_PREFIX_LENGTH = 10


@dataclass
class ReconcileResult:
    """Outcome of a reconciliation pass.

    Attributes:
        requeue_after: Seconds after which the ClusterSummary should be
            reconciled again, or None when nothing is left to do.
    """

    requeue_after: float | None = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


def get_cluster_feature_owner(
    store: Store, cluster_summary: ClusterSummary
) -> ClusterFeature | None:
    """Return the ClusterFeature owning the ClusterSummary, if it still exists.

    Raises:
        InputException: If the ClusterSummary has no ClusterFeature owner.
    """
    for owner in cluster_summary.owner_references:
        if owner.kind == CLUSTER_FEATURE_KIND:
            return store.get_object(
                NamedResource(CLUSTER_FEATURE_KIND, None, owner.name), ClusterFeature
            )
    raise InputException(
        f"ClusterSummary {cluster_summary.name} has no {CLUSTER_FEATURE_KIND} owner"
    )


def _failure_reason(err: Exception) -> str:
    return getattr(err, "reason", None) or type(err).__name__


class ClusterSummaryReconciler:
    """Reconciles ClusterSummary resources.

    Two reconciliations of the same ClusterSummary must not run concurrently;
    different ClusterSummaries may be reconciled in parallel since the
    reference index is the only state they share.
    """

    def __init__(
        self,
        store: Store,
        deployer: Deployer,
        reference_index: ReferenceIndex | None = None,
        config: ReconcilerConfig | None = None,
        features: Sequence[Feature] = FEATURES,
    ) -> None:
        """Initialize the reconciler.

        Args:
            store: Store holding ClusterSummaries and the objects they reference
            deployer: Applies feature content to target clusters
            reference_index: Index of the objects each ClusterSummary references
            config: The configuration for the reconciler
            features: The features to reconcile, in order
        """
        self._store = store
        self._deployer = deployer
        self.reference_index = reference_index or ReferenceIndex()
        self._config = config or ReconcilerConfig()
        self._features = tuple(features)

    async def reconcile(self, name: str) -> ReconcileResult:
        """Reconcile the ClusterSummary with the given name.

        Feature failures are recorded in status and reported through the
        returned requeue delay. Store failures are raised to the caller.
        """
        _LOGGER.info("Reconciling ClusterSummary %s", name)
        resource_id = NamedResource(CLUSTER_SUMMARY_KIND, None, name)
        cluster_summary = self._store.get_object(resource_id, ClusterSummary)
        if cluster_summary is None:
            _LOGGER.debug("ClusterSummary %s not found, nothing to do", name)
            return ReconcileResult()

        cluster_feature = get_cluster_feature_owner(self._store, cluster_summary)
        if cluster_feature is None and not cluster_summary.is_deleting:
            _LOGGER.info("Owner of ClusterSummary %s not found, nothing to do", name)
            return ReconcileResult()

        with ClusterSummaryScope(
            self._store, cluster_summary, cluster_feature, self._config
        ) as scope:
            if cluster_summary.is_deleting:
                return await self._reconcile_delete(scope)
            return await self._reconcile_normal(scope)

    async def _reconcile_delete(self, scope: ClusterSummaryScope) -> ReconcileResult:
        _LOGGER.info("Reconciling ClusterSummary %s delete", scope.name)
        if not await self._undeploy(scope):
            return ReconcileResult(requeue_after=self._config.delete_requeue_after)

        _LOGGER.info("Removing finalizer from ClusterSummary %s", scope.name)
        scope.remove_finalizer()
        self.reference_index.remove_consumer(scope.name)
        _LOGGER.info("Reconcile delete of ClusterSummary %s succeeded", scope.name)
        return ReconcileResult()

    async def _reconcile_normal(self, scope: ClusterSummaryScope) -> ReconcileResult:
        if not scope.has_finalizer():
            # Registered immediately so nothing deployed below can be orphaned
            scope.add_finalizer()
            scope.patch_object()

        self._generate_policy_prefix(scope)
        self._update_references(scope)

        if not await self._deploy(scope):
            return ReconcileResult(requeue_after=self._config.normal_requeue_after)

        _LOGGER.info("Reconciling ClusterSummary %s succeeded", scope.name)
        return ReconcileResult()

    def _generate_policy_prefix(self, scope: ClusterSummaryScope) -> None:
        status = scope.cluster_summary.status
        if not status.policy_prefix:
            suffix = "".join(
                random.choices(
                    string.ascii_lowercase + string.digits, k=POLICY_PREFIX_LENGTH
                )
            )
            status.policy_prefix = POLICY_PREFIX + suffix

    def _update_references(self, scope: ClusterSummaryScope) -> None:
        spec = scope.cluster_summary.spec.cluster_feature_spec
        entries: set[NamedResource] = set()
        for feature in self._features:
            entries.update(feature.get_refs(spec))
        self.reference_index.update_references(scope.name, entries)

    def _context(self, scope: ClusterSummaryScope) -> FeatureContext:
        return FeatureContext(
            store=self._store,
            deployer=self._deployer,
            cluster_summary=scope.cluster_summary,
        )

    async def _deploy(self, scope: ClusterSummaryScope) -> bool:
        """Deploy every feature, returning False if any of them failed."""
        results = [
            await self._deploy_feature(scope, feature) for feature in self._features
        ]
        return all(results)

    async def _deploy_feature(
        self, scope: ClusterSummaryScope, feature: Feature
    ) -> bool:
        spec = scope.cluster_summary.spec.cluster_feature_spec
        feature_summary = scope.get_feature_summary(feature.id)

        if not feature.configured(spec):
            if feature_summary is None:
                _LOGGER.debug("%s: no %s configuration", scope.name, feature.id)
                return True
            _LOGGER.info("%s: %s no longer configured, removing", scope.name, feature.id)
            return await self._undeploy_feature(scope, feature)

        current_hash = feature.current_hash(self._store, scope.cluster_summary)
        if (
            feature_summary is not None
            and feature_summary.status == FeatureStatus.PROVISIONED
            and feature_summary.hash == current_hash
        ):
            _LOGGER.debug("%s: %s is up to date", scope.name, feature.id)
            return True

        previous_hash = feature_summary.hash if feature_summary is not None else None
        _LOGGER.info("%s: deploying %s", scope.name, feature.id)
        scope.set_feature_status(feature.id, FeatureStatus.PROVISIONING, previous_hash)
        try:
            kinds = await feature.deploy(self._context(scope))
        except (DeployError, InputException) as err:
            _LOGGER.error("%s: failed to deploy %s: %s", scope.name, feature.id, err)
            # Keep the previous hash so the next pass still sees a change
            scope.set_feature_status(feature.id, FeatureStatus.FAILED, previous_hash)
            scope.set_failure_message(feature.id, str(err))
            scope.set_failure_reason(feature.id, _failure_reason(err))
            return False

        scope.set_feature_status(feature.id, FeatureStatus.PROVISIONED, current_hash)
        scope.set_failure_message(feature.id, None)
        scope.set_failure_reason(feature.id, None)
        scope.set_deployed_group_version_kind(feature.id, kinds)
        _LOGGER.info("%s: %s provisioned", scope.name, feature.id)
        return True

    def _cluster_exists(self, scope: ClusterSummaryScope) -> bool:
        cluster = scope.cluster_summary.spec.cluster
        if self._store.get_object(cluster, Cluster) is None:
            _LOGGER.info(
                "Cluster %s not found, nothing to clean up", cluster.namespaced_name
            )
            return False
        return True

    async def _undeploy(self, scope: ClusterSummaryScope) -> bool:
        """Remove every feature, returning False if any of them failed."""
        spec = scope.cluster_summary.spec.cluster_feature_spec
        results = []
        for feature in self._features:
            if scope.get_feature_summary(feature.id) is None and not feature.configured(
                spec
            ):
                continue
            results.append(await self._undeploy_feature(scope, feature))
        return all(results)

    async def _undeploy_feature(
        self, scope: ClusterSummaryScope, feature: Feature
    ) -> bool:
        if not self._cluster_exists(scope):
            scope.remove_feature_summary(feature.id)
            return True
        _LOGGER.info("%s: removing %s", scope.name, feature.id)
        try:
            await feature.undeploy(self._context(scope))
        except (DeployError, InputException) as err:
            _LOGGER.error("%s: failed to remove %s: %s", scope.name, feature.id, err)
            scope.set_failure_message(feature.id, str(err))
            scope.set_failure_reason(feature.id, _failure_reason(err))
            return False
        scope.remove_feature_summary(feature.id)
        return True
