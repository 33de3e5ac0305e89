"""Tests for the ClusterSummary reconciler."""

import asyncio
from collections.abc import Callable
import dataclasses
from typing import Any
from unittest.mock import AsyncMock

import pytest

from feature_manager.controller import (
    FEATURES,
    Feature,
    ClusterSummaryReconciler,
    ReconcileResult,
    watch_references,
)
from feature_manager.deployer import DeployRequest, InMemoryDeployer
from feature_manager.exceptions import DeployError, InputException
from feature_manager.manifest import (
    ClusterFeatureSpec,
    ClusterSummary,
    ConfigMap,
    FeatureID,
    FeatureStatus,
    FeatureSummary,
    KyvernoConfiguration,
    NamedResource,
    ObjectReference,
    PolicyRule,
    WorkloadRole,
    CLUSTER_FEATURE_KIND,
    CLUSTER_KIND,
    CLUSTER_SUMMARY_FINALIZER,
    CONFIG_MAP_KIND,
    WORKLOAD_ROLE_KIND,
)
from feature_manager.store import InMemoryStore

CLUSTER_FEATURE_NAME = "feature"
CLUSTER_NAMESPACE = "clusters"
CLUSTER_NAME = "workload"

NewSummary = Callable[..., ClusterSummary]

ROLE, KYVERNO, PROMETHEUS = FEATURES
CLUSTER = NamedResource(CLUSTER_KIND, CLUSTER_NAMESPACE, CLUSTER_NAME)
SUMMARY = NamedResource("ClusterSummary", None, "summary")

POLICY = """\
apiVersion: kyverno.io/v1
kind: ClusterPolicy
metadata:
  name: disallow-latest-tag
"""

SPEC = ClusterFeatureSpec(
    workload_role_refs=[ObjectReference(name="viewer")],
    kyverno_configuration=KyvernoConfiguration(
        policy_refs=[ObjectReference(name="policies", namespace="kyverno")]
    ),
)


@pytest.fixture(name="deployer")
def deployer_fixture() -> InMemoryDeployer:
    return InMemoryDeployer()


@pytest.fixture(name="reconciler")
def reconciler_fixture(
    store: InMemoryStore, deployer: InMemoryDeployer
) -> ClusterSummaryReconciler:
    return ClusterSummaryReconciler(store, deployer)


@pytest.fixture(name="cluster_summary")
def cluster_summary_fixture(
    store: InMemoryStore, new_cluster_summary: NewSummary
) -> ClusterSummary:
    """Add a ClusterSummary requesting role policies and the policy engine."""
    store.add_object(
        WorkloadRole(
            name="viewer", rules=[PolicyRule(verbs=["get"], resources=["pods"])]
        )
    )
    store.add_object(
        ConfigMap(name="policies", namespace="kyverno", data={"policy.yaml": POLICY})
    )
    summary = new_cluster_summary(spec=SPEC)
    store.add_object(summary)
    return summary


def _read(store: InMemoryStore) -> ClusterSummary:
    result = store.get_object(SUMMARY, ClusterSummary)
    assert result
    return result


def _feature_summary(
    store: InMemoryStore, feature_id: FeatureID
) -> FeatureSummary | None:
    for feature_summary in _read(store).status.feature_summaries:
        if feature_summary.feature_id == feature_id:
            return feature_summary
    return None


def _spy(feature: Feature, **kwargs: Any) -> Feature:
    """Return a copy of a feature with its deploy replaced by a mock."""
    kwargs.setdefault("return_value", [])
    return dataclasses.replace(feature, deploy=AsyncMock(**kwargs))


async def test_reconcile(
    store: InMemoryStore,
    deployer: InMemoryDeployer,
    reconciler: ClusterSummaryReconciler,
    cluster_summary: ClusterSummary,
) -> None:
    """Test the configured features are deployed and recorded in status."""
    result = await reconciler.reconcile("summary")
    assert result == ReconcileResult()
    assert not result.requeue

    stored = _read(store)
    assert stored.finalizers == [CLUSTER_SUMMARY_FINALIZER]
    assert stored.status.policy_prefix
    assert stored.status.policy_prefix.startswith("cs")
    assert len(stored.status.policy_prefix) == 12

    role = _feature_summary(store, FeatureID.ROLE)
    assert role.status == FeatureStatus.PROVISIONED
    assert role.hash == ROLE.current_hash(store, stored)
    assert role.deployed_group_version_kind == [
        "ClusterRole.v1.rbac.authorization.k8s.io"
    ]
    kyverno = _feature_summary(store, FeatureID.KYVERNO)
    assert kyverno.status == FeatureStatus.PROVISIONED
    assert kyverno.deployed_group_version_kind == ["ClusterPolicy.v1.kyverno.io"]
    assert _feature_summary(store, FeatureID.PROMETHEUS) is None

    applied = deployer.applied(CLUSTER)
    assert set(applied) == {("summary", FeatureID.ROLE), ("summary", FeatureID.KYVERNO)}
    role_payload = applied[("summary", FeatureID.ROLE)]
    assert role_payload.policy_prefix == stored.status.policy_prefix
    assert [obj["kind"] for obj in role_payload.objects] == ["ClusterRole"]
    assert applied[("summary", FeatureID.KYVERNO)].configuration == {"replicas": 1}

    assert reconciler.reference_index.references_of("summary") == {
        NamedResource(WORKLOAD_ROLE_KIND, None, "viewer"),
        NamedResource(CONFIG_MAP_KIND, "kyverno", "policies"),
    }


async def test_policy_prefix_stable(
    store: InMemoryStore,
    reconciler: ClusterSummaryReconciler,
    cluster_summary: ClusterSummary,
) -> None:
    await reconciler.reconcile("summary")
    prefix = _read(store).status.policy_prefix
    await reconciler.reconcile("summary")
    assert _read(store).status.policy_prefix == prefix


async def test_unchanged_configuration_not_redeployed(
    store: InMemoryStore,
    deployer: InMemoryDeployer,
    cluster_summary: ClusterSummary,
) -> None:
    """Test a provisioned feature is only deployed again once its content changes."""
    kyverno = _spy(KYVERNO)
    reconciler = ClusterSummaryReconciler(store, deployer, features=[kyverno])

    await reconciler.reconcile("summary")
    await reconciler.reconcile("summary")
    assert kyverno.deploy.await_count == 1

    store.add_object(
        ConfigMap(
            name="policies",
            namespace="kyverno",
            data={"policy.yaml": POLICY.replace("latest", "any")},
        )
    )
    await reconciler.reconcile("summary")
    assert kyverno.deploy.await_count == 2


async def test_partial_failure(
    store: InMemoryStore,
    deployer: InMemoryDeployer,
    cluster_summary: ClusterSummary,
) -> None:
    """Test a failing feature does not affect the status of the others."""
    role = _spy(ROLE, side_effect=DeployError("Cluster clusters/workload is not reachable"))
    kyverno = _spy(KYVERNO)
    reconciler = ClusterSummaryReconciler(store, deployer, features=[role, kyverno])

    result = await reconciler.reconcile("summary")
    assert result.requeue
    assert result.requeue_after == 20.0

    failed = _feature_summary(store, FeatureID.ROLE)
    assert failed.status == FeatureStatus.FAILED
    assert failed.hash is None
    assert failed.failure_message == "Cluster clusters/workload is not reachable"
    assert failed.failure_reason == "DeployFailed"
    provisioned = _feature_summary(store, FeatureID.KYVERNO)
    assert provisioned.status == FeatureStatus.PROVISIONED
    assert provisioned.failure_message is None

    # Only the failed feature is attempted again
    role.deploy.side_effect = None
    result = await reconciler.reconcile("summary")
    assert not result.requeue
    assert role.deploy.await_count == 2
    assert kyverno.deploy.await_count == 1

    recovered = _feature_summary(store, FeatureID.ROLE)
    assert recovered.status == FeatureStatus.PROVISIONED
    assert recovered.failure_message is None
    assert recovered.failure_reason is None


async def test_invalid_configuration(
    store: InMemoryStore,
    reconciler: ClusterSummaryReconciler,
    cluster_summary: ClusterSummary,
) -> None:
    """Test a ConfigMap with invalid content fails only its feature."""
    store.add_object(
        ConfigMap(name="policies", namespace="kyverno", data={"policy.yaml": "a: [b"})
    )
    result = await reconciler.reconcile("summary")
    assert result.requeue

    kyverno = _feature_summary(store, FeatureID.KYVERNO)
    assert kyverno.status == FeatureStatus.FAILED
    assert kyverno.failure_reason == "InvalidConfiguration"
    assert _feature_summary(store, FeatureID.ROLE).status == FeatureStatus.PROVISIONED


async def test_cancelled_reconcile_persists_status(
    store: InMemoryStore,
    deployer: InMemoryDeployer,
    cluster_summary: ClusterSummary,
) -> None:
    """Test status staged before a cancellation is still written back."""
    kyverno = _spy(KYVERNO)
    role = _spy(ROLE, side_effect=asyncio.CancelledError())
    reconciler = ClusterSummaryReconciler(store, deployer, features=[kyverno, role])

    with pytest.raises(asyncio.CancelledError):
        await reconciler.reconcile("summary")

    stored = _read(store)
    assert stored.finalizers == [CLUSTER_SUMMARY_FINALIZER]
    assert _feature_summary(store, FeatureID.KYVERNO).status == FeatureStatus.PROVISIONED
    assert _feature_summary(store, FeatureID.ROLE).status == FeatureStatus.PROVISIONING


async def test_feature_no_longer_configured(
    store: InMemoryStore,
    deployer: InMemoryDeployer,
    reconciler: ClusterSummaryReconciler,
    cluster_summary: ClusterSummary,
) -> None:
    """Test a feature removed from the configuration is removed from the cluster."""
    await reconciler.reconcile("summary")

    updated = _read(store)
    updated.spec.cluster_feature_spec = ClusterFeatureSpec(
        workload_role_refs=SPEC.workload_role_refs
    )
    store.add_object(updated)
    result = await reconciler.reconcile("summary")
    assert not result.requeue

    assert _feature_summary(store, FeatureID.KYVERNO) is None
    assert set(deployer.applied(CLUSTER)) == {("summary", FeatureID.ROLE)}
    assert reconciler.reference_index.consumers_of(
        NamedResource(CONFIG_MAP_KIND, "kyverno", "policies")
    ) == set()


async def test_delete(
    store: InMemoryStore,
    deployer: InMemoryDeployer,
    reconciler: ClusterSummaryReconciler,
    cluster_summary: ClusterSummary,
) -> None:
    """Test deleting removes all features before the finalizer is released."""
    await reconciler.reconcile("summary")
    store.delete_object(SUMMARY)
    assert _read(store).is_deleting

    result = await reconciler.reconcile("summary")
    assert not result.requeue
    assert store.get_object(SUMMARY, ClusterSummary) is None
    assert deployer.applied(CLUSTER) == {}
    assert reconciler.reference_index.references_of("summary") == set()


async def test_delete_failure(
    store: InMemoryStore,
    deployer: InMemoryDeployer,
    reconciler: ClusterSummaryReconciler,
    cluster_summary: ClusterSummary,
) -> None:
    """Test the finalizer is kept while a feature cannot be removed."""
    await reconciler.reconcile("summary")
    deployer.set_reachable(CLUSTER, False)
    store.delete_object(SUMMARY)

    result = await reconciler.reconcile("summary")
    assert result.requeue_after == 20.0
    stored = _read(store)
    assert stored.finalizers == [CLUSTER_SUMMARY_FINALIZER]
    role = _feature_summary(store, FeatureID.ROLE)
    assert role.failure_message == "Cluster Cluster/clusters/workload is not reachable"
    assert role.failure_reason == "DeployFailed"

    deployer.set_reachable(CLUSTER, True)
    result = await reconciler.reconcile("summary")
    assert not result.requeue
    assert store.get_object(SUMMARY, ClusterSummary) is None


async def test_delete_undeploys_once(
    store: InMemoryStore,
    deployer: InMemoryDeployer,
    cluster_summary: ClusterSummary,
) -> None:
    """Test a provisioned feature is removed exactly once on deletion."""
    kyverno = dataclasses.replace(KYVERNO, undeploy=AsyncMock())
    reconciler = ClusterSummaryReconciler(store, deployer, features=[kyverno])
    await reconciler.reconcile("summary")
    assert _feature_summary(store, FeatureID.KYVERNO).status == FeatureStatus.PROVISIONED
    store.delete_object(SUMMARY)

    result = await reconciler.reconcile("summary")
    assert not result.requeue
    assert kyverno.undeploy.await_count == 1
    assert store.get_object(SUMMARY, ClusterSummary) is None


async def test_delete_undeploy_failure_keeps_finalizer(
    store: InMemoryStore,
    deployer: InMemoryDeployer,
    cluster_summary: ClusterSummary,
) -> None:
    kyverno = dataclasses.replace(
        KYVERNO, undeploy=AsyncMock(side_effect=DeployError("connection refused"))
    )
    reconciler = ClusterSummaryReconciler(store, deployer, features=[kyverno])
    await reconciler.reconcile("summary")
    store.delete_object(SUMMARY)

    result = await reconciler.reconcile("summary")
    assert result.requeue_after == 20.0
    assert kyverno.undeploy.await_count == 1
    stored = _read(store)
    assert stored.is_deleting
    assert stored.finalizers == [CLUSTER_SUMMARY_FINALIZER]
    assert _feature_summary(store, FeatureID.KYVERNO).failure_message == (
        "connection refused"
    )


async def test_feature_removed_after_cluster_gone(
    store: InMemoryStore,
    deployer: InMemoryDeployer,
    reconciler: ClusterSummaryReconciler,
    cluster_summary: ClusterSummary,
) -> None:
    """Test removing a feature from a cluster that no longer exists succeeds."""
    await reconciler.reconcile("summary")
    deployer.set_reachable(CLUSTER, False)
    store.delete_object(CLUSTER)

    updated = _read(store)
    updated.spec.cluster_feature_spec = ClusterFeatureSpec()
    store.add_object(updated)

    result = await reconciler.reconcile("summary")
    assert not result.requeue
    assert _read(store).status.feature_summaries == []


class BrokenDeployer(InMemoryDeployer):
    """Deployer failing with an unexpected error for role policies."""

    async def deploy(self, request: DeployRequest) -> None:
        if request.feature_id == FeatureID.ROLE:
            raise RuntimeError("connection reset")
        await super().deploy(request)


async def test_unexpected_deployer_error(
    store: InMemoryStore, cluster_summary: ClusterSummary
) -> None:
    """Test an unexpected deployer error fails only its own feature."""
    deployer = BrokenDeployer()
    reconciler = ClusterSummaryReconciler(store, deployer)

    result = await reconciler.reconcile("summary")
    assert result.requeue_after == 20.0

    role = _feature_summary(store, FeatureID.ROLE)
    assert role.status == FeatureStatus.FAILED
    assert role.failure_reason == "DeployFailed"
    assert "connection reset" in role.failure_message
    assert _feature_summary(store, FeatureID.KYVERNO).status == FeatureStatus.PROVISIONED
    assert set(deployer.applied(CLUSTER)) == {("summary", FeatureID.KYVERNO)}


async def test_delete_cluster_gone(
    store: InMemoryStore,
    deployer: InMemoryDeployer,
    reconciler: ClusterSummaryReconciler,
    cluster_summary: ClusterSummary,
) -> None:
    """Test nothing is left to remove once the target cluster is gone."""
    await reconciler.reconcile("summary")
    deployer.set_reachable(CLUSTER, False)
    store.delete_object(CLUSTER)
    store.delete_object(SUMMARY)

    result = await reconciler.reconcile("summary")
    assert not result.requeue
    assert store.get_object(SUMMARY, ClusterSummary) is None


async def test_delete_without_owner(
    store: InMemoryStore,
    reconciler: ClusterSummaryReconciler,
    cluster_summary: ClusterSummary,
) -> None:
    """Test a deleting ClusterSummary is cleaned up after its owner is gone."""
    await reconciler.reconcile("summary")
    store.delete_object(NamedResource(CLUSTER_FEATURE_KIND, None, CLUSTER_FEATURE_NAME))
    store.delete_object(SUMMARY)

    await reconciler.reconcile("summary")
    assert store.get_object(SUMMARY, ClusterSummary) is None


async def test_summary_not_found(reconciler: ClusterSummaryReconciler) -> None:
    assert await reconciler.reconcile("missing") == ReconcileResult()


async def test_owner_not_found(
    store: InMemoryStore,
    deployer: InMemoryDeployer,
    reconciler: ClusterSummaryReconciler,
    cluster_summary: ClusterSummary,
) -> None:
    """Test nothing is deployed for a ClusterSummary whose owner is gone."""
    store.delete_object(NamedResource(CLUSTER_FEATURE_KIND, None, CLUSTER_FEATURE_NAME))
    result = await reconciler.reconcile("summary")
    assert not result.requeue
    assert _read(store).finalizers == []
    assert deployer.applied(CLUSTER) == {}


async def test_no_owner_reference(
    store: InMemoryStore,
    reconciler: ClusterSummaryReconciler,
    new_cluster_summary: NewSummary,
) -> None:
    summary = new_cluster_summary()
    summary.owner_references = []
    store.add_object(summary)
    with pytest.raises(InputException, match="no ClusterFeature owner"):
        await reconciler.reconcile("summary")


async def test_reference_change_requeues(
    store: InMemoryStore,
    deployer: InMemoryDeployer,
    reconciler: ClusterSummaryReconciler,
    cluster_summary: ClusterSummary,
) -> None:
    """Test a change to a referenced WorkloadRole triggers a redeploy."""
    await reconciler.reconcile("summary")
    queued: list[str] = []
    watch_references(store, reconciler.reference_index, queued.append)

    store.add_object(
        WorkloadRole(
            name="viewer",
            rules=[PolicyRule(verbs=["get", "list"], resources=["pods"])],
        )
    )
    assert queued == ["summary"]

    await reconciler.reconcile(queued.pop())
    role_payload = deployer.applied(CLUSTER)[("summary", FeatureID.ROLE)]
    assert role_payload.objects[0]["rules"][0]["verbs"] == ["get", "list"]
