"""Scope staging changes to a ClusterSummary during one reconciliation.

All status mutations made while reconciling are applied to an in-memory copy
of the ClusterSummary and written back once, when the scope is closed. Use the
scope as a context manager so the write back happens on every exit path,
including errors and cancellation:

    with ClusterSummaryScope(store, cluster_summary, cluster_feature) as scope:
        scope.set_feature_status(FeatureID.ROLE, FeatureStatus.PROVISIONED, digest)
"""

import logging
from types import TracebackType

from .config import ReconcilerConfig
from .exceptions import ObjectNotFoundError, StatusWriteConflict
from .manifest import (
    ClusterFeature,
    ClusterSummary,
    FeatureID,
    FeatureStatus,
    FeatureSummary,
    CLUSTER_SUMMARY_FINALIZER,
)
from .store import Store

_LOGGER = logging.getLogger(__name__)

__all__ = ["ClusterSummaryScope"]


class ClusterSummaryScope:
    """Wraps a ClusterSummary for the duration of one reconciliation."""

    def __init__(
        self,
        store: Store,
        cluster_summary: ClusterSummary,
        cluster_feature: ClusterFeature | None = None,
        config: ReconcilerConfig | None = None,
    ) -> None:
        """Initialize the scope.

        Args:
            store: Store the ClusterSummary is persisted to on close
            cluster_summary: The ClusterSummary being reconciled, as read from the store
            cluster_feature: The owning ClusterFeature, if it still exists
            config: Reconciler configuration
        """
        self._store = store
        self.cluster_summary = cluster_summary
        self.cluster_feature = cluster_feature
        self._config = config or ReconcilerConfig()
        self._persisted_finalizers = list(cluster_summary.finalizers)
        self._closed = False

    @property
    def name(self) -> str:
        """Name of the ClusterSummary."""
        return self.cluster_summary.name

    def __enter__(self) -> "ClusterSummaryScope":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc is None:
            self.close()
            return
        # Persist what was staged, but never mask the original error
        try:
            self.close()
        except Exception as err:
            _LOGGER.error(
                "Failed to persist status of ClusterSummary %s: %s", self.name, err
            )

    def get_feature_summary(self, feature_id: FeatureID) -> FeatureSummary | None:
        """Return the summary for a feature, if one exists."""
        for feature_summary in self.cluster_summary.status.feature_summaries:
            if feature_summary.feature_id == feature_id:
                return feature_summary
        return None

    def _feature_summary(self, feature_id: FeatureID) -> FeatureSummary:
        if (feature_summary := self.get_feature_summary(feature_id)) is not None:
            return feature_summary
        feature_summary = FeatureSummary(feature_id=feature_id)
        self.cluster_summary.status.feature_summaries.append(feature_summary)
        return feature_summary

    def set_feature_status(
        self, feature_id: FeatureID, status: FeatureStatus, hash: bytes | None
    ) -> None:
        """Set the status and configuration hash of a feature."""
        feature_summary = self._feature_summary(feature_id)
        feature_summary.status = status
        feature_summary.hash = hash

    def set_failure_message(self, feature_id: FeatureID, message: str | None) -> None:
        """Set (or clear with None) the failure message of a feature."""
        self._feature_summary(feature_id).failure_message = message

    def set_failure_reason(self, feature_id: FeatureID, reason: str | None) -> None:
        """Set (or clear with None) the failure reason of a feature."""
        self._feature_summary(feature_id).failure_reason = reason

    def set_deployed_group_version_kind(
        self, feature_id: FeatureID, kinds: list[str]
    ) -> None:
        """Record the kinds of the resources deployed for a feature."""
        self._feature_summary(feature_id).deployed_group_version_kind = list(kinds)

    def remove_feature_summary(self, feature_id: FeatureID) -> None:
        """Drop every summary entry of a feature."""
        self.cluster_summary.status.feature_summaries = [
            feature_summary
            for feature_summary in self.cluster_summary.status.feature_summaries
            if feature_summary.feature_id != feature_id
        ]

    def is_feature_deployed(self, feature_id: FeatureID) -> bool:
        """Whether the feature is currently provisioned."""
        feature_summary = self.get_feature_summary(feature_id)
        return (
            feature_summary is not None
            and feature_summary.status == FeatureStatus.PROVISIONED
        )

    def has_finalizer(self) -> bool:
        return CLUSTER_SUMMARY_FINALIZER in self.cluster_summary.finalizers

    def add_finalizer(self) -> None:
        if not self.has_finalizer():
            self.cluster_summary.finalizers.append(CLUSTER_SUMMARY_FINALIZER)

    def remove_finalizer(self) -> None:
        self.cluster_summary.finalizers = [
            finalizer
            for finalizer in self.cluster_summary.finalizers
            if finalizer != CLUSTER_SUMMARY_FINALIZER
        ]

    def patch_object(self) -> None:
        """Persist the finalizers immediately, without waiting for close."""
        version = self._store.patch_finalizers(
            self.cluster_summary.resource_id, self.cluster_summary.finalizers
        )
        if version is not None:
            self.cluster_summary.resource_version = version
        self._persisted_finalizers = list(self.cluster_summary.finalizers)

    def close(self) -> None:
        """Write back the staged status, then any finalizer change.

        Must be called exactly once. A concurrent modification of the
        ClusterSummary is retried against its latest resource version since
        the status is owned by this reconciliation.
        """
        if self._closed:
            raise RuntimeError(f"Scope for ClusterSummary {self.name} already closed")
        self._closed = True
        if not self._patch_status():
            return
        if self.cluster_summary.finalizers != self._persisted_finalizers:
            self.patch_object()

    def _patch_status(self) -> bool:
        resource_id = self.cluster_summary.resource_id
        attempts = max(1, self._config.status_patch_retries)
        for attempt in range(1, attempts + 1):
            try:
                self.cluster_summary.resource_version = self._store.patch_status(
                    resource_id,
                    self.cluster_summary.status,
                    self.cluster_summary.resource_version,
                )
                return True
            except ObjectNotFoundError:
                _LOGGER.info(
                    "ClusterSummary %s no longer exists, dropping status", self.name
                )
                return False
            except StatusWriteConflict as err:
                if attempt == attempts:
                    raise
                _LOGGER.warning("%s; retrying (%d/%d)", err, attempt, attempts)
                latest = self._store.get_object(resource_id, ClusterSummary)
                if latest is None:
                    _LOGGER.info(
                        "ClusterSummary %s no longer exists, dropping status",
                        self.name,
                    )
                    return False
                self.cluster_summary.resource_version = latest.resource_version
        return False
