"""Configuration objects for the feature manager."""

from dataclasses import dataclass


@dataclass
class ReconcilerConfig:
    """Configuration for the ClusterSummaryReconciler."""

    delete_requeue_after: float = 20.0
    """Seconds to wait before retrying a deletion whose undeploy failed."""

    normal_requeue_after: float = 20.0
    """Seconds to wait before retrying a pass where a feature failed."""

    status_patch_retries: int = 3
    """Attempts made to write back status when the resource changed concurrently."""


@dataclass
class DeployerConfig:
    """Configuration for the InMemoryDeployer."""

    timeout: float = 60.0
    """Seconds a deploy or undeploy request may run before it is abandoned."""
