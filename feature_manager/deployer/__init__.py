"""Deployer module.

The deployer applies per-feature content to a target cluster on behalf of a
ClusterSummary. The reconciler awaits each request to completion.
"""

from .deployer import Deployer, DeployPayload, DeployRequest
from .in_memory import InMemoryDeployer

__all__ = [
    "Deployer",
    "DeployPayload",
    "DeployRequest",
    "InMemoryDeployer",
]
