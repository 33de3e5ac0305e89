"""Interface to the engine applying feature content to target clusters."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from feature_manager.manifest import FeatureID, NamedResource

__all__ = [
    "Deployer",
    "DeployRequest",
    "DeployPayload",
]


@dataclass(kw_only=True)
class DeployPayload:
    """Content to apply for one feature.

    Attributes:
        policy_prefix: Prefix of the names of objects created on the target
        objects: Kubernetes objects to apply, in order
        configuration: Feature settings, e.g. the number of replicas
    """

    policy_prefix: str
    objects: list[dict[str, Any]] = field(default_factory=list)
    configuration: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeployRequest:
    """A request to deploy or remove one feature on one target cluster."""

    cluster: NamedResource
    """The target cluster."""

    applicant: str
    """Name of the ClusterSummary the request is made on behalf of."""

    feature_id: FeatureID
    """The feature being deployed."""

    payload: DeployPayload
    """What to apply."""

    @property
    def key(self) -> str:
        """Identifier of the (cluster, applicant, feature) slot this request targets."""
        return f"{self.cluster}:{self.applicant}:{self.feature_id}"


class Deployer(ABC):
    """Applies and removes feature content on target clusters.

    Implementations may queue and poll internally; callers await each call
    until it succeeds or raises DeployError. Other exceptions raised by an
    implementation are reported to the reconciler as a DeployError.
    """

    @abstractmethod
    async def deploy(self, request: DeployRequest) -> None:
        """Apply the request payload to the target cluster.

        Raises:
            DeployError: If the content could not be applied.
            DeployTimeout: If the request did not complete in time.
        """

    @abstractmethod
    async def undeploy(self, request: DeployRequest) -> None:
        """Remove the content previously applied for the request's feature.

        Raises:
            DeployError: If the content could not be removed.
            DeployTimeout: If the request did not complete in time.
        """
