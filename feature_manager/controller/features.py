"""Table of the features a ClusterSummary can deploy.

Each feature is described by the same set of functions, so the reconciler
handles them uniformly. Supporting a new feature means adding an entry to
`FEATURES`.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
from typing import Any

from feature_manager.deployer import Deployer, DeployPayload, DeployRequest
from feature_manager.exceptions import DeployError
from feature_manager.manifest import (
    ClusterFeatureSpec,
    ClusterSummary,
    FeatureID,
    NamedResource,
)
from feature_manager.store import Store

from .hash import (
    config_map_id,
    config_maps,
    kyverno_hash,
    prometheus_hash,
    workload_role_hash,
    workload_role_id,
    workload_roles,
)

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "Feature",
    "FeatureContext",
    "FEATURES",
]

RBAC_API_VERSION = "rbac.authorization.k8s.io/v1"


@dataclass(frozen=True)
class FeatureContext:
    """What a feature needs to deploy on behalf of a ClusterSummary."""

    store: Store
    deployer: Deployer
    cluster_summary: ClusterSummary

    def request(
        self,
        feature_id: FeatureID,
        objects: list[dict[str, Any]] | None = None,
        configuration: dict[str, Any] | None = None,
    ) -> DeployRequest:
        """Build a deploy request for the ClusterSummary's target cluster."""
        return DeployRequest(
            cluster=self.cluster_summary.spec.cluster,
            applicant=self.cluster_summary.name,
            feature_id=feature_id,
            payload=DeployPayload(
                policy_prefix=self.cluster_summary.status.policy_prefix or "",
                objects=objects or [],
                configuration=configuration or {},
            ),
        )

    async def deploy(self, request: DeployRequest) -> None:
        """Apply a request, reporting any deployer failure as a DeployError."""
        try:
            await self.deployer.deploy(request)
        except DeployError:
            raise
        except Exception as err:
            raise DeployError(f"Deploying {request.key} failed: {err}") from err

    async def undeploy(self, request: DeployRequest) -> None:
        """Remove a request's content, reporting any deployer failure as a DeployError."""
        try:
            await self.deployer.undeploy(request)
        except DeployError:
            raise
        except Exception as err:
            raise DeployError(f"Removing {request.key} failed: {err}") from err


@dataclass(frozen=True)
class Feature:
    """Functions implementing one feature.

    Attributes:
        id: The feature identifier
        configured: Whether the spec requests the feature at all
        current_hash: Hash of the configuration currently requested
        deploy: Deploys the feature, returning the kinds of deployed resources
        undeploy: Removes the feature from the target cluster
        get_refs: Configuration objects the feature references
    """

    id: FeatureID
    configured: Callable[[ClusterFeatureSpec], bool]
    current_hash: Callable[[Store, ClusterSummary], bytes]
    deploy: Callable[[FeatureContext], Awaitable[list[str]]]
    undeploy: Callable[[FeatureContext], Awaitable[None]]
    get_refs: Callable[[ClusterFeatureSpec], list[NamedResource]]


def group_version_kind(api_version: str, kind: str) -> str:
    """Format a kind the way kubernetes prints a GroupVersionKind."""
    if "/" in api_version:
        group, version = api_version.split("/", 1)
        return f"{kind}.{version}.{group}"
    return f"{kind}.{api_version}"


def _kinds(objects: list[dict[str, Any]]) -> list[str]:
    return sorted(
        {
            group_version_kind(obj.get("apiVersion", ""), obj["kind"])
            for obj in objects
            if obj.get("kind")
        }
    )


def _config_map_objects(store: Store, refs: list[Any]) -> list[dict[str, Any]]:
    objects: list[dict[str, Any]] = []
    for config_map in config_maps(store, refs):
        objects.extend(config_map.documents())
    return objects


async def deploy_workload_roles(ctx: FeatureContext) -> list[str]:
    spec = ctx.cluster_summary.spec.cluster_feature_spec
    objects = []
    for role in workload_roles(ctx.store, spec.workload_role_refs):
        obj = role.to_dict()
        obj.pop("resource_version", None)
        obj["apiVersion"] = RBAC_API_VERSION
        obj["kind"] = role.role_kind
        objects.append(obj)
    await ctx.deploy(ctx.request(FeatureID.ROLE, objects))
    return _kinds(objects)


async def undeploy_workload_roles(ctx: FeatureContext) -> None:
    await ctx.undeploy(ctx.request(FeatureID.ROLE))


def get_workload_role_refs(spec: ClusterFeatureSpec) -> list[NamedResource]:
    return [workload_role_id(ref) for ref in spec.workload_role_refs]


async def deploy_kyverno(ctx: FeatureContext) -> list[str]:
    configuration = ctx.cluster_summary.spec.cluster_feature_spec.kyverno_configuration
    if configuration is None:
        return []
    objects = _config_map_objects(ctx.store, configuration.policy_refs)
    await ctx.deploy(
        ctx.request(
            FeatureID.KYVERNO, objects, {"replicas": configuration.replicas}
        )
    )
    return _kinds(objects)


async def undeploy_kyverno(ctx: FeatureContext) -> None:
    await ctx.undeploy(ctx.request(FeatureID.KYVERNO))


def get_kyverno_refs(spec: ClusterFeatureSpec) -> list[NamedResource]:
    if spec.kyverno_configuration is None:
        return []
    return [config_map_id(ref) for ref in spec.kyverno_configuration.policy_refs]


async def deploy_prometheus(ctx: FeatureContext) -> list[str]:
    configuration = (
        ctx.cluster_summary.spec.cluster_feature_spec.prometheus_configuration
    )
    if configuration is None:
        return []
    objects = _config_map_objects(ctx.store, configuration.policy_refs)
    _LOGGER.debug(
        "Deploying monitoring stack in mode %s", configuration.installation_mode
    )
    await ctx.deploy(
        ctx.request(
            FeatureID.PROMETHEUS,
            objects,
            {
                "installationMode": str(configuration.installation_mode),
                "storageClassName": configuration.storage_class_name,
                "storageQuantity": configuration.storage_quantity,
            },
        )
    )
    return _kinds(objects)


async def undeploy_prometheus(ctx: FeatureContext) -> None:
    await ctx.undeploy(ctx.request(FeatureID.PROMETHEUS))


def get_prometheus_refs(spec: ClusterFeatureSpec) -> list[NamedResource]:
    if spec.prometheus_configuration is None:
        return []
    return [config_map_id(ref) for ref in spec.prometheus_configuration.policy_refs]


FEATURES: tuple[Feature, ...] = (
    Feature(
        id=FeatureID.ROLE,
        configured=lambda spec: bool(spec.workload_role_refs),
        current_hash=workload_role_hash,
        deploy=deploy_workload_roles,
        undeploy=undeploy_workload_roles,
        get_refs=get_workload_role_refs,
    ),
    Feature(
        id=FeatureID.KYVERNO,
        configured=lambda spec: spec.kyverno_configuration is not None,
        current_hash=kyverno_hash,
        deploy=deploy_kyverno,
        undeploy=undeploy_kyverno,
        get_refs=get_kyverno_refs,
    ),
    Feature(
        id=FeatureID.PROMETHEUS,
        configured=lambda spec: spec.prometheus_configuration is not None,
        current_hash=prometheus_hash,
        deploy=deploy_prometheus,
        undeploy=undeploy_prometheus,
        get_refs=get_prometheus_refs,
    ),
)
