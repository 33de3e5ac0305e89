"""Representation of the resources handled by the feature manager.

The control resource is a `ClusterSummary`: one per (ClusterFeature, cluster)
pair, carrying a copy of the owning `ClusterFeature` spec and the status of
each feature deployed to the target cluster. `WorkloadRole` and `ConfigMap`
objects are the shared configuration objects referenced by those specs.

Objects are parsed from raw kubernetes documents with `parse_doc` and may be
serialized back with mashumaro.
"""

from dataclasses import dataclass, field
from enum import StrEnum
import logging
from pathlib import Path
from typing import Any, ClassVar

import aiofiles
import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "read_resources",
    "parse_raw_obj",
    "NamedResource",
    "ObjectReference",
    "ClusterFeature",
    "ClusterFeatureSpec",
    "ClusterSummary",
    "ClusterSummarySpec",
    "ClusterSummaryStatus",
    "FeatureSummary",
    "FeatureID",
    "FeatureStatus",
    "WorkloadRole",
    "ConfigMap",
    "Cluster",
]

_LOGGER = logging.getLogger(__name__)


# Match a prefix of apiVersion to ensure we have the right type of object.
CONFIG_DOMAIN = "config.projectsveltos.io"
CLUSTER_API_DOMAIN = "cluster.x-k8s.io"
CLUSTER_SUMMARY_KIND = "ClusterSummary"
CLUSTER_FEATURE_KIND = "ClusterFeature"
WORKLOAD_ROLE_KIND = "WorkloadRole"
CONFIG_MAP_KIND = "ConfigMap"
CLUSTER_KIND = "Cluster"

CLUSTER_SUMMARY_FINALIZER = "clustersummaryfinalizer.projectsveltos.io"


class FeatureID(StrEnum):
    """Identifier of an independently deployable feature."""

    ROLE = "Role"
    KYVERNO = "Kyverno"
    PROMETHEUS = "Prometheus"


class FeatureStatus(StrEnum):
    """Deployment status of a feature on the target cluster."""

    PROVISIONING = "Provisioning"
    PROVISIONED = "Provisioned"
    FAILED = "Failed"


class WorkloadRoleType(StrEnum):
    """Scope of the role a WorkloadRole creates."""

    CLUSTER = "Cluster"
    NAMESPACED = "Namespaced"


class PrometheusInstallationMode(StrEnum):
    """How the monitoring stack is installed."""

    CUSTOM = "Custom"
    KUBE_STATE_METRICS = "KubeStateMetrics"
    KUBE_PROMETHEUS = "KubePrometheus"


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise InputException(f"Invalid object expected '{version}': {doc}")


def _metadata(doc: dict[str, Any], cls: type) -> dict[str, Any]:
    if not (metadata := doc.get("metadata")):
        raise InputException(f"Invalid {cls.__name__} missing metadata: {doc}")
    if not metadata.get("name"):
        raise InputException(f"Invalid {cls.__name__} missing metadata.name: {doc}")
    return metadata


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class ObjectReference(BaseManifest):
    """A reference to a configuration object."""

    name: str
    """The name of the referenced object."""

    namespace: str | None = None
    """The namespace of the referenced object, unset for cluster scoped kinds."""

    kind: str | None = None
    """The kind of the referenced object."""


@dataclass
class OwnerReference(BaseManifest):
    """A reference to the owner of an object."""

    kind: str
    name: str
    api_version: str = field(
        metadata=field_options(alias="apiVersion"), default=f"{CONFIG_DOMAIN}/v1alpha1"
    )


@dataclass
class KyvernoConfiguration(BaseManifest):
    """Policy engine configuration."""

    replicas: int = 1
    """Number of replicas of the policy engine."""

    policy_refs: list[ObjectReference] = field(
        metadata=field_options(alias="policyRefs"), default_factory=list
    )
    """ConfigMaps containing the policies to deploy."""


@dataclass
class PrometheusConfiguration(BaseManifest):
    """Monitoring stack configuration."""

    installation_mode: PrometheusInstallationMode = field(
        metadata=field_options(alias="installationMode"),
        default=PrometheusInstallationMode.CUSTOM,
    )
    """Which flavor of the monitoring stack to install."""

    storage_class_name: str | None = field(
        metadata=field_options(alias="storageClassName"), default=None
    )
    """Storage class used for the Prometheus volume claim, if any."""

    storage_quantity: str | None = field(
        metadata=field_options(alias="storageQuantity"), default=None
    )
    """Size of the Prometheus volume claim."""

    policy_refs: list[ObjectReference] = field(
        metadata=field_options(alias="policyRefs"), default_factory=list
    )
    """ConfigMaps containing additional monitoring objects to deploy."""


@dataclass
class ClusterFeatureSpec(BaseManifest):
    """Declarative set of features to install on matching clusters."""

    cluster_selector: str = field(
        metadata=field_options(alias="clusterSelector"), default=""
    )
    """Label selector for the clusters this feature bundle applies to."""

    workload_role_refs: list[ObjectReference] = field(
        metadata=field_options(alias="workloadRoles"), default_factory=list
    )
    """WorkloadRoles to deploy."""

    kyverno_configuration: KyvernoConfiguration | None = field(
        metadata=field_options(alias="kyvernoConfiguration"), default=None
    )
    """Policy engine configuration, unset when not requested."""

    prometheus_configuration: PrometheusConfiguration | None = field(
        metadata=field_options(alias="prometheusConfiguration"), default=None
    )
    """Monitoring stack configuration, unset when not requested."""


@dataclass
class ClusterFeature(BaseManifest):
    """The parent resource supplying the declarative feature configuration."""

    kind: ClassVar[str] = CLUSTER_FEATURE_KIND
    namespace: ClassVar[str | None] = None

    name: str
    spec: ClusterFeatureSpec = field(default_factory=ClusterFeatureSpec)
    resource_version: int = 0

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ClusterFeature":
        """Parse a ClusterFeature from a kubernetes resource object."""
        _check_version(doc, CONFIG_DOMAIN)
        metadata = _metadata(doc, cls)
        return cls(
            name=metadata["name"],
            spec=ClusterFeatureSpec.from_dict(doc.get("spec") or {}),
        )


@dataclass
class FeatureSummary(BaseManifest):
    """Deployment state of a single feature."""

    feature_id: FeatureID = field(metadata=field_options(alias="featureID"))
    """The feature this summary describes."""

    status: FeatureStatus | None = None
    """Last known deployment status."""

    hash: bytes | None = None
    """Hash of the configuration last deployed (or attempted) for this feature."""

    failure_reason: str | None = field(
        metadata=field_options(alias="failureReason"), default=None
    )
    """Machine readable reason for the last failure."""

    failure_message: str | None = field(
        metadata=field_options(alias="failureMessage"), default=None
    )
    """Human readable description of the last failure."""

    deployed_group_version_kind: list[str] = field(
        metadata=field_options(alias="deployedGroupVersionKind"),
        default_factory=list,
    )
    """Kinds of the resources deployed on the target cluster."""


@dataclass
class ClusterSummarySpec(BaseManifest):
    """Target cluster and the feature configuration to apply to it."""

    cluster_namespace: str = field(metadata=field_options(alias="clusterNamespace"))
    cluster_name: str = field(metadata=field_options(alias="clusterName"))
    cluster_feature_spec: ClusterFeatureSpec = field(
        metadata=field_options(alias="clusterFeatureSpec"),
        default_factory=ClusterFeatureSpec,
    )

    @property
    def cluster(self) -> NamedResource:
        """Identifier of the target cluster."""
        return NamedResource(CLUSTER_KIND, self.cluster_namespace, self.cluster_name)


@dataclass
class ClusterSummaryStatus(BaseManifest):
    """Observed state of the features deployed to the target cluster."""

    feature_summaries: list[FeatureSummary] = field(
        metadata=field_options(alias="featureSummaries"), default_factory=list
    )
    policy_prefix: str | None = field(
        metadata=field_options(alias="policyPrefix"), default=None
    )


@dataclass
class ClusterSummary(BaseManifest):
    """The control resource reconciled by the feature manager."""

    kind: ClassVar[str] = CLUSTER_SUMMARY_KIND
    namespace: ClassVar[str | None] = None

    name: str
    spec: ClusterSummarySpec
    status: ClusterSummaryStatus = field(default_factory=ClusterSummaryStatus)
    finalizers: list[str] = field(default_factory=list)
    owner_references: list[OwnerReference] = field(default_factory=list)
    deletion_timestamp: str | None = None
    resource_version: int = 0

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(self.kind, None, self.name)

    @property
    def is_deleting(self) -> bool:
        """Whether deletion has been requested for this resource."""
        return self.deletion_timestamp is not None

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ClusterSummary":
        """Parse a ClusterSummary from a kubernetes resource object."""
        _check_version(doc, CONFIG_DOMAIN)
        metadata = _metadata(doc, cls)
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls.__name__} missing spec: {doc}")
        for key in ("clusterNamespace", "clusterName"):
            if not spec.get(key):
                raise InputException(
                    f"Invalid {cls.__name__} missing spec.{key}: {doc}"
                )
        return cls(
            name=metadata["name"],
            spec=ClusterSummarySpec.from_dict(spec),
            status=ClusterSummaryStatus.from_dict(doc.get("status") or {}),
            finalizers=list(metadata.get("finalizers") or []),
            owner_references=[
                OwnerReference.from_dict(ref)
                for ref in metadata.get("ownerReferences") or ()
            ],
            deletion_timestamp=metadata.get("deletionTimestamp"),
        )


@dataclass
class PolicyRule(BaseManifest):
    """A single RBAC rule."""

    verbs: list[str]
    api_groups: list[str] = field(
        metadata=field_options(alias="apiGroups"), default_factory=list
    )
    resources: list[str] = field(default_factory=list)
    resource_names: list[str] = field(
        metadata=field_options(alias="resourceNames"), default_factory=list
    )


@dataclass
class WorkloadRole(BaseManifest):
    """A role policy to be created on target clusters."""

    kind: ClassVar[str] = WORKLOAD_ROLE_KIND
    namespace: ClassVar[str | None] = None

    name: str
    type: WorkloadRoleType = WorkloadRoleType.CLUSTER
    role_namespace: str | None = None
    """Namespace the Role is created in when the type is Namespaced."""

    rules: list[PolicyRule] = field(default_factory=list)
    resource_version: int = 0

    @property
    def role_kind(self) -> str:
        """Kind of the RBAC object created on the target cluster."""
        if self.type == WorkloadRoleType.NAMESPACED:
            return "Role"
        return "ClusterRole"

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "WorkloadRole":
        """Parse a WorkloadRole from a kubernetes resource object."""
        _check_version(doc, CONFIG_DOMAIN)
        metadata = _metadata(doc, cls)
        spec = doc.get("spec") or {}
        role_type = WorkloadRoleType(spec.get("type", WorkloadRoleType.CLUSTER))
        if role_type == WorkloadRoleType.NAMESPACED and not spec.get("namespace"):
            raise InputException(
                f"Invalid {cls.__name__} of type Namespaced missing spec.namespace: {doc}"
            )
        return cls(
            name=metadata["name"],
            type=role_type,
            role_namespace=spec.get("namespace"),
            rules=[PolicyRule.from_dict(rule) for rule in spec.get("rules") or ()],
        )


@dataclass
class ConfigMap(BaseManifest):
    """A ConfigMap holding policies or monitoring objects."""

    kind: ClassVar[str] = CONFIG_MAP_KIND

    name: str
    namespace: str
    data: dict[str, str] = field(default_factory=dict)
    resource_version: int = 0

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ConfigMap":
        """Parse a ConfigMap from a kubernetes resource object."""
        _check_version(doc, "v1")
        metadata = _metadata(doc, cls)
        if not (namespace := metadata.get("namespace")):
            raise InputException(
                f"Invalid {cls.__name__} missing metadata.namespace: {doc}"
            )
        return cls(
            name=metadata["name"],
            namespace=namespace,
            data=dict(doc.get("data") or {}),
        )

    def documents(self) -> list[dict[str, Any]]:
        """Return the kubernetes objects embedded in the data values."""
        docs: list[dict[str, Any]] = []
        for key in sorted(self.data):
            try:
                for doc in yaml.safe_load_all(self.data[key]):
                    if isinstance(doc, dict):
                        docs.append(doc)
            except yaml.YAMLError as err:
                raise InputException(
                    f"ConfigMap {self.namespace}/{self.name} key {key} is not valid YAML: {err}"
                ) from err
        return docs


@dataclass
class Cluster(BaseManifest):
    """A target cluster known to the management cluster."""

    kind: ClassVar[str] = CLUSTER_KIND

    name: str
    namespace: str
    resource_version: int = 0

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Cluster":
        """Parse a Cluster from a kubernetes resource object."""
        _check_version(doc, CLUSTER_API_DOMAIN)
        metadata = _metadata(doc, cls)
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", "default"),
        )


Resource = ClusterSummary | ClusterFeature | WorkloadRole | ConfigMap | Cluster


def parse_raw_obj(obj: dict[str, Any]) -> Resource:
    """Parse a raw kubernetes object into a resource understood by the manager."""
    if not (kind := obj.get("kind")):
        raise InputException(f"Invalid object missing kind: {obj}")
    if kind == CLUSTER_SUMMARY_KIND:
        return ClusterSummary.parse_doc(obj)
    if kind == CLUSTER_FEATURE_KIND:
        return ClusterFeature.parse_doc(obj)
    if kind == WORKLOAD_ROLE_KIND:
        return WorkloadRole.parse_doc(obj)
    if kind == CONFIG_MAP_KIND:
        return ConfigMap.parse_doc(obj)
    if kind == CLUSTER_KIND:
        return Cluster.parse_doc(obj)
    raise InputException(f"Unsupported object kind '{kind}': {obj}")


async def read_resources(path: Path) -> list[Resource]:
    """Read all supported resources from a multi-document YAML file."""
    async with aiofiles.open(str(path)) as resource_file:
        content = await resource_file.read()
    try:
        docs = [doc for doc in yaml.safe_load_all(content) if doc]
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse {path}: {err}") from err
    _LOGGER.debug("Read %d documents from %s", len(docs), path)
    return [parse_raw_obj(doc) for doc in docs]
