"""Content hashes used to decide whether a feature must be redeployed.

The hash of a feature covers its own configuration values and the content of
every configuration object it references, in reference order. Referenced
objects that do not exist yet contribute nothing: deploying content from them
is deferred until they are created, at which point the hash changes.

Content is serialized as YAML with sorted keys so the hash is stable across
process restarts.
"""

from collections.abc import Iterable
import hashlib
import logging
from typing import Any

import yaml

from feature_manager.manifest import (
    ClusterSummary,
    ConfigMap,
    NamedResource,
    ObjectReference,
    WorkloadRole,
    CONFIG_MAP_KIND,
    WORKLOAD_ROLE_KIND,
)
from feature_manager.store import Store

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "EMPTY_HASH",
    "workload_role_hash",
    "kyverno_hash",
    "prometheus_hash",
]

DEFAULT_CONFIG_MAP_NAMESPACE = "default"

EMPTY_HASH = hashlib.sha256().digest()
"""Hash of a feature that is not configured at all."""


def workload_role_id(ref: ObjectReference) -> NamedResource:
    """Identifier of a referenced WorkloadRole (cluster scoped)."""
    return NamedResource(WORKLOAD_ROLE_KIND, None, ref.name)


def config_map_id(ref: ObjectReference) -> NamedResource:
    """Identifier of a referenced ConfigMap."""
    return NamedResource(
        CONFIG_MAP_KIND, ref.namespace or DEFAULT_CONFIG_MAP_NAMESPACE, ref.name
    )


def content_hash(configuration: Any, contents: Iterable[Any]) -> bytes:
    """Return the sha256 of a feature configuration followed by referenced content."""
    h = hashlib.sha256()
    h.update(yaml.safe_dump(configuration, sort_keys=True).encode())
    for content in contents:
        h.update(yaml.safe_dump(content, sort_keys=True).encode())
    return h.digest()


def workload_roles(store: Store, refs: Iterable[ObjectReference]) -> list[WorkloadRole]:
    """Return the referenced WorkloadRoles that currently exist."""
    roles = []
    for ref in refs:
        if (role := store.get_object(workload_role_id(ref), WorkloadRole)) is None:
            _LOGGER.info("WorkloadRole %s does not exist yet", ref.name)
            continue
        roles.append(role)
    return roles


def config_maps(store: Store, refs: Iterable[ObjectReference]) -> list[ConfigMap]:
    """Return the referenced ConfigMaps that currently exist."""
    found = []
    for ref in refs:
        resource_id = config_map_id(ref)
        if (config_map := store.get_object(resource_id, ConfigMap)) is None:
            _LOGGER.info("ConfigMap %s does not exist yet", resource_id.namespaced_name)
            continue
        found.append(config_map)
    return found


def _role_content(role: WorkloadRole) -> dict[str, Any]:
    content = role.to_dict()
    content.pop("resource_version", None)
    return content


def _config_map_content(config_map: ConfigMap) -> dict[str, Any]:
    return {
        "namespace": config_map.namespace,
        "name": config_map.name,
        "data": dict(config_map.data),
    }


def workload_role_hash(store: Store, cluster_summary: ClusterSummary) -> bytes:
    """Hash of all the WorkloadRoles referenced by the ClusterSummary."""
    spec = cluster_summary.spec.cluster_feature_spec
    if not spec.workload_role_refs:
        return EMPTY_HASH
    return content_hash(
        {},
        (_role_content(role) for role in workload_roles(store, spec.workload_role_refs)),
    )


def kyverno_hash(store: Store, cluster_summary: ClusterSummary) -> bytes:
    """Hash of the policy engine configuration and its policy ConfigMaps."""
    configuration = cluster_summary.spec.cluster_feature_spec.kyverno_configuration
    if configuration is None:
        return EMPTY_HASH
    return content_hash(
        {"replicas": configuration.replicas},
        (
            _config_map_content(config_map)
            for config_map in config_maps(store, configuration.policy_refs)
        ),
    )


def prometheus_hash(store: Store, cluster_summary: ClusterSummary) -> bytes:
    """Hash of the monitoring stack configuration and its ConfigMaps."""
    configuration = cluster_summary.spec.cluster_feature_spec.prometheus_configuration
    if configuration is None:
        return EMPTY_HASH
    return content_hash(
        {
            "installationMode": str(configuration.installation_mode),
            "storageClassName": configuration.storage_class_name,
            "storageQuantity": configuration.storage_quantity,
        },
        (
            _config_map_content(config_map)
            for config_map in config_maps(store, configuration.policy_refs)
        ),
    )
