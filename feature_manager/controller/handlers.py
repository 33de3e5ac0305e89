"""Map configuration object changes to the ClusterSummaries to reconcile.

These run inside store change notifications: they consult the reference index
only and never perform I/O or raise.
"""

from collections.abc import Callable
import logging

from feature_manager.manifest import (
    BaseManifest,
    ConfigMap,
    NamedResource,
    WorkloadRole,
    CONFIG_MAP_KIND,
    WORKLOAD_ROLE_KIND,
)
from feature_manager.store import Store, StoreEvent

from .reference_index import ReferenceIndex

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "config_map_changed",
    "workload_role_changed",
    "requeue_for_reference",
    "watch_references",
]


def config_map_changed(old: ConfigMap | None, new: ConfigMap | None) -> bool:
    """Creations, deletions and data changes of a ConfigMap are relevant."""
    if old is None or new is None:
        return True
    return old.data != new.data


def workload_role_changed(old: WorkloadRole | None, new: WorkloadRole | None) -> bool:
    """Creations, deletions and spec changes of a WorkloadRole are relevant."""
    if old is None or new is None:
        return True
    return (old.type, old.role_namespace, old.rules) != (
        new.type,
        new.role_namespace,
        new.rules,
    )


PREDICATES: dict[str, Callable[[BaseManifest | None, BaseManifest | None], bool]] = {
    CONFIG_MAP_KIND: config_map_changed,  # type: ignore[dict-item]
    WORKLOAD_ROLE_KIND: workload_role_changed,  # type: ignore[dict-item]
}


def requeue_for_reference(
    index: ReferenceIndex, resource_id: NamedResource
) -> list[str]:
    """Return the ClusterSummaries referencing the object, sorted by name."""
    consumers = sorted(index.consumers_of(resource_id))
    _LOGGER.debug("%s changed, %d ClusterSummaries to reconcile", resource_id, len(consumers))
    return consumers


def watch_references(
    store: Store, index: ReferenceIndex, enqueue: Callable[[str], None]
) -> Callable[[], None]:
    """Call `enqueue` for each ClusterSummary affected by a relevant change.

    Returns a callable removing the store listeners.
    """

    def listener(
        resource_id: NamedResource,
        old: BaseManifest | None,
        new: BaseManifest | None,
    ) -> None:
        if (predicate := PREDICATES.get(resource_id.kind)) is None:
            return
        if not predicate(old, new):
            return
        for name in requeue_for_reference(index, resource_id):
            enqueue(name)

    removers = [
        store.add_listener(event, listener)
        for event in (
            StoreEvent.OBJECT_ADDED,
            StoreEvent.OBJECT_UPDATED,
            StoreEvent.OBJECT_DELETED,
        )
    ]

    def remove() -> None:
        for remover in removers:
            remover()

    return remove
