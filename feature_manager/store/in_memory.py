"""Module for in memory object store."""

import copy
import dataclasses
import datetime
import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any, DefaultDict, TypeVar

from feature_manager.exceptions import ObjectNotFoundError, StatusWriteConflict
from feature_manager.manifest import BaseManifest, ClusterSummaryStatus, NamedResource

from .store import Listener, Store, StoreEvent, SUPPORTS_STATUS

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseManifest)


def _content(obj: BaseManifest) -> dict[str, Any]:
    values = dataclasses.asdict(obj)  # type: ignore[call-overload]
    values.pop("resource_version", None)
    return values


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Stores manifest objects keyed by NamedResource and tracks a resource
    version per object for optimistic concurrency on status writes.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[NamedResource, BaseManifest] = {}
        self._lock = threading.RLock()
        self._listeners: DefaultDict[StoreEvent, list[Listener]] = defaultdict(list)

    @staticmethod
    def _resource_id(obj: BaseManifest) -> NamedResource:
        if not hasattr(obj, "kind") or not hasattr(obj, "name"):
            raise ValueError("Object must have kind and name attributes")
        return NamedResource(obj.kind, getattr(obj, "namespace", None), obj.name)

    def add_object(self, obj: BaseManifest) -> int:
        """Create or replace an object, returning its new resource version."""
        resource_id = self._resource_id(obj)
        with self._lock:
            existing = self._objects.get(resource_id)
            if existing is not None and _content(existing) == _content(obj):
                _LOGGER.debug("Object %s unchanged in store, skipping", resource_id)
                return existing.resource_version  # type: ignore[attr-defined]
            stored = copy.deepcopy(obj)
            stored.resource_version = (  # type: ignore[attr-defined]
                existing.resource_version + 1 if existing is not None else 1  # type: ignore[attr-defined]
            )
            self._objects[resource_id] = stored
            version: int = stored.resource_version  # type: ignore[attr-defined]
        if existing is None:
            _LOGGER.debug("Adding object %s to store", resource_id)
            self._fire_event(StoreEvent.OBJECT_ADDED, resource_id, None, stored)
        else:
            _LOGGER.debug("Updating existing object %s in store", resource_id)
            self._fire_event(StoreEvent.OBJECT_UPDATED, resource_id, existing, stored)
        return version

    def get_object(self, resource_id: NamedResource, cls: type[T]) -> T | None:
        """Retrieve a copy of an object by resource identity and type."""
        with self._lock:
            obj = self._objects.get(resource_id)
            if obj is None:
                return None
            if not isinstance(obj, cls):
                raise ValueError(
                    f"Object {resource_id.namespaced_name} is not of type {cls.__name__} (was {obj.__class__.__name__})"
                )
            return copy.deepcopy(obj)

    def delete_object(self, resource_id: NamedResource) -> None:
        """Request deletion of an object."""
        with self._lock:
            if (existing := self._objects.get(resource_id)) is None:
                raise ObjectNotFoundError(f"Object {resource_id} not found")
            if getattr(existing, "finalizers", None):
                if existing.deletion_timestamp is not None:  # type: ignore[attr-defined]
                    return
                marked = copy.deepcopy(existing)
                marked.deletion_timestamp = datetime.datetime.now(  # type: ignore[attr-defined]
                    datetime.UTC
                ).isoformat()
                marked.resource_version += 1  # type: ignore[attr-defined]
                self._objects[resource_id] = marked
                deleted = False
            else:
                del self._objects[resource_id]
                deleted = True
        if deleted:
            _LOGGER.debug("Deleted object %s from store", resource_id)
            self._fire_event(StoreEvent.OBJECT_DELETED, resource_id, existing, None)
        else:
            _LOGGER.debug("Marked object %s for deletion", resource_id)
            self._fire_event(StoreEvent.OBJECT_UPDATED, resource_id, existing, marked)

    def list_objects(self, kind: str | None = None) -> list[BaseManifest]:
        """List copies of all objects in the store, optionally filtered by kind."""
        with self._lock:
            return [
                copy.deepcopy(obj)
                for obj in self._objects.values()
                if kind is None or getattr(obj, "kind", None) == kind
            ]

    def patch_status(
        self,
        resource_id: NamedResource,
        status: ClusterSummaryStatus,
        resource_version: int,
    ) -> int:
        """Replace the status subresource of an object."""
        if resource_id.kind not in SUPPORTS_STATUS:
            raise ValueError(
                f"Resource kind {resource_id.kind} does not support status updates"
            )
        with self._lock:
            if (existing := self._objects.get(resource_id)) is None:
                raise ObjectNotFoundError(f"Object {resource_id} not found")
            current_version: int = existing.resource_version  # type: ignore[attr-defined]
            if current_version != resource_version:
                raise StatusWriteConflict(
                    resource_id.namespaced_name, resource_version, current_version
                )
            if existing.status == status:  # type: ignore[attr-defined]
                _LOGGER.debug("Status of %s unchanged, skipping", resource_id)
                return current_version
            updated = copy.deepcopy(existing)
            updated.status = copy.deepcopy(status)  # type: ignore[attr-defined]
            updated.resource_version = current_version + 1  # type: ignore[attr-defined]
            self._objects[resource_id] = updated
        _LOGGER.debug("Patched status of %s", resource_id)
        self._fire_event(StoreEvent.OBJECT_UPDATED, resource_id, existing, updated)
        return current_version + 1

    def patch_finalizers(
        self, resource_id: NamedResource, finalizers: list[str]
    ) -> int | None:
        """Replace the finalizers of an object."""
        with self._lock:
            if (existing := self._objects.get(resource_id)) is None:
                raise ObjectNotFoundError(f"Object {resource_id} not found")
            if not finalizers and existing.deletion_timestamp is not None:  # type: ignore[attr-defined]
                del self._objects[resource_id]
                updated = None
            else:
                updated = copy.deepcopy(existing)
                updated.finalizers = list(finalizers)  # type: ignore[attr-defined]
                updated.resource_version += 1  # type: ignore[attr-defined]
                self._objects[resource_id] = updated
        if updated is None:
            _LOGGER.debug("Last finalizer removed, deleted object %s", resource_id)
            self._fire_event(StoreEvent.OBJECT_DELETED, resource_id, existing, None)
            return None
        self._fire_event(StoreEvent.OBJECT_UPDATED, resource_id, existing, updated)
        return updated.resource_version  # type: ignore[no-any-return]

    def add_listener(self, event: StoreEvent, callback: Listener) -> Callable[[], None]:
        """Register a callback invoked with (resource_id, old, new) for an event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)
        return remove

    def _fire_event(
        self,
        event: StoreEvent,
        resource_id: NamedResource,
        old: BaseManifest | None,
        new: BaseManifest | None,
    ) -> None:
        for cb in list(self._listeners[event]):  # Iterate over a copy for safe removal
            try:
                cb(resource_id, old, new)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)
