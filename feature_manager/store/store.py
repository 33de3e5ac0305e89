"""Store module holding the resources the reconciler reads and writes."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import TypeVar

from feature_manager.manifest import (
    BaseManifest,
    ClusterSummaryStatus,
    NamedResource,
    CLUSTER_SUMMARY_KIND,
)

T = TypeVar("T", bound=BaseManifest)

SUPPORTS_STATUS: set[str] = {CLUSTER_SUMMARY_KIND}

Listener = Callable[[NamedResource, BaseManifest | None, BaseManifest | None], None]


class StoreEvent(str, Enum):
    """Enum for store events."""

    OBJECT_ADDED = "object_added"
    OBJECT_UPDATED = "object_updated"
    OBJECT_DELETED = "object_deleted"


class Store(ABC):
    """Abstract base class for the resource store with listener support.

    Objects handed out by the store are copies: mutating them has no effect
    until written back with one of the patch methods.
    """

    @abstractmethod
    def add_object(self, obj: BaseManifest) -> int:
        """Create or replace an object, returning its new resource version."""

    @abstractmethod
    def get_object(self, resource_id: NamedResource, cls: type[T]) -> T | None:
        """Retrieve a copy of an object by resource identity and type."""

    @abstractmethod
    def delete_object(self, resource_id: NamedResource) -> None:
        """Request deletion of an object.

        Objects holding finalizers are only marked with a deletion timestamp
        and are removed once their last finalizer is cleared.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """

    @abstractmethod
    def list_objects(self, kind: str | None = None) -> list[BaseManifest]:
        """List copies of all objects in the store, optionally filtered by kind."""

    @abstractmethod
    def patch_status(
        self,
        resource_id: NamedResource,
        status: ClusterSummaryStatus,
        resource_version: int,
    ) -> int:
        """Replace the status subresource of an object.

        Returns:
            The new resource version of the object.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            StatusWriteConflict: If the object changed since `resource_version`.
        """

    @abstractmethod
    def patch_finalizers(
        self, resource_id: NamedResource, finalizers: list[str]
    ) -> int | None:
        """Replace the finalizers of an object.

        Returns:
            The new resource version, or None when clearing the finalizers
            completed a pending deletion and the object is gone.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """

    @abstractmethod
    def add_listener(self, event: StoreEvent, callback: Listener) -> Callable[[], None]:
        """Register a callback invoked with (resource_id, old, new) for an event.

        Returns a callable that can be called to remove the listener.
        """
