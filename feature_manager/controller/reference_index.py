"""Index of the configuration objects each ClusterSummary references.

ClusterSummaries reference WorkloadRoles and ConfigMaps. When one of those
objects changes, every ClusterSummary currently referencing it must be
reconciled again. Looking those up must not perform I/O since it runs inside
change notification callbacks where a failure could not be retried.

Instead each reconciliation records the references of its ClusterSummary, and
a notification is answered from the index alone. Two maps are kept:

- `referenced_by`: referenced object -> ClusterSummaries referencing it
- `consumes`: ClusterSummary -> referenced objects

`consumes` holds the references seen by the previous reconciliation, which is
what allows dropping a ClusterSummary from `referenced_by` for objects it no
longer references. A ClusterSummary whose first reconciliation is still
queued is not in the index yet; that queued reconciliation will observe the
change anyway.
"""

from collections.abc import Iterable
import logging
import threading

from feature_manager.exceptions import IndexInvariantViolation
from feature_manager.manifest import NamedResource

_LOGGER = logging.getLogger(__name__)

__all__ = ["ReferenceIndex"]


class ReferenceIndex:
    """Bidirectional index between ClusterSummaries and referenced objects.

    All access is serialized by a single lock which is only held while the
    maps are read or updated.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._referenced_by: dict[NamedResource, set[str]] = {}
        self._consumes: dict[str, set[NamedResource]] = {}

    def update_references(
        self, consumer: str, entries: Iterable[NamedResource]
    ) -> None:
        """Replace the set of objects referenced by a consumer.

        Entries no longer referenced by anyone are kept as empty sets.
        """
        current = set(entries)
        with self._lock:
            previous = self._consumes.get(consumer, set())
            try:
                self._verify_consumer(consumer, previous)
            except IndexInvariantViolation as err:
                _LOGGER.error("%s; rebuilding from current references", err)
                for consumers in self._referenced_by.values():
                    consumers.discard(consumer)
                previous = set()

            for entry in previous - current:
                self._referenced_by.setdefault(entry, set()).discard(consumer)
            for entry in current:
                self._referenced_by.setdefault(entry, set()).add(consumer)
            self._consumes[consumer] = current
        _LOGGER.debug("ClusterSummary %s references %d objects", consumer, len(current))

    def remove_consumer(self, consumer: str) -> None:
        """Forget a consumer entirely, e.g. once it has been deleted."""
        self.update_references(consumer, ())
        with self._lock:
            self._consumes.pop(consumer, None)

    def consumers_of(self, entry: NamedResource) -> set[str]:
        """Return the consumers currently referencing an object."""
        with self._lock:
            return set(self._referenced_by.get(entry, ()))

    def references_of(self, consumer: str) -> set[NamedResource]:
        """Return the objects a consumer referenced at its last reconciliation."""
        with self._lock:
            return set(self._consumes.get(consumer, ()))

    def check_invariants(self) -> None:
        """Verify both maps agree.

        Raises:
            IndexInvariantViolation: If an entry is present in one map only.
        """
        with self._lock:
            for consumer, entries in self._consumes.items():
                self._verify_consumer(consumer, entries)
            for entry, consumers in self._referenced_by.items():
                for consumer in consumers:
                    if entry not in self._consumes.get(consumer, ()):
                        raise IndexInvariantViolation(
                            consumer, f"{entry} lists it but it does not reference {entry}"
                        )

    def _verify_consumer(self, consumer: str, entries: set[NamedResource]) -> None:
        for entry in entries:
            if consumer not in self._referenced_by.get(entry, ()):
                raise IndexInvariantViolation(
                    consumer, f"references {entry} but is not listed as its consumer"
                )
