"""In-memory view of bridge resources.

The model is rebuilt from polls and never persisted. apply_poll_snapshot()
is its only mutation entry point; readers get an immutable mapping that is
swapped in whole after each application, so they never observe a half
applied snapshot.
"""

import itertools
import logging
import threading
from collections.abc import Iterable, Mapping
from types import MappingProxyType

from models.commands import ChangeKind, ResourceChange
from models.resources import ResourceId, ResourceState, ResourceType

logger = logging.getLogger(__name__)


class ResourceModel:
    """Versioned cache of lights, groups and scenes."""

    def __init__(self):
        self._states: Mapping[ResourceId, ResourceState] = MappingProxyType({})
        # Shared across all resources so a removed and re-added resource
        # never gets a revision it had before
        self._revisions = itertools.count(1)
        self._write_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, resource_id: ResourceId) -> bool:
        return resource_id in self._states

    def get(self, resource_id: ResourceId) -> ResourceState | None:
        return self._states.get(resource_id)

    def snapshot(self) -> Mapping[ResourceId, ResourceState]:
        """Read-only mapping of every resource at one point in time."""
        return self._states

    def all(self, rtype: ResourceType | None = None) -> list[ResourceState]:
        """All resources, optionally of one type, sorted by id."""
        states = self._states
        return [
            states[resource_id]
            for resource_id in sorted(states)
            if rtype is None or resource_id.rtype is rtype
        ]

    def find_by_name(self, rtype: ResourceType, name: str) -> ResourceState | None:
        """Case-insensitive lookup of a resource by its display name."""
        wanted = name.lower()
        for state in self.all(rtype):
            if state.name.lower() == wanted:
                return state
        return None

    def apply_poll_snapshot(self, states: Iterable[ResourceState],
                            scope: Iterable[ResourceType] | None = None) -> list[ResourceChange]:
        """Diff a polled snapshot against the current view and apply it.

        Args:
            states: Every resource the poll returned
            scope: Resource types the poll covered. Resources of these types
                missing from the snapshot are removed; other types are left
                alone. None means a full poll of every type.

        Returns:
            Added, updated and removed changes, in that order. Empty if the
            snapshot matches the current view.
        """
        covered = frozenset(ResourceType) if scope is None else frozenset(scope)

        with self._write_lock:
            current = self._states
            incoming: dict[ResourceId, ResourceState] = {}
            for state in states:
                if state.id in incoming:
                    logger.warning("Duplicate %s in poll snapshot, keeping the last one", state.id)
                incoming[state.id] = state

            updated = dict(current)
            added_changes = []
            updated_changes = []
            removed_changes = []

            for resource_id, state in incoming.items():
                previous = current.get(resource_id)
                if previous is None:
                    fresh = state.with_revision(next(self._revisions))
                    updated[resource_id] = fresh
                    added_changes.append(ResourceChange(ChangeKind.ADDED, resource_id, None, fresh))
                elif not previous.same_content(state):
                    fresh = state.with_revision(next(self._revisions))
                    updated[resource_id] = fresh
                    updated_changes.append(ResourceChange(ChangeKind.UPDATED, resource_id, previous, fresh))

            for resource_id, previous in current.items():
                if resource_id.rtype in covered and resource_id not in incoming:
                    del updated[resource_id]
                    removed_changes.append(ResourceChange(ChangeKind.REMOVED, resource_id, previous, None))

            changes = added_changes + updated_changes + removed_changes
            if changes:
                self._states = MappingProxyType(updated)
                logger.debug("Applied poll snapshot: %d added, %d updated, %d removed",
                             len(added_changes), len(updated_changes), len(removed_changes))
            return changes
