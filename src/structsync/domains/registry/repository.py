"""Repository Protocol for the Registry Context.

Registries are per-channel state. The repository hands out the
registry that belongs to a channel (or session) id and drops it when
the channel closes, so nothing ever reaches for a process-wide cache.
"""

from __future__ import annotations

import threading
from typing import Dict, Optional, Protocol, runtime_checkable

from structsync.domains.registry.aggregates import StructureRegistry


@runtime_checkable
class StructureRegistryRepository(Protocol):
    """Repository protocol for StructureRegistry aggregates.

    Implementations can keep registries in memory or rebuild them from
    exported snapshots held elsewhere.
    """

    def get_or_create(self, channel_id: str) -> StructureRegistry:
        """Return the channel's registry, creating an empty one if needed."""
        ...

    def get(self, channel_id: str) -> Optional[StructureRegistry]:
        """Return the channel's registry, or None if it has none."""
        ...

    def delete_for_channel(self, channel_id: str) -> None:
        """Drop the registry of a closed channel."""
        ...


class InMemoryStructureRegistryRepository:
    """In-memory implementation of StructureRegistryRepository.

    Thread Safety: creation and deletion are guarded by a lock; each
    registry serializes its own operations.
    """

    def __init__(self, max_entries: int = 100) -> None:
        self._max_entries = max_entries
        self._registries: Dict[str, StructureRegistry] = {}
        self._lock = threading.Lock()

    def get_or_create(self, channel_id: str) -> StructureRegistry:
        with self._lock:
            registry = self._registries.get(channel_id)
            if registry is None:
                registry = StructureRegistry.create_for_channel(
                    channel_id, max_entries=self._max_entries
                )
                self._registries[channel_id] = registry
            return registry

    def get(self, channel_id: str) -> Optional[StructureRegistry]:
        with self._lock:
            return self._registries.get(channel_id)

    def delete_for_channel(self, channel_id: str) -> None:
        with self._lock:
            self._registries.pop(channel_id, None)

    def stats(self) -> Dict[str, object]:
        """Get repository statistics."""
        with self._lock:
            registries = list(self._registries.values())
        return {
            "total_channels": len(registries),
            "total_structures": sum(len(r) for r in registries),
            "total_collisions": sum(r.collision_count for r in registries),
        }

    def __len__(self) -> int:
        return len(self._registries)

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._registries
