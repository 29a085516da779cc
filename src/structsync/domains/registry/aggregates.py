"""Aggregates for the Registry Context.

The StructureRegistry is the aggregate root for this context. It
maintains the consistency boundary around cached structure
definitions and enforces the size bound with LRU eviction.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional

from structsync.domains.registry.entities import StructureDefinition
from structsync.domains.registry.events import (
    StructureCollisionDetected,
    StructureEvicted,
    StructureRegistered,
)
from structsync.domains.shared.kernel import MalformedPacketError

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

# Undrained events beyond this are dropped, oldest first
MAX_PENDING_EVENTS = 1000


@dataclass
class StructureRegistry:
    """Aggregate root caching structure id -> definition.

    One instance belongs to one end of one channel. Sender and
    receiver never share an instance; the sync protocol keeps them
    consistent by always sending a full packet before any packet that
    depends on the receiver already holding the structure.

    Invariants:
    - Occupancy never exceeds max_entries after a put returns
    - Eviction removes the least-recently-looked-up definition first
    - get() and put() count as a use; membership tests do not
    - put/get/evict are serialized by an internal lock
    """
    registry_id: str = field(default_factory=lambda: f"reg_{uuid.uuid4().hex[:12]}")
    max_entries: int = 100
    created_at: datetime = field(default_factory=datetime.now)
    collision_count: int = 0

    _entries: "OrderedDict[str, StructureDefinition]" = field(
        default_factory=OrderedDict, init=False, repr=False
    )
    _lock: Any = field(default_factory=threading.RLock, init=False, repr=False)
    _events: Deque[object] = field(
        default_factory=lambda: deque(maxlen=MAX_PENDING_EVENTS), init=False, repr=False
    )
    _hits: int = field(default=0, init=False, repr=False)
    _misses: int = field(default=0, init=False, repr=False)
    _evictions: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_entries <= 0:
            raise ValueError("Registry max_entries must be positive")

    def put(self, definition: StructureDefinition) -> None:
        """Insert or refresh a definition, then enforce the size bound.

        A different shape arriving under an existing id is a collision:
        it is counted, logged, and the newer definition wins.
        """
        with self._lock:
            existing = self._entries.get(definition.id)
            if existing is None:
                self._events.append(
                    StructureRegistered(
                        registry_id=self.registry_id,
                        structure_id=definition.id,
                        leaf_count=definition.shape.leaf_count(),
                    )
                )
            elif existing.shape != definition.shape:
                self.collision_count += 1
                logger.warning(
                    "Structure id collision on %s in registry %s (total=%d)",
                    definition.id, self.registry_id, self.collision_count,
                )
                self._events.append(
                    StructureCollisionDetected(
                        registry_id=self.registry_id,
                        structure_id=definition.id,
                        collision_count=self.collision_count,
                    )
                )
            self._entries[definition.id] = definition
            self._entries.move_to_end(definition.id)
            self.evict_if_over_capacity()

    def get(self, structure_id: str) -> Optional[StructureDefinition]:
        """Look up a definition and mark it as most recently used."""
        with self._lock:
            definition = self._entries.get(structure_id)
            if definition is None:
                self._misses += 1
                logger.debug("Registry %s miss for %s", self.registry_id, structure_id)
                return None
            self._hits += 1
            self._entries.move_to_end(structure_id)
            return definition

    def peek(self, structure_id: str) -> Optional[StructureDefinition]:
        """Look up a definition without touching LRU order."""
        with self._lock:
            return self._entries.get(structure_id)

    def evict_if_over_capacity(self) -> List[str]:
        """Drop least-recently-used definitions until within bound.

        Returns:
            Ids of evicted definitions, oldest first
        """
        evicted: List[str] = []
        with self._lock:
            while len(self._entries) > self.max_entries:
                structure_id, _ = self._entries.popitem(last=False)
                evicted.append(structure_id)
                self._evictions += 1
                self._events.append(
                    StructureEvicted(
                        registry_id=self.registry_id,
                        structure_id=structure_id,
                        occupancy=len(self._entries),
                        max_entries=self.max_entries,
                    )
                )
        if evicted:
            logger.info(
                "Registry %s evicted %d structure(s): %s",
                self.registry_id, len(evicted), ", ".join(evicted),
            )
        return evicted

    def remove(self, structure_id: str) -> bool:
        with self._lock:
            return self._entries.pop(structure_id, None) is not None

    def ids(self) -> List[str]:
        """Structure ids from least to most recently used."""
        with self._lock:
            return list(self._entries.keys())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    # -- portability -------------------------------------------------------

    def export_snapshot(self) -> Dict[str, Any]:
        """Serializable copy of the cache, in LRU order."""
        with self._lock:
            return {
                "version": SNAPSHOT_VERSION,
                "structures": [d.to_dict() for d in self._entries.values()],
            }

    def import_snapshot(self, snapshot: Mapping[str, Any]) -> int:
        """Load definitions from an exported snapshot.

        Entries are put in snapshot order, so the snapshot's LRU order
        is preserved and the size bound still applies.

        Returns:
            Number of definitions imported

        Raises:
            MalformedPacketError: If the snapshot is not valid
        """
        if not isinstance(snapshot, Mapping):
            raise MalformedPacketError("Registry snapshot must be a mapping")
        version = snapshot.get("version")
        if version != SNAPSHOT_VERSION:
            raise MalformedPacketError(f"Unsupported registry snapshot version: {version!r}")
        structures = snapshot.get("structures")
        if not isinstance(structures, list):
            raise MalformedPacketError("Registry snapshot 'structures' must be a list")

        # Parse everything first so a bad entry imports nothing
        definitions = [StructureDefinition.from_dict(item) for item in structures]
        self.put_all(definitions)
        return len(definitions)

    def put_all(self, definitions: Iterable[StructureDefinition]) -> None:
        with self._lock:
            for definition in definitions:
                self.put(definition)

    # -- events and stats --------------------------------------------------

    def get_events(self) -> List[object]:
        """Get and clear collected domain events."""
        with self._lock:
            events = list(self._events)
            self._events.clear()
            return events

    def stats(self) -> Dict[str, object]:
        with self._lock:
            return {
                "registry_id": self.registry_id,
                "entries": len(self._entries),
                "max_entries": self.max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "collision_count": self.collision_count,
                "created_at": self.created_at.isoformat(),
            }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, structure_id: object) -> bool:
        return structure_id in self._entries

    @classmethod
    def create_for_channel(cls, channel_id: str, max_entries: int = 100) -> StructureRegistry:
        """Factory method to create a registry owned by one channel."""
        return cls(registry_id=f"reg_{channel_id}", max_entries=max_entries)
