"""Domain Events for the Registry Context.

Events are recorded by the StructureRegistry aggregate and drained by
callers via ``get_events()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict


@dataclass(frozen=True)
class StructureRegistered:
    """Emitted when a definition is added to a registry."""
    registry_id: str
    structure_id: str
    leaf_count: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "StructureRegistered",
            "registry_id": self.registry_id,
            "structure_id": self.structure_id,
            "leaf_count": self.leaf_count,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class StructureEvicted:
    """Emitted when the size bound forces a definition out."""
    registry_id: str
    structure_id: str
    occupancy: int
    max_entries: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "StructureEvicted",
            "registry_id": self.registry_id,
            "structure_id": self.structure_id,
            "occupancy": self.occupancy,
            "max_entries": self.max_entries,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class StructureCollisionDetected:
    """Emitted when two different shapes arrive under one structure id."""
    registry_id: str
    structure_id: str
    collision_count: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "StructureCollisionDetected",
            "registry_id": self.registry_id,
            "structure_id": self.structure_id,
            "collision_count": self.collision_count,
            "timestamp": self.timestamp.isoformat(),
        }
