"""Registry Context - bounded, per-channel cache of structure definitions.

This bounded context manages:
- StructureDefinition entities (id + shape)
- LRU eviction under a configured size bound
- Structure id collision detection
- Snapshot export/import for hosts that persist the cache
"""

# Entities
from structsync.domains.registry.entities import StructureDefinition

# Aggregates
from structsync.domains.registry.aggregates import StructureRegistry

# Domain Events
from structsync.domains.registry.events import (
    StructureCollisionDetected,
    StructureEvicted,
    StructureRegistered,
)

# Repository
from structsync.domains.registry.repository import (
    InMemoryStructureRegistryRepository,
    StructureRegistryRepository,
)

__all__ = [
    "StructureDefinition",
    "StructureRegistry",
    "StructureRegistered",
    "StructureEvicted",
    "StructureCollisionDetected",
    "StructureRegistryRepository",
    "InMemoryStructureRegistryRepository",
]
