"""Value Objects for the Tracking Context."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping


@dataclass(frozen=True)
class Mutation:
    """Net effect of the writes made to one path during a session."""
    old_value: Any
    new_value: Any
    deleted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "old_value": self.old_value,
            "new_value": self.new_value,
            "deleted": self.deleted,
        }


@dataclass(frozen=True, eq=False)
class AccessPattern:
    """Immutable snapshot of what a session read and wrote.

    Attributes:
        accessed: Dot-paths that were read (membership only)
        mutated: Dot-path -> Mutation, one entry per written path
        timestamp: Milliseconds since the epoch when the snapshot was taken
    """
    accessed: FrozenSet[str] = frozenset()
    mutated: Mapping[str, Mutation] = field(default_factory=lambda: MappingProxyType({}))
    timestamp: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.mutated, MappingProxyType):
            object.__setattr__(self, "mutated", MappingProxyType(dict(self.mutated)))
        if not isinstance(self.accessed, frozenset):
            object.__setattr__(self, "accessed", frozenset(self.accessed))

    @property
    def paths(self) -> List[str]:
        """Sorted union of accessed and mutated paths."""
        return sorted(self.accessed | set(self.mutated))

    @property
    def is_empty(self) -> bool:
        return not self.accessed and not self.mutated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accessed": sorted(self.accessed),
            "mutated": {path: m.to_dict() for path, m in sorted(self.mutated.items())},
            "timestamp": self.timestamp,
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AccessPattern):
            return NotImplemented
        return (
            self.accessed == other.accessed
            and dict(self.mutated) == dict(other.mutated)
            and self.timestamp == other.timestamp
        )

    __hash__ = None  # type: ignore[assignment]
