"""Entities for the Registry Context."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping

from structsync.domains.shape.value_objects import Shape
from structsync.domains.shared.kernel import MalformedPacketError


@dataclass(frozen=True)
class StructureDefinition:
    """A structure id paired with the shape it was derived from.

    This is the unit cached by a StructureRegistry and carried in the
    ``structure`` field of full packets.
    """
    id: str
    shape: Shape

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("StructureDefinition id cannot be empty")

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "shape": self.shape.to_dict()}

    @classmethod
    def from_dict(cls, data: Any) -> StructureDefinition:
        """Parse a wire-format definition.

        Raises:
            MalformedPacketError: If the payload is not a valid definition
        """
        if isinstance(data, StructureDefinition):
            return data
        if not isinstance(data, Mapping) or "id" not in data or "shape" not in data:
            raise MalformedPacketError(f"Invalid structure definition: {data!r}")
        structure_id = data["id"]
        if not isinstance(structure_id, str) or not structure_id:
            raise MalformedPacketError("Structure definition id must be a non-empty string")
        return cls(id=structure_id, shape=Shape.from_dict(data["shape"]))
