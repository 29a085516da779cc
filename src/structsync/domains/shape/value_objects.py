"""Value Objects for the Shape Context.

A Shape is the canonical, value-independent description of a tree:
which keys exist, how they nest and which primitive type sits at
each leaf. Shapes are immutable and hashable so they can be compared
and cached cheaply.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from structsync.domains.shared.kernel import MalformedPacketError


class ShapeKind(Enum):
    """Node kinds that can appear in a Shape tree."""
    NULL = "null"
    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"
    OPAQUE = "opaque"

    @property
    def is_container(self) -> bool:
        return self in (ShapeKind.ARRAY, ShapeKind.OBJECT)


class OpaqueKind(Enum):
    """Closed set of special values treated as atomic leaves.

    UNSTRUCTURED is the fallback for any value that is neither a
    primitive, a container, nor one of the recognised special kinds.
    """
    TEMPORAL = "temporal"
    MAP = "map"
    SET = "set"
    ERROR = "error"
    UNSTRUCTURED = "unstructured"


PRIMITIVE_TYPES = (type(None), bool, int, float, str)


def primitive_kind_of(value: Any) -> Optional[ShapeKind]:
    """Return the primitive ShapeKind of a value, or None if not primitive."""
    if value is None:
        return ShapeKind.NULL
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return ShapeKind.BOOLEAN
    if isinstance(value, (int, float)):
        return ShapeKind.NUMBER
    if isinstance(value, str):
        return ShapeKind.STRING
    return None


def is_plain_object(value: Any) -> bool:
    """A plain keyed node is a dict whose keys are all strings."""
    return isinstance(value, dict) and all(isinstance(k, str) for k in value)


def is_array(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def is_composite(value: Any) -> bool:
    """True for anything that is not a bare primitive."""
    return primitive_kind_of(value) is None


def opaque_kind_of(value: Any) -> Optional[OpaqueKind]:
    """Classify a value into an OpaqueKind.

    Returns None for primitives, arrays and plain keyed nodes, which
    are traversed rather than treated as atomic.
    """
    if primitive_kind_of(value) is not None:
        return None
    if is_array(value) or is_plain_object(value):
        return None
    if isinstance(value, (datetime, date, time)):
        return OpaqueKind.TEMPORAL
    if isinstance(value, Mapping):
        return OpaqueKind.MAP
    if isinstance(value, (set, frozenset)):
        return OpaqueKind.SET
    if isinstance(value, BaseException):
        return OpaqueKind.ERROR
    return OpaqueKind.UNSTRUCTURED


@dataclass(frozen=True)
class Shape:
    """Canonical description of a tree's topology.

    Object fields are stored as a tuple of (name, Shape) pairs sorted
    lexicographically by name; this ordering is what makes structure
    ids independent of the original key insertion order.
    """
    kind: ShapeKind
    fields: Tuple[Tuple[str, "Shape"], ...] = ()
    items: Tuple["Shape", ...] = ()

    def __post_init__(self) -> None:
        if self.fields and self.kind != ShapeKind.OBJECT:
            raise ValueError(f"Only object shapes carry fields, got kind={self.kind.value}")
        if self.items and self.kind != ShapeKind.ARRAY:
            raise ValueError(f"Only array shapes carry items, got kind={self.kind.value}")
        names = [name for name, _ in self.fields]
        if names != sorted(names):
            raise ValueError("Object shape fields must be sorted by name")

    # -- factories ---------------------------------------------------------

    @classmethod
    def leaf(cls, kind: ShapeKind) -> Shape:
        if kind.is_container:
            raise ValueError(f"{kind.value} is not a leaf kind")
        return cls(kind=kind)

    @classmethod
    def array(cls, items) -> Shape:
        return cls(kind=ShapeKind.ARRAY, items=tuple(items))

    @classmethod
    def object(cls, fields: Mapping[str, Shape]) -> Shape:
        return cls(
            kind=ShapeKind.OBJECT,
            fields=tuple(sorted(fields.items(), key=lambda kv: kv[0])),
        )

    # -- queries -----------------------------------------------------------

    @property
    def is_leaf(self) -> bool:
        return not self.kind.is_container

    @property
    def field_map(self) -> Dict[str, Shape]:
        return dict(self.fields)

    def leaf_count(self) -> int:
        """Number of leaf positions, i.e. the length of a flattened value."""
        if self.kind == ShapeKind.OBJECT:
            return sum(child.leaf_count() for _, child in self.fields)
        if self.kind == ShapeKind.ARRAY:
            return sum(child.leaf_count() for child in self.items)
        return 1

    # -- serialization -----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        if self.kind == ShapeKind.OBJECT:
            return {
                "kind": self.kind.value,
                "fields": {name: child.to_dict() for name, child in self.fields},
            }
        if self.kind == ShapeKind.ARRAY:
            return {
                "kind": self.kind.value,
                "items": [child.to_dict() for child in self.items],
            }
        return {"kind": self.kind.value}

    def canonical_json(self) -> str:
        """Sorted-key, whitespace-free serialization used for hashing."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Any) -> Shape:
        """Parse a wire-format shape tree.

        Raises:
            MalformedPacketError: If the tree is not a valid shape
        """
        if not isinstance(data, Mapping) or "kind" not in data:
            raise MalformedPacketError(f"Invalid shape node: {data!r}")
        try:
            kind = ShapeKind(data["kind"])
        except ValueError:
            raise MalformedPacketError(f"Unknown shape kind: {data['kind']!r}") from None

        if kind == ShapeKind.OBJECT:
            fields = data.get("fields", {})
            if not isinstance(fields, Mapping):
                raise MalformedPacketError("Object shape 'fields' must be a mapping")
            return cls.object({str(k): cls.from_dict(v) for k, v in fields.items()})
        if kind == ShapeKind.ARRAY:
            items = data.get("items", [])
            if not isinstance(items, (list, tuple)):
                raise MalformedPacketError("Array shape 'items' must be a list")
            return cls.array(cls.from_dict(item) for item in items)
        return cls.leaf(kind)


@dataclass(frozen=True)
class StructureInfo:
    """Summary of a value's structure: identity plus diagnostics."""
    id: str
    levels: int
    collision_count: int = 0
    signature: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "levels": self.levels,
            "collision_count": self.collision_count,
            "signature": self.signature,
        }
