"""Codec Value Objects.

Special values travel as small tagged dicts so that any JSON encoder
can carry them::

    {"__type": "DateTime", "value": "2024-01-01T10:00:00"}
    {"__type": "Set", "value": [1, 2, 3], "className": "frozenset"}
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from structsync.domains.shape.value_objects import OpaqueKind

MARKER_KEY = "__type"
VALUE_KEY = "value"
CLASS_NAME_KEY = "className"


class TypeMarker(Enum):
    """Tag written into marshalled special values."""
    DATETIME = "DateTime"
    DATE = "Date"
    TIME = "Time"
    MAP = "Map"
    SET = "Set"
    ERROR = "Error"

    @property
    def opaque_kind(self) -> OpaqueKind:
        return _MARKER_KINDS[self]

    @classmethod
    def from_value(cls, raw: Any) -> Optional[TypeMarker]:
        try:
            return cls(raw)
        except ValueError:
            return None


_MARKER_KINDS = {
    TypeMarker.DATETIME: OpaqueKind.TEMPORAL,
    TypeMarker.DATE: OpaqueKind.TEMPORAL,
    TypeMarker.TIME: OpaqueKind.TEMPORAL,
    TypeMarker.MAP: OpaqueKind.MAP,
    TypeMarker.SET: OpaqueKind.SET,
    TypeMarker.ERROR: OpaqueKind.ERROR,
}


def is_marked(value: Any) -> bool:
    """True if value looks like a marshalled special value."""
    return (
        isinstance(value, dict)
        and VALUE_KEY in value
        and TypeMarker.from_value(value.get(MARKER_KEY)) is not None
    )
