"""Codec Context - leaf flattening and special-value marshalling."""

from .value_objects import (
    CLASS_NAME_KEY,
    MARKER_KEY,
    VALUE_KEY,
    TypeMarker,
    is_marked,
)
from .services import ValueCodec

__all__ = [
    "CLASS_NAME_KEY",
    "MARKER_KEY",
    "VALUE_KEY",
    "TypeMarker",
    "is_marked",
    "ValueCodec",
]
