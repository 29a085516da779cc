"""Shape Context - canonical shapes and stable structure ids.

This bounded context manages:
- Canonical, value-independent Shape trees (sorted object fields)
- Structure ids derived from the canonical serialization
- Secondary signatures for collision diagnostics
- Nesting depth (levels)
"""

from .value_objects import (
    OpaqueKind,
    Shape,
    ShapeKind,
    StructureInfo,
    is_array,
    is_composite,
    is_plain_object,
    opaque_kind_of,
    primitive_kind_of,
)
from .services import ShapeHasher, blake2b_digest, sha256_digest

__all__ = [
    "OpaqueKind",
    "Shape",
    "ShapeKind",
    "StructureInfo",
    "is_array",
    "is_composite",
    "is_plain_object",
    "opaque_kind_of",
    "primitive_kind_of",
    "ShapeHasher",
    "sha256_digest",
    "blake2b_digest",
]
