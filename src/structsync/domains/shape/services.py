"""Shape Domain Service.

ShapeHasher turns arbitrary values into canonical Shape trees and
derives stable structure ids from them.
"""
from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING, Any, Callable, Optional, Set

from structsync.domains.shared.kernel import (
    ROOT_PATH,
    CyclicStructureError,
    join_path,
)

from .value_objects import (
    Shape,
    ShapeKind,
    StructureInfo,
    is_array,
    is_plain_object,
    primitive_kind_of,
)

if TYPE_CHECKING:
    from structsync.domains.registry.aggregates import StructureRegistry
    from structsync.domains.registry.entities import StructureDefinition

Digest = Callable[[bytes], str]


def sha256_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def blake2b_digest(data: bytes) -> str:
    return hashlib.blake2b(data, digest_size=8).hexdigest()


class ShapeHasher:
    """Computes shapes, structure ids and nesting depth.

    Pure with respect to its input: two calls on equal values always
    agree, so a single hasher can be shared between sessions.

    Args:
        id_length: Hex characters kept from the primary digest
        digest: Primary digest function (bytes -> hex string)
        signature_digest: Secondary digest used to tell colliding
            shapes apart
    """

    def __init__(
        self,
        id_length: int = 16,
        digest: Optional[Digest] = None,
        signature_digest: Optional[Digest] = None,
    ) -> None:
        if id_length <= 0:
            raise ValueError("id_length must be positive")
        self.id_length = id_length
        self._digest = digest or sha256_digest
        self._signature_digest = signature_digest or blake2b_digest

    def shape_of(self, value: Any) -> Shape:
        """Build the canonical Shape of a value.

        Raises:
            CyclicStructureError: If the value contains itself
        """
        return self._shape_of(value, ROOT_PATH, set())

    def _shape_of(self, value: Any, path: str, ancestors: Set[int]) -> Shape:
        kind = primitive_kind_of(value)
        if kind is not None:
            return Shape.leaf(kind)

        is_object = is_plain_object(value)
        if not is_object and not is_array(value):
            # Temporal, map, set, error and anything unrecognised
            return Shape.leaf(ShapeKind.OPAQUE)

        marker = id(value)
        if marker in ancestors:
            raise CyclicStructureError(path)
        ancestors.add(marker)
        try:
            if is_object:
                return Shape.object({
                    key: self._shape_of(value[key], join_path(path, key), ancestors)
                    for key in value
                })
            return Shape.array(
                self._shape_of(item, join_path(path, index), ancestors)
                for index, item in enumerate(value)
            )
        finally:
            ancestors.discard(marker)

    def id_of(self, shape: Shape) -> str:
        """Stable structure id for a shape."""
        return self._digest(shape.canonical_json().encode("utf-8"))[: self.id_length]

    def signature_of(self, shape: Shape) -> str:
        """Secondary signature, independent of the primary id digest."""
        return self._signature_digest(shape.canonical_json().encode("utf-8"))

    def levels_of(self, shape: Shape) -> int:
        """Maximum nesting depth; leaves are depth 0."""
        if shape.kind == ShapeKind.OBJECT:
            return 1 + max((self.levels_of(child) for _, child in shape.fields), default=0)
        if shape.kind == ShapeKind.ARRAY:
            return 1 + max((self.levels_of(child) for child in shape.items), default=0)
        return 0

    def definition_of(self, value: Any) -> "StructureDefinition":
        from structsync.domains.registry.entities import StructureDefinition

        shape = self.shape_of(value)
        return StructureDefinition(id=self.id_of(shape), shape=shape)

    def structure_info(
        self,
        value: Any,
        registry: Optional["StructureRegistry"] = None,
    ) -> StructureInfo:
        """Describe a value's structure.

        The collision count comes from the registry, since collisions
        are only observable against what a registry has already seen.
        """
        shape = self.shape_of(value)
        return StructureInfo(
            id=self.id_of(shape),
            levels=self.levels_of(shape),
            collision_count=registry.collision_count if registry is not None else 0,
            signature=self.signature_of(shape),
        )

