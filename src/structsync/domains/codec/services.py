"""Codec Domain Service.

ValueCodec separates a value into its leaves, in exactly the order
ShapeHasher walks it, and puts them back together from a Shape.
"""
from __future__ import annotations

import builtins
import traceback
from datetime import date, datetime, time
from typing import Any, Dict, Iterator, List, Mapping, Sequence, Set

from structsync.domains.shape.value_objects import (
    OpaqueKind,
    Shape,
    ShapeKind,
    is_array,
    is_plain_object,
    opaque_kind_of,
    primitive_kind_of,
)
from structsync.domains.shared.kernel import (
    ROOT_PATH,
    CyclicStructureError,
    ShapeMismatchError,
    join_path,
)

from .value_objects import (
    CLASS_NAME_KEY,
    MARKER_KEY,
    VALUE_KEY,
    TypeMarker,
    is_marked,
)


class ValueCodec:
    """Flattens values into leaf lists and rebuilds them from shapes.

    Traversal order: object keys sorted lexicographically, array items
    in index order, depth-first. Opaque values (temporal, map, set,
    error) occupy exactly one leaf and are marshalled into tagged dicts.
    """

    # -- flatten -----------------------------------------------------------

    def flatten(self, value: Any) -> List[Any]:
        """Return the leaves of value in canonical traversal order."""
        leaves: List[Any] = []
        self._flatten_into(value, leaves, ROOT_PATH, set())
        return leaves

    def _flatten_into(
        self, value: Any, leaves: List[Any], path: str, ancestors: Set[int]
    ) -> None:
        if primitive_kind_of(value) is not None:
            leaves.append(value)
            return

        is_object = is_plain_object(value)
        if not is_object and not is_array(value):
            leaves.append(self.marshal(value))
            return

        marker = id(value)
        if marker in ancestors:
            raise CyclicStructureError(path)
        ancestors.add(marker)
        try:
            if is_object:
                for key in sorted(value):
                    self._flatten_into(value[key], leaves, join_path(path, key), ancestors)
            else:
                for index, item in enumerate(value):
                    self._flatten_into(item, leaves, join_path(path, index), ancestors)
        finally:
            ancestors.discard(marker)

    # -- unflatten ---------------------------------------------------------

    def unflatten(self, leaves: Sequence[Any], shape: Shape) -> Any:
        """Rebuild a value from its leaves.

        Raises:
            ShapeMismatchError: If the number of leaves does not match
                the number of leaf positions in the shape
        """
        if not isinstance(leaves, (list, tuple)):
            raise ShapeMismatchError(
                f"Leaves must be a sequence, got {type(leaves).__name__}"
            )
        expected = shape.leaf_count()
        if len(leaves) != expected:
            raise ShapeMismatchError(
                "Leaf count does not match shape", expected=expected, actual=len(leaves)
            )
        return self._rebuild(shape, iter(leaves))

    def _rebuild(self, shape: Shape, leaves: Iterator[Any]) -> Any:
        if shape.kind == ShapeKind.OBJECT:
            return {name: self._rebuild(child, leaves) for name, child in shape.fields}
        if shape.kind == ShapeKind.ARRAY:
            return [self._rebuild(child, leaves) for child in shape.items]
        try:
            leaf = next(leaves)
        except StopIteration:
            raise ShapeMismatchError("Ran out of leaves while rebuilding") from None
        if shape.kind == ShapeKind.OPAQUE:
            return self.revive(leaf)
        return leaf

    # -- special values ----------------------------------------------------

    def marshal(self, value: Any) -> Any:
        """Convert an opaque value into its tagged plain-data form.

        Unstructured values are returned unchanged; serializing them
        is left to the host.
        """
        kind = opaque_kind_of(value)
        if kind == OpaqueKind.TEMPORAL:
            if isinstance(value, datetime):
                marker = TypeMarker.DATETIME
            elif isinstance(value, date):
                marker = TypeMarker.DATE
            else:
                marker = TypeMarker.TIME
            return {MARKER_KEY: marker.value, VALUE_KEY: value.isoformat()}
        if kind == OpaqueKind.MAP:
            return {
                MARKER_KEY: TypeMarker.MAP.value,
                VALUE_KEY: [
                    [self._marshal_nested(k), self._marshal_nested(v)]
                    for k, v in value.items()
                ],
            }
        if kind == OpaqueKind.SET:
            payload = {
                MARKER_KEY: TypeMarker.SET.value,
                VALUE_KEY: [self._marshal_nested(item) for item in _ordered(value)],
            }
            if isinstance(value, frozenset):
                payload[CLASS_NAME_KEY] = "frozenset"
            return payload
        if kind == OpaqueKind.ERROR:
            return {MARKER_KEY: TypeMarker.ERROR.value, VALUE_KEY: _error_payload(value)}
        return value

    def marshal_leaf(self, value: Any) -> Any:
        """Marshal a single leaf value; primitives pass through."""
        if primitive_kind_of(value) is not None:
            return value
        return self.marshal(value)

    def _marshal_nested(self, value: Any) -> Any:
        if primitive_kind_of(value) is not None:
            return value
        if is_plain_object(value):
            return {k: self._marshal_nested(v) for k, v in value.items()}
        if is_array(value):
            return [self._marshal_nested(item) for item in value]
        return self.marshal(value)

    def revive(self, leaf: Any) -> Any:
        """Reconstruct the native value behind a tagged leaf."""
        if not is_marked(leaf):
            return leaf
        marker = TypeMarker(leaf[MARKER_KEY])
        payload = leaf[VALUE_KEY]

        if marker == TypeMarker.DATETIME:
            return datetime.fromisoformat(payload)
        if marker == TypeMarker.DATE:
            return date.fromisoformat(payload)
        if marker == TypeMarker.TIME:
            return time.fromisoformat(payload)
        if marker == TypeMarker.MAP:
            return {
                _hashable(self._revive_nested(k)): self._revive_nested(v)
                for k, v in (payload or [])
            }
        if marker == TypeMarker.SET:
            items = [_hashable(self._revive_nested(item)) for item in (payload or [])]
            if leaf.get(CLASS_NAME_KEY) == "frozenset":
                return frozenset(items)
            return set(items)
        return _revive_error(payload if isinstance(payload, Mapping) else {})

    def _revive_nested(self, value: Any) -> Any:
        if is_marked(value):
            return self.revive(value)
        if isinstance(value, list):
            return [self._revive_nested(item) for item in value]
        if isinstance(value, dict):
            return {k: self._revive_nested(v) for k, v in value.items()}
        return value


def _ordered(items) -> List[Any]:
    try:
        return sorted(items)
    except TypeError:
        return list(items)


def _hashable(value: Any) -> Any:
    # Tuples travel as lists; restore them where a hashable is needed.
    if isinstance(value, list):
        return tuple(_hashable(item) for item in value)
    return value


def _error_payload(exc: BaseException) -> Dict[str, Any]:
    if len(exc.args) == 1:
        message = str(exc.args[0])
    elif exc.args:
        message = str(exc)
    else:
        message = ""
    stack = None
    if exc.__traceback__ is not None:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return {"message": message, "name": type(exc).__name__, "stack": stack}


def _revive_error(payload: Mapping[str, Any]) -> BaseException:
    message = payload.get("message") or ""
    name = payload.get("name") or "Exception"
    candidate = getattr(builtins, name, None)
    if not (isinstance(candidate, type) and issubclass(candidate, BaseException)):
        candidate = Exception
    try:
        exc = candidate(message) if message else candidate()
    except TypeError:
        exc = Exception(message)
    exc.remote_name = name
    exc.remote_stack = payload.get("stack")
    return exc
