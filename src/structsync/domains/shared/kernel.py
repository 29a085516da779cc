"""Shared Kernel - Core types shared across bounded contexts.

These types are intentionally minimal and shared between:
- Shape Context (raises CyclicStructureError)
- Codec Context (raises ShapeMismatchError)
- Registry / Sync Contexts (raise UnknownStructureError and friends)
- Tracking Context (raises TrackerDisposedError, builds dot-paths)
"""

from __future__ import annotations

from typing import Annotated, Any, List, Literal, Optional, Sequence, Union

from pydantic import BeforeValidator


# ============================================================
# Error taxonomy
# ============================================================


class StructSyncError(Exception):
    """Base class for every error raised by structsync."""


class ShapeMismatchError(StructSyncError):
    """Leaf sequence and shape disagree during reconstruction.

    Also raised when a differential patch names a path that does not
    exist in the previously materialized object.

    Attributes:
        expected: Number of leaves the shape asked for (if known)
        actual: Number of leaves supplied (if known)
    """

    def __init__(
        self,
        message: str,
        expected: Optional[int] = None,
        actual: Optional[int] = None,
    ) -> None:
        self.expected = expected
        self.actual = actual
        if expected is not None and actual is not None:
            message = f"{message} (expected={expected}, actual={actual})"
        super().__init__(message)


class UnknownStructureError(StructSyncError):
    """A packet references a structure the local side does not hold.

    Recovery is a caller decision: request a full transfer for the
    route and try again.
    """

    def __init__(self, structure_id: str, message: Optional[str] = None) -> None:
        self.structure_id = structure_id
        super().__init__(
            message
            or f"Unknown structure id: '{structure_id}'. A full transfer is required."
        )

    def __repr__(self) -> str:
        return f"UnknownStructureError(structure_id={self.structure_id!r})"


class UnsupportedPacketTypeError(StructSyncError):
    """The packet carries a type discriminant we do not understand."""

    def __init__(self, packet_type: Any) -> None:
        self.packet_type = packet_type
        super().__init__(
            f"Unsupported packet type: {packet_type!r}. "
            f"Valid types: {list(PACKET_TYPES)}"
        )


class TrackerDisposedError(StructSyncError):
    """An access was recorded or queried after the tracker was disposed."""

    def __init__(self, token: str) -> None:
        self.token = token
        super().__init__(f"Access tracker '{token}' has been disposed")


class CyclicStructureError(StructSyncError):
    """A value refers back to one of its own ancestors."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Cyclic reference detected at path '{path or '<root>'}'")


class MalformedPacketError(StructSyncError):
    """A wire packet or registry snapshot failed validation."""


# ============================================================
# Dot-paths
# ============================================================

PathSegment = Union[str, int]

ROOT_PATH = ""


def join_path(parent: str, segment: PathSegment) -> str:
    """Append one segment to a dot-path."""
    if parent == ROOT_PATH:
        return str(segment)
    return f"{parent}.{segment}"


def split_path(path: str) -> List[str]:
    """Split a dot-path into its raw string segments."""
    if path == ROOT_PATH:
        return []
    return path.split(".")


def format_path(segments: Sequence[PathSegment]) -> str:
    return ".".join(str(s) for s in segments)


def is_addressable_key(key: str) -> bool:
    """True if a dot-path segment can name this object key unambiguously."""
    return bool(key) and "." not in key


# ============================================================
# Literal type aliases
# ============================================================
#
# BeforeValidator normalizes wrong-case input from the wire or
# from config files before the Literal check runs.
# ============================================================


def normalize_str(v: Any) -> Any:
    """Normalize string input: strip whitespace, lowercase."""
    return v.strip().lower() if isinstance(v, str) else v


PACKET_TYPES = ("full", "values-only", "differential", "primitive")

PacketTypeLiteral = Annotated[
    Literal["full", "values-only", "differential", "primitive"],
    BeforeValidator(normalize_str),
]

NegotiationModeLiteral = Annotated[
    Literal["single", "list"],
    BeforeValidator(normalize_str),
]
