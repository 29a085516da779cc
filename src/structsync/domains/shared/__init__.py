"""Shared Kernel - errors, dot-paths and literal aliases used by every context."""

from structsync.domains.shared.kernel import (
    PACKET_TYPES,
    ROOT_PATH,
    CyclicStructureError,
    MalformedPacketError,
    NegotiationModeLiteral,
    PacketTypeLiteral,
    PathSegment,
    ShapeMismatchError,
    StructSyncError,
    TrackerDisposedError,
    UnknownStructureError,
    UnsupportedPacketTypeError,
    format_path,
    is_addressable_key,
    join_path,
    normalize_str,
    split_path,
)

__all__ = [
    # Errors
    "StructSyncError",
    "ShapeMismatchError",
    "UnknownStructureError",
    "UnsupportedPacketTypeError",
    "TrackerDisposedError",
    "CyclicStructureError",
    "MalformedPacketError",
    # Paths
    "PathSegment",
    "ROOT_PATH",
    "join_path",
    "split_path",
    "format_path",
    "is_addressable_key",
    "normalize_str",
    # Literal aliases
    "PACKET_TYPES",
    "PacketTypeLiteral",
    "NegotiationModeLiteral",
]
