"""Bounded contexts for structure-aware transfer.

This package contains:
- Shape Context: canonical shapes and structure ids
- Codec Context: leaf flattening and special-value marshalling
- Registry Context: bounded per-channel structure cache
- Tracking Context: read/write access tracking over live objects
- Sync Context: packet encode/decode and channel state
"""

from structsync.domains.shared import (
    CyclicStructureError,
    MalformedPacketError,
    ShapeMismatchError,
    StructSyncError,
    TrackerDisposedError,
    UnknownStructureError,
    UnsupportedPacketTypeError,
)

from structsync.domains.shape import (
    OpaqueKind,
    Shape,
    ShapeHasher,
    ShapeKind,
    StructureInfo,
)

from structsync.domains.codec import TypeMarker, ValueCodec

from structsync.domains.registry import (
    InMemoryStructureRegistryRepository,
    StructureCollisionDetected,
    StructureDefinition,
    StructureEvicted,
    StructureRegistered,
    StructureRegistry,
    StructureRegistryRepository,
)

from structsync.domains.tracking import (
    AccessPattern,
    AccessTracker,
    Mutation,
    RequestContext,
    TrackedDict,
    TrackedList,
    TrackerTable,
    unwrap,
)

from structsync.domains.sync import (
    EncodeContext,
    FullTransferFallback,
    NegotiationMode,
    Packet,
    PacketDecoded,
    PacketEncoded,
    PacketMetadata,
    PacketType,
    SyncChannel,
    SyncProtocol,
    TransferEstimate,
)

__all__ = [
    # Shared
    "StructSyncError",
    "ShapeMismatchError",
    "UnknownStructureError",
    "UnsupportedPacketTypeError",
    "TrackerDisposedError",
    "CyclicStructureError",
    "MalformedPacketError",
    # Shape
    "OpaqueKind",
    "Shape",
    "ShapeHasher",
    "ShapeKind",
    "StructureInfo",
    # Codec
    "TypeMarker",
    "ValueCodec",
    # Registry
    "StructureDefinition",
    "StructureRegistry",
    "StructureRegistryRepository",
    "InMemoryStructureRegistryRepository",
    "StructureRegistered",
    "StructureEvicted",
    "StructureCollisionDetected",
    # Tracking
    "AccessPattern",
    "AccessTracker",
    "Mutation",
    "RequestContext",
    "TrackedDict",
    "TrackedList",
    "TrackerTable",
    "unwrap",
    # Sync
    "EncodeContext",
    "NegotiationMode",
    "Packet",
    "PacketMetadata",
    "PacketType",
    "TransferEstimate",
    "PacketEncoded",
    "PacketDecoded",
    "FullTransferFallback",
    "SyncProtocol",
    "SyncChannel",
]
