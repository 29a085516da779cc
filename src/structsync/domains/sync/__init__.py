"""Sync Context - full, values-only and differential packet exchange.

This bounded context manages:
- Packet wire format and validation
- The encode/decode state machine (SyncProtocol)
- Per-channel route index, fallback policy and pattern history (SyncChannel)
- Transfer-size events
"""

from .value_objects import (
    PRIMITIVE_STRUCTURE_ID,
    EncodeContext,
    NegotiationMode,
    Packet,
    PacketMetadata,
    PacketType,
    TransferEstimate,
)
from .events import FullTransferFallback, PacketDecoded, PacketEncoded
from .services import SyncProtocol, differential_paths, is_path_addressable
from .aggregates import SyncChannel

__all__ = [
    # Value Objects
    "PRIMITIVE_STRUCTURE_ID",
    "EncodeContext",
    "NegotiationMode",
    "Packet",
    "PacketMetadata",
    "PacketType",
    "TransferEstimate",
    # Events
    "PacketEncoded",
    "PacketDecoded",
    "FullTransferFallback",
    # Services
    "SyncProtocol",
    "differential_paths",
    "is_path_addressable",
    # Aggregates
    "SyncChannel",
]
