"""structsync - shape-aware transfer of repeatedly-shaped tree data."""

# domains must load before models: sync imports the config model
from structsync.domains import (  # noqa: F401
    EncodeContext,
    Packet,
    PacketType,
    RequestContext,
    StructSyncError,
    StructureRegistry,
    SyncChannel,
    SyncProtocol,
)
from structsync.models import SyncConfig  # noqa: F401

__all__ = [
    "EncodeContext",
    "Packet",
    "PacketType",
    "RequestContext",
    "StructSyncError",
    "StructureRegistry",
    "SyncChannel",
    "SyncConfig",
    "SyncProtocol",
]

__version__ = "0.1.0"
