"""Sync Domain Events."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class PacketEncoded:
    """Emitted after every successful encode."""
    structure_id: str
    packet_type: str
    raw_bytes: int
    packet_bytes: int
    savings_ratio: float
    request_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "PacketEncoded",
            "structure_id": self.structure_id,
            "packet_type": self.packet_type,
            "raw_bytes": self.raw_bytes,
            "packet_bytes": self.packet_bytes,
            "savings_ratio": round(self.savings_ratio, 4),
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class PacketDecoded:
    """Emitted after every successful decode."""
    structure_id: str
    packet_type: str
    raw_bytes: int
    packet_bytes: int
    savings_ratio: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "PacketDecoded",
            "structure_id": self.structure_id,
            "packet_type": self.packet_type,
            "raw_bytes": self.raw_bytes,
            "packet_bytes": self.packet_bytes,
            "savings_ratio": round(self.savings_ratio, 4),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class FullTransferFallback:
    """Emitted when a channel drops a route after an unknown structure."""
    channel_id: str
    structure_id: str
    route: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "FullTransferFallback",
            "channel_id": self.channel_id,
            "structure_id": self.structure_id,
            "route": self.route,
            "timestamp": self.timestamp.isoformat(),
        }
