"""Sync Value Objects.

Packet is the wire unit. Its dict form (``to_dict``/``from_dict``)
uses the camelCase keys of the interchange format::

    {
      "type": "full" | "values-only" | "differential" | "primitive",
      "structureId": "...",
      "structure": {"id": "...", "shape": {...}},   # full only
      "values": ...,
      "paths": [...],                               # differential only
      "metadata": {"collisionCount": 0, "levels": 2, "timestamp": 0}
    }
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from structsync.domains.registry.entities import StructureDefinition
from structsync.domains.shared.kernel import (
    MalformedPacketError,
    NegotiationModeLiteral,
    PacketTypeLiteral,
    UnsupportedPacketTypeError,
)
from structsync.domains.tracking.value_objects import AccessPattern

PRIMITIVE_STRUCTURE_ID = "primitive"


class PacketType(Enum):
    """Packet discriminant."""
    FULL = "full"
    VALUES_ONLY = "values-only"
    DIFFERENTIAL = "differential"
    PRIMITIVE = "primitive"

    @classmethod
    def parse(cls, raw: Any) -> PacketType:
        """Parse a wire discriminant (case-insensitive).

        Raises:
            UnsupportedPacketTypeError: If the discriminant is unknown
        """
        if isinstance(raw, PacketType):
            return raw
        try:
            return cls(_PACKET_TYPE.validate_python(raw))
        except ValidationError:
            raise UnsupportedPacketTypeError(raw) from None


class NegotiationMode(Enum):
    """How the transport tells the sender what the receiver holds."""
    SINGLE = "single"  # one already-agreed knownStructureId
    LIST = "list"      # a list of knownStructures

    @classmethod
    def from_string(cls, value: str) -> NegotiationMode:
        return cls(_NEGOTIATION_MODE.validate_python(value))


_NEGOTIATION_MODE = TypeAdapter(NegotiationModeLiteral)
_PACKET_TYPE = TypeAdapter(PacketTypeLiteral)


@dataclass(frozen=True)
class PacketMetadata:
    """Diagnostics carried alongside full and differential packets."""
    collision_count: Optional[int] = None
    levels: Optional[int] = None
    timestamp: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.collision_count is not None:
            result["collisionCount"] = self.collision_count
        if self.levels is not None:
            result["levels"] = self.levels
        if self.timestamp is not None:
            result["timestamp"] = self.timestamp
        return result


class _WireMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    collisionCount: Optional[int] = None
    levels: Optional[int] = None
    timestamp: Optional[int] = None


class _WirePacket(BaseModel):
    model_config = ConfigDict(extra="ignore")

    structureId: str
    structure: Optional[Dict[str, Any]] = None
    values: Any
    paths: Optional[List[str]] = None
    metadata: Optional[_WireMetadata] = None


@dataclass(frozen=True)
class Packet:
    """One wire-level transfer unit produced by SyncProtocol.encode()."""
    type: PacketType
    structure_id: str
    values: Any
    structure: Optional[StructureDefinition] = None
    paths: Optional[List[str]] = None
    metadata: Optional[PacketMetadata] = None

    def to_dict(self) -> Dict[str, Any]:
        """Wire form, omitting optional fields that are not set."""
        result: Dict[str, Any] = {
            "type": self.type.value,
            "structureId": self.structure_id,
        }
        if self.structure is not None:
            result["structure"] = self.structure.to_dict()
        result["values"] = self.values
        if self.paths is not None:
            result["paths"] = list(self.paths)
        if self.metadata is not None:
            result["metadata"] = self.metadata.to_dict()
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Packet:
        """Parse and validate a wire packet.

        Raises:
            UnsupportedPacketTypeError: If ``type`` is not recognised
            MalformedPacketError: If the packet fails validation
        """
        if not isinstance(data, Mapping):
            raise MalformedPacketError(f"Packet must be a mapping, got {type(data).__name__}")
        if "type" not in data:
            raise MalformedPacketError("Packet has no 'type' field")
        packet_type = PacketType.parse(data["type"])
        try:
            wire = _WirePacket.model_validate(dict(data))
        except ValidationError as e:
            raise MalformedPacketError(f"Invalid packet: {e}") from e

        structure = None
        if wire.structure is not None:
            structure = StructureDefinition.from_dict(wire.structure)
        metadata = None
        if wire.metadata is not None:
            metadata = PacketMetadata(
                collision_count=wire.metadata.collisionCount,
                levels=wire.metadata.levels,
                timestamp=wire.metadata.timestamp,
            )
        return cls(
            type=packet_type,
            structure_id=wire.structureId,
            values=wire.values,
            structure=structure,
            paths=wire.paths,
            metadata=metadata,
        )

    @classmethod
    def coerce(cls, packet: Union[Packet, Mapping[str, Any]]) -> Packet:
        if isinstance(packet, Packet):
            return packet
        return cls.from_dict(packet)


@dataclass(frozen=True, eq=False)
class EncodeContext:
    """What the sender knows about the receiver for one encode call.

    Attributes:
        known: Structure ids the receiver is assumed to already hold
        access_pattern: Pattern supplied by the mutable-state layer;
            when absent, the pattern is read from the value's tracker
        request_id: Correlation id for logging
    """
    known: FrozenSet[str] = frozenset()
    access_pattern: Optional[AccessPattern] = None
    request_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.known, frozenset):
            object.__setattr__(self, "known", frozenset(self.known))

    @classmethod
    def empty(cls) -> EncodeContext:
        return cls()

    @classmethod
    def from_known(cls, known: Iterable[str], **kwargs: Any) -> EncodeContext:
        return cls(known=frozenset(known), **kwargs)

    @classmethod
    def single(cls, known_structure_id: Optional[str], **kwargs: Any) -> EncodeContext:
        """Context for the single-agreed-id negotiation mode."""
        known = frozenset([known_structure_id]) if known_structure_id else frozenset()
        return cls(known=known, **kwargs)

    @classmethod
    def from_hint(
        cls,
        hint: Union[None, str, Iterable[str]],
        mode: NegotiationMode = NegotiationMode.LIST,
        **kwargs: Any,
    ) -> EncodeContext:
        """Build a context from a transport hint.

        In LIST mode a string hint is a comma-separated id list. In
        SINGLE mode the hint must name at most one id.

        Raises:
            ValueError: If a SINGLE-mode hint names more than one id
        """
        if hint is None:
            ids: List[str] = []
        elif isinstance(hint, str) and mode == NegotiationMode.LIST:
            ids = [part.strip() for part in hint.split(",")]
        elif isinstance(hint, str):
            ids = [hint.strip()]
        else:
            ids = [str(part).strip() for part in hint]
        ids = [i for i in ids if i]
        if mode == NegotiationMode.SINGLE:
            if len(ids) > 1:
                raise ValueError(
                    f"Single negotiation mode accepts one known structure id, got {len(ids)}"
                )
            return cls.single(ids[0] if ids else None, **kwargs)
        return cls.from_known(ids, **kwargs)


@dataclass(frozen=True)
class TransferEstimate:
    """Byte sizes of a value sent as plain JSON vs. as a packet."""
    raw_bytes: int
    packet_bytes: int

    @classmethod
    def measure(cls, raw_value: Any, packet: Packet) -> TransferEstimate:
        try:
            raw = json.dumps(raw_value, separators=(",", ":"), default=str)
        except (TypeError, ValueError):
            # Non-string map keys; an approximate size is good enough here
            raw = str(raw_value)
        return cls(
            raw_bytes=len(raw.encode("utf-8")),
            packet_bytes=len(packet.to_json().encode("utf-8")),
        )

    @property
    def bytes_saved(self) -> int:
        return self.raw_bytes - self.packet_bytes

    @property
    def savings_ratio(self) -> float:
        if self.raw_bytes == 0:
            return 0.0
        return 1.0 - (self.packet_bytes / self.raw_bytes)
