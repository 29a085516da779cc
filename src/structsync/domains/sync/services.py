"""Sync Domain Service.

SyncProtocol is one endpoint of one channel. On the sending side it
decides, per value, between a full packet (shape + values), a
values-only packet (the receiver already holds the shape) and a
differential packet (only the leaves a tracked session touched). On
the receiving side it turns packets back into values.
"""
from __future__ import annotations

import copy
import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Union

from structsync.domains.codec.services import ValueCodec
from structsync.domains.registry.aggregates import StructureRegistry
from structsync.domains.registry.entities import StructureDefinition
from structsync.domains.shape.services import ShapeHasher
from structsync.domains.shape.value_objects import (
    Shape,
    ShapeKind,
    StructureInfo,
    is_array,
    is_composite,
    is_plain_object,
)
from structsync.domains.shared.kernel import (
    ROOT_PATH,
    MalformedPacketError,
    ShapeMismatchError,
    UnknownStructureError,
    UnsupportedPacketTypeError,
    format_path,
    is_addressable_key,
    join_path,
    split_path,
)
from structsync.domains.tracking.services import tracked_path, tracker_of, unwrap
from structsync.domains.tracking.value_objects import AccessPattern
from structsync.models.config_models import SyncConfig

from .events import PacketDecoded, PacketEncoded
from .value_objects import (
    PRIMITIVE_STRUCTURE_ID,
    EncodeContext,
    Packet,
    PacketMetadata,
    PacketType,
    TransferEstimate,
)

logger = logging.getLogger(__name__)

_MISSING = object()


class SyncProtocol:
    """Encodes values into packets and decodes packets into values.

    Sender state: for each structure id, the tracker token (if any)
    whose value the receiver materialized last. A differential packet
    is only produced for that tracker.

    Receiver state: the last object materialized for each structure
    id, used as the base for differential packets.

    Args:
        registry: Structure cache for this endpoint
        config: Protocol configuration
        hasher: Shape hasher (built from config.id_length if omitted)
        codec: Value codec
        event_publisher: Optional callback receiving domain events
    """

    def __init__(
        self,
        registry: Optional[StructureRegistry] = None,
        config: Optional[SyncConfig] = None,
        hasher: Optional[ShapeHasher] = None,
        codec: Optional[ValueCodec] = None,
        event_publisher: Optional[Callable[[object], None]] = None,
    ) -> None:
        self.config = config or SyncConfig()
        self.registry = registry if registry is not None else StructureRegistry(
            max_entries=self.config.max_registry_entries
        )
        self.hasher = hasher or ShapeHasher(id_length=self.config.id_length)
        self.codec = codec or ValueCodec()
        self._event_publisher = event_publisher
        self._holders: "OrderedDict[str, Optional[str]]" = OrderedDict()
        self._materialized: "OrderedDict[str, Any]" = OrderedDict()
        self._lock = threading.Lock()

    # ============================================================
    # Encode
    # ============================================================

    def encode(self, value: Any, context: Optional[EncodeContext] = None) -> Packet:
        """Encode a value for the receiver described by context.

        Raises:
            CyclicStructureError: If the value contains itself
            TrackerDisposedError: If a tracked value's tracker is read
                after disposal
        """
        context = context or EncodeContext.empty()
        raw = unwrap(value)

        if not is_composite(raw):
            packet = Packet(
                type=PacketType.PRIMITIVE,
                structure_id=PRIMITIVE_STRUCTURE_ID,
                values=raw,
            )
            self._publish_encoded(raw, packet, context)
            return packet

        shape = self.hasher.shape_of(raw)
        structure_id = self.hasher.id_of(shape)
        definition = StructureDefinition(id=structure_id, shape=shape)
        token = self._root_token(value)

        existing = self.registry.peek(structure_id)
        collides = existing is not None and existing.shape != shape
        if collides:
            logger.warning(
                "Structure id %s maps to a different shape locally; sending full",
                structure_id,
            )

        if (
            not self.config.enabled
            or structure_id not in context.known
            or collides
        ):
            packet = self._full_packet(raw, definition, collides)
            self.registry.put(definition)
            self._remember_holder(structure_id, token)
        else:
            pattern = self._pattern_for(value, structure_id, token, context)
            paths = self._differential_paths_for(raw, shape, pattern)
            if paths is not None:
                packet = self._differential_packet(raw, definition, pattern, paths)
            else:
                packet = Packet(
                    type=PacketType.VALUES_ONLY,
                    structure_id=structure_id,
                    values=self.codec.flatten(raw),
                )
                if token is None or self._holders.get(structure_id) != token:
                    self._remember_holder(structure_id, None)
            if self.registry.get(structure_id) is None:
                self.registry.put(definition)

        logger.debug(
            "Encoded %s as %s packet (request=%s)",
            structure_id, packet.type.value, context.request_id,
        )
        self._publish_encoded(raw, packet, context)
        return packet

    def _full_packet(
        self, raw: Any, definition: StructureDefinition, collides: bool
    ) -> Packet:
        collision_count = self.registry.collision_count + (1 if collides else 0)
        return Packet(
            type=PacketType.FULL,
            structure_id=definition.id,
            structure=definition,
            values=self.codec.flatten(raw),
            metadata=PacketMetadata(
                collision_count=collision_count,
                levels=self.hasher.levels_of(definition.shape),
            ),
        )

    def _differential_paths_for(
        self, raw: Any, shape: Shape, pattern: Optional[AccessPattern]
    ) -> Optional[List[str]]:
        if pattern is None:
            return None
        if not is_path_addressable(shape):
            logger.debug("Shape has keys a dot-path cannot name; sending values-only")
            return None
        paths = differential_paths(raw, pattern)
        if paths is None:
            logger.debug("Written path no longer resolves; sending values-only")
        return paths

    def _differential_packet(
        self,
        raw: Any,
        definition: StructureDefinition,
        pattern: AccessPattern,
        paths: List[str],
    ) -> Packet:
        values = {
            path: self.codec.marshal_leaf(_resolve(raw, path)) for path in paths
        }
        return Packet(
            type=PacketType.DIFFERENTIAL,
            structure_id=definition.id,
            values=values,
            paths=paths,
            metadata=PacketMetadata(
                collision_count=self.registry.collision_count,
                levels=self.hasher.levels_of(definition.shape),
                timestamp=pattern.timestamp,
            ),
        )

    def _pattern_for(
        self,
        value: Any,
        structure_id: str,
        token: Optional[str],
        context: EncodeContext,
    ) -> Optional[AccessPattern]:
        if not self.config.enable_differential:
            return None
        if context.access_pattern is not None:
            return context.access_pattern
        if token is None or self._holders.get(structure_id) != token:
            return None
        # Snapshot once; later writes do not leak into this packet
        return tracker_of(value).get_access_pattern()

    @staticmethod
    def _root_token(value: Any) -> Optional[str]:
        tracker = tracker_of(value)
        if tracker is None or not tracker.active or tracked_path(value) != ROOT_PATH:
            return None
        return tracker.token

    def _remember_holder(self, structure_id: str, token: Optional[str]) -> None:
        with self._lock:
            self._holders[structure_id] = token
            self._holders.move_to_end(structure_id)
            while len(self._holders) > self.config.max_registry_entries:
                self._holders.popitem(last=False)

    # ============================================================
    # Decode
    # ============================================================

    def decode(
        self,
        packet: Union[Packet, Mapping[str, Any]],
        source: Union[None, StructureRegistry, StructureDefinition] = None,
    ) -> Any:
        """Rebuild the value carried by a packet.

        Args:
            packet: Packet or its wire dict form
            source: Registry or definition to resolve structure ids
                against instead of this endpoint's own registry

        Raises:
            UnsupportedPacketTypeError: Unknown packet type
            MalformedPacketError: Packet fails validation
            UnknownStructureError: Referenced structure is not held
            ShapeMismatchError: Values do not fit the structure
        """
        packet = Packet.coerce(packet)
        registry = source if isinstance(source, StructureRegistry) else self.registry

        if packet.type == PacketType.PRIMITIVE:
            result = packet.values
        elif packet.type == PacketType.FULL:
            result = self._decode_full(packet, registry)
        elif packet.type == PacketType.VALUES_ONLY:
            result = self._decode_values_only(packet, registry, source)
        elif packet.type == PacketType.DIFFERENTIAL:
            result = self._apply_differential(packet)
        else:
            raise UnsupportedPacketTypeError(packet.type)

        if packet.type != PacketType.PRIMITIVE:
            self._store_materialized(packet.structure_id, result)
        logger.debug("Decoded %s packet for %s", packet.type.value, packet.structure_id)
        self._publish_decoded(result, packet)
        return result

    def _decode_full(self, packet: Packet, registry: StructureRegistry) -> Any:
        definition = packet.structure
        if definition is None:
            raise MalformedPacketError("Full packet carries no structure")
        if definition.id != packet.structure_id:
            raise MalformedPacketError(
                f"Structure id {definition.id!r} does not match packet "
                f"structureId {packet.structure_id!r}"
            )
        if self.config.verify_structure_ids:
            computed = self.hasher.id_of(definition.shape)
            if computed != definition.id:
                raise MalformedPacketError(
                    f"Structure id {definition.id!r} does not match its shape "
                    f"(computed {computed!r})"
                )
        result = self.codec.unflatten(packet.values, definition.shape)
        registry.put(definition)
        return result

    def _decode_values_only(
        self,
        packet: Packet,
        registry: StructureRegistry,
        source: Union[None, StructureRegistry, StructureDefinition],
    ) -> Any:
        if isinstance(source, StructureDefinition):
            definition = source if source.id == packet.structure_id else None
        else:
            definition = registry.get(packet.structure_id)
        if definition is None:
            raise UnknownStructureError(packet.structure_id)
        return self.codec.unflatten(packet.values, definition.shape)

    def _apply_differential(self, packet: Packet) -> Any:
        """Patch the prior materialized object with a differential packet.

        All paths are validated before anything is written; on error
        the prior object is left as it was.
        """
        with self._lock:
            prior = self._materialized.get(packet.structure_id, _MISSING)
        if prior is _MISSING:
            raise UnknownStructureError(
                packet.structure_id,
                f"No materialized object for structure '{packet.structure_id}'; "
                "a full transfer is required before a differential",
            )
        if not isinstance(packet.values, Mapping):
            raise MalformedPacketError("Differential packet values must be a path mapping")
        if packet.paths is not None and set(packet.paths) != set(packet.values):
            raise MalformedPacketError("Differential packet paths do not match its values")

        for path in packet.values:
            if path == ROOT_PATH:
                raise ShapeMismatchError("Differential path cannot be the root")
            node = _resolve(prior, path)
            if node is _MISSING or _is_container(node):
                raise ShapeMismatchError(
                    f"Differential path '{path}' does not resolve to a leaf"
                )

        patched = copy.deepcopy(prior)
        for path, leaf in packet.values.items():
            segments = split_path(path)
            parent = _resolve(patched, format_path(segments[:-1]))
            key: Any = segments[-1]
            if is_array(parent):
                key = int(key)
            parent[key] = self.codec.revive(leaf)
        return patched

    def _store_materialized(self, structure_id: str, value: Any) -> None:
        snapshot = copy.deepcopy(value)
        with self._lock:
            self._materialized[structure_id] = snapshot
            self._materialized.move_to_end(structure_id)
            while len(self._materialized) > self.config.max_registry_entries:
                self._materialized.popitem(last=False)

    def materialized(self, structure_id: str) -> Any:
        """Copy of the last object decoded for a structure id, or None."""
        with self._lock:
            value = self._materialized.get(structure_id)
        return copy.deepcopy(value)

    def forget_materialized(self, structure_id: Optional[str] = None) -> None:
        """Drop one (or every) materialized object."""
        with self._lock:
            if structure_id is None:
                self._materialized.clear()
            else:
                self._materialized.pop(structure_id, None)

    # ============================================================
    # Registry portability and helpers
    # ============================================================

    def export_registry(self) -> Dict[str, Any]:
        return self.registry.export_snapshot()

    def import_registry(self, snapshot: Mapping[str, Any]) -> int:
        return self.registry.import_snapshot(snapshot)

    def create_structure_definition(self, value: Any) -> StructureDefinition:
        return self.hasher.definition_of(unwrap(value))

    def structure_info(self, value: Any) -> StructureInfo:
        return self.hasher.structure_info(unwrap(value), self.registry)

    # ============================================================
    # Events
    # ============================================================

    def _publish_encoded(self, raw: Any, packet: Packet, context: EncodeContext) -> None:
        if not self._event_publisher:
            return
        estimate = TransferEstimate.measure(raw, packet)
        self._publish(PacketEncoded(
            structure_id=packet.structure_id,
            packet_type=packet.type.value,
            raw_bytes=estimate.raw_bytes,
            packet_bytes=estimate.packet_bytes,
            savings_ratio=estimate.savings_ratio,
            request_id=context.request_id,
        ))

    def _publish_decoded(self, result: Any, packet: Packet) -> None:
        if not self._event_publisher:
            return
        estimate = TransferEstimate.measure(result, packet)
        self._publish(PacketDecoded(
            structure_id=packet.structure_id,
            packet_type=packet.type.value,
            raw_bytes=estimate.raw_bytes,
            packet_bytes=estimate.packet_bytes,
            savings_ratio=estimate.savings_ratio,
        ))

    def _publish(self, event: object) -> None:
        if self._event_publisher:
            try:
                self._event_publisher(event)
            except Exception as e:
                logger.error(f"Failed to publish event: {e}")


# ============================================================
# Path helpers
# ============================================================


def differential_paths(raw: Any, pattern: AccessPattern) -> Optional[List[str]]:
    """Leaf paths a differential packet must carry for a pattern.

    Read paths are kept when they still resolve to a leaf. Written
    paths that resolve to a container (a replaced sub-object, an
    insert, a delete or a sort) expand to every leaf beneath them.

    Returns None when a written path no longer resolves: the write
    cannot be expressed as a patch and the value must be resent whole.
    """
    paths = set()
    for path in pattern.accessed:
        node = _resolve(raw, path)
        if node is not _MISSING and not _is_container(node):
            paths.add(path)
    for path in pattern.mutated:
        node = _resolve(raw, path)
        if node is _MISSING:
            return None
        if _is_container(node):
            paths.update(_leaf_paths(node, path))
        elif path != ROOT_PATH:
            paths.add(path)
    return sorted(paths)


def is_path_addressable(shape: Shape) -> bool:
    """True if every object key in a shape can be named by a dot-path."""
    if shape.kind == ShapeKind.OBJECT:
        return all(
            is_addressable_key(name) and is_path_addressable(child)
            for name, child in shape.fields
        )
    if shape.kind == ShapeKind.ARRAY:
        return all(is_path_addressable(item) for item in shape.items)
    return True


def _is_container(node: Any) -> bool:
    return is_plain_object(node) or is_array(node)


def _resolve(root: Any, path: str) -> Any:
    node = root
    for segment in split_path(path):
        if is_plain_object(node):
            if segment not in node:
                return _MISSING
            node = node[segment]
        elif is_array(node):
            if not segment.isdecimal() or int(segment) >= len(node):
                return _MISSING
            node = node[int(segment)]
        else:
            return _MISSING
    return node


def _leaf_paths(node: Any, path: str) -> Iterator[str]:
    if is_plain_object(node):
        for key in sorted(node):
            yield from _leaf_paths(node[key], join_path(path, key))
    elif is_array(node):
        for index, item in enumerate(node):
            yield from _leaf_paths(item, join_path(path, index))
    elif path != ROOT_PATH:
        yield path
