"""Tests for SyncProtocol.

Covers the per-call state machine:
- primitive / full / values-only / differential packet selection
- decode of every packet type, including failure modes
- registry interplay (eviction, collisions, snapshots)
- transfer-size events
"""

from __future__ import annotations

import copy
import json
from datetime import datetime

import pytest

from structsync.domains.registry.aggregates import StructureRegistry
from structsync.domains.registry.entities import StructureDefinition
from structsync.domains.shape.services import ShapeHasher
from structsync.domains.shared.kernel import (
    CyclicStructureError,
    MalformedPacketError,
    ShapeMismatchError,
    UnknownStructureError,
    UnsupportedPacketTypeError,
)
from structsync.domains.sync.events import PacketDecoded, PacketEncoded
from structsync.domains.sync.services import (
    SyncProtocol,
    differential_paths,
    is_path_addressable,
)
from structsync.domains.sync.value_objects import (
    PRIMITIVE_STRUCTURE_ID,
    EncodeContext,
    Packet,
    PacketType,
)
from structsync.domains.tracking.aggregates import RequestContext
from structsync.domains.tracking.services import unwrap
from structsync.domains.tracking.value_objects import AccessPattern, Mutation
from structsync.models.config_models import SyncConfig


# ── Helpers ──────────────────────────────────────────────────────────


def _known(*ids: str) -> EncodeContext:
    return EncodeContext.from_known(ids)


def _over_the_wire(packet: Packet) -> dict:
    """Serialize to JSON text and back, as a transport would."""
    return json.loads(packet.to_json())


# =============================================================================
# Encode
# =============================================================================


class TestEncode:
    """Packet kind selection."""

    @pytest.mark.parametrize("value", [None, True, 0, 2.5, "text"])
    def test_primitive(self, sender: SyncProtocol, value):
        packet = sender.encode(value)
        assert packet.type == PacketType.PRIMITIVE
        assert packet.structure_id == PRIMITIVE_STRUCTURE_ID
        assert packet.values == value
        assert len(sender.registry) == 0

    def test_full_when_nothing_known(self, sender: SyncProtocol):
        packet = sender.encode({"a": 1, "b": {"c": 2}})

        assert packet.type == PacketType.FULL
        assert packet.structure.shape.to_dict() == {
            "kind": "object",
            "fields": {
                "a": {"kind": "number"},
                "b": {"kind": "object", "fields": {"c": {"kind": "number"}}},
            },
        }
        assert packet.structure.id == packet.structure_id
        assert packet.values == [1, 2]
        assert packet.metadata.levels == 2
        assert packet.metadata.collision_count == 0
        assert packet.structure_id in sender.registry

    def test_values_only_when_known(self, sender: SyncProtocol):
        first = sender.encode({"a": 1, "b": {"c": 2}}, EncodeContext.empty())
        second = sender.encode({"a": 9, "b": {"c": 8}}, _known(first.structure_id))

        assert second.type == PacketType.VALUES_ONLY
        assert second.structure_id == first.structure_id
        assert second.values == [9, 8]
        assert "structure" not in second.to_dict()
        assert second.metadata is None

    def test_values_only_registers_unseen_definition(self, sender: SyncProtocol, hasher: ShapeHasher):
        value = {"a": 1}
        structure_id = hasher.id_of(hasher.shape_of(value))
        packet = sender.encode(value, _known(structure_id))
        assert packet.type == PacketType.VALUES_ONLY
        assert structure_id in sender.registry

    def test_disabled_always_sends_full(self):
        protocol = SyncProtocol(config=SyncConfig(enabled=False))
        first = protocol.encode({"a": 1})
        second = protocol.encode({"a": 2}, _known(first.structure_id))
        assert second.type == PacketType.FULL

    def test_top_level_opaque_value(self, sender: SyncProtocol, receiver: SyncProtocol):
        when = datetime(2024, 5, 1, 12, 0)
        packet = sender.encode(when)
        assert packet.type == PacketType.FULL
        assert packet.structure.shape.to_dict() == {"kind": "opaque"}
        assert receiver.decode(_over_the_wire(packet)) == when

    def test_cycle_raises_and_registers_nothing(self, sender: SyncProtocol):
        value = {"a": []}
        value["a"].append(value)
        with pytest.raises(CyclicStructureError):
            sender.encode(value)
        assert len(sender.registry) == 0

    def test_encode_does_not_record_reads(self, sender: SyncProtocol):
        with RequestContext() as ctx:
            state = ctx.track({"a": 1, "b": {"c": 2}})
            sender.encode(state)
            assert ctx.pattern_for(state).is_empty

    def test_local_collision_forces_full(self, colliding_hasher: ShapeHasher):
        protocol = SyncProtocol(hasher=colliding_hasher)
        first = protocol.encode({"a": 1})
        second = protocol.encode([1, 2], _known(first.structure_id))

        assert first.structure_id == second.structure_id
        assert second.type == PacketType.FULL
        assert second.metadata.collision_count == 1
        assert protocol.registry.collision_count == 1


# =============================================================================
# Decode
# =============================================================================


class TestDecode:
    """Packet reconstruction."""

    def test_full_round_trip(self, sender: SyncProtocol, receiver: SyncProtocol, users_page):
        packet = sender.encode(users_page)
        assert receiver.decode(_over_the_wire(packet)) == users_page
        assert packet.structure_id in receiver.registry

    def test_values_only_round_trip(
        self, sender: SyncProtocol, receiver: SyncProtocol, users_pages
    ):
        first = sender.encode(users_pages[0])
        receiver.decode(_over_the_wire(first))
        for page in users_pages[1:]:
            packet = sender.encode(page, _known(first.structure_id))
            assert packet.type == PacketType.VALUES_ONLY
            assert receiver.decode(_over_the_wire(packet)) == page

    def test_values_only_unknown_structure(self, sender: SyncProtocol, receiver: SyncProtocol):
        first = sender.encode({"a": 1})
        packet = sender.encode({"a": 2}, _known(first.structure_id))
        with pytest.raises(UnknownStructureError) as exc_info:
            receiver.decode(packet)
        assert exc_info.value.structure_id == first.structure_id

    def test_primitive(self, receiver: SyncProtocol):
        assert receiver.decode({"type": "primitive", "structureId": "primitive", "values": 7}) == 7

    def test_unsupported_type(self, receiver: SyncProtocol):
        with pytest.raises(UnsupportedPacketTypeError):
            receiver.decode({"type": "patch", "structureId": "x", "values": []})

    def test_special_values_round_trip(self, sender: SyncProtocol, receiver: SyncProtocol, dashboard):
        value = dict(
            dashboard,
            tags={"b", "a"},
            lookup={1: "one"},
            failure=ValueError("boom"),
        )
        decoded = receiver.decode(_over_the_wire(sender.encode(value)))

        failure = decoded.pop("failure")
        expected = dict(value)
        expected.pop("failure")
        assert decoded == expected
        assert type(failure) is ValueError
        assert failure.args == ("boom",)

    def test_leaf_count_mismatch(self, sender: SyncProtocol, receiver: SyncProtocol):
        first = sender.encode({"a": 1, "b": 2})
        receiver.decode(first)
        bad = {"type": "values-only", "structureId": first.structure_id, "values": [1]}
        with pytest.raises(ShapeMismatchError):
            receiver.decode(bad)

    def test_full_structure_id_mismatch(self, sender: SyncProtocol, receiver: SyncProtocol):
        wire = _over_the_wire(sender.encode({"a": 1}))
        wire["structureId"] = "other"
        with pytest.raises(MalformedPacketError):
            receiver.decode(wire)

    def test_full_without_structure(self, receiver: SyncProtocol):
        with pytest.raises(MalformedPacketError):
            receiver.decode({"type": "full", "structureId": "x", "values": []})

    def test_verify_structure_ids(self, sender: SyncProtocol):
        receiver = SyncProtocol(config=SyncConfig(verify_structure_ids=True))
        wire = _over_the_wire(sender.encode({"a": 1}))
        wire["structureId"] = wire["structure"]["id"] = "forged"
        with pytest.raises(MalformedPacketError):
            receiver.decode(wire)

    def test_decode_against_definition(self, sender: SyncProtocol, receiver: SyncProtocol):
        first = sender.encode({"a": 1})
        packet = sender.encode({"a": 5}, _known(first.structure_id))
        assert receiver.decode(packet, source=first.structure) == {"a": 5}

        other = StructureDefinition(id="other", shape=first.structure.shape)
        with pytest.raises(UnknownStructureError):
            receiver.decode(packet, source=other)

    def test_decode_against_other_registry(self, sender: SyncProtocol, receiver: SyncProtocol):
        shared = StructureRegistry()
        first = sender.encode({"a": 1})
        receiver.decode(first, source=shared)
        assert first.structure_id in shared
        assert first.structure_id not in receiver.registry

        packet = sender.encode({"a": 2}, _known(first.structure_id))
        assert receiver.decode(packet, source=shared) == {"a": 2}

    def test_decoded_value_is_independent_of_state(
        self, sender: SyncProtocol, receiver: SyncProtocol
    ):
        packet = sender.encode({"stats": {"n": 1}})
        decoded = receiver.decode(packet)
        decoded["stats"]["n"] = 99
        assert receiver.materialized(packet.structure_id) == {"stats": {"n": 1}}

    def test_forget_materialized(self, sender: SyncProtocol, receiver: SyncProtocol):
        packet = sender.encode({"a": 1})
        receiver.decode(packet)
        receiver.forget_materialized(packet.structure_id)
        assert receiver.materialized(packet.structure_id) is None


# =============================================================================
# Differential
# =============================================================================


class TestDifferential:
    """Differential packets for tracked state."""

    def test_concrete_differential(self, sender: SyncProtocol, receiver: SyncProtocol):
        with RequestContext() as ctx:
            state = ctx.track({"stats": {"totalUsers": 10}})
            full = sender.encode(state, EncodeContext.empty())
            receiver.decode(_over_the_wire(full))

            state["stats"]["totalUsers"] = 11
            packet = sender.encode(state, _known(full.structure_id))

        assert packet.type == PacketType.DIFFERENTIAL
        assert packet.structure_id == full.structure_id
        assert packet.paths == ["stats.totalUsers"]
        assert packet.values == {"stats.totalUsers": 11}
        assert packet.metadata.timestamp > 0
        assert receiver.decode(_over_the_wire(packet)) == {"stats": {"totalUsers": 11}}

    def test_reads_are_included(self, sender: SyncProtocol, receiver: SyncProtocol, users_page):
        with RequestContext() as ctx:
            state = ctx.track(users_page)
            full = sender.encode(state)
            receiver.decode(full)

            _ = state["users"][0]["name"]
            state["users"][1]["active"] = True
            packet = sender.encode(state, _known(full.structure_id))

        assert packet.paths == ["users.0.name", "users.1.active"]
        decoded = receiver.decode(packet)
        assert decoded["users"][1]["active"] is True
        assert decoded == users_page

    def test_replaced_subtree_expands_to_leaves(
        self, sender: SyncProtocol, receiver: SyncProtocol
    ):
        with RequestContext() as ctx:
            state = ctx.track({"stats": {"a": 1, "b": 2}, "title": "x"})
            full = sender.encode(state)
            receiver.decode(full)

            state["stats"] = {"a": 5, "b": 6}
            packet = sender.encode(state, _known(full.structure_id))

        assert packet.paths == ["stats.a", "stats.b"]
        assert receiver.decode(packet) == {"stats": {"a": 5, "b": 6}, "title": "x"}

    def test_special_leaf_marshalled(self, sender: SyncProtocol, receiver: SyncProtocol, dashboard):
        with RequestContext() as ctx:
            state = ctx.track(dashboard)
            full = sender.encode(state)
            receiver.decode(_over_the_wire(full))

            state["updatedAt"] = datetime(2024, 2, 1, 9, 0)
            packet = sender.encode(state, _known(full.structure_id))

        assert packet.values["updatedAt"]["__type"] == "DateTime"
        decoded = receiver.decode(_over_the_wire(packet))
        assert decoded["updatedAt"] == datetime(2024, 2, 1, 9, 0)

    def test_shape_change_falls_back_to_full(self, sender: SyncProtocol):
        with RequestContext() as ctx:
            state = ctx.track({"a": 1})
            full = sender.encode(state)
            state["b"] = 2
            packet = sender.encode(state, _known(full.structure_id))
        assert packet.type == PacketType.FULL
        assert packet.structure_id != full.structure_id

    def test_untracked_value_sends_values_only(self, sender: SyncProtocol):
        full = sender.encode({"a": 1})
        packet = sender.encode({"a": 2}, _known(full.structure_id))
        assert packet.type == PacketType.VALUES_ONLY

    def test_tracked_without_prior_full_sends_values_only(
        self, sender: SyncProtocol, hasher: ShapeHasher
    ):
        value = {"a": 1}
        structure_id = hasher.id_of(hasher.shape_of(value))
        with RequestContext() as ctx:
            state = ctx.track(value)
            state["a"] = 2
            packet = sender.encode(state, _known(structure_id))
        assert packet.type == PacketType.VALUES_ONLY

    def test_other_value_sent_in_between_blocks_differential(self, sender: SyncProtocol):
        with RequestContext() as ctx:
            state = ctx.track({"a": 1})
            full = sender.encode(state)
            sender.encode({"a": 7}, _known(full.structure_id))
            state["a"] = 2
            packet = sender.encode(state, _known(full.structure_id))
        assert packet.type == PacketType.VALUES_ONLY

    def test_differential_disabled(self):
        protocol = SyncProtocol(config=SyncConfig(enable_differential=False))
        with RequestContext() as ctx:
            state = ctx.track({"a": 1})
            full = protocol.encode(state)
            state["a"] = 2
            packet = protocol.encode(state, _known(full.structure_id))
        assert packet.type == PacketType.VALUES_ONLY

    def test_disposed_tracker_sends_values_only(self, sender: SyncProtocol):
        ctx = RequestContext()
        state = ctx.track({"a": 1})
        full = sender.encode(state)
        ctx.dispose()
        packet = sender.encode(state, _known(full.structure_id))
        assert packet.type == PacketType.VALUES_ONLY

    def test_explicit_access_pattern(self, sender: SyncProtocol, receiver: SyncProtocol):
        full = sender.encode({"a": 1, "b": 2})
        receiver.decode(full)
        pattern = AccessPattern(mutated={"b": Mutation(old_value=2, new_value=3)})
        packet = sender.encode(
            {"a": 1, "b": 3},
            EncodeContext(known=frozenset([full.structure_id]), access_pattern=pattern),
        )
        assert packet.type == PacketType.DIFFERENTIAL
        assert packet.values == {"b": 3}
        assert receiver.decode(packet) == {"a": 1, "b": 3}

    def test_empty_pattern_still_differential(self, sender: SyncProtocol, receiver: SyncProtocol):
        with RequestContext() as ctx:
            state = ctx.track({"a": 1})
            full = sender.encode(state)
            receiver.decode(full)
            packet = sender.encode(state, _known(full.structure_id))
        assert packet.type == PacketType.DIFFERENTIAL
        assert packet.paths == []
        assert receiver.decode(packet) == {"a": 1}

    def test_no_materialized_object(self, receiver: SyncProtocol):
        packet = {"type": "differential", "structureId": "abc", "values": {"a": 1}, "paths": ["a"]}
        with pytest.raises(UnknownStructureError):
            receiver.decode(packet)

    def test_invalid_path_leaves_prior_untouched(
        self, sender: SyncProtocol, receiver: SyncProtocol
    ):
        full = sender.encode({"a": 1, "b": {"c": 2}})
        receiver.decode(full)
        before = receiver.materialized(full.structure_id)

        for values in ({"a": 5, "zzz": 1}, {"a": 5, "b": 1}, {"b.c.d": 1}):
            packet = {
                "type": "differential",
                "structureId": full.structure_id,
                "values": values,
                "paths": sorted(values),
            }
            with pytest.raises(ShapeMismatchError):
                receiver.decode(packet)
        assert receiver.materialized(full.structure_id) == before

    def test_paths_must_match_values(self, sender: SyncProtocol, receiver: SyncProtocol):
        full = sender.encode({"a": 1})
        receiver.decode(full)
        packet = {
            "type": "differential",
            "structureId": full.structure_id,
            "values": {"a": 2},
            "paths": ["a", "b"],
        }
        with pytest.raises(MalformedPacketError):
            receiver.decode(packet)

    def test_list_index_paths(self, sender: SyncProtocol, receiver: SyncProtocol):
        full = sender.encode({"items": [1, 2, 3]})
        receiver.decode(full)
        packet = {
            "type": "differential",
            "structureId": full.structure_id,
            "values": {"items.2": 30},
            "paths": ["items.2"],
        }
        assert receiver.decode(packet) == {"items": [1, 2, 30]}


class TestDifferentialStructuralEdits:
    """Edits that shift list positions or use keys a dot-path cannot name."""

    def test_pop_then_append_resends_whole_list(
        self, sender: SyncProtocol, receiver: SyncProtocol
    ):
        with RequestContext() as ctx:
            state = ctx.track({"window": [1, 2, 3], "title": "x"})
            full = sender.encode(state)
            receiver.decode(_over_the_wire(full))

            state["window"].pop(0)
            state["window"].append(4)
            packet = sender.encode(state, _known(full.structure_id))
            expected = copy.deepcopy(unwrap(state))

        assert packet.type == PacketType.DIFFERENTIAL
        assert packet.values == {"window.0": 2, "window.1": 3, "window.2": 4}
        assert receiver.decode(_over_the_wire(packet)) == expected == {
            "window": [2, 3, 4],
            "title": "x",
        }

    def test_root_list_insert_and_delete(self, sender: SyncProtocol, receiver: SyncProtocol):
        with RequestContext() as ctx:
            state = ctx.track([10, 20, 30])
            full = sender.encode(state)
            receiver.decode(full)

            state.insert(1, 15)
            del state[-1]
            packet = sender.encode(state, _known(full.structure_id))

        assert packet.type == PacketType.DIFFERENTIAL
        assert packet.paths == ["0", "1", "2"]
        assert receiver.decode(packet) == [10, 15, 20]

    def test_sort_reaches_receiver(self, sender: SyncProtocol, receiver: SyncProtocol):
        with RequestContext() as ctx:
            state = ctx.track({"scores": [3, 1, 2]})
            full = sender.encode(state)
            receiver.decode(full)

            state["scores"].sort()
            packet = sender.encode(state, _known(full.structure_id))

        assert receiver.decode(packet) == {"scores": [1, 2, 3]}

    def test_write_through_slice_reaches_receiver(
        self, sender: SyncProtocol, receiver: SyncProtocol
    ):
        with RequestContext() as ctx:
            state = ctx.track({"rows": [{"n": 1}, {"n": 2}]})
            full = sender.encode(state)
            receiver.decode(full)

            for row in state["rows"][1:]:
                row["n"] = 20
            packet = sender.encode(state, _known(full.structure_id))

        assert packet.values == {"rows.1.n": 20}
        assert receiver.decode(packet) == {"rows": [{"n": 1}, {"n": 20}]}

    @pytest.mark.parametrize("key", ["user.name", ""])
    def test_unaddressable_key_sends_values_only(
        self, sender: SyncProtocol, receiver: SyncProtocol, key
    ):
        with RequestContext() as ctx:
            state = ctx.track({key: "alice", "n": 1})
            full = sender.encode(state)
            receiver.decode(_over_the_wire(full))

            state[key] = "bob"
            packet = sender.encode(state, _known(full.structure_id))

        assert packet.type == PacketType.VALUES_ONLY
        assert receiver.decode(_over_the_wire(packet)) == {key: "bob", "n": 1}

    def test_unresolved_write_sends_values_only(
        self, sender: SyncProtocol, receiver: SyncProtocol
    ):
        full = sender.encode({"a": 1, "b": 2})
        receiver.decode(full)
        pattern = AccessPattern(
            mutated={
                "b": Mutation(old_value=2, new_value=3),
                "gone": Mutation(old_value=1, new_value=None, deleted=True),
            }
        )
        packet = sender.encode(
            {"a": 1, "b": 3},
            EncodeContext(known=frozenset([full.structure_id]), access_pattern=pattern),
        )
        assert packet.type == PacketType.VALUES_ONLY
        assert receiver.decode(packet) == {"a": 1, "b": 3}


class TestDifferentialPaths:
    def test_container_reads_dropped(self):
        pattern = AccessPattern(accessed={"stats", "stats.n"})
        assert differential_paths({"stats": {"n": 1}}, pattern) == ["stats.n"]

    def test_unresolvable_reads_dropped(self):
        pattern = AccessPattern(accessed={"gone", "items.9", "items.0"})
        assert differential_paths({"items": [1]}, pattern) == ["items.0"]

    def test_unresolvable_write_yields_none(self):
        pattern = AccessPattern(
            mutated={"old": Mutation(old_value=1, new_value=None, deleted=True)},
        )
        assert differential_paths({"items": [1]}, pattern) is None

    def test_mutated_list_expands_to_items(self):
        pattern = AccessPattern(mutated={"xs": Mutation(old_value=[1], new_value=[2, 3])})
        assert differential_paths({"xs": [2, 3]}, pattern) == ["xs.0", "xs.1"]

    def test_sorted(self):
        pattern = AccessPattern(accessed={"b", "a"})
        assert differential_paths({"a": 1, "b": 2}, pattern) == ["a", "b"]

    def test_path_addressable(self, hasher: ShapeHasher):
        assert is_path_addressable(hasher.shape_of({"a": [{"b": 1}], "0": 2}))
        assert not is_path_addressable(hasher.shape_of({"a": [{"b.c": 1}]}))
        assert not is_path_addressable(hasher.shape_of({"": 1}))


# =============================================================================
# Registry interplay
# =============================================================================


class TestRegistryInterplay:
    def test_eviction_then_values_only_fails(self):
        config = SyncConfig(max_registry_entries=2)
        sender = SyncProtocol(config=config)
        receiver = SyncProtocol(config=config)

        packets = [sender.encode({f"k{i}": i}) for i in range(3)]
        for packet in packets:
            receiver.decode(packet)

        evicted = packets[0].structure_id
        assert evicted not in receiver.registry
        stale = sender.encode({"k0": 42}, _known(evicted))
        assert stale.type == PacketType.VALUES_ONLY
        with pytest.raises(UnknownStructureError):
            receiver.decode(stale)

    def test_lookup_refreshes_lru(self):
        config = SyncConfig(max_registry_entries=2)
        receiver = SyncProtocol(config=config)
        sender = SyncProtocol(config=config)

        a = sender.encode({"a": 1})
        b = sender.encode({"b": 1})
        receiver.decode(a)
        receiver.decode(b)
        receiver.decode(sender.encode({"a": 2}, _known(a.structure_id)))
        receiver.decode(sender.encode({"c": 1}))

        assert a.structure_id in receiver.registry
        assert b.structure_id not in receiver.registry

    def test_export_import_registry(self, sender: SyncProtocol, receiver: SyncProtocol):
        first = sender.encode({"a": 1})
        receiver.import_registry(sender.export_registry())
        packet = sender.encode({"a": 2}, _known(first.structure_id))
        assert receiver.decode(packet) == {"a": 2}

    def test_structure_info(self, sender: SyncProtocol):
        info = sender.structure_info({"a": {"b": 1}})
        assert info.levels == 2
        assert info.id == sender.create_structure_definition({"a": {"b": 1}}).id

    def test_registry_sized_from_config(self):
        protocol = SyncProtocol(config=SyncConfig(max_registry_entries=5))
        assert protocol.registry.max_entries == 5


# =============================================================================
# Events
# =============================================================================


class TestProtocolEvents:
    def test_events_published(self, users_pages):
        events = []
        sender = SyncProtocol(event_publisher=events.append)
        receiver = SyncProtocol(event_publisher=events.append)

        first = sender.encode(users_pages[0])
        receiver.decode(first)
        second = sender.encode(users_pages[1], _known(first.structure_id))
        receiver.decode(second)

        encoded = [e for e in events if isinstance(e, PacketEncoded)]
        decoded = [e for e in events if isinstance(e, PacketDecoded)]
        assert [e.packet_type for e in encoded] == ["full", "values-only"]
        assert len(decoded) == 2
        assert encoded[1].packet_bytes < encoded[1].raw_bytes
        assert encoded[1].savings_ratio > 0

    def test_publisher_failure_is_ignored(self, caplog):
        def broken(event):
            raise RuntimeError("publisher down")

        protocol = SyncProtocol(event_publisher=broken)
        packet = protocol.encode({"a": 1})
        assert packet.type == PacketType.FULL
        assert "Failed to publish event" in caplog.text

    def test_request_id_on_event(self):
        events = []
        protocol = SyncProtocol(event_publisher=events.append)
        protocol.encode({"a": 1}, EncodeContext(request_id="req-1"))
        assert events[0].request_id == "req-1"
