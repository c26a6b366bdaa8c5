"""Tests for qmud.effects — decoding and applying stat effects."""

import asyncio

import pytest

from backend.content import DEFAULT_ITEMS
from helpers import RecordingPublisher
from qmud.effects import EffectsApplier, decode_effects
from qmud.models import Assign, Delta, ItemGrant, ItemRevoke, PlayerState


class TestDecodeEffects:
    def test_numbers_are_deltas(self) -> None:
        assert decode_effects({"truth": 0.1, "hp": -10}) == [
            Delta(field="truth", value=0.1),
            Delta(field="hp", value=-10.0),
        ]

    def test_equals_strings_are_assignments(self) -> None:
        assert decode_effects({"shadow": "=0.3", "insight": " = 7 "}) == [
            Assign(field="shadow", value=0.3),
            Assign(field="insight", value=7.0),
        ]

    def test_quantum_forms_all_target_coherence(self) -> None:
        effects = decode_effects({"quantum": {"coherence": 0.2}, "quantum.coherence": 0.1})
        assert effects == [Delta(field="coherence", value=0.2), Delta(field="coherence", value=0.1)]
        assert decode_effects({"quantum": -0.05}) == [Delta(field="coherence", value=-0.05)]
        assert decode_effects({"quantum": "=0.5"}) == [Assign(field="coherence", value=0.5)]

    def test_items(self) -> None:
        assert decode_effects({"give_item": "mirror_shard", "take_item": "tea_clarity"}) == [
            ItemGrant(item="mirror_shard"),
            ItemRevoke(item="tea_clarity"),
        ]

    @pytest.mark.parametrize("raw", [None, [], "truth+1", 5])
    def test_non_object_is_empty(self, raw) -> None:
        assert decode_effects(raw) == []

    def test_bad_values_dropped(self) -> None:
        raw = {
            "truth": "a lot",
            "shadow": True,
            "hp": float("nan"),
            "insight": "=x",
            "charisma": 1,
            "give_item": "",
            "take_item": 3,
        }
        assert decode_effects(raw) == []


class TestEffectsApplier:
    @pytest.fixture
    def applier(self):
        return EffectsApplier(DEFAULT_ITEMS)

    def test_delta_clamps_unit_fields(self, applier) -> None:
        player = PlayerState(truth=0.95, shadow=0.05)
        applier.apply(decode_effects({"truth": 0.2, "shadow": -0.5}), player)
        assert player.truth == 1.0
        assert player.shadow == 0.0

    def test_assign_clamps(self, applier) -> None:
        player = PlayerState()
        applier.apply(decode_effects({"truth": "=1.7", "quantum": "=-2"}), player)
        assert player.truth == 1.0
        assert player.coherence == 0.0

    def test_repeated_deltas_never_exceed_one(self, applier) -> None:
        player = PlayerState()
        for _ in range(3):
            applier.apply(decode_effects({"truth": 5}), player)
        assert player.truth == 1.0

    def test_assign_overrides_earlier_delta(self, applier) -> None:
        player = PlayerState(truth=0.5)
        applier.apply([Delta(field="truth", value=0.4), Assign(field="truth", value=0.3)], player)
        assert player.truth == 0.3

    def test_insight_floors_and_stays_non_negative(self, applier) -> None:
        player = PlayerState(insight=3)
        applier.apply(decode_effects({"insight": 1.9}), player)
        assert player.insight == 4
        applier.apply(decode_effects({"insight": -10}), player)
        assert player.insight == 0

    def test_hp_bounds(self, applier) -> None:
        player = PlayerState(hp=95)
        applier.apply(decode_effects({"hp": 20}), player)
        assert player.hp == 100
        applier.apply(decode_effects({"hp": -250}), player)
        assert player.hp == 0

    def test_quantum_deltas_are_cumulative(self, applier) -> None:
        player = PlayerState(coherence=0.5)
        applier.apply(decode_effects({"quantum": {"coherence": 0.2}, "quantum.coherence": 0.1}), player)
        assert player.coherence == pytest.approx(0.8)

    def test_grants_and_revokes_known_items(self, applier) -> None:
        player = PlayerState(inventory=["tea_clarity"])
        applier.apply(decode_effects({"give_item": "mirror_shard", "take_item": "tea_clarity"}), player)
        assert player.inventory == ["mirror_shard"]

    def test_grant_is_idempotent(self, applier) -> None:
        player = PlayerState(inventory=["mirror_shard"])
        applier.apply(decode_effects({"give_item": "mirror_shard"}), player)
        assert player.inventory == ["mirror_shard"]

    def test_unknown_item_ignored(self, applier) -> None:
        player = PlayerState()
        applier.apply(decode_effects({"give_item": "philosopher_stone"}), player)
        assert player.inventory == []

    def test_empty_effects_leave_player_untouched(self, applier) -> None:
        player = PlayerState()
        before = player.model_copy(deep=True)
        applier.apply([], player)
        assert player == before


class TestEffectsPublishing:
    async def test_publishes_player_state(self) -> None:
        publisher = RecordingPublisher()
        applier = EffectsApplier(DEFAULT_ITEMS, publisher)
        player = PlayerState(player_id="p7")

        applier.apply(decode_effects({"truth": 0.1}), player)
        await asyncio.sleep(0)

        assert len(publisher.events) == 1
        topic, event = publisher.events[0]
        assert topic == "qmud.players.p7.state"
        assert event["event_type"] == "book_effects"
        assert event["payload"]["truth"] == pytest.approx(0.6)
        assert event["payload"]["quantum"] == 0.0

    async def test_publish_failure_does_not_surface(self) -> None:
        publisher = RecordingPublisher(fail=True)
        applier = EffectsApplier(DEFAULT_ITEMS, publisher)
        player = PlayerState()

        applier.apply(decode_effects({"hp": -5}), player)
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert player.hp == 95
        assert len(publisher.events) == 1

    def test_without_running_loop_nothing_is_scheduled(self) -> None:
        publisher = RecordingPublisher()
        applier = EffectsApplier(DEFAULT_ITEMS, publisher)
        player = PlayerState()
        applier.apply(decode_effects({"hp": -5}), player)
        assert player.hp == 95
        assert publisher.events == []
