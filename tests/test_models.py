"""Tests for qmud.models."""

import pytest
from pydantic import TypeAdapter, ValidationError

from qmud.models import (
    Assign,
    Choice,
    Delta,
    Effect,
    ItemGrant,
    NarrativeSession,
    Page,
    PlayerState,
)


def _session(**kwargs) -> NarrativeSession:
    base = {"book_id": "codex_paths", "title": "Codex", "seed": "p:codex_paths",
            "created_at": 1.0, "last_at": 1.0}
    base.update(kwargs)
    return NarrativeSession(**base)


class TestEffectUnion:
    def test_discriminated_by_kind(self) -> None:
        adapter = TypeAdapter(list[Effect])
        effects = adapter.validate_python([
            {"kind": "delta", "field": "truth", "value": 0.1},
            {"kind": "assign", "field": "hp", "value": 50},
            {"kind": "give_item", "item": "mirror_shard"},
        ])
        assert effects == [
            Delta(field="truth", value=0.1),
            Assign(field="hp", value=50.0),
            ItemGrant(item="mirror_shard"),
        ]

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Delta(field="charisma", value=1.0)


class TestPage:
    def test_defaults(self) -> None:
        page = Page(page_id="p1", title="T", prose="P")
        assert page.choices == []
        assert page.effects == []
        assert page.illustration_prompt is None

    def test_at_most_six_choices(self) -> None:
        choices = [Choice(id=f"c{i}", label=str(i)) for i in range(7)]
        with pytest.raises(ValidationError):
            Page(page_id="p1", title="T", prose="P", choices=choices)


class TestPlayerState:
    def test_item_helpers(self) -> None:
        player = PlayerState()
        player.add_item("codex_paths")
        player.add_item("codex_paths")
        assert player.inventory == ["codex_paths"]
        assert player.has_item("codex_paths")
        player.remove_item("codex_paths")
        player.remove_item("codex_paths")
        assert not player.has_item("codex_paths")

    def test_stats_expose_coherence_as_quantum(self) -> None:
        player = PlayerState(coherence=0.4)
        assert player.stats() == {"truth": 0.5, "quantum": 0.4, "shadow": 0.0, "insight": 0, "hp": 100}


class TestNarrativeSession:
    def test_snapshot_uses_wire_names_and_omits_active(self) -> None:
        page = Page(page_id="p1", title="T", prose="P")
        session = _session(pages={"p1": page}, current="p1", path=["a1"])
        snap = session.snapshot()
        assert set(snap) == {"bookId", "title", "seed", "pages", "current", "path", "createdAt", "lastAt"}
        assert snap["bookId"] == "codex_paths"
        assert snap["pages"]["p1"]["prose"] == "P"

    def test_snapshot_roundtrip(self) -> None:
        page = Page(page_id="p1", title="T", prose="P", choices=[Choice(id="a1", label="Go")])
        session = _session(pages={"p1": page}, current="p1")
        restored = NarrativeSession.model_validate(session.snapshot())
        assert restored.current_page == page
        assert restored.book_id == "codex_paths"

    def test_current_must_be_a_known_page(self) -> None:
        with pytest.raises(ValidationError, match="not in pages"):
            _session(current="nowhere")

    def test_fresh_session_has_no_current_page(self) -> None:
        session = _session()
        assert session.current_page is None
        assert session.active
