"""Tests for budget allocation and deterministic section trimming."""

import pytest
from pydantic import ValidationError

from roleforge.config import TokenBudget
from roleforge.models import SectionCap
from roleforge.pipeline.context import (
    DEFAULT_ALLOCATIONS,
    build_context_envelope,
    compute_presence,
    derive_caps,
    merge_caps,
    resolve_allocations,
    trim_memories,
    trim_scenario_notes,
    trim_sequence,
)


# ── allocation ───────────────────────────────────────────


def test_presence_ignores_override_memory_keys():
    presence = compute_presence(memories={"__loreOverride": ["x"]})
    assert presence["memories"] is False
    assert compute_presence(round_responses=["Alice: Hi!"])["history"] is True


def test_absent_sections_redistributed_proportionally():
    presence = {"history": True, "lore": True}
    fractions = resolve_allocations(presence)
    assert fractions["memories"] == 0.0
    assert fractions["summaries"] == 0.0
    assert sum(fractions.values()) == pytest.approx(sum(DEFAULT_ALLOCATIONS.values()))
    # history:lore keeps its 0.30:0.15 ratio
    assert fractions["history"] / fractions["lore"] == pytest.approx(2.0)


def test_all_sections_present_keeps_defaults():
    presence = {k: True for k in DEFAULT_ALLOCATIONS}
    assert resolve_allocations(presence) == DEFAULT_ALLOCATIONS


def test_overrides_accept_camel_case_names():
    presence = {k: True for k in DEFAULT_ALLOCATIONS}
    fractions = resolve_allocations(presence, {"scenarioNotes": 0.4, "history": 0.1})
    assert fractions["scenario_notes"] == 0.4
    assert fractions["history"] == 0.1


def test_nothing_present_gives_all_zero():
    fractions = resolve_allocations({})
    assert set(fractions.values()) == {0.0}


def test_derive_caps_floors():
    caps = derive_caps({"history": 0.3, "lore": 0.0}, 1001, 4)
    assert caps["history"].max_chars == 1201
    assert "lore" not in caps


class TestMergeCaps:
    def test_explicit_chars_win_even_when_larger(self) -> None:
        derived = {"history": SectionCap(max_chars=100)}
        merged = merge_caps(derived, {"history": SectionCap(max_chars=5000)}, 4)
        assert merged["history"].max_chars == 5000

    def test_max_tokens_converted_to_chars(self) -> None:
        derived = {"history": SectionCap(max_chars=100)}
        merged = merge_caps(derived, {"history": SectionCap(max_tokens=10)}, 3)
        assert merged["history"].max_chars == 30

    def test_top_k_merged_field_by_field(self) -> None:
        derived = {"memories": SectionCap(max_chars=800)}
        merged = merge_caps(derived, {"memories": SectionCap(top_k=2)}, 4)
        assert merged["memories"].max_chars == 800
        assert merged["memories"].top_k == 2

    def test_cap_for_section_with_no_derived_cap(self) -> None:
        merged = merge_caps({}, {"directorGuidance": SectionCap(max_chars=10)}, 4)
        assert merged["director_guidance"].max_chars == 10


# ── trimming ─────────────────────────────────────────────


class TestTrimSequence:
    def test_accumulates_front_to_back(self) -> None:
        assert trim_sequence(["aaaa", "bbbb", "cccc"], 9) == ["aaaa", "bbbb"]

    def test_stops_at_first_item_that_does_not_fit(self) -> None:
        assert trim_sequence(["aaaa", "bbbbbbbbbb", "c"], 9) == ["aaaa"]

    def test_non_empty_guarantee(self) -> None:
        assert trim_sequence(["a very long first line"], 3) == ["a very long first line"]

    def test_allow_empty(self) -> None:
        assert trim_sequence(["a very long first line"], 3, allow_empty=True) == []

    def test_no_cap(self) -> None:
        assert trim_sequence(["x"] * 5, None) == ["x"] * 5

    def test_empty_input(self) -> None:
        assert trim_sequence([], 0) == []


def test_trim_memories_top_k_then_chars():
    memories = {"Bob": ["one", "two", "three", "four"], "currentRound": []}
    trimmed = trim_memories(memories, SectionCap(top_k=3, max_chars=7))
    assert trimmed == {"Bob": ["one", "two"], "currentRound": []}


def test_trim_scenario_notes_may_end_empty():
    notes = {"world": "A drifting archipelago.", "scene": "Docks"}
    trimmed = trim_scenario_notes(notes, SectionCap(max_chars=10))
    assert trimmed == {"world": "", "campaign": "", "arc": "", "scene": "Docks"}


# ── envelope ─────────────────────────────────────────────


class TestBuildEnvelope:
    def test_history_window_applied_before_trim(self) -> None:
        env = build_context_envelope("director", history=[f"line {i}" for i in range(10)], history_window=3)
        assert env.history == ["line 7", "line 8", "line 9"]

    def test_zero_history_window(self) -> None:
        env = build_context_envelope("director", history=["a", "b"], history_window=0)
        assert env.history == []

    def test_sections_trimmed_to_caps(self) -> None:
        budget = TokenBudget(
            max_context_tokens=100,
            chars_per_token=1,
            caps={"lore": SectionCap(max_chars=12), "characterGuidance": SectionCap(max_chars=5)},
        )
        env = build_context_envelope(
            "character",
            budget=budget,
            lore=["[a] first lore", "[b] second"],
            character_guidance="Speak softly and carry a lantern.",
            user_input="hello",
        )
        assert env.lore == ["[a] first lore"]
        assert env.character_guidance == "Speak"
        assert env.user_input == "hello"
        assert env.allocation.caps["lore"].max_chars == 12

    def test_allocation_records_presence(self) -> None:
        env = build_context_envelope("world", history=["x"], memories={"Alice": ["m"]})
        assert env.allocation.presence["history"] is True
        assert env.allocation.presence["lore"] is False
        assert env.allocation.fractions["lore"] == 0.0

    def test_round_responses_share_history_cap(self) -> None:
        budget = TokenBudget(caps={"history": SectionCap(max_chars=12)})
        env = build_context_envelope(
            "character", budget=budget, round_responses=["Alice: Hi!", "Bob: Welcome aboard."]
        )
        assert env.round_responses == ["Alice: Hi!"]

    def test_envelope_is_frozen(self) -> None:
        env = build_context_envelope("director")
        with pytest.raises(ValidationError):
            env.user_input = "changed"
