"""Context envelope assembly under a token budget.

Each section of the envelope gets a fraction of the context budget. Fractions
belonging to empty sections are handed to the non-empty ones in proportion to
their own share, then every fraction becomes a character cap:

    cap = floor(max_context_tokens * fraction * chars_per_token)

Explicit caps from the budget override the derived ones field by field. Each
section is then trimmed deterministically to its cap.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping, Sequence
from typing import Any

from roleforge.config import TokenBudget
from roleforge.models import SECTION_NAMES, ContextEnvelope, SectionCap, TokenAllocation

logger = logging.getLogger(__name__)

DEFAULT_ALLOCATIONS: dict[str, float] = {
    "history": 0.30,
    "summaries": 0.10,
    "lore": 0.15,
    "memories": 0.20,
    "scenario_notes": 0.10,
    "director_guidance": 0.05,
    "character_guidance": 0.10,
}

# Memory keys that carry overrides rather than retrieved content
EXCLUDED_MEMORY_KEYS = frozenset({"__loreOverride"})

_SECTION_ALIASES = {
    "scenarioNotes": "scenario_notes",
    "directorGuidance": "director_guidance",
    "characterGuidance": "character_guidance",
}


def _section_key(name: str) -> str:
    return _SECTION_ALIASES.get(name, name)


def _item_len(item: Any) -> int:
    if isinstance(item, str):
        return len(item)
    text = getattr(item, "text", None)
    if isinstance(text, str):
        return len(text)
    return len(json.dumps(item, default=str))


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------

def compute_presence(
    *,
    history: Sequence[Any] = (),
    round_responses: Sequence[Any] = (),
    summaries: Sequence[Any] = (),
    lore: Sequence[Any] = (),
    memories: Mapping[str, Sequence[Any]] | None = None,
    scenario_notes: Mapping[str, str] | None = None,
    director_guidance: str = "",
    character_guidance: str = "",
) -> dict[str, bool]:
    return {
        "history": bool(history) or bool(round_responses),
        "summaries": bool(summaries),
        "lore": bool(lore),
        "memories": any(
            bool(v) for k, v in (memories or {}).items() if k not in EXCLUDED_MEMORY_KEYS
        ),
        "scenario_notes": any(bool(v) for v in (scenario_notes or {}).values()),
        "director_guidance": bool(director_guidance),
        "character_guidance": bool(character_guidance),
    }


def resolve_allocations(
    presence: Mapping[str, bool], overrides: Mapping[str, float] | None = None
) -> dict[str, float]:
    """Merge fractions over the defaults and move absent sections' share to present ones."""
    merged = dict(DEFAULT_ALLOCATIONS)
    for name, value in (overrides or {}).items():
        key = _section_key(name)
        if key in merged:
            merged[key] = float(value)

    missing = [k for k in SECTION_NAMES if not presence.get(k)]
    present = [k for k in SECTION_NAMES if presence.get(k) and merged[k] > 0]
    missing_budget = sum(merged[k] for k in missing)
    present_total = sum(merged[k] for k in present)

    resolved = dict(merged)
    for k in missing:
        resolved[k] = 0.0
    if missing_budget <= 0 or present_total <= 0:
        return resolved
    for k in present:
        resolved[k] = merged[k] + merged[k] / present_total * missing_budget
    return resolved


def derive_caps(
    fractions: Mapping[str, float], max_context_tokens: int, chars_per_token: int
) -> dict[str, SectionCap]:
    return {
        k: SectionCap(max_chars=math.floor(max_context_tokens * pct * chars_per_token))
        for k, pct in fractions.items()
        if pct > 0
    }


def merge_caps(
    derived: Mapping[str, SectionCap],
    explicit: Mapping[str, SectionCap] | None,
    chars_per_token: int,
) -> dict[str, SectionCap]:
    """Explicit cap fields replace derived ones, whether larger or smaller."""
    caps = {k: v.model_copy() for k, v in derived.items()}
    for name, cap in (explicit or {}).items():
        key = _section_key(name)
        current = caps.get(key, SectionCap())
        update = cap.model_dump(exclude_none=True)
        if cap.max_tokens is not None and cap.max_chars is None:
            update["max_chars"] = cap.max_tokens * chars_per_token
        caps[key] = current.model_copy(update=update)
    return caps


# ---------------------------------------------------------------------------
# Trimming
# ---------------------------------------------------------------------------

def trim_sequence(
    items: Sequence[Any], max_chars: int | None, *, allow_empty: bool = False
) -> list[Any]:
    """Keep items front-to-back while they fit in max_chars.

    A non-empty input never trims to nothing unless allow_empty is set.
    """
    if max_chars is None:
        return list(items)
    kept: list[Any] = []
    used = 0
    for item in items:
        size = _item_len(item)
        if used + size > max_chars:
            break
        kept.append(item)
        used += size
    if not kept and items and not allow_empty:
        kept.append(items[0])
    return kept


def trim_memories(
    memories: Mapping[str, Sequence[Any]], cap: SectionCap | None
) -> dict[str, list[Any]]:
    trimmed: dict[str, list[Any]] = {}
    for key, entries in memories.items():
        selected = list(entries)
        if cap is not None and cap.top_k is not None:
            selected = selected[: cap.top_k]
        if cap is not None and cap.max_chars is not None:
            budget: list[Any] = []
            used = 0
            for entry in selected:
                size = _item_len(entry)
                if used + size > cap.max_chars:
                    break
                budget.append(entry)
                used += size
            selected = budget
        trimmed[key] = selected
    return trimmed


def trim_scenario_notes(notes: Mapping[str, str], cap: SectionCap | None) -> dict[str, str]:
    max_chars = cap.max_chars if cap else None
    trimmed: dict[str, str] = {}
    for key in ("world", "campaign", "arc", "scene"):
        value = notes.get(key) or ""
        kept = trim_sequence([value], max_chars, allow_empty=True) if value else []
        trimmed[key] = kept[0] if kept else ""
    return trimmed


def _trim_text(text: str, cap: SectionCap | None) -> str:
    if not text or cap is None or cap.max_chars is None:
        return text
    return text[: cap.max_chars]


def _sequence_cap(items: Sequence[Any], cap: SectionCap | None) -> list[Any]:
    selected = list(items)
    if cap is not None and cap.top_k is not None:
        selected = selected[: cap.top_k]
    return trim_sequence(selected, cap.max_chars if cap else None)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

def build_context_envelope(
    request_type: str,
    *,
    budget: TokenBudget | None = None,
    history: Sequence[str] = (),
    history_window: int | None = None,
    round_responses: Sequence[str] = (),
    summaries: Sequence[str] = (),
    lore: Sequence[str] = (),
    memories: Mapping[str, Sequence[Any]] | None = None,
    scenario_notes: Mapping[str, str] | None = None,
    director_guidance: str = "",
    character_guidance: str = "",
    **fields: Any,
) -> ContextEnvelope:
    """Trim every section to its share of the budget and freeze the result.

    `fields` passes straight through to the envelope (scene_id, user_input,
    characters, character_states, world_state, director_pass, ...).
    """
    budget = budget or TokenBudget()
    if history_window is not None and history_window >= 0:
        history = list(history)[-history_window:] if history_window else []
    memories = memories or {}
    scenario_notes = scenario_notes or {}

    presence = compute_presence(
        history=history,
        round_responses=round_responses,
        summaries=summaries,
        lore=lore,
        memories=memories,
        scenario_notes=scenario_notes,
        director_guidance=director_guidance,
        character_guidance=character_guidance,
    )
    fractions = resolve_allocations(presence, budget.allocations)
    caps = merge_caps(
        derive_caps(fractions, budget.max_context_tokens, budget.chars_per_token),
        budget.caps,
        budget.chars_per_token,
    )
    allocation = TokenAllocation(
        max_context_tokens=budget.max_context_tokens,
        chars_per_token=budget.chars_per_token,
        fractions=fractions,
        presence=presence,
        caps=caps,
    )

    history_cap = caps.get("history")
    history_chars = history_cap.max_chars if history_cap else None
    envelope = ContextEnvelope(
        request_type=request_type,
        history=trim_sequence(history, history_chars),
        round_responses=trim_sequence(round_responses, history_chars),
        summaries=_sequence_cap(summaries, caps.get("summaries")),
        lore=_sequence_cap(lore, caps.get("lore")),
        memories=trim_memories(memories, caps.get("memories")),
        scenario_notes=trim_scenario_notes(scenario_notes, caps.get("scenario_notes")),
        director_guidance=_trim_text(director_guidance, caps.get("director_guidance")),
        character_guidance=_trim_text(character_guidance, caps.get("character_guidance")),
        allocation=allocation,
        **fields,
    )
    logger.debug("built %s envelope: %s", request_type,
                 {k: round(v, 3) for k, v in fractions.items() if v})
    return envelope
