"""Interpret agent output: director plans, world updates, character replies."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from roleforge.models import ActingCharacter, Character, DirectorPlan, PlanApplication
from roleforge.pipeline.agents import parse_json_output

logger = logging.getLogger(__name__)

Resolver = Callable[[str], "Character | None"]

DEFAULT_SENTINELS = frozenset({"default"})
_IDENTITY_FIELDS = frozenset({"id", "name"})


def _as_list(value: Any) -> list[Any]:
    if not value:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _finite(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _is_sentinel(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower() in DEFAULT_SENTINELS


def merge_state(
    current: dict[str, Any], changes: dict[str, Any]
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Apply non-empty, non-"default" fields. Returns (new state, applied fields)."""
    merged = dict(current)
    applied: dict[str, Any] = {}
    for key, value in changes.items():
        if key in _IDENTITY_FIELDS or value is None or value == "" or _is_sentinel(value):
            continue
        merged[key] = value
        applied[key] = value
    return merged, applied


# ---------------------------------------------------------------------------
# Director plan
# ---------------------------------------------------------------------------

def normalize_director_plan(raw: Any) -> DirectorPlan:
    """Accept the director's loose JSON shapes and produce a DirectorPlan."""
    if not isinstance(raw, dict):
        return DirectorPlan()

    guidance = raw.get("openGuidance")
    if not isinstance(guidance, str):
        guidance = raw.get("guidance") if isinstance(raw.get("guidance"), str) else ""

    actors: list[ActingCharacter] = []
    for entry in _as_list(raw.get("actingCharacters") or raw.get("characters")):
        if isinstance(entry, str) and entry.strip():
            actors.append(ActingCharacter(name=entry.strip()))
        elif isinstance(entry, dict) and (entry.get("name") or entry.get("id")):
            actors.append(ActingCharacter(
                name=str(entry.get("name") or entry.get("id")),
                id=str(entry["id"]) if entry.get("id") else None,
                guidance=str(entry.get("guidance") or ""),
                order=_finite(entry.get("order")),
                priority=_finite(entry.get("priority")),
            ))

    state_updates = raw.get("stateUpdates")
    if isinstance(state_updates, dict):
        # {"Alice": {"mood": "calm"}} shorthand
        state_updates = [
            {"name": name, **fields}
            for name, fields in state_updates.items()
            if isinstance(fields, dict)
        ]

    return DirectorPlan(
        open_guidance=guidance,
        acting_characters=actors,
        activations=[str(a) for a in _as_list(raw.get("activations")) if a],
        deactivations=[str(d) for d in _as_list(raw.get("deactivations")) if d],
        state_updates=[u for u in _as_list(state_updates) if isinstance(u, dict)],
    )


def order_acting_characters(actors: list[ActingCharacter]) -> list[ActingCharacter]:
    """Explicit order ascending first, then higher priority, then name, then input position."""
    def key(item: tuple[int, ActingCharacter]) -> tuple:
        index, actor = item
        has_order = actor.order is not None
        return (
            0 if has_order else 1,
            actor.order if has_order else 0.0,
            -(actor.priority or 0.0),
            actor.name.lower(),
            index,
        )

    return [actor for _, actor in sorted(enumerate(actors), key=key)]


def apply_director_plan(
    plan: DirectorPlan,
    active: list[Character],
    states: dict[str, dict[str, Any]],
    resolve: Resolver,
) -> PlanApplication:
    """Resolve responders, the new active set and merged character states.

    States are keyed by character id. Unknown references are logged and skipped.
    """
    def lookup(ref: str) -> Character | None:
        lowered = ref.strip().lower()
        for c in active:
            if c.id == ref or c.name.lower() == lowered:
                return c
        return resolve(ref)

    active_ids: list[str] = [c.id for c in active]

    responders: list[ActingCharacter] = []
    for actor in order_acting_characters(plan.acting_characters):
        character = lookup(actor.id or actor.name)
        if character is None:
            logger.warning("Director named unknown character %r, skipping", actor.name)
            continue
        responders.append(actor.model_copy(update={"id": character.id, "name": character.name}))
        if character.id not in active_ids:
            active_ids.append(character.id)

    activated: list[Character] = []
    for ref in plan.activations:
        character = lookup(ref)
        if character is None:
            logger.warning("Cannot activate unknown character %r", ref)
            continue
        activated.append(character)
        if character.id not in active_ids:
            active_ids.append(character.id)

    deactivated: list[str] = []
    for ref in plan.deactivations:
        character = lookup(ref)
        target = character.id if character else next(
            (i for i in active_ids if i.lower() == ref.strip().lower()), None
        )
        if target is None or target not in active_ids:
            logger.info("Deactivation of %r matched no active character", ref)
            continue
        active_ids.remove(target)
        deactivated.append(target)

    new_states = {k: dict(v) for k, v in states.items()}
    applied: dict[str, dict[str, Any]] = {}
    for update in plan.state_updates:
        ref = str(update.get("id") or update.get("name") or "")
        character = lookup(ref) if ref else None
        if character is None:
            logger.warning("State update for unknown character %r ignored", ref)
            continue
        merged, changes = merge_state(new_states.get(character.id, {}), update)
        if changes:
            new_states[character.id] = merged
            applied[character.id] = changes

    if not responders and activated:
        responders = [ActingCharacter(name=c.name, id=c.id) for c in activated]

    return PlanApplication(
        responders=responders,
        active_ids=active_ids,
        character_states=new_states,
        activated=[c.id for c in activated],
        deactivated=deactivated,
        applied_state_updates=applied,
    )


# ---------------------------------------------------------------------------
# World update
# ---------------------------------------------------------------------------

class WorldUpdate(BaseModel):
    changed: bool = False
    world_state: dict[str, Any] = Field(default_factory=dict)
    trackers: dict[str, Any] = Field(default_factory=dict)
    character_states: dict[str, dict[str, Any]] = Field(default_factory=dict)


def _normalize_trackers(trackers: dict[str, Any]) -> dict[str, Any]:
    normalized = dict(trackers)
    objectives = normalized.get("objectives")
    if isinstance(objectives, str):
        normalized["objectives"] = [o.strip() for o in objectives.split("\n") if o.strip()]
    elif objectives is not None and not isinstance(objectives, list):
        normalized["objectives"] = [objectives]
    return normalized


def apply_world_update(
    data: Any,
    world_state: dict[str, Any],
    trackers: dict[str, Any],
    states: dict[str, dict[str, Any]],
    resolve: Resolver,
) -> WorldUpdate:
    """Merge a world agent reply into the current world, trackers and character states."""
    result = WorldUpdate(
        world_state=dict(world_state),
        trackers=dict(trackers),
        character_states={k: dict(v) for k, v in states.items()},
    )
    if not isinstance(data, dict) or data.get("unchanged") or data.get("error"):
        return result

    new_world = data.get("worldState")
    if isinstance(new_world, dict) and new_world:
        result.world_state, changes = merge_state(result.world_state, new_world)
        result.changed = result.changed or bool(changes)

    new_trackers = data.get("trackers")
    if isinstance(new_trackers, dict) and new_trackers:
        result.trackers = _normalize_trackers({**result.trackers, **new_trackers})
        result.changed = True

    char_states = data.get("characterStates")
    if isinstance(char_states, dict):
        for ref, fields in char_states.items():
            if not isinstance(fields, dict):
                continue
            character = resolve(ref)
            key = character.id if character else ref
            merged, changes = merge_state(result.character_states.get(key, {}), fields)
            if changes:
                result.character_states[key] = merged
                result.changed = True
    return result


# ---------------------------------------------------------------------------
# Character reply
# ---------------------------------------------------------------------------

def parse_character_output(text: str) -> tuple[str, dict[str, Any]]:
    """Return (spoken response, state changes). Plain text is the response itself."""
    stripped = text.strip()
    if stripped.startswith("{") or stripped.startswith("```"):
        data = parse_json_output(stripped)
        if isinstance(data, dict) and isinstance(data.get("response"), str):
            state = data.get("characterState")
            return data["response"].strip(), state if isinstance(state, dict) else {}
    return stripped, {}
