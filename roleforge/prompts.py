"""Handlebars prompt rendering for agents, plus raw input normalization."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pybars

from roleforge.memory.scoring import format_memories_for_prompt
from roleforge.models import ContextEnvelope


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}}: iterate over the first N items."""
    result = []
    for item in list(items)[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}}: iterate over the last N items."""
    result = []
    for item in list(items)[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Default templates ────────────────────────────────────

DIRECTOR_TEMPLATE = """You are the Director of an interactive story.
{{#if scenario}}
## Scenario
{{{scenario}}}
{{/if}}
{{#if lore_text}}
## Lore
{{{lore_text}}}
{{/if}}
## Characters
{{{characters_text}}}
{{#if history_text}}
## Recent history
{{{history_text}}}
{{/if}}
{{#if round_text}}
## This round so far
{{{round_text}}}
{{/if}}
{{#if reconciliation}}
This is a reconciliation pass (pass {{director_pass}}). Review the responses above and emit only state updates, activations or deactivations.
{{/if}}
## Input
{{{user_input}}}

Return ONLY a JSON object: {"openGuidance": "...", "actingCharacters": [{"name": "...", "guidance": "...", "order": 1}], "activations": [], "deactivations": [], "stateUpdates": {}}
"""

WORLD_TEMPLATE = """You track the state of the world for an interactive story.
{{#if scenario}}
## Scenario
{{{scenario}}}
{{/if}}
## Current world state
{{{world_state_text}}}
## Trackers
{{{trackers_text}}}
{{#if history_text}}
## Recent history
{{{history_text}}}
{{/if}}
## Input
{{{user_input}}}

Return ONLY a JSON object: {"unchanged": true} or {"worldState": {}, "trackers": {}, "characterStates": {}}
"""

CHARACTER_TEMPLATE = """You are {{{character.name}}}. {{{character.description}}}
{{#if character.personality}}Personality: {{{character.personality}}}
{{/if}}
{{#if scenario}}
## Scenario
{{{scenario}}}
{{/if}}
{{#if lore_text}}
## Lore
{{{lore_text}}}
{{/if}}
{{#if memories_text}}
{{{memories_text}}}
{{/if}}
{{#if history_text}}
## Recent history
{{{history_text}}}
{{/if}}
{{#if round_text}}
[Other Characters in this turn:]
{{{round_text}}}
{{/if}}
{{#if character_guidance}}
Director's note: {{{character_guidance}}}
{{/if}}
{{#if state_text}}
Your current state: {{{state_text}}}
{{/if}}
## Input
{{{user_input}}}

Respond in character as {{{character.name}}}.
"""

DEFAULT_TEMPLATES: dict[str, str] = {
    "director": DIRECTOR_TEMPLATE,
    "world": WORLD_TEMPLATE,
    "character": CHARACTER_TEMPLATE,
}


def build_prompt_context(
    envelope: ContextEnvelope, character: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Flatten an envelope into template variables.

    Keeps the structured fields and adds pre-formatted text blocks
    (history_text, memories_text, ...) for short template paths.
    """
    ctx: dict[str, Any] = envelope.model_dump(exclude={"allocation"})

    notes = [f"{k.capitalize()}: {v}" for k, v in envelope.scenario_notes.items() if v]
    memory_blocks = [
        format_memories_for_prompt(entries, f"## Memories ({key})")
        for key, entries in envelope.memories.items()
        if entries
    ]

    ctx.update({
        "scenario": "\n".join(notes),
        "lore_text": "\n".join(envelope.lore),
        "history_text": "\n".join(envelope.history),
        "round_text": "\n".join(envelope.round_responses),
        "summaries_text": "\n".join(envelope.summaries),
        "memories_text": "\n".join(memory_blocks),
        "characters_text": "\n".join(
            f"- {c.get('name', '')}: {c.get('description', '')}" for c in envelope.characters
        ),
        "world_state_text": json.dumps(envelope.world_state, indent=2),
        "trackers_text": json.dumps(envelope.trackers, indent=2),
        "reconciliation": envelope.director_pass > 1,
    })
    if character is not None:
        ctx["character"] = character
        state = envelope.character_states.get(character.get("id", ""), {})
        ctx["state_text"] = ", ".join(f"{k}: {v}" for k, v in state.items() if v)
    return ctx


# ── Raw input normalization ──────────────────────────────

MAX_OUTER_UNWRAP = 8
MAX_INNER_UNWRAP = 4


def _try_parse(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    stripped = value.strip()
    if not (
        stripped.startswith("{")
        or stripped.startswith("[")
        or (stripped.startswith('"{') and stripped.endswith('"'))
    ):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        try:
            return json.loads(stripped.strip('"'))
        except json.JSONDecodeError:
            return value


def _parse_repeatedly(value: Any, limit: int) -> Any:
    for _ in range(limit):
        parsed = _try_parse(value)
        if parsed == value:
            break
        value = parsed
    return value


def unwrap_prompt(raw: Any) -> Any:
    """Undo repeated JSON encoding and {"prompt": ...} envelopes around user input.

    Depth is bounded so adversarial input cannot loop forever.
    """
    current = _parse_repeatedly(raw, MAX_OUTER_UNWRAP)
    depth = 0
    while isinstance(current, dict) and "prompt" in current and depth < MAX_OUTER_UNWRAP:
        current = _parse_repeatedly(current["prompt"], MAX_INNER_UNWRAP)
        depth += 1
    return current
