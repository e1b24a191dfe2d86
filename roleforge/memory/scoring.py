"""Score adjustments for retrieved memories: temporal decay and conditional boosts.

Both adjustments are pure functions over a raw similarity score and the
entry's metadata. Decay runs first, boosts multiply the decayed score.
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

from roleforge.config import ConditionalRule, TemporalDecay
from roleforge.models import RetrievedMemory

logger = logging.getLogger(__name__)

DEFAULT_TIME_HALF_LIFE_DAYS = 7.0
DEFAULT_MESSAGE_HALF_LIFE = 50.0
DAY_MS = 24 * 60 * 60 * 1000

DECAY_EXEMPT_KEYS = ("temporalBlind", "decayExempt")
MESSAGE_COUNT_KEYS = ("messageCountSince", "message_count_since", "messages_since")

MessageCountLookup = Callable[[Any, str], "int | None"]

_EMOTION_KEYWORDS: dict[str, tuple[str, ...]] = {
    "happy": ("happy", "joy", "glad", "delighted", "smile", "laugh"),
    "sad": ("sad", "grief", "cry", "tears", "sorrow", "mourn"),
    "angry": ("angry", "furious", "rage", "shout", "anger"),
    "afraid": ("afraid", "fear", "scared", "terrified", "dread"),
    "surprised": ("surprised", "shocked", "astonished", "gasp"),
}


# ---------------------------------------------------------------------------
# Metadata helpers
# ---------------------------------------------------------------------------

def get_nested_field(data: dict[str, Any], path: str) -> Any:
    """Resolve a dot-path ("mood.primary") inside nested dicts. Missing → None."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def matches_filter(metadata: dict[str, Any], flt: dict[str, Any]) -> bool:
    """True when every filter key (dot-paths allowed) equals the metadata value."""
    return all(get_nested_field(metadata, k) == v for k, v in flt.items())


def parse_timestamp_ms(value: Any) -> float | None:
    """Accept epoch milliseconds (number or numeric string) or ISO-8601."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if re.fullmatch(r"-?\d+(\.\d+)?", text):
        return float(text)
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp() * 1000


def detect_emotion(text: str) -> str | None:
    lowered = text.lower()
    for emotion, words in _EMOTION_KEYWORDS.items():
        if any(re.search(rf"\b{w}", lowered) for w in words):
            return emotion
    return None


def is_decay_exempt(metadata: dict[str, Any]) -> bool:
    return any(bool(metadata.get(k)) for k in DECAY_EXEMPT_KEYS)


# ---------------------------------------------------------------------------
# Decay
# ---------------------------------------------------------------------------

def decay_factor(age: float, half_life: float, floor: float) -> float:
    if half_life <= 0:
        return 1.0
    return max(0.5 ** (max(age, 0.0) / half_life), floor)


def _message_count(
    metadata: dict[str, Any], since: str, lookup: MessageCountLookup | None
) -> int | None:
    for key in MESSAGE_COUNT_KEYS:
        value = metadata.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    scene_id = metadata.get("sceneId")
    if lookup is None or scene_id is None:
        return None
    try:
        return lookup(scene_id, since)
    except Exception:
        logger.warning("Message count lookup failed for scene %s", scene_id, exc_info=True)
        return None


def apply_temporal_decay(
    score: float,
    metadata: dict[str, Any],
    settings: TemporalDecay,
    message_count_lookup: MessageCountLookup | None = None,
    now_ms: float | None = None,
) -> float:
    """Scale a score down by the age of the memory.

    Exempt entries and entries with unusable timestamps keep their score.
    """
    if not settings.enabled or is_decay_exempt(metadata):
        return score

    raw_ts = metadata.get("timestamp", metadata.get("stored_at"))
    ts_ms = parse_timestamp_ms(raw_ts)
    if ts_ms is None:
        logger.warning("Skipping decay: unparseable memory timestamp %r", raw_ts)
        return score

    if settings.mode == "messageCount":
        since = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).isoformat()
        count = _message_count(metadata, since, message_count_lookup)
        if count is not None:
            half_life = settings.half_life or DEFAULT_MESSAGE_HALF_LIFE
            return score * decay_factor(count, half_life, settings.floor)
        logger.debug("No message count for memory, falling back to time decay")

    if now_ms is None:
        now_ms = datetime.now(timezone.utc).timestamp() * 1000
    half_life_days = settings.half_life if settings.mode == "time" and settings.half_life else DEFAULT_TIME_HALF_LIFE_DAYS
    age_days = (now_ms - ts_ms) / DAY_MS
    return score * decay_factor(age_days, half_life_days, settings.floor)


# ---------------------------------------------------------------------------
# Conditional boosts
# ---------------------------------------------------------------------------

def _rule_value(rule: ConditionalRule, text: str, metadata: dict[str, Any]) -> Any:
    if rule.field == "text":
        return text
    value = get_nested_field(metadata, rule.field)
    if value is None and rule.field == "emotion":
        return detect_emotion(text)
    return value


def rule_matches(rule: ConditionalRule, text: str, metadata: dict[str, Any]) -> bool:
    value = _rule_value(rule, text, metadata)
    if value is None:
        return False
    if isinstance(value, (list, tuple)):
        value = " ".join(str(v) for v in value)
    haystack = str(value).lower()
    needle = rule.match.lower()
    if rule.match_type == "exact":
        return haystack == needle
    return needle in haystack


def apply_conditional_boosts(
    score: float, text: str, metadata: dict[str, Any], rules: Iterable[ConditionalRule]
) -> float:
    for rule in rules:
        if rule_matches(rule, text, metadata):
            score *= rule.boost
    return score


# ---------------------------------------------------------------------------
# Prompt formatting
# ---------------------------------------------------------------------------

def _memory_line(entry: Any) -> str:
    if isinstance(entry, RetrievedMemory):
        return f"- [{round(entry.adjusted_score * 100)}%] {entry.text}"
    if isinstance(entry, dict):
        text = str(entry.get("text", json.dumps(entry)))
        score = entry.get("adjustedScore", entry.get("adjusted_score"))
        if isinstance(score, (int, float)):
            return f"- [{round(score * 100)}%] {text}"
        return f"- {text}"
    return f"- {entry}"


def format_memories_for_prompt(
    memories: Iterable[Any], heading: str = "## Relevant Memories"
) -> str:
    """Heading plus one bullet per memory, scored ones prefixed with a percentage."""
    lines = [_memory_line(m) for m in memories]
    if not lines:
        return ""
    return "\n".join([heading, *lines])
