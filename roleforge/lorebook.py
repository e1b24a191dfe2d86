"""Keyword lorebook matching.

An entry is selected when any of its keys occurs in the scanned text
(case-insensitive, whole-word). Disabled entries never match.
"""

from __future__ import annotations

import re

from roleforge.models import LoreEntry


def _key_pattern(key: str) -> re.Pattern[str]:
    return re.compile(rf"(?<!\w){re.escape(key.strip().lower())}(?!\w)")


def match_lore_entries(entries: list[LoreEntry], text: str) -> list[LoreEntry]:
    """Return enabled entries whose keys appear in text, in entry order."""
    lowered = text.lower()
    matched: list[LoreEntry] = []
    for entry in entries:
        if not entry.enabled:
            continue
        if any(k.strip() and _key_pattern(k).search(lowered) for k in entry.keys):
            matched.append(entry)
    return matched


def format_lore(entries: list[LoreEntry]) -> list[str]:
    """One line per entry: "[key1, key2] content"."""
    return [f"[{', '.join(e.keys)}] {e.content}" for e in entries]
