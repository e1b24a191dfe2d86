"""Memory retrieval across participant and shared scopes.

The retriever resolves a scope specification into concrete scope strings,
queries each through the MemoryStore, then re-ranks the merged hits with
temporal decay and conditional boosts read from the current config.

Participant and world enumeration come in through small capability
interfaces so this layer never imports storage directly.
"""

from __future__ import annotations

import logging
from typing import Protocol

from roleforge.config import AppConfig, ConfigSource
from roleforge.memory.scoring import apply_conditional_boosts, apply_temporal_decay
from roleforge.memory.store import (
    MemoryStore,
    parse_participant_scope,
    participant_scope,
    shared_scope,
)
from roleforge.models import Character, RetrievedMemory, World

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 5
SHARED_SCOPE_TOP_K = 3
SHARED_LABEL = "shared"


# ---------------------------------------------------------------------------
# Capability interfaces
# ---------------------------------------------------------------------------

class ParticipantDirectory(Protocol):
    def list_characters(self) -> list[Character]: ...


class WorldDirectory(Protocol):
    def list_worlds(self) -> list[World]: ...


class MessageCounter(Protocol):
    def count_messages_since(self, scene_id: int, since: str) -> int | None: ...


# ---------------------------------------------------------------------------
# MemoryRetriever
# ---------------------------------------------------------------------------

class MemoryRetriever:
    def __init__(
        self,
        store: MemoryStore,
        config: ConfigSource,
        participants: ParticipantDirectory,
        worlds: WorldDirectory,
        message_counter: MessageCounter | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._participants = participants
        self._worlds = worlds
        self._message_counter = message_counter

    def _resolve_scopes(
        self,
        world_id: int | None,
        participant_id: str | None,
        include_shared: bool,
    ) -> list[tuple[str, str]]:
        """(scope, participant label) pairs for a scope specification."""
        if world_id is not None:
            world_ids = [world_id]
        else:
            world_ids = [w.id for w in self._worlds.list_worlds()]

        if participant_id is not None and world_id is not None:
            label = next(
                (c.name for c in self._participants.list_characters() if c.id == participant_id),
                participant_id,
            )
            pairs = [(participant_scope(world_id, participant_id), label)]
        else:
            characters = self._participants.list_characters()
            if participant_id is not None:
                characters = [c for c in characters if c.id == participant_id]
            pairs = [
                (participant_scope(w, c.id), c.name)
                for w in world_ids
                for c in characters
            ]

        if include_shared:
            pairs.extend((shared_scope(w), SHARED_LABEL) for w in world_ids)
        return pairs

    def _adjust(self, memory: RetrievedMemory, config: AppConfig) -> RetrievedMemory:
        vector = config.vector
        lookup = self._message_counter.count_messages_since if self._message_counter else None
        score = apply_temporal_decay(
            memory.similarity, memory.metadata, vector.temporal_decay, lookup
        )
        score = apply_conditional_boosts(
            score, memory.text, memory.metadata, vector.conditional_rules
        )
        return memory.model_copy(update={"adjusted_score": score})

    async def query(
        self,
        text: str,
        *,
        world_id: int | None = None,
        participant_id: str | None = None,
        include_shared: bool = False,
        top_k: int = DEFAULT_TOP_K,
        min_similarity: float | None = None,
    ) -> list[RetrievedMemory]:
        """Ranked memories for `text` across the resolved scopes.

        Query text is truncated to memoryCaps.maxQueryChars and top_k is
        clamped to memoryCaps.maxTopK. Scopes that fail are skipped.
        """
        config = self._config.load()
        caps = config.vector.memory_caps
        effective_k = max(0, min(top_k, caps.max_top_k))
        threshold = config.vector.min_similarity if min_similarity is None else min_similarity
        query_text = text[: caps.max_query_chars]
        if effective_k == 0 or not query_text.strip():
            return []

        results: list[RetrievedMemory] = []
        for scope, label in self._resolve_scopes(world_id, participant_id, include_shared):
            k = min(effective_k, SHARED_SCOPE_TOP_K) if label == SHARED_LABEL else effective_k
            try:
                hits = await self._store.query(scope, query_text, k, threshold)
            except Exception:
                logger.warning("Memory query for scope %s failed, skipping", scope, exc_info=True)
                continue
            for hit in hits:
                memory = RetrievedMemory(
                    text=hit.text,
                    adjusted_score=hit.similarity,
                    similarity=hit.similarity,
                    participant_label=label,
                    scope=scope,
                    metadata=hit.metadata,
                )
                results.append(self._adjust(memory, config))

        results.sort(key=lambda m: m.adjusted_score, reverse=True)
        logger.debug("retrieved %d memories (k=%d) for world=%s participant=%s",
                     len(results), effective_k, world_id, participant_id)
        return results[:effective_k]

    async def retrieve(
        self, scope: str, text: str, top_k: int = DEFAULT_TOP_K
    ) -> list[RetrievedMemory]:
        """Query a literal scope string such as "world_1_char_alice"."""
        parsed = parse_participant_scope(scope)
        if parsed is None:
            logger.warning("Unrecognized memory scope %r", scope)
            return []
        world_id, participant_id = parsed
        return await self.query(
            text, world_id=world_id, participant_id=participant_id, top_k=top_k
        )
