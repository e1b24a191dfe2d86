"""Round vectorization: turn a finished round into per-participant memories.

Every active participant of a round receives its own copy of every chunk, so
each one remembers what the others said as well as its own lines.

Chunk strategies:
  perMessage   one chunk per logged message
  perRound     the round summary, split at chunkSize with optional overlap
  perScene     same chunking as perRound, applied per round
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, Field

from roleforge.config import ConfigSource, VectorConfig
from roleforge.memory.store import MemoryStore, participant_scope, shared_scope
from roleforge.models import Character, Message, utc_now
from roleforge.storage import Storage

logger = logging.getLogger(__name__)

MAX_LINE_CHARS = 150
LINE_SEPARATOR = " | "

VectorizeStatus = Literal["complete", "skipped", "error"]


class Chunk(BaseModel):
    text: str
    message_ids: list[int] = Field(default_factory=list)
    speaker_ids: list[str] = Field(default_factory=list)


class RevectorizeReport(BaseModel):
    scene_id: int
    rounds: int = 0
    complete: int = 0
    skipped: int = 0
    failed: int = 0
    deleted: int = 0


# ---------------------------------------------------------------------------
# Transcript and chunking
# ---------------------------------------------------------------------------

def _speaker(message: Message) -> str:
    return message.sender or "narrator"


def _speaker_id(message: Message) -> str:
    return message.sender_id or message.sender or "narrator"


def _spoken(messages: list[Message]) -> list[Message]:
    return [m for m in messages if m.content.strip()]


def _truncate(text: str, limit: int = MAX_LINE_CHARS) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[:limit] + "..."


def round_header(round_number: int, actors: list[str]) -> str:
    return f"Round {round_number} ({', '.join(actors)}): "


def summarize_round(round_number: int, messages: list[Message], actors: list[str]) -> str:
    """'Round 3 (Alice, Bob): Alice: Hi! | Bob: Hello.'"""
    lines = [f"{_speaker(m)}: {_truncate(m.content)}" for m in _spoken(messages)]
    return round_header(round_number, actors) + LINE_SEPARATOR.join(lines)


def _split_long(text: str, size: int) -> list[str]:
    return [text[i:i + size] for i in range(0, len(text), size)] or [""]


def chunk_messages(
    messages: list[Message], chunk_size: int, overlap: float
) -> list[Chunk]:
    """Pack truncated speaker lines into chunks of at most chunk_size characters.

    With overlap > 0, each chunk after the first starts with the last
    `int(chunk_size * overlap)` characters of the chunk before it.
    """
    size = max(1, chunk_size)
    pieces: list[tuple[str, Message]] = []
    for m in _spoken(messages):
        line = f"{_speaker(m)}: {_truncate(m.content)}"
        pieces.extend((part, m) for part in _split_long(line, size))

    chunks: list[Chunk] = []
    current: list[tuple[str, Message]] = []
    length = 0
    for text, m in pieces:
        added = len(text) + (len(LINE_SEPARATOR) if current else 0)
        if current and length + added > size:
            chunks.append(_make_chunk(current))
            current, length = [], 0
            added = len(text)
        current.append((text, m))
        length += added
    if current:
        chunks.append(_make_chunk(current))

    overlap_chars = int(size * max(0.0, min(overlap, 1.0)))
    if overlap_chars and len(chunks) > 1:
        bodies = [c.text for c in chunks]
        for i in range(1, len(chunks)):
            tail = bodies[i - 1][-overlap_chars:]
            chunks[i] = chunks[i].model_copy(update={"text": tail + LINE_SEPARATOR + bodies[i]})
    return chunks


def _make_chunk(items: list[tuple[str, Message]]) -> Chunk:
    message_ids: list[int] = []
    speaker_ids: list[str] = []
    for _, m in items:
        if m.id not in message_ids:
            message_ids.append(m.id)
        if _speaker_id(m) not in speaker_ids:
            speaker_ids.append(_speaker_id(m))
    return Chunk(
        text=LINE_SEPARATOR.join(text for text, _ in items),
        message_ids=message_ids,
        speaker_ids=speaker_ids,
    )


def build_chunks(
    round_number: int, messages: list[Message], actors: list[str], settings: VectorConfig
) -> list[Chunk]:
    header = round_header(round_number, actors)
    if settings.chunk_strategy == "perMessage":
        return [
            Chunk(
                text=f"{header}{_speaker(m)}: {m.content.strip()}",
                message_ids=[m.id],
                speaker_ids=[_speaker_id(m)],
            )
            for m in _spoken(messages)
        ]
    chunks = chunk_messages(messages, settings.chunk_size, settings.sliding_window_overlap)
    return [c.model_copy(update={"text": header + c.text}) for c in chunks]


# ---------------------------------------------------------------------------
# VectorizationAgent
# ---------------------------------------------------------------------------

class VectorizationAgent:
    def __init__(self, storage: Storage, store: MemoryStore, config: ConfigSource) -> None:
        self._storage = storage
        self._store = store
        self._config = config

    def _participants(self, ids: list[str], messages: list[Message]) -> list[Character]:
        if not ids:
            ids = []
            for m in messages:
                if m.source == "character" and m.sender_id and m.sender_id not in ids:
                    ids.append(m.sender_id)
        found = [self._storage.get_character(i) for i in ids]
        return [c for c in found if c is not None]

    async def vectorize_round(self, scene_id: int, round_number: int) -> VectorizeStatus:
        """Chunk one round and store a copy of every chunk in each participant's scope."""
        try:
            scene = self._storage.get_scene(scene_id)
            rnd = self._storage.get_round(scene_id, round_number)
            if scene is None or rnd is None:
                logger.info("vectorize skipped: scene %s round %s not found", scene_id, round_number)
                return "skipped"
            messages = _spoken(self._storage.get_round_messages(scene_id, round_number))
            participants = self._participants(rnd.active_characters, messages)
            if not messages or not participants:
                logger.info("vectorize skipped: scene %s round %d has no messages or participants",
                            scene_id, round_number)
                return "skipped"

            arc = self._storage.get_arc(scene.arc_id)
            campaign = self._storage.get_campaign(arc.campaign_id) if arc else None
            world = self._storage.get_world(campaign.world_id) if campaign else None
            if world is None:
                logger.error("vectorize failed: scene %s is not linked to a world", scene_id)
                return "error"

            settings = self._config.load().vector
            actors = [c.name for c in participants]
            chunks = build_chunks(round_number, messages, actors, settings)
            base: dict[str, Any] = {
                "roundId": rnd.round_id,
                "roundNumber": round_number,
                "sceneId": scene_id,
                "sceneName": scene.title,
                "worldId": world.id,
                "worldName": world.name,
                "campaignId": campaign.id,
                "arcId": arc.id,
                "actors": actors,
                "timestamp": utc_now(),
                "type": "round_memory",
                "chunkCount": len(chunks),
                "chunkStrategy": settings.chunk_strategy,
            }
        except Exception:
            logger.exception("vectorize failed preparing scene %s round %s", scene_id, round_number)
            return "error"

        failures = 0
        for character in participants:
            try:
                scope = participant_scope(world.id, character.id)
                for index, chunk in enumerate(chunks):
                    stored = await self._store.add(
                        scope,
                        f"scene{scene_id}_round{round_number}_{character.id}_chunk{index}",
                        chunk.text,
                        {
                            **base,
                            "characterId": character.id,
                            "characterName": character.name,
                            "chunkIndex": index,
                            "messageIds": chunk.message_ids,
                            "speakerIds": chunk.speaker_ids,
                        },
                    )
                    if not stored:
                        failures += 1
            except Exception:
                failures += 1
                logger.exception("vectorize failed for %s in scene %s round %d",
                                 character.name, scene_id, round_number)

        if settings.store_shared_memories:
            scope = shared_scope(world.id)
            for index, chunk in enumerate(chunks):
                stored = await self._store.add(
                    scope,
                    f"scene{scene_id}_round{round_number}_shared_chunk{index}",
                    chunk.text,
                    {**base, "chunkIndex": index, "messageIds": chunk.message_ids,
                     "speakerIds": chunk.speaker_ids},
                )
                if not stored:
                    failures += 1

        if failures and failures >= len(chunks) * len(participants):
            return "error"
        self._storage.mark_round_vectorized(scene_id, round_number)
        logger.info("vectorized scene %s round %d: %d chunks x %d participants",
                    scene_id, round_number, len(chunks), len(participants))
        return "complete"

    async def revectorize_scene(self, scene_id: int, *, clear_existing: bool = True) -> RevectorizeReport:
        """Rebuild the memories of every persisted round in a scene."""
        report = RevectorizeReport(scene_id=scene_id)
        if clear_existing:
            try:
                result = await self._store.delete_by_metadata({"sceneId": scene_id}, confirm=True)
                report.deleted = result.deleted
            except Exception:
                logger.exception("could not clear existing vectors for scene %s", scene_id)

        for rnd in self._storage.list_rounds(scene_id):
            report.rounds += 1
            try:
                status = await self.vectorize_round(scene_id, rnd.round_number)
            except Exception:
                logger.exception("revectorize failed for scene %s round %d", scene_id, rnd.round_number)
                status = "error"
            if status == "complete":
                report.complete += 1
            elif status == "skipped":
                report.skipped += 1
            else:
                report.failed += 1
        logger.info("revectorized scene %s: %s", scene_id, report.model_dump())
        return report
