"""JSON file storage for scenes, rounds, messages and participants.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM. Each table is one JSON list, read and written
whole through plain helper methods. Writes are serialized with a lock so
concurrent rounds in different scenes cannot interleave a read-modify-write.

Directory layout:

    {base}/
      tables/
        worlds.json
        campaigns.json
        arcs.json
        scenes.json
        rounds.json
        messages.json        ← scene-scoped, gapless message_number
        characters.json
        personas.json
        lore.json
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel

from roleforge.models import (
    Arc,
    Campaign,
    Character,
    LoreEntry,
    Message,
    MessageSource,
    Persona,
    Round,
    Scene,
    World,
    utc_now,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_iso(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._tables = base_path / "tables"
        self._tables.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal table helpers
    # ------------------------------------------------------------------

    def _table(self, name: str) -> Path:
        return self._tables / f"{name}.json"

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    def _rows(self, name: str, model: type[ModelT]) -> list[ModelT]:
        path = self._table(name)
        if not path.exists():
            return []
        return [model.model_validate(r) for r in self._read_json(path)]

    def _save_rows(self, name: str, rows: list[BaseModel]) -> None:
        self._write_json(self._table(name), [r.model_dump() for r in rows])

    def _next_id(self, rows: list[Any]) -> int:
        return max((r.id for r in rows), default=0) + 1

    # ------------------------------------------------------------------
    # World / campaign / arc
    # ------------------------------------------------------------------

    def create_world(self, name: str, description: str = "") -> World:
        with self._lock:
            worlds = self._rows("worlds", World)
            world = World(id=self._next_id(worlds), name=name, description=description)
            worlds.append(world)
            self._save_rows("worlds", worlds)
        return world

    def get_world(self, world_id: int) -> World | None:
        return next((w for w in self._rows("worlds", World) if w.id == world_id), None)

    def list_worlds(self) -> list[World]:
        return self._rows("worlds", World)

    def create_campaign(self, world_id: int, name: str, description: str = "") -> Campaign:
        with self._lock:
            campaigns = self._rows("campaigns", Campaign)
            campaign = Campaign(
                id=self._next_id(campaigns), world_id=world_id, name=name, description=description
            )
            campaigns.append(campaign)
            self._save_rows("campaigns", campaigns)
        return campaign

    def get_campaign(self, campaign_id: int) -> Campaign | None:
        return next((c for c in self._rows("campaigns", Campaign) if c.id == campaign_id), None)

    def update_campaign(self, campaign_id: int, **fields: Any) -> Campaign:
        with self._lock:
            campaigns = self._rows("campaigns", Campaign)
            for i, c in enumerate(campaigns):
                if c.id == campaign_id:
                    campaigns[i] = c.model_copy(update=fields)
                    self._save_rows("campaigns", campaigns)
                    return campaigns[i]
        raise KeyError(f"Campaign {campaign_id} not found")

    def create_arc(self, campaign_id: int, name: str, description: str = "") -> Arc:
        with self._lock:
            arcs = self._rows("arcs", Arc)
            arc = Arc(id=self._next_id(arcs), campaign_id=campaign_id, name=name, description=description)
            arcs.append(arc)
            self._save_rows("arcs", arcs)
        return arc

    def get_arc(self, arc_id: int) -> Arc | None:
        return next((a for a in self._rows("arcs", Arc) if a.id == arc_id), None)

    # ------------------------------------------------------------------
    # Scenes
    # ------------------------------------------------------------------

    def create_scene(self, arc_id: int, title: str, **fields: Any) -> Scene:
        """Create a scene together with its first round."""
        with self._lock:
            scenes = self._rows("scenes", Scene)
            scene = Scene(id=self._next_id(scenes), arc_id=arc_id, title=title, **fields)
            scenes.append(scene)
            self._save_rows("scenes", scenes)
            self.ensure_round(scene.id, scene.current_round_number)
        return scene

    def get_scene(self, scene_id: int) -> Scene | None:
        return next((s for s in self._rows("scenes", Scene) if s.id == scene_id), None)

    def update_scene(self, scene_id: int, **fields: Any) -> Scene:
        with self._lock:
            scenes = self._rows("scenes", Scene)
            for i, s in enumerate(scenes):
                if s.id == scene_id:
                    scenes[i] = s.model_copy(update=fields)
                    self._save_rows("scenes", scenes)
                    return scenes[i]
        raise KeyError(f"Scene {scene_id} not found")

    # ------------------------------------------------------------------
    # Characters / personas
    # ------------------------------------------------------------------

    def save_character(self, character: Character) -> None:
        """Upsert a character by id."""
        with self._lock:
            chars = self.list_characters()
            for i, c in enumerate(chars):
                if c.id == character.id:
                    chars[i] = character
                    break
            else:
                chars.append(character)
            self._save_rows("characters", chars)

    def list_characters(self) -> list[Character]:
        return self._rows("characters", Character)

    def get_character(self, character_id: str) -> Character | None:
        return next((c for c in self.list_characters() if c.id == character_id), None)

    def find_character(self, ref: str) -> Character | None:
        """Look up by id, then by case-insensitive name."""
        chars = self.list_characters()
        for c in chars:
            if c.id == ref:
                return c
        lowered = ref.strip().lower()
        return next((c for c in chars if c.name.lower() == lowered), None)

    def save_persona(self, persona: Persona) -> None:
        """Upsert a persona by id."""
        with self._lock:
            personas = self._rows("personas", Persona)
            for i, p in enumerate(personas):
                if p.id == persona.id:
                    personas[i] = persona
                    break
            else:
                personas.append(persona)
            self._save_rows("personas", personas)

    def get_persona(self, persona_id: str) -> Persona | None:
        return next((p for p in self._rows("personas", Persona) if p.id == persona_id), None)

    # ------------------------------------------------------------------
    # Lore
    # ------------------------------------------------------------------

    def add_lore_entry(self, world_id: int, keys: list[str], content: str) -> LoreEntry:
        with self._lock:
            entries = self._rows("lore", LoreEntry)
            entry = LoreEntry(id=self._next_id(entries), world_id=world_id, keys=keys, content=content)
            entries.append(entry)
            self._save_rows("lore", entries)
        return entry

    def list_lore(self, world_id: int) -> list[LoreEntry]:
        return [e for e in self._rows("lore", LoreEntry) if e.world_id == world_id]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def log_message(
        self,
        scene_id: int,
        sender: str,
        content: str,
        round_number: int,
        source: MessageSource = "character",
        sender_id: str | None = None,
    ) -> Message:
        with self._lock:
            messages = self._rows("messages", Message)
            number = max(
                (m.message_number for m in messages if m.scene_id == scene_id), default=0
            ) + 1
            message = Message(
                id=self._next_id(messages),
                scene_id=scene_id,
                round_number=round_number,
                message_number=number,
                sender=sender,
                content=content,
                source=source,
                sender_id=sender_id,
            )
            messages.append(message)
            self._save_rows("messages", messages)
        return message

    def get_messages(self, scene_id: int) -> list[Message]:
        msgs = [m for m in self._rows("messages", Message) if m.scene_id == scene_id]
        return sorted(msgs, key=lambda m: m.message_number)

    def get_round_messages(self, scene_id: int, round_number: int) -> list[Message]:
        return [m for m in self.get_messages(scene_id) if m.round_number == round_number]

    def get_recent_messages(self, scene_id: int, limit: int) -> list[Message]:
        if limit <= 0:
            return []
        return self.get_messages(scene_id)[-limit:]

    def update_message_content(self, message_id: int, content: str) -> Message:
        with self._lock:
            messages = self._rows("messages", Message)
            for i, m in enumerate(messages):
                if m.id == message_id:
                    messages[i] = m.model_copy(update={"content": content})
                    self._save_rows("messages", messages)
                    return messages[i]
        raise KeyError(f"Message {message_id} not found")

    def delete_message(self, message_id: int) -> bool:
        """Delete a message and close the numbering gap it leaves in its scene."""
        with self._lock:
            messages = self._rows("messages", Message)
            target = next((m for m in messages if m.id == message_id), None)
            if target is None:
                return False
            kept: list[Message] = []
            for m in messages:
                if m.id == message_id:
                    continue
                if m.scene_id == target.scene_id and m.message_number > target.message_number:
                    m = m.model_copy(update={"message_number": m.message_number - 1})
                kept.append(m)
            self._save_rows("messages", kept)
        return True

    def count_messages_since(self, scene_id: int, since: str) -> int | None:
        """Messages logged in a scene strictly after `since` (ISO-8601)."""
        since_dt = parse_iso(since)
        if since_dt is None:
            return None
        count = 0
        for m in self.get_messages(scene_id):
            ts = parse_iso(m.timestamp)
            if ts is not None and ts > since_dt:
                count += 1
        return count

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    def ensure_round(self, scene_id: int, round_number: int) -> Round:
        with self._lock:
            rounds = self._rows("rounds", Round)
            for r in rounds:
                if r.scene_id == scene_id and r.round_number == round_number:
                    return r
            new = Round(scene_id=scene_id, round_number=round_number)
            rounds.append(new)
            self._save_rows("rounds", rounds)
        return new

    def get_round(self, scene_id: int, round_number: int) -> Round | None:
        return next(
            (r for r in self._rows("rounds", Round)
             if r.scene_id == scene_id and r.round_number == round_number),
            None,
        )

    def list_rounds(self, scene_id: int) -> list[Round]:
        rounds = [r for r in self._rows("rounds", Round) if r.scene_id == scene_id]
        return sorted(rounds, key=lambda r: r.round_number)

    def _update_round(self, scene_id: int, round_number: int, **fields: Any) -> Round:
        rounds = self._rows("rounds", Round)
        for i, r in enumerate(rounds):
            if r.scene_id == scene_id and r.round_number == round_number:
                rounds[i] = r.model_copy(update=fields)
                self._save_rows("rounds", rounds)
                return rounds[i]
        raise KeyError(f"Round {round_number} of scene {scene_id} not found")

    def complete_round(self, scene_id: int, active_characters: list[str]) -> int:
        """Close the scene's current round and open the next one.

        Returns the new current round number.
        """
        with self._lock:
            scene = self.get_scene(scene_id)
            if scene is None:
                raise KeyError(f"Scene {scene_id} not found")
            current = scene.current_round_number
            self.ensure_round(scene_id, current)
            self._update_round(
                scene_id,
                current,
                status="completed",
                active_characters=list(active_characters),
                completed_at=utc_now(),
            )
            next_number = current + 1
            self.ensure_round(scene_id, next_number)
            self.update_scene(scene_id, current_round_number=next_number)
        logger.debug("scene=%s round %d completed, now at %d", scene_id, current, next_number)
        return next_number

    def mark_round_vectorized(self, scene_id: int, round_number: int) -> None:
        with self._lock:
            self._update_round(scene_id, round_number, vectorized=True)
