"""Round orchestrator.

One round runs strictly in sequence:

    director → world (optional) → characters in plan order
             → reconciliation director pass (optional) → complete + vectorize

Each character's reply is added to the working round context before the next
character's envelope is built, so later actors see earlier ones. Nothing from
a later actor ever reaches an earlier actor's context.

Storage, config, retrieval and vectorization are injected. The LLM is either
injected directly (one callable for all agents) or resolved per agent from
its configured profile.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import BaseModel

from roleforge.config import AppConfig, ConfigSource
from roleforge.llm import LLM
from roleforge.lorebook import format_lore, match_lore_entries
from roleforge.memory.retriever import MemoryRetriever
from roleforge.models import (
    ActingCharacter,
    Arc,
    Campaign,
    Character,
    CharacterResponse,
    ContextEnvelope,
    Persona,
    RetrievedMemory,
    RoundResult,
    Scene,
    World,
)
from roleforge.pipeline.agents import Agent, AgentResult, parse_json_output
from roleforge.pipeline.context import build_context_envelope
from roleforge.pipeline.extractors import (
    apply_director_plan,
    apply_world_update,
    merge_state,
    normalize_director_plan,
    parse_character_output,
)
from roleforge.pipeline.vectorization import VectorizationAgent
from roleforge.prompts import unwrap_prompt
from roleforge.storage import Storage

logger = logging.getLogger(__name__)

MEMORY_QUERY_HISTORY_CHARS = 500
CURRENT_ROUND_KEY = "currentRound"
CONTINUE_PROMPT = (
    "[System: Continue scene. Previous character messages:\n{messages}\n\n"
    "Decide which characters should continue the scene.]"
)


class SessionContextError(LookupError):
    """Raised when a scene's arc → campaign → world chain cannot be resolved."""


class SessionContext(BaseModel):
    world: World
    campaign: Campaign
    arc: Arc
    scene: Scene
    active_characters: list[Character]
    persona: Persona | None = None
    lore: list[str] = []


class Orchestrator:
    def __init__(
        self,
        *,
        storage: Storage,
        config: ConfigSource,
        retriever: MemoryRetriever,
        vectorizer: VectorizationAgent,
        llm: LLM | None = None,
        agents: dict[str, Agent] | None = None,
    ) -> None:
        self._storage = storage
        self._config = config
        self._retriever = retriever
        self._vectorizer = vectorizer
        self._agents = {name: Agent(name, config, llm) for name in ("director", "world", "character")}
        self._agents.update(agents or {})
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Session context
    # ------------------------------------------------------------------

    def build_session_context(
        self, scene_id: int, scan_text: str = "", persona_id: str | None = None
    ) -> SessionContext:
        scene = self._storage.get_scene(scene_id)
        if scene is None:
            raise SessionContextError(f"Scene {scene_id} not found")
        arc = self._storage.get_arc(scene.arc_id)
        if arc is None:
            raise SessionContextError(f"Scene {scene_id} references missing arc {scene.arc_id}")
        campaign = self._storage.get_campaign(arc.campaign_id)
        if campaign is None:
            raise SessionContextError(f"Arc {arc.id} references missing campaign {arc.campaign_id}")
        world = self._storage.get_world(campaign.world_id)
        if world is None:
            raise SessionContextError(
                f"Campaign {campaign.id} references missing world {campaign.world_id}"
            )

        active = [c for c in map(self._storage.get_character, scene.active_characters) if c]
        recent = "\n".join(m.content for m in self._storage.get_recent_messages(scene_id, 5))
        lore = format_lore(match_lore_entries(self._storage.list_lore(world.id), f"{scan_text}\n{recent}"))
        persona = self._storage.get_persona(persona_id) if persona_id else None
        return SessionContext(
            world=world,
            campaign=campaign,
            arc=arc,
            scene=scene,
            active_characters=active,
            persona=persona,
            lore=lore,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve(self, ref: str) -> Character | None:
        return self._storage.find_character(ref)

    def _history(self, scene_id: int, cfg: AppConfig) -> list[str]:
        messages = self._storage.get_recent_messages(scene_id, cfg.features.history_window_messages)
        return [f"{m.sender}: {m.content}" for m in messages]

    def _envelope(
        self,
        request_type: str,
        session: SessionContext,
        cfg: AppConfig,
        *,
        user_input: str,
        history: list[str],
        states: dict[str, dict[str, Any]],
        world_state: dict[str, Any],
        trackers: dict[str, Any],
        active: list[Character],
        **sections: Any,
    ) -> ContextEnvelope:
        scene = session.scene
        scene_note = " ".join(
            p for p in (scene.description, scene.location, scene.time_of_day) if p
        )
        return build_context_envelope(
            request_type,
            budget=cfg.token_budget,
            history=history,
            history_window=cfg.features.history_window_messages,
            summaries=[scene.summary] if scene.summary else [],
            lore=session.lore,
            scenario_notes={
                "world": session.world.description,
                "campaign": session.campaign.description,
                "arc": session.arc.description,
                "scene": scene_note,
            },
            scene_id=scene.id,
            round_number=scene.current_round_number,
            user_input=user_input,
            characters=[c.model_dump() for c in active],
            persona=session.persona.model_dump() if session.persona else {},
            character_states=states,
            world_state=world_state,
            trackers=trackers,
            **sections,
        )

    async def _memories_for(
        self,
        character: Character,
        session: SessionContext,
        user_input: str,
        history: list[str],
    ) -> list[RetrievedMemory]:
        query = f"{user_input}\n" + "\n".join(history)[:MEMORY_QUERY_HISTORY_CHARS]
        return await self._retriever.query(
            query,
            world_id=session.world.id,
            participant_id=character.id,
            include_shared=True,
        )

    def _active_characters(self, ids: list[str]) -> list[Character]:
        return [c for c in map(self._storage.get_character, ids) if c]

    # ------------------------------------------------------------------
    # Round
    # ------------------------------------------------------------------

    async def run_round(
        self, scene_id: int, user_input: Any, *, persona_id: str | None = None
    ) -> RoundResult:
        """Play one round in response to user input."""
        text = unwrap_prompt(user_input)
        if not isinstance(text, str):
            text = str(text)
        return await self._play_round(scene_id, text, persona_id=persona_id, log_input=True)

    async def continue_round(self, scene_id: int) -> RoundResult:
        """Play a round without user input, seeded by the last round's character lines."""
        scene = self._storage.get_scene(scene_id)
        if scene is None:
            raise SessionContextError(f"Scene {scene_id} not found")
        previous = self._storage.get_round_messages(scene_id, scene.current_round_number - 1)
        lines = [f"{m.sender}: {m.content}" for m in previous if m.source == "character"]
        prompt = CONTINUE_PROMPT.format(messages="\n".join(lines) or "(none)")
        return await self._play_round(scene_id, prompt, persona_id=None, log_input=False)

    async def _play_round(
        self, scene_id: int, user_input: str, *, persona_id: str | None, log_input: bool
    ) -> RoundResult:
        session = self.build_session_context(scene_id, user_input, persona_id)
        scene = session.scene
        round_number = scene.current_round_number
        self._storage.ensure_round(scene_id, round_number)
        if log_input:
            sender = session.persona.name if session.persona else "User"
            self._storage.log_message(
                scene_id, sender, user_input, round_number, source="user", sender_id=persona_id
            )

        cfg = self._config.load()
        history = self._history(scene_id, cfg)
        states = {k: dict(v) for k, v in scene.character_states.items()}
        world_state = dict(scene.world_state)
        trackers = dict(session.campaign.trackers)
        active = session.active_characters

        def envelope(request_type: str, **sections: Any) -> ContextEnvelope:
            return self._envelope(
                request_type, session, cfg,
                user_input=user_input, history=history, states=states,
                world_state=world_state, trackers=trackers, active=active, **sections,
            )

        # -- director --------------------------------------------------
        director = await self._agents["director"].run(envelope("director"))
        plan = normalize_director_plan(_agent_data(director))
        application = apply_director_plan(plan, active, states, self._resolve)
        states = application.character_states
        active_ids = application.active_ids
        active = self._active_characters(active_ids)
        responders = application.responders
        if not responders and active:
            logger.info("Director chose no actors for scene %s, defaulting to %s", scene_id, active[0].name)
            responders = [ActingCharacter(name=active[0].name, id=active[0].id)]
        self._storage.update_scene(scene_id, character_states=states, active_characters=active_ids)

        # -- world -----------------------------------------------------
        if cfg.features.world_agent_enabled:
            world = await self._agents["world"].run(
                envelope("world", director_guidance=plan.open_guidance)
            )
            update = apply_world_update(_agent_data(world), world_state, trackers, states, self._resolve)
            if update.changed:
                world_state, trackers, states = update.world_state, update.trackers, update.character_states
                self._storage.update_scene(scene_id, world_state=world_state, character_states=states)
                self._storage.update_campaign(session.campaign.id, trackers=trackers)

        # -- characters ------------------------------------------------
        responses: list[CharacterResponse] = []
        round_lines: list[str] = []
        for actor in responders:
            character = self._resolve(actor.id or actor.name)
            if character is None:
                logger.warning("Skipping unknown responder %r in scene %s", actor.name, scene_id)
                continue
            memories: dict[str, list[Any]] = {
                character.name: await self._memories_for(character, session, user_input, history),
                CURRENT_ROUND_KEY: list(round_lines),
            }
            result = await self._agents["character"].run(
                envelope(
                    "character",
                    round_responses=list(round_lines),
                    memories=memories,
                    director_guidance=plan.open_guidance,
                    character_guidance=actor.guidance,
                ),
                character=character.model_dump(),
            )
            content, changes = parse_character_output(result.text)
            if changes:
                states[character.id], _ = merge_state(states.get(character.id, {}), changes)
                self._storage.update_scene(scene_id, character_states=states)
            message = self._storage.log_message(
                scene_id, character.name, content, round_number, source="character", sender_id=character.id
            )
            round_lines.append(f"{character.name}: {content}")
            responses.append(CharacterResponse(
                character_id=character.id,
                name=character.name,
                content=content,
                message_number=message.message_number,
            ))

        # -- reconciliation --------------------------------------------
        if (
            cfg.features.director_reconciliation
            and cfg.features.max_director_passes >= 2
            and responses
        ):
            second = await self._agents["director"].run(
                envelope("director", round_responses=list(round_lines), director_pass=2)
            )
            followup = normalize_director_plan(_agent_data(second))
            followup = followup.model_copy(update={"acting_characters": []})
            reconciled = apply_director_plan(followup, active, states, self._resolve)
            states, active_ids = reconciled.character_states, reconciled.active_ids
            self._storage.update_scene(scene_id, character_states=states, active_characters=active_ids)

        next_round = self.complete_round(scene_id, active_ids)
        logger.info("scene %s round %d complete with %d responses", scene_id, round_number, len(responses))
        return RoundResult(
            scene_id=scene_id,
            round_number=round_number,
            next_round_number=next_round,
            responses=responses,
            director_guidance=plan.open_guidance,
            lore=session.lore,
        )

    # ------------------------------------------------------------------
    # Completion and background vectorization
    # ------------------------------------------------------------------

    def complete_round(self, scene_id: int, active_ids: list[str]) -> int:
        """Close the current round and vectorize it in the background.

        Must be called from a running event loop. Returns the new round number.
        """
        scene = self._storage.get_scene(scene_id)
        if scene is None:
            raise SessionContextError(f"Scene {scene_id} not found")
        finished = scene.current_round_number
        next_round = self._storage.complete_round(scene_id, active_ids)
        task = asyncio.create_task(self._vectorizer.vectorize_round(scene_id, finished))
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return next_round

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background vectorization failed", exc_info=exc)

    async def wait_for_background(self) -> None:
        """Wait for every pending vectorization task to finish."""
        while self._background:
            pending = list(self._background)
            await asyncio.gather(*pending, return_exceptions=True)
            self._background.difference_update(pending)


def _agent_data(result: AgentResult) -> Any:
    if result.data is not None:
        return result.data
    return parse_json_output(result.text)
