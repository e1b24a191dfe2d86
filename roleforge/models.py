"""Core domain models.

All orchestration stages and storage functions operate on these types.
Pydantic is used for validation and serialisation at every data boundary.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

RoundStatus = Literal["in-progress", "completed"]
MessageSource = Literal["user", "character", "system"]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Relational rows
# ---------------------------------------------------------------------------

class World(BaseModel):
    id: int
    name: str
    description: str = ""


class Campaign(BaseModel):
    id: int
    world_id: int
    name: str
    description: str = ""
    trackers: dict[str, Any] = Field(default_factory=dict)
    dynamic_facts: dict[str, Any] = Field(default_factory=dict)


class Arc(BaseModel):
    id: int
    campaign_id: int
    name: str
    description: str = ""


class Scene(BaseModel):
    """A scene owns its rounds, messages and per-participant state."""

    id: int
    arc_id: int
    title: str
    description: str = ""
    location: str = ""
    time_of_day: str = ""
    summary: str = ""
    active_characters: list[str] = Field(default_factory=list)  # character ids
    character_states: dict[str, dict[str, Any]] = Field(default_factory=dict)
    world_state: dict[str, Any] = Field(default_factory=dict)
    current_round_number: int = 1


class Round(BaseModel):
    scene_id: int
    round_number: int
    active_characters: list[str] = Field(default_factory=list)
    status: RoundStatus = "in-progress"
    vectorized: bool = False
    started_at: str = Field(default_factory=utc_now)
    completed_at: str | None = None

    @property
    def round_id(self) -> str:
        return f"{self.scene_id}:{self.round_number}"


class Message(BaseModel):
    """A single logged line. message_number is scene-scoped and gapless."""

    id: int
    scene_id: int
    round_number: int
    message_number: int
    sender: str
    content: str
    source: MessageSource = "character"
    sender_id: str | None = None
    timestamp: str = Field(default_factory=utc_now)


class Character(BaseModel):
    """A simulated participant."""

    id: str
    name: str
    description: str = ""
    personality: str = ""
    goals: str = ""
    world_id: int | None = None


class Persona(BaseModel):
    """A user-controlled persona."""

    id: str
    name: str
    description: str = ""


class LoreEntry(BaseModel):
    id: int
    world_id: int
    keys: list[str]
    content: str
    enabled: bool = True


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------

class MemoryHit(BaseModel):
    """A raw nearest-neighbor result from one scope."""

    id: str
    text: str
    similarity: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class RetrievedMemory(BaseModel):
    """A ranked memory after decay and boosting."""

    text: str
    adjusted_score: float
    similarity: float
    participant_label: str
    scope: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeleteResult(BaseModel):
    matched: int
    deleted: int
    scopes: list[str] = Field(default_factory=list)
    ids: list[str] = Field(default_factory=list)
    dry_run: bool = False


# ---------------------------------------------------------------------------
# Context envelope
# ---------------------------------------------------------------------------

SectionName = Literal[
    "history",
    "summaries",
    "lore",
    "memories",
    "scenario_notes",
    "director_guidance",
    "character_guidance",
]

SECTION_NAMES: tuple[SectionName, ...] = (
    "history",
    "summaries",
    "lore",
    "memories",
    "scenario_notes",
    "director_guidance",
    "character_guidance",
)


class SectionCap(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    max_chars: int | None = None
    max_tokens: int | None = None
    top_k: int | None = None


class TokenAllocation(BaseModel):
    """Resolved per-section fractions and the character caps derived from them."""

    model_config = ConfigDict(frozen=True)

    max_context_tokens: int
    chars_per_token: int
    fractions: dict[str, float]
    presence: dict[str, bool]
    caps: dict[str, SectionCap]


class ContextEnvelope(BaseModel):
    """Budget-trimmed input for one agent call. Rebuilt every call."""

    model_config = ConfigDict(frozen=True)

    request_type: str
    scene_id: int | None = None
    round_number: int | None = None
    user_input: str = ""
    history: list[str] = Field(default_factory=list)
    round_responses: list[str] = Field(default_factory=list)
    summaries: list[str] = Field(default_factory=list)
    lore: list[str] = Field(default_factory=list)
    memories: dict[str, list[Any]] = Field(default_factory=dict)
    scenario_notes: dict[str, str] = Field(default_factory=dict)
    director_guidance: str = ""
    character_guidance: str = ""
    director_pass: int = 1
    characters: list[dict[str, Any]] = Field(default_factory=list)
    persona: dict[str, Any] = Field(default_factory=dict)
    character_states: dict[str, dict[str, Any]] = Field(default_factory=dict)
    world_state: dict[str, Any] = Field(default_factory=dict)
    trackers: dict[str, Any] = Field(default_factory=dict)
    allocation: TokenAllocation | None = None


# ---------------------------------------------------------------------------
# Director plan
# ---------------------------------------------------------------------------

class ActingCharacter(BaseModel):
    name: str
    id: str | None = None
    guidance: str = ""
    order: float | None = None
    priority: float | None = None


class DirectorPlan(BaseModel):
    open_guidance: str = ""
    acting_characters: list[ActingCharacter] = Field(default_factory=list)
    activations: list[str] = Field(default_factory=list)
    deactivations: list[str] = Field(default_factory=list)
    state_updates: list[dict[str, Any]] = Field(default_factory=list)


class PlanApplication(BaseModel):
    """Result of applying a DirectorPlan to the current session."""

    responders: list[ActingCharacter]
    active_ids: list[str]
    character_states: dict[str, dict[str, Any]]
    activated: list[str] = Field(default_factory=list)
    deactivated: list[str] = Field(default_factory=list)
    applied_state_updates: dict[str, dict[str, Any]] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Round output
# ---------------------------------------------------------------------------

class CharacterResponse(BaseModel):
    character_id: str
    name: str
    content: str
    message_number: int | None = None


class RoundResult(BaseModel):
    scene_id: int
    round_number: int
    next_round_number: int
    responses: list[CharacterResponse]
    director_guidance: str = ""
    lore: list[str] = Field(default_factory=list)
