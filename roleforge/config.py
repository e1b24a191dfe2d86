"""Application configuration (LLM profiles, agent routing, budgets, memory tuning).

Stored as a single config.json. `ConfigSource.load()` re-reads the file on
every call and returns stored values merged over defaults, so callers always
see current settings but get one consistent snapshot per call.

JSON keys are camelCase (`temporalDecay`, `memoryCaps`, ...); the models expose
snake_case attributes.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from roleforge.models import SectionCap

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when a configured profile or agent cannot be resolved."""


class _ConfigModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# LLM profiles and agents
# ---------------------------------------------------------------------------

class Profile(_ConfigModel):
    format: Literal["koboldcpp", "openai"] = "koboldcpp"
    base_url: str = "http://localhost:5001"
    api_key: str = ""
    model: str = ""
    sampler: dict[str, Any] = Field(default_factory=dict)


class AgentConfig(_ConfigModel):
    llm_profile: str | None = None
    template: str | None = None
    expects_json: bool = False
    json_mode: Literal["object", "schema"] = "object"
    json_schema: dict[str, Any] | None = None
    # per-agent overrides applied on top of the resolved profile
    format: Literal["koboldcpp", "openai"] | None = None
    base_url: str | None = None
    api_key: str | None = None
    model: str | None = None
    sampler: dict[str, Any] | None = None


def _default_agents() -> dict[str, AgentConfig]:
    return {
        "director": AgentConfig(expects_json=True),
        "world": AgentConfig(expects_json=True),
        "character": AgentConfig(),
    }


class Features(_ConfigModel):
    world_agent_enabled: bool = True
    director_reconciliation: bool = False
    history_window_messages: int = 20
    json_validation_max_retries: int = 2
    max_director_passes: int = 2


# ---------------------------------------------------------------------------
# Memory tuning
# ---------------------------------------------------------------------------

class TemporalDecay(_ConfigModel):
    enabled: bool = False
    mode: Literal["time", "messageCount"] = "time"
    half_life: float | None = None  # days for "time", messages for "messageCount"
    floor: float = 0.3


class ConditionalRule(_ConfigModel):
    field: str
    match: str
    boost: float
    match_type: Literal["substring", "exact"] = "substring"


class MemoryCaps(_ConfigModel):
    max_top_k: int = 12
    max_query_chars: int = 2000


class VectorConfig(_ConfigModel):
    temporal_decay: TemporalDecay = Field(default_factory=TemporalDecay)
    conditional_rules: list[ConditionalRule] = Field(default_factory=list)
    memory_caps: MemoryCaps = Field(default_factory=MemoryCaps)
    chunk_strategy: Literal["perRound", "perMessage", "perScene"] = "perRound"
    chunk_size: int = 1000
    sliding_window_overlap: float = 0.0
    bulk_delete_threshold: int = 50
    min_similarity: float = 0.3
    store_shared_memories: bool = True


class TokenBudget(_ConfigModel):
    max_context_tokens: int = 4096
    chars_per_token: int = 4
    allocations: dict[str, float] = Field(default_factory=dict)
    caps: dict[str, SectionCap] = Field(default_factory=dict)


class EmbeddingConfig(_ConfigModel):
    format: Literal["openai", "ollama"] = "openai"
    base_url: str = "http://localhost:11434"
    api_key: str = ""
    model: str = "nomic-embed-text"


class AppConfig(_ConfigModel):
    profiles: dict[str, Profile] = Field(default_factory=lambda: {"default": Profile()})
    default_profile: str = "default"
    agents: dict[str, AgentConfig] = Field(default_factory=_default_agents)
    features: Features = Field(default_factory=Features)
    vector: VectorConfig = Field(default_factory=VectorConfig)
    token_budget: TokenBudget = Field(default_factory=TokenBudget)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)

    def agent(self, name: str) -> AgentConfig:
        return self.agents.get(name) or _default_agents().get(name) or AgentConfig()

    def resolve_profile(self, agent_name: str) -> Profile:
        """Profile for an agent: named profile (or default) with agent overrides on top."""
        agent = self.agent(agent_name)
        profile_name = agent.llm_profile or self.default_profile
        if profile_name == "default":
            profile_name = self.default_profile
        base = self.profiles.get(profile_name)
        if base is None:
            raise ConfigError(f"Unknown LLM profile {profile_name!r} for agent {agent_name!r}")

        merged = base.model_copy(deep=True)
        for attr in ("format", "base_url", "api_key", "model"):
            value = getattr(agent, attr)
            if value:
                setattr(merged, attr, value)
        if agent.sampler:
            merged.sampler = {**merged.sampler, **agent.sampler}
        return merged


# ---------------------------------------------------------------------------
# ConfigSource: JSON file with defaults
# ---------------------------------------------------------------------------

def _deep_merge(base: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in fields.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _defaults() -> dict[str, Any]:
    return AppConfig().model_dump(by_alias=True, exclude_none=True)


class ConfigSource:
    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read_stored(self) -> dict[str, Any]:
        if not self._path.is_file():
            return {}
        try:
            stored = json.loads(self._path.read_text())
        except json.JSONDecodeError as e:
            logger.warning("Config file %s is not valid JSON, using defaults: %s", self._path, e)
            return {}
        return stored if isinstance(stored, dict) else {}

    def load(self) -> AppConfig:
        """Read config, returning defaults merged with stored values."""
        return AppConfig.model_validate(_deep_merge(_defaults(), self._read_stored()))

    def update(self, fields: dict[str, Any]) -> AppConfig:
        """Deep-merge fields into the stored config and persist. Returns full config."""
        with self._lock:
            stored = _deep_merge(_deep_merge(_defaults(), self._read_stored()), fields)
            config = AppConfig.model_validate(stored)
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(
                json.dumps(config.model_dump(by_alias=True, exclude_none=True), indent=2)
            )
        return config
