"""Agent contract: one model call with profile routing, JSON validation and fallbacks.

An Agent renders its Handlebars template against a ContextEnvelope, calls the
LLM resolved from its profile, and cleans the reply. Agents configured with
`expectsJson` validate the reply and re-ask with an invalid-response notice up
to `jsonValidationMaxRetries` times. A failed model call never propagates:
the agent answers with its canned fallback instead.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel, Field

from roleforge.config import AgentConfig, AppConfig, ConfigError, ConfigSource
from roleforge.llm import LLM, HttpLLM
from roleforge.models import ContextEnvelope
from roleforge.prompts import DEFAULT_TEMPLATES, PromptError, build_prompt_context, render_prompt

logger = logging.getLogger(__name__)

FALLBACK_RESPONSES: dict[str, str] = {
    "character": (
        "I apologize, but I'm having trouble responding right now. "
        "Could you try rephrasing your message?"
    ),
    "narrator": "The scene remains as it was. The environment is quiet and unchanged.",
    "director": '{"guidance": "Continue the conversation naturally.", "characters": []}',
    "world": '{"unchanged": true}',
    "summarize": "Unable to generate summary at this time.",
    "default": "I apologize, but I'm experiencing technical difficulties.",
}

JSON_OBJECT_INSTRUCTION = (
    "Return ONLY a JSON object. Do not include commentary, markdown or code fences."
)
JSON_SCHEMA_INSTRUCTION = (
    "Return ONLY JSON matching the provided schema. Do not include commentary, "
    "markdown or code fences.\nSchema:\n{schema}"
)
INVALID_RESPONSE_NOTICE = (
    "NOTE: Your previous response was invalid ({errors}). "
    "Respond again, following the format instructions exactly."
)

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_THINKING = re.compile(r"<thinking>[\s\S]*?</thinking>", re.IGNORECASE)
_OBJECT = re.compile(r"\{[\s\S]*\}")


class AgentResult(BaseModel):
    text: str
    data: Any = None
    errors: list[str] = Field(default_factory=list)
    fallback: bool = False
    attempts: int = 0


# ---------------------------------------------------------------------------
# Response cleanup and JSON parsing
# ---------------------------------------------------------------------------

def clean_response(text: str) -> str:
    """Drop <thinking> blocks, unwrap a fenced block, cut at a '---' separator."""
    cleaned = _THINKING.sub("", text)
    fenced = _FENCE.search(cleaned)
    if fenced:
        cleaned = fenced.group(1)
    if "\n---" in cleaned:
        cleaned = cleaned.split("\n---", 1)[0]
    return cleaned.strip()


def parse_json_output(text: str) -> Any | None:
    """Parse JSON from LLM output, falling back to the outermost {...} span."""
    cleaned = clean_response(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    match = _OBJECT.search(cleaned)
    if match:
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError as e:
            logger.warning("Agent output is not valid JSON: %s", e)
    return None


def _error_path(path: Any) -> str:
    parts = [str(p) for p in path]
    return "/" + "/".join(parts) if parts else ""


def validate_json_output(
    text: str, mode: str = "object", schema: dict[str, Any] | None = None
) -> tuple[Any | None, list[str]]:
    """Return (data, errors). Errors are "{path} {message}" strings for schema mode."""
    data = parse_json_output(text)
    if data is None:
        return None, ["parse_failed"]
    if mode == "schema" and schema:
        try:
            validator = Draft202012Validator(schema)
        except SchemaError as e:
            logger.warning("Invalid JSON schema configured: %s", e)
            return data, []
        errors = [
            f"{_error_path(err.absolute_path)} {err.message}".strip()
            for err in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path])
        ]
        return (data if not errors else None), errors
    if not isinstance(data, dict):
        return None, ["not_an_object"]
    return data, []


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------

class Agent:
    """One named agent ("director", "world", "character", ...)."""

    def __init__(
        self,
        name: str,
        config: ConfigSource,
        llm: LLM | None = None,
        kind: str | None = None,
    ) -> None:
        self.name = name
        self.kind = kind or name
        self._config = config
        self._llm = llm

    def _resolve_llm(self, cfg: AppConfig) -> LLM:
        if self._llm is not None:
            return self._llm
        return HttpLLM.from_profile(cfg.resolve_profile(self.name))

    def _template(self, agent_cfg: AgentConfig) -> str:
        return agent_cfg.template or DEFAULT_TEMPLATES.get(self.kind) or DEFAULT_TEMPLATES["character"]

    def fallback(self) -> AgentResult:
        text = FALLBACK_RESPONSES.get(self.kind, FALLBACK_RESPONSES["default"])
        data: Any = None
        if text.startswith("{"):
            data = json.loads(text)
        return AgentResult(text=text, data=data, fallback=True)

    def render(self, envelope: ContextEnvelope, character: dict[str, Any] | None = None) -> str:
        cfg = self._config.load()
        return render_prompt(
            self._template(cfg.agent(self.name)), build_prompt_context(envelope, character)
        )

    async def run(
        self, envelope: ContextEnvelope, character: dict[str, Any] | None = None
    ) -> AgentResult:
        cfg = self._config.load()
        agent_cfg = cfg.agent(self.name)
        try:
            llm = self._resolve_llm(cfg)
            prompt = render_prompt(self._template(agent_cfg), build_prompt_context(envelope, character))
        except (ConfigError, PromptError) as e:
            logger.error("Agent %s could not be prepared: %s", self.name, e)
            return self.fallback()

        if not agent_cfg.expects_json:
            try:
                raw = await llm(self.name, prompt)
            except Exception as e:
                logger.warning("Agent %s model call failed, using fallback: %s", self.name, e)
                return self.fallback()
            return AgentResult(text=clean_response(raw), attempts=1)

        if agent_cfg.json_mode == "schema" and agent_cfg.json_schema:
            instruction = JSON_SCHEMA_INSTRUCTION.format(schema=json.dumps(agent_cfg.json_schema))
        else:
            instruction = JSON_OBJECT_INSTRUCTION
        base_prompt = f"{prompt}\n\n{instruction}"
        max_retries = max(0, cfg.features.json_validation_max_retries)

        attempt_prompt = base_prompt
        errors: list[str] = []
        for attempt in range(1, max_retries + 2):
            try:
                raw = await llm(self.name, attempt_prompt)
            except Exception as e:
                logger.warning("Agent %s model call failed, using fallback: %s", self.name, e)
                return self.fallback()
            data, errors = validate_json_output(raw, agent_cfg.json_mode, agent_cfg.json_schema)
            if not errors:
                return AgentResult(text=json.dumps(data), data=data, attempts=attempt)
            logger.warning("Agent %s returned invalid JSON (attempt %d/%d): %s",
                           self.name, attempt, max_retries + 1, errors)
            attempt_prompt = f"{base_prompt}\n\n{INVALID_RESPONSE_NOTICE.format(errors='; '.join(errors))}"

        payload = {"error": "failed_json_validation", "errors": errors}
        return AgentResult(
            text=json.dumps(payload), data=payload, errors=errors, attempts=max_retries + 1
        )
