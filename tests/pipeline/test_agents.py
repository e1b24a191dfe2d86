"""Tests for the agent contract: cleanup, JSON validation with retries, fallbacks."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from conftest import StubLLM
from roleforge.config import ConfigSource
from roleforge.llm import HttpLLM, LLMError
from roleforge.models import ContextEnvelope
from roleforge.pipeline.agents import (
    FALLBACK_RESPONSES,
    INVALID_RESPONSE_NOTICE,
    Agent,
    clean_response,
    parse_json_output,
    validate_json_output,
)

PLAN = {"openGuidance": "Keep it tense.", "actingCharacters": [{"name": "Alice"}]}


def _envelope(**fields) -> ContextEnvelope:
    return ContextEnvelope(request_type="director", user_input="Hello", **fields)


# ── cleanup / parsing ────────────────────────────────────


def test_clean_response_strips_thinking_and_fences():
    raw = '<thinking>plan it</thinking>```json\n{"a": 1}\n```'
    assert clean_response(raw) == '{"a": 1}'


def test_clean_response_cuts_at_separator():
    assert clean_response("Hello there.\n---\nOOC: notes") == "Hello there."


def test_parse_json_output_finds_embedded_object():
    assert parse_json_output('Sure! Here it is: {"unchanged": true} Hope that helps.') == {"unchanged": True}
    assert parse_json_output("no json here") is None


class TestValidateJsonOutput:
    def test_object_mode(self) -> None:
        assert validate_json_output('{"a": 1}') == ({"a": 1}, [])
        assert validate_json_output("[1, 2]") == (None, ["not_an_object"])
        assert validate_json_output("nope") == (None, ["parse_failed"])

    def test_schema_mode_reports_paths(self) -> None:
        schema = {
            "type": "object",
            "required": ["openGuidance"],
            "properties": {"actingCharacters": {"type": "array", "items": {"type": "object"}}},
        }
        data, errors = validate_json_output('{"actingCharacters": ["Alice"]}', "schema", schema)
        assert data is None
        assert "/actingCharacters/0 'Alice' is not of type 'object'" in errors
        assert any("'openGuidance' is a required property" in e for e in errors)

    def test_schema_mode_accepts_valid(self) -> None:
        schema = {"type": "object", "required": ["unchanged"]}
        assert validate_json_output('{"unchanged": true}', "schema", schema) == ({"unchanged": True}, [])


# ── Agent.run ────────────────────────────────────────────


class TestAgentJson:
    async def test_valid_first_try(self, config: ConfigSource) -> None:
        llm = StubLLM({"director": [json.dumps(PLAN)]})
        result = await Agent("director", config, llm).run(_envelope())
        assert result.data == PLAN
        assert result.attempts == 1
        assert "Return ONLY a JSON object" in llm.prompts("director")[0]

    async def test_retries_with_notice_then_succeeds(self, config: ConfigSource) -> None:
        llm = StubLLM({"director": ["I think Alice should act", json.dumps(PLAN)]})
        result = await Agent("director", config, llm).run(_envelope())
        assert result.data == PLAN
        assert result.attempts == 2
        first, second = llm.prompts("director")
        assert "Your previous response was invalid (parse_failed)" in second
        assert "I think Alice should act" not in second
        assert second.startswith(first)

    async def test_exhausted_retries_returns_error_payload(self, config: ConfigSource) -> None:
        config.update({"features": {"jsonValidationMaxRetries": 1}})
        llm = StubLLM({"director": ["bad", "still bad"]})
        result = await Agent("director", config, llm).run(_envelope())
        assert result.data == {"error": "failed_json_validation", "errors": ["parse_failed"]}
        assert result.attempts == 2
        llm.assert_exhausted()

    async def test_zero_retries(self, config: ConfigSource) -> None:
        config.update({"features": {"jsonValidationMaxRetries": 0}})
        llm = StubLLM({"world": ["not json"]})
        result = await Agent("world", config, llm).run(_envelope())
        assert result.data["error"] == "failed_json_validation"
        assert len(llm.calls) == 1

    async def test_schema_mode_instruction_and_errors(self, config: ConfigSource) -> None:
        schema = {"type": "object", "required": ["unchanged"]}
        config.update({"agents": {"world": {"jsonMode": "schema", "jsonSchema": schema}}})
        llm = StubLLM({"world": ['{"other": 1}', '{"unchanged": true}']})
        result = await Agent("world", config, llm).run(_envelope())
        assert result.data == {"unchanged": True}
        first, second = llm.prompts("world")
        assert '"required": ["unchanged"]' in first
        assert "'unchanged' is a required property" in second

    async def test_llm_error_gives_fallback(self, config: ConfigSource) -> None:
        llm = StubLLM({"director": [LLMError("backend down")]})
        result = await Agent("director", config, llm).run(_envelope())
        assert result.fallback is True
        assert result.text == FALLBACK_RESPONSES["director"]
        assert result.data == json.loads(FALLBACK_RESPONSES["director"])

    async def test_any_model_failure_gives_fallback(self, config: ConfigSource) -> None:
        llm = StubLLM({"world": [ValueError("garbled reply")]})
        result = await Agent("world", config, llm).run(_envelope())
        assert result.fallback is True
        assert result.data == json.loads(FALLBACK_RESPONSES["world"])

    async def test_http_transport_failure_gives_fallback(self, config: ConfigSource) -> None:
        llm = HttpLLM(provider_url="http://localhost:5001")
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ReadError("reset"))):
            result = await Agent("director", config, llm).run(_envelope())
        assert result.fallback is True
        assert result.text == FALLBACK_RESPONSES["director"]


class TestAgentText:
    async def test_plain_text_cleaned(self, config: ConfigSource) -> None:
        llm = StubLLM({"character": ["<thinking>hmm</thinking>Hi there!\n---\nextra"]})
        character = {"id": "alice", "name": "Alice", "description": "A cartographer."}
        result = await Agent("character", config, llm).run(_envelope(), character)
        assert result.text == "Hi there!"
        assert result.data is None
        assert "You are Alice." in llm.prompts("character")[0]

    async def test_llm_error_gives_character_fallback(self, config: ConfigSource) -> None:
        llm = StubLLM({"character": [LLMError("timeout")]})
        result = await Agent("character", config, llm).run(_envelope(), {"id": "a", "name": "A"})
        assert result.fallback is True
        assert result.text == FALLBACK_RESPONSES["character"]

    async def test_unknown_profile_gives_fallback_without_calling(self, config: ConfigSource) -> None:
        config.update({"agents": {"character": {"llmProfile": "missing"}}})
        result = await Agent("character", config).run(_envelope(), {"id": "a", "name": "A"})
        assert result.fallback is True

    async def test_custom_template(self, config: ConfigSource) -> None:
        config.update({"agents": {"narrator": {"template": "Narrate: {{{user_input}}}"}}})
        llm = StubLLM({"narrator": ["The wind howls."]})
        result = await Agent("narrator", config, llm).run(_envelope())
        assert llm.prompts("narrator") == ["Narrate: Hello"]
        assert result.text == "The wind howls."

    async def test_broken_template_gives_fallback(self, config: ConfigSource) -> None:
        config.update({"agents": {"narrator": {"template": "{{#if}}broken"}}})
        result = await Agent("narrator", config, StubLLM({})).run(_envelope())
        assert result.text == FALLBACK_RESPONSES["narrator"]


def test_notice_never_includes_payload():
    assert "{errors}" in INVALID_RESPONSE_NOTICE
    assert "{response}" not in INVALID_RESPONSE_NOTICE


async def test_non_json_http_body_gives_character_fallback(config: ConfigSource) -> None:
    resp = MagicMock()
    resp.raise_for_status = MagicMock()
    resp.json.side_effect = ValueError("Expecting value")
    llm = HttpLLM(provider_url="http://localhost:5001")
    with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
        result = await Agent("character", config, llm).run(
            ContextEnvelope(request_type="character", user_input="Hello"), {"id": "a", "name": "A"}
        )
    assert result.fallback is True
    assert result.text == FALLBACK_RESPONSES["character"]
