"""Tests for ConfigSource: defaults, camelCase surface, deep-merge updates, profiles."""

import json

import pytest

from roleforge.config import ConfigError, ConfigSource


def test_load_defaults_when_missing(config: ConfigSource) -> None:
    cfg = config.load()
    assert cfg.default_profile == "default"
    assert cfg.vector.memory_caps.max_top_k == 12
    assert cfg.vector.memory_caps.max_query_chars == 2000
    assert cfg.vector.temporal_decay.enabled is False
    assert cfg.vector.chunk_strategy == "perRound"
    assert cfg.features.json_validation_max_retries == 2
    assert cfg.agent("director").expects_json is True
    assert cfg.agent("character").expects_json is False


def test_reads_camel_case_surface(config: ConfigSource) -> None:
    config.path.parent.mkdir(parents=True, exist_ok=True)
    config.path.write_text(json.dumps({
        "vector": {
            "temporalDecay": {"enabled": True, "mode": "messageCount", "halfLife": 10, "floor": 0.1},
            "conditionalRules": [{"field": "mood", "match": "tense", "boost": 1.5, "matchType": "exact"}],
            "memoryCaps": {"maxTopK": 4},
        },
        "tokenBudget": {"maxContextTokens": 1000, "caps": {"history": {"maxChars": 50}}},
    }))
    cfg = config.load()
    assert cfg.vector.temporal_decay.mode == "messageCount"
    assert cfg.vector.temporal_decay.half_life == 10
    assert cfg.vector.conditional_rules[0].match_type == "exact"
    assert cfg.vector.memory_caps.max_top_k == 4
    assert cfg.vector.memory_caps.max_query_chars == 2000
    assert cfg.token_budget.caps["history"].max_chars == 50


def test_load_reads_fresh_each_call(config: ConfigSource) -> None:
    assert config.load().vector.bulk_delete_threshold == 50
    config.update({"vector": {"bulkDeleteThreshold": 5}})
    assert config.load().vector.bulk_delete_threshold == 5


def test_update_deep_merges(config: ConfigSource) -> None:
    config.update({"vector": {"memoryCaps": {"maxTopK": 3}}})
    config.update({"vector": {"memoryCaps": {"maxQueryChars": 100}}})
    caps = config.load().vector.memory_caps
    assert caps.max_top_k == 3
    assert caps.max_query_chars == 100


def test_invalid_json_falls_back_to_defaults(config: ConfigSource) -> None:
    config.path.parent.mkdir(parents=True, exist_ok=True)
    config.path.write_text("{not json")
    assert config.load().default_profile == "default"


class TestResolveProfile:
    def test_agent_overrides_apply_on_top_of_profile(self, config: ConfigSource) -> None:
        config.update({
            "profiles": {"local": {"baseUrl": "http://gpu:5001", "model": "m1", "sampler": {"temperature": 0.7}}},
            "defaultProfile": "local",
            "agents": {"director": {"model": "m2", "sampler": {"max_tokens": 200}}},
        })
        profile = config.load().resolve_profile("director")
        assert profile.base_url == "http://gpu:5001"
        assert profile.model == "m2"
        assert profile.sampler == {"temperature": 0.7, "max_tokens": 200}

    def test_literal_default_maps_to_default_profile(self, config: ConfigSource) -> None:
        config.update({
            "profiles": {"main": {"baseUrl": "http://main"}},
            "defaultProfile": "main",
            "agents": {"world": {"llmProfile": "default"}},
        })
        assert config.load().resolve_profile("world").base_url == "http://main"

    def test_unknown_profile_raises(self, config: ConfigSource) -> None:
        config.update({"agents": {"character": {"llmProfile": "missing"}}})
        with pytest.raises(ConfigError):
            config.load().resolve_profile("character")


def test_partial_agent_override_keeps_defaults(config: ConfigSource) -> None:
    config.update({"agents": {"director": {"model": "m2"}}})
    director = config.load().agent("director")
    assert director.model == "m2"
    assert director.expects_json is True
