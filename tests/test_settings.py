"""Tests for engine settings and API key resolution."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from switchboard.services.settings import EngineSettings, EnvApiKeyResolver, MappingApiKeyResolver, load_settings


def test_load_returns_defaults_when_nothing_configured(tmp_path: Path) -> None:
    settings = load_settings(tmp_path / "missing.json", env={})

    assert settings == EngineSettings()


def test_file_values_then_env_overrides(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps({"default_model": "gpt-4o", "max_tool_steps": 5, "tool_timeout": 12, "unknown_key": True}),
        encoding="utf-8",
    )

    settings = load_settings(
        path,
        env={"SWITCHBOARD_MAX_TOOL_STEPS": "4", "SWITCHBOARD_STRICT_CONTRACTS": "yes", "SWITCHBOARD_RUN_TIMEOUT": "30"},
    )

    assert settings.default_model == "gpt-4o"
    assert settings.max_tool_steps == 4
    assert settings.tool_timeout == 12.0
    assert settings.strict_contracts is True
    assert settings.run_timeout == 30.0


def test_invalid_json_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")

    assert load_settings(path, env={}) == EngineSettings()


def test_invalid_numeric_env_is_ignored() -> None:
    settings = load_settings(env={"SWITCHBOARD_MAX_TOOL_STEPS": "many", "SWITCHBOARD_TOOL_TIMEOUT": "slow"})

    assert settings.max_tool_steps == 3
    assert settings.tool_timeout == 30.0


def test_clamp_bounds_values() -> None:
    settings = EngineSettings(
        max_tool_steps=50,
        attachment_char_limit=10,
        max_retries=0,
        empty_allow_list_policy="sometimes",
    ).clamp()

    assert settings.max_tool_steps == 10
    assert settings.attachment_char_limit == 1_000
    assert settings.max_retries == 1
    assert settings.empty_allow_list_policy == "allow_all"


class TestEnvApiKeyResolver:
    @pytest.mark.asyncio
    async def test_tenant_key_wins_over_shared_key(self) -> None:
        resolver = EnvApiKeyResolver(
            {"SWITCHBOARD_ACME_OPENAI_API_KEY": "sk-acme", "SWITCHBOARD_OPENAI_API_KEY": "sk-shared"}
        )

        assert await resolver.get_api_key("acme", "openai_api_key") == "sk-acme"
        assert await resolver.get_api_key("globex", "openai_api_key") == "sk-shared"

    @pytest.mark.asyncio
    async def test_tenant_ids_are_normalized(self) -> None:
        resolver = EnvApiKeyResolver({"SWITCHBOARD_ACME_CORP_GOOGLE_API_KEY": "g-key"})

        assert await resolver.get_api_key("acme-corp", "google_api_key") == "g-key"

    @pytest.mark.asyncio
    async def test_blank_value_counts_as_missing(self) -> None:
        resolver = EnvApiKeyResolver({"SWITCHBOARD_ANTHROPIC_API_KEY": "   "})

        assert await resolver.get_api_key("acme", "anthropic_api_key") is None


@pytest.mark.asyncio
async def test_mapping_resolver_prefers_tenant_entry() -> None:
    resolver = MappingApiKeyResolver({("acme", "openai_api_key"): "sk-acme", (None, "openai_api_key"): "sk-any"})

    assert await resolver.get_api_key("acme", "openai_api_key") == "sk-acme"
    assert await resolver.get_api_key("other", "openai_api_key") == "sk-any"
    assert await resolver.get_api_key("other", "google_api_key") is None
