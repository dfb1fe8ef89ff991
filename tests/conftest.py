"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from switchboard.ai.ai_types import AssistantConfig
from switchboard.ai.services.costs import InMemoryCostSink
from switchboard.ai.tools import ActionRegistry
from switchboard.services.settings import MappingApiKeyResolver

from tests.helpers import calendar_provider, crm_provider


@pytest.fixture
def api_keys() -> MappingApiKeyResolver:
    return MappingApiKeyResolver(
        {
            (None, "openai_api_key"): "sk-openai",
            (None, "anthropic_api_key"): "sk-anthropic",
            (None, "google_api_key"): "sk-google",
        }
    )


@pytest.fixture
def calendar_calls() -> list[dict]:
    return []


@pytest.fixture
def registry(calendar_calls: list[dict]) -> ActionRegistry:
    return ActionRegistry([calendar_provider(calendar_calls), crm_provider()])


@pytest.fixture
def cost_sink() -> InMemoryCostSink:
    return InMemoryCostSink()


@pytest.fixture
def assistant() -> AssistantConfig:
    return AssistantConfig(
        assistant_id="asst-1",
        company_id="acme",
        provider_key="openai",
        model="gpt-4.1-mini",
        system_prompt="You schedule meetings.",
        allowed_actions=("calendar.createEvent",),
    )
