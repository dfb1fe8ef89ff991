"""Provider dispatch: maps a provider key and model onto a configured client.

Every supported vendor is reached through its OpenAI-compatible endpoint, so a
single :class:`AIClient` type serves all of them. What differs per provider is
captured on :class:`ProviderKind`.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Mapping

from openai import AsyncOpenAI

from .client import AIClient, ClientSettings
from .errors import UnknownProviderError

_O3_MINI_VARIANT = re.compile(r"^o3-mini-")

ANTHROPIC_MODEL_ALIASES: Mapping[str, str] = {
    "claude-opus-4-5": "claude-opus-4-5-20251101",
    "claude-sonnet-4-5": "claude-sonnet-4-5-20250929",
    "claude-haiku-4-5": "claude-haiku-4-5-20251001",
    "claude-sonnet-4": "claude-sonnet-4-20250514",
    "claude-3-7-sonnet": "claude-3-7-sonnet-20250219",
    "claude-3-5-haiku": "claude-3-5-haiku-20241022",
}


class ProviderKind(str, Enum):
    """Supported model vendors."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"

    @classmethod
    def parse(cls, provider_key: str | None) -> ProviderKind:
        key = (provider_key or "").strip().lower()
        try:
            return cls(key)
        except ValueError:
            raise UnknownProviderError(provider_key or "") from None

    @property
    def base_url(self) -> str:
        match self:
            case ProviderKind.OPENAI:
                return "https://api.openai.com/v1"
            case ProviderKind.ANTHROPIC:
                return "https://api.anthropic.com/v1/"
            case ProviderKind.GOOGLE:
                return "https://generativelanguage.googleapis.com/v1beta/openai/"

    @property
    def folds_system_prompt(self) -> bool:
        """Whether the system prompt travels as the first message instead of a separate field."""

        return self is ProviderKind.ANTHROPIC

    @property
    def api_key_name(self) -> str:
        return f"{self.value}_api_key"

    def normalize_model(self, model: str) -> str:
        name = model.strip()
        match self:
            case ProviderKind.OPENAI:
                if _O3_MINI_VARIANT.match(name):
                    return "o3-mini"
                return name
            case ProviderKind.ANTHROPIC:
                return ANTHROPIC_MODEL_ALIASES.get(name, name)
            case ProviderKind.GOOGLE:
                return name if name.startswith("models/") else f"models/{name}"


def bare_model_name(model: str) -> str:
    """Strip structural prefixes so pricing and budget tables see the plain name."""

    return model.removeprefix("models/")


def get_client(
    provider_key: str,
    model: str,
    api_key: str,
    *,
    request_timeout: float | None = 90.0,
    max_retries: int = 1,
    retry_min_seconds: float = 0.5,
    retry_max_seconds: float = 6.0,
    default_headers: Mapping[str, str] | None = None,
    debug_logging: bool = False,
    client: AsyncOpenAI | None = None,
) -> AIClient:
    """Build a chat client for ``provider_key``.

    Args:
        provider_key: ``"openai"``, ``"anthropic"`` or ``"google"``.
        model: Model identifier; normalized per provider.
        api_key: Credential for the provider.
        client: Pre-built transport, used by tests.

    Raises:
        UnknownProviderError: ``provider_key`` is not supported.
    """

    provider = ProviderKind.parse(provider_key)
    settings = ClientSettings(
        base_url=provider.base_url,
        api_key=api_key,
        model=provider.normalize_model(model),
        request_timeout=request_timeout,
        max_retries=max_retries,
        retry_min_seconds=retry_min_seconds,
        retry_max_seconds=retry_max_seconds,
        default_headers=default_headers,
        debug_logging=debug_logging,
    )
    return AIClient(settings, client=client)


__all__ = ["ANTHROPIC_MODEL_ALIASES", "ProviderKind", "bare_model_name", "get_client"]
