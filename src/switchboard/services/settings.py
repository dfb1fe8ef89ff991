"""Engine settings and API key resolution."""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping

LOGGER = logging.getLogger(__name__)

_ENV_OVERRIDES: Mapping[str, str] = {
    "SWITCHBOARD_DEFAULT_MODEL": "default_model",
    "SWITCHBOARD_DEFAULT_SYSTEM_PROMPT": "default_system_prompt",
    "SWITCHBOARD_EMPTY_ALLOW_LIST_POLICY": "empty_allow_list_policy",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "SWITCHBOARD_STRICT_CONTRACTS": "strict_contracts",
    "SWITCHBOARD_DEBUG_LOGGING": "debug_logging",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "SWITCHBOARD_MAX_TOOL_STEPS": "max_tool_steps",
    "SWITCHBOARD_ATTACHMENT_CHAR_LIMIT": "attachment_char_limit",
    "SWITCHBOARD_MAX_RETRIES": "max_retries",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "SWITCHBOARD_TOOL_TIMEOUT": "tool_timeout",
    "SWITCHBOARD_REQUEST_TIMEOUT": "request_timeout",
    "SWITCHBOARD_RUN_POLL_INTERVAL": "run_poll_interval",
    "SWITCHBOARD_RUN_TIMEOUT": "run_timeout",
}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_ALLOW_LIST_POLICIES = ("allow_all", "deny_all")
_ENV_KEY_UNSAFE = re.compile(r"[^A-Z0-9_]")


@dataclass(slots=True)
class EngineSettings:
    """Tunables for the execution engine."""

    default_model: str = "gpt-4.1-mini"
    default_system_prompt: str = "You are a helpful assistant."
    max_tool_steps: int = 3
    attachment_char_limit: int = 50_000
    tool_timeout: float = 30.0
    request_timeout: float = 90.0
    max_retries: int = 1
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    run_poll_interval: float = 0.5
    run_timeout: float = 90.0
    empty_allow_list_policy: str = "allow_all"
    strict_contracts: bool = False
    default_headers: Dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False

    def clamp(self) -> EngineSettings:
        """Clamp values into safe operating ranges and return ``self``."""

        self.max_tool_steps = max(1, min(int(self.max_tool_steps or 1), 10))
        self.attachment_char_limit = max(1_000, int(self.attachment_char_limit or 1_000))
        self.tool_timeout = max(0.1, float(self.tool_timeout))
        self.request_timeout = max(1.0, float(self.request_timeout))
        self.max_retries = max(1, int(self.max_retries or 1))
        self.retry_min_seconds = max(0.05, float(self.retry_min_seconds))
        self.retry_max_seconds = max(self.retry_min_seconds, float(self.retry_max_seconds))
        self.run_poll_interval = max(0.05, float(self.run_poll_interval))
        self.run_timeout = max(self.run_poll_interval, float(self.run_timeout))
        policy = (self.empty_allow_list_policy or "").strip().lower()
        if policy not in _ALLOW_LIST_POLICIES:
            LOGGER.warning("Unknown empty allow-list policy %r; using allow_all", self.empty_allow_list_policy)
            policy = "allow_all"
        self.empty_allow_list_policy = policy
        return self


def load_settings(path: Path | str | None = None, *, env: Mapping[str, str] | None = None) -> EngineSettings:
    """Build settings from an optional JSON file plus ``SWITCHBOARD_*`` overrides."""

    environ = os.environ if env is None else env
    settings = EngineSettings()
    payload = _read_payload(Path(path)) if path else {}
    if payload:
        settings = _apply_overrides(settings, payload, source=str(path))
    settings = _apply_overrides(settings, _env_overrides(environ), source="environment")
    return settings.clamp()


def _read_payload(path: Path) -> Dict[str, Any]:
    if not path.exists():
        LOGGER.debug("Settings file %s does not exist; using defaults", path)
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        LOGGER.warning("Settings file %s is not valid JSON; using defaults", path, exc_info=True)
        return {}
    if not isinstance(payload, dict):
        LOGGER.warning("Settings file %s must contain a JSON object", path)
        return {}
    return payload


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None:
            overrides[field_name] = value
    for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None:
            overrides[field_name] = value.strip().lower() in _TRUE_VALUES
    for env_name, field_name in _INT_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = int(value, 10)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
    for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = float(value)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
    return overrides


def _apply_overrides(settings: EngineSettings, overrides: Mapping[str, Any], *, source: str) -> EngineSettings:
    known = {item.name for item in dataclasses.fields(EngineSettings)}
    accepted = {key: value for key, value in overrides.items() if key in known}
    for key in overrides.keys() - accepted.keys():
        LOGGER.debug("Ignoring unknown setting %r from %s", key, source)
    if not accepted:
        return settings
    return dataclasses.replace(settings, **accepted)


# -----------------------------------------------------------------------------
# API key resolution
# -----------------------------------------------------------------------------


class EnvApiKeyResolver:
    """Reads keys such as ``openai_api_key`` from the environment.

    ``SWITCHBOARD_<TENANT>_<KEY_NAME>`` takes precedence over the
    tenant-agnostic ``SWITCHBOARD_<KEY_NAME>``.
    """

    def __init__(self, env: Mapping[str, str] | None = None, *, prefix: str = "SWITCHBOARD") -> None:
        self._env = env
        self._prefix = prefix

    async def get_api_key(self, tenant_id: str, key_name: str) -> str | None:
        environ = os.environ if self._env is None else self._env
        key = _ENV_KEY_UNSAFE.sub("_", key_name.upper())
        tenant = _ENV_KEY_UNSAFE.sub("_", (tenant_id or "").upper())
        candidates = [f"{self._prefix}_{tenant}_{key}"] if tenant else []
        candidates.append(f"{self._prefix}_{key}")
        for name in candidates:
            value = (environ.get(name) or "").strip()
            if value:
                return value
        return None


class MappingApiKeyResolver:
    """Serves keys from an in-memory ``{(tenant_id, key_name): key}`` mapping.

    A ``(None, key_name)`` entry applies to every tenant.
    """

    def __init__(self, keys: Mapping[tuple[str | None, str], str]) -> None:
        self._keys = dict(keys)

    async def get_api_key(self, tenant_id: str, key_name: str) -> str | None:
        return self._keys.get((tenant_id, key_name)) or self._keys.get((None, key_name))


__all__ = ["EngineSettings", "EnvApiKeyResolver", "MappingApiKeyResolver", "load_settings"]
