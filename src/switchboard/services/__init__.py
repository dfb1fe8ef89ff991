"""Configuration and credential services."""

from .settings import EngineSettings, EnvApiKeyResolver, MappingApiKeyResolver, load_settings

__all__ = ["EngineSettings", "EnvApiKeyResolver", "MappingApiKeyResolver", "load_settings"]
