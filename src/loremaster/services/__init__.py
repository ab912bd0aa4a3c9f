"""Application services: settings persistence and lookup caching."""

from .cache import CacheConfig, CacheStats, LookupCache
from .settings import SecretVault, Settings, SettingsStore, parse_override, redact_secret

__all__ = [
    "CacheConfig",
    "CacheStats",
    "LookupCache",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "parse_override",
    "redact_secret",
]
