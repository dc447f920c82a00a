"""
Runtime settings for metadata detection, read from environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass
class MetadataSettings:
    """Timeouts, cache bounds and thresholds used by the metadata services."""

    # ICY client
    icy_probe_timeout: float = 5.0
    icy_extract_timeout: float = 6.0
    user_agent: str = "RadioDirectory/1.0 (Metadata Detector)"

    # Request de-duplication / cache
    cache_ttl: float = 30.0
    inflight_grace: float = 45.0
    cache_max_entries: int = 100

    # Multi-strategy detector
    strategy_timeout: float = 5.0

    # Memory monitor (RSS, MB)
    memory_warning_mb: int = 350
    memory_critical_mb: int = 400
    memory_emergency_mb: int = 450
    memory_check_interval: float = 30.0

    # Station store
    stations_storage_path: str = "data/stations.json"

    @classmethod
    def from_env(cls) -> "MetadataSettings":
        """Build settings from the process environment, falling back to defaults."""
        defaults = cls()
        return cls(
            icy_probe_timeout=_env_float("ICY_PROBE_TIMEOUT", defaults.icy_probe_timeout),
            icy_extract_timeout=_env_float("ICY_EXTRACT_TIMEOUT", defaults.icy_extract_timeout),
            user_agent=os.environ.get("METADATA_USER_AGENT", defaults.user_agent),
            cache_ttl=_env_float("METADATA_CACHE_TTL", defaults.cache_ttl),
            inflight_grace=_env_float("METADATA_INFLIGHT_GRACE", defaults.inflight_grace),
            cache_max_entries=_env_int("METADATA_CACHE_MAX_ENTRIES", defaults.cache_max_entries),
            strategy_timeout=_env_float("METADATA_STRATEGY_TIMEOUT", defaults.strategy_timeout),
            memory_warning_mb=_env_int("MEMORY_WARNING_MB", defaults.memory_warning_mb),
            memory_critical_mb=_env_int("MEMORY_CRITICAL_MB", defaults.memory_critical_mb),
            memory_emergency_mb=_env_int("MEMORY_EMERGENCY_MB", defaults.memory_emergency_mb),
            memory_check_interval=_env_float("MEMORY_CHECK_INTERVAL", defaults.memory_check_interval),
            stations_storage_path=os.environ.get(
                "STATIONS_STORAGE_PATH", defaults.stations_storage_path
            ),
        )


# Singleton instance
_settings: Optional[MetadataSettings] = None


def get_settings() -> MetadataSettings:
    """Get the settings singleton."""
    global _settings
    if _settings is None:
        _settings = MetadataSettings.from_env()
    return _settings
