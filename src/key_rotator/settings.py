# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Settings provider.

Settings are read through a short-lived cache so the hot path (one read per
get_key / mark_error) does not touch the disk. Every value is clamped to its
bounds on the way in, whatever the source.
"""

import asyncio
import json
import logging
import math
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import aiofiles

from .types import SETTINGS_BOUNDS, Settings

lib_logger = logging.getLogger("key_rotator")

DEFAULT_CACHE_TTL_SECONDS = 60.0

# camelCase names used by older settings.json files
_LEGACY_ALIASES = {
    "keyRotationRequestCount": "rotation_request_count",
    "maxFailureCount": "max_failure_count",
    "rateLimitCooldown": "rate_limit_cooldown_seconds",
    "keyRotationDelaySeconds": "key_rotation_delay_seconds",
    "maxRetries": "max_retries",
    "logRetentionDays": "log_retention_days",
}


def _clamp_number(value: Any, default: int, low: int, high: int) -> int:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(num):
        return default
    return int(max(low, min(high, num)))


def clamp_settings(raw: Mapping[str, Any], base: Optional[Settings] = None) -> Settings:
    """
    Builds Settings from a loose mapping.

    Unknown keys are ignored, missing or non-numeric values fall back to
    ``base`` (defaults if not given) and everything is clamped to
    SETTINGS_BOUNDS.
    """
    base = base or Settings()
    normalized: Dict[str, Any] = {}
    for key, value in raw.items():
        normalized[_LEGACY_ALIASES.get(key, key)] = value

    values = {}
    for name, (low, high) in SETTINGS_BOUNDS.items():
        current = getattr(base, name)
        if name in normalized:
            values[name] = _clamp_number(normalized[name], current, low, high)
        else:
            values[name] = current
    return Settings(**values)


class SettingsProvider(ABC):
    """Cached access to the process-wide settings."""

    def __init__(self, cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS):
        self._cache_ttl = cache_ttl_seconds
        self._cached: Optional[Settings] = None
        self._cached_at: float = 0.0
        self._lock = asyncio.Lock()

    async def read(self) -> Settings:
        """Returns the settings, reloading from the source on a cache miss."""
        if self._cached is not None and (
            time.monotonic() - self._cached_at
        ) < self._cache_ttl:
            return self._cached

        async with self._lock:
            # Another caller may have refreshed while we waited
            if self._cached is not None and (
                time.monotonic() - self._cached_at
            ) < self._cache_ttl:
                return self._cached
            settings = await self._load()
            self._cached = settings
            self._cached_at = time.monotonic()
            return settings

    async def write(self, settings: Settings) -> Settings:
        """Persists settings (clamped) and refreshes the cache."""
        clamped = clamp_settings(settings.to_dict())
        async with self._lock:
            await self._save(clamped)
            self._cached = clamped
            self._cached_at = time.monotonic()
        return clamped

    async def update(self, changes: Mapping[str, Any]) -> Settings:
        """Applies a partial change on top of the current settings."""
        current = await self.read()
        return await self.write(clamp_settings(changes, base=current))

    def invalidate(self) -> None:
        self._cached = None

    @abstractmethod
    async def _load(self) -> Settings:
        """Reads settings from the backing source."""

    @abstractmethod
    async def _save(self, settings: Settings) -> None:
        """Writes settings to the backing source."""


class StaticSettingsProvider(SettingsProvider):
    """Keeps settings in memory only. Overrides are clamped like any other write."""

    def __init__(self, settings: Optional[Settings] = None, **overrides: Any):
        super().__init__(cache_ttl_seconds=math.inf)
        base = settings or Settings()
        self._settings = clamp_settings(overrides, base) if overrides else base

    async def _load(self) -> Settings:
        return self._settings

    async def _save(self, settings: Settings) -> None:
        self._settings = settings


def get_settings_file(root_dir: Path) -> Path:
    configured = os.getenv("SETTINGS_FILE")
    if configured:
        return Path(configured)
    return root_dir / "data" / "settings.json"


def get_settings_cache_ttl() -> float:
    raw = os.getenv("SETTINGS_CACHE_TTL_SECONDS", str(DEFAULT_CACHE_TTL_SECONDS))
    try:
        ttl = float(raw)
    except ValueError:
        ttl = DEFAULT_CACHE_TTL_SECONDS
    return max(0.0, ttl)


class JsonFileSettingsProvider(SettingsProvider):
    """
    Settings stored in a JSON file.

    A missing file is created with the defaults. An unreadable or malformed
    file yields the defaults and is left untouched.
    """

    def __init__(
        self,
        file_path: Union[str, Path],
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
    ):
        super().__init__(cache_ttl_seconds=cache_ttl_seconds)
        self.file_path = Path(file_path)

    async def _load(self) -> Settings:
        if not self.file_path.exists():
            lib_logger.info(
                f"No settings file at {self.file_path}, writing defaults"
            )
            defaults = Settings()
            try:
                await self._save(defaults)
            except OSError as e:
                lib_logger.error(f"Failed to write default settings: {e}")
            return defaults

        try:
            async with aiofiles.open(self.file_path, "r", encoding="utf-8") as f:
                content = await f.read()
            data = json.loads(content) if content.strip() else {}
        except (OSError, json.JSONDecodeError) as e:
            lib_logger.error(f"Failed to read settings file {self.file_path}: {e}")
            return Settings()

        if not isinstance(data, dict):
            lib_logger.error(f"Settings file {self.file_path} is not a JSON object")
            return Settings()
        return clamp_settings(data)

    async def _save(self, settings: Settings) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.file_path.with_suffix(".tmp")
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(settings.to_dict(), indent=2))
        # Atomic rename
        temp_path.replace(self.file_path)
