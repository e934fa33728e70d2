# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .errors import (
    InvalidArgumentError,
    KeyNotFoundError,
    KeyRotatorError,
    MaxRetriesExceededError,
    NoAvailableKeyError,
    ProxyError,
    RateLimitedError,
    UpstreamClientError,
    UpstreamConnectionError,
    UpstreamError,
    UpstreamServerError,
    mask_credential,
)
from .events import FanOutUsageLogger, LoggingUsageLogger, UsageLogger, setup_event_logger
from .executor import RetryOrchestrator, UpstreamResult
from .rotation import RotationEngine
from .settings import JsonFileSettingsProvider, SettingsProvider, StaticSettingsProvider
from .store import CredentialStore, InMemoryCredentialStore
from .types import KeyEvent, KeyEventType, KeyQuery, KeyRecord, Settings

__all__ = [
    "RotationEngine",
    "RetryOrchestrator",
    "UpstreamResult",
    "CredentialStore",
    "InMemoryCredentialStore",
    "SettingsProvider",
    "JsonFileSettingsProvider",
    "StaticSettingsProvider",
    "UsageLogger",
    "LoggingUsageLogger",
    "FanOutUsageLogger",
    "setup_event_logger",
    "KeyRecord",
    "KeyQuery",
    "KeyEvent",
    "KeyEventType",
    "Settings",
    # Errors
    "KeyRotatorError",
    "InvalidArgumentError",
    "KeyNotFoundError",
    "ProxyError",
    "NoAvailableKeyError",
    "UpstreamError",
    "RateLimitedError",
    "UpstreamServerError",
    "UpstreamClientError",
    "UpstreamConnectionError",
    "MaxRetriesExceededError",
    "mask_credential",
]
