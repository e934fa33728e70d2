# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Type definitions for the key rotator.

This module contains the dataclasses shared by the rotation engine, the
credential stores, the settings provider and the retry orchestrator.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional


# =============================================================================
# ENUMS
# =============================================================================


class KeyEventType(str, Enum):
    """Kinds of events emitted to the usage logger."""

    ROTATION = "rotation"
    SUCCESS = "success"
    RATE_LIMIT = "rate_limit"
    DEACTIVATION = "deactivation"
    DAILY_RESET = "daily_reset"
    DAILY_LIMIT = "daily_limit"
    REACTIVATION = "reactivation"
    KEY_ADDED = "key_added"
    REQUEST = "request"


# =============================================================================
# KEY RECORDS
# =============================================================================


def new_key_id() -> str:
    return uuid.uuid4().hex


@dataclass
class KeyRecord:
    """
    One upstream credential and its rotation state.

    Timestamps are naive UTC datetimes. ``last_reset_date`` is the local
    calendar date of the last daily reset.
    """

    secret: str
    id: str = field(default_factory=new_key_id)
    name: Optional[str] = None
    is_active: bool = True
    last_used: Optional[datetime] = None
    global_cooldown_until: Optional[datetime] = None
    failure_count: int = 0
    lifetime_request_count: int = 0
    daily_limit: Optional[int] = None  # None = unlimited
    daily_used: int = 0
    last_reset_date: Optional[date] = None
    disabled_by_daily_limit: bool = False

    @property
    def has_daily_limit(self) -> bool:
        """True if a positive daily cap applies (0 behaves as unlimited)."""
        return self.daily_limit is not None and self.daily_limit > 0

    @property
    def daily_limit_reached(self) -> bool:
        return self.has_daily_limit and self.daily_used >= self.daily_limit

    def is_cooling_down(self, now: datetime) -> bool:
        return (
            self.global_cooldown_until is not None
            and self.global_cooldown_until > now
        )

    def copy(self) -> "KeyRecord":
        return replace(self)


@dataclass(frozen=True)
class KeyQuery:
    """
    Typed filter over key records.

    Fields left as None do not constrain the result. ``cooldown_elapsed_at``
    keeps only records whose global cooldown is unset or has ended at that
    instant.
    """

    is_active: Optional[bool] = None
    disabled_by_daily_limit: Optional[bool] = None
    cooldown_elapsed_at: Optional[datetime] = None

    @classmethod
    def eligible(cls, now: datetime) -> "KeyQuery":
        """Records that can be selected by rotation at ``now``."""
        return cls(
            is_active=True,
            disabled_by_daily_limit=False,
            cooldown_elapsed_at=now,
        )

    def matches(self, record: KeyRecord) -> bool:
        if self.is_active is not None and record.is_active != self.is_active:
            return False
        if (
            self.disabled_by_daily_limit is not None
            and record.disabled_by_daily_limit != self.disabled_by_daily_limit
        ):
            return False
        if self.cooldown_elapsed_at is not None and record.is_cooling_down(
            self.cooldown_elapsed_at
        ):
            return False
        return True


# =============================================================================
# SETTINGS
# =============================================================================


@dataclass(frozen=True)
class Settings:
    """Process-wide tunables consumed by the engine and the orchestrator."""

    rotation_request_count: int = 5
    max_failure_count: int = 5
    rate_limit_cooldown_seconds: int = 60
    key_rotation_delay_seconds: int = 0
    max_retries: int = 3
    log_retention_days: int = 14

    def to_dict(self) -> Dict[str, int]:
        return {
            "rotation_request_count": self.rotation_request_count,
            "max_failure_count": self.max_failure_count,
            "rate_limit_cooldown_seconds": self.rate_limit_cooldown_seconds,
            "key_rotation_delay_seconds": self.key_rotation_delay_seconds,
            "max_retries": self.max_retries,
            "log_retention_days": self.log_retention_days,
        }


# (min, max) per settings field
SETTINGS_BOUNDS: Dict[str, tuple] = {
    "rotation_request_count": (0, 100),
    "max_failure_count": (1, 20),
    "rate_limit_cooldown_seconds": (10, 3600),
    "key_rotation_delay_seconds": (0, 300),
    "max_retries": (1, 10),
    "log_retention_days": (1, 90),
}


# =============================================================================
# EVENTS
# =============================================================================


@dataclass
class KeyEvent:
    """A structured event for the usage logger."""

    type: KeyEventType
    key_id: Optional[str]
    timestamp: datetime
    fields: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "key_id": self.key_id,
            "timestamp": self.timestamp.isoformat(),
            **self.fields,
        }
