# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Rotation engine.

Owns the active-key slot and every state transition of the key records:
daily resets, daily limits, global (429) cooldowns, failure counting and
deactivation. One asyncio.Lock covers the whole engine, so each public
operation runs "check state, decide, mutate, persist" atomically with
respect to every other request.
"""

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import (
    InvalidArgumentError,
    KeyNotFoundError,
    NoAvailableKeyError,
    get_rate_limit_reset,
    is_rate_limit_error,
    mask_credential,
)
from .events import UsageLogger, emit_safely
from .settings import SettingsProvider
from .store import CredentialStore
from .types import KeyEvent, KeyEventType, KeyQuery, KeyRecord

lib_logger = logging.getLogger("key_rotator")

Clock = Callable[[], datetime]


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


def local_now() -> datetime:
    """Current time as an aware datetime in the server's local timezone."""
    return datetime.now().astimezone()


def apply_daily_reset(record: KeyRecord, today: date) -> bool:
    """
    Resets the daily counters if the record was last reset before ``today``.

    Returns True if the record changed. Calling it again on the same day is
    a no-op.
    """
    if record.last_reset_date == today:
        return False
    record.daily_used = 0
    record.disabled_by_daily_limit = False
    record.last_reset_date = today
    return True


def _check_daily_limit(daily_limit: Any) -> None:
    if daily_limit is UNSET or daily_limit is None:
        return
    if isinstance(daily_limit, bool) or not isinstance(daily_limit, int) or daily_limit < 0:
        raise InvalidArgumentError(
            "Invalid daily limit. Must be a non-negative integer or null."
        )


def select_candidate(candidates: Sequence[KeyRecord]) -> Optional[KeyRecord]:
    """
    Hybrid never-used-first / LRU selection.

    The first candidate that was never used wins; otherwise the least
    recently used one. Ties keep the input order.
    """
    if not candidates:
        return None
    for candidate in candidates:
        if candidate.last_used is None:
            return candidate
    return min(candidates, key=lambda c: c.last_used)


class RotationEngine:
    """
    Selects and tracks the active upstream key.

    Example:
        engine = RotationEngine(store, settings_provider, usage_logger)
        secret, key_id = await engine.get_key()
        try:
            response = await call_upstream(secret)
        except UpstreamError as e:
            await engine.mark_error(e, key_id=key_id)
        else:
            await engine.mark_success(key_id=key_id)
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: SettingsProvider,
        usage_logger: Optional[UsageLogger] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            store: Credential store holding the key records
            settings: Settings provider for the rotation tunables
            usage_logger: Optional fire-and-forget event sink
            clock: Returns the current time as an aware datetime; its date
                in its own timezone decides the daily reset boundary
        """
        self._store = store
        self._settings = settings
        self._usage_logger = usage_logger
        self._clock = clock or local_now
        self._lock = asyncio.Lock()

        self._current: Optional[KeyRecord] = None
        self._request_counter = 0
        # key id -> grants handed out by get_key() still waiting for an outcome
        self._in_flight: Dict[str, int] = {}

    # =========================================================================
    # TIME
    # =========================================================================

    def _now(self) -> datetime:
        """Current time as naive UTC, the format records are stored in."""
        return self._clock().astimezone(timezone.utc).replace(tzinfo=None)

    def _today(self) -> date:
        return self._clock().date()

    # =========================================================================
    # SLOT
    # =========================================================================

    @property
    def active_key_id(self) -> Optional[str]:
        return self._current.id if self._current else None

    @property
    def requests_since_rotation(self) -> int:
        return self._request_counter

    def _clear_active(self) -> None:
        self._current = None
        self._request_counter = 0

    def in_flight(self, key_id: str) -> int:
        return self._in_flight.get(key_id, 0)

    def release_key(self, key_id: Optional[str]) -> None:
        """Drops one grant of ``key_id`` that will never get a mark_* call."""
        if key_id is None:
            return
        remaining = self._in_flight.get(key_id, 0) - 1
        if remaining > 0:
            self._in_flight[key_id] = remaining
        else:
            self._in_flight.pop(key_id, None)

    def _daily_budget_spent(self, record: KeyRecord) -> bool:
        """True if confirmed plus in-flight requests already fill the daily limit."""
        if not record.has_daily_limit:
            return False
        return record.daily_used + self.in_flight(record.id) >= record.daily_limit

    def _emit(self, event_type: KeyEventType, record: Optional[KeyRecord], **fields: Any) -> None:
        event = KeyEvent(
            type=event_type,
            key_id=record.id if record else None,
            timestamp=self._now(),
            fields=fields,
        )
        emit_safely(self._usage_logger, event)

    # =========================================================================
    # GET KEY
    # =========================================================================

    async def get_key(self) -> Tuple[str, str]:
        """
        Returns ``(secret, key_id)`` of the key that should serve the next request.

        Raises:
            NoAvailableKeyError: if no key is eligible
        """
        async with self._lock:
            current = self._current
            if current is not None and await self._check_active(current):
                self._request_counter += 1
                secret, key_id = current.secret, current.id
            else:
                secret, key_id = await self._rotate()
            self._in_flight[key_id] = self.in_flight(key_id) + 1
            return secret, key_id

    async def _check_active(self, current: KeyRecord) -> bool:
        """Runs the validity checks on the active key; clears the slot if it fails one."""
        today = self._today()
        if apply_daily_reset(current, today):
            await self._store.update(current)
            lib_logger.info(
                f"Daily limit reset for key {mask_credential(current.secret)}"
            )
            self._emit(
                KeyEventType.DAILY_RESET,
                current,
                date=today.isoformat(),
                trigger="get_key",
            )

        now = self._now()
        if current.is_cooling_down(now):
            lib_logger.info(
                f"Key {mask_credential(current.secret)} is in global cooldown until "
                f"{current.global_cooldown_until.isoformat()}, rotating"
            )
            self._clear_active()
            return False

        if current.daily_limit_reached:
            current.disabled_by_daily_limit = True
            await self._store.update(current)
            lib_logger.info(
                f"Key {mask_credential(current.secret)} reached its daily limit "
                f"({current.daily_used}/{current.daily_limit}), rotating"
            )
            self._emit(
                KeyEventType.DAILY_LIMIT,
                current,
                daily_used=current.daily_used,
                daily_limit=current.daily_limit,
            )
            self._clear_active()
            return False

        if self._daily_budget_spent(current):
            lib_logger.info(
                f"Key {mask_credential(current.secret)} has its remaining daily limit "
                f"taken by {self.in_flight(current.id)} in-flight requests, rotating"
            )
            self._clear_active()
            return False

        settings = await self._settings.read()
        threshold = settings.rotation_request_count
        if threshold > 0 and self._request_counter >= threshold:
            lib_logger.debug(
                f"Request count rotation for key {mask_credential(current.secret)} "
                f"({self._request_counter}/{threshold})"
            )
            self._clear_active()
            return False

        return True

    async def _rotate(self) -> Tuple[str, str]:
        """Sweeps daily resets, then selects a new active key. Caller holds the lock."""
        today = self._today()
        now = self._now()

        records = await self._store.find_active(KeyQuery(is_active=True))
        changed: List[KeyRecord] = []
        for record in records:
            had_usage = record.daily_used > 0 or record.disabled_by_daily_limit
            if apply_daily_reset(record, today):
                changed.append(record)
                if had_usage:
                    self._emit(
                        KeyEventType.DAILY_RESET,
                        record,
                        date=today.isoformat(),
                        trigger="rotation",
                    )
            if record.daily_limit_reached and not record.disabled_by_daily_limit:
                record.disabled_by_daily_limit = True
                if not any(c is record for c in changed):
                    changed.append(record)
                self._emit(
                    KeyEventType.DAILY_LIMIT,
                    record,
                    daily_used=record.daily_used,
                    daily_limit=record.daily_limit,
                )
        if changed:
            await self._store.bulk_update(changed)
            lib_logger.debug(f"Persisted daily state for {len(changed)} keys")

        eligible = KeyQuery.eligible(now)
        candidates = [
            r for r in records if eligible.matches(r) and not self._daily_budget_spent(r)
        ]
        selected = select_candidate(candidates)
        if selected is None:
            self._clear_active()
            lib_logger.error(
                f"No available API keys ({len(records)} active, none eligible)"
            )
            raise NoAvailableKeyError()

        self._current = selected
        # The request served by this rotation counts towards the threshold
        self._request_counter = 1
        lib_logger.info(
            f"Rotated to key {mask_credential(selected.secret)} "
            f"({len(candidates)} eligible of {len(records)} active)"
        )
        self._emit(
            KeyEventType.ROTATION,
            selected,
            last_used=selected.last_used.isoformat() if selected.last_used else None,
            failure_count=selected.failure_count,
            candidates=len(candidates),
        )
        return selected.secret, selected.id

    # =========================================================================
    # OUTCOMES
    # =========================================================================

    async def _outcome_record(self, key_id: Optional[str]) -> Optional[KeyRecord]:
        """
        Releases one grant and returns the record an outcome belongs to.

        That is the slot's record when ``key_id`` is the active key (or is
        omitted), otherwise the stored record of ``key_id``. Returns None if
        there is nothing to attribute the outcome to. Caller holds the lock.
        """
        current = self._current
        if key_id is None:
            if current is None:
                return None
            key_id = current.id
        self.release_key(key_id)
        if current is not None and current.id == key_id:
            return current
        record = await self._store.find_by_field("id", key_id)
        if record is None:
            lib_logger.debug(f"Ignoring outcome for removed key {key_id}")
        return record

    async def mark_success(self, key_id: Optional[str] = None) -> None:
        """
        Records a confirmed upstream success.

        Args:
            key_id: Key that served the request, as returned by get_key().
                Defaults to the active key.
        """
        async with self._lock:
            record = await self._outcome_record(key_id)
            if record is None:
                return
            today = self._today()
            if apply_daily_reset(record, today):
                self._emit(
                    KeyEventType.DAILY_RESET,
                    record,
                    date=today.isoformat(),
                    trigger="mark_success",
                )
            record.last_used = self._now()
            record.lifetime_request_count += 1
            record.daily_used += 1
            await self._store.update(record)
            self._emit(
                KeyEventType.SUCCESS,
                record,
                lifetime_request_count=record.lifetime_request_count,
                daily_used=record.daily_used,
                daily_limit=record.daily_limit,
            )

    async def mark_error(self, error: Exception, key_id: Optional[str] = None) -> bool:
        """
        Records an upstream failure.

        Rate limits put the key into global cooldown. If it is the active key,
        the slot is cleared after an optional delay taken while holding the
        lock. Any other failure counts towards deactivation.

        Args:
            error: The upstream failure
            key_id: Key that served the request, as returned by get_key().
                Defaults to the active key.

        Returns:
            True if the error was an upstream rate limit
        """
        async with self._lock:
            record = await self._outcome_record(key_id)
            if record is None:
                return False
            is_current = record is self._current

            settings = await self._settings.read()
            now = self._now()

            if is_rate_limit_error(error):
                reset_at = get_rate_limit_reset(error, now)
                source = "upstream"
                if reset_at is None:
                    reset_at = now + timedelta(
                        seconds=settings.rate_limit_cooldown_seconds
                    )
                    source = "fallback"
                record.global_cooldown_until = reset_at
                await self._store.update(record)
                lib_logger.warning(
                    f"Rate limit hit on key {mask_credential(record.secret)}, "
                    f"cooling down until {reset_at.isoformat()} ({source})"
                )
                self._emit(
                    KeyEventType.RATE_LIMIT,
                    record,
                    reset_at=reset_at.isoformat(),
                    reset_source=source,
                )
                if not is_current:
                    return True

                delay = settings.key_rotation_delay_seconds
                if delay > 0:
                    lib_logger.info(
                        f"Holding rotation for {delay}s after rate limit on key "
                        f"{mask_credential(record.secret)}"
                    )
                    await asyncio.sleep(delay)

                self._clear_active()
                return True

            record.failure_count += 1
            max_failures = settings.max_failure_count
            if record.is_active and record.failure_count >= max_failures:
                record.is_active = False
                await self._store.update(record)
                lib_logger.warning(
                    f"Deactivated key {mask_credential(record.secret)} after "
                    f"{record.failure_count} failures (threshold {max_failures})"
                )
                self._emit(
                    KeyEventType.DEACTIVATION,
                    record,
                    reason="failure_threshold",
                    failure_count=record.failure_count,
                    max_failure_count=max_failures,
                )
                if is_current:
                    self._clear_active()
            else:
                await self._store.update(record)
                lib_logger.info(
                    f"Key {mask_credential(record.secret)} failure "
                    f"{record.failure_count}/{max_failures}: {error}"
                )
            return False

    # =========================================================================
    # KEY MANAGEMENT
    # =========================================================================

    async def add_key(
        self,
        secret: str,
        name: Optional[str] = None,
        daily_limit: Optional[int] = None,
    ) -> KeyRecord:
        """
        Adds a key, or fully reactivates it if the secret is already stored.

        Raises:
            InvalidArgumentError: on an empty secret or a negative daily limit
        """
        secret = (secret or "").strip()
        if not secret:
            raise InvalidArgumentError("API key is required")
        if daily_limit is not None and daily_limit < 0:
            raise InvalidArgumentError("Daily limit must be a non-negative integer")

        async with self._lock:
            existing = await self._store.find_by_field("secret", secret)
            if existing is not None:
                existing.is_active = True
                existing.failure_count = 0
                existing.global_cooldown_until = None
                existing.daily_used = 0
                existing.last_reset_date = None
                existing.disabled_by_daily_limit = False
                await self._store.update(existing)
                self._sync_active(existing)
                lib_logger.info(f"Reactivated key {mask_credential(secret)}")
                self._emit(KeyEventType.REACTIVATION, existing, reason="re-added")
                return existing

            created = await self._store.create(
                KeyRecord(
                    secret=secret,
                    name=(name or "").strip() or None,
                    daily_limit=daily_limit,
                )
            )
            lib_logger.info(f"Added key {mask_credential(secret)}")
            self._emit(KeyEventType.KEY_ADDED, created)
            return created

    async def list_keys(self) -> List[KeyRecord]:
        async with self._lock:
            return await self._store.list_all()

    async def get_record(self, key_id: str) -> KeyRecord:
        async with self._lock:
            return await self._require(key_id)

    async def update_key(
        self,
        key_id: str,
        *,
        name: Any = UNSET,
        daily_limit: Any = UNSET,
    ) -> KeyRecord:
        """Changes the label and/or daily limit of a key."""
        _check_daily_limit(daily_limit)

        async with self._lock:
            record = await self._require(key_id)
            if name is not UNSET:
                record.name = (name or "").strip() or None
            if daily_limit is not UNSET:
                record.daily_limit = daily_limit
                if not record.has_daily_limit:
                    record.disabled_by_daily_limit = False
            await self._store.update(record)
            self._sync_active(record)
            return record

    async def set_active(self, key_id: str, active: bool) -> KeyRecord:
        """Manually (de)activates a key. Activation clears failures and cooldowns."""
        async with self._lock:
            record = await self._require(key_id)
            was_active = record.is_active
            record.is_active = active
            if active and not was_active:
                record.failure_count = 0
                record.global_cooldown_until = None
                record.disabled_by_daily_limit = False
                self._emit(KeyEventType.REACTIVATION, record, reason="manual")
            elif was_active and not active:
                self._emit(KeyEventType.DEACTIVATION, record, reason="manual")
            await self._store.update(record)
            self._sync_active(record)
            return record

    async def delete_key(self, key_id: str) -> bool:
        async with self._lock:
            deleted = await self._store.delete(key_id)
            if deleted and self.active_key_id == key_id:
                self._clear_active()
            return deleted

    async def bulk_update_keys(
        self,
        key_ids: Sequence[str],
        *,
        daily_limit: Any = UNSET,
    ) -> int:
        """
        Applies the same change to several keys in one store transaction.

        Unknown ids are skipped. Returns the number of keys changed.
        """
        _check_daily_limit(daily_limit)

        async with self._lock:
            records: List[KeyRecord] = []
            for key_id in dict.fromkeys(key_ids):
                record = await self._store.find_by_field("id", key_id)
                if record is None:
                    continue
                if daily_limit is not UNSET:
                    record.daily_limit = daily_limit
                    if not record.has_daily_limit:
                        record.disabled_by_daily_limit = False
                records.append(record)
            if not records:
                return 0

            await self._store.bulk_update(records)
            if any(r.id == self.active_key_id for r in records):
                self._clear_active()
            lib_logger.info(f"Bulk updated {len(records)} of {len(key_ids)} keys")
            return len(records)

    async def bulk_delete(self, key_ids: Sequence[str]) -> int:
        """Deletes several keys in one store transaction. Returns how many existed."""
        unique_ids = list(dict.fromkeys(key_ids))
        async with self._lock:
            count = await self._store.bulk_delete(unique_ids)
            if self.active_key_id in unique_ids:
                self._clear_active()
            lib_logger.info(f"Bulk deleted {count} of {len(unique_ids)} keys")
            return count

    async def _require(self, key_id: str) -> KeyRecord:
        record = await self._store.find_by_field("id", key_id)
        if record is None:
            raise KeyNotFoundError(f"API key {key_id} not found")
        return record

    def _sync_active(self, record: KeyRecord) -> None:
        """Keeps the slot's copy in step with an out-of-band change to the same record."""
        if self._current is None or self._current.id != record.id:
            return
        if record.is_active:
            self._current = record.copy()
        else:
            self._clear_active()
