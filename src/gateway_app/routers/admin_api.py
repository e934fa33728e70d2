import logging
from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway_app.auth import (
    get_engine,
    get_session_maker,
    get_settings_provider,
    verify_master_key,
)
from gateway_app.usage_recorder import prune_request_logs
from key_rotator import RotationEngine, SettingsProvider
from key_rotator.errors import (
    InvalidArgumentError,
    KeyNotFoundError,
    mask_credential,
    mask_secret_for_display,
)
from key_rotator.types import KeyRecord

logger = logging.getLogger(__name__)

BULK_ACTIONS = ("setLimit", "delete")

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(verify_master_key)],
)


class KeyItem(BaseModel):
    id: str
    key: str
    name: str | None
    is_active: bool
    is_current: bool
    last_used: datetime | None
    global_cooldown_until: datetime | None
    failure_count: int
    request_count: int
    daily_limit: int | None
    daily_used: int
    last_reset_date: date | None
    disabled_by_daily_limit: bool


class KeyListResponse(BaseModel):
    keys: list[KeyItem]


class CreateKeyRequest(BaseModel):
    key: str
    name: str | None = None
    daily_limit: Any = None


class UpdateKeyRequest(BaseModel):
    name: str | None = None
    daily_limit: Any = None


class ToggleKeyRequest(BaseModel):
    is_active: bool | None = None


class BulkKeyActionRequest(BaseModel):
    action: Any = None
    key_ids: Any = None
    daily_limit: Any = None


class BulkKeyActionResponse(BaseModel):
    message: str
    count: int


class SettingsResponse(BaseModel):
    rotation_request_count: int
    max_failure_count: int
    rate_limit_cooldown_seconds: int
    key_rotation_delay_seconds: int
    max_retries: int
    log_retention_days: int


class CleanupLogsResponse(BaseModel):
    deleted: int
    retention_days: int


def _serialize_key(record: KeyRecord, active_key_id: str | None) -> KeyItem:
    return KeyItem(
        id=record.id,
        key=mask_secret_for_display(record.secret),
        name=record.name,
        is_active=record.is_active,
        is_current=record.id == active_key_id,
        last_used=record.last_used,
        global_cooldown_until=record.global_cooldown_until,
        failure_count=record.failure_count,
        request_count=record.lifetime_request_count,
        daily_limit=record.daily_limit,
        daily_used=record.daily_used,
        last_reset_date=record.last_reset_date,
        disabled_by_daily_limit=record.disabled_by_daily_limit,
    )


def _parse_daily_limit(value: Any) -> int | None:
    """Accepts null, an empty string, a non-negative integer or its string form."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        if value.isdigit():
            return int(value)
    elif isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    elif isinstance(value, float) and value.is_integer() and value >= 0:
        return int(value)
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail="Invalid daily limit. Must be a non-negative integer or null.",
    )


def _is_limit_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return value >= 0
    return isinstance(value, float) and value.is_integer() and value >= 0


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail="API key not found",
    )


@router.get("/keys", response_model=KeyListResponse)
async def admin_list_keys(
    engine: RotationEngine = Depends(get_engine),
) -> KeyListResponse:
    records = await engine.list_keys()
    active_key_id = engine.active_key_id
    return KeyListResponse(keys=[_serialize_key(r, active_key_id) for r in records])


@router.post("/keys", response_model=KeyItem)
async def admin_add_key(
    payload: CreateKeyRequest,
    engine: RotationEngine = Depends(get_engine),
) -> KeyItem:
    daily_limit = _parse_daily_limit(payload.daily_limit)
    try:
        record = await engine.add_key(payload.key, name=payload.name, daily_limit=daily_limit)
    except InvalidArgumentError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    logger.info("Admin added key %s", mask_credential(record.secret))
    return _serialize_key(record, engine.active_key_id)


@router.put("/keys/{id}", response_model=KeyItem)
async def admin_update_key(
    id: str,
    payload: UpdateKeyRequest,
    engine: RotationEngine = Depends(get_engine),
) -> KeyItem:
    changes: dict[str, Any] = {}
    if "name" in payload.model_fields_set:
        changes["name"] = payload.name
    if "daily_limit" in payload.model_fields_set:
        changes["daily_limit"] = _parse_daily_limit(payload.daily_limit)

    try:
        record = await engine.update_key(id, **changes)
    except KeyNotFoundError as e:
        raise _not_found() from e
    except InvalidArgumentError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    if changes:
        logger.info("Admin updated key %s: %s", id, ", ".join(sorted(changes)))
    return _serialize_key(record, engine.active_key_id)


@router.patch("/keys/bulk", response_model=BulkKeyActionResponse)
async def admin_bulk_key_action(
    payload: BulkKeyActionRequest,
    engine: RotationEngine = Depends(get_engine),
) -> BulkKeyActionResponse:
    action = payload.action
    if action not in BULK_ACTIONS:
        raise _bad_request(
            'Invalid or missing action specified. Must be "setLimit" or "delete".'
        )
    key_ids = payload.key_ids
    if not isinstance(key_ids, list) or not key_ids:
        raise _bad_request("key_ids must be a non-empty array")
    if any(not isinstance(key_id, str) or not key_id.strip() for key_id in key_ids):
        raise _bad_request("All key_ids must be non-empty strings")

    if action == "setLimit":
        daily_limit = payload.daily_limit
        if "daily_limit" not in payload.model_fields_set or not _is_limit_value(daily_limit):
            raise _bad_request("daily_limit must be a non-negative integer or null")
        if isinstance(daily_limit, float):
            daily_limit = int(daily_limit)
        count = await engine.bulk_update_keys(key_ids, daily_limit=daily_limit)
        message = f"Successfully updated daily limit for {count} keys."
    else:
        count = await engine.bulk_delete(key_ids)
        message = f"Successfully deleted {count} keys."

    if count == 0:
        logger.warning(
            "Bulk %s requested for %d keys but none matched", action, len(key_ids)
        )
    else:
        logger.info("Admin bulk %s applied to %d keys", action, count)
    return BulkKeyActionResponse(message=message, count=count)


@router.patch("/keys/{id}", response_model=KeyItem)
async def admin_toggle_key(
    id: str,
    payload: ToggleKeyRequest | None = None,
    engine: RotationEngine = Depends(get_engine),
) -> KeyItem:
    try:
        target = payload.is_active if payload else None
        if target is None:
            current = await engine.get_record(id)
            target = not current.is_active
        record = await engine.set_active(id, target)
    except KeyNotFoundError as e:
        raise _not_found() from e
    logger.info(
        "Admin %s key %s", "activated" if record.is_active else "deactivated", id
    )
    return _serialize_key(record, engine.active_key_id)


@router.delete("/keys/{id}")
async def admin_delete_key(
    id: str,
    engine: RotationEngine = Depends(get_engine),
) -> dict[str, bool]:
    if not await engine.delete_key(id):
        raise _not_found()
    logger.info("Admin deleted key %s", id)
    return {"ok": True}


@router.get("/settings", response_model=SettingsResponse)
async def admin_get_settings(
    provider: SettingsProvider = Depends(get_settings_provider),
) -> SettingsResponse:
    settings = await provider.read()
    return SettingsResponse(**settings.to_dict())


@router.post("/settings", response_model=SettingsResponse)
async def admin_update_settings(
    payload: dict[str, Any],
    provider: SettingsProvider = Depends(get_settings_provider),
) -> SettingsResponse:
    try:
        settings = await provider.update(payload)
    except OSError as e:
        logger.error("Failed to save settings: %s", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save settings",
        ) from e
    logger.info("Settings updated: %s", settings.to_dict())
    return SettingsResponse(**settings.to_dict())


@router.post("/cleanup-logs", response_model=CleanupLogsResponse)
async def admin_cleanup_logs(
    provider: SettingsProvider = Depends(get_settings_provider),
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> CleanupLogsResponse:
    settings = await provider.read()
    deleted = await prune_request_logs(
        session_maker, retention_days=settings.log_retention_days
    )
    return CleanupLogsResponse(deleted=deleted, retention_days=settings.log_retention_days)
