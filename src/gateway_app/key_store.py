import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from sqlalchemy import delete, event, or_, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from gateway_app.db_models import ApiKey, Base
from key_rotator.errors import InvalidArgumentError
from key_rotator.store import CredentialStore, check_lookup_field
from key_rotator.types import KeyQuery, KeyRecord

logger = logging.getLogger(__name__)

_STATE_FIELDS = (
    "secret",
    "name",
    "is_active",
    "last_used",
    "global_cooldown_until",
    "failure_count",
    "lifetime_request_count",
    "daily_limit",
    "daily_used",
    "last_reset_date",
    "disabled_by_daily_limit",
)


def _to_record(row: ApiKey) -> KeyRecord:
    return KeyRecord(
        id=row.id,
        secret=row.secret,
        name=row.name,
        is_active=bool(row.is_active),
        last_used=row.last_used,
        global_cooldown_until=row.global_cooldown_until,
        failure_count=row.failure_count or 0,
        lifetime_request_count=row.lifetime_request_count or 0,
        daily_limit=row.daily_limit,
        daily_used=row.daily_used or 0,
        last_reset_date=row.last_reset_date,
        disabled_by_daily_limit=bool(row.disabled_by_daily_limit),
    )


def _apply(row: ApiKey, record: KeyRecord) -> None:
    for field in _STATE_FIELDS:
        setattr(row, field, getattr(record, field))


class SqlCredentialStore(CredentialStore):
    """CredentialStore over the ``api_keys`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def find_active(self, query: KeyQuery) -> list[KeyRecord]:
        stmt = select(ApiKey).order_by(ApiKey.created_at.asc(), ApiKey.id.asc())
        if query.is_active is not None:
            stmt = stmt.where(ApiKey.is_active == query.is_active)
        if query.disabled_by_daily_limit is not None:
            stmt = stmt.where(
                ApiKey.disabled_by_daily_limit == query.disabled_by_daily_limit
            )
        if query.cooldown_elapsed_at is not None:
            stmt = stmt.where(
                or_(
                    ApiKey.global_cooldown_until.is_(None),
                    ApiKey.global_cooldown_until <= query.cooldown_elapsed_at,
                )
            )
        async with self._session_maker() as session:
            rows = await session.scalars(stmt)
            return [_to_record(row) for row in rows]

    async def find_by_field(self, field: str, value: str) -> KeyRecord | None:
        check_lookup_field(field)
        column = getattr(ApiKey, field)
        async with self._session_maker() as session:
            row = await session.scalar(select(ApiKey).where(column == value))
        return _to_record(row) if row else None

    async def list_all(self) -> list[KeyRecord]:
        async with self._session_maker() as session:
            rows = await session.scalars(
                select(ApiKey).order_by(ApiKey.created_at.asc(), ApiKey.id.asc())
            )
            return [_to_record(row) for row in rows]

    async def create(self, record: KeyRecord) -> KeyRecord:
        if not record.secret:
            raise InvalidArgumentError("API key value cannot be empty")
        row = ApiKey(id=record.id)
        _apply(row, record)
        async with self._session_maker() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise InvalidArgumentError("API key already exists") from e
            await session.refresh(row)
            return _to_record(row)

    async def update(self, record: KeyRecord) -> None:
        async with self._session_maker() as session:
            row = await session.get(ApiKey, record.id)
            if row is None:
                logger.warning("Ignoring update for unknown key id %s", record.id)
                return
            _apply(row, record)
            await session.commit()

    async def bulk_update(self, records: Iterable[KeyRecord]) -> None:
        records = list(records)
        if not records:
            return
        async with self._session_maker() as session:
            async with session.begin():
                for record in records:
                    row = await session.get(ApiKey, record.id)
                    if row is None:
                        raise InvalidArgumentError(
                            f"Bulk update references unknown key {record.id}"
                        )
                    _apply(row, record)

    async def delete(self, key_id: str) -> bool:
        async with self._session_maker() as session:
            result = await session.execute(delete(ApiKey).where(ApiKey.id == key_id))
            await session.commit()
            deleted = result.rowcount if result.rowcount is not None else 0
        return deleted > 0

    async def bulk_delete(self, key_ids: Iterable[str]) -> int:
        key_ids = list(key_ids)
        if not key_ids:
            return 0
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(delete(ApiKey).where(ApiKey.id.in_(key_ids)))
            deleted = result.rowcount if result.rowcount is not None else 0
        if deleted == 0:
            logger.warning("Bulk delete matched none of %d key ids", len(key_ids))
        return deleted


# =============================================================================
# RUNTIME
# =============================================================================


def get_database_url(root_dir: Path) -> str:
    """DATABASE_URL, or a SQLite file under ``<root>/data``."""
    configured = os.getenv("DATABASE_URL")
    if configured:
        return configured
    db_dir = root_dir / "data"
    db_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{db_dir / 'gateway.db'}"


def get_sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(1000, timeout)


def _enable_concurrent_writes(engine: AsyncEngine, busy_timeout_ms: int) -> None:
    # Every proxied request commits a key-state row while the usage recorder
    # commits request_logs batches to the same file. WAL keeps admin reads off
    # those writes, NORMAL drops the per-commit fsync from the request path and
    # busy_timeout makes the second writer wait instead of failing.
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
        cursor.close()


def create_store_engine(database_url: str) -> AsyncEngine:
    if make_url(database_url).get_backend_name() != "sqlite":
        return create_async_engine(database_url)

    busy_timeout_ms = get_sqlite_busy_timeout_ms()
    engine = create_async_engine(
        database_url, connect_args={"timeout": busy_timeout_ms / 1000}
    )
    _enable_concurrent_writes(engine, busy_timeout_ms)
    return engine


@dataclass
class KeyStoreRuntime:
    """The key database of one gateway process."""

    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    store: SqlCredentialStore

    async def dispose(self) -> None:
        await self.engine.dispose()


async def open_key_store(root_dir: Path) -> KeyStoreRuntime:
    """Connects to the key database, creating its tables on first start."""
    database_url = get_database_url(root_dir)
    engine = create_store_engine(database_url)
    session_maker = async_sessionmaker(engine, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info(
        "Key store ready at %s", make_url(database_url).render_as_string(hide_password=True)
    )
    return KeyStoreRuntime(engine, session_maker, SqlCredentialStore(session_maker))
