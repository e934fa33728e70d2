import pytest
from sqlalchemy import inspect, text

from gateway_app.key_store import create_store_engine, open_key_store
from key_rotator.types import KeyRecord


@pytest.mark.asyncio
async def test_sqlite_store_engine_enables_wal(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("SQLITE_BUSY_TIMEOUT_MS", "7000")
    engine = create_store_engine(f"sqlite+aiosqlite:///{tmp_path / 'pragmas.db'}")

    try:
        async with engine.connect() as conn:
            journal_mode = (
                await conn.execute(text("PRAGMA journal_mode"))
            ).scalar_one_or_none()
            synchronous = (
                await conn.execute(text("PRAGMA synchronous"))
            ).scalar_one_or_none()
            busy_timeout = (
                await conn.execute(text("PRAGMA busy_timeout"))
            ).scalar_one_or_none()

        assert str(journal_mode).lower() == "wal"
        assert int(synchronous) == 1  # NORMAL
        assert int(busy_timeout) == 7000
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_busy_timeout_has_a_floor(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("SQLITE_BUSY_TIMEOUT_MS", "10")
    engine = create_store_engine(f"sqlite+aiosqlite:///{tmp_path / 'floor.db'}")

    try:
        async with engine.connect() as conn:
            busy_timeout = (await conn.execute(text("PRAGMA busy_timeout"))).scalar_one()
        assert int(busy_timeout) == 1000
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_open_key_store_creates_tables_and_store(
    monkeypatch: pytest.MonkeyPatch, tmp_path
) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)

    runtime = await open_key_store(tmp_path)
    try:
        async with runtime.engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        await runtime.store.create(KeyRecord(secret="sk-runtime-000001", id="r"))
        assert (await runtime.store.find_by_field("id", "r")).secret == "sk-runtime-000001"
    finally:
        await runtime.dispose()

    assert (tmp_path / "data" / "gateway.db").exists()
    assert {"api_keys", "request_logs"} <= set(tables)
