import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway_app.db_models import RequestLog
from key_rotator.events import UsageLogger, emit_safely
from key_rotator.types import KeyEvent, KeyEventType

logger = logging.getLogger(__name__)


async def prune_request_logs(
    session_maker: async_sessionmaker[AsyncSession],
    *,
    retention_days: int,
) -> int:
    cutoff = datetime.utcnow() - timedelta(days=max(1, retention_days))
    async with session_maker() as session:
        result = await session.execute(
            delete(RequestLog).where(RequestLog.timestamp < cutoff)
        )
        await session.commit()
        deleted = result.rowcount if result.rowcount is not None else 0

    if deleted > 0:
        logger.info(
            "Pruned %d request logs older than %d days",
            deleted,
            retention_days,
        )
    return deleted


@dataclass(slots=True)
class RequestLogPayload:
    timestamp: datetime
    api_key_id: str | None
    request_id: str
    path: str
    model: str | None
    streaming: bool
    status_code: int
    upstream_status: int | None
    latency_ms: int | None
    attempts: int
    error_type: str | None
    error_message: str | None

    @property
    def is_error(self) -> bool:
        return self.error_type is not None or self.status_code >= 400


_SENTINEL = object()


def _maybe_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _payload_from_event(event: KeyEvent) -> RequestLogPayload:
    fields = event.fields
    error_message = fields.get("error_message")
    return RequestLogPayload(
        timestamp=event.timestamp,
        api_key_id=event.key_id,
        request_id=str(fields.get("request_id") or ""),
        path=str(fields.get("path") or ""),
        model=fields.get("model"),
        streaming=bool(fields.get("streaming")),
        status_code=_maybe_int(fields.get("status_code")) or 0,
        upstream_status=_maybe_int(fields.get("upstream_status")),
        latency_ms=_maybe_int(fields.get("latency_ms")),
        attempts=_maybe_int(fields.get("attempts")) or 1,
        error_type=fields.get("error_classification") or fields.get("error_type"),
        error_message=str(error_message)[:2000] if error_message else None,
    )


class UsageRecorder:
    """
    Usage logger that persists request outcomes to ``request_logs``.

    ``request`` events are queued and written in batches by a background
    worker; key lifecycle events are forwarded to ``key_event_sink``.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        key_event_sink: UsageLogger | None = None,
        queue_maxsize: int = 2000,
        batch_size: int = 100,
        flush_interval_seconds: float = 1.0,
    ):
        self._session_maker = session_maker
        self._key_event_sink = key_event_sink
        self._queue: asyncio.Queue[RequestLogPayload | object] = asyncio.Queue(
            maxsize=queue_maxsize
        )
        self._batch_size = batch_size
        self._flush_interval_seconds = flush_interval_seconds
        self._worker_task: asyncio.Task[None] | None = None
        self._accepting = False

    async def start(self) -> None:
        if self._worker_task:
            return
        self._accepting = True
        self._worker_task = asyncio.create_task(self._run_worker(), name="usage-recorder")

    async def stop(self) -> None:
        if not self._worker_task:
            return
        self._accepting = False
        try:
            self._queue.put_nowait(_SENTINEL)
        except asyncio.QueueFull:
            await self._queue.put(_SENTINEL)
        await self._worker_task
        self._worker_task = None

    def emit(self, event: KeyEvent) -> None:
        if event.type is not KeyEventType.REQUEST:
            emit_safely(self._key_event_sink, event)
            return
        if not self._accepting:
            return

        payload = _payload_from_event(event)
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(
                "Usage recorder queue full; dropping event request_id=%s",
                payload.request_id,
            )

    async def _run_worker(self) -> None:
        batch: list[RequestLogPayload] = []

        while True:
            item = await self._queue.get()

            if item is _SENTINEL:
                await self._drain_queue(batch)
                if batch:
                    await self._flush_batch(batch)
                return

            batch.append(item)

            if len(batch) >= self._batch_size:
                await self._flush_batch(batch)
                batch = []
                continue

            await self._collect_with_timeout(batch)
            if batch:
                await self._flush_batch(batch)
                batch = []

    async def _collect_with_timeout(self, batch: list[RequestLogPayload]) -> None:
        while len(batch) < self._batch_size:
            try:
                item = await asyncio.wait_for(
                    self._queue.get(), timeout=self._flush_interval_seconds
                )
            except asyncio.TimeoutError:
                return

            if item is _SENTINEL:
                try:
                    self._queue.put_nowait(_SENTINEL)
                except asyncio.QueueFull:
                    await self._queue.put(_SENTINEL)
                return

            batch.append(item)

    async def _drain_queue(self, batch: list[RequestLogPayload]) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            if item is _SENTINEL:
                continue
            batch.append(item)

    async def _flush_batch(self, batch: list[RequestLogPayload]) -> None:
        if not batch:
            return

        rows = [
            RequestLog(
                timestamp=item.timestamp,
                api_key_id=item.api_key_id,
                request_id=item.request_id,
                path=item.path,
                model=item.model,
                streaming=item.streaming,
                status_code=item.status_code,
                upstream_status=item.upstream_status,
                latency_ms=item.latency_ms,
                attempts=item.attempts,
                is_error=item.is_error,
                error_type=item.error_type,
                error_message=item.error_message,
            )
            for item in batch
        ]

        try:
            async with self._session_maker() as session:
                session.add_all(rows)
                await session.commit()
        except Exception:
            logger.exception("Failed to flush %d request logs", len(batch))
