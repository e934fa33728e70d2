# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Request execution with retry and rotation.

The RetryOrchestrator wraps one logical upstream call: it takes a key from
the rotation engine, performs the call outside the engine lock, reports the
outcome back and retries rate limits and server errors with a fresh
get_key() until max_retries attempts have been made.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from .errors import (
    MaxRetriesExceededError,
    NoAvailableKeyError,
    ProxyError,
    UpstreamClientError,
    UpstreamConnectionError,
    UpstreamError,
    classify_response,
    is_retryable_error,
    mask_credential,
)
from .events import UsageLogger, emit_safely
from .rotation import RotationEngine
from .settings import SettingsProvider
from .types import KeyEvent, KeyEventType

lib_logger = logging.getLogger("key_rotator")

DEFAULT_UPSTREAM_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai"


@dataclass
class UpstreamResult:
    """
    A successful upstream response.

    Exactly one of ``body`` (buffered) or ``stream`` (raw byte iterator) is set.
    """

    status_code: int
    headers: Dict[str, str]
    key_id: Optional[str] = None
    attempts: int = 0
    body: Optional[bytes] = None
    stream: Optional[AsyncIterator[bytes]] = None
    _response: Optional[httpx.Response] = field(default=None, repr=False)

    @property
    def is_streaming(self) -> bool:
        return self.stream is not None

    @property
    def media_type(self) -> Optional[str]:
        content_type = self.headers.get("content-type")
        if not content_type:
            return None
        return content_type.split(";", 1)[0].strip()

    def json(self) -> Any:
        if self.body is None:
            raise ValueError("Streaming result has no buffered body")
        return json.loads(self.body)

    async def aclose(self) -> None:
        """Releases the upstream connection of a stream that will not be consumed."""
        if self._response is not None:
            await self._response.aclose()


async def _relay_stream(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    finally:
        await response.aclose()


class RetryOrchestrator:
    """
    Retry/rotation loop around one upstream call.

    Outcomes:
    - 2xx: mark_success(), result returned
    - 429 / 5xx: mark_error(), retried with the next key while attempts remain
    - other 4xx and connection failures: mark_error(), raised immediately
    - no eligible key: NoAvailableKeyError raised immediately
    """

    def __init__(
        self,
        engine: RotationEngine,
        settings: SettingsProvider,
        http_client: httpx.AsyncClient,
        base_url: str = DEFAULT_UPSTREAM_BASE_URL,
        usage_logger: Optional[UsageLogger] = None,
    ):
        """
        Args:
            engine: RotationEngine handing out keys
            settings: Settings provider (max_retries is read per call)
            http_client: Shared httpx.AsyncClient for upstream requests
            base_url: Upstream API base, e.g. ".../v1beta/openai"
            usage_logger: Optional sink for per-request outcome events
        """
        self._engine = engine
        self._settings = settings
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")
        self._usage_logger = usage_logger

    def _build_url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    async def execute(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Any] = None,
        stream: bool = False,
        request_id: Optional[str] = None,
        model: Optional[str] = None,
    ) -> UpstreamResult:
        """
        Execute an upstream request with retry/rotation.

        Args:
            method: HTTP method
            path: Path relative to the upstream base URL
            json_body: JSON payload, passed through untouched
            stream: Return the body as an unbuffered byte stream
            request_id: Correlation id for the outcome event
            model: Model name, recorded on the outcome event

        Returns:
            UpstreamResult for the successful attempt

        Raises:
            ProxyError: the terminal error for this request
        """
        settings = await self._settings.read()
        max_retries = max(1, settings.max_retries)
        request_id = request_id or uuid.uuid4().hex
        started = time.monotonic()
        key_id: Optional[str] = None
        last_error: Optional[UpstreamError] = None

        for attempt in range(max_retries):
            try:
                secret, key_id = await self._engine.get_key()
            except NoAvailableKeyError as e:
                self._record_outcome(
                    request_id, key_id, started, attempt + 1, path, model, stream, error=e
                )
                raise

            lib_logger.info(
                f"Attempting call with key {mask_credential(secret)} "
                f"(Attempt {attempt + 1}/{max_retries})"
            )

            try:
                result = await self._send(method, path, secret, json_body, stream)
            except UpstreamError as e:
                last_error = e
                is_rate_limited = await self._engine.mark_error(e, key_id=key_id)
                retryable = is_rate_limited or is_retryable_error(e)

                if retryable and attempt < max_retries - 1:
                    lib_logger.warning(
                        f"Key {mask_credential(secret)} failed with "
                        f"{e.upstream_status} ({type(e).__name__}), retrying"
                    )
                    continue

                terminal: ProxyError = (
                    MaxRetriesExceededError(last_error=e) if retryable else e
                )
                if isinstance(e, UpstreamClientError) and e.is_api_key_error:
                    lib_logger.error(
                        f"Key {mask_credential(secret)} rejected by upstream "
                        f"({e.upstream_status}): {e.message}"
                    )
                self._record_outcome(
                    request_id, key_id, started, attempt + 1, path, model, stream,
                    error=terminal,
                )
                if terminal is e:
                    raise
                raise terminal from e
            except BaseException:
                self._engine.release_key(key_id)
                raise

            try:
                await self._engine.mark_success(key_id=key_id)
            except Exception:
                await result.aclose()
                raise

            result.key_id = key_id
            result.attempts = attempt + 1
            self._record_outcome(
                request_id, key_id, started, attempt + 1, path, model, stream,
                status_code=result.status_code,
            )
            return result

        error = MaxRetriesExceededError(last_error=last_error)
        self._record_outcome(
            request_id, key_id, started, max_retries, path, model, stream, error=error
        )
        raise error

    async def _send(
        self,
        method: str,
        path: str,
        secret: str,
        json_body: Optional[Any],
        stream: bool,
    ) -> UpstreamResult:
        headers = {"Authorization": f"Bearer {secret}"}
        if stream:
            headers["Accept"] = "text/event-stream"
        request = self._http_client.build_request(
            method, self._build_url(path), json=json_body, headers=headers
        )

        try:
            response = await self._http_client.send(request, stream=stream)
        except httpx.TransportError as e:
            raise UpstreamConnectionError(f"Upstream request failed: {e}") from e

        if response.status_code >= 400:
            if stream:
                try:
                    await response.aread()
                except httpx.TransportError as e:
                    raise UpstreamConnectionError(
                        f"Failed to read upstream error body: {e}"
                    ) from e
                finally:
                    await response.aclose()
            raise classify_response(response)

        response_headers = {k.lower(): v for k, v in response.headers.items()}
        if stream:
            return UpstreamResult(
                status_code=response.status_code,
                headers=response_headers,
                stream=_relay_stream(response),
                _response=response,
            )
        return UpstreamResult(
            status_code=response.status_code,
            headers=response_headers,
            body=response.content,
        )

    def _record_outcome(
        self,
        request_id: str,
        key_id: Optional[str],
        started: float,
        attempts: int,
        path: str,
        model: Optional[str],
        streaming: bool,
        *,
        status_code: Optional[int] = None,
        error: Optional[ProxyError] = None,
    ) -> None:
        fields: Dict[str, Any] = {
            "request_id": request_id,
            "path": path,
            "model": model,
            "streaming": streaming,
            "attempts": attempts,
            "latency_ms": int((time.monotonic() - started) * 1000),
            "status_code": status_code if error is None else error.status_code,
            "upstream_status": status_code,
            "error_type": None,
            "error_message": None,
        }
        if error is not None:
            fields["error_type"] = type(error).__name__
            fields["error_classification"] = error.error_type
            fields["error_message"] = error.message
            if isinstance(error, UpstreamError):
                fields["upstream_status"] = error.upstream_status
            elif isinstance(error, MaxRetriesExceededError) and error.last_error:
                fields["upstream_status"] = error.last_error.upstream_status
                fields["last_error_type"] = type(error.last_error).__name__
        event = KeyEvent(
            type=KeyEventType.REQUEST,
            key_id=key_id,
            timestamp=datetime.now(timezone.utc).replace(tzinfo=None),
            fields=fields,
        )
        emit_safely(self._usage_logger, event)
