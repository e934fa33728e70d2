import json
import logging
import sys
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

# Add the 'src' directory to the Python path to allow importing 'key_rotator'
sys.path.append(str(Path(__file__).resolve().parent.parent))

from key_rotator import (
    JsonFileSettingsProvider,
    LoggingUsageLogger,
    RetryOrchestrator,
    RotationEngine,
    setup_event_logger,
)
from key_rotator.errors import ProxyError
from key_rotator.settings import get_settings_cache_ttl, get_settings_file

from gateway_app.auth import get_orchestrator, verify_master_key
from gateway_app.key_store import open_key_store
from gateway_app.routers import admin_router
from gateway_app.security_config import (
    get_upstream_base_url,
    get_upstream_timeout,
    validate_security_settings,
)
from gateway_app.usage_recorder import UsageRecorder, prune_request_logs

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Load environment variables from .env file
load_dotenv()

ROOT_DIR = Path(__file__).resolve().parents[2]


class InvalidRequestError(ProxyError):
    status_code = 400
    error_type = "invalid_request_error"


# --- Lifespan Management ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the rotation engine, orchestrator and usage recorder into app state."""
    validate_security_settings()

    key_store = await open_key_store(ROOT_DIR)
    session_maker = key_store.session_maker
    settings_provider = JsonFileSettingsProvider(
        get_settings_file(ROOT_DIR),
        cache_ttl_seconds=get_settings_cache_ttl(),
    )
    settings = await settings_provider.read()
    await prune_request_logs(session_maker, retention_days=settings.log_retention_days)

    setup_event_logger()
    recorder = UsageRecorder(session_maker, key_event_sink=LoggingUsageLogger())
    await recorder.start()

    http_client = httpx.AsyncClient(timeout=get_upstream_timeout())
    rotation_engine = RotationEngine(
        key_store.store,
        settings_provider,
        usage_logger=recorder,
    )
    orchestrator = RetryOrchestrator(
        rotation_engine,
        settings_provider,
        http_client,
        base_url=get_upstream_base_url(),
        usage_logger=recorder,
    )

    app.state.key_store = key_store
    app.state.db_session_maker = session_maker
    app.state.settings_provider = settings_provider
    app.state.usage_recorder = recorder
    app.state.rotation_engine = rotation_engine
    app.state.orchestrator = orchestrator
    logger.info("Gateway started; upstream %s", get_upstream_base_url())

    try:
        yield
    finally:
        await http_client.aclose()
        await recorder.stop()
        await key_store.dispose()
        logger.info("Gateway stopped")


# --- FastAPI App Setup ---
app = FastAPI(lifespan=lifespan)
app.include_router(admin_router)


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request to %s failed: %s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id") or uuid.uuid4().hex


@app.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    orchestrator: RetryOrchestrator = Depends(get_orchestrator),
    _=Depends(verify_master_key),
):
    """
    OpenAI-compatible endpoint backed by the key rotation engine.
    Handles both streaming and non-streaming responses.
    """
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidRequestError("Request body must be valid JSON") from e
    if not isinstance(data, dict):
        raise InvalidRequestError("Request body must be a JSON object")

    is_streaming = bool(data.get("stream", False))
    result = await orchestrator.execute(
        "POST",
        "chat/completions",
        json_body=data,
        stream=is_streaming,
        request_id=_request_id(request),
        model=data.get("model"),
    )

    if result.is_streaming:
        return StreamingResponse(
            result.stream,
            status_code=result.status_code,
            media_type=result.media_type or "text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )
    return Response(
        content=result.body,
        status_code=result.status_code,
        media_type=result.media_type or "application/json",
    )


@app.get("/")
def read_root():
    return {"Status": "Key rotation gateway is running"}


@app.get("/v1/models")
async def list_models(
    request: Request,
    orchestrator: RetryOrchestrator = Depends(get_orchestrator),
    _=Depends(verify_master_key),
):
    """Returns the upstream model list, fetched with a rotated key."""
    result = await orchestrator.execute(
        "GET", "models", request_id=_request_id(request)
    )
    return Response(
        content=result.body,
        status_code=result.status_code,
        media_type=result.media_type or "application/json",
    )


def run() -> None:
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="Key Rotation Gateway")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind the server to.")
    parser.add_argument("--port", type=int, default=8000, help="Port to run the server on.")
    args = parser.parse_args()

    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    run()
