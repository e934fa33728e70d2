import hmac

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway_app.security_config import get_master_api_key
from key_rotator import RetryOrchestrator, RotationEngine, SettingsProvider
from key_rotator.errors import ProxyError

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


class UnauthorizedError(ProxyError):
    status_code = 401
    error_type = "authentication_error"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    value = authorization.strip()
    if not value:
        return None
    parts = value.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


async def verify_master_key(auth: str | None = Depends(api_key_header)) -> None:
    """Requires ``Authorization: Bearer <MASTER_API_KEY>`` when a master key is configured."""
    master_key = get_master_api_key()
    if not master_key:
        return
    token = parse_bearer_token(auth)
    if not token or not hmac.compare_digest(token.encode(), master_key.encode()):
        raise UnauthorizedError()


def get_engine(request: Request) -> RotationEngine:
    return request.app.state.rotation_engine


def get_orchestrator(request: Request) -> RetryOrchestrator:
    return request.app.state.orchestrator


def get_settings_provider(request: Request) -> SettingsProvider:
    return request.app.state.settings_provider


def get_session_maker(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.db_session_maker
