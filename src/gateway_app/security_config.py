import logging
import os

from key_rotator.executor import DEFAULT_UPSTREAM_BASE_URL

DEFAULT_UPSTREAM_TIMEOUT_SECONDS = 120.0


class SecurityValidationError(RuntimeError):
    pass


def parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def parse_float_env(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logging.warning("Ignoring invalid %s=%r; using %s", name, raw, default)
        return default
    return max(minimum, value)


def get_app_env() -> str:
    value = (os.getenv("APP_ENV") or "dev").strip().lower()
    if value in {"prod", "production"}:
        return "prod"
    return "dev"


def is_prod() -> bool:
    return get_app_env() == "prod"


def allow_insecure_defaults() -> bool:
    default = not is_prod()
    return parse_bool_env("ALLOW_INSECURE_DEFAULTS", default)


def get_master_api_key() -> str | None:
    return (os.getenv("MASTER_API_KEY") or "").strip() or None


def get_upstream_base_url() -> str:
    return (os.getenv("UPSTREAM_BASE_URL") or "").strip() or DEFAULT_UPSTREAM_BASE_URL


def get_upstream_timeout() -> float:
    return parse_float_env(
        "UPSTREAM_TIMEOUT_SECONDS", DEFAULT_UPSTREAM_TIMEOUT_SECONDS, minimum=1.0
    )


def validate_security_settings() -> None:
    if get_master_api_key():
        return

    if allow_insecure_defaults():
        logging.warning(
            "SECURITY WARNING: MASTER_API_KEY is not set; the proxy and admin "
            "API accept unauthenticated requests. Set MASTER_API_KEY for "
            "non-local usage."
        )
        return

    raise SecurityValidationError(
        "Refusing startup due to insecure defaults: MASTER_API_KEY is missing. "
        "Set MASTER_API_KEY or ALLOW_INSECURE_DEFAULTS=true explicitly."
    )
