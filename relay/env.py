from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

from auth.oauth2 import DEFAULT_REFRESH_STATUSES

from .constants import DEFAULT_TIMEOUT, LOGGER


@dataclass
class RelaySettings:
    base_url: str
    token_url: str
    client_id: str | None = None
    client_secret: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    refresh_statuses: tuple[int, ...] = DEFAULT_REFRESH_STATUSES
    timeout: float = DEFAULT_TIMEOUT
    validate_jwt: bool = True
    raise_on_refresh_failure: bool = False
    scope: str | None = None


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv_env(key: str) -> list[str]:
    raw = os.getenv(key, "")
    if not raw.strip():
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def _get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a number.")


def _get_env_statuses(key: str, default: tuple[int, ...]) -> tuple[int, ...]:
    values = parse_csv_env(key)
    if not values:
        return default
    try:
        return tuple(int(value) for value in values)
    except ValueError:
        raise RuntimeError(f"{key} must be a comma separated list of HTTP status codes.")


def _get_env_str(key: str) -> str | None:
    value = os.getenv(key, "").strip()
    return value or None


def load_env(env_path: str | Path | None = None) -> None:
    path = Path(env_path) if env_path else Path(__file__).resolve().parent.parent / ".env"
    if not path.exists():
        return
    load_dotenv(path, override=True)


def validate_env() -> None:
    required = ("RELAY_BASE_URL", "RELAY_TOKEN_URL")
    missing = [key for key in required if not os.getenv(key, "").strip()]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    for key in required:
        parsed = urlparse(os.getenv(key, "").strip())
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise RuntimeError(f"{key} must be an absolute http(s) URL.")

    if not os.getenv("RELAY_REFRESH_TOKEN", "").strip():
        LOGGER.warning("RELAY_REFRESH_TOKEN is not set; token refresh will fail until one is stored.")


def load_settings() -> RelaySettings:
    validate_env()
    return RelaySettings(
        base_url=os.getenv("RELAY_BASE_URL", "").strip(),
        token_url=os.getenv("RELAY_TOKEN_URL", "").strip(),
        client_id=_get_env_str("RELAY_CLIENT_ID"),
        client_secret=_get_env_str("RELAY_CLIENT_SECRET"),
        access_token=_get_env_str("RELAY_ACCESS_TOKEN"),
        refresh_token=_get_env_str("RELAY_REFRESH_TOKEN"),
        refresh_statuses=_get_env_statuses("RELAY_REFRESH_STATUSES", DEFAULT_REFRESH_STATUSES),
        timeout=_get_env_float("RELAY_TIMEOUT", DEFAULT_TIMEOUT),
        validate_jwt=is_truthy(os.getenv("RELAY_VALIDATE_JWT", "1")),
        raise_on_refresh_failure=is_truthy(os.getenv("RELAY_RAISE_ON_REFRESH_FAILURE", "0")),
        scope=_get_env_str("RELAY_SCOPE"),
    )


def setup_logging() -> bool:
    debug_enabled = is_truthy(os.getenv("RELAY_DEBUG", "1"))
    if debug_enabled:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
    return debug_enabled
