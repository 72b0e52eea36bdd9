from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, ValidationError

from .constants import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CONTENT_TYPES,
    LOGGER,
    MAX_REFRESH_RETRIES,
    MAX_UPLOAD_BYTES,
)


@dataclass(frozen=True)
class Settings:
    base_url: str
    timeout: float = 30.0
    max_refresh_retries: int = MAX_REFRESH_RETRIES
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    allowed_content_types: frozenset[str] = DEFAULT_CONTENT_TYPES
    token_store_path: str = ".credentials.json"
    debug: bool = True


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv_env(key: str) -> set[str]:
    raw = os.getenv(key, "")
    if not raw.strip():
        return set()
    return {item.strip() for item in raw.split(",") if item.strip()}


def _get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer value.")
    if value <= 0:
        raise RuntimeError(f"{key} must be a positive integer.")
    return value


def _get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a number.")


def load_env(env_path: Path | None = None) -> None:
    path = env_path or Path.cwd() / ".env"
    if not path.exists():
        return
    load_dotenv(path, override=True)


def validate_base_url(raw: str) -> str:
    if not raw.strip():
        raise RuntimeError("Missing required environment variable: ADMIN_API_BASE_URL")
    try:
        url = AnyHttpUrl(raw.strip())
    except ValidationError as error:
        raise RuntimeError(
            "ADMIN_API_BASE_URL must be a valid HTTP(S) URL (for example: "
            "https://api.example.com)."
        ) from error
    return str(url).rstrip("/")


def load_settings() -> Settings:
    base_url = validate_base_url(os.getenv("ADMIN_API_BASE_URL", ""))
    content_types = parse_csv_env("ADMIN_API_UPLOAD_CONTENT_TYPES") or set(DEFAULT_CONTENT_TYPES)

    return Settings(
        base_url=base_url,
        timeout=_get_env_float("ADMIN_API_TIMEOUT", 30.0),
        max_refresh_retries=_get_env_int("ADMIN_API_MAX_REFRESH_RETRIES", MAX_REFRESH_RETRIES),
        chunk_size=_get_env_int("ADMIN_API_UPLOAD_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
        max_upload_bytes=_get_env_int("ADMIN_API_UPLOAD_MAX_BYTES", MAX_UPLOAD_BYTES),
        allowed_content_types=frozenset(content_types),
        token_store_path=os.getenv("ADMIN_API_TOKEN_STORE_PATH", ".credentials.json"),
        debug=is_truthy(os.getenv("ADMIN_API_DEBUG", "1")),
    )


def setup_logging(settings: Settings) -> bool:
    if settings.debug:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
    return settings.debug
