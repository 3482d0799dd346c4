from __future__ import annotations

import logging
import os
from pathlib import Path
from urllib.parse import urlparse

from auth.session_store import LOGGER as STORAGE_LOGGER
from auth.store_factory import DEFAULT_STORAGE_FILE_PATH, STORAGE_TYPES, StorageConfig

from .constants import AUTH_MODE, DEFAULT_GITLAB_API_URL, LOGGER


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer value.")


def _get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a number.")


def load_env() -> None:
    env_path = Path(__file__).resolve().parent.parent / ".env"
    if not env_path.exists():
        return
    from dotenv import load_dotenv

    load_dotenv(env_path, override=True)


def validate_env() -> None:
    public_url = os.getenv("GITLAB_MCP_PUBLIC_URL", "").strip()
    if not public_url:
        raise RuntimeError(
            f"Missing required environment variables for {AUTH_MODE}: GITLAB_MCP_PUBLIC_URL"
        )

    parsed_public_url = urlparse(public_url)
    if parsed_public_url.scheme != "https" or not parsed_public_url.netloc:
        raise RuntimeError(
            "GITLAB_MCP_PUBLIC_URL must be a valid public HTTPS URL (for example: "
            "https://gitlab-mcp.example.com)."
        )

    gitlab_url = urlparse(os.getenv("GITLAB_API_URL", DEFAULT_GITLAB_API_URL).strip())
    if gitlab_url.scheme not in {"http", "https"} or not gitlab_url.netloc:
        raise RuntimeError("GITLAB_API_URL must be an http(s) URL.")


def load_gitlab_api_timeout() -> float:
    timeout = _get_env_float("GITLAB_API_TIMEOUT", 30.0)
    if timeout <= 0:
        raise RuntimeError("GITLAB_API_TIMEOUT must be positive.")
    return timeout


def setup_logging() -> bool:
    debug_enabled = is_truthy(os.getenv("GITLAB_MCP_DEBUG", "1"))
    if debug_enabled:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
        STORAGE_LOGGER.setLevel(logging.INFO)
    return debug_enabled


def load_storage_config() -> StorageConfig:
    storage_type = os.getenv("OAUTH_STORAGE_TYPE", "memory").strip().lower() or "memory"
    if storage_type not in STORAGE_TYPES:
        raise RuntimeError(
            f"OAUTH_STORAGE_TYPE must be one of: {', '.join(STORAGE_TYPES)} "
            f"(got {storage_type!r})."
        )

    file_path = os.getenv("OAUTH_STORAGE_FILE_PATH", "").strip() or DEFAULT_STORAGE_FILE_PATH
    save_interval_ms = _get_env_int("OAUTH_STORAGE_SAVE_INTERVAL_MS", 30000)
    save_debounce_ms = _get_env_int("OAUTH_STORAGE_SAVE_DEBOUNCE_MS", 1000)
    if save_interval_ms <= 0 or save_debounce_ms < 0:
        raise RuntimeError(
            "OAUTH_STORAGE_SAVE_INTERVAL_MS must be positive and "
            "OAUTH_STORAGE_SAVE_DEBOUNCE_MS must not be negative."
        )

    return StorageConfig(
        type=storage_type,
        file_path=Path(file_path),
        save_interval=save_interval_ms / 1000,
        save_debounce=save_debounce_ms / 1000,
    )
