from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from auth.file_store import FileStorageBackend
from auth.memory_store import MemoryStorageBackend
from auth.scheduler import Scheduler
from auth.session_store import (
    DEFAULT_SAVE_DEBOUNCE_SECONDS,
    DEFAULT_SAVE_INTERVAL_SECONDS,
    SessionStorageBackend,
    StorageConfigurationError,
    now_ms,
)

STORAGE_TYPES = ("memory", "file")
DEFAULT_STORAGE_FILE_PATH = "data/oauth-sessions.json"


@dataclass
class StorageConfig:
    type: str = "memory"
    file_path: Path = Path(DEFAULT_STORAGE_FILE_PATH)
    save_interval: float = DEFAULT_SAVE_INTERVAL_SECONDS
    save_debounce: float = DEFAULT_SAVE_DEBOUNCE_SECONDS


def create_storage_backend(
    config: StorageConfig,
    *,
    clock: Callable[[], int] = now_ms,
    scheduler: Scheduler | None = None,
) -> SessionStorageBackend:
    """Build the backend for this process.

    Called once at startup; the returned instance is handed to every
    consumer. Tests pass their own ``clock`` and ``scheduler``.
    """
    if config.type == "memory":
        return MemoryStorageBackend(clock=clock, scheduler=scheduler)
    if config.type == "file":
        return FileStorageBackend(
            config.file_path,
            save_interval=config.save_interval,
            save_debounce=config.save_debounce,
            clock=clock,
            scheduler=scheduler,
        )
    raise StorageConfigurationError(
        f"Unsupported OAuth storage type {config.type!r}; expected one of: "
        f"{', '.join(STORAGE_TYPES)}"
    )
