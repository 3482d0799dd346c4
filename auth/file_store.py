from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Callable

from auth.memory_store import MemoryStorageBackend
from auth.models import AuthCodeFlowState, AuthorizationCode, DeviceFlowState, OAuthSession
from auth.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from auth.session_store import (
    DEFAULT_SAVE_DEBOUNCE_SECONDS,
    DEFAULT_SAVE_INTERVAL_SECONDS,
    LOGGER,
    SESSION_MAX_AGE_MS,
    STORAGE_DATA_VERSION,
    SessionStorageBackend,
    SessionStorageStats,
    StorageConfigurationError,
    now_ms,
)

# Upgrades a snapshot from version N (the key) to version N + 1.
STORAGE_MIGRATIONS: dict[int, Callable[[dict], dict]] = {}


def migrate_snapshot(data: dict) -> dict:
    version = data.get("version")
    if version == STORAGE_DATA_VERSION:
        return data

    LOGGER.warning(
        "Storage file version mismatch file_version=%s current_version=%s",
        version,
        STORAGE_DATA_VERSION,
    )
    if not isinstance(version, int) or version > STORAGE_DATA_VERSION:
        return data

    while version < STORAGE_DATA_VERSION:
        step = STORAGE_MIGRATIONS.get(version)
        if step is None:
            LOGGER.warning(
                "No storage migration registered from_version=%s; loading as-is", version
            )
            return data
        data = step(data)
        version += 1
        data["version"] = version
    return data


def filter_expired(data: dict, now: int) -> dict:
    """Drop records that would already be swept, so a restart cannot revive them."""
    return {
        "sessions": [
            item
            for item in data.get("sessions") or []
            if item["createdAt"] + SESSION_MAX_AGE_MS > now
        ],
        "deviceFlows": [
            item for item in data.get("deviceFlows") or [] if item["flow"]["expiresAt"] > now
        ],
        "authCodeFlows": [
            item for item in data.get("authCodeFlows") or [] if item["flow"]["expiresAt"] > now
        ],
        "authCodes": [item for item in data.get("authCodes") or [] if item["expiresAt"] > now],
        "mcpSessionMappings": list(data.get("mcpSessionMappings") or []),
    }


class FileStorageBackend(SessionStorageBackend):
    """Memory backend persisted to a single JSON file.

    Every mutation schedules a debounced save; an independent interval timer
    saves regardless, bounding how stale the file can get. Writes go to a
    temporary file in the same directory and are renamed over the target.
    Load and save failures are logged, never raised; only an unwritable path
    at :meth:`initialize` is fatal.
    """

    type = "file"

    def __init__(
        self,
        file_path: str | Path,
        *,
        save_interval: float = DEFAULT_SAVE_INTERVAL_SECONDS,
        save_debounce: float = DEFAULT_SAVE_DEBOUNCE_SECONDS,
        clock: Callable[[], int] = now_ms,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._path = Path(file_path)
        self._save_interval = save_interval
        self._save_debounce = save_debounce
        self._clock = clock
        self._scheduler = scheduler or AsyncioScheduler()
        self._memory = MemoryStorageBackend(quiet=True, clock=clock, scheduler=self._scheduler)

        self._interval_timer: TimerHandle | None = None
        self._debounce_timer: TimerHandle | None = None
        self._pending_save = False
        self._initialized = False

    @property
    def file_path(self) -> Path:
        return self._path

    async def initialize(self) -> None:
        directory = self._path.parent
        dir_created = False
        if not directory.exists():
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as error:
                raise StorageConfigurationError(
                    f"Cannot create storage directory: {directory}"
                ) from error
            dir_created = True
            LOGGER.info("Created storage directory dir=%s", directory)

        file_existed = self._path.exists()
        if file_existed:
            stat = self._path.stat()
            LOGGER.info(
                "Found existing session file file_path=%s size=%s", self._path, stat.st_size
            )
            await self._load_from_file()
        else:
            LOGGER.info(
                "No existing session file, will create on first save file_path=%s", self._path
            )

        self._verify_writable()

        await self._memory.initialize()
        self._stop_interval_timer()
        self._interval_timer = self._scheduler.call_repeating(
            self._save_interval, self._save_to_file
        )
        self._initialized = True
        LOGGER.info(
            "File storage backend initialized file_path=%s dir_created=%s file_existed=%s",
            self._path,
            dir_created,
            file_existed,
        )

    def _verify_writable(self) -> None:
        sentinel = self._path.with_name(f"{self._path.name}.test")
        try:
            sentinel.write_text("test", encoding="utf-8")
            sentinel.unlink()
        except OSError as error:
            LOGGER.error(
                "Cannot write to storage file path; sessions will NOT persist file_path=%s",
                self._path,
            )
            raise StorageConfigurationError(
                f"File storage path not writable: {self._path}"
            ) from error
        LOGGER.debug("Write access verified file_path=%s", self._path)

    # -- persistence -----------------------------------------------------------

    async def _load_from_file(self) -> None:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("Session file must contain a top-level JSON object.")
            data = migrate_snapshot(raw)
            valid = filter_expired(data, self._clock())
            self._memory.import_data(valid)
        except (OSError, ValueError, KeyError, TypeError, RecursionError):
            LOGGER.error(
                "Failed to load sessions from file; starting fresh file_path=%s",
                self._path,
                exc_info=True,
            )
            return

        stats = await self._memory.get_stats()
        LOGGER.info(
            "Loaded sessions from file loaded_sessions=%s expired_sessions=%s "
            "loaded_device_flows=%s loaded_auth_codes=%s",
            stats.sessions,
            len(data.get("sessions") or []) - stats.sessions,
            stats.device_flows,
            stats.auth_codes,
        )

    def _save_to_file(self) -> None:
        if not self._initialized:
            return

        payload = {
            "version": STORAGE_DATA_VERSION,
            "exportedAt": self._clock(),
            **self._memory.export_data(),
        }
        try:
            self._write_snapshot(payload)
        except (OSError, TypeError, ValueError):
            LOGGER.error("Failed to save sessions to file file_path=%s", self._path, exc_info=True)
            return

        LOGGER.debug(
            "Saved sessions to file sessions=%s device_flows=%s auth_codes=%s",
            len(payload["sessions"]),
            len(payload["deviceFlows"]),
            len(payload["authCodes"]),
        )

    def _write_snapshot(self, payload: dict) -> None:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{self._path.name}.",
            suffix=".tmp",
            dir=self._path.parent,
        )
        tmp_path = Path(tmp_name)

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle)
            os.replace(tmp_path, self._path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def _schedule_save(self) -> None:
        self._pending_save = True
        self._cancel_debounce()
        self._debounce_timer = self._scheduler.call_later(
            self._save_debounce, self._flush_pending_save
        )

    def _flush_pending_save(self) -> None:
        self._debounce_timer = None
        if self._pending_save:
            self._pending_save = False
            self._save_to_file()

    def _cancel_debounce(self) -> None:
        if self._debounce_timer is not None:
            self._debounce_timer.cancel()
            self._debounce_timer = None

    def _stop_interval_timer(self) -> None:
        if self._interval_timer is not None:
            self._interval_timer.cancel()
            self._interval_timer = None

    async def force_save(self) -> None:
        """Flush the current state now, dropping any pending debounced save."""
        self._cancel_debounce()
        self._pending_save = False
        self._save_to_file()

    # -- sessions --------------------------------------------------------------

    async def create_session(self, session: OAuthSession) -> None:
        await self._memory.create_session(session)
        self._schedule_save()

    async def get_session(self, session_id: str) -> OAuthSession | None:
        return await self._memory.get_session(session_id)

    async def get_session_by_token(self, token: str) -> OAuthSession | None:
        return await self._memory.get_session_by_token(token)

    async def get_session_by_refresh_token(self, refresh_token: str) -> OAuthSession | None:
        return await self._memory.get_session_by_refresh_token(refresh_token)

    async def update_session(self, session_id: str, **updates) -> bool:
        updated = await self._memory.update_session(session_id, **updates)
        if updated:
            self._schedule_save()
        return updated

    async def delete_session(self, session_id: str) -> bool:
        deleted = await self._memory.delete_session(session_id)
        if deleted:
            self._schedule_save()
        return deleted

    async def get_all_sessions(self) -> list[OAuthSession]:
        return await self._memory.get_all_sessions()

    # -- device flows ----------------------------------------------------------

    async def store_device_flow(self, state: str, flow: DeviceFlowState) -> None:
        await self._memory.store_device_flow(state, flow)
        self._schedule_save()

    async def get_device_flow(self, state: str) -> DeviceFlowState | None:
        return await self._memory.get_device_flow(state)

    async def get_device_flow_by_device_code(self, device_code: str) -> DeviceFlowState | None:
        return await self._memory.get_device_flow_by_device_code(device_code)

    async def delete_device_flow(self, state: str) -> bool:
        deleted = await self._memory.delete_device_flow(state)
        if deleted:
            self._schedule_save()
        return deleted

    # -- authorization code flows ----------------------------------------------

    async def store_auth_code_flow(self, internal_state: str, flow: AuthCodeFlowState) -> None:
        await self._memory.store_auth_code_flow(internal_state, flow)
        self._schedule_save()

    async def get_auth_code_flow(self, internal_state: str) -> AuthCodeFlowState | None:
        return await self._memory.get_auth_code_flow(internal_state)

    async def delete_auth_code_flow(self, internal_state: str) -> bool:
        deleted = await self._memory.delete_auth_code_flow(internal_state)
        if deleted:
            self._schedule_save()
        return deleted

    # -- authorization codes ---------------------------------------------------

    async def store_auth_code(self, code: AuthorizationCode) -> None:
        await self._memory.store_auth_code(code)
        self._schedule_save()

    async def get_auth_code(self, code: str) -> AuthorizationCode | None:
        return await self._memory.get_auth_code(code)

    async def delete_auth_code(self, code: str) -> bool:
        deleted = await self._memory.delete_auth_code(code)
        if deleted:
            self._schedule_save()
        return deleted

    # -- MCP session mappings --------------------------------------------------

    async def associate_mcp_session(self, mcp_session_id: str, oauth_session_id: str) -> None:
        await self._memory.associate_mcp_session(mcp_session_id, oauth_session_id)
        self._schedule_save()

    async def get_session_by_mcp_session_id(self, mcp_session_id: str) -> OAuthSession | None:
        return await self._memory.get_session_by_mcp_session_id(mcp_session_id)

    async def remove_mcp_session_association(self, mcp_session_id: str) -> bool:
        removed = await self._memory.remove_mcp_session_association(mcp_session_id)
        if removed:
            self._schedule_save()
        return removed

    # -- lifecycle -------------------------------------------------------------

    async def cleanup(self) -> None:
        await self._memory.cleanup()
        self._save_to_file()

    async def get_stats(self) -> SessionStorageStats:
        return await self._memory.get_stats()

    async def close(self) -> None:
        self._stop_interval_timer()
        self._cancel_debounce()
        self._pending_save = False

        # Flush before the wrapped backend is torn down.
        self._save_to_file()
        self._initialized = False

        await self._memory.close()
        LOGGER.info("File storage backend closed file_path=%s", self._path)
