from __future__ import annotations

from dataclasses import fields
from typing import Callable

from auth.models import (
    AuthCodeFlowState,
    AuthorizationCode,
    DeviceFlowState,
    McpSessionMapping,
    OAuthSession,
)
from auth.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from auth.session_store import (
    CLEANUP_INTERVAL_SECONDS,
    LOGGER,
    SESSION_MAX_AGE_MS,
    SessionStorageBackend,
    SessionStorageStats,
    now_ms,
    truncate_id,
)

_TOKEN_FIELDS = ("mcp_access_token", "mcp_refresh_token")
_SESSION_FIELDS = frozenset(item.name for item in fields(OAuthSession))


class MemoryStorageBackend(SessionStorageBackend):
    """Keeps every record in process memory.

    Used on its own for development and external-database deployments, and
    as the cache behind :class:`auth.file_store.FileStorageBackend`. Token
    and MCP-session indices are derived from the primary maps and are only
    touched together with them.
    """

    type = "memory"

    def __init__(
        self,
        *,
        quiet: bool = False,
        clock: Callable[[], int] = now_ms,
        scheduler: Scheduler | None = None,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self._quiet = quiet
        self._clock = clock
        self._scheduler = scheduler or AsyncioScheduler()
        self._cleanup_interval = cleanup_interval
        self._cleanup_timer: TimerHandle | None = None

        self._sessions: dict[str, OAuthSession] = {}
        self._device_flows: dict[str, DeviceFlowState] = {}
        self._auth_code_flows: dict[str, AuthCodeFlowState] = {}
        self._auth_codes: dict[str, AuthorizationCode] = {}
        self._token_to_session: dict[str, str] = {}
        self._refresh_token_to_session: dict[str, str] = {}
        self._mcp_session_to_oauth_session: dict[str, str] = {}

    async def initialize(self) -> None:
        self._start_cleanup_timer()
        if not self._quiet:
            LOGGER.info("Memory storage backend initialized")

    # -- sessions --------------------------------------------------------------

    def _index_for(self, token_field: str) -> dict[str, str]:
        if token_field == "mcp_access_token":
            return self._token_to_session
        return self._refresh_token_to_session

    def _index_session(self, session: OAuthSession) -> None:
        for token_field in _TOKEN_FIELDS:
            token = getattr(session, token_field)
            if token:
                self._claim_token(token_field, token, session.id)

    def _claim_token(self, token_field: str, token: str, session_id: str) -> None:
        index = self._index_for(token_field)
        owner_id = index.get(token)
        if owner_id is not None and owner_id != session_id:
            # A token belongs to at most one session; the earlier holder loses it.
            owner = self._sessions.get(owner_id)
            if owner is not None and getattr(owner, token_field) == token:
                setattr(owner, token_field, None)
                LOGGER.debug(
                    "Token reassigned field=%s from_session_id=%s to_session_id=%s",
                    token_field,
                    truncate_id(owner_id),
                    truncate_id(session_id),
                )
        index[token] = session_id

    def _unindex_session(self, session: OAuthSession) -> None:
        for token_field in _TOKEN_FIELDS:
            self._unindex_token(token_field, getattr(session, token_field), session.id)

    def _unindex_token(self, token_field: str, token: str | None, session_id: str) -> None:
        if not token:
            return
        index = self._index_for(token_field)
        # Another session may have taken the token over since.
        if index.get(token) == session_id:
            del index[token]

    async def create_session(self, session: OAuthSession) -> None:
        previous = self._sessions.get(session.id)
        if previous is not None:
            self._unindex_session(previous)
        self._sessions[session.id] = session
        self._index_session(session)
        LOGGER.debug(
            "Session created session_id=%s user_id=%s",
            truncate_id(session.id),
            session.gitlab_user_id,
        )

    async def get_session(self, session_id: str) -> OAuthSession | None:
        return self._sessions.get(session_id)

    async def get_session_by_token(self, token: str) -> OAuthSession | None:
        session_id = self._token_to_session.get(token)
        return self._sessions.get(session_id) if session_id else None

    async def get_session_by_refresh_token(self, refresh_token: str) -> OAuthSession | None:
        session_id = self._refresh_token_to_session.get(refresh_token)
        return self._sessions.get(session_id) if session_id else None

    async def update_session(self, session_id: str, **updates) -> bool:
        unknown = set(updates) - _SESSION_FIELDS
        if unknown or "id" in updates:
            invalid = sorted(unknown | ({"id"} & set(updates)))
            raise TypeError(f"Cannot update session fields: {', '.join(invalid)}")

        session = self._sessions.get(session_id)
        if session is None:
            LOGGER.warning(
                "Attempted to update non-existent session session_id=%s",
                truncate_id(session_id),
            )
            return False

        for token_field in _TOKEN_FIELDS:
            if token_field not in updates:
                continue
            old_token = getattr(session, token_field)
            new_token = updates[token_field]
            if new_token == old_token:
                continue
            self._unindex_token(token_field, old_token, session_id)
            if new_token:
                self._claim_token(token_field, new_token, session_id)

        for name, value in updates.items():
            setattr(session, name, value)
        session.updated_at = self._clock()
        LOGGER.debug("Session updated session_id=%s", truncate_id(session_id))
        return True

    async def delete_session(self, session_id: str) -> bool:
        return self._remove_session(session_id)

    def _remove_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self._unindex_session(session)
        LOGGER.debug("Session deleted session_id=%s", truncate_id(session_id))
        return True

    async def get_all_sessions(self) -> list[OAuthSession]:
        return list(self._sessions.values())

    # -- device flows ----------------------------------------------------------

    async def store_device_flow(self, state: str, flow: DeviceFlowState) -> None:
        self._device_flows[state] = flow
        LOGGER.debug(
            "Device flow stored state=%s user_code=%s", truncate_id(state), flow.user_code
        )

    async def get_device_flow(self, state: str) -> DeviceFlowState | None:
        return self._device_flows.get(state)

    async def get_device_flow_by_device_code(self, device_code: str) -> DeviceFlowState | None:
        for flow in self._device_flows.values():
            if flow.device_code == device_code:
                return flow
        return None

    async def delete_device_flow(self, state: str) -> bool:
        if self._device_flows.pop(state, None) is None:
            return False
        LOGGER.debug("Device flow deleted state=%s", truncate_id(state))
        return True

    # -- authorization code flows ----------------------------------------------

    async def store_auth_code_flow(self, internal_state: str, flow: AuthCodeFlowState) -> None:
        self._auth_code_flows[internal_state] = flow
        LOGGER.debug("Auth code flow stored internal_state=%s", truncate_id(internal_state))

    async def get_auth_code_flow(self, internal_state: str) -> AuthCodeFlowState | None:
        return self._auth_code_flows.get(internal_state)

    async def delete_auth_code_flow(self, internal_state: str) -> bool:
        if self._auth_code_flows.pop(internal_state, None) is None:
            return False
        LOGGER.debug("Auth code flow deleted internal_state=%s", truncate_id(internal_state))
        return True

    # -- authorization codes ---------------------------------------------------

    async def store_auth_code(self, code: AuthorizationCode) -> None:
        self._auth_codes[code.code] = code
        LOGGER.debug("Auth code stored code=%s", truncate_id(code.code))

    async def get_auth_code(self, code: str) -> AuthorizationCode | None:
        return self._auth_codes.get(code)

    async def delete_auth_code(self, code: str) -> bool:
        if self._auth_codes.pop(code, None) is None:
            return False
        LOGGER.debug("Auth code deleted code=%s", truncate_id(code))
        return True

    # -- MCP session mappings --------------------------------------------------

    async def associate_mcp_session(self, mcp_session_id: str, oauth_session_id: str) -> None:
        self._mcp_session_to_oauth_session[mcp_session_id] = oauth_session_id
        LOGGER.debug(
            "MCP session associated mcp_session_id=%s oauth_session_id=%s",
            mcp_session_id,
            truncate_id(oauth_session_id),
        )

    async def get_session_by_mcp_session_id(self, mcp_session_id: str) -> OAuthSession | None:
        oauth_session_id = self._mcp_session_to_oauth_session.get(mcp_session_id)
        if oauth_session_id is None:
            return None
        return self._sessions.get(oauth_session_id)

    async def remove_mcp_session_association(self, mcp_session_id: str) -> bool:
        if self._mcp_session_to_oauth_session.pop(mcp_session_id, None) is None:
            return False
        LOGGER.debug("MCP session association removed mcp_session_id=%s", mcp_session_id)
        return True

    # -- expiry ----------------------------------------------------------------

    async def cleanup(self) -> None:
        self.sweep_expired()

    def sweep_expired(self) -> dict[str, int]:
        """Drop expired records and return how many of each kind went."""
        now = self._clock()

        expired_sessions = [
            session_id
            for session_id, session in self._sessions.items()
            if session.created_at + SESSION_MAX_AGE_MS < now
        ]
        for session_id in expired_sessions:
            self._remove_session(session_id)

        expired_device_flows = [
            state for state, flow in self._device_flows.items() if flow.expires_at < now
        ]
        for state in expired_device_flows:
            del self._device_flows[state]

        expired_auth_code_flows = [
            state for state, flow in self._auth_code_flows.items() if flow.expires_at < now
        ]
        for state in expired_auth_code_flows:
            del self._auth_code_flows[state]

        expired_auth_codes = [
            code for code, auth_code in self._auth_codes.items() if auth_code.expires_at < now
        ]
        for code in expired_auth_codes:
            del self._auth_codes[code]

        counts = {
            "sessions": len(expired_sessions),
            "device_flows": len(expired_device_flows),
            "auth_code_flows": len(expired_auth_code_flows),
            "auth_codes": len(expired_auth_codes),
        }
        if any(counts.values()):
            LOGGER.debug(
                "Memory storage cleanup completed expired_sessions=%s "
                "expired_device_flows=%s expired_auth_code_flows=%s "
                "expired_auth_codes=%s remaining_sessions=%s",
                counts["sessions"],
                counts["device_flows"],
                counts["auth_code_flows"],
                counts["auth_codes"],
                len(self._sessions),
            )
        return counts

    def _run_scheduled_cleanup(self) -> None:
        try:
            self.sweep_expired()
        except Exception:
            LOGGER.exception("Scheduled storage cleanup failed")

    def _start_cleanup_timer(self) -> None:
        self._stop_cleanup_timer()
        self._cleanup_timer = self._scheduler.call_repeating(
            self._cleanup_interval, self._run_scheduled_cleanup
        )

    def _stop_cleanup_timer(self) -> None:
        if self._cleanup_timer is not None:
            self._cleanup_timer.cancel()
            self._cleanup_timer = None

    # -- lifecycle -------------------------------------------------------------

    async def close(self) -> None:
        self._stop_cleanup_timer()
        if not self._quiet:
            LOGGER.info("Memory storage backend closed")

    async def get_stats(self) -> SessionStorageStats:
        return SessionStorageStats(
            sessions=len(self._sessions),
            device_flows=len(self._device_flows),
            auth_code_flows=len(self._auth_code_flows),
            auth_codes=len(self._auth_codes),
            mcp_session_mappings=len(self._mcp_session_to_oauth_session),
        )

    # -- snapshots -------------------------------------------------------------

    def export_data(self) -> dict:
        """Return a JSON-ready snapshot of every primary map."""
        return {
            "sessions": [session.to_dict() for session in self._sessions.values()],
            "deviceFlows": [
                {"state": state, "flow": flow.to_dict()}
                for state, flow in self._device_flows.items()
            ],
            "authCodeFlows": [
                {"internalState": internal_state, "flow": flow.to_dict()}
                for internal_state, flow in self._auth_code_flows.items()
            ],
            "authCodes": [code.to_dict() for code in self._auth_codes.values()],
            "mcpSessionMappings": [
                McpSessionMapping(mcp_session_id, oauth_session_id).to_dict()
                for mcp_session_id, oauth_session_id in self._mcp_session_to_oauth_session.items()
            ],
        }

    def import_data(self, data: dict) -> None:
        """Replace all state with ``data`` (the shape of :meth:`export_data`).

        Missing collections are treated as empty. Records are parsed before
        anything is cleared, so a malformed snapshot leaves the store as it
        was.
        """
        sessions = [OAuthSession.from_dict(item) for item in data.get("sessions") or []]
        device_flows = {
            item["state"]: DeviceFlowState.from_dict(item["flow"])
            for item in data.get("deviceFlows") or []
        }
        auth_code_flows = {
            item["internalState"]: AuthCodeFlowState.from_dict(item["flow"])
            for item in data.get("authCodeFlows") or []
        }
        auth_codes = [AuthorizationCode.from_dict(item) for item in data.get("authCodes") or []]
        mappings = [
            McpSessionMapping.from_dict(item) for item in data.get("mcpSessionMappings") or []
        ]

        self._sessions.clear()
        self._device_flows.clear()
        self._auth_code_flows.clear()
        self._auth_codes.clear()
        self._token_to_session.clear()
        self._refresh_token_to_session.clear()
        self._mcp_session_to_oauth_session.clear()

        for session in sessions:
            self._sessions[session.id] = session
            self._index_session(session)
        self._device_flows.update(device_flows)
        self._auth_code_flows.update(auth_code_flows)
        for code in auth_codes:
            self._auth_codes[code.code] = code
        for mapping in mappings:
            self._mcp_session_to_oauth_session[mapping.mcp_session_id] = mapping.oauth_session_id

        LOGGER.info(
            "Data imported into memory storage sessions=%s device_flows=%s "
            "auth_code_flows=%s auth_codes=%s mcp_session_mappings=%s",
            len(self._sessions),
            len(self._device_flows),
            len(self._auth_code_flows),
            len(self._auth_codes),
            len(self._mcp_session_to_oauth_session),
        )
