from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass

from auth.models import AuthCodeFlowState, AuthorizationCode, DeviceFlowState, OAuthSession

LOGGER = logging.getLogger("glmcp.oauth.storage")

STORAGE_DATA_VERSION = 1
SESSION_MAX_AGE_MS = 7 * 24 * 60 * 60 * 1000
CLEANUP_INTERVAL_SECONDS = 5 * 60
DEFAULT_SAVE_INTERVAL_SECONDS = 30.0
DEFAULT_SAVE_DEBOUNCE_SECONDS = 1.0


class StorageConfigurationError(RuntimeError):
    """Raised when a storage backend cannot be used as configured."""


def now_ms() -> int:
    return int(time.time() * 1000)


def truncate_id(value: str) -> str:
    """Shorten an identifier for logging: ``9fd82b35-6789-abcd`` -> ``9fd8..abcd``."""
    if not isinstance(value, str):
        return str(value)
    if len(value) <= 10:
        return value
    return f"{value[:4]}..{value[-4:]}"


@dataclass
class SessionStorageStats:
    sessions: int
    device_flows: int
    auth_code_flows: int
    auth_codes: int
    mcp_session_mappings: int

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class SessionStorageBackend(ABC):
    """Operations every OAuth session storage backend exposes.

    Lookups return ``None`` for unknown keys and delete-style operations
    return ``False``; neither raises.
    """

    type: str

    @abstractmethod
    async def initialize(self) -> None:
        raise NotImplementedError

    # -- sessions --------------------------------------------------------------

    @abstractmethod
    async def create_session(self, session: OAuthSession) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_session(self, session_id: str) -> OAuthSession | None:
        raise NotImplementedError

    @abstractmethod
    async def get_session_by_token(self, token: str) -> OAuthSession | None:
        raise NotImplementedError

    @abstractmethod
    async def get_session_by_refresh_token(self, refresh_token: str) -> OAuthSession | None:
        raise NotImplementedError

    @abstractmethod
    async def update_session(self, session_id: str, **updates) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def get_all_sessions(self) -> list[OAuthSession]:
        raise NotImplementedError

    # -- device flows ----------------------------------------------------------

    @abstractmethod
    async def store_device_flow(self, state: str, flow: DeviceFlowState) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_device_flow(self, state: str) -> DeviceFlowState | None:
        raise NotImplementedError

    @abstractmethod
    async def get_device_flow_by_device_code(self, device_code: str) -> DeviceFlowState | None:
        raise NotImplementedError

    @abstractmethod
    async def delete_device_flow(self, state: str) -> bool:
        raise NotImplementedError

    # -- authorization code flows ----------------------------------------------

    @abstractmethod
    async def store_auth_code_flow(self, internal_state: str, flow: AuthCodeFlowState) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_auth_code_flow(self, internal_state: str) -> AuthCodeFlowState | None:
        raise NotImplementedError

    @abstractmethod
    async def delete_auth_code_flow(self, internal_state: str) -> bool:
        raise NotImplementedError

    # -- authorization codes ---------------------------------------------------

    @abstractmethod
    async def store_auth_code(self, code: AuthorizationCode) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_auth_code(self, code: str) -> AuthorizationCode | None:
        raise NotImplementedError

    @abstractmethod
    async def delete_auth_code(self, code: str) -> bool:
        raise NotImplementedError

    # -- MCP session mappings --------------------------------------------------

    @abstractmethod
    async def associate_mcp_session(self, mcp_session_id: str, oauth_session_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_session_by_mcp_session_id(self, mcp_session_id: str) -> OAuthSession | None:
        raise NotImplementedError

    @abstractmethod
    async def remove_mcp_session_association(self, mcp_session_id: str) -> bool:
        raise NotImplementedError

    # -- lifecycle -------------------------------------------------------------

    @abstractmethod
    async def cleanup(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_stats(self) -> SessionStorageStats:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError
