from __future__ import annotations

from contextvars import ContextVar

import httpx

from auth.session_store import SessionStorageBackend, truncate_id

from .constants import LOGGER

CURRENT_MCP_BEARER_TOKEN: ContextVar[str | None] = ContextVar(
    "current_mcp_bearer_token", default=None
)


class UnauthorizedRequestError(RuntimeError):
    def __init__(self, message: str = "Unauthorized request.") -> None:
        super().__init__(message)
        self.status_code = 401


def extract_bearer_token(authorization_header: str | None) -> str | None:
    if not authorization_header:
        return None
    scheme, _, token = authorization_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def capture_mcp_bearer_token_from_context() -> str | None:
    from fastmcp.server.dependencies import get_http_headers

    headers = get_http_headers(include_all=True)
    token = extract_bearer_token(headers.get("authorization"))
    CURRENT_MCP_BEARER_TOKEN.set(token)
    return token


async def inject_gitlab_access_token(
    request: httpx.Request,
    storage: SessionStorageBackend,
) -> None:
    mcp_access_token = CURRENT_MCP_BEARER_TOKEN.get()
    if not mcp_access_token:
        raise UnauthorizedRequestError("Missing Bearer token in MCP request context (401).")

    session = await storage.get_session_by_token(mcp_access_token)
    if session is None or not session.gitlab_access_token:
        raise UnauthorizedRequestError("Invalid or expired session token (401).")

    request.headers["Authorization"] = f"Bearer {session.gitlab_access_token}"
    LOGGER.debug(
        "GitLab token injected session_id=%s %s %s",
        truncate_id(session.id),
        request.method,
        request.url,
    )


def build_gitlab_client(
    storage: SessionStorageBackend,
    *,
    base_url: str,
    timeout: float = 30,
    debug_enabled: bool = False,
) -> httpx.AsyncClient:
    async def capture_mcp_bearer_token(request: httpx.Request) -> None:
        del request
        capture_mcp_bearer_token_from_context()

    async def sign_request(request: httpx.Request) -> None:
        await inject_gitlab_access_token(request, storage)

    async def log_response(response: httpx.Response) -> None:
        if not debug_enabled:
            return
        LOGGER.info(
            "GitLab API response %s %s -> %s",
            response.request.method,
            response.request.url,
            response.status_code,
        )

    return httpx.AsyncClient(
        base_url=base_url.rstrip("/"),
        timeout=timeout,
        event_hooks={
            "request": [capture_mcp_bearer_token, sign_request],
            "response": [log_response],
        },
    )
