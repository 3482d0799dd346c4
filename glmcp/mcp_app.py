from __future__ import annotations

from typing import TYPE_CHECKING, Callable

import httpx

from auth.session_store import SessionStorageBackend, now_ms

from .constants import APP_VERSION, AUTH_MODE

if TYPE_CHECKING:
    from fastmcp import FastMCP


def build_session_token_verifier(
    storage: SessionStorageBackend,
    *,
    base_url: str,
    clock: Callable[[], int] = now_ms,
):
    """Build a FastMCP TokenVerifier that resolves MCP access tokens via the store.

    Unknown tokens and tokens past ``mcp_token_expiry`` are rejected, which
    makes /mcp answer with HTTP 401 and lets clients restart the OAuth flow.
    """
    from fastmcp.server.auth import AccessToken, TokenVerifier

    class _Verifier(TokenVerifier):
        def __init__(self, storage: SessionStorageBackend, *, base_url: str) -> None:
            super().__init__(base_url=base_url, required_scopes=[])
            self._storage = storage

        async def verify_token(self, token: str) -> AccessToken | None:
            session = await self._storage.get_session_by_token(token)
            if session is None:
                return None

            expires_at = None
            if session.mcp_token_expiry is not None:
                if clock() >= session.mcp_token_expiry:
                    return None
                expires_at = session.mcp_token_expiry // 1000

            return AccessToken(
                token=token,
                client_id=session.client_id or "",
                scopes=list(session.scopes),
                expires_at=expires_at,
            )

    return _Verifier(storage, base_url=base_url)


def mount_health_route(mcp: "FastMCP", storage: SessionStorageBackend) -> None:
    from starlette.requests import Request
    from starlette.responses import JSONResponse, Response

    @mcp.custom_route("/health", methods=["GET"])
    async def health_route(request: Request) -> Response:
        del request
        stats = await storage.get_stats()
        return JSONResponse(
            {
                "status": "ok",
                "version": APP_VERSION,
                "auth_mode": AUTH_MODE,
                "storage": {"type": storage.type, **stats.to_dict()},
            }
        )


def register_whoami_tool(mcp: "FastMCP", client: httpx.AsyncClient) -> None:
    @mcp.tool(name="whoami", description="Return the GitLab user behind this MCP session.")
    async def whoami() -> dict:
        response = await client.get("/api/v4/user")
        response.raise_for_status()
        payload = response.json()
        return {
            "id": payload.get("id"),
            "username": payload.get("username"),
            "name": payload.get("name"),
        }
