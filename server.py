from __future__ import annotations

import asyncio
import os
from typing import TYPE_CHECKING

from pydantic import AnyHttpUrl

from auth.session_store import SessionStorageBackend
from auth.store_factory import create_storage_backend
from glmcp.constants import APP_VERSION, AUTH_MODE, DEFAULT_GITLAB_API_URL, LOGGER
from glmcp.env import (
    load_env,
    load_gitlab_api_timeout,
    load_storage_config,
    setup_logging,
    validate_env,
)
from glmcp.http import (
    CURRENT_MCP_BEARER_TOKEN,
    UnauthorizedRequestError,
    build_gitlab_client,
    capture_mcp_bearer_token_from_context,
    inject_gitlab_access_token,
)
from glmcp.mcp_app import build_session_token_verifier, mount_health_route, register_whoami_tool

if TYPE_CHECKING:
    from fastmcp import FastMCP

__all__ = [
    "APP_VERSION",
    "AUTH_MODE",
    "CURRENT_MCP_BEARER_TOKEN",
    "UnauthorizedRequestError",
    "build_session_token_verifier",
    "capture_mcp_bearer_token_from_context",
    "inject_gitlab_access_token",
    "create_mcp",
    "serve",
    "main",
]


def create_mcp(storage: SessionStorageBackend, *, debug_enabled: bool = False) -> "FastMCP":
    from fastmcp import FastMCP
    from fastmcp.server.auth import RemoteAuthProvider

    base_url = os.getenv("GITLAB_API_URL", DEFAULT_GITLAB_API_URL).strip()
    timeout = load_gitlab_api_timeout()

    public_url = AnyHttpUrl(os.getenv("GITLAB_MCP_PUBLIC_URL", "").strip())
    session_verifier = build_session_token_verifier(storage, base_url=str(public_url))
    auth_provider = RemoteAuthProvider(
        token_verifier=session_verifier,
        authorization_servers=[public_url],
        base_url=public_url,
        resource_name="glmcp",
    )

    client = build_gitlab_client(
        storage,
        base_url=base_url,
        timeout=timeout,
        debug_enabled=debug_enabled,
    )
    mcp = FastMCP(name="GitLab MCP", auth=auth_provider)
    register_whoami_tool(mcp, client)
    mount_health_route(mcp, storage)
    setattr(mcp, "_gitlab_client", client)
    setattr(mcp, "_storage", storage)
    return mcp


async def serve(mcp: "FastMCP", storage: SessionStorageBackend, *, host: str, port: int) -> None:
    await storage.initialize()
    try:
        await mcp.run_async(transport="streamable-http", host=host, port=port)
    finally:
        await storage.close()
        client = getattr(mcp, "_gitlab_client", None)
        if client is not None:
            await client.aclose()


def main() -> None:
    load_env()
    debug_enabled = setup_logging()
    validate_env()

    host = os.getenv("MCP_HOST", "127.0.0.1")
    port = int(os.getenv("MCP_PORT", "8000"))
    storage = create_storage_backend(load_storage_config())
    mcp = create_mcp(storage, debug_enabled=debug_enabled)
    LOGGER.info(
        "Starting GitLab MCP version=%s auth_mode=%s storage=%s",
        APP_VERSION,
        AUTH_MODE,
        storage.type,
    )
    asyncio.run(serve(mcp, storage, host=host, port=port))


if __name__ == "__main__":
    main()
