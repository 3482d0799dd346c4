import asyncio

import pytest

import server
from auth.memory_store import MemoryStorageBackend
from tests.storage_helpers import make_session


def _build_health_client(monkeypatch, storage):
    monkeypatch.setenv("GITLAB_MCP_PUBLIC_URL", "https://gitlab-mcp.example.com")
    monkeypatch.setenv("GITLAB_API_URL", "https://gitlab.example.com")
    mcp = server.create_mcp(storage)
    app = mcp.http_app(path="/mcp", transport="streamable-http")

    from starlette.testclient import TestClient

    return mcp, TestClient(app)


def test_health_returns_200(monkeypatch) -> None:
    mcp, client = _build_health_client(monkeypatch, MemoryStorageBackend())

    try:
        response = client.get("/health")
        assert response.status_code == 200
    finally:
        asyncio.run(mcp._gitlab_client.aclose())


def test_health_response_format(monkeypatch) -> None:
    storage = MemoryStorageBackend()
    asyncio.run(storage.create_session(make_session()))
    mcp, client = _build_health_client(monkeypatch, storage)

    try:
        payload = client.get("/health").json()
        assert payload["status"] == "ok"
        assert payload["version"] == "0.1.0"
        assert payload["auth_mode"] == "gitlab-oauth"
        assert payload["storage"] == {
            "type": "memory",
            "sessions": 1,
            "device_flows": 0,
            "auth_code_flows": 0,
            "auth_codes": 0,
            "mcp_session_mappings": 0,
        }
    finally:
        asyncio.run(mcp._gitlab_client.aclose())


def test_create_mcp_wires_storage(monkeypatch) -> None:
    storage = MemoryStorageBackend()
    mcp, _ = _build_health_client(monkeypatch, storage)

    try:
        assert mcp._storage is storage
        assert str(mcp._gitlab_client.base_url).startswith("https://gitlab.example.com")
    finally:
        asyncio.run(mcp._gitlab_client.aclose())


def test_create_mcp_rejects_bad_timeout(monkeypatch) -> None:
    monkeypatch.setenv("GITLAB_MCP_PUBLIC_URL", "https://gitlab-mcp.example.com")
    monkeypatch.setenv("GITLAB_API_TIMEOUT", "later")

    with pytest.raises(RuntimeError, match="GITLAB_API_TIMEOUT"):
        server.create_mcp(MemoryStorageBackend())
