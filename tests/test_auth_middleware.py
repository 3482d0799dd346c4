import httpx
import pytest
import pytest_asyncio
from fastmcp.server.auth import AccessToken

import server
from auth.memory_store import MemoryStorageBackend
from tests.storage_helpers import FakeClock, ManualScheduler, make_session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def storage(clock) -> MemoryStorageBackend:
    backend = MemoryStorageBackend(clock=clock, scheduler=ManualScheduler(clock))
    await backend.create_session(
        make_session(
            "session-1",
            now=clock.now,
            mcp_access_token="session-access",
            gitlab_access_token="gitlab-access",
        )
    )
    return backend


@pytest.mark.asyncio
async def test_contextvar_propagates_bearer_from_http_context(monkeypatch) -> None:
    monkeypatch.setattr(
        "fastmcp.server.dependencies.get_http_headers",
        lambda include_all=False: {"authorization": "Bearer session-access"},
    )

    token = server.capture_mcp_bearer_token_from_context()

    assert token == "session-access"
    assert server.CURRENT_MCP_BEARER_TOKEN.get() == "session-access"


@pytest.mark.asyncio
async def test_gitlab_token_injected(storage) -> None:
    server.CURRENT_MCP_BEARER_TOKEN.set("session-access")

    request = httpx.Request("GET", "https://gitlab.com/api/v4/user")
    await server.inject_gitlab_access_token(request, storage)

    assert request.headers["Authorization"] == "Bearer gitlab-access"


@pytest.mark.asyncio
async def test_injection_follows_token_rotation(storage) -> None:
    await storage.update_session("session-1", mcp_access_token="rotated-access")
    server.CURRENT_MCP_BEARER_TOKEN.set("session-access")

    request = httpx.Request("GET", "https://gitlab.com/api/v4/user")
    with pytest.raises(server.UnauthorizedRequestError):
        await server.inject_gitlab_access_token(request, storage)

    server.CURRENT_MCP_BEARER_TOKEN.set("rotated-access")
    await server.inject_gitlab_access_token(request, storage)
    assert request.headers["Authorization"] == "Bearer gitlab-access"


@pytest.mark.asyncio
async def test_missing_token_returns_401(storage) -> None:
    server.CURRENT_MCP_BEARER_TOKEN.set(None)

    request = httpx.Request("GET", "https://gitlab.com/api/v4/user")
    with pytest.raises(server.UnauthorizedRequestError) as error:
        await server.inject_gitlab_access_token(request, storage)

    assert error.value.status_code == 401


@pytest.mark.asyncio
async def test_unknown_token_returns_401(storage) -> None:
    server.CURRENT_MCP_BEARER_TOKEN.set("unknown-token")

    request = httpx.Request("GET", "https://gitlab.com/api/v4/user")
    with pytest.raises(server.UnauthorizedRequestError) as error:
        await server.inject_gitlab_access_token(request, storage)

    assert error.value.status_code == 401


@pytest.mark.asyncio
async def test_session_without_gitlab_token_returns_401(storage) -> None:
    await storage.update_session("session-1", gitlab_access_token=None)
    server.CURRENT_MCP_BEARER_TOKEN.set("session-access")

    request = httpx.Request("GET", "https://gitlab.com/api/v4/user")
    with pytest.raises(server.UnauthorizedRequestError):
        await server.inject_gitlab_access_token(request, storage)


# --- build_session_token_verifier tests ---


@pytest.mark.asyncio
async def test_session_verifier_returns_access_token(storage, clock) -> None:
    verifier = server.build_session_token_verifier(
        storage, base_url="https://gitlab-mcp.example.com", clock=clock
    )

    result = await verifier.verify_token("session-access")

    assert isinstance(result, AccessToken)
    assert result.token == "session-access"
    assert result.client_id == "test-client"
    assert result.scopes == ["mcp:tools", "mcp:resources"]
    assert result.expires_at == (clock.now + 3_600_000) // 1000


@pytest.mark.asyncio
async def test_session_verifier_rejects_unknown_token(storage, clock) -> None:
    verifier = server.build_session_token_verifier(
        storage, base_url="https://gitlab-mcp.example.com", clock=clock
    )

    assert await verifier.verify_token("unknown-token") is None


@pytest.mark.asyncio
async def test_session_verifier_rejects_expired_token(storage, clock) -> None:
    verifier = server.build_session_token_verifier(
        storage, base_url="https://gitlab-mcp.example.com", clock=clock
    )
    clock.advance(3_600_000)

    assert await verifier.verify_token("session-access") is None


@pytest.mark.asyncio
async def test_session_verifier_rejects_deleted_session(storage, clock) -> None:
    verifier = server.build_session_token_verifier(
        storage, base_url="https://gitlab-mcp.example.com", clock=clock
    )
    await storage.delete_session("session-1")

    assert await verifier.verify_token("session-access") is None


@pytest.mark.asyncio
async def test_session_verifier_accepts_imported_session_with_null_scopes(clock) -> None:
    backend = MemoryStorageBackend(clock=clock, scheduler=ManualScheduler(clock))
    payload = make_session("session-1", now=clock.now).to_dict()
    payload["scopes"] = None
    backend.import_data({"sessions": [payload]})
    verifier = server.build_session_token_verifier(
        backend, base_url="https://gitlab-mcp.example.com", clock=clock
    )

    result = await verifier.verify_token("session-1-access")

    assert result is not None
    assert result.scopes == []
