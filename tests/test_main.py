import server


class _DummyMCP:
    def __init__(self, events: list[str]) -> None:
        self.events = events
        self.calls: list[dict] = []

    async def run_async(self, **kwargs) -> None:
        self.events.append("run")
        self.calls.append(kwargs)


class _RecordingStorage:
    type = "memory"

    def __init__(self, events: list[str]) -> None:
        self.events = events

    async def initialize(self) -> None:
        self.events.append("initialize")

    async def close(self) -> None:
        self.events.append("close")


def _prepare(monkeypatch):
    events: list[str] = []
    dummy_mcp = _DummyMCP(events)
    storage = _RecordingStorage(events)
    monkeypatch.setattr(server, "load_env", lambda: None)
    monkeypatch.setattr(server, "setup_logging", lambda: False)
    monkeypatch.setattr(server, "validate_env", lambda: None)
    monkeypatch.setattr(server, "create_storage_backend", lambda config: storage)
    monkeypatch.setattr(server, "create_mcp", lambda storage, debug_enabled=False: dummy_mcp)
    return events, dummy_mcp


def test_main_uses_streamable_http_with_local_defaults(monkeypatch) -> None:
    events, dummy_mcp = _prepare(monkeypatch)
    monkeypatch.delenv("MCP_HOST", raising=False)
    monkeypatch.delenv("MCP_PORT", raising=False)

    server.main()

    assert dummy_mcp.calls == [
        {"transport": "streamable-http", "host": "127.0.0.1", "port": 8000}
    ]


def test_main_reads_host_and_port_from_env(monkeypatch) -> None:
    events, dummy_mcp = _prepare(monkeypatch)
    monkeypatch.setenv("MCP_HOST", "0.0.0.0")
    monkeypatch.setenv("MCP_PORT", "9100")

    server.main()

    assert dummy_mcp.calls == [
        {"transport": "streamable-http", "host": "0.0.0.0", "port": 9100}
    ]


def test_main_initializes_storage_before_serving_and_closes_after(monkeypatch) -> None:
    events, _ = _prepare(monkeypatch)

    server.main()

    assert events == ["initialize", "run", "close"]
