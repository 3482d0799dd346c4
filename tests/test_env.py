import logging

import pytest

from glmcp import env


def test_validate_env_requires_public_url(monkeypatch) -> None:
    monkeypatch.delenv("GITLAB_MCP_PUBLIC_URL", raising=False)

    with pytest.raises(RuntimeError, match="GITLAB_MCP_PUBLIC_URL"):
        env.validate_env()


def test_validate_env_rejects_plain_http_public_url(monkeypatch) -> None:
    monkeypatch.setenv("GITLAB_MCP_PUBLIC_URL", "http://gitlab-mcp.example.com")

    with pytest.raises(RuntimeError, match="HTTPS"):
        env.validate_env()


def test_validate_env_rejects_bad_gitlab_url(monkeypatch) -> None:
    monkeypatch.setenv("GITLAB_MCP_PUBLIC_URL", "https://gitlab-mcp.example.com")
    monkeypatch.setenv("GITLAB_API_URL", "gitlab.example.com")

    with pytest.raises(RuntimeError, match="GITLAB_API_URL"):
        env.validate_env()


def test_validate_env_accepts_defaults(monkeypatch) -> None:
    monkeypatch.setenv("GITLAB_MCP_PUBLIC_URL", "https://gitlab-mcp.example.com")
    monkeypatch.delenv("GITLAB_API_URL", raising=False)

    env.validate_env()


@pytest.mark.parametrize("value,expected", [("1", True), ("Yes", True), ("off", False), (None, False)])
def test_is_truthy(value, expected) -> None:
    assert env.is_truthy(value) is expected


def test_setup_logging_respects_debug_flag(monkeypatch) -> None:
    monkeypatch.setenv("GITLAB_MCP_DEBUG", "0")

    assert env.setup_logging() is False


def test_setup_logging_enables_storage_logger(monkeypatch) -> None:
    monkeypatch.setenv("GITLAB_MCP_DEBUG", "1")
    storage_logger = logging.getLogger("glmcp.oauth.storage")
    monkeypatch.setattr(storage_logger, "level", logging.NOTSET)

    assert env.setup_logging() is True
    assert storage_logger.level == logging.INFO


def test_gitlab_api_timeout_defaults(monkeypatch) -> None:
    monkeypatch.delenv("GITLAB_API_TIMEOUT", raising=False)

    assert env.load_gitlab_api_timeout() == 30.0


def test_gitlab_api_timeout_reads_env(monkeypatch) -> None:
    monkeypatch.setenv("GITLAB_API_TIMEOUT", "12.5")

    assert env.load_gitlab_api_timeout() == 12.5


@pytest.mark.parametrize("value", ["soon", "0", "-5"])
def test_gitlab_api_timeout_rejects_invalid(monkeypatch, value) -> None:
    monkeypatch.setenv("GITLAB_API_TIMEOUT", value)

    with pytest.raises(RuntimeError, match="GITLAB_API_TIMEOUT"):
        env.load_gitlab_api_timeout()
