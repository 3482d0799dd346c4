from __future__ import annotations

from dataclasses import MISSING, dataclass, field, fields


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


class _Record:
    """Serialization shared by persisted records.

    Attributes are snake_case in Python and camelCase on disk. Optional
    attributes left as ``None`` are omitted from the JSON payload, and a
    missing or null key reads back as the attribute default.
    """

    def to_dict(self) -> dict:
        payload = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if value is None:
                continue
            if isinstance(value, list):
                value = list(value)
            payload[_camel(item.name)] = value
        return payload

    @classmethod
    def from_dict(cls, payload: dict):
        if not isinstance(payload, dict):
            raise TypeError(f"{cls.__name__} payload must be a JSON object.")
        kwargs = {}
        for item in fields(cls):
            value = payload.get(_camel(item.name))
            if value is not None:
                kwargs[item.name] = value
            elif item.default is MISSING and item.default_factory is MISSING:
                raise TypeError(f"{cls.__name__} requires {_camel(item.name)!r}.")
        return cls(**kwargs)


@dataclass
class OAuthSession(_Record):
    id: str
    gitlab_user_id: int | str
    created_at: int
    updated_at: int
    gitlab_username: str | None = None
    gitlab_access_token: str | None = None
    gitlab_refresh_token: str | None = None
    gitlab_token_expiry: int | None = None
    mcp_access_token: str | None = None
    mcp_refresh_token: str | None = None
    mcp_token_expiry: int | None = None
    client_id: str | None = None
    scopes: list[str] = field(default_factory=list)


@dataclass
class DeviceFlowState(_Record):
    device_code: str
    user_code: str
    expires_at: int
    verification_uri: str | None = None
    verification_uri_complete: str | None = None
    interval: int | None = None
    client_id: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    state: str | None = None
    redirect_uri: str | None = None


@dataclass
class AuthCodeFlowState(_Record):
    expires_at: int
    client_id: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    client_state: str | None = None
    internal_state: str | None = None
    client_redirect_uri: str | None = None
    callback_uri: str | None = None


@dataclass
class AuthorizationCode(_Record):
    code: str
    expires_at: int
    session_id: str | None = None
    client_id: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    redirect_uri: str | None = None


@dataclass
class McpSessionMapping(_Record):
    mcp_session_id: str
    oauth_session_id: str
