"""Validation and helpers for the OpenID Connect login flow."""

from __future__ import annotations

import html
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional, Sequence, Union
from urllib.parse import urlencode

logger = logging.getLogger(__name__)

RANDOM_BYTE_SIZE = 16
CALLBACK_PATH = "/oidc/callback"

_BAD_REQUEST = 400


class OIDCError(Exception):
    """A step of the login flow failed.

    ``message`` is the text shown to the client, ``status`` the HTTP status
    to answer with and ``detail`` the reason meant for the logs.
    """

    def __init__(self, message: str, status: int = _BAD_REQUEST, detail: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.detail = detail or message


@dataclass
class IDTokenClaims:
    """The claims of an ID token that the server uses."""

    email: str = ""
    name: str = ""
    groups: list[str] = field(default_factory=list)
    username: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IDTokenClaims":
        """Read claims from a decoded token payload."""
        groups = data.get("groups") or []
        if isinstance(groups, str):
            groups = [groups]
        return cls(
            email=str(data.get("email", "") or ""),
            name=str(data.get("name", "") or ""),
            groups=[str(g) for g in groups],
            username=str(data.get("preferred_username", "") or ""),
        )


@dataclass
class OIDCSettings:
    """Configuration of the identity provider and who may log in."""

    issuer: str = ""
    client_id: str = ""
    client_secret: str = ""
    scope: list[str] = field(default_factory=list)
    extra_params: dict[str, str] = field(default_factory=dict)
    allowed_domains: list[str] = field(default_factory=list)
    allowed_groups: list[str] = field(default_factory=list)
    allowed_users: list[str] = field(default_factory=list)
    strip_email_domain: bool = False
    expiry: timedelta = timedelta(days=180)
    use_expiry_from_token: bool = False


def new_state() -> str:
    """A fresh random state value: 16 random bytes as 32 hex characters."""
    return secrets.token_bytes(RANDOM_BYTE_SIZE).hex()[:32]


def redirect_url(server_url: str) -> str:
    """The callback address the provider redirects back to."""
    return f"{server_url.removesuffix('/')}{CALLBACK_PATH}"


def auth_code_url(
    auth_endpoint: str,
    client_id: str,
    redirect: str,
    scopes: Sequence[str],
    state: str,
    extra_params: Optional[Mapping[str, str]] = None,
) -> str:
    """Build the authorization endpoint URL the user is sent to."""
    params: dict[str, str] = {"response_type": "code", "client_id": client_id}
    if redirect:
        params["redirect_uri"] = redirect
    if scopes:
        params["scope"] = " ".join(scopes)
    if state:
        params["state"] = state
    params.update(extra_params or {})
    separator = "&" if "?" in auth_endpoint else "?"
    return auth_endpoint + separator + urlencode(sorted(params.items()))


def determine_token_expiration(
    settings: OIDCSettings,
    id_token_expiry: datetime,
    now: Optional[datetime] = None,
) -> datetime:
    """Expiry for the node: the token's own, or now plus the configured expiry."""
    if settings.use_expiry_from_token:
        return id_token_expiry
    if now is None:
        now = datetime.now(timezone.utc)
    return now + settings.expiry


def _first(value: Union[str, Iterable[str], None]) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return next(iter(value), "")


def validate_callback_params(query: Mapping[str, Any]) -> tuple[str, str]:
    """Return ``(code, state)`` from the callback query; both must be present."""
    code = _first(query.get("code"))
    state = _first(query.get("state"))
    if not code or not state:
        raise OIDCError("Wrong params", detail="empty OIDC callback params")
    return code, state


def validate_allowed_domains(allowed_domains: Sequence[str], claims: IDTokenClaims) -> None:
    """When domains are configured, the e-mail must end in one of them."""
    if not allowed_domains:
        return
    at = claims.email.rfind("@")
    if at < 0 or claims.email[at + 1:] not in allowed_domains:
        logger.debug("authenticated principal does not match any allowed domain")
        raise OIDCError(
            "unauthorized principal (domain mismatch)",
            detail="authenticated principal does not match any allowed domain",
        )


def validate_allowed_groups(allowed_groups: Sequence[str], claims: IDTokenClaims) -> None:
    """When groups are configured, the user must belong to at least one."""
    if not allowed_groups:
        return
    if any(group in claims.groups for group in allowed_groups):
        return
    logger.debug("authenticated principal not in any allowed groups")
    raise OIDCError(
        "unauthorized principal (allowed groups)",
        detail="authenticated principal is not in any allowed group",
    )


def validate_allowed_users(allowed_users: Sequence[str], claims: IDTokenClaims) -> None:
    """When users are configured, the e-mail must be one of them."""
    if allowed_users and claims.email not in allowed_users:
        logger.debug("authenticated principal does not match any allowed user")
        raise OIDCError(
            "unauthorized principal (user mismatch)",
            detail="authenticated principal does not match any allowed user",
        )


def render_callback_page(user: str, verb: str) -> str:
    """HTML page telling the user the login went through."""
    safe_user = html.escape(user)
    safe_verb = html.escape(verb)
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        "<head>\n"
        '  <meta charset="UTF-8" />\n'
        f"  <title>{safe_verb}</title>\n"
        "</head>\n"
        "<body>\n"
        f"  <h1>{safe_verb}</h1>\n"
        f"  <p>{safe_verb} as {safe_user}, you can now close this window.</p>\n"
        "</body>\n"
        "</html>\n"
    )