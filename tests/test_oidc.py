from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import pytest

from meshcontrol.oidc import (
    IDTokenClaims,
    OIDCError,
    OIDCSettings,
    auth_code_url,
    determine_token_expiration,
    new_state,
    redirect_url,
    render_callback_page,
    validate_allowed_domains,
    validate_allowed_groups,
    validate_allowed_users,
    validate_callback_params,
)


def _claims(email="alice@example.com", groups=None):
    return IDTokenClaims(email=email, groups=list(groups or []))


def test_claims_from_dict_reads_preferred_username():
    claims = IDTokenClaims.from_dict(
        {
            "email": "alice@example.com",
            "name": "Alice",
            "groups": ["admins"],
            "preferred_username": "alice",
        }
    )
    assert claims == IDTokenClaims(
        email="alice@example.com", name="Alice", groups=["admins"], username="alice"
    )


def test_claims_from_dict_missing_fields_default_empty():
    claims = IDTokenClaims.from_dict({"email": "bob@example.com"})
    assert claims.groups == []
    assert claims.username == ""


def test_new_state_is_32_hex_and_random():
    first, second = new_state(), new_state()
    assert len(first) == 32
    assert bytes.fromhex(first)
    assert first != second


@pytest.mark.parametrize(
    "server", ["https://hs.example.com", "https://hs.example.com/"]
)
def test_redirect_url_trims_one_slash(server):
    assert redirect_url(server) == "https://hs.example.com/oidc/callback"


def test_auth_code_url_round_trip():
    url = auth_code_url(
        "https://idp.example.com/auth",
        "client-1",
        "https://hs.example.com/oidc/callback",
        ["openid", "email"],
        "abc",
        {"domain_hint": "example.com"},
    )
    parts = urlsplit(url)
    assert parts.path == "/auth"
    query = parse_qs(parts.query)
    assert query == {
        "response_type": ["code"],
        "client_id": ["client-1"],
        "redirect_uri": ["https://hs.example.com/oidc/callback"],
        "scope": ["openid email"],
        "state": ["abc"],
        "domain_hint": ["example.com"],
    }


def test_auth_code_url_appends_to_existing_query():
    url = auth_code_url("https://idp.example.com/auth?x=1", "c", "", [], "s", None)
    assert url.startswith("https://idp.example.com/auth?x=1&")
    assert "redirect_uri" not in parse_qs(urlsplit(url).query)


def test_expiration_from_token():
    expiry = datetime(2030, 1, 1, tzinfo=timezone.utc)
    settings = OIDCSettings(use_expiry_from_token=True)
    assert determine_token_expiration(settings, expiry) == expiry


def test_expiration_from_settings():
    now = datetime(2030, 1, 1, tzinfo=timezone.utc)
    settings = OIDCSettings(expiry=timedelta(hours=2))
    result = determine_token_expiration(settings, now + timedelta(days=9), now)
    assert result - now == timedelta(hours=2)


def test_callback_params_ok_with_lists_and_strings():
    assert validate_callback_params({"code": ["c1"], "state": "s1"}) == ("c1", "s1")


@pytest.mark.parametrize(
    "query", [{}, {"code": "c"}, {"state": "s"}, {"code": "", "state": "s"}]
)
def test_callback_params_missing(query):
    with pytest.raises(OIDCError) as info:
        validate_callback_params(query)
    assert info.value.message == "Wrong params"
    assert info.value.status == 400


def test_allowed_domains():
    validate_allowed_domains([], _claims("nobody"))
    validate_allowed_domains(["example.com"], _claims())
    with pytest.raises(OIDCError) as info:
        validate_allowed_domains(["other.example.com"], _claims())
    assert info.value.message == "unauthorized principal (domain mismatch)"
    with pytest.raises(OIDCError):
        validate_allowed_domains(["example.com"], _claims("no-at-sign"))


def test_allowed_groups():
    validate_allowed_groups([], _claims())
    validate_allowed_groups(["ops", "admins"], _claims(groups=["admins"]))
    with pytest.raises(OIDCError) as info:
        validate_allowed_groups(["ops"], _claims(groups=["admins"]))
    assert info.value.message == "unauthorized principal (allowed groups)"


def test_allowed_users():
    validate_allowed_users([], _claims())
    validate_allowed_users(["alice@example.com"], _claims())
    with pytest.raises(OIDCError) as info:
        validate_allowed_users(["bob@example.com"], _claims())
    assert info.value.message == "unauthorized principal (user mismatch)"


def test_render_callback_page_escapes_user():
    page = render_callback_page("<script>@example.com", "Authenticated")
    assert "<script>" not in page
    assert "&lt;script&gt;@example.com" in page
    assert "Authenticated" in page


def test_render_callback_page_reauthenticated():
    page = render_callback_page("alice@example.com", "Reauthenticated")
    assert "Reauthenticated" in page
    assert "alice@example.com" in page