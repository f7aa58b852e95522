import plistlib
import uuid

import pytest

from meshcontrol.platform_config import (
    PlatformError,
    apple_config_message,
    apple_platform_config,
    windows_config_message,
    windows_registry_config,
)

URL = "https://hs.example.com"
PROFILE_UUID = uuid.UUID("11111111-2222-4333-8444-555555555555")
CONTENT_UUID = uuid.UUID("66666666-7777-4888-9999-aaaaaaaaaaaa")


def _parse(body: str) -> dict:
    return plistlib.loads(body.encode())


def test_windows_registry_header_and_url():
    body = windows_registry_config(URL)
    lines = body.splitlines()
    assert lines[0] == "Windows Registry Editor Version 5.00"
    assert "[HKEY_LOCAL_MACHINE\\SOFTWARE\\Tailscale IPN]" in lines
    assert '"UnattendedMode"="always"' in lines
    assert f'"LoginURL"="{URL}"' in lines
    assert body.endswith("\n")


def test_windows_registry_does_not_escape_url():
    url = URL + "/?a=1&b=2"
    assert f'"LoginURL"="{url}"' in windows_registry_config(url)


@pytest.mark.parametrize(
    "platform, payload_type",
    [
        ("ios", "io.tailscale.ipn.ios"),
        ("macos-app-store", "io.tailscale.ipn.macos"),
        ("macos-standalone", "io.tailscale.ipn.macsys"),
    ],
)
def test_apple_profile_round_trips_through_plist(platform, payload_type):
    body = apple_platform_config(platform, URL, PROFILE_UUID, CONTENT_UUID)
    profile = _parse(body)
    assert profile["PayloadUUID"] == str(PROFILE_UUID)
    assert profile["PayloadType"] == "Configuration"
    assert profile["PayloadVersion"] == 1
    assert profile["PayloadRemovalDisallowed"] is False
    assert profile["PayloadDescription"] == f"Configure Tailscale login server to: {URL}"
    [content] = profile["PayloadContent"]
    assert content["PayloadType"] == payload_type
    assert content["PayloadUUID"] == str(CONTENT_UUID)
    assert content["ControlURL"] == URL
    assert content["PayloadEnabled"] is True


def test_apple_profile_identifiers_match():
    profile = _parse(apple_platform_config("ios", URL, PROFILE_UUID, CONTENT_UUID))
    assert profile["PayloadContent"][0]["PayloadIdentifier"] == profile["PayloadIdentifier"]


def test_macos_escapes_url_in_payload():
    url = URL + "/?a=1&b=2"
    body = apple_platform_config("macos-standalone", url, PROFILE_UUID, CONTENT_UUID)
    profile = _parse(body)
    assert profile["PayloadContent"][0]["ControlURL"] == url
    assert "a=1&amp;b=2" in body


def test_default_uuids_are_fresh_v4():
    first = _parse(apple_platform_config("ios", URL))
    second = _parse(apple_platform_config("ios", URL))
    assert uuid.UUID(first["PayloadUUID"]).version == 4
    assert uuid.UUID(first["PayloadContent"][0]["PayloadUUID"]).version == 4
    assert first["PayloadUUID"] != second["PayloadUUID"]
    assert first["PayloadUUID"] != first["PayloadContent"][0]["PayloadUUID"]


def test_invalid_platform_raises():
    with pytest.raises(PlatformError) as info:
        apple_platform_config("android", URL)
    assert info.value.status == 400
    assert info.value.message == (
        "Invalid platform. Only ios, macos-app-store and macos-standalone are supported"
    )


def test_windows_message_escapes_url():
    url = URL + "/<script>"
    page = windows_config_message(url)
    assert "<script>" not in page
    assert "&lt;script&gt;" in page
    assert URL in page


def test_apple_message_mentions_platforms_and_url():
    page = apple_config_message(URL)
    assert URL in page
    for platform in ("ios", "macos-app-store", "macos-standalone"):
        assert platform in page
    assert "<script>" not in apple_config_message(URL + "/<script>")