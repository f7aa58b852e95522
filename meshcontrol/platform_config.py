"""Client configuration files and instruction pages for Windows and Apple devices."""

from __future__ import annotations

import html
import uuid
from typing import Optional

WINDOWS_REGISTRY_CONTENT_TYPE = "text/x-ms-regedit; charset=utf-8"
APPLE_PROFILE_CONTENT_TYPE = "application/x-apple-aspen-config; charset=utf-8"
HTML_CONTENT_TYPE = "text/html; charset=utf-8"

PLATFORM_IOS = "ios"
PLATFORM_MACOS_APP_STORE = "macos-app-store"
PLATFORM_MACOS_STANDALONE = "macos-standalone"

PAYLOAD_IDENTIFIER = "io.meshcontrol.profile"
PROFILE_DISPLAY_NAME = "Headscale"

_BAD_REQUEST = 400

_WINDOWS_REGISTRY_TEMPLATE = (
    "Windows Registry Editor Version 5.00\n"
    "\n"
    "[HKEY_LOCAL_MACHINE\\SOFTWARE\\Tailscale IPN]\n"
    '"UnattendedMode"="always"\n'
    '"LoginURL"="{url}"\n'
)

_COMMON_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
  <dict>
    <key>PayloadUUID</key>
    <string>{uuid}</string>
    <key>PayloadDisplayName</key>
    <string>{display_name}</string>
    <key>PayloadDescription</key>
    <string>Configure Tailscale login server to: {url}</string>
    <key>PayloadIdentifier</key>
    <string>{identifier}</string>
    <key>PayloadRemovalDisallowed</key>
    <false/>
    <key>PayloadType</key>
    <string>Configuration</string>
    <key>PayloadVersion</key>
    <integer>1</integer>
    <key>PayloadContent</key>
    <array>
    {payload}
    </array>
  </dict>
</plist>"""

_IOS_TEMPLATE = """
    <dict>
        <key>PayloadType</key>
        <string>io.tailscale.ipn.ios</string>
        <key>PayloadUUID</key>
        <string>{uuid}</string>
        <key>PayloadIdentifier</key>
        <string>{identifier}</string>
        <key>PayloadVersion</key>
        <integer>1</integer>
        <key>PayloadEnabled</key>
        <true/>

        <key>ControlURL</key>
        <string>{url}</string>
    </dict>
"""

_MACOS_TEMPLATE = """
    <dict>
        <key>PayloadType</key>
        <string>{payload_type}</string>
        <key>PayloadUUID</key>
        <string>{uuid}</string>
        <key>PayloadIdentifier</key>
        <string>{identifier}</string>
        <key>PayloadVersion</key>
        <integer>1</integer>
        <key>PayloadEnabled</key>
        <true/>
        <key>ControlURL</key>
        <string>{url}</string>
    </dict>
"""

_MACOS_PAYLOAD_TYPES = {
    PLATFORM_MACOS_APP_STORE: "io.tailscale.ipn.macos",
    PLATFORM_MACOS_STANDALONE: "io.tailscale.ipn.macsys",
}

_HTML_ESCAPES = str.maketrans(
    {
        "\0": "\ufffd",
        '"': "&#34;",
        "&": "&amp;",
        "'": "&#39;",
        "+": "&#43;",
        "<": "&lt;",
        ">": "&gt;",
    }
)


class PlatformError(Exception):
    """A configuration could not be produced for the request.

    ``status`` is the HTTP status to answer with.
    """

    def __init__(self, message: str, status: int = _BAD_REQUEST) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


def _escape(text: str) -> str:
    return text.translate(_HTML_ESCAPES)


def windows_registry_config(url: str) -> str:
    """A .reg file pointing the Windows client at ``url``."""
    return _WINDOWS_REGISTRY_TEMPLATE.format(url=url)


def windows_config_message(url: str) -> str:
    """HTML page explaining how to configure the Windows client."""
    safe_url = html.escape(url)
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        "<head>\n"
        '  <meta charset="UTF-8" />\n'
        "  <title>Windows client configuration</title>\n"
        "</head>\n"
        "<body>\n"
        "  <h1>Windows</h1>\n"
        "  <p>Import the registry file served by this server, or run:</p>\n"
        f"  <pre><code>tailscale login --login-server {safe_url}</code></pre>\n"
        f"  <p>The client will then use {safe_url} as its control server.</p>\n"
        "</body>\n"
        "</html>\n"
    )


def apple_config_message(url: str) -> str:
    """HTML page explaining how to install the Apple configuration profiles."""
    safe_url = html.escape(url)
    platforms = "".join(
        f"    <li>{name}</li>\n"
        for name in (PLATFORM_IOS, PLATFORM_MACOS_APP_STORE, PLATFORM_MACOS_STANDALONE)
    )
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        "<head>\n"
        '  <meta charset="UTF-8" />\n'
        "  <title>Apple client configuration</title>\n"
        "</head>\n"
        "<body>\n"
        "  <h1>Apple</h1>\n"
        "  <p>Download and install the configuration profile for your platform:</p>\n"
        "  <ul>\n"
        f"{platforms}"
        "  </ul>\n"
        f"  <p>The profile sets the control server to {safe_url}.</p>\n"
        "</body>\n"
        "</html>\n"
    )


def apple_platform_config(
    platform: str,
    url: str,
    profile_uuid: Optional[uuid.UUID] = None,
    content_uuid: Optional[uuid.UUID] = None,
) -> str:
    """A .mobileconfig profile for ``platform`` pointing the client at ``url``.

    Fresh random UUIDs are used when none are given. Raises PlatformError for
    an unsupported platform.
    """
    if profile_uuid is None:
        profile_uuid = uuid.uuid4()
    if content_uuid is None:
        content_uuid = uuid.uuid4()

    if platform == PLATFORM_IOS:
        payload = _IOS_TEMPLATE.format(
            uuid=content_uuid, identifier=PAYLOAD_IDENTIFIER, url=url
        )
    elif platform in _MACOS_PAYLOAD_TYPES:
        payload = _MACOS_TEMPLATE.format(
            payload_type=_MACOS_PAYLOAD_TYPES[platform],
            uuid=_escape(str(content_uuid)),
            identifier=PAYLOAD_IDENTIFIER,
            url=_escape(url),
        )
    else:
        raise PlatformError(
            "Invalid platform. Only ios, macos-app-store and macos-standalone are supported"
        )

    return _COMMON_TEMPLATE.format(
        uuid=profile_uuid,
        display_name=PROFILE_DISPLAY_NAME,
        url=url,
        identifier=PAYLOAD_IDENTIFIER,
        payload=payload,
    )