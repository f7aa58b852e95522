"""Helpers for the Noise-based control protocol upgrade."""

from __future__ import annotations

import json
import logging
import struct
from typing import BinaryIO, Mapping

logger = logging.getLogger(__name__)

TS2021_UPGRADE_PATH = "/ts2021"

# Five bytes that cannot be mistaken for an HTTP/2 frame, followed by a
# four-byte big-endian length and that many bytes of JSON.
EARLY_PAYLOAD_MAGIC = b"\xff\xff\xffTS"

EARLY_NOISE_CAPABILITY_VERSION = 49


class UpgradeError(Exception):
    """The request cannot be upgraded to the Noise protocol."""


def check_upgrade_header(headers: Mapping[str, str]) -> str:
    """Return the Upgrade header, raising UpgradeError when it is absent."""
    value = next(
        (v for k, v in headers.items() if k.lower() == "upgrade"),
        "",
    )
    if not value:
        logger.warning(
            "No Upgrade header in TS2021 request. If the server is behind a "
            "reverse proxy, make sure it is configured to pass WebSockets through."
        )
        raise UpgradeError("Internal error")
    return value


def early_noise_payload(protocol_version: int, challenge_public: str) -> bytes:
    """Build the early payload; empty for clients that predate it."""
    if protocol_version < EARLY_NOISE_CAPABILITY_VERSION:
        logger.debug("protocol version %d does not support early noise", protocol_version)
        return b""
    body = json.dumps(
        {"nodeKeyChallenge": challenge_public}, separators=(",", ":")
    ).encode()
    return EARLY_PAYLOAD_MAGIC + struct.pack(">I", len(body)) + body


def write_early_noise(writer: BinaryIO, protocol_version: int, challenge_public: str) -> None:
    """Write the early payload, if any, to ``writer``."""
    payload = early_noise_payload(protocol_version, challenge_public)
    if not payload:
        return
    header_len = len(EARLY_PAYLOAD_MAGIC)
    writer.write(payload[:header_len])
    writer.write(payload[header_len:header_len + 4])
    writer.write(payload[header_len + 4:])