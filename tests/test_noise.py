import io
import json

import pytest

from meshcontrol.noise import (
    EARLY_NOISE_CAPABILITY_VERSION,
    EARLY_PAYLOAD_MAGIC,
    UpgradeError,
    check_upgrade_header,
    early_noise_payload,
    write_early_noise,
)

CHALLENGE = "chalpub:" + "ab" * 32


def parse(payload):
    magic, length, body = payload[:5], payload[5:9], payload[9:]
    return magic, int.from_bytes(length, "big"), body


def test_magic_bytes():
    assert EARLY_PAYLOAD_MAGIC == b"\xff\xff\xffTS"
    payload = early_noise_payload(EARLY_NOISE_CAPABILITY_VERSION, CHALLENGE)
    assert payload[:5] == b"\xff\xff\xffTS"


def test_payload_layout_round_trips():
    payload = early_noise_payload(EARLY_NOISE_CAPABILITY_VERSION, CHALLENGE)
    magic, length, body = parse(payload)
    assert magic == EARLY_PAYLOAD_MAGIC
    assert length == len(body)
    assert json.loads(body) == {"nodeKeyChallenge": CHALLENGE}


def test_old_protocol_gets_no_payload():
    assert early_noise_payload(EARLY_NOISE_CAPABILITY_VERSION - 1, CHALLENGE) == b""


def test_write_matches_payload():
    buffer = io.BytesIO()
    write_early_noise(buffer, EARLY_NOISE_CAPABILITY_VERSION + 5, CHALLENGE)
    assert buffer.getvalue() == early_noise_payload(EARLY_NOISE_CAPABILITY_VERSION + 5, CHALLENGE)


def test_write_nothing_for_old_protocol():
    buffer = io.BytesIO()
    write_early_noise(buffer, 1, CHALLENGE)
    assert buffer.getvalue() == b""


def test_upgrade_header_found_case_insensitively():
    assert check_upgrade_header({"upgrade": "tailscale-control-protocol"}) == "tailscale-control-protocol"


def test_missing_upgrade_header_raises():
    with pytest.raises(UpgradeError):
        check_upgrade_header({"Host": "example.com"})


def test_empty_upgrade_header_raises():
    with pytest.raises(UpgradeError):
        check_upgrade_header({"Upgrade": ""})