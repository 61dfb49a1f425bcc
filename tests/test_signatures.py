"""
Tests for callback signature verification.

Tests cover:
- Meta X-Hub-Signature-256 (sha256=<hex> over the raw body)
- Slack v0 signatures with the 300 second replay window
"""

import time

from app.utils import (
    compute_meta_signature,
    compute_slack_signature,
    verify_meta_signature,
    verify_slack_signature,
)


SECRET = "test-app-secret"
BODY = b'{"object":"whatsapp_business_account","entry":[]}'


def flip_bit(data: bytes, bit: int) -> bytes:
    mutated = bytearray(data)
    mutated[bit // 8] ^= 1 << (bit % 8)
    return bytes(mutated)


class TestMetaSignature:
    """Inbound WhatsApp callback signatures."""

    def test_valid_signature(self):
        header = compute_meta_signature(SECRET, BODY)
        assert header.startswith("sha256=")
        assert verify_meta_signature(SECRET, BODY, header) is True

    def test_bare_hex_accepted(self):
        header = compute_meta_signature(SECRET, BODY)
        assert verify_meta_signature(SECRET, BODY, header[len("sha256="):]) is True

    def test_missing_header(self):
        assert verify_meta_signature(SECRET, BODY, None) is False
        assert verify_meta_signature(SECRET, BODY, "") is False

    def test_wrong_signature(self):
        assert verify_meta_signature(SECRET, BODY, "sha256=" + "0" * 64) is False

    def test_every_single_bit_body_mutation_rejected(self):
        header = compute_meta_signature(SECRET, BODY)
        for bit in range(len(BODY) * 8):
            assert verify_meta_signature(SECRET, flip_bit(BODY, bit), header) is False

    def test_every_single_bit_secret_mutation_rejected(self):
        header = compute_meta_signature(SECRET, BODY)
        secret_bytes = SECRET.encode("utf-8")
        for bit in range(len(secret_bytes) * 8):
            mutated = flip_bit(secret_bytes, bit).decode("latin-1")
            assert verify_meta_signature(mutated, BODY, header) is False

    def test_non_ascii_header_is_invalid_not_an_error(self):
        assert verify_meta_signature(SECRET, BODY, "sha256=é") is False


class TestSlackSignature:
    """Slack interactive callback signatures."""

    def test_valid_signature(self):
        ts = str(int(time.time()))
        signature = compute_slack_signature(SECRET, ts, BODY)
        assert signature.startswith("v0=")
        assert verify_slack_signature(SECRET, ts, BODY, signature) is True

    def test_base_string_is_version_timestamp_body(self):
        import hashlib
        import hmac

        expected = hmac.new(SECRET.encode(), b"v0:1700000000:" + BODY, hashlib.sha256).hexdigest()
        assert compute_slack_signature(SECRET, "1700000000", BODY) == f"v0={expected}"

    def test_stale_timestamp_rejected_even_with_valid_hash(self):
        ts = 1_700_000_000
        signature = compute_slack_signature(SECRET, str(ts), BODY)
        assert verify_slack_signature(SECRET, str(ts), BODY, signature, now=ts + 301) is False

    def test_timestamp_at_window_edge_accepted(self):
        ts = 1_700_000_000
        signature = compute_slack_signature(SECRET, str(ts), BODY)
        assert verify_slack_signature(SECRET, str(ts), BODY, signature, now=ts + 300) is True

    def test_missing_timestamp_or_signature(self):
        ts = str(int(time.time()))
        signature = compute_slack_signature(SECRET, ts, BODY)
        assert verify_slack_signature(SECRET, None, BODY, signature) is False
        assert verify_slack_signature(SECRET, ts, BODY, None) is False
        assert verify_slack_signature(SECRET, "", BODY, "") is False

    def test_unparsable_timestamp(self):
        assert verify_slack_signature(SECRET, "yesterday", BODY, "v0=abc") is False

    def test_tampered_body(self):
        ts = str(int(time.time()))
        signature = compute_slack_signature(SECRET, ts, BODY)
        assert verify_slack_signature(SECRET, ts, BODY + b"x", signature) is False

    def test_wrong_secret(self):
        ts = str(int(time.time()))
        signature = compute_slack_signature("other-secret", ts, BODY)
        assert verify_slack_signature(SECRET, ts, BODY, signature) is False
