"""Tests for envelope signing."""

import base64
import hashlib
import hmac
import json

import pytest

from nbctl.crypto import sign_payload, verify_envelope, wrap_envelope


def test_sign_payload_matches_hmac_sha256():
    """Digest should be base64 HMAC-SHA256 over the UTF-8 payload."""
    payload = '{"type":"stop","content":""}'
    expected = base64.b64encode(
        hmac.new(b"k", payload.encode(), hashlib.sha256).digest()).decode()
    assert sign_payload(payload, "k") == expected


def test_sign_payload_accepts_bytes_key():
    """A bytes key signs the same as its UTF-8 string form."""
    assert sign_payload("abc", b"secret") == sign_payload("abc", "secret")


def test_wrap_envelope_keeps_payload_string():
    """The payload is carried as a string, not a nested object."""
    envelope = wrap_envelope('{"type":"isready","content":""}', "k")
    assert envelope["payload"] == '{"type":"isready","content":""}'
    assert set(envelope) == {"hmac", "payload"}


def test_verify_envelope():
    """A freshly wrapped envelope verifies and returns its payload."""
    envelope = wrap_envelope('{"type":"status","content":""}', "k")
    assert verify_envelope(envelope, "k") == envelope["payload"]


def test_verify_envelope_wrong_key():
    """Verification under a different key should raise."""
    envelope = wrap_envelope('{"type":"status","content":""}', "k")
    with pytest.raises(ValueError):
        verify_envelope(envelope, "other")


def test_verify_envelope_tampered_payload():
    """Changing the payload after signing should raise."""
    envelope = wrap_envelope('{"type":"stop","content":""}', "k")
    envelope["payload"] = json.dumps({"type": "run", "content": "/x.ipynb"})
    with pytest.raises(ValueError):
        verify_envelope(envelope, "k")


def test_verify_envelope_malformed():
    """Missing fields or a non-base64 digest should raise."""
    with pytest.raises(ValueError):
        verify_envelope({"payload": "{}"}, "k")
    with pytest.raises(ValueError):
        verify_envelope({"hmac": "not base64!", "payload": "{}"}, "k")
