"""
nbctl Crypto Module
HMAC-SHA256 signing for the authenticated message variant.

The envelope carries the command JSON as a string plus a base64 digest
of that string. The key is shared with the server out-of-band.
"""

import base64
from typing import Dict, Union

from Crypto.Hash import HMAC, SHA256


Key = Union[str, bytes]


def _key_bytes(key: Key) -> bytes:
    if isinstance(key, str):
        return key.encode('utf-8')
    return key


def sign_payload(payload: str, key: Key) -> str:
    """Return the base64 HMAC-SHA256 of a serialized payload."""
    h = HMAC.new(_key_bytes(key), digestmod=SHA256)
    h.update(payload.encode('utf-8'))
    return base64.b64encode(h.digest()).decode('ascii')


def wrap_envelope(payload: str, key: Key) -> Dict[str, str]:
    """Wrap a serialized payload in a signed {hmac, payload} envelope."""
    return {"hmac": sign_payload(payload, key), "payload": payload}


def verify_envelope(envelope: Dict, key: Key) -> str:
    """
    Check an envelope's digest and return its payload.

    Raises ValueError if the envelope is malformed or the digest does not match.
    """
    payload = envelope.get("payload")
    digest = envelope.get("hmac")
    if not isinstance(payload, str) or not isinstance(digest, str):
        raise ValueError("Envelope must carry string 'hmac' and 'payload' fields")

    try:
        mac = base64.b64decode(digest, validate=True)
    except (ValueError, TypeError):
        raise ValueError("Envelope digest is not valid base64")

    h = HMAC.new(_key_bytes(key), digestmod=SHA256)
    h.update(payload.encode('utf-8'))
    # raises ValueError on mismatch
    h.verify(mac)
    return payload
