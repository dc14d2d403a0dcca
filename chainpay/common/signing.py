"""HMAC signatures attached to outgoing webhook requests."""

import hashlib
import hmac
import json


def canonical_body(payload: dict) -> str:
    """Serialize a payload the same way on every (re)delivery."""

    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def sign_payload(secret: str, timestamp: str, body: str) -> str:
    """Hex HMAC-SHA256 over `"{timestamp}.{body}"`."""

    signed = f"{timestamp}.{body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_signature(secret: str, timestamp: str, body: str, signature: str) -> bool:
    """Receiver-side check, shipped for merchants and tests."""

    return hmac.compare_digest(sign_payload(secret, timestamp, body), signature)
