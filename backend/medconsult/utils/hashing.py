"""
Signature Utilities — HMAC-SHA256 verification for gateway webhooks.
"""
import hashlib
import hmac


def sign_payload(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time comparison of a received signature against the expected one."""
    if not signature or not secret:
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature.strip().lower())
