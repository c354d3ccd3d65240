"""PKCE (RFC 7636) and opaque token helpers."""

import base64
import hashlib
import hmac
import secrets
from typing import Optional


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_opaque_token() -> str:
    """256 bits of randomness, URL-safe. Used for codes and refresh tokens."""
    return secrets.token_urlsafe(32)


def generate_code_verifier() -> str:
    return _b64url(secrets.token_bytes(32))


def generate_state() -> str:
    return _b64url(secrets.token_bytes(16))


def compute_s256_challenge(code_verifier: str) -> str:
    """BASE64URL(SHA256(ascii(code_verifier))) without padding"""
    return _b64url(hashlib.sha256(code_verifier.encode()).digest())


def verify_s256(code_verifier: Optional[str], code_challenge: Optional[str]) -> bool:
    """Verify PKCE code challenge using constant-time comparison"""
    if not code_verifier or not code_challenge:
        return False
    return hmac.compare_digest(compute_s256_challenge(code_verifier), code_challenge)
