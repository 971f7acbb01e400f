"""PKCE (RFC 7636) helpers for the Spotify leg of the flow."""
import base64
import hashlib
import secrets


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode('ascii').rstrip('=')


def generate_code_verifier() -> str:
    """Generate a code verifier: 32 random bytes, base64url without padding (43 chars)."""
    return _b64url(secrets.token_bytes(32))


def generate_code_challenge(verifier: str) -> str:
    """S256 challenge: BASE64URL(SHA256(verifier))."""
    return _b64url(hashlib.sha256(verifier.encode('utf-8')).digest())
