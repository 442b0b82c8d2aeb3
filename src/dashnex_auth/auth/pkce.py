"""
PKCE (Proof Key for Code Exchange) utilities.
As per RFC 7636.
"""
import base64
import hashlib
import secrets
from collections.abc import Callable

# Returns n cryptographically secure random bytes. Injected so tests can be deterministic.
RandomSource = Callable[[int], bytes]

VERIFIER_ENTROPY_BYTES = 32 # 43 base64url characters, the RFC 7636 minimum length
STATE_ENTROPY_BYTES = 16


def default_random_source(num_bytes: int) -> bytes:
    return secrets.token_bytes(num_bytes)


def _b64url_no_padding(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier(random_source: RandomSource = default_random_source) -> str:
    """
    Generates a code_verifier from 32 random bytes, base64url-encoded without padding.
    """
    return _b64url_no_padding(random_source(VERIFIER_ENTROPY_BYTES))


def derive_code_challenge(code_verifier: str) -> str:
    """Derives the S256 code_challenge: base64url(SHA-256(verifier)) without padding."""
    return _b64url_no_padding(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_state(random_source: RandomSource = default_random_source) -> str:
    """Generates an anti-CSRF state value: 16 random bytes as lowercase hex."""
    return random_source(STATE_ENTROPY_BYTES).hex()
