"""PKCE (Proof Key for Code Exchange) helpers, RFC 7636.

The verifier and the anti-CSRF state share one generator backed by the
``secrets`` CSPRNG. Nothing here is ever logged.
"""

import base64
import hashlib
import secrets
import string

_ALPHABET = string.ascii_letters + string.digits

VERIFIER_LENGTH = 128
STATE_LENGTH = 32


def generate_random_string(length: int) -> str:
    """Return ``length`` characters drawn from [A-Za-z0-9]."""
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def generate_code_verifier(length: int = VERIFIER_LENGTH) -> str:
    """Generate a code verifier (43 to 128 characters)."""
    if not 43 <= length <= 128:
        raise ValueError("code verifier length must be 43-128 characters")
    return generate_random_string(length)


def generate_code_challenge(verifier: str) -> str:
    """Derive the S256 code challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_state(length: int = STATE_LENGTH) -> str:
    """Generate a single-use anti-CSRF state token."""
    return generate_random_string(length)
