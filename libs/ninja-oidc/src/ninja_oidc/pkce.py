"""PKCE (Proof Key for Code Exchange) helpers, RFC 7636.

Only the ``S256`` transformation is provided. Verifiers are never logged.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

from ninja_oidc.errors import PKCELengthError

MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128

# Unreserved characters allowed in a code verifier (RFC 7636 section 4.1).
VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"


def generate_code_verifier(length: int = MAX_VERIFIER_LENGTH) -> str:
    """Return a cryptographically random code verifier of exactly *length* characters.

    Raises:
        PKCELengthError: If *length* is outside ``[43, 128]``.
    """
    if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        raise PKCELengthError(length)
    return "".join(secrets.choice(VERIFIER_ALPHABET) for _ in range(length))


def generate_code_challenge(verifier: str) -> str:
    """Return the base64url (unpadded) SHA-256 digest of *verifier*."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
