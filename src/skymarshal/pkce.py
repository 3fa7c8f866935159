"""PKCE (Proof Key for Code Exchange) utilities.

Implements RFC 7636 S256 code challenge derivation. The verifier itself is
kept in the short-lived login state cookie by the interactive-login handler.
"""

from __future__ import annotations

import base64
import hashlib
import secrets

# 32 random bytes -> 43 base64url characters, the RFC 7636 minimum length.
_VERIFIER_BYTES = 32


def generate_code_verifier() -> str:
    """Generate a high-entropy PKCE code verifier."""
    return secrets.token_urlsafe(_VERIFIER_BYTES)


def derive_code_challenge(code_verifier: str) -> str:
    """Derive S256 code_challenge from code_verifier per RFC 7636.

    Computes ``BASE64URL(SHA256(code_verifier))`` with padding stripped.

    Args:
        code_verifier: The code verifier string (43-128 ASCII characters).

    Returns:
        Base64url-encoded SHA-256 hash without padding.

    Example:
        >>> derive_code_challenge("dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk")
        'E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM'
    """
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
