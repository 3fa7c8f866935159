"""Token transport and verification."""

from skymarshal.token.middleware import (
    AUTH_COOKIE_NAME,
    CSRF_COOKIE_NAME,
    MAX_COOKIE_SIZE,
    MAX_TOKEN_LENGTH,
    NUM_COOKIES,
    CookieTokenMiddleware,
    TokenMiddleware,
)
from skymarshal.token.verifier import OIDCTokenVerifier, TokenVerifier, strip_bearer

__all__ = [
    "AUTH_COOKIE_NAME",
    "CSRF_COOKIE_NAME",
    "MAX_COOKIE_SIZE",
    "MAX_TOKEN_LENGTH",
    "NUM_COOKIES",
    "CookieTokenMiddleware",
    "OIDCTokenVerifier",
    "TokenMiddleware",
    "TokenVerifier",
    "strip_bearer",
]
