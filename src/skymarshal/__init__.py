"""Skymarshal -- authentication front door.

Issues and verifies session tokens, carries them in chunked cookies, and
routes requests to the issuer, interactive-login and legacy handlers.
"""

from skymarshal.clients import OAuthClient, registered_clients
from skymarshal.exceptions import (
    AuthenticationError,
    ConfigError,
    InvalidStateError,
    KeyGenerationError,
    SkymarshalError,
    SubHandlerConstructionError,
    TokenTooLongError,
    TokenVerificationError,
)
from skymarshal.server import SkymarshalServer, new_server
from skymarshal.settings import AuthFlags, SkymarshalConfig, get_auth_flags
from skymarshal.signing_key import derive_client_secret, load_or_generate_signing_key
from skymarshal.token import CookieTokenMiddleware, OIDCTokenVerifier, TokenMiddleware

__all__ = [
    "AuthFlags",
    "AuthenticationError",
    "ConfigError",
    "CookieTokenMiddleware",
    "InvalidStateError",
    "KeyGenerationError",
    "OAuthClient",
    "OIDCTokenVerifier",
    "SkymarshalConfig",
    "SkymarshalError",
    "SkymarshalServer",
    "SubHandlerConstructionError",
    "TokenMiddleware",
    "TokenTooLongError",
    "TokenVerificationError",
    "derive_client_secret",
    "get_auth_flags",
    "load_or_generate_signing_key",
    "new_server",
    "registered_clients",
]
