"""Skymarshal configuration settings.

Loaded from environment variables with SKYMARSHAL_ prefix.
Follows Pydantic BaseSettings pattern for type-safe configuration.

Environment Variables:
    SKYMARSHAL_EXTERNAL_URL: Externally reachable base URL of the service
    SKYMARSHAL_SIGNING_KEY: Path to a PEM-encoded RSA private key
    SKYMARSHAL_SECURE_COOKIES: Mark auth cookies Secure (HTTPS only)
    SKYMARSHAL_LOCAL_USERS: Comma-separated ``user:password`` pairs for the issuer
    SKYMARSHAL_TOKEN_TTL: Lifetime of issued tokens in seconds
    SKYMARSHAL_JWKS_CACHE_TTL: JWKS key cache TTL in seconds
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    import httpx
    from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey


class AuthFlags(BaseSettings):
    """Authentication flags loaded from environment variables.

    The composer reads ``external_url``, ``signing_key`` and
    ``secure_cookies``. The remaining flags are provider-specific and are
    handed to the issuer sub-handler without interpretation.

    Example:
        >>> flags = AuthFlags(_env_file=None)
        >>> flags.secure_cookies
        False
        >>> flags.load_signing_key() is None
        True
    """

    model_config = SettingsConfigDict(
        env_prefix="SKYMARSHAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    external_url: str = Field(
        default="http://localhost:8080",
        description="Externally reachable base URL",
    )
    signing_key: Path | None = Field(
        default=None,
        description="Path to a PEM-encoded RSA private key used to sign tokens",
    )
    secure_cookies: bool = Field(
        default=False,
        description="Set the Secure attribute on auth cookies",
    )

    # Provider flags, opaque to the composer
    local_users: str = Field(
        default="",
        repr=False,  # Security: may carry plaintext passwords
        description="Comma-separated user:password pairs (password may be a bcrypt hash)",
    )
    token_ttl: int = Field(
        default=86400,
        ge=60,
        le=604800,
        description="Lifetime of issued tokens in seconds",
    )
    jwks_cache_ttl: int = Field(
        default=300,
        ge=30,
        le=86400,
        description="JWKS key cache TTL in seconds",
    )

    def local_user_entries(self) -> list[str]:
        """Split ``local_users`` into its non-empty ``user:password`` entries."""
        return [entry.strip() for entry in self.local_users.split(",") if entry.strip()]

    def load_signing_key(self) -> RSAPrivateKey | None:
        """Load the configured signing key, if any.

        Returns:
            The RSA private key from ``signing_key``, or ``None`` when no
            path is configured.

        Raises:
            ConfigError: If the file cannot be read or is not an RSA key.
        """
        if self.signing_key is None:
            return None

        from skymarshal.signing_key import load_signing_key

        return load_signing_key(self.signing_key)


@dataclass(frozen=True)
class SkymarshalConfig:
    """Everything the composer needs to build the server.

    Attributes:
        external_url: Externally reachable base URL (scheme + host [+ path]).
        flags: Authentication flags.
        http_client: Shared client for outbound issuer calls, never closed by
            the server. When ``None`` the token endpoint client creates one
            on first use and the server closes it on shutdown.
    """

    external_url: str
    flags: AuthFlags
    http_client: httpx.AsyncClient | None = None


@lru_cache(maxsize=1)
def get_auth_flags() -> AuthFlags:
    """Get singleton AuthFlags instance.

    Cached so flags are loaded once per process.
    Clear cache with ``get_auth_flags.cache_clear()`` for testing.

    Returns:
        AuthFlags instance with configuration from environment.
    """
    return AuthFlags()
