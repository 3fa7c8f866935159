"""Token verification against the issuer's published keys.

Wraps PyJWT's PyJWKClient to provide:
- JWKS URI construction from the issuer URL (``{issuer}/keys``)
- In-memory key caching with configurable TTL
- Automatic key refresh on kid mismatch (handles key rotation)

The issuer is served by the same process, so the key set is fetched
lazily on first verification rather than at construction time.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

import jwt as pyjwt
from jwt import PyJWKClient

from skymarshal.exceptions import TokenVerificationError
from skymarshal.signing_key import SIGNING_ALGORITHM

if TYPE_CHECKING:
    from jwt import PyJWK

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "bearer "


class TokenVerifier(Protocol):
    """Validates an opaque token and returns its claims."""

    def verify(self, token: str) -> dict[str, Any]: ...


class _SigningKeySource(Protocol):
    def get_signing_key_from_jwt(self, token: str) -> PyJWK: ...


def strip_bearer(token: str) -> str:
    """Remove a case-insensitive ``Bearer `` scheme prefix, if present."""
    if token[: len(_BEARER_PREFIX)].lower() == _BEARER_PREFIX:
        return token[len(_BEARER_PREFIX) :].strip()
    return token.strip()


class OIDCTokenVerifier:
    """RS256 verifier bound to one client and one issuer.

    Validates signature, ``exp``, ``iss`` (must equal ``issuer_url``) and
    ``aud`` (must contain ``client_id``).

    Args:
        client_id: Expected audience.
        issuer_url: Expected issuer; key set is read from ``{issuer_url}/keys``.
        cache_ttl: Key cache TTL in seconds.
        key_source: Optional object providing ``get_signing_key_from_jwt``.
            Defaults to a lazily created PyJWKClient.

    Example:
        >>> verifier = OIDCTokenVerifier("skymarshal", "https://ci.example.com/sky/issuer")
        >>> claims = verifier.verify(token)
        >>> claims["sub"]
        'local:admin'
    """

    def __init__(
        self,
        client_id: str,
        issuer_url: str,
        cache_ttl: int = 300,
        key_source: _SigningKeySource | None = None,
    ) -> None:
        self._client_id = client_id
        self._issuer_url = issuer_url.rstrip("/")
        self._cache_ttl = cache_ttl
        self._jwks_uri = f"{self._issuer_url}/keys"
        self._key_source = key_source

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def issuer_url(self) -> str:
        return self._issuer_url

    @property
    def jwks_uri(self) -> str:
        return self._jwks_uri

    def _get_key_source(self) -> _SigningKeySource:
        if self._key_source is None:
            self._key_source = PyJWKClient(
                self._jwks_uri,
                cache_jwk_set=True,
                lifespan=self._cache_ttl,
            )
            logger.info(
                "jwks_client_initialized",
                extra={"jwks_uri": self._jwks_uri, "cache_ttl": self._cache_ttl},
            )
        return self._key_source

    def verify(self, token: str) -> dict[str, Any]:
        """Verify ``token`` and return its claims.

        Args:
            token: Compact JWT, optionally prefixed with ``Bearer ``.

        Returns:
            Decoded claims.

        Raises:
            TokenVerificationError: On any failure, including an empty or
                truncated token.
        """
        raw = strip_bearer(token)
        if not raw:
            raise TokenVerificationError("missing_token", "No token presented")

        try:
            signing_key = self._get_key_source().get_signing_key_from_jwt(raw)
            claims: dict[str, Any] = pyjwt.decode(
                raw,
                signing_key.key,
                algorithms=[SIGNING_ALGORITHM],
                issuer=self._issuer_url,
                audience=self._client_id,
                options={"require": ["exp", "iss", "aud", "sub"]},
            )
        except pyjwt.ExpiredSignatureError as exc:
            raise TokenVerificationError("token_expired", "Token has expired") from exc
        except (pyjwt.InvalidIssuerError, pyjwt.InvalidAudienceError) as exc:
            raise TokenVerificationError("invalid_claims", str(exc)) from exc
        except pyjwt.MissingRequiredClaimError as exc:
            raise TokenVerificationError(
                "invalid_claims", f"Missing required claim: {exc.claim}"
            ) from exc
        except pyjwt.InvalidSignatureError as exc:
            raise TokenVerificationError(
                "invalid_signature", "Token signature verification failed"
            ) from exc
        except pyjwt.PyJWKClientError as exc:
            raise TokenVerificationError("unknown_key", "Token signing key not found") from exc
        except pyjwt.DecodeError as exc:
            raise TokenVerificationError("invalid_token", "Token is malformed") from exc
        except pyjwt.InvalidTokenError as exc:
            raise TokenVerificationError("invalid_token", "Token validation failed") from exc

        return claims
