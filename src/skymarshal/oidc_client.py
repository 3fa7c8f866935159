"""Async HTTP client for the issuer's OAuth 2.0 token endpoint.

Used by the interactive-login handler to exchange authorization codes and
refresh tokens. A shared ``httpx.AsyncClient`` may be passed in; otherwise
one is created on first use and released by :meth:`OIDCTokenClient.aclose`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from skymarshal.clients import OAuthClient

logger = logging.getLogger(__name__)

_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
_DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True, slots=True)
class TokenResponse:
    """Parsed response from the token endpoint.

    Attributes:
        access_token: Access token.
        refresh_token: Refresh token ("" when none was issued).
        id_token: OIDC ID token (may be None for refresh grants).
        expires_in: Access token TTL in seconds.
        token_type: Usually "bearer".
    """

    access_token: str
    refresh_token: str
    id_token: str | None
    expires_in: int
    token_type: str


class TokenExchangeError(Exception):
    """Raised when the token endpoint rejects a request.

    Attributes:
        status_code: HTTP status from the issuer.
        error: OAuth 2.0 error code (e.g., "invalid_grant").
        error_description: Human-readable error from the issuer.
    """

    def __init__(self, status_code: int, error: str, error_description: str) -> None:
        self.status_code = status_code
        self.error = error
        self.error_description = error_description
        super().__init__(f"Token exchange failed: {error} ({status_code})")


class OIDCTokenClient:
    """Token endpoint client authenticating as one registered client.

    Args:
        token_url: Full URL of the token endpoint.
        client: Registered client whose credentials are sent.
        http_client: Optional shared httpx.AsyncClient. Never closed here.
        timeout: HTTP request timeout in seconds.
    """

    def __init__(
        self,
        token_url: str,
        client: OAuthClient,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
    ) -> None:
        self._token_url = token_url
        self._client = client
        self._http = http_client
        self._external_http = http_client is not None
        self._timeout = timeout

    @property
    def token_url(self) -> str:
        return self._token_url

    async def exchange_code(
        self,
        code: str,
        code_verifier: str,
        redirect_uri: str,
    ) -> TokenResponse:
        """Exchange authorization code for tokens (PKCE).

        Raises:
            TokenExchangeError: On 4xx/5xx from the issuer.
            httpx.TransportError: On network failure.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self._client.client_id,
            "client_secret": self._client.client_secret,
            "code_verifier": code_verifier,
        }
        return await self._token_request(data)

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        """Exchange refresh token for a new token pair.

        Raises:
            TokenExchangeError: On 4xx/5xx (expired/revoked token).
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._client.client_id,
            "client_secret": self._client.client_secret,
        }
        return await self._token_request(data)

    def _get_http(self) -> httpx.AsyncClient:
        """Return the shared or lazily-created httpx.AsyncClient."""
        if self._http is None:
            self._http = httpx.AsyncClient()
        return self._http

    async def aclose(self) -> None:
        """Close the internal httpx.AsyncClient if we own it.

        No-op if the client was provided externally or not yet created.
        """
        if self._http is not None and not self._external_http:
            await self._http.aclose()
            self._http = None

    async def _token_request(self, data: dict[str, str]) -> TokenResponse:
        try:
            response = await self._get_http().post(
                self._token_url,
                data=data,
                headers={"Content-Type": _FORM_CONTENT_TYPE},
                timeout=self._timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            content_type = exc.response.headers.get("content-type", "")
            if content_type.startswith("application/json"):
                body: dict[str, str] = exc.response.json()
            else:
                body = {}
            logger.warning(
                "token_exchange_failed",
                extra={
                    "status": exc.response.status_code,
                    "grant_type": data["grant_type"],
                    "error": body.get("error", "unknown"),
                },
            )
            raise TokenExchangeError(
                status_code=exc.response.status_code,
                error=body.get("error", "unknown"),
                error_description=body.get("error_description", str(exc)),
            ) from exc

        body_json: dict[str, object] = response.json()
        raw_expires_in = body_json.get("expires_in")
        expires_in = int(str(raw_expires_in)) if raw_expires_in is not None else 3600
        return TokenResponse(
            access_token=str(body_json["access_token"]),
            refresh_token=str(body_json.get("refresh_token", "")),
            id_token=(str(body_json["id_token"]) if body_json.get("id_token") else None),
            expires_in=expires_in,
            token_type=str(body_json.get("token_type", "bearer")),
        )
