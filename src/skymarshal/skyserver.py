"""Interactive login handler served under ``/sky``.

Routes:
- ``GET /sky/login``: start an authorization code + PKCE flow against the issuer
- ``GET /sky/callback``: finish the flow and store the token in cookies
- ``GET /sky/logout``: clear token and CSRF cookies
- ``GET /sky/userinfo``: claims of the presented token

Login state (OAuth ``state``, PKCE verifier, post-login redirect) lives in
a short-lived ``skymarshal_state`` cookie, so the handler keeps no
server-side session.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from skymarshal.error_handlers import register_exception_handlers
from skymarshal.exceptions import AuthenticationError, InvalidStateError
from skymarshal.pkce import derive_code_challenge, generate_code_verifier

if TYPE_CHECKING:
    from skymarshal.clients import OAuthClient
    from skymarshal.oidc_client import OIDCTokenClient
    from skymarshal.token.middleware import TokenMiddleware
    from skymarshal.token.verifier import TokenVerifier

logger = logging.getLogger(__name__)

STATE_COOKIE_NAME = "skymarshal_state"
STATE_TTL = timedelta(minutes=10)
LOGIN_SCOPES = "openid profile email federated:id groups offline_access"

_CSRF_TOKEN_BYTES = 32


@dataclass(frozen=True)
class SkyConfig:
    """Construction parameters for the interactive login handler.

    Attributes:
        token_verifier: Verifies tokens returned by the issuer and presented by clients.
        token_middleware: Cookie transport for token and CSRF token.
        issuer_url: Issuer base URL (authorize at ``/auth``, token at ``/token``).
        client: Registered client this handler authenticates as.
        redirect_url: Callback URL registered for ``client``.
        token_client: Token endpoint client authenticating as ``client``.
        secure_cookies: Secure attribute for the login state cookie.
    """

    token_verifier: TokenVerifier
    token_middleware: TokenMiddleware
    issuer_url: str
    client: OAuthClient
    redirect_url: str
    token_client: OIDCTokenClient
    secure_cookies: bool = False


def safe_redirect(target: str | None) -> str:
    """Only allow local absolute paths as post-login redirects."""
    if not target or not target.startswith("/") or target.startswith("//") or "\\" in target:
        return "/"
    return target


def encode_login_state(state: dict[str, str]) -> str:
    raw = base64.urlsafe_b64encode(json.dumps(state, separators=(",", ":")).encode("utf-8"))
    return raw.rstrip(b"=").decode("ascii")


def decode_login_state(value: str) -> dict[str, str] | None:
    """Decode the login state cookie; ``None`` if absent or corrupt."""
    if not value:
        return None
    padded = value + "=" * (-len(value) % 4)
    try:
        state = json.loads(base64.urlsafe_b64decode(padded))
    except (binascii.Error, ValueError):
        return None
    if not isinstance(state, dict) or not all(
        isinstance(state.get(k), str) for k in ("state", "code_verifier", "redirect")
    ):
        return None
    return state


def create_sky_app(config: SkyConfig) -> FastAPI:
    """Build the interactive login ASGI application."""
    issuer_url = config.issuer_url.rstrip("/")
    middleware = config.token_middleware
    verifier = config.token_verifier
    token_client = config.token_client

    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    register_exception_handlers(app)

    @app.get("/sky/login")
    async def login(redirect_uri: str = "/") -> RedirectResponse:
        state = secrets.token_urlsafe(16)
        code_verifier = generate_code_verifier()
        query = urlencode(
            {
                "client_id": config.client.client_id,
                "redirect_uri": config.redirect_url,
                "response_type": "code",
                "scope": LOGIN_SCOPES,
                "state": state,
                "code_challenge": derive_code_challenge(code_verifier),
                "code_challenge_method": "S256",
            }
        )
        response = RedirectResponse(f"{issuer_url}/auth?{query}", status_code=302)
        response.set_cookie(
            STATE_COOKIE_NAME,
            encode_login_state(
                {
                    "state": state,
                    "code_verifier": code_verifier,
                    "redirect": safe_redirect(redirect_uri),
                }
            ),
            expires=datetime.now(UTC) + STATE_TTL,
            path="/",
            secure=config.secure_cookies,
            httponly=True,
        )
        return response

    @app.get("/sky/callback")
    async def callback(request: Request) -> RedirectResponse:
        params = request.query_params
        login_state = decode_login_state(request.cookies.get(STATE_COOKIE_NAME, ""))
        if login_state is None or not hmac.compare_digest(
            login_state["state"].encode(), params.get("state", "").encode()
        ):
            raise InvalidStateError("Login state is missing or does not match")

        if "error" in params:
            raise AuthenticationError(
                params.get("error_description") or "Login was rejected by the issuer",
                context={"error": params["error"]},
            )

        code = params.get("code", "")
        if not code:
            raise AuthenticationError("Authorization code is missing")

        tokens = await token_client.exchange_code(
            code=code,
            code_verifier=login_state["code_verifier"],
            redirect_uri=config.redirect_url,
        )
        raw_token = tokens.id_token or tokens.access_token
        # Key lookup may call back into this process; keep it off the event loop.
        claims = await run_in_threadpool(verifier.verify, raw_token)

        expiry = datetime.now(UTC) + timedelta(seconds=tokens.expires_in)
        response = RedirectResponse(safe_redirect(login_state["redirect"]), status_code=302)
        middleware.unset_token(response)
        middleware.set_token(response, raw_token, expiry)
        middleware.set_csrf_token(response, secrets.token_hex(_CSRF_TOKEN_BYTES), expiry)
        response.delete_cookie(
            STATE_COOKIE_NAME, path="/", secure=config.secure_cookies, httponly=True
        )
        logger.info("login_succeeded", extra={"sub": claims.get("sub", "")})
        return response

    @app.get("/sky/logout")
    async def logout() -> RedirectResponse:
        response = RedirectResponse("/", status_code=302)
        middleware.unset_token(response)
        middleware.unset_csrf_token(response)
        return response

    @app.get("/sky/userinfo")
    def userinfo(request: Request) -> dict[str, Any]:
        token = request.headers.get("Authorization") or middleware.get_token(request)
        if not token:
            raise AuthenticationError("No credential presented")
        return verifier.verify(token)

    return app
