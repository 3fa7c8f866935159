"""Built-in token issuer.

A minimal OpenID Connect issuer serving the routes below ``/sky/issuer``:

- ``/.well-known/openid-configuration``: discovery document
- ``/keys``: JWKS with the public half of the signing key
- ``/auth``: authorization endpoint for the code flow (PKCE S256)
- ``/token``: ``authorization_code``, ``refresh_token`` and ``password``
  grants

Local users sign in at ``/auth`` with HTTP Basic credentials. A request
without valid credentials gets a ``401`` Basic challenge, which browsers
answer with their native credential prompt. With no local users there is
no way to sign in, so registered redirects receive ``error=access_denied``.

Authorization codes are single use and expire after ``AUTH_CODE_TTL``
seconds. Refresh tokens are issued when ``offline_access`` is requested
and rotate on every use. Both live in process memory only.

Tokens are RS256 JWTs signed with the process signing key. Passwords may
be plaintext or bcrypt hashes.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import bcrypt
import jwt as pyjwt
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse

from skymarshal.clients import PRIMARY_CLIENT_ID, find_client
from skymarshal.exceptions import SubHandlerConstructionError
from skymarshal.pkce import derive_code_challenge
from skymarshal.signing_key import SIGNING_ALGORITHM, key_id, public_jwk

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

    from skymarshal.clients import OAuthClient
    from skymarshal.settings import AuthFlags

logger = logging.getLogger(__name__)

LOCAL_CONNECTOR_ID = "local"
AUTH_CODE_TTL = 300
OFFLINE_ACCESS_SCOPE = "offline_access"

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
_CODE_BYTES = 32


@dataclass(frozen=True)
class IssuerConfig:
    """Construction parameters for the issuer.

    Attributes:
        issuer_url: Absolute issuer URL placed in ``iss``.
        web_path: Path prefix the issuer routes are served under.
        signing_key: Key used to sign tokens.
        clients: Registered OAuth clients.
        flags: Provider flags (``local_users``, ``token_ttl``).
    """

    issuer_url: str
    web_path: str
    signing_key: RSAPrivateKey
    clients: tuple[OAuthClient, ...]
    flags: AuthFlags


@dataclass(frozen=True)
class _PendingCode:
    client_id: str
    redirect_uri: str
    username: str
    scope: str
    code_challenge: str
    expires_at: float


@dataclass(frozen=True)
class _RefreshGrant:
    client_id: str
    username: str
    scope: str


def parse_local_users(entries: list[str]) -> dict[str, str]:
    """Parse ``user:password`` entries into a username -> password map.

    Raises:
        SubHandlerConstructionError: If an entry is malformed or duplicated.
    """
    users: dict[str, str] = {}
    for entry in entries:
        username, sep, password = entry.partition(":")
        if not sep or not username or not password:
            raise SubHandlerConstructionError(
                "issuer", "local user entries must look like 'username:password'"
            )
        if username in users:
            raise SubHandlerConstructionError("issuer", f"duplicate local user {username!r}")
        users[username] = password
    return users


def check_password(password: str, stored: str) -> bool:
    """Compare ``password`` against a plaintext or bcrypt ``stored`` value."""
    if stored.startswith(_BCRYPT_PREFIXES):
        try:
            return bcrypt.checkpw(password.encode("utf-8"), stored.encode("utf-8"))
        except ValueError:
            # Over-long password or corrupt hash
            return False
    return hmac.compare_digest(password.encode("utf-8"), stored.encode("utf-8"))


def verify_code_challenge(code_verifier: str, code_challenge: str) -> bool:
    """Check an S256 PKCE ``code_verifier`` against the stored challenge."""
    if not code_verifier or not code_verifier.isascii():
        return False
    return hmac.compare_digest(
        derive_code_challenge(code_verifier).encode("ascii"), code_challenge.encode("utf-8")
    )


def _oauth_error(status_code: int, error: str, description: str) -> JSONResponse:
    headers = {"WWW-Authenticate": 'Basic realm="sky"'} if status_code == 401 else None
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "error_description": description},
        headers=headers,
    )


def _redirect_with(redirect_uri: str, state: str, query: dict[str, str]) -> RedirectResponse:
    if state:
        query["state"] = state
    return RedirectResponse(f"{redirect_uri}?{urlencode(query)}", status_code=302)


def _basic_credentials(request: Request) -> tuple[str, str] | None:
    """Decode an HTTP Basic ``Authorization`` header; ``None`` if absent."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(auth_header[6:]).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return "", ""
    name, _, secret = decoded.partition(":")
    return name, secret


def _client_credentials(request: Request, form: Any) -> tuple[str, str]:
    """Read client credentials from HTTP Basic auth or the form body."""
    credentials = _basic_credentials(request)
    if credentials is not None:
        return credentials
    return str(form.get("client_id", "")), str(form.get("client_secret", ""))


def create_issuer_app(config: IssuerConfig) -> FastAPI:
    """Build the issuer ASGI application.

    Raises:
        SubHandlerConstructionError: If the local user flag is malformed.
    """
    users = parse_local_users(config.flags.local_user_entries())
    issuer_url = config.issuer_url.rstrip("/")
    web_path = config.web_path.rstrip("/")
    kid = key_id(config.signing_key.public_key())
    jwks = {"keys": [public_jwk(config.signing_key)]}
    token_ttl = config.flags.token_ttl

    codes: dict[str, _PendingCode] = {}
    refresh_grants: dict[str, _RefreshGrant] = {}

    discovery = {
        "issuer": issuer_url,
        "authorization_endpoint": f"{issuer_url}/auth",
        "token_endpoint": f"{issuer_url}/token",
        "jwks_uri": f"{issuer_url}/keys",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "password", "refresh_token"],
        "code_challenge_methods_supported": ["S256"],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [SIGNING_ALGORITHM],
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        "claims_supported": ["iss", "sub", "aud", "iat", "exp", "name", "federated_claims"],
    }

    def authenticate(username: str, password: str) -> bool:
        stored = users.get(username)
        return stored is not None and check_password(password, stored)

    def purge_expired_codes() -> None:
        now = time.monotonic()
        for code in [code for code, pending in codes.items() if pending.expires_at <= now]:
            del codes[code]

    def issue_tokens(client: OAuthClient, username: str, scope: str) -> JSONResponse:
        now = int(time.time())
        claims = {
            "iss": issuer_url,
            "sub": username,
            "aud": sorted({client.client_id, PRIMARY_CLIENT_ID}),
            "iat": now,
            "exp": now + token_ttl,
            "name": username,
            "federated_claims": {"connector_id": LOCAL_CONNECTOR_ID, "user_id": username},
        }
        id_token = pyjwt.encode(
            claims,
            config.signing_key,
            algorithm=SIGNING_ALGORITHM,
            headers={"kid": kid},
        )
        body: dict[str, Any] = {
            "access_token": id_token,
            "token_type": "bearer",
            "expires_in": token_ttl,
            "id_token": id_token,
        }
        if OFFLINE_ACCESS_SCOPE in scope.split():
            refresh_token = secrets.token_urlsafe(_CODE_BYTES)
            refresh_grants[refresh_token] = _RefreshGrant(client.client_id, username, scope)
            body["refresh_token"] = refresh_token
        logger.info(
            "issuer_token_issued",
            extra={"client_id": client.client_id, "username": username},
        )
        return JSONResponse(body, headers={"Cache-Control": "no-store"})

    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.get(f"{web_path}/.well-known/openid-configuration")
    async def openid_configuration() -> dict[str, Any]:
        return discovery

    @app.get(f"{web_path}/keys")
    async def keys() -> dict[str, Any]:
        return jwks

    @app.get(f"{web_path}/auth")
    async def authorize(request: Request) -> Any:
        params = request.query_params
        client = find_client(config.clients, params.get("client_id", ""))
        redirect_uri = params.get("redirect_uri", "")
        if client is None or not client.redirect_url or redirect_uri != client.redirect_url:
            return _oauth_error(400, "invalid_request", "Unregistered client or redirect URI")

        state = params.get("state", "")
        if params.get("response_type") != "code":
            return _redirect_with(
                redirect_uri,
                state,
                {
                    "error": "unsupported_response_type",
                    "error_description": "Only the code response type is supported",
                },
            )
        code_challenge = params.get("code_challenge", "")
        if code_challenge and params.get("code_challenge_method") != "S256":
            return _redirect_with(
                redirect_uri,
                state,
                {
                    "error": "invalid_request",
                    "error_description": "code_challenge_method must be S256",
                },
            )
        if not users:
            return _redirect_with(
                redirect_uri,
                state,
                {
                    "error": "access_denied",
                    "error_description": "No interactive connectors are configured",
                },
            )

        credentials = _basic_credentials(request)
        if credentials is None or not authenticate(*credentials):
            if credentials is not None:
                logger.info("issuer_login_denied", extra={"username": credentials[0]})
            return _oauth_error(401, "login_required", "Sign in with a local user")

        purge_expired_codes()
        code = secrets.token_urlsafe(_CODE_BYTES)
        codes[code] = _PendingCode(
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            username=credentials[0],
            scope=params.get("scope", ""),
            code_challenge=code_challenge,
            expires_at=time.monotonic() + AUTH_CODE_TTL,
        )
        logger.info(
            "issuer_code_issued",
            extra={"client_id": client.client_id, "username": credentials[0]},
        )
        return _redirect_with(redirect_uri, state, {"code": code})

    @app.post(f"{web_path}/token")
    async def token(request: Request) -> JSONResponse:
        form = await request.form()
        client_id, client_secret = _client_credentials(request, form)
        client = find_client(config.clients, client_id)
        if client is None or not client.check_secret(client_secret):
            logger.info("issuer_client_auth_failed", extra={"client_id": client_id})
            return _oauth_error(401, "invalid_client", "Invalid client credentials")

        grant_type = str(form.get("grant_type", ""))
        if grant_type == "authorization_code":
            pending = codes.pop(str(form.get("code", "")), None)
            if pending is None or pending.expires_at <= time.monotonic():
                return _oauth_error(400, "invalid_grant", "Authorization code is invalid")
            if (
                pending.client_id != client.client_id
                or str(form.get("redirect_uri", "")) != pending.redirect_uri
            ):
                return _oauth_error(
                    400, "invalid_grant", "Authorization code was issued for another client"
                )
            if pending.code_challenge and not verify_code_challenge(
                str(form.get("code_verifier", "")), pending.code_challenge
            ):
                return _oauth_error(400, "invalid_grant", "PKCE verification failed")
            return issue_tokens(client, pending.username, pending.scope)

        if grant_type == "refresh_token":
            refresh_token = str(form.get("refresh_token", ""))
            grant = refresh_grants.get(refresh_token)
            if grant is None or grant.client_id != client.client_id:
                return _oauth_error(400, "invalid_grant", "Refresh token is invalid")
            del refresh_grants[refresh_token]
            return issue_tokens(client, grant.username, grant.scope)

        if grant_type == "password":
            username = str(form.get("username", ""))
            if not authenticate(username, str(form.get("password", ""))):
                logger.info("issuer_password_grant_denied", extra={"username": username})
                return _oauth_error(400, "invalid_grant", "Invalid username or password")
            return issue_tokens(client, username, str(form.get("scope", "")))

        return _oauth_error(
            400, "unsupported_grant_type", f"Unsupported grant type: {grant_type!r}"
        )

    logger.info(
        "issuer_initialized",
        extra={"issuer": issuer_url, "local_users": len(users), "clients": len(config.clients)},
    )
    return app
