"""Server composition.

:func:`new_server` runs once at process startup. It obtains the signing
key, derives the primary client credentials, builds the token transport
and verifier, constructs the issuer, interactive-login and legacy
handlers, and mounts them behind path prefixes:

    /sky/issuer/          -> issuer
    /sky/                 -> interactive login
    /auth/, /login, /logout -> legacy

Any failure aborts composition; a server is only returned once every
step has succeeded. Everything captured here is read-only afterwards and
shared by all requests.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol
from urllib.parse import urlparse

from skymarshal.clients import PRIMARY_CLIENT_ID, OAuthClient, registered_clients
from skymarshal.dexserver import IssuerConfig, create_issuer_app
from skymarshal.exceptions import ConfigError
from skymarshal.legacyserver import LegacyConfig, create_legacy_app
from skymarshal.logging import get_logger
from skymarshal.oidc_client import OIDCTokenClient
from skymarshal.routing import PrefixRouter
from skymarshal.signing_key import derive_client_secret, load_or_generate_signing_key
from skymarshal.skyserver import SkyConfig, create_sky_app
from skymarshal.token.middleware import CookieTokenMiddleware
from skymarshal.token.verifier import OIDCTokenVerifier

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
    from starlette.types import ASGIApp, Receive, Scope, Send

    from skymarshal.settings import SkymarshalConfig
    from skymarshal.token.middleware import TokenMiddleware
    from skymarshal.token.verifier import TokenVerifier

ISSUER_PATH = "/sky/issuer"
CALLBACK_PATH = "/sky/callback"


class IssuerFactory(Protocol):
    def __call__(self, config: IssuerConfig) -> ASGIApp: ...


class SkyFactory(Protocol):
    def __call__(self, config: SkyConfig) -> ASGIApp: ...


class LegacyFactory(Protocol):
    def __call__(self, config: LegacyConfig) -> ASGIApp: ...


class SkymarshalServer:
    """Composed ASGI application.

    Dispatches requests through the prefix router and answers the ASGI
    lifespan protocol, releasing the token endpoint client on shutdown.
    """

    def __init__(
        self,
        router: PrefixRouter,
        *,
        signing_key: RSAPrivateKey,
        clients: tuple[OAuthClient, ...],
        issuer_url: str,
        redirect_url: str,
        token_middleware: TokenMiddleware,
        token_verifier: TokenVerifier,
        token_client: OIDCTokenClient,
    ) -> None:
        self._router = router
        self._signing_key = signing_key
        self._clients = clients
        self._issuer_url = issuer_url
        self._redirect_url = redirect_url
        self._token_middleware = token_middleware
        self._token_verifier = token_verifier
        self._token_client = token_client

    @property
    def router(self) -> PrefixRouter:
        return self._router

    @property
    def signing_key(self) -> RSAPrivateKey:
        return self._signing_key

    @property
    def clients(self) -> tuple[OAuthClient, ...]:
        return self._clients

    @property
    def primary_client(self) -> OAuthClient:
        return self._clients[0]

    @property
    def issuer_url(self) -> str:
        return self._issuer_url

    @property
    def redirect_url(self) -> str:
        return self._redirect_url

    @property
    def token_middleware(self) -> TokenMiddleware:
        return self._token_middleware

    @property
    def token_verifier(self) -> TokenVerifier:
        return self._token_verifier

    @property
    def token_client(self) -> OIDCTokenClient:
        return self._token_client

    async def aclose(self) -> None:
        """Release the token endpoint client. A shared HTTP client stays open."""
        await self._token_client.aclose()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "lifespan":
            await self._lifespan(receive, send)
            return
        await self._router(scope, receive, send)

    async def _lifespan(self, receive: Receive, send: Send) -> None:
        logger = get_logger(__name__)
        while True:
            message = await receive()
            if message["type"] == "lifespan.startup":
                logger.info("server_started", issuer_url=self._issuer_url)
                await send({"type": "lifespan.startup.complete"})
            elif message["type"] == "lifespan.shutdown":
                await self.aclose()
                logger.info("server_stopped")
                await send({"type": "lifespan.shutdown.complete"})
                return


def _normalize_external_url(external_url: str) -> str:
    url = external_url.strip().rstrip("/")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(
            "External URL must be an absolute http(s) URL",
            context={"external_url": external_url},
        )
    return url


def new_server(
    config: SkymarshalConfig,
    *,
    issuer_factory: IssuerFactory = create_issuer_app,
    sky_factory: SkyFactory = create_sky_app,
    legacy_factory: LegacyFactory = create_legacy_app,
) -> SkymarshalServer:
    """Compose the skymarshal server.

    Args:
        config: External URL, auth flags and optional shared HTTP client.
        issuer_factory: Builds the issuer handler.
        sky_factory: Builds the interactive-login handler.
        legacy_factory: Builds the legacy handler.

    Returns:
        The composed server.

    Raises:
        ConfigError: If the external URL or configured signing key is invalid.
        KeyGenerationError: If a signing key has to be generated and cannot be.
        Exception: Any error raised by a sub-handler factory, unchanged.
    """
    external_url = _normalize_external_url(config.external_url)
    flags = config.flags

    signing_key = load_or_generate_signing_key(flags.load_signing_key())

    client_id = PRIMARY_CLIENT_ID
    client_secret = derive_client_secret(signing_key)

    issuer_url = external_url + ISSUER_PATH
    redirect_url = external_url + CALLBACK_PATH
    clients = registered_clients(client_secret, redirect_url)

    token_verifier = OIDCTokenVerifier(client_id, issuer_url, cache_ttl=flags.jwks_cache_ttl)
    token_middleware = CookieTokenMiddleware(flags.secure_cookies)

    # Opens no connection until the first token request.
    token_client = OIDCTokenClient(f"{issuer_url}/token", clients[0], config.http_client)

    sky_server = sky_factory(
        SkyConfig(
            token_verifier=token_verifier,
            token_middleware=token_middleware,
            issuer_url=issuer_url,
            client=clients[0],
            redirect_url=redirect_url,
            token_client=token_client,
            secure_cookies=flags.secure_cookies,
        )
    )
    issuer_server = issuer_factory(
        IssuerConfig(
            issuer_url=issuer_url,
            web_path=ISSUER_PATH,
            signing_key=signing_key,
            clients=clients,
            flags=flags,
        )
    )
    legacy_server = legacy_factory(LegacyConfig())

    router = PrefixRouter()
    router.handle(ISSUER_PATH + "/", issuer_server)
    router.handle("/sky/", sky_server)
    router.handle("/auth/", legacy_server)
    router.handle("/login", legacy_server)
    router.handle("/logout", legacy_server)

    get_logger(__name__).info(
        "server_composed",
        issuer_url=issuer_url,
        redirect_url=redirect_url,
        secure_cookies=flags.secure_cookies,
        clients=[c.client_id for c in clients],
    )

    return SkymarshalServer(
        router,
        signing_key=signing_key,
        clients=clients,
        issuer_url=issuer_url,
        redirect_url=redirect_url,
        token_middleware=token_middleware,
        token_verifier=token_verifier,
        token_client=token_client,
    )
