"""Legacy auth routes.

Older clients still hit ``/login``, ``/logout`` and ``/auth/...``. They are
redirected to the equivalent ``/sky`` routes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LegacyConfig:
    """Construction parameters for the legacy handler.

    Attributes:
        login_path: Where login requests are redirected.
        logout_path: Where logout requests are redirected.
    """

    login_path: str = "/sky/login"
    logout_path: str = "/sky/logout"


def _with_query(path: str, request: Request) -> str:
    query = request.url.query
    return f"{path}?{query}" if query else path


def create_legacy_app(config: LegacyConfig) -> FastAPI:
    """Build the legacy redirect ASGI application."""
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/login", methods=["GET", "POST"])
    async def login(request: Request) -> RedirectResponse:
        return RedirectResponse(_with_query(config.login_path, request), status_code=302)

    @app.api_route("/logout", methods=["GET", "POST"])
    @app.api_route("/auth/logout", methods=["GET", "POST"])
    async def logout() -> RedirectResponse:
        return RedirectResponse(config.logout_path, status_code=302)

    @app.api_route("/auth/{rest:path}", methods=["GET", "POST"])
    async def auth(request: Request, rest: str) -> RedirectResponse:
        logger.debug("legacy_auth_redirect", extra={"path": request.url.path})
        return RedirectResponse(_with_query(config.login_path, request), status_code=302)

    return app
