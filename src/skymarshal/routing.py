"""Path-prefix request routing.

Pure ASGI dispatcher with two kinds of patterns:

- a pattern ending in ``/`` matches that path and everything below it;
- any other pattern matches the path exactly.

The longest matching pattern wins, so ``/sky/issuer/`` takes precedence
over ``/sky/``. Paths are passed to the selected handler unmodified.
Unmatched paths get ``404 Not Found``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from starlette.responses import PlainTextResponse

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger(__name__)


class PrefixRouter:
    """Dispatch HTTP and websocket requests to handlers by path prefix.

    Example:
        >>> router = PrefixRouter()
        >>> router.handle("/sky/issuer/", issuer_app)
        >>> router.handle("/login", legacy_app)
        >>> router.match("/sky/issuer/keys") is issuer_app
        True
    """

    def __init__(self) -> None:
        self._exact: dict[str, ASGIApp] = {}
        self._subtrees: list[tuple[str, ASGIApp]] = []

    def handle(self, pattern: str, app: ASGIApp) -> None:
        """Register ``app`` for ``pattern``.

        Raises:
            ValueError: If ``pattern`` does not start with ``/`` or is
                already registered.
        """
        if not pattern.startswith("/"):
            raise ValueError(f"Route pattern must start with '/': {pattern!r}")
        if pattern in self._exact or any(p == pattern for p, _ in self._subtrees):
            raise ValueError(f"Route pattern already registered: {pattern!r}")

        if pattern.endswith("/"):
            self._subtrees.append((pattern, app))
            self._subtrees.sort(key=lambda entry: len(entry[0]), reverse=True)
        else:
            self._exact[pattern] = app

    @property
    def patterns(self) -> list[str]:
        return sorted([*self._exact, *(p for p, _ in self._subtrees)])

    def match(self, path: str) -> ASGIApp | None:
        """Return the handler for ``path``, or ``None``."""
        exact = self._exact.get(path)
        if exact is not None:
            return exact
        for prefix, app in self._subtrees:
            if path.startswith(prefix):
                return app
        return None

    async def __call__(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        if scope["type"] not in ("http", "websocket"):
            raise RuntimeError(f"PrefixRouter cannot handle scope type {scope['type']!r}")

        app = self.match(scope["path"])
        if app is None:
            logger.debug("route_not_found", extra={"path": scope["path"]})
            if scope["type"] == "websocket":
                await send({"type": "websocket.close", "code": 1000})
                return
            response = PlainTextResponse("Not Found", status_code=404)
            await response(scope, receive, send)
            return

        await app(scope, receive, send)
