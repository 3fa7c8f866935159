"""Cookie transport for session and CSRF tokens.

Browsers cap a single cookie at roughly 4 KB while a signed token carrying
claims and a signature can be much larger. The session token is therefore
split across a fixed set of numbered cookies (``skymarshal_auth0`` ..
``skymarshal_auth14``) and concatenated back in index order on read. The
CSRF token always fits in one cookie (``skymarshal_csrf``).

Values are restricted to ``COOKIE_VALUE_CHARS``, which are emitted
unquoted and one byte each, so the size limits below hold in bytes on the
wire. A compact JWT (base64url segments joined by ``.``) always qualifies.

Design decisions:
- ``set_token`` writes only as many cookies as the token needs. Cookies
  past that count keep whatever value they had, so writing a shorter
  token over a longer one without ``unset_token`` first leaves stale
  fragments that are read back after the new token. Handlers replacing a
  token call ``unset_token`` then ``set_token`` on the same response; the
  later ``Set-Cookie`` header for each name wins in the browser.
- Missing cookies are not errors on read. A token reassembled from
  partially expired cookies is handed to the verifier, which rejects it.
- Expiry is enforced by the browser only; nothing is tracked server-side.
"""

from __future__ import annotations

import logging
import math
import string
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

from skymarshal.exceptions import TokenEncodingError, TokenTooLongError

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.responses import Response

logger = logging.getLogger(__name__)

NUM_COOKIES = 15
MAX_COOKIE_SIZE = 4000
MAX_TOKEN_LENGTH = NUM_COOKIES * MAX_COOKIE_SIZE

AUTH_COOKIE_NAME = "skymarshal_auth"
CSRF_COOKIE_NAME = "skymarshal_csrf"
COOKIE_PATH = "/"

# Cookie-octets that Set-Cookie serialization leaves unquoted.
COOKIE_VALUE_CHARS = frozenset(string.ascii_letters + string.digits + "!#$%&'*+-.^_`|~:")


def auth_cookie_name(index: int) -> str:
    """Name of the ``index``-th session token cookie."""
    return f"{AUTH_COOKIE_NAME}{index}"


class TokenMiddleware(Protocol):
    """Reads and writes session and CSRF tokens on HTTP requests/responses."""

    def set_token(self, response: Response, token: str, expiry: datetime) -> None: ...

    def unset_token(self, response: Response) -> None: ...

    def get_token(self, request: Request) -> str: ...

    def set_csrf_token(self, response: Response, csrf_token: str, expiry: datetime) -> None: ...

    def unset_csrf_token(self, response: Response) -> None: ...

    def get_csrf_token(self, request: Request) -> str: ...


def _check_value(cookie_name: str, value: str) -> None:
    for position, char in enumerate(value):
        if char not in COOKIE_VALUE_CHARS:
            logger.warning(
                "token_encoding_invalid",
                extra={"cookie": cookie_name, "position": position},
            )
            raise TokenEncodingError(cookie_name, position)


def _utc(expiry: datetime) -> datetime:
    """Normalize ``expiry`` to an aware UTC datetime (naive means UTC)."""
    if expiry.tzinfo is None:
        return expiry.replace(tzinfo=UTC)
    return expiry.astimezone(UTC)


class CookieTokenMiddleware:
    """Cookie-backed :class:`TokenMiddleware`.

    Every cookie is written with ``Path=/`` and ``HttpOnly``; ``Secure``
    follows the configured flag.

    Args:
        secure_cookies: Whether cookies carry the ``Secure`` attribute.

    Example:
        >>> middleware = CookieTokenMiddleware(secure_cookies=True)
        >>> middleware.set_token(response, token, expiry)
        >>> middleware.get_token(request) == token
        True
    """

    def __init__(self, secure_cookies: bool = False) -> None:
        self._secure_cookies = secure_cookies

    @property
    def secure_cookies(self) -> bool:
        return self._secure_cookies

    def set_token(self, response: Response, token: str, expiry: datetime) -> None:
        """Split ``token`` across the auth cookies.

        Args:
            response: Response to attach ``Set-Cookie`` headers to.
            token: Opaque signed token made of ``COOKIE_VALUE_CHARS``.
            expiry: Expiry applied to every written cookie.

        Raises:
            TokenTooLongError: If ``token`` exceeds ``MAX_TOKEN_LENGTH``.
                No cookie is written in that case.
            TokenEncodingError: If ``token`` holds any other character.
                No cookie is written in that case either.
        """
        if len(token) > MAX_TOKEN_LENGTH:
            logger.warning(
                "token_too_long",
                extra={"length": len(token), "capacity": MAX_TOKEN_LENGTH},
            )
            raise TokenTooLongError(len(token), MAX_TOKEN_LENGTH)
        _check_value(AUTH_COOKIE_NAME, token)

        expires = _utc(expiry)
        # The empty token still occupies slot 0.
        slots = max(1, math.ceil(len(token) / MAX_COOKIE_SIZE))
        for i in range(slots):
            chunk = token[i * MAX_COOKIE_SIZE : (i + 1) * MAX_COOKIE_SIZE]
            self._set_cookie(response, auth_cookie_name(i), chunk, expires)

        logger.debug("token_cookies_set", extra={"slots": slots})

    def unset_token(self, response: Response) -> None:
        """Expire all auth cookies, including ones the last token did not use."""
        for i in range(NUM_COOKIES):
            self._delete_cookie(response, auth_cookie_name(i))

    def get_token(self, request: Request) -> str:
        """Concatenate the auth cookies present on ``request`` in index order.

        Returns:
            The reassembled token, or ``""`` when no auth cookie is present.
        """
        cookies = request.cookies
        return "".join(cookies.get(auth_cookie_name(i), "") for i in range(NUM_COOKIES))

    def set_csrf_token(self, response: Response, csrf_token: str, expiry: datetime) -> None:
        """Write the CSRF cookie.

        Raises:
            TokenEncodingError: If ``csrf_token`` holds characters outside
                ``COOKIE_VALUE_CHARS``.
        """
        _check_value(CSRF_COOKIE_NAME, csrf_token)
        self._set_cookie(response, CSRF_COOKIE_NAME, csrf_token, _utc(expiry))

    def unset_csrf_token(self, response: Response) -> None:
        self._delete_cookie(response, CSRF_COOKIE_NAME)

    def get_csrf_token(self, request: Request) -> str:
        return request.cookies.get(CSRF_COOKIE_NAME, "")

    def _set_cookie(self, response: Response, name: str, value: str, expires: datetime) -> None:
        response.set_cookie(
            name,
            value,
            expires=expires,
            path=COOKIE_PATH,
            secure=self._secure_cookies,
            httponly=True,
        )

    def _delete_cookie(self, response: Response, name: str) -> None:
        response.delete_cookie(
            name,
            path=COOKIE_PATH,
            secure=self._secure_cookies,
            httponly=True,
        )
