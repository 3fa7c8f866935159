"""Shared fixtures for skymarshal tests."""

from __future__ import annotations

from http.cookies import SimpleCookie
from typing import TYPE_CHECKING

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from starlette.requests import Request

from skymarshal.settings import AuthFlags

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from starlette.responses import Response

EXTERNAL_URL = "http://ci.example.com"


@pytest.fixture(scope="session")
def signing_key() -> rsa.RSAPrivateKey:
    """One 2048-bit key shared by the whole session (generation is slow)."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_signing_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def write_pem(key: rsa.RSAPrivateKey, path: Path) -> Path:
    path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    return path


@pytest.fixture()
def key_file(signing_key: rsa.RSAPrivateKey, tmp_path: Path) -> Path:
    return write_pem(signing_key, tmp_path / "signing_key.pem")


@pytest.fixture()
def flags(key_file: Path) -> AuthFlags:
    return AuthFlags(  # type: ignore[call-arg]
        _env_file=None,
        external_url=EXTERNAL_URL,
        signing_key=key_file,
        local_users="admin:password",
    )


def apply_set_cookies(jar: dict[str, str], response: Response) -> dict[str, str]:
    """Apply a response's Set-Cookie headers to ``jar`` in order, like a browser.

    Values are kept in their wire form, quoting included, and sent back
    verbatim by :func:`request_with`.
    """
    for header in response.headers.getlist("set-cookie"):
        cookie: SimpleCookie = SimpleCookie()
        cookie.load(header)
        for name, morsel in cookie.items():
            if morsel["max-age"] == "0":
                jar.pop(name, None)
            else:
                jar[name] = morsel.coded_value
    return jar


def request_with(jar: dict[str, str]) -> Request:
    """Build a request carrying ``jar`` as its Cookie header."""
    headers = []
    if jar:
        cookie_header = "; ".join(f"{name}={value}" for name, value in jar.items())
        headers.append((b"cookie", cookie_header.encode("latin-1")))
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "query_string": b"",
        "headers": headers,
    }
    return Request(scope)


@pytest.fixture()
def apply_cookies() -> Callable[[dict[str, str], Response], dict[str, str]]:
    return apply_set_cookies


@pytest.fixture()
def make_request() -> Callable[[dict[str, str]], Request]:
    return request_with
