"""Tests for OIDCTokenClient."""

from __future__ import annotations

from unittest.mock import patch
from urllib.parse import parse_qs

import httpx
import pytest

from skymarshal.clients import OAuthClient
from skymarshal.oidc_client import OIDCTokenClient, TokenExchangeError

TOKEN_URL = "http://ci.example.com/sky/issuer/token"


def _client(handler) -> OIDCTokenClient:
    return OIDCTokenClient(
        TOKEN_URL,
        OAuthClient("skymarshal", "derived-secret"),
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.unit
class TestExchangeCode:
    @pytest.mark.asyncio
    async def test_posts_form_and_parses_tokens(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "access_token": "access",
                    "refresh_token": "refresh",
                    "id_token": "id",
                    "expires_in": 600,
                    "token_type": "bearer",
                },
            )

        tokens = await _client(handler).exchange_code("code", "verifier", "http://cb")

        assert tokens.access_token == "access"
        assert tokens.refresh_token == "refresh"
        assert tokens.id_token == "id"
        assert tokens.expires_in == 600

        [request] = seen
        assert request.method == "POST"
        assert request.headers["content-type"] == "application/x-www-form-urlencoded"
        form = parse_qs(request.content.decode())
        assert form == {
            "grant_type": ["authorization_code"],
            "code": ["code"],
            "redirect_uri": ["http://cb"],
            "client_id": ["skymarshal"],
            "client_secret": ["derived-secret"],
            "code_verifier": ["verifier"],
        }

    @pytest.mark.asyncio
    async def test_defaults_for_optional_fields(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "access"})

        tokens = await _client(handler).exchange_code("code", "verifier", "http://cb")

        assert tokens.id_token is None
        assert tokens.refresh_token == ""
        assert tokens.expires_in == 3600
        assert tokens.token_type == "bearer"

    @pytest.mark.asyncio
    async def test_oauth_error_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "code expired"}
            )

        with pytest.raises(TokenExchangeError) as exc_info:
            await _client(handler).exchange_code("code", "verifier", "http://cb")

        assert exc_info.value.status_code == 400
        assert exc_info.value.error == "invalid_grant"
        assert exc_info.value.error_description == "code expired"

    @pytest.mark.asyncio
    async def test_non_json_error_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        with pytest.raises(TokenExchangeError) as exc_info:
            await _client(handler).exchange_code("code", "verifier", "http://cb")

        assert exc_info.value.status_code == 503
        assert exc_info.value.error == "unknown"


@pytest.mark.unit
class TestRefreshToken:
    @pytest.mark.asyncio
    async def test_refresh_grant(self) -> None:
        forms: list[dict[str, list[str]]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            forms.append(parse_qs(request.content.decode()))
            return httpx.Response(200, json={"access_token": "new", "expires_in": 60})

        tokens = await _client(handler).refresh_token("refresh")

        assert tokens.access_token == "new"
        assert forms[0]["grant_type"] == ["refresh_token"]
        assert forms[0]["refresh_token"] == ["refresh"]


@pytest.mark.unit
class TestClientLifecycle:
    @pytest.mark.asyncio
    async def test_creates_client_on_first_request(self) -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"access_token": "access"})
        )
        with patch(
            "skymarshal.oidc_client.httpx.AsyncClient",
            return_value=httpx.AsyncClient(transport=transport),
        ) as mock_client:
            token_client = OIDCTokenClient(TOKEN_URL, OAuthClient("skymarshal", "s"))
            mock_client.assert_not_called()
            await token_client.exchange_code("code", "verifier", "http://cb")
            await token_client.refresh_token("refresh")
        mock_client.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_aclose_closes_owned_client(self) -> None:
        owned = httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"access_token": "access"})
            )
        )
        with patch("skymarshal.oidc_client.httpx.AsyncClient", return_value=owned):
            token_client = OIDCTokenClient(TOKEN_URL, OAuthClient("skymarshal", "s"))
            await token_client.exchange_code("code", "verifier", "http://cb")

        await token_client.aclose()

        assert owned.is_closed

    @pytest.mark.asyncio
    async def test_aclose_without_requests_is_noop(self) -> None:
        with patch("skymarshal.oidc_client.httpx.AsyncClient") as mock_client:
            token_client = OIDCTokenClient(TOKEN_URL, OAuthClient("skymarshal", "s"))
            await token_client.aclose()
        mock_client.assert_not_called()

    @pytest.mark.asyncio
    async def test_aclose_leaves_shared_client_open(self) -> None:
        shared = httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"access_token": "access"})
            )
        )
        token_client = OIDCTokenClient(TOKEN_URL, OAuthClient("skymarshal", "s"), shared)
        await token_client.exchange_code("code", "verifier", "http://cb")

        await token_client.aclose()

        assert not shared.is_closed
        await shared.aclose()
