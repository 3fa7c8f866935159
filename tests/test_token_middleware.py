"""Tests for CookieTokenMiddleware: chunking, capacity, unset and CSRF cookies."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from email.utils import format_datetime
from http.cookies import SimpleCookie

import pytest
from starlette.responses import Response

from skymarshal.exceptions import TokenEncodingError, TokenTooLongError
from skymarshal.token.middleware import (
    COOKIE_VALUE_CHARS,
    CSRF_COOKIE_NAME,
    MAX_COOKIE_SIZE,
    MAX_TOKEN_LENGTH,
    NUM_COOKIES,
    CookieTokenMiddleware,
    auth_cookie_name,
)

EXPIRY = datetime(2030, 1, 2, 3, 4, 5, tzinfo=UTC)


def _token(length: int) -> str:
    """Token whose characters identify their position, so misordering shows."""
    alphabet = "abcdefghijklmnopqrstuvwxyz0123456789"
    return "".join(alphabet[(i // MAX_COOKIE_SIZE + i) % len(alphabet)] for i in range(length))


def _morsels(response: Response) -> list[tuple[str, object]]:
    result = []
    for header in response.headers.getlist("set-cookie"):
        cookie: SimpleCookie = SimpleCookie()
        cookie.load(header)
        result.extend(cookie.items())
    return result


@pytest.fixture()
def middleware() -> CookieTokenMiddleware:
    return CookieTokenMiddleware(secure_cookies=False)


@pytest.mark.unit
class TestSetAndGetToken:
    @pytest.mark.parametrize("length", [1, MAX_COOKIE_SIZE, MAX_COOKIE_SIZE + 1, 50000])
    def test_round_trip(self, middleware, apply_cookies, make_request, length: int) -> None:
        token = _token(length)
        response = Response()
        middleware.set_token(response, token, EXPIRY)

        jar = apply_cookies({}, response)

        assert middleware.get_token(make_request(jar)) == token

    def test_max_length_round_trips(self, middleware, apply_cookies, make_request) -> None:
        token = _token(MAX_TOKEN_LENGTH)
        response = Response()
        middleware.set_token(response, token, EXPIRY)

        jar = apply_cookies({}, response)

        assert len(jar) == NUM_COOKIES
        assert middleware.get_token(make_request(jar)) == token

    def test_writes_only_needed_slots(self, middleware) -> None:
        response = Response()
        middleware.set_token(response, _token(50000), EXPIRY)

        names = [name for name, _ in _morsels(response)]
        assert names == [auth_cookie_name(i) for i in range(13)]

    def test_chunks_are_at_most_max_cookie_size(self, middleware) -> None:
        response = Response()
        middleware.set_token(response, _token(9000), EXPIRY)

        sizes = [len(morsel.value) for _, morsel in _morsels(response)]
        assert sizes == [4000, 4000, 1000]

    def test_empty_token_occupies_first_slot(self, middleware, apply_cookies, make_request) -> None:
        response = Response()
        middleware.set_token(response, "", EXPIRY)

        names = [name for name, _ in _morsels(response)]
        assert names == [auth_cookie_name(0)]
        assert middleware.get_token(make_request(apply_cookies({}, response))) == ""

    def test_cookie_attributes(self) -> None:
        middleware = CookieTokenMiddleware(secure_cookies=True)
        response = Response()
        middleware.set_token(response, "header.payload.signature", EXPIRY)

        [(name, morsel)] = _morsels(response)
        assert name == "skymarshal_auth0"
        assert morsel.value == "header.payload.signature"
        assert morsel["path"] == "/"
        assert morsel["httponly"] is True
        assert morsel["secure"] is True
        assert morsel["expires"] == format_datetime(EXPIRY, usegmt=True)

    def test_insecure_cookies_omit_secure_flag(self, middleware) -> None:
        response = Response()
        middleware.set_token(response, "token", EXPIRY)

        [(_, morsel)] = _morsels(response)
        assert not morsel["secure"]

    def test_naive_expiry_is_treated_as_utc(self, middleware) -> None:
        response = Response()
        middleware.set_token(response, "token", EXPIRY.replace(tzinfo=None))

        [(_, morsel)] = _morsels(response)
        assert morsel["expires"] == format_datetime(EXPIRY, usegmt=True)

    def test_aware_expiry_is_converted_to_utc(self, middleware) -> None:
        plus_two = EXPIRY.astimezone(timezone(timedelta(hours=2)))
        response = Response()
        middleware.set_token(response, "token", plus_two)

        [(_, morsel)] = _morsels(response)
        assert morsel["expires"] == format_datetime(EXPIRY, usegmt=True)


@pytest.mark.unit
class TestCapacity:
    def test_exact_capacity_succeeds(self, middleware) -> None:
        response = Response()
        middleware.set_token(response, "x" * 60000, EXPIRY)
        assert len(_morsels(response)) == NUM_COOKIES

    def test_over_capacity_raises_and_writes_nothing(
        self, middleware, apply_cookies, make_request
    ) -> None:
        first = Response()
        middleware.set_token(first, "previous-token", EXPIRY)
        jar = apply_cookies({}, first)

        response = Response()
        with pytest.raises(TokenTooLongError) as exc_info:
            middleware.set_token(response, "x" * 60001, EXPIRY)

        assert exc_info.value.length == 60001
        assert exc_info.value.capacity == 60000
        assert response.headers.getlist("set-cookie") == []
        apply_cookies(jar, response)
        assert middleware.get_token(make_request(jar)) == "previous-token"


@pytest.mark.unit
class TestCookieEncoding:
    def test_punctuation_chunk_is_sent_unquoted(
        self, middleware, apply_cookies, make_request
    ) -> None:
        alphabet = "".join(sorted(COOKIE_VALUE_CHARS))
        token = (alphabet * (2 * MAX_COOKIE_SIZE))[: MAX_COOKIE_SIZE + 10]
        response = Response()
        middleware.set_token(response, token, EXPIRY)

        headers = response.headers.getlist("set-cookie")
        raw_values = [header.split(";", 1)[0].split("=", 1)[1] for header in headers]
        assert raw_values == [token[:MAX_COOKIE_SIZE], token[MAX_COOKIE_SIZE:]]
        assert len(raw_values[0].encode("latin-1")) == MAX_COOKIE_SIZE

        jar = apply_cookies({}, response)
        assert middleware.get_token(make_request(jar)) == token

    @pytest.mark.parametrize("token", ["\u20ac" * 10, "\u00e9" * MAX_COOKIE_SIZE])
    def test_non_ascii_token_is_rejected(self, middleware, token: str) -> None:
        response = Response()
        with pytest.raises(TokenEncodingError) as exc_info:
            middleware.set_token(response, token, EXPIRY)

        assert exc_info.value.position == 0
        assert exc_info.value.cookie_name == "skymarshal_auth"
        assert response.headers.getlist("set-cookie") == []

    @pytest.mark.parametrize("separator", [" ", '"', ";", ",", "\\", "=", "\n"])
    def test_characters_needing_quotes_are_rejected(self, middleware, separator: str) -> None:
        response = Response()
        with pytest.raises(TokenEncodingError) as exc_info:
            middleware.set_token(response, "ab" + separator + "cd", EXPIRY)

        assert exc_info.value.position == 2
        assert response.headers.getlist("set-cookie") == []

    def test_rejected_csrf_token_writes_nothing(self, middleware) -> None:
        response = Response()
        with pytest.raises(TokenEncodingError) as exc_info:
            middleware.set_csrf_token(response, "csrf value", EXPIRY)

        assert exc_info.value.cookie_name == CSRF_COOKIE_NAME
        assert response.headers.getlist("set-cookie") == []

    def test_quoted_cookie_values_are_unquoted_on_read(self, middleware, make_request) -> None:
        jar = {auth_cookie_name(0): '"abc"', CSRF_COOKIE_NAME: '"csrf"'}
        assert middleware.get_token(make_request(jar)) == "abc"
        assert middleware.get_csrf_token(make_request(jar)) == "csrf"

    def test_empty_token_round_trips_in_quoted_form(
        self, middleware, apply_cookies, make_request
    ) -> None:
        response = Response()
        middleware.set_token(response, "", EXPIRY)

        jar = apply_cookies({}, response)

        assert jar == {auth_cookie_name(0): '""'}
        assert middleware.get_token(make_request(jar)) == ""


@pytest.mark.unit
class TestUnsetToken:
    def test_unset_clears_all_fragments(self, middleware, apply_cookies, make_request) -> None:
        response = Response()
        middleware.set_token(response, _token(50000), EXPIRY)
        jar = apply_cookies({}, response)

        logout = Response()
        middleware.unset_token(logout)
        apply_cookies(jar, logout)

        assert middleware.get_token(make_request(jar)) == ""

    def test_unset_expires_every_slot(self) -> None:
        middleware = CookieTokenMiddleware(secure_cookies=True)
        response = Response()
        middleware.unset_token(response)

        morsels = _morsels(response)
        assert [name for name, _ in morsels] == [auth_cookie_name(i) for i in range(NUM_COOKIES)]
        for _, morsel in morsels:
            assert morsel.value == ""
            assert morsel["max-age"] == "0"
            assert morsel["path"] == "/"
            assert morsel["httponly"] is True
            assert morsel["secure"] is True

    def test_unset_without_token_is_harmless(self, middleware, apply_cookies, make_request) -> None:
        response = Response()
        middleware.unset_token(response)
        assert middleware.get_token(make_request(apply_cookies({}, response))) == ""


@pytest.mark.unit
class TestStaleFragments:
    """A shorter token written over a longer one leaves trailing slots untouched."""

    def test_shorter_token_without_unset_reads_stale_fragments(
        self, middleware, apply_cookies, make_request
    ) -> None:
        long_token = _token(10 * MAX_COOKIE_SIZE)
        first = Response()
        middleware.set_token(first, long_token, EXPIRY)
        jar = apply_cookies({}, first)

        second = Response()
        middleware.set_token(second, "short", EXPIRY)
        apply_cookies(jar, second)

        assert middleware.get_token(make_request(jar)) == "short" + long_token[MAX_COOKIE_SIZE:]

    def test_unset_before_set_in_same_response_replaces_cleanly(
        self, middleware, apply_cookies, make_request
    ) -> None:
        first = Response()
        middleware.set_token(first, _token(10 * MAX_COOKIE_SIZE), EXPIRY)
        jar = apply_cookies({}, first)

        second = Response()
        middleware.unset_token(second)
        middleware.set_token(second, "short", EXPIRY)
        apply_cookies(jar, second)

        assert middleware.get_token(make_request(jar)) == "short"


@pytest.mark.unit
class TestGetToken:
    def test_no_cookies_returns_empty_string(self, middleware, make_request) -> None:
        assert middleware.get_token(make_request({})) == ""

    def test_missing_slot_contributes_nothing(
        self, middleware, apply_cookies, make_request
    ) -> None:
        token = _token(3 * MAX_COOKIE_SIZE)
        response = Response()
        middleware.set_token(response, token, EXPIRY)
        jar = apply_cookies({}, response)

        del jar[auth_cookie_name(1)]

        assert middleware.get_token(make_request(jar)) == token[:4000] + token[8000:]

    def test_unrelated_cookies_are_ignored(self, middleware, make_request) -> None:
        jar = {"session": "other", auth_cookie_name(0): "abc", auth_cookie_name(1): "def"}
        assert middleware.get_token(make_request(jar)) == "abcdef"


@pytest.mark.unit
class TestCSRFToken:
    def test_round_trip(self, middleware, apply_cookies, make_request) -> None:
        response = Response()
        middleware.set_csrf_token(response, "csrf-value", EXPIRY)

        [(name, morsel)] = _morsels(response)
        assert name == CSRF_COOKIE_NAME
        assert morsel["httponly"] is True
        assert morsel["path"] == "/"
        assert middleware.get_csrf_token(make_request(apply_cookies({}, response))) == "csrf-value"

    def test_missing_csrf_returns_empty_string(self, middleware, make_request) -> None:
        assert middleware.get_csrf_token(make_request({})) == ""

    def test_unset_csrf(self, middleware, apply_cookies, make_request) -> None:
        response = Response()
        middleware.set_csrf_token(response, "csrf-value", EXPIRY)
        jar = apply_cookies({}, response)

        logout = Response()
        middleware.unset_csrf_token(logout)
        apply_cookies(jar, logout)

        assert middleware.get_csrf_token(make_request(jar)) == ""

    def test_token_operations_leave_csrf_alone(
        self, middleware, apply_cookies, make_request
    ) -> None:
        response = Response()
        middleware.set_csrf_token(response, "csrf-value", EXPIRY)
        middleware.set_token(response, "token", EXPIRY)
        jar = apply_cookies({}, response)

        logout = Response()
        middleware.unset_token(logout)
        apply_cookies(jar, logout)

        assert middleware.get_token(make_request(jar)) == ""
        assert middleware.get_csrf_token(make_request(jar)) == "csrf-value"

    def test_csrf_operations_leave_token_alone(
        self, middleware, apply_cookies, make_request
    ) -> None:
        response = Response()
        middleware.set_token(response, "token", EXPIRY)
        middleware.set_csrf_token(response, "csrf-value", EXPIRY)
        jar = apply_cookies({}, response)

        clear = Response()
        middleware.unset_csrf_token(clear)
        apply_cookies(jar, clear)

        assert middleware.get_csrf_token(make_request(jar)) == ""
        assert middleware.get_token(make_request(jar)) == "token"
