"""Exception hierarchy for skymarshal.

Every error carries a machine-readable ``error_code`` and a structured
``context`` dict so that startup failures can be logged consistently and
request-time failures can be rendered as RFC 7807 problem details by
:mod:`skymarshal.error_handlers`.

Startup errors (:class:`ConfigError`, :class:`KeyGenerationError`,
:class:`SubHandlerConstructionError`) abort composition. Request-time
errors (:class:`TokenTooLongError`, :class:`AuthenticationError` and
subclasses, :class:`InvalidStateError`) are returned to the request handler.

Example:
    >>> from skymarshal.exceptions import TokenTooLongError
    >>> raise TokenTooLongError(60001, 60000)
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "AuthenticationError",
    "ConfigError",
    "InvalidStateError",
    "KeyGenerationError",
    "SkymarshalError",
    "SubHandlerConstructionError",
    "TokenEncodingError",
    "TokenTooLongError",
    "TokenVerificationError",
]


class SkymarshalError(Exception):
    """Base class for all skymarshal errors.

    Attributes:
        error_code: Machine-readable error code for client handling.
        message: Human-readable error description.
        context: Structured debugging information.
    """

    error_code: str = "SKYMARSHAL_ERROR"

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        """Initialize error with message and optional context.

        Args:
            message: Human-readable error description.
            context: Structured debugging information. Keys should be snake_case.
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        """String representation including context for logging."""
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message

    def __repr__(self) -> str:
        """Detailed representation for debugging."""
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigError(SkymarshalError):
    """Raised when startup configuration is missing or invalid.

    Example:
        >>> raise ConfigError("external URL is required", context={"field": "external_url"})
    """

    error_code: str = "CONFIG_ERROR"


class KeyGenerationError(SkymarshalError):
    """Raised when the signing key cannot be generated.

    Fatal to startup. The original exception is chained as ``__cause__``.
    """

    error_code: str = "KEY_GENERATION_FAILED"


class SubHandlerConstructionError(SkymarshalError):
    """Raised by a sub-handler factory that cannot build its handler.

    Attributes:
        handler: Name of the sub-handler that failed ("issuer", "sky", "legacy").
    """

    error_code: str = "SUB_HANDLER_CONSTRUCTION_FAILED"

    def __init__(self, handler: str, reason: str) -> None:
        self.handler = handler
        self.reason = reason
        super().__init__(
            f"Failed to construct {handler} handler: {reason}",
            context={"handler": handler},
        )


class TokenTooLongError(SkymarshalError):
    """Raised when a token does not fit in the available cookie slots.

    Nothing is written to the response when this is raised. Truncating
    the token instead would produce an unverifiable credential.

    Attributes:
        length: Length of the rejected token.
        capacity: Maximum length that fits.
    """

    error_code: str = "TOKEN_TOO_LONG"

    def __init__(self, length: int, capacity: int) -> None:
        self.length = length
        self.capacity = capacity
        super().__init__(
            "Token is too long to fit in cookies",
            context={"length": length, "capacity": capacity},
        )


class TokenEncodingError(SkymarshalError):
    """Raised when a token holds characters a cookie value cannot carry verbatim.

    Only the characters in ``COOKIE_VALUE_CHARS`` are written; anything else
    would be quoted, escaped or rejected by the header encoder. Nothing is
    written to the response when this is raised.

    Attributes:
        cookie_name: Cookie the value was destined for.
        position: Index of the first offending character.
    """

    error_code: str = "INVALID_TOKEN_ENCODING"

    def __init__(self, cookie_name: str, position: int) -> None:
        self.cookie_name = cookie_name
        self.position = position
        super().__init__(
            "Token contains characters that cannot be stored in a cookie",
            context={"cookie": cookie_name, "position": position},
        )


class AuthenticationError(SkymarshalError):
    """Raised when a request carries no usable credential.

    Maps to HTTP 401 Unauthorized.
    """

    error_code: str = "AUTHENTICATION_FAILED"


class TokenVerificationError(AuthenticationError):
    """Raised when a token fails signature or claim verification.

    A token reassembled from partially expired cookies fails here too;
    callers treat it the same as a missing credential.

    Attributes:
        reason: Short machine-readable reason (e.g. "token_expired").
    """

    error_code: str = "INVALID_TOKEN"

    def __init__(self, reason: str, message: str = "Token verification failed") -> None:
        self.reason = reason
        super().__init__(message, context={"reason": reason})


class InvalidStateError(SkymarshalError):
    """Raised when the OAuth ``state`` of a login callback does not match.

    Maps to HTTP 400 Bad Request.
    """

    error_code: str = "INVALID_STATE"
