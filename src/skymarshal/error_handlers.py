"""RFC 7807 Problem Details exception handlers.

Translates request-time skymarshal exceptions into
``application/problem+json`` responses.

Usage:
    from skymarshal.error_handlers import register_exception_handlers

    app = FastAPI()
    register_exception_handlers(app)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from skymarshal.exceptions import (
    AuthenticationError,
    InvalidStateError,
    SkymarshalError,
    TokenEncodingError,
    TokenTooLongError,
)
from skymarshal.oidc_client import TokenExchangeError

if TYPE_CHECKING:
    from fastapi import FastAPI, Request

logger = logging.getLogger(__name__)

PROBLEM_MEDIA_TYPE = "application/problem+json"

_SENSITIVE_KEYS = frozenset({"password", "secret", "token", "csrf", "credential"})


class ProblemDetail(BaseModel):
    """RFC 7807 Problem Details response model.

    Extension fields:
    - error_code: Machine-readable error code for client handling
    - context: Structured debugging information
    """

    type: str = Field(..., description="URI reference identifying problem type")
    title: str = Field(..., description="Short human-readable summary")
    status: int = Field(..., ge=400, le=599, description="HTTP status code")
    detail: str = Field(..., description="Human-readable explanation")
    instance: str | None = Field(default=None, description="Request path")
    error_code: str | None = Field(default=None, description="Machine-readable error code")
    context: dict[str, Any] | None = Field(default=None, description="Debugging information")


def _create_problem_response(
    problem: ProblemDetail,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=problem.status,
        content=problem.model_dump(exclude_none=True),
        media_type=PROBLEM_MEDIA_TYPE,
        headers=headers,
    )


def _sanitize_context(context: dict[str, Any] | None) -> dict[str, Any] | None:
    """Drop sensitive keys from ``context``; ``None`` when nothing is left."""
    if not context:
        return None
    sanitized = {k: v for k, v in context.items() if k.lower() not in _SENSITIVE_KEYS}
    return sanitized or None


async def authentication_error_handler(
    request: Request,
    exc: AuthenticationError,
) -> JSONResponse:
    """Translate AuthenticationError to 401 with a Bearer challenge."""
    logger.info(
        "authentication_failed",
        extra={"error_code": exc.error_code, "path": request.url.path},
    )
    problem = ProblemDetail(
        type="/errors/unauthorized",
        title="Unauthorized",
        status=401,
        detail=exc.message,
        instance=str(request.url.path),
        error_code=exc.error_code,
        context=_sanitize_context(exc.context),
    )
    return _create_problem_response(problem, headers={"WWW-Authenticate": 'Bearer realm="sky"'})


async def invalid_state_handler(request: Request, exc: InvalidStateError) -> JSONResponse:
    """Translate InvalidStateError to 400."""
    problem = ProblemDetail(
        type="/errors/invalid-state",
        title="Invalid Login State",
        status=400,
        detail=exc.message,
        instance=str(request.url.path),
        error_code=exc.error_code,
    )
    return _create_problem_response(problem)


async def token_too_long_handler(request: Request, exc: TokenTooLongError) -> JSONResponse:
    """Translate TokenTooLongError to 500; the login cannot complete."""
    logger.error(
        "login_failed_token_too_long",
        extra={"length": exc.length, "capacity": exc.capacity},
    )
    problem = ProblemDetail(
        type="/errors/token-too-long",
        title="Token Too Long",
        status=500,
        detail=exc.message,
        instance=str(request.url.path),
        error_code=exc.error_code,
        context=_sanitize_context(exc.context),
    )
    return _create_problem_response(problem)


async def token_encoding_handler(request: Request, exc: TokenEncodingError) -> JSONResponse:
    logger.error(
        "login_failed_token_encoding",
        extra={"cookie": exc.cookie_name, "position": exc.position},
    )
    problem = ProblemDetail(
        type="/errors/invalid-token-encoding",
        title="Invalid Token Encoding",
        status=500,
        detail=exc.message,
        instance=str(request.url.path),
        error_code=exc.error_code,
        context=_sanitize_context(exc.context),
    )
    return _create_problem_response(problem)


async def token_exchange_error_handler(
    request: Request,
    exc: TokenExchangeError,
) -> JSONResponse:
    """Translate an issuer token-endpoint rejection to 502 Bad Gateway."""
    problem = ProblemDetail(
        type="/errors/token-exchange-failed",
        title="Token Exchange Failed",
        status=502,
        detail=exc.error_description,
        instance=str(request.url.path),
        error_code=exc.error.upper(),
        context={"upstream_status": exc.status_code},
    )
    return _create_problem_response(problem)


async def skymarshal_error_handler(request: Request, exc: SkymarshalError) -> JSONResponse:
    """Fallback for any other SkymarshalError: 500."""
    logger.error(
        "unhandled_skymarshal_error",
        extra={"error_code": exc.error_code, "path": request.url.path},
    )
    problem = ProblemDetail(
        type="/errors/internal-error",
        title="Internal Server Error",
        status=500,
        detail="An unexpected error occurred",
        instance=str(request.url.path),
        error_code=exc.error_code,
    )
    return _create_problem_response(problem)


def register_exception_handlers(app: FastAPI) -> None:
    """Register all skymarshal exception handlers on ``app``.

    Starlette resolves handlers along the exception's MRO, so the
    specific handlers take precedence over the SkymarshalError fallback.
    """
    app.add_exception_handler(AuthenticationError, authentication_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(InvalidStateError, invalid_state_handler)  # type: ignore[arg-type]
    app.add_exception_handler(TokenTooLongError, token_too_long_handler)  # type: ignore[arg-type]
    app.add_exception_handler(TokenEncodingError, token_encoding_handler)  # type: ignore[arg-type]
    app.add_exception_handler(TokenExchangeError, token_exchange_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(SkymarshalError, skymarshal_error_handler)  # type: ignore[arg-type]
