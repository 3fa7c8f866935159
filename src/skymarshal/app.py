"""Application factory.

Usage:
    uvicorn --factory skymarshal.app:create_app
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from skymarshal.logging import configure_logging
from skymarshal.server import new_server
from skymarshal.settings import SkymarshalConfig, get_auth_flags

if TYPE_CHECKING:
    import httpx

    from skymarshal.server import SkymarshalServer
    from skymarshal.settings import AuthFlags


def create_app(
    flags: AuthFlags | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> SkymarshalServer:
    """Configure logging and compose the server from ``flags``.

    Args:
        flags: Auth flags. If ``None``, loaded from environment.
        http_client: Optional shared client for outbound issuer calls.

    Returns:
        The composed ASGI server.
    """
    configure_logging()
    if flags is None:
        flags = get_auth_flags()
    config = SkymarshalConfig(
        external_url=flags.external_url,
        flags=flags,
        http_client=http_client,
    )
    return new_server(config)
