"""Registered OAuth clients.

Skymarshal does not support dynamic client registration. The set of
relying parties is a fixed table built once at composition time: the
primary ``skymarshal`` client (secret derived from the signing key), the
``fly`` CLI client and a development client. The fly and development
secrets are published values, identical in every deployment.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass

PRIMARY_CLIENT_ID = "skymarshal"

FLY_CLIENT_ID = "fly"
FLY_CLIENT_SECRET = "Zmx5Cg=="

DEV_CLIENT_ID = "client-id"
DEV_CLIENT_SECRET = "client-secret"


@dataclass(frozen=True, slots=True)
class OAuthClient:
    """A relying party registered with the issuer.

    Attributes:
        client_id: OAuth client_id.
        client_secret: OAuth client_secret.
        redirect_url: Registered redirect URL ("" when the client has none).
    """

    client_id: str
    client_secret: str
    redirect_url: str = ""

    def check_secret(self, secret: str) -> bool:
        """Constant-time comparison of ``secret`` with the registered secret."""
        return hmac.compare_digest(self.client_secret.encode(), secret.encode())


def registered_clients(client_secret: str, redirect_url: str) -> tuple[OAuthClient, ...]:
    """Build the fixed client table.

    Args:
        client_secret: Derived secret of the primary client.
        redirect_url: Callback URL shared by the primary and fly clients.

    Returns:
        Immutable tuple of the three registered clients, primary first.
    """
    return (
        OAuthClient(PRIMARY_CLIENT_ID, client_secret, redirect_url),
        OAuthClient(FLY_CLIENT_ID, FLY_CLIENT_SECRET, redirect_url),
        OAuthClient(DEV_CLIENT_ID, DEV_CLIENT_SECRET),
    )


def find_client(clients: tuple[OAuthClient, ...], client_id: str) -> OAuthClient | None:
    """Look up a registered client by id."""
    for client in clients:
        if client.client_id == client_id:
            return client
    return None
