"""Signing key provisioning and client secret derivation.

The signing key signs every token the issuer mints and seeds the primary
client's secret. It is created once at startup and passed explicitly to
every component that needs it.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import TYPE_CHECKING, Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from skymarshal.exceptions import ConfigError, KeyGenerationError

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537
SIGNING_ALGORITHM = "RS256"


def load_or_generate_signing_key(
    configured: rsa.RSAPrivateKey | None,
) -> rsa.RSAPrivateKey:
    """Return the configured signing key or generate a fresh one.

    Args:
        configured: Pre-provisioned key. Returned unchanged when present.

    Returns:
        RSA private key for the lifetime of the process.

    Raises:
        KeyGenerationError: If key generation fails. Not retried.
    """
    if configured is not None:
        logger.info("signing_key_configured", extra={"key_size": configured.key_size})
        return configured

    try:
        key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=KEY_SIZE)
    except Exception as exc:
        raise KeyGenerationError(
            "Failed to generate signing key",
            context={"key_size": KEY_SIZE},
        ) from exc

    logger.info("signing_key_generated", extra={"key_size": KEY_SIZE})
    return key


def load_signing_key(path: Path) -> rsa.RSAPrivateKey:
    """Load an unencrypted PEM RSA private key (PKCS#1 or PKCS#8).

    Args:
        path: Location of the PEM file.

    Returns:
        The RSA private key.

    Raises:
        ConfigError: If the file is unreadable, not PEM, or not an RSA key.
    """
    try:
        pem = path.read_bytes()
    except OSError as exc:
        raise ConfigError(
            "Signing key file cannot be read",
            context={"path": str(path)},
        ) from exc

    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError) as exc:
        raise ConfigError(
            "Signing key file is not a valid PEM private key",
            context={"path": str(path)},
        ) from exc

    if not isinstance(key, rsa.RSAPrivateKey):
        raise ConfigError(
            "Signing key must be an RSA private key",
            context={"path": str(path), "key_type": type(key).__name__},
        )
    return key


def derive_client_secret(key: rsa.RSAPrivateKey) -> str:
    """Derive the primary client secret from the private exponent.

    ``hex(sha256(d))`` where ``d`` is encoded as minimal big-endian bytes.
    The same key always yields the same secret, so restarts with a
    pre-provisioned key keep existing client registrations valid.
    """
    d = key.private_numbers().d
    d_bytes = d.to_bytes((d.bit_length() + 7) // 8, "big")
    return hashlib.sha256(d_bytes).hexdigest()


def key_id(public_key: rsa.RSAPublicKey) -> str:
    """Stable key identifier: first 16 hex chars of SHA-256 over the DER SPKI."""
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()[:16]


def public_jwk(key: rsa.RSAPrivateKey) -> dict[str, Any]:
    """Export the public half of ``key`` as a JWK dict.

    Example:
        >>> jwk = public_jwk(key)
        >>> jwk["kty"], jwk["alg"], jwk["use"]
        ('RSA', 'RS256', 'sig')
    """
    public_key = key.public_key()
    jwk: dict[str, Any] = json.loads(RSAAlgorithm.to_jwk(public_key))
    jwk.update({"kid": key_id(public_key), "use": "sig", "alg": SIGNING_ALGORITHM})
    return jwk
