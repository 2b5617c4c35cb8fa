"""
Device key pair management.

Ed25519 keys in OpenSSH format, usable by ssh for mirror access.
The public half has to be registered with the mirror host by the operator.
"""

import logging
import os
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .models import DeviceIdentity

logger = logging.getLogger(__name__)


class IdentityError(Exception):
    """Raised when the device key pair cannot be created or read."""

    def __init__(self, message: str, key_path: Path):
        super().__init__(message)
        self.key_path = key_path


def ensure_keypair(identity: DeviceIdentity) -> str:
    """
    Create the device key pair unless one already exists.

    Args:
        identity: Device identity naming the key location

    Returns:
        The OpenSSH public key line
    """
    if identity.has_key:
        logger.debug(f"Using existing key at {identity.key_path}")
        return read_public_key(identity)

    logger.info(f"Creating device key at {identity.key_path}")

    private_key = Ed25519PrivateKey.generate()
    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_line = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode() + f" {identity.slug}"

    try:
        identity.key_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd = os.open(identity.key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(private_bytes)
        identity.public_key_path.write_text(public_line + "\n")
    except OSError as e:
        raise IdentityError(f"Failed to write key pair: {e}", identity.key_path) from e

    return public_line


def read_public_key(identity: DeviceIdentity) -> str:
    """
    Return the OpenSSH public key line for the device.

    Derives it from the private key when the ``.pub`` file is missing.
    """
    if identity.public_key_path.exists():
        return identity.public_key_path.read_text().strip()

    try:
        private_key = serialization.load_ssh_private_key(
            identity.key_path.read_bytes(), password=None
        )
    except (OSError, ValueError) as e:
        raise IdentityError(f"Unreadable private key: {e}", identity.key_path) from e

    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode()
