"""
SSH keypair generation and at-rest encryption of private keys.

Keys are emitted in OpenSSH format so they can be pasted directly as deploy
keys on a git host and handed as-is to the git transport client.
"""

import base64
import hashlib
from dataclasses import dataclass

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from appcore.core.config import get_settings
from appcore.core.exceptions import InvalidStateError

settings = get_settings()

SUPPORTED_ALGORITHMS = ("ECDSA", "RSA", "ED25519")
RSA_KEY_SIZE = 4096


@dataclass(frozen=True)
class GeneratedKeyPair:
    key_type: str
    public_key: str
    private_key: str


def _generate_private_key(algorithm: str):
    if algorithm == "ECDSA":
        return ec.generate_private_key(ec.SECP256R1())
    if algorithm == "RSA":
        return rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
    if algorithm == "ED25519":
        return ed25519.Ed25519PrivateKey.generate()
    raise ValueError(
        f"Unsupported keypair algorithm {algorithm!r}, expected one of {SUPPORTED_ALGORITHMS}"
    )


def generate_ssh_keypair(algorithm: str = None, comment: str = None) -> GeneratedKeyPair:
    """Generate an OpenSSH keypair. CPU bound, run it off the event loop."""
    algorithm = (algorithm or settings.KEYPAIR_ALGORITHM).upper()
    comment = settings.SSH_KEY_COMMENT if comment is None else comment

    private_key = _generate_private_key(algorithm)
    public_openssh = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode("utf-8")
    if comment:
        public_openssh = f"{public_openssh} {comment}"

    private_openssh = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")

    return GeneratedKeyPair(
        key_type=algorithm, public_key=public_openssh, private_key=private_openssh
    )


def _fernet() -> Fernet:
    raw = str(settings.CREDENTIALS_ENCRYPTION_KEY or "").strip()
    if not raw:
        raise InvalidStateError("Missing CREDENTIALS_ENCRYPTION_KEY")
    try:
        return Fernet(raw.encode("utf-8"))
    except ValueError:
        digest = hashlib.sha256(raw.encode("utf-8")).digest()
        return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_private_key(private_key: str) -> str:
    return _fernet().encrypt(private_key.encode("utf-8")).decode("utf-8")


def decrypt_private_key(ciphertext: str) -> str:
    try:
        return _fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise InvalidStateError("Stored private key could not be decrypted") from exc
