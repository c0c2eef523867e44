"""Cryptographic helpers for signing generated scripts."""
from __future__ import annotations

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from ..constants import KEY_FILE, PUB_FILE
from ..logger import get_logger

logger = get_logger(__name__)


def _pss():
    return padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH)


def ensure_keypair(key_file=KEY_FILE, pub_file=PUB_FILE):
    """Load the RSA private key, creating a keypair if it doesn't exist."""

    try:
        with open(key_file, "rb") as f:
            return serialization.load_pem_private_key(f.read(), password=None)
    except FileNotFoundError:
        pass

    logger.info("Generating new RSA keypair in %s", key_file)
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    with open(key_file, "wb") as f:
        f.write(
            private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
    with open(pub_file, "wb") as f:
        f.write(
            private_key.public_key().public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        )
    return private_key


def sign_hash(sha256_hex, key_file=KEY_FILE, pub_file=PUB_FILE):
    """Sign a SHA256 hex digest with the private key."""

    private_key = ensure_keypair(key_file, pub_file)
    signature = private_key.sign(sha256_hex.encode(), _pss(), hashes.SHA256())
    return signature.hex()


def verify_signature(sha256_hex, signature_hex, pub_file=PUB_FILE):
    """Verify a signature against the public key."""

    with open(pub_file, "rb") as f:
        public_key = serialization.load_pem_public_key(f.read())
    try:
        public_key.verify(
            bytes.fromhex(signature_hex), sha256_hex.encode(), _pss(), hashes.SHA256()
        )
    except (InvalidSignature, ValueError):
        return False
    return True


__all__ = [
    "ensure_keypair",
    "sign_hash",
    "verify_signature",
]
