"""
Symmetric encryption for facilitator signing keys
AES-256-GCM with a PBKDF2-SHA256 derived key; salt and nonce travel with the ciphertext
"""

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from facilitator_hub.errors import DecryptionFailed

FORMAT_VERSION = b"\x01"
SALT_LENGTH = 16
NONCE_LENGTH = 12  # GCM recommended
KDF_ITERATIONS = 100_000


def _derive_key(secret: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


def encrypt_private_key(private_key: str, secret: str) -> str:
    """Encrypt a hex private key; output is urlsafe base64 of version|salt|nonce|ciphertext"""
    if not secret:
        raise ValueError("Encryption secret must not be empty")

    salt = os.urandom(SALT_LENGTH)
    nonce = os.urandom(NONCE_LENGTH)
    ciphertext = AESGCM(_derive_key(secret, salt)).encrypt(nonce, private_key.encode("utf-8"), None)
    return base64.urlsafe_b64encode(FORMAT_VERSION + salt + nonce + ciphertext).decode("ascii")


def decrypt_private_key(token: str, secret: str) -> str:
    """Inverse of encrypt_private_key; any tampering or wrong secret raises DecryptionFailed"""
    if not secret:
        raise DecryptionFailed("Decryption secret is not configured")

    try:
        blob = base64.urlsafe_b64decode(token.encode("ascii"))
    except (ValueError, AttributeError):
        raise DecryptionFailed("Encrypted key is not valid base64")

    header = 1 + SALT_LENGTH + NONCE_LENGTH
    if len(blob) <= header or blob[:1] != FORMAT_VERSION:
        raise DecryptionFailed("Encrypted key has an unknown format")

    salt = blob[1:1 + SALT_LENGTH]
    nonce = blob[1 + SALT_LENGTH:header]
    try:
        plaintext = AESGCM(_derive_key(secret, salt)).decrypt(nonce, blob[header:], None)
    except InvalidTag:
        raise DecryptionFailed("Encrypted key could not be decrypted with the given secret")
    return plaintext.decode("utf-8")
