"""
Encryption for the PII email field.

AES in CFB mode with a random IV per value. Ciphertext is stored as
base64(iv || ciphertext) so it stays text-safe in PostgreSQL, Redis and JSON.
The key is passed in explicitly; there is no process-wide key state.
"""

import base64
import binascii
import os

import structlog
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .exceptions import EncryptionError

logger = structlog.get_logger(__name__)

BLOCK_SIZE = 16
VALID_KEY_SIZES = (16, 24, 32)


class EmailCipher:
    """Symmetric encrypt/decrypt capability injected into every PII consumer."""

    def __init__(self, key: bytes) -> None:
        if isinstance(key, str):
            key = key.encode("utf-8")
        if len(key) not in VALID_KEY_SIZES:
            raise EncryptionError(
                "encryption key must be 16, 24 or 32 bytes long",
                details={"key_length": len(key)},
            )
        self._algorithm = algorithms.AES(key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string and return base64(iv || ciphertext)."""
        try:
            iv = os.urandom(BLOCK_SIZE)
            encryptor = Cipher(self._algorithm, modes.CFB(iv)).encryptor()
            cipher_text = encryptor.update(plaintext.encode("utf-8")) + encryptor.finalize()
        except (AttributeError, TypeError, ValueError) as e:
            raise EncryptionError(f"failed to encrypt value: {e}") from e

        return base64.b64encode(iv + cipher_text).decode("ascii")

    def decrypt(self, data: str) -> str:
        """Decrypt a value produced by encrypt()."""
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, TypeError, ValueError) as e:
            raise EncryptionError(f"ciphertext is not valid base64: {e}") from e

        if len(raw) < BLOCK_SIZE:
            raise EncryptionError("ciphertext too short")

        iv, cipher_text = raw[:BLOCK_SIZE], raw[BLOCK_SIZE:]
        decryptor = Cipher(self._algorithm, modes.CFB(iv)).decryptor()
        plain = decryptor.update(cipher_text) + decryptor.finalize()

        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EncryptionError("decrypted value is not valid UTF-8, wrong key?") from e
