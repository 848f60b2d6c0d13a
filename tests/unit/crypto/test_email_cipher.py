"""
Tests for email field encryption.

Ciphertext format: base64(iv || AES-CFB(plaintext)) with a random IV.
"""

import base64

import pytest

from userstream.core.crypto import BLOCK_SIZE, EmailCipher
from userstream.core.exceptions import EncryptionError


class TestEmailCipher:
    """Test encrypt/decrypt behaviour of EmailCipher."""

    def test_round_trip(self, cipher: EmailCipher) -> None:
        """Test decrypt(encrypt(x)) returns x."""
        plaintext = "john.doe@example.com"

        assert cipher.decrypt(cipher.encrypt(plaintext)) == plaintext

    def test_round_trip_non_ascii(self, cipher: EmailCipher) -> None:
        """Test multi-byte UTF-8 values survive encryption."""
        plaintext = "jürgen.müller@exämple.de"

        assert cipher.decrypt(cipher.encrypt(plaintext)) == plaintext

    def test_ciphertext_does_not_contain_plaintext(self, cipher: EmailCipher) -> None:
        """Test the encoded ciphertext never leaks the email."""
        ciphertext = cipher.encrypt("alice@example.com")

        assert "alice" not in ciphertext
        assert "@" not in ciphertext

    def test_random_iv_per_value(self, cipher: EmailCipher) -> None:
        """Test the same plaintext encrypts differently each time."""
        first = cipher.encrypt("alice@example.com")
        second = cipher.encrypt("alice@example.com")

        assert first != second
        assert cipher.decrypt(first) == cipher.decrypt(second)

    def test_ciphertext_layout(self, cipher: EmailCipher) -> None:
        """Test output is base64 of a 16 byte IV followed by ciphertext of equal length."""
        plaintext = "bob@example.com"

        raw = base64.b64decode(cipher.encrypt(plaintext))

        assert len(raw) == BLOCK_SIZE + len(plaintext.encode("utf-8"))

    def test_empty_string(self, cipher: EmailCipher) -> None:
        """Test an empty value still round-trips."""
        assert cipher.decrypt(cipher.encrypt("")) == ""

    @pytest.mark.parametrize("key_length", [16, 24, 32])
    def test_valid_key_sizes(self, key_length: int) -> None:
        """Test AES-128, AES-192 and AES-256 keys are accepted."""
        cipher = EmailCipher(b"k" * key_length)

        assert cipher.decrypt(cipher.encrypt("x@y.z")) == "x@y.z"

    def test_string_key_accepted(self) -> None:
        """Test a text key is encoded before use."""
        cipher = EmailCipher("0123456789abcdef")  # type: ignore[arg-type]

        assert cipher.decrypt(cipher.encrypt("x@y.z")) == "x@y.z"

    @pytest.mark.parametrize("key", [b"", b"short", b"k" * 17, b"k" * 64])
    def test_invalid_key_rejected(self, key: bytes) -> None:
        """Test keys of unsupported length raise EncryptionError."""
        with pytest.raises(EncryptionError) as exc_info:
            EmailCipher(key)

        assert exc_info.value.details["key_length"] == len(key)


class TestDecryptionErrors:
    """Test decrypt rejects malformed input."""

    def test_invalid_base64(self, cipher: EmailCipher) -> None:
        """Test non-base64 input raises EncryptionError."""
        with pytest.raises(EncryptionError):
            cipher.decrypt("not base64 at all!!")

    def test_too_short(self, cipher: EmailCipher) -> None:
        """Test input shorter than one IV raises EncryptionError."""
        with pytest.raises(EncryptionError, match="too short"):
            cipher.decrypt(base64.b64encode(b"abc").decode())

    def test_plaintext_is_not_ciphertext(self, cipher: EmailCipher) -> None:
        """Test an unencrypted email is not mistaken for ciphertext."""
        with pytest.raises(EncryptionError):
            cipher.decrypt("alice@example.com")

    def test_wrong_key_does_not_return_plaintext(self, cipher: EmailCipher) -> None:
        """Test a different key never yields the original value."""
        ciphertext = cipher.encrypt("alice@example.com")
        other = EmailCipher(b"fedcba9876543210fedcba9876543210")

        try:
            result = other.decrypt(ciphertext)
        except EncryptionError:
            return
        assert result != "alice@example.com"
