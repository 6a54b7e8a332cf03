"""AES-256-GCM cipher for OAuth tokens and SCM client secrets at rest.

Ciphertexts are URL-safe base64 of ``nonce || ciphertext || tag`` with a
fresh 12-byte nonce per call. Empty values stay empty so that optional
columns (refresh tokens, unset secrets) round-trip without special casing.

The cipher is built once at startup by :func:`build_token_cipher` and handed
to the components that need it; there is no module-level key.
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from tfregistry.logging_config import get_logger

logger = get_logger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
MIN_SALT_SIZE = 16
MIN_KDF_ITERATIONS = 10_000
DEFAULT_KDF_ITERATIONS = 100_000


class TokenCipherError(Exception):
    """Base class for credential cipher failures."""


class KeyLengthInvalid(TokenCipherError):
    def __init__(self, length: int) -> None:
        super().__init__(f"encryption key must be {KEY_SIZE} bytes, got {length}")


class SaltTooShort(TokenCipherError):
    def __init__(self, length: int) -> None:
        super().__init__(f"salt must be at least {MIN_SALT_SIZE} bytes, got {length}")


class CiphertextCorrupted(TokenCipherError):
    """Ciphertext is not valid base64 or is too short to hold a nonce and tag."""


class DecryptionFailed(TokenCipherError):
    """Authentication tag did not verify: wrong key or tampered data."""


class TokenCipher:
    """Authenticated symmetric encryption with a single 256-bit master key."""

    def __init__(self, master_key: bytes) -> None:
        if len(master_key) != KEY_SIZE:
            raise KeyLengthInvalid(len(master_key))
        self._aead = AESGCM(master_key)

    @classmethod
    def derive(
        cls,
        passphrase: str,
        salt: bytes,
        iterations: int = DEFAULT_KDF_ITERATIONS,
    ) -> "TokenCipher":
        """Build a cipher from a passphrase using PBKDF2-HMAC-SHA256."""
        if len(salt) < MIN_SALT_SIZE:
            raise SaltTooShort(len(salt))
        if iterations < MIN_KDF_ITERATIONS:
            iterations = DEFAULT_KDF_ITERATIONS
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=iterations,
        )
        return cls(kdf.derive(passphrase.encode()))

    def seal_bytes(self, plaintext: bytes) -> str:
        if not plaintext:
            return ""
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext, None)
        return base64.urlsafe_b64encode(nonce + sealed).decode("ascii")

    def open_bytes(self, ciphertext: str) -> bytes:
        if not ciphertext:
            return b""
        try:
            raw = base64.urlsafe_b64decode(ciphertext.encode("ascii"))
        except (binascii.Error, UnicodeEncodeError, ValueError):
            raise CiphertextCorrupted("ciphertext is not valid base64") from None
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise CiphertextCorrupted("ciphertext too short")
        try:
            return self._aead.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
        except InvalidTag:
            raise DecryptionFailed("failed to decrypt value: key mismatch or tampered data") from None

    def seal(self, plaintext: str) -> str:
        """Encrypt a string. Returns URL-safe base64 ciphertext."""
        return self.seal_bytes(plaintext.encode())

    def open(self, ciphertext: str) -> str:
        """Decrypt a value produced by :meth:`seal`."""
        return self.open_bytes(ciphertext).decode()


def generate_key() -> str:
    """Return a fresh URL-safe base64 encoded 256-bit key."""
    return base64.urlsafe_b64encode(os.urandom(KEY_SIZE)).decode("ascii")


def generate_salt(length: int = MIN_SALT_SIZE) -> str:
    if length < MIN_SALT_SIZE:
        raise SaltTooShort(length)
    return base64.urlsafe_b64encode(os.urandom(length)).decode("ascii")


def _decode_b64(value: str, what: str) -> bytes:
    try:
        return base64.urlsafe_b64decode(value.encode("ascii"))
    except (binascii.Error, ValueError):
        raise TokenCipherError(f"{what} is not valid URL-safe base64") from None


def build_token_cipher(encryption) -> TokenCipher:
    """Create the process cipher from an ``EncryptionConfig``.

    A raw key takes precedence over passphrase derivation.
    """
    if encryption.key:
        cipher = TokenCipher(_decode_b64(encryption.key, "encryption key"))
        logger.info("Token cipher initialized", source="key")
        return cipher
    if encryption.passphrase:
        salt = _decode_b64(encryption.salt, "encryption salt")
        cipher = TokenCipher.derive(encryption.passphrase, salt, encryption.kdf_iterations)
        logger.info("Token cipher initialized", source="passphrase")
        return cipher
    raise TokenCipherError(
        "No encryption key configured. Set TFREGISTRY_ENCRYPTION__KEY "
        "or TFREGISTRY_ENCRYPTION__PASSPHRASE and TFREGISTRY_ENCRYPTION__SALT."
    )
