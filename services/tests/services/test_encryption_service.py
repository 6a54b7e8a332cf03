"""Tests for the AES-GCM token cipher."""

import base64
from types import SimpleNamespace

import pytest

from tfregistry.services.encryption_service import (
    CiphertextCorrupted,
    DecryptionFailed,
    KeyLengthInvalid,
    SaltTooShort,
    TokenCipher,
    TokenCipherError,
    build_token_cipher,
    generate_key,
    generate_salt,
)


@pytest.fixture
def cipher():
    return TokenCipher(b"k" * 32)


class TestTokenCipher:
    def test_round_trip(self, cipher):
        sealed = cipher.seal("gho_abc123")
        assert sealed != "gho_abc123"
        assert cipher.open(sealed) == "gho_abc123"

    def test_fresh_nonce_per_call(self, cipher):
        assert cipher.seal("same") != cipher.seal("same")

    def test_empty_stays_empty(self, cipher):
        assert cipher.seal("") == ""
        assert cipher.open("") == ""

    def test_ciphertext_is_urlsafe(self, cipher):
        sealed = cipher.seal("x" * 200)
        assert "+" not in sealed
        assert "/" not in sealed

    def test_wrong_key_fails(self, cipher):
        sealed = cipher.seal("secret")
        other = TokenCipher(b"o" * 32)
        with pytest.raises(DecryptionFailed):
            other.open(sealed)

    def test_tampered_ciphertext_fails(self, cipher):
        raw = bytearray(base64.urlsafe_b64decode(cipher.seal("secret")))
        raw[-1] ^= 0x01
        with pytest.raises(DecryptionFailed):
            cipher.open(base64.urlsafe_b64encode(bytes(raw)).decode())

    def test_too_short_is_corrupted(self, cipher):
        short = base64.urlsafe_b64encode(b"\x00" * 10).decode()
        with pytest.raises(CiphertextCorrupted):
            cipher.open(short)

    def test_not_base64_is_corrupted(self, cipher):
        with pytest.raises(CiphertextCorrupted):
            cipher.open("not base64 at all!!")

    def test_key_length_enforced(self):
        with pytest.raises(KeyLengthInvalid):
            TokenCipher(b"short")

    def test_errors_share_base(self):
        assert issubclass(DecryptionFailed, TokenCipherError)
        assert issubclass(SaltTooShort, TokenCipherError)


class TestDerive:
    def test_same_inputs_same_key(self):
        a = TokenCipher.derive("passphrase", b"s" * 16, iterations=10_000)
        b = TokenCipher.derive("passphrase", b"s" * 16, iterations=10_000)
        assert b.open(a.seal("value")) == "value"

    def test_different_salt_different_key(self):
        a = TokenCipher.derive("passphrase", b"s" * 16, iterations=10_000)
        b = TokenCipher.derive("passphrase", b"t" * 16, iterations=10_000)
        with pytest.raises(DecryptionFailed):
            b.open(a.seal("value"))

    def test_short_salt_rejected(self):
        with pytest.raises(SaltTooShort):
            TokenCipher.derive("passphrase", b"short")


class TestKeyGeneration:
    def test_generate_key_decodes_to_32_bytes(self):
        assert len(base64.urlsafe_b64decode(generate_key())) == 32

    def test_generate_salt_length(self):
        assert len(base64.urlsafe_b64decode(generate_salt(24))) == 24

    def test_generate_salt_minimum(self):
        with pytest.raises(SaltTooShort):
            generate_salt(8)


class TestBuildTokenCipher:
    def test_from_key(self):
        enc = SimpleNamespace(key=generate_key(), passphrase="", salt="", kdf_iterations=0)
        cipher = build_token_cipher(enc)
        assert cipher.open(cipher.seal("v")) == "v"

    def test_from_passphrase(self):
        enc = SimpleNamespace(
            key="", passphrase="hunter2", salt=generate_salt(), kdf_iterations=10_000
        )
        cipher = build_token_cipher(enc)
        assert cipher.open(cipher.seal("v")) == "v"

    def test_nothing_configured(self):
        enc = SimpleNamespace(key="", passphrase="", salt="", kdf_iterations=0)
        with pytest.raises(TokenCipherError, match="No encryption key configured"):
            build_token_cipher(enc)

    def test_bad_key_length(self):
        enc = SimpleNamespace(
            key=base64.urlsafe_b64encode(b"x" * 16).decode(),
            passphrase="",
            salt="",
            kdf_iterations=0,
        )
        with pytest.raises(KeyLengthInvalid):
            build_token_cipher(enc)
