"""Tests for FieldEncryptor (Fernet sealing of device metadata)."""

from __future__ import annotations

import pytest
from cryptography.fernet import Fernet

from mediguard.core.storage.encryption import EncryptionError, FieldEncryptor


@pytest.fixture
def encryptor() -> FieldEncryptor:
    return FieldEncryptor(FieldEncryptor.generate_key())


class TestSealing:
    def test_device_info_round_trip(self, encryptor):
        info = {"platform": "android", "model": "Pixel 8", "app_version": "1.4.0"}
        sealed = encryptor.encrypt(info)
        assert "Pixel" not in sealed
        assert encryptor.decrypt(sealed) == info

    def test_none_is_empty_string(self, encryptor):
        assert encryptor.encrypt(None) == ""
        assert encryptor.decrypt("") is None

    def test_non_serializable_rejected(self, encryptor):
        with pytest.raises(EncryptionError, match="JSON-serializable"):
            encryptor.encrypt({"when": object()})


class TestKeys:
    @pytest.mark.parametrize("key", ["", "   "])
    def test_blank_key(self, key):
        with pytest.raises(EncryptionError, match="must not be empty"):
            FieldEncryptor(key)

    def test_malformed_key(self):
        with pytest.raises(EncryptionError, match="Invalid encryption key"):
            FieldEncryptor("definitely-not-fernet")

    def test_wrong_key(self, encryptor):
        sealed = encryptor.encrypt({"platform": "ios"})
        with pytest.raises(EncryptionError, match="wrong key"):
            FieldEncryptor(Fernet.generate_key().decode()).decrypt(sealed)

    def test_tampered_token(self, encryptor):
        sealed = encryptor.encrypt({"platform": "ios"})
        with pytest.raises(EncryptionError):
            encryptor.decrypt(sealed[:-6] + "AAAAAA")
