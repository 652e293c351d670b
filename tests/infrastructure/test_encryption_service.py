"""Unit tests for EncryptionService."""

import os
from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet

from intake_gateway.infrastructure.encryption import EncryptionService


class TestEncryptionService:
    """Test suite for EncryptionService."""

    def test_round_trip(self):
        """Test that encrypted values decrypt to the original text."""
        service = EncryptionService(key=Fernet.generate_key())
        token = service.encrypt("jane@x.com")

        assert token != "jane@x.com"
        assert service.decrypt(token) == "jane@x.com"

    def test_ciphertext_is_not_deterministic(self):
        service = EncryptionService(key=Fernet.generate_key())
        assert service.encrypt("Jane") != service.encrypt("Jane")

    def test_empty_values_stay_empty(self):
        service = EncryptionService(key=Fernet.generate_key())
        assert service.encrypt("") == ""
        assert service.decrypt("") == ""

    def test_decrypt_degrades_on_foreign_values(self):
        """Test that plain text and tokens from another key are returned as-is."""
        service = EncryptionService(key=Fernet.generate_key())
        other = EncryptionService(key=Fernet.generate_key())
        foreign = other.encrypt("Jane")

        assert service.decrypt("legacy plain text") == "legacy plain text"
        assert service.decrypt(foreign) == foreign

    def test_decrypt_optional(self):
        service = EncryptionService(key=Fernet.generate_key())
        assert service.decrypt_optional(None) is None
        assert service.decrypt_optional(service.encrypt("x")) == "x"

    def test_invalid_key(self):
        with pytest.raises(ValueError):
            EncryptionService(key=b"not-a-fernet-key")

    def test_key_from_environment(self):
        key = Fernet.generate_key()
        with patch.dict(os.environ, {"ENCRYPTION_KEY": key.decode(), "ENCRYPTION_KEY_ID": "k-2026"}):
            service = EncryptionService()

        assert service.get_key_id() == "k-2026"
        assert Fernet(key).decrypt(service.encrypt("Jane").encode()).decode() == "Jane"

    def test_key_derived_from_password(self):
        """Test that the same password always derives the same key."""
        env = {"ENCRYPTION_KEY_PASSWORD": "correct horse", "ENCRYPTION_KEY_SALT": "test-salt"}
        with patch.dict(os.environ, env):
            os.environ.pop("ENCRYPTION_KEY", None)
            first = EncryptionService()
            second = EncryptionService()

        assert second.decrypt(first.encrypt("Jane")) == "Jane"
