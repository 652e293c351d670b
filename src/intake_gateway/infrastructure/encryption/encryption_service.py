"""Encryption service for PHI fields.

This service provides field-level encryption for patient identity values and
tenant credentials stored by the intake pipeline.

Security Impact:
    - Uses AES-128-CBC + HMAC-SHA256 via Fernet (authenticated symmetric encryption)
    - Keys derived from environment variables or key management service
    - All patient identity fields and tenant credentials are encrypted at rest
    - Decryption never raises: foreign or corrupt ciphertext is returned as-is
      so identity resolution degrades instead of failing the request

Architecture:
    - Infrastructure layer component implementing PHICipherPort
    - Used by identity resolution, tenant authentication and the CLI
    - Follows Hexagonal Architecture: isolated from domain core
"""

import base64
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from intake_gateway.domain.ports import PHICipherPort

logger = logging.getLogger(__name__)


class EncryptionService(PHICipherPort):
    """Service for encrypting/decrypting PHI values.

    Keys are derived from environment variable or key management service.

    Security Impact:
        - Ciphertext is a URL-safe text token, storable in any VARCHAR column
        - Keys should be stored securely (env vars, key management service)
        - Supports key rotation via key_id tracking
    """

    def __init__(self, key: Optional[bytes] = None, key_id: Optional[str] = None):
        """Initialize encryption service.

        Parameters:
            key: Fernet key bytes, base64-encoded (if None, derived from env var)
            key_id: Identifier for the encryption key (for rotation support)
        """
        if key is None:
            key = self._derive_key_from_env()

        try:
            self.cipher = Fernet(key)
        except ValueError as e:
            logger.error(f"Invalid encryption key: {str(e)}")
            raise ValueError("Invalid encryption key format. Key must be base64-encoded 32-byte key.") from e

        self.key_id = key_id or os.getenv('ENCRYPTION_KEY_ID', 'default')
        logger.debug(f"EncryptionService initialized with key_id: {self.key_id}")

    @staticmethod
    def _derive_key_from_env() -> bytes:
        """Derive encryption key from environment variable.

        Looks for ENCRYPTION_KEY environment variable. If not found,
        derives from ENCRYPTION_KEY_PASSWORD using PBKDF2.

        Returns:
            bytes: base64-encoded 32-byte Fernet key
        """
        key_str = os.getenv('ENCRYPTION_KEY')
        if key_str:
            return key_str.encode('utf-8')

        password = os.getenv('ENCRYPTION_KEY_PASSWORD')
        if password:
            salt = os.getenv('ENCRYPTION_KEY_SALT', 'intake-gateway-salt').encode('utf-8')
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=salt,
                iterations=100000,
            )
            return base64.urlsafe_b64encode(kdf.derive(password.encode('utf-8')))

        # Fallback: generate a key (NOT SECURE for production!)
        logger.warning(
            "No ENCRYPTION_KEY or ENCRYPTION_KEY_PASSWORD found. "
            "Using generated key (NOT SECURE for production!). "
            "Set ENCRYPTION_KEY environment variable."
        )
        return Fernet.generate_key()

    def encrypt(self, value: str) -> str:
        """Encrypt a single value.

        Parameters:
            value: Plain text value

        Returns:
            str: Fernet token; empty input stays empty
        """
        if not value:
            return value
        return self.cipher.encrypt(value.encode('utf-8')).decode('ascii')

    def decrypt(self, cipher: str) -> str:
        """Decrypt a single value, degrading instead of raising.

        Parameters:
            cipher: Fernet token (or legacy plain text)

        Returns:
            str: Decrypted value, or the input unchanged if it cannot be decrypted
        """
        if not cipher:
            return cipher
        try:
            return self.cipher.decrypt(cipher.encode('utf-8')).decode('utf-8')
        except (InvalidToken, ValueError, UnicodeError):
            logger.debug("Value could not be decrypted; using stored value as-is")
            return cipher

    def decrypt_optional(self, cipher: Optional[str]) -> Optional[str]:
        if cipher is None:
            return None
        return self.decrypt(cipher)

    def get_key_id(self) -> str:
        """Get the current encryption key ID."""
        return self.key_id
