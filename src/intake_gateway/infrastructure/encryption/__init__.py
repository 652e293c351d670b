"""PHI encryption services."""

from intake_gateway.infrastructure.encryption.encryption_service import EncryptionService

__all__ = ["EncryptionService"]
