"""
Error types for field encryption.

Provider failures are classified once, at the key-provider boundary, into
TRANSIENT (retried) and PERMANENT (never retried) kinds. Everything above that
boundary branches on the kind and never re-inspects provider error names.
"""

from enum import Enum
from typing import Optional


class ProviderErrorKind(str, Enum):
    """Retry classification of a key-provider failure"""
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ProtectionError(Exception):
    """Base exception for PII protection errors."""

    def __init__(
        self,
        message: str,
        *,
        error_code: str = "UNKNOWN",
        kind: ProviderErrorKind = ProviderErrorKind.PERMANENT,
        attempts: int = 0,
        resource_id: Optional[str] = None,
        field_name: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.kind = kind
        self.attempts = attempts
        self.resource_id = resource_id
        self.field_name = field_name

    @property
    def retryable(self) -> bool:
        return self.kind == ProviderErrorKind.TRANSIENT


class EncryptionError(ProtectionError):
    """Raised when a field cannot be encrypted."""
    pass


class DecryptionError(ProtectionError):
    """Raised when a field cannot be decrypted."""
    pass


class SchemaError(ValueError):
    """Raised when values or a schema definition break the sensitive field rules."""
    pass


class CacheEvictionError(RuntimeError):
    """Internal cache invariant violation; the gateway drops the cache and continues."""
    pass
