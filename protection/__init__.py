"""
Field-level protection of PII

This package provides:
- Deterministic identifier hashing (the cross-tenant correlation key)
- Key provider adapters (AWS KMS, local Fernet)
- The encryption gateway with retry, caching and audit
- Sensitive field schemas and the record vault
"""

from protection.errors import (
    ProviderErrorKind,
    ProtectionError,
    EncryptionError,
    DecryptionError,
    SchemaError,
    CacheEvictionError,
)
from protection.hashing import IdentifierHasher, normalize_identifier
from protection.providers import (
    ProviderResult,
    KeyProvider,
    AwsKmsKeyProvider,
    FernetKeyProvider,
    classify_error_code,
    create_key_provider,
)
from protection.cache import EncryptionCache
from protection.gateway import (
    EncryptionGateway,
    DECRYPTION_ERROR_SENTINEL,
    ENCRYPTION_ERROR_SENTINEL,
)
from protection.schema import FieldRule, SensitiveField, RecordSchema, IDENTITY_DOCUMENT
from protection.record_vault import RecordVault, ProtectionResult

__all__ = [
    # Errors
    'ProviderErrorKind',
    'ProtectionError',
    'EncryptionError',
    'DecryptionError',
    'SchemaError',
    'CacheEvictionError',
    # Hashing
    'IdentifierHasher',
    'normalize_identifier',
    # Providers
    'ProviderResult',
    'KeyProvider',
    'AwsKmsKeyProvider',
    'FernetKeyProvider',
    'classify_error_code',
    'create_key_provider',
    # Gateway
    'EncryptionCache',
    'EncryptionGateway',
    'DECRYPTION_ERROR_SENTINEL',
    'ENCRYPTION_ERROR_SENTINEL',
    # Records
    'FieldRule',
    'SensitiveField',
    'RecordSchema',
    'IDENTITY_DOCUMENT',
    'RecordVault',
    'ProtectionResult',
]
