"""
Database Package for the PII protection core

This package provides:
- SQLAlchemy ORM models for protected records and their encrypted fields
- Async session provider with transactional session scopes
- StorageAdapter boundary with in-memory and SQLAlchemy implementations
- Alembic integration for migrations
"""

from database.models import (
    Base,
    RecordStatus,
    SensitiveRecord,
    EncryptedField,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    create_test_provider,
)
from database.repositories import (
    StorageAdapter,
    CandidateRecord,
    InMemoryRecordStore,
    SqlAlchemyRecordStore,
    RepositoryError,
    RecordNotFoundError,
    OwnerMismatchError,
    StorageQueryError,
)

__all__ = [
    # Models
    'Base',
    'RecordStatus',
    'SensitiveRecord',
    'EncryptedField',
    # Connection
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'create_test_provider',
    # Storage adapters
    'StorageAdapter',
    'CandidateRecord',
    'InMemoryRecordStore',
    'SqlAlchemyRecordStore',
    # Errors
    'RepositoryError',
    'RecordNotFoundError',
    'OwnerMismatchError',
    'StorageQueryError',
]
