"""
Storage adapters for protected records

StorageAdapter is the boundary the protection and fraud code talks to. Two
implementations are provided:
- InMemoryRecordStore for tests and single-process tools
- SqlAlchemyRecordStore backed by the async session provider
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from database.connection import DatabaseSessionProvider
from database.models import SensitiveRecord, EncryptedField, RecordStatus, utcnow
from log_utils import sanitize_for_logging
from monitoring import async_timed_operation

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class RecordNotFoundError(RepositoryError):
    """Raised when a record is not found."""
    pass


class OwnerMismatchError(RepositoryError):
    """Raised when a write names a different owner than the stored record."""
    pass


class StorageQueryError(RepositoryError):
    """Raised when the backing store fails a read or write."""
    pass


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. from SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class CandidateRecord:
    """A stored record sharing an identifier hash"""
    record_id: str
    owner_id: str
    status: str
    created_at: datetime
    biometric_score: Optional[float] = None


# ============================================
# STORAGE BOUNDARY
# ============================================

class StorageAdapter(ABC):
    """Persistence operations needed by the protection and fraud components"""

    @abstractmethod
    async def query_by_identifier_hash(
        self,
        identifier_hash: str,
        limit: Optional[int] = None
    ) -> List[CandidateRecord]:
        """
        Find records sharing an identifier hash, most recent first.

        Args:
            identifier_hash: SHA-256 hex digest of the identifier
            limit: Maximum number of records to return

        Raises:
            StorageQueryError: If the store cannot be queried
        """

    @abstractmethod
    async def put_encrypted_fields(
        self,
        record_id: str,
        owner_id: str,
        field_map: Dict[str, str],
        identifier_hash: Optional[str] = None,
        status: Optional[str] = None,
        biometric_score: Optional[float] = None
    ) -> None:
        """
        Create or update a record with ciphertexts and its identifier hash.

        Fields absent from field_map are left untouched; a None hash, status or
        biometric score keeps the stored value.
        """

    @abstractmethod
    async def get_encrypted_fields(self, record_id: str) -> Dict[str, str]:
        """
        Get the ciphertext of every field of a record.

        Raises:
            RecordNotFoundError: If the record does not exist
        """

    @abstractmethod
    async def store_duplicate_result(
        self,
        record_id: str,
        summary: Dict[str, Any],
        requires_manual_review: bool,
        flag_reason: Optional[str] = None
    ) -> None:
        """
        Attach a duplicate-check summary to a record.

        Raises:
            RecordNotFoundError: If the record does not exist
        """


# ============================================
# IN-MEMORY STORE
# ============================================

@dataclass
class StoredRecord:
    record_id: str
    owner_id: str
    fields: Dict[str, str]
    created_at: datetime
    status: str = RecordStatus.CREATED.value
    identifier_hash: Optional[str] = None
    biometric_score: Optional[float] = None
    duplicate_check: Optional[Dict[str, Any]] = None
    requires_manual_review: bool = False
    flag_reason: Optional[str] = None
    version: int = 1


class InMemoryRecordStore(StorageAdapter):
    """Dict-backed store, safe for concurrent coroutines on one event loop"""

    def __init__(self):
        self._records: Dict[str, StoredRecord] = {}
        self._lock = asyncio.Lock()

    def add_record(
        self,
        record_id: str,
        owner_id: str,
        identifier_hash: Optional[str] = None,
        status: str = RecordStatus.CREATED.value,
        created_at: Optional[datetime] = None,
        biometric_score: Optional[float] = None,
        fields: Optional[Dict[str, str]] = None
    ) -> StoredRecord:
        """Seed a record directly (no locking; for setup code)."""
        record = StoredRecord(
            record_id=record_id,
            owner_id=owner_id,
            fields=dict(fields or {}),
            created_at=created_at or utcnow(),
            status=status,
            identifier_hash=identifier_hash,
            biometric_score=biometric_score
        )
        self._records[record_id] = record
        return record

    def get_record(self, record_id: str) -> Optional[StoredRecord]:
        """Snapshot of a stored record."""
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record else None

    async def query_by_identifier_hash(
        self,
        identifier_hash: str,
        limit: Optional[int] = None
    ) -> List[CandidateRecord]:
        async with self._lock:
            matches = [r for r in self._records.values() if r.identifier_hash == identifier_hash]
        matches.sort(key=lambda r: as_utc(r.created_at), reverse=True)
        if limit is not None:
            matches = matches[:limit]
        return [
            CandidateRecord(
                record_id=r.record_id,
                owner_id=r.owner_id,
                status=r.status,
                created_at=as_utc(r.created_at),
                biometric_score=r.biometric_score
            )
            for r in matches
        ]

    async def put_encrypted_fields(
        self,
        record_id: str,
        owner_id: str,
        field_map: Dict[str, str],
        identifier_hash: Optional[str] = None,
        status: Optional[str] = None,
        biometric_score: Optional[float] = None
    ) -> None:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                record = StoredRecord(
                    record_id=record_id,
                    owner_id=owner_id,
                    fields={},
                    created_at=utcnow(),
                    status=status or RecordStatus.CREATED.value
                )
                self._records[record_id] = record
            elif record.owner_id != owner_id:
                raise OwnerMismatchError(f"Record {record_id} belongs to a different owner")
            else:
                record.version += 1
                if status is not None:
                    record.status = status

            record.fields.update(field_map)
            if identifier_hash is not None:
                record.identifier_hash = identifier_hash
            if biometric_score is not None:
                record.biometric_score = biometric_score

    async def get_encrypted_fields(self, record_id: str) -> Dict[str, str]:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise RecordNotFoundError(f"Record not found: {record_id}")
            return dict(record.fields)

    async def store_duplicate_result(
        self,
        record_id: str,
        summary: Dict[str, Any],
        requires_manual_review: bool,
        flag_reason: Optional[str] = None
    ) -> None:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise RecordNotFoundError(f"Record not found: {record_id}")
            record.duplicate_check = copy.deepcopy(summary)
            if requires_manual_review:
                record.requires_manual_review = True
                record.flag_reason = flag_reason
            record.version += 1


# ============================================
# SQLALCHEMY STORE
# ============================================

class SqlAlchemyRecordStore(StorageAdapter):
    """StorageAdapter over the sensitive_records / encrypted_fields tables."""

    def __init__(self, provider: DatabaseSessionProvider):
        self.provider = provider

    @async_timed_operation("query_by_identifier_hash")
    async def query_by_identifier_hash(
        self,
        identifier_hash: str,
        limit: Optional[int] = None
    ) -> List[CandidateRecord]:
        query = (
            select(SensitiveRecord)
            .where(SensitiveRecord.identifier_hash == identifier_hash)
            .order_by(SensitiveRecord.created_at.desc())
        )
        if limit is not None:
            query = query.limit(limit)

        try:
            async with self.provider.session_scope() as session:
                result = await session.execute(query)
                records = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Identifier hash query failed: {type(e).__name__}")
            raise StorageQueryError(f"Failed to query records by identifier hash: {e}") from e

        return [
            CandidateRecord(
                record_id=r.id,
                owner_id=r.owner_id,
                status=r.status,
                created_at=as_utc(r.created_at),
                biometric_score=r.biometric_score
            )
            for r in records
        ]

    @async_timed_operation("put_encrypted_fields")
    async def put_encrypted_fields(
        self,
        record_id: str,
        owner_id: str,
        field_map: Dict[str, str],
        identifier_hash: Optional[str] = None,
        status: Optional[str] = None,
        biometric_score: Optional[float] = None
    ) -> None:
        try:
            async with self.provider.session_scope() as session:
                record = await session.get(SensitiveRecord, record_id)
                if record is None:
                    record = SensitiveRecord(
                        id=record_id,
                        owner_id=owner_id,
                        status=status or RecordStatus.CREATED.value,
                        fields=[]
                    )
                    session.add(record)
                elif record.owner_id != owner_id:
                    raise OwnerMismatchError(f"Record {record_id} belongs to a different owner")
                else:
                    record.version += 1
                    if status is not None:
                        record.status = status

                if identifier_hash is not None:
                    record.identifier_hash = identifier_hash
                if biometric_score is not None:
                    record.biometric_score = biometric_score

                existing = {f.field_name: f for f in record.fields}
                for field_name, ciphertext in field_map.items():
                    if field_name in existing:
                        existing[field_name].ciphertext = ciphertext
                    else:
                        record.fields.append(EncryptedField(field_name=field_name, ciphertext=ciphertext))
        except SQLAlchemyError as e:
            logger.error(f"Failed to store encrypted fields for {sanitize_for_logging(record_id)}: {type(e).__name__}")
            raise StorageQueryError(f"Failed to store encrypted fields for {sanitize_for_logging(record_id)}") from e

        logger.debug(f"Stored {len(field_map)} encrypted field(s) for record {sanitize_for_logging(record_id)}")

    @async_timed_operation("get_encrypted_fields")
    async def get_encrypted_fields(self, record_id: str) -> Dict[str, str]:
        try:
            async with self.provider.session_scope() as session:
                record = await session.get(SensitiveRecord, record_id)
                if record is None:
                    raise RecordNotFoundError(f"Record not found: {record_id}")
                return {f.field_name: f.ciphertext for f in record.fields}
        except SQLAlchemyError as e:
            logger.error(f"Failed to load encrypted fields for {sanitize_for_logging(record_id)}: {type(e).__name__}")
            raise StorageQueryError(f"Failed to load encrypted fields for {sanitize_for_logging(record_id)}") from e

    @async_timed_operation("store_duplicate_result")
    async def store_duplicate_result(
        self,
        record_id: str,
        summary: Dict[str, Any],
        requires_manual_review: bool,
        flag_reason: Optional[str] = None
    ) -> None:
        try:
            async with self.provider.session_scope() as session:
                record = await session.get(SensitiveRecord, record_id)
                if record is None:
                    raise RecordNotFoundError(f"Record not found: {record_id}")
                record.duplicate_check = summary
                if requires_manual_review:
                    record.requires_manual_review = True
                    record.flag_reason = flag_reason
                record.version += 1
        except SQLAlchemyError as e:
            logger.error(f"Failed to store duplicate result for {sanitize_for_logging(record_id)}: {type(e).__name__}")
            raise StorageQueryError(f"Failed to store duplicate result for {sanitize_for_logging(record_id)}") from e

    async def get_record(self, record_id: str) -> Optional[SensitiveRecord]:
        """Load a record row (detached after the session closes)."""
        try:
            async with self.provider.session_scope() as session:
                return await session.get(SensitiveRecord, record_id)
        except SQLAlchemyError as e:
            raise StorageQueryError(f"Failed to load record {record_id}") from e
