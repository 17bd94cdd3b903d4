"""
Record-level protection on top of the encryption gateway and a storage adapter.

protect_record hashes the indexed field and encrypts every sensitive field in
one step, then persists ciphertexts and the hash together. reveal_record and
reveal_records decrypt with per-field isolation.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Iterable

from database.models import RecordStatus
from database.repositories import StorageAdapter, RepositoryError
from log_utils import sanitize_for_logging
from protection.gateway import EncryptionGateway, ENCRYPTION_ERROR_SENTINEL
from protection.schema import RecordSchema, IDENTITY_DOCUMENT

logger = logging.getLogger(__name__)


@dataclass
class ProtectionResult:
    """Outcome of protecting one record"""
    record_id: str
    identifier_hash: Optional[str] = None
    encrypted_fields: List[str] = field(default_factory=list)
    failed_fields: Dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failed_fields

    @property
    def field_status(self) -> Dict[str, str]:
        """field_name -> "encrypted", or "[ENCRYPTION_ERROR]" for fields that were not stored"""
        status = {name: "encrypted" for name in self.encrypted_fields}
        status.update({name: ENCRYPTION_ERROR_SENTINEL for name in self.failed_fields})
        return status

    def to_dict(self) -> Dict[str, Any]:
        return {
            'record_id': self.record_id,
            'identifier_hash': self.identifier_hash,
            'fields': self.field_status,
            'failed_fields': dict(self.failed_fields),
            'complete': self.complete
        }


class RecordVault:
    """Protects and reveals the sensitive fields of stored records"""

    def __init__(
        self,
        gateway: EncryptionGateway,
        storage: StorageAdapter,
        schema: RecordSchema = IDENTITY_DOCUMENT
    ):
        self.gateway = gateway
        self.storage = storage
        self.schema = schema

    async def protect_record(
        self,
        record_id: str,
        owner_id: str,
        values: Dict[str, str],
        status: str = RecordStatus.CREATED.value,
        biometric_score: Optional[float] = None
    ) -> ProtectionResult:
        """
        Encrypt and persist the sensitive fields of a record.

        Args:
            record_id: Record identifier
            owner_id: Owning tenant
            values: field_name -> plaintext, restricted to the schema's fields
            status: Record status to store
            biometric_score: Optional biometric similarity score

        Returns:
            ProtectionResult listing encrypted and failed fields

        Raises:
            SchemaError: If values contain unknown fields
            StorageQueryError: If the store rejects the write
        """
        self.schema.validate_values(values)

        identifier_hash = None
        indexed = self.schema.indexed_field
        if indexed is not None and indexed.name in values:
            identifier_hash = self.gateway.hash_field(values[indexed.name])

        encrypted, failed = await self.gateway.encrypt_fields(values, record_id)
        if failed:
            logger.warning(
                f"Record {sanitize_for_logging(record_id)}: {len(failed)} field(s) failed to encrypt "
                f"and were not stored: {', '.join(sorted(failed))}"
            )

        # The stored hash must always describe the stored identifier ciphertext
        if identifier_hash is not None and indexed.name not in encrypted:
            identifier_hash = None

        await self.storage.put_encrypted_fields(
            record_id,
            owner_id,
            encrypted,
            identifier_hash=identifier_hash,
            status=status,
            biometric_score=biometric_score
        )

        return ProtectionResult(
            record_id=record_id,
            identifier_hash=identifier_hash,
            encrypted_fields=sorted(encrypted),
            failed_fields=failed
        )

    async def reveal_record(self, record_id: str) -> Dict[str, str]:
        """
        Decrypt every stored field of a record.

        Fields that cannot be decrypted map to "[DECRYPTION_ERROR]".

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        field_map = await self.storage.get_encrypted_fields(record_id)
        return await self.gateway.decrypt_fields(field_map, record_id)

    async def reveal_records(self, record_ids: Iterable[str]) -> Dict[str, Dict[str, str]]:
        """Batch reveal; a record that cannot be loaded maps to an empty dict."""
        ids = list(record_ids)
        outcomes = await asyncio.gather(
            *(self.reveal_record(record_id) for record_id in ids),
            return_exceptions=True
        )

        revealed: Dict[str, Dict[str, str]] = {}
        for record_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, RepositoryError):
                logger.error(f"Could not load record {sanitize_for_logging(record_id)}: {type(outcome).__name__}")
                revealed[record_id] = {}
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                revealed[record_id] = outcome
        return revealed
