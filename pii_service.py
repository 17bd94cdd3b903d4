"""
PII Protection Service

Wires the encryption gateway, record vault and duplicate detection together
from configuration, and exposes the operations the rest of the platform calls:
encrypt_field, decrypt_field, hash_field and check_duplicates.

Usage:
    service = build_service(ConfigManager("config.yaml"))
    await service.start()
    result = await service.vault.protect_record("rec-1", "owner-a", {"identifier": "ID123"})
    check = await service.check_duplicates("ID123", "rec-1", "owner-a", 91.0)
    await service.close()
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

from audit_logger import AuditSink, LoggingAuditSink
from config_manager import ConfigManager, get_config
from database.connection import DatabaseSessionProvider, DatabaseSettings
from database.repositories import StorageAdapter, SqlAlchemyRecordStore
from fraud.duplicates import DuplicateDetectionService, DuplicateDetectionResult, DuplicateResultStore
from log_utils import setup_logging
from monitoring import get_metrics, get_slow_operation_report
from protection.gateway import EncryptionGateway
from protection.providers import KeyProvider
from protection.record_vault import RecordVault
from protection.schema import RecordSchema, IDENTITY_DOCUMENT

logger = logging.getLogger(__name__)


@dataclass
class PiiProtectionService:
    """The assembled protection and duplicate-detection components"""
    gateway: EncryptionGateway
    vault: RecordVault
    duplicates: DuplicateDetectionService
    results: DuplicateResultStore
    db_provider: Optional[DatabaseSessionProvider] = None

    async def start(self) -> None:
        """Initialize the database connection, if this service owns one, and start the cache sweep."""
        if self.db_provider is not None:
            await self.db_provider.init()
        self.gateway.start_cache_sweeper()

    async def close(self) -> None:
        await self.gateway.stop_cache_sweeper()
        if self.db_provider is not None:
            await self.db_provider.close()

    async def encrypt_field(self, plaintext: str, resource_id: str, field_name: str,
                            retries: Optional[int] = None) -> str:
        return await self.gateway.encrypt_field(plaintext, resource_id, field_name, retries)

    async def decrypt_field(self, ciphertext: str, resource_id: str, field_name: str,
                            retries: Optional[int] = None) -> str:
        return await self.gateway.decrypt_field(ciphertext, resource_id, field_name, retries)

    def hash_field(self, plaintext: str) -> str:
        return self.gateway.hash_field(plaintext)

    async def check_duplicates(
        self,
        raw_identifier: str,
        current_record_id: str,
        current_owner_id: str,
        current_biometric_score: Optional[float] = None
    ) -> DuplicateDetectionResult:
        return await self.duplicates.check_duplicates(
            raw_identifier, current_record_id, current_owner_id, current_biometric_score
        )

    async def health(self) -> Dict[str, Any]:
        """Status report with cache size, database reachability and call metrics."""
        database_ok = None
        if self.db_provider is not None:
            database_ok = await self.db_provider.health_check()

        return {
            'status': "degraded" if database_ok is False else "healthy",
            'key_provider': self.gateway.provider.name,
            'cache_entries': len(self.gateway.cache),
            'database': database_ok,
            'metrics': get_metrics(),
            'slow_operations': get_slow_operation_report()
        }


def build_service(
    config: Optional[ConfigManager] = None,
    storage: Optional[StorageAdapter] = None,
    provider: Optional[KeyProvider] = None,
    audit_sink: Optional[AuditSink] = None,
    schema: RecordSchema = IDENTITY_DOCUMENT,
    configure_logging: bool = False
) -> PiiProtectionService:
    """
    Assemble the service from configuration.

    Args:
        config: Configuration (the shared instance if omitted)
        storage: Storage adapter (SQLAlchemy store from config if omitted)
        provider: Key provider (built from config if omitted)
        audit_sink: Audit destination (JSON-lines audit log if omitted)
        schema: Sensitive field schema for the record vault
        configure_logging: Install handlers from the logging config section

    Returns:
        PiiProtectionService
    """
    config = config or get_config()

    if configure_logging:
        setup_logging(
            level=config.logging.level,
            log_file=config.logging.file,
            console=config.logging.console,
            fmt=config.logging.format
        )

    db_provider = None
    if storage is None:
        db_provider = DatabaseSessionProvider(DatabaseSettings.from_config(config.database))
        storage = SqlAlchemyRecordStore(db_provider)

    if audit_sink is None:
        audit_sink = LoggingAuditSink(log_dir=config.logging.audit_log_dir)

    gateway = EncryptionGateway.from_config(config, provider=provider, audit_sink=audit_sink)
    duplicates = DuplicateDetectionService.from_config(config, storage, audit_sink=audit_sink)

    logger.info(
        f"PII protection service ready (provider={gateway.provider.name}, "
        f"storage={type(storage).__name__})"
    )
    return PiiProtectionService(
        gateway=gateway,
        vault=RecordVault(gateway, storage, schema),
        duplicates=duplicates,
        results=DuplicateResultStore(storage),
        db_provider=db_provider
    )
