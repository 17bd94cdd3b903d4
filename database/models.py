"""
SQLAlchemy ORM Models for the PII protection core

Schema notes:
- Raw identifiers are never stored; only ciphertext and the SHA-256 identifier hash
- identifier_hash is indexed together with created_at for bounded duplicate lookups
- One row per encrypted field, unique per (record, field)
- Timestamps for all records (created_at, updated_at)

Tables:
1. sensitive_records - One verification record per row, owned by a tenant
2. encrypted_fields - Ciphertext of each sensitive field of a record
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, DateTime, Text,
    ForeignKey, Index, UniqueConstraint, JSON, Uuid
)
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

# Base class for all models
Base = declarative_base()


# ============================================
# ENUMS
# ============================================

class RecordStatus(str, PyEnum):
    """Lifecycle status of a verification record"""
    CREATED = "created"
    DOCUMENTS_UPLOADING = "documents_uploading"
    DOCUMENTS_COMPLETE = "documents_complete"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    PENDING_REVIEW = "pending_review"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_REJECTED = "auto_rejected"
    RESUBMISSION_REQUIRED = "resubmission_required"
    EXPIRED = "expired"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False
    )


# ============================================
# RECORD TABLES
# ============================================

class SensitiveRecord(Base, TimestampMixin):
    """
    A verification record holding protected PII.

    The record id and owner id come from the surrounding platform. Status is
    stored as a plain string so statuses from upstream systems round-trip.
    """
    __tablename__ = "sensitive_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    record_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="identity_document"
    )

    # Cross-tenant correlation key (SHA-256 hex of the raw identifier)
    identifier_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=RecordStatus.CREATED.value,
        index=True
    )
    biometric_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Duplicate check outcome
    duplicate_check: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    requires_manual_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flag_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Bumped on every write
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    fields: Mapped[List["EncryptedField"]] = relationship(
        "EncryptedField",
        back_populates="record",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    __table_args__ = (
        Index('ix_sensitive_records_hash_created', 'identifier_hash', 'created_at'),
    )

    def __repr__(self) -> str:
        return f"<SensitiveRecord(id='{self.id}', owner='{self.owner_id}', status='{self.status}')>"


class EncryptedField(Base, TimestampMixin):
    """Ciphertext of one sensitive field of a record."""
    __tablename__ = "encrypted_fields"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    record_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("sensitive_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    field_name: Mapped[str] = mapped_column(String(100), nullable=False)
    ciphertext: Mapped[str] = mapped_column(Text, nullable=False)

    record: Mapped["SensitiveRecord"] = relationship(
        "SensitiveRecord",
        back_populates="fields"
    )

    __table_args__ = (
        UniqueConstraint('record_id', 'field_name', name='uq_encrypted_field_record_field'),
    )

    def __repr__(self) -> str:
        # Ciphertext deliberately left out
        return f"<EncryptedField(record_id='{self.record_id}', field='{self.field_name}')>"
