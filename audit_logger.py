"""
Audit Event Logging Module

Provides structured audit events for the PII protection core:
- Field encryption / decryption attempts (success and failure)
- Encryption cache clears
- Duplicate identity checks

The core never persists audit data itself. It emits AuditEvent objects to an
AuditSink; the sinks here write JSON lines to a dedicated log, keep events in
memory, or fan out to several sinks.

SECURITY: Events never carry plaintext. Context values are sanitized and
known-sensitive keys are redacted before anything is written.
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field as dataclass_field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Iterable

from log_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

REDACTED = "***REDACTED***"
SENSITIVE_KEYS = {"plaintext", "value", "identifier", "raw_identifier", "secret", "password", "token"}


class AuditAction(str, Enum):
    """Type of audited action"""
    DATA_ENCRYPTED = "DATA_ENCRYPTED"
    DATA_DECRYPTED = "DATA_DECRYPTED"
    ENCRYPTION_ERROR = "ENCRYPTION_ERROR"
    DECRYPTION_ERROR = "DECRYPTION_ERROR"
    CACHE_CLEARED = "CACHE_CLEARED"
    DUPLICATE_CHECK = "DUPLICATE_CHECK"


class AuditStatus(str, Enum):
    """Outcome of an audited action"""
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class AuditEvent:
    """Structured audit event"""
    action: AuditAction
    status: AuditStatus
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    field_name: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = dataclass_field(default_factory=dict)
    event_id: str = dataclass_field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = dataclass_field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            'event_id': self.event_id,
            'timestamp': self.timestamp,
            'action': self.action.value,
            'resource_id': self.resource_id,
            'resource_type': self.resource_type,
            'field_name': self.field_name,
            'status': self.status.value,
            'error_code': self.error_code,
            'metadata': self.metadata
        }

    def to_json(self) -> str:
        """Convert to JSON string"""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


def sanitize_context(context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Sanitize all values in a metadata dictionary for safe logging

    Prevents log/JSON injection by sanitizing string values, and replaces
    values under known-sensitive keys with a redaction marker.

    Args:
        context: Dictionary with context data

    Returns:
        Sanitized dictionary safe for JSON logging
    """
    if not context:
        return {}

    sanitized: Dict[str, Any] = {}
    for key, value in context.items():
        safe_key = sanitize_for_logging(str(key), max_length=100) if key else "unknown"

        if safe_key.lower() in SENSITIVE_KEYS:
            sanitized[safe_key] = REDACTED
        elif value is None or isinstance(value, (bool, int, float)):
            sanitized[safe_key] = value
        elif isinstance(value, str):
            sanitized[safe_key] = sanitize_for_logging(value, max_length=200)
        elif isinstance(value, dict):
            sanitized[safe_key] = sanitize_context(value)
        elif isinstance(value, (list, tuple)):
            sanitized[safe_key] = [
                item if isinstance(item, (bool, int, float, type(None)))
                else sanitize_for_logging(str(item), max_length=200)
                for item in value
            ]
        else:
            sanitized[safe_key] = sanitize_for_logging(str(value), max_length=200)

    return sanitized


# ============================================
# SINKS
# ============================================

class AuditSink(ABC):
    """Destination for audit events"""

    @abstractmethod
    async def emit(self, event: AuditEvent) -> None:
        """Deliver one audit event"""


class LoggingAuditSink(AuditSink):
    """Writes audit events as JSON lines to a dedicated audit logger

    Features:
    - Separate audit.log file
    - JSON-formatted events for easy parsing
    - Automatic sanitization of metadata
    """

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: int = logging.INFO,
        enable_console: bool = False,
        enable_file: bool = True,
        logger_name: str = "audit"
    ):
        """Initialize audit sink

        Args:
            log_dir: Directory for log files
            log_level: Minimum log level to record
            enable_console: Also output to console
            enable_file: Write to audit.log file
            logger_name: Name of the dedicated logger
        """
        self.log_dir = Path(log_dir)
        self.logger = logging.getLogger(logger_name)
        self.logger.setLevel(log_level)
        self.logger.propagate = False
        self.logger.handlers.clear()

        formatter = logging.Formatter('%(asctime)s - AUDIT - %(levelname)s - %(message)s')

        if enable_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_dir / "audit.log", encoding='utf-8')
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        if enable_console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(log_level)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

    async def emit(self, event: AuditEvent) -> None:
        safe_event = AuditEvent(
            action=event.action,
            status=event.status,
            resource_id=sanitize_for_logging(event.resource_id or "", max_length=200) or None,
            resource_type=event.resource_type,
            field_name=sanitize_for_logging(event.field_name or "", max_length=100) or None,
            error_code=sanitize_for_logging(event.error_code or "", max_length=100) or None,
            metadata=sanitize_context(event.metadata),
            event_id=event.event_id,
            timestamp=event.timestamp
        )
        if event.status == AuditStatus.FAILURE:
            self.logger.warning(safe_event.to_json())
        else:
            self.logger.info(safe_event.to_json())

    def close(self) -> None:
        """Close and detach file handlers"""
        for handler in list(self.logger.handlers):
            handler.close()
            self.logger.removeHandler(handler)


class InMemoryAuditSink(AuditSink):
    """Keeps audit events in a list, for tests and inspection"""

    def __init__(self):
        self.events: List[AuditEvent] = []

    async def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def by_action(self, action: AuditAction) -> List[AuditEvent]:
        return [e for e in self.events if e.action == action]

    def clear(self) -> None:
        self.events.clear()


class CompositeAuditSink(AuditSink):
    """Fans each event out to several sinks"""

    def __init__(self, sinks: Iterable[AuditSink]):
        self.sinks = list(sinks)

    async def emit(self, event: AuditEvent) -> None:
        for sink in self.sinks:
            await emit_safely(sink, event)


async def emit_safely(sink: Optional[AuditSink], event: AuditEvent) -> None:
    """Emit an event; a failing sink is logged and never fails the caller"""
    if sink is None:
        return
    try:
        await sink.emit(event)
    except Exception as e:
        logger.error(
            f"Failed to emit audit event {event.action.value} "
            f"for {sanitize_for_logging(event.resource_id or '')}: {type(e).__name__}"
        )
