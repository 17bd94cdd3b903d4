"""
Duplicate Identity Detection

Looks up earlier records carrying the same identifier hash, across all owners,
and turns what it finds into a risk assessment:

1. Hash the raw identifier (the plaintext never leaves this step)
2. Query the storage adapter for records with that hash (bounded, newest first)
3. Drop the record being checked
4. Aggregate risk factors over the remaining candidates
5. Score, classify and decide whether a human has to review the case

A check never raises for storage problems: it reports checked=False with the
error instead, so the caller's workflow carries on and the case can be
re-checked. Task cancellation is always propagated.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Callable, Iterable

from audit_logger import AuditSink, AuditEvent, AuditAction, AuditStatus, emit_safely
from config_manager import ConfigManager
from log_utils import sanitize_for_logging
from database.repositories import StorageAdapter, CandidateRecord, as_utc
from fraud.risk import RiskFactors, RiskLevel, RiskScorer, ScoringPolicy
from monitoring import record_event, DUPLICATE_CHECKS, DUPLICATE_CHECK_FAILURES
from protection.hashing import IdentifierHasher

logger = logging.getLogger(__name__)

DEFAULT_MAX_CANDIDATES = 100
DEFAULT_BIOMETRIC_TOLERANCE = 20.0
DEFAULT_RECENT_WINDOW_DAYS = 30
DEFAULT_FLAGGED_STATUSES = ('rejected', 'auto_rejected')
DEFAULT_FLAG_REASON = "Duplicate detected"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# RESULT TYPES
# ============================================

@dataclass
class DuplicateCandidate:
    """An earlier record sharing the identifier hash"""
    record_id: str
    owner_id: str
    status: str
    created_at: datetime
    days_since_creation: int
    biometric_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'record_id': self.record_id,
            'owner_id': self.owner_id,
            'status': self.status,
            'created_at': self.created_at.isoformat(),
            'days_since_creation': self.days_since_creation,
            'biometric_score': self.biometric_score
        }


@dataclass
class DuplicateDetectionResult:
    """Outcome of one duplicate check"""
    checked: bool
    checked_at: str = field(default_factory=lambda: _utcnow().isoformat())
    duplicates_found: int = 0
    same_owner_duplicates: int = 0
    cross_owner_duplicates: int = 0
    risk_level: RiskLevel = RiskLevel.LOW
    risk_score: int = 0
    duplicate_cases: List[DuplicateCandidate] = field(default_factory=list)
    requires_manual_review: bool = False
    flag_reason: Optional[str] = None
    error: Optional[str] = None
    risk_factors: Optional[RiskFactors] = None

    @classmethod
    def failed(cls, error: str, checked_at: Optional[str] = None) -> 'DuplicateDetectionResult':
        """Result for a check that could not run."""
        result = cls(
            checked=False,
            risk_level=RiskLevel.UNKNOWN,
            risk_score=0,
            requires_manual_review=False,
            error=error or "Duplicate check failed"
        )
        if checked_at:
            result.checked_at = checked_at
        return result

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (the summary stored on the record)."""
        data = {
            'checked': self.checked,
            'checked_at': self.checked_at,
            'duplicates_found': self.duplicates_found,
            'same_owner_duplicates': self.same_owner_duplicates,
            'cross_owner_duplicates': self.cross_owner_duplicates,
            'risk_level': self.risk_level.value,
            'risk_score': self.risk_score,
            'duplicate_cases': [c.to_dict() for c in self.duplicate_cases],
            'requires_manual_review': self.requires_manual_review
        }
        if self.flag_reason:
            data['flag_reason'] = self.flag_reason
        if self.error:
            data['error'] = self.error
        if self.risk_factors:
            data['risk_factors'] = self.risk_factors.to_dict()
        return data


# ============================================
# DETECTION
# ============================================

class DuplicateDetectionService:
    """
    Cross-owner duplicate identity detection.

    Usage:
        service = DuplicateDetectionService(storage, audit_sink=sink)
        result = await service.check_duplicates("ID123", "rec-2", "owner-b", 87.5)
    """

    def __init__(
        self,
        storage: StorageAdapter,
        hasher: Optional[IdentifierHasher] = None,
        scorer: Optional[RiskScorer] = None,
        audit_sink: Optional[AuditSink] = None,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
        query_timeout: Optional[float] = None,
        biometric_tolerance: float = DEFAULT_BIOMETRIC_TOLERANCE,
        recent_window_days: int = DEFAULT_RECENT_WINDOW_DAYS,
        flagged_statuses: Iterable[str] = DEFAULT_FLAGGED_STATUSES,
        clock: Callable[[], datetime] = _utcnow
    ):
        """
        Initialize the service

        Args:
            storage: Adapter used to find records by identifier hash
            hasher: Identifier hasher (must match the one used at intake)
            scorer: Risk scorer
            audit_sink: Destination for DUPLICATE_CHECK events
            max_candidates: Upper bound on records fetched per check
            query_timeout: Seconds before the storage query is abandoned
            biometric_tolerance: Largest score difference that still matches
            recent_window_days: Age in days up to which a duplicate is recent
            flagged_statuses: Candidate statuses counted as status mismatches
            clock: Returns the current UTC time
        """
        self.storage = storage
        self.hasher = hasher or IdentifierHasher()
        self.scorer = scorer or RiskScorer()
        self.audit_sink = audit_sink
        self.max_candidates = max_candidates
        self.query_timeout = query_timeout
        self.biometric_tolerance = biometric_tolerance
        self.recent_window_days = recent_window_days
        self.flagged_statuses = frozenset(flagged_statuses)
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: ConfigManager,
        storage: StorageAdapter,
        audit_sink: Optional[AuditSink] = None
    ) -> 'DuplicateDetectionService':
        risk = config.risk_scoring
        return cls(
            storage=storage,
            hasher=IdentifierHasher(normalize=config.hashing.normalize),
            scorer=RiskScorer(ScoringPolicy.from_config(risk)),
            audit_sink=audit_sink,
            max_candidates=config.duplicate_detection.max_candidates,
            query_timeout=config.duplicate_detection.query_timeout_seconds,
            biometric_tolerance=risk.biometric_tolerance,
            recent_window_days=risk.recent_window_days,
            flagged_statuses=risk.flagged_statuses
        )

    async def check_duplicates(
        self,
        raw_identifier: str,
        current_record_id: str,
        current_owner_id: str,
        current_biometric_score: Optional[float] = None
    ) -> DuplicateDetectionResult:
        """
        Check whether an identifier was already verified under another record.

        Args:
            raw_identifier: Plaintext identifier of the record being checked
            current_record_id: Record being checked (excluded from matches)
            current_owner_id: Owner of the record being checked
            current_biometric_score: Biometric score of the record being checked

        Returns:
            DuplicateDetectionResult; checked=False if the check could not run
        """
        try:
            result = await self._run_check(
                raw_identifier, current_record_id, current_owner_id, current_biometric_score
            )
        except asyncio.CancelledError:
            logger.warning(f"Duplicate check cancelled for record {sanitize_for_logging(current_record_id)}")
            await self._audit(
                DuplicateDetectionResult.failed("Duplicate check cancelled"),
                current_record_id,
                current_owner_id,
                error_code="CANCELLED"
            )
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            if isinstance(e, asyncio.TimeoutError):
                message = f"Duplicate check timed out after {self.query_timeout}s"
            logger.error(f"Duplicate check failed for record {sanitize_for_logging(current_record_id)}: {message}")
            record_event(DUPLICATE_CHECK_FAILURES)
            result = DuplicateDetectionResult.failed(message)
            await self._audit(result, current_record_id, current_owner_id, error_code=type(e).__name__)
            return result

        record_event(DUPLICATE_CHECKS)
        if result.duplicates_found:
            logger.info(
                f"Record {sanitize_for_logging(current_record_id)}: {result.duplicates_found} duplicate(s) found "
                f"({result.cross_owner_duplicates} cross-owner), "
                f"risk={result.risk_level.value} score={result.risk_score}"
            )
        await self._audit(result, current_record_id, current_owner_id)
        return result

    async def _run_check(
        self,
        raw_identifier: str,
        current_record_id: str,
        current_owner_id: str,
        current_biometric_score: Optional[float]
    ) -> DuplicateDetectionResult:
        identifier_hash = self.hasher.hash(raw_identifier)

        query = self.storage.query_by_identifier_hash(identifier_hash, limit=self.max_candidates + 1)
        if self.query_timeout is not None:
            rows = await asyncio.wait_for(query, timeout=self.query_timeout)
        else:
            rows = await query

        now = self._clock()
        # The current record may be among the rows, hence the extra one fetched
        candidates = [
            self._to_candidate(row, now)
            for row in rows
            if row.record_id != current_record_id
        ][:self.max_candidates]

        if not candidates:
            return DuplicateDetectionResult(checked=True, checked_at=now.isoformat())

        factors = self._compute_factors(candidates, current_owner_id, current_biometric_score)
        score = self.scorer.score(factors)
        level = self.scorer.classify_risk_level(score)
        review = self.scorer.requires_manual_review(level)

        same_owner = sum(1 for c in candidates if c.owner_id == current_owner_id)
        return DuplicateDetectionResult(
            checked=True,
            checked_at=now.isoformat(),
            duplicates_found=len(candidates),
            same_owner_duplicates=same_owner,
            cross_owner_duplicates=len(candidates) - same_owner,
            risk_level=level,
            risk_score=score,
            duplicate_cases=candidates,
            requires_manual_review=review,
            flag_reason=self.build_flag_reason(factors) if review else None,
            risk_factors=factors
        )

    @staticmethod
    def _to_candidate(row: CandidateRecord, now: datetime) -> DuplicateCandidate:
        created_at = as_utc(row.created_at)
        return DuplicateCandidate(
            record_id=row.record_id,
            owner_id=row.owner_id,
            status=row.status,
            created_at=created_at,
            days_since_creation=max(0, (now - created_at).days),
            biometric_score=row.biometric_score
        )

    def _compute_factors(
        self,
        candidates: List[DuplicateCandidate],
        current_owner_id: str,
        current_biometric_score: Optional[float]
    ) -> RiskFactors:
        cross_owner = 0
        biometric_mismatch = 0
        recent = 0
        status_mismatch = 0

        for candidate in candidates:
            if candidate.owner_id != current_owner_id:
                cross_owner += 1
            if (
                current_biometric_score is not None
                and candidate.biometric_score is not None
                and abs(current_biometric_score - candidate.biometric_score) > self.biometric_tolerance
            ):
                biometric_mismatch += 1
            if candidate.days_since_creation <= self.recent_window_days:
                recent += 1
            if candidate.status in self.flagged_statuses:
                status_mismatch += 1

        return RiskFactors(
            cross_owner_count=cross_owner,
            biometric_mismatch_count=biometric_mismatch,
            recent_duplicate_count=recent,
            total_duplicate_count=len(candidates),
            status_mismatch_count=status_mismatch
        )

    def build_flag_reason(self, factors: RiskFactors) -> str:
        """Human-readable list of the non-zero risk factors."""
        reasons = []
        if factors.cross_owner_count:
            reasons.append(f"{factors.cross_owner_count} cross-owner duplicate(s)")
        if factors.biometric_mismatch_count:
            reasons.append(f"{factors.biometric_mismatch_count} biometric mismatch(es)")
        if factors.recent_duplicate_count:
            reasons.append(f"{factors.recent_duplicate_count} recent duplicate(s)")
        if factors.total_duplicate_count > self.scorer.policy.multiple_duplicates_threshold:
            reasons.append(f"{factors.total_duplicate_count} total duplicates")
        if factors.status_mismatch_count:
            reasons.append(f"{factors.status_mismatch_count} previously rejected case(s)")
        if not reasons:
            return DEFAULT_FLAG_REASON
        return f"Duplicate identifier detected: {', '.join(reasons)}"

    async def _audit(
        self,
        result: DuplicateDetectionResult,
        record_id: str,
        owner_id: str,
        error_code: Optional[str] = None
    ) -> None:
        # Neither the identifier nor its hash goes into the event
        await emit_safely(self.audit_sink, AuditEvent(
            action=AuditAction.DUPLICATE_CHECK,
            status=AuditStatus.SUCCESS if result.checked else AuditStatus.FAILURE,
            resource_id=record_id,
            resource_type="record",
            error_code=error_code,
            metadata={
                'owner_id': owner_id,
                'checked': result.checked,
                'duplicates_found': result.duplicates_found,
                'same_owner_duplicates': result.same_owner_duplicates,
                'cross_owner_duplicates': result.cross_owner_duplicates,
                'risk_level': result.risk_level.value,
                'risk_score': result.risk_score,
                'requires_manual_review': result.requires_manual_review,
                'error': result.error
            }
        ))

    async def check_and_store(
        self,
        raw_identifier: str,
        current_record_id: str,
        current_owner_id: str,
        current_biometric_score: Optional[float] = None
    ) -> DuplicateDetectionResult:
        """Run a check and attach its summary to the record."""
        result = await self.check_duplicates(
            raw_identifier, current_record_id, current_owner_id, current_biometric_score
        )
        await DuplicateResultStore(self.storage).store(current_record_id, result)
        return result


# ============================================
# RESULT PERSISTENCE
# ============================================

class DuplicateResultStore:
    """Attaches duplicate-check summaries to stored records"""

    def __init__(self, storage: StorageAdapter):
        self.storage = storage

    async def store(self, record_id: str, result: DuplicateDetectionResult) -> None:
        """
        Persist a check summary on the record.

        Records needing review are also flagged with the result's reason.

        Raises:
            RepositoryError: If the record cannot be updated
        """
        try:
            await self.storage.store_duplicate_result(
                record_id,
                result.to_dict(),
                requires_manual_review=result.requires_manual_review,
                flag_reason=(result.flag_reason or DEFAULT_FLAG_REASON) if result.requires_manual_review else None
            )
        except Exception as e:
            logger.error(f"Failed to store duplicate check result for record {sanitize_for_logging(record_id)}: {type(e).__name__}")
            raise

        logger.debug(
            f"Stored duplicate check for record {sanitize_for_logging(record_id)} "
            f"(review={'yes' if result.requires_manual_review else 'no'})"
        )
