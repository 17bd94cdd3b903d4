"""
Duplicate risk scoring.

Each risk factor contributes independently, up to its own cap; the sum is
clamped to 0-100 and mapped to a risk level. Scoring is a pure function of the
factors and the policy.

Default weights:
    cross-owner duplicates        40
    biometric mismatches          30
    recent duplicates (30 days)   15
    more than one duplicate       10
    previously rejected matches    5
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional

from config_manager import RiskScoringConfig

MAX_SCORE = 100


class RiskLevel(str, Enum):
    """Risk classification of a duplicate finding"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class ScoringCurve(str, Enum):
    """How a factor's count maps to points"""
    FLAT = "flat"                  # any occurrence scores the full cap
    PROPORTIONAL = "proportional"  # points per occurrence, up to the cap


REVIEW_LEVELS = frozenset({RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL})


@dataclass(frozen=True)
class RiskFactors:
    """Aggregated duplicate signals for one check"""
    cross_owner_count: int = 0
    biometric_mismatch_count: int = 0
    recent_duplicate_count: int = 0
    total_duplicate_count: int = 0
    status_mismatch_count: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'cross_owner_count': self.cross_owner_count,
            'biometric_mismatch_count': self.biometric_mismatch_count,
            'recent_duplicate_count': self.recent_duplicate_count,
            'total_duplicate_count': self.total_duplicate_count,
            'status_mismatch_count': self.status_mismatch_count
        }


def _default_caps() -> Dict[str, int]:
    return dict(RiskScoringConfig().caps)


def _default_points() -> Dict[str, int]:
    return dict(RiskScoringConfig().points_per_occurrence)


@dataclass(frozen=True)
class ScoringPolicy:
    """Weights and thresholds used by RiskScorer"""
    curve: ScoringCurve = ScoringCurve.FLAT
    caps: Dict[str, int] = field(default_factory=_default_caps)
    points_per_occurrence: Dict[str, int] = field(default_factory=_default_points)
    multiple_duplicates_threshold: int = 1
    low_max: int = 25
    medium_max: int = 50
    high_max: int = 75

    @classmethod
    def from_config(cls, config: RiskScoringConfig) -> 'ScoringPolicy':
        return cls(
            curve=ScoringCurve(config.curve),
            caps=dict(config.caps),
            points_per_occurrence=dict(config.points_per_occurrence),
            multiple_duplicates_threshold=config.multiple_duplicates_threshold,
            low_max=config.level_thresholds['low'],
            medium_max=config.level_thresholds['medium'],
            high_max=config.level_thresholds['high']
        )


class RiskScorer:
    """Computes risk scores and levels from RiskFactors"""

    def __init__(self, policy: Optional[ScoringPolicy] = None):
        self.policy = policy or ScoringPolicy()

    def _bucket(self, name: str, count: int) -> int:
        if count <= 0:
            return 0
        cap = self.policy.caps.get(name, 0)
        if self.policy.curve == ScoringCurve.FLAT:
            return cap
        points = self.policy.points_per_occurrence.get(name, cap)
        return min(cap, count * points)

    def contributions(self, factors: RiskFactors) -> Dict[str, int]:
        """Points contributed by each factor, before clamping."""
        multiple = 0
        if factors.total_duplicate_count > self.policy.multiple_duplicates_threshold:
            multiple = self.policy.caps.get('multiple_duplicates', 0)
        return {
            'cross_owner': self._bucket('cross_owner', factors.cross_owner_count),
            'biometric_mismatch': self._bucket('biometric_mismatch', factors.biometric_mismatch_count),
            'recent_duplicate': self._bucket('recent_duplicate', factors.recent_duplicate_count),
            'multiple_duplicates': multiple,
            'status_mismatch': self._bucket('status_mismatch', factors.status_mismatch_count)
        }

    def score(self, factors: RiskFactors) -> int:
        """
        Compute the risk score for a set of factors.

        Args:
            factors: Aggregated duplicate signals

        Returns:
            Integer score in [0, 100]
        """
        total = sum(self.contributions(factors).values())
        return max(0, min(MAX_SCORE, total))

    def classify_risk_level(self, score: int) -> RiskLevel:
        """Map a score to a level; out-of-range scores clamp to the end levels."""
        if score <= self.policy.low_max:
            return RiskLevel.LOW
        if score <= self.policy.medium_max:
            return RiskLevel.MEDIUM
        if score <= self.policy.high_max:
            return RiskLevel.HIGH
        return RiskLevel.CRITICAL

    @staticmethod
    def requires_manual_review(level: RiskLevel) -> bool:
        return level in REVIEW_LEVELS

    def assess(self, factors: RiskFactors) -> Dict[str, Any]:
        """Score, level and review decision in one call."""
        score = self.score(factors)
        level = self.classify_risk_level(score)
        return {
            'risk_score': score,
            'risk_level': level,
            'requires_manual_review': self.requires_manual_review(level)
        }


_default_scorer = RiskScorer()


def calculate_risk_score(factors: RiskFactors) -> int:
    """Score factors with the default policy."""
    return _default_scorer.score(factors)


def classify_risk_level(score: int) -> RiskLevel:
    """Classify a score with the default thresholds."""
    return _default_scorer.classify_risk_level(score)


def requires_manual_review(level: RiskLevel) -> bool:
    return RiskScorer.requires_manual_review(level)
