"""
Duplicate-identity fraud detection

This package provides:
- Risk scoring of duplicate findings with configurable weights
- Cross-owner duplicate detection over identifier hashes
- Persistence of check summaries on the checked record
"""

from fraud.risk import (
    RiskLevel,
    ScoringCurve,
    RiskFactors,
    ScoringPolicy,
    RiskScorer,
    calculate_risk_score,
    classify_risk_level,
    requires_manual_review,
)
from fraud.duplicates import (
    DuplicateCandidate,
    DuplicateDetectionResult,
    DuplicateDetectionService,
    DuplicateResultStore,
)

__all__ = [
    'RiskLevel',
    'ScoringCurve',
    'RiskFactors',
    'ScoringPolicy',
    'RiskScorer',
    'calculate_risk_score',
    'classify_risk_level',
    'requires_manual_review',
    'DuplicateCandidate',
    'DuplicateDetectionResult',
    'DuplicateDetectionService',
    'DuplicateResultStore',
]
