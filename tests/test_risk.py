"""
Unit tests for duplicate risk scoring.
"""

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import RiskScoringConfig
from fraud.risk import (
    RiskFactors,
    RiskLevel,
    RiskScorer,
    ScoringCurve,
    ScoringPolicy,
    calculate_risk_score,
    classify_risk_level,
    requires_manual_review,
)


class TestRiskScore:
    """Tests for the default flat policy."""

    def test_no_factors_scores_zero(self):
        assert calculate_risk_score(RiskFactors()) == 0

    @pytest.mark.parametrize("factors,expected", [
        (RiskFactors(cross_owner_count=1, total_duplicate_count=1), 40),
        (RiskFactors(biometric_mismatch_count=1, total_duplicate_count=1), 30),
        (RiskFactors(recent_duplicate_count=1, total_duplicate_count=1), 15),
        (RiskFactors(total_duplicate_count=2), 10),
        (RiskFactors(status_mismatch_count=1, total_duplicate_count=1), 5),
    ])
    def test_individual_factor_weights(self, factors, expected):
        assert calculate_risk_score(factors) == expected

    def test_flat_curve_ignores_counts(self):
        """Any non-zero count scores the full cap."""
        scorer = RiskScorer()
        one = scorer.contributions(RiskFactors(cross_owner_count=1, total_duplicate_count=1))
        many = scorer.contributions(RiskFactors(cross_owner_count=5, total_duplicate_count=5))
        assert one['cross_owner'] == many['cross_owner'] == 40

    def test_single_duplicate_does_not_count_as_multiple(self):
        assert calculate_risk_score(RiskFactors(total_duplicate_count=1)) == 0

    def test_all_factors_sum_to_100(self):
        factors = RiskFactors(
            cross_owner_count=3,
            biometric_mismatch_count=2,
            recent_duplicate_count=3,
            total_duplicate_count=3,
            status_mismatch_count=1
        )
        assert calculate_risk_score(factors) == 100

    def test_score_is_clamped(self):
        policy = ScoringPolicy(caps={
            'cross_owner': 90,
            'biometric_mismatch': 90,
            'recent_duplicate': 0,
            'multiple_duplicates': 0,
            'status_mismatch': 0
        })
        scorer = RiskScorer(policy)
        assert scorer.score(RiskFactors(cross_owner_count=1, biometric_mismatch_count=1)) == 100

    def test_scoring_is_pure(self):
        factors = RiskFactors(cross_owner_count=2, recent_duplicate_count=1, total_duplicate_count=2)
        assert len({calculate_risk_score(factors) for _ in range(10)}) == 1

    def test_contributions(self):
        contributions = RiskScorer().contributions(
            RiskFactors(cross_owner_count=1, recent_duplicate_count=1, total_duplicate_count=1)
        )
        assert contributions == {
            'cross_owner': 40,
            'biometric_mismatch': 0,
            'recent_duplicate': 15,
            'multiple_duplicates': 0,
            'status_mismatch': 0
        }


class TestProportionalCurve:
    """Tests for the proportional per-occurrence curve."""

    @pytest.fixture
    def scorer(self):
        return RiskScorer(ScoringPolicy(curve=ScoringCurve.PROPORTIONAL))

    def test_points_per_occurrence(self, scorer):
        assert scorer.score(RiskFactors(cross_owner_count=1, total_duplicate_count=1)) == 20
        assert scorer.score(RiskFactors(recent_duplicate_count=2, total_duplicate_count=2)) == 10 + 10

    def test_caps_apply(self, scorer):
        assert scorer.score(RiskFactors(cross_owner_count=5, total_duplicate_count=1)) == 40

    def test_from_config(self):
        config = RiskScoringConfig(curve="proportional")
        scorer = RiskScorer(ScoringPolicy.from_config(config))
        assert scorer.policy.curve == ScoringCurve.PROPORTIONAL
        assert scorer.score(RiskFactors(biometric_mismatch_count=1, total_duplicate_count=1)) == 15


class TestRiskLevel:
    """Tests for level classification and manual review."""

    @pytest.mark.parametrize("score,level", [
        (-5, RiskLevel.LOW),
        (0, RiskLevel.LOW),
        (25, RiskLevel.LOW),
        (26, RiskLevel.MEDIUM),
        (50, RiskLevel.MEDIUM),
        (51, RiskLevel.HIGH),
        (75, RiskLevel.HIGH),
        (76, RiskLevel.CRITICAL),
        (100, RiskLevel.CRITICAL),
        (150, RiskLevel.CRITICAL),
    ])
    def test_boundaries(self, score, level):
        assert classify_risk_level(score) == level

    @pytest.mark.parametrize("level,expected", [
        (RiskLevel.LOW, False),
        (RiskLevel.MEDIUM, True),
        (RiskLevel.HIGH, True),
        (RiskLevel.CRITICAL, True),
        (RiskLevel.UNKNOWN, False),
    ])
    def test_requires_manual_review(self, level, expected):
        assert requires_manual_review(level) is expected

    def test_custom_thresholds(self):
        scorer = RiskScorer(ScoringPolicy(low_max=10, medium_max=20, high_max=30))
        assert scorer.classify_risk_level(15) == RiskLevel.MEDIUM
        assert scorer.classify_risk_level(31) == RiskLevel.CRITICAL

    def test_assess(self):
        assessment = RiskScorer().assess(RiskFactors(cross_owner_count=1, total_duplicate_count=1))
        assert assessment == {
            'risk_score': 40,
            'risk_level': RiskLevel.MEDIUM,
            'requires_manual_review': True
        }
