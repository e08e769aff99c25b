"""
Risk policy tests.

Tests tier boundaries, expiration windows and confirmation strengths.
"""

from datetime import timedelta

import pytest

from core.errors import ConfigError
from core.policy import BiometricStrength, RiskPolicy, RiskTier, TierPolicy, parse_duration


@pytest.mark.unit
class TestDefaultTiers:
    """Default tier table."""

    @pytest.mark.parametrize(
        "score,tier",
        [
            (0, RiskTier.LOW),
            (29, RiskTier.LOW),
            (30, RiskTier.MEDIUM),
            (69, RiskTier.MEDIUM),
            (70, RiskTier.HIGH),
            (89, RiskTier.HIGH),
            (90, RiskTier.CRITICAL),
            (100, RiskTier.CRITICAL),
        ],
    )
    def test_tier_boundaries(self, score, tier):
        assert RiskPolicy().tier_for(score) == tier

    @pytest.mark.parametrize(
        "score,minutes",
        [(10, 30), (50, 20), (75, 15), (95, 10)],
    )
    def test_expiration_windows(self, score, minutes):
        assert RiskPolicy().expiration_window(score) == timedelta(minutes=minutes)

    def test_strength_grows_with_risk(self):
        policy = RiskPolicy()

        assert policy.min_strength(10) == BiometricStrength.ANY
        assert policy.min_strength(75) == BiometricStrength.SECURE
        assert policy.min_strength(95) == BiometricStrength.HIGHEST

    def test_scores_are_clamped(self):
        policy = RiskPolicy()

        assert policy.tier_for(-5) == RiskTier.LOW
        assert policy.tier_for(250) == RiskTier.CRITICAL

    def test_high_threshold(self):
        assert RiskPolicy().high_threshold == 70


@pytest.mark.unit
class TestPolicyLoading:
    """Loading tiers from configuration."""

    def test_empty_mapping_uses_defaults(self):
        policy = RiskPolicy.from_dict(None)

        assert [t.tier for t in policy.tiers] == list(RiskTier)

    def test_partial_override(self):
        policy = RiskPolicy.from_dict(
            {"critical": {"expiration": "5m", "secondary_approver": True}}
        )

        assert policy.expiration_window(95) == timedelta(minutes=5)
        assert policy.requires_secondary_approver(95)
        assert not policy.requires_secondary_approver(75)
        # Untouched tiers keep defaults
        assert policy.expiration_window(75) == timedelta(minutes=15)

    def test_strength_names_are_case_insensitive(self):
        policy = RiskPolicy.from_dict({"medium": {"min_strength": "Secure"}})

        assert policy.min_strength(50) == BiometricStrength.SECURE

    def test_unknown_strength_rejected(self):
        with pytest.raises(ConfigError):
            RiskPolicy.from_dict({"high": {"min_strength": "retina"}})

    def test_longer_window_for_higher_tier_rejected(self):
        with pytest.raises(ConfigError, match="longer approval window"):
            RiskPolicy.from_dict({"critical": {"expiration": "1h"}})

    def test_weaker_strength_for_higher_tier_rejected(self):
        with pytest.raises(ConfigError, match="weaker confirmation"):
            RiskPolicy.from_dict({"critical": {"min_strength": "any"}})

    def test_missing_zero_tier_rejected(self):
        with pytest.raises(ConfigError):
            RiskPolicy([TierPolicy(RiskTier.HIGH, 70, 900, BiometricStrength.SECURE)])

    def test_from_yaml_reads_risk_policy_section(self, tmp_path):
        config_file = tmp_path / "policy.yaml"
        config_file.write_text(
            "risk_policy:\n"
            "  high:\n"
            "    min_score: 60\n"
        )

        policy = RiskPolicy.from_yaml(config_file)

        assert policy.tier_for(65) == RiskTier.HIGH


@pytest.mark.unit
class TestParseDuration:
    @pytest.mark.parametrize(
        "value,seconds",
        [(90, 90), ("45s", 45), ("15m", 900), ("2h", 7200), ("30", 30)],
    )
    def test_units(self, value, seconds):
        assert parse_duration(value) == seconds
