"""STEWARD Policy - risk tiers and confirmation strength requirements."""

from .risk_policy import BiometricStrength, RiskPolicy, RiskTier, TierPolicy, parse_duration

__all__ = ["BiometricStrength", "RiskPolicy", "RiskTier", "TierPolicy", "parse_duration"]
