"""
Risk policy for approval requests.

Maps a 0-100 risk score to a tier, and each tier to the approval window and
the confirmation strength an approver must present.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.errors import ConfigError


logger = logging.getLogger(__name__)


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BiometricStrength(IntEnum):
    """Confirmation method classes, weakest first."""

    ANY = 0
    SECURE = 1
    HIGHEST = 2

    @classmethod
    def parse(cls, value: Any) -> "BiometricStrength":
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ConfigError(f"Unknown biometric strength: {value!r}")


@dataclass(frozen=True)
class TierPolicy:
    tier: RiskTier
    min_score: int
    expiration_seconds: int
    min_strength: BiometricStrength
    requires_secondary_approver: bool = False

    @property
    def expiration_window(self) -> timedelta:
        return timedelta(seconds=self.expiration_seconds)


DEFAULT_TIERS = (
    TierPolicy(RiskTier.LOW, 0, 30 * 60, BiometricStrength.ANY),
    TierPolicy(RiskTier.MEDIUM, 30, 20 * 60, BiometricStrength.SECURE),
    TierPolicy(RiskTier.HIGH, 70, 15 * 60, BiometricStrength.SECURE),
    TierPolicy(RiskTier.CRITICAL, 90, 10 * 60, BiometricStrength.HIGHEST),
)


def parse_duration(duration: Any) -> int:
    """
    Parse duration to seconds.

    Args:
        duration: Integer seconds or string ("60s", "15m", "1h")

    Returns:
        Duration in seconds
    """
    if isinstance(duration, int):
        return duration
    duration_str = str(duration).strip()
    if duration_str.endswith("s"):
        return int(duration_str[:-1])
    elif duration_str.endswith("m"):
        return int(duration_str[:-1]) * 60
    elif duration_str.endswith("h"):
        return int(duration_str[:-1]) * 3600
    else:
        # Default to seconds if no unit
        return int(duration_str)


class RiskPolicy:
    """
    Tiered approval policy.

    Invariants:
    - Tiers cover 0-100 without gaps (lowest tier starts at 0)
    - Higher tiers never get a longer approval window than lower tiers
    - Higher tiers never require a weaker confirmation than lower tiers
    """

    def __init__(self, tiers: Optional[List[TierPolicy]] = None):
        tiers = sorted(tiers or DEFAULT_TIERS, key=lambda t: t.min_score)
        self._validate(tiers)
        self._tiers = tiers

    @staticmethod
    def _validate(tiers: List[TierPolicy]) -> None:
        if not tiers or tiers[0].min_score != 0:
            raise ConfigError("Risk policy must define a tier starting at score 0")

        for lower, higher in zip(tiers, tiers[1:]):
            if higher.expiration_seconds > lower.expiration_seconds:
                raise ConfigError(
                    f"Tier {higher.tier.value} has a longer approval window "
                    f"than {lower.tier.value}"
                )
            if higher.min_strength < lower.min_strength:
                raise ConfigError(
                    f"Tier {higher.tier.value} requires weaker confirmation "
                    f"than {lower.tier.value}"
                )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RiskPolicy":
        """
        Build policy from a mapping of tier name to settings.

        Tiers missing from the mapping keep their defaults.

        Args:
            data: {"high": {"min_score": 70, "expiration": "15m",
                   "min_strength": "secure", "secondary_approver": true}, ...}
        """
        if not data:
            return cls()

        defaults = {t.tier: t for t in DEFAULT_TIERS}
        tiers = []
        for tier in RiskTier:
            base = defaults[tier]
            settings = data.get(tier.value) or {}
            try:
                tiers.append(
                    TierPolicy(
                        tier=tier,
                        min_score=int(settings.get("min_score", base.min_score)),
                        expiration_seconds=parse_duration(
                            settings.get("expiration", base.expiration_seconds)
                        ),
                        min_strength=BiometricStrength.parse(
                            settings.get("min_strength", base.min_strength)
                        ),
                        requires_secondary_approver=bool(
                            settings.get(
                                "secondary_approver", base.requires_secondary_approver
                            )
                        ),
                    )
                )
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid risk policy for tier {tier.value}: {e}")

        policy = cls(tiers)
        logger.info(
            "Risk policy loaded: "
            + ", ".join(
                f"{t.tier.value}>={t.min_score} ({t.expiration_seconds}s, "
                f"{t.min_strength.name})"
                for t in policy.tiers
            )
        )
        return policy

    @classmethod
    def from_yaml(cls, path: Path) -> "RiskPolicy":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data.get("risk_policy", data))

    @property
    def tiers(self) -> List[TierPolicy]:
        return list(self._tiers)

    @property
    def high_threshold(self) -> int:
        """Score at which the high tier starts."""
        return self.policy_for_tier(RiskTier.HIGH).min_score

    def policy_for_tier(self, tier: RiskTier) -> TierPolicy:
        for policy in self._tiers:
            if policy.tier == tier:
                return policy
        raise ConfigError(f"Risk tier {tier.value} not configured")

    def policy_for(self, risk_score: int) -> TierPolicy:
        """Tier policy applying to a risk score (clamped to 0-100)."""
        score = max(0, min(100, int(risk_score)))
        selected = self._tiers[0]
        for policy in self._tiers:
            if score >= policy.min_score:
                selected = policy
        return selected

    def tier_for(self, risk_score: int) -> RiskTier:
        return self.policy_for(risk_score).tier

    def expiration_window(self, risk_score: int) -> timedelta:
        return self.policy_for(risk_score).expiration_window

    def min_strength(self, risk_score: int) -> BiometricStrength:
        return self.policy_for(risk_score).min_strength

    def requires_secondary_approver(self, risk_score: int) -> bool:
        return self.policy_for(risk_score).requires_secondary_approver
