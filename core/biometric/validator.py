"""
STEWARD Biometric Confirmation Validator.

Checks a proof-of-presence artifact before any approval state transition is
accepted. The artifact is produced by the approver's device; this module only
validates it.

Checks, in order:
1. Required fields present and of the expected type (naive timestamps are UTC)
2. Authentication reported success
3. Hash is a 64-character hex string
4. Hash is not a degenerate placeholder (repeated or periodic patterns)
5. Timestamp is fresh (not older than 5 minutes, not in the future)
6. Method strength meets the risk tier minimum
7. Secondary confirmation present and independent when the tier requires it
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from core.policy import BiometricStrength, RiskPolicy
from core.models import BiometricConfirmation
from core.time_utils import utc_now


logger = logging.getLogger(__name__)


HASH_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")

MAX_CONFIRMATION_AGE = timedelta(minutes=5)
MAX_CLOCK_SKEW = timedelta(seconds=30)

# Fewer distinct characters than this is not a plausible SHA-256 digest
MIN_DISTINCT_HASH_CHARS = 4

# Periods up to this length repeated across the whole hash are rejected
MAX_REPEATING_PERIOD = 8

METHOD_STRENGTHS = {
    "passcode": BiometricStrength.ANY,
    "device_credential": BiometricStrength.ANY,
    "touch_id": BiometricStrength.SECURE,
    "fingerprint": BiometricStrength.SECURE,
    "face_id": BiometricStrength.SECURE,
    "face": BiometricStrength.SECURE,
    "face_id_liveness": BiometricStrength.HIGHEST,
    "optic_id": BiometricStrength.HIGHEST,
    "iris": BiometricStrength.HIGHEST,
}

REQUIRED_FIELDS = ("success", "method", "timestamp", "hash", "device_id", "platform")

TEXT_FIELDS = ("method", "device_id", "platform")


@dataclass(frozen=True)
class ConfirmationCheck:
    """Validation verdict with a machine-readable reason code."""

    valid: bool
    reason_code: str = "OK"
    detail: str = ""

    @classmethod
    def ok(cls) -> "ConfirmationCheck":
        return cls(valid=True)

    @classmethod
    def fail(cls, reason_code: str, detail: str) -> "ConfirmationCheck":
        return cls(valid=False, reason_code=reason_code, detail=detail)


def normalize_method(method: str) -> str:
    """'Face ID' -> 'face_id', 'touch-id' -> 'touch_id'."""
    return re.sub(r"[\s\-]+", "_", method.strip().lower())


def method_strength(method: str) -> Optional[BiometricStrength]:
    return METHOD_STRENGTHS.get(normalize_method(method))


def is_degenerate_hash(value: str) -> bool:
    """
    Detect placeholder or forged hashes.

    Rejects all-zero and single-character hashes, hashes with very few
    distinct characters, and hashes built from a short repeating unit
    ("abab...", "0123456701234567...").
    """
    lowered = value.lower()
    if len(set(lowered)) < MIN_DISTINCT_HASH_CHARS:
        return True

    for period in range(1, MAX_REPEATING_PERIOD + 1):
        unit = lowered[:period]
        if unit * (len(lowered) // period) + unit[: len(lowered) % period] == lowered:
            return True

    return False


class BiometricValidator:
    """
    Validates biometric confirmations against the risk policy.

    Invariants:
    - Fail-closed: any doubt rejects the confirmation
    - Never mutates its input
    - Returns a reason code for every rejection
    """

    def __init__(
        self,
        risk_policy: Optional[RiskPolicy] = None,
        max_age: timedelta = MAX_CONFIRMATION_AGE,
        max_clock_skew: timedelta = MAX_CLOCK_SKEW,
    ):
        self.risk_policy = risk_policy or RiskPolicy()
        self.max_age = max_age
        self.max_clock_skew = max_clock_skew

    def _check_artifact(
        self,
        confirmation: Optional[BiometricConfirmation],
        now: datetime,
    ) -> ConfirmationCheck:
        """Tier-independent checks on a single artifact."""
        if confirmation is None:
            return ConfirmationCheck.fail("MISSING_FIELD", "confirmation is missing")

        for name in REQUIRED_FIELDS:
            value = getattr(confirmation, name, None)
            if value is None or (isinstance(value, str) and not value.strip()):
                return ConfirmationCheck.fail("MISSING_FIELD", f"{name} is missing")

        for name in TEXT_FIELDS:
            if not isinstance(getattr(confirmation, name), str):
                return ConfirmationCheck.fail("MISSING_FIELD", f"{name} must be a string")

        if not isinstance(confirmation.timestamp, datetime):
            return ConfirmationCheck.fail("MISSING_FIELD", "timestamp must be a datetime")

        if confirmation.success is not True:
            return ConfirmationCheck.fail(
                "NOT_SUCCESSFUL", "biometric authentication did not succeed"
            )

        if not isinstance(confirmation.hash, str) or not HASH_PATTERN.match(confirmation.hash):
            return ConfirmationCheck.fail(
                "BAD_HASH_FORMAT", "hash must be a 64-character hex string"
            )

        if is_degenerate_hash(confirmation.hash):
            return ConfirmationCheck.fail(
                "DEGENERATE_HASH", "hash matches a placeholder pattern"
            )

        timestamp = confirmation.timestamp
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        age = now - timestamp
        if age > self.max_age:
            return ConfirmationCheck.fail(
                "STALE",
                f"confirmation is {int(age.total_seconds())}s old "
                f"(max {int(self.max_age.total_seconds())}s)",
            )
        if -age > self.max_clock_skew:
            return ConfirmationCheck.fail(
                "FUTURE_TIMESTAMP", "confirmation timestamp is in the future"
            )

        return ConfirmationCheck.ok()

    def _check_strength(
        self, confirmation: BiometricConfirmation, risk_score: int
    ) -> ConfirmationCheck:
        strength = method_strength(confirmation.method)
        required = self.risk_policy.min_strength(risk_score)

        if strength is None:
            return ConfirmationCheck.fail(
                "INSUFFICIENT_STRENGTH",
                f"unknown confirmation method {confirmation.method!r}",
            )
        if strength < required:
            return ConfirmationCheck.fail(
                "INSUFFICIENT_STRENGTH",
                f"method {confirmation.method!r} is {strength.name}, "
                f"risk {risk_score} requires {required.name}",
            )
        return ConfirmationCheck.ok()

    def validate(
        self,
        confirmation: Optional[BiometricConfirmation],
        risk_score: int,
        now: Optional[datetime] = None,
        secondary: Optional[BiometricConfirmation] = None,
    ) -> ConfirmationCheck:
        """
        Validate a confirmation for a request with the given risk score.

        Args:
            confirmation: Primary approver's confirmation
            risk_score: Risk score of the approval request (0-100)
            now: Validation time (defaults to current UTC time)
            secondary: Independent second approver's confirmation

        Returns:
            ConfirmationCheck with valid flag and reason code
        """
        now = now or utc_now()

        check = self._check_artifact(confirmation, now)
        if check.valid:
            check = self._check_strength(confirmation, risk_score)
        if not check.valid:
            logger.warning(
                f"Confirmation rejected: {check.reason_code} ({check.detail})"
            )
            return check

        if self.risk_policy.requires_secondary_approver(risk_score):
            check = self._check_secondary(confirmation, secondary, risk_score, now)
            if not check.valid:
                logger.warning(
                    f"Secondary confirmation rejected: {check.reason_code} "
                    f"({check.detail})"
                )
                return check

        logger.debug(
            f"Confirmation accepted: method={confirmation.method}, "
            f"device={confirmation.device_id}, risk={risk_score}"
        )
        return ConfirmationCheck.ok()

    def _check_secondary(
        self,
        primary: BiometricConfirmation,
        secondary: Optional[BiometricConfirmation],
        risk_score: int,
        now: datetime,
    ) -> ConfirmationCheck:
        if secondary is None:
            return ConfirmationCheck.fail(
                "SECONDARY_REQUIRED",
                f"risk {risk_score} requires a second approver's confirmation",
            )

        check = self._check_artifact(secondary, now)
        if check.valid:
            check = self._check_strength(secondary, risk_score)
        if not check.valid:
            return ConfirmationCheck.fail(
                check.reason_code, f"secondary: {check.detail}"
            )

        if (
            secondary.device_id == primary.device_id
            or secondary.hash.lower() == primary.hash.lower()
        ):
            return ConfirmationCheck.fail(
                "SECONDARY_NOT_INDEPENDENT",
                "secondary confirmation must come from a different device",
            )

        return ConfirmationCheck.ok()
