"""STEWARD Biometric - confirmation artifact validation."""

from .validator import BiometricValidator, ConfirmationCheck, is_degenerate_hash

__all__ = ["BiometricValidator", "ConfirmationCheck", "is_degenerate_hash"]
