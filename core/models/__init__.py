"""STEWARD data model - requests, results, approvals and audit entries."""

from .approval import (
    ALLOWED_TRANSITIONS,
    ApprovalRequest,
    ApprovalResult,
    ApprovalStatus,
    BiometricConfirmation,
    ExecutionResult,
    ProposedAction,
    can_transition,
)
from .audit import AuditLogEntry
from .classification import (
    ActionParameters,
    ActionType,
    ClassificationRequest,
    ClassificationResult,
    DirectoryChangeParameters,
    GroupMembershipParameters,
    LicenseAssignmentParameters,
    PasswordResetParameters,
    ProviderClassification,
    ReviewParameters,
    UserOffboardingParameters,
    UserOnboardingParameters,
    parse_parameters,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ActionParameters",
    "ActionType",
    "ApprovalRequest",
    "ApprovalResult",
    "ApprovalStatus",
    "AuditLogEntry",
    "BiometricConfirmation",
    "ClassificationRequest",
    "ClassificationResult",
    "DirectoryChangeParameters",
    "ExecutionResult",
    "GroupMembershipParameters",
    "LicenseAssignmentParameters",
    "PasswordResetParameters",
    "ProposedAction",
    "ProviderClassification",
    "ReviewParameters",
    "UserOffboardingParameters",
    "UserOnboardingParameters",
    "can_transition",
    "parse_parameters",
]
