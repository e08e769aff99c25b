"""STEWARD Approval - human-gated lifecycle for risky changes."""

from .approver_directory import ApproverDirectory
from .notifications import (
    NotificationEvent,
    Notifier,
    build_notification,
)
from .state_machine import ApprovalStateMachine
from .store import ApprovalStore, InMemoryApprovalStore, RedisApprovalStore

__all__ = [
    "ApprovalStateMachine",
    "ApprovalStore",
    "ApproverDirectory",
    "InMemoryApprovalStore",
    "NotificationEvent",
    "Notifier",
    "RedisApprovalStore",
    "build_notification",
]
