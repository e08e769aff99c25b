"""
Approval data model.

ApprovalRequest is the central entity; it is only mutated through store
transitions. ProposedAction, BiometricConfirmation and ExecutionResult are
immutable once created.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from core.time_utils import from_iso, optional_from_iso, optional_iso, to_iso, utc_now
from .classification import ActionType


class ApprovalStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    EXPIRED = "Expired"
    PARTIALLY_EXECUTED = "PartiallyExecuted"

    @property
    def is_terminal(self) -> bool:
        return self != ApprovalStatus.PENDING


# Approved may still resolve to PartiallyExecuted once per-action results are
# known; every other non-Pending status is final.
ALLOWED_TRANSITIONS = {
    ApprovalStatus.PENDING: frozenset(
        {ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.EXPIRED}
    ),
    ApprovalStatus.APPROVED: frozenset({ApprovalStatus.PARTIALLY_EXECUTED}),
    ApprovalStatus.REJECTED: frozenset(),
    ApprovalStatus.EXPIRED: frozenset(),
    ApprovalStatus.PARTIALLY_EXECUTED: frozenset(),
}


def can_transition(current: ApprovalStatus, new: ApprovalStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class ProposedAction:
    """One discrete change against the management API."""

    action_type: ActionType
    target_resource: str
    endpoint: str
    verb: str
    body: Optional[Dict[str, Any]] = None
    current_state: Dict[str, str] = field(default_factory=dict)
    proposed_state: Dict[str, str] = field(default_factory=dict)
    description: str = ""
    impact: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_type": self.action_type.value,
            "target_resource": self.target_resource,
            "endpoint": self.endpoint,
            "verb": self.verb,
            "body": self.body,
            "current_state": dict(self.current_state),
            "proposed_state": dict(self.proposed_state),
            "description": self.description,
            "impact": self.impact,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProposedAction":
        return cls(
            action_type=ActionType(data["action_type"]),
            target_resource=data["target_resource"],
            endpoint=data["endpoint"],
            verb=data["verb"],
            body=data.get("body"),
            current_state=dict(data.get("current_state") or {}),
            proposed_state=dict(data.get("proposed_state") or {}),
            description=data.get("description", ""),
            impact=data.get("impact", ""),
        )


@dataclass(frozen=True)
class BiometricConfirmation:
    """Proof-of-presence artifact produced by the approval device."""

    success: bool
    method: str
    timestamp: datetime
    hash: str
    device_id: str
    platform: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "method": self.method,
            "timestamp": to_iso(self.timestamp),
            "hash": self.hash,
            "device_id": self.device_id,
            "platform": self.platform,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BiometricConfirmation":
        return cls(
            success=data.get("success"),
            method=data.get("method"),
            timestamp=optional_from_iso(data.get("timestamp")),
            hash=data.get("hash"),
            device_id=data.get("device_id"),
            platform=data.get("platform"),
        )


@dataclass
class ApprovalRequest:
    """
    Pending change awaiting a human decision.

    Retained indefinitely; terminal requests are never deleted.
    """

    tenant_id: str
    client_label: str
    request_type: ActionType
    description: str
    risk_score: int
    proposed_actions: List[ProposedAction]
    classification_request_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utc_now)
    status: ApprovalStatus = ApprovalStatus.PENDING
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    version: int = 0
    approver: Optional[str] = None
    secondary_approver: Optional[str] = None
    biometric_confirmation: Optional[BiometricConfirmation] = None
    secondary_confirmation: Optional[BiometricConfirmation] = None
    notes: Optional[str] = None
    decided_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def with_status(self, status: ApprovalStatus, **changes: Any) -> "ApprovalRequest":
        """Copy with a new status and bumped version."""
        return replace(self, status=status, version=self.version + 1, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "client_label": self.client_label,
            "request_type": self.request_type.value,
            "description": self.description,
            "risk_score": self.risk_score,
            "proposed_actions": [a.to_dict() for a in self.proposed_actions],
            "classification_request_id": self.classification_request_id,
            "expires_at": to_iso(self.expires_at),
            "created_at": to_iso(self.created_at),
            "status": self.status.value,
            "version": self.version,
            "approver": self.approver,
            "secondary_approver": self.secondary_approver,
            "biometric_confirmation": (
                self.biometric_confirmation.to_dict()
                if self.biometric_confirmation
                else None
            ),
            "secondary_confirmation": (
                self.secondary_confirmation.to_dict()
                if self.secondary_confirmation
                else None
            ),
            "notes": self.notes,
            "decided_at": optional_iso(self.decided_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalRequest":
        confirmation = data.get("biometric_confirmation")
        secondary = data.get("secondary_confirmation")
        return cls(
            id=data["id"],
            tenant_id=data["tenant_id"],
            client_label=data["client_label"],
            request_type=ActionType(data["request_type"]),
            description=data["description"],
            risk_score=int(data["risk_score"]),
            proposed_actions=[
                ProposedAction.from_dict(a) for a in data.get("proposed_actions", [])
            ],
            classification_request_id=data["classification_request_id"],
            expires_at=from_iso(data["expires_at"]),
            created_at=from_iso(data["created_at"]),
            status=ApprovalStatus(data["status"]),
            version=int(data.get("version", 0)),
            approver=data.get("approver"),
            secondary_approver=data.get("secondary_approver"),
            biometric_confirmation=(
                BiometricConfirmation.from_dict(confirmation) if confirmation else None
            ),
            secondary_confirmation=(
                BiometricConfirmation.from_dict(secondary) if secondary else None
            ),
            notes=data.get("notes"),
            decided_at=optional_from_iso(data.get("decided_at")),
        )


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one ProposedAction."""

    action_type: ActionType
    target_resource: str
    success: bool
    message: str
    status_code: int
    executed_at: datetime
    duration_ms: int
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_type": self.action_type.value,
            "target_resource": self.target_resource,
            "success": self.success,
            "message": self.message,
            "status_code": self.status_code,
            "executed_at": to_iso(self.executed_at),
            "duration_ms": self.duration_ms,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionResult":
        return cls(
            action_type=ActionType(data["action_type"]),
            target_resource=data["target_resource"],
            success=bool(data["success"]),
            message=data["message"],
            status_code=int(data["status_code"]),
            executed_at=from_iso(data["executed_at"]),
            duration_ms=int(data["duration_ms"]),
            attempts=int(data.get("attempts", 1)),
        )


@dataclass
class ApprovalResult:
    """Answer returned to the approval UI for a decision submission."""

    request_id: str
    success: bool
    status: Optional[ApprovalStatus]
    message: str
    reason_code: Optional[str] = None
    execution_results: List[ExecutionResult] = field(default_factory=list)
    completed_at: datetime = field(default_factory=utc_now)
    audit_log_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "success": self.success,
            "status": self.status.value if self.status else None,
            "message": self.message,
            "reason_code": self.reason_code,
            "execution_results": [r.to_dict() for r in self.execution_results],
            "completed_at": to_iso(self.completed_at),
            "audit_log_id": self.audit_log_id,
        }
