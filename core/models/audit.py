"""Audit log entry model."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from core.time_utils import from_iso, to_iso, utc_now


@dataclass(frozen=True)
class AuditLogEntry:
    """
    One append-only audit record.

    Invariants:
    - Never mutated or deleted once recorded
    - details holds the structured request/response snapshot
    """

    entity_id: str
    tenant_id: str
    action: str
    actor: str
    success: bool
    approval_request_id: Optional[str] = None
    confirmation_hash: Optional[str] = None
    risk_score: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)
    entry_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "entity_id": self.entity_id,
            "tenant_id": self.tenant_id,
            "action": self.action,
            "actor": self.actor,
            "success": self.success,
            "approval_request_id": self.approval_request_id,
            "confirmation_hash": self.confirmation_hash,
            "risk_score": self.risk_score,
            "details": self.details,
            "timestamp": to_iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditLogEntry":
        return cls(
            entry_id=data["entry_id"],
            entity_id=data["entity_id"],
            tenant_id=data["tenant_id"],
            action=data["action"],
            actor=data["actor"],
            success=bool(data["success"]),
            approval_request_id=data.get("approval_request_id"),
            confirmation_hash=data.get("confirmation_hash"),
            risk_score=data.get("risk_score"),
            details=data.get("details") or {},
            timestamp=from_iso(data["timestamp"]),
        )
