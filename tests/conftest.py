"""
Pytest configuration for STEWARD test suite.

Fixtures and configuration shared across all tests.
"""

import hashlib
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from bus.python.steward_bus import ContractValidator
from core.approval import NotificationEvent, Notifier, build_notification
from core.audit import AuditLedger
from core.errors import ExecutionFailure
from core.executor import ManagementClient, ManagementResponse
from core.models import (
    ActionType,
    BiometricConfirmation,
    ClassificationRequest,
    ProviderClassification,
)


CONTRACTS_DIR = Path(__file__).parent.parent / "bus" / "contracts"

NOW = datetime(2026, 1, 14, 12, 0, 0, tzinfo=timezone.utc)


def make_hash(seed: str) -> str:
    """A realistic SHA-256 hex digest for confirmation artifacts."""
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def make_confirmation(
    method: str = "face_id",
    timestamp: Optional[datetime] = None,
    device_id: str = "device-iphone-01",
    seed: str = "approval",
    success: bool = True,
) -> BiometricConfirmation:
    return BiometricConfirmation(
        success=success,
        method=method,
        timestamp=timestamp or NOW - timedelta(seconds=30),
        hash=make_hash(seed + device_id),
        device_id=device_id,
        platform="ios",
    )


def make_answer(
    provider: str = "anthropic",
    action_type: ActionType = ActionType.PASSWORD_RESET,
    confidence: float = 0.92,
    risk_score: int = 25,
    requires_approval: bool = False,
    parameters: Optional[Dict[str, Any]] = None,
) -> ProviderClassification:
    if parameters is None:
        parameters = {"user": "jane@contoso.com", "force_change_on_next_sign_in": True}
    return ProviderClassification(
        provider=provider,
        action_type=action_type,
        confidence=confidence,
        risk_score=risk_score,
        parameters=parameters,
        affected_principals=["jane@contoso.com"],
        business_impact="One user regains access",
        requires_approval=requires_approval,
        reasoning="Locked-out user asked for a reset",
    )


class FakeProvider:
    """Scripted classification provider: returns or raises queued outcomes."""

    def __init__(self, name: str, outcomes: List[Any]):
        self.name = name
        self.outcomes = list(outcomes)
        self.calls: List[Dict[str, Any]] = []

    async def classify(self, request, context=None):
        self.calls.append({"request": request, "context": context})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeManagementClient(ManagementClient):
    """Management API double: endpoints map to scripted status codes (last one repeats)."""

    def __init__(self, failures: Optional[Dict[str, List[int]]] = None):
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.calls: List[Dict[str, Any]] = []

    async def call(self, endpoint, verb, body, tenant_id):
        self.calls.append(
            {"endpoint": endpoint, "verb": verb, "body": body, "tenant_id": tenant_id}
        )
        statuses = self.failures.get(endpoint)
        if statuses:
            status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
            if status < 400:
                return ManagementResponse(status_code=status)
            raise ExecutionFailure(
                f"{verb} {endpoint} returned HTTP {status}",
                status_code=status,
                transient=status == 429 or status >= 500,
            )
        return ManagementResponse(status_code=204 if verb == "DELETE" else 200)



class CrashingManagementClient(FakeManagementClient):
    """Raises a non-domain error on the first `crashes` calls to one endpoint."""

    def __init__(self, crash_on: str, crashes: int = 1):
        super().__init__()
        self.crash_on = crash_on
        self.crashes = crashes

    async def call(self, endpoint, verb, body, tenant_id):
        if endpoint == self.crash_on and self.crashes > 0:
            self.crashes -= 1
            self.calls.append(
                {"endpoint": endpoint, "verb": verb, "body": body, "tenant_id": tenant_id}
            )
            raise RuntimeError("connection pool closed")
        return await super().call(endpoint, verb, body, tenant_id)


class RecordingNotifier(Notifier):
    """Keeps every notification in memory."""

    def __init__(self) -> None:
        self.sent: List[Tuple[NotificationEvent, Dict[str, Any]]] = []

    def notify(self, request, event: NotificationEvent) -> None:
        self.sent.append((event, build_notification(request, event)))

    def events_for(self, request_id: str) -> List[NotificationEvent]:
        return [event for event, message in self.sent if message["request_id"] == request_id]

async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def contract_validator():
    return ContractValidator(CONTRACTS_DIR)


@pytest.fixture
def ledger(tmp_path):
    return AuditLedger(tmp_path / "audit")


@pytest.fixture
def classification_request():
    """Returns a password reset request as handed over by ingestion."""
    return ClassificationRequest(
        content="Jane Doe is locked out, please reset her password",
        source="email",
        tenant_id="contoso",
        client_label="Contoso Ltd",
        context={"sender": "helpdesk@contoso.com"},
        created_at=NOW - timedelta(minutes=1),
        request_id="550e8400-e29b-41d4-a716-446655440000",
    )


@pytest.fixture
def valid_request_v1():
    """Returns a valid message matching classification_request.schema.json v1.0."""
    return {
        "version": "1.0",
        "request_id": "550e8400-e29b-41d4-a716-446655440000",
        "content": "Add bob@contoso.com to the Finance group",
        "source": "ticket",
        "tenant_id": "contoso",
        "client_label": "Contoso Ltd",
        "context": {"ticket": "INC-1042"},
        "created_at": "2026-01-14T12:00:00+00:00",
    }


@pytest.fixture
def valid_notification_v1():
    """Returns a valid message matching notification.schema.json v1.0."""
    return {
        "version": "1.0",
        "notification_id": "650e8400-e29b-41d4-a716-446655440001",
        "timestamp": "2026-01-14T12:01:00+00:00",
        "request_id": "750e8400-e29b-41d4-a716-446655440002",
        "tenant_id": "contoso",
        "event": "created",
        "status": "Pending",
        "risk_score": 75,
        "client_label": "Contoso Ltd",
        "expires_at": "2026-01-14T12:16:00+00:00",
        "description": "Group Membership: Finance group gains one member",
    }


@pytest.fixture
def valid_output_v1():
    """Returns a provider answer matching classification_output.schema.json."""
    return {
        "action_type": "group_membership",
        "confidence": 0.91,
        "risk_score": 45,
        "parameters": {
            "group": "Finance",
            "members": ["bob@contoso.com"],
            "operation": "add",
        },
        "affected_principals": ["bob@contoso.com"],
        "business_impact": "Bob gains access to finance shares",
        "requires_approval": False,
        "reasoning": "Routine group change requested by the manager",
    }
