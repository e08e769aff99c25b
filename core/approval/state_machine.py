"""
Approval State Machine - lifecycle of human-gated change requests.

States:
    Pending -> Approved | Rejected | Expired
    Approved -> PartiallyExecuted (some actions failed)

Decision flow for submit_decision():
1. Fetch request (NOT_FOUND)
2. Must still be Pending (ALREADY_PROCESSED)
3. Must not be past expires_at (EXPIRED, request moves to Expired)
4. Approver must be authorized for the tenant (UNAUTHORIZED_APPROVER)
5. Biometric confirmation must validate (INVALID_CONFIRMATION)
6. Atomic Pending -> Approved|Rejected (losing writer gets ALREADY_PROCESSED)
7. Approved requests execute; any failed action moves them to PartiallyExecuted

Invariants:
- Silence is NEVER permission: expiry cancels, never executes
- Every status change goes through the store's compare-and-set
- Every decision submission writes exactly one decision audit entry
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from core.audit import AuditLedger
from core.biometric import BiometricValidator
from core.classification import ActionPlanner
from core.errors import (
    AlreadyProcessedError,
    ExpiredError,
    InvalidConfirmationError,
    NotFoundError,
    StewardError,
    UnauthorizedApproverError,
)
from core.models import (
    ApprovalRequest,
    ApprovalResult,
    ApprovalStatus,
    AuditLogEntry,
    BiometricConfirmation,
    ClassificationRequest,
    ClassificationResult,
    ExecutionResult,
)
from core.policy import RiskPolicy
from core.time_utils import to_iso, utc_now
from .approver_directory import ApproverDirectory
from .notifications import NotificationEvent, Notifier
from .store import ApprovalStore


logger = logging.getLogger(__name__)


AUDIT_ACTOR = "approval-state-machine"

MAX_DESCRIPTION_LENGTH = 500


class ApprovalStateMachine:
    """
    Creates approval requests and applies decisions to them.

    Invariants:
    - Terminal requests never change again (except Approved -> PartiallyExecuted)
    - Two concurrent decisions for one request never both succeed
    - The expiration sweep uses the same compare-and-set as decisions
    """

    def __init__(
        self,
        store: ApprovalStore,
        validator: Optional[BiometricValidator] = None,
        risk_policy: Optional[RiskPolicy] = None,
        ledger: Optional[AuditLedger] = None,
        executor: Optional[Any] = None,
        notifier: Optional[Notifier] = None,
        approver_directory: Optional[ApproverDirectory] = None,
        planner: Optional[ActionPlanner] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize state machine.

        Args:
            store: Approval request store
            validator: Biometric confirmation validator
            risk_policy: Tier policy (expiration windows, strengths)
            ledger: Audit ledger
            executor: ActionExecutor for approved requests
            notifier: Lifecycle notification sink
            approver_directory: Authorized approvers (None skips the check)
            planner: Builds proposed actions from classifications
            clock: Current UTC time source
        """
        self.store = store
        self.risk_policy = risk_policy or RiskPolicy()
        self.validator = validator or BiometricValidator(self.risk_policy)
        self.ledger = ledger
        self.executor = executor
        self.notifier = notifier or Notifier()
        self.approver_directory = approver_directory
        self.planner = planner or ActionPlanner()
        self._clock = clock

    def _notify(self, request: ApprovalRequest, event: NotificationEvent) -> None:
        # A lost notification never undoes a committed transition
        try:
            self.notifier.notify(request, event)
        except Exception as e:
            logger.error(
                f"Failed to publish {event.value} notification for {request.id}: {e}",
                exc_info=True,
            )

    def _record(self, entry: AuditLogEntry) -> Optional[str]:
        if self.ledger is None:
            return None
        self.ledger.record(entry)
        return entry.entry_id

    def create_request(
        self,
        request: ClassificationRequest,
        result: ClassificationResult,
        now: Optional[datetime] = None,
    ) -> ApprovalRequest:
        """
        Create a Pending approval request for a classification.

        Args:
            request: Originating classification request
            result: Classification requiring approval

        Returns:
            Persisted ApprovalRequest

        Raises:
            ValueError: If the result does not require approval or belongs to
                another request
        """
        if not result.requires_approval:
            raise ValueError(
                f"Classification {result.request_id} does not require approval"
            )
        if result.request_id != request.request_id:
            raise ValueError(
                f"Classification {result.request_id} does not belong to "
                f"request {request.request_id}"
            )

        now = now or self._clock()
        summary = result.business_impact or result.reasoning or request.content
        description = f"{result.action_type.display_name}: {summary}"

        approval = ApprovalRequest(
            tenant_id=request.tenant_id,
            client_label=request.client_label,
            request_type=result.action_type,
            description=description[:MAX_DESCRIPTION_LENGTH],
            risk_score=result.risk_score,
            proposed_actions=self.planner.plan(result),
            classification_request_id=request.request_id,
            created_at=now,
            expires_at=now + self.risk_policy.expiration_window(result.risk_score),
        )
        self.store.create(approval)

        self._record(
            AuditLogEntry(
                entity_id=approval.id,
                tenant_id=approval.tenant_id,
                action="approval_created",
                actor=AUDIT_ACTOR,
                success=True,
                approval_request_id=approval.id,
                risk_score=approval.risk_score,
                details={
                    "classification_request_id": request.request_id,
                    "request_type": approval.request_type.value,
                    "tier": self.risk_policy.tier_for(approval.risk_score).value,
                    "expires_at": to_iso(approval.expires_at),
                    "proposed_actions": [a.to_dict() for a in approval.proposed_actions],
                },
                timestamp=now,
            )
        )

        logger.info(
            f"Approval request {approval.id} created for tenant {approval.tenant_id}: "
            f"{approval.request_type.value}, risk={approval.risk_score}, "
            f"expires={to_iso(approval.expires_at)}"
        )
        self._notify(approval, NotificationEvent.CREATED)
        return approval

    def _rejected(
        self,
        request_id: str,
        tenant_id: str,
        error: StewardError,
        status: Optional[ApprovalStatus],
        now: datetime,
        approver: Optional[str],
        risk_score: Optional[int] = None,
        confirmation: Optional[BiometricConfirmation] = None,
    ) -> ApprovalResult:
        """Decision audit entry + failed ApprovalResult for a rejected submission."""
        reason_code = error.reason_code
        message = error.message
        details: Dict[str, Any] = {
            "reason_code": reason_code,
            "kind": error.kind.value,
            "message": message,
        }
        if isinstance(error, InvalidConfirmationError):
            details["detail_code"] = error.detail_code
        logger.warning(f"Decision for {request_id} rejected: {reason_code} ({message})")
        confirmation_hash = getattr(confirmation, "hash", None)
        if not isinstance(confirmation_hash, str):
            confirmation_hash = None

        audit_id = self._record(
            AuditLogEntry(
                entity_id=request_id,
                tenant_id=tenant_id,
                action="approval_decision",
                actor=approver or "unknown",
                success=False,
                approval_request_id=request_id,
                confirmation_hash=confirmation_hash,
                risk_score=risk_score,
                details=details,
                timestamp=now,
            )
        )
        return ApprovalResult(
            request_id=request_id,
            success=False,
            status=status,
            message=message,
            reason_code=reason_code,
            completed_at=now,
            audit_log_id=audit_id,
        )

    def _expire(self, request: ApprovalRequest, now: datetime) -> Optional[ApprovalRequest]:
        expired = self.store.compare_and_set_status(
            request.id,
            ApprovalStatus.PENDING,
            ApprovalStatus.EXPIRED,
            decided_at=now,
        )
        if expired is not None:
            logger.info(f"Approval request {request.id} expired at {to_iso(request.expires_at)}")
        return expired

    async def submit_decision(
        self,
        request_id: str,
        approved: bool,
        confirmation: Optional[BiometricConfirmation],
        notes: Optional[str] = None,
        approver: Optional[str] = None,
        secondary_confirmation: Optional[BiometricConfirmation] = None,
        secondary_approver: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalResult:
        """
        Apply an approver's decision.

        Args:
            request_id: Approval request id
            approved: True to approve, False to reject
            confirmation: Approver's biometric confirmation
            notes: Free-text notes from the approver
            approver: Approver identity
            secondary_confirmation: Second approver's confirmation (high tiers)
            secondary_approver: Second approver identity
            now: Decision time (defaults to current UTC time)

        Returns:
            ApprovalResult; rejected submissions carry success=False and a
            reason code and must not be retried
        """
        now = now or self._clock()

        request = self.store.get(request_id)
        if request is None:
            return self._rejected(
                request_id, "unknown",
                NotFoundError(f"Approval request {request_id} not found"),
                None, now, approver,
            )

        def reject(error: StewardError, status: ApprovalStatus) -> ApprovalResult:
            return self._rejected(
                request.id, request.tenant_id, error, status, now,
                approver, request.risk_score, confirmation,
            )

        if request.status != ApprovalStatus.PENDING:
            return reject(
                AlreadyProcessedError(f"Approval request is already {request.status.value}"),
                request.status,
            )

        if request.is_expired(now):
            expired = self._expire(request, now)
            if expired is not None:
                self._notify(expired, NotificationEvent.STATUS_CHANGED)
            current = self.store.get(request.id)
            return reject(
                ExpiredError(f"Approval request expired at {to_iso(request.expires_at)}"),
                current.status if current else ApprovalStatus.EXPIRED,
            )

        if self.approver_directory is not None:
            if not self.approver_directory.is_authorized(approver, request.tenant_id):
                return reject(
                    UnauthorizedApproverError(
                        f"Approver {approver!r} is not authorized for tenant {request.tenant_id}"
                    ),
                    request.status,
                )
            if secondary_confirmation is not None and not self.approver_directory.is_authorized(
                secondary_approver, request.tenant_id
            ):
                return reject(
                    UnauthorizedApproverError(
                        f"Secondary approver {secondary_approver!r} is not authorized "
                        f"for tenant {request.tenant_id}"
                    ),
                    request.status,
                )

        if (
            secondary_approver is not None
            and approver is not None
            and secondary_approver.strip().lower() == approver.strip().lower()
        ):
            return reject(
                UnauthorizedApproverError("Secondary approver must be a different person"),
                request.status,
            )

        check = self.validator.validate(
            confirmation, request.risk_score, now=now, secondary=secondary_confirmation
        )
        if not check.valid:
            return reject(
                InvalidConfirmationError(
                    f"Biometric confirmation rejected: {check.detail}",
                    detail_code=check.reason_code,
                ),
                request.status,
            )

        target = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
        decided = self.store.compare_and_set_status(
            request.id,
            ApprovalStatus.PENDING,
            target,
            approver=approver,
            secondary_approver=secondary_approver,
            biometric_confirmation=confirmation,
            secondary_confirmation=secondary_confirmation,
            notes=notes,
            decided_at=now,
        )
        if decided is None:
            current = self.store.get(request.id)
            return reject(
                AlreadyProcessedError("Approval request was decided concurrently"),
                current.status if current else request.status,
            )

        logger.info(f"Approval request {decided.id} {target.value} by {approver}")
        self._notify(decided, NotificationEvent.STATUS_CHANGED)

        execution_results: List[ExecutionResult] = []
        execution_error: Optional[str] = None
        if approved and self.executor is not None:
            execution_failed = False
            try:
                report = await self.executor.execute(decided)
                execution_results = report.results
                execution_failed = not report.all_succeeded
            except Exception as e:
                # The decision is committed; an executor crash still resolves the request
                logger.error(
                    f"Execution of approval request {decided.id} raised: {e}",
                    exc_info=True,
                )
                execution_failed = True
                execution_error = f"{type(e).__name__}: {e}"
            if execution_failed:
                partial = self.store.compare_and_set_status(
                    decided.id,
                    ApprovalStatus.APPROVED,
                    ApprovalStatus.PARTIALLY_EXECUTED,
                )
                if partial is not None:
                    decided = partial
                    self._notify(decided, NotificationEvent.STATUS_CHANGED)

        success = decided.status != ApprovalStatus.PARTIALLY_EXECUTED
        failed = sum(1 for r in execution_results if not r.success)
        if not approved:
            message = "Request rejected"
        elif success:
            message = f"Request approved, {len(execution_results)} action(s) executed"
        elif execution_error:
            message = f"Request approved, execution failed: {execution_error}"
        else:
            message = f"Request approved, {failed} of {len(execution_results)} action(s) failed"

        audit_id = self._record(
            AuditLogEntry(
                entity_id=decided.id,
                tenant_id=decided.tenant_id,
                action="approval_decision",
                actor=approver or "unknown",
                success=True,
                approval_request_id=decided.id,
                confirmation_hash=confirmation.hash if confirmation else None,
                risk_score=decided.risk_score,
                details={
                    "decision": "approve" if approved else "reject",
                    "status": decided.status.value,
                    "secondary_approver": secondary_approver,
                    "notes": notes,
                    "method": confirmation.method if confirmation else None,
                    "device_id": confirmation.device_id if confirmation else None,
                    "actions_failed": failed,
                    "actions_total": len(execution_results),
                    "execution_error": execution_error,
                },
                timestamp=now,
            )
        )

        return ApprovalResult(
            request_id=decided.id,
            success=success,
            status=decided.status,
            message=message,
            reason_code=None if success else "PARTIALLY_EXECUTED",
            execution_results=execution_results,
            completed_at=utc_now(),
            audit_log_id=audit_id,
        )

    def expire_stale(self, now: Optional[datetime] = None) -> List[str]:
        """
        Expire every overdue Pending request.

        Args:
            now: Sweep time (defaults to current UTC time)

        Returns:
            Ids of requests this sweep expired
        """
        now = now or self._clock()
        expired_ids = []

        for request in self.store.list_by_status(ApprovalStatus.PENDING):
            if not request.is_expired(now):
                # Ordered by expiry: everything after this is still live
                break

            expired = self._expire(request, now)
            if expired is None:
                # A decision won the race
                continue

            self._record(
                AuditLogEntry(
                    entity_id=expired.id,
                    tenant_id=expired.tenant_id,
                    action="approval_expired",
                    actor=AUDIT_ACTOR,
                    success=True,
                    approval_request_id=expired.id,
                    risk_score=expired.risk_score,
                    details={"expires_at": to_iso(expired.expires_at)},
                    timestamp=now,
                )
            )
            self._notify(expired, NotificationEvent.CANCELLED)
            expired_ids.append(expired.id)

        if expired_ids:
            logger.info(f"Expiration sweep expired {len(expired_ids)} request(s)")
        return expired_ids

    def get_pending_approvals(
        self,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> List[ApprovalRequest]:
        """Pending, unexpired requests for a tenant, soonest expiry first."""
        now = now or self._clock()
        return [
            r
            for r in self.store.list_by_status(ApprovalStatus.PENDING, tenant_id)
            if not r.is_expired(now)
        ]

    def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        return self.store.get(request_id)
