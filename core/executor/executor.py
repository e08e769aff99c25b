"""
STEWARD Action Executor - runs approved actions against the management API.

Actions run strictly in order. A failing action never stops the actions
after it; the report says which ones failed.

Safety Invariants:
- Every action produces exactly one ExecutionResult and one AuditLogEntry
- The audit entry is written before the next action starts
- Transient failures retry with backoff; permanent failures do not
- An open circuit short-circuits the call (recorded as HTTP 503)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from core.audit import AuditLedger
from core.config import RetrySettings
from core.errors import ExecutionFailure
from core.models import (
    ApprovalRequest,
    ApprovalStatus,
    AuditLogEntry,
    ExecutionResult,
    ProposedAction,
)
from core.retry import is_transient, retry_async
from core.time_utils import utc_now
from .circuit_breaker import CircuitBreaker
from .management_api import ManagementClient


logger = logging.getLogger(__name__)


CIRCUIT_OPEN_STATUS = 503

AUDIT_ACTOR = "action-executor"


@dataclass
class ExecutionReport:
    """Per-action results for one request, in execution order."""

    request_id: str
    results: List[ExecutionResult] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def final_status(self) -> ApprovalStatus:
        if self.all_succeeded:
            return ApprovalStatus.APPROVED
        return ApprovalStatus.PARTIALLY_EXECUTED


class ActionExecutor:
    """
    Executes ProposedActions with retry, circuit breaking and auditing.

    Invariants:
    - Per-action isolation: one failure never aborts the rest
    - Executions are not cancelable mid-flight
    """

    def __init__(
        self,
        client: ManagementClient,
        ledger: Optional[AuditLedger] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry: Optional[RetrySettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize executor.

        Args:
            client: Management API client
            ledger: Audit ledger for per-action entries
            circuit_breaker: Breaker keyed by (tenant, action type)
            retry: Retry budget for transient failures
            sleep: Backoff sleep (injectable for tests)
        """
        self.client = client
        self.ledger = ledger
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.retry = retry or RetrySettings()
        self._sleep = sleep

    async def execute(self, request: ApprovalRequest) -> ExecutionReport:
        """
        Execute an approved request's actions.

        Args:
            request: ApprovalRequest in Approved status

        Returns:
            ExecutionReport with one result per proposed action
        """
        return await self.execute_actions(
            request.proposed_actions,
            tenant_id=request.tenant_id,
            entity_id=request.id,
            approval_request_id=request.id,
            risk_score=request.risk_score,
        )

    async def execute_actions(
        self,
        actions: List[ProposedAction],
        tenant_id: str,
        entity_id: str,
        approval_request_id: Optional[str] = None,
        risk_score: Optional[int] = None,
    ) -> ExecutionReport:
        """
        Execute actions in order.

        Args:
            actions: Ordered actions
            tenant_id: Tenant the actions apply to
            entity_id: Id recorded on audit entries (approval or classification request)
            approval_request_id: Approval request, when the actions were approved
            risk_score: Risk score recorded on audit entries

        Returns:
            ExecutionReport
        """
        report = ExecutionReport(request_id=entity_id)

        for index, action in enumerate(actions):
            result = await self._execute_one(action, tenant_id)
            report.results.append(result)
            self._audit(action, result, tenant_id, entity_id, approval_request_id, risk_score, index)

        logger.info(
            f"Executed {len(actions)} action(s) for {entity_id}: "
            f"{len(actions) - report.failed_count} succeeded, {report.failed_count} failed"
        )
        return report

    async def _execute_one(self, action: ProposedAction, tenant_id: str) -> ExecutionResult:
        action_type = action.action_type.value
        executed_at = utc_now()
        started = time.monotonic()

        def _result(success: bool, message: str, status_code: int, attempts: int) -> ExecutionResult:
            return ExecutionResult(
                action_type=action.action_type,
                target_resource=action.target_resource,
                success=success,
                message=message,
                status_code=status_code,
                executed_at=executed_at,
                duration_ms=int((time.monotonic() - started) * 1000),
                attempts=attempts,
            )

        if self.circuit_breaker.is_open(tenant_id, action_type):
            logger.warning(
                f"Circuit open for {action_type} on tenant {tenant_id}, "
                f"skipping {action.verb} {action.endpoint}"
            )
            return _result(False, "Circuit breaker open", CIRCUIT_OPEN_STATUS, 0)

        attempts = 1

        def _on_retry(attempt: int, error: Exception) -> None:
            nonlocal attempts
            attempts = attempt + 1

        try:
            response = await retry_async(
                lambda: self.client.call(action.endpoint, action.verb, action.body, tenant_id),
                operation_name=f"{action.verb} {action.endpoint}",
                is_retryable=is_transient,
                max_attempts=self.retry.max_attempts,
                base_delay=self.retry.base_delay,
                max_delay=self.retry.max_delay,
                max_total_seconds=self.retry.max_total_seconds,
                jitter=self.retry.jitter,
                sleep=self._sleep,
                on_retry=_on_retry,
            )
        except ExecutionFailure as e:
            self.circuit_breaker.record_failure(tenant_id, action_type)
            logger.error(
                f"Action {action.description or action_type} failed after "
                f"{attempts} attempt(s): {e.message}"
            )
            return _result(False, e.message, e.status_code, attempts)
        except Exception as e:
            self.circuit_breaker.record_failure(tenant_id, action_type)
            logger.error(
                f"Action {action.description or action_type} raised unexpectedly "
                f"after {attempts} attempt(s): {e}",
                exc_info=True,
            )
            return _result(False, f"Unexpected error: {type(e).__name__}: {e}", 0, attempts)

        self.circuit_breaker.record_success(tenant_id, action_type)
        return _result(True, action.description or "Completed", response.status_code, attempts)

    def _audit(
        self,
        action: ProposedAction,
        result: ExecutionResult,
        tenant_id: str,
        entity_id: str,
        approval_request_id: Optional[str],
        risk_score: Optional[int],
        index: int,
    ) -> None:
        if self.ledger is None:
            return

        self.ledger.record(
            AuditLogEntry(
                entity_id=entity_id,
                tenant_id=tenant_id,
                action=f"execute:{action.action_type.value}",
                actor=AUDIT_ACTOR,
                success=result.success,
                approval_request_id=approval_request_id,
                risk_score=risk_score,
                details={
                    "index": index,
                    "request": {
                        "endpoint": action.endpoint,
                        "verb": action.verb,
                        "body": action.body,
                        "target_resource": action.target_resource,
                    },
                    "result": result.to_dict(),
                },
            )
        )
