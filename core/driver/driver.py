"""
STEWARD Orchestration Driver - wires ingestion, classification, approval and execution.

Flow per request:
1. Ingestion submits a ClassificationRequest (directly or via signed webhook)
2. A worker picks it up and classifies it
3. Results needing approval become Pending ApprovalRequests (+ notification)
4. Everything else is planned and executed immediately, still audited

Workers consume the classification_request stream through a Redis consumer
group when an event bus is configured, or an in-process queue otherwise.
Each message is processed on its own event loop.
"""

import asyncio
import dataclasses
import json
import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from bus.python.steward_bus import EventBus
from core.approval import ApprovalStateMachine
from core.audit import AuditLedger
from core.classification import ActionPlanner, ClassificationOrchestrator
from core.config import HIGH_RISK_THRESHOLD, DriverSettings
from core.executor import ActionExecutor, ExecutionReport
from core.models import (
    ApprovalRequest,
    ApprovalResult,
    AuditLogEntry,
    BiometricConfirmation,
    ClassificationRequest,
    ClassificationResult,
)
from .signatures import verify_signature


logger = logging.getLogger(__name__)


REQUEST_CONTRACT = "classification_request"

WORKER_GROUP = "steward-workers"

AUDIT_ACTOR = "orchestration-driver"

WEBHOOK_SOURCE = "webhook"


@dataclass
class ProcessingOutcome:
    """What happened to one classification request."""

    request_id: str
    classification: ClassificationResult
    approval_request: Optional[ApprovalRequest] = None
    execution: Optional[ExecutionReport] = None

    @property
    def auto_executed(self) -> bool:
        return self.execution is not None


class OrchestrationDriver:
    """
    Entry point for inbound requests and background work.

    Invariants:
    - A result is auto-executed only when it does not require approval,
      its risk is below the approval threshold and auto-execution is enabled
    - Webhooks are rejected unless their signature verifies
    - One failed message never stops a worker
    """

    def __init__(
        self,
        orchestrator: ClassificationOrchestrator,
        state_machine: ApprovalStateMachine,
        executor: ActionExecutor,
        ledger: Optional[AuditLedger] = None,
        event_bus: Optional[EventBus] = None,
        planner: Optional[ActionPlanner] = None,
        settings: Optional[DriverSettings] = None,
        webhook_secret: Optional[str] = None,
        approval_risk_threshold: int = HIGH_RISK_THRESHOLD,
    ):
        """
        Initialize driver.

        Args:
            orchestrator: Classification orchestrator
            state_machine: Approval state machine
            executor: Action executor for auto-executed results
            ledger: Audit ledger
            event_bus: Bus for the request queue (None uses an in-process queue)
            planner: Action planner for auto-executed results
            settings: Worker and sweep settings
            webhook_secret: Shared secret for webhook signatures
            approval_risk_threshold: Risk at or above which approval is forced
        """
        self.orchestrator = orchestrator
        self.state_machine = state_machine
        self.executor = executor
        self.ledger = ledger
        self.bus = event_bus
        self.planner = planner or state_machine.planner
        self.settings = settings or DriverSettings()
        self.approval_risk_threshold = min(approval_risk_threshold, HIGH_RISK_THRESHOLD)
        self._webhook_secret = webhook_secret
        self.queue: "queue.Queue[Dict[str, Any]]" = queue.Queue()

    # Inbound

    def submit_classification_request(
        self,
        content: str,
        source: str,
        tenant_id: str,
        client_label: str,
        context: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Enqueue a free-text request for classification.

        Returns:
            Request id

        Raises:
            ValueError: If content, tenant_id or client_label is empty
        """
        for name, value in (
            ("content", content),
            ("tenant_id", tenant_id),
            ("client_label", client_label),
        ):
            if not value or not str(value).strip():
                raise ValueError(f"{name} is required")

        request = ClassificationRequest(
            content=content,
            source=source or "api",
            tenant_id=tenant_id,
            client_label=client_label,
            context=dict(context or {}),
        )
        message = request.to_dict()

        if self.bus is not None:
            message_id = self.bus.publish(message, REQUEST_CONTRACT)
            logger.info(
                f"Queued classification request {request.request_id} "
                f"for tenant {tenant_id} on bus ({message_id})"
            )
        else:
            self.queue.put(message)
            logger.info(
                f"Queued classification request {request.request_id} for tenant {tenant_id}"
            )

        return request.request_id

    def ingest_webhook(self, body: bytes, signature: Optional[str]) -> str:
        """
        Accept a signed webhook from an ingestion collaborator.

        Args:
            body: Raw request body
            signature: HMAC-SHA256 signature header

        Returns:
            Request id

        Raises:
            SignatureError: If the signature does not verify
            ValueError: If the payload is not a JSON object with the required fields
        """
        verify_signature(body, signature, self._webhook_secret)

        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"Webhook body is not valid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise ValueError("Webhook body must be a JSON object")

        context = payload.get("context") or {}
        if not isinstance(context, dict):
            raise ValueError("Webhook context must be an object")

        return self.submit_classification_request(
            content=payload.get("content", ""),
            source=payload.get("source") or WEBHOOK_SOURCE,
            tenant_id=payload.get("tenant_id", ""),
            client_label=payload.get("client_label", ""),
            context={str(k): str(v) for k, v in context.items()},
        )

    async def submit_decision(
        self,
        request_id: str,
        approved: bool,
        confirmation: Optional[BiometricConfirmation],
        notes: Optional[str] = None,
        approver: Optional[str] = None,
        secondary_confirmation: Optional[BiometricConfirmation] = None,
        secondary_approver: Optional[str] = None,
    ) -> ApprovalResult:
        return await self.state_machine.submit_decision(
            request_id,
            approved,
            confirmation,
            notes=notes,
            approver=approver,
            secondary_confirmation=secondary_confirmation,
            secondary_approver=secondary_approver,
        )

    def get_pending_approvals(
        self,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> List[ApprovalRequest]:
        return self.state_machine.get_pending_approvals(tenant_id, now=now)

    # Processing

    def _needs_approval(self, result: ClassificationResult) -> bool:
        return (
            result.requires_approval
            or result.risk_score >= self.approval_risk_threshold
            or not self.settings.auto_execute
        )

    async def process_request(self, request: ClassificationRequest) -> ProcessingOutcome:
        """
        Classify a request and route the result.

        Args:
            request: Classification request

        Returns:
            ProcessingOutcome with either an approval request or an execution report
        """
        result = await self.orchestrator.classify(request)

        if self._needs_approval(result):
            if not result.requires_approval:
                result = dataclasses.replace(result, requires_approval=True)
            approval = self.state_machine.create_request(request, result)
            logger.info(
                f"Request {request.request_id} awaiting approval as {approval.id} "
                f"(action={result.action_type.value}, risk={result.risk_score})"
            )
            return ProcessingOutcome(
                request_id=request.request_id,
                classification=result,
                approval_request=approval,
            )

        actions = self.planner.plan(result)
        report = await self.executor.execute_actions(
            actions,
            tenant_id=request.tenant_id,
            entity_id=request.request_id,
            risk_score=result.risk_score,
        )

        if self.ledger is not None:
            self.ledger.record(
                AuditLogEntry(
                    entity_id=request.request_id,
                    tenant_id=request.tenant_id,
                    action="auto_execution",
                    actor=AUDIT_ACTOR,
                    success=report.all_succeeded,
                    risk_score=result.risk_score,
                    details={
                        "action_type": result.action_type.value,
                        "actions": len(actions),
                        "failed": report.failed_count,
                        "results": [r.to_dict() for r in report.results],
                    },
                )
            )

        logger.info(
            f"Request {request.request_id} auto-executed: "
            f"{len(actions) - report.failed_count}/{len(actions)} action(s) succeeded"
        )
        return ProcessingOutcome(
            request_id=request.request_id,
            classification=result,
            execution=report,
        )

    def handle_message(self, message: Dict[str, Any]) -> ProcessingOutcome:
        """Process one queued request on a fresh event loop."""
        request = ClassificationRequest.from_dict(message)
        logger.debug(f"Processing classification request {request.request_id}")
        return asyncio.run(self.process_request(request))

    # Background work

    def _consume_queue(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                message = self.queue.get(timeout=0.5)
            except queue.Empty:
                continue

            try:
                self.handle_message(message)
            except Exception as e:
                logger.error(
                    f"Error processing request {message.get('request_id')}: {e}",
                    exc_info=True,
                )
            finally:
                self.queue.task_done()

    def _worker(self, index: int, stop_event: threading.Event) -> None:
        if self.bus is not None:
            self.bus.subscribe(
                contract_type=REQUEST_CONTRACT,
                handler=self.handle_message,
                consumer_group=WORKER_GROUP,
                consumer_name=f"worker-{index}",
                stop_event=stop_event,
            )
        else:
            self._consume_queue(stop_event)

    def run_workers(self, count: int, stop_event: threading.Event) -> List[threading.Thread]:
        """
        Start worker threads.

        Args:
            count: Number of workers
            stop_event: Workers exit once this is set

        Returns:
            Started threads (join them after setting stop_event)
        """
        if self.bus is not None:
            self.bus.ensure_group(REQUEST_CONTRACT, WORKER_GROUP)

        threads = []
        for index in range(max(1, count)):
            thread = threading.Thread(
                target=self._worker,
                args=(index + 1, stop_event),
                name=f"steward-worker-{index + 1}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)

        logger.info(f"Started {len(threads)} worker(s)")
        return threads

    def run_expiration_sweeper(self, interval: float, stop_event: threading.Event) -> None:
        """
        Expire overdue requests every interval seconds until stopped.

        Blocks the calling thread.
        """
        logger.info(f"Starting expiration sweeper (interval={interval}s)")

        while not stop_event.is_set():
            try:
                expired = self.state_machine.expire_stale()
                if expired:
                    logger.info(f"Sweep expired {len(expired)} request(s)")
            except Exception as e:
                logger.error(f"Error in expiration sweep: {e}", exc_info=True)
            stop_event.wait(interval)

        logger.info("Stopped expiration sweeper")
