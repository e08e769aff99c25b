"""
Approval state machine tests.

Tests request creation, decision checks, terminal-state idempotence,
expiration and concurrent decisions.
"""

import asyncio
import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import (
    NOW,
    CrashingManagementClient,
    FakeManagementClient,
    RecordingNotifier,
    make_confirmation,
    no_sleep,
)
from core.approval import (
    ApprovalStateMachine,
    ApproverDirectory,
    InMemoryApprovalStore,
    NotificationEvent,
)
from core.config import RetrySettings
from core.errors import ErrorKind
from core.executor import ActionExecutor, CircuitBreaker
from core.models import (
    ActionType,
    ApprovalStatus,
    ClassificationResult,
    parse_parameters,
)


DECISION_TIME = NOW + timedelta(minutes=1)


def _result(request, risk_score=75, requires_approval=True):
    action_type = ActionType.GROUP_MEMBERSHIP
    return ClassificationResult(
        request_id=request.request_id,
        action_type=action_type,
        confidence=0.9,
        risk_score=risk_score,
        parameters=parse_parameters(
            action_type,
            {"group": "Finance", "members": ["bob@contoso.com", "eve@contoso.com"]},
        ),
        affected_principals=["bob@contoso.com", "eve@contoso.com"],
        business_impact="Two users gain access to finance shares",
        requires_approval=requires_approval,
        consensus_achieved=True,
        providers=["anthropic", "openai"],
    )


@pytest.fixture
def client():
    return FakeManagementClient()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store():
    return InMemoryApprovalStore()


@pytest.fixture
def machine(store, client, ledger, notifier):
    executor = ActionExecutor(
        client,
        ledger=ledger,
        circuit_breaker=CircuitBreaker(),
        retry=RetrySettings(max_attempts=3),
        sleep=no_sleep,
    )
    return ApprovalStateMachine(
        store,
        ledger=ledger,
        executor=executor,
        notifier=notifier,
        approver_directory=ApproverDirectory(
            {
                "alice@example.com": frozenset({"contoso"}),
                "bob@example.com": frozenset({"*"}),
            }
        ),
        clock=lambda: NOW,
    )


@pytest.fixture
def pending(machine, classification_request):
    return machine.create_request(
        classification_request, _result(classification_request), now=NOW
    )


def _decisions(ledger):
    return [e for e in ledger.query() if e.action == "approval_decision"]


@pytest.mark.unit
class TestCreateRequest:

    def test_creates_pending_request(self, pending, store, classification_request):
        assert pending.status == ApprovalStatus.PENDING
        assert pending.tenant_id == "contoso"
        assert pending.classification_request_id == classification_request.request_id
        assert len(pending.proposed_actions) == 2
        assert pending.description.startswith("Group Membership:")
        assert store.get(pending.id) == pending

    def test_expiry_follows_risk_tier(self, pending):
        assert pending.expires_at == NOW + timedelta(minutes=15)

    def test_low_risk_gets_longer_window(self, machine, classification_request):
        approval = machine.create_request(
            classification_request, _result(classification_request, risk_score=20), now=NOW
        )

        assert approval.expires_at == NOW + timedelta(minutes=30)

    def test_created_notification_and_audit(self, pending, notifier, ledger):
        assert notifier.events_for(pending.id) == [NotificationEvent.CREATED]
        entries = [e for e in ledger.query() if e.action == "approval_created"]
        assert len(entries) == 1
        assert entries[0].details["tier"] == "high"

    def test_notification_matches_contract(self, pending, notifier, contract_validator):
        _event, message = notifier.sent[0]

        contract_validator.validate(message, "notification")
        assert message["request_id"] == pending.id
        assert message["status"] == "Pending"

    def test_result_not_requiring_approval_rejected(self, machine, classification_request):
        with pytest.raises(ValueError, match="does not require approval"):
            machine.create_request(
                classification_request,
                _result(classification_request, risk_score=20, requires_approval=False),
            )

    def test_foreign_result_rejected(self, machine, classification_request):
        result = _result(classification_request)

        with pytest.raises(ValueError, match="does not belong"):
            machine.create_request(classification_request, replace(result, request_id="other"))


@pytest.mark.unit
class TestSubmitDecision:

    @pytest.mark.asyncio
    async def test_approval_executes_actions(self, machine, pending, client, ledger, notifier):
        """A valid approval runs every proposed action."""
        result = await machine.submit_decision(
            pending.id,
            True,
            make_confirmation(),
            notes="confirmed with requester",
            approver="alice@example.com",
            now=DECISION_TIME,
        )

        assert result.success
        assert result.status == ApprovalStatus.APPROVED
        assert result.reason_code is None
        assert len(result.execution_results) == 2
        assert all(r.success for r in result.execution_results)
        assert len(client.calls) == 2

        stored = machine.get_request(pending.id)
        assert stored.status == ApprovalStatus.APPROVED
        assert stored.approver == "alice@example.com"
        assert stored.notes == "confirmed with requester"
        assert stored.decided_at == DECISION_TIME

        decisions = _decisions(ledger)
        assert len(decisions) == 1
        assert decisions[0].success
        assert decisions[0].confirmation_hash == make_confirmation().hash
        assert result.audit_log_id == decisions[0].entry_id
        assert notifier.events_for(pending.id) == [
            NotificationEvent.CREATED,
            NotificationEvent.STATUS_CHANGED,
        ]

    @pytest.mark.asyncio
    async def test_rejection_executes_nothing(self, machine, pending, client):
        result = await machine.submit_decision(
            pending.id, False, make_confirmation(), approver="alice@example.com", now=DECISION_TIME
        )

        assert result.success
        assert result.status == ApprovalStatus.REJECTED
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_unknown_request(self, machine, ledger):
        result = await machine.submit_decision(
            "missing", True, make_confirmation(), approver="alice@example.com", now=DECISION_TIME
        )

        assert not result.success
        assert result.reason_code == "NOT_FOUND"
        assert result.status is None
        assert _decisions(ledger)[0].tenant_id == "unknown"
        assert _decisions(ledger)[0].details["kind"] == ErrorKind.NOT_FOUND.value

    @pytest.mark.asyncio
    async def test_invalid_confirmation(self, machine, pending, store, ledger):
        """A placeholder hash never approves anything."""
        confirmation = make_confirmation()
        result = await machine.submit_decision(
            pending.id,
            True,
            replace(confirmation, hash="0" * 64),
            approver="alice@example.com",
            now=DECISION_TIME,
        )

        assert not result.success
        assert result.reason_code == "INVALID_CONFIRMATION"
        assert result.status == ApprovalStatus.PENDING
        assert store.get(pending.id).status == ApprovalStatus.PENDING
        assert _decisions(ledger)[0].details["detail_code"] == "DEGENERATE_HASH"
        assert _decisions(ledger)[0].details["kind"] == ErrorKind.INVALID_CONFIRMATION.value

    @pytest.mark.asyncio
    async def test_mistyped_confirmation_rejected(self, machine, pending, store, ledger):
        confirmation = replace(make_confirmation(), timestamp="2026-01-14T12:00:30Z", hash=42)

        result = await machine.submit_decision(
            pending.id, True, confirmation, approver="alice@example.com", now=DECISION_TIME
        )

        assert result.reason_code == "INVALID_CONFIRMATION"
        assert store.get(pending.id).status == ApprovalStatus.PENDING
        assert _decisions(ledger)[0].details["detail_code"] == "MISSING_FIELD"
        assert _decisions(ledger)[0].confirmation_hash is None

    @pytest.mark.asyncio
    async def test_weak_method_for_high_risk(self, machine, pending):
        result = await machine.submit_decision(
            pending.id,
            True,
            make_confirmation(method="passcode"),
            approver="alice@example.com",
            now=DECISION_TIME,
        )

        assert result.reason_code == "INVALID_CONFIRMATION"

    @pytest.mark.asyncio
    async def test_unauthorized_approver(self, machine, pending, store):
        result = await machine.submit_decision(
            pending.id, True, make_confirmation(), approver="mallory@example.com", now=DECISION_TIME
        )

        assert result.reason_code == "UNAUTHORIZED_APPROVER"
        assert store.get(pending.id).status == ApprovalStatus.PENDING

    @pytest.mark.asyncio
    async def test_missing_approver_identity(self, machine, pending):
        result = await machine.submit_decision(
            pending.id, True, make_confirmation(), now=DECISION_TIME
        )

        assert result.reason_code == "UNAUTHORIZED_APPROVER"

    @pytest.mark.asyncio
    async def test_secondary_approver_must_differ(self, machine, pending):
        result = await machine.submit_decision(
            pending.id,
            True,
            make_confirmation(),
            approver="alice@example.com",
            secondary_confirmation=make_confirmation(device_id="other-device"),
            secondary_approver="Alice@Example.com",
            now=DECISION_TIME,
        )

        assert result.reason_code == "UNAUTHORIZED_APPROVER"

    @pytest.mark.asyncio
    async def test_expired_request_moves_to_expired(self, machine, pending, store, notifier):
        late = pending.expires_at + timedelta(seconds=1)

        result = await machine.submit_decision(
            pending.id,
            True,
            make_confirmation(timestamp=late - timedelta(seconds=10)),
            approver="alice@example.com",
            now=late,
        )

        assert result.reason_code == "EXPIRED"
        assert result.status == ApprovalStatus.EXPIRED
        assert store.get(pending.id).status == ApprovalStatus.EXPIRED
        assert notifier.events_for(pending.id)[-1] == NotificationEvent.STATUS_CHANGED

    @pytest.mark.asyncio
    async def test_decision_at_exact_deadline_accepted(self, machine, pending):
        result = await machine.submit_decision(
            pending.id,
            False,
            make_confirmation(timestamp=pending.expires_at - timedelta(seconds=10)),
            approver="alice@example.com",
            now=pending.expires_at,
        )

        assert result.success

    @pytest.mark.asyncio
    @pytest.mark.parametrize("first_approved", [True, False])
    async def test_terminal_requests_are_idempotent(self, machine, pending, store, client, first_approved):
        await machine.submit_decision(
            pending.id, first_approved, make_confirmation(), approver="alice@example.com",
            now=DECISION_TIME,
        )
        before = store.get(pending.id)
        calls = len(client.calls)

        again = await machine.submit_decision(
            pending.id, not first_approved, make_confirmation(), approver="bob@example.com",
            now=DECISION_TIME,
        )

        assert not again.success
        assert again.reason_code == "ALREADY_PROCESSED"
        assert again.status == before.status
        assert store.get(pending.id) == before
        assert len(client.calls) == calls

    @pytest.mark.asyncio
    async def test_failed_action_marks_partially_executed(self, store, ledger, notifier, classification_request):
        client = FakeManagementClient(failures={"/groups/Finance/members/$ref": [403]})
        machine = ApprovalStateMachine(
            store,
            ledger=ledger,
            executor=ActionExecutor(client, ledger=ledger, sleep=no_sleep),
            notifier=notifier,
            clock=lambda: NOW,
        )
        pending = machine.create_request(
            classification_request, _result(classification_request), now=NOW
        )

        result = await machine.submit_decision(
            pending.id, True, make_confirmation(), approver="anyone", now=DECISION_TIME
        )

        assert not result.success
        assert result.status == ApprovalStatus.PARTIALLY_EXECUTED
        assert result.reason_code == "PARTIALLY_EXECUTED"
        assert store.get(pending.id).status == ApprovalStatus.PARTIALLY_EXECUTED
        assert len(_decisions(ledger)) == 1

    @pytest.mark.asyncio
    async def test_crashing_client_marks_partially_executed(self, store, ledger, notifier, classification_request):
        """A non-domain client error fails one action and the request still resolves."""
        client = CrashingManagementClient(crash_on="/groups/Finance/members/$ref")
        machine = ApprovalStateMachine(
            store,
            ledger=ledger,
            executor=ActionExecutor(client, ledger=ledger, sleep=no_sleep),
            notifier=notifier,
            clock=lambda: NOW,
        )
        pending = machine.create_request(
            classification_request, _result(classification_request), now=NOW
        )

        result = await machine.submit_decision(
            pending.id, True, make_confirmation(), approver="anyone", now=DECISION_TIME
        )

        assert result.status == ApprovalStatus.PARTIALLY_EXECUTED
        assert result.reason_code == "PARTIALLY_EXECUTED"
        assert [r.success for r in result.execution_results] == [False, True]
        assert len(client.calls) == 2
        assert store.get(pending.id).status == ApprovalStatus.PARTIALLY_EXECUTED
        assert len(_decisions(ledger)) == 1

    @pytest.mark.asyncio
    async def test_executor_crash_still_resolves_request(self, store, ledger, notifier, classification_request):
        class ExplodingExecutor:
            async def execute(self, request):
                raise RuntimeError("executor unavailable")

        machine = ApprovalStateMachine(
            store,
            ledger=ledger,
            executor=ExplodingExecutor(),
            notifier=notifier,
            clock=lambda: NOW,
        )
        pending = machine.create_request(
            classification_request, _result(classification_request), now=NOW
        )

        result = await machine.submit_decision(
            pending.id, True, make_confirmation(), approver="anyone", now=DECISION_TIME
        )

        assert not result.success
        assert result.status == ApprovalStatus.PARTIALLY_EXECUTED
        assert result.execution_results == []
        assert store.get(pending.id).status == ApprovalStatus.PARTIALLY_EXECUTED
        decisions = _decisions(ledger)
        assert len(decisions) == 1
        assert decisions[0].details["execution_error"] == "RuntimeError: executor unavailable"
        assert notifier.events_for(pending.id)[-1] == NotificationEvent.STATUS_CHANGED

    @pytest.mark.asyncio
    async def test_every_submission_writes_one_decision_entry(self, machine, pending, ledger):
        await machine.submit_decision("missing", True, None, now=DECISION_TIME)
        await machine.submit_decision(pending.id, True, None, approver="alice@example.com", now=DECISION_TIME)
        await machine.submit_decision(
            pending.id, True, make_confirmation(), approver="alice@example.com", now=DECISION_TIME
        )
        await machine.submit_decision(
            pending.id, True, make_confirmation(), approver="alice@example.com", now=DECISION_TIME
        )

        assert len(_decisions(ledger)) == 4


@pytest.mark.unit
class TestConcurrentDecisions:

    def test_exactly_one_winner(self, machine, pending, client):
        barrier = threading.Barrier(6)
        results = []

        def decide(approved):
            barrier.wait()
            results.append(
                asyncio.run(
                    machine.submit_decision(
                        pending.id,
                        approved,
                        make_confirmation(),
                        approver="alice@example.com",
                        now=DECISION_TIME,
                    )
                )
            )

        threads = [threading.Thread(target=decide, args=(i % 2 == 0,)) for i in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [r for r in results if r.success]
        losers = [r for r in results if not r.success]
        assert len(winners) == 1
        assert all(r.reason_code == "ALREADY_PROCESSED" for r in losers)
        if winners[0].status == ApprovalStatus.APPROVED:
            assert len(client.calls) == 2
        else:
            assert client.calls == []


@pytest.mark.unit
class TestExpiration:

    def test_sweep_expires_overdue_requests(self, machine, store, ledger, notifier, classification_request):
        soon = machine.create_request(
            classification_request, _result(classification_request, risk_score=95), now=NOW
        )
        later_request = replace(classification_request, request_id="later")
        later = machine.create_request(
            later_request, _result(later_request, risk_score=20), now=NOW
        )

        expired = machine.expire_stale(now=NOW + timedelta(minutes=11))

        assert expired == [soon.id]
        assert store.get(soon.id).status == ApprovalStatus.EXPIRED
        assert store.get(later.id).status == ApprovalStatus.PENDING
        assert notifier.events_for(soon.id)[-1] == NotificationEvent.CANCELLED
        assert [e.entity_id for e in ledger.query() if e.action == "approval_expired"] == [soon.id]

    def test_sweep_never_executes(self, machine, pending, client):
        machine.expire_stale(now=pending.expires_at + timedelta(hours=1))

        assert client.calls == []

    def test_sweep_skips_decided_requests(self, machine, pending, store):
        store.compare_and_set_status(pending.id, ApprovalStatus.PENDING, ApprovalStatus.REJECTED)

        assert machine.expire_stale(now=pending.expires_at + timedelta(minutes=1)) == []
        assert store.get(pending.id).status == ApprovalStatus.REJECTED

    @pytest.mark.asyncio
    async def test_decision_after_sweep_is_already_processed(self, machine, pending):
        machine.expire_stale(now=pending.expires_at + timedelta(seconds=1))

        result = await machine.submit_decision(
            pending.id, True, make_confirmation(), approver="alice@example.com", now=DECISION_TIME
        )

        assert result.reason_code == "ALREADY_PROCESSED"
        assert result.status == ApprovalStatus.EXPIRED

    def test_sweep_and_decision_race_one_winner(self, machine, pending, store):
        barrier = threading.Barrier(2)
        outcome = {}
        deadline = pending.expires_at

        def sweep():
            barrier.wait()
            outcome["expired"] = machine.expire_stale(now=deadline + timedelta(seconds=1))

        def decide():
            barrier.wait()
            outcome["decision"] = asyncio.run(
                machine.submit_decision(
                    pending.id,
                    False,
                    make_confirmation(timestamp=deadline - timedelta(seconds=10)),
                    approver="alice@example.com",
                    now=deadline,
                )
            )

        threads = [threading.Thread(target=sweep), threading.Thread(target=decide)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        final = store.get(pending.id).status
        if outcome["decision"].success:
            assert final == ApprovalStatus.REJECTED
            assert outcome["expired"] == []
        else:
            assert final == ApprovalStatus.EXPIRED
            assert outcome["expired"] == [pending.id]


@pytest.mark.unit
class TestPendingApprovals:

    def test_lists_live_requests_for_tenant(self, machine, pending, classification_request):
        other = replace(classification_request, request_id="other", tenant_id="fabrikam")
        machine.create_request(other, _result(other), now=NOW)

        assert [r.id for r in machine.get_pending_approvals("contoso", now=DECISION_TIME)] == [pending.id]

    def test_excludes_overdue_requests(self, machine, pending):
        assert machine.get_pending_approvals("contoso", now=pending.expires_at + timedelta(seconds=1)) == []
