"""
Approval store tests.

The same behavioral suite runs against the in-memory store and the Redis
store (fakeredis).
"""

import threading
from datetime import timedelta

import fakeredis
import pytest

from conftest import NOW
from core.approval import InMemoryApprovalStore, RedisApprovalStore
from core.errors import InvalidTransitionError, NotFoundError
from core.models import ActionType, ApprovalRequest, ApprovalStatus


def _request(request_id="apr-1", tenant_id="contoso", expires_in=15):
    return ApprovalRequest(
        id=request_id,
        tenant_id=tenant_id,
        client_label="Contoso Ltd",
        request_type=ActionType.PASSWORD_RESET,
        description="Password Reset: jane",
        risk_score=40,
        proposed_actions=[],
        classification_request_id=f"req-{request_id}",
        created_at=NOW,
        expires_at=NOW + timedelta(minutes=expires_in),
    )


@pytest.fixture(params=["memory", "redis"])
def store(request):
    if request.param == "memory":
        return InMemoryApprovalStore()
    return RedisApprovalStore(fakeredis.FakeRedis(), key_prefix="test-steward")


@pytest.mark.unit
class TestApprovalStore:

    def test_create_and_get(self, store):
        request = _request()
        store.create(request)

        assert store.get("apr-1") == request

    def test_get_missing_returns_none(self, store):
        assert store.get("missing") is None

    def test_duplicate_create_rejected(self, store):
        store.create(_request())

        with pytest.raises(ValueError, match="already exists"):
            store.create(_request())

    def test_get_returns_copies(self, store):
        store.create(_request())

        fetched = store.get("apr-1")
        fetched.notes = "tampered"

        assert store.get("apr-1").notes is None

    def test_compare_and_set_applies_changes(self, store):
        store.create(_request())

        updated = store.compare_and_set_status(
            "apr-1",
            ApprovalStatus.PENDING,
            ApprovalStatus.APPROVED,
            approver="alice@example.com",
            decided_at=NOW,
        )

        assert updated.status == ApprovalStatus.APPROVED
        assert updated.version == 1
        assert updated.approver == "alice@example.com"
        assert store.get("apr-1") == updated

    def test_compare_and_set_stale_expectation_returns_none(self, store):
        store.create(_request())
        store.compare_and_set_status("apr-1", ApprovalStatus.PENDING, ApprovalStatus.REJECTED)

        result = store.compare_and_set_status(
            "apr-1", ApprovalStatus.PENDING, ApprovalStatus.APPROVED
        )

        assert result is None
        assert store.get("apr-1").status == ApprovalStatus.REJECTED

    def test_compare_and_set_missing_raises(self, store):
        with pytest.raises(NotFoundError):
            store.compare_and_set_status("missing", ApprovalStatus.PENDING, ApprovalStatus.APPROVED)

    def test_illegal_transition_raises(self, store):
        store.create(_request())

        with pytest.raises(InvalidTransitionError):
            store.compare_and_set_status(
                "apr-1", ApprovalStatus.PENDING, ApprovalStatus.PARTIALLY_EXECUTED
            )

    def test_approved_to_partially_executed(self, store):
        store.create(_request())
        store.compare_and_set_status("apr-1", ApprovalStatus.PENDING, ApprovalStatus.APPROVED)

        partial = store.compare_and_set_status(
            "apr-1", ApprovalStatus.APPROVED, ApprovalStatus.PARTIALLY_EXECUTED
        )

        assert partial.status == ApprovalStatus.PARTIALLY_EXECUTED
        assert partial.version == 2

    def test_list_by_status_ordered_by_expiry(self, store):
        store.create(_request("late", expires_in=30))
        store.create(_request("soon", expires_in=5))
        store.create(_request("middle", expires_in=15))

        pending = store.list_by_status(ApprovalStatus.PENDING)

        assert [r.id for r in pending] == ["soon", "middle", "late"]

    def test_list_by_status_filters_tenant(self, store):
        store.create(_request("a", tenant_id="contoso"))
        store.create(_request("b", tenant_id="fabrikam"))

        assert [r.id for r in store.list_by_status(ApprovalStatus.PENDING, "fabrikam")] == ["b"]

    def test_status_index_follows_transitions(self, store):
        store.create(_request("a"))
        store.create(_request("b"))
        store.compare_and_set_status("a", ApprovalStatus.PENDING, ApprovalStatus.EXPIRED)

        assert [r.id for r in store.list_by_status(ApprovalStatus.PENDING)] == ["b"]
        assert [r.id for r in store.list_by_status(ApprovalStatus.EXPIRED)] == ["a"]
        assert [r.id for r in store.list_by_status(ApprovalStatus.EXPIRED, "contoso")] == ["a"]

    def test_concurrent_transitions_have_one_winner(self, store):
        store.create(_request())
        barrier = threading.Barrier(8)
        results = []

        def contender(target):
            barrier.wait()
            results.append(
                store.compare_and_set_status("apr-1", ApprovalStatus.PENDING, target)
            )

        targets = [ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.EXPIRED] * 3
        threads = [threading.Thread(target=contender, args=(t,)) for t in targets[:8]]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert store.get("apr-1").status == winners[0].status
        assert store.get("apr-1").version == 1
