"""
Approval request persistence.

Every status change goes through compare_and_set_status(), an atomic
conditional write: the transition applies only if the stored status still
equals the expected one. That is the single guard that keeps concurrent
decisions and the expiration sweep from both succeeding.
"""

import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import redis

from core.errors import InvalidTransitionError, NotFoundError
from core.models import ApprovalRequest, ApprovalStatus, can_transition


logger = logging.getLogger(__name__)


class ApprovalStore(ABC):
    """
    Repository for ApprovalRequests.

    Invariants:
    - Requests are never deleted
    - Status changes only through compare_and_set_status()
    - Each successful transition increments version
    """

    @abstractmethod
    def create(self, request: ApprovalRequest) -> None:
        """
        Persist a new request.

        Raises:
            ValueError: If a request with the same id exists
        """

    @abstractmethod
    def get(self, request_id: str) -> Optional[ApprovalRequest]:
        """Fetch a request by id; None when absent."""

    @abstractmethod
    def compare_and_set_status(
        self,
        request_id: str,
        expected: ApprovalStatus,
        new: ApprovalStatus,
        **changes: Any,
    ) -> Optional[ApprovalRequest]:
        """
        Atomically move a request from expected to new status.

        Args:
            request_id: Request to transition
            expected: Status the caller last observed
            new: Target status
            **changes: Extra fields to set in the same write (approver, notes...)

        Returns:
            Updated request, or None when the stored status differs from expected

        Raises:
            NotFoundError: If the request does not exist
            InvalidTransitionError: If expected -> new is not allowed
        """

    @abstractmethod
    def list_by_status(
        self,
        status: ApprovalStatus,
        tenant_id: Optional[str] = None,
    ) -> List[ApprovalRequest]:
        """Requests in a status (optionally for one tenant), ordered by expiry."""


def _check_transition(expected: ApprovalStatus, new: ApprovalStatus) -> None:
    if not can_transition(expected, new):
        raise InvalidTransitionError(
            f"Transition {expected.value} -> {new.value} is not allowed"
        )


class InMemoryApprovalStore(ApprovalStore):
    """Lock-guarded dict store for tests and single-process deployments."""

    def __init__(self) -> None:
        self._requests: Dict[str, ApprovalRequest] = {}
        self._lock = threading.Lock()

    def create(self, request: ApprovalRequest) -> None:
        with self._lock:
            if request.id in self._requests:
                raise ValueError(f"Approval request {request.id} already exists")
            self._requests[request.id] = copy.deepcopy(request)

    def get(self, request_id: str) -> Optional[ApprovalRequest]:
        with self._lock:
            request = self._requests.get(request_id)
            return copy.deepcopy(request) if request else None

    def compare_and_set_status(
        self,
        request_id: str,
        expected: ApprovalStatus,
        new: ApprovalStatus,
        **changes: Any,
    ) -> Optional[ApprovalRequest]:
        _check_transition(expected, new)

        with self._lock:
            current = self._requests.get(request_id)
            if current is None:
                raise NotFoundError(f"Approval request {request_id} not found")
            if current.status != expected:
                return None

            updated = current.with_status(new, **changes)
            self._requests[request_id] = updated
            return copy.deepcopy(updated)

    def list_by_status(
        self,
        status: ApprovalStatus,
        tenant_id: Optional[str] = None,
    ) -> List[ApprovalRequest]:
        with self._lock:
            matches = [
                copy.deepcopy(r)
                for r in self._requests.values()
                if r.status == status and (tenant_id is None or r.tenant_id == tenant_id)
            ]
        return sorted(matches, key=lambda r: r.expires_at)


class RedisApprovalStore(ApprovalStore):
    """
    Redis-backed store.

    Layout:
    - {prefix}:approval:{id}                      JSON document
    - {prefix}:approvals:status:{status}          set of ids
    - {prefix}:approvals:tenant:{tenant}:{status} set of ids

    Transitions use WATCH/MULTI on the document key; a concurrent write
    aborts the transaction and the status check is re-run.
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "steward"):
        self.redis = redis_client
        self.key_prefix = key_prefix

    def _key(self, request_id: str) -> str:
        return f"{self.key_prefix}:approval:{request_id}"

    def _status_key(self, status: ApprovalStatus) -> str:
        return f"{self.key_prefix}:approvals:status:{status.value}"

    def _tenant_key(self, tenant_id: str, status: ApprovalStatus) -> str:
        return f"{self.key_prefix}:approvals:tenant:{tenant_id}:{status.value}"

    @staticmethod
    def _decode(raw: Any) -> str:
        return raw.decode("utf-8") if isinstance(raw, bytes) else raw

    def _load(self, raw: Any) -> ApprovalRequest:
        return ApprovalRequest.from_dict(json.loads(self._decode(raw)))

    def create(self, request: ApprovalRequest) -> None:
        document = json.dumps(request.to_dict())
        if not self.redis.set(self._key(request.id), document, nx=True):
            raise ValueError(f"Approval request {request.id} already exists")

        pipe = self.redis.pipeline()
        pipe.sadd(self._status_key(request.status), request.id)
        pipe.sadd(self._tenant_key(request.tenant_id, request.status), request.id)
        pipe.execute()

    def get(self, request_id: str) -> Optional[ApprovalRequest]:
        raw = self.redis.get(self._key(request_id))
        return self._load(raw) if raw is not None else None

    def compare_and_set_status(
        self,
        request_id: str,
        expected: ApprovalStatus,
        new: ApprovalStatus,
        **changes: Any,
    ) -> Optional[ApprovalRequest]:
        _check_transition(expected, new)
        key = self._key(request_id)

        with self.redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None:
                        pipe.unwatch()
                        raise NotFoundError(f"Approval request {request_id} not found")

                    current = self._load(raw)
                    if current.status != expected:
                        pipe.unwatch()
                        return None

                    updated = current.with_status(new, **changes)
                    pipe.multi()
                    pipe.set(key, json.dumps(updated.to_dict()))
                    pipe.srem(self._status_key(expected), request_id)
                    pipe.sadd(self._status_key(new), request_id)
                    pipe.srem(self._tenant_key(current.tenant_id, expected), request_id)
                    pipe.sadd(self._tenant_key(current.tenant_id, new), request_id)
                    pipe.execute()
                    return updated

                except redis.WatchError:
                    logger.debug(f"Concurrent write on {request_id}, re-checking status")
                    continue

    def list_by_status(
        self,
        status: ApprovalStatus,
        tenant_id: Optional[str] = None,
    ) -> List[ApprovalRequest]:
        index = (
            self._status_key(status)
            if tenant_id is None
            else self._tenant_key(tenant_id, status)
        )
        ids = sorted(self._decode(i) for i in self.redis.smembers(index))
        if not ids:
            return []

        documents = self.redis.mget([self._key(i) for i in ids])
        requests = [self._load(d) for d in documents if d is not None]
        # The document is authoritative over index membership
        requests = [r for r in requests if r.status == status]
        return sorted(requests, key=lambda r: r.expires_at)
