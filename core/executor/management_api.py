"""
Management API client.

The directory management API is an external collaborator reached through
one narrow call: (endpoint, verb, body, tenant_id). Transport and status
failures are mapped to ExecutionFailure with a transient flag so the
executor can decide whether to retry.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from core.errors import ExecutionFailure


logger = logging.getLogger(__name__)


TokenProvider = Callable[[str], Optional[str]]

TENANT_HEADER = "X-Tenant-Id"


@dataclass(frozen=True)
class ManagementResponse:
    status_code: int
    body: Optional[Any] = None


def is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class ManagementClient(ABC):
    """Narrow interface to the directory management API."""

    @abstractmethod
    async def call(
        self,
        endpoint: str,
        verb: str,
        body: Optional[Dict[str, Any]],
        tenant_id: str,
    ) -> ManagementResponse:
        """
        Perform one management API call.

        Raises:
            ExecutionFailure: On transport failure or non-2xx status
        """


class StaticTokenProvider:
    """Same bearer token for every tenant."""

    def __init__(self, token: Optional[str]):
        self._token = token

    def __call__(self, tenant_id: str) -> Optional[str]:
        return self._token


class HttpManagementClient(ManagementClient):
    """
    httpx-based management API client.

    Invariants:
    - Every request carries the tenant header and a bearer token
    - Every request is bounded by timeout_seconds
    - 429, 5xx, timeouts and connection errors are transient
    """

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._token_provider = token_provider
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client = client

    async def _send(
        self,
        client: httpx.AsyncClient,
        verb: str,
        endpoint: str,
        body: Optional[Dict[str, Any]],
        headers: Dict[str, str],
    ) -> httpx.Response:
        return await client.request(
            verb,
            endpoint,
            json=body if verb != "DELETE" else None,
            headers=headers,
        )

    async def call(
        self,
        endpoint: str,
        verb: str,
        body: Optional[Dict[str, Any]],
        tenant_id: str,
    ) -> ManagementResponse:
        token = self._token_provider(tenant_id)
        if not token:
            raise ExecutionFailure(
                f"No management API token for tenant {tenant_id}",
                status_code=401,
                transient=False,
            )

        headers = {
            "Authorization": f"Bearer {token}",
            TENANT_HEADER: tenant_id,
        }

        verb = verb.upper()
        try:
            if self._client is not None:
                response = await self._send(self._client, verb, endpoint, body, headers)
            else:
                # Workers run one event loop per message; a pooled client cannot span loops
                async with httpx.AsyncClient(
                    base_url=self.base_url,
                    timeout=self.timeout_seconds,
                    transport=self._transport,
                ) as client:
                    response = await self._send(client, verb, endpoint, body, headers)
        except httpx.TimeoutException as e:
            raise ExecutionFailure(
                f"{verb} {endpoint} timed out", status_code=0, transient=True
            ) from e
        except httpx.RequestError as e:
            raise ExecutionFailure(
                f"{verb} {endpoint} failed: {type(e).__name__}",
                status_code=0,
                transient=True,
            ) from e

        if response.is_error:
            raise ExecutionFailure(
                f"{verb} {endpoint} returned HTTP {response.status_code}: "
                f"{response.text[:200]}",
                status_code=response.status_code,
                transient=is_transient_status(response.status_code),
            )

        payload = None
        if response.content:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text

        logger.debug(f"{verb} {endpoint} for tenant {tenant_id}: HTTP {response.status_code}")
        return ManagementResponse(status_code=response.status_code, body=payload)
