"""STEWARD Executor - management API calls with retry and circuit breaking."""

from .circuit_breaker import CircuitBreaker
from .executor import ActionExecutor, ExecutionReport
from .management_api import (
    HttpManagementClient,
    ManagementClient,
    ManagementResponse,
    StaticTokenProvider,
)

__all__ = [
    "ActionExecutor",
    "CircuitBreaker",
    "ExecutionReport",
    "HttpManagementClient",
    "ManagementClient",
    "ManagementResponse",
    "StaticTokenProvider",
]
