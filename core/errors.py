"""
STEWARD error taxonomy.

Every failure the engine reports is a StewardError carrying an ErrorKind
and a client-facing reason code. Retry decisions are made on the kind,
never on broad exception types.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification of engine failures."""

    TRANSIENT_PROVIDER = "TransientProviderError"
    PERMANENT_PROVIDER = "PermanentProviderError"
    NOT_FOUND = "NotFound"
    ALREADY_PROCESSED = "AlreadyProcessed"
    EXPIRED = "Expired"
    INVALID_CONFIRMATION = "InvalidConfirmation"
    UNAUTHORIZED_APPROVER = "UnauthorizedApprover"
    EXECUTION_FAILURE = "ExecutionFailure"
    INVALID_TRANSITION = "InvalidTransition"
    SIGNATURE = "Signature"
    CONFIG = "Config"


class StewardError(Exception):
    """Base error with a kind and a reason code."""

    kind: ErrorKind = ErrorKind.EXECUTION_FAILURE
    reason_code: str = "ERROR"

    def __init__(self, message: str, reason_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if reason_code is not None:
            self.reason_code = reason_code

    @property
    def transient(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT_PROVIDER


class TransientProviderError(StewardError):
    """Rate limit, timeout or connection failure from a classifier."""

    kind = ErrorKind.TRANSIENT_PROVIDER
    reason_code = "PROVIDER_UNAVAILABLE"


class PermanentProviderError(StewardError):
    """Bad credentials, malformed response, or retries exhausted."""

    kind = ErrorKind.PERMANENT_PROVIDER
    reason_code = "PROVIDER_FAILED"


class NotFoundError(StewardError):
    kind = ErrorKind.NOT_FOUND
    reason_code = "NOT_FOUND"


class AlreadyProcessedError(StewardError):
    kind = ErrorKind.ALREADY_PROCESSED
    reason_code = "ALREADY_PROCESSED"


class ExpiredError(StewardError):
    kind = ErrorKind.EXPIRED
    reason_code = "EXPIRED"


class InvalidConfirmationError(StewardError):
    """Biometric confirmation rejected; detail_code names the failed check."""

    kind = ErrorKind.INVALID_CONFIRMATION
    reason_code = "INVALID_CONFIRMATION"

    def __init__(self, message: str, detail_code: str = ""):
        super().__init__(message)
        self.detail_code = detail_code


class UnauthorizedApproverError(StewardError):
    kind = ErrorKind.UNAUTHORIZED_APPROVER
    reason_code = "UNAUTHORIZED_APPROVER"


class InvalidTransitionError(StewardError):
    kind = ErrorKind.INVALID_TRANSITION
    reason_code = "INVALID_TRANSITION"


class ExecutionFailure(StewardError):
    """
    Failure of a single management API call.

    transient marks failures worth retrying (429, 5xx, timeouts).
    """

    kind = ErrorKind.EXECUTION_FAILURE
    reason_code = "EXECUTION_FAILED"

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        transient: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self._transient = transient

    @property
    def transient(self) -> bool:
        return self._transient


class SignatureError(StewardError):
    kind = ErrorKind.SIGNATURE
    reason_code = "INVALID_SIGNATURE"


class ConfigError(StewardError):
    kind = ErrorKind.CONFIG
    reason_code = "INVALID_CONFIG"
