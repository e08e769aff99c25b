"""STEWARD Driver - ingestion, worker pool, expiration sweep and wiring."""

from .bootstrap import build_driver
from .driver import OrchestrationDriver, ProcessingOutcome
from .notifier import BusNotifier
from .signatures import compute_signature, verify_signature

__all__ = [
    "BusNotifier",
    "OrchestrationDriver",
    "ProcessingOutcome",
    "build_driver",
    "compute_signature",
    "verify_signature",
]
