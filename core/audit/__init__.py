"""STEWARD Audit - append-only ledger."""

from .ledger import AuditLedger

__all__ = ["AuditLedger"]
