"""
STEWARD Audit Ledger - append-only compliance trail.

Every classification, approval decision and execution outcome is recorded
here before the calling operation reports success.
"""

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from core.models import AuditLogEntry


logger = logging.getLogger(__name__)


class AuditLedger:
    """
    Append-only storage for audit log entries.

    Invariants:
    - Append-only (no update or delete operations exposed)
    - JSONL format (one JSON object per line)
    - record() returns only after the line is flushed and fsynced
    - Safe for concurrent writers within the process
    """

    def __init__(self, storage_dir: Path, filename: str = "audit.jsonl"):
        """
        Initialize audit ledger.

        Args:
            storage_dir: Directory holding the JSONL log
            filename: Log file name
        """
        self.storage_dir = storage_dir
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = self.storage_dir / filename
        self._lock = threading.Lock()

        logger.info(f"Audit ledger initialized at {self.log_file}")

    def record(self, entry: AuditLogEntry) -> None:
        """
        Durably append an entry.

        Args:
            entry: Entry to append

        Raises:
            OSError: If the write or fsync fails; the caller must not report
                success in that case
        """
        line = json.dumps(entry.to_dict(), sort_keys=True, default=str) + "\n"

        with self._lock:
            with open(self.log_file, "a") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())

        logger.debug(
            f"Audit entry {entry.entry_id} recorded: action={entry.action}, "
            f"tenant={entry.tenant_id}, success={entry.success}"
        )

    def _iter_entries(self) -> Iterator[AuditLogEntry]:
        if not self.log_file.exists():
            return

        with open(self.log_file) as f:
            for line in f:
                if not line.strip():
                    continue
                yield AuditLogEntry.from_dict(json.loads(line))

    def query(
        self,
        tenant_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        approval_request_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AuditLogEntry]:
        """
        Read entries for compliance export.

        Args:
            tenant_id: Only entries for this tenant
            since: Inclusive lower timestamp bound
            until: Exclusive upper timestamp bound
            approval_request_id: Only entries tied to this approval request
            limit: Maximum entries to return

        Returns:
            Matching entries in write order
        """
        entries = []
        for entry in self._iter_entries():
            if tenant_id is not None and entry.tenant_id != tenant_id:
                continue
            if since is not None and entry.timestamp < since:
                continue
            if until is not None and entry.timestamp >= until:
                continue
            if (
                approval_request_id is not None
                and entry.approval_request_id != approval_request_id
            ):
                continue

            entries.append(entry)

            if limit and len(entries) >= limit:
                break

        return entries

    def count(self) -> int:
        """Count total entries in the ledger."""
        if not self.log_file.exists():
            return 0

        count = 0
        with open(self.log_file) as f:
            for line in f:
                if line.strip():
                    count += 1
        return count
