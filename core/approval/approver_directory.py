"""
Approver Directory.

Lists who may decide approval requests for which tenant:

    approvers:
      - id: alice@msp.example
        tenants: ["*"]
      - id: bob@msp.example
        tenants: ["contoso", "fabrikam"]

An approver entry with "*" may approve for every tenant. Identities not in
the file are rejected.
"""

import logging
from pathlib import Path
from typing import Dict, FrozenSet, Optional

import yaml

from core.errors import ConfigError


logger = logging.getLogger(__name__)


ALL_TENANTS = "*"


class ApproverDirectory:
    """
    Validates approver identity for approval decisions.

    Invariants:
    - Identity must be explicitly configured
    - Unknown identity = rejected
    - Missing identity = rejected
    """

    def __init__(self, approvers: Dict[str, FrozenSet[str]]):
        """
        Args:
            approvers: Approver id -> tenant ids (ALL_TENANTS for every tenant)
        """
        if not approvers:
            raise ConfigError("At least one approver must be configured")
        self._approvers = {
            approver.strip().lower(): frozenset(tenants)
            for approver, tenants in approvers.items()
        }

    @classmethod
    def from_yaml(cls, config_file: Optional[Path]) -> "ApproverDirectory":
        """
        Load the directory from YAML.

        Raises:
            ConfigError: If the file is missing or malformed
        """
        if config_file is None:
            raise ConfigError("Approver directory requires explicit configuration file")

        if not config_file.exists():
            raise ConfigError(f"Approvers file not found: {config_file}")

        with open(config_file) as f:
            config = yaml.safe_load(f)

        if not config or "approvers" not in config:
            raise ConfigError("Config must contain 'approvers' section")

        approvers: Dict[str, FrozenSet[str]] = {}
        for entry in config["approvers"] or []:
            if not isinstance(entry, dict) or not entry.get("id"):
                raise ConfigError(f"Approver entry must have an 'id': {entry!r}")
            tenants = entry.get("tenants") or []
            if isinstance(tenants, str):
                tenants = [tenants]
            if not tenants:
                raise ConfigError(f"Approver {entry['id']} has no tenants")
            approvers[str(entry["id"])] = frozenset(str(t) for t in tenants)

        directory = cls(approvers)
        logger.info(f"Approver directory loaded: {len(approvers)} approver(s)")
        return directory

    def is_authorized(self, approver: Optional[str], tenant_id: str) -> bool:
        """
        Check whether approver may decide requests for tenant_id.

        Args:
            approver: Approver identity from the approval UI
            tenant_id: Tenant of the approval request

        Returns:
            True if authorized, False otherwise
        """
        if not approver:
            logger.warning("Decision submitted without approver identity, rejecting")
            return False

        tenants = self._approvers.get(approver.strip().lower())
        if tenants is None:
            logger.warning(f"Unknown approver {approver}, rejecting")
            return False

        if ALL_TENANTS in tenants or tenant_id in tenants:
            return True

        logger.warning(f"Approver {approver} is not authorized for tenant {tenant_id}")
        return False

    def tenants_for(self, approver: str) -> FrozenSet[str]:
        return self._approvers.get(approver.strip().lower(), frozenset())
