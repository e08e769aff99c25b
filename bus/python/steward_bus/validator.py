"""
Contract validation for the STEWARD event bus.

Messages and provider outputs are checked against the JSON schemas in
bus/contracts/ before they cross a process boundary.
"""

import json
from pathlib import Path
from typing import Any, Dict, List

from jsonschema import Draft202012Validator


SCHEMA_SUFFIX = ".schema"


def _schema_key(contract: str) -> str:
    """'notification' and 'notification.schema' name the same contract."""
    return contract if contract.endswith(SCHEMA_SUFFIX) else contract + SCHEMA_SUFFIX


class ContractValidator:
    """Validates messages against STEWARD contracts."""

    def __init__(self, contracts_dir: Path):
        """
        Initialize validator with contracts directory.

        Args:
            contracts_dir: Path to directory containing *.schema.json files

        Raises:
            ValueError: If the directory does not exist
        """
        self.contracts_dir = Path(contracts_dir)
        self._schemas: Dict[str, Dict[str, Any]] = {}
        self._validators: Dict[str, Draft202012Validator] = {}
        self._load_schemas()

    def _load_schemas(self) -> None:
        if not self.contracts_dir.exists():
            raise ValueError(f"Contracts directory does not exist: {self.contracts_dir}")

        for schema_file in sorted(self.contracts_dir.glob("*.schema.json")):
            schema_name = schema_file.stem  # e.g., "notification.schema"
            with open(schema_file) as f:
                schema = json.load(f)
            Draft202012Validator.check_schema(schema)
            self._schemas[schema_name] = schema
            self._validators[schema_name] = Draft202012Validator(schema)

    @property
    def contracts(self) -> List[str]:
        """Loaded contract names without the schema suffix."""
        return [name[: -len(SCHEMA_SUFFIX)] for name in self._schemas]

    def _validator(self, contract: str) -> Draft202012Validator:
        key = _schema_key(contract)
        if key not in self._validators:
            raise ValueError(f"Unknown schema: {key}")
        return self._validators[key]

    def validate(self, message: Dict[str, Any], contract: str) -> None:
        """
        Validate message against a contract.

        Args:
            message: Message to validate
            contract: Contract name ("notification" or "notification.schema")

        Raises:
            ValueError: If the contract is unknown
            ValidationError: If the message doesn't match the schema
        """
        self._validator(contract).validate(message)

    def errors(self, message: Any, contract: str) -> List[str]:
        """
        Collect every violation instead of stopping at the first.

        Returns:
            Human-readable violations, empty when the message is valid
        """
        violations = []
        for error in self._validator(contract).iter_errors(message):
            location = "/".join(str(p) for p in error.absolute_path) or "<root>"
            violations.append(f"{location}: {error.message}")
        return violations

    def get_schema(self, contract: str) -> Dict[str, Any]:
        """
        Get loaded schema by contract name.

        Raises:
            ValueError: If schema not found
        """
        key = _schema_key(contract)
        if key not in self._schemas:
            raise ValueError(f"Unknown schema: {key}")
        return self._schemas[key]
