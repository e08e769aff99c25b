"""
Classification data model.

ClassificationRequest is the immutable input handed over by ingestion,
ClassificationResult the reconciled output of the orchestrator. Provider
parameters are parsed into one typed variant per known action kind; keys a
variant does not know are kept in its explicit extras map.
"""

import json
import uuid
from dataclasses import MISSING, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, Union

from core.errors import PermanentProviderError
from core.time_utils import from_iso, to_iso, utc_now


class ActionType(str, Enum):
    """Administrative change kinds the classifier may propose."""

    PASSWORD_RESET = "password_reset"
    GROUP_MEMBERSHIP = "group_membership"
    USER_ONBOARDING = "user_onboarding"
    USER_OFFBOARDING = "user_offboarding"
    PERMISSION_CHANGE = "permission_change"
    LICENSE_ASSIGNMENT = "license_assignment"
    SECURITY_GROUP_CHANGE = "security_group_change"
    CONDITIONAL_ACCESS_CHANGE = "conditional_access_change"
    HUMAN_REVIEW = "human_review"

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()

    @classmethod
    def parse(cls, value: str) -> "ActionType":
        """
        Parse a provider-supplied action type.

        Raises:
            PermanentProviderError: If the value names no known action
        """
        normalized = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        try:
            return cls(normalized)
        except ValueError:
            raise PermanentProviderError(f"Unknown action type: {value!r}")


def _coerce_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return [str(value)]


def _coerce_mapping(value: Any) -> Dict[str, str]:
    if not value:
        return {}
    if not isinstance(value, dict):
        raise PermanentProviderError(f"Expected mapping, got {type(value).__name__}")
    return {str(k): _stringify(v) for k, v in value.items()}


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y")
    return bool(value)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


class _ParameterVariant:
    """Shared parsing for typed parameter variants."""

    action_types: ClassVar[Tuple[ActionType, ...]] = ()

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]):
        known = {}
        for f in fields(cls):
            if f.name == "extras":
                continue
            required = f.default is MISSING and f.default_factory is MISSING
            if f.name not in raw or raw[f.name] in (None, ""):
                if required:
                    raise PermanentProviderError(
                        f"{cls.__name__} missing required parameter '{f.name}'"
                    )
                continue
            value = raw[f.name]
            if f.type == List[str]:
                known[f.name] = _coerce_list(value)
            elif f.type == Dict[str, str]:
                known[f.name] = _coerce_mapping(value)
            elif f.type == bool:
                known[f.name] = _coerce_bool(value)
            else:
                known[f.name] = str(value)

        names = {f.name for f in fields(cls)}
        extras = {k: _stringify(v) for k, v in raw.items() if k not in names}
        extras.update(_coerce_mapping(raw.get("extras")))
        return cls(**known, extras=extras)

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            data[f.name] = list(value) if isinstance(value, list) else (
                dict(value) if isinstance(value, dict) else value
            )
        return data


@dataclass(frozen=True)
class PasswordResetParameters(_ParameterVariant):
    action_types: ClassVar[Tuple[ActionType, ...]] = (ActionType.PASSWORD_RESET,)

    user: str
    force_change_on_next_sign_in: bool = True
    extras: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GroupMembershipParameters(_ParameterVariant):
    action_types: ClassVar[Tuple[ActionType, ...]] = (ActionType.GROUP_MEMBERSHIP,)

    group: str
    members: List[str]
    operation: str = "add"
    extras: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UserOnboardingParameters(_ParameterVariant):
    action_types: ClassVar[Tuple[ActionType, ...]] = (ActionType.USER_ONBOARDING,)

    user: str
    display_name: str
    department: str = ""
    extras: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UserOffboardingParameters(_ParameterVariant):
    action_types: ClassVar[Tuple[ActionType, ...]] = (ActionType.USER_OFFBOARDING,)

    user: str
    revoke_sessions: bool = True
    extras: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LicenseAssignmentParameters(_ParameterVariant):
    action_types: ClassVar[Tuple[ActionType, ...]] = (ActionType.LICENSE_ASSIGNMENT,)

    user: str
    add_skus: List[str] = field(default_factory=list)
    remove_skus: List[str] = field(default_factory=list)
    extras: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DirectoryChangeParameters(_ParameterVariant):
    action_types: ClassVar[Tuple[ActionType, ...]] = (
        ActionType.PERMISSION_CHANGE,
        ActionType.SECURITY_GROUP_CHANGE,
        ActionType.CONDITIONAL_ACCESS_CHANGE,
    )

    target: str
    changes: Dict[str, str] = field(default_factory=dict)
    extras: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ReviewParameters(_ParameterVariant):
    action_types: ClassVar[Tuple[ActionType, ...]] = (ActionType.HUMAN_REVIEW,)

    reason: str = ""
    extras: Dict[str, str] = field(default_factory=dict)


ActionParameters = Union[
    PasswordResetParameters,
    GroupMembershipParameters,
    UserOnboardingParameters,
    UserOffboardingParameters,
    LicenseAssignmentParameters,
    DirectoryChangeParameters,
    ReviewParameters,
]

_VARIANTS: Dict[ActionType, Type] = {}
for _variant in (
    PasswordResetParameters,
    GroupMembershipParameters,
    UserOnboardingParameters,
    UserOffboardingParameters,
    LicenseAssignmentParameters,
    DirectoryChangeParameters,
    ReviewParameters,
):
    for _action_type in _variant.action_types:
        _VARIANTS[_action_type] = _variant


def parse_parameters(action_type: ActionType, raw: Optional[Dict[str, Any]]) -> ActionParameters:
    """
    Build the typed parameter variant for an action type.

    Args:
        action_type: Proposed action type
        raw: Provider-supplied parameter mapping

    Returns:
        Typed parameters; unknown keys land in extras

    Raises:
        PermanentProviderError: If raw is not a mapping or misses a required key
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise PermanentProviderError(
            f"Parameters must be an object, got {type(raw).__name__}"
        )
    return _VARIANTS[action_type].from_raw(raw)


@dataclass(frozen=True)
class ClassificationRequest:
    """Immutable free-text request from an ingestion collaborator."""

    content: str
    source: str
    tenant_id: str
    client_label: str
    context: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": "1.0",
            "request_id": self.request_id,
            "content": self.content,
            "source": self.source,
            "tenant_id": self.tenant_id,
            "client_label": self.client_label,
            "context": dict(self.context),
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassificationRequest":
        return cls(
            request_id=data["request_id"],
            content=data["content"],
            source=data["source"],
            tenant_id=data["tenant_id"],
            client_label=data["client_label"],
            context={str(k): str(v) for k, v in (data.get("context") or {}).items()},
            created_at=from_iso(data["created_at"]),
        )


@dataclass(frozen=True)
class ProviderClassification:
    """One provider's answer before reconciliation."""

    provider: str
    action_type: ActionType
    confidence: float
    risk_score: int
    parameters: Dict[str, Any] = field(default_factory=dict)
    affected_principals: List[str] = field(default_factory=list)
    business_impact: str = ""
    requires_approval: bool = True
    reasoning: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "action_type": self.action_type.value,
            "confidence": self.confidence,
            "risk_score": self.risk_score,
            "parameters": dict(self.parameters),
            "affected_principals": list(self.affected_principals),
            "business_impact": self.business_impact,
            "requires_approval": self.requires_approval,
            "reasoning": self.reasoning,
        }


@dataclass(frozen=True)
class ClassificationResult:
    """Reconciled, scored action proposal. Produced once per request."""

    request_id: str
    action_type: ActionType
    confidence: float
    risk_score: int
    parameters: ActionParameters
    affected_principals: List[str]
    business_impact: str
    requires_approval: bool
    consensus_achieved: bool
    providers: List[str]
    reasoning: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "action_type": self.action_type.value,
            "confidence": self.confidence,
            "risk_score": self.risk_score,
            "parameters": self.parameters.to_dict(),
            "affected_principals": list(self.affected_principals),
            "business_impact": self.business_impact,
            "requires_approval": self.requires_approval,
            "consensus_achieved": self.consensus_achieved,
            "providers": list(self.providers),
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassificationResult":
        action_type = ActionType(data["action_type"])
        return cls(
            request_id=data["request_id"],
            action_type=action_type,
            confidence=float(data["confidence"]),
            risk_score=int(data["risk_score"]),
            parameters=parse_parameters(action_type, data.get("parameters")),
            affected_principals=list(data.get("affected_principals", [])),
            business_impact=data.get("business_impact", ""),
            requires_approval=bool(data["requires_approval"]),
            consensus_achieved=bool(data["consensus_achieved"]),
            providers=list(data.get("providers", [])),
            reasoning=data.get("reasoning", ""),
        )
