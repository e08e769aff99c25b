"""
STEWARD Action Planner - turns a classification into concrete API calls.

Each action type maps to an ordered list of ProposedActions against the
directory management API. Endpoints are relative to the management API base
URL; bodies are fully built here so an approver sees exactly what will run.
"""

import logging
from typing import Callable, Dict, List
from urllib.parse import quote

from core.models import (
    ActionType,
    ClassificationResult,
    DirectoryChangeParameters,
    GroupMembershipParameters,
    LicenseAssignmentParameters,
    PasswordResetParameters,
    ProposedAction,
    UserOffboardingParameters,
    UserOnboardingParameters,
)


logger = logging.getLogger(__name__)


DEFAULT_DIRECTORY_URL = "https://graph.microsoft.com/v1.0"

# Built-in password authentication method id
PASSWORD_METHOD_ID = "28c10230-6103-485e-b985-444c60001490"

DIRECTORY_CHANGE_ENDPOINTS = {
    ActionType.PERMISSION_CHANGE: "/users/{target}",
    ActionType.SECURITY_GROUP_CHANGE: "/groups/{target}",
    ActionType.CONDITIONAL_ACCESS_CHANGE: "/identity/conditionalAccess/policies/{target}",
}


def _segment(value: str) -> str:
    return quote(value, safe="@")


class ActionPlanner:
    """
    Maps ClassificationResults to ordered ProposedActions.

    Invariants:
    - human_review yields no actions
    - Action order is the execution order
    - Never calls the management API
    """

    def __init__(self, directory_url: str = DEFAULT_DIRECTORY_URL):
        """
        Args:
            directory_url: Absolute base used for @odata.id references
        """
        self.directory_url = directory_url.rstrip("/")
        self._planners: Dict[ActionType, Callable[[ClassificationResult], List[ProposedAction]]] = {
            ActionType.PASSWORD_RESET: self._password_reset,
            ActionType.GROUP_MEMBERSHIP: self._group_membership,
            ActionType.USER_ONBOARDING: self._user_onboarding,
            ActionType.USER_OFFBOARDING: self._user_offboarding,
            ActionType.LICENSE_ASSIGNMENT: self._license_assignment,
            ActionType.PERMISSION_CHANGE: self._directory_change,
            ActionType.SECURITY_GROUP_CHANGE: self._directory_change,
            ActionType.CONDITIONAL_ACCESS_CHANGE: self._directory_change,
        }

    def plan(self, result: ClassificationResult) -> List[ProposedAction]:
        """
        Build the proposed actions for a classification.

        Args:
            result: Reconciled classification

        Returns:
            Ordered ProposedActions (empty for human_review)
        """
        planner = self._planners.get(result.action_type)
        if planner is None:
            return []

        actions = planner(result)
        logger.debug(
            f"Planned {len(actions)} action(s) for request {result.request_id} "
            f"({result.action_type.value})"
        )
        return actions

    def _password_reset(self, result: ClassificationResult) -> List[ProposedAction]:
        params: PasswordResetParameters = result.parameters
        user = _segment(params.user)
        actions = [
            ProposedAction(
                action_type=result.action_type,
                target_resource=params.user,
                endpoint=f"/users/{user}/authentication/methods/{PASSWORD_METHOD_ID}/resetPassword",
                verb="POST",
                body={},
                proposed_state={"password": "reset"},
                description=f"Reset password for {params.user}",
                impact=result.business_impact,
            )
        ]
        if params.force_change_on_next_sign_in:
            actions.append(
                ProposedAction(
                    action_type=result.action_type,
                    target_resource=params.user,
                    endpoint=f"/users/{user}",
                    verb="PATCH",
                    body={"passwordProfile": {"forceChangePasswordNextSignIn": True}},
                    proposed_state={"forceChangePasswordNextSignIn": "true"},
                    description=f"Require {params.user} to change password at next sign-in",
                    impact=result.business_impact,
                )
            )
        return actions

    def _group_membership(self, result: ClassificationResult) -> List[ProposedAction]:
        params: GroupMembershipParameters = result.parameters
        group = _segment(params.group)
        removing = params.operation.strip().lower() == "remove"

        actions = []
        for member in params.members:
            if removing:
                actions.append(
                    ProposedAction(
                        action_type=result.action_type,
                        target_resource=member,
                        endpoint=f"/groups/{group}/members/{_segment(member)}/$ref",
                        verb="DELETE",
                        current_state={"member_of": params.group},
                        proposed_state={"member_of": ""},
                        description=f"Remove {member} from {params.group}",
                        impact=result.business_impact,
                    )
                )
            else:
                actions.append(
                    ProposedAction(
                        action_type=result.action_type,
                        target_resource=member,
                        endpoint=f"/groups/{group}/members/$ref",
                        verb="POST",
                        body={
                            "@odata.id": f"{self.directory_url}/directoryObjects/{_segment(member)}"
                        },
                        proposed_state={"member_of": params.group},
                        description=f"Add {member} to {params.group}",
                        impact=result.business_impact,
                    )
                )
        return actions

    def _user_onboarding(self, result: ClassificationResult) -> List[ProposedAction]:
        params: UserOnboardingParameters = result.parameters
        body = {
            "accountEnabled": True,
            "displayName": params.display_name,
            "userPrincipalName": params.user,
            "mailNickname": params.user.split("@", 1)[0],
            "passwordProfile": {"forceChangePasswordNextSignIn": True},
        }
        if params.department:
            body["department"] = params.department

        return [
            ProposedAction(
                action_type=result.action_type,
                target_resource=params.user,
                endpoint="/users",
                verb="POST",
                body=body,
                proposed_state={
                    "accountEnabled": "true",
                    "displayName": params.display_name,
                    "department": params.department,
                },
                description=f"Create account {params.user} ({params.display_name})",
                impact=result.business_impact,
            )
        ]

    def _user_offboarding(self, result: ClassificationResult) -> List[ProposedAction]:
        params: UserOffboardingParameters = result.parameters
        user = _segment(params.user)
        actions = [
            ProposedAction(
                action_type=result.action_type,
                target_resource=params.user,
                endpoint=f"/users/{user}",
                verb="PATCH",
                body={"accountEnabled": False},
                current_state={"accountEnabled": "true"},
                proposed_state={"accountEnabled": "false"},
                description=f"Disable sign-in for {params.user}",
                impact=result.business_impact,
            )
        ]
        if params.revoke_sessions:
            actions.append(
                ProposedAction(
                    action_type=result.action_type,
                    target_resource=params.user,
                    endpoint=f"/users/{user}/revokeSignInSessions",
                    verb="POST",
                    body={},
                    proposed_state={"sessions": "revoked"},
                    description=f"Revoke active sessions for {params.user}",
                    impact=result.business_impact,
                )
            )
        return actions

    def _license_assignment(self, result: ClassificationResult) -> List[ProposedAction]:
        params: LicenseAssignmentParameters = result.parameters
        return [
            ProposedAction(
                action_type=result.action_type,
                target_resource=params.user,
                endpoint=f"/users/{_segment(params.user)}/assignLicense",
                verb="POST",
                body={
                    "addLicenses": [
                        {"skuId": sku, "disabledPlans": []} for sku in params.add_skus
                    ],
                    "removeLicenses": list(params.remove_skus),
                },
                proposed_state={
                    "add_skus": ",".join(params.add_skus),
                    "remove_skus": ",".join(params.remove_skus),
                },
                description=f"Update licenses for {params.user}",
                impact=result.business_impact,
            )
        ]

    def _directory_change(self, result: ClassificationResult) -> List[ProposedAction]:
        params: DirectoryChangeParameters = result.parameters
        endpoint = DIRECTORY_CHANGE_ENDPOINTS[result.action_type].format(
            target=_segment(params.target)
        )
        return [
            ProposedAction(
                action_type=result.action_type,
                target_resource=params.target,
                endpoint=endpoint,
                verb="PATCH",
                body=dict(params.changes),
                proposed_state=dict(params.changes),
                description=f"{result.action_type.display_name} on {params.target}",
                impact=result.business_impact,
            )
        ]
