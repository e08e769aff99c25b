"""
Approval lifecycle notifications.

The state machine announces every lifecycle change through a Notifier. The
message shape matches the notification bus contract.
"""

import logging
import uuid
from enum import Enum
from typing import Any, Dict

from core.models import ApprovalRequest
from core.time_utils import to_iso, utc_now


logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    CANCELLED = "cancelled"


def build_notification(
    request: ApprovalRequest,
    event: NotificationEvent,
) -> Dict[str, Any]:
    """
    Build a notification contract message for a request.

    Args:
        request: Request in its current state
        event: Lifecycle event being announced

    Returns:
        Message matching notification.schema.json v1.0
    """
    return {
        "version": "1.0",
        "notification_id": str(uuid.uuid4()),
        "timestamp": to_iso(utc_now()),
        "request_id": request.id,
        "tenant_id": request.tenant_id,
        "event": event.value,
        "status": request.status.value,
        "risk_score": request.risk_score,
        "client_label": request.client_label,
        "expires_at": to_iso(request.expires_at),
        "description": request.description,
    }


class Notifier:
    """Receives lifecycle events. The base class drops them."""

    def notify(self, request: ApprovalRequest, event: NotificationEvent) -> None:
        logger.debug(f"Notification {event.value} for {request.id} not delivered")

