"""Bus-backed notifier: approval lifecycle events on the notification stream."""

import logging

from bus.python.steward_bus import EventBus
from core.approval import NotificationEvent, Notifier, build_notification
from core.models import ApprovalRequest


logger = logging.getLogger(__name__)


NOTIFICATION_CONTRACT = "notification"


class BusNotifier(Notifier):
    """
    Publishes notification contracts to the event bus.

    Invariants:
    - Every message validates against notification.schema.json before XADD
    - Publish failures propagate to the caller (the state machine logs them)
    """

    def __init__(self, event_bus: EventBus):
        self.bus = event_bus

    def notify(self, request: ApprovalRequest, event: NotificationEvent) -> None:
        message = build_notification(request, event)
        message_id = self.bus.publish(message, NOTIFICATION_CONTRACT)
        logger.info(
            f"Notification {event.value} for {request.id} published: {message_id}"
        )
