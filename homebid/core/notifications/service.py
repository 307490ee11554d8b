"""Fire-and-forget notification dispatch.

Lifecycle transitions call ``notify`` after they succeed. Delivery runs in
a Celery worker; a failure to enqueue is logged and never fails the
transition that triggered it.
"""

from __future__ import annotations

import uuid
from typing import Any

from homebid.common.enums import NotificationType
from homebid.common.logging import get_logger

logger = get_logger("notifications.service")

TITLES: dict[NotificationType, str] = {
    NotificationType.BID_SUBMITTED: "New bid on your job",
    NotificationType.BID_ACCEPTED: "Your bid was accepted",
    NotificationType.BID_REJECTED: "Your bid was not selected",
    NotificationType.BID_WITHDRAWN: "A bid was withdrawn",
    NotificationType.CHANGE_ORDER_REQUESTED: "Change order requested",
    NotificationType.CHANGE_ORDER_APPROVED: "Change order approved",
    NotificationType.CHANGE_ORDER_PAYMENT_FAILED: "Change order payment failed",
    NotificationType.COMPLETION_SUBMITTED: "Work submitted for approval",
    NotificationType.COMPLETION_APPROVED: "Work approved",
    NotificationType.COMPLETION_REJECTED: "Work rejected",
    NotificationType.PAYMENT_RELEASED: "Payment released",
    NotificationType.DISPUTE_OPENED: "Dispute opened",
    NotificationType.DISPUTE_RESPONSE: "Contractor responded to dispute",
    NotificationType.DISPUTE_ESCALATED: "Dispute escalated",
    NotificationType.DISPUTE_RESOLVED: "Dispute resolved",
    NotificationType.REWORK_EXPIRED: "Rework deadline expired",
}


def _stringify(payload: dict[str, Any]) -> dict[str, Any]:
    return {k: v if isinstance(v, (int, float, bool, type(None))) else str(v) for k, v in payload.items()}


def notify(user_id: uuid.UUID, event_type: NotificationType, payload: dict[str, Any] | None = None) -> None:
    from homebid.tasks.notification_tasks import deliver_notification

    try:
        deliver_notification.delay(str(user_id), event_type.value, _stringify(payload or {}))
    except Exception as e:
        logger.warning("Notification %s for user %s not queued: %s", event_type.value, user_id, e)
        return
    logger.info("Queued notification: type=%s user=%s", event_type.value, user_id)
