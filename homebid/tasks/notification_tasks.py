import asyncio

from homebid.common.logging import get_logger
from homebid.tasks.celery_app import app

logger = get_logger("tasks.notification")


def _run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def render_body(event_type: str, payload: dict) -> str:
    details = ", ".join(f"{k.replace('_', ' ')}: {v}" for k, v in sorted(payload.items()) if v is not None)
    label = event_type.replace("_", " ").capitalize()
    return f"{label} ({details})" if details else label


@app.task(name="homebid.tasks.notification_tasks.deliver_notification", bind=True, max_retries=3)
def deliver_notification(self, user_id: str, event_type: str, payload: dict):
    """Persist an in-app notification for one user."""

    async def _deliver():
        import uuid

        from homebid.common.enums import NotificationType
        from homebid.core.notifications.service import TITLES
        from homebid.db.models.notification import Notification
        from homebid.db.session import async_session_factory

        async with async_session_factory() as db:
            try:
                notification = Notification(
                    user_id=uuid.UUID(user_id),
                    category=event_type,
                    title=TITLES.get(NotificationType(event_type), event_type),
                    body=render_body(event_type, payload),
                    metadata_=payload,
                )
                db.add(notification)
                await db.commit()
                logger.info("Delivered %s notification to %s", event_type, user_id)
                return str(notification.id)
            except Exception as e:
                await db.rollback()
                logger.error("Failed to deliver %s notification to %s: %s", event_type, user_id, e)
                raise

    try:
        return _run_async(_deliver())
    except Exception as exc:
        raise self.retry(exc=exc, countdown=30)
