import asyncio

from homebid.common.logging import get_logger
from homebid.tasks.celery_app import app

logger = get_logger("tasks.dispute")


def _run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@app.task(name="homebid.tasks.dispute_tasks.escalate_overdue_disputes")
def escalate_overdue_disputes():
    """Celery Beat task: escalate disputes whose mediation deadline passed unanswered."""
    logger.info("Checking dispute escalations")

    async def _check():
        from homebid.core.disputes.service import DisputeService
        from homebid.core.locking import close_redis
        from homebid.db.session import async_session_factory

        async with async_session_factory() as db:
            try:
                service = DisputeService()
                escalated = await service.escalate_overdue_disputes(db)
                await db.commit()

                if escalated:
                    logger.info("Auto-escalated %d disputes", len(escalated))
                return escalated
            except Exception as e:
                await db.rollback()
                logger.error("Escalation check failed: %s", e)
                raise
            finally:
                await close_redis()

    return _run_async(_check())
