import asyncio

from homebid.common.logging import get_logger
from homebid.tasks.celery_app import app

logger = get_logger("tasks.escrow")


def _run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@app.task(name="homebid.tasks.escrow_tasks.expire_rework_holds")
def expire_rework_holds():
    """Celery Beat task: apply the expiry policy to rework holds past their deadline."""
    logger.info("Checking rework deadlines")

    async def _expire():
        from homebid.core.disputes.service import DisputeService
        from homebid.core.locking import close_redis, release_reservations
        from homebid.db.session import async_session_factory

        async with async_session_factory() as db:
            try:
                service = DisputeService()
                expired = await service.expire_rework_holds(db)
                await db.commit()

                if expired:
                    logger.info("Expired %d rework holds", len(expired))
                return expired
            except Exception as e:
                await db.rollback()
                logger.error("Rework expiry check failed: %s", e)
                raise
            finally:
                await release_reservations(db)
                await close_redis()

    return _run_async(_expire())
