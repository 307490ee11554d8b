import uuid
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from homebid.common.enums import BidStatus, JobStatus, NotificationType, UserRole
from homebid.common.exceptions import (
    AmountBelowMinimumError,
    BadRequestError,
    ConflictError,
    DuplicateBidError,
    JobNotOpenError,
    NotFoundError,
    PermissionDeniedError,
)
from homebid.common.logging import get_logger
from homebid.common.money import to_money
from homebid.config import settings
from homebid.core.audit import record_audit
from homebid.core.bids.visibility import resolve_viewer, visible_bids
from homebid.core.caller import Caller
from homebid.core.locking import job_locks
from homebid.core.notifications.service import notify
from homebid.db.models.bid import Bid
from homebid.db.models.job import Job
from homebid.db.models.user import User

logger = get_logger("bids.service")


async def get_job(job_id: uuid.UUID, db: AsyncSession) -> Job:
    result = await db.execute(select(Job).where(Job.id == job_id, Job.is_deleted.is_(False)))
    job = result.scalar_one_or_none()
    if not job:
        raise NotFoundError("Job", str(job_id))
    return job


async def get_bid(bid_id: uuid.UUID, db: AsyncSession, for_update: bool = False) -> Bid:
    query = select(Bid).where(Bid.id == bid_id, Bid.is_deleted.is_(False))
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    bid = result.scalar_one_or_none()
    if not bid:
        raise NotFoundError("Bid", str(bid_id))
    return bid


class BidService:
    async def submit_bid(
        self,
        caller: Caller,
        job_id: uuid.UUID,
        amount: Decimal,
        timeline: str,
        proposal: str,
        db: AsyncSession,
    ) -> Bid:
        if caller.role != UserRole.CONTRACTOR:
            raise PermissionDeniedError("Only contractors can submit bids")

        amount = to_money(amount)
        if amount < settings.MIN_BID_AMOUNT:
            raise AmountBelowMinimumError(settings.MIN_BID_AMOUNT)
        if amount > settings.MAX_BID_AMOUNT:
            raise BadRequestError(f"Bid amount cannot exceed {settings.MAX_BID_AMOUNT}")

        job = await get_job(job_id, db)
        if job.poster_id == caller.id:
            raise PermissionDeniedError("You cannot bid on your own job")
        if job.status != JobStatus.OPEN.value:
            raise JobNotOpenError(str(job_id))

        existing = await db.execute(
            select(Bid.id).where(Bid.job_id == job_id, Bid.contractor_id == caller.id)
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateBidError()

        contractor = await db.get(User, caller.id)
        if not contractor:
            raise NotFoundError("User", str(caller.id))

        bid = Bid(
            job_id=job_id,
            contractor_id=caller.id,
            amount=amount,
            timeline=timeline,
            proposal=proposal,
            status=BidStatus.SUBMITTED.value,
            contractor_rating_snapshot=contractor.average_rating,
            contractor_reviews_snapshot=contractor.total_reviews,
        )
        db.add(bid)
        try:
            await db.flush()
        except IntegrityError as e:
            # A concurrent submission from the same contractor won the race.
            raise DuplicateBidError() from e

        record_audit(db, "bid", bid.id, "submitted", caller, amount=amount, job_id=job_id)
        await db.flush()

        logger.info("Bid %s submitted on job %s by %s (%s)", bid.id, job_id, caller.id, amount)
        notify(job.poster_id, NotificationType.BID_SUBMITTED, {"job_id": job_id, "bid_id": bid.id, "amount": amount})
        return bid

    async def list_visible_bids(self, job_id: uuid.UUID, caller: Caller, db: AsyncSession) -> list[Bid]:
        job = await get_job(job_id, db)
        result = await db.execute(
            select(Bid)
            .where(Bid.job_id == job_id, Bid.is_deleted.is_(False))
            .order_by(Bid.amount.asc())
        )
        bids = list(result.scalars().all())

        viewer = resolve_viewer(caller, job.poster_id, {b.contractor_id for b in bids})
        return visible_bids(viewer, bids)

    async def withdraw_bid(self, bid_id: uuid.UUID, caller: Caller, db: AsyncSession) -> Bid:
        bid = await get_bid(bid_id, db)
        async with job_locks.hold(bid.job_id):
            bid = await get_bid(bid_id, db, for_update=True)
            if bid.contractor_id != caller.id:
                raise PermissionDeniedError("Only the submitting contractor can withdraw a bid")
            if bid.status != BidStatus.SUBMITTED.value:
                raise ConflictError(f"Only submitted bids can be withdrawn (status: {bid.status})")

            bid.status = BidStatus.WITHDRAWN.value
            record_audit(db, "bid", bid.id, "withdrawn", caller)
            await db.flush()

        job = await get_job(bid.job_id, db)
        logger.info("Bid %s withdrawn by %s", bid.id, caller.id)
        notify(job.poster_id, NotificationType.BID_WITHDRAWN, {"job_id": job.id, "bid_id": bid.id})
        return bid
