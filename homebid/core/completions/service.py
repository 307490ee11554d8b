import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from homebid.common.clock import as_utc, utcnow
from homebid.common.enums import CompletionStatus, ContractStatus, DisputeStatus, JobStatus, NotificationType
from homebid.common.exceptions import (
    BadRequestError,
    ConflictError,
    ContractNotActiveError,
    NotFoundError,
    PermissionDeniedError,
)
from homebid.common.logging import get_logger
from homebid.common.money import to_money
from homebid.config import settings
from homebid.core.audit import record_audit
from homebid.core.caller import Caller
from homebid.core.contracts.service import ensure_party, get_contract
from homebid.core.escrow.service import EscrowService
from homebid.core.locking import contract_locks
from homebid.core.notifications.service import notify
from homebid.db.models.completion import JobCompletion, Review
from homebid.db.models.dispute import Dispute
from homebid.db.models.job import Job
from homebid.db.models.user import User

logger = get_logger("completions.service")


async def get_completion(completion_id: uuid.UUID, db: AsyncSession) -> JobCompletion:
    result = await db.execute(
        select(JobCompletion).where(JobCompletion.id == completion_id, JobCompletion.is_deleted.is_(False))
    )
    completion = result.scalar_one_or_none()
    if not completion:
        raise NotFoundError("Completion", str(completion_id))
    return completion


def is_dispute_window_open(completion: JobCompletion, now: datetime) -> bool:
    return as_utc(now) <= as_utc(completion.dispute_window_expiry)


def _validate_evidence(photos: list[str], videos: list[str], geolocation: dict | None) -> None:
    if not photos:
        raise BadRequestError("At least one completion photo is required")
    if len(photos) > settings.MAX_COMPLETION_PHOTOS:
        raise BadRequestError(f"At most {settings.MAX_COMPLETION_PHOTOS} photos are allowed")
    if len(videos) > settings.MAX_COMPLETION_VIDEOS:
        raise BadRequestError(f"At most {settings.MAX_COMPLETION_VIDEOS} videos are allowed")
    if geolocation is not None:
        lat, lng = geolocation.get("lat"), geolocation.get("lng")
        if lat is None or lng is None or not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise BadRequestError("Geolocation must contain a valid lat and lng")


class CompletionService:
    def __init__(self, escrow: EscrowService | None = None):
        self.escrow = escrow or EscrowService()

    async def submit_completion(
        self,
        contract_id: uuid.UUID,
        caller: Caller,
        photos: list[str],
        db: AsyncSession,
        videos: list[str] | None = None,
        notes: str | None = None,
        geolocation: dict | None = None,
        now: datetime | None = None,
    ) -> JobCompletion:
        videos = videos or []
        now = now or utcnow()
        _validate_evidence(photos, videos, geolocation)

        async with contract_locks.hold(contract_id):
            contract = await get_contract(contract_id, db, for_update=True)
            if caller.id != contract.contractor_id:
                raise PermissionDeniedError("Only the contractor on this contract can submit completion")
            if contract.status != ContractStatus.ACTIVE.value:
                raise ContractNotActiveError(contract.status)
            open_dispute = await db.execute(
                select(Dispute.id).where(
                    Dispute.contract_id == contract.id,
                    Dispute.status != DisputeStatus.RESOLVED.value,
                )
            )
            if open_dispute.first() is not None:
                raise ConflictError("Contract has an unresolved dispute")

            completion = JobCompletion(
                contract_id=contract.id,
                submitted_by_id=caller.id,
                photos=list(photos),
                videos=list(videos),
                notes=notes,
                geolocation=geolocation,
                status=CompletionStatus.SUBMITTED.value,
                dispute_window_expiry=now + timedelta(days=settings.COMPLETION_DISPUTE_WINDOW_DAYS),
            )
            db.add(completion)
            contract.status = ContractStatus.PENDING_APPROVAL.value
            await db.flush()
            record_audit(db, "completion", completion.id, "submitted", caller, contract_id=contract.id,
                         photos=len(photos), videos=len(videos))
            await db.flush()

        logger.info("Completion %s submitted for contract %s", completion.id, contract.id)
        notify(contract.homeowner_id, NotificationType.COMPLETION_SUBMITTED,
               {"contract_id": contract.id, "completion_id": completion.id})
        return completion

    async def get_completion_for(self, completion_id: uuid.UUID, caller: Caller, db: AsyncSession) -> JobCompletion:
        completion = await get_completion(completion_id, db)
        contract = await get_contract(completion.contract_id, db)
        ensure_party(contract, caller)
        return completion

    async def approve_completion(
        self,
        completion_id: uuid.UUID,
        caller: Caller,
        approved: bool,
        db: AsyncSession,
        rating: int | None = None,
        feedback: str | None = None,
        now: datetime | None = None,
    ) -> JobCompletion:
        now = now or utcnow()
        if rating is not None and not 1 <= rating <= 5:
            raise BadRequestError("Rating must be between 1 and 5")

        completion = await get_completion(completion_id, db)
        async with contract_locks.hold(completion.contract_id):
            contract = await get_contract(completion.contract_id, db)
            if caller.id != contract.homeowner_id:
                raise PermissionDeniedError("Only the homeowner can review this completion")
            if caller.id == completion.submitted_by_id:
                raise PermissionDeniedError("You cannot approve your own submission")
            if completion.status != CompletionStatus.SUBMITTED.value:
                raise ConflictError(f"Completion has already been reviewed (status: {completion.status})")
            if settings.ENFORCE_DISPUTE_WINDOW and not is_dispute_window_open(completion, now):
                raise ConflictError("The review window for this completion has closed")

            if not approved:
                # An approval already moving money owns the completion.
                await self.escrow.ensure_idle(contract.id, db)
                completion.status = CompletionStatus.REJECTED.value
                completion.feedback = feedback
                completion.reviewed_at = now
                contract.status = ContractStatus.ACTIVE.value
                record_audit(db, "completion", completion.id, "rejected", caller, contract_id=contract.id)
                await db.flush()

        if not approved:
            logger.info("Completion %s rejected; contract %s back to active", completion.id, contract.id)
            notify(contract.contractor_id, NotificationType.COMPLETION_REJECTED,
                   {"contract_id": contract.id, "completion_id": completion.id, "feedback": feedback})
            return completion

        async def record_approval(account) -> None:
            completion.status = CompletionStatus.APPROVED.value
            completion.rating = rating
            completion.feedback = feedback
            completion.reviewed_at = now
            contract.status = ContractStatus.COMPLETED.value
            contract.completed_at = now
            job = await db.get(Job, contract.job_id)
            job.status = JobStatus.COMPLETED.value
            record_audit(db, "completion", completion.id, "approved", caller, contract_id=contract.id,
                         rating=rating)
            if rating is not None:
                await self._record_review(contract.id, contract.contractor_id, caller, rating, feedback, db)

        # Money moves first; the approval is written in the same section that records the release.
        await self.escrow.release_final_payment(contract, db, caller, on_record=record_approval)

        logger.info("Completion %s approved; contract %s completed", completion.id, contract.id)
        notify(contract.contractor_id, NotificationType.COMPLETION_APPROVED,
               {"contract_id": contract.id, "completion_id": completion.id, "rating": rating})
        notify(contract.contractor_id, NotificationType.PAYMENT_RELEASED, {"contract_id": contract.id})
        return completion

    async def _record_review(
        self,
        contract_id: uuid.UUID,
        contractor_id: uuid.UUID,
        caller: Caller,
        rating: int,
        feedback: str | None,
        db: AsyncSession,
    ) -> Review:
        review = Review(
            contract_id=contract_id,
            reviewer_id=caller.id,
            contractor_id=contractor_id,
            rating=rating,
            feedback=feedback,
        )
        db.add(review)
        await db.flush()

        # Recompute from every review rather than adjusting incrementally.
        result = await db.execute(
            select(func.avg(Review.rating), func.count(Review.id)).where(
                Review.contractor_id == contractor_id,
                Review.is_deleted.is_(False),
            )
        )
        average, count = result.one()
        contractor = await db.get(User, contractor_id)
        contractor.average_rating = to_money(Decimal(str(average or 0)))
        contractor.total_reviews = count
        await db.flush()

        logger.info("Contractor %s rating now %s over %d reviews", contractor_id, contractor.average_rating, count)
        return review
