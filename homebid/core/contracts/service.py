import uuid
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from homebid.common.clock import utcnow
from homebid.common.enums import (
    BidStatus,
    ChangeOrderStatus,
    ContractStatus,
    JobStatus,
    NotificationType,
)
from homebid.common.exceptions import (
    BadRequestError,
    BidNoLongerAvailableError,
    ConflictError,
    ContractNotActiveError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
)
from homebid.common.logging import get_logger
from homebid.common.money import ZERO, to_money
from homebid.config import settings
from homebid.core.audit import record_audit
from homebid.core.bids.service import get_bid, get_job
from homebid.core.caller import Caller
from homebid.core.contracts.fees import compute_split
from homebid.core.escrow.service import EscrowService
from homebid.core.locking import contract_locks, job_locks
from homebid.core.notifications.service import notify
from homebid.db.models.bid import Bid
from homebid.db.models.change_order import ChangeOrder
from homebid.db.models.contract import Contract

logger = get_logger("contracts.service")


async def get_contract(contract_id: uuid.UUID, db: AsyncSession, for_update: bool = False) -> Contract:
    query = select(Contract).where(Contract.id == contract_id, Contract.is_deleted.is_(False))
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    contract = result.scalar_one_or_none()
    if not contract:
        raise NotFoundError("Contract", str(contract_id))
    return contract


def ensure_party(contract: Contract, caller: Caller, allow_arbiter: bool = True) -> None:
    if caller.id in (contract.homeowner_id, contract.contractor_id):
        return
    if allow_arbiter and caller.is_arbiter:
        return
    raise PermissionDeniedError("You are not a party to this contract")


class ContractService:
    def __init__(self, escrow: EscrowService | None = None):
        self.escrow = escrow or EscrowService()

    async def accept_bid(self, bid_id: uuid.UUID, caller: Caller, db: AsyncSession) -> Contract:
        """Turn one bid into a contract and reject every competing bid in the same unit."""
        bid = await get_bid(bid_id, db)

        async with job_locks.hold(bid.job_id):
            bid = await get_bid(bid_id, db, for_update=True)
            job = await get_job(bid.job_id, db)
            if job.poster_id != caller.id:
                raise PermissionDeniedError("Only the job poster can accept bids")
            if bid.status != BidStatus.SUBMITTED.value:
                raise BidNoLongerAvailableError(bid.status)
            if job.status != JobStatus.OPEN.value:
                raise ConflictError(f"Job already has a contract (status: {job.status})")

            split = compute_split(bid.amount)
            contract = Contract(
                job_id=job.id,
                bid_id=bid.id,
                homeowner_id=job.poster_id,
                contractor_id=bid.contractor_id,
                amount=split.amount,
                deposit_amount=split.deposit_amount,
                final_amount=split.final_amount,
                platform_fee=split.platform_fee,
                contractor_net=split.contractor_net,
                status=ContractStatus.ACTIVE.value,
                accepted_at=utcnow(),
            )
            db.add(contract)
            bid.status = BidStatus.ACCEPTED.value
            job.status = JobStatus.CONTRACTED.value
            try:
                await db.flush()
            except IntegrityError as e:
                raise ConflictError("A contract already exists for this job") from e

            rejected = await db.execute(
                select(Bid.id, Bid.contractor_id).where(
                    Bid.job_id == job.id,
                    Bid.id != bid.id,
                    Bid.status == BidStatus.SUBMITTED.value,
                )
            )
            rejected_bids = rejected.all()
            await db.execute(
                update(Bid)
                .where(
                    Bid.job_id == job.id,
                    Bid.id != bid.id,
                    Bid.status == BidStatus.SUBMITTED.value,
                )
                .values(status=BidStatus.REJECTED.value)
            )

            await self.escrow.create_escrow(contract, db, caller)
            record_audit(db, "contract", contract.id, "created", caller, contract_id=contract.id,
                         bid_id=bid.id, amount=split.amount, rejected_bids=len(rejected_bids))
            await db.flush()

        # Gateway call happens outside the job lock; a failure rolls back the whole unit.
        await self.escrow.charge_deposit(contract, db, caller)
        if settings.RELEASE_DEPOSIT_ON_ACCEPT:
            await self.escrow.release_deposit(contract, db, caller)

        logger.info(
            "Bid %s accepted: contract %s (amount %s, deposit %s), %d competing bids rejected",
            bid.id, contract.id, contract.amount, contract.deposit_amount, len(rejected_bids),
        )
        notify(contract.contractor_id, NotificationType.BID_ACCEPTED,
               {"contract_id": contract.id, "job_id": job.id})
        for rejected_id, contractor_id in rejected_bids:
            notify(contractor_id, NotificationType.BID_REJECTED, {"bid_id": rejected_id, "job_id": job.id})
        return contract

    async def get_contract_for(self, contract_id: uuid.UUID, caller: Caller, db: AsyncSession) -> Contract:
        contract = await get_contract(contract_id, db)
        ensure_party(contract, caller)
        return contract

    # ------------------------------------------------------------------
    # Change orders
    # ------------------------------------------------------------------

    async def create_change_order(
        self,
        contract_id: uuid.UUID,
        caller: Caller,
        title: str,
        description: str,
        amount: Decimal,
        db: AsyncSession,
    ) -> ChangeOrder:
        contract = await get_contract(contract_id, db)
        ensure_party(contract, caller, allow_arbiter=False)
        if contract.status != ContractStatus.ACTIVE.value:
            raise ContractNotActiveError(contract.status)
        amount = to_money(amount)
        if amount <= ZERO:
            raise BadRequestError("Change order amount must be positive")

        change_order = ChangeOrder(
            contract_id=contract.id,
            requested_by_id=caller.id,
            title=title,
            description=description,
            amount=amount,
            status=ChangeOrderStatus.PENDING.value,
        )
        db.add(change_order)
        await db.flush()
        record_audit(db, "change_order", change_order.id, "requested", caller, contract_id=contract.id,
                     amount=amount)
        await db.flush()

        other = contract.homeowner_id if caller.id == contract.contractor_id else contract.contractor_id
        logger.info("Change order %s requested on contract %s (%s)", change_order.id, contract.id, amount)
        notify(other, NotificationType.CHANGE_ORDER_REQUESTED,
               {"contract_id": contract.id, "change_order_id": change_order.id, "amount": amount})
        return change_order

    async def _get_change_order(self, change_order_id: uuid.UUID, db: AsyncSession) -> ChangeOrder:
        result = await db.execute(
            select(ChangeOrder).where(ChangeOrder.id == change_order_id, ChangeOrder.is_deleted.is_(False))
        )
        change_order = result.scalar_one_or_none()
        if not change_order:
            raise NotFoundError("Change order", str(change_order_id))
        return change_order

    async def approve_change_order(self, change_order_id: uuid.UUID, caller: Caller, db: AsyncSession) -> ChangeOrder:
        """Charge the delta first; the contract only grows once the money is in.

        A failed charge leaves the contract untouched and the change order in
        PAYMENT_FAILED, from which it can be approved again. The retry reuses
        the same idempotency key unless the provider definitely declined.
        """
        change_order = await self._get_change_order(change_order_id, db)

        async with contract_locks.hold(change_order.contract_id):
            contract = await get_contract(change_order.contract_id, db)
            if caller.id != contract.homeowner_id:
                raise PermissionDeniedError("Only the homeowner can approve change orders")
            if change_order.status not in (ChangeOrderStatus.PENDING.value, ChangeOrderStatus.PAYMENT_FAILED.value):
                raise ConflictError(f"Change order cannot be approved (status: {change_order.status})")
            if contract.status != ContractStatus.ACTIVE.value:
                raise ContractNotActiveError(contract.status)

        async def record_approval(account) -> None:
            await db.refresh(contract, with_for_update=True)
            split = compute_split(contract.amount + change_order.amount)
            contract.amount = split.amount
            contract.deposit_amount = split.deposit_amount
            contract.final_amount = split.final_amount
            contract.platform_fee = split.platform_fee
            contract.contractor_net = split.contractor_net

            change_order.status = ChangeOrderStatus.APPROVED.value
            change_order.charge_attempts += 1
            change_order.failure_reason = None
            change_order.approved_at = utcnow()
            record_audit(db, "change_order", change_order.id, "approved", caller, contract_id=contract.id,
                         amount=change_order.amount, new_contract_amount=split.amount)

        try:
            charge_id = await self.escrow.charge_change_order(
                contract, change_order.id, change_order.amount, change_order.declined_charges, db, caller,
                on_record=record_approval,
            )
        except ExternalServiceError as e:
            async with contract_locks.hold(contract.id):
                change_order.status = ChangeOrderStatus.PAYMENT_FAILED.value
                change_order.charge_attempts += 1
                if e.declined:
                    change_order.declined_charges += 1
                change_order.failure_reason = str(e.detail)
                record_audit(db, "change_order", change_order.id, "payment_failed", caller,
                             contract_id=contract.id, attempt=change_order.charge_attempts,
                             declined=e.declined, reason=e.detail)
                await db.flush()
            logger.error("Change order %s charge failed (attempt %d, declined=%s): %s",
                         change_order.id, change_order.charge_attempts, e.declined, e.detail)
            notify(caller.id, NotificationType.CHANGE_ORDER_PAYMENT_FAILED,
                   {"change_order_id": change_order.id, "reason": e.detail})
            return change_order

        change_order.charge_ref = charge_id
        await db.flush()

        logger.info("Change order %s approved; contract %s now %s", change_order.id, contract.id, contract.amount)
        notify(contract.contractor_id, NotificationType.CHANGE_ORDER_APPROVED,
               {"contract_id": contract.id, "change_order_id": change_order.id, "amount": change_order.amount})
        return change_order

    async def reject_change_order(self, change_order_id: uuid.UUID, caller: Caller, db: AsyncSession) -> ChangeOrder:
        change_order = await self._get_change_order(change_order_id, db)
        contract = await get_contract(change_order.contract_id, db)
        if caller.id != contract.homeowner_id:
            raise PermissionDeniedError("Only the homeowner can reject change orders")
        if change_order.status not in (ChangeOrderStatus.PENDING.value, ChangeOrderStatus.PAYMENT_FAILED.value):
            raise ConflictError(f"Change order cannot be rejected (status: {change_order.status})")

        change_order.status = ChangeOrderStatus.REJECTED.value
        record_audit(db, "change_order", change_order.id, "rejected", caller, contract_id=contract.id)
        await db.flush()
        logger.info("Change order %s rejected", change_order.id)
        return change_order
