import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from homebid.common.clock import utcnow
from homebid.common.enums import (
    ArbitrationOutcome,
    CompletionStatus,
    ContractStatus,
    DisputeStatus,
    EscrowStatus,
    JobStatus,
    NotificationType,
    ResolutionPath,
)
from homebid.common.exceptions import (
    BadRequestError,
    ConflictError,
    DisputeAlreadyResolvedError,
    MediationDeadlinePassedError,
    NotFoundError,
    PermissionDeniedError,
)
from homebid.common.logging import get_logger
from homebid.config import settings
from homebid.core.audit import record_audit
from homebid.core.caller import Caller
from homebid.core.completions.service import get_completion, is_dispute_window_open
from homebid.core.contracts.service import get_contract
from homebid.core.disputes.workflow import (
    RESOLVABLE_STATUSES,
    RESPONDABLE_STATUSES,
    check_escalation_needed,
    is_mediation_deadline_passed,
    mediation_deadline_from,
    split_partial_refund,
    validate_reason,
    validate_resolution,
)
from homebid.core.escrow.ledger import is_rework_deadline_passed
from homebid.core.escrow.service import EscrowService
from homebid.core.locking import contract_locks, dispute_claims
from homebid.core.notifications.service import notify
from homebid.db.models.contract import Contract
from homebid.db.models.dispute import Dispute
from homebid.db.models.escrow import EscrowAccount
from homebid.db.models.job import Job

logger = get_logger("disputes.service")


async def get_dispute(dispute_id: uuid.UUID, db: AsyncSession) -> Dispute:
    result = await db.execute(select(Dispute).where(Dispute.id == dispute_id, Dispute.is_deleted.is_(False)))
    dispute = result.scalar_one_or_none()
    if not dispute:
        raise NotFoundError("Dispute", str(dispute_id))
    return dispute


def _message(caller: Caller, body: str, now: datetime) -> dict:
    return {
        "author_id": caller.actor,
        "role": caller.role.value if caller.role else None,
        "body": body,
        "at": now.isoformat(),
    }


class DisputeService:
    def __init__(self, escrow: EscrowService | None = None):
        self.escrow = escrow or EscrowService()

    # ------------------------------------------------------------------
    # Initiation and mediation
    # ------------------------------------------------------------------

    async def initiate_dispute(
        self,
        completion_id: uuid.UUID,
        caller: Caller,
        reason: str,
        db: AsyncSession,
        description: str | None = None,
        evidence_urls: list[str] | None = None,
        now: datetime | None = None,
    ) -> Dispute:
        now = now or utcnow()
        reason = validate_reason(reason)

        completion = await get_completion(completion_id, db)
        contract = await get_contract(completion.contract_id, db)
        if caller.id != contract.homeowner_id:
            raise PermissionDeniedError("Only the homeowner can open a dispute")

        dispute = None

        async def open_dispute(account) -> None:
            nonlocal dispute
            if completion.status not in (CompletionStatus.SUBMITTED.value, CompletionStatus.REJECTED.value):
                raise ConflictError(f"Completion cannot be disputed (status: {completion.status})")
            if settings.ENFORCE_DISPUTE_WINDOW and not is_dispute_window_open(completion, now):
                raise ConflictError("The dispute window for this completion has closed")
            existing = await db.execute(select(Dispute.id).where(Dispute.completion_id == completion.id))
            if existing.scalar_one_or_none() is not None:
                raise ConflictError("A dispute already exists for this completion")

            dispute = Dispute(
                completion_id=completion.id,
                contract_id=contract.id,
                homeowner_id=contract.homeowner_id,
                contractor_id=contract.contractor_id,
                reason=reason,
                description=description,
                evidence_urls=list(evidence_urls or []),
                status=DisputeStatus.PENDING.value,
                mediation_deadline=mediation_deadline_from(now),
                messages=[_message(caller, reason, now)],
            )
            db.add(dispute)
            completion.status = CompletionStatus.DISPUTED.value
            await db.flush()
            record_audit(db, "dispute", dispute.id, "opened", caller, contract_id=contract.id,
                         completion_id=completion.id)

        await self.escrow.hold_in_dispute(contract, db, caller, on_record=open_dispute)

        logger.info("Dispute %s opened on contract %s, deadline %s", dispute.id, contract.id, dispute.mediation_deadline)
        notify(contract.contractor_id, NotificationType.DISPUTE_OPENED,
               {"dispute_id": dispute.id, "contract_id": contract.id, "reason": reason})
        return dispute

    async def get_dispute_for(self, dispute_id: uuid.UUID, caller: Caller, db: AsyncSession) -> Dispute:
        dispute = await get_dispute(dispute_id, db)
        if caller.id not in (dispute.homeowner_id, dispute.contractor_id) and not caller.is_arbiter:
            raise PermissionDeniedError("You are not a party to this dispute")
        return dispute

    async def submit_dispute_response(
        self,
        dispute_id: uuid.UUID,
        caller: Caller,
        message: str,
        db: AsyncSession,
        now: datetime | None = None,
    ) -> Dispute:
        now = now or utcnow()
        if not message or not message.strip():
            raise BadRequestError("Response message is required")

        dispute = await get_dispute(dispute_id, db)
        async with contract_locks.hold(dispute.contract_id):
            if caller.id != dispute.contractor_id:
                raise PermissionDeniedError("Only the contractor can respond to this dispute")
            if dispute.status == DisputeStatus.RESOLVED.value:
                raise DisputeAlreadyResolvedError()
            if is_mediation_deadline_passed(dispute, now):
                raise MediationDeadlinePassedError()
            if dispute.status not in RESPONDABLE_STATUSES:
                raise ConflictError(f"Dispute is not awaiting a response (status: {dispute.status})")

            dispute.messages = [*dispute.messages, _message(caller, message.strip(), now)]
            dispute.status = DisputeStatus.MEDIATION.value
            record_audit(db, "dispute", dispute.id, "responded", caller, contract_id=dispute.contract_id)
            await db.flush()

        logger.info("Contractor responded to dispute %s", dispute.id)
        notify(dispute.homeowner_id, NotificationType.DISPUTE_RESPONSE, {"dispute_id": dispute.id})
        return dispute

    async def add_dispute_message(
        self,
        dispute_id: uuid.UUID,
        caller: Caller,
        message: str,
        db: AsyncSession,
        now: datetime | None = None,
    ) -> Dispute:
        now = now or utcnow()
        if not message or not message.strip():
            raise BadRequestError("Message is required")

        dispute = await self.get_dispute_for(dispute_id, caller, db)
        async with contract_locks.hold(dispute.contract_id):
            if dispute.status == DisputeStatus.RESOLVED.value:
                raise DisputeAlreadyResolvedError()
            dispute.messages = [*dispute.messages, _message(caller, message.strip(), now)]
            await db.flush()
        return dispute

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve_dispute(
        self,
        dispute_id: uuid.UUID,
        caller: Caller,
        path: str,
        reasoning: str,
        db: AsyncSession,
        partial_refund_percentage: int | None = None,
        now: datetime | None = None,
    ) -> Dispute:
        """Execute exactly one resolution path against escrow and close the dispute."""
        now = now or utcnow()
        if not caller.is_arbiter:
            raise PermissionDeniedError("Only a mediator can resolve disputes")
        plan = validate_resolution(path, partial_refund_percentage)
        if not reasoning or not reasoning.strip():
            raise BadRequestError("Resolution reasoning is required")

        dispute = await get_dispute(dispute_id, db)
        async with contract_locks.hold(dispute.contract_id):
            if dispute.status == DisputeStatus.RESOLVED.value:
                raise DisputeAlreadyResolvedError()
            if dispute.status not in RESOLVABLE_STATUSES:
                raise ConflictError(f"Dispute cannot be resolved (status: {dispute.status})")
            contract = await get_contract(dispute.contract_id, db)
            # The claim is taken before any escrow call, so only one path ever runs.
            if not await dispute_claims.claim(db, dispute.id, plan.path.value):
                raise DisputeAlreadyResolvedError()

        async def record_resolution(account) -> None:
            job = await db.get(Job, contract.job_id)
            if plan.path == ResolutionPath.REFUND:
                contract.status = ContractStatus.CANCELLED.value
                contract.cancelled_at = now
                job.status = JobStatus.CANCELLED.value
            elif plan.path == ResolutionPath.PARTIAL_REFUND:
                contract.status = ContractStatus.COMPLETED.value
                contract.completed_at = now
                job.status = JobStatus.COMPLETED.value
            elif plan.path == ResolutionPath.REWORK:
                contract.status = ContractStatus.ACTIVE.value

            dispute.status = DisputeStatus.RESOLVED.value
            dispute.resolution_path = plan.path.value
            dispute.resolution_reasoning = reasoning.strip()
            dispute.partial_refund_percentage = plan.partial_refund_percentage
            dispute.mediator_id = caller.actor
            dispute.resolved_at = now
            record_audit(db, "dispute", dispute.id, "resolved", caller, contract_id=contract.id,
                         path=plan.path, partial_refund_percentage=plan.partial_refund_percentage)

        try:
            if plan.path == ResolutionPath.REFUND:
                await self.escrow.refund_to_homeowner(contract, db, caller, on_record=record_resolution)
            elif plan.path == ResolutionPath.PARTIAL_REFUND:
                account = await self.escrow.get_account(contract.id, db)
                split = split_partial_refund(account.held_amount, plan.partial_refund_percentage)
                await self.escrow.partial_refund(contract, split.contractor_payout, split.homeowner_refund, db,
                                                 caller, on_record=record_resolution)
            elif plan.path == ResolutionPath.REWORK:
                await self.escrow.hold_for_rework(contract, db, caller, now=now, on_record=record_resolution)
            else:
                await self.escrow.hold_for_arbitration(contract, db, caller, now=now, on_record=record_resolution)
        finally:
            dispute_claims.finish(dispute.id)

        logger.info("Dispute %s resolved via %s by %s", dispute.id, plan.path.value, caller.actor)
        for user_id in (dispute.homeowner_id, dispute.contractor_id):
            notify(user_id, NotificationType.DISPUTE_RESOLVED,
                   {"dispute_id": dispute.id, "path": plan.path.value})
        return dispute

    async def settle_arbitration(
        self,
        contract_id: uuid.UUID,
        caller: Caller,
        outcome: ArbitrationOutcome,
        db: AsyncSession,
        homeowner_percentage: int | None = None,
        now: datetime | None = None,
    ) -> Contract:
        """Final decision on funds held for arbitration."""
        now = now or utcnow()
        if not caller.is_arbiter:
            raise PermissionDeniedError("Only an arbiter can settle arbitration")
        contract = await get_contract(contract_id, db)
        account = await self.escrow.get_account(contract.id, db)
        if account.status != EscrowStatus.HELD_FOR_ARBITRATION:
            raise ConflictError(f"Escrow is not held for arbitration (status: {account.status.value})")

        async def record_settlement(account) -> None:
            job = await db.get(Job, contract.job_id)
            contract.status = contract_status.value
            if contract_status == ContractStatus.CANCELLED:
                contract.cancelled_at = now
                job.status = JobStatus.CANCELLED.value
            else:
                contract.completed_at = now
                job.status = JobStatus.COMPLETED.value
            record_audit(db, "contract", contract.id, "arbitration_settled", caller, contract_id=contract.id,
                         outcome=outcome)

        if outcome == ArbitrationOutcome.RELEASE:
            contract_status = ContractStatus.COMPLETED
            await self.escrow.release_final_payment(contract, db, caller, on_record=record_settlement)
        elif outcome == ArbitrationOutcome.REFUND:
            contract_status = ContractStatus.CANCELLED
            await self.escrow.refund_to_homeowner(contract, db, caller, on_record=record_settlement)
        else:
            if homeowner_percentage is None or not 0 <= homeowner_percentage <= 100:
                raise BadRequestError("Split requires a homeowner percentage between 0 and 100")
            contract_status = ContractStatus.COMPLETED
            split = split_partial_refund(account.held_amount, homeowner_percentage)
            await self.escrow.partial_refund(contract, split.contractor_payout, split.homeowner_refund, db, caller,
                                             on_record=record_settlement)

        logger.info("Arbitration on contract %s settled: %s", contract.id, outcome.value)
        return contract

    # ------------------------------------------------------------------
    # Scheduler callbacks
    # ------------------------------------------------------------------

    async def escalate_overdue_disputes(self, db: AsyncSession, now: datetime | None = None) -> list[str]:
        now = now or utcnow()
        result = await db.execute(
            select(Dispute).where(
                Dispute.status.in_(list(RESPONDABLE_STATUSES)),
                Dispute.is_deleted.is_(False),
            )
        )
        disputes = result.scalars().all()

        escalated = []
        for dispute in disputes:
            rule = check_escalation_needed(dispute, now)
            if not rule:
                continue
            try:
                await dispute_claims.ensure_idle(db, dispute.id)
            except ConflictError:
                logger.info("Dispute %s is being resolved, not escalating", dispute.id)
                continue
            old_status = dispute.status
            dispute.status = rule.to_status
            dispute.escalated_at = now
            dispute.messages = [
                *dispute.messages,
                _message(Caller.system(), rule.notification_message, now),
            ]
            record_audit(db, "dispute", dispute.id, "escalated", Caller.system(),
                         contract_id=dispute.contract_id, from_status=old_status)
            escalated.append(str(dispute.id))
            logger.info("Auto-escalated dispute %s: %s -> %s", dispute.id, old_status, rule.to_status)
            for user_id in (dispute.homeowner_id, dispute.contractor_id):
                notify(user_id, NotificationType.DISPUTE_ESCALATED, {"dispute_id": dispute.id})

        if escalated:
            await db.flush()
        return escalated

    async def expire_rework_holds(self, db: AsyncSession, now: datetime | None = None) -> list[str]:
        """Apply the rework-expiry policy to holds whose deadline passed without delivered work."""
        now = now or utcnow()
        result = await db.execute(
            select(EscrowAccount).where(
                EscrowAccount.rework_deadline.is_not(None),
                EscrowAccount.is_deleted.is_(False),
            )
        )
        accounts = result.scalars().all()
        system = Caller.system()

        expired = []
        for account in accounts:
            if account.status != EscrowStatus.HELD_FOR_REWORK:
                continue
            if not is_rework_deadline_passed(account.rework_deadline, now):
                continue
            contract = await get_contract(account.contract_id, db)
            if contract.status == ContractStatus.PENDING_APPROVAL.value:
                # Rework was delivered and awaits review.
                continue

            if settings.REWORK_EXPIRY_POLICY == "arbitration":
                await self.escrow.hold_for_arbitration(contract, db, system, now=now)
            else:
                async def cancel_contract(account) -> None:
                    job = await db.get(Job, contract.job_id)
                    contract.status = ContractStatus.CANCELLED.value
                    contract.cancelled_at = now
                    job.status = JobStatus.CANCELLED.value

                await self.escrow.refund_to_homeowner(contract, db, system, on_record=cancel_contract)

            expired.append(str(contract.id))
            logger.info("Rework hold on contract %s expired (%s)", contract.id, settings.REWORK_EXPIRY_POLICY)
            for user_id in (contract.homeowner_id, contract.contractor_id):
                notify(user_id, NotificationType.REWORK_EXPIRED,
                       {"contract_id": contract.id, "policy": settings.REWORK_EXPIRY_POLICY})

        return expired
