import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from homebid.common.clock import utcnow
from homebid.common.enums import (
    ArbitrationOutcome,
    CompletionStatus,
    ContractStatus,
    DisputeStatus,
    EscrowStatus,
    EscrowTransactionType,
    JobStatus,
)
from homebid.common.exceptions import (
    BadRequestError,
    ConflictError,
    DisputeAlreadyResolvedError,
    MediationDeadlinePassedError,
    PermissionDeniedError,
)
from homebid.core.caller import Caller
from homebid.db.models.escrow import EscrowTransaction

T = EscrowTransactionType
PHOTOS = ["https://cdn.test/after.jpg"]
REASON = "Grout is cracking along the sink edge"


@pytest.fixture
async def rejected_completion(db_session, contract, homeowner, contractor, completion_service):
    completion = await completion_service.submit_completion(contract.id, Caller.of(contractor), PHOTOS, db_session)
    return await completion_service.approve_completion(
        completion.id, Caller.of(homeowner), False, db_session, feedback="Not acceptable"
    )


@pytest.fixture
async def dispute(db_session, rejected_completion, homeowner, dispute_service):
    return await dispute_service.initiate_dispute(rejected_completion.id, Caller.of(homeowner), REASON, db_session)


async def _transaction_count(db_session) -> int:
    return (await db_session.execute(select(func.count(EscrowTransaction.id)))).scalar()


@pytest.mark.asyncio
async def test_reject_dispute_and_split_50_50(
    db_session, contract, homeowner, contractor, mediator, rejected_completion, dispute_service, escrow_service
):
    assert contract.status == ContractStatus.ACTIVE.value

    dispute = await dispute_service.initiate_dispute(
        rejected_completion.id, Caller.of(homeowner), REASON, db_session
    )
    assert dispute.status == DisputeStatus.PENDING.value
    assert rejected_completion.status == CompletionStatus.DISPUTED.value
    account = await escrow_service.get_account(contract.id, db_session)
    assert account.status == EscrowStatus.DISPUTED
    held = account.held_amount

    responded = await dispute_service.submit_dispute_response(
        dispute.id, Caller.of(contractor), "The crack is from settling, not workmanship", db_session
    )
    assert responded.status == DisputeStatus.MEDIATION.value

    resolved = await dispute_service.resolve_dispute(
        dispute.id, Caller.of(mediator), "partial_refund", "Both sides share fault", db_session,
        partial_refund_percentage=50,
    )
    assert resolved.status == DisputeStatus.RESOLVED.value
    assert resolved.mediator_id == str(mediator.id)
    assert resolved.resolved_at is not None

    account = await escrow_service.get_account(contract.id, db_session)
    assert account.status == EscrowStatus.PARTIAL_REFUND
    legs = [t for t in account.transactions if t.kind in (T.PARTIAL_PAYOUT.value, T.PARTIAL_REFUND.value)]
    assert len(legs) == 2
    assert sum(t.amount for t in legs) == held
    assert [t.amount for t in legs] == [Decimal("62.50"), Decimal("62.50")]
    assert contract.status == ContractStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_dispute_reason_length(db_session, rejected_completion, homeowner, dispute_service):
    with pytest.raises(BadRequestError):
        await dispute_service.initiate_dispute(rejected_completion.id, Caller.of(homeowner), "too short", db_session)


@pytest.mark.asyncio
async def test_only_homeowner_opens_dispute(db_session, rejected_completion, contractor, dispute_service):
    with pytest.raises(PermissionDeniedError):
        await dispute_service.initiate_dispute(rejected_completion.id, Caller.of(contractor), REASON, db_session)


@pytest.mark.asyncio
async def test_one_dispute_per_completion(db_session, dispute, rejected_completion, homeowner, dispute_service):
    with pytest.raises(ConflictError):
        await dispute_service.initiate_dispute(rejected_completion.id, Caller.of(homeowner), REASON, db_session)


@pytest.mark.asyncio
async def test_response_after_deadline_fails(db_session, dispute, contractor, dispute_service):
    late = dispute.mediation_deadline + timedelta(minutes=1)
    with pytest.raises(MediationDeadlinePassedError):
        await dispute_service.submit_dispute_response(
            dispute.id, Caller.of(contractor), "Sorry for the delay", db_session, now=late
        )
    assert dispute.status == DisputeStatus.PENDING.value


@pytest.mark.asyncio
async def test_only_contractor_responds(db_session, dispute, homeowner, dispute_service):
    with pytest.raises(PermissionDeniedError):
        await dispute_service.submit_dispute_response(dispute.id, Caller.of(homeowner), "Me again", db_session)


@pytest.mark.asyncio
async def test_parties_and_mediator_can_message(db_session, dispute, homeowner, mediator, rival, dispute_service):
    await dispute_service.add_dispute_message(dispute.id, Caller.of(homeowner), "Photos attached", db_session)
    updated = await dispute_service.add_dispute_message(
        dispute.id, Caller.of(mediator), "Reviewing evidence", db_session
    )
    assert [m["body"] for m in updated.messages][-2:] == ["Photos attached", "Reviewing evidence"]

    with pytest.raises(PermissionDeniedError):
        await dispute_service.add_dispute_message(dispute.id, Caller.of(rival), "Hi", db_session)


@pytest.mark.asyncio
async def test_second_resolution_fails_without_new_transactions(
    db_session, dispute, homeowner, mediator, dispute_service, gateway
):
    await dispute_service.resolve_dispute(dispute.id, Caller.of(mediator), "refund", "Work not done", db_session)
    count = await _transaction_count(db_session)
    calls = len(gateway.calls)

    with pytest.raises(DisputeAlreadyResolvedError):
        await dispute_service.resolve_dispute(
            dispute.id, Caller.of(mediator), "partial_refund", "Changed my mind", db_session,
            partial_refund_percentage=50,
        )
    assert await _transaction_count(db_session) == count
    assert len(gateway.calls) == calls


@pytest.mark.asyncio
async def test_refund_resolution_cancels_contract(
    db_session, dispute, job, contract, mediator, dispute_service, escrow_service, gateway
):
    await dispute_service.resolve_dispute(dispute.id, Caller.of(mediator), "refund", "Work not done", db_session)
    account = await escrow_service.get_account(contract.id, db_session)
    assert account.status == EscrowStatus.REFUNDED
    assert gateway.amounts("refund") == [Decimal("125.00")]
    assert contract.status == ContractStatus.CANCELLED.value
    assert job.status == JobStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_only_arbiters_resolve(db_session, dispute, homeowner, dispute_service):
    with pytest.raises(PermissionDeniedError):
        await dispute_service.resolve_dispute(dispute.id, Caller.of(homeowner), "refund", "I win", db_session)


@pytest.mark.asyncio
async def test_partial_resolution_requires_percentage(db_session, dispute, mediator, dispute_service):
    with pytest.raises(BadRequestError):
        await dispute_service.resolve_dispute(
            dispute.id, Caller.of(mediator), "partial_refund", "Split it", db_session
        )
    with pytest.raises(BadRequestError):
        await dispute_service.resolve_dispute(dispute.id, Caller.of(mediator), "coin_flip", "No", db_session)


@pytest.mark.asyncio
async def test_rework_then_approval_releases_funds(
    db_session, dispute, contract, homeowner, contractor, mediator, dispute_service, completion_service,
    escrow_service, gateway,
):
    await dispute_service.resolve_dispute(dispute.id, Caller.of(mediator), "rework", "Redo the grout", db_session)
    account = await escrow_service.get_account(contract.id, db_session)
    assert account.status == EscrowStatus.HELD_FOR_REWORK
    assert account.rework_deadline is not None
    assert contract.status == ContractStatus.ACTIVE.value

    redo = await completion_service.submit_completion(contract.id, Caller.of(contractor), PHOTOS, db_session)
    await completion_service.approve_completion(redo.id, Caller.of(homeowner), True, db_session, rating=4)

    account = await escrow_service.get_account(contract.id, db_session)
    assert account.status == EscrowStatus.RELEASED
    assert gateway.amounts("transfer") == [Decimal("440.00")]


@pytest.mark.asyncio
async def test_completion_blocked_while_dispute_open(db_session, dispute, contract, contractor, completion_service):
    with pytest.raises(ConflictError):
        await completion_service.submit_completion(contract.id, Caller.of(contractor), PHOTOS, db_session)


@pytest.mark.asyncio
async def test_overdue_disputes_escalate(db_session, dispute, mediator, dispute_service, notifications):
    assert await dispute_service.escalate_overdue_disputes(db_session, now=utcnow()) == []

    later = dispute.mediation_deadline + timedelta(hours=1)
    escalated = await dispute_service.escalate_overdue_disputes(db_session, now=later)
    assert escalated == [str(dispute.id)]
    assert dispute.status == DisputeStatus.ESCALATED.value
    assert dispute.escalated_at is not None
    assert dispute.messages[-1]["author_id"] == "SYSTEM"

    # Escalated disputes are not escalated twice but can still be resolved
    assert await dispute_service.escalate_overdue_disputes(db_session, now=later) == []
    resolved = await dispute_service.resolve_dispute(
        dispute.id, Caller.of(mediator), "refund", "No response from contractor", db_session
    )
    assert resolved.status == DisputeStatus.RESOLVED.value


@pytest.mark.asyncio
async def test_expired_rework_is_refunded(
    db_session, dispute, contract, job, mediator, dispute_service, escrow_service, gateway
):
    start = utcnow()
    await dispute_service.resolve_dispute(
        dispute.id, Caller.of(mediator), "rework", "Redo the grout", db_session, now=start
    )

    assert await dispute_service.expire_rework_holds(db_session, now=start + timedelta(days=1)) == []

    expired = await dispute_service.expire_rework_holds(db_session, now=start + timedelta(days=8))
    assert expired == [str(contract.id)]
    account = await escrow_service.get_account(contract.id, db_session)
    assert account.status == EscrowStatus.REFUNDED
    assert contract.status == ContractStatus.CANCELLED.value
    assert job.status == JobStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_expired_rework_can_go_to_arbitration(
    db_session, dispute, contract, mediator, dispute_service, escrow_service, monkeypatch
):
    from homebid.config import settings

    monkeypatch.setattr(settings, "REWORK_EXPIRY_POLICY", "arbitration")
    start = utcnow()
    await dispute_service.resolve_dispute(
        dispute.id, Caller.of(mediator), "rework", "Redo the grout", db_session, now=start
    )
    await dispute_service.expire_rework_holds(db_session, now=start + timedelta(days=8))

    account = await escrow_service.get_account(contract.id, db_session)
    assert account.status == EscrowStatus.HELD_FOR_ARBITRATION
    assert account.rework_deadline is None


@pytest.mark.asyncio
async def test_arbitration_split_settlement(
    db_session, dispute, contract, homeowner, mediator, dispute_service, escrow_service, gateway
):
    await dispute_service.resolve_dispute(
        dispute.id, Caller.of(mediator), "arbitration", "Needs an arbitrator", db_session
    )
    account = await escrow_service.get_account(contract.id, db_session)
    assert account.status == EscrowStatus.HELD_FOR_ARBITRATION

    with pytest.raises(PermissionDeniedError):
        await dispute_service.settle_arbitration(contract.id, Caller.of(homeowner), ArbitrationOutcome.REFUND, db_session)

    settled = await dispute_service.settle_arbitration(
        contract.id, Caller.of(mediator), ArbitrationOutcome.SPLIT, db_session, homeowner_percentage=20
    )
    assert settled.status == ContractStatus.COMPLETED.value
    assert gateway.amounts("transfer") == [Decimal("100.00")]
    assert gateway.amounts("refund") == [Decimal("25.00")]

    with pytest.raises(ConflictError):
        await dispute_service.settle_arbitration(contract.id, Caller.of(mediator), ArbitrationOutcome.REFUND, db_session)


# ---------- Concurrent resolution ----------

@pytest.mark.asyncio
async def test_concurrent_resolutions_run_one_path(
    db_session, dispute, contract, mediator, dispute_service, escrow_service, gateway
):
    gateway.delay = 0.01
    refunds_before = len(gateway.amounts("refund"))

    results = await asyncio.gather(
        dispute_service.resolve_dispute(dispute.id, Caller.of(mediator), "rework", "Fix the grout", db_session),
        dispute_service.resolve_dispute(dispute.id, Caller.of(mediator), "refund", "Start over", db_session),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], DisputeAlreadyResolvedError)
    winner = "rework" if results[1] is errors[0] else "refund"

    assert dispute.status == DisputeStatus.RESOLVED.value
    assert dispute.resolution_path == winner
    account = await escrow_service.get_account(contract.id, db_session)
    refunds = len(gateway.amounts("refund")) - refunds_before
    if winner == "rework":
        assert account.status == EscrowStatus.HELD_FOR_REWORK
        assert contract.status == ContractStatus.ACTIVE.value
        assert refunds == 0
    else:
        assert account.status == EscrowStatus.REFUNDED
        assert contract.status == ContractStatus.CANCELLED.value
        assert refunds == 1
    holds = [t for t in account.transactions if t.kind == T.REWORK_HOLD.value]
    assert len(holds) == (1 if winner == "rework" else 0)


@pytest.mark.asyncio
async def test_resolution_races_release_without_paying_out(
    db_session, dispute, contract, mediator, dispute_service, escrow_service, gateway
):
    gateway.delay = 0.01

    resolved, released = await asyncio.gather(
        dispute_service.resolve_dispute(dispute.id, Caller.of(mediator), "refund", "Start over", db_session),
        escrow_service.release_final_payment(contract, db_session, Caller.of(mediator)),
        return_exceptions=True,
    )

    assert isinstance(released, ConflictError)
    assert resolved.status == DisputeStatus.RESOLVED.value
    account = await escrow_service.get_account(contract.id, db_session)
    assert account.status == EscrowStatus.REFUNDED
    assert account.held_amount == Decimal("0.00")
    assert gateway.amounts("transfer") == []


@pytest.mark.asyncio
async def test_concurrent_arbitration_settlements_move_funds_once(
    db_session, dispute, contract, mediator, dispute_service, escrow_service, gateway
):
    await dispute_service.resolve_dispute(
        dispute.id, Caller.of(mediator), "arbitration", "Needs an arbiter", db_session
    )
    gateway.delay = 0.01

    results = await asyncio.gather(
        dispute_service.settle_arbitration(contract.id, Caller.of(mediator), ArbitrationOutcome.RELEASE, db_session),
        dispute_service.settle_arbitration(contract.id, Caller.of(mediator), ArbitrationOutcome.REFUND, db_session),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], ConflictError)
    account = await escrow_service.get_account(contract.id, db_session)
    assert account.status in (EscrowStatus.RELEASED, EscrowStatus.REFUNDED)
    assert account.held_amount == Decimal("0.00")
    if account.status == EscrowStatus.RELEASED:
        assert len(gateway.amounts("transfer")) == 1
        assert gateway.amounts("refund") == []
    else:
        assert gateway.amounts("transfer") == []
        assert gateway.amounts("refund") == [Decimal("125.00")]
