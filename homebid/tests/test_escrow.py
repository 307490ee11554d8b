from decimal import Decimal

import pytest
from sqlalchemy import select

from homebid.common.enums import EscrowStatus, EscrowTransactionType
from homebid.common.exceptions import BadRequestError, ConflictError, PermissionDeniedError
from homebid.core.caller import Caller
from homebid.core.escrow.ledger import InvalidEscrowTransitionError
from homebid.core.locking import escrow_in_flight
from homebid.db.models.escrow import EscrowTransaction

T = EscrowTransactionType


async def _kinds(db_session, account) -> list[str]:
    result = await db_session.execute(
        select(EscrowTransaction.kind)
        .where(EscrowTransaction.escrow_id == account.id)
        .order_by(EscrowTransaction.sequence)
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_hold_in_dispute_is_idempotent(db_session, contract, homeowner, escrow_service):
    caller = Caller.of(homeowner)
    await escrow_service.hold_in_dispute(contract, db_session, caller)
    account = await escrow_service.hold_in_dispute(contract, db_session, caller)

    assert account.status == EscrowStatus.DISPUTED
    kinds = await _kinds(db_session, account)
    assert kinds.count(T.DISPUTE_HOLD.value) == 1


@pytest.mark.asyncio
async def test_partial_refund_must_sum_to_held(db_session, contract, homeowner, mediator, escrow_service, gateway):
    await escrow_service.hold_in_dispute(contract, db_session, Caller.of(homeowner))
    before = len(gateway.calls)

    with pytest.raises(BadRequestError):
        await escrow_service.partial_refund(
            contract, Decimal("60.00"), Decimal("60.00"), db_session, Caller.of(mediator)
        )
    account = await escrow_service.get_account(contract.id, db_session)
    assert account.status == EscrowStatus.DISPUTED
    assert len(gateway.calls) == before
    assert escrow_in_flight.current(contract.id) is None

    account = await escrow_service.partial_refund(
        contract, Decimal("75.00"), Decimal("50.00"), db_session, Caller.of(mediator)
    )
    assert account.status == EscrowStatus.PARTIAL_REFUND
    assert account.held_amount == Decimal("0.00")
    assert gateway.amounts("transfer") == [Decimal("75.00")]
    assert gateway.amounts("refund") == [Decimal("50.00")]


@pytest.mark.asyncio
async def test_refund_returns_everything_held(db_session, contract, homeowner, mediator, escrow_service, gateway):
    await escrow_service.hold_in_dispute(contract, db_session, Caller.of(homeowner))
    account = await escrow_service.refund_to_homeowner(contract, db_session, Caller.of(mediator))

    assert account.status == EscrowStatus.REFUNDED
    assert account.held_amount == Decimal("0.00")
    assert gateway.amounts("refund") == [Decimal("125.00")]
    assert gateway.calls[-1][2].startswith(f"{contract.id}:refund:")

    with pytest.raises(InvalidEscrowTransitionError):
        await escrow_service.refund_to_homeowner(contract, db_session, Caller.of(mediator))


@pytest.mark.asyncio
async def test_refund_requires_a_hold(db_session, contract, mediator, escrow_service):
    with pytest.raises(InvalidEscrowTransitionError) as exc:
        await escrow_service.refund_to_homeowner(contract, db_session, Caller.of(mediator))
    assert isinstance(exc.value, ConflictError)


@pytest.mark.asyncio
async def test_release_deposit_pays_contractor_once(db_session, contract, homeowner, escrow_service, gateway):
    account = await escrow_service.release_deposit(contract, db_session, Caller.of(homeowner))
    # 125 deposit less the 12% fee on the deposit leg
    assert gateway.amounts("transfer") == [Decimal("110.00")]
    assert account.deposit_released_at is not None
    assert account.held_amount == Decimal("0.00")
    assert account.status == EscrowStatus.ACTIVE

    with pytest.raises(ConflictError):
        await escrow_service.release_deposit(contract, db_session, Caller.of(homeowner))


@pytest.mark.asyncio
async def test_final_release_after_deposit_release_conserves_money(
    db_session, contract, homeowner, escrow_service, gateway
):
    caller = Caller.of(homeowner)
    await escrow_service.release_deposit(contract, db_session, caller)
    account = await escrow_service.release_final_payment(contract, db_session, caller)

    assert account.status == EscrowStatus.RELEASED
    assert gateway.amounts("charge") == [Decimal("125.00"), Decimal("375.00")]
    assert sum(gateway.amounts("transfer")) == Decimal("440.00")
    fees = [t.amount for t in account.transactions if t.kind == T.PLATFORM_FEE.value]
    assert sum(fees) == Decimal("60.00")
    assert account.held_amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_outbound_never_exceeds_total(db_session, contract, homeowner, mediator, escrow_service):
    caller = Caller.of(homeowner)
    account = await escrow_service.release_final_payment(contract, db_session, caller)
    out = sum(t.amount for t in account.transactions if t.direction == "out")
    assert out == account.total_amount

    with pytest.raises(InvalidEscrowTransitionError):
        await escrow_service.release_final_payment(contract, db_session, caller)
    with pytest.raises(InvalidEscrowTransitionError):
        await escrow_service.hold_in_dispute(contract, db_session, Caller.of(mediator))


@pytest.mark.asyncio
async def test_arbitration_hold_needs_arbiter_to_release(db_session, contract, homeowner, mediator, escrow_service):
    await escrow_service.hold_in_dispute(contract, db_session, Caller.of(homeowner))
    await escrow_service.hold_for_arbitration(contract, db_session, Caller.of(mediator))

    with pytest.raises(PermissionDeniedError):
        await escrow_service.release_final_payment(contract, db_session, Caller.of(homeowner))

    account = await escrow_service.release_final_payment(contract, db_session, Caller.of(mediator))
    assert account.status == EscrowStatus.RELEASED


@pytest.mark.asyncio
async def test_operation_in_flight_blocks_other_movements(db_session, contract, homeowner, mediator, escrow_service):
    await escrow_service.hold_in_dispute(contract, db_session, Caller.of(homeowner))
    await escrow_in_flight.reserve(db_session, contract.id, "refund")
    try:
        with pytest.raises(ConflictError):
            await escrow_service.refund_to_homeowner(contract, db_session, Caller.of(mediator))
        with pytest.raises(ConflictError):
            await escrow_service.hold_for_rework(contract, db_session, Caller.of(mediator))
    finally:
        escrow_in_flight.finish(contract.id)


@pytest.mark.asyncio
async def test_reservation_from_another_worker_blocks_movements(
    db_session, contract, homeowner, mediator, escrow_service, gateway, reservation_store
):
    await escrow_service.hold_in_dispute(contract, db_session, Caller.of(homeowner))
    await reservation_store.set(f"homebid:reservation:escrow:{contract.id}", "worker2:release_final", ex=300)
    calls = len(gateway.calls)

    with pytest.raises(ConflictError):
        await escrow_service.refund_to_homeowner(contract, db_session, Caller.of(mediator))
    with pytest.raises(ConflictError):
        await escrow_service.hold_for_rework(contract, db_session, Caller.of(mediator))
    assert len(gateway.calls) == calls

    await reservation_store.delete(f"homebid:reservation:escrow:{contract.id}")
    account = await escrow_service.refund_to_homeowner(contract, db_session, Caller.of(mediator))
    assert account.status == EscrowStatus.REFUNDED
