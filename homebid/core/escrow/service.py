"""Escrow ledger operations.

Every mutation appends rows to the account's transaction log; status is
replayed from the log (see ``ledger.derive_status``). Fund movements
validate and reserve under the per-contract lock using plain reads, call
the gateway with the lock released, then take the lock once more to
row-lock the account and record the result. Callers that write their own
rows in the same step pass ``on_record``; it runs inside that final
section, before the ledger rows are appended.
"""

import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from homebid.common.clock import utcnow
from homebid.common.enums import EscrowStatus, EscrowTransactionType, LedgerParty, TransactionDirection
from homebid.common.exceptions import BadRequestError, ConflictError, NotFoundError, PermissionDeniedError
from homebid.common.logging import get_logger
from homebid.common.money import ZERO, to_money
from homebid.config import settings
from homebid.core.audit import record_audit
from homebid.core.caller import Caller
from homebid.core.contracts.fees import compute_split
from homebid.core.escrow.ledger import (
    DIRECTIONS,
    EscrowOperation,
    allocate_refund,
    check_outbound,
    ensure_allowed,
    fees_collected,
    total_in,
    total_out,
)
from homebid.core.locking import contract_locks, escrow_in_flight
from homebid.db.models.contract import Contract
from homebid.db.models.escrow import EscrowAccount, EscrowTransaction
from homebid.db.models.user import User
from homebid.integrations.base import PaymentGateway
from homebid.integrations.stripe_client import StripeClient

logger = get_logger("escrow.service")

T = EscrowTransactionType
Op = EscrowOperation

OnRecord = Callable[[EscrowAccount], Awaitable[None]]


def change_order_charge_key(contract_id: uuid.UUID, change_order_id: uuid.UUID, declined_charges: int) -> str:
    """Stable across timeouts. Only a definite decline moves to a fresh key."""
    key = f"{contract_id}:change_order:{change_order_id}"
    return f"{key}:{declined_charges}" if declined_charges else key


class EscrowService:
    def __init__(self, gateway: PaymentGateway | None = None):
        self.gateway = gateway or StripeClient()

    # ------------------------------------------------------------------
    # Loading and appending
    # ------------------------------------------------------------------

    async def get_account(
        self, contract_id: uuid.UUID, db: AsyncSession, for_update: bool = False
    ) -> EscrowAccount:
        query = select(EscrowAccount).where(
            EscrowAccount.contract_id == contract_id,
            EscrowAccount.is_deleted.is_(False),
        )
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        account = result.scalar_one_or_none()
        if not account:
            raise NotFoundError("Escrow account", str(contract_id))
        return account

    def _append(
        self,
        db: AsyncSession,
        account: EscrowAccount,
        kind: EscrowTransactionType,
        idempotency_key: str,
        amount: Decimal = ZERO,
        party: LedgerParty | None = None,
        gateway_ref: str | None = None,
        description: str | None = None,
    ) -> EscrowTransaction:
        direction = DIRECTIONS[kind]
        amount = to_money(amount)
        if direction == TransactionDirection.OUT:
            check_outbound(account.transactions, account.total_amount, amount)

        sequence = max((t.sequence for t in account.transactions), default=0) + 1
        txn = EscrowTransaction(
            escrow_id=account.id,
            sequence=sequence,
            kind=kind.value,
            direction=direction.value,
            amount=amount,
            party=party.value if party else None,
            gateway_ref=gateway_ref,
            idempotency_key=idempotency_key,
            description=description,
        )
        account.transactions.append(txn)
        db.add(txn)
        return txn

    async def _begin(
        self,
        contract_id: uuid.UUID,
        operation: EscrowOperation,
        db: AsyncSession,
        validate: Callable[[EscrowAccount], None] | None = None,
    ) -> EscrowAccount:
        """Check the transition and reserve the account for a gateway call."""
        async with contract_locks.hold(contract_id):
            account = await self.get_account(contract_id, db)
            ensure_allowed(account.status, operation)
            if validate:
                validate(account)
            await escrow_in_flight.reserve(db, contract_id, operation.value)
        return account

    @asynccontextmanager
    async def _recording(self, contract_id: uuid.UUID, db: AsyncSession) -> AsyncIterator[EscrowAccount]:
        """The one section of an operation that row-locks the account and writes."""
        async with contract_locks.hold(contract_id):
            account = await self.get_account(contract_id, db, for_update=True)
            yield account
            await db.flush()

    async def ensure_idle(self, contract_id: uuid.UUID, db: AsyncSession) -> None:
        """Refuse while a fund movement on the contract is between reserve and record."""
        await escrow_in_flight.ensure_idle(db, contract_id)

    async def _parties(self, contract: Contract, db: AsyncSession) -> tuple[User, User]:
        homeowner = await db.get(User, contract.homeowner_id)
        contractor = await db.get(User, contract.contractor_id)
        if not homeowner or not contractor:
            raise NotFoundError("User")
        return homeowner, contractor

    # ------------------------------------------------------------------
    # Opening and funding
    # ------------------------------------------------------------------

    async def create_escrow(self, contract: Contract, db: AsyncSession, caller: Caller) -> EscrowAccount:
        account = EscrowAccount(
            contract_id=contract.id,
            total_amount=contract.amount,
            deposit_amount=contract.deposit_amount,
            final_amount=contract.final_amount,
            platform_fee=contract.platform_fee,
            transactions=[],
        )
        db.add(account)
        await db.flush()

        self._append(db, account, T.ESCROW_OPENED, f"{contract.id}:escrow_opened")
        record_audit(db, "escrow", account.id, "opened", caller, contract_id=contract.id,
                     total_amount=contract.amount)
        await db.flush()
        logger.info("Opened escrow %s for contract %s (total %s)", account.id, contract.id, contract.amount)
        return account

    async def charge_deposit(self, contract: Contract, db: AsyncSession, caller: Caller) -> EscrowAccount:
        account = await self._begin(contract.id, Op.CHARGE_DEPOSIT, db)
        try:
            homeowner, _ = await self._parties(contract, db)
            key = f"{contract.id}:deposit"
            charge_id = await self.gateway.charge(account.deposit_amount, homeowner.payment_customer_ref, key)

            async with self._recording(contract.id, db) as account:
                self._append(
                    db, account, T.DEPOSIT_CHARGED, key,
                    amount=account.deposit_amount,
                    party=LedgerParty.HOMEOWNER,
                    gateway_ref=charge_id,
                    description="Deposit",
                )
                record_audit(db, "escrow", account.id, "deposit_charged", caller, contract_id=contract.id,
                             amount=account.deposit_amount, charge_id=charge_id)
        finally:
            escrow_in_flight.finish(contract.id)

        logger.info("Charged deposit %s for contract %s", account.deposit_amount, contract.id)
        return account

    async def charge_change_order(
        self,
        contract: Contract,
        change_order_id: uuid.UUID,
        amount: Decimal,
        declined_charges: int,
        db: AsyncSession,
        caller: Caller,
        on_record: OnRecord | None = None,
    ) -> str:
        """Charge a change-order delta and grow the account totals. Returns the charge id."""
        account = await self._begin(contract.id, Op.CHARGE_CHANGE_ORDER, db)
        try:
            homeowner, _ = await self._parties(contract, db)
            key = change_order_charge_key(contract.id, change_order_id, declined_charges)
            charge_id = await self.gateway.charge(amount, homeowner.payment_customer_ref, key)

            async with self._recording(contract.id, db) as account:
                if on_record:
                    await on_record(account)
                split = compute_split(account.total_amount + amount)
                account.total_amount = split.amount
                account.deposit_amount = split.deposit_amount
                account.final_amount = split.final_amount
                account.platform_fee = split.platform_fee
                self._append(
                    db, account, T.CHANGE_ORDER_CHARGED, key,
                    amount=amount,
                    party=LedgerParty.HOMEOWNER,
                    gateway_ref=charge_id,
                    description=f"Change order {change_order_id}",
                )
                record_audit(db, "escrow", account.id, "change_order_charged", caller, contract_id=contract.id,
                             amount=amount, total_amount=split.amount)
        finally:
            escrow_in_flight.finish(contract.id)

        logger.info("Charged change order %s (%s) on contract %s", change_order_id, amount, contract.id)
        return charge_id

    # ------------------------------------------------------------------
    # Releases
    # ------------------------------------------------------------------

    async def release_deposit(self, contract: Contract, db: AsyncSession, caller: Caller) -> EscrowAccount:
        def validate(account: EscrowAccount) -> None:
            if account.deposit_released_at is not None:
                raise ConflictError("Deposit has already been released")

        account = await self._begin(contract.id, Op.RELEASE_DEPOSIT, db, validate)
        try:
            _, contractor = await self._parties(contract, db)
            payout = account.deposit_amount - account.platform_fee
            key = f"{contract.id}:deposit_payout"
            transfer_id = await self.gateway.transfer(payout, contractor.payout_account_ref, key)

            async with self._recording(contract.id, db) as account:
                self._append(db, account, T.DEPOSIT_PAYOUT, key, amount=payout,
                             party=LedgerParty.CONTRACTOR, gateway_ref=transfer_id)
                self._append(db, account, T.PLATFORM_FEE, f"{contract.id}:deposit_fee",
                             amount=account.platform_fee, party=LedgerParty.PLATFORM,
                             description="Platform fee on deposit")
                account.deposit_released_at = utcnow()
                record_audit(db, "escrow", account.id, "deposit_released", caller, contract_id=contract.id,
                             payout=payout, fee=account.platform_fee)
        finally:
            escrow_in_flight.finish(contract.id)

        logger.info("Released deposit %s to contractor on contract %s", payout, contract.id)
        return account

    async def release_final_payment(
        self,
        contract: Contract,
        db: AsyncSession,
        caller: Caller,
        on_record: OnRecord | None = None,
    ) -> EscrowAccount:
        """Charge whatever is still owed, then pay the contractor and book the fee together."""

        def validate(account: EscrowAccount) -> None:
            if account.status == EscrowStatus.HELD_FOR_ARBITRATION and not caller.is_arbiter:
                raise PermissionDeniedError("Only an arbiter can release funds held for arbitration")

        account = await self._begin(contract.id, Op.RELEASE_FINAL, db, validate)
        try:
            homeowner, contractor = await self._parties(contract, db)
            final_due = account.total_amount - total_in(account.transactions)
            charge_key = f"{contract.id}:final_charge"
            charge_id = None
            if final_due > ZERO:
                charge_id = await self.gateway.charge(final_due, homeowner.payment_customer_ref, charge_key)

            fee_due = max(
                to_money(account.total_amount * settings.PLATFORM_FEE_FRACTION) - fees_collected(account.transactions),
                ZERO,
            )
            payout = account.total_amount - total_out(account.transactions) - fee_due
            payout_key = f"{contract.id}:final_payout"
            transfer_id = await self.gateway.transfer(payout, contractor.payout_account_ref, payout_key)

            async with self._recording(contract.id, db) as account:
                if on_record:
                    await on_record(account)
                if charge_id is not None:
                    self._append(db, account, T.FINAL_CHARGED, charge_key, amount=final_due,
                                 party=LedgerParty.HOMEOWNER, gateway_ref=charge_id,
                                 description="Final payment")
                self._append(db, account, T.CONTRACTOR_PAYOUT, payout_key, amount=payout,
                             party=LedgerParty.CONTRACTOR, gateway_ref=transfer_id)
                self._append(db, account, T.PLATFORM_FEE, f"{contract.id}:final_fee", amount=fee_due,
                             party=LedgerParty.PLATFORM, description="Platform fee")
                account.final_released_at = utcnow()
                record_audit(db, "escrow", account.id, "released", caller, contract_id=contract.id,
                             payout=payout, fee=fee_due, final_charged=final_due)
        finally:
            escrow_in_flight.finish(contract.id)

        logger.info("Released escrow for contract %s: payout %s, fee %s", contract.id, payout, fee_due)
        return account

    # ------------------------------------------------------------------
    # Holds
    # ------------------------------------------------------------------

    async def hold_in_dispute(
        self,
        contract: Contract,
        db: AsyncSession,
        caller: Caller,
        on_record: OnRecord | None = None,
    ) -> EscrowAccount:
        async with self._recording(contract.id, db) as account:
            if account.status == EscrowStatus.DISPUTED:
                if on_record:
                    await on_record(account)
                logger.info("Escrow for contract %s already disputed", contract.id)
                return account

            await escrow_in_flight.ensure_idle(db, contract.id)
            ensure_allowed(account.status, Op.HOLD_DISPUTE)
            if on_record:
                await on_record(account)
            txn = self._append(db, account, T.DISPUTE_HOLD,
                               f"{contract.id}:dispute_hold:{len(account.transactions) + 1}")
            account.rework_deadline = None
            record_audit(db, "escrow", account.id, "dispute_hold", caller, contract_id=contract.id,
                         sequence=txn.sequence)

        logger.info("Escrow for contract %s held in dispute", contract.id)
        return account

    async def hold_for_rework(
        self,
        contract: Contract,
        db: AsyncSession,
        caller: Caller,
        now: datetime | None = None,
        on_record: OnRecord | None = None,
    ) -> EscrowAccount:
        now = now or utcnow()
        async with self._recording(contract.id, db) as account:
            await escrow_in_flight.ensure_idle(db, contract.id)
            ensure_allowed(account.status, Op.HOLD_REWORK)
            if on_record:
                await on_record(account)
            self._append(db, account, T.REWORK_HOLD,
                         f"{contract.id}:rework_hold:{len(account.transactions) + 1}")
            account.rework_deadline = now + timedelta(days=settings.REWORK_WINDOW_DAYS)
            record_audit(db, "escrow", account.id, "rework_hold", caller, contract_id=contract.id,
                         rework_deadline=account.rework_deadline)

        logger.info("Escrow for contract %s held for rework until %s", contract.id, account.rework_deadline)
        return account

    async def hold_for_arbitration(
        self,
        contract: Contract,
        db: AsyncSession,
        caller: Caller,
        now: datetime | None = None,
        on_record: OnRecord | None = None,
    ) -> EscrowAccount:
        async with self._recording(contract.id, db) as account:
            await escrow_in_flight.ensure_idle(db, contract.id)
            ensure_allowed(account.status, Op.HOLD_ARBITRATION)
            if on_record:
                await on_record(account)
            self._append(db, account, T.ARBITRATION_HOLD,
                         f"{contract.id}:arbitration_hold:{len(account.transactions) + 1}")
            account.arbitration_started_at = now or utcnow()
            account.rework_deadline = None
            record_audit(db, "escrow", account.id, "arbitration_hold", caller, contract_id=contract.id)

        logger.info("Escrow for contract %s held for arbitration", contract.id)
        return account

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def _refund_legs(
        self, contract: Contract, account: EscrowAccount, amount: Decimal, key_prefix: str
    ) -> list[tuple[int, Decimal, str, str]]:
        legs = []
        for charge, portion in allocate_refund(account.transactions, amount):
            key = f"{contract.id}:{key_prefix}:{charge.sequence}"
            refund_id = await self.gateway.refund(charge.gateway_ref, portion, key)
            legs.append((charge.sequence, portion, refund_id, key))
        return legs

    async def refund_to_homeowner(
        self,
        contract: Contract,
        db: AsyncSession,
        caller: Caller,
        on_record: OnRecord | None = None,
    ) -> EscrowAccount:
        account = await self._begin(contract.id, Op.REFUND, db)
        try:
            amount = account.held_amount
            legs = await self._refund_legs(contract, account, amount, "refund")

            async with self._recording(contract.id, db) as account:
                if on_record:
                    await on_record(account)
                if not legs:
                    self._append(db, account, T.HOMEOWNER_REFUND, f"{contract.id}:refund",
                                 party=LedgerParty.HOMEOWNER, description="Nothing held to refund")
                for sequence, portion, refund_id, key in legs:
                    self._append(db, account, T.HOMEOWNER_REFUND, key, amount=portion,
                                 party=LedgerParty.HOMEOWNER, gateway_ref=refund_id,
                                 description=f"Refund of transaction #{sequence}")
                record_audit(db, "escrow", account.id, "refunded", caller, contract_id=contract.id, amount=amount)
        finally:
            escrow_in_flight.finish(contract.id)

        logger.info("Refunded %s to homeowner on contract %s", amount, contract.id)
        return account

    async def partial_refund(
        self,
        contract: Contract,
        contractor_payout: Decimal,
        homeowner_refund: Decimal,
        db: AsyncSession,
        caller: Caller,
        on_record: OnRecord | None = None,
    ) -> EscrowAccount:
        contractor_payout = to_money(contractor_payout)
        homeowner_refund = to_money(homeowner_refund)

        def validate(account: EscrowAccount) -> None:
            if contractor_payout < ZERO or homeowner_refund < ZERO:
                raise BadRequestError("Partial refund amounts cannot be negative")
            held = account.held_amount
            if contractor_payout + homeowner_refund != held:
                raise BadRequestError(
                    f"Contractor payout {contractor_payout} and homeowner refund {homeowner_refund} "
                    f"must sum to the held amount {held}"
                )

        account = await self._begin(contract.id, Op.PARTIAL_REFUND, db, validate)
        try:
            _, contractor = await self._parties(contract, db)
            payout_key = f"{contract.id}:partial_payout"
            transfer_id = None
            if contractor_payout > ZERO:
                transfer_id = await self.gateway.transfer(contractor_payout, contractor.payout_account_ref, payout_key)
            legs = await self._refund_legs(contract, account, homeowner_refund, "partial_refund")

            async with self._recording(contract.id, db) as account:
                if on_record:
                    await on_record(account)
                self._append(db, account, T.PARTIAL_PAYOUT, payout_key, amount=contractor_payout,
                             party=LedgerParty.CONTRACTOR, gateway_ref=transfer_id)
                if not legs:
                    self._append(db, account, T.PARTIAL_REFUND, f"{contract.id}:partial_refund",
                                 party=LedgerParty.HOMEOWNER)
                for sequence, portion, refund_id, key in legs:
                    self._append(db, account, T.PARTIAL_REFUND, key, amount=portion,
                                 party=LedgerParty.HOMEOWNER, gateway_ref=refund_id,
                                 description=f"Refund of transaction #{sequence}")
                record_audit(db, "escrow", account.id, "partial_refund", caller, contract_id=contract.id,
                             contractor_payout=contractor_payout, homeowner_refund=homeowner_refund)
        finally:
            escrow_in_flight.finish(contract.id)

        logger.info(
            "Split escrow on contract %s: %s to contractor, %s to homeowner",
            contract.id, contractor_payout, homeowner_refund,
        )
        return account
