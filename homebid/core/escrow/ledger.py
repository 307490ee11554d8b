"""Escrow ledger rules: pure logic over the ordered transaction log.

The account status is never stored. It is replayed from the log, so the
log alone is enough to reconstruct where the money is.
"""

import enum
from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from homebid.common.clock import as_utc
from homebid.common.enums import EscrowStatus, EscrowTransactionType, TransactionDirection
from homebid.common.exceptions import ConflictError
from homebid.common.money import ZERO, to_money

T = EscrowTransactionType


class LedgerEntry(Protocol):
    kind: str
    direction: str
    amount: Decimal
    sequence: int


class EscrowOperation(str, enum.Enum):
    CHARGE_DEPOSIT = "charge_deposit"
    CHARGE_CHANGE_ORDER = "charge_change_order"
    RELEASE_DEPOSIT = "release_deposit"
    RELEASE_FINAL = "release_final"
    HOLD_DISPUTE = "hold_dispute"
    HOLD_REWORK = "hold_rework"
    HOLD_ARBITRATION = "hold_arbitration"
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"


class InvalidEscrowTransitionError(ConflictError):
    def __init__(self, current: str, operation: str):
        self.current = current
        self.operation = operation
        super().__init__(f"Escrow operation '{operation}' not allowed from status '{current}'")


TERMINAL_STATUSES = frozenset({
    EscrowStatus.RELEASED,
    EscrowStatus.REFUNDED,
    EscrowStatus.PARTIAL_REFUND,
})

HOLD_STATUSES = frozenset({
    EscrowStatus.DISPUTED,
    EscrowStatus.HELD_FOR_REWORK,
    EscrowStatus.HELD_FOR_ARBITRATION,
})

DIRECTIONS: dict[EscrowTransactionType, TransactionDirection] = {
    T.ESCROW_OPENED: TransactionDirection.NONE,
    T.DEPOSIT_CHARGED: TransactionDirection.IN,
    T.CHANGE_ORDER_CHARGED: TransactionDirection.IN,
    T.FINAL_CHARGED: TransactionDirection.IN,
    T.DEPOSIT_PAYOUT: TransactionDirection.OUT,
    T.CONTRACTOR_PAYOUT: TransactionDirection.OUT,
    T.PLATFORM_FEE: TransactionDirection.OUT,
    T.DISPUTE_HOLD: TransactionDirection.NONE,
    T.REWORK_HOLD: TransactionDirection.NONE,
    T.ARBITRATION_HOLD: TransactionDirection.NONE,
    T.HOMEOWNER_REFUND: TransactionDirection.OUT,
    T.PARTIAL_PAYOUT: TransactionDirection.OUT,
    T.PARTIAL_REFUND: TransactionDirection.OUT,
}

# Kinds that move the account to a new status; the rest leave it unchanged.
STATUS_EFFECTS: dict[EscrowTransactionType, EscrowStatus] = {
    T.DEPOSIT_CHARGED: EscrowStatus.ACTIVE,
    T.DISPUTE_HOLD: EscrowStatus.DISPUTED,
    T.REWORK_HOLD: EscrowStatus.HELD_FOR_REWORK,
    T.ARBITRATION_HOLD: EscrowStatus.HELD_FOR_ARBITRATION,
    T.CONTRACTOR_PAYOUT: EscrowStatus.RELEASED,
    T.HOMEOWNER_REFUND: EscrowStatus.REFUNDED,
    T.PARTIAL_PAYOUT: EscrowStatus.PARTIAL_REFUND,
    T.PARTIAL_REFUND: EscrowStatus.PARTIAL_REFUND,
}

ALLOWED_FROM: dict[EscrowOperation, frozenset[EscrowStatus]] = {
    EscrowOperation.CHARGE_DEPOSIT: frozenset({EscrowStatus.PENDING}),
    EscrowOperation.CHARGE_CHANGE_ORDER: frozenset({EscrowStatus.ACTIVE}),
    EscrowOperation.RELEASE_DEPOSIT: frozenset({EscrowStatus.ACTIVE}),
    EscrowOperation.RELEASE_FINAL: frozenset({
        EscrowStatus.ACTIVE,
        EscrowStatus.HELD_FOR_REWORK,
        EscrowStatus.HELD_FOR_ARBITRATION,
    }),
    EscrowOperation.HOLD_DISPUTE: frozenset({EscrowStatus.ACTIVE, EscrowStatus.HELD_FOR_REWORK}),
    EscrowOperation.HOLD_REWORK: frozenset({EscrowStatus.DISPUTED}),
    EscrowOperation.HOLD_ARBITRATION: frozenset({EscrowStatus.DISPUTED, EscrowStatus.HELD_FOR_REWORK}),
    EscrowOperation.REFUND: HOLD_STATUSES,
    EscrowOperation.PARTIAL_REFUND: HOLD_STATUSES,
}


def derive_status(transactions: Iterable[LedgerEntry]) -> EscrowStatus:
    status = EscrowStatus.PENDING
    for txn in sorted(transactions, key=lambda t: t.sequence):
        effect = STATUS_EFFECTS.get(EscrowTransactionType(txn.kind))
        if effect is not None:
            status = effect
    return status


def ensure_allowed(status: EscrowStatus, operation: EscrowOperation) -> None:
    if status not in ALLOWED_FROM[operation]:
        raise InvalidEscrowTransitionError(status.value, operation.value)


def total_in(transactions: Iterable[LedgerEntry]) -> Decimal:
    return sum(
        (to_money(t.amount) for t in transactions if t.direction == TransactionDirection.IN.value),
        ZERO,
    )


def total_out(transactions: Iterable[LedgerEntry]) -> Decimal:
    return sum(
        (to_money(t.amount) for t in transactions if t.direction == TransactionDirection.OUT.value),
        ZERO,
    )


def held_amount(transactions: Sequence[LedgerEntry]) -> Decimal:
    return total_in(transactions) - total_out(transactions)


def fees_collected(transactions: Iterable[LedgerEntry]) -> Decimal:
    return sum(
        (to_money(t.amount) for t in transactions if t.kind == T.PLATFORM_FEE.value),
        ZERO,
    )


def inbound_charges(transactions: Iterable[LedgerEntry]) -> list[LedgerEntry]:
    """Inbound charges, newest first: the order refunds are drawn from."""
    charges = [t for t in transactions if t.direction == TransactionDirection.IN.value]
    return sorted(charges, key=lambda t: t.sequence, reverse=True)


def allocate_refund(transactions: Sequence[LedgerEntry], amount: Decimal) -> list[tuple[LedgerEntry, Decimal]]:
    """Split a refund across inbound charges so no charge is refunded past its amount."""
    remaining = to_money(amount)
    legs: list[tuple[LedgerEntry, Decimal]] = []
    for charge in inbound_charges(transactions):
        if remaining <= ZERO:
            break
        portion = min(remaining, to_money(charge.amount))
        legs.append((charge, portion))
        remaining -= portion
    if remaining > ZERO:
        raise ConflictError(f"Refund of {amount} exceeds charged funds")
    return legs


def check_outbound(transactions: Sequence[LedgerEntry], total_amount: Decimal, outgoing: Decimal) -> None:
    """Outbound money may never exceed the account total or the funds on hand."""
    outgoing = to_money(outgoing)
    if total_out(transactions) + outgoing > to_money(total_amount):
        raise ConflictError("Outbound escrow movements would exceed the account total")
    if outgoing > held_amount(transactions):
        raise ConflictError("Outbound escrow movements would exceed the funds held")


def is_rework_deadline_passed(rework_deadline: datetime | None, now: datetime) -> bool:
    if rework_deadline is None:
        return False
    return as_utc(now) > as_utc(rework_deadline)
