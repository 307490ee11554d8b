import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from homebid.common.enums import EscrowStatus, LedgerParty, TransactionDirection
from homebid.core.escrow.ledger import derive_status, held_amount
from homebid.db.base import BaseModel, LedgerModel


class EscrowAccount(BaseModel):
    __tablename__ = "escrow_accounts"

    contract_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("contracts.id"), nullable=False, unique=True
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    deposit_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    final_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    rework_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    arbitration_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deposit_released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    final_released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    transactions: Mapped[list["EscrowTransaction"]] = relationship(
        back_populates="escrow",
        order_by="EscrowTransaction.sequence",
        lazy="selectin",
    )

    @property
    def status(self) -> EscrowStatus:
        return derive_status(self.transactions)

    @property
    def held_amount(self) -> Decimal:
        return held_amount(self.transactions)


class EscrowTransaction(LedgerModel):
    __tablename__ = "escrow_transactions"
    __table_args__ = (UniqueConstraint("escrow_id", "sequence", name="uq_escrow_transactions_sequence"),)

    escrow_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("escrow_accounts.id"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    direction: Mapped[TransactionDirection] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    party: Mapped[LedgerParty | None] = mapped_column(String(20), nullable=True)
    gateway_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    escrow: Mapped[EscrowAccount] = relationship(back_populates="transactions")
