import uuid
from decimal import Decimal

from sqlalchemy import ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from homebid.common.enums import BidStatus
from homebid.db.base import BaseModel


class Bid(BaseModel):
    __tablename__ = "bids"
    __table_args__ = (UniqueConstraint("job_id", "contractor_id", name="uq_bids_job_contractor"),)

    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("jobs.id"), nullable=False, index=True
    )
    contractor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    timeline: Mapped[str] = mapped_column(String(255), nullable=False)
    proposal: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[BidStatus] = mapped_column(String(20), nullable=False, default=BidStatus.SUBMITTED)

    # Reputation at submission time; never refreshed
    contractor_rating_snapshot: Mapped[Decimal] = mapped_column(
        Numeric(3, 2), nullable=False, default=Decimal("0.00")
    )
    contractor_reviews_snapshot: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
