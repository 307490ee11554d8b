from decimal import Decimal

from sqlalchemy import Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from homebid.common.enums import UserRole
from homebid.db.base import BaseModel


class User(BaseModel):
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(String(20), nullable=False, default=UserRole.HOMEOWNER)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    # Contractor reputation, recomputed from reviews
    average_rating: Mapped[Decimal] = mapped_column(Numeric(3, 2), nullable=False, default=Decimal("0.00"))
    total_reviews: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Payment gateway references
    payment_customer_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payout_account_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
