"""Deposit/final split and platform fee arithmetic.

The fee is levied on the deposit leg at acceptance (``platform_fee``) and
on the full amount overall (``total_fee``); ``contractor_net`` is what the
contractor receives across every release.
"""

from decimal import Decimal

from pydantic import BaseModel

from homebid.common.money import to_money
from homebid.config import settings


class FeeSplit(BaseModel):
    amount: Decimal
    deposit_amount: Decimal
    final_amount: Decimal
    platform_fee: Decimal
    total_fee: Decimal
    contractor_net: Decimal

    model_config = {"frozen": True}


def compute_split(
    amount: Decimal,
    deposit_fraction: Decimal | None = None,
    fee_fraction: Decimal | None = None,
) -> FeeSplit:
    deposit_fraction = settings.DEPOSIT_FRACTION if deposit_fraction is None else deposit_fraction
    fee_fraction = settings.PLATFORM_FEE_FRACTION if fee_fraction is None else fee_fraction

    amount = to_money(amount)
    deposit = to_money(amount * deposit_fraction)
    total_fee = to_money(amount * fee_fraction)
    return FeeSplit(
        amount=amount,
        deposit_amount=deposit,
        # remainder, so deposit + final is exactly the amount
        final_amount=amount - deposit,
        platform_fee=to_money(deposit * fee_fraction),
        total_fee=total_fee,
        contractor_net=amount - total_fee,
    )
