from decimal import Decimal

from pydantic import BaseModel

from homebid.common.enums import ResolutionPath


class EscalationRule(BaseModel):
    from_status: str
    to_status: str
    notification_message: str


class ResolutionPlan(BaseModel):
    path: ResolutionPath
    partial_refund_percentage: int | None = None


class PartialSplit(BaseModel):
    contractor_payout: Decimal
    homeowner_refund: Decimal
