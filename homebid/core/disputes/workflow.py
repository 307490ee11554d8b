"""Dispute mediation rules: deadlines, escalation and resolution checks.

Nothing here touches the database or the clock; callers pass ``now`` so
a scheduler (or a test) decides when time has moved on.
"""

from datetime import datetime, timedelta
from decimal import Decimal

from homebid.common.clock import as_utc
from homebid.common.enums import DisputeStatus, ResolutionPath
from homebid.common.exceptions import BadRequestError
from homebid.common.money import to_money
from homebid.config import settings
from homebid.core.disputes.schemas import EscalationRule, PartialSplit, ResolutionPlan

RESPONDABLE_STATUSES = frozenset({DisputeStatus.PENDING.value, DisputeStatus.MEDIATION.value})
RESOLVABLE_STATUSES = frozenset({
    DisputeStatus.PENDING.value,
    DisputeStatus.MEDIATION.value,
    DisputeStatus.ESCALATED.value,
})

# Unresolved disputes escalate once the mediation window closes.
ESCALATION_RULES = [
    EscalationRule(
        from_status=DisputeStatus.PENDING.value,
        to_status=DisputeStatus.ESCALATED.value,
        notification_message="The contractor did not respond before the mediation deadline. Escalating.",
    ),
    EscalationRule(
        from_status=DisputeStatus.MEDIATION.value,
        to_status=DisputeStatus.ESCALATED.value,
        notification_message="Mediation was not resolved before the deadline. Escalating.",
    ),
]


def mediation_deadline_from(opened_at: datetime) -> datetime:
    return opened_at + timedelta(hours=settings.MEDIATION_WINDOW_HOURS)


def is_mediation_deadline_passed(dispute, now: datetime) -> bool:
    return as_utc(now) > as_utc(dispute.mediation_deadline)


def check_escalation_needed(dispute, now: datetime) -> EscalationRule | None:
    if not is_mediation_deadline_passed(dispute, now):
        return None
    for rule in ESCALATION_RULES:
        if rule.from_status == dispute.status:
            return rule
    return None


def validate_reason(reason: str) -> str:
    reason = (reason or "").strip()
    if len(reason) < settings.DISPUTE_REASON_MIN_LENGTH:
        raise BadRequestError(
            f"Dispute reason must be at least {settings.DISPUTE_REASON_MIN_LENGTH} characters"
        )
    if len(reason) > settings.DISPUTE_REASON_MAX_LENGTH:
        raise BadRequestError(
            f"Dispute reason must be at most {settings.DISPUTE_REASON_MAX_LENGTH} characters"
        )
    return reason


def validate_resolution(path: str, partial_refund_percentage: int | None) -> ResolutionPlan:
    try:
        resolution_path = ResolutionPath(path)
    except ValueError as e:
        allowed = ", ".join(p.value for p in ResolutionPath)
        raise BadRequestError(f"Resolution path must be one of: {allowed}") from e

    if resolution_path == ResolutionPath.PARTIAL_REFUND:
        if partial_refund_percentage is None:
            raise BadRequestError("Partial refund requires a refund percentage")
        if not 0 <= partial_refund_percentage <= 100:
            raise BadRequestError("Partial refund percentage must be between 0 and 100")
        return ResolutionPlan(path=resolution_path, partial_refund_percentage=partial_refund_percentage)

    return ResolutionPlan(path=resolution_path)


def split_partial_refund(held: Decimal, homeowner_percentage: int) -> PartialSplit:
    """The percentage is the homeowner's share; the contractor gets the remainder."""
    held = to_money(held)
    refund = to_money(held * Decimal(homeowner_percentage) / Decimal(100))
    return PartialSplit(contractor_payout=held - refund, homeowner_refund=refund)
