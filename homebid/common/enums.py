import enum


class UserRole(str, enum.Enum):
    HOMEOWNER = "homeowner"
    CONTRACTOR = "contractor"
    MEDIATOR = "mediator"
    ADMIN = "admin"


class JobStatus(str, enum.Enum):
    OPEN = "open"
    CONTRACTED = "contracted"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BidStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class ContractStatus(str, enum.Enum):
    ACTIVE = "active"
    PENDING_APPROVAL = "pending_approval"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ChangeOrderStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAYMENT_FAILED = "payment_failed"


class EscrowStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DISPUTED = "disputed"
    HELD_FOR_REWORK = "held_for_rework"
    HELD_FOR_ARBITRATION = "held_for_arbitration"
    RELEASED = "released"
    REFUNDED = "refunded"
    PARTIAL_REFUND = "partial_refund"


class EscrowTransactionType(str, enum.Enum):
    ESCROW_OPENED = "escrow_opened"
    DEPOSIT_CHARGED = "deposit_charged"
    CHANGE_ORDER_CHARGED = "change_order_charged"
    FINAL_CHARGED = "final_charged"
    DEPOSIT_PAYOUT = "deposit_payout"
    CONTRACTOR_PAYOUT = "contractor_payout"
    PLATFORM_FEE = "platform_fee"
    DISPUTE_HOLD = "dispute_hold"
    REWORK_HOLD = "rework_hold"
    ARBITRATION_HOLD = "arbitration_hold"
    HOMEOWNER_REFUND = "homeowner_refund"
    PARTIAL_PAYOUT = "partial_payout"
    PARTIAL_REFUND = "partial_refund"


class TransactionDirection(str, enum.Enum):
    IN = "in"
    OUT = "out"
    NONE = "none"


class LedgerParty(str, enum.Enum):
    HOMEOWNER = "homeowner"
    CONTRACTOR = "contractor"
    PLATFORM = "platform"


class CompletionStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISPUTED = "disputed"


class DisputeStatus(str, enum.Enum):
    PENDING = "pending"
    MEDIATION = "mediation"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class ResolutionPath(str, enum.Enum):
    REFUND = "refund"
    REWORK = "rework"
    PARTIAL_REFUND = "partial_refund"
    ARBITRATION = "arbitration"


class NotificationType(str, enum.Enum):
    BID_SUBMITTED = "bid_submitted"
    BID_ACCEPTED = "bid_accepted"
    BID_REJECTED = "bid_rejected"
    BID_WITHDRAWN = "bid_withdrawn"
    CHANGE_ORDER_REQUESTED = "change_order_requested"
    CHANGE_ORDER_APPROVED = "change_order_approved"
    CHANGE_ORDER_PAYMENT_FAILED = "change_order_payment_failed"
    COMPLETION_SUBMITTED = "completion_submitted"
    COMPLETION_APPROVED = "completion_approved"
    COMPLETION_REJECTED = "completion_rejected"
    PAYMENT_RELEASED = "payment_released"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESPONSE = "dispute_response"
    DISPUTE_ESCALATED = "dispute_escalated"
    DISPUTE_RESOLVED = "dispute_resolved"
    REWORK_EXPIRED = "rework_expired"


class ArbitrationOutcome(str, enum.Enum):
    RELEASE = "release"
    REFUND = "refund"
    SPLIT = "split"
