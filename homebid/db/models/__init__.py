from homebid.db.models.audit import AuditLog
from homebid.db.models.bid import Bid
from homebid.db.models.change_order import ChangeOrder
from homebid.db.models.completion import JobCompletion, Review
from homebid.db.models.contract import Contract
from homebid.db.models.dispute import Dispute
from homebid.db.models.escrow import EscrowAccount, EscrowTransaction
from homebid.db.models.job import Job
from homebid.db.models.notification import Notification
from homebid.db.models.user import User

__all__ = [
    "AuditLog",
    "Bid",
    "ChangeOrder",
    "Contract",
    "Dispute",
    "EscrowAccount",
    "EscrowTransaction",
    "Job",
    "JobCompletion",
    "Notification",
    "Review",
    "User",
]
