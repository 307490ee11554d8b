"""Blind bidding: who may see which bids on a job.

The caller is resolved once into one of four viewer contexts, and the
visible set is then decided by dispatching on that context.
"""

import uuid

from homebid.common.exceptions import BlindBiddingViolation
from homebid.core.bids.schemas import Arbiter, Bidder, JobOwner, Other, ViewerContext
from homebid.core.caller import Caller


def resolve_viewer(caller: Caller, job_poster_id: uuid.UUID, bidder_ids: set[uuid.UUID]) -> ViewerContext:
    if caller.id is not None and caller.id == job_poster_id:
        return JobOwner(user_id=caller.id)
    if caller.is_arbiter:
        return Arbiter(user_id=caller.id)
    if caller.id in bidder_ids:
        return Bidder(contractor_id=caller.id)
    return Other(user_id=caller.id)


def visible_bids(viewer: ViewerContext, bids: list) -> list:
    if isinstance(viewer, (JobOwner, Arbiter)):
        return list(bids)
    if isinstance(viewer, Bidder):
        return [b for b in bids if b.contractor_id == viewer.contractor_id]
    if isinstance(viewer, Other):
        raise BlindBiddingViolation()
    raise TypeError(f"Unknown viewer context: {viewer!r}")
