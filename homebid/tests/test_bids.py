from decimal import Decimal

import pytest

from homebid.common.enums import BidStatus, JobStatus, NotificationType
from homebid.common.exceptions import (
    AmountBelowMinimumError,
    BadRequestError,
    BlindBiddingViolation,
    ConflictError,
    DuplicateBidError,
    JobNotOpenError,
    PermissionDeniedError,
)
from homebid.core.caller import Caller


@pytest.mark.asyncio
async def test_submit_bid_snapshots_reputation(db_session, bid_service, job, contractor, notifications):
    contractor.average_rating = Decimal("4.50")
    contractor.total_reviews = 2
    await db_session.flush()

    bid = await bid_service.submit_bid(
        Caller.of(contractor), job.id, Decimal("480"), "10 days", "Subway tile, grout included", db_session
    )
    assert bid.status == BidStatus.SUBMITTED.value
    assert bid.amount == Decimal("480.00")
    assert bid.contractor_rating_snapshot == Decimal("4.50")
    assert bid.contractor_reviews_snapshot == 2

    # Later rating changes do not touch the snapshot
    contractor.average_rating = Decimal("1.00")
    await db_session.flush()
    assert bid.contractor_rating_snapshot == Decimal("4.50")

    args = notifications.call_args.args
    assert args[1] == NotificationType.BID_SUBMITTED.value


@pytest.mark.asyncio
async def test_second_bid_on_same_job_conflicts(db_session, bid_service, job, contractor):
    caller = Caller.of(contractor)
    await bid_service.submit_bid(caller, job.id, Decimal("500"), "2 weeks", "First", db_session)
    with pytest.raises(DuplicateBidError) as exc:
        await bid_service.submit_bid(caller, job.id, Decimal("450"), "1 week", "Second", db_session)
    assert isinstance(exc.value, ConflictError)
    assert "already bid" in exc.value.detail


@pytest.mark.asyncio
async def test_bid_below_minimum_rejected(db_session, bid_service, job, contractor):
    with pytest.raises(AmountBelowMinimumError) as exc:
        await bid_service.submit_bid(Caller.of(contractor), job.id, Decimal("49.99"), "1 day", "Cheap", db_session)
    assert isinstance(exc.value, BadRequestError)


@pytest.mark.asyncio
async def test_only_contractors_bid(db_session, bid_service, job, homeowner, mediator):
    for user in (homeowner, mediator):
        with pytest.raises(PermissionDeniedError):
            await bid_service.submit_bid(Caller.of(user), job.id, Decimal("500"), "1 week", "x", db_session)


@pytest.mark.asyncio
async def test_bid_on_closed_job_rejected(db_session, bid_service, job, contractor):
    job.status = JobStatus.CONTRACTED.value
    await db_session.flush()
    with pytest.raises(JobNotOpenError):
        await bid_service.submit_bid(Caller.of(contractor), job.id, Decimal("500"), "1 week", "x", db_session)


@pytest.mark.asyncio
async def test_blind_bidding_visibility(db_session, bid_service, job, homeowner, contractor, rival, mediator):
    await bid_service.submit_bid(Caller.of(contractor), job.id, Decimal("500"), "2 weeks", "A", db_session)
    await bid_service.submit_bid(Caller.of(rival), job.id, Decimal("450"), "3 weeks", "B", db_session)

    owner_view = await bid_service.list_visible_bids(job.id, Caller.of(homeowner), db_session)
    assert [b.amount for b in owner_view] == [Decimal("450.00"), Decimal("500.00")]

    arbiter_view = await bid_service.list_visible_bids(job.id, Caller.of(mediator), db_session)
    assert len(arbiter_view) == 2

    bidder_view = await bid_service.list_visible_bids(job.id, Caller.of(contractor), db_session)
    assert [b.contractor_id for b in bidder_view] == [contractor.id]


@pytest.mark.asyncio
async def test_non_bidder_cannot_list_bids(db_session, bid_service, job, contractor, rival):
    await bid_service.submit_bid(Caller.of(contractor), job.id, Decimal("500"), "2 weeks", "A", db_session)
    with pytest.raises(BlindBiddingViolation):
        await bid_service.list_visible_bids(job.id, Caller.of(rival), db_session)


@pytest.mark.asyncio
async def test_withdraw_bid(db_session, bid_service, job, contractor, rival):
    bid = await bid_service.submit_bid(Caller.of(contractor), job.id, Decimal("500"), "2 weeks", "A", db_session)

    with pytest.raises(PermissionDeniedError):
        await bid_service.withdraw_bid(bid.id, Caller.of(rival), db_session)

    withdrawn = await bid_service.withdraw_bid(bid.id, Caller.of(contractor), db_session)
    assert withdrawn.status == BidStatus.WITHDRAWN.value

    with pytest.raises(ConflictError):
        await bid_service.withdraw_bid(bid.id, Caller.of(contractor), db_session)
