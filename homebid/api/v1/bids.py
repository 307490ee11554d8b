"""Blind bidding on open jobs and bid acceptance."""

from __future__ import annotations

import uuid
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from homebid.api.deps import get_caller, get_db, get_escrow_service, require_role
from homebid.api.v1.contracts import ContractResponse, _contract_response
from homebid.common.enums import UserRole
from homebid.core.bids.service import BidService
from homebid.core.caller import Caller
from homebid.core.contracts.service import ContractService
from homebid.core.escrow.service import EscrowService
from homebid.db.models.bid import Bid

router = APIRouter(tags=["Bids"])


# ---------- Schemas ----------

class BidCreate(BaseModel):
    amount: Decimal
    timeline: str = Field(min_length=1, max_length=255)
    proposal: str = Field(min_length=1)


class BidResponse(BaseModel):
    id: uuid.UUID
    job_id: uuid.UUID
    contractor_id: uuid.UUID
    amount: Decimal
    timeline: str
    proposal: str
    status: str
    contractor_rating_snapshot: Decimal | None
    contractor_reviews_snapshot: int
    model_config = {"from_attributes": True}


class BidListResponse(BaseModel):
    bids: list[BidResponse]
    total: int


# ---------- Endpoints ----------

@router.post("/jobs/{job_id}/bids", response_model=BidResponse, status_code=201)
async def submit_bid(
    job_id: uuid.UUID,
    body: BidCreate,
    caller: Caller = Depends(require_role(UserRole.CONTRACTOR)),
    db: AsyncSession = Depends(get_db),
):
    bid = await BidService().submit_bid(caller, job_id, body.amount, body.timeline, body.proposal, db)
    return _bid_response(bid)


@router.get("/jobs/{job_id}/bids", response_model=BidListResponse)
async def list_bids(
    job_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    bids = await BidService().list_visible_bids(job_id, caller, db)
    return BidListResponse(bids=[_bid_response(b) for b in bids], total=len(bids))


@router.post("/bids/{bid_id}/withdraw", response_model=BidResponse)
async def withdraw_bid(
    bid_id: uuid.UUID,
    caller: Caller = Depends(require_role(UserRole.CONTRACTOR)),
    db: AsyncSession = Depends(get_db),
):
    bid = await BidService().withdraw_bid(bid_id, caller, db)
    return _bid_response(bid)


@router.post("/bids/{bid_id}/accept", response_model=ContractResponse, status_code=201)
async def accept_bid(
    bid_id: uuid.UUID,
    caller: Caller = Depends(require_role(UserRole.HOMEOWNER)),
    escrow: EscrowService = Depends(get_escrow_service),
    db: AsyncSession = Depends(get_db),
):
    contract = await ContractService(escrow).accept_bid(bid_id, caller, db)
    return _contract_response(contract)


def _bid_response(bid: Bid) -> BidResponse:
    return BidResponse(
        id=bid.id, job_id=bid.job_id, contractor_id=bid.contractor_id,
        amount=bid.amount, timeline=bid.timeline, proposal=bid.proposal,
        status=bid.status, contractor_rating_snapshot=bid.contractor_rating_snapshot,
        contractor_reviews_snapshot=bid.contractor_reviews_snapshot or 0,
    )
