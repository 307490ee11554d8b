"""Dispute intake, mediation messages and resolution."""

from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from homebid.api.deps import get_caller, get_db, get_escrow_service, require_role
from homebid.common.enums import ResolutionPath, UserRole
from homebid.core.caller import Caller
from homebid.core.disputes.service import DisputeService
from homebid.core.escrow.service import EscrowService
from homebid.db.models.dispute import Dispute

router = APIRouter(tags=["Disputes"])


# ---------- Schemas ----------

class DisputeCreateRequest(BaseModel):
    reason: str
    description: str | None = None
    evidence_urls: list[str] = []


class DisputeMessageRequest(BaseModel):
    message: str


class DisputeResolveRequest(BaseModel):
    path: ResolutionPath
    reasoning: str
    partial_refund_percentage: int | None = Field(default=None, ge=0, le=100)


class DisputeMessage(BaseModel):
    author_id: str
    role: str | None
    body: str
    at: str


class DisputeResponse(BaseModel):
    id: uuid.UUID
    completion_id: uuid.UUID
    contract_id: uuid.UUID
    homeowner_id: uuid.UUID
    contractor_id: uuid.UUID
    reason: str
    description: str | None
    evidence_urls: list[str]
    status: str
    mediation_deadline: datetime
    messages: list[DisputeMessage]
    resolution_path: str | None
    resolution_reasoning: str | None
    partial_refund_percentage: int | None
    mediator_id: str | None
    escalated_at: datetime | None
    resolved_at: datetime | None


# ---------- Endpoints ----------

@router.post("/completions/{completion_id}/disputes", response_model=DisputeResponse, status_code=201)
async def initiate_dispute(
    completion_id: uuid.UUID,
    body: DisputeCreateRequest,
    caller: Caller = Depends(require_role(UserRole.HOMEOWNER)),
    escrow: EscrowService = Depends(get_escrow_service),
    db: AsyncSession = Depends(get_db),
):
    dispute = await DisputeService(escrow).initiate_dispute(
        completion_id, caller, body.reason, db,
        description=body.description, evidence_urls=body.evidence_urls,
    )
    return _dispute_response(dispute)


@router.get("/disputes/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(
    dispute_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    dispute = await DisputeService().get_dispute_for(dispute_id, caller, db)
    return _dispute_response(dispute)


@router.post("/disputes/{dispute_id}/responses", response_model=DisputeResponse)
async def respond_to_dispute(
    dispute_id: uuid.UUID,
    body: DisputeMessageRequest,
    caller: Caller = Depends(require_role(UserRole.CONTRACTOR)),
    db: AsyncSession = Depends(get_db),
):
    dispute = await DisputeService().submit_dispute_response(dispute_id, caller, body.message, db)
    return _dispute_response(dispute)


@router.post("/disputes/{dispute_id}/messages", response_model=DisputeResponse)
async def add_message(
    dispute_id: uuid.UUID,
    body: DisputeMessageRequest,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    dispute = await DisputeService().add_dispute_message(dispute_id, caller, body.message, db)
    return _dispute_response(dispute)


@router.post("/disputes/{dispute_id}/resolve", response_model=DisputeResponse)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    body: DisputeResolveRequest,
    caller: Caller = Depends(require_role(UserRole.MEDIATOR, UserRole.ADMIN)),
    escrow: EscrowService = Depends(get_escrow_service),
    db: AsyncSession = Depends(get_db),
):
    dispute = await DisputeService(escrow).resolve_dispute(
        dispute_id, caller, body.path.value, body.reasoning, db,
        partial_refund_percentage=body.partial_refund_percentage,
    )
    return _dispute_response(dispute)


def _dispute_response(d: Dispute) -> DisputeResponse:
    return DisputeResponse(
        id=d.id, completion_id=d.completion_id, contract_id=d.contract_id,
        homeowner_id=d.homeowner_id, contractor_id=d.contractor_id,
        reason=d.reason, description=d.description, evidence_urls=d.evidence_urls or [],
        status=d.status, mediation_deadline=d.mediation_deadline,
        messages=[DisputeMessage(**m) for m in d.messages or []],
        resolution_path=d.resolution_path, resolution_reasoning=d.resolution_reasoning,
        partial_refund_percentage=d.partial_refund_percentage, mediator_id=d.mediator_id,
        escalated_at=d.escalated_at, resolved_at=d.resolved_at,
    )
