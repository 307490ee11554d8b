"""Completion evidence and homeowner review."""

from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from homebid.api.deps import get_caller, get_db, get_escrow_service, require_role
from homebid.common.enums import UserRole
from homebid.core.caller import Caller
from homebid.core.completions.service import CompletionService
from homebid.core.escrow.service import EscrowService
from homebid.db.models.completion import JobCompletion

router = APIRouter(tags=["Completions"])


# ---------- Schemas ----------

class Geolocation(BaseModel):
    lat: float
    lng: float


class CompletionCreate(BaseModel):
    photos: list[str]
    videos: list[str] = []
    notes: str | None = None
    geolocation: Geolocation | None = None


class CompletionReview(BaseModel):
    approved: bool
    rating: int | None = Field(default=None, ge=1, le=5)
    feedback: str | None = None


class CompletionResponse(BaseModel):
    id: uuid.UUID
    contract_id: uuid.UUID
    submitted_by_id: uuid.UUID
    photos: list[str]
    videos: list[str]
    notes: str | None
    geolocation: dict | None
    status: str
    dispute_window_expiry: datetime
    rating: int | None
    feedback: str | None
    reviewed_at: datetime | None


# ---------- Endpoints ----------

@router.post("/contracts/{contract_id}/completions", response_model=CompletionResponse, status_code=201)
async def submit_completion(
    contract_id: uuid.UUID,
    body: CompletionCreate,
    caller: Caller = Depends(require_role(UserRole.CONTRACTOR)),
    db: AsyncSession = Depends(get_db),
):
    completion = await CompletionService().submit_completion(
        contract_id, caller, body.photos, db,
        videos=body.videos,
        notes=body.notes,
        geolocation=body.geolocation.model_dump() if body.geolocation else None,
    )
    return _completion_response(completion)


@router.get("/completions/{completion_id}", response_model=CompletionResponse)
async def get_completion(
    completion_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    completion = await CompletionService().get_completion_for(completion_id, caller, db)
    return _completion_response(completion)


@router.post("/completions/{completion_id}/review", response_model=CompletionResponse)
async def review_completion(
    completion_id: uuid.UUID,
    body: CompletionReview,
    caller: Caller = Depends(require_role(UserRole.HOMEOWNER)),
    escrow: EscrowService = Depends(get_escrow_service),
    db: AsyncSession = Depends(get_db),
):
    completion = await CompletionService(escrow).approve_completion(
        completion_id, caller, body.approved, db, rating=body.rating, feedback=body.feedback
    )
    return _completion_response(completion)


def _completion_response(c: JobCompletion) -> CompletionResponse:
    return CompletionResponse(
        id=c.id, contract_id=c.contract_id, submitted_by_id=c.submitted_by_id,
        photos=c.photos or [], videos=c.videos or [], notes=c.notes,
        geolocation=c.geolocation, status=c.status,
        dispute_window_expiry=c.dispute_window_expiry,
        rating=c.rating, feedback=c.feedback, reviewed_at=c.reviewed_at,
    )
