"""Contracts, change orders, the escrow ledger view and arbitration."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from homebid.api.deps import get_caller, get_db, get_escrow_service, require_role
from homebid.common.enums import ArbitrationOutcome, ChangeOrderStatus, UserRole
from homebid.core.caller import Caller
from homebid.core.contracts.service import ContractService
from homebid.core.disputes.service import DisputeService
from homebid.core.escrow.service import EscrowService
from homebid.db.models.change_order import ChangeOrder
from homebid.db.models.contract import Contract
from homebid.db.models.escrow import EscrowAccount

router = APIRouter(tags=["Contracts"])


# ---------- Schemas ----------

class ContractResponse(BaseModel):
    id: uuid.UUID
    job_id: uuid.UUID
    bid_id: uuid.UUID
    homeowner_id: uuid.UUID
    contractor_id: uuid.UUID
    amount: Decimal
    deposit_amount: Decimal
    final_amount: Decimal
    platform_fee: Decimal
    contractor_net: Decimal
    status: str
    accepted_at: datetime
    completed_at: datetime | None
    cancelled_at: datetime | None


class ChangeOrderCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1)
    amount: Decimal


class ChangeOrderResponse(BaseModel):
    id: uuid.UUID
    contract_id: uuid.UUID
    requested_by_id: uuid.UUID
    title: str
    description: str
    amount: Decimal
    status: str
    charge_ref: str | None
    charge_attempts: int
    failure_reason: str | None
    approved_at: datetime | None


class EscrowTransactionResponse(BaseModel):
    sequence: int
    kind: str
    direction: str
    amount: Decimal
    party: str | None
    gateway_ref: str | None
    description: str | None


class EscrowResponse(BaseModel):
    id: uuid.UUID
    contract_id: uuid.UUID
    status: str
    total_amount: Decimal
    deposit_amount: Decimal
    final_amount: Decimal
    platform_fee: Decimal
    held_amount: Decimal
    rework_deadline: datetime | None
    arbitration_started_at: datetime | None
    transactions: list[EscrowTransactionResponse]


class ArbitrationSettleRequest(BaseModel):
    outcome: ArbitrationOutcome
    homeowner_percentage: int | None = Field(default=None, ge=0, le=100)


# ---------- Contracts ----------

@router.get("/contracts/{contract_id}", response_model=ContractResponse)
async def get_contract(
    contract_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    contract = await ContractService().get_contract_for(contract_id, caller, db)
    return _contract_response(contract)


@router.get("/contracts/{contract_id}/escrow", response_model=EscrowResponse)
async def get_escrow(
    contract_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    escrow: EscrowService = Depends(get_escrow_service),
    db: AsyncSession = Depends(get_db),
):
    await ContractService(escrow).get_contract_for(contract_id, caller, db)
    account = await escrow.get_account(contract_id, db)
    return _escrow_response(account)


@router.post("/contracts/{contract_id}/arbitration", response_model=ContractResponse)
async def settle_arbitration(
    contract_id: uuid.UUID,
    body: ArbitrationSettleRequest,
    caller: Caller = Depends(require_role(UserRole.MEDIATOR, UserRole.ADMIN)),
    escrow: EscrowService = Depends(get_escrow_service),
    db: AsyncSession = Depends(get_db),
):
    contract = await DisputeService(escrow).settle_arbitration(
        contract_id, caller, body.outcome, db, homeowner_percentage=body.homeowner_percentage
    )
    return _contract_response(contract)


# ---------- Change orders ----------

@router.post("/contracts/{contract_id}/change-orders", response_model=ChangeOrderResponse, status_code=201)
async def create_change_order(
    contract_id: uuid.UUID,
    body: ChangeOrderCreate,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    change_order = await ContractService().create_change_order(
        contract_id, caller, body.title, body.description, body.amount, db
    )
    return _change_order_response(change_order)


@router.post("/change-orders/{change_order_id}/approve", response_model=ChangeOrderResponse)
async def approve_change_order(
    change_order_id: uuid.UUID,
    response: Response,
    caller: Caller = Depends(require_role(UserRole.HOMEOWNER)),
    escrow: EscrowService = Depends(get_escrow_service),
    db: AsyncSession = Depends(get_db),
):
    change_order = await ContractService(escrow).approve_change_order(change_order_id, caller, db)
    if change_order.status == ChangeOrderStatus.PAYMENT_FAILED.value:
        # The failed attempt is still committed so it can be retried.
        response.status_code = status.HTTP_402_PAYMENT_REQUIRED
    return _change_order_response(change_order)


@router.post("/change-orders/{change_order_id}/reject", response_model=ChangeOrderResponse)
async def reject_change_order(
    change_order_id: uuid.UUID,
    caller: Caller = Depends(require_role(UserRole.HOMEOWNER)),
    db: AsyncSession = Depends(get_db),
):
    change_order = await ContractService().reject_change_order(change_order_id, caller, db)
    return _change_order_response(change_order)


def _contract_response(c: Contract) -> ContractResponse:
    return ContractResponse(
        id=c.id, job_id=c.job_id, bid_id=c.bid_id,
        homeowner_id=c.homeowner_id, contractor_id=c.contractor_id,
        amount=c.amount, deposit_amount=c.deposit_amount, final_amount=c.final_amount,
        platform_fee=c.platform_fee, contractor_net=c.contractor_net,
        status=c.status, accepted_at=c.accepted_at,
        completed_at=c.completed_at, cancelled_at=c.cancelled_at,
    )


def _change_order_response(co: ChangeOrder) -> ChangeOrderResponse:
    return ChangeOrderResponse(
        id=co.id, contract_id=co.contract_id, requested_by_id=co.requested_by_id,
        title=co.title, description=co.description, amount=co.amount,
        status=co.status, charge_ref=co.charge_ref, charge_attempts=co.charge_attempts,
        failure_reason=co.failure_reason, approved_at=co.approved_at,
    )


def _escrow_response(account: EscrowAccount) -> EscrowResponse:
    return EscrowResponse(
        id=account.id, contract_id=account.contract_id, status=account.status.value,
        total_amount=account.total_amount, deposit_amount=account.deposit_amount,
        final_amount=account.final_amount, platform_fee=account.platform_fee,
        held_amount=account.held_amount, rework_deadline=account.rework_deadline,
        arbitration_started_at=account.arbitration_started_at,
        transactions=[
            EscrowTransactionResponse(
                sequence=t.sequence, kind=t.kind, direction=t.direction, amount=t.amount,
                party=t.party, gateway_ref=t.gateway_ref, description=t.description,
            )
            for t in account.transactions
        ],
    )
