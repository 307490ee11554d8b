from fastapi import APIRouter

from homebid.api.v1.bids import router as bids_router
from homebid.api.v1.completions import router as completions_router
from homebid.api.v1.contracts import router as contracts_router
from homebid.api.v1.disputes import router as disputes_router
from homebid.api.v1.notifications import router as notifications_router

v1_router = APIRouter()

v1_router.include_router(bids_router)
v1_router.include_router(contracts_router)
v1_router.include_router(completions_router)
v1_router.include_router(disputes_router)
v1_router.include_router(notifications_router)
