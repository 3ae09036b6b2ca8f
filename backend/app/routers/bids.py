"""
Bid API Routes

NBFC bidding, negotiation and the commercial lock.
"""
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..auth import get_current_actor
from ..dependencies import get_bid_ledger
from ..models.actor import Actor
from ..services.lifecycle import BidLedger


router = APIRouter(prefix="/bids", tags=["bids"])


class PlaceBidRequest(BaseModel):
    """NBFC offer against a case."""
    case_id: str
    bid_amount: float = Field(..., description="Offered amount")
    funding_duration_days: int = Field(..., description="Funding tenure in days")


class NegotiateRequest(BaseModel):
    """Counter offer on a placed bid."""
    counter_amount: float
    counter_duration: int
    message: Optional[str] = None


class WithdrawRequest(BaseModel):
    notes: Optional[str] = None


@router.post("", response_model=dict, status_code=201)
async def place_bid(
    request: PlaceBidRequest,
    actor: Actor = Depends(get_current_actor),
    ledger: BidLedger = Depends(get_bid_ledger),
):
    return ledger.place_bid(request.case_id, request.bid_amount, request.funding_duration_days, actor)


@router.get("/mine", response_model=dict)
async def my_bids(
    actor: Actor = Depends(get_current_actor),
    ledger: BidLedger = Depends(get_bid_ledger),
):
    bids = ledger.list_my_bids(actor)
    return {"count": len(bids), "bids": bids}


@router.get("/case/{case_id}", response_model=dict)
async def bids_for_case(
    case_id: str,
    actor: Actor = Depends(get_current_actor),
    ledger: BidLedger = Depends(get_bid_ledger),
):
    bids = ledger.list_bids_for_case(case_id)
    return {"case_id": case_id, "count": len(bids), "bids": bids}


@router.get("/{bid_id}", response_model=dict)
async def get_bid(
    bid_id: str,
    actor: Actor = Depends(get_current_actor),
    ledger: BidLedger = Depends(get_bid_ledger),
):
    return ledger.get_bid(bid_id)


@router.post("/{bid_id}/negotiate", response_model=dict)
async def negotiate(
    bid_id: str,
    request: NegotiateRequest,
    actor: Actor = Depends(get_current_actor),
    ledger: BidLedger = Depends(get_bid_ledger),
):
    return ledger.negotiate(bid_id, request.counter_amount, request.counter_duration, actor, request.message)


@router.post("/{bid_id}/accept", response_model=dict)
async def accept_bid(
    bid_id: str,
    actor: Actor = Depends(get_current_actor),
    ledger: BidLedger = Depends(get_bid_ledger),
):
    """Lock commercial terms on the bid (ops / admin / founder)."""
    return ledger.accept_bid(bid_id, actor)


@router.post("/{bid_id}/withdraw", response_model=dict)
async def withdraw_bid(
    bid_id: str,
    request: Optional[WithdrawRequest] = None,
    actor: Actor = Depends(get_current_actor),
    ledger: BidLedger = Depends(get_bid_ledger),
):
    return ledger.withdraw_bid(bid_id, actor, notes=request.notes if request else None)
