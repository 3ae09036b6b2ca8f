"""
Case API Routes

Case creation, listing and the transition command.
All legality and role checks happen in the Transition Authority; this layer
only parses input and renders results.
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..auth import get_current_actor
from ..dependencies import get_authority
from ..models.actor import Actor
from ..models.db_models import CaseStatus
from ..services.lifecycle import TransitionAuthority


router = APIRouter(prefix="/cases", tags=["cases"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CreateCaseRequest(BaseModel):
    """Request to open a case."""
    status: CaseStatus = Field(default=CaseStatus.LEAD_CREATED, description="LEAD_CREATED or READY_FOR_COMPANY_REVIEW")
    sub_contractor_id: Optional[str] = Field(None, description="Sub-contractor applying for financing")
    epc_id: Optional[str] = Field(None, description="EPC company that owes the bill")
    bill_id: Optional[str] = Field(None, description="Bill under verification")
    cwc_rf_id: Optional[str] = Field(None, description="Funding request form")
    deal_value: Optional[float] = Field(None, description="Requested amount")
    case_number: Optional[str] = Field(None, description="Explicit case number; issued automatically if omitted")
    notes: Optional[str] = None


class TransitionRequest(BaseModel):
    """Request to move a case to another status."""
    status: CaseStatus = Field(..., description="Target status")
    notes: Optional[str] = Field(None, description="Reason recorded in the status history")
    version: Optional[int] = Field(None, description="Case version the caller last read")


class RiskAssessmentRequest(BaseModel):
    """RMT risk assessment of a case in RMT_RISK_ANALYSIS."""
    risk_score: int = Field(..., ge=0, le=100)
    risk_level: str = Field(..., description="LOW, MEDIUM, HIGH or CRITICAL")
    recommendation: str = Field(..., description="approve, reject or needs_review")
    assessment: Optional[str] = None
    notes: Optional[str] = None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=dict, status_code=201)
async def create_case(
    request: CreateCaseRequest,
    actor: Actor = Depends(get_current_actor),
    authority: TransitionAuthority = Depends(get_authority),
):
    """Open a case (sales / ops / admin / founder)."""
    return authority.create_case(
        actor,
        status=request.status,
        sub_contractor_id=request.sub_contractor_id,
        epc_id=request.epc_id,
        bill_id=request.bill_id,
        cwc_rf_id=request.cwc_rf_id,
        deal_value=request.deal_value,
        case_number=request.case_number,
        notes=request.notes,
    )


@router.get("", response_model=dict)
async def list_cases(
    status: Optional[CaseStatus] = None,
    epc_id: Optional[str] = None,
    sub_contractor_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_current_actor),
    authority: TransitionAuthority = Depends(get_authority),
):
    return authority.store.list(
        status=status,
        epc_id=epc_id,
        sub_contractor_id=sub_contractor_id,
        page=page,
        limit=limit,
    )


@router.get("/{case_id}", response_model=dict)
async def get_case(
    case_id: str,
    actor: Actor = Depends(get_current_actor),
    authority: TransitionAuthority = Depends(get_authority),
):
    """Case with full status history, linked ids, risk assessment and locked terms."""
    return authority.store.get(case_id).to_dict()


@router.post("/{case_id}/status", response_model=dict)
async def transition_case(
    case_id: str,
    request: TransitionRequest,
    actor: Actor = Depends(get_current_actor),
    authority: TransitionAuthority = Depends(get_authority),
):
    """
    Move a case along one edge of the transition table.

    403 on role mismatch, 409 on version conflict, 422 on an invalid edge.
    """
    return authority.transition(
        case_id,
        request.status,
        actor,
        notes=request.notes,
        expected_version=request.version,
    )


@router.post("/{case_id}/risk-assessment", response_model=dict)
async def assess_risk(
    case_id: str,
    request: RiskAssessmentRequest,
    actor: Actor = Depends(get_current_actor),
    authority: TransitionAuthority = Depends(get_authority),
):
    return authority.assess_risk(
        case_id,
        actor,
        risk_score=request.risk_score,
        risk_level=request.risk_level,
        recommendation=request.recommendation,
        assessment=request.assessment,
        notes=request.notes,
    )


@router.get("/{case_id}/transitions", response_model=dict)
async def allowed_transitions(
    case_id: str,
    actor: Actor = Depends(get_current_actor),
    authority: TransitionAuthority = Depends(get_authority),
):
    """Statuses the current actor may request next (for UI gating)."""
    case = authority.store.get(case_id)
    return {
        "case_id": case.id,
        "status": case.status.value,
        "version": case.version,
        "allowed_targets": authority.allowed_targets(case_id, actor),
    }
