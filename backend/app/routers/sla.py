"""
SLA API Routes

Dashboards over tracker status, milestone completion and restarts.
"""
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..auth import get_current_actor, require_roles
from ..dependencies import get_sla_service
from ..models.actor import Actor
from ..models.db_models import ActorRole, SlaClass, SlaEntityType
from ..services.lifecycle import SlaTrackerService


router = APIRouter(prefix="/sla", tags=["sla"])

management_only = require_roles(ActorRole.OPS, ActorRole.ADMIN, ActorRole.FOUNDER)


class CreateTrackerRequest(BaseModel):
    """Tracker for a bounded sub-entity activity (KYC, bill verification, ...)."""
    entity_type: SlaEntityType
    entity_id: str
    sla_class: SlaClass
    case_id: Optional[str] = Field(None, description="Case the activity belongs to")


class TrackerNoteRequest(BaseModel):
    notes: Optional[str] = None


@router.get("/dashboard", response_model=dict)
async def dashboard(
    actor: Actor = Depends(management_only),
    sla: SlaTrackerService = Depends(get_sla_service),
):
    return sla.dashboard()


@router.get("/active", response_model=dict)
async def active_trackers(
    actor: Actor = Depends(management_only),
    sla: SlaTrackerService = Depends(get_sla_service),
):
    trackers = sla.list_active()
    return {"count": len(trackers), "trackers": trackers}


@router.get("/overdue", response_model=dict)
async def overdue_trackers(
    actor: Actor = Depends(management_only),
    sla: SlaTrackerService = Depends(get_sla_service),
):
    trackers = sla.list_overdue()
    return {"count": len(trackers), "trackers": trackers}


@router.get("/case/{case_id}", response_model=dict)
async def trackers_for_case(
    case_id: str,
    actor: Actor = Depends(get_current_actor),
    sla: SlaTrackerService = Depends(get_sla_service),
):
    trackers = sla.get_for_case(case_id)
    return {"case_id": case_id, "count": len(trackers), "trackers": trackers}


@router.get("/{tracker_id}", response_model=dict)
async def get_tracker(
    tracker_id: str,
    actor: Actor = Depends(get_current_actor),
    sla: SlaTrackerService = Depends(get_sla_service),
):
    return sla.get(tracker_id)


@router.post("", response_model=dict, status_code=201)
async def create_tracker(
    request: CreateTrackerRequest,
    actor: Actor = Depends(get_current_actor),
    sla: SlaTrackerService = Depends(get_sla_service),
):
    return sla.create(request.entity_type, request.entity_id, request.sla_class, actor, case_id=request.case_id)


@router.post("/{tracker_id}/milestones/{key}/complete", response_model=dict)
async def complete_milestone(
    tracker_id: str,
    key: str,
    actor: Actor = Depends(get_current_actor),
    sla: SlaTrackerService = Depends(get_sla_service),
):
    return sla.complete_milestone(tracker_id, key, actor)


@router.post("/{tracker_id}/restart", response_model=dict)
async def restart_tracker(
    tracker_id: str,
    request: Optional[TrackerNoteRequest] = None,
    actor: Actor = Depends(get_current_actor),
    sla: SlaTrackerService = Depends(get_sla_service),
):
    return sla.restart_tracker(tracker_id, actor, notes=request.notes if request else None)


@router.post("/{tracker_id}/cancel", response_model=dict)
async def cancel_tracker(
    tracker_id: str,
    request: Optional[TrackerNoteRequest] = None,
    actor: Actor = Depends(get_current_actor),
    sla: SlaTrackerService = Depends(get_sla_service),
):
    return sla.cancel_tracker(tracker_id, actor, notes=request.notes if request else None)
