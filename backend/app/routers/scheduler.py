"""
Scheduler API Routes

Internal endpoints for system-automatic tasks, called by an external cron.
SLA tick (reminders, escalation, dormancy) and the case dormancy sweep.
"""
import os
from fastapi import APIRouter, Depends, HTTPException, Header

from ..dependencies import get_lifecycle_scheduler
from ..services.lifecycle import LifecycleScheduler


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "scheduler-internal-key-change-in-production")


async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/sla-tick", response_model=dict)
async def run_sla_tick(
    scheduler: LifecycleScheduler = Depends(get_lifecycle_scheduler),
    _: bool = Depends(verify_internal_key),
):
    """
    Advance every live SLA tracker against the clock.

    Idempotent - re-running at the same instant changes nothing.
    """
    return scheduler.run_sla_tick()


@router.post("/dormancy-sweep", response_model=dict)
async def run_dormancy_sweep(
    scheduler: LifecycleScheduler = Depends(get_lifecycle_scheduler),
    _: bool = Depends(verify_internal_key),
):
    """Flag cases with no activity for CASE_DORMANCY_DAYS as dormant."""
    return scheduler.run_dormancy_sweep()


@router.post("/trigger-all", response_model=dict)
async def run_all(
    scheduler: LifecycleScheduler = Depends(get_lifecycle_scheduler),
    _: bool = Depends(verify_internal_key),
):
    return scheduler.run_all()
