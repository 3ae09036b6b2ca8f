"""
Audit API Routes

Read-only compliance views over the audit log (ops / admin / founder).
"""
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response

from ..auth import require_roles
from ..dependencies import get_audit_recorder
from ..models.actor import Actor
from ..models.db_models import ActorRole, AuditAction, AuditCategory, AuditEntityType
from ..services.lifecycle import AuditFilter, AuditRecorder


router = APIRouter(prefix="/audit", tags=["audit"])

auditors = require_roles(ActorRole.OPS, ActorRole.ADMIN, ActorRole.FOUNDER)


def _filters(
    user_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    category: Optional[AuditCategory] = None,
    entity_type: Optional[AuditEntityType] = None,
    entity_id: Optional[str] = None,
    success: Optional[bool] = None,
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    search: Optional[str] = None,
) -> AuditFilter:
    return AuditFilter(
        user_id=user_id,
        action=action,
        category=category,
        entity_type=entity_type,
        entity_id=entity_id,
        success=success,
        start_date=startDate,
        end_date=endDate,
        search=search,
    )


@router.get("/logs", response_model=dict)
async def list_logs(
    filters: AuditFilter = Depends(_filters),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    actor: Actor = Depends(auditors),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Filtered, paginated audit log, newest first."""
    return audit.query(filters, page=page, limit=limit)


@router.get("/stats", response_model=dict)
async def stats(
    days: int = Query(7, ge=1, le=365),
    actor: Actor = Depends(auditors),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    return audit.stats(days)


@router.get("/export")
async def export_logs(
    filters: AuditFilter = Depends(_filters),
    format: str = Query("json", pattern="^(json|csv)$"),
    actor: Actor = Depends(auditors),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Full export of a filtered set as CSV or JSON."""
    exported = audit.export(filters, fmt=format)
    if format == "csv":
        filename = f"audit-logs-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}.csv"
        return Response(
            content=exported,
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )
    return JSONResponse(content=exported)


@router.get("/logs/{log_id}", response_model=dict)
async def get_log(
    log_id: str,
    actor: Actor = Depends(auditors),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    return audit.get(log_id)


@router.get("/entity/{entity_type}/{entity_id}", response_model=dict)
async def entity_history(
    entity_type: AuditEntityType,
    entity_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=500),
    actor: Actor = Depends(auditors),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    return audit.for_entity(entity_type, entity_id, page=page, limit=limit)


@router.get("/user/{user_id}/timeline", response_model=dict)
async def user_timeline(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    actor: Actor = Depends(auditors),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    return audit.query(AuditFilter(user_id=user_id), page=page, limit=limit)
