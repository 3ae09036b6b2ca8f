"""
Audit Recorder

Append-only, queryable record of every state-affecting action.

Durability is deliberately asymmetric:
- business writes commit first, in the caller's transaction
- the audit row is written in its own session afterwards
- an audit-write failure is logged to the operational channel and swallowed,
  it never rolls back or fails the business operation it describes
"""
import csv
import io
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func, or_, desc
from sqlalchemy.orm import Session

from ...models.actor import Actor
from ...models.db_models import AuditLogDB, AuditAction, AuditCategory, AuditEntityType
from .clock import Clock, system_clock
from .errors import NotFound

logger = logging.getLogger(__name__)

EXPORT_ROW_LIMIT = 10000
CSV_HEADER = ["Timestamp", "User", "Role", "Action", "Category", "Description", "Entity", "Success"]


@dataclass
class AuditEntry:
    """One audit row to be written."""
    actor: Actor
    action: AuditAction
    category: AuditCategory
    description: str
    entity_type: Optional[AuditEntityType] = None
    entity_id: Optional[str] = None
    entity_ref: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    previous_value: Any = None
    new_value: Any = None
    success: bool = True
    error_message: Optional[str] = None


@dataclass
class AuditFilter:
    """Filters for audit retrieval and export. All optional, AND-combined."""
    user_id: Optional[str] = None
    action: Optional[AuditAction] = None
    category: Optional[AuditCategory] = None
    entity_type: Optional[AuditEntityType] = None
    entity_id: Optional[str] = None
    success: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    search: Optional[str] = None


class AuditRecorder:
    """
    Writes and reads the audit log.

    Owns its sessions (via `session_factory`) so that audit writes are
    independent of the business transaction that triggered them.
    """

    def __init__(self, session_factory: Callable[[], Session], clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock or system_clock

    # =========================================================================
    # WRITE
    # =========================================================================

    def record(self, entry: AuditEntry) -> Optional[str]:
        """
        Append one audit row.

        Never raises: on failure the error is logged and None is returned.
        """
        db = None
        try:
            log_id = str(uuid4())
            db = self.session_factory()
            row = AuditLogDB(
                id=log_id,
                user_id=entry.actor.id,
                user_name=entry.actor.name,
                user_role=entry.actor.role,
                action=entry.action,
                category=entry.category,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                entity_ref=entry.entity_ref,
                description=entry.description,
                details=entry.details,
                previous_value=entry.previous_value,
                new_value=entry.new_value,
                success=entry.success,
                error_message=entry.error_message,
                created_at=self.clock.now(),
            )
            db.add(row)
            db.commit()
            return log_id
        except Exception:
            if db is not None:
                db.rollback()
            logger.exception(
                "Audit write failed: action=%s entity=%s/%s success=%s",
                entry.action.value,
                entry.entity_type.value if entry.entity_type else None,
                entry.entity_id,
                entry.success,
            )
            return None
        finally:
            if db is not None:
                db.close()

    # =========================================================================
    # READ
    # =========================================================================

    def _apply_filters(self, query, filters: AuditFilter):
        if filters.user_id:
            query = query.filter(AuditLogDB.user_id == filters.user_id)
        if filters.action:
            query = query.filter(AuditLogDB.action == filters.action)
        if filters.category:
            query = query.filter(AuditLogDB.category == filters.category)
        if filters.entity_type:
            query = query.filter(AuditLogDB.entity_type == filters.entity_type)
        if filters.entity_id:
            query = query.filter(AuditLogDB.entity_id == filters.entity_id)
        if filters.success is not None:
            query = query.filter(AuditLogDB.success == filters.success)
        if filters.start_date:
            query = query.filter(AuditLogDB.created_at >= filters.start_date)
        if filters.end_date:
            query = query.filter(AuditLogDB.created_at <= filters.end_date)
        if filters.search:
            pattern = f"%{filters.search}%"
            query = query.filter(or_(
                AuditLogDB.description.ilike(pattern),
                AuditLogDB.user_name.ilike(pattern),
                AuditLogDB.entity_ref.ilike(pattern),
            ))
        return query

    def query(self, filters: Optional[AuditFilter] = None, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        """Filtered, paginated retrieval, newest first."""
        filters = filters or AuditFilter()
        page = max(page, 1)
        limit = max(min(limit, 500), 1)

        db = self.session_factory()
        try:
            base = self._apply_filters(db.query(AuditLogDB), filters)
            total = base.count()
            logs = (
                base.order_by(desc(AuditLogDB.created_at), desc(AuditLogDB.id))
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            return {
                "logs": [log.to_dict() for log in logs],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": math.ceil(total / limit) if total else 0,
                },
            }
        finally:
            db.close()

    def get(self, log_id: str) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            log = db.query(AuditLogDB).filter(AuditLogDB.id == log_id).first()
            if log is None:
                raise NotFound(f"Audit log {log_id} not found")
            return log.to_dict()
        finally:
            db.close()

    def for_entity(
        self,
        entity_type: AuditEntityType,
        entity_id: str,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        return self.query(AuditFilter(entity_type=entity_type, entity_id=entity_id), page, limit)

    def stats(self, days: int = 7) -> Dict[str, Any]:
        """Aggregate activity over the last `days` days."""
        since = self.clock.now() - timedelta(days=days)

        db = self.session_factory()
        try:
            window = db.query(AuditLogDB).filter(AuditLogDB.created_at >= since)
            total_logs = window.count()

            by_category = (
                db.query(AuditLogDB.category, func.count(AuditLogDB.id))
                .filter(AuditLogDB.created_at >= since)
                .group_by(AuditLogDB.category)
                .order_by(desc(func.count(AuditLogDB.id)))
                .all()
            )
            by_action = (
                db.query(AuditLogDB.action, func.count(AuditLogDB.id))
                .filter(AuditLogDB.created_at >= since)
                .group_by(AuditLogDB.action)
                .order_by(desc(func.count(AuditLogDB.id)))
                .limit(10)
                .all()
            )
            by_user = (
                db.query(AuditLogDB.user_id, AuditLogDB.user_name, func.count(AuditLogDB.id))
                .filter(AuditLogDB.created_at >= since)
                .group_by(AuditLogDB.user_id, AuditLogDB.user_name)
                .order_by(desc(func.count(AuditLogDB.id)))
                .limit(10)
                .all()
            )
            recent_failures = (
                window.filter(AuditLogDB.success.is_(False))
                .order_by(desc(AuditLogDB.created_at))
                .limit(10)
                .all()
            )
            daily = (
                db.query(func.date(AuditLogDB.created_at), func.count(AuditLogDB.id))
                .filter(AuditLogDB.created_at >= since)
                .group_by(func.date(AuditLogDB.created_at))
                .order_by(func.date(AuditLogDB.created_at))
                .all()
            )

            return {
                "days": days,
                "totalLogs": total_logs,
                "byCategory": [{"category": c.value, "count": n} for c, n in by_category],
                "byAction": [{"action": a.value, "count": n} for a, n in by_action],
                "byUser": [{"userId": u, "userName": name, "count": n} for u, name, n in by_user],
                "recentFailures": [log.to_dict() for log in recent_failures],
                "dailyActivity": [{"date": str(d), "count": n} for d, n in daily],
            }
        finally:
            db.close()

    def export(self, filters: Optional[AuditFilter] = None, fmt: str = "json"):
        """
        Full export of a filtered set (capped at EXPORT_ROW_LIMIT rows).

        Returns a CSV string for fmt="csv", otherwise a list of dicts.
        """
        filters = filters or AuditFilter()

        db = self.session_factory()
        try:
            logs = (
                self._apply_filters(db.query(AuditLogDB), filters)
                .order_by(desc(AuditLogDB.created_at))
                .limit(EXPORT_ROW_LIMIT)
                .all()
            )
            rows = [log.to_dict() for log in logs]
        finally:
            db.close()

        if fmt != "csv":
            return rows
        return _to_csv(rows)


def _to_csv(rows: List[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow([
            row["created_at"],
            row["user_name"] or row["user_id"] or "System",
            row["user_role"] or "",
            row["action"],
            row["category"],
            row["description"] or "",
            row["entity_ref"] or row["entity_id"] or "",
            "true" if row["success"] else "false",
        ])
    return buffer.getvalue()
