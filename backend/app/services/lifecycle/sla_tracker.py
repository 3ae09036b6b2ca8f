"""
SLA Tracker & Escalation Engine

AUTHORITY: SYSTEM for reminders, escalation and dormancy; USER (ops) for
milestone completion and restarts.

Key behaviors:
- One generic tracker shape (day3 / day7 / day10 / day14) parameterized by SLA class
- Deadlines computed once at creation from the class offsets, recomputed only on restart
- Tracker status only moves forward: ACTIVE -> REMINDER_1_SENT -> REMINDER_2_SENT
  -> ESCALATED -> DORMANT; COMPLETED and CANCELLED are terminal
- The tick is idempotent: it drives each tracker to a fixed point for the current
  instant, so re-running it at the same instant changes nothing
- Every tracker write is version guarded; notifications go out only after the
  winning commit
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from ...models.actor import Actor, SYSTEM_ACTOR
from ...models.db_models import (
    SlaTrackerDB, SlaMilestoneDB, CaseDB,
    SlaStatus, MilestoneStatus, SlaClass, SlaEntityType, CaseStatus, ActorRole,
    AuditAction, AuditCategory, AuditEntityType,
)
from .audit_recorder import AuditEntry, AuditRecorder
from .case_store import commit_or_conflict
from .clock import Clock, system_clock
from .errors import Conflict, Forbidden, InvalidStage, NotFound
from .notifications import Notifier, deliver

logger = logging.getLogger(__name__)


# =============================================================================
# SLA CLASS CONFIGURATION
# =============================================================================

MILESTONE_KEYS = ("day3", "day7", "day10", "day14")

SLA_CLASS_CONFIG = {
    SlaClass.EPC_VALIDATION: {
        "offsets": (3, 7, 10, 14),
        "milestones": (
            "EPC Acknowledgement",
            "EPC Document Review",
            "EPC Verification Decision",
            "EPC Validation Closed",
        ),
    },
    SlaClass.RISK_ASSESSMENT: {
        "offsets": (3, 7, 10, 14),
        "milestones": (
            "Initial Document Verification",
            "RMT Pre-screening Complete",
            "Risk Analysis Complete",
            "RMT Decision",
        ),
    },
    SlaClass.NBFC_RESPONSE: {
        "offsets": (3, 7, 10, 14),
        "milestones": (
            "CWCAF Shared",
            "NBFC Quotations Received",
            "NBFC Approval Decision",
            "Deal Execution",
        ),
    },
    SlaClass.BILL_VERIFICATION: {
        "offsets": (3, 7, 10, 14),
        "milestones": (
            "Bill Received",
            "WCC Verified",
            "Measurement Sheet Verified",
            "Bill Verification Closed",
        ),
    },
    SlaClass.KYC_COMPLETION: {
        "offsets": (3, 7, 10, 14),
        "milestones": (
            "KYC Documents Requested",
            "KYC Documents Submitted",
            "KYC Verified",
            "KYC Closed",
        ),
    },
    SlaClass.DOCUMENT_UPLOAD: {
        "offsets": (3, 7, 10, 14),
        "milestones": (
            "Upload Requested",
            "First Reminder",
            "Final Reminder",
            "Upload Window Closed",
        ),
    },
}

# Case stages that open a stage tracker on entry
STAGE_SLA_CLASSES = {
    CaseStatus.READY_FOR_COMPANY_REVIEW: SlaClass.EPC_VALIDATION,
    CaseStatus.RMT_QUEUE: SlaClass.RISK_ASSESSMENT,
    CaseStatus.CWCAF_READY: SlaClass.NBFC_RESPONSE,
}

STATUS_ORDER = [
    SlaStatus.ACTIVE,
    SlaStatus.REMINDER_1_SENT,
    SlaStatus.REMINDER_2_SENT,
    SlaStatus.ESCALATED,
    SlaStatus.DORMANT,
]
TERMINAL_STATUSES = (SlaStatus.COMPLETED, SlaStatus.CANCELLED)
LIVE_STATUSES = (
    SlaStatus.ACTIVE,
    SlaStatus.REMINDER_1_SENT,
    SlaStatus.REMINDER_2_SENT,
    SlaStatus.ESCALATED,
)
OPEN_STATUSES = LIVE_STATUSES + (SlaStatus.DORMANT,)

SLA_MANAGER_ROLES = frozenset({ActorRole.OPS, ActorRole.ADMIN, ActorRole.FOUNDER})


def validate_class_config(config: Dict[SlaClass, Dict[str, Any]]) -> None:
    """Every class needs four strictly increasing positive offsets and four names."""
    for sla_class, entry in config.items():
        offsets = tuple(entry["offsets"])
        if len(offsets) != len(MILESTONE_KEYS) or len(entry["milestones"]) != len(MILESTONE_KEYS):
            raise ValueError(f"{sla_class.value}: exactly four milestones are required")
        if offsets[0] <= 0 or any(b <= a for a, b in zip(offsets, offsets[1:])):
            raise ValueError(f"{sla_class.value}: milestone offsets must be strictly increasing")


validate_class_config(SLA_CLASS_CONFIG)


# =============================================================================
# SLA TRACKER SERVICE
# =============================================================================

class SlaTrackerService:
    """
    Owns SLA trackers: creation, milestone completion, restarts and the tick.

    Staging methods (open_stage_tracker, cancel_open_trackers, create_tracker)
    only add to the session so the Transition Authority can commit them
    together with the case. Public commands commit on their own.
    """

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        audit: Optional[AuditRecorder] = None,
        notifier: Optional[Notifier] = None,
        class_config: Optional[Dict[SlaClass, Dict[str, Any]]] = None,
    ):
        self.db = db_session
        self.clock = clock or system_clock
        self.audit = audit
        self.notifier = notifier
        self.class_config = class_config or SLA_CLASS_CONFIG
        if class_config is not None:
            validate_class_config(class_config)

    # =========================================================================
    # STAGING (no commit)
    # =========================================================================

    def create_tracker(
        self,
        entity_type: SlaEntityType,
        entity_id: str,
        sla_class: SlaClass,
        actor: Actor,
        case_id: Optional[str] = None,
        stage: Optional[CaseStatus] = None,
    ) -> SlaTrackerDB:
        """Stage a new tracker with deadlines computed from `now`."""
        now = self.clock.now()
        config = self.class_config[sla_class]

        tracker = SlaTrackerDB(
            id=str(uuid4()),
            entity_type=entity_type,
            entity_id=entity_id,
            case_id=case_id,
            sla_class=sla_class,
            stage=stage,
            status=SlaStatus.ACTIVE,
            reminders=[],
            status_history=[_history_entry(SlaStatus.ACTIVE, actor, "Tracker created", now)],
            created_at=now,
            updated_at=now,
        )
        for key, offset, name in zip(MILESTONE_KEYS, config["offsets"], config["milestones"]):
            tracker.milestones.append(SlaMilestoneDB(
                id=str(uuid4()),
                key=key,
                name=name,
                offset_days=offset,
                target_date=now + timedelta(days=offset),
                status=MilestoneStatus.PENDING,
            ))
        _set_deadlines(tracker)
        self.db.add(tracker)
        return tracker

    def open_trackers_for_case(self, case_id: str) -> List[SlaTrackerDB]:
        return (
            self.db.query(SlaTrackerDB)
            .filter(
                SlaTrackerDB.case_id == case_id,
                SlaTrackerDB.status.in_(OPEN_STATUSES),
            )
            .all()
        )

    def open_stage_tracker(self, case: CaseDB, stage: CaseStatus, actor: Actor) -> Tuple[SlaTrackerDB, List[str]]:
        """
        Open (or keep) the tracker for the stage the case just entered.

        Open stage trackers belonging to earlier stages are closed as COMPLETED.
        Returns (tracker, ids of closed trackers).
        """
        now = self.clock.now()
        closed = []
        existing = None
        for tracker in self.open_trackers_for_case(case.id):
            if tracker.entity_type != SlaEntityType.CASE:
                continue
            if tracker.stage == stage:
                existing = tracker
                continue
            self._finish(tracker, SlaStatus.COMPLETED, actor, f"Case moved to {stage.value}", now)
            closed.append(tracker.id)

        if existing is not None:
            return existing, closed

        tracker = self.create_tracker(
            entity_type=SlaEntityType.CASE,
            entity_id=case.id,
            sla_class=STAGE_SLA_CLASSES[stage],
            actor=actor,
            case_id=case.id,
            stage=stage,
        )
        return tracker, closed

    def cancel_open_trackers(self, case_id: str, actor: Actor, reason: str) -> List[str]:
        """Stage cancellation of every open tracker attached to the case."""
        now = self.clock.now()
        cancelled = []
        for tracker in self.open_trackers_for_case(case_id):
            self._finish(tracker, SlaStatus.CANCELLED, actor, reason, now)
            cancelled.append(tracker.id)
        return cancelled

    # =========================================================================
    # COMMANDS
    # =========================================================================

    def create(
        self,
        entity_type: SlaEntityType,
        entity_id: str,
        sla_class: SlaClass,
        actor: Actor,
        case_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a tracker for a sub-entity activity (KYC, bill verification, ...)."""
        if actor.role not in SLA_MANAGER_ROLES:
            self._audit_denied(actor, AuditAction.SLA_CREATE, None, "create SLA tracker")
            raise Forbidden(f"Role {actor.role.value} cannot create SLA trackers")
        if case_id is not None and self.db.get(CaseDB, case_id) is None:
            raise NotFound(f"Case {case_id} not found")

        tracker = self.create_tracker(entity_type, entity_id, sla_class, actor, case_id=case_id)
        commit_or_conflict(self.db, f"SLA tracker {tracker.id}")
        result = tracker.to_dict()

        self._audit(AuditEntry(
            actor=actor,
            action=AuditAction.SLA_CREATE,
            category=AuditCategory.SLA,
            description=f"SLA tracker created ({sla_class.value}) for {entity_type.value} {entity_id}",
            entity_type=AuditEntityType.SLA,
            entity_id=tracker.id,
            entity_ref=result["case_number"],
            new_value={"status": SlaStatus.ACTIVE.value, "dormant_due": result["dormant_due"]},
        ))
        return result

    def complete_milestone(self, tracker_id: str, key: str, actor: Actor) -> Dict[str, Any]:
        """
        Mark one milestone done.

        On or before target -> COMPLETED, after -> COMPLETED_LATE.
        Completing day14 (or the last open milestone) completes the tracker.
        """
        tracker = self.get_tracker(tracker_id)

        allowed = set(SLA_MANAGER_ROLES)
        if tracker.sla_class == SlaClass.RISK_ASSESSMENT:
            allowed.add(ActorRole.RMT)
        if actor.role not in allowed:
            self._audit_denied(actor, AuditAction.SLA_COMPLETE, tracker, f"complete milestone {key}")
            raise Forbidden(f"Role {actor.role.value} cannot complete {tracker.sla_class.value} milestones")

        if tracker.status in TERMINAL_STATUSES:
            raise InvalidStage(f"SLA tracker is {tracker.status.value}; milestones can no longer change")
        milestone = tracker.milestone(key)
        if milestone is None:
            raise NotFound(f"Milestone {key} not found")
        if milestone.is_done:
            raise InvalidStage(f"Milestone {key} is already {milestone.status.value}")

        now = self.clock.now()
        previous = milestone.status
        milestone.status = (
            MilestoneStatus.COMPLETED if now <= milestone.target_date else MilestoneStatus.COMPLETED_LATE
        )
        milestone.completed_at = now
        milestone.completed_by = actor.id
        tracker.updated_at = now

        tracker_completed = key == MILESTONE_KEYS[-1] or all(m.is_done for m in tracker.milestones)
        if tracker_completed:
            self._finish(tracker, SlaStatus.COMPLETED, actor, f"Milestone {key} completed", now)

        commit_or_conflict(self.db, f"SLA tracker {tracker_id}")
        result = tracker.to_dict()

        self._audit(AuditEntry(
            actor=actor,
            action=AuditAction.SLA_COMPLETE,
            category=AuditCategory.SLA,
            description=f"Milestone {key} ({milestone.name}) marked {milestone.status.value}",
            entity_type=AuditEntityType.SLA,
            entity_id=tracker_id,
            entity_ref=result["case_number"],
            previous_value={"milestone": key, "status": previous.value},
            new_value={
                "milestone": key,
                "status": milestone.status.value,
                "tracker_status": tracker.status.value,
            },
        ))
        return result

    def restart_tracker(self, tracker_id: str, actor: Actor, notes: Optional[str] = None) -> Dict[str, Any]:
        """Explicit restart: recompute every deadline from now and reopen all milestones."""
        tracker = self.get_tracker(tracker_id)
        if actor.role not in SLA_MANAGER_ROLES:
            self._audit_denied(actor, AuditAction.SLA_UPDATE, tracker, "restart SLA tracker")
            raise Forbidden(f"Role {actor.role.value} cannot restart SLA trackers")
        if tracker.status in TERMINAL_STATUSES:
            raise InvalidStage(f"SLA tracker is {tracker.status.value} and cannot be restarted")

        now = self.clock.now()
        previous = tracker.status
        for milestone in tracker.milestones:
            milestone.target_date = now + timedelta(days=milestone.offset_days)
            milestone.status = MilestoneStatus.PENDING
            milestone.completed_at = None
            milestone.completed_by = None
        _set_deadlines(tracker)
        tracker.status = SlaStatus.ACTIVE
        tracker.escalated_at = None
        tracker.escalation_notes = None
        tracker.status_history = (tracker.status_history or []) + [
            _history_entry(SlaStatus.ACTIVE, actor, notes or "Tracker restarted", now)
        ]
        tracker.updated_at = now

        commit_or_conflict(self.db, f"SLA tracker {tracker_id}")
        result = tracker.to_dict()

        self._audit(AuditEntry(
            actor=actor,
            action=AuditAction.SLA_UPDATE,
            category=AuditCategory.SLA,
            description=f"SLA tracker restarted (was {previous.value})",
            entity_type=AuditEntityType.SLA,
            entity_id=tracker_id,
            entity_ref=result["case_number"],
            previous_value={"status": previous.value},
            new_value={"status": SlaStatus.ACTIVE.value, "dormant_due": result["dormant_due"]},
        ))
        return result

    def cancel_tracker(self, tracker_id: str, actor: Actor, notes: Optional[str] = None) -> Dict[str, Any]:
        tracker = self.get_tracker(tracker_id)
        if actor.role not in SLA_MANAGER_ROLES:
            self._audit_denied(actor, AuditAction.SLA_UPDATE, tracker, "cancel SLA tracker")
            raise Forbidden(f"Role {actor.role.value} cannot cancel SLA trackers")
        if tracker.status in TERMINAL_STATUSES:
            raise InvalidStage(f"SLA tracker is already {tracker.status.value}")

        previous = tracker.status
        self._finish(tracker, SlaStatus.CANCELLED, actor, notes or "Cancelled manually", self.clock.now())
        commit_or_conflict(self.db, f"SLA tracker {tracker_id}")
        result = tracker.to_dict()

        self._audit(AuditEntry(
            actor=actor,
            action=AuditAction.SLA_UPDATE,
            category=AuditCategory.SLA,
            description="SLA tracker cancelled",
            entity_type=AuditEntityType.SLA,
            entity_id=tracker_id,
            entity_ref=result["case_number"],
            previous_value={"status": previous.value},
            new_value={"status": SlaStatus.CANCELLED.value},
        ))
        return result

    # =========================================================================
    # TICK (SYSTEM-AUTHORITATIVE)
    # =========================================================================

    def tick(self) -> Dict[str, Any]:
        """
        Advance every live tracker against the clock.

        Each tracker is processed in its own transaction; a conflict or error
        on one tracker is logged and never stops the others.
        """
        now = self.clock.now()
        tracker_ids = [
            row[0] for row in
            self.db.query(SlaTrackerDB.id)
            .filter(SlaTrackerDB.status.in_(LIVE_STATUSES))
            .order_by(SlaTrackerDB.dormant_due)
            .all()
        ]

        changed = []
        conflicts = []
        errors = []

        for tracker_id in tracker_ids:
            try:
                result = self.process_tracker(tracker_id, now)
                if result is not None:
                    changed.append(result)
            except Conflict:
                self.db.rollback()
                logger.info("SLA tick: tracker %s changed concurrently, skipped", tracker_id)
                conflicts.append(tracker_id)
            except Exception as e:
                self.db.rollback()
                logger.exception("SLA tick failed for tracker %s", tracker_id)
                errors.append({"tracker_id": tracker_id, "error": str(e)})

        return {
            "run_date": now.isoformat(),
            "processed": len(tracker_ids),
            "changed": len(changed),
            "conflicts": len(conflicts),
            "errors": len(errors),
            "details": {
                "changed": changed,
                "conflicts": conflicts,
                "errors": errors,
            },
        }

    def process_tracker(self, tracker_id: str, now: datetime) -> Optional[Dict[str, Any]]:
        """
        Drive one tracker to its fixed point for `now` and commit.

        Returns a summary of what changed, or None if nothing did.
        """
        tracker = self.db.get(SlaTrackerDB, tracker_id)
        if tracker is None or tracker.status not in LIVE_STATUSES:
            return None

        previous = tracker.status
        newly_overdue = self._mark_overdue(tracker, now)
        events = []

        while tracker.status in LIVE_STATUSES:
            if now >= tracker.dormant_due:
                # Dormant trackers are never ticked again; nothing may stay PENDING
                for milestone in tracker.milestones:
                    if milestone.status == MilestoneStatus.PENDING:
                        milestone.status = MilestoneStatus.OVERDUE
                        newly_overdue.append(milestone.key)
                self._advance(tracker, SlaStatus.DORMANT, "Dormant: final milestone passed without completion", now)
                events.append(("dormant", None))
                break
            if (
                tracker.status == SlaStatus.ACTIVE
                and now >= tracker.first_reminder_due
                and not any(m.is_done for m in tracker.milestones)
            ):
                self._send_reminder(tracker, 1, now)
                events.append(("reminder", 1))
                continue
            if tracker.status == SlaStatus.REMINDER_1_SENT and now >= tracker.second_reminder_due:
                self._send_reminder(tracker, 2, now)
                events.append(("reminder", 2))
                continue
            if tracker.status == SlaStatus.REMINDER_2_SENT and now >= tracker.escalation_due:
                overdue = [m.key for m in tracker.milestones if m.status == MilestoneStatus.OVERDUE]
                tracker.escalated_at = now
                tracker.escalation_notes = f"Overdue milestones: {', '.join(overdue) or 'none'}"
                tracker.reminders = (tracker.reminders or []) + [
                    {"reminder": "escalation", "sentAt": now.isoformat(), "type": "escalation"}
                ]
                self._advance(tracker, SlaStatus.ESCALATED, tracker.escalation_notes, now)
                events.append(("escalation", overdue))
                continue
            break

        if not events and not newly_overdue:
            return None

        tracker.updated_at = now
        commit_or_conflict(self.db, f"SLA tracker {tracker_id}")
        snapshot = tracker.to_dict()

        # Side effects only after the winning commit
        for kind, payload in events:
            self._emit(kind, payload, snapshot)

        return {
            "tracker_id": tracker_id,
            "case_id": snapshot["case_id"],
            "from_status": previous.value,
            "to_status": snapshot["status"],
            "events": [kind if payload is None else f"{kind}:{payload}" for kind, payload in events],
            "newly_overdue": newly_overdue,
        }

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_tracker(self, tracker_id: str) -> SlaTrackerDB:
        tracker = self.db.get(SlaTrackerDB, tracker_id)
        if tracker is None:
            raise NotFound(f"SLA tracker {tracker_id} not found")
        return tracker

    def get(self, tracker_id: str) -> Dict[str, Any]:
        return self.get_tracker(tracker_id).to_dict()

    def get_for_case(self, case_id: str) -> List[Dict[str, Any]]:
        trackers = (
            self.db.query(SlaTrackerDB)
            .filter(SlaTrackerDB.case_id == case_id)
            .order_by(SlaTrackerDB.created_at.desc())
            .all()
        )
        return [t.to_dict() for t in trackers]

    def list_active(self) -> List[Dict[str, Any]]:
        trackers = (
            self.db.query(SlaTrackerDB)
            .filter(SlaTrackerDB.status.in_(LIVE_STATUSES))
            .order_by(SlaTrackerDB.created_at.desc())
            .all()
        )
        return [t.to_dict() for t in trackers]

    def list_overdue(self) -> List[Dict[str, Any]]:
        """Open trackers that escalated, went dormant or have an OVERDUE milestone."""
        overdue_ids = select(SlaMilestoneDB.tracker_id).where(
            SlaMilestoneDB.status == MilestoneStatus.OVERDUE
        )
        trackers = (
            self.db.query(SlaTrackerDB)
            .filter(
                SlaTrackerDB.status.in_(OPEN_STATUSES),
                (SlaTrackerDB.status.in_((SlaStatus.ESCALATED, SlaStatus.DORMANT)))
                | (SlaTrackerDB.id.in_(overdue_ids)),
            )
            .order_by(SlaTrackerDB.escalation_due)
            .all()
        )
        return [t.to_dict() for t in trackers]

    def dashboard(self) -> Dict[str, Any]:
        trackers = self.db.query(SlaTrackerDB).all()
        by_status = {status.value: 0 for status in SlaStatus}
        for tracker in trackers:
            by_status[tracker.status.value] += 1

        overdue = self.list_overdue()
        return {
            "stats": {
                "total": len(trackers),
                "active": sum(by_status[s.value] for s in LIVE_STATUSES),
                "completed": by_status[SlaStatus.COMPLETED.value],
                "escalated": by_status[SlaStatus.ESCALATED.value],
                "dormant": by_status[SlaStatus.DORMANT.value],
                "overdue": len(overdue),
                "byStatus": by_status,
            },
            "recentOverdue": overdue[:10],
        }

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _advance(self, tracker: SlaTrackerDB, new_status: SlaStatus, notes: str, now: datetime,
                 actor: Actor = SYSTEM_ACTOR) -> None:
        """Forward-only status change along STATUS_ORDER."""
        if STATUS_ORDER.index(new_status) <= STATUS_ORDER.index(tracker.status):
            raise InvalidStage(f"SLA status cannot move from {tracker.status.value} to {new_status.value}")
        tracker.status = new_status
        tracker.status_history = (tracker.status_history or []) + [_history_entry(new_status, actor, notes, now)]

    def _finish(self, tracker: SlaTrackerDB, new_status: SlaStatus, actor: Actor, notes: str,
                now: datetime) -> None:
        """Move an open tracker into a terminal status."""
        if tracker.status in TERMINAL_STATUSES:
            raise InvalidStage(f"SLA tracker is already {tracker.status.value}")
        tracker.status = new_status
        tracker.updated_at = now
        if new_status == SlaStatus.COMPLETED:
            tracker.completed_at = now
            tracker.completed_by = actor.id
        tracker.status_history = (tracker.status_history or []) + [_history_entry(new_status, actor, notes, now)]

    def _mark_overdue(self, tracker: SlaTrackerDB, now: datetime) -> List[str]:
        overdue = []
        for milestone in tracker.milestones:
            if milestone.status == MilestoneStatus.PENDING and now > milestone.target_date:
                milestone.status = MilestoneStatus.OVERDUE
                overdue.append(milestone.key)
        return overdue

    def _send_reminder(self, tracker: SlaTrackerDB, number: int, now: datetime) -> None:
        tracker.reminders = (tracker.reminders or []) + [
            {"reminder": number, "sentAt": now.isoformat(), "type": "email"}
        ]
        target = SlaStatus.REMINDER_1_SENT if number == 1 else SlaStatus.REMINDER_2_SENT
        self._advance(tracker, target, f"Reminder {number} sent", now)

    def _emit(self, kind: str, payload, snapshot: Dict[str, Any]) -> None:
        if kind == "reminder":
            deliver(self.notifier, "sla_reminder", snapshot, payload)
            action, description = AuditAction.SLA_UPDATE, f"SLA reminder {payload} sent"
        elif kind == "escalation":
            deliver(self.notifier, "sla_escalation", snapshot, payload)
            action, description = AuditAction.ESCALATION, f"SLA escalated; overdue milestones: {payload}"
        else:
            deliver(self.notifier, "sla_dormant", snapshot)
            action, description = AuditAction.SLA_BREACH, "SLA tracker marked dormant"

        self._audit(AuditEntry(
            actor=SYSTEM_ACTOR,
            action=action,
            category=AuditCategory.SLA,
            description=description,
            entity_type=AuditEntityType.SLA,
            entity_id=snapshot["id"],
            entity_ref=snapshot["case_number"],
            new_value={"status": snapshot["status"]},
        ))

    def _audit(self, entry: AuditEntry) -> None:
        if self.audit is not None:
            self.audit.record(entry)

    def _audit_denied(self, actor: Actor, action: AuditAction, tracker: Optional[SlaTrackerDB],
                      what: str) -> None:
        self._audit(AuditEntry(
            actor=actor,
            action=action,
            category=AuditCategory.SLA,
            description=f"Denied: {actor.role.value} attempted to {what}",
            entity_type=AuditEntityType.SLA,
            entity_id=tracker.id if tracker else None,
            success=False,
            error_message="Forbidden",
        ))


def _set_deadlines(tracker: SlaTrackerDB) -> None:
    targets = {m.key: m.target_date for m in tracker.milestones}
    tracker.first_reminder_due = targets["day3"]
    tracker.second_reminder_due = targets["day7"]
    tracker.escalation_due = targets["day10"]
    tracker.dormant_due = targets["day14"]


def _history_entry(status: SlaStatus, actor: Actor, notes: str, at: datetime) -> Dict[str, Any]:
    return {
        "status": status.value,
        "changedAt": at.isoformat(),
        "changedBy": actor.id,
        "notes": notes,
    }
