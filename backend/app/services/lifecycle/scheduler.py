"""
Lifecycle Scheduler

AUTHORITY: SYSTEM - runs automatically, no user confirmation required.

Tasks:
- SLA tick: reminders, escalation and dormancy for every live tracker
- Case dormancy sweep: flags non-terminal cases with no activity for
  CASE_DORMANCY_DAYS (advisory only, the case keeps its status)

Every task processes items one transaction at a time; a failure on one item
is logged and the run continues. Runs are idempotent, so overlapping
schedules (external cron plus the in-process loop) are safe.
"""
import asyncio
import logging
import os
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ...models.actor import SYSTEM_ACTOR
from ...models.db_models import CaseDB, AuditAction, AuditCategory, AuditEntityType
from .audit_recorder import AuditEntry, AuditRecorder
from .case_store import CaseStore, commit_or_conflict
from .clock import Clock, system_clock
from .errors import Conflict
from .notifications import Notifier, deliver
from .sla_tracker import SlaTrackerService
from .state_machine import TERMINAL_STATUSES

logger = logging.getLogger(__name__)

CASE_DORMANCY_DAYS = int(os.getenv("CASE_DORMANCY_DAYS", "90"))


class LifecycleScheduler:
    """Periodic driver for the SLA tick and the case dormancy sweep."""

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        audit: Optional[AuditRecorder] = None,
        notifier: Optional[Notifier] = None,
        dormancy_days: int = CASE_DORMANCY_DAYS,
    ):
        self.db = db_session
        self.clock = clock or system_clock
        self.audit = audit
        self.notifier = notifier
        self.dormancy_days = dormancy_days
        self.sla = SlaTrackerService(db_session, self.clock, audit=audit, notifier=notifier)
        self.store = CaseStore(db_session, self.clock)

    def run_sla_tick(self) -> Dict[str, Any]:
        result = self.sla.tick()
        logger.info(
            "SLA tick: processed=%s changed=%s conflicts=%s errors=%s",
            result["processed"], result["changed"], result["conflicts"], result["errors"],
        )
        return {"task": "sla_tick", **result}

    def run_dormancy_sweep(self) -> Dict[str, Any]:
        """Flag cases with no activity for `dormancy_days` as dormant."""
        now = self.clock.now()
        cutoff = now - timedelta(days=self.dormancy_days)
        candidates = self.store.find_dormancy_candidates(cutoff, list(TERMINAL_STATUSES))

        flagged = []
        conflicts = []
        errors = []

        for case_id in candidates:
            try:
                case = self.store.get(case_id)
                # Re-check on the fresh read; a transition may have landed since the scan
                if case.is_dormant or case.status in TERMINAL_STATUSES or case.last_activity_at >= cutoff:
                    continue
                self.store.mark_dormant(case)
                commit_or_conflict(self.db, f"Case {case.case_number}")
            except Conflict:
                self.db.rollback()
                logger.info("Dormancy sweep: case %s changed concurrently, skipped", case_id)
                conflicts.append(case_id)
                continue
            except Exception as e:
                self.db.rollback()
                logger.exception("Dormancy sweep failed for case %s", case_id)
                errors.append({"case_id": case_id, "error": str(e)})
                continue

            snapshot = case.to_dict(include_history=False)
            flagged.append(case_id)
            deliver(self.notifier, "case_dormant", snapshot)
            if self.audit is not None:
                self.audit.record(AuditEntry(
                    actor=SYSTEM_ACTOR,
                    action=AuditAction.CASE_UPDATE,
                    category=AuditCategory.SYSTEM,
                    description=f"Case {snapshot['case_number']} flagged dormant "
                                f"(no activity for {self.dormancy_days} days)",
                    entity_type=AuditEntityType.CASE,
                    entity_id=case_id,
                    entity_ref=snapshot["case_number"],
                    previous_value={"is_dormant": False},
                    new_value={"is_dormant": True, "status": snapshot["status"]},
                ))

        logger.info("Dormancy sweep: candidates=%s flagged=%s conflicts=%s errors=%s",
                    len(candidates), len(flagged), len(conflicts), len(errors))
        return {
            "task": "dormancy_sweep",
            "run_date": now.isoformat(),
            "processed": len(candidates),
            "changed": len(flagged),
            "conflicts": len(conflicts),
            "errors": len(errors),
            "details": {
                "flagged": flagged,
                "conflicts": conflicts,
                "errors": errors,
            },
        }

    def run_all(self) -> Dict[str, Any]:
        return {
            "run_date": self.clock.now().isoformat(),
            "sla_tick": self.run_sla_tick(),
            "dormancy_sweep": self.run_dormancy_sweep(),
        }


class PeriodicScheduler:
    """
    In-process background loop for deployments without an external cron.

    Each run opens its own session and executes in a worker thread so the
    event loop is never blocked by database work.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        interval_seconds: float,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.clock = clock or system_clock
        self.notifier = notifier
        self.audit = AuditRecorder(session_factory, self.clock)
        self._task: Optional[asyncio.Task] = None

    def run_once(self) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            scheduler = LifecycleScheduler(db, self.clock, audit=self.audit, notifier=self.notifier)
            return scheduler.run_all()
        finally:
            db.close()

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                logger.exception("Scheduled lifecycle run failed")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None:
            logger.info("Starting lifecycle scheduler (every %ss)", self.interval_seconds)
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
