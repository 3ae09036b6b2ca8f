"""
Case Store

Persistence for the Case aggregate.

Every write is conditioned on the version that was read (SQLAlchemy
version_id_col); a losing writer gets Conflict and must reload. The store
never changes `status` on its own - that is the Transition Authority's job.
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ...models.actor import Actor
from ...models.db_models import CaseDB, CaseStatusHistoryDB, CaseStatus
from .clock import Clock, system_clock
from .errors import Conflict, NotFound

logger = logging.getLogger(__name__)

CASE_NUMBER_PREFIX = "GRY"


def format_case_number(sequence_no: int) -> str:
    return f"{CASE_NUMBER_PREFIX}-{sequence_no:06d}"


def commit_or_conflict(db: Session, what: str) -> None:
    """
    Commit the session, translating lost optimistic races into Conflict.

    StaleDataError: a versioned row changed since it was read.
    IntegrityError: a concurrently issued unique value (case number, history
    sequence) collided.
    """
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        logger.info("Version conflict while saving %s", what)
        raise Conflict(f"{what} was modified concurrently; reload and retry")
    except IntegrityError:
        db.rollback()
        logger.info("Uniqueness conflict while saving %s", what)
        raise Conflict(f"{what} collided with a concurrent write; reload and retry")


class CaseStore:
    """Reads and writes Case aggregates within one session."""

    def __init__(self, db_session: Session, clock: Optional[Clock] = None):
        self.db = db_session
        self.clock = clock or system_clock

    # =========================================================================
    # CREATION
    # =========================================================================

    def next_sequence_no(self) -> int:
        current = self.db.query(func.max(CaseDB.sequence_no)).scalar()
        return (current or 0) + 1

    def create(
        self,
        status: CaseStatus,
        actor: Actor,
        sub_contractor_id: Optional[str] = None,
        epc_id: Optional[str] = None,
        bill_id: Optional[str] = None,
        cwc_rf_id: Optional[str] = None,
        deal_value: Optional[float] = None,
        case_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> CaseDB:
        """
        Stage a new case with its first history entry. Caller commits.
        """
        now = self.clock.now()
        sequence_no = self.next_sequence_no()

        case = CaseDB(
            id=str(uuid4()),
            sequence_no=sequence_no,
            case_number=case_number or format_case_number(sequence_no),
            status=status,
            sub_contractor_id=sub_contractor_id,
            epc_id=epc_id,
            bill_id=bill_id,
            cwc_rf_id=cwc_rf_id,
            deal_value=deal_value,
            last_activity_at=now,
            is_dormant=False,
            created_at=now,
            updated_at=now,
        )
        self.db.add(case)
        self.append_history(case, status, actor, notes or "Case created", now)
        return case

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, case_id: str) -> CaseDB:
        case = self.db.get(CaseDB, case_id)
        if case is None:
            raise NotFound(f"Case {case_id} not found")
        return case

    def get_by_number(self, case_number: str) -> CaseDB:
        case = self.db.query(CaseDB).filter(CaseDB.case_number == case_number).first()
        if case is None:
            raise NotFound(f"Case {case_number} not found")
        return case

    def list(
        self,
        status: Optional[CaseStatus] = None,
        epc_id: Optional[str] = None,
        sub_contractor_id: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Dict[str, Any]:
        page = max(page, 1)
        limit = max(min(limit, 200), 1)

        query = self.db.query(CaseDB)
        if status:
            query = query.filter(CaseDB.status == status)
        if epc_id:
            query = query.filter(CaseDB.epc_id == epc_id)
        if sub_contractor_id:
            query = query.filter(CaseDB.sub_contractor_id == sub_contractor_id)

        total = query.count()
        cases = (
            query.order_by(CaseDB.sequence_no.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "cases": [c.to_dict(include_history=False) for c in cases],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }

    def find_dormancy_candidates(self, cutoff: datetime, excluded: List[CaseStatus]) -> List[str]:
        """IDs of non-dormant cases with no activity since `cutoff`."""
        rows = (
            self.db.query(CaseDB.id)
            .filter(
                CaseDB.is_dormant.is_(False),
                CaseDB.last_activity_at < cutoff,
                CaseDB.status.notin_(excluded),
            )
            .order_by(CaseDB.last_activity_at)
            .all()
        )
        return [row[0] for row in rows]

    # =========================================================================
    # WRITES (staged; caller commits through commit_or_conflict)
    # =========================================================================

    def append_history(
        self,
        case: CaseDB,
        status: CaseStatus,
        actor: Actor,
        notes: Optional[str],
        at: datetime,
    ) -> CaseStatusHistoryDB:
        entry = CaseStatusHistoryDB(
            id=str(uuid4()),
            sequence=len(case.status_history) + 1,
            status=status,
            changed_at=at,
            changed_by_user_id=actor.id,
            changed_by_role=actor.role,
            notes=notes,
        )
        case.status_history.append(entry)
        return entry

    def mark_dormant(self, case: CaseDB) -> None:
        now = self.clock.now()
        case.is_dormant = True
        case.dormant_since = now
        case.updated_at = now
