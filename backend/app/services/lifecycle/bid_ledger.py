"""
Bid Ledger

NBFC offers against a case in the bidding stage, and the single-winner
commercial lock.

Rules:
- Bids are accepted only while the case is CWCAF_READY, BID_PLACED or NEGOTIATION_IN_PROGRESS
- The first bid moves the case to BID_PLACED; the first counter offer to NEGOTIATION_IN_PROGRESS
- accept_bid is the only writer of Case.locked_terms; a second accept raises AlreadyLocked
- ACCEPTED, SUPERSEDED and WITHDRAWN bids never change again
- Every bid write also touches the case row, so bids and the lock serialize on the case version
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.actor import Actor
from ...models.db_models import (
    BidDB, CaseDB, BidStatus, CaseStatus, ActorRole,
    AuditAction, AuditCategory, AuditEntityType,
)
from .audit_recorder import AuditEntry, AuditRecorder
from .case_store import commit_or_conflict
from .clock import Clock, system_clock
from .errors import AlreadyLocked, Forbidden, InvalidStage, NotFound, ValidationError
from .notifications import Notifier, deliver
from .state_machine import BIDDING_STATUSES, TransitionAuthority

logger = logging.getLogger(__name__)

ACCEPT_ROLES = frozenset({ActorRole.OPS, ActorRole.ADMIN, ActorRole.FOUNDER})
NEGOTIATE_ROLES = ACCEPT_ROLES | {ActorRole.NBFC, ActorRole.SUBCONTRACTOR}


class BidLedger:
    """Places, negotiates, withdraws and accepts bids."""

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        audit: Optional[AuditRecorder] = None,
        notifier: Optional[Notifier] = None,
        authority: Optional[TransitionAuthority] = None,
    ):
        self.db = db_session
        self.clock = clock or system_clock
        self.audit = audit
        self.notifier = notifier
        self.authority = authority or TransitionAuthority(db_session, self.clock, audit=audit)

    # =========================================================================
    # COMMANDS
    # =========================================================================

    def place_bid(self, case_id: str, bid_amount: float, duration_days: int, actor: Actor) -> Dict[str, Any]:
        """Record an NBFC offer. The first bid on a case moves it to BID_PLACED."""
        case = self.authority.store.get(case_id)

        if actor.role != ActorRole.NBFC:
            self._audit_denied(actor, AuditAction.BID_CREATE, case.id, case.case_number, "place a bid")
            raise Forbidden(f"Role {actor.role.value} cannot place bids")
        if case.status not in BIDDING_STATUSES:
            raise InvalidStage(f"Case {case.case_number} is {case.status.value}; bids are not open")
        if bid_amount is None or bid_amount <= 0:
            raise ValidationError("bid_amount must be positive")
        if duration_days is None or duration_days <= 0:
            raise ValidationError("funding_duration_days must be positive")

        now = self.clock.now()
        bid = BidDB(
            id=str(uuid4()),
            case_id=case.id,
            placed_by=actor.id,
            placed_by_name=actor.name,
            bid_amount=bid_amount,
            funding_duration_days=duration_days,
            status=BidStatus.PLACED,
            negotiations=[],
            status_history=[_history_entry(BidStatus.PLACED, actor, "Bid placed", now)],
            created_at=now,
            updated_at=now,
        )
        self.db.add(bid)

        moved = None
        if case.status == CaseStatus.CWCAF_READY:
            moved = self._move(case, CaseStatus.BID_PLACED, actor, f"First bid placed by {actor.name or actor.id}")
        else:
            _touch(case, now)

        commit_or_conflict(self.db, f"Case {case.case_number}")
        self._record_move(case, moved, actor)
        result = bid.to_dict()
        case_dict = case.to_dict(include_history=False)

        logger.info("Bid %s placed on case %s by %s", bid.id, case.case_number, actor.id)
        deliver(self.notifier, "bid_placed", case_dict, result)
        self._audit(AuditEntry(
            actor=actor,
            action=AuditAction.BID_CREATE,
            category=AuditCategory.BID,
            description=f"Bid of {bid_amount:,.2f} for {duration_days} days placed on {case.case_number}",
            entity_type=AuditEntityType.BID,
            entity_id=bid.id,
            entity_ref=case.case_number,
            details={"case_id": case.id, "case_status": case_dict["status"]},
            new_value={"bid_amount": bid_amount, "funding_duration_days": duration_days},
        ))
        return result

    def negotiate(
        self,
        bid_id: str,
        counter_amount: float,
        counter_duration: int,
        actor: Actor,
        message: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append a counter offer to a PLACED bid."""
        bid = self.get_bid_row(bid_id)
        case = bid.case

        if actor.role not in NEGOTIATE_ROLES or (actor.role == ActorRole.NBFC and bid.placed_by != actor.id):
            self._audit_denied(actor, AuditAction.BID_NEGOTIATE, bid.id, case.case_number, "negotiate a bid")
            raise Forbidden(f"{actor.role.value} {actor.id} cannot negotiate bid {bid_id}")
        if bid.status != BidStatus.PLACED:
            raise InvalidStage(f"Bid is {bid.status.value} and is not open for negotiation")
        if case.status not in (CaseStatus.BID_PLACED, CaseStatus.NEGOTIATION_IN_PROGRESS):
            raise InvalidStage(f"Case {case.case_number} is {case.status.value}; negotiation is closed")
        if counter_amount is None or counter_amount <= 0:
            raise ValidationError("counter_amount must be positive")
        if counter_duration is None or counter_duration <= 0:
            raise ValidationError("counter_duration must be positive")

        now = self.clock.now()
        bid.negotiations = (bid.negotiations or []) + [{
            "counterAmount": counter_amount,
            "counterDuration": counter_duration,
            "proposedBy": actor.id,
            "proposedByRole": actor.role.value,
            "message": message,
            "createdAt": now.isoformat(),
        }]
        bid.updated_at = now

        moved = None
        if case.status == CaseStatus.BID_PLACED:
            moved = self._move(case, CaseStatus.NEGOTIATION_IN_PROGRESS, actor, "Counter offer made")
        else:
            _touch(case, now)

        commit_or_conflict(self.db, f"Bid {bid_id}")
        self._record_move(case, moved, actor)
        result = bid.to_dict()

        self._audit(AuditEntry(
            actor=actor,
            action=AuditAction.BID_NEGOTIATE,
            category=AuditCategory.BID,
            description=f"Counter offer {counter_amount:,.2f} / {counter_duration} days on {case.case_number}",
            entity_type=AuditEntityType.BID,
            entity_id=bid.id,
            entity_ref=case.case_number,
            details={"message": message},
            new_value={"counterAmount": counter_amount, "counterDuration": counter_duration},
        ))
        return result

    def accept_bid(self, bid_id: str, actor: Actor) -> Dict[str, Any]:
        """
        Accept one bid and lock commercial terms on the case.

        The accepted bid, superseded siblings, locked terms and the
        COMMERCIAL_LOCKED transition are committed together.
        """
        bid = self.get_bid_row(bid_id)
        case = bid.case

        if actor.role not in ACCEPT_ROLES:
            self._audit_denied(actor, AuditAction.BID_ACCEPT, bid.id, case.case_number, "accept a bid")
            raise Forbidden(f"Role {actor.role.value} cannot accept bids")
        if case.locked_terms:
            raise AlreadyLocked(f"Commercial terms for {case.case_number} are already locked")
        if bid.status != BidStatus.PLACED:
            raise InvalidStage(f"Bid is {bid.status.value} and cannot be accepted")
        if case.status not in (CaseStatus.BID_PLACED, CaseStatus.NEGOTIATION_IN_PROGRESS):
            raise InvalidStage(f"Case {case.case_number} is {case.status.value}; bids cannot be accepted")

        now = self.clock.now()
        last_counter = bid.negotiations[-1] if bid.negotiations else None
        final_amount = last_counter["counterAmount"] if last_counter else bid.bid_amount
        final_duration = last_counter["counterDuration"] if last_counter else bid.funding_duration_days
        locked_terms = {
            "finalAmount": final_amount,
            "finalDuration": final_duration,
            "bidId": bid.id,
            "lockedAt": now.isoformat(),
        }

        bid.status = BidStatus.ACCEPTED
        bid.locked_terms = locked_terms
        bid.updated_at = now
        bid.status_history = (bid.status_history or []) + [
            _history_entry(BidStatus.ACCEPTED, actor, "Terms locked", now)
        ]

        superseded = []
        for sibling in case.bids:
            if sibling.id == bid.id or sibling.status != BidStatus.PLACED:
                continue
            sibling.status = BidStatus.SUPERSEDED
            sibling.updated_at = now
            sibling.status_history = (sibling.status_history or []) + [
                _history_entry(BidStatus.SUPERSEDED, actor, f"Bid {bid.id} accepted", now)
            ]
            superseded.append(sibling.id)

        case.locked_terms = locked_terms
        case.locked_at = now
        moved = self._move(case, CaseStatus.COMMERCIAL_LOCKED, actor, f"Bid {bid.id} accepted")

        commit_or_conflict(self.db, f"Case {case.case_number}")
        self._record_move(case, moved, actor)
        result = bid.to_dict()

        logger.info("Case %s locked on bid %s (%s superseded)", case.case_number, bid.id, len(superseded))
        self._audit(AuditEntry(
            actor=actor,
            action=AuditAction.BID_ACCEPT,
            category=AuditCategory.BID,
            description=f"Bid accepted for {case.case_number}: {final_amount:,.2f} for {final_duration} days",
            entity_type=AuditEntityType.BID,
            entity_id=bid.id,
            entity_ref=case.case_number,
            details={"superseded": superseded, "case_id": case.id},
            previous_value={"status": BidStatus.PLACED.value},
            new_value={"status": BidStatus.ACCEPTED.value, "locked_terms": locked_terms},
        ))
        return {"bid": result, "case": case.to_dict(), "superseded": superseded}

    def withdraw_bid(self, bid_id: str, actor: Actor, notes: Optional[str] = None) -> Dict[str, Any]:
        """Only the NBFC that placed a PLACED bid may withdraw it."""
        bid = self.get_bid_row(bid_id)
        case = bid.case

        if actor.role != ActorRole.NBFC or bid.placed_by != actor.id:
            self._audit_denied(actor, AuditAction.BID_WITHDRAW, bid.id, case.case_number, "withdraw a bid")
            raise Forbidden("Only the NBFC that placed a bid can withdraw it")
        if bid.status != BidStatus.PLACED:
            raise InvalidStage(f"Bid is {bid.status.value} and cannot be withdrawn")

        now = self.clock.now()
        bid.status = BidStatus.WITHDRAWN
        bid.updated_at = now
        bid.status_history = (bid.status_history or []) + [
            _history_entry(BidStatus.WITHDRAWN, actor, notes or "Withdrawn by NBFC", now)
        ]
        _touch(case, now)

        commit_or_conflict(self.db, f"Bid {bid_id}")
        result = bid.to_dict()

        self._audit(AuditEntry(
            actor=actor,
            action=AuditAction.BID_WITHDRAW,
            category=AuditCategory.BID,
            description=f"Bid withdrawn from {case.case_number}",
            entity_type=AuditEntityType.BID,
            entity_id=bid.id,
            entity_ref=case.case_number,
            previous_value={"status": BidStatus.PLACED.value},
            new_value={"status": BidStatus.WITHDRAWN.value},
        ))
        return result

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_bid_row(self, bid_id: str) -> BidDB:
        bid = self.db.get(BidDB, bid_id)
        if bid is None:
            raise NotFound(f"Bid {bid_id} not found")
        return bid

    def get_bid(self, bid_id: str) -> Dict[str, Any]:
        return self.get_bid_row(bid_id).to_dict()

    def list_bids_for_case(self, case_id: str) -> List[Dict[str, Any]]:
        self.authority.store.get(case_id)
        bids = (
            self.db.query(BidDB)
            .filter(BidDB.case_id == case_id)
            .order_by(BidDB.created_at.desc())
            .all()
        )
        return [b.to_dict() for b in bids]

    def list_my_bids(self, actor: Actor) -> List[Dict[str, Any]]:
        bids = (
            self.db.query(BidDB)
            .filter(BidDB.placed_by == actor.id)
            .order_by(BidDB.created_at.desc())
            .all()
        )
        return [b.to_dict() for b in bids]

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _move(self, case: CaseDB, target: CaseStatus, actor: Actor, notes: str) -> Dict[str, Any]:
        previous = case.status
        effects = self.authority.apply_ledger_transition(case, target, actor, notes)
        return {"previous": previous, "target": target, "effects": effects, "notes": notes}

    def _record_move(self, case: CaseDB, moved: Optional[Dict[str, Any]], actor: Actor) -> None:
        if moved is not None:
            self.authority.record_transition(
                case, moved["previous"], moved["target"], actor, moved["effects"], moved["notes"]
            )

    def _audit(self, entry: AuditEntry) -> None:
        if self.audit is not None:
            self.audit.record(entry)

    def _audit_denied(self, actor: Actor, action: AuditAction, entity_id: str, case_number: str,
                      what: str) -> None:
        self._audit(AuditEntry(
            actor=actor,
            action=action,
            category=AuditCategory.BID,
            description=f"Denied: {actor.role.value} attempted to {what}",
            entity_type=AuditEntityType.BID,
            entity_id=entity_id,
            entity_ref=case_number,
            success=False,
            error_message="Forbidden",
        ))


def _touch(case: CaseDB, now: datetime) -> None:
    case.updated_at = now
    case.last_activity_at = now
    case.is_dormant = False
    case.dormant_since = None


def _history_entry(status: BidStatus, actor: Actor, notes: str, at: datetime) -> Dict[str, Any]:
    return {
        "status": status.value,
        "changedAt": at.isoformat(),
        "changedBy": actor.id,
        "notes": notes,
    }
