"""
Case Lifecycle State Machine (Transition Authority)

The only writer of Case.status.

State flow:
    LEAD_CREATED → CREDENTIALS_CREATED → DOCS_SUBMITTED (⇄ ACTION_REQUIRED)
    → KYC_COMPLETED → READY_FOR_COMPANY_REVIEW → EPC_VERIFIED | EPC_REJECTED
    → RMT_QUEUE → RMT_DOCUMENT_REVIEW (⇄ RMT_PENDING_DOCS) → RMT_RISK_ANALYSIS
    → RMT_APPROVED | RMT_REJECTED → CWCAF_READY → BID_PLACED
    → NEGOTIATION_IN_PROGRESS → COMMERCIAL_LOCKED → SHARED_WITH_NBFC → DISBURSED

Gating rules:
- TRANSITION_TABLE is the single source of legality: (from, to) -> permitted roles
- Missing edge -> InvalidTransition; role outside the edge's set -> Forbidden (audited)
- BID_PLACED / NEGOTIATION_IN_PROGRESS / COMMERCIAL_LOCKED are entered only through the Bid Ledger
- Any non-terminal case may be CANCELLED by ops/admin/founder
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional

from sqlalchemy.orm import Session

from ...models.actor import Actor
from ...models.db_models import (
    CaseDB, CaseStatus, ActorRole,
    AuditAction, AuditCategory, AuditEntityType,
)
from .audit_recorder import AuditEntry, AuditRecorder
from .case_store import CaseStore, commit_or_conflict
from .clock import Clock, system_clock
from .errors import Conflict, Forbidden, InvalidStage, InvalidTransition, ValidationError
from .sla_tracker import SlaTrackerService, STAGE_SLA_CLASSES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Edge:
    roles: FrozenSet[ActorRole]
    bid_ledger_only: bool = False


def _roles(*roles: ActorRole) -> FrozenSet[ActorRole]:
    return frozenset(roles)


S = CaseStatus
R = ActorRole

MANAGEMENT = _roles(R.OPS, R.ADMIN, R.FOUNDER)
INTERNAL_INTAKE = _roles(R.SALES, R.OPS, R.ADMIN, R.FOUNDER)

TERMINAL_STATUSES = frozenset({
    S.EPC_REJECTED,
    S.RMT_REJECTED,
    S.CANCELLED,
    S.DISBURSED,
})

BIDDING_STATUSES = frozenset({
    S.CWCAF_READY,
    S.BID_PLACED,
    S.NEGOTIATION_IN_PROGRESS,
})

# Statuses a case may be created in
INITIAL_STATUSES = (S.LEAD_CREATED, S.READY_FOR_COMPANY_REVIEW)

# (current_status, target_status) -> Edge
TRANSITION_TABLE: Dict[tuple, Edge] = {
    # Onboarding
    (S.LEAD_CREATED, S.CREDENTIALS_CREATED): Edge(INTERNAL_INTAKE),
    (S.CREDENTIALS_CREATED, S.DOCS_SUBMITTED): Edge(INTERNAL_INTAKE | {R.SUBCONTRACTOR}),
    (S.DOCS_SUBMITTED, S.ACTION_REQUIRED): Edge(MANAGEMENT),
    (S.ACTION_REQUIRED, S.DOCS_SUBMITTED): Edge(MANAGEMENT | {R.SUBCONTRACTOR}),
    (S.DOCS_SUBMITTED, S.KYC_COMPLETED): Edge(MANAGEMENT),
    (S.KYC_COMPLETED, S.READY_FOR_COMPANY_REVIEW): Edge(MANAGEMENT),

    # EPC validation
    (S.READY_FOR_COMPANY_REVIEW, S.EPC_VERIFIED): Edge(MANAGEMENT | {R.EPC}),
    (S.READY_FOR_COMPANY_REVIEW, S.EPC_REJECTED): Edge(MANAGEMENT | {R.EPC}),
    (S.EPC_VERIFIED, S.RMT_QUEUE): Edge(MANAGEMENT),

    # Risk assessment
    (S.RMT_QUEUE, S.RMT_DOCUMENT_REVIEW): Edge(_roles(R.RMT)),
    (S.RMT_DOCUMENT_REVIEW, S.RMT_PENDING_DOCS): Edge(_roles(R.RMT)),
    (S.RMT_PENDING_DOCS, S.RMT_DOCUMENT_REVIEW): Edge(_roles(R.RMT)),
    (S.RMT_DOCUMENT_REVIEW, S.RMT_RISK_ANALYSIS): Edge(_roles(R.RMT)),
    (S.RMT_RISK_ANALYSIS, S.RMT_APPROVED): Edge(_roles(R.RMT)),
    (S.RMT_RISK_ANALYSIS, S.RMT_REJECTED): Edge(_roles(R.RMT)),
    (S.RMT_APPROVED, S.CWCAF_READY): Edge(MANAGEMENT | {R.RMT}),

    # Bidding (Bid Ledger only)
    (S.CWCAF_READY, S.BID_PLACED): Edge(_roles(R.NBFC), bid_ledger_only=True),
    (S.BID_PLACED, S.NEGOTIATION_IN_PROGRESS): Edge(
        MANAGEMENT | {R.NBFC, R.SUBCONTRACTOR}, bid_ledger_only=True
    ),
    (S.BID_PLACED, S.COMMERCIAL_LOCKED): Edge(MANAGEMENT, bid_ledger_only=True),
    (S.NEGOTIATION_IN_PROGRESS, S.COMMERCIAL_LOCKED): Edge(MANAGEMENT, bid_ledger_only=True),

    # Closing
    (S.COMMERCIAL_LOCKED, S.SHARED_WITH_NBFC): Edge(MANAGEMENT),
    (S.SHARED_WITH_NBFC, S.DISBURSED): Edge(MANAGEMENT),
}

# Cancellation is available from every non-terminal status
for _status in CaseStatus:
    if _status not in TERMINAL_STATUSES:
        TRANSITION_TABLE[(_status, S.CANCELLED)] = Edge(MANAGEMENT)

RISK_RECOMMENDATIONS = {
    "approve": S.RMT_APPROVED,
    "reject": S.RMT_REJECTED,
    "needs_review": None,
}
RISK_LEVELS = ("LOW", "MEDIUM", "HIGH", "CRITICAL")


class TransitionAuthority:
    """
    Validates and applies case status transitions.

    Status, history and SLA side effects are committed together; the audit
    row is written afterwards through the AuditRecorder.
    """

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        audit: Optional[AuditRecorder] = None,
        sla: Optional[SlaTrackerService] = None,
    ):
        self.db = db_session
        self.clock = clock or system_clock
        self.audit = audit
        self.store = CaseStore(db_session, self.clock)
        self.sla = sla or SlaTrackerService(db_session, self.clock)

    # =========================================================================
    # TABLE LOOKUPS
    # =========================================================================

    @staticmethod
    def edge(current: CaseStatus, target: CaseStatus) -> Optional[Edge]:
        return TRANSITION_TABLE.get((current, target))

    def allowed_targets(self, case_id: str, actor: Actor) -> List[str]:
        """Targets this actor may request directly from the case's current status."""
        case = self.store.get(case_id)
        return [
            target.value
            for (current, target), edge in TRANSITION_TABLE.items()
            if current == case.status and not edge.bid_ledger_only and actor.role in edge.roles
        ]

    # =========================================================================
    # COMMANDS
    # =========================================================================

    def create_case(
        self,
        actor: Actor,
        status: CaseStatus = CaseStatus.LEAD_CREATED,
        sub_contractor_id: Optional[str] = None,
        epc_id: Optional[str] = None,
        bill_id: Optional[str] = None,
        cwc_rf_id: Optional[str] = None,
        deal_value: Optional[float] = None,
        case_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Open a new case, with its stage tracker when it starts in verification."""
        if actor.role not in INTERNAL_INTAKE:
            self._audit_denied(actor, AuditAction.CASE_CREATE, None, "create a case")
            raise Forbidden(f"Role {actor.role.value} cannot create cases")
        if status not in INITIAL_STATUSES:
            raise ValidationError(
                f"Cases start in {' or '.join(s.value for s in INITIAL_STATUSES)}, not {status.value}"
            )
        if deal_value is not None and deal_value <= 0:
            raise ValidationError("deal_value must be positive")

        case = self.store.create(
            status=status,
            actor=actor,
            sub_contractor_id=sub_contractor_id,
            epc_id=epc_id,
            bill_id=bill_id,
            cwc_rf_id=cwc_rf_id,
            deal_value=deal_value,
            case_number=case_number,
            notes=notes,
        )
        effects = self._apply_side_effects(case, status, actor)
        commit_or_conflict(self.db, "Case")
        result = case.to_dict()

        logger.info("Case %s created in %s by %s", case.case_number, status.value, actor.id)
        self._audit(AuditEntry(
            actor=actor,
            action=AuditAction.CASE_CREATE,
            category=AuditCategory.CASE,
            description=f"Case {case.case_number} created",
            entity_type=AuditEntityType.CASE,
            entity_id=case.id,
            entity_ref=case.case_number,
            details={"sla": effects},
            new_value={"status": status.value},
        ))
        return result

    def transition(
        self,
        case_id: str,
        target: CaseStatus,
        actor: Actor,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Move a case along one edge of TRANSITION_TABLE.

        Raises:
            InvalidTransition: no such edge, or the edge belongs to the Bid Ledger
            Forbidden: actor role not permitted on the edge
            Conflict: expected_version is stale or a concurrent write won
        """
        case = self.store.get(case_id)
        previous = case.status

        edge = self.edge(previous, target)
        if edge is None:
            raise InvalidTransition(f"No transition from {previous.value} to {target.value}")
        if edge.bid_ledger_only:
            raise InvalidTransition(f"{target.value} can only be reached through the bid ledger")
        if actor.role not in edge.roles:
            self._audit_denied(actor, AuditAction.CASE_STATUS_CHANGE, case,
                               f"move case from {previous.value} to {target.value}")
            raise Forbidden(f"Role {actor.role.value} cannot move a case from {previous.value} to {target.value}")
        if expected_version is not None and expected_version != case.version:
            raise Conflict(
                f"Case {case.case_number} is at version {case.version}, not {expected_version}; reload and retry"
            )

        effects = self._apply(case, target, actor, notes)
        commit_or_conflict(self.db, f"Case {case.case_number}")
        result = case.to_dict()

        logger.info("Case %s: %s -> %s by %s (%s)",
                    case.case_number, previous.value, target.value, actor.id, actor.role.value)
        self.record_transition(case, previous, target, actor, effects, notes)
        return result

    def assess_risk(
        self,
        case_id: str,
        actor: Actor,
        risk_score: int,
        risk_level: str,
        recommendation: str,
        assessment: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Record the RMT assessment of a case in RMT_RISK_ANALYSIS.

        approve / reject move the case to RMT_APPROVED / RMT_REJECTED;
        needs_review stores the assessment and leaves the status alone.
        """
        case = self.store.get(case_id)
        if actor.role != ActorRole.RMT:
            self._audit_denied(actor, AuditAction.RISK_ASSESSMENT, case, "submit a risk assessment")
            raise Forbidden(f"Role {actor.role.value} cannot submit risk assessments")
        if case.status != S.RMT_RISK_ANALYSIS:
            raise InvalidStage(f"Risk assessment requires RMT_RISK_ANALYSIS, case is {case.status.value}")
        if recommendation not in RISK_RECOMMENDATIONS:
            raise ValidationError(f"Unknown recommendation: {recommendation}")
        if risk_level not in RISK_LEVELS:
            raise ValidationError(f"Unknown risk level: {risk_level}")
        if not 0 <= risk_score <= 100:
            raise ValidationError("risk_score must be between 0 and 100")

        now = self.clock.now()
        previous = case.status
        case.risk_assessment = {
            "riskScore": risk_score,
            "riskLevel": risk_level,
            "assessment": assessment,
            "recommendation": recommendation,
            "notes": notes,
            "assessedBy": actor.id,
            "assessedAt": now.isoformat(),
        }

        effects = None
        target = RISK_RECOMMENDATIONS[recommendation]
        if target is not None:
            effects = self._apply(case, target, actor, notes or f"Risk assessment: {recommendation}")
        else:
            case.last_activity_at = now
            case.updated_at = now

        commit_or_conflict(self.db, f"Case {case.case_number}")
        result = case.to_dict()

        self._audit(AuditEntry(
            actor=actor,
            action=AuditAction.RISK_ASSESSMENT,
            category=AuditCategory.RISK,
            description=f"Risk assessment for {case.case_number}: {risk_level} ({recommendation})",
            entity_type=AuditEntityType.CASE,
            entity_id=case.id,
            entity_ref=case.case_number,
            details={"risk_assessment": case.risk_assessment, "sla": effects},
            previous_value={"status": previous.value},
            new_value={"status": result["status"]},
        ))
        return result

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def apply_ledger_transition(self, case: CaseDB, target: CaseStatus, actor: Actor,
                                notes: Optional[str] = None) -> Dict[str, Any]:
        """
        Stage a Bid Ledger transition (BID_PLACED, NEGOTIATION_IN_PROGRESS,
        COMMERCIAL_LOCKED). The ledger commits it together with its bid writes.
        """
        edge = self.edge(case.status, target)
        if edge is None:
            raise InvalidTransition(f"No transition from {case.status.value} to {target.value}")
        if actor.role not in edge.roles:
            raise Forbidden(
                f"Role {actor.role.value} cannot move a case from {case.status.value} to {target.value}"
            )
        return self._apply(case, target, actor, notes)

    def record_transition(self, case: CaseDB, previous: CaseStatus, target: CaseStatus, actor: Actor,
                          effects: Optional[Dict[str, Any]] = None, notes: Optional[str] = None) -> None:
        """Audit a committed status change on the case entity."""
        self._audit(AuditEntry(
            actor=actor,
            action=AuditAction.CASE_CLOSE if target == S.CANCELLED else AuditAction.CASE_STATUS_CHANGE,
            category=AuditCategory.CASE,
            description=f"Case {case.case_number} moved from {previous.value} to {target.value}",
            entity_type=AuditEntityType.CASE,
            entity_id=case.id,
            entity_ref=case.case_number,
            details={"notes": notes, "sla": effects},
            previous_value={"status": previous.value},
            new_value={"status": target.value, "version": case.version},
        ))

    def _apply(self, case: CaseDB, target: CaseStatus, actor: Actor, notes: Optional[str]) -> Dict[str, Any]:
        """Set status, append history, apply SLA side effects. No commit."""
        now = self.clock.now()
        case.status = target
        case.updated_at = now
        case.last_activity_at = now
        case.is_dormant = False
        case.dormant_since = None
        self.store.append_history(case, target, actor, notes, now)
        return self._apply_side_effects(case, target, actor)

    def _apply_side_effects(self, case: CaseDB, status: CaseStatus, actor: Actor) -> Dict[str, Any]:
        effects = {"opened": None, "closed": [], "cancelled": []}
        if status in STAGE_SLA_CLASSES:
            tracker, closed = self.sla.open_stage_tracker(case, status, actor)
            effects["opened"] = tracker.id
            effects["closed"] = closed
        elif status in TERMINAL_STATUSES:
            effects["cancelled"] = self.sla.cancel_open_trackers(
                case.id, actor, f"Case reached {status.value}"
            )
        return effects

    def _audit(self, entry: AuditEntry) -> None:
        if self.audit is not None:
            self.audit.record(entry)

    def _audit_denied(self, actor: Actor, action: AuditAction, case: Optional[CaseDB], what: str) -> None:
        self._audit(AuditEntry(
            actor=actor,
            action=action,
            category=AuditCategory.CASE,
            description=f"Denied: {actor.role.value} attempted to {what}",
            entity_type=AuditEntityType.CASE,
            entity_id=case.id if case else None,
            entity_ref=case.case_number if case else None,
            success=False,
            error_message="Forbidden",
        ))
