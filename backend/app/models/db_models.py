"""
Gryork Case Engine - SQLAlchemy ORM Models
PostgreSQL database models for the case lifecycle, SLA trackers, bids and audit log
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey, Boolean,
    UniqueConstraint, Enum as SQLEnum, event,
)
from sqlalchemy.orm import relationship
from ..database import Base


def _utcnow() -> datetime:
    """Naive UTC timestamp (all columns store UTC without tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


# =============================================================================
# ENUMS - CLOSED VOCABULARIES
# =============================================================================

class CaseStatus(str, Enum):
    """Lifecycle states of a financing case."""
    LEAD_CREATED = "LEAD_CREATED"
    CREDENTIALS_CREATED = "CREDENTIALS_CREATED"
    DOCS_SUBMITTED = "DOCS_SUBMITTED"
    ACTION_REQUIRED = "ACTION_REQUIRED"
    KYC_COMPLETED = "KYC_COMPLETED"
    READY_FOR_COMPANY_REVIEW = "READY_FOR_COMPANY_REVIEW"
    EPC_VERIFIED = "EPC_VERIFIED"
    EPC_REJECTED = "EPC_REJECTED"
    RMT_QUEUE = "RMT_QUEUE"
    RMT_DOCUMENT_REVIEW = "RMT_DOCUMENT_REVIEW"
    RMT_PENDING_DOCS = "RMT_PENDING_DOCS"
    RMT_RISK_ANALYSIS = "RMT_RISK_ANALYSIS"
    RMT_APPROVED = "RMT_APPROVED"
    RMT_REJECTED = "RMT_REJECTED"
    CWCAF_READY = "CWCAF_READY"
    BID_PLACED = "BID_PLACED"
    NEGOTIATION_IN_PROGRESS = "NEGOTIATION_IN_PROGRESS"
    COMMERCIAL_LOCKED = "COMMERCIAL_LOCKED"
    SHARED_WITH_NBFC = "SHARED_WITH_NBFC"
    DISBURSED = "DISBURSED"
    CANCELLED = "CANCELLED"


class ActorRole(str, Enum):
    """Roles of authenticated actors. SYSTEM is the scheduler's audit identity only."""
    SALES = "sales"
    OPS = "ops"
    RMT = "rmt"
    ADMIN = "admin"
    FOUNDER = "founder"
    SUBCONTRACTOR = "subcontractor"
    EPC = "epc"
    NBFC = "nbfc"
    SYSTEM = "system"


class SlaStatus(str, Enum):
    """Tracker status. Advances forward only; COMPLETED and CANCELLED are terminal."""
    ACTIVE = "ACTIVE"
    REMINDER_1_SENT = "REMINDER_1_SENT"
    REMINDER_2_SENT = "REMINDER_2_SENT"
    ESCALATED = "ESCALATED"
    DORMANT = "DORMANT"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class MilestoneStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    COMPLETED_LATE = "COMPLETED_LATE"
    OVERDUE = "OVERDUE"


class SlaClass(str, Enum):
    """SLA classes - each defines its own milestone day-offsets."""
    EPC_VALIDATION = "EPC_VALIDATION"
    RISK_ASSESSMENT = "RISK_ASSESSMENT"
    NBFC_RESPONSE = "NBFC_RESPONSE"
    BILL_VERIFICATION = "BILL_VERIFICATION"
    KYC_COMPLETION = "KYC_COMPLETION"
    DOCUMENT_UPLOAD = "DOCUMENT_UPLOAD"


class SlaEntityType(str, Enum):
    """Kind of entity an SLA tracker is attached to."""
    CASE = "CASE"
    SUBCONTRACTOR = "SUBCONTRACTOR"
    COMPANY = "COMPANY"
    BILL = "BILL"
    CWCRF = "CWCRF"


class BidStatus(str, Enum):
    PLACED = "PLACED"
    WITHDRAWN = "WITHDRAWN"
    ACCEPTED = "ACCEPTED"
    SUPERSEDED = "SUPERSEDED"


class AuditCategory(str, Enum):
    AUTH = "AUTH"
    DOCUMENT = "DOCUMENT"
    COMPANY = "COMPANY"
    KYC = "KYC"
    BILL = "BILL"
    CASE = "CASE"
    BID = "BID"
    TRANSACTION = "TRANSACTION"
    NBFC = "NBFC"
    ADMIN = "ADMIN"
    RISK = "RISK"
    SLA = "SLA"
    SYSTEM = "SYSTEM"


class AuditAction(str, Enum):
    # Auth
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    # KYC
    KYC_VERIFY = "KYC_VERIFY"
    KYC_REJECT = "KYC_REJECT"
    KYC_COMPLETE = "KYC_COMPLETE"
    # Bill
    BILL_VERIFY = "BILL_VERIFY"
    BILL_REJECT = "BILL_REJECT"
    # Case
    CASE_CREATE = "CASE_CREATE"
    CASE_UPDATE = "CASE_UPDATE"
    CASE_STATUS_CHANGE = "CASE_STATUS_CHANGE"
    CASE_CLOSE = "CASE_CLOSE"
    # Bid
    BID_CREATE = "BID_CREATE"
    BID_NEGOTIATE = "BID_NEGOTIATE"
    BID_WITHDRAW = "BID_WITHDRAW"
    BID_ACCEPT = "BID_ACCEPT"
    BID_REJECT = "BID_REJECT"
    # Transaction
    DISBURSEMENT = "DISBURSEMENT"
    # NBFC
    NBFC_SHARE_CASE = "NBFC_SHARE_CASE"
    # Risk / approval
    RISK_ASSESSMENT = "RISK_ASSESSMENT"
    ESCALATION = "ESCALATION"
    # SLA
    SLA_CREATE = "SLA_CREATE"
    SLA_UPDATE = "SLA_UPDATE"
    SLA_COMPLETE = "SLA_COMPLETE"
    SLA_BREACH = "SLA_BREACH"
    # Generic
    OTHER = "OTHER"


class AuditEntityType(str, Enum):
    USER = "User"
    COMPANY = "Company"
    SUBCONTRACTOR = "SubContractor"
    BILL = "Bill"
    CASE = "Case"
    BID = "Bid"
    DOCUMENT = "Document"
    TRANSACTION = "Transaction"
    NBFC = "Nbfc"
    CWCRF = "CwcRf"
    SLA = "Sla"
    SYSTEM = "System"


# =============================================================================
# CASE AGGREGATE
# =============================================================================

class CaseDB(Base):
    """
    One bill-discounting financing request, tracked end-to-end.
    Never physically deleted; terminal cases are kept for audit.
    """
    __tablename__ = "cases"

    id = Column(String(36), primary_key=True)  # UUID
    sequence_no = Column(Integer, unique=True, nullable=False)
    case_number = Column(String(32), unique=True, nullable=False, index=True)

    status = Column(SQLEnum(CaseStatus), nullable=False, index=True)
    version = Column(Integer, nullable=False)

    # Weak references to collaborating entities (IDs only)
    sub_contractor_id = Column(String(36), nullable=True, index=True)
    epc_id = Column(String(36), nullable=True, index=True)
    bill_id = Column(String(36), nullable=True)
    cwc_rf_id = Column(String(36), nullable=True)

    deal_value = Column(Float, nullable=True)

    # Written once by the bid ledger: {finalAmount, finalDuration, bidId, lockedAt}
    locked_terms = Column(JSON, nullable=True)
    locked_at = Column(DateTime, nullable=True)

    # RMT assessment snapshot
    risk_assessment = Column(JSON, nullable=True)

    # Advisory dormancy (scheduler sweep)
    last_activity_at = Column(DateTime, nullable=True, index=True)
    is_dormant = Column(Boolean, default=False, nullable=False)
    dormant_since = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow)

    status_history = relationship(
        "CaseStatusHistoryDB",
        back_populates="case",
        order_by="CaseStatusHistoryDB.sequence",
        cascade="save-update, merge",
    )
    bids = relationship("BidDB", back_populates="case", order_by="BidDB.created_at")
    sla_trackers = relationship("SlaTrackerDB", back_populates="case")

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self, include_history: bool = True) -> dict:
        data = {
            "id": self.id,
            "case_number": self.case_number,
            "status": self.status.value,
            "version": self.version,
            "sub_contractor_id": self.sub_contractor_id,
            "epc_id": self.epc_id,
            "bill_id": self.bill_id,
            "cwc_rf_id": self.cwc_rf_id,
            "deal_value": self.deal_value,
            "locked_terms": self.locked_terms,
            "risk_assessment": self.risk_assessment,
            "is_dormant": self.is_dormant,
            "dormant_since": _iso(self.dormant_since),
            "last_activity_at": _iso(self.last_activity_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_history:
            data["status_history"] = [entry.to_dict() for entry in self.status_history]
        return data


class CaseStatusHistoryDB(Base):
    """
    Append-only status history of a case.
    Ordered by commit order via a per-case sequence number.
    """
    __tablename__ = "case_status_history"
    __table_args__ = (UniqueConstraint("case_id", "sequence", name="uq_case_history_sequence"),)

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("cases.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    status = Column(SQLEnum(CaseStatus), nullable=False)
    changed_at = Column(DateTime, nullable=False)
    changed_by_user_id = Column(String(64), nullable=False)
    changed_by_role = Column(SQLEnum(ActorRole), nullable=False)
    notes = Column(Text, nullable=True)

    case = relationship("CaseDB", back_populates="status_history")

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "status": self.status.value,
            "changed_at": _iso(self.changed_at),
            "changed_by_user_id": self.changed_by_user_id,
            "changed_by_role": self.changed_by_role.value,
            "notes": self.notes,
        }


# =============================================================================
# SLA TRACKING
# =============================================================================

class SlaTrackerDB(Base):
    """
    Per-stage (or per sub-entity) SLA tracker with four milestones.
    Deadlines are computed once at creation and only recomputed on explicit restart.
    """
    __tablename__ = "sla_trackers"

    id = Column(String(36), primary_key=True)  # UUID
    entity_type = Column(SQLEnum(SlaEntityType), nullable=False)
    entity_id = Column(String(36), nullable=False, index=True)
    case_id = Column(String(36), ForeignKey("cases.id"), nullable=True, index=True)

    sla_class = Column(SQLEnum(SlaClass), nullable=False)
    stage = Column(SQLEnum(CaseStatus), nullable=True)  # Case stage that opened the tracker

    status = Column(SQLEnum(SlaStatus), nullable=False, index=True)
    version = Column(Integer, nullable=False)

    # Derived deadlines (day3 / day7 / day10 / day14 targets)
    first_reminder_due = Column(DateTime, nullable=False)
    second_reminder_due = Column(DateTime, nullable=False)
    escalation_due = Column(DateTime, nullable=False)
    dormant_due = Column(DateTime, nullable=False, index=True)

    # [{reminder: 1|2, sentAt, type}]
    reminders = Column(JSON, nullable=False, default=list)

    escalated_at = Column(DateTime, nullable=True)
    escalation_notes = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    completed_by = Column(String(64), nullable=True)

    # [{status, changedAt, changedBy, notes}]
    status_history = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow)

    case = relationship("CaseDB", back_populates="sla_trackers")
    milestones = relationship(
        "SlaMilestoneDB",
        back_populates="tracker",
        order_by="SlaMilestoneDB.offset_days",
        cascade="all",
    )

    __mapper_args__ = {"version_id_col": version}

    def milestone(self, key: str):
        for m in self.milestones:
            if m.key == key:
                return m
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "case_id": self.case_id,
            "case_number": self.case.case_number if self.case else None,
            "sla_class": self.sla_class.value,
            "stage": self.stage.value if self.stage else None,
            "status": self.status.value,
            "version": self.version,
            "milestones": {m.key: m.to_dict() for m in self.milestones},
            "first_reminder_due": _iso(self.first_reminder_due),
            "second_reminder_due": _iso(self.second_reminder_due),
            "escalation_due": _iso(self.escalation_due),
            "dormant_due": _iso(self.dormant_due),
            "reminders": self.reminders or [],
            "escalated_at": _iso(self.escalated_at),
            "escalation_notes": self.escalation_notes,
            "completed_at": _iso(self.completed_at),
            "completed_by": self.completed_by,
            "status_history": self.status_history or [],
            "created_at": _iso(self.created_at),
        }


class SlaMilestoneDB(Base):
    """One of the four fixed checkpoints (day3 / day7 / day10 / day14) of a tracker."""
    __tablename__ = "sla_milestones"
    __table_args__ = (UniqueConstraint("tracker_id", "key", name="uq_sla_milestone_key"),)

    id = Column(String(36), primary_key=True)  # UUID
    tracker_id = Column(String(36), ForeignKey("sla_trackers.id"), nullable=False, index=True)
    key = Column(String(10), nullable=False)
    name = Column(String(100), nullable=False)
    offset_days = Column(Integer, nullable=False)
    target_date = Column(DateTime, nullable=False)
    status = Column(SQLEnum(MilestoneStatus), nullable=False)
    completed_at = Column(DateTime, nullable=True)
    completed_by = Column(String(64), nullable=True)

    tracker = relationship("SlaTrackerDB", back_populates="milestones")

    @property
    def is_done(self) -> bool:
        return self.status in (MilestoneStatus.COMPLETED, MilestoneStatus.COMPLETED_LATE)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "offset_days": self.offset_days,
            "target_date": _iso(self.target_date),
            "status": self.status.value,
            "completed_at": _iso(self.completed_at),
            "completed_by": self.completed_by,
        }


# =============================================================================
# BID LEDGER
# =============================================================================

class BidDB(Base):
    """
    One NBFC offer against a case in the bidding stage.
    ACCEPTED, SUPERSEDED and WITHDRAWN bids are immutable.
    """
    __tablename__ = "bids"

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("cases.id"), nullable=False, index=True)
    placed_by = Column(String(64), nullable=False, index=True)
    placed_by_name = Column(String(255), nullable=True)

    bid_amount = Column(Float, nullable=False)
    funding_duration_days = Column(Integer, nullable=False)

    status = Column(SQLEnum(BidStatus), nullable=False, index=True)
    version = Column(Integer, nullable=False)

    locked_terms = Column(JSON, nullable=True)
    # [{counterAmount, counterDuration, proposedBy, proposedByRole, message, createdAt}]
    negotiations = Column(JSON, nullable=False, default=list)
    # [{status, changedAt, changedBy, notes}]
    status_history = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow)

    case = relationship("CaseDB", back_populates="bids")

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "case_id": self.case_id,
            "placed_by": self.placed_by,
            "placed_by_name": self.placed_by_name,
            "bid_amount": self.bid_amount,
            "funding_duration_days": self.funding_duration_days,
            "status": self.status.value,
            "version": self.version,
            "locked_terms": self.locked_terms,
            "negotiations": self.negotiations or [],
            "status_history": self.status_history or [],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# =============================================================================
# AUDIT LOG
# =============================================================================

class AuditLogDB(Base):
    """
    Immutable record of every state-affecting action.
    Append-only - rows are never updated or deleted.
    """
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True)  # UUID

    user_id = Column(String(64), nullable=False, index=True)
    user_name = Column(String(255), nullable=True)
    user_role = Column(SQLEnum(ActorRole), nullable=True)

    action = Column(SQLEnum(AuditAction), nullable=False, index=True)
    category = Column(SQLEnum(AuditCategory), nullable=False, index=True)

    entity_type = Column(SQLEnum(AuditEntityType), nullable=True)
    entity_id = Column(String(64), nullable=True, index=True)
    entity_ref = Column(String(100), nullable=True)  # caseNumber etc.

    description = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    previous_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)

    success = Column(Boolean, default=True, nullable=False)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=_utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "user_role": self.user_role.value if self.user_role else None,
            "action": self.action.value,
            "category": self.category.value,
            "entity_type": self.entity_type.value if self.entity_type else None,
            "entity_id": self.entity_id,
            "entity_ref": self.entity_ref,
            "description": self.description,
            "details": self.details,
            "previous_value": self.previous_value,
            "new_value": self.new_value,
            "success": self.success,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
        }


@event.listens_for(AuditLogDB, "before_update")
@event.listens_for(CaseStatusHistoryDB, "before_update")
def _refuse_update(mapper, connection, target):
    raise ValueError(f"{target.__tablename__} rows are append-only and cannot be updated")


@event.listens_for(AuditLogDB, "before_delete")
@event.listens_for(CaseStatusHistoryDB, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise ValueError(f"{target.__tablename__} rows are append-only and cannot be deleted")
