"""
Gryork Case Engine - Service Dependencies
FastAPI providers that wire the lifecycle services to a request session
"""
from fastapi import Depends
from sqlalchemy.orm import Session

from .database import get_db, SessionLocal
from .services.lifecycle import (
    AuditRecorder,
    BidLedger,
    Clock,
    LifecycleScheduler,
    Notifier,
    SlaTrackerService,
    TransitionAuthority,
    system_clock,
)

_notifier = Notifier()


def get_clock() -> Clock:
    return system_clock


def get_notifier() -> Notifier:
    return _notifier


def get_audit_recorder(clock: Clock = Depends(get_clock)) -> AuditRecorder:
    return AuditRecorder(SessionLocal, clock)


def get_sla_service(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    audit: AuditRecorder = Depends(get_audit_recorder),
    notifier: Notifier = Depends(get_notifier),
) -> SlaTrackerService:
    return SlaTrackerService(db, clock, audit=audit, notifier=notifier)


def get_authority(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    audit: AuditRecorder = Depends(get_audit_recorder),
    sla: SlaTrackerService = Depends(get_sla_service),
) -> TransitionAuthority:
    return TransitionAuthority(db, clock, audit=audit, sla=sla)


def get_bid_ledger(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    audit: AuditRecorder = Depends(get_audit_recorder),
    notifier: Notifier = Depends(get_notifier),
    authority: TransitionAuthority = Depends(get_authority),
) -> BidLedger:
    return BidLedger(db, clock, audit=audit, notifier=notifier, authority=authority)


def get_lifecycle_scheduler(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    audit: AuditRecorder = Depends(get_audit_recorder),
    notifier: Notifier = Depends(get_notifier),
) -> LifecycleScheduler:
    return LifecycleScheduler(db, clock, audit=audit, notifier=notifier)
