"""
Case lifecycle core: transition authority, SLA tracker, bid ledger,
audit recorder and scheduler.
"""
from .errors import (
    LifecycleError,
    InvalidTransition,
    Forbidden,
    Conflict,
    InvalidStage,
    AlreadyLocked,
    NotFound,
    ValidationError,
)
from .clock import Clock, FrozenClock, system_clock
from .notifications import Notifier, deliver
from .audit_recorder import AuditRecorder, AuditEntry, AuditFilter
from .case_store import CaseStore, format_case_number
from .sla_tracker import SlaTrackerService, SLA_CLASS_CONFIG, MILESTONE_KEYS
from .state_machine import TransitionAuthority, TRANSITION_TABLE, TERMINAL_STATUSES
from .bid_ledger import BidLedger
from .scheduler import LifecycleScheduler, PeriodicScheduler

__all__ = [
    "LifecycleError", "InvalidTransition", "Forbidden", "Conflict",
    "InvalidStage", "AlreadyLocked", "NotFound", "ValidationError",
    "Clock", "FrozenClock", "system_clock",
    "Notifier", "deliver",
    "AuditRecorder", "AuditEntry", "AuditFilter",
    "CaseStore", "format_case_number",
    "SlaTrackerService", "SLA_CLASS_CONFIG", "MILESTONE_KEYS",
    "TransitionAuthority", "TRANSITION_TABLE", "TERMINAL_STATUSES",
    "BidLedger",
    "LifecycleScheduler", "PeriodicScheduler",
]
