"""Gryork Case Engine - Data Models"""
from .db_models import (
    # Enums
    CaseStatus, ActorRole, SlaStatus, MilestoneStatus, SlaClass, SlaEntityType,
    BidStatus, AuditAction, AuditCategory, AuditEntityType,
    # ORM
    CaseDB, CaseStatusHistoryDB, SlaTrackerDB, SlaMilestoneDB, BidDB, AuditLogDB,
)
from .actor import Actor, SYSTEM_ACTOR, INTERNAL_ROLES, EXTERNAL_ROLES

__all__ = [
    "CaseStatus", "ActorRole", "SlaStatus", "MilestoneStatus", "SlaClass", "SlaEntityType",
    "BidStatus", "AuditAction", "AuditCategory", "AuditEntityType",
    "CaseDB", "CaseStatusHistoryDB", "SlaTrackerDB", "SlaMilestoneDB", "BidDB", "AuditLogDB",
    "Actor", "SYSTEM_ACTOR", "INTERNAL_ROLES", "EXTERNAL_ROLES",
]
