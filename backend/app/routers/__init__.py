"""Gryork Case Engine - API Routers"""
from .cases import router as cases_router
from .bids import router as bids_router
from .sla import router as sla_router
from .audit import router as audit_router
from .scheduler import router as scheduler_router

__all__ = [
    "cases_router",
    "bids_router",
    "sla_router",
    "audit_router",
    "scheduler_router",
]
