"""
Gryork Case Engine - FastAPI Application

Main entry point for the case lifecycle service.

Architecture:
- API actions → Transition Authority → Case Store (+ SLA side effects) → Audit Recorder
- NBFC actions → Bid Ledger → Transition Authority (BID_PLACED / NEGOTIATION / COMMERCIAL_LOCKED)
- Scheduler → SLA tick (reminders, escalation, dormancy) + case dormancy sweep
"""
import logging
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routers import cases_router, bids_router, sla_router, audit_router, scheduler_router
from .database import init_db, SessionLocal
from .dependencies import get_notifier
from .services.lifecycle import LifecycleError, PeriodicScheduler

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "false").lower() == "true"
SCHEDULER_INTERVAL_SECONDS = float(os.getenv("SCHEDULER_INTERVAL_SECONDS", "3600"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup; run the in-process scheduler if enabled."""
    init_db()
    scheduler = None
    if SCHEDULER_ENABLED:
        scheduler = PeriodicScheduler(SessionLocal, SCHEDULER_INTERVAL_SECONDS, notifier=get_notifier())
        scheduler.start()
    yield
    if scheduler is not None:
        await scheduler.stop()

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Gryork Case Engine",
    description="""
    Gryork Case Engine - Case Lifecycle & SLA Escalation Service

    Tracks each bill-discounting financing request from lead creation through
    KYC, EPC verification, RMT risk assessment, NBFC bidding, commercial lock
    and disbursement.

    ## Components
    1. **Transition Authority**: single declarative transition table, role-gated
    2. **SLA Tracker**: day 3 / 7 / 10 / 14 milestones, reminders, escalation, dormancy
    3. **Bid Ledger**: NBFC bids, negotiation, single-winner commercial lock
    4. **Audit Recorder**: append-only, queryable audit log

    ## Key Principles
    - Every write is version guarded; a losing writer gets 409 and must reload
    - Audit failures are logged, never surfaced as business failures
    - Notifications go out only after the write they describe has committed
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    """Render business rejections with their stable kind."""
    logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(cases_router)
app.include_router(bids_router)
app.include_router(sla_router)
app.include_router(audit_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Gryork Case Engine",
        "version": "1.0.0",
        "description": "Case Lifecycle & SLA Escalation Service",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m app.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
