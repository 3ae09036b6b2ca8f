"""
Shared fixtures for the case lifecycle tests.

Each test gets its own file-backed SQLite database so that separate sessions
(business writes, audit writes, concurrent writers) see each other's commits.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")

from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker

from app.database import init_db, make_engine
from app.models import Actor, ActorRole, CaseStatus
from app.services.lifecycle import (
    AuditRecorder,
    BidLedger,
    FrozenClock,
    Notifier,
    SlaTrackerService,
    TransitionAuthority,
)
from app.services.lifecycle.state_machine import TRANSITION_TABLE


T0 = datetime(2025, 1, 6, 9, 0, 0)

# Happy path up to the bidding stage
MAIN_PATH = [
    CaseStatus.LEAD_CREATED,
    CaseStatus.CREDENTIALS_CREATED,
    CaseStatus.DOCS_SUBMITTED,
    CaseStatus.KYC_COMPLETED,
    CaseStatus.READY_FOR_COMPANY_REVIEW,
    CaseStatus.EPC_VERIFIED,
    CaseStatus.RMT_QUEUE,
    CaseStatus.RMT_DOCUMENT_REVIEW,
    CaseStatus.RMT_RISK_ANALYSIS,
    CaseStatus.RMT_APPROVED,
    CaseStatus.CWCAF_READY,
]


class RecordingNotifier(Notifier):
    """Notifier that remembers every hook call."""

    def __init__(self):
        self.events = []

    def sla_reminder(self, tracker, reminder_number):
        self.events.append(("sla_reminder", tracker["id"], reminder_number))

    def sla_escalation(self, tracker, overdue_milestones):
        self.events.append(("sla_escalation", tracker["id"], tuple(overdue_milestones)))

    def sla_dormant(self, tracker):
        self.events.append(("sla_dormant", tracker["id"]))

    def bid_placed(self, case, bid):
        self.events.append(("bid_placed", case["id"], bid["id"]))

    def case_dormant(self, case):
        self.events.append(("case_dormant", case["id"]))

    def of(self, hook):
        return [e for e in self.events if e[0] == hook]


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'cases.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# COLLABORATORS
# =============================================================================

@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit(session_factory, clock):
    return AuditRecorder(session_factory, clock)


@pytest.fixture
def sla(db, clock, audit, notifier):
    return SlaTrackerService(db, clock, audit=audit, notifier=notifier)


@pytest.fixture
def authority(db, clock, audit, sla):
    return TransitionAuthority(db, clock, audit=audit, sla=sla)


@pytest.fixture
def ledger(db, clock, audit, notifier, authority):
    return BidLedger(db, clock, audit=audit, notifier=notifier, authority=authority)


# =============================================================================
# ACTORS
# =============================================================================

@pytest.fixture
def actors():
    return {
        role: Actor(id=f"{role.value}-1", role=role, name=f"{role.value.title()} One")
        for role in ActorRole
        if role != ActorRole.SYSTEM
    }


@pytest.fixture
def ops(actors):
    return actors[ActorRole.OPS]


@pytest.fixture
def sales(actors):
    return actors[ActorRole.SALES]


@pytest.fixture
def rmt(actors):
    return actors[ActorRole.RMT]


@pytest.fixture
def nbfc(actors):
    return actors[ActorRole.NBFC]


@pytest.fixture
def other_nbfc():
    return Actor(id="nbfc-2", role=ActorRole.NBFC, name="Nbfc Two")


# =============================================================================
# CASE BUILDERS
# =============================================================================

def _walker_for(edge_roles, actors):
    for role in (ActorRole.OPS, ActorRole.RMT):
        if role in edge_roles:
            return actors[role]
    raise AssertionError(f"No test actor for roles {edge_roles}")


@pytest.fixture
def walk(authority, actors):
    """Move a case along MAIN_PATH up to `target` with permitted actors."""
    def _walk(case_id, target):
        case = authority.store.get(case_id)
        start = MAIN_PATH.index(case.status)
        end = MAIN_PATH.index(target)
        result = None
        for current, nxt in zip(MAIN_PATH[start:end], MAIN_PATH[start + 1:end + 1]):
            actor = _walker_for(TRANSITION_TABLE[(current, nxt)].roles, actors)
            result = authority.transition(case_id, nxt, actor, notes=f"walk to {nxt.value}")
        return result or authority.store.get(case_id).to_dict()
    return _walk


@pytest.fixture
def make_case(authority, ops, walk):
    """Create a case and walk it to `status` along the main path."""
    def _make(status=CaseStatus.LEAD_CREATED, **kwargs):
        case = authority.create_case(ops, **kwargs)
        if status != CaseStatus.LEAD_CREATED:
            case = walk(case["id"], status)
        return case
    return _make
