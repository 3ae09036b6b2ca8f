#!/usr/bin/env python3
"""
Demo Case Seed Script
Creates a case in READY_FOR_COMPANY_REVIEW (with its EPC validation SLA
tracker) and prints a bearer token for every role. Development only.

Usage:
    python -m scripts.seed_demo_case [case_number]

Example:
    python -m scripts.seed_demo_case C-1001
"""
import sys
import os

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.auth import create_access_token
from app.database import SessionLocal, init_db
from app.models import Actor, ActorRole, CaseStatus
from app.services.lifecycle import AuditRecorder, LifecycleError, TransitionAuthority

DEMO_USERS = {
    ActorRole.SALES: "demo-sales",
    ActorRole.OPS: "demo-ops",
    ActorRole.RMT: "demo-rmt",
    ActorRole.ADMIN: "demo-admin",
    ActorRole.FOUNDER: "demo-founder",
    ActorRole.SUBCONTRACTOR: "demo-subcontractor",
    ActorRole.EPC: "demo-epc",
    ActorRole.NBFC: "demo-nbfc",
}


def seed_case(case_number=None) -> bool:
    """Create the demo case. Returns False if it could not be created."""
    init_db()

    db = SessionLocal()
    try:
        authority = TransitionAuthority(db, audit=AuditRecorder(SessionLocal))
        ops = Actor(id=DEMO_USERS[ActorRole.OPS], role=ActorRole.OPS, name="Demo Ops")
        case = authority.create_case(
            ops,
            status=CaseStatus.READY_FOR_COMPANY_REVIEW,
            sub_contractor_id="demo-subcontractor-company",
            epc_id="demo-epc-company",
            bill_id="demo-bill",
            deal_value=500000,
            case_number=case_number,
            notes="Seeded demo case",
        )
        print(f"Case created: {case['case_number']} ({case['id']})")
        print(f"  Status: {case['status']}")
        return True
    except LifecycleError as e:
        print(f"Error creating case: {e.kind}: {e.message}")
        return False
    finally:
        db.close()


def print_tokens() -> None:
    print("\nBearer tokens:")
    for role, user_id in DEMO_USERS.items():
        token = create_access_token(user_id, role.value, name=f"Demo {role.value.title()}")
        print(f"  {role.value:<14} {token}")


def main():
    if len(sys.argv) > 2:
        print(__doc__)
        sys.exit(1)

    case_number = sys.argv[1] if len(sys.argv) == 2 else None
    success = seed_case(case_number)
    print_tokens()
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
