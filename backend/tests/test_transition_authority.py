"""
Tests for the case Transition Authority.

Test Coverage:
1. Every table edge succeeds for a permitted role and appends one history entry
2. Absent edges -> InvalidTransition, case unchanged
3. Role outside the edge's set -> Forbidden, audited as a failed attempt
4. Version conflicts (stale expected_version and real concurrent writers)
5. SLA side effects on stage entry and terminal states
6. Case creation, risk assessment and allowed targets
7. Scenario C-1001
"""
import pytest

from app.models import Actor, ActorRole, AuditAction, AuditCategory, CaseStatus, SlaClass, SlaStatus
from app.services.lifecycle import (
    AuditFilter,
    Conflict,
    Forbidden,
    InvalidStage,
    InvalidTransition,
    TransitionAuthority,
    ValidationError,
)
from app.services.lifecycle.state_machine import TERMINAL_STATUSES, TRANSITION_TABLE


def _seed_status(authority, case_id, status, actor):
    """Put a case directly into `status` (test setup only)."""
    case = authority.store.get(case_id)
    case.status = status
    authority.store.append_history(case, status, actor, "seeded", authority.clock.now())
    authority.db.commit()


# =============================================================================
# TEST: TRANSITION TABLE
# =============================================================================

class TestTransitionTable:
    """Shape of the declarative table."""

    def test_no_edges_leave_terminal_states(self):
        for (current, _target) in TRANSITION_TABLE:
            assert current not in TERMINAL_STATUSES

    def test_system_role_is_on_no_edge(self):
        for edge in TRANSITION_TABLE.values():
            assert ActorRole.SYSTEM not in edge.roles

    def test_every_non_terminal_status_can_be_cancelled(self):
        for status in CaseStatus:
            if status in TERMINAL_STATUSES:
                continue
            edge = TRANSITION_TABLE[(status, CaseStatus.CANCELLED)]
            assert ActorRole.OPS in edge.roles
            assert ActorRole.SALES not in edge.roles

    def test_bidding_entries_are_ledger_only(self):
        for (current, target), edge in TRANSITION_TABLE.items():
            if target in (CaseStatus.BID_PLACED, CaseStatus.NEGOTIATION_IN_PROGRESS, CaseStatus.COMMERCIAL_LOCKED):
                assert edge.bid_ledger_only, (current, target)

    def test_only_rmt_decides_risk(self):
        for target in (CaseStatus.RMT_APPROVED, CaseStatus.RMT_REJECTED):
            edge = TRANSITION_TABLE[(CaseStatus.RMT_RISK_ANALYSIS, target)]
            assert edge.roles == frozenset({ActorRole.RMT})


# =============================================================================
# TEST: TRANSITIONS
# =============================================================================

class TestTransition:
    """transition() contract."""

    @pytest.mark.parametrize(
        "edge_key",
        [k for k, e in TRANSITION_TABLE.items() if not e.bid_ledger_only],
        ids=lambda k: f"{k[0].value}->{k[1].value}",
    )
    def test_every_direct_edge_succeeds_for_each_permitted_role(self, authority, make_case, actors, edge_key):
        current, target = edge_key
        for role in TRANSITION_TABLE[edge_key].roles:
            case = make_case()
            _seed_status(authority, case["id"], current, actors[ActorRole.OPS])
            before = authority.store.get(case["id"]).to_dict()

            result = authority.transition(case["id"], target, actors[role], notes="test")

            assert result["status"] == target.value
            assert len(result["status_history"]) == len(before["status_history"]) + 1
            assert result["status_history"][-1]["status"] == target.value
            assert result["status_history"][-1]["changed_by_role"] == role.value
            assert result["version"] == before["version"] + 1

    def test_absent_edge_is_invalid_and_leaves_case_unchanged(self, authority, make_case, ops):
        case = make_case(CaseStatus.DOCS_SUBMITTED)

        with pytest.raises(InvalidTransition):
            authority.transition(case["id"], CaseStatus.DISBURSED, ops)

        after = authority.store.get(case["id"]).to_dict()
        assert after["status"] == CaseStatus.DOCS_SUBMITTED.value
        assert after["version"] == case["version"]
        assert len(after["status_history"]) == len(case["status_history"])

    def test_ledger_edge_cannot_be_requested_directly(self, authority, make_case, actors):
        case = make_case(CaseStatus.CWCAF_READY)

        with pytest.raises(InvalidTransition):
            authority.transition(case["id"], CaseStatus.BID_PLACED, actors[ActorRole.NBFC])

        assert authority.store.get(case["id"]).status == CaseStatus.CWCAF_READY

    def test_terminal_case_rejects_everything(self, authority, make_case, ops):
        case = make_case()
        authority.transition(case["id"], CaseStatus.CANCELLED, ops)

        for target in CaseStatus:
            with pytest.raises(InvalidTransition):
                authority.transition(case["id"], target, ops)

    def test_forbidden_role_is_rejected_and_audited(self, authority, audit, make_case, sales):
        case = make_case(CaseStatus.DOCS_SUBMITTED)

        with pytest.raises(Forbidden):
            authority.transition(case["id"], CaseStatus.KYC_COMPLETED, sales)

        assert authority.store.get(case["id"]).status == CaseStatus.DOCS_SUBMITTED
        failed = audit.query(AuditFilter(entity_id=case["id"], success=False))
        assert failed["pagination"]["total"] == 1
        assert failed["logs"][0]["user_role"] == "sales"
        assert failed["logs"][0]["error_message"] == "Forbidden"

    def test_external_roles_cannot_walk_internal_edges(self, authority, make_case, actors):
        case = make_case(CaseStatus.DOCS_SUBMITTED)
        for role in (ActorRole.SUBCONTRACTOR, ActorRole.EPC, ActorRole.NBFC):
            with pytest.raises(Forbidden):
                authority.transition(case["id"], CaseStatus.KYC_COMPLETED, actors[role])

    def test_system_actor_is_permitted_nowhere(self, authority, make_case):
        case = make_case(CaseStatus.DOCS_SUBMITTED)
        system = Actor(id="system", role=ActorRole.SYSTEM)
        with pytest.raises(Forbidden):
            authority.transition(case["id"], CaseStatus.KYC_COMPLETED, system)

    def test_action_required_loop(self, authority, make_case, ops, actors):
        case = make_case(CaseStatus.DOCS_SUBMITTED)
        authority.transition(case["id"], CaseStatus.ACTION_REQUIRED, ops, notes="PAN card blurry")
        result = authority.transition(case["id"], CaseStatus.DOCS_SUBMITTED, actors[ActorRole.SUBCONTRACTOR])

        statuses = [h["status"] for h in result["status_history"]]
        assert statuses[-3:] == ["DOCS_SUBMITTED", "ACTION_REQUIRED", "DOCS_SUBMITTED"]
        assert [h["sequence"] for h in result["status_history"]] == list(range(1, len(statuses) + 1))

    def test_transition_clears_dormancy_flag(self, authority, make_case, ops):
        case = make_case(CaseStatus.CREDENTIALS_CREATED)
        row = authority.store.get(case["id"])
        authority.store.mark_dormant(row)
        authority.db.commit()

        result = authority.transition(case["id"], CaseStatus.DOCS_SUBMITTED, ops)

        assert result["is_dormant"] is False
        assert result["dormant_since"] is None


# =============================================================================
# TEST: OPTIMISTIC CONCURRENCY
# =============================================================================

class TestConcurrency:
    """Version guard on the case row."""

    def test_stale_expected_version_conflicts(self, authority, make_case, ops):
        case = make_case(CaseStatus.DOCS_SUBMITTED)

        with pytest.raises(Conflict):
            authority.transition(case["id"], CaseStatus.KYC_COMPLETED, ops, expected_version=case["version"] - 1)

        assert authority.store.get(case["id"]).status == CaseStatus.DOCS_SUBMITTED

    def test_matching_expected_version_succeeds(self, authority, make_case, ops):
        case = make_case(CaseStatus.DOCS_SUBMITTED)
        result = authority.transition(case["id"], CaseStatus.KYC_COMPLETED, ops, expected_version=case["version"])
        assert result["version"] == case["version"] + 1

    def test_concurrent_writers_exactly_one_wins(self, session_factory, clock, audit, make_case, ops):
        case = make_case(CaseStatus.DOCS_SUBMITTED)
        history_before = len(case["status_history"])

        first_db, second_db = session_factory(), session_factory()
        try:
            first = TransitionAuthority(first_db, clock, audit=audit)
            second = TransitionAuthority(second_db, clock, audit=audit)

            # Both writers hold the case at the same version
            held = (first.store.get(case["id"]), second.store.get(case["id"]))
            assert held[0].version == held[1].version

            first.transition(case["id"], CaseStatus.KYC_COMPLETED, ops)
            with pytest.raises(Conflict):
                second.transition(case["id"], CaseStatus.ACTION_REQUIRED, ops)
        finally:
            first_db.close()
            second_db.close()

        check_db = session_factory()
        try:
            final = TransitionAuthority(check_db, clock).store.get(case["id"]).to_dict()
        finally:
            check_db.close()
        assert final["status"] == CaseStatus.KYC_COMPLETED.value
        assert len(final["status_history"]) == history_before + 1

    def test_loser_can_reload_and_retry(self, session_factory, clock, make_case, ops):
        case = make_case(CaseStatus.DOCS_SUBMITTED)
        first_db, second_db = session_factory(), session_factory()
        try:
            first = TransitionAuthority(first_db, clock)
            second = TransitionAuthority(second_db, clock)
            stale = second.store.get(case["id"])
            assert stale.status == CaseStatus.DOCS_SUBMITTED

            first.transition(case["id"], CaseStatus.KYC_COMPLETED, ops)
            with pytest.raises(Conflict):
                second.transition(case["id"], CaseStatus.ACTION_REQUIRED, ops)

            # Fresh read after rollback sees the winner's status
            result = second.transition(case["id"], CaseStatus.READY_FOR_COMPANY_REVIEW, ops)
            assert result["status"] == CaseStatus.READY_FOR_COMPANY_REVIEW.value
        finally:
            first_db.close()
            second_db.close()


# =============================================================================
# TEST: SLA SIDE EFFECTS
# =============================================================================

class TestSlaSideEffects:
    """Stage trackers opened, closed and cancelled by transitions."""

    def test_entering_company_review_opens_epc_tracker(self, make_case, sla):
        case = make_case(CaseStatus.READY_FOR_COMPANY_REVIEW)

        trackers = sla.get_for_case(case["id"])
        assert len(trackers) == 1
        assert trackers[0]["sla_class"] == SlaClass.EPC_VALIDATION.value
        assert trackers[0]["stage"] == CaseStatus.READY_FOR_COMPANY_REVIEW.value
        assert trackers[0]["status"] == SlaStatus.ACTIVE.value

    def test_next_stage_closes_previous_tracker(self, make_case, sla):
        case = make_case(CaseStatus.RMT_QUEUE)

        by_class = {t["sla_class"]: t for t in sla.get_for_case(case["id"])}
        assert by_class[SlaClass.EPC_VALIDATION.value]["status"] == SlaStatus.COMPLETED.value
        assert by_class[SlaClass.RISK_ASSESSMENT.value]["status"] == SlaStatus.ACTIVE.value

    def test_terminal_state_cancels_open_trackers(self, authority, make_case, sla, actors):
        case = make_case(CaseStatus.READY_FOR_COMPANY_REVIEW)

        authority.transition(case["id"], CaseStatus.EPC_REJECTED, actors[ActorRole.EPC], notes="Bill disputed")

        trackers = sla.get_for_case(case["id"])
        assert [t["status"] for t in trackers] == [SlaStatus.CANCELLED.value]

    def test_cwcaf_ready_opens_nbfc_response_tracker(self, make_case, sla):
        case = make_case(CaseStatus.CWCAF_READY)
        open_classes = [t["sla_class"] for t in sla.get_for_case(case["id"]) if t["status"] == "ACTIVE"]
        assert open_classes == [SlaClass.NBFC_RESPONSE.value]

    def test_nbfc_tracker_runs_until_disbursal_cancels_it(self, authority, ledger, make_case, sla, nbfc, ops):
        case = make_case(CaseStatus.CWCAF_READY)
        bid = ledger.place_bid(case["id"], 500000, 30, nbfc)
        ledger.accept_bid(bid["id"], ops)
        authority.transition(case["id"], CaseStatus.SHARED_WITH_NBFC, ops)

        nbfc_tracker = [t for t in sla.get_for_case(case["id"]) if t["sla_class"] == SlaClass.NBFC_RESPONSE.value]
        assert [t["status"] for t in nbfc_tracker] == [SlaStatus.ACTIVE.value]

        authority.transition(case["id"], CaseStatus.DISBURSED, ops)

        assert sla.get(nbfc_tracker[0]["id"])["status"] == SlaStatus.CANCELLED.value

    def test_transition_audit_row_describes_side_effects(self, audit, make_case):
        case = make_case(CaseStatus.READY_FOR_COMPANY_REVIEW)
        logs = audit.query(AuditFilter(entity_id=case["id"], action=AuditAction.CASE_STATUS_CHANGE))["logs"]
        entering = [log for log in logs if log["new_value"]["status"] == "READY_FOR_COMPANY_REVIEW"]
        assert len(entering) == 1
        assert entering[0]["details"]["sla"]["opened"] is not None


# =============================================================================
# TEST: CREATION, RISK ASSESSMENT, ALLOWED TARGETS
# =============================================================================

class TestCaseCreation:

    def test_case_numbers_are_sequential(self, authority, sales):
        first = authority.create_case(sales)
        second = authority.create_case(sales)
        assert first["case_number"] == "GRY-000001"
        assert second["case_number"] == "GRY-000002"
        assert first["status_history"][0]["status"] == CaseStatus.LEAD_CREATED.value

    def test_explicit_case_number(self, authority, ops):
        case = authority.create_case(ops, case_number="C-1001")
        assert case["case_number"] == "C-1001"

    def test_duplicate_case_number_conflicts(self, authority, ops):
        authority.create_case(ops, case_number="C-1001")
        with pytest.raises(Conflict):
            authority.create_case(ops, case_number="C-1001")

    def test_create_in_company_review_opens_tracker(self, authority, sla, ops):
        case = authority.create_case(ops, status=CaseStatus.READY_FOR_COMPANY_REVIEW, bill_id="bill-9")
        assert case["bill_id"] == "bill-9"
        assert [t["sla_class"] for t in sla.get_for_case(case["id"])] == [SlaClass.EPC_VALIDATION.value]

    def test_create_rejects_mid_lifecycle_status(self, authority, ops):
        with pytest.raises(ValidationError):
            authority.create_case(ops, status=CaseStatus.RMT_APPROVED)

    def test_external_roles_cannot_create(self, authority, actors):
        with pytest.raises(Forbidden):
            authority.create_case(actors[ActorRole.NBFC])

    def test_creation_is_audited(self, authority, audit, sales):
        case = authority.create_case(sales)
        logs = audit.query(AuditFilter(entity_id=case["id"], action=AuditAction.CASE_CREATE))
        assert logs["pagination"]["total"] == 1


class TestRiskAssessment:

    def test_approve_moves_to_rmt_approved(self, authority, make_case, rmt):
        case = make_case(CaseStatus.RMT_RISK_ANALYSIS)
        result = authority.assess_risk(case["id"], rmt, risk_score=32, risk_level="LOW", recommendation="approve")

        assert result["status"] == CaseStatus.RMT_APPROVED.value
        assert result["risk_assessment"]["riskScore"] == 32
        assert result["risk_assessment"]["assessedBy"] == rmt.id

    def test_reject_is_terminal_and_cancels_tracker(self, authority, make_case, rmt, sla):
        case = make_case(CaseStatus.RMT_RISK_ANALYSIS)
        result = authority.assess_risk(case["id"], rmt, risk_score=88, risk_level="CRITICAL", recommendation="reject")

        assert result["status"] == CaseStatus.RMT_REJECTED.value
        assert all(t["status"] in ("COMPLETED", "CANCELLED") for t in sla.get_for_case(case["id"]))

    def test_needs_review_keeps_status(self, authority, make_case, rmt):
        case = make_case(CaseStatus.RMT_RISK_ANALYSIS)
        result = authority.assess_risk(case["id"], rmt, risk_score=55, risk_level="MEDIUM",
                                       recommendation="needs_review")

        assert result["status"] == CaseStatus.RMT_RISK_ANALYSIS.value
        assert len(result["status_history"]) == len(case["status_history"])
        assert result["risk_assessment"]["recommendation"] == "needs_review"

    def test_wrong_stage(self, authority, make_case, rmt):
        case = make_case(CaseStatus.RMT_QUEUE)
        with pytest.raises(InvalidStage):
            authority.assess_risk(case["id"], rmt, risk_score=10, risk_level="LOW", recommendation="approve")

    def test_only_rmt(self, authority, make_case, ops):
        case = make_case(CaseStatus.RMT_RISK_ANALYSIS)
        with pytest.raises(Forbidden):
            authority.assess_risk(case["id"], ops, risk_score=10, risk_level="LOW", recommendation="approve")

    def test_unknown_recommendation(self, authority, make_case, rmt):
        case = make_case(CaseStatus.RMT_RISK_ANALYSIS)
        with pytest.raises(ValidationError):
            authority.assess_risk(case["id"], rmt, risk_score=10, risk_level="LOW", recommendation="maybe")


class TestAllowedTargets:

    def test_ops_at_docs_submitted(self, authority, make_case, ops):
        case = make_case(CaseStatus.DOCS_SUBMITTED)
        assert set(authority.allowed_targets(case["id"], ops)) == {
            "ACTION_REQUIRED", "KYC_COMPLETED", "CANCELLED",
        }

    def test_nbfc_never_sees_ledger_edges(self, authority, make_case, nbfc):
        case = make_case(CaseStatus.CWCAF_READY)
        assert authority.allowed_targets(case["id"], nbfc) == []


# =============================================================================
# TEST: SCENARIO C-1001
# =============================================================================

class TestScenarioC1001:
    """Case C-1001 at DOCS_SUBMITTED."""

    def test_ops_completes_kyc(self, authority, audit, clock, make_case, ops):
        case = make_case(CaseStatus.DOCS_SUBMITTED, case_number="C-1001")
        clock.advance(hours=1)
        filters = AuditFilter(entity_id=case["id"], category=AuditCategory.CASE, success=True)
        audit_before = audit.query(filters)["pagination"]["total"]

        result = authority.transition(case["id"], CaseStatus.KYC_COMPLETED, ops, notes="KYC verified")

        assert result["case_number"] == "C-1001"
        assert result["status"] == CaseStatus.KYC_COMPLETED.value
        assert len(result["status_history"]) == len(case["status_history"]) + 1

        after = audit.query(filters)
        assert after["pagination"]["total"] == audit_before + 1
        newest = after["logs"][0]
        assert newest["category"] == "CASE"
        assert newest["success"] is True
        assert newest["new_value"]["status"] == "KYC_COMPLETED"
        assert newest["entity_ref"] == "C-1001"

    def test_sales_cannot_jump_to_rmt_approved(self, authority, make_case, ops, sales):
        case = make_case(CaseStatus.DOCS_SUBMITTED, case_number="C-1001")
        authority.transition(case["id"], CaseStatus.KYC_COMPLETED, ops)

        with pytest.raises(InvalidTransition):
            authority.transition(case["id"], CaseStatus.RMT_APPROVED, sales)

        assert authority.store.get(case["id"]).status == CaseStatus.KYC_COMPLETED
