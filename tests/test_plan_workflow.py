"""
Exhaustive transition tests for the procurement plan lifecycle engine.

Permission table (PLAN_TRANSITIONS in ``app/models/procurement.py``),
7 states, 9 legal edges:

    draft              -> submitted            agency roles, own agency
    submitted          -> approved_by_agency   agency_approver, own agency
    submitted          -> draft                agency_approver, own agency, comment
    approved_by_agency -> under_dnpm_review    DNPM roles
    under_dnpm_review  -> approved_by_dnpm     DNPM roles
    under_dnpm_review  -> returned             DNPM roles, comment
    approved_by_dnpm   -> locked               system_admin
    locked             -> approved_by_dnpm     system_admin, comment
    returned           -> submitted            agency roles, own agency

For the engine:
    - Every (edge, allowed role) pair succeeds and appends one history entry.
    - Every pair outside the table is rejected with nothing written.
    - Role / ownership / comment / lock / stale-state failures each name
      their precondition.
    - Side effects: submitted_at restamped on each submission, approved_at
      stamped once.
"""

import pytest
from sqlalchemy import text

from app.core.exceptions import IllegalTransition, MissingRequiredComment, PlanLocked
from app.models import db
from app.models.procurement import PLAN_STATUSES, PLAN_TRANSITIONS, ROLES
from app.models.workflow import ImmutableRecordError, PlanWorkflowAction
from app.services.plan_workflow import (
    authorize_transition,
    get_available_transitions,
    request_transition,
)
from app.services.workflow_history import get_history, record_action

AGENCY_ID = "AG-001"
OTHER_AGENCY_ID = "AG-002"


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════


def _transition(plan, target, role, agency_id=AGENCY_ID, actor_id="user-1", comments=None, **kwargs):
    return request_transition(
        plan.id,
        target,
        actor_id=actor_id,
        actor_role=role,
        actor_agency_id=agency_id,
        comments=comments,
        **kwargs,
    )


def _history_count(plan_id):
    return PlanWorkflowAction.query.filter_by(plan_id=plan_id).count()


def _reload_status(plan):
    db.session.expire_all()
    return plan.status


def _valid_cases():
    """(from, to, role) for every role a rule allows."""
    return [
        (frm, to, role)
        for (frm, to), rule in sorted(PLAN_TRANSITIONS.items())
        for role in sorted(rule["roles"])
    ]


def _wrong_role_cases():
    return [
        (frm, to, role)
        for (frm, to), rule in sorted(PLAN_TRANSITIONS.items())
        for role in sorted(ROLES - rule["roles"])
    ]


def _invalid_pairs():
    """Every (from, to) pair not in the table, excluding the locked source."""
    return [
        (frm, to)
        for frm in sorted(PLAN_STATUSES - {"locked"})
        for to in sorted(PLAN_STATUSES)
        if (frm, to) not in PLAN_TRANSITIONS
    ]


# ═════════════════════════════════════════════════════════════════════════════
# 1. LEGAL TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════════


class TestValidTransitions:
    @pytest.mark.parametrize("from_status,to_status,role", _valid_cases())
    def test_valid_transition(self, make_plan, from_status, to_status, role):
        plan = make_plan(status=from_status)

        result, err = _transition(plan, to_status, role, comments="Reviewed")

        assert err is None, err
        assert result["plan"]["status"] == to_status
        assert result["history_entry"]["from_status"] == from_status
        assert result["history_entry"]["to_status"] == to_status
        assert result["history_entry"]["actor_role"] == role
        assert _reload_status(plan) == to_status
        assert _history_count(plan.id) == 1

    def test_agency_approval(self, make_plan):
        plan = make_plan(status="submitted")

        result, err = _transition(plan, "approved_by_agency", "agency_approver", actor_id="approver-7")

        assert err is None
        assert result["plan"]["status"] == "approved_by_agency"
        entry = get_history(plan.id)[-1]
        assert entry.action == "approve_agency"
        assert entry.from_status == "submitted"
        assert entry.to_status == "approved_by_agency"
        assert entry.actor_id == "approver-7"
        assert entry.actor_role == "agency_approver"

    def test_dnpm_roles_need_no_ownership(self, make_plan):
        plan = make_plan(status="approved_by_agency")
        _, err = _transition(plan, "under_dnpm_review", "dnpm_reviewer", agency_id=None)
        assert err is None

    def test_comment_recorded(self, make_plan):
        plan = make_plan(status="under_dnpm_review")
        result, _ = _transition(plan, "returned", "dnpm_reviewer", comments="  Fix Q3 figures  ")
        assert result["history_entry"]["comments"] == "Fix Q3 figures"

    def test_matching_expected_status(self, make_plan):
        plan = make_plan(status="draft")
        _, err = _transition(plan, "submitted", "agency_user", expected_status="draft")
        assert err is None


# ═════════════════════════════════════════════════════════════════════════════
# 2. REJECTED TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════════


class TestInvalidTransitions:
    @pytest.mark.parametrize("from_status,to_status", _invalid_pairs())
    def test_pair_not_in_table(self, make_plan, from_status, to_status):
        plan = make_plan(status=from_status)

        result, err = _transition(plan, to_status, "system_admin", comments="x")

        assert result is None
        assert err["code"] == "ERR_ILLEGAL_TRANSITION"
        assert err["precondition"] == "transition"
        assert err["status"] == 409
        assert err["changed"] is False
        assert _reload_status(plan) == from_status
        assert _history_count(plan.id) == 0

    def test_returned_cannot_go_back_to_draft(self, make_plan):
        plan = make_plan(status="returned")
        _, err = _transition(plan, "draft", "agency_user")
        assert err["code"] == "ERR_ILLEGAL_TRANSITION"

    def test_unknown_target_status(self, make_plan):
        plan = make_plan(status="draft")
        _, err = _transition(plan, "archived", "agency_user")
        assert err["code"] == "ERR_ILLEGAL_TRANSITION"

    @pytest.mark.parametrize("from_status,to_status,role", _wrong_role_cases())
    def test_wrong_role(self, make_plan, from_status, to_status, role):
        plan = make_plan(status=from_status)

        _, err = _transition(plan, to_status, role, comments="x")

        assert err["code"] == "ERR_ILLEGAL_TRANSITION"
        assert err["precondition"] == "role"
        assert err["status"] == 403
        assert _reload_status(plan) == from_status
        assert _history_count(plan.id) == 0

    def test_unknown_role(self, make_plan):
        plan = make_plan(status="draft")
        _, err = _transition(plan, "submitted", "auditor")
        assert err["precondition"] == "role"
        assert err["status"] == 403

    @pytest.mark.parametrize("from_status,to_status,role", [
        ("draft", "submitted", "agency_user"),
        ("submitted", "approved_by_agency", "agency_approver"),
        ("returned", "submitted", "agency_approver"),
    ])
    def test_other_agency(self, make_plan, from_status, to_status, role):
        plan = make_plan(status=from_status)

        _, err = _transition(plan, to_status, role, agency_id=OTHER_AGENCY_ID)

        assert err["code"] == "ERR_ILLEGAL_TRANSITION"
        assert err["precondition"] == "ownership"
        assert err["status"] == 403
        assert _reload_status(plan) == from_status

    def test_agency_role_without_agency(self, make_plan):
        plan = make_plan(status="draft")
        _, err = _transition(plan, "submitted", "agency_user", agency_id=None)
        assert err["precondition"] == "ownership"

    def test_missing_plan(self):
        result, err = request_transition(
            99999, "submitted", actor_id="user-1", actor_role="agency_user", actor_agency_id=AGENCY_ID,
        )
        assert result is None
        assert err["status"] == 404


class TestRequiredComments:
    @pytest.mark.parametrize("comments", [None, "", "   "])
    def test_return_without_comment(self, make_plan, comments):
        plan = make_plan(status="under_dnpm_review")

        result, err = _transition(plan, "returned", "dnpm_reviewer", comments=comments)

        assert result is None
        assert err["code"] == "ERR_COMMENT_REQUIRED"
        assert err["precondition"] == "comment"
        assert err["status"] == 422
        assert _reload_status(plan) == "under_dnpm_review"
        assert _history_count(plan.id) == 0

    def test_return_to_draft_needs_comment(self, make_plan):
        plan = make_plan(status="submitted")
        _, err = _transition(plan, "draft", "agency_approver")
        assert err["code"] == "ERR_COMMENT_REQUIRED"

    def test_unlock_needs_comment(self, make_plan):
        plan = make_plan(status="locked")
        _, err = _transition(plan, "approved_by_dnpm", "system_admin")
        assert err["code"] == "ERR_COMMENT_REQUIRED"
        assert _reload_status(plan) == "locked"

    def test_role_checked_before_comment(self, make_plan):
        plan = make_plan(status="under_dnpm_review")
        _, err = _transition(plan, "returned", "agency_user")
        assert err["precondition"] == "role"


class TestLockedPlan:
    @pytest.mark.parametrize("target", sorted(PLAN_STATUSES - {"approved_by_dnpm"}))
    def test_only_unlock_leaves_locked(self, make_plan, target):
        plan = make_plan(status="locked")

        _, err = _transition(plan, target, "system_admin", comments="x")

        assert err["code"] == "ERR_PLAN_LOCKED"
        assert err["precondition"] == "lock"
        assert _reload_status(plan) == "locked"
        assert _history_count(plan.id) == 0

    def test_unlock_with_comment(self, make_plan):
        plan = make_plan(status="locked")
        result, err = _transition(plan, "approved_by_dnpm", "system_admin", comments="Budget revision")
        assert err is None
        assert result["history_entry"]["action"] == "unlock"


class TestStaleState:
    def test_expected_status_mismatch(self, make_plan):
        plan = make_plan(status="submitted")

        result, err = _transition(plan, "approved_by_agency", "agency_approver", expected_status="draft")

        assert result is None
        assert err["code"] == "ERR_STALE_STATE"
        assert err["precondition"] == "state"
        assert err["details"] == {"current_status": "submitted", "expected_status": "draft"}
        assert _reload_status(plan) == "submitted"

    def test_concurrent_write_detected(self, make_plan):
        plan = make_plan(status="submitted")
        assert plan.version == 1
        # another writer bumps the row between our read and our write
        db.session.execute(
            text("UPDATE procurement_plans SET version = version + 1 WHERE id = :id"),
            {"id": plan.id},
        )

        result, err = _transition(plan, "approved_by_agency", "agency_approver")

        assert result is None
        assert err["code"] == "ERR_STALE_STATE"
        assert _history_count(plan.id) == 0

    def test_second_of_two_approvals_is_rejected(self, make_plan):
        plan = make_plan(status="submitted")

        first, _ = _transition(plan, "approved_by_agency", "agency_approver", expected_status="submitted")
        _, err = _transition(plan, "approved_by_agency", "agency_approver", expected_status="submitted")

        assert first["plan"]["status"] == "approved_by_agency"
        assert err["code"] == "ERR_STALE_STATE"
        assert _history_count(plan.id) == 1


# ═════════════════════════════════════════════════════════════════════════════
# 3. SIDE EFFECTS AND HISTORY
# ═════════════════════════════════════════════════════════════════════════════


class TestLifecycleStamps:
    def test_submission_stamped(self, make_plan):
        plan = make_plan(status="draft")
        _transition(plan, "submitted", "agency_user", actor_id="user-9")

        db.session.expire_all()
        assert plan.submitted_at is not None
        assert plan.submitted_by == "user-9"
        assert plan.approved_at is None

    def test_resubmission_restamps(self, make_plan):
        plan = make_plan(status="draft")
        _transition(plan, "submitted", "agency_user", actor_id="user-1")
        _transition(plan, "draft", "agency_approver", comments="Missing items")
        _transition(plan, "submitted", "agency_user", actor_id="user-2")

        db.session.expire_all()
        assert plan.submitted_by == "user-2"

    def test_approval_stamped_once(self, make_plan):
        plan = make_plan(status="under_dnpm_review")
        _transition(plan, "approved_by_dnpm", "dnpm_approver", actor_id="dnpm-1")
        db.session.expire_all()
        first_approved_at = plan.approved_at

        _transition(plan, "locked", "system_admin", actor_id="admin-1")
        _transition(plan, "approved_by_dnpm", "system_admin", actor_id="admin-1", comments="Reopen")

        db.session.expire_all()
        assert first_approved_at is not None
        assert plan.approved_at == first_approved_at
        assert plan.approved_by == "dnpm-1"


class TestHistory:
    def test_full_lifecycle_history_in_order(self, make_plan):
        plan = make_plan(status="draft")
        steps = [
            ("submitted", "agency_user", None),
            ("approved_by_agency", "agency_approver", None),
            ("under_dnpm_review", "dnpm_reviewer", None),
            ("returned", "dnpm_reviewer", "Split item 3"),
            ("submitted", "agency_user", None),
            ("approved_by_agency", "agency_approver", None),
            ("under_dnpm_review", "dnpm_reviewer", None),
            ("approved_by_dnpm", "dnpm_approver", None),
            ("locked", "system_admin", None),
        ]
        for target, role, comments in steps:
            _, err = _transition(plan, target, role, comments=comments)
            assert err is None, err

        history = get_history(plan.id)
        assert [h.action for h in history] == [
            "submit", "approve_agency", "start_review", "return", "resubmit",
            "approve_agency", "start_review", "approve_dnpm", "lock",
        ]
        # each entry starts where the previous one ended
        for prev, cur in zip(history, history[1:]):
            assert cur.from_status == prev.to_status
        assert history[-1].to_status == _reload_status(plan) == "locked"

    def test_rejection_leaves_history_untouched(self, make_plan):
        plan = make_plan(status="draft")
        _transition(plan, "submitted", "agency_user")
        _transition(plan, "locked", "system_admin")
        assert [h.action for h in get_history(plan.id)] == ["submit"]

    def test_entries_cannot_be_modified(self, make_plan):
        plan = make_plan(status="draft")
        _transition(plan, "submitted", "agency_user")
        entry = get_history(plan.id)[0]

        entry.comments = "rewritten"
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()

    def test_entries_cannot_be_deleted(self, make_plan):
        plan = make_plan(status="draft")
        _transition(plan, "submitted", "agency_user")
        entry = get_history(plan.id)[0]

        db.session.delete(entry)
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()
        assert _history_count(plan.id) == 1

    def test_unknown_action_rejected(self, plan):
        with pytest.raises(ValueError):
            record_action(plan, action="archive", from_status="draft", to_status="draft",
                          actor_id="user-1", actor_role="agency_user")


# ═════════════════════════════════════════════════════════════════════════════
# 4. PURE AUTHORIZATION AND AVAILABLE ACTIONS
# ═════════════════════════════════════════════════════════════════════════════


class TestAuthorizeTransition:
    def test_returns_rule(self):
        rule = authorize_transition("draft", "agency_user", True, "submitted")
        assert rule["action"] == "submit"

    def test_illegal_pair(self):
        with pytest.raises(IllegalTransition) as exc_info:
            authorize_transition("draft", "system_admin", True, "locked")
        assert exc_info.value.precondition == "transition"

    def test_locked(self):
        with pytest.raises(PlanLocked):
            authorize_transition("locked", "system_admin", False, "draft")

    def test_comment_check_can_be_skipped(self):
        with pytest.raises(MissingRequiredComment):
            authorize_transition("locked", "system_admin", False, "approved_by_dnpm")
        rule = authorize_transition("locked", "system_admin", False, "approved_by_dnpm", check_comment=False)
        assert rule["action"] == "unlock"


class TestAvailableTransitions:
    def test_owner_can_submit_draft(self, make_plan):
        plan = make_plan(status="draft")
        result = get_available_transitions(plan, "agency_user", AGENCY_ID)
        assert result == [{
            "to_status": "submitted", "action": "submit",
            "label": "Submit for Approval", "requires_comment": False,
        }]

    def test_other_agency_sees_nothing(self, make_plan):
        plan = make_plan(status="draft")
        assert get_available_transitions(plan, "agency_user", OTHER_AGENCY_ID) == []

    def test_agency_approver_on_submitted(self, make_plan):
        plan = make_plan(status="submitted")
        result = {t["to_status"]: t["requires_comment"]
                  for t in get_available_transitions(plan, "agency_approver", AGENCY_ID)}
        assert result == {"approved_by_agency": False, "draft": True}

    def test_dnpm_reviewer_on_review(self, make_plan):
        plan = make_plan(status="under_dnpm_review")
        targets = {t["to_status"] for t in get_available_transitions(plan, "dnpm_reviewer")}
        assert targets == {"approved_by_dnpm", "returned"}

    def test_locked_plan_only_unlock(self, make_plan):
        plan = make_plan(status="locked")
        assert [t["action"] for t in get_available_transitions(plan, "system_admin")] == ["unlock"]
        assert get_available_transitions(plan, "dnpm_approver") == []
