"""
Procurement plan status transition engine.

Manages plan status changes with:
  - A single permission table (PLAN_TRANSITIONS in app.models.procurement)
  - Role, ownership and mandatory-comment checks, all before any mutation
  - Side effects (submitted_at / approved_at stamps)
  - A history entry appended in the same transaction as the status change
  - Optimistic concurrency: an ``expected_status`` mismatch or a concurrent
    write to the plan row is reported as StaleState, never overwritten

9 legal transitions:
  submit, approve_agency, return_to_draft, start_review, approve_dnpm,
  return, lock, unlock, resubmit

Usage:
    from app.services.plan_workflow import request_transition

    result, err = request_transition(
        plan_id=7,
        target_status="approved_by_agency",
        actor_id="user-12",
        actor_role="agency_approver",
        actor_agency_id="AG-001",
    )
    if err:
        return jsonify(err), err["status"]
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    IllegalTransition,
    MissingRequiredComment,
    PlanLocked,
    PlanWorkflowError,
    StaleState,
)
from app.models import db
from app.models.procurement import (
    PLAN_TRANSITIONS,
    ROLES,
    ProcurementPlan,
    get_transition_rule,
)
from app.services.workflow_history import record_action

logger = logging.getLogger(__name__)


def is_owning_agency(plan, actor_agency_id) -> bool:
    if actor_agency_id is None or actor_agency_id == "":
        return False
    return str(actor_agency_id) == str(plan.agency_id)


def authorize_transition(
    current_status: str,
    actor_role: str,
    is_owner: bool,
    target_status: str,
    comments: str | None = None,
    *,
    check_comment: bool = True,
) -> dict:
    """
    Decide whether a transition is legal.  Pure: no database access.

    Returns the matching PLAN_TRANSITIONS rule, or raises the
    PlanWorkflowError subclass naming the first unmet precondition.
    """
    rule = get_transition_rule(current_status, target_status)
    if rule is None:
        if current_status == "locked":
            raise PlanLocked(
                f"Plan is locked; the only permitted change is unlock to 'approved_by_dnpm', "
                f"not '{target_status}'",
                status=current_status,
            )
        raise IllegalTransition(
            f"Transition '{current_status}' → '{target_status}' is not permitted",
            precondition="transition",
        )

    if actor_role not in rule["roles"]:
        raise IllegalTransition(
            f"Role '{actor_role}' cannot perform '{rule['label']}'; "
            f"requires one of: {', '.join(sorted(rule['roles']))}",
            precondition="role",
            details={"allowed_roles": sorted(rule["roles"])},
        )

    if rule["requires_ownership"] and not is_owner:
        raise IllegalTransition(
            f"'{rule['label']}' may only be performed by the plan's own agency",
            precondition="ownership",
        )

    if check_comment and rule["requires_comment"] and not (comments or "").strip():
        raise MissingRequiredComment(f"Comments are required to '{rule['label']}'")

    return rule


def get_available_transitions(plan, actor_role: str, actor_agency_id=None) -> list[dict]:
    """Transitions the actor could request right now, with comment requirements."""
    owner = is_owning_agency(plan, actor_agency_id)
    result = []
    for (frm, to), rule in PLAN_TRANSITIONS.items():
        if frm != plan.status:
            continue
        try:
            authorize_transition(frm, actor_role, owner, to, check_comment=False)
        except PlanWorkflowError:
            continue
        result.append({
            "to_status": to,
            "action": rule["action"],
            "label": rule["label"],
            "requires_comment": rule["requires_comment"],
        })
    return result


def _reject(plan_id, exc: PlanWorkflowError, **log_extra):
    exc.plan_id = plan_id
    logger.info(
        "Plan transition rejected: %s", exc,
        extra={"plan_id": plan_id, "event_type": "workflow.rejected",
               "error_code": exc.code, **log_extra},
    )
    return None, exc.to_dict()


def request_transition(
    plan_id: int,
    target_status: str,
    *,
    actor_id: str,
    actor_role: str,
    actor_agency_id=None,
    comments: str | None = None,
    expected_status: str | None = None,
) -> tuple[dict, None] | tuple[None, dict]:
    """
    Validate and apply a plan status transition.

    Args:
        plan_id:          Plan to move.
        target_status:    Requested status.
        actor_id:         Identity of the caller (recorded in history).
        actor_role:       One of ROLES.
        actor_agency_id:  Caller's agency; compared with plan.agency_id.
        comments:         Mandatory for return_to_draft, return and unlock.
        expected_status:  Status the caller last saw.  A mismatch means
                          someone else moved the plan first → StaleState.

    Returns:
        ({"plan": ..., "history_entry": ...}, None) on success.
        (None, {"error", "code", "precondition", "status", "changed": False})
        on rejection; nothing has been written in that case.
    """
    plan = db.session.get(ProcurementPlan, plan_id)
    if plan is None:
        return None, {
            "error": f"ProcurementPlan id={plan_id} not found",
            "code": "ERR_NOT_FOUND",
            "status": 404,
            "changed": False,
        }

    current = plan.status
    log_extra = {"actor_id": actor_id, "actor_role": actor_role,
                 "from_status": current, "to_status": target_status}

    if actor_role not in ROLES:
        return _reject(plan_id, IllegalTransition(
            f"Unknown role '{actor_role}'", precondition="role",
        ), **log_extra)

    if expected_status is not None and expected_status != current:
        return _reject(plan_id, StaleState(
            f"Plan status is '{current}', expected '{expected_status}'; reload and retry",
            details={"current_status": current, "expected_status": expected_status},
        ), **log_extra)

    try:
        rule = authorize_transition(
            current, actor_role, is_owning_agency(plan, actor_agency_id), target_status, comments,
        )
    except PlanWorkflowError as exc:
        return _reject(plan_id, exc, **log_extra)

    now = datetime.now(timezone.utc)
    try:
        plan.status = target_status
        if target_status == "submitted":
            plan.submitted_at = now
            plan.submitted_by = str(actor_id)
        elif target_status == "approved_by_dnpm" and plan.approved_at is None:
            plan.approved_at = now
            plan.approved_by = str(actor_id)

        entry = record_action(
            plan,
            action=rule["action"],
            from_status=current,
            to_status=target_status,
            actor_id=actor_id,
            actor_role=actor_role,
            comments=comments,
        )
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        return _reject(plan_id, StaleState(
            "Plan was modified by another request; reload and retry",
        ), **log_extra)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Database error applying plan transition", extra={"plan_id": plan_id})
        return None, {
            "error": "Database error",
            "code": "ERR_DATABASE",
            "status": 500,
            "changed": False,
        }

    logger.info(
        "Plan %s: %s → %s (%s)", plan_id, current, target_status, rule["action"],
        extra={"plan_id": plan_id, "event_type": f"workflow.{rule['action']}", **log_extra},
    )
    return {"plan": plan.to_dict(), "history_entry": entry.to_dict()}, None
