"""
Workflow history — append-only ledger of plan status changes.

``record_action`` only flushes: the transition engine owns the transaction,
so a history row and the status change it describes commit or roll back
together.  The plan's ``status`` column stays authoritative; history is
never replayed to derive it.
"""

import logging

from app.models import db
from app.models.workflow import WORKFLOW_ACTIONS, PlanWorkflowAction

logger = logging.getLogger(__name__)


def record_action(
    plan,
    *,
    action: str,
    from_status: str | None,
    to_status: str,
    actor_id: str,
    actor_role: str,
    comments: str | None = None,
) -> PlanWorkflowAction:
    """Append one history entry for *plan*.  Flushes, caller commits."""
    if action not in WORKFLOW_ACTIONS:
        raise ValueError(f"Unknown workflow action: {action}")

    entry = PlanWorkflowAction(
        plan_id=plan.id,
        action=action,
        from_status=from_status,
        to_status=to_status,
        actor_id=str(actor_id),
        actor_role=actor_role,
        comments=(comments or "").strip() or None,
    )
    db.session.add(entry)
    db.session.flush()
    logger.debug(
        "Workflow action recorded",
        extra={"plan_id": plan.id, "event_type": f"workflow.{action}", "actor_id": actor_id},
    )
    return entry


def get_history(plan_id: int) -> list[PlanWorkflowAction]:
    """All entries for a plan, oldest first (timestamp, then insertion order)."""
    return (
        PlanWorkflowAction.query
        .filter_by(plan_id=plan_id)
        .order_by(PlanWorkflowAction.created_at.asc(), PlanWorkflowAction.id.asc())
        .all()
    )
