"""
Procurement Plan Lifecycle Engine
Workflow history model.

Models:
    - PlanWorkflowAction: immutable, append-only ledger of plan status changes.

Rows are written by app.services.workflow_history inside the same
transaction as the status change they describe.  The ORM refuses to
UPDATE or DELETE an existing row.
"""

from datetime import datetime, timezone

from sqlalchemy import event

from app.models import db


WORKFLOW_ACTIONS = {
    "create", "submit", "approve_agency", "return_to_draft", "start_review",
    "approve_dnpm", "return", "lock", "unlock", "resubmit",
}


class ImmutableRecordError(Exception):
    """Raised when code tries to modify or remove a history entry."""


class PlanWorkflowAction(db.Model):
    """
    One accepted transition (or the plan's creation).

    ``from_status`` is NULL only for the ``create`` entry.
    """

    __tablename__ = "procurement_plan_workflow_actions"
    __table_args__ = (
        db.Index("idx_plan_workflow_plan_ts", "plan_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(
        db.Integer, db.ForeignKey("procurement_plans.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    action = db.Column(db.String(30), nullable=False)
    from_status = db.Column(db.String(30), nullable=True)
    to_status = db.Column(db.String(30), nullable=False)
    actor_id = db.Column(db.String(64), nullable=False)
    actor_role = db.Column(db.String(30), nullable=False)
    comments = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "action": self.action,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "comments": self.comments,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<PlanWorkflowAction {self.id}: plan={self.plan_id} {self.from_status}→{self.to_status}>"


@event.listens_for(PlanWorkflowAction, "before_update")
def _refuse_update(mapper, connection, target):
    raise ImmutableRecordError(f"Workflow history entry {target.id} cannot be modified")


@event.listens_for(PlanWorkflowAction, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise ImmutableRecordError(f"Workflow history entry {target.id} cannot be deleted")
