"""
Procurement Plan Lifecycle Engine
Audit domain model.

Models:
    - AuditLog: append-only trail of plan authoring events (item edits, imports).

Status transitions are recorded separately in PlanWorkflowAction; this log
covers the data changes made while a plan is editable.
"""

import json
from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"procurement_plan", "procurement_plan_item"}

AUDIT_ACTIONS = {
    "plan.create",
    "item.create",
    "item.update",
    "item.delete",
    "import.commit",
}


class AuditLog(db.Model):
    """
    One row per authoring action.  ``diff_json`` carries an old→new
    snapshot for updates, or the created/deleted values.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_plan", "plan_id"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(
        db.Integer,
        db.ForeignKey("procurement_plans.id", ondelete="CASCADE"),
        nullable=True,
    )
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="procurement_plan | procurement_plan_item",
    )
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(
        db.String(60), nullable=False,
        comment="item.create | item.update | import.commit | …",
    )
    actor = db.Column(db.String(64), nullable=False, default="system")
    diff_json = db.Column(db.Text, default="{}")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    plan_id: int | None = None,
    actor: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    When *actor* is omitted it is taken from the request's actor context,
    falling back to ``"system"`` outside a request.
    """
    if actor is None:
        from flask import g, has_request_context
        if has_request_context():
            actor = getattr(g, "actor_id", None)
    log = AuditLog(
        plan_id=plan_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
