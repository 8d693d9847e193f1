"""
Procurement Plan Lifecycle Engine
Procurement plan domain models.

Models:
    - ProcurementPlan:      one agency's annual procurement programme for a financial year
    - ProcurementPlanItem:  single line entry (goods / works / services) within a plan

Architecture:
    ProcurementPlan ──1:N──▶ ProcurementPlanItem
    ProcurementPlan ──1:N──▶ PlanWorkflowAction   (app.models.workflow)
    ProcurementPlanItem ──N:1──▶ ProcurementMethod / ContractType / UnitOfMeasure / Province

Lifecycle states:
    ProcurementPlan:  draft → submitted → approved_by_agency → under_dnpm_review
                      → approved_by_dnpm → locked
                      submitted → draft (return to draft)
                      under_dnpm_review → returned → submitted (resubmit)
                      locked → approved_by_dnpm (unlock)
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import event

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PLAN_STATUSES = {
    "draft", "submitted", "approved_by_agency", "under_dnpm_review",
    "approved_by_dnpm", "returned", "locked",
}

PLAN_STATUS_LABELS = {
    "draft": "Draft",
    "submitted": "Submitted",
    "approved_by_agency": "Approved by Agency",
    "under_dnpm_review": "Under DNPM Review",
    "approved_by_dnpm": "Approved by DNPM",
    "returned": "Returned for Correction",
    "locked": "Locked",
}

ROLES = {
    "agency_user", "agency_approver",
    "dnpm_reviewer", "dnpm_approver", "system_admin",
}

AGENCY_ROLES = frozenset({"agency_user", "agency_approver"})
DNPM_ROLES = frozenset({"dnpm_reviewer", "dnpm_approver", "system_admin"})
ADMIN_ROLE = "system_admin"

# Items may only be added, edited, deleted or imported in these states.
EDITABLE_STATUSES = frozenset({"draft", "returned"})

LOCATION_SCOPES = {"national", "provincial", "district", "specific_sites"}

LOCATION_SCOPE_LABELS = {
    "national": "National",
    "provincial": "Provincial",
    "district": "District",
    "specific_sites": "Specific Sites",
}

# Scopes that name a location and therefore need a province.
PROVINCE_SCOPES = frozenset({"provincial", "district"})


# ── Transition permission table ──────────────────────────────────────────────
# (from_status, to_status) → rule.  The only authority on who may move a plan.

PLAN_TRANSITIONS = {
    ("draft", "submitted"): {
        "action": "submit",
        "label": "Submit for Approval",
        "roles": AGENCY_ROLES,
        "requires_ownership": True,
        "requires_comment": False,
    },
    ("submitted", "approved_by_agency"): {
        "action": "approve_agency",
        "label": "Approve (Agency)",
        "roles": frozenset({"agency_approver"}),
        "requires_ownership": True,
        "requires_comment": False,
    },
    ("submitted", "draft"): {
        "action": "return_to_draft",
        "label": "Return to Draft",
        "roles": frozenset({"agency_approver"}),
        "requires_ownership": True,
        "requires_comment": True,
    },
    ("approved_by_agency", "under_dnpm_review"): {
        "action": "start_review",
        "label": "Start DNPM Review",
        "roles": DNPM_ROLES,
        "requires_ownership": False,
        "requires_comment": False,
    },
    ("under_dnpm_review", "approved_by_dnpm"): {
        "action": "approve_dnpm",
        "label": "Approve (DNPM)",
        "roles": DNPM_ROLES,
        "requires_ownership": False,
        "requires_comment": False,
    },
    ("under_dnpm_review", "returned"): {
        "action": "return",
        "label": "Return for Correction",
        "roles": DNPM_ROLES,
        "requires_ownership": False,
        "requires_comment": True,
    },
    ("approved_by_dnpm", "locked"): {
        "action": "lock",
        "label": "Lock Plan",
        "roles": frozenset({"system_admin"}),
        "requires_ownership": False,
        "requires_comment": False,
    },
    ("locked", "approved_by_dnpm"): {
        "action": "unlock",
        "label": "Unlock Plan",
        "roles": frozenset({"system_admin"}),
        "requires_ownership": False,
        "requires_comment": True,
    },
    ("returned", "submitted"): {
        "action": "resubmit",
        "label": "Resubmit",
        "roles": AGENCY_ROLES,
        "requires_ownership": True,
        "requires_comment": False,
    },
}


def get_transition_rule(old_status, new_status):
    """Return the permission rule for a status pair, or None if not allowed at all."""
    return PLAN_TRANSITIONS.get((old_status, new_status))


def targets_from(status):
    """Return every status reachable from *status* under some role."""
    return [to for (frm, to) in PLAN_TRANSITIONS if frm == status]


def _dec(value):
    return float(value) if value is not None else None


class ProcurementPlan(db.Model):
    """
    Annual procurement plan owned by one agency.

    ``item_count`` and ``total_estimated_value`` are denormalized from the
    items and recomputed by the service layer on every item mutation.
    ``version`` is the optimistic concurrency counter: a flush against a row
    whose version moved on raises ``StaleDataError``.
    """

    __tablename__ = "procurement_plans"

    id = db.Column(db.Integer, primary_key=True)
    agency_id = db.Column(
        db.String(64), nullable=False, index=True,
        comment="Owning agency reference (identity collaborator)",
    )
    financial_year_id = db.Column(
        db.String(64), nullable=False, index=True,
        comment="Financial-year reference, e.g. FY2026",
    )
    fund_source_id = db.Column(
        db.Integer, db.ForeignKey("fund_sources.id", ondelete="SET NULL"),
        nullable=True,
    )

    plan_name = db.Column(db.String(200), nullable=False, default="")
    agency_procurement_entity_name = db.Column(db.String(200), default="")
    agency_budget_code = db.Column(db.String(50), default="")
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)

    status = db.Column(
        db.String(30), nullable=False, default="draft",
        comment="draft | submitted | approved_by_agency | under_dnpm_review | "
                "approved_by_dnpm | returned | locked",
    )

    # Denormalized totals
    item_count = db.Column(db.Integer, nullable=False, default=0)
    total_estimated_value = db.Column(db.Numeric(24, 4), nullable=False, default=Decimal("0"))

    # Stamped only by transitions
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    submitted_by = db.Column(db.String(64), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_by = db.Column(db.String(64), nullable=True)

    # Metadata
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    version = db.Column(db.Integer, nullable=False)

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('draft','submitted','approved_by_agency','under_dnpm_review',"
            "'approved_by_dnpm','returned','locked')",
            name="ck_procurement_plan_status",
        ),
        db.CheckConstraint("period_start <= period_end", name="ck_procurement_plan_period"),
        db.Index("idx_procurement_plan_agency_fy", "agency_id", "financial_year_id"),
    )
    __mapper_args__ = {"version_id_col": version}

    # ── Relationships ────────────────────────────────────────────────────
    items = db.relationship(
        "ProcurementPlanItem", backref="plan", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ProcurementPlanItem.sequence_no",
    )
    fund_source = db.relationship("FundSource")

    @property
    def is_editable(self) -> bool:
        return self.status in EDITABLE_STATUSES

    def to_dict(self, include_items=False):
        result = {
            "id": self.id,
            "agency_id": self.agency_id,
            "financial_year_id": self.financial_year_id,
            "fund_source_id": self.fund_source_id,
            "fund_source": self.fund_source.code if self.fund_source else None,
            "plan_name": self.plan_name,
            "agency_procurement_entity_name": self.agency_procurement_entity_name,
            "agency_budget_code": self.agency_budget_code,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "status": self.status,
            "status_label": PLAN_STATUS_LABELS.get(self.status, self.status),
            "item_count": self.item_count,
            "total_estimated_value": _dec(self.total_estimated_value),
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "submitted_by": self.submitted_by,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "approved_by": self.approved_by,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "version": self.version,
        }
        if include_items:
            result["items"] = [i.to_dict() for i in self.items]
        return result

    def __repr__(self):
        return f"<ProcurementPlan {self.id}: {self.agency_id}/{self.financial_year_id} [{self.status}]>"


class ProcurementPlanItem(db.Model):
    """
    Single line of a procurement plan.

    ``estimated_total_cost`` is always ``quantity * estimated_unit_cost``;
    the mapper events below overwrite whatever was assigned to it.
    """

    __tablename__ = "procurement_plan_items"

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(
        db.Integer, db.ForeignKey("procurement_plans.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    sequence_no = db.Column(db.Integer, nullable=False)

    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=False)
    unspsc_code = db.Column(db.String(20), nullable=True, comment="UNSPSC classification code")

    procurement_method_id = db.Column(
        db.Integer, db.ForeignKey("procurement_methods.id"), nullable=False,
    )
    contract_type_id = db.Column(
        db.Integer, db.ForeignKey("contract_types.id"), nullable=False,
    )
    unit_of_measure_id = db.Column(
        db.Integer, db.ForeignKey("units_of_measure.id"), nullable=True,
    )

    quantity = db.Column(db.Numeric(18, 2), nullable=False)
    estimated_unit_cost = db.Column(db.Numeric(18, 2), nullable=False)
    estimated_total_cost = db.Column(db.Numeric(24, 4), nullable=False, default=Decimal("0"))
    annual_budget_year_value = db.Column(db.Numeric(24, 4), nullable=False, default=Decimal("0"))
    q1_budget = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0"))
    q2_budget = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0"))
    q3_budget = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0"))
    q4_budget = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0"))

    estimated_contract_start = db.Column(db.Date, nullable=False)
    estimated_contract_end = db.Column(db.Date, nullable=False)
    anticipated_duration_months = db.Column(db.Integer, nullable=False, default=1)

    location_scope = db.Column(
        db.String(20), nullable=False, default="national",
        comment="national | provincial | district | specific_sites",
    )
    province_id = db.Column(db.Integer, db.ForeignKey("provinces.id"), nullable=True)

    multi_year_flag = db.Column(db.Boolean, nullable=False, default=False)
    multi_year_total_budget = db.Column(db.Numeric(24, 4), nullable=True)
    third_party_contract_mgmt_required = db.Column(db.Boolean, nullable=False, default=False)

    comments = db.Column(db.Text, nullable=True)
    risk_notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("plan_id", "sequence_no", name="uq_plan_item_sequence"),
        db.CheckConstraint("quantity > 0", name="ck_plan_item_quantity"),
        db.CheckConstraint("estimated_unit_cost > 0", name="ck_plan_item_unit_cost"),
        db.CheckConstraint(
            "q1_budget >= 0 AND q2_budget >= 0 AND q3_budget >= 0 AND q4_budget >= 0",
            name="ck_plan_item_quarters",
        ),
        db.CheckConstraint(
            "estimated_contract_start <= estimated_contract_end",
            name="ck_plan_item_contract_period",
        ),
        db.CheckConstraint(
            "location_scope IN ('national','provincial','district','specific_sites')",
            name="ck_plan_item_location_scope",
        ),
    )

    procurement_method = db.relationship("ProcurementMethod")
    contract_type = db.relationship("ContractType")
    unit_of_measure = db.relationship("UnitOfMeasure")
    province = db.relationship("Province")

    def quarters(self):
        return [self.q1_budget, self.q2_budget, self.q3_budget, self.q4_budget]

    def to_dict(self):
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "sequence_no": self.sequence_no,
            "title": self.title,
            "description": self.description,
            "unspsc_code": self.unspsc_code,
            "procurement_method": self.procurement_method.code if self.procurement_method else None,
            "contract_type": self.contract_type.code if self.contract_type else None,
            "unit_of_measure": self.unit_of_measure.code if self.unit_of_measure else None,
            "quantity": _dec(self.quantity),
            "estimated_unit_cost": _dec(self.estimated_unit_cost),
            "estimated_total_cost": _dec(self.estimated_total_cost),
            "annual_budget_year_value": _dec(self.annual_budget_year_value),
            "q1_budget": _dec(self.q1_budget),
            "q2_budget": _dec(self.q2_budget),
            "q3_budget": _dec(self.q3_budget),
            "q4_budget": _dec(self.q4_budget),
            "estimated_contract_start": (
                self.estimated_contract_start.isoformat() if self.estimated_contract_start else None
            ),
            "estimated_contract_end": (
                self.estimated_contract_end.isoformat() if self.estimated_contract_end else None
            ),
            "anticipated_duration_months": self.anticipated_duration_months,
            "location_scope": self.location_scope,
            "province": self.province.code if self.province else None,
            "multi_year_flag": self.multi_year_flag,
            "multi_year_total_budget": _dec(self.multi_year_total_budget),
            "third_party_contract_mgmt_required": self.third_party_contract_mgmt_required,
            "comments": self.comments,
            "risk_notes": self.risk_notes,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ProcurementPlanItem {self.plan_id}#{self.sequence_no}: {self.title[:30]}>"


# ── Derived total ────────────────────────────────────────────────────────────

@event.listens_for(ProcurementPlanItem, "before_insert")
@event.listens_for(ProcurementPlanItem, "before_update")
def _derive_total_cost(mapper, connection, target):
    from app.services.budget_reconciler import AMOUNT_SCALE, line_total, to_decimal

    # derive from the values the columns will actually hold
    step = Decimal(1).scaleb(-AMOUNT_SCALE)
    for attr in ("quantity", "estimated_unit_cost"):
        value = to_decimal(getattr(target, attr))
        if value is not None:
            setattr(target, attr, value.quantize(step))
    target.estimated_total_cost = line_total(target.quantity, target.estimated_unit_cost)
