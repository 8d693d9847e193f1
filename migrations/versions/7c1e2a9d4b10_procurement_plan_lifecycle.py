"""procurement_plan_lifecycle

Reference catalogs, procurement plans and items, workflow history and the
authoring audit log.

Revision ID: 7c1e2a9d4b10
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7c1e2a9d4b10"
down_revision = None
branch_labels = None
depends_on = None


def _catalog_columns():
    return [
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=150), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    ]


def _create_catalog(existing, table, *extra):
    if table in existing:
        return
    op.create_table(
        table,
        *_catalog_columns(),
        *extra,
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(f"ix_{table}_code", table, ["code"], unique=True)


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    # ── Reference catalogs ───────────────────────────────────────────
    _create_catalog(
        existing, "procurement_methods",
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("threshold_min", sa.Numeric(18, 2), nullable=True),
        sa.Column("threshold_max", sa.Numeric(18, 2), nullable=True),
        sa.Column("requires_approval", sa.Boolean(), nullable=True),
    )
    _create_catalog(
        existing, "contract_types",
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=20), nullable=False, server_default="goods"),
    )
    _create_catalog(
        existing, "units_of_measure",
        sa.Column("abbreviation", sa.String(length=10), nullable=True),
    )
    _create_catalog(
        existing, "provinces",
        sa.Column("region", sa.String(length=30), nullable=True),
    )
    _create_catalog(
        existing, "fund_sources",
        sa.Column("description", sa.Text(), nullable=True),
    )

    # ── Plans ────────────────────────────────────────────────────────
    if "procurement_plans" not in existing:
        op.create_table(
            "procurement_plans",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("agency_id", sa.String(length=64), nullable=False),
            sa.Column("financial_year_id", sa.String(length=64), nullable=False),
            sa.Column("fund_source_id", sa.Integer(), nullable=True),
            sa.Column("plan_name", sa.String(length=200), nullable=False, server_default=""),
            sa.Column("agency_procurement_entity_name", sa.String(length=200), nullable=True),
            sa.Column("agency_budget_code", sa.String(length=50), nullable=True),
            sa.Column("period_start", sa.Date(), nullable=False),
            sa.Column("period_end", sa.Date(), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="draft"),
            sa.Column("item_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_estimated_value", sa.Numeric(24, 4), nullable=False, server_default="0"),
            sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("submitted_by", sa.String(length=64), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("approved_by", sa.String(length=64), nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["fund_source_id"], ["fund_sources.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint(
                "status IN ('draft','submitted','approved_by_agency','under_dnpm_review',"
                "'approved_by_dnpm','returned','locked')",
                name="ck_procurement_plan_status",
            ),
            sa.CheckConstraint("period_start <= period_end", name="ck_procurement_plan_period"),
        )
        op.create_index("ix_procurement_plans_agency_id", "procurement_plans", ["agency_id"])
        op.create_index("ix_procurement_plans_financial_year_id", "procurement_plans", ["financial_year_id"])
        op.create_index("idx_procurement_plan_agency_fy", "procurement_plans",
                        ["agency_id", "financial_year_id"])

    # ── Items ────────────────────────────────────────────────────────
    if "procurement_plan_items" not in existing:
        op.create_table(
            "procurement_plan_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("plan_id", sa.Integer(), nullable=False),
            sa.Column("sequence_no", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("unspsc_code", sa.String(length=20), nullable=True),
            sa.Column("procurement_method_id", sa.Integer(), nullable=False),
            sa.Column("contract_type_id", sa.Integer(), nullable=False),
            sa.Column("unit_of_measure_id", sa.Integer(), nullable=True),
            sa.Column("quantity", sa.Numeric(18, 2), nullable=False),
            sa.Column("estimated_unit_cost", sa.Numeric(18, 2), nullable=False),
            sa.Column("estimated_total_cost", sa.Numeric(24, 4), nullable=False, server_default="0"),
            sa.Column("annual_budget_year_value", sa.Numeric(24, 4), nullable=False, server_default="0"),
            sa.Column("q1_budget", sa.Numeric(18, 2), nullable=False, server_default="0"),
            sa.Column("q2_budget", sa.Numeric(18, 2), nullable=False, server_default="0"),
            sa.Column("q3_budget", sa.Numeric(18, 2), nullable=False, server_default="0"),
            sa.Column("q4_budget", sa.Numeric(18, 2), nullable=False, server_default="0"),
            sa.Column("estimated_contract_start", sa.Date(), nullable=False),
            sa.Column("estimated_contract_end", sa.Date(), nullable=False),
            sa.Column("anticipated_duration_months", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("location_scope", sa.String(length=20), nullable=False, server_default="national"),
            sa.Column("province_id", sa.Integer(), nullable=True),
            sa.Column("multi_year_flag", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("multi_year_total_budget", sa.Numeric(24, 4), nullable=True),
            sa.Column("third_party_contract_mgmt_required", sa.Boolean(), nullable=False,
                      server_default=sa.false()),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.Column("risk_notes", sa.Text(), nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["plan_id"], ["procurement_plans.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["procurement_method_id"], ["procurement_methods.id"]),
            sa.ForeignKeyConstraint(["contract_type_id"], ["contract_types.id"]),
            sa.ForeignKeyConstraint(["unit_of_measure_id"], ["units_of_measure.id"]),
            sa.ForeignKeyConstraint(["province_id"], ["provinces.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("plan_id", "sequence_no", name="uq_plan_item_sequence"),
            sa.CheckConstraint("quantity > 0", name="ck_plan_item_quantity"),
            sa.CheckConstraint("estimated_unit_cost > 0", name="ck_plan_item_unit_cost"),
            sa.CheckConstraint(
                "q1_budget >= 0 AND q2_budget >= 0 AND q3_budget >= 0 AND q4_budget >= 0",
                name="ck_plan_item_quarters",
            ),
            sa.CheckConstraint(
                "estimated_contract_start <= estimated_contract_end",
                name="ck_plan_item_contract_period",
            ),
            sa.CheckConstraint(
                "location_scope IN ('national','provincial','district','specific_sites')",
                name="ck_plan_item_location_scope",
            ),
        )
        op.create_index("ix_procurement_plan_items_plan_id", "procurement_plan_items", ["plan_id"])

    # ── Workflow history ─────────────────────────────────────────────
    if "procurement_plan_workflow_actions" not in existing:
        op.create_table(
            "procurement_plan_workflow_actions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("plan_id", sa.Integer(), nullable=False),
            sa.Column("action", sa.String(length=30), nullable=False),
            sa.Column("from_status", sa.String(length=30), nullable=True),
            sa.Column("to_status", sa.String(length=30), nullable=False),
            sa.Column("actor_id", sa.String(length=64), nullable=False),
            sa.Column("actor_role", sa.String(length=30), nullable=False),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["plan_id"], ["procurement_plans.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_procurement_plan_workflow_actions_plan_id",
                        "procurement_plan_workflow_actions", ["plan_id"])
        op.create_index("idx_plan_workflow_plan_ts", "procurement_plan_workflow_actions",
                        ["plan_id", "created_at"])

    # ── Audit log ────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("plan_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=64), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["plan_id"], ["procurement_plans.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_plan", "audit_logs", ["plan_id"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    for table in (
        "audit_logs",
        "procurement_plan_workflow_actions",
        "procurement_plan_items",
        "procurement_plans",
        "fund_sources",
        "provinces",
        "units_of_measure",
        "contract_types",
        "procurement_methods",
    ):
        if table in existing:
            op.drop_table(table)
