"""
Procurement plan authoring service.

Plans and their items are only ever written through this module (and the
import commit in plan_import), so the invariants hold in one place:

  - only the owning agency (or a system admin) writes a plan (else PlanAccessDenied)
  - headers and items change only while the plan is draft or returned (else PlanLocked)
  - estimated_total_cost = quantity × unit cost, never taken from input
  - plan.item_count / plan.total_estimated_value recomputed on every change
  - sequence numbers unique and increasing within a plan

Services raise NotFoundError / ValidationError / PlanWorkflowError; the
blueprint maps them to HTTP responses.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    DuplicateSequenceNumber,
    NotFoundError,
    PlanAccessDenied,
    PlanLocked,
    StaleState,
    ValidationError,
)
from app.models import db
from app.models.audit import write_audit
from app.models.procurement import (
    ADMIN_ROLE,
    AGENCY_ROLES,
    LOCATION_SCOPES,
    PROVINCE_SCOPES,
    ProcurementPlan,
    ProcurementPlanItem,
)
from app.models.reference import FundSource
from app.services import budget_reconciler as br
from app.services.reference_catalog import ReferenceCatalog
from app.services.workflow_history import record_action
from app.utils.helpers import parse_date

logger = logging.getLogger(__name__)


# ── Lookups ──────────────────────────────────────────────────────────────────

def get_plan(plan_id: int) -> ProcurementPlan:
    plan = db.session.get(ProcurementPlan, plan_id)
    if plan is None:
        raise NotFoundError(resource="ProcurementPlan", resource_id=plan_id)
    return plan


def get_item(item_id: int) -> ProcurementPlanItem:
    item = db.session.get(ProcurementPlanItem, item_id)
    if item is None:
        raise NotFoundError(resource="ProcurementPlanItem", resource_id=item_id)
    return item


def list_plans(*, agency_id=None, financial_year_id=None, status=None):
    q = ProcurementPlan.query
    if agency_id:
        q = q.filter_by(agency_id=str(agency_id))
    if financial_year_id:
        q = q.filter_by(financial_year_id=str(financial_year_id))
    if status:
        q = q.filter_by(status=status)
    return q.order_by(ProcurementPlan.id)


def list_items(plan_id: int) -> list[ProcurementPlanItem]:
    get_plan(plan_id)
    return (
        ProcurementPlanItem.query
        .filter_by(plan_id=plan_id)
        .order_by(ProcurementPlanItem.sequence_no)
        .all()
    )


def existing_sequence_numbers(plan_id: int) -> set[int]:
    rows = db.session.query(ProcurementPlanItem.sequence_no).filter_by(plan_id=plan_id).all()
    return {r[0] for r in rows}


def next_sequence_no(plan_id: int) -> int:
    current = (
        db.session.query(func.max(ProcurementPlanItem.sequence_no))
        .filter_by(plan_id=plan_id)
        .scalar()
    )
    return (current or 0) + 1


# ── Authority ────────────────────────────────────────────────────────────────

def require_editable(plan: ProcurementPlan) -> None:
    if not plan.is_editable:
        raise PlanLocked(plan_id=plan.id, status=plan.status)


def require_author(agency_id, *, actor_role: str, actor_agency_id=None, plan_id=None) -> None:
    """Agency roles may author their own agency's plans; system admins any agency's."""
    if actor_role == ADMIN_ROLE:
        return
    if actor_role not in AGENCY_ROLES:
        raise PlanAccessDenied(
            f"Role '{actor_role}' cannot author procurement plans",
            precondition="role", plan_id=plan_id,
        )
    if not actor_agency_id or str(actor_agency_id) != str(agency_id):
        raise PlanAccessDenied(
            f"Plans of agency {agency_id} can only be changed by that agency",
            plan_id=plan_id,
        )


def authorize_plan_write(plan: ProcurementPlan, *, actor_role: str, actor_agency_id=None) -> None:
    """
    The single gate for every plan header and item write (including import commits).

    Raises PlanAccessDenied (403) when the actor is not an author of this
    plan, then PlanLocked (409) when the plan is not draft or returned.
    """
    require_author(plan.agency_id, actor_role=actor_role, actor_agency_id=actor_agency_id,
                   plan_id=plan.id)
    require_editable(plan)


# ── Plan ─────────────────────────────────────────────────────────────────────

PLAN_HEADER_FIELDS = (
    "plan_name", "agency_procurement_entity_name", "agency_budget_code",
    "period_start", "period_end", "fund_source",
)

# Set at creation and never edited; status moves only through transitions.
FIXED_PLAN_FIELDS = ("agency_id", "financial_year_id", "status")


def _resolve_plan_header(data: dict, errors: dict) -> dict:
    """Validate the editable header fields into column values; problems go into *errors*."""
    period_start = parse_date(data.get("period_start"))
    period_end = parse_date(data.get("period_end"))
    if period_start is None:
        errors["period_start"] = "A valid period_start is required"
    if period_end is None:
        errors["period_end"] = "A valid period_end is required"
    if period_start and period_end and period_start > period_end:
        errors["period_end"] = "period_start must be on or before period_end"

    fund_source = None
    fund_code = (data.get("fund_source") or "").strip().upper()
    if fund_code:
        fund_source = FundSource.query.filter_by(code=fund_code, active=True).first()
        if fund_source is None:
            errors["fund_source"] = f"Unknown fund source: {fund_code}"

    return {
        "plan_name": (data.get("plan_name") or "").strip(),
        "agency_procurement_entity_name": (data.get("agency_procurement_entity_name") or "").strip(),
        "agency_budget_code": (data.get("agency_budget_code") or "").strip(),
        "period_start": period_start,
        "period_end": period_end,
        "fund_source_id": fund_source.id if fund_source else None,
    }


def create_plan(data: dict, *, actor_id: str, actor_role: str, actor_agency_id=None) -> ProcurementPlan:
    """Create a plan in ``draft`` and write its ``create`` history entry."""
    errors = {}
    agency_id = data.get("agency_id") or actor_agency_id
    if not agency_id:
        errors["agency_id"] = "agency_id is required"
    else:
        require_author(agency_id, actor_role=actor_role, actor_agency_id=actor_agency_id)
    if not data.get("financial_year_id"):
        errors["financial_year_id"] = "financial_year_id is required"

    header = _resolve_plan_header(data, errors)
    if errors:
        raise ValidationError("Invalid procurement plan", details=errors)

    plan = ProcurementPlan(
        agency_id=str(agency_id),
        financial_year_id=str(data["financial_year_id"]),
        status="draft",
        created_by=str(actor_id),
        **header,
    )
    db.session.add(plan)
    db.session.flush()

    record_action(
        plan,
        action="create",
        from_status=None,
        to_status="draft",
        actor_id=actor_id,
        actor_role=actor_role,
        comments=data.get("comments") or "Plan created",
    )
    write_audit(
        entity_type="procurement_plan", entity_id=plan.id, action="plan.create",
        plan_id=plan.id, actor=str(actor_id),
        diff={"agency_id": plan.agency_id, "financial_year_id": plan.financial_year_id},
    )
    db.session.commit()
    logger.info("Procurement plan created",
                extra={"plan_id": plan.id, "actor_id": actor_id, "event_type": "plan.create"})
    return plan


def _header_snapshot(plan: ProcurementPlan) -> dict:
    d = plan.to_dict()
    return {k: d.get(k) for k in PLAN_HEADER_FIELDS}


def update_plan(plan_id: int, data: dict, *, actor_id: str, actor_role: str,
                actor_agency_id=None) -> ProcurementPlan:
    """Correct the header of a draft or returned plan; unspecified fields keep their values."""
    plan = get_plan(plan_id)
    authorize_plan_write(plan, actor_role=actor_role, actor_agency_id=actor_agency_id)

    errors = {
        key: f"{key} cannot be changed"
        for key in FIXED_PLAN_FIELDS
        if key in data and str(data[key]) != str(getattr(plan, key))
    }
    before = _header_snapshot(plan)
    merged = dict(before)
    merged.update({k: v for k, v in data.items() if k in PLAN_HEADER_FIELDS})
    header = _resolve_plan_header(merged, errors)
    if errors:
        raise ValidationError("Invalid procurement plan", details=errors)

    with _plan_write(plan.id):
        for key, value in header.items():
            setattr(plan, key, value)
        db.session.flush()
        db.session.expire(plan, ["fund_source"])
        after = _header_snapshot(plan)
        changes = {k: {"old": before[k], "new": after[k]} for k in after if before[k] != after[k]}
        write_audit(entity_type="procurement_plan", entity_id=plan.id, action="plan.update",
                    plan_id=plan.id, actor=actor_id, diff=changes)
    logger.info("Procurement plan updated",
                extra={"plan_id": plan.id, "actor_id": actor_id, "event_type": "plan.update"})
    return plan


def recalculate_plan_totals(plan: ProcurementPlan) -> None:
    """Refresh the denormalized item_count and total_estimated_value.  Flushes."""
    db.session.flush()
    items = ProcurementPlanItem.query.filter_by(plan_id=plan.id).all()
    plan.item_count = len(items)
    plan.total_estimated_value = br.plan_total(items)
    db.session.flush()


@contextmanager
def _plan_write(plan_id):
    """Run item writes for one plan as a single transaction."""
    try:
        yield
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        raise StaleState("Plan was modified by another request; reload and retry",
                         plan_id=plan_id) from exc
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on plan %s: %s", plan_id, exc.orig)
        raise DuplicateSequenceNumber("Sequence number already used in this plan",
                                      plan_id=plan_id) from exc


# ── Items ────────────────────────────────────────────────────────────────────

ITEM_FIELDS = (
    "title", "description", "unspsc_code", "procurement_method", "contract_type",
    "unit_of_measure", "quantity", "estimated_unit_cost", "estimated_contract_start",
    "estimated_contract_end", "q1_budget", "q2_budget", "q3_budget", "q4_budget",
    "location_scope", "province", "multi_year_flag", "multi_year_total_budget",
    "third_party_contract_mgmt_required", "comments", "risk_notes",
)


def _flag(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("yes", "y", "true", "1")


def _item_snapshot(item: ProcurementPlanItem) -> dict:
    d = item.to_dict()
    return {k: d.get(k) for k in ITEM_FIELDS if k in d}


def _resolve_item_values(data: dict, catalog: ReferenceCatalog) -> dict:
    """Validate a full item payload and return column values.  Raises ValidationError."""
    errors = {}
    values = {}

    for key in ("title", "description"):
        text = (data.get(key) or "").strip()
        if not text:
            errors[key] = f"{key} is required"
        values[key] = text
    values["unspsc_code"] = (data.get("unspsc_code") or "").strip() or None

    for key, kind, column in (
        ("procurement_method", "procurement_method", "procurement_method_id"),
        ("contract_type", "contract_type", "contract_type_id"),
    ):
        code = (data.get(key) or "").strip().upper()
        entry = catalog.lookup(kind, code) if code else None
        if not code:
            errors[key] = f"{key} is required"
        elif entry is None:
            errors[key] = f"Unknown {key}: {code}"
        values[column] = entry.id if entry else None

    uom_code = (data.get("unit_of_measure") or "").strip().upper()
    uom = catalog.lookup("unit_of_measure", uom_code) if uom_code else None
    if uom_code and uom is None:
        errors["unit_of_measure"] = f"Unknown unit_of_measure: {uom_code}"
    values["unit_of_measure_id"] = uom.id if uom else None

    for key in ("quantity", "estimated_unit_cost"):
        amount = br.to_decimal(data.get(key))
        if amount is None or amount <= 0:
            errors[key] = f"{key} must be greater than 0"
        elif br.exceeds_scale(amount):
            errors[key] = f"{key} may have at most {br.AMOUNT_SCALE} decimal places"
        values[key] = amount

    for q in (1, 2, 3, 4):
        key = f"q{q}_budget"
        raw = data.get(key)
        amount = br.to_decimal(raw)
        if amount is None and raw not in (None, ""):
            errors[key] = f"{key} must be a number"
        elif amount is not None and amount < 0:
            errors[key] = f"{key} cannot be negative"
        elif br.exceeds_scale(amount):
            errors[key] = f"{key} may have at most {br.AMOUNT_SCALE} decimal places"
        values[key] = amount if amount is not None else br.ZERO

    start = parse_date(data.get("estimated_contract_start"))
    end = parse_date(data.get("estimated_contract_end"))
    if start is None:
        errors["estimated_contract_start"] = "A valid estimated_contract_start is required"
    if end is None:
        errors["estimated_contract_end"] = "A valid estimated_contract_end is required"
    if start and end and start > end:
        errors["estimated_contract_end"] = "Contract start must be on or before contract end"
    values["estimated_contract_start"] = start
    values["estimated_contract_end"] = end

    scope = (data.get("location_scope") or "national").strip().lower()
    if scope not in LOCATION_SCOPES:
        errors["location_scope"] = f"Invalid location_scope: {scope}"
    values["location_scope"] = scope

    province_code = (data.get("province") or "").strip().upper()
    province = catalog.lookup("province", province_code) if province_code else None
    if province_code and province is None:
        errors["province"] = f"Unknown province: {province_code}"
    elif scope in PROVINCE_SCOPES and province is None:
        errors["province"] = f"province is required for {scope} scope"
    values["province_id"] = province.id if province else None

    values["multi_year_flag"] = _flag(data.get("multi_year_flag"))
    multi_year_total = br.to_decimal(data.get("multi_year_total_budget"))
    if multi_year_total is not None and multi_year_total < 0:
        errors["multi_year_total_budget"] = "multi_year_total_budget cannot be negative"
    values["multi_year_total_budget"] = multi_year_total if values["multi_year_flag"] else None
    values["third_party_contract_mgmt_required"] = _flag(data.get("third_party_contract_mgmt_required"))
    values["comments"] = (data.get("comments") or "").strip() or None
    values["risk_notes"] = (data.get("risk_notes") or "").strip() or None

    if errors:
        raise ValidationError("Invalid procurement plan item", details=errors)

    total = br.line_total(values["quantity"], values["estimated_unit_cost"])
    quarters = br.quarter_sum([values[f"q{q}_budget"] for q in (1, 2, 3, 4)])
    values["estimated_total_cost"] = total
    values["annual_budget_year_value"] = br.annual_budget_value(quarters, total)
    values["anticipated_duration_months"] = br.duration_months(start, end)
    return values


def add_item(plan_id: int, data: dict, *, actor_id: str, actor_role: str,
             actor_agency_id=None) -> ProcurementPlanItem:
    plan = get_plan(plan_id)
    authorize_plan_write(plan, actor_role=actor_role, actor_agency_id=actor_agency_id)
    values = _resolve_item_values(data, ReferenceCatalog.load())

    with _plan_write(plan.id):
        item = ProcurementPlanItem(
            plan_id=plan.id,
            sequence_no=next_sequence_no(plan.id),
            created_by=str(actor_id) if actor_id else None,
            **values,
        )
        db.session.add(item)
        recalculate_plan_totals(plan)
        write_audit(entity_type="procurement_plan_item", entity_id=item.id, action="item.create",
                    plan_id=plan.id, actor=actor_id, diff=_item_snapshot(item))
    logger.info("Plan item added",
                extra={"plan_id": plan.id, "actor_id": actor_id, "event_type": "item.create"})
    return item


def update_item(item_id: int, data: dict, *, actor_id: str, actor_role: str,
                actor_agency_id=None) -> ProcurementPlanItem:
    """Apply a partial update; unspecified fields keep their current values."""
    item = get_item(item_id)
    plan = item.plan
    authorize_plan_write(plan, actor_role=actor_role, actor_agency_id=actor_agency_id)

    before = _item_snapshot(item)
    merged = dict(before)
    merged.update({k: v for k, v in data.items() if k in ITEM_FIELDS})
    values = _resolve_item_values(merged, ReferenceCatalog.load())

    with _plan_write(plan.id):
        for key, value in values.items():
            setattr(item, key, value)
        recalculate_plan_totals(plan)
        db.session.expire(item, ["procurement_method", "contract_type", "unit_of_measure", "province"])
        after = _item_snapshot(item)
        changes = {k: {"old": before.get(k), "new": after.get(k)}
                   for k in after if before.get(k) != after.get(k)}
        write_audit(entity_type="procurement_plan_item", entity_id=item.id, action="item.update",
                    plan_id=plan.id, actor=actor_id, diff=changes)
    return item


def delete_item(item_id: int, *, actor_id: str, actor_role: str, actor_agency_id=None) -> None:
    item = get_item(item_id)
    plan = item.plan
    authorize_plan_write(plan, actor_role=actor_role, actor_agency_id=actor_agency_id)

    snapshot = _item_snapshot(item)
    snapshot["sequence_no"] = item.sequence_no
    with _plan_write(plan.id):
        db.session.delete(item)
        recalculate_plan_totals(plan)
        write_audit(entity_type="procurement_plan_item", entity_id=item_id, action="item.delete",
                    plan_id=plan.id, actor=actor_id, diff=snapshot)
    logger.info("Plan item deleted",
                extra={"plan_id": plan.id, "actor_id": actor_id, "event_type": "item.delete"})


# ── Reporting ────────────────────────────────────────────────────────────────

def plan_summary(plan_id: int) -> dict:
    plan = get_plan(plan_id)
    summary = br.plan_budget_summary(list_items(plan_id))
    summary["plan"] = plan.to_dict()
    return summary


def national_summary(financial_year_id: str | None = None, statuses=None) -> dict:
    """Consolidate plans across agencies, optionally for one financial year / status set."""
    q = ProcurementPlan.query
    if financial_year_id:
        q = q.filter_by(financial_year_id=str(financial_year_id))
    if statuses:
        q = q.filter(ProcurementPlan.status.in_(list(statuses)))
    plans = q.all()

    result = br.consolidate_by_agency(plans)
    plan_ids = [p.id for p in plans]
    items = (
        ProcurementPlanItem.query.filter(ProcurementPlanItem.plan_id.in_(plan_ids)).all()
        if plan_ids else []
    )
    result["financial_year_id"] = financial_year_id
    result["quarters"] = br.quarterly_summary(items)
    return result
