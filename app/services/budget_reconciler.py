"""
Budget reconciliation — pure arithmetic over plan items.

Shared by the import validator (quarter/total consistency warning), by the
item service (denormalized plan totals) and by reporting (plan summary,
national consolidation).

All money is ``Decimal``.  Nothing here rounds; the only tolerance is
``QUARTER_TOLERANCE`` and it is applied only in ``quarters_reconcile``.
Percentages are quantized because they are presentation values.

Functions accept ORM items or any object exposing the same attribute names
(``quantity``, ``estimated_unit_cost``, ``q1_budget`` …).
"""

import math
from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

ZERO = Decimal("0")

# Quarter allocations may differ from quantity × unit cost by at most this
# many currency units before a warning is raised.
QUARTER_TOLERANCE = Decimal("1")

# Contract durations are counted in 30-day months.
DAYS_PER_MONTH = 30

# Duration used when an item has no usable contract dates.
DEFAULT_DURATION_MONTHS = 12

# Quantities, unit costs and quarter budgets are stored with two decimals.
AMOUNT_SCALE = 2

QUARTER_LABELS = {
    1: "Q1 (Jan-Mar)",
    2: "Q2 (Apr-Jun)",
    3: "Q3 (Jul-Sep)",
    4: "Q4 (Oct-Dec)",
}

_PCT = Decimal("0.1")


def to_decimal(value):
    """Coerce a cell or JSON value to ``Decimal``.

    Accepts ints, floats, Decimals and numeric strings (thousands
    separators and surrounding whitespace are ignored).  Returns None for
    blanks and anything unparsable.  Booleans are not numbers here.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return Decimal(str(value))
    text = str(value).strip().replace(",", "")
    if not text:
        return None
    try:
        result = Decimal(text)
    except InvalidOperation:
        return None
    if not result.is_finite():
        return None
    return result


def exceeds_scale(value, scale: int = AMOUNT_SCALE) -> bool:
    """True when *value* carries more decimal places than the column stores (1.005 at scale 2)."""
    if value is None:
        return False
    try:
        return value != value.quantize(Decimal(1).scaleb(-scale))
    except InvalidOperation:
        # too many digits to quantize at all
        return True


def _d(value) -> Decimal:
    result = to_decimal(value)
    return ZERO if result is None else result


def format_amount(value) -> str:
    """Render an amount without trailing zeros: 4000.00 → '4000', 12.50 → '12.5'."""
    d = _d(value)
    if d == d.to_integral_value():
        return str(d.quantize(Decimal("1")))
    return format(d.normalize(), "f")


# ── Item level ───────────────────────────────────────────────────────────────

def line_total(quantity, unit_cost) -> Decimal:
    return _d(quantity) * _d(unit_cost)


def total_cost(item) -> Decimal:
    """quantity × unit cost, recomputed from the inputs every time."""
    return line_total(item.quantity, item.estimated_unit_cost)


def quarter_sum(quarters) -> Decimal:
    return sum((_d(q) for q in quarters), ZERO)


def item_quarters(item) -> list:
    return [item.q1_budget, item.q2_budget, item.q3_budget, item.q4_budget]


def annual_budget_value(quarters_total, total) -> Decimal:
    """Quarter sum when quarters were allocated, else the line total."""
    quarters_total = _d(quarters_total)
    return quarters_total if quarters_total > 0 else _d(total)


def quarters_reconcile(quarters_total, total) -> bool:
    """True unless quarters were allocated and miss the total by more than the tolerance."""
    quarters_total = _d(quarters_total)
    if quarters_total == 0:
        return True
    return abs(quarters_total - _d(total)) <= QUARTER_TOLERANCE


def quarter_mismatch_message(quarters_total, total) -> str:
    return (
        f"Quarter totals ({format_amount(quarters_total)}) "
        f"don't match total cost ({format_amount(total)})"
    )


def duration_months(start, end) -> int:
    """Whole months between two dates, counted as 30-day blocks, never below 1."""
    if start is None or end is None:
        return DEFAULT_DURATION_MONTHS
    days = (end - start).days
    return max(1, math.ceil(days / DAYS_PER_MONTH))


# ── Plan level ───────────────────────────────────────────────────────────────

def plan_total(items) -> Decimal:
    return sum((total_cost(i) for i in items), ZERO)


def quarter_total(items, quarter: int) -> Decimal:
    if quarter not in QUARTER_LABELS:
        raise ValueError(f"quarter must be 1-4, got {quarter!r}")
    attr = f"q{quarter}_budget"
    return sum((_d(getattr(i, attr)) for i in items), ZERO)


def percentage(part, whole) -> Decimal:
    whole = _d(whole)
    if whole == 0:
        return ZERO.quantize(_PCT)
    return (_d(part) / whole * 100).quantize(_PCT, rounding=ROUND_HALF_UP)


def quarterly_summary(items) -> list[dict]:
    """Per-quarter allocation, item count and share of the allocated total."""
    items = list(items)
    totals = {q: quarter_total(items, q) for q in QUARTER_LABELS}
    allocated = sum(totals.values(), ZERO)
    rows = []
    for q, label in QUARTER_LABELS.items():
        rows.append({
            "quarter": q,
            "label": label,
            "amount": totals[q],
            "item_count": sum(1 for i in items if _d(getattr(i, f"q{q}_budget")) > 0),
            "percentage": percentage(totals[q], allocated),
        })
    return rows


def multi_year_summary(items) -> dict:
    flagged = [i for i in items if i.multi_year_flag]
    return {
        "item_count": len(flagged),
        "total_budget": sum((_d(i.multi_year_total_budget) for i in flagged), ZERO),
    }


def unreconciled_items(items) -> list[int]:
    """Sequence numbers whose quarters do not reconcile with their line total."""
    return [
        i.sequence_no for i in items
        if not quarters_reconcile(quarter_sum(item_quarters(i)), total_cost(i))
    ]


def plan_budget_summary(items) -> dict:
    """Totals, quarter split, multi-year exposure and method/contract breakdown."""
    items = list(items)
    by_method = defaultdict(lambda: ZERO)
    by_contract_type = defaultdict(lambda: ZERO)
    for i in items:
        method = i.procurement_method.code if i.procurement_method else "UNKNOWN"
        ctype = i.contract_type.code if i.contract_type else "UNKNOWN"
        by_method[method] += total_cost(i)
        by_contract_type[ctype] += total_cost(i)

    return {
        "item_count": len(items),
        "total_estimated_value": plan_total(items),
        "annual_budget_total": sum(
            (annual_budget_value(quarter_sum(item_quarters(i)), total_cost(i)) for i in items),
            ZERO,
        ),
        "quarters": quarterly_summary(items),
        "multi_year": multi_year_summary(items),
        "by_procurement_method": dict(sorted(by_method.items())),
        "by_contract_type": dict(sorted(by_contract_type.items())),
        "unreconciled_items": unreconciled_items(items),
    }


def consolidate_by_agency(plans) -> dict:
    """National roll-up of plan totals, largest agency first."""
    plans = list(plans)
    agencies = {}
    for p in plans:
        entry = agencies.setdefault(p.agency_id, {
            "agency_id": p.agency_id, "plan_count": 0, "item_count": 0, "total_value": ZERO,
        })
        entry["plan_count"] += 1
        entry["item_count"] += p.item_count or 0
        entry["total_value"] += _d(p.total_estimated_value)

    national_total = sum((a["total_value"] for a in agencies.values()), ZERO)
    rows = sorted(agencies.values(), key=lambda a: (-a["total_value"], a["agency_id"]))
    for row in rows:
        row["percentage"] = percentage(row["total_value"], national_total)

    return {
        "agency_count": len(rows),
        "plan_count": len(plans),
        "item_count": sum(a["item_count"] for a in rows),
        "total_estimated_value": national_total,
        "agencies": rows,
    }
