"""
Procurement Plan Bulk Import Service

Spreadsheet import of plan items (.xlsx or .csv) in three steps:

  1. read_grid      — file → rectangular list of cell rows (header first)
  2. validate_rows  — parse_row + validate_row per data row, sequence numbers
                      assigned from one snapshot; read-only, repeatable
  3. commit_import  — persist the valid rows as plan items, all or nothing,
                      after re-checking the plan is still editable

Row problems are data (ImportRow.errors / .warnings), never exceptions.
Only an unreadable or empty file raises ImportFileError.

Column layout (21 columns, header row ignored):
    Title, Description, ClassificationCode, MethodCode, ContractTypeCode,
    Quantity, UoMCode, UnitCost, StartDate, EndDate, Q1Budget, Q2Budget,
    Q3Budget, Q4Budget, LocationScope, ProvinceCode, MultiYearFlag,
    MultiYearTotalBudget, ThirdPartyFlag, Comments, RiskNotes
"""

import csv
import io
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal

from flask import current_app, has_app_context
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import DuplicateSequenceNumber, PlanWorkflowError, StaleState
from app.models import db
from app.models.audit import write_audit
from app.models.procurement import (
    LOCATION_SCOPES,
    PROVINCE_SCOPES,
    ProcurementPlan,
    ProcurementPlanItem,
)
from app.services import budget_reconciler as br
from app.services.plan_service import (
    authorize_plan_write,
    existing_sequence_numbers,
    get_plan,
    next_sequence_no,
    recalculate_plan_totals,
)
from app.services.reference_catalog import ReferenceCatalog
from app.utils.helpers import parse_date

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROWS = 5000


class ImportFileError(Exception):
    """The uploaded file cannot be read as an import grid."""

    def __init__(self, message, status_code=400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


# ═══════════════════════════════════════════════════════════════
# Column layout
# ═══════════════════════════════════════════════════════════════

# (field key, column name) in file order
IMPORT_COLUMNS = [
    ("title", "Title"),
    ("description", "Description"),
    ("unspsc_code", "ClassificationCode"),
    ("method_code", "MethodCode"),
    ("contract_type_code", "ContractTypeCode"),
    ("quantity", "Quantity"),
    ("uom_code", "UoMCode"),
    ("unit_cost", "UnitCost"),
    ("start_date", "StartDate"),
    ("end_date", "EndDate"),
    ("q1_budget", "Q1Budget"),
    ("q2_budget", "Q2Budget"),
    ("q3_budget", "Q3Budget"),
    ("q4_budget", "Q4Budget"),
    ("location_scope", "LocationScope"),
    ("province_code", "ProvinceCode"),
    ("multi_year_flag", "MultiYearFlag"),
    ("multi_year_total_budget", "MultiYearTotalBudget"),
    ("third_party_flag", "ThirdPartyFlag"),
    ("comments", "Comments"),
    ("risk_notes", "RiskNotes"),
]

COLUMN_COUNT = len(IMPORT_COLUMNS)

_QUARTER_LABELS = {
    "q1_budget": "Q1 Budget",
    "q2_budget": "Q2 Budget",
    "q3_budget": "Q3 Budget",
    "q4_budget": "Q4 Budget",
}

_TRUE_FLAGS = {"yes", "y", "true", "1"}

# Excel day 0 (the 1900 leap-year bug is absorbed by starting on the 30th)
_EXCEL_EPOCH = date(1899, 12, 30)
_EXCEL_MAX_SERIAL = 2958465  # 9999-12-31


@dataclass
class ImportRow:
    """One parsed data row.  Exists only for the duration of an import."""

    row_number: int
    fields: dict
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "row_number": self.row_number,
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "fields": {k: _jsonable(v) for k, v in self.fields.items()},
        }


def _jsonable(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


# ═══════════════════════════════════════════════════════════════
# File reading
# ═══════════════════════════════════════════════════════════════

def _looks_like_xlsx(file_content: bytes, filename: str | None) -> bool:
    if filename and filename.lower().endswith((".xlsx", ".xlsm")):
        return True
    return isinstance(file_content, bytes) and file_content[:4] == b"PK\x03\x04"


def read_grid(file_content: bytes | str, filename: str | None = None) -> list[list]:
    """Read the first worksheet (xlsx) or the whole file (csv) into rows of cells."""
    if not file_content:
        raise ImportFileError("Import file is empty")

    if _looks_like_xlsx(file_content, filename):
        try:
            wb = load_workbook(io.BytesIO(file_content), read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
            raise ImportFileError(f"Could not read spreadsheet: {exc}") from exc
        try:
            ws = wb.worksheets[0]
            return [list(r) for r in ws.iter_rows(values_only=True)]
        finally:
            wb.close()

    if isinstance(file_content, bytes):
        try:
            file_content = file_content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ImportFileError("CSV file must be UTF-8 encoded") from exc
    return [row for row in csv.reader(io.StringIO(file_content))]


def is_blank_row(cells) -> bool:
    return all(c is None or str(c).strip() == "" for c in cells)


# ═══════════════════════════════════════════════════════════════
# Parsing (coercion and defaults)
# ═══════════════════════════════════════════════════════════════

def _text(cell) -> str:
    if cell is None:
        return ""
    if isinstance(cell, float) and cell.is_integer():
        return str(int(cell))
    if isinstance(cell, datetime):
        return cell.date().isoformat()
    return str(cell).strip()


def _flag(cell) -> bool:
    if isinstance(cell, bool):
        return cell
    return _text(cell).lower() in _TRUE_FLAGS


def parse_date_cell(cell):
    """Date from a datetime/date, an Excel serial number, ISO or DD.MM.YYYY text."""
    if cell is None or cell == "":
        return None
    if isinstance(cell, datetime):
        return cell.date()
    if isinstance(cell, date):
        return cell
    if isinstance(cell, (int, float)) and not isinstance(cell, bool):
        if 1 <= cell <= _EXCEL_MAX_SERIAL:
            return _EXCEL_EPOCH + timedelta(days=int(cell))
        return None
    return parse_date(str(cell).strip())


def parse_row(cells, row_number: int) -> ImportRow:
    """Map one raw row positionally onto the 21 import fields."""
    cells = list(cells)[:COLUMN_COUNT]
    cells += [None] * (COLUMN_COUNT - len(cells))
    raw = {key: cells[i] for i, (key, _) in enumerate(IMPORT_COLUMNS)}
    warnings = []

    fields = {
        "title": _text(raw["title"]),
        "description": _text(raw["description"]),
        "unspsc_code": _text(raw["unspsc_code"]) or None,
        "method_code": _text(raw["method_code"]).upper(),
        "contract_type_code": _text(raw["contract_type_code"]).upper(),
        "uom_code": _text(raw["uom_code"]).upper(),
        "start_date": parse_date_cell(raw["start_date"]),
        "end_date": parse_date_cell(raw["end_date"]),
        "location_scope": _text(raw["location_scope"]).lower() or "national",
        "province_code": _text(raw["province_code"]).upper(),
        "multi_year_flag": _flag(raw["multi_year_flag"]),
        "third_party_flag": _flag(raw["third_party_flag"]),
        "comments": _text(raw["comments"]) or None,
        "risk_notes": _text(raw["risk_notes"]) or None,
    }

    # Unparsable quantity / unit cost fall to 0 and fail the > 0 rule.
    for key in ("quantity", "unit_cost"):
        fields[key] = br.to_decimal(raw[key]) or br.ZERO

    for key, label in _QUARTER_LABELS.items():
        amount = br.to_decimal(raw[key])
        if amount is None and _text(raw[key]):
            warnings.append(f"{label} is not a number; treated as 0")
        fields[key] = amount if amount is not None else br.ZERO

    multi_year_total = br.to_decimal(raw["multi_year_total_budget"])
    if fields["multi_year_flag"]:
        if multi_year_total is None and _text(raw["multi_year_total_budget"]):
            warnings.append("Multi-Year Total Budget is not a number; treated as 0")
        fields["multi_year_total_budget"] = multi_year_total if multi_year_total is not None else br.ZERO
    else:
        fields["multi_year_total_budget"] = None

    return ImportRow(row_number=row_number, fields=fields, warnings=warnings)


# ═══════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════

def validate_row(row: ImportRow, catalog: ReferenceCatalog) -> ImportRow:
    """Append blocking errors / warnings and derive computed fields.  Pure."""
    f = row.fields
    errors = row.errors
    warnings = row.warnings

    # Required fields
    if not f["title"]:
        errors.append("Title is required")
    if not f["description"]:
        errors.append("Description is required")
    if not f["method_code"]:
        errors.append("Procurement Method is required")
    if not f["contract_type_code"]:
        errors.append("Contract Type is required")
    if f["quantity"] <= 0:
        errors.append("Quantity must be greater than 0")
    if f["unit_cost"] <= 0:
        errors.append("Unit Cost must be greater than 0")
    for key, label in (("quantity", "Quantity"), ("unit_cost", "Unit Cost")):
        if br.exceeds_scale(f[key]):
            errors.append(f"{label} may have at most {br.AMOUNT_SCALE} decimal places")
    if f["start_date"] is None:
        errors.append("Invalid Start Date")
    if f["end_date"] is None:
        errors.append("Invalid End Date")

    # References
    method = catalog.lookup("procurement_method", f["method_code"]) if f["method_code"] else None
    if f["method_code"] and method is None:
        errors.append(f"Invalid Procurement Method: {f['method_code']}")

    contract_type = (
        catalog.lookup("contract_type", f["contract_type_code"]) if f["contract_type_code"] else None
    )
    if f["contract_type_code"] and contract_type is None:
        errors.append(f"Invalid Contract Type: {f['contract_type_code']}")

    uom = catalog.lookup("unit_of_measure", f["uom_code"]) if f["uom_code"] else None
    if f["uom_code"] and uom is None:
        warnings.append(f"Unknown Unit of Measure: {f['uom_code']}")

    province = catalog.lookup("province", f["province_code"]) if f["province_code"] else None
    if f["province_code"] and province is None:
        warnings.append(f"Unknown Province: {f['province_code']}")

    scope = f["location_scope"]
    if scope not in LOCATION_SCOPES:
        errors.append(f"Invalid Location Scope: {scope}")
    elif scope in PROVINCE_SCOPES and not f["province_code"]:
        errors.append(f"Province is required for {scope} location scope")

    # Ranges
    if f["start_date"] and f["end_date"] and f["start_date"] > f["end_date"]:
        errors.append("Start Date must be before End Date")
    for key, label in _QUARTER_LABELS.items():
        if f[key] < 0:
            errors.append(f"{label} cannot be negative")
        elif br.exceeds_scale(f[key]):
            errors.append(f"{label} may have at most {br.AMOUNT_SCALE} decimal places")
    if f["multi_year_total_budget"] is not None and f["multi_year_total_budget"] < 0:
        errors.append("Multi-Year Total Budget cannot be negative")

    # Derived values and quarter consistency
    total = br.line_total(f["quantity"], f["unit_cost"])
    quarters = br.quarter_sum([f[k] for k in _QUARTER_LABELS])
    if not br.quarters_reconcile(quarters, total):
        warnings.append(br.quarter_mismatch_message(quarters, total))

    f["estimated_total_cost"] = total
    f["annual_budget_year_value"] = br.annual_budget_value(quarters, total)
    f["anticipated_duration_months"] = br.duration_months(f["start_date"], f["end_date"])
    f["procurement_method_id"] = method.id if method else None
    f["contract_type_id"] = contract_type.id if contract_type else None
    f["unit_of_measure_id"] = uom.id if uom else None
    f["province_id"] = province.id if province else None
    return row


def validate_rows(grid: list[list], catalog: ReferenceCatalog, start_sequence: int = 1) -> list[ImportRow]:
    """
    Parse and validate every data row of *grid* (row 0 is the header).

    Blank rows are skipped.  ``row_number`` is the 1-based spreadsheet row.
    Sequence numbers start at *start_sequence* and follow file order.
    """
    rows = []
    sequence = start_sequence
    for row_number, cells in enumerate(grid[1:], start=2):
        if is_blank_row(cells):
            continue
        row = validate_row(parse_row(cells, row_number), catalog)
        row.fields["sequence_no"] = sequence
        sequence += 1
        rows.append(row)
    return rows


def build_import_report(rows: list[ImportRow]) -> dict:
    valid = [r for r in rows if r.is_valid]
    return {
        "total_rows": len(rows),
        "valid_count": len(valid),
        "invalid_count": len(rows) - len(valid),
        "warning_count": sum(1 for r in rows if r.warnings),
        "rows": [r.to_dict() for r in rows],
    }


def _max_rows() -> int:
    if has_app_context():
        return int(current_app.config.get("IMPORT_MAX_ROWS", DEFAULT_MAX_ROWS))
    return DEFAULT_MAX_ROWS


def validate_import(plan_id: int, file_content, filename: str | None = None) -> list[ImportRow]:
    """Read and validate a file against a plan without writing anything."""
    plan = get_plan(plan_id)
    grid = read_grid(file_content, filename)
    if len(grid) < 2:
        raise ImportFileError("File is empty or has no data rows")
    if len(grid) - 1 > _max_rows():
        raise ImportFileError(f"File has more than {_max_rows()} data rows", status_code=413)

    rows = validate_rows(grid, ReferenceCatalog.load(), next_sequence_no(plan.id))
    logger.info(
        "Import validated: %d rows, %d valid", len(rows), sum(1 for r in rows if r.is_valid),
        extra={"plan_id": plan.id, "event_type": "import.validate"},
    )
    return rows


# ═══════════════════════════════════════════════════════════════
# Commit
# ═══════════════════════════════════════════════════════════════

def _item_from_row(plan_id: int, row: ImportRow, actor_id) -> ProcurementPlanItem:
    f = row.fields
    return ProcurementPlanItem(
        plan_id=plan_id,
        sequence_no=f["sequence_no"],
        title=f["title"],
        description=f["description"],
        unspsc_code=f["unspsc_code"],
        procurement_method_id=f["procurement_method_id"],
        contract_type_id=f["contract_type_id"],
        unit_of_measure_id=f["unit_of_measure_id"],
        quantity=f["quantity"],
        estimated_unit_cost=f["unit_cost"],
        estimated_total_cost=f["estimated_total_cost"],
        annual_budget_year_value=f["annual_budget_year_value"],
        q1_budget=f["q1_budget"],
        q2_budget=f["q2_budget"],
        q3_budget=f["q3_budget"],
        q4_budget=f["q4_budget"],
        estimated_contract_start=f["start_date"],
        estimated_contract_end=f["end_date"],
        anticipated_duration_months=f["anticipated_duration_months"],
        location_scope=f["location_scope"],
        province_id=f["province_id"],
        multi_year_flag=f["multi_year_flag"],
        multi_year_total_budget=f["multi_year_total_budget"],
        third_party_contract_mgmt_required=f["third_party_flag"],
        comments=f["comments"],
        risk_notes=f["risk_notes"],
        created_by=str(actor_id) if actor_id else None,
    )


def commit_import(
    plan_id: int,
    rows: list[ImportRow],
    *,
    actor_id: str,
    actor_role: str,
    actor_agency_id=None,
) -> tuple[dict, None] | tuple[None, dict]:
    """
    Persist the valid rows of a validated batch as plan items.

    All or nothing: the actor must author the plan, the plan must still be
    draft or returned (checked now, not at validation time), and no sequence
    number may collide with an existing item or another row of the batch.

    Returns:
        ({"plan", "imported_count", "skipped_count", "items"}, None) on success.
        (None, {"error", "code", "precondition", "status", "changed": False}) otherwise.
    """
    plan = db.session.get(ProcurementPlan, plan_id)
    if plan is None:
        return None, {
            "error": f"ProcurementPlan id={plan_id} not found",
            "code": "ERR_NOT_FOUND",
            "status": 404,
            "changed": False,
        }

    try:
        authorize_plan_write(plan, actor_role=actor_role, actor_agency_id=actor_agency_id)
    except PlanWorkflowError as exc:
        logger.info("Import commit rejected: %s", exc,
                    extra={"plan_id": plan.id, "event_type": "import.rejected", "error_code": exc.code})
        return None, exc.to_dict()

    valid = [r for r in rows if r.is_valid]
    taken = existing_sequence_numbers(plan.id)
    duplicates = set()
    for r in valid:
        seq = r.fields["sequence_no"]
        if seq in taken:
            duplicates.add(seq)
        taken.add(seq)
    if duplicates:
        exc = DuplicateSequenceNumber(
            f"Sequence number(s) already used in plan {plan.id}: "
            f"{', '.join(str(s) for s in sorted(duplicates))}",
            plan_id=plan.id,
            details={"sequence_numbers": sorted(duplicates)},
        )
        return None, exc.to_dict()

    try:
        items = [_item_from_row(plan.id, r, actor_id) for r in valid]
        db.session.add_all(items)
        recalculate_plan_totals(plan)
        write_audit(
            entity_type="procurement_plan", entity_id=plan.id, action="import.commit",
            plan_id=plan.id, actor=actor_id,
            diff={
                "imported": len(items),
                "sequence_numbers": [i.sequence_no for i in items],
                "skipped_rows": [r.row_number for r in rows if not r.is_valid],
            },
        )
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        return None, StaleState("Plan was modified by another request; reload and retry",
                                plan_id=plan_id).to_dict()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Import commit integrity error on plan %s: %s", plan_id, exc.orig)
        return None, DuplicateSequenceNumber("Sequence number already used in this plan",
                                             plan_id=plan_id).to_dict()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Database error committing import", extra={"plan_id": plan_id})
        return None, {"error": "Database error", "code": "ERR_DATABASE", "status": 500, "changed": False}

    logger.info(
        "Import committed: %d items", len(items),
        extra={"plan_id": plan.id, "actor_id": actor_id, "event_type": "import.commit"},
    )
    return {
        "plan": plan.to_dict(),
        "imported_count": len(items),
        "skipped_count": len(rows) - len(valid),
        "items": [i.to_dict() for i in items],
    }, None
