"""
Excel output for procurement plans: the bulk-import template, the plan
workbook (Summary / Procurement Items / Quarterly Summary) and the national
consolidation workbook.

All return a BytesIO buffer ready for Flask send_file.
"""

import io
import logging
from datetime import datetime, timezone

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from app.models.procurement import LOCATION_SCOPE_LABELS, PLAN_STATUS_LABELS
from app.services import budget_reconciler as br
from app.services.reference_catalog import list_entries

logger = logging.getLogger(__name__)

HEADER_FILL = PatternFill(start_color="354A5F", end_color="354A5F", fill_type="solid")
HEADER_FONT = Font(color="FFFFFF", bold=True, size=11)
THIN_BORDER = Border(
    left=Side(style="thin"),
    right=Side(style="thin"),
    top=Side(style="thin"),
    bottom=Side(style="thin"),
)
MONEY_FORMAT = "#,##0.00"

# Column order must match plan_import.IMPORT_COLUMNS; * marks required.
TEMPLATE_HEADERS = [
    "Activity/Procurement Title*",
    "Description*",
    "UNSPSC Code",
    "Procurement Method Code*",
    "Contract Type Code*",
    "Quantity*",
    "Unit of Measure Code",
    "Estimated Unit Cost*",
    "Contract Start (YYYY-MM-DD)*",
    "Contract End (YYYY-MM-DD)*",
    "Q1 Budget",
    "Q2 Budget",
    "Q3 Budget",
    "Q4 Budget",
    "Location Scope (national/provincial/district/specific_sites)",
    "Province Code",
    "Multi-Year (Yes/No)",
    "Multi-Year Total Budget",
    "Third-Party Contract Mgmt (Yes/No)",
    "Comments",
    "Risk Notes",
]

TEMPLATE_SAMPLE_ROW = [
    "IT Equipment Procurement",
    "Purchase of computers and peripherals for regional offices",
    "43211507",
    "NCB",
    "SUP",
    50,
    "EA",
    25000,
    "2026-03-01",
    "2026-06-30",
    0,
    625000,
    625000,
    0,
    "national",
    "",
    "No",
    "",
    "No",
    "Priority procurement for Q2",
    "",
]

ITEM_HEADERS = [
    "Seq #", "Title", "Description", "UNSPSC Code", "Procurement Method",
    "Contract Type", "Quantity", "UoM", "Unit Cost", "Total Cost",
    "Annual Budget", "Q1", "Q2", "Q3", "Q4", "Contract Start", "Contract End",
    "Duration (Months)", "Location Scope", "Province", "Multi-Year",
    "Multi-Year Total", "Third-Party Mgmt", "Comments", "Risk Notes",
]


def _apply_header_style(ws, row: int, col_count: int) -> None:
    for col in range(1, col_count + 1):
        cell = ws.cell(row=row, column=col)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.border = THIN_BORDER
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)


def _auto_width(ws) -> None:
    """Size columns to content, capped at 60 characters."""
    for col in ws.columns:
        max_len = 0
        for cell in col:
            if cell.value is not None:
                max_len = max(max_len, min(len(str(cell.value)), 60))
        ws.column_dimensions[get_column_letter(col[0].column)].width = max(max_len + 4, 12)


def _reference_sheet(wb, title: str, headers: list[str], rows: list[list]) -> None:
    ws = wb.create_sheet(title)
    ws.append(headers)
    _apply_header_style(ws, 1, len(headers))
    for row in rows:
        ws.append(row)
    _auto_width(ws)


def _save(wb) -> io.BytesIO:
    buf = io.BytesIO()
    wb.save(buf)
    buf.seek(0)
    return buf


def generate_import_template() -> io.BytesIO:
    """Import template: headed columns, one sample row, catalog reference sheets."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Procurement Items"
    ws.append(TEMPLATE_HEADERS)
    _apply_header_style(ws, 1, len(TEMPLATE_HEADERS))
    ws.append(TEMPLATE_SAMPLE_ROW)
    ws.freeze_panes = "A2"
    for col in range(1, len(TEMPLATE_HEADERS) + 1):
        ws.column_dimensions[get_column_letter(col)].width = 22

    _reference_sheet(
        wb, "Procurement Methods", ["Code", "Name", "Description"],
        [[m["code"], m["name"], m.get("description") or ""] for m in list_entries("procurement_method")],
    )
    _reference_sheet(
        wb, "Contract Types", ["Code", "Name", "Category"],
        [[c["code"], c["name"], c.get("category") or ""] for c in list_entries("contract_type")],
    )
    _reference_sheet(
        wb, "Units of Measure", ["Code", "Name", "Abbreviation"],
        [[u["code"], u["name"], u.get("abbreviation") or ""] for u in list_entries("unit_of_measure")],
    )
    _reference_sheet(
        wb, "Provinces", ["Code", "Name", "Region"],
        [[p["code"], p["name"], p.get("region") or ""] for p in list_entries("province")],
    )
    return _save(wb)


def _money(cell) -> None:
    cell.number_format = MONEY_FORMAT
    cell.alignment = Alignment(horizontal="right")


def export_plan_workbook(plan) -> io.BytesIO:
    """Plan workbook with Summary, Procurement Items and Quarterly Summary sheets."""
    items = list(plan.items)
    wb = Workbook()

    # ── Sheet 1: Summary ──────────────────────────────────────────────
    ws = wb.active
    ws.title = "Summary"
    ws.merge_cells("A1:D1")
    ws["A1"] = "ANNUAL PROCUREMENT PLAN"
    ws["A1"].font = Font(size=16, bold=True)
    ws["A1"].alignment = Alignment(horizontal="center")

    summary_rows = [
        ("Agency", plan.agency_procurement_entity_name or plan.agency_id),
        ("Budget Code", plan.agency_budget_code or ""),
        ("Financial Year", plan.financial_year_id),
        ("Fund Source", plan.fund_source.name if plan.fund_source else ""),
        ("Period", f"{plan.period_start.isoformat()} to {plan.period_end.isoformat()}"),
        ("Status", PLAN_STATUS_LABELS.get(plan.status, plan.status)),
        ("Total Estimated Value", br.plan_total(items)),
        ("Total Items", len(items)),
        ("Generated", datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")),
    ]
    for i, (label, value) in enumerate(summary_rows, 3):
        ws.cell(row=i, column=1, value=label).font = Font(bold=True)
        cell = ws.cell(row=i, column=2, value=value)
        if label == "Total Estimated Value":
            _money(cell)
    ws.column_dimensions["A"].width = 24
    ws.column_dimensions["B"].width = 48

    # ── Sheet 2: Procurement Items ────────────────────────────────────
    ws2 = wb.create_sheet("Procurement Items")
    ws2.append(ITEM_HEADERS)
    _apply_header_style(ws2, 1, len(ITEM_HEADERS))
    for item in items:
        ws2.append([
            item.sequence_no,
            item.title,
            item.description,
            item.unspsc_code or "",
            item.procurement_method.name if item.procurement_method else "",
            item.contract_type.name if item.contract_type else "",
            item.quantity,
            item.unit_of_measure.code if item.unit_of_measure else "",
            item.estimated_unit_cost,
            br.total_cost(item),
            item.annual_budget_year_value,
            item.q1_budget,
            item.q2_budget,
            item.q3_budget,
            item.q4_budget,
            item.estimated_contract_start,
            item.estimated_contract_end,
            item.anticipated_duration_months,
            LOCATION_SCOPE_LABELS.get(item.location_scope, item.location_scope),
            item.province.name if item.province else "",
            "Yes" if item.multi_year_flag else "No",
            item.multi_year_total_budget,
            "Yes" if item.third_party_contract_mgmt_required else "No",
            item.comments or "",
            item.risk_notes or "",
        ])
        row = ws2.max_row
        for col in (9, 10, 11, 12, 13, 14, 15, 22):
            _money(ws2.cell(row=row, column=col))
        for col in (16, 17):
            ws2.cell(row=row, column=col).number_format = "yyyy-mm-dd"
    ws2.freeze_panes = "A2"
    _auto_width(ws2)

    # ── Sheet 3: Quarterly Summary ────────────────────────────────────
    ws3 = wb.create_sheet("Quarterly Summary")
    ws3.append(["Quarter", "Budget", "Percentage"])
    _apply_header_style(ws3, 1, 3)
    quarters = br.quarterly_summary(items)
    for q in quarters:
        ws3.append([q["label"], q["amount"], f"{q['percentage']}%"])
        _money(ws3.cell(row=ws3.max_row, column=2))
    ws3.append(["Total", br.quarter_sum(q["amount"] for q in quarters), ""])
    ws3.cell(row=ws3.max_row, column=1).font = Font(bold=True)
    _money(ws3.cell(row=ws3.max_row, column=2))
    _auto_width(ws3)

    logger.info("Plan workbook generated", extra={"plan_id": plan.id, "event_type": "plan.export"})
    return _save(wb)


def export_national_workbook(summary: dict) -> io.BytesIO:
    """
    National consolidation workbook built from ``plan_service.national_summary``.

    Sheets: National Summary, By Agency (largest first), Quarterly Pipeline.
    """
    wb = Workbook()

    # ── Sheet 1: National Summary ─────────────────────────────────────
    ws = wb.active
    ws.title = "National Summary"
    ws.merge_cells("A1:D1")
    ws["A1"] = "NATIONAL PROCUREMENT CONSOLIDATION"
    ws["A1"].font = Font(size=16, bold=True)
    ws["A1"].alignment = Alignment(horizontal="center")

    summary_rows = [
        ("Financial Year", summary.get("financial_year_id") or "All"),
        ("Total Agencies", summary["agency_count"]),
        ("Total Plans", summary["plan_count"]),
        ("Total Items", summary["item_count"]),
        ("Total Estimated Value", summary["total_estimated_value"]),
        ("Generated", datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")),
    ]
    for i, (label, value) in enumerate(summary_rows, 3):
        ws.cell(row=i, column=1, value=label).font = Font(bold=True)
        cell = ws.cell(row=i, column=2, value=value)
        if label == "Total Estimated Value":
            _money(cell)
    ws.column_dimensions["A"].width = 24
    ws.column_dimensions["B"].width = 32

    # ── Sheet 2: By Agency ────────────────────────────────────────────
    ws2 = wb.create_sheet("By Agency")
    headers = ["Agency", "Plans", "Items", "Total Value", "% of National"]
    ws2.append(headers)
    _apply_header_style(ws2, 1, len(headers))
    for agency in summary["agencies"]:
        ws2.append([
            agency["agency_id"],
            agency["plan_count"],
            agency["item_count"],
            agency["total_value"],
            f"{agency['percentage']}%",
        ])
        _money(ws2.cell(row=ws2.max_row, column=4))
    ws2.freeze_panes = "A2"
    _auto_width(ws2)

    # ── Sheet 3: Quarterly Pipeline ───────────────────────────────────
    ws3 = wb.create_sheet("Quarterly Pipeline")
    ws3.append(["Quarter", "Budget", "Items", "Percentage"])
    _apply_header_style(ws3, 1, 4)
    quarters = summary["quarters"]
    for q in quarters:
        ws3.append([q["label"], q["amount"], q["item_count"], f"{q['percentage']}%"])
        _money(ws3.cell(row=ws3.max_row, column=2))
    ws3.append(["Total", br.quarter_sum(q["amount"] for q in quarters), "", ""])
    ws3.cell(row=ws3.max_row, column=1).font = Font(bold=True)
    _money(ws3.cell(row=ws3.max_row, column=2))
    _auto_width(ws3)

    logger.info("National workbook generated",
                extra={"event_type": "national.export", "plan_count": summary["plan_count"]})
    return _save(wb)
