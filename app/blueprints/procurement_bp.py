"""
Procurement Plan Blueprint — plan authoring, lifecycle and bulk import.

Endpoints (all under /api/v1/procurement):
  GET    /reference/<kind>                  — active catalog entries
  GET    /plans                             — list plans (agency_id, financial_year_id, status)
  POST   /plans                             — create plan (draft)
  GET    /plans/<id>                        — plan detail (?include_items=1)
  PUT    /plans/<id>                        — edit plan header (draft or returned)
  GET    /plans/<id>/items                  — list items
  POST   /plans/<id>/items                  — add item
  PUT    /items/<id>                        — edit item
  DELETE /items/<id>                        — delete item
  GET    /plans/<id>/transitions            — transitions open to the caller
  POST   /plans/<id>/transition             — request a status change
  GET    /plans/<id>/history                — workflow history, oldest first
  GET    /plans/<id>/summary                — budget summary
  GET    /plans/<id>/export                 — plan workbook (.xlsx)
  GET    /import/template                   — import template (.xlsx)
  POST   /plans/<id>/import/validate        — dry-run import report
  POST   /plans/<id>/import                 — validate and commit valid rows
  GET    /national                          — consolidation across agencies
  GET    /national/export                   — consolidation workbook (.xlsx)

Write endpoints need the X-Actor-* headers (see app.middleware.actor_context);
plan and item writes are further limited to the owning agency or a system admin.
"""

import logging
from datetime import datetime, timezone

from flask import Blueprint, g, jsonify, request, send_file

from app.blueprints import paginate_query
from app.core.exceptions import NotFoundError, PlanWorkflowError, ValidationError
from app.middleware.actor_context import require_actor
from app.models.procurement import PLAN_STATUSES
from app.models.reference import CATALOG_KINDS
from app.services import plan_service
from app.services.plan_export import (
    export_national_workbook,
    export_plan_workbook,
    generate_import_template,
)
from app.services.plan_import import (
    ImportFileError,
    build_import_report,
    commit_import,
    validate_import,
)
from app.services.plan_workflow import get_available_transitions, request_transition
from app.services.reference_catalog import list_entries
from app.services.workflow_history import get_history
from app.utils.errors import E, api_error
from app.utils.helpers import csv_param, decimals_to_float, json_body

logger = logging.getLogger(__name__)

procurement_bp = Blueprint("procurement", __name__, url_prefix="/api/v1/procurement")

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# ═══════════════════════════════════════════════════════════════
# Error Handlers
# ═══════════════════════════════════════════════════════════════
@procurement_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@procurement_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@procurement_bp.errorhandler(PlanWorkflowError)
def _handle_workflow(error: PlanWorkflowError):
    return jsonify(error.to_dict()), error.http_status


@procurement_bp.errorhandler(ImportFileError)
def _handle_import_file(error: ImportFileError):
    return api_error(E.IMPORT_FILE, error.message, status=error.status_code)


def _extract_file_content() -> tuple[bytes | None, str | None]:
    """Uploaded spreadsheet bytes and file name from multipart or raw body."""
    if request.files:
        file = request.files.get("file")
        if file:
            return file.read(), file.filename

    if request.data:
        return request.data, request.args.get("filename")

    return None, None


def _download_name(prefix: str) -> str:
    return f"{prefix}_{datetime.now(timezone.utc).strftime('%Y%m%d')}.xlsx"


def _actor() -> dict:
    """Actor keyword arguments for the authoring services."""
    return {
        "actor_id": g.actor_id,
        "actor_role": g.actor_role,
        "actor_agency_id": g.actor_agency_id,
    }


# ═══════════════════════════════════════════════════════════════
# Reference Catalogs
# ═══════════════════════════════════════════════════════════════
@procurement_bp.route("/reference/<kind>", methods=["GET"])
def list_reference(kind):
    """Active entries of one catalog, e.g. /reference/procurement_method."""
    if kind not in CATALOG_KINDS:
        return api_error(E.NOT_FOUND, f"Unknown catalog: {kind}",
                         details={"kinds": sorted(CATALOG_KINDS)})
    return jsonify(list_entries(kind)), 200


# ═══════════════════════════════════════════════════════════════
# Plans
# ═══════════════════════════════════════════════════════════════
@procurement_bp.route("/plans", methods=["GET"])
def list_plans():
    status = request.args.get("status")
    if status and status not in PLAN_STATUSES:
        return api_error(E.VALIDATION_INVALID, f"Unknown status: {status}", status=400)
    query = plan_service.list_plans(
        agency_id=request.args.get("agency_id"),
        financial_year_id=request.args.get("financial_year_id"),
        status=status,
    )
    plans, total = paginate_query(query)
    return jsonify({"items": [p.to_dict() for p in plans], "total": total}), 200


@procurement_bp.route("/plans", methods=["POST"])
@require_actor
def create_plan():
    plan = plan_service.create_plan(json_body(), **_actor())
    return jsonify(plan.to_dict()), 201


@procurement_bp.route("/plans/<int:plan_id>", methods=["GET"])
def get_plan(plan_id):
    include_items = request.args.get("include_items", "0").lower() in ("1", "true", "yes")
    plan = plan_service.get_plan(plan_id)
    return jsonify(plan.to_dict(include_items=include_items)), 200


@procurement_bp.route("/plans/<int:plan_id>", methods=["PUT"])
@require_actor
def update_plan(plan_id):
    """Correct header fields (name, budget code, period, fund source)."""
    plan = plan_service.update_plan(plan_id, json_body(), **_actor())
    return jsonify(plan.to_dict()), 200


# ═══════════════════════════════════════════════════════════════
# Items
# ═══════════════════════════════════════════════════════════════
@procurement_bp.route("/plans/<int:plan_id>/items", methods=["GET"])
def list_items(plan_id):
    return jsonify([i.to_dict() for i in plan_service.list_items(plan_id)]), 200


@procurement_bp.route("/plans/<int:plan_id>/items", methods=["POST"])
@require_actor
def add_item(plan_id):
    item = plan_service.add_item(plan_id, json_body(), **_actor())
    return jsonify(item.to_dict()), 201


@procurement_bp.route("/items/<int:item_id>", methods=["PUT"])
@require_actor
def update_item(item_id):
    item = plan_service.update_item(item_id, json_body(), **_actor())
    return jsonify(item.to_dict()), 200


@procurement_bp.route("/items/<int:item_id>", methods=["DELETE"])
@require_actor
def delete_item(item_id):
    plan_service.delete_item(item_id, **_actor())
    return jsonify({"deleted": True, "id": item_id}), 200


# ═══════════════════════════════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════════════════════════════
@procurement_bp.route("/plans/<int:plan_id>/transitions", methods=["GET"])
@require_actor
def list_transitions(plan_id):
    plan = plan_service.get_plan(plan_id)
    return jsonify({
        "status": plan.status,
        "transitions": get_available_transitions(plan, g.actor_role, g.actor_agency_id),
    }), 200


@procurement_bp.route("/plans/<int:plan_id>/transition", methods=["POST"])
@require_actor
def transition_plan(plan_id):
    """
    Request a status change.

    Body: {"target_status": "...", "comments": "...", "expected_status": "..."}
    Rejections return the error with ``changed: false`` and the precondition
    that was not met.
    """
    data = json_body()
    target_status = (data.get("target_status") or "").strip()
    if not target_status:
        return api_error(E.VALIDATION_REQUIRED, "target_status is required")

    result, err = request_transition(
        plan_id,
        target_status,
        actor_id=g.actor_id,
        actor_role=g.actor_role,
        actor_agency_id=g.actor_agency_id,
        comments=data.get("comments"),
        expected_status=data.get("expected_status"),
    )
    if err:
        return jsonify(err), err["status"]
    return jsonify(result), 200


@procurement_bp.route("/plans/<int:plan_id>/history", methods=["GET"])
def plan_history(plan_id):
    plan_service.get_plan(plan_id)
    return jsonify([e.to_dict() for e in get_history(plan_id)]), 200


# ═══════════════════════════════════════════════════════════════
# Reporting & Export
# ═══════════════════════════════════════════════════════════════
@procurement_bp.route("/plans/<int:plan_id>/summary", methods=["GET"])
def plan_summary(plan_id):
    return jsonify(decimals_to_float(plan_service.plan_summary(plan_id))), 200


@procurement_bp.route("/plans/<int:plan_id>/export", methods=["GET"])
def export_plan(plan_id):
    plan = plan_service.get_plan(plan_id)
    buf = export_plan_workbook(plan)
    return send_file(
        buf,
        mimetype=XLSX_MIMETYPE,
        as_attachment=True,
        download_name=_download_name(f"ProcurementPlan_{plan.agency_id}_{plan.financial_year_id}"),
    )


@procurement_bp.route("/national", methods=["GET"])
def national_consolidation():
    """Consolidation across agencies.  ?financial_year_id=&status=approved_by_dnpm,locked"""
    statuses = csv_param("status")
    unknown = [s for s in statuses if s not in PLAN_STATUSES]
    if unknown:
        return api_error(E.VALIDATION_INVALID, f"Unknown status: {', '.join(unknown)}", status=400)
    return jsonify(decimals_to_float(plan_service.national_summary(
        financial_year_id=request.args.get("financial_year_id"),
        statuses=statuses or None,
    ))), 200


@procurement_bp.route("/national/export", methods=["GET"])
def export_national():
    """National consolidation workbook; same filters as /national."""
    statuses = csv_param("status")
    unknown = [s for s in statuses if s not in PLAN_STATUSES]
    if unknown:
        return api_error(E.VALIDATION_INVALID, f"Unknown status: {', '.join(unknown)}", status=400)
    financial_year_id = request.args.get("financial_year_id")
    summary = plan_service.national_summary(
        financial_year_id=financial_year_id,
        statuses=statuses or None,
    )
    return send_file(
        export_national_workbook(summary),
        mimetype=XLSX_MIMETYPE,
        as_attachment=True,
        download_name=_download_name(f"National_Procurement_{financial_year_id or 'All'}"),
    )


# ═══════════════════════════════════════════════════════════════
# Bulk Import
# ═══════════════════════════════════════════════════════════════
@procurement_bp.route("/import/template", methods=["GET"])
def download_template():
    """Download the .xlsx import template."""
    return send_file(
        generate_import_template(),
        mimetype=XLSX_MIMETYPE,
        as_attachment=True,
        download_name="procurement_plan_import_template.xlsx",
    )


@procurement_bp.route("/plans/<int:plan_id>/import/validate", methods=["POST"])
def validate_plan_import(plan_id):
    """Validate a spreadsheet without importing (dry run)."""
    file_content, filename = _extract_file_content()
    if not file_content:
        return api_error(E.VALIDATION_REQUIRED, "Spreadsheet file is required (file upload or raw body)")

    rows = validate_import(plan_id, file_content, filename)
    return jsonify(build_import_report(rows)), 200


@procurement_bp.route("/plans/<int:plan_id>/import", methods=["POST"])
@require_actor
def import_plan_items(plan_id):
    """Validate a spreadsheet and commit its valid rows as plan items."""
    file_content, filename = _extract_file_content()
    if not file_content:
        return api_error(E.VALIDATION_REQUIRED, "Spreadsheet file is required (file upload or raw body)")

    rows = validate_import(plan_id, file_content, filename)
    report = build_import_report(rows)
    result, err = commit_import(plan_id, rows, **_actor())
    if err:
        return jsonify({**err, "report": report}), err["status"]
    return jsonify({**result, "report": report}), 201
