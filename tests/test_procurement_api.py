"""
HTTP tests for the procurement blueprint and the health endpoints.

Covers:
  - actor headers (401 / 403) and the content-type guard
  - plan CRUD, items, transitions, history, summary, national roll-up
  - import template download, dry-run validation, committing imports
  - plan and national workbook exports
  - plan authorship: only the owning agency or an admin writes a plan
"""

import io

from openpyxl import load_workbook

from app.models import db
from app.models.procurement import ProcurementPlanItem
from app.services.plan_import import IMPORT_COLUMNS

BASE = "/api/v1/procurement"
AGENCY_ID = "AG-001"
OTHER_AGENCY_ID = "AG-002"

HEADER = [name for _, name in IMPORT_COLUMNS]


def _row(title="Office laptops", method="NCB"):
    return [
        title, "Laptops for regional offices", "43211503", method, "SUP",
        10, "EA", 500, "2026-03-01", "2026-06-30",
        1000, 1000, 1000, 1000, "national", None, "No", None, "No", None, None,
    ]


def _upload(content, filename="plan.xlsx"):
    return {"file": (io.BytesIO(content), filename)}


# ═════════════════════════════════════════════════════════════════════════════
# Health & middleware
# ═════════════════════════════════════════════════════════════════════════════


class TestHealth:
    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json() == {"status": "ok"}

    def test_live_reports_catalogs(self, client):
        res = client.get("/api/v1/health/live")
        body = res.get_json()
        assert res.status_code == 200
        assert body["checks"]["database"]["status"] == "ok"
        assert body["checks"]["reference_catalogs"]["status"] == "ok"
        assert body["checks"]["reference_catalogs"]["counts"]["province"] == 22


class TestMiddleware:
    def test_request_id_header(self, client):
        res = client.get(f"{BASE}/plans", headers={"X-Request-ID": "req-123"})
        assert res.headers["X-Request-ID"] == "req-123"
        assert "X-Request-Duration-Ms" in res.headers

    def test_missing_actor_headers(self, client):
        res = client.post(f"{BASE}/plans", json={"financial_year_id": "FY2026"})
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_unknown_role(self, client, actor_headers):
        res = client.post(f"{BASE}/plans", json={}, headers=actor_headers("auditor"))
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_role_header_case_insensitive(self, client, plan, actor_headers):
        res = client.get(f"{BASE}/plans/{plan.id}/transitions", headers=actor_headers("Agency_User"))
        assert res.status_code == 200

    def test_non_json_body_rejected(self, client, actor_headers):
        res = client.post(f"{BASE}/plans", data="plan", content_type="text/plain",
                          headers=actor_headers("agency_user"))
        assert res.status_code == 415

    def test_unknown_route(self, client):
        res = client.get(f"{BASE}/nothing-here")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


# ═════════════════════════════════════════════════════════════════════════════
# Reference catalogs
# ═════════════════════════════════════════════════════════════════════════════


class TestReference:
    def test_procurement_methods(self, client):
        res = client.get(f"{BASE}/reference/procurement_method")
        codes = [m["code"] for m in res.get_json()]
        assert res.status_code == 200
        assert codes == sorted(codes)
        assert {"NCB", "RFQ", "ICB"} <= set(codes)

    def test_unknown_catalog(self, client):
        res = client.get(f"{BASE}/reference/currencies")
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Plans and items
# ═════════════════════════════════════════════════════════════════════════════


class TestPlans:
    def test_create_plan(self, client, actor_headers):
        res = client.post(
            f"{BASE}/plans",
            json={"financial_year_id": "FY2026", "period_start": "2026-01-01", "period_end": "2026-12-31",
                  "plan_name": "Health 2026"},
            headers=actor_headers("agency_user"),
        )
        body = res.get_json()
        assert res.status_code == 201
        assert body["status"] == "draft"
        assert body["agency_id"] == AGENCY_ID

        history = client.get(f"{BASE}/plans/{body['id']}/history").get_json()
        assert [h["action"] for h in history] == ["create"]

    def test_create_plan_validation(self, client, actor_headers):
        res = client.post(f"{BASE}/plans", json={"financial_year_id": "FY2026"},
                          headers=actor_headers("agency_user"))
        assert res.status_code == 422
        assert "period_start" in res.get_json()["details"]

    def test_malformed_json(self, client, actor_headers):
        res = client.post(f"{BASE}/plans", data="{not json", content_type="application/json",
                          headers=actor_headers("agency_user"))
        assert res.status_code == 422

    def test_list_with_filters(self, client, make_plan):
        make_plan()
        make_plan(status="submitted")
        make_plan(agency_id=OTHER_AGENCY_ID)

        res = client.get(f"{BASE}/plans?agency_id={AGENCY_ID}&status=draft")
        body = res.get_json()
        assert res.status_code == 200
        assert body["total"] == 1
        assert body["items"][0]["agency_id"] == AGENCY_ID

    def test_list_unknown_status(self, client):
        assert client.get(f"{BASE}/plans?status=archived").status_code == 400

    def test_get_plan_with_items(self, client, plan, item_payload, actor_headers):
        client.post(f"{BASE}/plans/{plan.id}/items", json=item_payload(), headers=actor_headers("agency_user"))

        res = client.get(f"{BASE}/plans/{plan.id}?include_items=1")
        body = res.get_json()
        assert body["item_count"] == 1
        assert body["total_estimated_value"] == 5000.0
        assert body["items"][0]["title"] == "Office laptops"

    def test_create_plan_for_other_agency_forbidden(self, client, actor_headers):
        res = client.post(
            f"{BASE}/plans",
            json={"agency_id": AGENCY_ID, "financial_year_id": "FY2026",
                  "period_start": "2026-01-01", "period_end": "2026-12-31"},
            headers=actor_headers("agency_user", agency_id="AG-999"),
        )
        body = res.get_json()
        assert res.status_code == 403
        assert body["code"] == "ERR_FORBIDDEN"
        assert body["precondition"] == "ownership"

    def test_update_plan_header(self, client, plan, actor_headers):
        res = client.put(
            f"{BASE}/plans/{plan.id}",
            json={"plan_name": "Corrected plan", "agency_budget_code": "BC-204", "fund_source": "GOPNG-DEV"},
            headers=actor_headers("agency_user"),
        )
        body = res.get_json()
        assert res.status_code == 200
        assert body["plan_name"] == "Corrected plan"
        assert body["agency_budget_code"] == "BC-204"
        assert body["fund_source"] == "GOPNG-DEV"
        assert body["period_start"] == "2026-01-01"

    def test_update_plan_other_agency(self, client, plan, actor_headers):
        res = client.put(f"{BASE}/plans/{plan.id}", json={"plan_name": "Hijacked"},
                         headers=actor_headers("agency_user", agency_id=OTHER_AGENCY_ID))
        assert res.status_code == 403
        db.session.expire_all()
        assert plan.plan_name != "Hijacked"

    def test_update_submitted_plan(self, client, make_plan, actor_headers):
        plan = make_plan(status="submitted")
        res = client.put(f"{BASE}/plans/{plan.id}", json={"plan_name": "Late fix"},
                         headers=actor_headers("agency_user"))
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_PLAN_LOCKED"

    def test_missing_plan(self, client):
        res = client.get(f"{BASE}/plans/99999")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


class TestItems:
    def test_add_update_delete(self, client, plan, item_payload, actor_headers):
        headers = actor_headers("agency_user")

        res = client.post(f"{BASE}/plans/{plan.id}/items", json=item_payload(), headers=headers)
        assert res.status_code == 201
        item = res.get_json()
        assert item["sequence_no"] == 1
        assert item["estimated_total_cost"] == 5000.0

        res = client.put(f"{BASE}/items/{item['id']}", json={"quantity": 4}, headers=headers)
        assert res.status_code == 200
        assert res.get_json()["estimated_total_cost"] == 2000.0

        res = client.delete(f"{BASE}/items/{item['id']}", headers=headers)
        assert res.status_code == 200
        assert res.get_json() == {"deleted": True, "id": item["id"]}

        db.session.expire_all()
        assert plan.item_count == 0

    def test_invalid_item(self, client, plan, item_payload, actor_headers):
        res = client.post(f"{BASE}/plans/{plan.id}/items", json=item_payload(quantity=0, title=""),
                          headers=actor_headers("agency_user"))
        body = res.get_json()
        assert res.status_code == 422
        assert body["code"] == "ERR_VALIDATION_INVALID"
        assert set(body["details"]) == {"quantity", "title"}

    def test_item_on_locked_plan(self, client, make_plan, item_payload, actor_headers):
        plan = make_plan(status="locked")
        res = client.post(f"{BASE}/plans/{plan.id}/items", json=item_payload(),
                          headers=actor_headers("agency_user"))
        body = res.get_json()
        assert res.status_code == 409
        assert body["code"] == "ERR_PLAN_LOCKED"
        assert body["changed"] is False

    def test_other_agency_cannot_add_item(self, client, plan, item_payload, actor_headers):
        res = client.post(f"{BASE}/plans/{plan.id}/items", json=item_payload(),
                          headers=actor_headers("agency_user", agency_id="AG-999"))
        body = res.get_json()
        assert res.status_code == 403
        assert body["precondition"] == "ownership"
        assert body["changed"] is False
        assert ProcurementPlanItem.query.count() == 0

    def test_other_agency_cannot_edit_or_delete(self, client, plan, item_payload, actor_headers):
        item = client.post(f"{BASE}/plans/{plan.id}/items", json=item_payload(),
                           headers=actor_headers("agency_user")).get_json()
        outsider = actor_headers("agency_approver", agency_id=OTHER_AGENCY_ID)

        assert client.put(f"{BASE}/items/{item['id']}", json={"quantity": 1}, headers=outsider).status_code == 403
        assert client.delete(f"{BASE}/items/{item['id']}", headers=outsider).status_code == 403
        db.session.expire_all()
        assert ProcurementPlanItem.query.one().quantity == 10

    def test_dnpm_cannot_add_item(self, client, plan, item_payload, actor_headers):
        res = client.post(f"{BASE}/plans/{plan.id}/items", json=item_payload(),
                          headers=actor_headers("dnpm_reviewer", agency_id=None))
        assert res.status_code == 403
        assert res.get_json()["precondition"] == "role"

    def test_admin_may_add_item(self, client, plan, item_payload, actor_headers):
        res = client.post(f"{BASE}/plans/{plan.id}/items", json=item_payload(),
                          headers=actor_headers("system_admin", agency_id=None))
        assert res.status_code == 201

    def test_fractional_amount_rejected(self, client, plan, item_payload, actor_headers):
        res = client.post(f"{BASE}/plans/{plan.id}/items",
                          json=item_payload(quantity="1.005", estimated_unit_cost="200"),
                          headers=actor_headers("agency_user"))
        assert res.status_code == 422
        assert res.get_json()["details"] == {"quantity": "quantity may have at most 2 decimal places"}

    def test_list_items(self, client, plan, item_payload, actor_headers):
        headers = actor_headers("agency_user")
        client.post(f"{BASE}/plans/{plan.id}/items", json=item_payload(), headers=headers)
        client.post(f"{BASE}/plans/{plan.id}/items", json=item_payload(title="Desks"), headers=headers)

        res = client.get(f"{BASE}/plans/{plan.id}/items")
        assert [i["sequence_no"] for i in res.get_json()] == [1, 2]


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════════


class TestTransitions:
    def test_submit(self, client, plan, actor_headers):
        res = client.post(f"{BASE}/plans/{plan.id}/transition", json={"target_status": "submitted"},
                          headers=actor_headers("agency_user"))
        body = res.get_json()
        assert res.status_code == 200
        assert body["plan"]["status"] == "submitted"
        assert body["history_entry"]["action"] == "submit"

    def test_missing_target(self, client, plan, actor_headers):
        res = client.post(f"{BASE}/plans/{plan.id}/transition", json={},
                          headers=actor_headers("agency_user"))
        assert res.status_code == 400

    def test_return_needs_comment(self, client, make_plan, actor_headers):
        plan = make_plan(status="under_dnpm_review")
        res = client.post(f"{BASE}/plans/{plan.id}/transition",
                          json={"target_status": "returned", "comments": ""},
                          headers=actor_headers("dnpm_reviewer", agency_id=None))
        body = res.get_json()
        assert res.status_code == 422
        assert body["code"] == "ERR_COMMENT_REQUIRED"
        assert body["precondition"] == "comment"

        db.session.expire_all()
        assert plan.status == "under_dnpm_review"

    def test_other_agency_forbidden(self, client, make_plan, actor_headers):
        plan = make_plan(status="submitted")
        res = client.post(f"{BASE}/plans/{plan.id}/transition", json={"target_status": "approved_by_agency"},
                          headers=actor_headers("agency_approver", agency_id=OTHER_AGENCY_ID))
        assert res.status_code == 403
        assert res.get_json()["precondition"] == "ownership"

    def test_stale_expected_status(self, client, make_plan, actor_headers):
        plan = make_plan(status="approved_by_agency")
        res = client.post(
            f"{BASE}/plans/{plan.id}/transition",
            json={"target_status": "under_dnpm_review", "expected_status": "submitted"},
            headers=actor_headers("dnpm_reviewer", agency_id=None),
        )
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_STALE_STATE"

    def test_available_transitions(self, client, make_plan, actor_headers):
        plan = make_plan(status="submitted")
        res = client.get(f"{BASE}/plans/{plan.id}/transitions", headers=actor_headers("agency_approver"))
        body = res.get_json()
        assert body["status"] == "submitted"
        assert {t["to_status"] for t in body["transitions"]} == {"approved_by_agency", "draft"}

    def test_history_endpoint(self, client, plan, actor_headers):
        client.post(f"{BASE}/plans/{plan.id}/transition", json={"target_status": "submitted"},
                    headers=actor_headers("agency_user"))
        client.post(f"{BASE}/plans/{plan.id}/transition",
                    json={"target_status": "draft", "comments": "Add the vehicle items"},
                    headers=actor_headers("agency_approver", actor_id="approver-1"))

        history = client.get(f"{BASE}/plans/{plan.id}/history").get_json()
        assert [(h["from_status"], h["to_status"]) for h in history] == [
            ("draft", "submitted"), ("submitted", "draft"),
        ]
        assert history[1]["comments"] == "Add the vehicle items"
        assert history[1]["actor_id"] == "approver-1"


# ═════════════════════════════════════════════════════════════════════════════
# Reporting & export
# ═════════════════════════════════════════════════════════════════════════════


class TestReporting:
    def test_plan_summary(self, client, plan, item_payload, actor_headers):
        client.post(f"{BASE}/plans/{plan.id}/items", json=item_payload(), headers=actor_headers("agency_user"))

        body = client.get(f"{BASE}/plans/{plan.id}/summary").get_json()
        assert body["total_estimated_value"] == 5000.0
        assert body["by_procurement_method"] == {"NCB": 5000.0}
        assert body["quarters"][1]["percentage"] == 100.0

    def test_national(self, client, make_plan):
        make_plan(total_estimated_value=1000, item_count=1)
        make_plan(agency_id=OTHER_AGENCY_ID, status="approved_by_dnpm", total_estimated_value=3000, item_count=2)

        body = client.get(f"{BASE}/national?financial_year_id=FY2026").get_json()
        assert body["total_estimated_value"] == 4000.0
        assert body["agencies"][0]["agency_id"] == OTHER_AGENCY_ID
        assert body["agencies"][0]["percentage"] == 75.0

        body = client.get(f"{BASE}/national?status=approved_by_dnpm,locked").get_json()
        assert body["plan_count"] == 1

    def test_national_unknown_status(self, client):
        assert client.get(f"{BASE}/national?status=draft,bogus").status_code == 400

    def test_national_export(self, client, make_plan):
        make_plan(total_estimated_value=1000, item_count=1)
        make_plan(agency_id=OTHER_AGENCY_ID, total_estimated_value=3000, item_count=2)

        res = client.get(f"{BASE}/national/export?financial_year_id=FY2026")
        assert res.status_code == 200
        assert "attachment" in res.headers["Content-Disposition"]

        wb = load_workbook(io.BytesIO(res.data))
        assert wb.sheetnames == ["National Summary", "By Agency", "Quarterly Pipeline"]
        by_agency = wb["By Agency"]
        assert by_agency.cell(row=2, column=1).value == OTHER_AGENCY_ID
        assert by_agency.cell(row=2, column=4).value == 3000
        assert by_agency.cell(row=2, column=5).value == "75.0%"
        assert by_agency.cell(row=3, column=1).value == AGENCY_ID

    def test_national_export_unknown_status(self, client):
        assert client.get(f"{BASE}/national/export?status=bogus").status_code == 400

    def test_export_workbook(self, client, plan, item_payload, actor_headers):
        client.post(f"{BASE}/plans/{plan.id}/items", json=item_payload(), headers=actor_headers("agency_user"))

        res = client.get(f"{BASE}/plans/{plan.id}/export")
        assert res.status_code == 200
        assert "attachment" in res.headers["Content-Disposition"]

        wb = load_workbook(io.BytesIO(res.data))
        assert wb.sheetnames == ["Summary", "Procurement Items", "Quarterly Summary"]
        items = wb["Procurement Items"]
        assert items.cell(row=2, column=1).value == 1
        assert items.cell(row=2, column=2).value == "Office laptops"


# ═════════════════════════════════════════════════════════════════════════════
# Bulk import
# ═════════════════════════════════════════════════════════════════════════════


class TestImport:
    def test_template_download(self, client):
        res = client.get(f"{BASE}/import/template")
        assert res.status_code == 200

        wb = load_workbook(io.BytesIO(res.data))
        assert wb.sheetnames[0] == "Procurement Items"
        assert "Provinces" in wb.sheetnames
        assert wb["Procurement Items"].max_column == 21

    def test_validate_is_dry_run(self, client, plan, xlsx_bytes):
        content = xlsx_bytes([HEADER, _row(), _row(method=None)])

        res = client.post(f"{BASE}/plans/{plan.id}/import/validate", data=_upload(content),
                          content_type="multipart/form-data")
        body = res.get_json()
        assert res.status_code == 200
        assert body["total_rows"] == 2
        assert body["valid_count"] == 1
        assert body["rows"][0]["warnings"] == ["Quarter totals (4000) don't match total cost (5000)"]
        assert body["rows"][1]["errors"] == ["Procurement Method is required"]
        assert ProcurementPlanItem.query.count() == 0

    def test_validate_without_file(self, client, plan):
        res = client.post(f"{BASE}/plans/{plan.id}/import/validate")
        assert res.status_code == 400

    def test_validate_unreadable_file(self, client, plan):
        res = client.post(f"{BASE}/plans/{plan.id}/import/validate",
                          data=_upload(b"PK\x03\x04 broken"), content_type="multipart/form-data")
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_IMPORT_FILE"

    def test_import_commits_valid_rows(self, client, plan, xlsx_bytes, actor_headers):
        content = xlsx_bytes([HEADER, _row(), _row(method=None), _row(title="Desks")])

        res = client.post(f"{BASE}/plans/{plan.id}/import", data=_upload(content),
                          content_type="multipart/form-data", headers=actor_headers("agency_user"))
        body = res.get_json()
        assert res.status_code == 201
        assert body["imported_count"] == 2
        assert body["skipped_count"] == 1
        assert body["report"]["invalid_count"] == 1
        assert body["plan"]["item_count"] == 2

    def test_import_raw_csv_body(self, client, plan, actor_headers):
        lines = [",".join(HEADER), ",".join("" if c is None else str(c) for c in _row())]
        res = client.post(f"{BASE}/plans/{plan.id}/import?filename=plan.csv",
                          data="\n".join(lines).encode("utf-8"), content_type="text/csv",
                          headers=actor_headers("agency_user"))
        assert res.status_code == 201
        assert res.get_json()["imported_count"] == 1

    def test_import_into_locked_plan(self, client, make_plan, xlsx_bytes, actor_headers):
        plan = make_plan(status="locked")
        content = xlsx_bytes([HEADER, _row()])

        res = client.post(f"{BASE}/plans/{plan.id}/import", data=_upload(content),
                          content_type="multipart/form-data", headers=actor_headers("agency_user"))
        body = res.get_json()
        assert res.status_code == 409
        assert body["code"] == "ERR_PLAN_LOCKED"
        assert body["report"]["valid_count"] == 1
        assert ProcurementPlanItem.query.count() == 0

    def test_import_by_other_agency(self, client, plan, xlsx_bytes, actor_headers):
        res = client.post(f"{BASE}/plans/{plan.id}/import", data=_upload(xlsx_bytes([HEADER, _row()])),
                          content_type="multipart/form-data",
                          headers=actor_headers("agency_user", agency_id=OTHER_AGENCY_ID))
        body = res.get_json()
        assert res.status_code == 403
        assert body["code"] == "ERR_FORBIDDEN"
        assert body["report"]["valid_count"] == 1
        assert ProcurementPlanItem.query.count() == 0

    def test_import_requires_actor(self, client, plan, xlsx_bytes):
        res = client.post(f"{BASE}/plans/{plan.id}/import", data=_upload(xlsx_bytes([HEADER, _row()])),
                          content_type="multipart/form-data")
        assert res.status_code == 401

    def test_import_missing_plan(self, client, xlsx_bytes, actor_headers):
        res = client.post(f"{BASE}/plans/99999/import", data=_upload(xlsx_bytes([HEADER, _row()])),
                          content_type="multipart/form-data", headers=actor_headers("agency_user"))
        assert res.status_code == 404
