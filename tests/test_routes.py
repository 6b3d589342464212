from datetime import timedelta

import pytest

from bidtab.extensions import db
from bidtab.models import Project, utcnow


@pytest.fixture
def site(app, build):
    """The two-vendor scenario plus a budget item, built outside any pushed context."""
    with app.app_context():
        project = build.project()
        rfp = build.rfp(
            project,
            [("A-100", "Curb", 100, "LF"), ("B-200", "Slab", 10, "CY")],
            bid_opening_date=utcnow() - timedelta(days=1),
        )
        v1 = build.vendor("Vendor One")
        v2 = build.vendor("Vendor Two")
        bid1 = build.bid(rfp, v1, {"A-100": ("10", "LF", "1000.00"), "B-200": ("200", "CY", "2000.00")})
        bid2 = build.bid(rfp, v2, {"A-100": ("3", "FT", "900.00")})
        budget = build.budget_item(project, "03", "10000.00", name="Concrete")
        return {
            "project_id": project.id,
            "rfp_id": rfp.id,
            "v1": v1.id,
            "v2": v2.id,
            "bid1": bid1.id,
            "bid2": bid2.id,
            "budget_id": budget.id,
        }


def _award_payload(site, amount="3000.00"):
    return {
        "bid_id": site["bid1"],
        "award_amount": amount,
        "justification": "Lowest after leveling",
        "commitment_type": "CONTRACT",
        "contract_terms": {"start_date": "2026-11-01", "payment_terms": "Net 30", "retention_percentage": 5},
        "budget_allocations": [{"budget_item_id": site["budget_id"], "amount": amount}],
    }


def test_unauthenticated_requests_get_json_401(app, site):
    response = app.test_client().get(f"/api/v1/rfps/{site['rfp_id']}/tabulation")
    assert response.status_code == 401
    assert response.get_json()["error"]["code"] == "UNAUTHORIZED"


def test_bad_credentials(app, clients):
    response = app.test_client().post("/auth/login", json={"username": "admin", "password": "nope"})
    assert response.status_code == 401
    assert response.get_json()["error"]["code"] == "INVALID_CREDENTIALS"


def test_me_returns_role(clients):
    body = clients["contractor"].get("/auth/me").get_json()
    assert body["user"]["role"] == "CONTRACTOR"
    assert body["user"]["vendor_id"] == clients["contractor_vendor_id"]


def test_tabulation_payload(clients, site):
    response = clients["viewer"].get(f"/api/v1/rfps/{site['rfp_id']}/tabulation")
    assert response.status_code == 200

    body = response.get_json()
    assert [vendor["name"] for vendor in body["vendors"]] == ["Vendor One", "Vendor Two"]
    assert body["adjusted_totals"] == {str(site["v1"]): "3000.00", str(site["v2"]): "300.00"}
    assert body["rankings"][0]["vendor_id"] == site["v2"]
    assert body["rankings"][0]["has_scope_gaps"] is True


def test_tabulation_exclude_skips_lowest(clients, site):
    body = clients["staff"].get(f"/api/v1/rfps/{site['rfp_id']}/tabulation?exclude={site['v2']}").get_json()
    assert body["lowest_bidder"]["vendor_id"] == site["v1"]


def test_tabulation_unknown_rfp(clients):
    response = clients["admin"].get("/api/v1/rfps/999/tabulation")
    assert response.status_code == 404
    assert response.get_json()["error"]["code"] == "NOT_FOUND"


def test_leveling_returns_new_rank(clients, site):
    response = clients["staff"].post(
        f"/api/v1/rfps/{site['rfp_id']}/tabulation/leveling",
        json={"bid_id": site["bid2"], "adjustments": [{"type": "PLUG", "label": "Slab plug", "amount": "2900"}]},
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["new_total"] == "3200.00"
    assert body["new_rank"] == 2


def test_leveling_requires_bid_id(clients, site):
    response = clients["staff"].post(f"/api/v1/rfps/{site['rfp_id']}/tabulation/leveling", json={"adjustments": []})
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "VALIDATION_ERROR"


def test_leveling_bid_from_another_rfp_is_404(clients, site, app, build):
    with app.app_context():
        other = build.rfp(db.session.get(Project, site["project_id"]), [("X-1", "Other", 1, "EA")], title="Other")
        other_id = other.id

    response = clients["staff"].post(
        f"/api/v1/rfps/{other_id}/tabulation/leveling",
        json={"bid_id": site["bid1"], "adjustments": []},
    )
    assert response.status_code == 404
    assert response.get_json()["error"]["rule"] == "BID_NOT_IN_RFP"


def test_viewer_cannot_level(clients, site):
    response = clients["viewer"].post(
        f"/api/v1/rfps/{site['rfp_id']}/tabulation/leveling",
        json={"bid_id": site["bid2"], "adjustments": []},
    )
    assert response.status_code == 403
    assert response.get_json()["error"]["code"] == "FORBIDDEN"


def test_export_download(clients, site):
    response = clients["staff"].get(f"/api/v1/rfps/{site['rfp_id']}/tabulation/export")
    assert response.status_code == 200
    assert response.mimetype == "text/csv"
    disposition = response.headers["Content-Disposition"]
    assert disposition.startswith('attachment; filename="bid-tabulation-Site_Package-')
    assert response.get_data(as_text=True).splitlines()[-1] == '"","TOTAL","","","3000.00","300.00"'


def test_viewer_cannot_export(clients, site):
    assert clients["viewer"].get(f"/api/v1/rfps/{site['rfp_id']}/tabulation/export").status_code == 403


def test_award_and_list(clients, site):
    response = clients["admin"].post("/api/v1/awards", json=_award_payload(site))
    assert response.status_code == 201
    body = response.get_json()
    assert body["award"]["bid_id"] == site["bid1"]
    assert body["commitment"]["contract_number"].startswith("CO-TWR-")
    assert body["unsuccessful_bid_ids"] == [site["bid2"]]

    listed = clients["viewer"].get(f"/api/v1/awards?rfp_id={site['rfp_id']}").get_json()
    assert [item["bid_id"] for item in listed["items"]] == [site["bid1"]]

    summary = clients["viewer"].get(f"/api/v1/projects/{site['project_id']}/budget/summary").get_json()
    assert summary["totals"]["committed"] == "3000.00"
    assert summary["totals"]["available"] == "7000.00"


def test_second_award_is_a_conflict(clients, site):
    assert clients["admin"].post("/api/v1/awards", json=_award_payload(site)).status_code == 201

    response = clients["admin"].post("/api/v1/awards", json=_award_payload(site))
    assert response.status_code == 409
    error = response.get_json()["error"]
    assert error["code"] == "PRECONDITION_FAILED"
    assert error["rule"] == "RFP_ALREADY_AWARDED"
    assert error["precondition"] == 2


def test_out_of_tolerance_award(clients, site):
    response = clients["admin"].post("/api/v1/awards", json=_award_payload(site, amount="3500.00"))
    assert response.status_code == 409
    error = response.get_json()["error"]
    assert error["rule"] == "AWARD_AMOUNT_OUT_OF_TOLERANCE"
    assert error["details"]["expected"] == "3000.00"


def test_only_admin_awards(clients, site):
    response = clients["staff"].post("/api/v1/awards", json=_award_payload(site))
    assert response.status_code == 403


def test_contractor_opens_bid_for_own_vendor(clients, site):
    response = clients["contractor"].post(f"/api/v1/rfps/{site['rfp_id']}/bids", json={})
    assert response.status_code == 201
    body = response.get_json()
    assert body["vendor_id"] == clients["contractor_vendor_id"]
    assert body["status"] == "DRAFT"


def test_contractor_cannot_touch_other_vendors_bids(clients, site):
    response = clients["contractor"].post(f"/api/v1/bids/{site['bid1']}/withdraw")
    assert response.status_code == 403

    response = clients["contractor"].post(f"/api/v1/rfps/{site['rfp_id']}/bids", json={"vendor_id": site["v1"]})
    assert response.status_code == 403


def test_contractor_cannot_level(clients, site):
    response = clients["contractor"].post(
        f"/api/v1/rfps/{site['rfp_id']}/tabulation/leveling",
        json={"bid_id": site["bid2"], "adjustments": []},
    )
    assert response.status_code == 403
