"""
bidtab/blueprints/rfps/routes.py

RFP routes (JSON)

Includes:
- GET  /api/v1/rfps/<rfp_id>/tabulation            comparison matrix, rankings, scope gaps
- POST /api/v1/rfps/<rfp_id>/tabulation/leveling   replace a bid's leveling adjustments
- GET  /api/v1/rfps/<rfp_id>/tabulation/export     CSV download
- POST /api/v1/rfps/<rfp_id>/publish
- POST /api/v1/rfps/<rfp_id>/items

IMPORTANT:
- Clients are never trusted. Access control and validations are server-side.
- Tabulation re-reads the store on every request; nothing is cached between calls.
"""

from __future__ import annotations

from flask import Blueprint, Response, current_app, jsonify, request
from flask_login import login_required

from ...bidding import add_rfp_item, publish_rfp, rfp_item_to_dict
from ...errors import PreconditionFailed, ValidationError
from ...export import export_csv, export_filename
from ...leveling import apply_leveling, parse_adjustments
from ...models import Role
from ...security import roles_required
from ...tabulation import build_comparison, comparison_to_dict
from ...utils import money_str, parse_optional_int

rfps_bp = Blueprint("rfps", __name__, url_prefix="/api/v1/rfps")


def _excluded_vendor_ids() -> list[int]:
    """?exclude=3,7 -> vendors disqualified by the reviewer."""
    raw = request.args.get("exclude", "")
    ids = [parse_optional_int(part) for part in raw.split(",")]
    return [vendor_id for vendor_id in ids if vendor_id is not None]


# ---------------------------------------------------------------------
# Tabulation
# ---------------------------------------------------------------------
@rfps_bp.route("/<int:rfp_id>/tabulation", methods=["GET"])
@login_required
@roles_required(Role.ADMIN, Role.STAFF, Role.VIEWER)
def tabulation(rfp_id: int):
    comparison = build_comparison(rfp_id)
    return jsonify(comparison_to_dict(comparison, excluded_vendor_ids=_excluded_vendor_ids()))


@rfps_bp.route("/<int:rfp_id>/tabulation/leveling", methods=["POST"])
@login_required
@roles_required(Role.ADMIN, Role.STAFF)
def leveling(rfp_id: int):
    payload = request.get_json(silent=True) or {}
    bid_id = parse_optional_int(payload.get("bid_id"))
    if bid_id is None:
        raise ValidationError("'bid_id' is required")
    adjustments = parse_adjustments(payload.get("adjustments"))

    apply_leveling(bid_id, adjustments, rfp_id=rfp_id)

    new_total = None
    new_rank = None
    try:
        comparison = build_comparison(rfp_id)
    except PreconditionFailed as exc:
        # A leveled DRAFT bid on an RFP without submitted bids has nothing to rank against
        if exc.rule != PreconditionFailed.NO_SUBMITTED_BIDS:
            raise
    else:
        entry = next((vendor for vendor in comparison.vendors if vendor.bid_id == bid_id), None)
        if entry is not None:
            new_total = money_str(comparison.adjusted_totals[entry.id])
            new_rank = comparison.rank_of(entry.id)

    return jsonify(
        {
            "message": "Leveling adjustments applied successfully",
            "bid_id": bid_id,
            "new_total": new_total,
            "new_rank": new_rank,
        }
    )


@rfps_bp.route("/<int:rfp_id>/tabulation/export", methods=["GET"])
@login_required
@roles_required(Role.ADMIN, Role.STAFF)
def export(rfp_id: int):
    comparison = build_comparison(rfp_id)
    filename = export_filename(comparison.rfp_title)
    current_app.logger.info("Tabulation export for RFP %s as %s", rfp_id, filename)
    return Response(
        export_csv(comparison),
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ---------------------------------------------------------------------
# RFP lifecycle
# ---------------------------------------------------------------------
@rfps_bp.route("/<int:rfp_id>/publish", methods=["POST"])
@login_required
@roles_required(Role.ADMIN, Role.STAFF)
def publish(rfp_id: int):
    rfp = publish_rfp(rfp_id)
    return jsonify(
        {
            "id": rfp.id,
            "status": rfp.status,
            "published_at": rfp.published_at.isoformat() if rfp.published_at else None,
        }
    )


@rfps_bp.route("/<int:rfp_id>/items", methods=["POST"])
@login_required
@roles_required(Role.ADMIN, Role.STAFF)
def add_item(rfp_id: int):
    item = add_rfp_item(rfp_id, request.get_json(silent=True))
    return jsonify(rfp_item_to_dict(item)), 201
