"""
Award routes (JSON)

- POST /api/v1/awards   award a SUBMITTED bid -> 201 {award, commitment}
- GET  /api/v1/awards   ?rfp_id=&vendor_id=&status=&project_id=

Rejections come back through the BiddingError handler:
    409 {"error": {"code": "PRECONDITION_FAILED", "rule": ..., "precondition": n, "details": {...}}}
"""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from ...awards import award_bid, award_to_dict, commitment_to_dict, list_awards, parse_award_request
from ...models import Role
from ...security import admin_required, roles_required
from ...utils import parse_optional_int

awards_bp = Blueprint("awards", __name__, url_prefix="/api/v1/awards")


@awards_bp.route("", methods=["POST"])
@login_required
@admin_required
def create_award():
    award_request = parse_award_request(request.get_json(silent=True))
    current_app.logger.info(
        "Award requested by %s for bid %s (%s)",
        current_user.username,
        award_request.bid_id,
        award_request.award_amount,
    )
    result = award_bid(award_request, awarded_by_id=current_user.id)
    return (
        jsonify(
            {
                "award": award_to_dict(result.award),
                "commitment": commitment_to_dict(result.commitment),
                "unsuccessful_bid_ids": result.unsuccessful_bid_ids,
            }
        ),
        201,
    )


@awards_bp.route("", methods=["GET"])
@login_required
@roles_required(Role.ADMIN, Role.STAFF, Role.VIEWER)
def index():
    awards = list_awards(
        rfp_id=parse_optional_int(request.args.get("rfp_id")),
        vendor_id=parse_optional_int(request.args.get("vendor_id")),
        status=(request.args.get("status") or "").strip().upper() or None,
        project_id=parse_optional_int(request.args.get("project_id")),
    )
    return jsonify({"items": [award_to_dict(award) for award in awards]})
