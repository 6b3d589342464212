"""
Bid routes (JSON)

- POST /api/v1/rfps/<rfp_id>/bids      open a DRAFT bid   {vendor_id}
- POST /api/v1/bids/<bid_id>/submit    price items + vendor adjustments, DRAFT -> SUBMITTED
- POST /api/v1/bids/<bid_id>/withdraw  DRAFT / SUBMITTED -> WITHDRAWN

CONTRACTOR users may only act for their own vendor.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from ...bidding import bid_to_dict, create_bid as open_bid, parse_bid_submission, submit_bid, withdraw_bid
from ...errors import NotFound, ValidationError
from ...extensions import db
from ...models import Bid, Role
from ...security import forbidden, owns_vendor, roles_required
from ...utils import parse_optional_int

bids_bp = Blueprint("bids", __name__, url_prefix="/api/v1")

BID_ROLES = (Role.ADMIN, Role.STAFF, Role.CONTRACTOR)


def _load_bid(bid_id: int) -> Bid:
    bid = db.session.get(Bid, bid_id)
    if bid is None:
        raise NotFound("Bid", bid_id, "Bid not found")
    return bid


@bids_bp.route("/rfps/<int:rfp_id>/bids", methods=["POST"])
@login_required
@roles_required(*BID_ROLES)
def create_bid(rfp_id: int):
    payload = request.get_json(silent=True) or {}
    vendor_id = parse_optional_int(payload.get("vendor_id"))
    if vendor_id is None and current_user.role == Role.CONTRACTOR:
        vendor_id = current_user.vendor_id
    if vendor_id is None:
        raise ValidationError("'vendor_id' is required")
    if not owns_vendor(vendor_id):
        return forbidden("Contractors can only bid for their own vendor")

    bid = open_bid(rfp_id, vendor_id)
    return jsonify(bid_to_dict(bid)), 201


@bids_bp.route("/bids/<int:bid_id>/submit", methods=["POST"])
@login_required
@roles_required(*BID_ROLES)
def submit(bid_id: int):
    if not owns_vendor(_load_bid(bid_id).vendor_id):
        return forbidden("Contractors can only submit their own bids")

    submission = parse_bid_submission(request.get_json(silent=True))
    bid = submit_bid(bid_id, submission)
    return jsonify(bid_to_dict(bid))


@bids_bp.route("/bids/<int:bid_id>/withdraw", methods=["POST"])
@login_required
@roles_required(*BID_ROLES)
def withdraw(bid_id: int):
    if not owns_vendor(_load_bid(bid_id).vendor_id):
        return forbidden("Contractors can only withdraw their own bids")

    bid = withdraw_bid(bid_id)
    return jsonify(bid_to_dict(bid))
