"""
bidtab/bidding.py

RFP and bid lifecycle around the tabulation:

    RFP:  DRAFT --publish--> PUBLISHED --(award)--> AWARDED
    Bid:  DRAFT --submit--> SUBMITTED --(award)--> AWARDED | UNSUCCESSFUL
          DRAFT / SUBMITTED --withdraw--> WITHDRAWN

Rules:
- RFP items can be added only while the RFP is DRAFT; publishing freezes them.
- A bid can be submitted only against a PUBLISHED RFP whose due date has not passed.
- When the vendor prices in the RFP unit, total_price must equal unit_price x RFP qty
  (to the cent). Items priced in another unit are left to the tabulation.
- Items may be omitted; the tabulation reports them as scope gaps.
- Vendors submit ADD / DEDUCT / ALTERNATE / ALLOWANCE adjustments only. PLUG and
  NORMALIZATION rows belong to the leveling engine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select

from .audit import log_action, serialize_model
from .errors import NotFound, PreconditionFailed, ValidationError
from .extensions import db
from .models import (
    AdjustmentType,
    Bid,
    BidAdjustment,
    BidItem,
    BidStatus,
    BudgetItem,
    Project,
    RfpItem,
    RfpStatus,
    Vendor,
    utcnow,
)
from .repository import BiddingRepository
from .uom import ALL_UNITS, is_known_unit, normalize_unit
from .uow import unit_of_work
from .utils import money_str, parse_decimal, parse_optional_int

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------
# RFP lifecycle
# ---------------------------------------------------------------------
def publish_rfp(rfp_id: int, now: Optional[datetime] = None):
    """DRAFT -> PUBLISHED. Requires at least one line item."""
    with unit_of_work(name="publish_rfp") as session:
        repo = BiddingRepository(session)
        rfp = repo.get_rfp(rfp_id, lock=True)
        if rfp is None:
            raise NotFound("Rfp", rfp_id, "RFP not found")
        if rfp.status != RfpStatus.DRAFT:
            raise PreconditionFailed(
                PreconditionFailed.RFP_NOT_DRAFT,
                "Only draft RFPs can be published",
                details={"expected": RfpStatus.DRAFT, "actual": rfp.status},
            )
        if not repo.rfp_items(rfp.id):
            raise ValidationError("An RFP needs at least one line item before publishing")

        before = serialize_model(rfp)
        rfp.status = RfpStatus.PUBLISHED
        rfp.published_at = now or utcnow()
        repo.flush()
        log_action(rfp, "PUBLISH", before=before, after=serialize_model(rfp), session=session)

    logger.info("Published RFP %s", rfp_id)
    return rfp


def add_rfp_item(rfp_id: int, payload: Any) -> RfpItem:
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be a JSON object")

    spec_code = str(payload.get("spec_code") or "").strip()
    description = str(payload.get("description") or "").strip()
    qty = parse_decimal(payload.get("qty"))
    uom = normalize_unit(payload.get("uom"))

    if not spec_code:
        raise ValidationError("'spec_code' is required")
    if not description:
        raise ValidationError("'description' is required")
    if qty is None or qty <= 0:
        raise ValidationError("'qty' must be a positive number")
    if not is_known_unit(uom):
        raise ValidationError(
            f"'uom' must be one of {', '.join(ALL_UNITS)}",
            details={"uom": uom},
        )

    with unit_of_work(name="add_rfp_item") as session:
        repo = BiddingRepository(session)
        rfp = repo.get_rfp(rfp_id, lock=True)
        if rfp is None:
            raise NotFound("Rfp", rfp_id, "RFP not found")
        if rfp.items_locked:
            raise PreconditionFailed(
                PreconditionFailed.RFP_NOT_DRAFT,
                "Line items are frozen once the RFP is published",
                details={"expected": RfpStatus.DRAFT, "actual": rfp.status},
            )
        if any(item.spec_code == spec_code for item in repo.rfp_items(rfp.id)):
            raise ValidationError(
                f"Spec code {spec_code} already exists on this RFP",
                details={"spec_code": spec_code},
            )

        item = RfpItem(rfp_id=rfp.id, spec_code=spec_code, description=description, qty=qty, uom=uom)
        repo.add(item)
        repo.flush()
        log_action(item, "CREATE", after=serialize_model(item), session=session)

    return item


# ---------------------------------------------------------------------
# Bids
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BidLine:
    rfp_item_id: int
    unit_price: Decimal
    total_price: Decimal
    uom: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class VendorAdjustment:
    type: str
    label: str
    amount: Decimal
    category: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class BidSubmission:
    items: List[BidLine]
    adjustments: List[VendorAdjustment] = field(default_factory=list)
    notes: Optional[str] = None


def parse_bid_submission(payload: Any) -> BidSubmission:
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be a JSON object")

    raw_items = payload.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("'items' must be a non-empty list")

    items: List[BidLine] = []
    seen = set()
    for index, entry in enumerate(raw_items):
        if not isinstance(entry, Mapping):
            raise ValidationError(f"items[{index}] must be an object")
        rfp_item_id = parse_optional_int(entry.get("rfp_item_id"))
        unit_price = parse_decimal(entry.get("unit_price"))
        total_price = parse_decimal(entry.get("total_price"))
        if rfp_item_id is None:
            raise ValidationError(f"items[{index}].rfp_item_id is required")
        if rfp_item_id in seen:
            raise ValidationError(f"RFP item {rfp_item_id} is priced more than once")
        if unit_price is None or unit_price < 0:
            raise ValidationError(f"items[{index}].unit_price must be >= 0")
        if total_price is None or total_price < 0:
            raise ValidationError(f"items[{index}].total_price must be >= 0")
        seen.add(rfp_item_id)
        items.append(
            BidLine(
                rfp_item_id=rfp_item_id,
                unit_price=unit_price,
                total_price=total_price,
                uom=normalize_unit(entry.get("uom")),
                notes=(str(entry.get("notes") or "").strip() or None),
            )
        )

    raw_adjustments = payload.get("adjustments") or []
    if not isinstance(raw_adjustments, list):
        raise ValidationError("'adjustments' must be a list")

    adjustments: List[VendorAdjustment] = []
    for index, entry in enumerate(raw_adjustments):
        if not isinstance(entry, Mapping):
            raise ValidationError(f"adjustments[{index}] must be an object")
        adj_type = str(entry.get("type") or "").strip().upper()
        if adj_type not in AdjustmentType.VENDOR:
            raise ValidationError(
                f"adjustments[{index}].type must be one of {', '.join(AdjustmentType.VENDOR)}",
                details={"index": index, "type": adj_type or None},
            )
        label = str(entry.get("label") or "").strip()
        amount = parse_decimal(entry.get("amount"))
        if not label:
            raise ValidationError(f"adjustments[{index}].label is required")
        if amount is None or amount < 0:
            raise ValidationError(f"adjustments[{index}].amount must be >= 0")
        adjustments.append(
            VendorAdjustment(
                type=adj_type,
                label=label,
                amount=amount,
                category=(str(entry.get("category") or "").strip() or None),
                description=(str(entry.get("description") or "").strip() or None),
            )
        )

    notes = str(payload.get("notes") or "").strip() or None
    return BidSubmission(items=items, adjustments=adjustments, notes=notes)


def create_bid(rfp_id: int, vendor_id: int) -> Bid:
    """Open a DRAFT bid for a vendor (one bid per vendor per RFP)."""
    with unit_of_work(name="create_bid") as session:
        repo = BiddingRepository(session)
        rfp = repo.get_rfp(rfp_id)
        if rfp is None:
            raise NotFound("Rfp", rfp_id, "RFP not found")
        if rfp.status != RfpStatus.PUBLISHED:
            raise PreconditionFailed(
                PreconditionFailed.RFP_NOT_PUBLISHED,
                "Bids can only be opened on a published RFP",
                details={"expected": RfpStatus.PUBLISHED, "actual": rfp.status},
            )
        if session.get(Vendor, vendor_id) is None:
            raise NotFound("Vendor", vendor_id, "Vendor not found")
        existing = session.execute(
            select(Bid).where(Bid.rfp_id == rfp_id, Bid.vendor_id == vendor_id)
        ).scalar_one_or_none()
        if existing is not None:
            raise ValidationError(
                "Vendor already has a bid on this RFP",
                details={"bid_id": existing.id},
            )

        bid = Bid(rfp_id=rfp_id, vendor_id=vendor_id, status=BidStatus.DRAFT)
        repo.add(bid)
        repo.flush()
        log_action(bid, "CREATE", after=serialize_model(bid), session=session)

    return bid


def submit_bid(bid_id: int, submission: BidSubmission, now: Optional[datetime] = None) -> Bid:
    moment = now or utcnow()

    with unit_of_work(name="submit_bid") as session:
        repo = BiddingRepository(session)
        bid = repo.get_bid(bid_id, lock=True)
        if bid is None:
            raise NotFound("Bid", bid_id, "Bid not found")
        if bid.status != BidStatus.DRAFT:
            raise PreconditionFailed(
                PreconditionFailed.BID_NOT_DRAFT,
                "Only draft bids can be submitted",
                details={"expected": BidStatus.DRAFT, "actual": bid.status},
            )

        rfp = repo.get_rfp(bid.rfp_id)
        if rfp.status != RfpStatus.PUBLISHED:
            raise PreconditionFailed(
                PreconditionFailed.RFP_NOT_PUBLISHED,
                "RFP is not open for bidding",
                details={"expected": RfpStatus.PUBLISHED, "actual": rfp.status},
            )
        if rfp.due_date is not None and rfp.due_date < moment:
            raise PreconditionFailed(
                PreconditionFailed.RFP_DUE_DATE_PASSED,
                "RFP due date has passed",
                details={"due_date": rfp.due_date.isoformat()},
            )

        rfp_items = {item.id: item for item in repo.rfp_items(rfp.id)}
        for line in submission.items:
            rfp_item = rfp_items.get(line.rfp_item_id)
            if rfp_item is None:
                raise ValidationError(
                    f"Invalid RFP item: {line.rfp_item_id}",
                    details={"rfp_item_id": line.rfp_item_id},
                )
            rfp_unit = normalize_unit(rfp_item.uom)
            if (line.uom or rfp_unit) == rfp_unit:
                expected = _cents(line.unit_price * Decimal(str(rfp_item.qty)))
                if _cents(line.total_price) != expected:
                    raise ValidationError(
                        f"Total price mismatch for item {rfp_item.spec_code}",
                        details={
                            "rfp_item_id": rfp_item.id,
                            "expected": money_str(expected),
                            "actual": money_str(line.total_price),
                        },
                    )

        # DRAFT bids may carry rows from an earlier save; deletes must flush before
        # the inserts or uq_bid_item_rfp_item fires
        bid.items.clear()
        bid.adjustments[:] = [adj for adj in bid.adjustments if adj.type not in AdjustmentType.VENDOR]
        repo.flush()

        for line in submission.items:
            bid.items.append(
                BidItem(
                    rfp_item_id=line.rfp_item_id,
                    unit_price=line.unit_price,
                    uom=line.uom,
                    total_price=_cents(line.total_price),
                    notes=line.notes,
                )
            )
        for index, adjustment in enumerate(submission.adjustments):
            bid.adjustments.append(
                BidAdjustment(
                    type=adjustment.type,
                    category=adjustment.category,
                    label=adjustment.label,
                    description=adjustment.description,
                    amount=adjustment.amount,
                    is_accepted=True,
                    sequence_order=index,
                )
            )

        before = serialize_model(bid)
        bid.total_amount = _cents(sum((line.total_price for line in submission.items), Decimal("0")))
        bid.notes = submission.notes
        bid.status = BidStatus.SUBMITTED
        bid.submitted_at = moment
        repo.flush()
        session.expire(bid, ["items", "adjustments"])
        log_action(bid, "SUBMIT", before=before, after=serialize_model(bid), session=session)

    logger.info("Bid %s submitted for RFP %s (%d item(s))", bid_id, bid.rfp_id, len(submission.items))
    return bid


def withdraw_bid(bid_id: int) -> Bid:
    with unit_of_work(name="withdraw_bid") as session:
        repo = BiddingRepository(session)
        bid = repo.get_bid(bid_id, lock=True)
        if bid is None:
            raise NotFound("Bid", bid_id, "Bid not found")
        if bid.status not in (BidStatus.DRAFT, BidStatus.SUBMITTED):
            raise PreconditionFailed(
                PreconditionFailed.BID_NOT_WITHDRAWABLE,
                "Only draft or submitted bids can be withdrawn",
                details={"actual": bid.status},
            )

        before = serialize_model(bid)
        bid.status = BidStatus.WITHDRAWN
        repo.flush()
        log_action(bid, "WITHDRAW", before=before, after=serialize_model(bid), session=session)

    logger.info("Bid %s withdrawn", bid_id)
    return bid


def bid_to_dict(bid: Bid) -> Dict[str, Any]:
    return {
        "id": bid.id,
        "rfp_id": bid.rfp_id,
        "vendor_id": bid.vendor_id,
        "status": bid.status,
        "total_amount": money_str(bid.total_amount),
        "submitted_at": bid.submitted_at.isoformat() if bid.submitted_at else None,
        "items": [
            {
                "rfp_item_id": item.rfp_item_id,
                "unit_price": str(item.unit_price),
                "uom": item.uom,
                "total_price": money_str(item.total_price),
            }
            for item in bid.items
        ],
        "adjustments": [
            {
                "type": adj.type,
                "label": adj.label,
                "amount": money_str(adj.amount),
                "is_accepted": adj.is_accepted,
            }
            for adj in bid.adjustments
        ],
    }


def rfp_item_to_dict(item: RfpItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "rfp_id": item.rfp_id,
        "spec_code": item.spec_code,
        "description": item.description,
        "qty": str(item.qty),
        "uom": item.uom,
    }


# ---------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------
def budget_summary(project_id: int) -> Dict[str, Any]:
    """Estimated / committed / available per budget item and for the project."""
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFound("Project", project_id, "Project not found")

    repo = BiddingRepository(db.session)
    items = db.session.execute(
        select(BudgetItem).where(BudgetItem.project_id == project_id).order_by(BudgetItem.code.asc())
    ).scalars()

    rows = []
    total_estimated = Decimal("0")
    total_committed = Decimal("0")
    for item in items:
        estimated = Decimal(str(item.estimated_total or 0))
        committed = repo.committed_amount(item.id)
        total_estimated += estimated
        total_committed += committed
        rows.append(
            {
                "id": item.id,
                "code": item.code,
                "name": item.name,
                "status": item.status,
                "estimated": money_str(estimated),
                "committed": money_str(committed),
                "available": money_str(estimated - committed),
            }
        )

    return {
        "project": {"id": project.id, "code": project.code, "name": project.name},
        "items": rows,
        "totals": {
            "estimated": money_str(total_estimated),
            "committed": money_str(total_committed),
            "available": money_str(total_estimated - total_committed),
        },
    }
