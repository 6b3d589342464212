"""
bidtab/leveling.py

Bid leveling: reviewer-supplied PLUG / NORMALIZATION adjustments.

apply_leveling(bid_id, adjustments) replaces the bid's leveling rows as one batch:
  1. delete every PLUG / NORMALIZATION adjustment of the bid
  2. insert the supplied ones (accepted, sequence_order = list index)
in a single unit of work, so the last call wins entirely and a failure leaves the
previous rows in place. ADD / DEDUCT / ALTERNATE / ALLOWANCE rows entered with the
bid are never touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Sequence

from .audit import log_action
from .errors import NotFound, PreconditionFailed, ValidationError
from .models import AdjustmentType, BidAdjustment
from .repository import BiddingRepository
from .uow import unit_of_work
from .utils import parse_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LevelingAdjustment:
    type: str
    label: str
    amount: Decimal
    category: Optional[str] = None
    description: Optional[str] = None


def _snapshot(adjustment: BidAdjustment) -> dict:
    return {
        "type": adjustment.type,
        "label": adjustment.label,
        "category": adjustment.category,
        "amount": str(adjustment.amount),
        "sequence_order": adjustment.sequence_order,
    }


def parse_adjustments(raw: Any) -> List[LevelingAdjustment]:
    """Validate a request payload list into LevelingAdjustment values (no writes)."""
    if not isinstance(raw, list):
        raise ValidationError("'adjustments' must be a list")

    parsed: List[LevelingAdjustment] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, Mapping):
            raise ValidationError(f"adjustments[{index}] must be an object")

        adj_type = str(entry.get("type") or "").strip().upper()
        if adj_type not in AdjustmentType.LEVELING:
            raise ValidationError(
                f"adjustments[{index}].type must be one of {', '.join(AdjustmentType.LEVELING)}",
                details={"index": index, "type": adj_type or None},
            )

        label = str(entry.get("label") or "").strip()
        if not label:
            raise ValidationError(f"adjustments[{index}].label is required", details={"index": index})

        amount = parse_decimal(entry.get("amount"))
        if amount is None:
            raise ValidationError(f"adjustments[{index}].amount is not a number", details={"index": index})
        if amount < 0:
            raise ValidationError(f"adjustments[{index}].amount must be >= 0", details={"index": index})

        parsed.append(
            LevelingAdjustment(
                type=adj_type,
                label=label,
                amount=amount,
                category=(str(entry.get("category") or "").strip() or None),
                description=(str(entry.get("description") or "").strip() or None),
            )
        )
    return parsed


def apply_leveling_in(
    repo: BiddingRepository,
    bid_id: int,
    adjustments: Sequence[LevelingAdjustment],
    *,
    rfp_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[BidAdjustment]:
    """Delete + insert inside an existing unit of work."""
    bid = repo.get_bid(bid_id, lock=True)
    if bid is None:
        raise NotFound("Bid", bid_id, "Bid not found")
    if rfp_id is not None and bid.rfp_id != rfp_id:
        raise PreconditionFailed(
            PreconditionFailed.BID_NOT_IN_RFP,
            "Bid not found or does not belong to this RFP",
            details={"bid_id": bid_id, "rfp_id": rfp_id},
            status_code=404,
        )
    rfp = repo.get_rfp(bid.rfp_id)
    if not rfp.is_open_for_tabulation(now):
        raise PreconditionFailed(
            PreconditionFailed.TABULATION_NOT_OPEN,
            "Bids cannot be leveled before the bid opening date",
            details={"bid_opening_date": rfp.bid_opening_date.isoformat()},
            status_code=403,
        )

    before = [
        _snapshot(adj) for adj in repo.adjustments_for(bid.id) if adj.type in AdjustmentType.LEVELING
    ]
    repo.delete_leveling_adjustments(bid.id)
    repo.flush()

    created: List[BidAdjustment] = []
    for index, adjustment in enumerate(adjustments):
        row = BidAdjustment(
            bid_id=bid.id,
            type=adjustment.type,
            category=adjustment.category,
            label=adjustment.label,
            description=adjustment.description,
            amount=adjustment.amount,
            is_accepted=True,
            sequence_order=index,
        )
        repo.add(row)
        created.append(row)

    repo.flush()
    # Drop the stale collection so later reads see the replaced rows
    repo.session.expire(bid, ["adjustments"])
    log_action(bid, "LEVEL", before={"leveling": before}, after={"leveling": [_snapshot(r) for r in created]},
               session=repo.session)
    return created


def apply_leveling(
    bid_id: int,
    adjustments: Sequence[LevelingAdjustment],
    *,
    rfp_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[BidAdjustment]:
    """Replace the bid's PLUG / NORMALIZATION adjustments atomically."""
    with unit_of_work(name="apply_leveling") as session:
        created = apply_leveling_in(BiddingRepository(session), bid_id, adjustments, rfp_id=rfp_id, now=now)

    logger.info("Applied %d leveling adjustment(s) to bid %s", len(created), bid_id)
    return created
