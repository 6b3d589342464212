"""
bidtab/tabulation.py

Bid tabulation: normalize every (vendor, RFP item) pair, build the sparse comparison
matrix, total and adjust each bid, rank vendors and report scope gaps.

Flow:
    build_comparison(rfp_id)
      -> tabulate_bid(rfp_lines, bid)          per SUBMITTED bid
           -> normalize_line(rfp_line, item)    per RFP item (uom.convert when units differ)
      -> rank(comparison)
    identify_scope_gaps(comparison), lowest_responsible(comparison, excluded)

Rules:
- Only SUBMITTED bids are tabulated (DRAFT / WITHDRAWN never appear).
- A missing bid item is a scope gap: zero contribution, flagged, never a $0 bid.
- Unconvertible units keep the vendor's total but are flagged for review.
- All math is Decimal. The comparison is built from detached value objects so it
  outlives the read-only transaction that loaded it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import NotFound, PreconditionFailed
from .models import AdjustmentType, Bid, BidItem, RfpItem, utcnow
from .repository import BiddingRepository
from .uom import convert, normalize_unit
from .uow import unit_of_work
from .utils import money_str

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
MISSING_ITEM_NOTE = "Item not included in bid"


# ---------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RfpLine:
    id: int
    spec_code: str
    description: str
    qty: Decimal
    uom: str

    @classmethod
    def from_model(cls, item: RfpItem) -> "RfpLine":
        return cls(
            id=item.id,
            spec_code=item.spec_code,
            description=item.description,
            qty=Decimal(str(item.qty)),
            uom=normalize_unit(item.uom) or "",
        )


@dataclass(frozen=True)
class NormalizedLine:
    rfp_item_id: int
    vendor_id: int
    original_qty: Decimal
    original_unit: str
    original_unit_price: Decimal
    normalized_qty: Decimal
    normalized_unit: str
    normalized_unit_price: Decimal
    total_price: Decimal
    has_discrepancy: bool
    missing: bool = False
    notes: Optional[str] = None


@dataclass(frozen=True)
class AdjustmentView:
    type: str
    label: str
    amount: Decimal
    is_accepted: bool
    sequence_order: int
    category: Optional[str] = None
    description: Optional[str] = None

    @property
    def contribution(self) -> Decimal:
        if not self.is_accepted:
            return ZERO
        return self.amount * AdjustmentType.SIGNS.get(self.type, 0)


@dataclass(frozen=True)
class VendorEntry:
    id: int
    name: str
    bid_id: int
    status: str
    submitted_at: Optional[datetime]


@dataclass(frozen=True)
class Ranking:
    vendor_id: int
    rank: int
    total: Decimal


@dataclass(frozen=True)
class LowestBidder:
    vendor_id: int
    total: Decimal


@dataclass
class BidTabulation:
    """One bid's normalized lines and totals."""

    lines: Dict[int, NormalizedLine]
    adjustments: List[AdjustmentView]
    subtotal: Decimal
    adjusted_total: Decimal


@dataclass
class Comparison:
    """Structured output of :func:`build_comparison`."""

    rfp_id: int
    rfp_title: str
    rfp_status: str
    rfp_items: List[RfpLine]
    vendors: List[VendorEntry]
    # vendor_id -> rfp_item_id -> NormalizedLine (sparse; absent key = no cell)
    matrix: Dict[int, Dict[int, NormalizedLine]] = field(default_factory=dict)
    adjustments: Dict[int, List[AdjustmentView]] = field(default_factory=dict)
    totals: Dict[int, Decimal] = field(default_factory=dict)
    adjusted_totals: Dict[int, Decimal] = field(default_factory=dict)
    rankings: List[Ranking] = field(default_factory=list)

    def vendor(self, vendor_id: int) -> Optional[VendorEntry]:
        for entry in self.vendors:
            if entry.id == vendor_id:
                return entry
        return None

    def rank_of(self, vendor_id: int) -> Optional[int]:
        for ranking in self.rankings:
            if ranking.vendor_id == vendor_id:
                return ranking.rank
        return None


# ---------------------------------------------------------------------
# Bid normalizer
# ---------------------------------------------------------------------
def normalize_line(rfp_line: RfpLine, bid_item: Optional[BidItem], vendor_id: int) -> NormalizedLine:
    """Make one vendor's price for one RFP item comparable with the others."""
    if bid_item is None:
        return NormalizedLine(
            rfp_item_id=rfp_line.id,
            vendor_id=vendor_id,
            original_qty=ZERO,
            original_unit=rfp_line.uom,
            original_unit_price=ZERO,
            normalized_qty=ZERO,
            normalized_unit=rfp_line.uom,
            normalized_unit_price=ZERO,
            total_price=ZERO,
            has_discrepancy=True,
            missing=True,
            notes=MISSING_ITEM_NOTE,
        )

    unit_price = Decimal(str(bid_item.unit_price))
    vendor_total = Decimal(str(bid_item.total_price))
    bid_unit = normalize_unit(bid_item.uom) or rfp_line.uom

    if bid_unit == rfp_line.uom:
        return NormalizedLine(
            rfp_item_id=rfp_line.id,
            vendor_id=vendor_id,
            original_qty=rfp_line.qty,
            original_unit=rfp_line.uom,
            original_unit_price=unit_price,
            normalized_qty=rfp_line.qty,
            normalized_unit=rfp_line.uom,
            normalized_unit_price=unit_price,
            total_price=vendor_total,
            has_discrepancy=False,
        )

    factor = convert(bid_unit, rfp_line.uom)
    if factor is not None:
        normalized_price = unit_price * factor
        return NormalizedLine(
            rfp_item_id=rfp_line.id,
            vendor_id=vendor_id,
            original_qty=rfp_line.qty,
            original_unit=bid_unit,
            original_unit_price=unit_price,
            normalized_qty=rfp_line.qty,
            normalized_unit=rfp_line.uom,
            normalized_unit_price=normalized_price,
            # Recomputed against the RFP quantity, not the vendor's stated one
            total_price=normalized_price * rfp_line.qty,
            has_discrepancy=False,
            notes=f"Converted from {bid_unit} to {rfp_line.uom}",
        )

    logger.debug("No conversion from %s to %s for RFP item %s", bid_unit, rfp_line.uom, rfp_line.spec_code)
    return NormalizedLine(
        rfp_item_id=rfp_line.id,
        vendor_id=vendor_id,
        original_qty=rfp_line.qty,
        original_unit=bid_unit,
        original_unit_price=unit_price,
        normalized_qty=rfp_line.qty,
        normalized_unit=rfp_line.uom,
        normalized_unit_price=unit_price,
        total_price=vendor_total,
        has_discrepancy=True,
        notes=f"Unit mismatch: {bid_unit} vs {rfp_line.uom}",
    )


def adjusted_total(subtotal: Decimal, adjustments: Iterable[AdjustmentView]) -> Decimal:
    total = subtotal
    for adjustment in adjustments:
        total += adjustment.contribution
    return total


def tabulate_bid(rfp_lines: Sequence[RfpLine], bid: Bid) -> BidTabulation:
    """Normalize every RFP line for one bid and compute its subtotal / adjusted total."""
    items_by_rfp_item = {item.rfp_item_id: item for item in bid.items}

    lines: Dict[int, NormalizedLine] = {}
    subtotal = ZERO
    for rfp_line in rfp_lines:
        normalized = normalize_line(rfp_line, items_by_rfp_item.get(rfp_line.id), bid.vendor_id)
        lines[rfp_line.id] = normalized
        subtotal += normalized.total_price

    adjustments = [
        AdjustmentView(
            type=adj.type,
            label=adj.label,
            amount=Decimal(str(adj.amount)),
            is_accepted=bool(adj.is_accepted),
            sequence_order=adj.sequence_order or 0,
            category=adj.category,
            description=adj.description,
        )
        for adj in sorted(bid.adjustments, key=lambda a: (a.sequence_order or 0, a.id or 0))
    ]
    accepted = [adj for adj in adjustments if adj.is_accepted]

    return BidTabulation(
        lines=lines,
        adjustments=accepted,
        subtotal=subtotal,
        adjusted_total=adjusted_total(subtotal, accepted),
    )


# ---------------------------------------------------------------------
# Comparison matrix
# ---------------------------------------------------------------------
def build_comparison_from(repo: BiddingRepository, rfp_id: int, now: Optional[datetime] = None) -> Comparison:
    """Build the comparison inside an existing unit of work."""
    rfp = repo.get_rfp(rfp_id)
    if rfp is None:
        raise NotFound("Rfp", rfp_id, "RFP not found")

    moment = now or utcnow()
    if not rfp.is_open_for_tabulation(moment):
        raise PreconditionFailed(
            PreconditionFailed.TABULATION_NOT_OPEN,
            "Bids cannot be tabulated before the bid opening date",
            details={"bid_opening_date": rfp.bid_opening_date.isoformat()},
            status_code=403,
        )

    bids = repo.submitted_bids(rfp_id)
    if not bids:
        raise PreconditionFailed(
            PreconditionFailed.NO_SUBMITTED_BIDS,
            "No submitted bids to tabulate",
            details={"rfp_id": rfp_id},
        )

    rfp_lines = [RfpLine.from_model(item) for item in repo.rfp_items(rfp_id)]

    comparison = Comparison(
        rfp_id=rfp.id,
        rfp_title=rfp.title,
        rfp_status=rfp.status,
        rfp_items=rfp_lines,
        vendors=[
            VendorEntry(
                id=bid.vendor_id,
                name=bid.vendor.name,
                bid_id=bid.id,
                status=bid.status,
                submitted_at=bid.submitted_at,
            )
            for bid in bids
        ],
    )

    for bid in bids:
        result = tabulate_bid(rfp_lines, bid)
        comparison.matrix[bid.vendor_id] = result.lines
        comparison.adjustments[bid.vendor_id] = result.adjustments
        comparison.totals[bid.vendor_id] = result.subtotal
        comparison.adjusted_totals[bid.vendor_id] = result.adjusted_total

    comparison.rankings = rank(comparison)
    return comparison


def build_comparison(rfp_id: int, now: Optional[datetime] = None) -> Comparison:
    """Read-only tabulation of an RFP (re-reads the store on every call)."""
    with unit_of_work(read_only=True, name="build_comparison") as session:
        comparison = build_comparison_from(BiddingRepository(session), rfp_id, now=now)

    logger.info(
        "Tabulated RFP %s: %d vendor(s), %d item(s)",
        rfp_id,
        len(comparison.vendors),
        len(comparison.rfp_items),
    )
    return comparison


# ---------------------------------------------------------------------
# Ranking & lowest bidder
# ---------------------------------------------------------------------
def rank(comparison: Comparison) -> List[Ranking]:
    """
    Ascending by adjusted total, lowest cost = rank 1.

    Ties keep input order (stable sort); vendors are loaded earliest submission
    first, so the earliest submitted bid wins a tie.
    """
    ordered: List[Tuple[int, Decimal]] = sorted(
        ((vendor.id, comparison.adjusted_totals[vendor.id]) for vendor in comparison.vendors),
        key=lambda entry: entry[1],
    )
    return [Ranking(vendor_id=vendor_id, rank=index + 1, total=total) for index, (vendor_id, total) in enumerate(ordered)]


def lowest_responsible(comparison: Comparison, excluded_vendor_ids: Iterable[int] = ()) -> Optional[LowestBidder]:
    """Rank-1 vendor after dropping disqualified (non-responsible) vendors."""
    excluded = set(excluded_vendor_ids)
    for ranking in comparison.rankings:
        if ranking.vendor_id not in excluded:
            return LowestBidder(vendor_id=ranking.vendor_id, total=ranking.total)
    return None


# ---------------------------------------------------------------------
# Scope gaps
# ---------------------------------------------------------------------
def identify_scope_gaps(comparison: Comparison) -> Dict[int, List[str]]:
    """vendor_id -> ["SPEC-CODE: note", ...] for missing items and unit mismatches."""
    spec_codes = {line.id: line.spec_code for line in comparison.rfp_items}
    gaps: Dict[int, List[str]] = {}

    for vendor in comparison.vendors:
        vendor_gaps = [
            f"{spec_codes.get(item_id)}: {line.notes or 'Discrepancy'}"
            for item_id, line in comparison.matrix.get(vendor.id, {}).items()
            if line.has_discrepancy
        ]
        if vendor_gaps:
            gaps[vendor.id] = vendor_gaps

    return gaps


# ---------------------------------------------------------------------
# JSON payload
# ---------------------------------------------------------------------
def _decimal_str(value: Decimal) -> str:
    """Exact value without trailing zeros ("100.0000" -> "100")."""
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def comparison_to_dict(comparison: Comparison, excluded_vendor_ids: Iterable[int] = ()) -> dict:
    """Payload of GET comparison(rfpId). Decimals are rendered as strings."""
    names = {vendor.id: vendor.name for vendor in comparison.vendors}
    scope_gaps = identify_scope_gaps(comparison)
    lowest = lowest_responsible(comparison, excluded_vendor_ids)

    items = []
    for rfp_line in comparison.rfp_items:
        cells = {}
        for vendor in comparison.vendors:
            line = comparison.matrix.get(vendor.id, {}).get(rfp_line.id)
            cells[str(vendor.id)] = None if line is None else {
                "unit_price": _decimal_str(line.original_unit_price),
                "unit": line.original_unit,
                "normalized_unit_price": _decimal_str(line.normalized_unit_price),
                "total_price": money_str(line.total_price),
                "has_discrepancy": line.has_discrepancy,
                "missing": line.missing,
                "notes": line.notes,
            }
        items.append(
            {
                "id": rfp_line.id,
                "spec_code": rfp_line.spec_code,
                "description": rfp_line.description,
                "qty": _decimal_str(rfp_line.qty),
                "uom": rfp_line.uom,
                "bids": cells,
            }
        )

    return {
        "rfp": {
            "id": comparison.rfp_id,
            "title": comparison.rfp_title,
            "status": comparison.rfp_status,
            "bid_count": len(comparison.vendors),
        },
        "vendors": [
            {
                "id": vendor.id,
                "name": vendor.name,
                "bid_id": vendor.bid_id,
                "status": vendor.status,
                "submitted_at": vendor.submitted_at.isoformat() if vendor.submitted_at else None,
            }
            for vendor in comparison.vendors
        ],
        "items": items,
        "adjustments": {
            str(vendor_id): [
                {
                    "type": adj.type,
                    "category": adj.category,
                    "label": adj.label,
                    "amount": money_str(adj.amount),
                    "is_accepted": adj.is_accepted,
                    "sequence_order": adj.sequence_order,
                }
                for adj in adjustments
            ]
            for vendor_id, adjustments in comparison.adjustments.items()
        },
        "totals": {str(k): money_str(v) for k, v in comparison.totals.items()},
        "adjusted_totals": {str(k): money_str(v) for k, v in comparison.adjusted_totals.items()},
        "rankings": [
            {
                "vendor_id": ranking.vendor_id,
                "vendor_name": names.get(ranking.vendor_id),
                "rank": ranking.rank,
                "total": money_str(ranking.total),
                "has_scope_gaps": ranking.vendor_id in scope_gaps,
            }
            for ranking in comparison.rankings
        ],
        "scope_gaps": {str(k): v for k, v in scope_gaps.items()},
        "lowest_bidder": None if lowest is None else {
            "vendor_id": lowest.vendor_id,
            "vendor_name": names.get(lowest.vendor_id),
            "total": money_str(lowest.total),
        },
    }
