"""
bidtab/awards.py

Award transaction: turn one SUBMITTED bid into an Award + a DRAFT Commitment
against the project budget.

Preconditions (checked before the first write, each a distinct PreconditionFailed rule):
  1. BID_NOT_SUBMITTED              bid status must be SUBMITTED
  2. RFP_ALREADY_AWARDED            one award per RFP
  3. AWARD_AMOUNT_OUT_OF_TOLERANCE  award within tolerance of the adjusted bid amount
  4. ALLOCATION_MISMATCH            Σ allocations == award amount, exactly
  5. INSUFFICIENT_BUDGET            estimated - committed (DRAFT/ACTIVE) >= allocation
Rule 2 is evaluated before rule 1 so a retried award reports the existing award.

Writes (one unit of work, all-or-nothing):
  award row, winner AWARDED, other SUBMITTED bids UNSUCCESSFUL, contract number,
  commitment + allocations, budget committed totals, RFP AWARDED when no SUBMITTED
  bids remain, budget ledger debits, audit entries.

Concurrency:
- The RFP row and every allocated budget-item row are locked (FOR UPDATE, in id
  order) before the checks, so a concurrent award re-reads committed state.
- The unique constraints on awards.rfp_id / awards.bid_id are the final guard; a
  violation is reported as RFP_ALREADY_AWARDED.

Notifications go out after commit and can never undo the award.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .audit import log_action, serialize_model
from .errors import NotFound, PreconditionFailed, TransientError, ValidationError
from .extensions import db
from .models import (
    Award,
    AwardStatus,
    Bid,
    BidStatus,
    BudgetItem,
    BudgetItemStatus,
    BudgetTransaction,
    Commitment,
    CommitmentAllocation,
    CommitmentStatus,
    CommitmentType,
    RfpStatus,
    utcnow,
)
from .notifications import get_notification_service
from .repository import BiddingRepository
from .tabulation import RfpLine, tabulate_bid
from .uow import unit_of_work
from .utils import money_str, parse_datetime, parse_decimal, parse_optional_int

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = Decimal("0.01")


# ---------------------------------------------------------------------
# Request values
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BudgetAllocation:
    budget_item_id: int
    amount: Decimal
    percentage: Optional[Decimal] = None


@dataclass(frozen=True)
class AwardRequest:
    bid_id: int
    award_amount: Decimal
    justification: str
    commitment_type: str
    contract_terms: Dict[str, Any]
    budget_allocations: List[BudgetAllocation]
    approvals: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class AwardResult:
    award: Award
    commitment: Commitment
    unsuccessful_bid_ids: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class _Recipient:
    email: Optional[str]
    name: str


@dataclass(frozen=True)
class _NotificationPlan:
    rfp_title: str
    amount: Decimal
    winner: _Recipient
    losers: List[_Recipient]


def parse_award_request(payload: Any) -> AwardRequest:
    """Validate the POST /awards payload (shape only; business rules come later)."""
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be a JSON object")

    bid_id = parse_optional_int(payload.get("bid_id"))
    if bid_id is None:
        raise ValidationError("'bid_id' is required")

    award_amount = parse_decimal(payload.get("award_amount"))
    if award_amount is None or award_amount <= 0:
        raise ValidationError("'award_amount' must be a positive number")

    justification = str(payload.get("justification") or "").strip()
    if len(justification) < 10:
        raise ValidationError("'justification' must be at least 10 characters")

    commitment_type = str(payload.get("commitment_type") or "").strip().upper()
    if commitment_type not in CommitmentType.ALL:
        raise ValidationError(f"'commitment_type' must be one of {', '.join(CommitmentType.ALL)}")

    terms = payload.get("contract_terms")
    if not isinstance(terms, Mapping):
        raise ValidationError("'contract_terms' is required")
    if parse_datetime(terms.get("start_date")) is None:
        raise ValidationError("'contract_terms.start_date' must be an ISO-8601 timestamp")
    if terms.get("end_date") is not None and parse_datetime(terms.get("end_date")) is None:
        raise ValidationError("'contract_terms.end_date' must be an ISO-8601 timestamp")
    if not str(terms.get("payment_terms") or "").strip():
        raise ValidationError("'contract_terms.payment_terms' is required")
    retention = terms.get("retention_percentage")
    if retention is not None:
        retention_value = parse_decimal(retention)
        if retention_value is None or not (0 <= retention_value <= 100):
            raise ValidationError("'contract_terms.retention_percentage' must be between 0 and 100")

    raw_allocations = payload.get("budget_allocations")
    if not isinstance(raw_allocations, list) or not raw_allocations:
        raise ValidationError("'budget_allocations' must be a non-empty list")

    allocations: List[BudgetAllocation] = []
    seen = set()
    for index, entry in enumerate(raw_allocations):
        if not isinstance(entry, Mapping):
            raise ValidationError(f"budget_allocations[{index}] must be an object")
        budget_item_id = parse_optional_int(entry.get("budget_item_id"))
        amount = parse_decimal(entry.get("amount"))
        percentage = parse_decimal(entry.get("percentage"))
        if budget_item_id is None:
            raise ValidationError(f"budget_allocations[{index}].budget_item_id is required")
        if budget_item_id in seen:
            raise ValidationError(f"budget item {budget_item_id} is allocated more than once")
        if amount is None or amount <= 0:
            raise ValidationError(f"budget_allocations[{index}].amount must be positive")
        if percentage is not None and not (0 <= percentage <= 100):
            raise ValidationError(f"budget_allocations[{index}].percentage must be between 0 and 100")
        seen.add(budget_item_id)
        allocations.append(BudgetAllocation(budget_item_id=budget_item_id, amount=amount, percentage=percentage))

    approvals = payload.get("approvals") or []
    if not isinstance(approvals, list):
        raise ValidationError("'approvals' must be a list")

    return AwardRequest(
        bid_id=bid_id,
        award_amount=award_amount,
        justification=justification,
        commitment_type=commitment_type,
        contract_terms=dict(terms),
        budget_allocations=allocations,
        approvals=[dict(a) for a in approvals if isinstance(a, Mapping)],
    )


# ---------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------
def _check_tolerance(award_amount: Decimal, evaluated: Decimal, tolerance: Decimal) -> None:
    allowed = abs(evaluated) * tolerance
    difference = abs(award_amount - evaluated)
    if difference > allowed:
        raise PreconditionFailed(
            PreconditionFailed.AWARD_AMOUNT_OUT_OF_TOLERANCE,
            f"Award amount must match the evaluated bid amount within {tolerance * 100}%. "
            f"Bid: {money_str(evaluated)}, Award: {money_str(award_amount)}",
            details={
                "expected": money_str(evaluated),
                "actual": money_str(award_amount),
                "allowed_difference": money_str(allowed),
            },
        )


def _check_allocation_total(award_amount: Decimal, allocations: Sequence[BudgetAllocation]) -> None:
    allocated = sum((a.amount for a in allocations), Decimal("0"))
    if allocated != award_amount:
        raise PreconditionFailed(
            PreconditionFailed.ALLOCATION_MISMATCH,
            f"Budget allocations ({money_str(allocated)}) must equal award amount ({money_str(award_amount)})",
            details={"expected": money_str(award_amount), "actual": money_str(allocated)},
        )


def _lock_budget_items(
    repo: BiddingRepository,
    allocations: Sequence[BudgetAllocation],
    project_id: int,
) -> Dict[int, BudgetItem]:
    items: Dict[int, BudgetItem] = {}
    # id order keeps lock acquisition consistent across concurrent awards
    for budget_item_id in sorted(a.budget_item_id for a in allocations):
        item = repo.get_budget_item(budget_item_id, lock=True)
        if item is None:
            raise NotFound("BudgetItem", budget_item_id, f"Budget item {budget_item_id} not found")
        if item.project_id != project_id:
            raise NotFound(
                "BudgetItem",
                budget_item_id,
                f"Budget item {budget_item_id} not found in the RFP's project",
            )
        items[budget_item_id] = item
    return items


def _check_budget(
    repo: BiddingRepository,
    allocations: Sequence[BudgetAllocation],
    budget_items: Mapping[int, BudgetItem],
) -> None:
    for allocation in allocations:
        item = budget_items[allocation.budget_item_id]
        committed = repo.committed_amount(item.id)
        available = Decimal(str(item.estimated_total)) - committed
        if available < allocation.amount:
            raise PreconditionFailed(
                PreconditionFailed.INSUFFICIENT_BUDGET,
                f"Insufficient budget in item {item.name}. "
                f"Available: {money_str(available)}, Requested: {money_str(allocation.amount)}",
                details={
                    "budget_item_id": item.id,
                    "estimated": money_str(item.estimated_total),
                    "committed": money_str(committed),
                    "available": money_str(available),
                    "requested": money_str(allocation.amount),
                },
            )


def evaluated_bid_amount(repo: BiddingRepository, bid: Bid) -> Decimal:
    """Adjusted total of the bid exactly as the tabulation computes it."""
    rfp_lines = [RfpLine.from_model(item) for item in repo.rfp_items(bid.rfp_id)]
    return tabulate_bid(rfp_lines, bid).adjusted_total


# ---------------------------------------------------------------------
# Contract numbers
# ---------------------------------------------------------------------
def generate_contract_number(
    repo: BiddingRepository,
    commitment_type: str,
    project_code: Optional[str],
    now: datetime,
) -> str:
    """PO-PROJ-202610-3FA9C1: random suffix, unique within project + month."""
    prefix = CommitmentType.PREFIXES.get(commitment_type, "CO")
    code = (project_code or "PROJ").upper()
    for _ in range(5):
        candidate = f"{prefix}-{code}-{now:%Y%m}-{secrets.token_hex(3).upper()}"
        if not repo.contract_number_exists(candidate):
            return candidate
    raise TransientError("Could not allocate a unique contract number; retry the award")


# ---------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------
def _is_award_conflict(exc: IntegrityError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return any(
        marker in message
        for marker in ("awards.rfp_id", "ix_awards_rfp_id", "awards.bid_id", "ix_awards_bid_id")
    )


def award_bid_in(
    repo: BiddingRepository,
    request: AwardRequest,
    *,
    awarded_by_id: Optional[int] = None,
    tolerance: Decimal = DEFAULT_TOLERANCE,
    now: Optional[datetime] = None,
) -> tuple[AwardResult, _NotificationPlan]:
    """Validate and write the award inside an existing unit of work."""
    moment = now or utcnow()

    bid = repo.get_bid(request.bid_id)
    if bid is None:
        raise NotFound("Bid", request.bid_id, "Bid not found")

    rfp = repo.get_rfp(bid.rfp_id, lock=True)

    existing = repo.award_for_rfp(rfp.id)
    if existing is not None:
        raise PreconditionFailed(
            PreconditionFailed.RFP_ALREADY_AWARDED,
            "RFP already has an awarded bid",
            details={"rfp_id": rfp.id, "award_id": existing.id, "winning_bid_id": existing.bid_id},
        )

    # Re-read under the RFP lock
    repo.session.refresh(bid)
    if bid.status != BidStatus.SUBMITTED:
        raise PreconditionFailed(
            PreconditionFailed.BID_NOT_SUBMITTED,
            "Only submitted bids can be awarded",
            details={"expected": BidStatus.SUBMITTED, "actual": bid.status},
        )

    evaluated = evaluated_bid_amount(repo, bid)
    _check_tolerance(request.award_amount, evaluated, tolerance)
    _check_allocation_total(request.award_amount, request.budget_allocations)

    budget_items = _lock_budget_items(repo, request.budget_allocations, rfp.project_id)
    _check_budget(repo, request.budget_allocations, budget_items)

    # ---- writes start here ----
    award = Award(
        rfp_id=rfp.id,
        bid_id=bid.id,
        vendor_id=bid.vendor_id,
        award_amount=request.award_amount,
        justification=request.justification,
        status=AwardStatus.ACTIVE,
        award_metadata={
            "approvals": request.approvals,
            "original_bid_amount": money_str(bid.total_amount),
            "adjusted_bid_amount": money_str(evaluated),
        },
        awarded_by_id=awarded_by_id,
        award_date=moment,
    )
    repo.add(award)
    repo.flush()

    bid.status = BidStatus.AWARDED

    losers = repo.losing_bids(rfp.id, bid.id)
    for losing_bid in losers:
        losing_bid.status = BidStatus.UNSUCCESSFUL

    terms = request.contract_terms
    commitment = Commitment(
        project_id=rfp.project_id,
        rfp_id=rfp.id,
        vendor_id=bid.vendor_id,
        award_id=award.id,
        type=request.commitment_type,
        contract_number=generate_contract_number(repo, request.commitment_type, rfp.project.code, moment),
        status=CommitmentStatus.DRAFT,
        original_amount=request.award_amount,
        current_amount=request.award_amount,
        start_date=parse_datetime(terms.get("start_date")),
        end_date=parse_datetime(terms.get("end_date")),
        payment_terms=str(terms.get("payment_terms") or "").strip() or None,
        retention_percentage=parse_decimal(terms.get("retention_percentage")) or Decimal("0"),
        contract_terms=terms,
        created_by_id=awarded_by_id,
    )
    for allocation in request.budget_allocations:
        commitment.allocations.append(
            CommitmentAllocation(
                budget_item_id=allocation.budget_item_id,
                amount=allocation.amount,
                percentage=allocation.percentage,
            )
        )
    repo.add(commitment)

    for allocation in request.budget_allocations:
        item = budget_items[allocation.budget_item_id]
        item.committed_total = Decimal(str(item.committed_total or 0)) + allocation.amount
        if item.committed_total >= Decimal(str(item.estimated_total)):
            item.status = BudgetItemStatus.COMMITTED

    repo.flush()

    if repo.count_submitted_bids(rfp.id) == 0:
        rfp.status = RfpStatus.AWARDED

    for allocation in request.budget_allocations:
        repo.add(
            BudgetTransaction(
                budget_item_id=allocation.budget_item_id,
                type="COMMITMENT",
                amount=-allocation.amount,
                description=f"Commitment {commitment.contract_number} for {rfp.title}",
                reference_type="COMMITMENT",
                reference_id=commitment.id,
                created_by_id=awarded_by_id,
            )
        )

    repo.flush()
    log_action(award, "AWARD", after=serialize_model(award), session=repo.session)
    log_action(commitment, "CREATE", after=serialize_model(commitment), session=repo.session)

    plan = _NotificationPlan(
        rfp_title=rfp.title,
        amount=request.award_amount,
        winner=_Recipient(email=bid.vendor.email, name=bid.vendor.name),
        losers=[_Recipient(email=b.vendor.email, name=b.vendor.name) for b in losers],
    )
    result = AwardResult(award=award, commitment=commitment, unsuccessful_bid_ids=[b.id for b in losers])
    return result, plan


def award_bid(
    request: AwardRequest,
    *,
    awarded_by_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> AwardResult:
    """Run the award transaction, then notify vendors (best effort)."""
    tolerance = Decimal(str(current_app.config.get("AWARD_AMOUNT_TOLERANCE", DEFAULT_TOLERANCE)))

    try:
        with unit_of_work(name="award_bid") as session:
            result, plan = award_bid_in(
                BiddingRepository(session),
                request,
                awarded_by_id=awarded_by_id,
                tolerance=tolerance,
                now=now,
            )
    except PreconditionFailed as exc:
        logger.warning("Award of bid %s rejected (%s): %s", request.bid_id, exc.rule, exc.message)
        raise
    except IntegrityError as exc:
        if _is_award_conflict(exc):
            logger.warning("Concurrent award detected for bid %s", request.bid_id)
            raise PreconditionFailed(
                PreconditionFailed.RFP_ALREADY_AWARDED,
                "RFP already has an awarded bid",
                details={"bid_id": request.bid_id},
            ) from exc
        raise TransientError("Award conflicted with a concurrent write; retry the award") from exc

    logger.info(
        "Awarded bid %s (award %s, commitment %s, amount %s)",
        request.bid_id,
        result.award.id,
        result.commitment.contract_number,
        money_str(request.award_amount),
    )
    notify_award_outcome(plan)
    return result


def notify_award_outcome(plan: _NotificationPlan) -> None:
    """Notify winner and unsuccessful vendors; failures are logged, never raised."""
    try:
        service = get_notification_service()
    except KeyError:
        logger.exception("No notification service configured; skipping award notifications")
        return

    recipients = [("award", plan.winner)] + [("unsuccessful", loser) for loser in plan.losers]
    for kind, recipient in recipients:
        try:
            if kind == "award":
                service.send_award_notification(recipient.email, recipient.name, plan.rfp_title, plan.amount)
            else:
                service.send_unsuccessful_bid_notification(recipient.email, recipient.name, plan.rfp_title)
        except Exception:
            logger.exception("Failed to send %s notification to %s", kind, recipient.name)


# ---------------------------------------------------------------------
# Queries & payloads
# ---------------------------------------------------------------------
def list_awards(
    *,
    rfp_id: Optional[int] = None,
    vendor_id: Optional[int] = None,
    status: Optional[str] = None,
    project_id: Optional[int] = None,
) -> List[Award]:
    stmt = select(Award)
    if rfp_id:
        stmt = stmt.where(Award.rfp_id == rfp_id)
    if vendor_id:
        stmt = stmt.where(Award.vendor_id == vendor_id)
    if status:
        stmt = stmt.where(Award.status == status)
    if project_id:
        stmt = stmt.join(Commitment, Commitment.award_id == Award.id).where(Commitment.project_id == project_id)
    stmt = stmt.order_by(Award.award_date.desc(), Award.id.desc())
    return list(db.session.execute(stmt).scalars())


def award_to_dict(award: Award) -> dict:
    return {
        "id": award.id,
        "rfp_id": award.rfp_id,
        "bid_id": award.bid_id,
        "vendor_id": award.vendor_id,
        "vendor_name": award.vendor.name if award.vendor else None,
        "award_amount": money_str(award.award_amount),
        "justification": award.justification,
        "status": award.status,
        "award_date": award.award_date.isoformat() if award.award_date else None,
        "metadata": award.award_metadata or {},
    }


def commitment_to_dict(commitment: Commitment) -> dict:
    return {
        "id": commitment.id,
        "award_id": commitment.award_id,
        "project_id": commitment.project_id,
        "type": commitment.type,
        "contract_number": commitment.contract_number,
        "status": commitment.status,
        "original_amount": money_str(commitment.original_amount),
        "current_amount": money_str(commitment.current_amount),
        "start_date": commitment.start_date.isoformat() if commitment.start_date else None,
        "end_date": commitment.end_date.isoformat() if commitment.end_date else None,
        "payment_terms": commitment.payment_terms,
        "retention_percentage": money_str(commitment.retention_percentage),
        "budget_allocations": [
            {
                "budget_item_id": allocation.budget_item_id,
                "amount": money_str(allocation.amount),
                "percentage": money_str(allocation.percentage),
            }
            for allocation in commitment.allocations
        ],
    }
