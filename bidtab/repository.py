"""
bidtab/repository.py

Transaction-scoped data access for the bidding services.

A BiddingRepository wraps ONE session handed out by unit_of_work(); services receive
the repository, never the global session, so a whole award (award row, bid status
flips, commitment, budget ledger) runs through a single transactional handle.

Row locks (`lock=True`) use SELECT ... FOR UPDATE. SQLite ignores the clause and
serializes writers on its own.
"""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from .models import (
    AdjustmentType,
    Award,
    Bid,
    BidAdjustment,
    BidStatus,
    BudgetItem,
    Commitment,
    CommitmentAllocation,
    CommitmentStatus,
    Rfp,
    RfpItem,
)


class BiddingRepository:
    def __init__(self, session: Session):
        self.session = session

    # -----------------------------------------------------------------
    # Generic
    # -----------------------------------------------------------------
    def add(self, instance) -> None:
        self.session.add(instance)

    def flush(self) -> None:
        self.session.flush()

    # -----------------------------------------------------------------
    # RFPs
    # -----------------------------------------------------------------
    def get_rfp(self, rfp_id: int, *, lock: bool = False) -> Optional[Rfp]:
        stmt = select(Rfp).where(Rfp.id == rfp_id)
        if lock:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def rfp_items(self, rfp_id: int) -> List[RfpItem]:
        stmt = (
            select(RfpItem)
            .where(RfpItem.rfp_id == rfp_id)
            .order_by(RfpItem.spec_code.asc(), RfpItem.id.asc())
        )
        return list(self.session.execute(stmt).scalars())

    # -----------------------------------------------------------------
    # Bids
    # -----------------------------------------------------------------
    def get_bid(self, bid_id: int, *, lock: bool = False) -> Optional[Bid]:
        stmt = select(Bid).where(Bid.id == bid_id)
        if lock:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def submitted_bids(self, rfp_id: int) -> List[Bid]:
        """SUBMITTED bids in tie-break order: earliest submission first, then bid id."""
        stmt = (
            select(Bid)
            .where(Bid.rfp_id == rfp_id, Bid.status == BidStatus.SUBMITTED)
            .options(
                selectinload(Bid.vendor),
                selectinload(Bid.items),
                selectinload(Bid.adjustments),
            )
            .order_by(Bid.submitted_at.asc(), Bid.id.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def count_submitted_bids(self, rfp_id: int) -> int:
        stmt = select(func.count(Bid.id)).where(Bid.rfp_id == rfp_id, Bid.status == BidStatus.SUBMITTED)
        return int(self.session.execute(stmt).scalar_one())

    def losing_bids(self, rfp_id: int, winning_bid_id: int) -> List[Bid]:
        stmt = (
            select(Bid)
            .where(
                Bid.rfp_id == rfp_id,
                Bid.id != winning_bid_id,
                Bid.status == BidStatus.SUBMITTED,
            )
            .options(selectinload(Bid.vendor))
            .order_by(Bid.id.asc())
        )
        return list(self.session.execute(stmt).scalars())

    # -----------------------------------------------------------------
    # Adjustments
    # -----------------------------------------------------------------
    def delete_leveling_adjustments(self, bid_id: int) -> int:
        rows = self.session.execute(
            select(BidAdjustment).where(
                BidAdjustment.bid_id == bid_id,
                BidAdjustment.type.in_(AdjustmentType.LEVELING),
            )
        ).scalars().all()
        for row in rows:
            self.session.delete(row)
        return len(rows)

    def adjustments_for(self, bid_id: int) -> List[BidAdjustment]:
        stmt = (
            select(BidAdjustment)
            .where(BidAdjustment.bid_id == bid_id)
            .order_by(BidAdjustment.sequence_order.asc(), BidAdjustment.id.asc())
        )
        return list(self.session.execute(stmt).scalars())

    # -----------------------------------------------------------------
    # Awards, commitments, budget
    # -----------------------------------------------------------------
    def award_for_rfp(self, rfp_id: int) -> Optional[Award]:
        return self.session.execute(select(Award).where(Award.rfp_id == rfp_id)).scalar_one_or_none()

    def get_budget_item(self, budget_item_id: int, *, lock: bool = False) -> Optional[BudgetItem]:
        stmt = select(BudgetItem).where(BudgetItem.id == budget_item_id)
        if lock:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def committed_amount(self, budget_item_id: int) -> Decimal:
        """Sum of allocations from DRAFT/ACTIVE commitments; cancelled/closed ones do not count."""
        stmt = (
            select(func.coalesce(func.sum(CommitmentAllocation.amount), 0))
            .join(Commitment, Commitment.id == CommitmentAllocation.commitment_id)
            .where(
                CommitmentAllocation.budget_item_id == budget_item_id,
                Commitment.status.in_(CommitmentStatus.OPEN),
            )
        )
        value = self.session.execute(stmt).scalar_one()
        # SQLite aggregates Numeric as float
        return Decimal(str(value or 0)).quantize(Decimal("0.01"))

    def contract_number_exists(self, contract_number: str) -> bool:
        stmt = select(Commitment.id).where(Commitment.contract_number == contract_number)
        return self.session.execute(stmt).first() is not None
