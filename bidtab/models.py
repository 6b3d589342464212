"""
Bid Tabulation & Award – Domain Models

Competitive-bidding domain for a construction project:
- Projects, vendors, users (role based)
- RFPs with line items (spec code, qty, unit of measure)
- Vendor bids with priced items and adjustments (leveling plugs included)
- Awards, commitments (PO / contract) and their budget allocations
- Budget items with an append-only budget transaction ledger
- Audit log

IMPORTANT:
- Money and quantities are Numeric columns, always handled as Decimal.
- One Award per RFP and one Commitment per Award are enforced by unique constraints,
  not only by application checks.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from .extensions import db


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def utcnow() -> datetime:
    """Naive UTC timestamp (portable across SQLite and PostgreSQL)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------
# Status / type vocabularies
# ---------------------------------------------------------------------
class Role:
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    VIEWER = "VIEWER"
    CONTRACTOR = "CONTRACTOR"

    ALL = (ADMIN, STAFF, VIEWER, CONTRACTOR)
    READ_ONLY = (VIEWER, CONTRACTOR)


class RfpStatus:
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    CLOSED = "CLOSED"
    AWARDED = "AWARDED"
    CANCELLED = "CANCELLED"


class BidStatus:
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    AWARDED = "AWARDED"
    UNSUCCESSFUL = "UNSUCCESSFUL"
    WITHDRAWN = "WITHDRAWN"


class AdjustmentType:
    ADD = "ADD"
    DEDUCT = "DEDUCT"
    ALTERNATE = "ALTERNATE"
    ALLOWANCE = "ALLOWANCE"
    PLUG = "PLUG"
    NORMALIZATION = "NORMALIZATION"

    ALL = (ADD, DEDUCT, ALTERNATE, ALLOWANCE, PLUG, NORMALIZATION)
    # Types a vendor may submit with a bid
    VENDOR = (ADD, DEDUCT, ALTERNATE, ALLOWANCE)
    # Types owned by the leveling engine (replaced as a batch)
    LEVELING = (PLUG, NORMALIZATION)

    # Sign of the contribution to the adjusted total (0 = informational only)
    SIGNS = {
        ADD: 1,
        ALLOWANCE: 1,
        PLUG: 1,
        NORMALIZATION: 1,
        DEDUCT: -1,
        ALTERNATE: 0,
    }


class AwardStatus:
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class CommitmentType:
    PURCHASE_ORDER = "PURCHASE_ORDER"
    CONTRACT = "CONTRACT"
    SUBCONTRACT = "SUBCONTRACT"

    ALL = (PURCHASE_ORDER, CONTRACT, SUBCONTRACT)
    PREFIXES = {PURCHASE_ORDER: "PO", CONTRACT: "CO", SUBCONTRACT: "SC"}


class CommitmentStatus:
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"

    # Statuses whose allocations still consume budget
    OPEN = (DRAFT, ACTIVE)


class BudgetItemStatus:
    OPEN = "OPEN"
    # committed_total has reached estimated_total
    COMMITTED = "COMMITTED"


# ---------------------------------------------------------------------
# Users, projects, vendors
# ---------------------------------------------------------------------
class User(UserMixin, db.Model):
    """System login user."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    display_name = db.Column(db.String(150), nullable=True)

    role = db.Column(db.String(20), nullable=False, default=Role.VIEWER, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    # Contractor users act on behalf of one vendor
    vendor_id = db.Column(
        db.Integer,
        db.ForeignKey("vendors.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    vendor = db.relationship("Vendor", foreign_keys=[vendor_id])

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def has_role(self, *roles: str) -> bool:
        return self.role in roles

    def __repr__(self):
        return f"<User {self.username} ({self.role})>"


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)

    code = db.Column(db.String(30), nullable=False, unique=True, index=True)
    name = db.Column(db.String(255), nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    rfps = db.relationship("Rfp", back_populates="project", cascade="all, delete-orphan")
    budget_items = db.relationship("BudgetItem", back_populates="project", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Project {self.code}>"


class Vendor(db.Model):
    __tablename__ = "vendors"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False, index=True)
    email = db.Column(db.String(255), nullable=True)
    contact_name = db.Column(db.String(150), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    def __repr__(self):
        return f"<Vendor {self.name}>"


# ---------------------------------------------------------------------
# RFP domain
# ---------------------------------------------------------------------
class Rfp(db.Model):
    """Request for proposal: a solicitation with line items vendors bid against."""

    __tablename__ = "rfps"

    id = db.Column(db.Integer, primary_key=True)

    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=RfpStatus.DRAFT, index=True)

    due_date = db.Column(db.DateTime, nullable=True)
    # Bid amounts stay sealed until this moment
    bid_opening_date = db.Column(db.DateTime, nullable=True)
    published_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    project = db.relationship("Project", back_populates="rfps")

    items = db.relationship(
        "RfpItem",
        back_populates="rfp",
        cascade="all, delete-orphan",
        order_by="RfpItem.spec_code",
    )

    bids = db.relationship("Bid", back_populates="rfp", cascade="all, delete-orphan")

    award = db.relationship("Award", back_populates="rfp", uselist=False)

    @property
    def items_locked(self) -> bool:
        """Line items are immutable once the RFP leaves DRAFT."""
        return self.status != RfpStatus.DRAFT

    def is_open_for_tabulation(self, now: datetime | None = None) -> bool:
        if self.bid_opening_date is None:
            return True
        return self.bid_opening_date <= (now or utcnow())

    def __repr__(self):
        return f"<Rfp {self.id} {self.title}>"


class RfpItem(db.Model):
    __tablename__ = "rfp_items"

    id = db.Column(db.Integer, primary_key=True)

    rfp_id = db.Column(
        db.Integer,
        db.ForeignKey("rfps.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    spec_code = db.Column(db.String(50), nullable=False)
    description = db.Column(db.Text, nullable=False)
    qty = db.Column(db.Numeric(14, 4), nullable=False)
    uom = db.Column(db.String(10), nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow)

    rfp = db.relationship("Rfp", back_populates="items")

    __table_args__ = (db.UniqueConstraint("rfp_id", "spec_code", name="uq_rfp_item_spec_code"),)

    def __repr__(self):
        return f"<RfpItem {self.spec_code} {self.qty} {self.uom}>"


# ---------------------------------------------------------------------
# Bids
# ---------------------------------------------------------------------
class Bid(db.Model):
    __tablename__ = "bids"

    id = db.Column(db.Integer, primary_key=True)

    rfp_id = db.Column(
        db.Integer,
        db.ForeignKey("rfps.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    vendor_id = db.Column(
        db.Integer,
        db.ForeignKey("vendors.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    status = db.Column(db.String(20), nullable=False, default=BidStatus.DRAFT, index=True)

    # Raw subtotal as stamped at submission (vendor totals, unnormalized)
    total_amount = db.Column(db.Numeric(14, 2), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    submitted_at = db.Column(db.DateTime, nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    rfp = db.relationship("Rfp", back_populates="bids")
    vendor = db.relationship("Vendor", backref=db.backref("bids", lazy=True))

    items = db.relationship("BidItem", back_populates="bid", cascade="all, delete-orphan")

    adjustments = db.relationship(
        "BidAdjustment",
        back_populates="bid",
        cascade="all, delete-orphan",
        order_by="BidAdjustment.sequence_order",
    )

    __table_args__ = (db.UniqueConstraint("rfp_id", "vendor_id", name="uq_bid_rfp_vendor"),)

    def __repr__(self):
        return f"<Bid {self.id} rfp={self.rfp_id} vendor={self.vendor_id} {self.status}>"


class BidItem(db.Model):
    __tablename__ = "bid_items"

    id = db.Column(db.Integer, primary_key=True)

    bid_id = db.Column(
        db.Integer,
        db.ForeignKey("bids.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    rfp_item_id = db.Column(
        db.Integer,
        db.ForeignKey("rfp_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    unit_price = db.Column(db.Numeric(14, 4), nullable=False)
    # Vendor-declared unit; None means "same as the RFP item"
    uom = db.Column(db.String(10), nullable=True)
    total_price = db.Column(db.Numeric(14, 2), nullable=False)

    notes = db.Column(db.Text, nullable=True)

    bid = db.relationship("Bid", back_populates="items")
    rfp_item = db.relationship("RfpItem")

    __table_args__ = (db.UniqueConstraint("bid_id", "rfp_item_id", name="uq_bid_item_rfp_item"),)


class BidAdjustment(db.Model):
    __tablename__ = "bid_adjustments"

    id = db.Column(db.Integer, primary_key=True)

    bid_id = db.Column(
        db.Integer,
        db.ForeignKey("bids.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    type = db.Column(db.String(20), nullable=False, index=True)
    category = db.Column(db.String(100), nullable=True)
    label = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Magnitude; the type decides the sign
    amount = db.Column(db.Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    is_accepted = db.Column(db.Boolean, nullable=False, default=True)
    sequence_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, default=utcnow)

    bid = db.relationship("Bid", back_populates="adjustments")


# ---------------------------------------------------------------------
# Awards & commitments
# ---------------------------------------------------------------------
class Award(db.Model):
    __tablename__ = "awards"

    id = db.Column(db.Integer, primary_key=True)

    # unique=True: the storage layer is the final guard against a double award
    rfp_id = db.Column(
        db.Integer,
        db.ForeignKey("rfps.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )

    bid_id = db.Column(
        db.Integer,
        db.ForeignKey("bids.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )

    vendor_id = db.Column(
        db.Integer,
        db.ForeignKey("vendors.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    award_amount = db.Column(db.Numeric(14, 2), nullable=False)
    justification = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=AwardStatus.ACTIVE, index=True)

    # approvals, original/adjusted bid amounts
    award_metadata = db.Column(db.JSON, nullable=True)

    awarded_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    award_date = db.Column(db.DateTime, default=utcnow, index=True)

    rfp = db.relationship("Rfp", back_populates="award")
    bid = db.relationship("Bid")
    vendor = db.relationship("Vendor")
    awarded_by = db.relationship("User")

    commitment = db.relationship("Commitment", back_populates="award", uselist=False)


class Commitment(db.Model):
    """Financial obligation (PO / contract) created against the budget on award."""

    __tablename__ = "commitments"

    id = db.Column(db.Integer, primary_key=True)

    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    rfp_id = db.Column(db.Integer, db.ForeignKey("rfps.id", ondelete="SET NULL"), nullable=True, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id", ondelete="SET NULL"), nullable=True, index=True)

    award_id = db.Column(
        db.Integer,
        db.ForeignKey("awards.id", ondelete="CASCADE"),
        nullable=True,
        unique=True,
        index=True,
    )

    type = db.Column(db.String(20), nullable=False)
    contract_number = db.Column(db.String(60), nullable=False, unique=True, index=True)
    status = db.Column(db.String(20), nullable=False, default=CommitmentStatus.DRAFT, index=True)

    original_amount = db.Column(db.Numeric(14, 2), nullable=False)
    current_amount = db.Column(db.Numeric(14, 2), nullable=False)

    start_date = db.Column(db.DateTime, nullable=True)
    end_date = db.Column(db.DateTime, nullable=True)
    payment_terms = db.Column(db.String(255), nullable=True)
    retention_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal("0.00"))
    contract_terms = db.Column(db.JSON, nullable=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    award = db.relationship("Award", back_populates="commitment")
    vendor = db.relationship("Vendor")

    allocations = db.relationship(
        "CommitmentAllocation",
        back_populates="commitment",
        cascade="all, delete-orphan",
    )


class CommitmentAllocation(db.Model):
    __tablename__ = "commitment_allocations"

    id = db.Column(db.Integer, primary_key=True)

    commitment_id = db.Column(
        db.Integer,
        db.ForeignKey("commitments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    budget_item_id = db.Column(
        db.Integer,
        db.ForeignKey("budget_items.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    amount = db.Column(db.Numeric(14, 2), nullable=False)
    percentage = db.Column(db.Numeric(6, 2), nullable=True)

    commitment = db.relationship("Commitment", back_populates="allocations")
    budget_item = db.relationship("BudgetItem")

    __table_args__ = (
        db.UniqueConstraint("commitment_id", "budget_item_id", name="uq_commitment_budget_item"),
    )


# ---------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------
class BudgetItem(db.Model):
    __tablename__ = "budget_items"

    id = db.Column(db.Integer, primary_key=True)

    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    code = db.Column(db.String(50), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    estimated_total = db.Column(db.Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    committed_total = db.Column(db.Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    status = db.Column(db.String(20), nullable=False, default=BudgetItemStatus.OPEN)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    project = db.relationship("Project", back_populates="budget_items")

    __table_args__ = (db.UniqueConstraint("project_id", "code", name="uq_budget_item_project_code"),)

    def __repr__(self):
        return f"<BudgetItem {self.code} est={self.estimated_total} committed={self.committed_total}>"


class BudgetTransaction(db.Model):
    """Append-only ledger; commitments are recorded as negative amounts."""

    __tablename__ = "budget_transactions"

    id = db.Column(db.Integer, primary_key=True)

    budget_item_id = db.Column(
        db.Integer,
        db.ForeignKey("budget_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    type = db.Column(db.String(20), nullable=False, index=True)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    description = db.Column(db.String(255), nullable=True)

    reference_type = db.Column(db.String(30), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True, index=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    budget_item = db.relationship("BudgetItem", backref=db.backref("transactions", lazy=True))


# ---------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------
class AuditLog(db.Model):
    """Append-only record of award / leveling / bid lifecycle actions."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    username_snapshot = db.Column(db.String(150), nullable=True)

    entity_type = db.Column(db.String(50), nullable=False, index=True)
    entity_id = db.Column(db.Integer, nullable=False, index=True)

    action = db.Column(db.String(20), nullable=False, index=True)

    before_data = db.Column(db.Text, nullable=True)
    after_data = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    user = db.relationship("User", backref=db.backref("audit_entries", lazy=True))
