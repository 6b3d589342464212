from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from bidtab import create_app
from bidtab.extensions import db
from bidtab.models import (
    Bid,
    BidAdjustment,
    BidItem,
    BidStatus,
    BudgetItem,
    Commitment,
    CommitmentAllocation,
    CommitmentStatus,
    CommitmentType,
    Project,
    Rfp,
    RfpItem,
    RfpStatus,
    Role,
    User,
    Vendor,
    utcnow,
)
from bidtab.notifications import NotificationService, set_notification_service
from config import TestConfig

PASSWORD = "s3cret-pass"


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    """Application context for service-level tests."""
    with app.app_context():
        yield app
        db.session.remove()


class Builder:
    """Small factory for domain rows; every call commits."""

    def __init__(self):
        self._clock = datetime(2026, 1, 5, 9, 0, 0)

    def _tick(self) -> datetime:
        self._clock += timedelta(minutes=1)
        return self._clock

    def project(self, code: str = "TWR", name: str = "Tower") -> Project:
        project = Project(code=code, name=name)
        db.session.add(project)
        db.session.commit()
        return project

    def vendor(self, name: str, email: str | None = None) -> Vendor:
        vendor = Vendor(name=name, email=email if email is not None else f"{name.lower().replace(' ', '.')}@example.com")
        db.session.add(vendor)
        db.session.commit()
        return vendor

    def rfp(
        self,
        project: Project,
        items,
        *,
        title: str = "Site Package",
        status: str = RfpStatus.PUBLISHED,
        bid_opening_date: datetime | None = None,
        due_date: datetime | None = None,
    ) -> Rfp:
        rfp = Rfp(
            project_id=project.id,
            title=title,
            status=status,
            bid_opening_date=bid_opening_date,
            due_date=due_date,
        )
        db.session.add(rfp)
        db.session.flush()
        for spec_code, description, qty, uom in items:
            db.session.add(
                RfpItem(rfp_id=rfp.id, spec_code=spec_code, description=description, qty=Decimal(str(qty)), uom=uom)
            )
        db.session.commit()
        return rfp

    def bid(
        self,
        rfp: Rfp,
        vendor: Vendor,
        prices,
        *,
        adjustments=(),
        status: str = BidStatus.SUBMITTED,
        submitted_at: datetime | None = None,
    ) -> Bid:
        """prices: {spec_code: (unit_price, uom, total_price)}; adjustments: [(type, label, amount)]."""
        items_by_code = {item.spec_code: item for item in rfp.items}
        bid = Bid(
            rfp_id=rfp.id,
            vendor_id=vendor.id,
            status=status,
            submitted_at=submitted_at or (self._tick() if status != BidStatus.DRAFT else None),
        )
        db.session.add(bid)
        db.session.flush()

        total = Decimal("0")
        for spec_code, (unit_price, uom, total_price) in prices.items():
            total += Decimal(str(total_price))
            db.session.add(
                BidItem(
                    bid_id=bid.id,
                    rfp_item_id=items_by_code[spec_code].id,
                    unit_price=Decimal(str(unit_price)),
                    uom=uom,
                    total_price=Decimal(str(total_price)),
                )
            )
        for index, (adj_type, label, amount) in enumerate(adjustments):
            db.session.add(
                BidAdjustment(
                    bid_id=bid.id,
                    type=adj_type,
                    label=label,
                    amount=Decimal(str(amount)),
                    is_accepted=True,
                    sequence_order=index,
                )
            )
        bid.total_amount = total
        db.session.commit()
        return bid

    def budget_item(self, project: Project, code: str, estimated, name: str | None = None) -> BudgetItem:
        item = BudgetItem(project_id=project.id, code=code, name=name or f"Budget {code}", estimated_total=Decimal(str(estimated)))
        db.session.add(item)
        db.session.commit()
        return item

    def commitment(self, project: Project, budget_item: BudgetItem, amount, *, status: str = CommitmentStatus.ACTIVE,
                   number: str = "CO-EXIST-0001") -> Commitment:
        commitment = Commitment(
            project_id=project.id,
            type=CommitmentType.CONTRACT,
            contract_number=number,
            status=status,
            original_amount=Decimal(str(amount)),
            current_amount=Decimal(str(amount)),
        )
        commitment.allocations.append(CommitmentAllocation(budget_item_id=budget_item.id, amount=Decimal(str(amount))))
        db.session.add(commitment)
        db.session.commit()
        return commitment

    def user(self, username: str, role: str, vendor: Vendor | None = None) -> User:
        user = User(username=username, role=role, vendor_id=vendor.id if vendor else None, is_active=True)
        user.set_password(PASSWORD)
        db.session.add(user)
        db.session.commit()
        return user


@pytest.fixture
def build():
    return Builder()


@pytest.fixture
def scenario(ctx, build):
    """
    Two-item RFP (A: 100 LF, B: 10 CY).
    Vendor 1 prices both in the RFP units; Vendor 2 prices A in FT and omits B.
    """
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
    return {"project": project, "rfp": rfp, "v1": v1, "v2": v2, "bid1": bid1, "bid2": bid2}


def login(client, username: str, password: str = PASSWORD):
    response = client.post("/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.get_json()
    return client


@pytest.fixture
def clients(app):
    """Logged-in test clients per role; users are created in a short-lived app context."""
    with app.app_context():
        vendor = Vendor(name="Contractor Co", email="contractor@example.com")
        db.session.add(vendor)
        db.session.commit()
        builder = Builder()
        builder.user("admin", Role.ADMIN)
        builder.user("staff", Role.STAFF)
        builder.user("viewer", Role.VIEWER)
        builder.user("contractor", Role.CONTRACTOR, vendor=vendor)
        vendor_id = vendor.id

    result = {role: login(app.test_client(), role) for role in ("admin", "staff", "viewer", "contractor")}
    result["contractor_vendor_id"] = vendor_id
    return result


class RecordingNotifier(NotificationService):
    """Keeps delivered messages in memory so tests can inspect them."""

    def __init__(self):
        super().__init__(sender="tests@example.com")
        self.outbox = []

    def deliver(self, message):
        self.outbox.append(message)


@pytest.fixture
def outbox(app):
    notifier = RecordingNotifier()
    set_notification_service(app, notifier)
    return notifier.outbox
