"""
bidtab/seed.py

Demo data and user bootstrap for the CLI (`flask seed-demo`, `flask create-user`).

Rules:
- Safe to run multiple times (idempotent): rows are matched by natural key
  (project code, vendor name, RFP title within project, spec code, budget code).
- The demo RFP is left in DRAFT so items can still be edited before publishing.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, Optional

from .errors import ValidationError
from .extensions import db
from .models import BudgetItem, Project, Rfp, RfpItem, RfpStatus, Role, User, Vendor


DEMO_PROJECT = ("DEMO", "Demo Office Building")

DEMO_VENDORS = [
    # name, email, contact
    ("Acme Concrete", "bids@acme-concrete.example", "Dana Reyes"),
    ("Beta Builders", "estimating@beta-builders.example", "Sam Okafor"),
    ("Core Framing", "office@core-framing.example", "Lee Novak"),
]

DEMO_RFP_TITLE = "Sitework & Structure Package"

DEMO_RFP_ITEMS = [
    # spec code, description, qty, uom
    ("03-100", "Concrete curb", Decimal("100"), "LF"),
    ("03-300", "Slab on grade", Decimal("50"), "CY"),
    ("06-100", "Wood framing", Decimal("200"), "LF"),
]

DEMO_BUDGET_ITEMS = [
    # code, name, estimated total
    ("03", "Concrete", Decimal("100000.00")),
    ("06", "Carpentry", Decimal("50000.00")),
]


def seed_demo() -> Dict[str, int]:
    """
    Create the demo project, vendors, RFP (with items) and budget items if missing.

    Existing rows are kept as they are; only missing ones are added.
    """
    code, name = DEMO_PROJECT
    project = Project.query.filter_by(code=code).first()
    if not project:
        project = Project(code=code, name=name)
        db.session.add(project)
        db.session.flush()

    for vendor_name, email, contact in DEMO_VENDORS:
        if Vendor.query.filter_by(name=vendor_name).first():
            continue
        db.session.add(Vendor(name=vendor_name, email=email, contact_name=contact))

    rfp = Rfp.query.filter_by(project_id=project.id, title=DEMO_RFP_TITLE).first()
    if not rfp:
        rfp = Rfp(
            project_id=project.id,
            title=DEMO_RFP_TITLE,
            description="Curbs, slab on grade and framing for the demo building.",
            status=RfpStatus.DRAFT,
        )
        db.session.add(rfp)
        db.session.flush()

    for spec_code, description, qty, uom in DEMO_RFP_ITEMS:
        if RfpItem.query.filter_by(rfp_id=rfp.id, spec_code=spec_code).first():
            continue
        db.session.add(RfpItem(rfp_id=rfp.id, spec_code=spec_code, description=description, qty=qty, uom=uom))

    for budget_code, budget_name, estimated in DEMO_BUDGET_ITEMS:
        if BudgetItem.query.filter_by(project_id=project.id, code=budget_code).first():
            continue
        db.session.add(
            BudgetItem(project_id=project.id, code=budget_code, name=budget_name, estimated_total=estimated)
        )

    db.session.commit()

    return {
        "project_id": project.id,
        "rfp_id": rfp.id,
        "vendors": Vendor.query.count(),
        "budget_items": BudgetItem.query.filter_by(project_id=project.id).count(),
    }


def create_user(
    username: str,
    password: str,
    *,
    role: str = Role.ADMIN,
    vendor_id: Optional[int] = None,
    display_name: Optional[str] = None,
) -> User:
    """Create a login user. CONTRACTOR users must be linked to a vendor."""
    username = (username or "").strip()
    if not username or not password:
        raise ValidationError("Username and password are required")
    if role not in Role.ALL:
        raise ValidationError(f"Role must be one of {', '.join(Role.ALL)}")
    if User.query.filter_by(username=username).first():
        raise ValidationError(f"User {username} already exists")
    if role == Role.CONTRACTOR:
        if vendor_id is None or db.session.get(Vendor, vendor_id) is None:
            raise ValidationError("CONTRACTOR users need an existing vendor")

    user = User(
        username=username,
        display_name=display_name,
        role=role,
        vendor_id=vendor_id if role == Role.CONTRACTOR else None,
        is_active=True,
    )
    user.set_password(password)

    db.session.add(user)
    db.session.commit()
    return user
