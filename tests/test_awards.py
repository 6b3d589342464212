import logging
import re
from datetime import datetime
from decimal import Decimal

import pytest
from flask import current_app

from bidtab.awards import award_bid, award_to_dict, commitment_to_dict, list_awards, parse_award_request
from bidtab.errors import NotFound, PreconditionFailed, ValidationError
from bidtab.extensions import db
from bidtab.leveling import LevelingAdjustment, apply_leveling
from bidtab.models import (
    AuditLog,
    Award,
    Bid,
    BidStatus,
    BudgetItem,
    BudgetItemStatus,
    BudgetTransaction,
    Commitment,
    CommitmentStatus,
    Rfp,
    RfpStatus,
)
from bidtab.notifications import get_notification_service, set_notification_service
from bidtab.repository import BiddingRepository

NOW = datetime(2026, 3, 14, 12, 0, 0)


def payload(bid_id, amount="3000.00", allocations=None, **overrides):
    data = {
        "bid_id": bid_id,
        "award_amount": amount,
        "justification": "Lowest responsible bidder after leveling",
        "commitment_type": "CONTRACT",
        "contract_terms": {"start_date": "2026-04-01T00:00:00Z", "payment_terms": "Net 30", "retention_percentage": 10},
        "budget_allocations": allocations if allocations is not None else [],
    }
    data.update(overrides)
    return data


@pytest.fixture
def budget(scenario, build):
    return build.budget_item(scenario["project"], "03", "10000.00", name="Concrete")


def _award(bid_id, amount, allocations, **kw):
    return award_bid(parse_award_request(payload(bid_id, amount, allocations, **kw)), now=NOW)


def test_award_happy_path(scenario, budget):
    bid1, bid2 = scenario["bid1"], scenario["bid2"]

    result = _award(bid1.id, "3000.00", [{"budget_item_id": budget.id, "amount": "3000.00"}])

    award = result.award
    commitment = result.commitment
    assert award.rfp_id == scenario["rfp"].id
    assert award.award_amount == Decimal("3000.00")
    assert award.award_metadata["adjusted_bid_amount"] == "3000.00"

    assert commitment.status == CommitmentStatus.DRAFT
    assert commitment.award_id == award.id
    assert re.fullmatch(r"CO-TWR-202603-[0-9A-F]{6}", commitment.contract_number)
    assert commitment.retention_percentage == Decimal("10")
    assert [(a.budget_item_id, a.amount) for a in commitment.allocations] == [(budget.id, Decimal("3000.00"))]

    assert db.session.get(Bid, bid1.id).status == BidStatus.AWARDED
    assert db.session.get(Bid, bid2.id).status == BidStatus.UNSUCCESSFUL
    assert result.unsuccessful_bid_ids == [bid2.id]
    assert db.session.get(Rfp, scenario["rfp"].id).status == RfpStatus.AWARDED

    assert db.session.get(BudgetItem, budget.id).committed_total == Decimal("3000.00")
    ledger = BudgetTransaction.query.filter_by(budget_item_id=budget.id).all()
    assert [(t.type, t.amount, t.reference_type, t.reference_id) for t in ledger] == [
        ("COMMITMENT", Decimal("-3000.00"), "COMMITMENT", commitment.id)
    ]

    actions = {(entry.entity_type, entry.action) for entry in AuditLog.query.all()}
    assert {("Award", "AWARD"), ("Commitment", "CREATE")} <= actions


def test_award_notifies_winner_and_losers(scenario, budget, outbox):
    _award(scenario["bid1"].id, "3000.00", [{"budget_item_id": budget.id, "amount": "3000.00"}])

    assert [message.to for message in outbox] == [scenario["v1"].email, scenario["v2"].email]
    assert outbox[0].subject == "Award notice: Site Package"
    assert "3,000.00" in outbox[0].body
    assert outbox[1].subject == "Bid result: Site Package"


def test_default_notifier_logs_and_keeps_nothing(ctx, caplog):
    service = get_notification_service()

    with caplog.at_level(logging.INFO, logger="bidtab.notifications"):
        for _ in range(50):
            service.send_award_notification("v@example.com", "Vendor", "Site Package", Decimal("10"))

    assert not hasattr(service, "outbox")
    sent = [r for r in caplog.records if r.name == "bidtab.notifications" and "v@example.com" in r.getMessage()]
    assert len(sent) == 50


def test_second_award_on_same_rfp_is_rejected(scenario, budget):
    allocation = [{"budget_item_id": budget.id, "amount": "3000.00"}]
    _award(scenario["bid1"].id, "3000.00", allocation)

    # Retry of the same request
    with pytest.raises(PreconditionFailed) as retry:
        _award(scenario["bid1"].id, "3000.00", allocation)
    assert retry.value.rule == PreconditionFailed.RFP_ALREADY_AWARDED

    # Any other bid on the RFP
    with pytest.raises(PreconditionFailed) as other:
        _award(scenario["bid2"].id, "300.00", [{"budget_item_id": budget.id, "amount": "300.00"}])
    assert other.value.rule == PreconditionFailed.RFP_ALREADY_AWARDED

    assert Award.query.count() == 1
    assert Commitment.query.count() == 1
    assert db.session.get(BudgetItem, budget.id).committed_total == Decimal("3000.00")


def test_concurrent_award_loses_on_unique_constraint(scenario, budget, monkeypatch):
    _award(scenario["bid1"].id, "3000.00", [{"budget_item_id": budget.id, "amount": "3000.00"}])

    # A concurrent request that read the RFP before the first award committed
    stale = db.session.get(Bid, scenario["bid2"].id)
    stale.status = BidStatus.SUBMITTED
    db.session.commit()
    monkeypatch.setattr(BiddingRepository, "award_for_rfp", lambda self, rfp_id: None)

    with pytest.raises(PreconditionFailed) as excinfo:
        _award(scenario["bid2"].id, "300.00", [{"budget_item_id": budget.id, "amount": "300.00"}])

    assert excinfo.value.rule == PreconditionFailed.RFP_ALREADY_AWARDED
    assert Award.query.count() == 1
    assert Commitment.query.count() == 1
    assert BudgetTransaction.query.count() == 1
    assert db.session.get(BudgetItem, budget.id).committed_total == Decimal("3000.00")


def test_only_submitted_bids_can_be_awarded(ctx, build):
    project = build.project()
    rfp = build.rfp(project, [("A-1", "Item", 1, "EA")])
    draft = build.bid(rfp, build.vendor("Drafty"), {"A-1": ("500", "EA", "500.00")}, status=BidStatus.DRAFT)
    item = build.budget_item(project, "01", "1000")

    with pytest.raises(PreconditionFailed) as excinfo:
        _award(draft.id, "500.00", [{"budget_item_id": item.id, "amount": "500.00"}])

    error = excinfo.value
    assert error.rule == PreconditionFailed.BID_NOT_SUBMITTED
    assert error.to_dict()["precondition"] == 1
    assert Award.query.count() == 0


def test_unknown_bid(ctx):
    with pytest.raises(NotFound):
        _award(4242, "1.00", [{"budget_item_id": 1, "amount": "1.00"}])


@pytest.mark.parametrize("amount", ["3030.00", "2970.00", "3000.00"])
def test_award_within_tolerance_is_accepted(scenario, budget, amount):
    result = _award(scenario["bid1"].id, amount, [{"budget_item_id": budget.id, "amount": amount}])
    assert result.award.award_amount == Decimal(amount)


@pytest.mark.parametrize("amount", ["3030.01", "2969.99", "300.00"])
def test_award_outside_tolerance_is_rejected(scenario, budget, amount):
    with pytest.raises(PreconditionFailed) as excinfo:
        _award(scenario["bid1"].id, amount, [{"budget_item_id": budget.id, "amount": amount}])

    error = excinfo.value
    assert error.rule == PreconditionFailed.AWARD_AMOUNT_OUT_OF_TOLERANCE
    assert error.details["expected"] == "3000.00"
    assert error.details["actual"] == amount
    assert Award.query.count() == 0


def test_tolerance_uses_adjusted_amount(scenario, budget):
    apply_leveling(scenario["bid2"].id, [LevelingAdjustment(type="PLUG", label="Slab", amount=Decimal("2000"))])

    result = _award(scenario["bid2"].id, "2300.00", [{"budget_item_id": budget.id, "amount": "2300.00"}])
    assert result.award.award_metadata["original_bid_amount"] == "900.00"
    assert result.award.award_metadata["adjusted_bid_amount"] == "2300.00"


def test_allocations_must_sum_to_award_amount(scenario, budget, build):
    second = build.budget_item(scenario["project"], "06", "5000")

    with pytest.raises(PreconditionFailed) as excinfo:
        _award(
            scenario["bid1"].id,
            "3000.00",
            [{"budget_item_id": budget.id, "amount": "2000.00"}, {"budget_item_id": second.id, "amount": "999.99"}],
        )

    error = excinfo.value
    assert error.rule == PreconditionFailed.ALLOCATION_MISMATCH
    assert error.details == {"expected": "3000.00", "actual": "2999.99"}
    assert Award.query.count() == 0
    assert db.session.get(Bid, scenario["bid1"].id).status == BidStatus.SUBMITTED


def test_split_allocation(scenario, budget, build):
    second = build.budget_item(scenario["project"], "06", "5000")

    result = _award(
        scenario["bid1"].id,
        "3000.00",
        [
            {"budget_item_id": second.id, "amount": "1000.00", "percentage": "33.33"},
            {"budget_item_id": budget.id, "amount": "2000.00", "percentage": "66.67"},
        ],
    )

    assert sum(a.amount for a in result.commitment.allocations) == Decimal("3000.00")
    assert db.session.get(BudgetItem, second.id).committed_total == Decimal("1000.00")
    assert BudgetTransaction.query.count() == 2


def test_award_rejected_on_stale_budget(ctx, build):
    project = build.project()
    rfp = build.rfp(project, [("A-1", "Item", 1, "LS")])
    bid = build.bid(rfp, build.vendor("Tight Budget"), {"A-1": ("600", "LS", "600.00")})
    item = build.budget_item(project, "09", "10000.00", name="Finishes")
    build.commitment(project, item, "9500.00")

    with pytest.raises(PreconditionFailed) as excinfo:
        _award(bid.id, "600.00", [{"budget_item_id": item.id, "amount": "600.00"}])

    error = excinfo.value
    assert error.rule == PreconditionFailed.INSUFFICIENT_BUDGET
    assert error.details["available"] == "500.00"
    assert error.details["requested"] == "600.00"
    assert error.to_dict()["precondition"] == 5
    assert Award.query.count() == 0
    assert db.session.get(Bid, bid.id).status == BidStatus.SUBMITTED


def test_cancelled_commitments_do_not_consume_budget(ctx, build):
    project = build.project()
    rfp = build.rfp(project, [("A-1", "Item", 1, "LS")])
    bid = build.bid(rfp, build.vendor("Freed Budget"), {"A-1": ("600", "LS", "600.00")})
    item = build.budget_item(project, "09", "10000.00")
    build.commitment(project, item, "9500.00", status=CommitmentStatus.CANCELLED)

    result = _award(bid.id, "600.00", [{"budget_item_id": item.id, "amount": "600.00"}])
    assert result.commitment.status == CommitmentStatus.DRAFT


def test_budget_item_marked_committed_when_exhausted(ctx, build):
    project = build.project()
    rfp = build.rfp(project, [("A-1", "Item", 1, "LS")])
    bid = build.bid(rfp, build.vendor("Exact"), {"A-1": ("1000", "LS", "1000.00")})
    item = build.budget_item(project, "10", "1000.00")

    _award(bid.id, "1000.00", [{"budget_item_id": item.id, "amount": "1000.00"}])
    assert db.session.get(BudgetItem, item.id).status == BudgetItemStatus.COMMITTED


def test_budget_item_from_another_project(scenario, build):
    other_project = build.project(code="OTH", name="Other")
    foreign = build.budget_item(other_project, "03", "99999")

    with pytest.raises(NotFound):
        _award(scenario["bid1"].id, "3000.00", [{"budget_item_id": foreign.id, "amount": "3000.00"}])


def test_notification_failure_does_not_undo_award(scenario, budget, caplog):
    class BrokenNotifier:
        def send_award_notification(self, *args):
            raise ConnectionError("smtp down")

        def send_unsuccessful_bid_notification(self, *args):
            raise ConnectionError("smtp down")

    set_notification_service(current_app, BrokenNotifier())

    with caplog.at_level(logging.ERROR, logger="bidtab.awards"):
        result = _award(scenario["bid1"].id, "3000.00", [{"budget_item_id": budget.id, "amount": "3000.00"}])

    assert Award.query.count() == 1
    assert result.commitment.id is not None
    failures = [r for r in caplog.records if r.name == "bidtab.awards" and "notification" in r.getMessage()]
    assert len(failures) == 2


def test_missing_vendor_email_is_logged_not_raised(ctx, build, caplog):
    project = build.project()
    rfp = build.rfp(project, [("A-1", "Item", 1, "LS")])
    bid = build.bid(rfp, build.vendor("No Mail", email=""), {"A-1": ("100", "LS", "100.00")})
    item = build.budget_item(project, "01", "1000")

    with caplog.at_level(logging.ERROR, logger="bidtab.awards"):
        _award(bid.id, "100.00", [{"budget_item_id": item.id, "amount": "100.00"}])

    assert Award.query.count() == 1
    assert any("Failed to send award notification" in r.getMessage() for r in caplog.records)


def test_list_awards_and_payloads(scenario, budget):
    result = _award(scenario["bid1"].id, "3000.00", [{"budget_item_id": budget.id, "amount": "3000.00"}])

    assert [a.id for a in list_awards(rfp_id=scenario["rfp"].id)] == [result.award.id]
    assert list_awards(vendor_id=scenario["v2"].id) == []
    assert [a.id for a in list_awards(project_id=scenario["project"].id)] == [result.award.id]

    award = award_to_dict(result.award)
    assert award["award_amount"] == "3000.00"
    assert award["vendor_name"] == "Vendor One"

    commitment = commitment_to_dict(result.commitment)
    assert commitment["type"] == "CONTRACT"
    assert commitment["budget_allocations"] == [
        {"budget_item_id": budget.id, "amount": "3000.00", "percentage": None}
    ]


@pytest.mark.parametrize(
    "overrides",
    [
        {"justification": "too short"},
        {"commitment_type": "HANDSHAKE"},
        {"award_amount": "-5"},
        {"bid_id": None},
        {"contract_terms": {"payment_terms": "Net 30"}},
        {"contract_terms": {"start_date": "2026-04-01", "payment_terms": ""}},
        {"contract_terms": {"start_date": "2026-04-01", "payment_terms": "Net 30", "retention_percentage": 120}},
        {"budget_allocations": []},
        {"budget_allocations": [{"budget_item_id": 1, "amount": "0"}]},
        {"budget_allocations": [{"budget_item_id": 1, "amount": "1"}, {"budget_item_id": 1, "amount": "2"}]},
    ],
)
def test_parse_award_request_rejects(overrides):
    data = payload(1, "3.00", [{"budget_item_id": 1, "amount": "3.00"}])
    data.update(overrides)
    with pytest.raises(ValidationError):
        parse_award_request(data)


def test_parse_award_request_values():
    request = parse_award_request(
        payload(7, "1500.5", [{"budget_item_id": 3, "amount": "1500.50", "percentage": "100"}], commitment_type="po")
        | {"commitment_type": "purchase_order", "approvals": [{"by": "cfo"}]}
    )
    assert request.bid_id == 7
    assert request.award_amount == Decimal("1500.5")
    assert request.commitment_type == "PURCHASE_ORDER"
    assert request.budget_allocations[0].percentage == Decimal("100")
    assert request.approvals == [{"by": "cfo"}]
