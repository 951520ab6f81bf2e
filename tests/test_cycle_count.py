"""Cycle count capture, approval and rejection."""

import re

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.db.models.inventory_exec import InventoryTxn
from services.wms.exceptions import InvalidStateTransition, NotFound, ValidationError
from services.wms.inventory_ops.count_service import CycleCountService, variance_for
from services.wms.inventory_ops.ledger import InventoryLedger


@pytest.fixture
def svc(db):
    return CycleCountService(db)


@pytest.fixture
def ledger(db):
    return InventoryLedger(db)


@pytest.mark.parametrize("expected,counted,variance,percent", [
    (100, 90, -10, -10.0),
    (40, 50, 10, 25.0),
    (0, 5, 5, 100.0),
    (0, 0, 0, 0.0),
    (12, 12, 0, 0.0),
])
def test_variance_for(expected, counted, variance, percent):
    assert variance_for(expected, counted) == (variance, percent)


@pytest.fixture
def shelf(make):
    product, loc = make.product(), make.location()
    bin_a = make.sublocation(loc, "A-01")
    make.stock(product, loc, 100, sublocation=bin_a)
    return product, loc, bin_a


def _counting(svc, shelf, **kw):
    product, loc, bin_a = shelf
    count = svc.create_count(loc.id, actor="lead", **kw)
    item = svc.add_item(count.id, product.id, bin_a.id, actor="lead")
    svc.start(count.id, actor="counter")
    return count, item


class TestLifecycle:
    def test_count_number_and_snapshot(self, svc, shelf):
        count, item = _counting(svc, shelf)
        assert re.fullmatch(r"CC-\d{4}-00001", count.count_number)
        assert count.status == "in_progress"
        assert item.expected_qty == 100

    def test_start_resnapshots_expected(self, db, svc, ledger, shelf):
        product, loc, bin_a = shelf
        count = svc.create_count(loc.id, actor="lead")
        item = svc.add_item(count.id, product.id, bin_a.id, actor="lead")
        ledger.apply_delta(product_id=product.id, location_id=loc.id, sublocation_id=bin_a.id,
                           qty_change=-30, transaction_type="pick")
        db.commit()

        svc.start(count.id, actor="counter")

        assert item.expected_qty == 70

    def test_approve_adjusts_to_counted(self, db, svc, ledger, shelf):
        product, loc, bin_a = shelf
        count, item = _counting(svc, shelf)

        recorded = svc.record_count(item.id, 90, "counter", "two cases crushed")
        assert (recorded.variance, recorded.variance_percent) == (-10, -10)
        svc.submit_for_approval(count.id, actor="counter")
        approved = svc.approve(count.id, "manager")

        assert approved.status == "completed"
        assert approved.approved_by == "manager" and approved.approved_at is not None
        assert ledger.on_hand(product.id, loc.id, bin_a.id) == 90
        assert item.adjustment_approved is True
        txn = db.execute(select(InventoryTxn).where(InventoryTxn.transaction_type == "cycle_count")).scalar_one()
        assert (txn.qty_change, txn.reference_type, txn.reference_id) == (-10, "cycle_count", count.id)
        assert txn.reason == "Cycle count adjustment: expected 100, counted 90"

    def test_zero_variance_is_not_adjusted(self, db, svc, shelf):
        count, item = _counting(svc, shelf)
        svc.record_count(item.id, 100, "counter")
        svc.submit_for_approval(count.id, actor="counter")
        svc.approve(count.id, "manager")

        assert item.adjustment_approved is False
        assert db.execute(select(InventoryTxn).where(InventoryTxn.transaction_type == "cycle_count")).first() is None

    def test_reject_then_recount(self, svc, ledger, shelf):
        product, loc, bin_a = shelf
        count, item = _counting(svc, shelf)
        svc.record_count(item.id, 60, "counter", "suspicious")
        svc.submit_for_approval(count.id, actor="counter")

        rejected = svc.reject(count.id, actor="manager", reason="recount aisle A")

        assert rejected.status == "in_progress"
        assert (item.counted_qty, item.variance, item.variance_percent) == (None, None, None)
        assert (item.counted_by, item.counted_at, item.notes) == (None, None, None)
        assert ledger.on_hand(product.id, loc.id, bin_a.id) == 100

        svc.record_count(item.id, 98, "counter-2")
        svc.submit_for_approval(count.id, actor="counter-2")
        svc.approve(count.id, "manager")
        assert ledger.on_hand(product.id, loc.id, bin_a.id) == 98

    def test_failed_adjustment_is_skipped(self, db, svc, ledger, shelf):
        product, loc, bin_a = shelf
        count, item = _counting(svc, shelf)
        svc.record_count(item.id, 10, "counter")
        svc.submit_for_approval(count.id, actor="counter")
        # stock moves out between counting and approval
        ledger.apply_delta(product_id=product.id, location_id=loc.id, sublocation_id=bin_a.id,
                           qty_change=-95, transaction_type="pick")
        db.commit()

        approved = svc.approve(count.id, "manager")

        assert approved.status == "completed"
        assert item.adjustment_approved is False
        assert ledger.on_hand(product.id, loc.id, bin_a.id) == 5

    def test_variances_largest_percent_first(self, make, svc, shelf):
        product, loc, bin_a = shelf
        other = make.product()
        make.stock(other, loc, 10, sublocation=bin_a)
        count = svc.create_count(loc.id, actor="lead")
        a = svc.add_item(count.id, product.id, bin_a.id, actor="lead")
        b = svc.add_item(count.id, other.id, bin_a.id, actor="lead")
        svc.start(count.id, actor="counter")
        svc.record_count(a.id, 105, "counter")
        svc.record_count(b.id, 15, "counter")

        assert [i.id for i in svc.variances(count.id)] == [b.id, a.id]


class TestGuards:
    def test_record_requires_in_progress(self, svc, shelf):
        product, loc, bin_a = shelf
        count = svc.create_count(loc.id, actor="lead")
        item = svc.add_item(count.id, product.id, bin_a.id, actor="lead")
        with pytest.raises(InvalidStateTransition):
            svc.record_count(item.id, 5, "counter")

    def test_negative_count(self, svc, shelf):
        _, item = _counting(svc, shelf)
        with pytest.raises(ValidationError):
            svc.record_count(item.id, -1, "counter")

    def test_submit_requires_every_item_counted(self, svc, shelf):
        count, _ = _counting(svc, shelf)
        with pytest.raises(ValidationError):
            svc.submit_for_approval(count.id, actor="counter")

    def test_approve_and_reject_require_pending_approval(self, svc, shelf):
        count, _ = _counting(svc, shelf)
        with pytest.raises(InvalidStateTransition):
            svc.approve(count.id, "manager")
        with pytest.raises(InvalidStateTransition):
            svc.reject(count.id, actor="manager")

    def test_cancel(self, svc, shelf):
        count, _ = _counting(svc, shelf)
        assert svc.cancel(count.id, actor="lead").status == "cancelled"
        with pytest.raises(InvalidStateTransition):
            svc.cancel(count.id, actor="lead")
        with pytest.raises(InvalidStateTransition):
            svc.start(count.id, actor="lead")

    def test_unknown_ids(self, svc, make):
        with pytest.raises(NotFound):
            svc.create_count("missing", actor="lead")
        with pytest.raises(NotFound):
            svc.record_count("missing", 1, "counter")
        with pytest.raises(NotFound):
            svc.approve("missing", "manager")

    def test_sublocation_must_belong_to_counted_location(self, make, svc, shelf):
        product, loc, _ = shelf
        foreign = make.sublocation(make.location(), "Z-01")
        count = svc.create_count(loc.id, actor="lead")
        with pytest.raises(ValidationError):
            svc.add_item(count.id, product.id, foreign.id, actor="lead")


class TestMultiRowReconciliation:
    def test_approve_reconciles_across_rows(self, db, make, svc, ledger):
        product, loc = make.product(), make.location()
        bin_a = make.sublocation(loc, "A-01")
        make.stock(product, loc, 10, sublocation=bin_a)
        make.stock(product, loc, 10, sublocation=bin_a, status="quarantine")
        count = svc.create_count(loc.id, actor="lead")
        item = svc.add_item(count.id, product.id, bin_a.id, actor="lead")
        svc.start(count.id, actor="counter")
        assert item.expected_qty == 20

        svc.record_count(item.id, 4, "counter")
        svc.submit_for_approval(count.id, actor="counter")
        svc.approve(count.id, "manager")

        assert item.adjustment_approved is True
        assert ledger.on_hand(product.id, loc.id, bin_a.id) == 4

    def test_database_error_rolls_back_only_that_item(self, db, make, svc, ledger, monkeypatch):
        broken, healthy, loc = make.product(), make.product(), make.location()
        make.stock(broken, loc, 10)
        make.stock(healthy, loc, 10)
        count = svc.create_count(loc.id, actor="lead")
        a = svc.add_item(count.id, broken.id, actor="lead")
        b = svc.add_item(count.id, healthy.id, actor="lead")
        svc.start(count.id, actor="counter")
        svc.record_count(a.id, 6, "counter")
        svc.record_count(b.id, 7, "counter")
        svc.submit_for_approval(count.id, actor="counter")

        real_apply = ledger.apply_delta

        def flaky_apply(**kw):
            txn = real_apply(**kw)
            if kw["product_id"] == broken.id:
                raise OperationalError("UPDATE wms_inventory_line", {}, Exception("disk I/O error"))
            return txn

        svc.ledger = ledger
        monkeypatch.setattr(ledger, "apply_delta", flaky_apply)

        approved = svc.approve(count.id, "manager")

        assert approved.status == "completed"
        assert (a.adjustment_approved, b.adjustment_approved) == (False, True)
        assert ledger.on_hand(broken.id, loc.id) == 10
        assert ledger.on_hand(healthy.id, loc.id) == 7
