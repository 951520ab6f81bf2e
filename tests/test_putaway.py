import pytest

from services.wms.exceptions import NotFound, ValidationError
from services.wms.inventory_ops.ledger import InventoryLedger
from services.wms.inventory_ops.putaway_rules import putaway_priority, suggest_putaway


class TestSuggestion:
    def test_affinity_wins_over_capacity(self, db, make):
        product, loc = make.product(), make.location()
        make.sublocation(loc, "A-01", capacity=1000)
        home = make.sublocation(loc, "C-09", capacity=10, zone="C")
        make.stock(product, loc, 9, sublocation=home)

        s = suggest_putaway(db, product_id=product.id, location_id=loc.id, qty=50)

        assert s.sublocation_id == home.id
        assert s.reason == "Same product already stored here"

    def test_inactive_affinity_falls_through_to_capacity(self, db, make):
        product, loc = make.product(), make.location()
        closed = make.sublocation(loc, "A-01", capacity=100, is_active=False)
        make.stock(product, loc, 5, sublocation=closed)
        open_bin = make.sublocation(loc, "B-01", capacity=100, zone="B")

        s = suggest_putaway(db, product_id=product.id, location_id=loc.id, qty=20)

        assert s.sublocation_id == open_bin.id
        assert s.reason == "100 capacity available"

    def test_first_fit_in_walk_order(self, db, make):
        product, other, loc = make.product(), make.product(), make.location()
        full = make.sublocation(loc, "A-01-01", capacity=50, zone="A", aisle="01")
        make.stock(other, loc, 45, sublocation=full)
        fits = make.sublocation(loc, "A-02-01", capacity=40, zone="A", aisle="02")
        make.sublocation(loc, "B-01-01", capacity=500, zone="B")

        s = suggest_putaway(db, product_id=product.id, location_id=loc.id, qty=30)

        assert s.sublocation_code == "A-02-01"
        assert s.sublocation_id == fits.id

    def test_fallback_reports_insufficient_capacity(self, db, make):
        product, other, loc = make.product(), make.product(), make.location()
        a = make.sublocation(loc, "A-01", capacity=20)
        b = make.sublocation(loc, "A-02", capacity=30)
        make.stock(other, loc, 15, sublocation=a)

        s = suggest_putaway(db, product_id=product.id, location_id=loc.id, qty=100)

        assert s.sublocation_id == b.id
        assert "Insufficient capacity" in s.reason

    def test_no_capacity_tracked_sublocations(self, db, make):
        product, loc = make.product(), make.location()
        make.sublocation(loc, "FLOOR")

        s = suggest_putaway(db, product_id=product.id, location_id=loc.id, qty=5)

        assert s.sublocation_id is None
        assert s.reason == "no sub-locations configured"

    def test_quantity_must_be_positive(self, db, make):
        with pytest.raises(ValidationError):
            suggest_putaway(db, product_id=make.product().id, location_id=make.location().id, qty=0)

    @pytest.mark.parametrize("product_type,expected", [("food", 8), ("Pharma", 8), ("general", 5), (None, 5)])
    def test_priority_hint(self, db, make, product_type, expected):
        assert putaway_priority(db, make.product(product_type=product_type).id) == expected


class TestPutawayTasks:
    def test_create_uses_suggestion_and_perishable_priority(self, controller, make):
        product, loc = make.product(product_type="food"), make.location()
        bin_a = make.sublocation(loc, "A-01", capacity=100)

        task = controller.create_putaway_task(product_id=product.id, source_location_id=loc.id,
                                              qty_requested=40, actor="recv")

        assert task.task_type == "putaway"
        assert task.priority == 8
        assert task.destination_sublocation_id == bin_a.id
        assert task.destination_location_id == loc.id

    def test_create_without_destination_when_nothing_fits(self, controller, make):
        product, loc = make.product(), make.location()
        task = controller.create_putaway_task(product_id=product.id, source_location_id=loc.id,
                                              qty_requested=5, actor="recv")
        assert task.destination_sublocation_id is None
        assert task.priority == 5

    def test_complete_moves_staged_stock(self, db, controller, make):
        product, loc = make.product(), make.location()
        dest = make.sublocation(loc, "B-02", capacity=100)
        make.stock(product, loc, 25)
        task = controller.create_putaway_task(product_id=product.id, source_location_id=loc.id,
                                              qty_requested=25, actor="recv")

        done = controller.complete_putaway(task.id, dest.id, actor="driver")

        ledger = InventoryLedger(db)
        assert done.status == "completed"
        assert done.qty_completed == 25
        assert done.destination_sublocation_id == dest.id
        assert done.notes == "Put away to sublocation B-02"
        assert ledger.on_hand(product.id, loc.id, None) == 0
        assert ledger.on_hand(product.id, loc.id, dest.id) == 25

    def test_complete_without_staged_stock_still_completes(self, db, controller, make):
        product, loc = make.product(), make.location()
        dest = make.sublocation(loc, "B-02")
        task = controller.create_putaway_task(product_id=product.id, source_location_id=loc.id,
                                              qty_requested=5, actor="recv")

        done = controller.complete_putaway(task.id, dest.id, actor="driver")

        assert done.status == "completed"
        assert InventoryLedger(db).on_hand(product.id, loc.id, dest.id) == 0

    def test_complete_rejects_foreign_or_unknown_sublocation(self, controller, make):
        product, loc, elsewhere = make.product(), make.location(), make.location()
        foreign = make.sublocation(elsewhere, "Z-01")
        task = controller.create_putaway_task(product_id=product.id, source_location_id=loc.id,
                                              qty_requested=5, actor="recv")

        with pytest.raises(ValidationError):
            controller.complete_putaway(task.id, foreign.id, actor="driver")
        with pytest.raises(NotFound):
            controller.complete_putaway(task.id, "nope", actor="driver")
        assert controller.get(task.id).status == "pending"
