from __future__ import annotations
from datetime import date
from sqlalchemy.orm import Session
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from app.core.audit import audit
from app.core.logging_config import LogContext, get_logger
from app.db.models.inventory_exec import Location, Product, Sublocation
from app.db.models.wms.common import utcnow
from app.db.models.wms.counting import CycleCount, CycleCountItem, TERMINAL_COUNT_STATUSES
from services.wms.exceptions import InvalidStateTransition, NotFound, ValidationError, WmsError
from services.wms.inventory_ops.ledger import InventoryLedger
from services.wms.tasking.store import next_document_number, unit_of_work

logger = get_logger("inventory_ops.count")

COUNT_PREFIX = "CC"


def variance_for(expected: float, counted: float) -> tuple[float, float]:
    """(variance, variance_percent) for a counted quantity against the snapshot."""
    variance = counted - expected
    if expected > 0:
        percent = variance / expected * 100
    else:
        percent = 100.0 if counted > 0 else 0.0
    return variance, percent


class CycleCountService:
    """Count capture and approval.

    pending -> in_progress -> pending_approval -> completed, with reject sending
    a count back to in_progress and cancel allowed until the count is terminal.
    Approval is the only step that touches inventory.
    """

    def __init__(self, db: Session, *, ledger: InventoryLedger | None = None):
        self.db = db
        self.ledger = ledger or InventoryLedger(db)

    def _count(self, count_id: str, *, for_update: bool = False) -> CycleCount:
        q = select(CycleCount).where(CycleCount.id == count_id)
        if for_update:
            q = q.with_for_update()
        count = self.db.execute(q).scalar_one_or_none()
        if not count:
            raise NotFound("CycleCount", count_id)
        return count

    def _require(self, count: CycleCount, action: str, *statuses: str) -> None:
        if count.status not in statuses:
            raise InvalidStateTransition("CycleCount", count.id, count.status, action)

    def _items(self, count_id: str) -> list[CycleCountItem]:
        return list(self.db.execute(
            select(CycleCountItem)
            .where(CycleCountItem.count_id == count_id)
            .order_by(CycleCountItem.created_at.asc(), CycleCountItem.id.asc())
        ).scalars().all())

    def _snapshot(self, count: CycleCount, item: CycleCountItem) -> float:
        return self.ledger.on_hand(item.product_id, count.location_id, item.sublocation_id, item.lot_id)

    def create_count(
        self,
        location_id: str,
        *,
        count_type: str = "partial",
        blind_count: bool = False,
        scheduled_date: date | None = None,
        assigned_to: str | None = None,
        notes: str | None = None,
        actor: str | None,
    ) -> CycleCount:
        with unit_of_work(self.db):
            if self.db.get(Location, location_id) is None:
                raise NotFound("Location", location_id)
            count = CycleCount(
                count_number=next_document_number(self.db, COUNT_PREFIX),
                location_id=location_id,
                count_type=count_type,
                blind_count=bool(blind_count),
                status="pending",
                scheduled_date=scheduled_date,
                assigned_to=assigned_to,
                notes=notes,
                created_by=actor,
            )
            self.db.add(count)
            self.db.flush()
            audit(self.db, actor=actor, action="COUNT_CREATED", entity_type="CycleCount", entity_id=count.id,
                  payload={"count_number": count.count_number, "location_id": location_id, "blind_count": count.blind_count})
            logger.info("cycle_count_created", extra={"count_id": count.id, "count_number": count.count_number})
        return count

    def add_item(
        self,
        count_id: str,
        product_id: str,
        sublocation_id: str | None = None,
        lot_id: str | None = None,
        *,
        actor: str | None,
    ) -> CycleCountItem:
        with unit_of_work(self.db):
            count = self._count(count_id, for_update=True)
            self._require(count, "add items to", "pending", "in_progress")
            if self.db.get(Product, product_id) is None:
                raise NotFound("Product", product_id)
            if sublocation_id is not None:
                sub = self.db.get(Sublocation, sublocation_id)
                if sub is None:
                    raise NotFound("Sublocation", sublocation_id)
                if sub.location_id != count.location_id:
                    raise ValidationError(f"Sub-location {sub.code} is not in the counted location")

            item = CycleCountItem(count_id=count.id, product_id=product_id, sublocation_id=sublocation_id,
                                  lot_id=lot_id, adjustment_approved=False)
            item.expected_qty = self._snapshot(count, item)
            self.db.add(item)
            self.db.flush()
            audit(self.db, actor=actor, action="COUNT_ITEM_ADDED", entity_type="CycleCount", entity_id=count.id,
                  payload={"item_id": item.id, "product_id": product_id, "expected_qty": item.expected_qty})
        return item

    def start(self, count_id: str, *, actor: str | None) -> CycleCount:
        with LogContext.bind(count_id=count_id, actor_id=actor), unit_of_work(self.db):
            count = self._count(count_id, for_update=True)
            self._require(count, "start", "pending")
            # expected quantities are taken as of the moment counting begins
            for item in self._items(count.id):
                item.expected_qty = self._snapshot(count, item)
            count.status = "in_progress"
            count.started_at = utcnow()
            if count.assigned_to is None:
                count.assigned_to = actor
            audit(self.db, actor=actor, action="COUNT_STARTED", entity_type="CycleCount", entity_id=count.id)
            logger.info("cycle_count_started", extra={"count_number": count.count_number})
        return count

    def record_count(
        self, item_id: str, counted_qty: float, counter_id: str | None, notes: str | None = None
    ) -> CycleCountItem:
        counted = float(counted_qty)
        if counted < 0:
            raise ValidationError("counted_qty cannot be negative")
        with unit_of_work(self.db):
            item = self.db.execute(
                select(CycleCountItem).where(CycleCountItem.id == item_id).with_for_update()
            ).scalar_one_or_none()
            if not item:
                raise NotFound("CycleCountItem", item_id)
            count = self._count(item.count_id)
            self._require(count, "record counts on", "in_progress")

            variance, percent = variance_for(float(item.expected_qty), counted)
            item.counted_qty = counted
            item.variance = variance
            item.variance_percent = percent
            item.counted_by = counter_id
            item.counted_at = utcnow()
            if notes is not None:
                item.notes = notes or None
            logger.info("cycle_count_recorded", extra={
                "count_id": count.id, "item_id": item.id, "counted_qty": counted, "variance": variance,
            })
        return item

    def submit_for_approval(self, count_id: str, *, actor: str | None) -> CycleCount:
        with unit_of_work(self.db):
            count = self._count(count_id, for_update=True)
            self._require(count, "submit", "in_progress")
            uncounted = [i.id for i in self._items(count.id) if i.counted_qty is None]
            if uncounted:
                raise ValidationError(f"{len(uncounted)} item(s) have not been counted")
            count.status = "pending_approval"
            audit(self.db, actor=actor, action="COUNT_SUBMITTED", entity_type="CycleCount", entity_id=count.id)
        return count

    def approve(self, count_id: str, approver_id: str | None) -> CycleCount:
        with LogContext.bind(count_id=count_id, actor_id=approver_id), unit_of_work(self.db):
            count = self._count(count_id, for_update=True)
            self._require(count, "approve", "pending_approval")
            adjusted = 0
            for item in self._items(count.id):
                if item.counted_qty is None or not item.variance:
                    continue
                try:
                    # savepoint per item: a failed adjustment is undone alone
                    with self.db.begin_nested():
                        self.ledger.apply_delta(
                            product_id=item.product_id, location_id=count.location_id,
                            sublocation_id=item.sublocation_id, lot_id=item.lot_id,
                            qty_change=float(item.variance), transaction_type="cycle_count",
                            reference_type="cycle_count", reference_id=count.id,
                            reason=f"Cycle count adjustment: expected {float(item.expected_qty):g}, "
                                   f"counted {float(item.counted_qty):g}",
                            notes=item.notes, performed_by=approver_id,
                        )
                except (WmsError, SQLAlchemyError):
                    logger.exception("count_adjustment_failed", extra={"item_id": item.id})
                    continue
                item.adjustment_approved = True
                adjusted += 1

            now = utcnow()
            count.status = "completed"
            count.approved_by = approver_id
            count.approved_at = now
            count.completed_at = now
            audit(self.db, actor=approver_id, action="COUNT_APPROVED", entity_type="CycleCount", entity_id=count.id,
                  payload={"adjusted_items": adjusted})
            logger.info("cycle_count_approved", extra={"count_number": count.count_number, "adjusted_items": adjusted})
        return count

    def reject(self, count_id: str, *, actor: str | None, reason: str | None = None) -> CycleCount:
        with unit_of_work(self.db):
            count = self._count(count_id, for_update=True)
            self._require(count, "reject", "pending_approval")
            for item in self._items(count.id):
                item.counted_qty = None
                item.variance = None
                item.variance_percent = None
                item.counted_by = None
                item.counted_at = None
                item.adjustment_approved = False
                item.notes = None
            count.status = "in_progress"
            count.completed_at = None
            audit(self.db, actor=actor, action="COUNT_REJECTED", entity_type="CycleCount", entity_id=count.id,
                  reason=reason)
            logger.info("cycle_count_rejected", extra={"count_id": count.id, "reason": reason})
        return count

    def cancel(self, count_id: str, *, actor: str | None) -> CycleCount:
        with unit_of_work(self.db):
            count = self._count(count_id, for_update=True)
            if count.status in TERMINAL_COUNT_STATUSES:
                raise InvalidStateTransition("CycleCount", count.id, count.status, "cancel")
            count.status = "cancelled"
            audit(self.db, actor=actor, action="COUNT_CANCELLED", entity_type="CycleCount", entity_id=count.id)
        return count

    def get_count(self, count_id: str) -> CycleCount:
        return self._count(count_id)

    def items(self, count_id: str) -> list[CycleCountItem]:
        self._count(count_id)
        return self._items(count_id)

    def variances(self, count_id: str) -> list[CycleCountItem]:
        self._count(count_id)
        rows = self.db.execute(
            select(CycleCountItem)
            .where(CycleCountItem.count_id == count_id,
                   CycleCountItem.variance.is_not(None),
                   CycleCountItem.variance != 0)
        ).scalars().all()
        return sorted(rows, key=lambda i: float(i.variance_percent or 0), reverse=True)
