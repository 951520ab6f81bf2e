from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Callable
from sqlalchemy.orm import Session
from sqlalchemy import select, update
from app.core import settings
from app.core.audit import audit
from app.core.logging_config import get_logger
from app.db.models.docs import OutboundOrder, OutboundOrderLine
from app.db.models.inventory_exec import InventoryLine, Lot
from app.db.models.wms.common import utcnow
from app.db.models.wms.tasking import WarehouseTask, PickListItem, TERMINAL_PICK_ITEM_STATUSES
from services.wms.exceptions import InsufficientInventory, InvalidStateTransition, NotFound, ValidationError
from services.wms.inventory_ops.ledger import InventoryLedger
from services.wms.tasking.store import TaskSpec, TaskStore, unit_of_work

logger = get_logger("inventory_ops.allocation")

TaskHook = Callable[[WarehouseTask], None]


@dataclass(frozen=True)
class DemandLine:
    order_line_id: str | None
    product_id: str
    qty: float


@dataclass(frozen=True)
class StockSlice:
    inventory_line_id: str
    product_id: str
    location_id: str
    sublocation_id: str | None
    lot_id: str | None
    expiration_date: date | None
    available: float


@dataclass(frozen=True)
class PlannedPick:
    order_line_id: str | None
    product_id: str
    location_id: str
    sublocation_id: str | None
    lot_id: str | None
    qty: float
    sequence_number: int


@dataclass(frozen=True)
class LineShortfall:
    order_line_id: str | None
    product_id: str
    requested: float
    allocated: float
    short: float


@dataclass
class AllocationPlan:
    picks: list[PlannedPick] = field(default_factory=list)
    shortfall: list[LineShortfall] = field(default_factory=list)

    @property
    def total_allocated(self) -> float:
        return sum(p.qty for p in self.picks)

    @property
    def fully_allocated(self) -> bool:
        return not self.shortfall


@dataclass
class PickListResult:
    task: WarehouseTask
    items: list[PickListItem]
    shortfall: list[LineShortfall]


class FefoAllocator:
    """First-expired-first-out pick allocation against one location.

    Planning is a snapshot read and writes nothing. Allocation is not a
    reservation: stock is only decremented when a pick is recorded.
    """

    def __init__(
        self,
        db: Session,
        tasks: TaskStore | None = None,
        *,
        ledger: InventoryLedger | None = None,
        on_task_created: TaskHook | None = None,
        on_task_completed: TaskHook | None = None,
    ):
        self.db = db
        self.tasks = tasks or TaskStore(db)
        self.ledger = ledger or InventoryLedger(db)
        self._on_created = on_task_created
        self._on_completed = on_task_completed

    # -- planning -----------------------------------------------------------

    def _lot_slices(self, product_id: str, location_id: str) -> list[StockSlice]:
        rows = self.db.execute(
            select(InventoryLine, Lot.expiration_date)
            .join(Lot, Lot.id == InventoryLine.lot_id)
            .where(InventoryLine.product_id == product_id,
                   InventoryLine.location_id == location_id,
                   InventoryLine.status == "available",
                   InventoryLine.lot_id.is_not(None),
                   InventoryLine.qty_on_hand > 0)
            # nulls last on every backend
            .order_by(Lot.expiration_date.is_(None), Lot.expiration_date.asc(),
                      InventoryLine.created_at.asc(), InventoryLine.id.asc())
        ).all()
        return [_slice(line, exp) for line, exp in rows]

    def _plain_slices(self, product_id: str, location_id: str) -> list[StockSlice]:
        rows = self.db.execute(
            select(InventoryLine)
            .where(InventoryLine.product_id == product_id,
                   InventoryLine.location_id == location_id,
                   InventoryLine.status == "available",
                   InventoryLine.lot_id.is_(None),
                   InventoryLine.qty_on_hand > 0)
            .order_by(InventoryLine.created_at.asc(), InventoryLine.id.asc())
        ).scalars().all()
        return [_slice(line, None) for line in rows]

    def plan(self, demand: list[DemandLine], location_id: str) -> AllocationPlan:
        plan = AllocationPlan()
        consumed: dict[str, float] = defaultdict(float)
        seq = 1
        for d in demand:
            need = float(d.qty)
            if need <= 0:
                continue
            remaining = need
            for source in (self._lot_slices, self._plain_slices):
                if remaining <= 0:
                    break
                for s in source(d.product_id, location_id):
                    if remaining <= 0:
                        break
                    avail = s.available - consumed[s.inventory_line_id]
                    if avail <= 0:
                        continue
                    take = min(remaining, avail)
                    consumed[s.inventory_line_id] += take
                    plan.picks.append(PlannedPick(
                        order_line_id=d.order_line_id, product_id=d.product_id, location_id=location_id,
                        sublocation_id=s.sublocation_id, lot_id=s.lot_id, qty=take, sequence_number=seq,
                    ))
                    seq += 1
                    remaining -= take
            if remaining > 0:
                plan.shortfall.append(LineShortfall(
                    order_line_id=d.order_line_id, product_id=d.product_id,
                    requested=need, allocated=need - remaining, short=remaining,
                ))
        return plan

    # -- pick list ----------------------------------------------------------

    def generate_pick_list(self, order_id: str, location_id: str, *, actor: str | None) -> PickListResult:
        with unit_of_work(self.db):
            order = self.db.get(OutboundOrder, order_id)
            if not order:
                raise NotFound("OutboundOrder", order_id)
            lines = self.db.execute(
                select(OutboundOrderLine)
                .where(OutboundOrderLine.order_id == order_id, OutboundOrderLine.qty_requested > 0)
                .order_by(OutboundOrderLine.created_at.asc(), OutboundOrderLine.id.asc())
            ).scalars().all()
            demand = [DemandLine(ln.id, ln.product_id, float(ln.qty_requested) - float(ln.qty_shipped or 0))
                      for ln in lines]
            demand = [d for d in demand if d.qty > 0]
            if not demand:
                raise ValidationError("No items to pick for this order")

            plan = self.plan(demand, location_id)
            task = self.tasks.create_task(TaskSpec(
                task_type="pick",
                priority=settings.PICK_TASK_PRIORITY,
                client_id=order.client_id,
                order_id=order_id,
                order_type="outbound",
                source_location_id=location_id,
                qty_requested=sum(d.qty for d in demand),
                meta={"item_count": len(demand), "shortfall": [asdict(s) for s in plan.shortfall]},
            ), actor=actor)

            items = []
            for p in plan.picks:
                item = PickListItem(
                    task_id=task.id, outbound_item_id=p.order_line_id, product_id=p.product_id, lot_id=p.lot_id,
                    location_id=p.location_id, sublocation_id=p.sublocation_id, qty_allocated=p.qty,
                    qty_picked=0, qty_short=0, sequence_number=p.sequence_number, status="pending",
                )
                self.db.add(item)
                items.append(item)
            self.db.flush()

            if plan.shortfall:
                logger.warning("pick_list_under_allocated", extra={
                    "order_id": order_id, "task_id": task.id,
                    "short_lines": len(plan.shortfall), "short_qty": sum(s.short for s in plan.shortfall),
                })
            logger.info("pick_list_generated", extra={
                "order_id": order_id, "task_id": task.id, "task_number": task.task_number,
                "items": len(items), "qty_allocated": plan.total_allocated,
            })
            if self._on_created:
                self._on_created(task)
        return PickListResult(task=task, items=items, shortfall=plan.shortfall)

    def pick_list(self, task_id: str) -> list[PickListItem]:
        self.tasks.get(task_id)
        return self.tasks.pick_items(task_id)

    # -- execution ----------------------------------------------------------

    def _open_item(self, item_id: str, action: str) -> tuple[PickListItem, WarehouseTask]:
        item = self.tasks.get_pick_item(item_id, for_update=True)
        task = self.tasks.get(item.task_id, for_update=True)
        if task.is_terminal:
            raise InvalidStateTransition("WarehouseTask", task.id, task.status, action)
        if item.status != "pending":
            raise InvalidStateTransition("PickListItem", item.id, item.status, action)
        return item, task

    def record_pick(self, item_id: str, qty_picked: float, *, actor: str | None) -> PickListItem:
        qty = float(qty_picked)
        if qty <= 0:
            raise ValidationError("qty_picked must be positive")
        with unit_of_work(self.db):
            item, task = self._open_item(item_id, "pick")
            # only pending items reach here, so nothing has been picked or shorted yet
            allocated = float(item.qty_allocated)
            if qty > allocated:
                raise InsufficientInventory(
                    f"Cannot pick {qty:g}; only {allocated:g} allocated on item {item.id}",
                    requested=qty, available=allocated,
                )

            self.ledger.apply_delta(
                product_id=item.product_id, location_id=item.location_id, sublocation_id=item.sublocation_id,
                lot_id=item.lot_id, qty_change=-qty, transaction_type="pick",
                reference_type="warehouse_task", reference_id=task.id,
                notes=f"Picked {qty:g} units", performed_by=actor,
            )
            item.qty_picked = float(item.qty_picked) + qty
            item.status = "picked"
            item.picked_by = actor
            item.picked_at = utcnow()

            if item.outbound_item_id:
                self.db.execute(
                    update(OutboundOrderLine)
                    .where(OutboundOrderLine.id == item.outbound_item_id)
                    .values(qty_shipped=OutboundOrderLine.qty_shipped + qty)
                    .execution_options(synchronize_session=False)
                )
            audit(self.db, actor=actor, action="PICK_RECORDED", entity_type="PickListItem", entity_id=item.id,
                  payload={"task_id": task.id, "qty_picked": qty, "lot_id": item.lot_id,
                           "sublocation_id": item.sublocation_id})
            logger.info("pick_recorded", extra={"task_id": task.id, "item_id": item.id, "qty": qty})
            self._complete_if_done(task, actor=actor)
        return item

    def record_short_pick(self, item_id: str, qty_short: float, reason: str | None, *, actor: str | None) -> PickListItem:
        qty = float(qty_short)
        if qty <= 0:
            raise ValidationError("qty_short must be positive")
        with unit_of_work(self.db):
            item, task = self._open_item(item_id, "short pick")
            allocated = float(item.qty_allocated)
            if qty > allocated:
                raise ValidationError(f"qty_short {qty:g} exceeds the {allocated:g} allocated on item {item.id}")
            item.qty_short = qty
            item.status = "short"
            item.notes = reason or "Short pick"
            audit(self.db, actor=actor, action="SHORT_PICK", entity_type="PickListItem", entity_id=item.id,
                  reason=reason, payload={"task_id": task.id, "qty_short": qty})
            logger.warning("short_pick_recorded", extra={"task_id": task.id, "item_id": item.id, "qty_short": qty})
            self._complete_if_done(task, actor=actor)
        return item

    def skip_item(self, item_id: str, reason: str | None, *, actor: str | None) -> PickListItem:
        with unit_of_work(self.db):
            item, task = self._open_item(item_id, "skip")
            item.status = "skipped"
            item.notes = reason or "Skipped"
            audit(self.db, actor=actor, action="PICK_SKIPPED", entity_type="PickListItem", entity_id=item.id,
                  reason=reason, payload={"task_id": task.id})
            self._complete_if_done(task, actor=actor)
        return item

    def _complete_if_done(self, task: WarehouseTask, *, actor: str | None) -> bool:
        self.db.flush()
        items = self.tasks.pick_items(task.id)
        if not items or any(i.status not in TERMINAL_PICK_ITEM_STATUSES for i in items):
            return False
        total = sum(float(i.qty_picked) for i in items)
        shorts = sum(1 for i in items if i.status == "short")
        self.tasks.mark_finished(
            task, "completed", qty_completed=total,
            notes=f"Pick complete. {total:g} units picked, {shorts} short picks", actor=actor,
        )
        logger.info("pick_task_auto_completed", extra={"task_id": task.id, "qty_picked": total, "short_picks": shorts})
        if self._on_completed:
            self._on_completed(task)
        return True


def _slice(line: InventoryLine, expiration: date | None) -> StockSlice:
    return StockSlice(
        inventory_line_id=line.id,
        product_id=line.product_id,
        location_id=line.location_id,
        sublocation_id=line.sublocation_id,
        lot_id=line.lot_id,
        expiration_date=expiration,
        available=float(line.qty_on_hand) - float(line.qty_reserved or 0),
    )
