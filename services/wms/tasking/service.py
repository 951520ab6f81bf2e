from __future__ import annotations
from dataclasses import replace
from typing import Any
from sqlalchemy.orm import Session
from sqlalchemy import select
from app.core.audit import audit
from app.core.logging_config import LogContext, get_logger
from app.db.models.inventory_exec import Sublocation
from app.db.models.wms.common import utcnow
from app.db.models.wms.tasking import WarehouseTask, InspectionResult, PickListItem
from services.wms.exceptions import InsufficientInventory, InvalidStateTransition, NotFound, ValidationError
from services.wms.integrations import DamageReporter, InspectionCriterion, Notifier, WorkflowProfileLookup
from services.wms.inventory_ops.allocation_service import FefoAllocator, PickListResult
from services.wms.inventory_ops.ledger import InventoryLedger
from services.wms.inventory_ops.putaway_rules import PutawaySuggestion, putaway_priority, suggest_putaway
from services.wms.tasking.inspection import InspectionOutcome, InspectionWorkflow
from services.wms.tasking.store import TaskFilters, TaskSpec, TaskStore, OPEN_STATUSES, unit_of_work

logger = get_logger("tasking.service")

__all__ = ["TaskLifecycleController", "TaskSpec", "TaskFilters"]


class TaskLifecycleController:
    """Single entry point for warehouse task work.

    State machine: pending -> assigned -> in_progress -> completed | failed,
    cancelled from any non-terminal state. Terminal states are final.
    Every public mutation commits its own unit of work.
    """

    def __init__(
        self,
        db: Session,
        *,
        damage_reporter: DamageReporter | None = None,
        profiles: WorkflowProfileLookup | None = None,
        notifier: Notifier | None = None,
    ):
        self.db = db
        self.tasks = TaskStore(db)
        self.ledger = InventoryLedger(db)
        self.notifier = notifier
        self.allocator = FefoAllocator(
            db, self.tasks, ledger=self.ledger,
            on_task_created=self._task_created, on_task_completed=self._task_completed,
        )
        self.inspection = InspectionWorkflow(
            db, self.tasks, ledger=self.ledger, profiles=profiles, damage_reporter=damage_reporter,
            create_putaway=self.create_putaway_task, on_task_completed=self._task_completed,
        )

    # -- notifications --------------------------------------------------------

    def _emit(self, topic: str, task: WarehouseTask) -> None:
        if self.notifier is None:
            return
        payload = {
            "task_id": task.id, "task_number": task.task_number, "task_type": task.task_type,
            "status": task.status, "order_id": task.order_id, "assigned_to": task.assigned_to,
        }
        try:
            self.notifier.notify(topic, payload)
        except Exception:
            logger.exception("task_notification_failed", extra={"topic": topic, "task_id": task.id})

    def _task_created(self, task: WarehouseTask) -> None:
        self._emit("wms.task.created", task)

    def _task_completed(self, task: WarehouseTask) -> None:
        self._emit("wms.task.completed", task)

    # -- lifecycle ------------------------------------------------------------

    def create(self, spec: TaskSpec, *, actor: str | None) -> WarehouseTask:
        with unit_of_work(self.db):
            task = self.tasks.create_task(spec, actor=actor)
            logger.info("task_created", extra={
                "task_id": task.id, "task_number": task.task_number,
                "task_type": task.task_type, "priority": task.priority,
            })
            self._task_created(task)
        return task

    def get(self, task_id: str) -> WarehouseTask:
        return self.tasks.get(task_id)

    def _open_task(self, task_id: str, action: str) -> WarehouseTask:
        task = self.tasks.get(task_id, for_update=True)
        if task.is_terminal:
            raise InvalidStateTransition("WarehouseTask", task.id, task.status, action)
        return task

    def assign(self, task_id: str, assignee: str, *, actor: str | None) -> WarehouseTask:
        if not assignee:
            raise ValidationError("assignee is required")
        with unit_of_work(self.db):
            task = self._open_task(task_id, "assign")
            prior = task.status
            task.assigned_to = assignee
            task.assigned_at = utcnow()
            # re-assigning running work must not move it back to assigned
            if task.status != "in_progress":
                task.status = "assigned"
            audit(self.db, actor=actor, action="TASK_ASSIGNED", entity_type="WarehouseTask", entity_id=task.id,
                  payload={"from": prior, "to": task.status, "assigned_to": assignee})
            logger.info("task_assigned", extra={"task_id": task.id, "assigned_to": assignee})
        return task

    def start(self, task_id: str, *, actor: str | None) -> WarehouseTask:
        with unit_of_work(self.db):
            task = self._open_task(task_id, "start")
            if task.status == "in_progress":
                return task
            prior = task.status
            task.status = "in_progress"
            task.started_at = utcnow()
            audit(self.db, actor=actor, action="TASK_STARTED", entity_type="WarehouseTask", entity_id=task.id,
                  payload={"from": prior, "to": task.status})
        return task

    def complete(
        self, task_id: str, *, qty_completed: float | None = None, notes: str | None = None, actor: str | None
    ) -> WarehouseTask:
        with LogContext.bind(task_id=task_id, actor_id=actor), unit_of_work(self.db):
            task = self._open_task(task_id, "complete")
            if task.task_type == "inspection":
                has_result = self.db.execute(
                    select(InspectionResult.id).where(InspectionResult.task_id == task.id)
                ).scalar_one_or_none()
                if not has_result:
                    raise ValidationError("Inspection tasks are completed by submitting an inspection result")
            qty = float(task.qty_requested) if qty_completed is None else float(qty_completed)
            if qty < 0 or qty > float(task.qty_requested):
                raise ValidationError(
                    f"qty_completed must be between 0 and {float(task.qty_requested):g}, got {qty:g}")
            self.tasks.mark_finished(task, "completed", qty_completed=qty, notes=notes, actor=actor)
            logger.info("task_completed", extra={"task_number": task.task_number, "qty_completed": qty})
            self._task_completed(task)
        return task

    def fail(self, task_id: str, reason: str, *, actor: str | None) -> WarehouseTask:
        if not reason:
            raise ValidationError("A failure reason is required")
        with LogContext.bind(task_id=task_id, actor_id=actor), unit_of_work(self.db):
            task = self._open_task(task_id, "fail")
            self.tasks.mark_finished(task, "failed", qty_completed=None, notes=reason, actor=actor)
            logger.warning("task_failed", extra={"task_number": task.task_number, "reason": reason})
            self._emit("wms.task.failed", task)
        return task

    def cancel(self, task_id: str, *, actor: str | None, reason: str | None = None) -> WarehouseTask:
        with unit_of_work(self.db):
            task = self._open_task(task_id, "cancel")
            self.tasks.mark_finished(task, "cancelled", qty_completed=None, notes=reason, actor=actor)
            logger.info("task_cancelled", extra={"task_id": task.id, "task_number": task.task_number})
        return task

    # -- queues ---------------------------------------------------------------

    def list_pending(self, filters: TaskFilters | None = None) -> list[WarehouseTask]:
        f = filters or TaskFilters()
        if not f.status:
            f = replace(f, status=list(OPEN_STATUSES))
        return self.tasks.find(f)

    def my_tasks(self, user_id: str) -> list[WarehouseTask]:
        return self.tasks.find(TaskFilters(assigned_to=user_id, status=["assigned", "in_progress"]))

    def counts_by_type(self) -> dict[str, dict[str, int]]:
        return self.tasks.counts_by_type()

    def pending_count(self) -> int:
        return self.tasks.pending_count()

    # -- putaway --------------------------------------------------------------

    def create_putaway_task(
        self,
        *,
        product_id: str | None = None,
        order_id: str | None = None,
        order_type: str = "inbound",
        client_id: str | None = None,
        source_location_id: str | None = None,
        qty_requested: float = 0,
        lpn_id: str | None = None,
        lot_id: str | None = None,
        meta: dict[str, Any] | None = None,
        actor: str | None,
    ) -> WarehouseTask:
        dest_location_id = None
        dest_sublocation_id = None
        if product_id and source_location_id:
            try:
                s = suggest_putaway(self.db, product_id=product_id, location_id=source_location_id,
                                    qty=float(qty_requested or 1))
                if s.sublocation_id:
                    dest_location_id, dest_sublocation_id = s.location_id, s.sublocation_id
            except Exception:
                # task is still created, just without a destination
                logger.warning("putaway_suggestion_failed", exc_info=True, extra={"product_id": product_id})

        return self.create(TaskSpec(
            task_type="putaway",
            priority=putaway_priority(self.db, product_id),
            product_id=product_id,
            order_id=order_id,
            order_type=order_type,
            client_id=client_id,
            source_location_id=source_location_id,
            destination_location_id=dest_location_id,
            destination_sublocation_id=dest_sublocation_id,
            qty_requested=qty_requested or 0,
            lpn_id=lpn_id,
            lot_id=lot_id,
            meta=meta or {},
        ), actor=actor)

    def suggest_putaway(self, task_id: str) -> PutawaySuggestion:
        task = self.tasks.get(task_id)
        if task.task_type != "putaway" or not task.product_id or not task.source_location_id:
            raise ValidationError("Putaway suggestions need a putaway task with a product and source location")
        return suggest_putaway(self.db, product_id=task.product_id, location_id=task.source_location_id,
                               qty=float(task.qty_requested or 1))

    def complete_putaway(self, task_id: str, sublocation_id: str, *, actor: str | None) -> WarehouseTask:
        with LogContext.bind(task_id=task_id, actor_id=actor), unit_of_work(self.db):
            task = self._open_task(task_id, "complete putaway for")
            if task.task_type != "putaway":
                raise ValidationError(f"Task {task.task_number} is not a putaway task")
            sub = self.db.get(Sublocation, sublocation_id)
            if sub is None:
                raise NotFound("Sublocation", sublocation_id)
            if task.source_location_id and sub.location_id != task.source_location_id:
                raise ValidationError(f"Sub-location {sub.code} is not in the task's location")

            qty = float(task.qty_requested)
            if task.product_id and task.source_location_id and qty > 0:
                try:
                    self.ledger.move(
                        product_id=task.product_id, location_id=task.source_location_id,
                        from_sublocation_id=task.source_sublocation_id, to_sublocation_id=sub.id,
                        lot_id=task.lot_id, qty=qty, transaction_type="putaway",
                        reference_type="warehouse_task", reference_id=task.id,
                        notes=f"Putaway to sublocation {sub.code}", performed_by=actor,
                    )
                except InsufficientInventory:
                    logger.warning("putaway_stock_not_staged", exc_info=True,
                                   extra={"product_id": task.product_id, "qty": qty})

            task.destination_location_id = sub.location_id
            task.destination_sublocation_id = sub.id
            self.tasks.mark_finished(task, "completed", qty_completed=qty,
                                     notes=f"Put away to sublocation {sub.code}", actor=actor)
            self._task_completed(task)
        return task

    # -- inspection -----------------------------------------------------------

    def inspection_criteria(self, task_id: str) -> list[InspectionCriterion]:
        task = self.tasks.get(task_id)
        return self.inspection.criteria_for(task.client_id)

    def submit_inspection(
        self, task_id: str, results: list[dict], overall_result: str, notes: str | None = None, *, actor: str | None
    ) -> InspectionOutcome:
        with LogContext.bind(task_id=task_id, actor_id=actor):
            return self.inspection.submit(task_id, results, overall_result, notes, actor=actor)

    # -- picking --------------------------------------------------------------

    def generate_pick_list(self, order_id: str, location_id: str, *, actor: str | None) -> PickListResult:
        return self.allocator.generate_pick_list(order_id, location_id, actor=actor)

    def pick_list(self, task_id: str) -> list[PickListItem]:
        return self.allocator.pick_list(task_id)

    def record_pick(self, item_id: str, qty_picked: float, *, actor: str | None) -> PickListItem:
        return self.allocator.record_pick(item_id, qty_picked, actor=actor)

    def record_short_pick(self, item_id: str, qty_short: float, reason: str | None, *, actor: str | None) -> PickListItem:
        return self.allocator.record_short_pick(item_id, qty_short, reason, actor=actor)

    def skip_pick_item(self, item_id: str, reason: str | None, *, actor: str | None) -> PickListItem:
        return self.allocator.skip_item(item_id, reason, actor=actor)
