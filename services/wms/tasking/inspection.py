"""Inspection pass/fail branching.

The inspection record, the quarantine release and the task completion are
committed together first. Follow-on work (a putaway task on pass, a damage
report on fail) runs afterwards and may fail without undoing the inspection.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.logging_config import get_logger
from app.db.models.wms.common import utcnow
from app.db.models.wms.tasking import InspectionResult, WarehouseTask, INSPECTION_RESULTS
from services.wms.exceptions import InvalidStateTransition, ValidationError
from services.wms.integrations import DamageReporter, InspectionCriterion, WorkflowProfileLookup
from services.wms.inventory_ops.ledger import InventoryLedger
from services.wms.tasking.store import TaskStore, unit_of_work

logger = get_logger("tasking.inspection")

DEFAULT_CRITERIA: tuple[InspectionCriterion, ...] = (
    InspectionCriterion(id="visual", label="Visual inspection - no damage", type="pass_fail", required=True),
    InspectionCriterion(id="qty_match", label="Quantity matches PO", type="pass_fail", required=True),
    InspectionCriterion(id="label_check", label="Labels intact and legible", type="pass_fail", required=False),
)


@dataclass
class InspectionOutcome:
    result: InspectionResult
    task: WarehouseTask
    released_qty: float = 0.0
    putaway_task: WarehouseTask | None = None
    damage_report: Any = None


class InspectionWorkflow:
    def __init__(
        self,
        db: Session,
        tasks: TaskStore | None = None,
        *,
        ledger: InventoryLedger | None = None,
        profiles: WorkflowProfileLookup | None = None,
        damage_reporter: DamageReporter | None = None,
        create_putaway: Callable[..., WarehouseTask] | None = None,
        on_task_completed: Callable[[WarehouseTask], None] | None = None,
    ):
        self.db = db
        self.tasks = tasks or TaskStore(db)
        self.ledger = ledger or InventoryLedger(db)
        self.profiles = profiles
        self.damage_reporter = damage_reporter
        self.create_putaway = create_putaway
        self._on_completed = on_task_completed

    def criteria_for(self, client_id: str | None) -> list[InspectionCriterion]:
        if client_id and self.profiles is not None:
            configured = self.profiles.get_inspection_criteria(client_id)
            if configured:
                return list(configured)
        return list(DEFAULT_CRITERIA)

    def _validate_answers(self, task: WarehouseTask, results: list[dict]) -> list[dict]:
        if not isinstance(results, list) or any(not isinstance(r, dict) for r in results):
            raise ValidationError("results must be a list of objects")
        answered = set()
        for r in results:
            cid = r.get("criterion_id") or r.get("id")
            if not cid:
                raise ValidationError("every result needs a criterion_id")
            answered.add(str(cid))
        missing = [c.id for c in self.criteria_for(task.client_id) if c.required and c.id not in answered]
        if missing:
            raise ValidationError(f"Missing answers for required criteria: {', '.join(missing)}")
        return results

    def submit(
        self,
        task_id: str,
        results: list[dict],
        overall_result: str,
        notes: str | None = None,
        *,
        actor: str | None,
    ) -> InspectionOutcome:
        if overall_result not in INSPECTION_RESULTS:
            raise ValidationError(f"overall_result must be one of {', '.join(INSPECTION_RESULTS)}")

        with unit_of_work(self.db):
            task = self.tasks.get(task_id, for_update=True)
            if task.task_type != "inspection":
                raise ValidationError(f"Task {task.task_number} is a {task.task_type} task, not an inspection")
            if task.is_terminal:
                raise InvalidStateTransition("WarehouseTask", task.id, task.status, "submit inspection for")
            existing = self.db.execute(
                select(InspectionResult.id).where(InspectionResult.task_id == task.id)
            ).scalar_one_or_none()
            if existing:
                raise InvalidStateTransition("WarehouseTask", task.id, task.status, "re-submit inspection for")
            answers = self._validate_answers(task, results)

            result = InspectionResult(
                task_id=task.id,
                results=answers,
                overall_result=overall_result,
                inspector_notes=notes,
                inspected_by=actor,
                inspected_at=utcnow(),
            )
            self.db.add(result)
            self.db.flush()

            released = 0.0
            if overall_result == "pass" and task.product_id and task.source_location_id:
                released = self.ledger.set_status(
                    task.product_id, task.source_location_id, "available", "Passed inspection",
                    from_status="quarantine", reference_type="warehouse_task", reference_id=task.id,
                    performed_by=actor,
                )

            self.tasks.mark_finished(
                task, "completed", qty_completed=task.qty_requested,
                notes=f"Inspection {overall_result}: {notes or ''}", actor=actor,
            )
            audit(self.db, actor=actor, action="INSPECTION_SUBMITTED", entity_type="WarehouseTask", entity_id=task.id,
                  reason=notes, payload={"overall_result": overall_result, "released_qty": released})
            logger.info("inspection_submitted", extra={
                "task_id": task.id, "overall_result": overall_result, "released_qty": released,
            })
            if self._on_completed:
                self._on_completed(task)

        outcome = InspectionOutcome(result=result, task=task, released_qty=released)
        if overall_result == "pass":
            outcome.putaway_task = self._spawn_putaway(task, actor=actor)
        elif overall_result == "fail":
            outcome.damage_report = self._report_damage(task, notes, actor=actor)
        return outcome

    def _spawn_putaway(self, task: WarehouseTask, *, actor: str | None) -> WarehouseTask | None:
        if self.create_putaway is None:
            return None
        try:
            return self.create_putaway(
                product_id=task.product_id,
                order_id=task.order_id,
                order_type="inbound",
                client_id=task.client_id,
                source_location_id=task.source_location_id,
                qty_requested=task.qty_requested,
                lpn_id=task.lpn_id,
                lot_id=task.lot_id,
                meta={"from_inspection": task.id},
                actor=actor,
            )
        except Exception:
            self.db.rollback()
            logger.exception("inspection_putaway_failed", extra={"task_id": task.id})
            return None

    def _report_damage(self, task: WarehouseTask, notes: str | None, *, actor: str | None) -> Any:
        if self.damage_reporter is None or not (task.product_id and task.order_id):
            return None
        try:
            report = self.damage_reporter.report_damage(
                task.order_id, task.product_id, float(task.qty_requested), "inspection_failure",
                notes or "Failed inspection", actor=actor,
            )
            self.db.commit()
            return report
        except Exception:
            self.db.rollback()
            logger.exception("inspection_damage_report_failed", extra={"task_id": task.id})
            return None
