from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from sqlalchemy.orm import Session
from sqlalchemy import select, func
from sqlalchemy.dialects import postgresql, sqlite
from app.core import settings
from app.core.audit import audit
from app.db.models.wms.common import utcnow
from app.db.models.wms.tasking import WarehouseTask, PickListItem, TaskSequence, TASK_TYPES
from services.wms.exceptions import NotFound, ValidationError

TASK_PREFIXES = {"inspection": "INS", "putaway": "PUT", "pick": "PCK"}
OPEN_STATUSES = ("pending", "assigned", "in_progress")


@dataclass
class TaskSpec:
    task_type: str
    priority: int | None = None
    client_id: str | None = None
    product_id: str | None = None
    order_id: str | None = None
    order_type: str | None = None
    source_location_id: str | None = None
    source_sublocation_id: str | None = None
    destination_location_id: str | None = None
    destination_sublocation_id: str | None = None
    lpn_id: str | None = None
    lot_id: str | None = None
    qty_requested: float = 0
    due_by: datetime | None = None
    notes: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskFilters:
    task_type: str | None = None
    status: str | list[str] | None = None
    assigned_to: str | None = None
    client_id: str | None = None
    order_id: str | None = None
    order_type: str | None = None
    priority: int | None = None


@contextmanager
def unit_of_work(db: Session):
    """Commit on success, roll back and re-raise on any error."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def next_sequence_value(db: Session, key: str) -> int:
    """Atomically increment and return the counter stored under ``key``.

    One INSERT .. ON CONFLICT DO UPDATE .. RETURNING statement: the database
    serializes concurrent callers on the row, so no two callers see the same value.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        insert = postgresql.insert
    elif dialect == "sqlite":
        insert = sqlite.insert
    else:
        raise NotImplementedError(f"Task sequences are not supported on {dialect}")

    stmt = insert(TaskSequence).values(key=key, value=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=[TaskSequence.key],
        set_={"value": TaskSequence.value + 1},
    ).returning(TaskSequence.value)
    return int(db.execute(stmt).scalar_one())


def next_document_number(db: Session, prefix: str) -> str:
    year = utcnow().year
    seq = next_sequence_value(db, f"{prefix}-{year}")
    return f"{prefix}-{year}-{seq:05d}"


class TaskStore:
    def __init__(self, db: Session):
        self.db = db

    def next_task_number(self, task_type: str) -> str:
        return next_document_number(self.db, TASK_PREFIXES[task_type])

    def add(self, task: WarehouseTask) -> WarehouseTask:
        self.db.add(task)
        self.db.flush()
        return task

    def create_task(self, spec: TaskSpec, *, actor: str | None) -> WarehouseTask:
        if spec.task_type not in TASK_TYPES:
            raise ValidationError(f"Unknown task type '{spec.task_type}'")
        priority = settings.DEFAULT_TASK_PRIORITY if spec.priority is None else int(spec.priority)
        if not settings.MIN_TASK_PRIORITY <= priority <= settings.MAX_TASK_PRIORITY:
            raise ValidationError(
                f"Priority must be between {settings.MIN_TASK_PRIORITY} and {settings.MAX_TASK_PRIORITY}")
        if spec.qty_requested is None or float(spec.qty_requested) < 0:
            raise ValidationError("qty_requested must be zero or positive")

        task = self.add(WarehouseTask(
            task_number=self.next_task_number(spec.task_type),
            task_type=spec.task_type,
            status="pending",
            priority=priority,
            client_id=spec.client_id,
            product_id=spec.product_id,
            order_id=spec.order_id,
            order_type=spec.order_type,
            source_location_id=spec.source_location_id,
            source_sublocation_id=spec.source_sublocation_id,
            destination_location_id=spec.destination_location_id,
            destination_sublocation_id=spec.destination_sublocation_id,
            lpn_id=spec.lpn_id,
            lot_id=spec.lot_id,
            qty_requested=float(spec.qty_requested),
            qty_completed=0,
            due_by=spec.due_by,
            notes=spec.notes,
            meta=dict(spec.meta or {}),
            created_by=actor,
        ))
        audit(self.db, actor=actor, action="TASK_CREATED", entity_type="WarehouseTask", entity_id=task.id,
              payload={"task_number": task.task_number, "task_type": task.task_type, "priority": task.priority,
                       "order_id": task.order_id, "qty_requested": task.qty_requested})
        return task

    def mark_finished(
        self, task: WarehouseTask, status: str, *, qty_completed: float | None, notes: str | None, actor: str | None
    ) -> WarehouseTask:
        """Stamp a terminal status; callers check the transition is legal."""
        prior = task.status
        task.status = status
        if qty_completed is not None:
            task.qty_completed = float(qty_completed)
        if notes is not None:
            task.notes = notes
        task.completed_at = utcnow()
        if status in ("completed", "failed"):
            task.completed_by = actor
        self.db.flush()
        audit(self.db, actor=actor, action=f"TASK_{status.upper()}", entity_type="WarehouseTask", entity_id=task.id,
              reason=notes, payload={"from": prior, "to": status, "qty_completed": task.qty_completed})
        return task

    def get(self, task_id: str, *, for_update: bool = False) -> WarehouseTask:
        q = select(WarehouseTask).where(WarehouseTask.id == task_id)
        if for_update:
            q = q.with_for_update()
        task = self.db.execute(q).scalar_one_or_none()
        if not task:
            raise NotFound("WarehouseTask", task_id)
        return task

    def find(self, filters: TaskFilters | None = None) -> list[WarehouseTask]:
        f = filters or TaskFilters()
        q = select(WarehouseTask)
        if f.task_type:
            q = q.where(WarehouseTask.task_type == f.task_type)
        if f.status:
            if isinstance(f.status, (list, tuple)):
                q = q.where(WarehouseTask.status.in_(list(f.status)))
            else:
                q = q.where(WarehouseTask.status == f.status)
        if f.assigned_to:
            q = q.where(WarehouseTask.assigned_to == f.assigned_to)
        if f.client_id:
            q = q.where(WarehouseTask.client_id == f.client_id)
        if f.order_id:
            q = q.where(WarehouseTask.order_id == f.order_id)
        if f.order_type:
            q = q.where(WarehouseTask.order_type == f.order_type)
        if f.priority is not None:
            q = q.where(WarehouseTask.priority == f.priority)
        q = q.order_by(WarehouseTask.priority.desc(), WarehouseTask.created_at.asc())
        return list(self.db.execute(q).scalars().all())

    def counts_by_type(self) -> dict[str, dict[str, int]]:
        counts = {t: {"pending": 0, "in_progress": 0} for t in TASK_TYPES}
        rows = self.db.execute(
            select(WarehouseTask.task_type, WarehouseTask.status, func.count())
            .where(WarehouseTask.status.in_(OPEN_STATUSES))
            .group_by(WarehouseTask.task_type, WarehouseTask.status)
        ).all()
        for task_type, status, n in rows:
            if task_type not in counts:
                continue
            # assigned work is already claimed, so it counts as in progress
            bucket = "pending" if status == "pending" else "in_progress"
            counts[task_type][bucket] += n
        return counts

    def pending_count(self) -> int:
        return int(self.db.execute(
            select(func.count()).select_from(WarehouseTask)
            .where(WarehouseTask.status.in_(("pending", "assigned")))
        ).scalar() or 0)

    def pick_items(self, task_id: str) -> list[PickListItem]:
        return list(self.db.execute(
            select(PickListItem)
            .where(PickListItem.task_id == task_id)
            .order_by(PickListItem.sequence_number.asc())
        ).scalars().all())

    def get_pick_item(self, item_id: str, *, for_update: bool = False) -> PickListItem:
        q = select(PickListItem).where(PickListItem.id == item_id)
        if for_update:
            q = q.with_for_update()
        item = self.db.execute(q).scalar_one_or_none()
        if not item:
            raise NotFound("PickListItem", item_id)
        return item
