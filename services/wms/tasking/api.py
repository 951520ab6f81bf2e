from datetime import datetime
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.core.security import get_principal
from app.db.models.wms.tasking import WarehouseTask
from services.wms.exceptions import ValidationError
from services.wms.integrations import OutboxNotifier, SqlDamageReporter, SqlWorkflowProfileLookup
from services.wms.tasking.service import TaskLifecycleController, TaskSpec, TaskFilters

router = APIRouter(prefix="/tasks", tags=["tasks"])

_SPEC_FIELDS = (
    "client_id", "product_id", "order_id", "order_type", "source_location_id", "source_sublocation_id",
    "destination_location_id", "destination_sublocation_id", "lpn_id", "lot_id", "notes",
)


def get_controller(db: Session = Depends(get_db)) -> TaskLifecycleController:
    return TaskLifecycleController(
        db,
        damage_reporter=SqlDamageReporter(db),
        profiles=SqlWorkflowProfileLookup(db),
        notifier=OutboxNotifier(db),
    )


def number(payload: dict, key: str, *, required: bool = True) -> float | None:
    value = payload.get(key)
    if value is None:
        if required:
            raise ValidationError(f"'{key}' is required")
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{key}' must be a number")


def _iso(dt):
    return dt.isoformat() if dt else None


def task_out(t: WarehouseTask) -> dict:
    return {
        "id": t.id,
        "task_number": t.task_number,
        "task_type": t.task_type,
        "status": t.status,
        "priority": t.priority,
        "client_id": t.client_id,
        "product_id": t.product_id,
        "order_id": t.order_id,
        "order_type": t.order_type,
        "source_location_id": t.source_location_id,
        "source_sublocation_id": t.source_sublocation_id,
        "destination_location_id": t.destination_location_id,
        "destination_sublocation_id": t.destination_sublocation_id,
        "lpn_id": t.lpn_id,
        "lot_id": t.lot_id,
        "qty_requested": float(t.qty_requested),
        "qty_completed": float(t.qty_completed),
        "assigned_to": t.assigned_to,
        "assigned_at": _iso(t.assigned_at),
        "started_at": _iso(t.started_at),
        "completed_at": _iso(t.completed_at),
        "due_by": _iso(t.due_by),
        "notes": t.notes,
        "meta": t.meta or {},
        "created_by": t.created_by,
        "completed_by": t.completed_by,
        "created_at": _iso(t.created_at),
    }


def _spec(payload: dict) -> TaskSpec:
    if not payload.get("task_type"):
        raise ValidationError("'task_type' is required")
    due_by = payload.get("due_by")
    if due_by:
        try:
            due_by = datetime.fromisoformat(due_by)
        except (TypeError, ValueError):
            raise ValidationError("'due_by' must be an ISO-8601 timestamp")
    priority = number(payload, "priority", required=False)
    return TaskSpec(
        task_type=payload["task_type"],
        priority=int(priority) if priority is not None else None,
        qty_requested=number(payload, "qty_requested", required=False) or 0,
        due_by=due_by or None,
        meta=payload.get("meta") or {},
        **{k: payload.get(k) for k in _SPEC_FIELDS},
    )


@router.post("")
def create_task(payload: dict, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    return task_out(c.create(_spec(payload), actor=p.actor))


@router.get("")
def list_tasks(task_type: str | None = None, status: str | None = None, assigned_to: str | None = None,
               client_id: str | None = None, order_id: str | None = None,
               c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    statuses = [s for s in status.split(",") if s] if status else None
    f = TaskFilters(task_type=task_type, status=statuses, assigned_to=assigned_to,
                    client_id=client_id, order_id=order_id)
    return [task_out(t) for t in c.list_pending(f)]


@router.get("/my")
def my_tasks(c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    return [task_out(t) for t in c.my_tasks(p.actor)]


@router.get("/counts")
def task_counts(c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    return {"by_type": c.counts_by_type(), "pending": c.pending_count()}


@router.post("/putaway")
def create_putaway(payload: dict, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    task = c.create_putaway_task(
        product_id=payload.get("product_id"),
        order_id=payload.get("order_id"),
        order_type=payload.get("order_type") or "inbound",
        client_id=payload.get("client_id"),
        source_location_id=payload.get("source_location_id"),
        qty_requested=number(payload, "qty_requested", required=False) or 0,
        lpn_id=payload.get("lpn_id"),
        lot_id=payload.get("lot_id"),
        meta=payload.get("meta"),
        actor=p.actor,
    )
    return task_out(task)


@router.get("/{task_id}")
def task_detail(task_id: str, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    return task_out(c.get(task_id))


@router.post("/{task_id}/assign")
def assign(task_id: str, payload: dict, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    return task_out(c.assign(task_id, payload.get("assignee") or p.actor, actor=p.actor))


@router.post("/{task_id}/start")
def start(task_id: str, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    return task_out(c.start(task_id, actor=p.actor))


@router.post("/{task_id}/complete")
def complete(task_id: str, payload: dict, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    task = c.complete(task_id, qty_completed=number(payload, "qty_completed", required=False),
                      notes=payload.get("notes"), actor=p.actor)
    return task_out(task)


@router.post("/{task_id}/fail")
def fail(task_id: str, payload: dict, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    return task_out(c.fail(task_id, payload.get("reason") or "", actor=p.actor))


@router.post("/{task_id}/cancel")
def cancel(task_id: str, payload: dict | None = None, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    return task_out(c.cancel(task_id, actor=p.actor, reason=(payload or {}).get("reason")))


@router.get("/{task_id}/inspection/criteria")
def inspection_criteria(task_id: str, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    return [cr.to_dict() for cr in c.inspection_criteria(task_id)]


@router.post("/{task_id}/inspection")
def submit_inspection(task_id: str, payload: dict, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    outcome = c.submit_inspection(task_id, payload.get("results") or [], payload.get("overall_result") or "",
                                  payload.get("notes"), actor=p.actor)
    return {
        "result": {
            "id": outcome.result.id,
            "overall_result": outcome.result.overall_result,
            "results": outcome.result.results,
            "inspector_notes": outcome.result.inspector_notes,
            "inspected_by": outcome.result.inspected_by,
            "inspected_at": _iso(outcome.result.inspected_at),
        },
        "task": task_out(outcome.task),
        "released_qty": outcome.released_qty,
        "putaway_task_id": outcome.putaway_task.id if outcome.putaway_task else None,
        "damage_report_id": getattr(outcome.damage_report, "id", None),
    }


@router.get("/{task_id}/putaway/suggestion")
def putaway_suggestion(task_id: str, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    s = c.suggest_putaway(task_id)
    return {"location_id": s.location_id, "sublocation_id": s.sublocation_id,
            "sublocation_code": s.sublocation_code, "reason": s.reason}


@router.post("/{task_id}/putaway/complete")
def putaway_complete(task_id: str, payload: dict, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    if not payload.get("sublocation_id"):
        raise ValidationError("'sublocation_id' is required")
    return task_out(c.complete_putaway(task_id, payload["sublocation_id"], actor=p.actor))
