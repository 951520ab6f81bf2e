from dataclasses import asdict
from fastapi import APIRouter, Depends
from app.core.security import get_principal
from app.db.models.wms.tasking import PickListItem
from services.wms.exceptions import ValidationError
from services.wms.tasking.api import get_controller, number, task_out
from services.wms.tasking.service import TaskLifecycleController

router = APIRouter(prefix="/pick-lists", tags=["pick-lists"])


def item_out(i: PickListItem) -> dict:
    return {
        "id": i.id,
        "task_id": i.task_id,
        "outbound_item_id": i.outbound_item_id,
        "product_id": i.product_id,
        "lot_id": i.lot_id,
        "location_id": i.location_id,
        "sublocation_id": i.sublocation_id,
        "sequence_number": i.sequence_number,
        "qty_allocated": float(i.qty_allocated),
        "qty_picked": float(i.qty_picked),
        "qty_short": float(i.qty_short),
        "status": i.status,
        "picked_by": i.picked_by,
        "picked_at": i.picked_at.isoformat() if i.picked_at else None,
        "notes": i.notes,
    }


@router.post("")
def generate(payload: dict, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    order_id, location_id = payload.get("order_id"), payload.get("location_id")
    if not order_id or not location_id:
        raise ValidationError("'order_id' and 'location_id' are required")
    res = c.generate_pick_list(order_id, location_id, actor=p.actor)
    return {
        "task": task_out(res.task),
        "items": [item_out(i) for i in res.items],
        "shortfall": [asdict(s) for s in res.shortfall],
    }


@router.get("/{task_id}/items")
def list_items(task_id: str, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    return [item_out(i) for i in c.pick_list(task_id)]


@router.post("/items/{item_id}/pick")
def pick(item_id: str, payload: dict, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    item = c.record_pick(item_id, number(payload, "qty"), actor=p.actor)
    return {"item": item_out(item), "task": task_out(c.get(item.task_id))}


@router.post("/items/{item_id}/short")
def short(item_id: str, payload: dict, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    item = c.record_short_pick(item_id, number(payload, "qty_short"), payload.get("reason"), actor=p.actor)
    return {"item": item_out(item), "task": task_out(c.get(item.task_id))}


@router.post("/items/{item_id}/skip")
def skip(item_id: str, payload: dict, c: TaskLifecycleController = Depends(get_controller), p=Depends(get_principal)):
    item = c.skip_pick_item(item_id, payload.get("reason"), actor=p.actor)
    return {"item": item_out(item), "task": task_out(c.get(item.task_id))}
