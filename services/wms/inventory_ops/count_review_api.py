from datetime import date
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.core.security import get_principal
from app.db.models.wms.counting import CycleCount, CycleCountItem
from services.wms.exceptions import ValidationError
from services.wms.inventory_ops.count_service import CycleCountService

router = APIRouter(prefix="/counts", tags=["counts"])

# blind counters must not see what the system expects until counting is over
_BLIND_STATUSES = ("pending", "in_progress")


def get_count_service(db: Session = Depends(get_db)) -> CycleCountService:
    return CycleCountService(db)


def _iso(dt):
    return dt.isoformat() if dt else None


def _qty(v):
    return float(v) if v is not None else None


def item_out(i: CycleCountItem, *, hide_expected: bool = False) -> dict:
    out = {
        "id": i.id,
        "count_id": i.count_id,
        "product_id": i.product_id,
        "sublocation_id": i.sublocation_id,
        "lot_id": i.lot_id,
        "expected_qty": _qty(i.expected_qty),
        "counted_qty": _qty(i.counted_qty),
        "variance": _qty(i.variance),
        "variance_percent": _qty(i.variance_percent),
        "counted_by": i.counted_by,
        "counted_at": _iso(i.counted_at),
        "adjustment_approved": i.adjustment_approved,
        "notes": i.notes,
    }
    if hide_expected:
        for k in ("expected_qty", "variance", "variance_percent"):
            out.pop(k)
    return out


def _hidden(count: CycleCount) -> bool:
    return bool(count.blind_count) and count.status in _BLIND_STATUSES


def count_out(count: CycleCount, items: list[CycleCountItem] | None = None) -> dict:
    out = {
        "id": count.id,
        "count_number": count.count_number,
        "location_id": count.location_id,
        "count_type": count.count_type,
        "blind_count": count.blind_count,
        "status": count.status,
        "scheduled_date": count.scheduled_date.isoformat() if count.scheduled_date else None,
        "assigned_to": count.assigned_to,
        "started_at": _iso(count.started_at),
        "completed_at": _iso(count.completed_at),
        "approved_by": count.approved_by,
        "approved_at": _iso(count.approved_at),
        "notes": count.notes,
    }
    if items is not None:
        out["items"] = [item_out(i, hide_expected=_hidden(count)) for i in items]
    return out


@router.post("")
def create_count(payload: dict, svc: CycleCountService = Depends(get_count_service), p=Depends(get_principal)):
    if not payload.get("location_id"):
        raise ValidationError("'location_id' is required")
    scheduled = payload.get("scheduled_date")
    if scheduled:
        try:
            scheduled = date.fromisoformat(scheduled)
        except (TypeError, ValueError):
            raise ValidationError("'scheduled_date' must be an ISO date")
    count = svc.create_count(
        payload["location_id"],
        count_type=payload.get("count_type") or "partial",
        blind_count=bool(payload.get("blind_count", False)),
        scheduled_date=scheduled or None,
        assigned_to=payload.get("assigned_to"),
        notes=payload.get("notes"),
        actor=p.actor,
    )
    return count_out(count, [])


@router.get("/{count_id}")
def get_count(count_id: str, svc: CycleCountService = Depends(get_count_service), p=Depends(get_principal)):
    return count_out(svc.get_count(count_id), svc.items(count_id))


@router.post("/{count_id}/items")
def add_item(count_id: str, payload: dict, svc: CycleCountService = Depends(get_count_service), p=Depends(get_principal)):
    if not payload.get("product_id"):
        raise ValidationError("'product_id' is required")
    item = svc.add_item(count_id, payload["product_id"], payload.get("sublocation_id"), payload.get("lot_id"),
                        actor=p.actor)
    return item_out(item, hide_expected=_hidden(svc.get_count(count_id)))


@router.post("/{count_id}/start")
def start(count_id: str, svc: CycleCountService = Depends(get_count_service), p=Depends(get_principal)):
    count = svc.start(count_id, actor=p.actor)
    return count_out(count, svc.items(count_id))


@router.post("/items/{item_id}/record")
def record(item_id: str, payload: dict, svc: CycleCountService = Depends(get_count_service), p=Depends(get_principal)):
    value = payload.get("counted_qty")
    try:
        counted = float(value)
    except (TypeError, ValueError):
        raise ValidationError("'counted_qty' must be a number")
    item = svc.record_count(item_id, counted, p.actor, payload.get("notes"))
    return item_out(item, hide_expected=_hidden(svc.get_count(item.count_id)))


@router.post("/{count_id}/submit")
def submit(count_id: str, svc: CycleCountService = Depends(get_count_service), p=Depends(get_principal)):
    return count_out(svc.submit_for_approval(count_id, actor=p.actor), svc.items(count_id))


@router.post("/{count_id}/approve")
def approve(count_id: str, svc: CycleCountService = Depends(get_count_service), p=Depends(get_principal)):
    return count_out(svc.approve(count_id, p.actor), svc.items(count_id))


@router.post("/{count_id}/reject")
def reject(count_id: str, payload: dict | None = None, svc: CycleCountService = Depends(get_count_service), p=Depends(get_principal)):
    count = svc.reject(count_id, actor=p.actor, reason=(payload or {}).get("reason"))
    return count_out(count, svc.items(count_id))


@router.post("/{count_id}/cancel")
def cancel(count_id: str, svc: CycleCountService = Depends(get_count_service), p=Depends(get_principal)):
    return count_out(svc.cancel(count_id, actor=p.actor))


@router.get("/{count_id}/variances")
def variances(count_id: str, svc: CycleCountService = Depends(get_count_service), p=Depends(get_principal)):
    count = svc.get_count(count_id)
    if _hidden(count):
        raise ValidationError("Variances of a blind count are available once counting is submitted")
    return [item_out(i) for i in svc.variances(count_id)]
