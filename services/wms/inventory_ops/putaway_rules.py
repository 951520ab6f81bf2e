from __future__ import annotations
from dataclasses import dataclass
from collections import defaultdict
from sqlalchemy.orm import Session
from sqlalchemy import select
from app.core import settings
from app.db.models.inventory_exec import InventoryLine, Product, Sublocation
from services.wms.exceptions import ValidationError

# Rule engine (greedy, first fit):
# - affinity: a sub-location already holding this product wins if it is active
# - otherwise walk capacity-tracked bins in zone/aisle/rack order, first with room wins
# - otherwise the bin with the most room left, even if it cannot take everything
# Suggestions are advisory; the operator confirms the bin on completion.

@dataclass(frozen=True)
class PutawaySuggestion:
    location_id: str
    sublocation_id: str | None
    sublocation_code: str | None
    reason: str


def suggest_putaway(db: Session, *, product_id: str, location_id: str, qty: float) -> PutawaySuggestion:
    if qty <= 0:
        raise ValidationError("Putaway quantity must be positive")

    existing = db.execute(
        select(InventoryLine, Sublocation)
        .join(Sublocation, Sublocation.id == InventoryLine.sublocation_id)
        .where(InventoryLine.product_id == product_id,
               InventoryLine.location_id == location_id,
               InventoryLine.sublocation_id.is_not(None))
        .order_by(InventoryLine.qty_on_hand.desc())
    ).first()
    if existing is not None:
        _, sub = existing
        if sub.is_active:
            return PutawaySuggestion(location_id, sub.id, sub.code, "Same product already stored here")

    subs = db.execute(
        select(Sublocation)
        .where(Sublocation.location_id == location_id,
               Sublocation.is_active.is_(True),
               Sublocation.capacity.is_not(None))
        .order_by(Sublocation.zone.asc(), Sublocation.aisle.asc(), Sublocation.rack.asc(), Sublocation.code.asc())
    ).scalars().all()
    if not subs:
        return PutawaySuggestion(location_id, None, None, "no sub-locations configured")

    used: dict[str, float] = defaultdict(float)
    rows = db.execute(
        select(InventoryLine.sublocation_id, InventoryLine.qty_on_hand)
        .where(InventoryLine.location_id == location_id, InventoryLine.sublocation_id.is_not(None))
    ).all()
    for sub_id, on_hand in rows:
        used[sub_id] += float(on_hand)

    for sub in subs:
        room = float(sub.capacity) - used[sub.id]
        if room >= qty:
            return PutawaySuggestion(location_id, sub.id, sub.code, f"{_fmt(room)} capacity available")

    best = max(subs, key=lambda s: float(s.capacity) - used[s.id])
    room = float(best.capacity) - used[best.id]
    if room > 0:
        reason = f"Insufficient capacity for {_fmt(qty)}; best available option has {_fmt(room)} free"
    else:
        reason = f"Insufficient capacity for {_fmt(qty)}; all sub-locations are full"
    return PutawaySuggestion(location_id, best.id, best.code, reason)


def putaway_priority(db: Session, product_id: str | None) -> int:
    if product_id:
        product = db.get(Product, product_id)
        if product is not None and (product.product_type or "").lower() in settings.PERISHABLE_PRODUCT_TYPES:
            return settings.PERISHABLE_PRIORITY
    return settings.DEFAULT_TASK_PRIORITY


def _fmt(qty: float) -> str:
    return f"{qty:g}"
