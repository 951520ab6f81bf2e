from __future__ import annotations
from sqlalchemy.orm import Session
from sqlalchemy import select, update, func, case
from app.db.models.inventory_exec import InventoryLine, InventoryTxn
from app.core.logging_config import get_logger
from services.wms.exceptions import InsufficientInventory, ValidationError

logger = get_logger("inventory_ops.ledger")


def _eq_or_null(col, value):
    return col.is_(None) if value is None else col == value


class InventoryLedger:
    """Single write path for on-hand quantities.

    Every quantity change is applied as a SQL-side delta (never read, compute,
    write) and leaves an InventoryTxn row naming what caused it. Nothing here
    commits; the calling service owns the unit of work.
    """

    def __init__(self, db: Session):
        self.db = db

    def _key(self, product_id: str, location_id: str, sublocation_id: str | None, lot_id: str | None) -> list:
        return [
            InventoryLine.product_id == product_id,
            InventoryLine.location_id == location_id,
            _eq_or_null(InventoryLine.sublocation_id, sublocation_id),
            _eq_or_null(InventoryLine.lot_id, lot_id),
        ]

    def _rows(self, product_id: str, location_id: str, sublocation_id: str | None, lot_id: str | None):
        # Sellable rows first, then oldest, so draining order is stable across calls.
        return self.db.execute(
            select(InventoryLine.id, InventoryLine.qty_on_hand, InventoryLine.status)
            .where(*self._key(product_id, location_id, sublocation_id, lot_id))
            .order_by(case((InventoryLine.status == "available", 0), else_=1),
                      InventoryLine.created_at.asc(), InventoryLine.id.asc())
        ).all()

    def apply_delta(
        self,
        *,
        product_id: str,
        location_id: str,
        sublocation_id: str | None = None,
        lot_id: str | None = None,
        qty_change: float,
        transaction_type: str,
        reference_type: str | None = None,
        reference_id: str | None = None,
        reason: str | None = None,
        notes: str | None = None,
        performed_by: str | None = None,
    ) -> InventoryTxn:
        """Apply a signed quantity change to a (product, location, sub-location, lot) tuple.

        A tuple may hold several rows (one per status or receipt). Decrements
        drain them in order, each step a guarded UPDATE; increments land on the
        oldest available row, or a new one.
        """
        qty_change = float(qty_change)
        db = self.db
        db.flush()
        rows = self._rows(product_id, location_id, sublocation_id, lot_id)
        touched: list[str] = []

        if qty_change < 0:
            total = sum(float(r.qty_on_hand) for r in rows)
            if not rows:
                raise InsufficientInventory(
                    f"No inventory for product {product_id} at location {location_id}",
                    requested=-qty_change, available=0.0,
                )
            if total + qty_change < 0:
                raise InsufficientInventory(
                    f"Delta {qty_change} would take product {product_id} below zero at location {location_id}",
                    requested=-qty_change, available=total,
                )
            remaining = -qty_change
            for r in rows:
                if remaining <= 0:
                    break
                take = min(remaining, float(r.qty_on_hand))
                if take <= 0:
                    continue
                # Guard evaluated by the database so concurrent pickers cannot drive stock negative.
                result = db.execute(
                    update(InventoryLine)
                    .where(InventoryLine.id == r.id, InventoryLine.qty_on_hand - take >= 0)
                    .values(qty_on_hand=InventoryLine.qty_on_hand - take)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise InsufficientInventory(
                        f"Inventory for product {product_id} at location {location_id} changed concurrently",
                        requested=-qty_change, available=total,
                    )
                touched.append(r.id)
                remaining -= take
        else:
            target_id = next((r.id for r in rows if r.status == "available"), None)
            if target_id is None:
                line = InventoryLine(
                    product_id=product_id, location_id=location_id, sublocation_id=sublocation_id,
                    lot_id=lot_id, status="available", qty_on_hand=qty_change, qty_reserved=0,
                )
                db.add(line)
                db.flush()
            else:
                db.execute(update(InventoryLine)
                           .where(InventoryLine.id == target_id)
                           .values(qty_on_hand=InventoryLine.qty_on_hand + qty_change)
                           .execution_options(synchronize_session=False))
                touched.append(target_id)

        for line_id in touched:
            db.refresh(db.get(InventoryLine, line_id))
        qty_after = self.on_hand(product_id, location_id, sublocation_id, lot_id)

        txn = InventoryTxn(
            transaction_type=transaction_type,
            product_id=product_id,
            location_id=location_id,
            sublocation_id=sublocation_id,
            lot_id=lot_id,
            qty_change=qty_change,
            qty_after=qty_after,
            reference_type=reference_type,
            reference_id=reference_id,
            reason=reason,
            notes=notes,
            performed_by=performed_by,
        )
        db.add(txn)
        logger.info("inventory_delta_applied", extra={
            "product_id": product_id, "location_id": location_id, "sublocation_id": sublocation_id,
            "lot_id": lot_id, "qty_change": qty_change, "qty_after": qty_after,
            "transaction_type": transaction_type, "reference_id": reference_id,
        })
        return txn

    def move(
        self,
        *,
        product_id: str,
        location_id: str,
        from_sublocation_id: str | None,
        to_sublocation_id: str | None,
        lot_id: str | None = None,
        qty: float,
        transaction_type: str,
        reference_type: str | None = None,
        reference_id: str | None = None,
        notes: str | None = None,
        performed_by: str | None = None,
    ) -> tuple[InventoryTxn, InventoryTxn]:
        if qty <= 0:
            raise ValidationError("Move quantity must be positive")
        # Source first: if it cannot cover the move nothing has been written yet.
        out_txn = self.apply_delta(
            product_id=product_id, location_id=location_id, sublocation_id=from_sublocation_id, lot_id=lot_id,
            qty_change=-qty, transaction_type=transaction_type, reference_type=reference_type,
            reference_id=reference_id, notes=notes, performed_by=performed_by,
        )
        in_txn = self.apply_delta(
            product_id=product_id, location_id=location_id, sublocation_id=to_sublocation_id, lot_id=lot_id,
            qty_change=qty, transaction_type=transaction_type, reference_type=reference_type,
            reference_id=reference_id, notes=notes, performed_by=performed_by,
        )
        return out_txn, in_txn

    def query_available(self, product_id: str, location_id: str, lot_id: str | None = None) -> float:
        q = (select(func.coalesce(func.sum(InventoryLine.qty_on_hand - InventoryLine.qty_reserved), 0))
             .where(InventoryLine.product_id == product_id,
                    InventoryLine.location_id == location_id,
                    InventoryLine.status == "available"))
        if lot_id is not None:
            q = q.where(InventoryLine.lot_id == lot_id)
        return float(self.db.execute(q).scalar() or 0)

    def on_hand(self, product_id: str, location_id: str, sublocation_id: str | None = None, lot_id: str | None = None) -> float:
        q = (select(func.coalesce(func.sum(InventoryLine.qty_on_hand), 0))
             .where(*self._key(product_id, location_id, sublocation_id, lot_id)))
        return float(self.db.execute(q).scalar() or 0)

    def set_status(
        self,
        product_id: str,
        location_id: str,
        status: str,
        notes: str | None = None,
        *,
        from_status: str | None = None,
        reference_type: str | None = None,
        reference_id: str | None = None,
        performed_by: str | None = None,
    ) -> float:
        """Flip the status of matching lines; returns the quantity that changed status."""
        db = self.db
        db.flush()
        filters = [InventoryLine.product_id == product_id, InventoryLine.location_id == location_id,
                   InventoryLine.status != status]
        if from_status is not None:
            filters.append(InventoryLine.status == from_status)

        rows = db.execute(select(InventoryLine.id, InventoryLine.qty_on_hand).where(*filters)).all()
        if not rows:
            return 0.0
        ids = [r.id for r in rows]
        # Re-check the status in the UPDATE so a concurrent flip is not counted twice.
        guarded = [InventoryLine.id.in_(ids), InventoryLine.status != status]
        if from_status is not None:
            guarded.append(InventoryLine.status == from_status)
        db.execute(update(InventoryLine)
                   .where(*guarded)
                   .values(status=status, status_notes=notes)
                   .execution_options(synchronize_session=False))
        for line_id in ids:
            line = db.get(InventoryLine, line_id)
            if line is not None:
                db.refresh(line)

        moved = sum(float(r.qty_on_hand) for r in rows)
        db.add(InventoryTxn(
            transaction_type="status_change",
            product_id=product_id,
            location_id=location_id,
            qty_change=0,
            reference_type=reference_type,
            reference_id=reference_id,
            reason=f"{from_status or 'any'} -> {status}",
            notes=notes,
            performed_by=performed_by,
        ))
        logger.info("inventory_status_changed", extra={
            "product_id": product_id, "location_id": location_id, "status": status,
            "from_status": from_status, "qty": moved, "lines": len(ids),
        })
        return moved
