from __future__ import annotations
from sqlalchemy import String, Date, ForeignKey, DateTime, Boolean, Text, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import date, datetime
from app.db.base import Base
from app.db.models.wms.common import HasId, HasCreatedAt, HasUpdatedAt
from app.db.models.inventory_exec import QTY, Product, Sublocation

COUNT_STATUSES = ("pending", "in_progress", "pending_approval", "completed", "cancelled")
TERMINAL_COUNT_STATUSES = frozenset({"completed", "cancelled"})

class CycleCount(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "wms_cycle_count"
    count_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    location_id: Mapped[str] = mapped_column(ForeignKey("wms_location.id"), nullable=False, index=True)
    count_type: Mapped[str] = mapped_column(String(24), default="partial", nullable=False)  # full|partial|abc|spot
    blind_count: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String(24), default="pending", nullable=False, index=True)
    scheduled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    assigned_to: Mapped[str | None] = mapped_column(String(128), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    items: Mapped[list["CycleCountItem"]] = relationship(back_populates="count", order_by="CycleCountItem.created_at")

class CycleCountItem(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "wms_cycle_count_item"
    count_id: Mapped[str] = mapped_column(ForeignKey("wms_cycle_count.id"), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("wms_product.id"), nullable=False, index=True)
    sublocation_id: Mapped[str | None] = mapped_column(ForeignKey("wms_sublocation.id"), nullable=True)
    lot_id: Mapped[str | None] = mapped_column(ForeignKey("wms_lot.id"), nullable=True)
    expected_qty: Mapped[float] = mapped_column(QTY, default=0, nullable=False)
    counted_qty: Mapped[float | None] = mapped_column(QTY, nullable=True)
    variance: Mapped[float | None] = mapped_column(QTY, nullable=True)
    variance_percent: Mapped[float | None] = mapped_column(QTY, nullable=True)
    counted_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    counted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    adjustment_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notes: Mapped[str | None] = mapped_column(String(512), nullable=True)

    count: Mapped[CycleCount] = relationship(back_populates="items")
    product: Mapped[Product] = relationship()
    sublocation: Mapped[Sublocation | None] = relationship()

Index("ix_count_item_product", CycleCountItem.count_id, CycleCountItem.product_id)
