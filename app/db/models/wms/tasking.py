from __future__ import annotations
from sqlalchemy import String, Integer, DateTime, ForeignKey, JSON, Index, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from app.db.base import Base
from app.db.models.wms.common import HasId, HasCreatedAt, HasUpdatedAt
from app.db.models.inventory_exec import QTY

TASK_TYPES = ("inspection", "putaway", "pick")
TASK_STATUSES = ("pending", "assigned", "in_progress", "completed", "failed", "cancelled")
TERMINAL_TASK_STATUSES = frozenset({"completed", "failed", "cancelled"})

PICK_ITEM_STATUSES = ("pending", "picked", "short", "skipped")
TERMINAL_PICK_ITEM_STATUSES = frozenset({"picked", "short", "skipped"})

INSPECTION_RESULTS = ("pass", "fail", "conditional")

class WarehouseTask(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "wms_warehouse_task"
    task_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    task_type: Mapped[str] = mapped_column(String(24), nullable=False)  # inspection|putaway|pick
    status: Mapped[str] = mapped_column(String(24), default="pending", nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=5, nullable=False)  # 1..10, higher = more urgent

    client_id: Mapped[str | None] = mapped_column(ForeignKey("wms_client.id"), nullable=True, index=True)
    product_id: Mapped[str | None] = mapped_column(ForeignKey("wms_product.id"), nullable=True, index=True)
    lpn_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    lot_id: Mapped[str | None] = mapped_column(ForeignKey("wms_lot.id"), nullable=True)

    # link to source doc
    order_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    order_type: Mapped[str | None] = mapped_column(String(16), nullable=True)  # inbound|outbound

    source_location_id: Mapped[str | None] = mapped_column(ForeignKey("wms_location.id"), nullable=True)
    source_sublocation_id: Mapped[str | None] = mapped_column(ForeignKey("wms_sublocation.id"), nullable=True)
    destination_location_id: Mapped[str | None] = mapped_column(ForeignKey("wms_location.id"), nullable=True)
    destination_sublocation_id: Mapped[str | None] = mapped_column(ForeignKey("wms_sublocation.id"), nullable=True)

    qty_requested: Mapped[float] = mapped_column(QTY, default=0, nullable=False)
    qty_completed: Mapped[float] = mapped_column(QTY, default=0, nullable=False)

    assigned_to: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    due_by: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

Index("ix_task_type_status", WarehouseTask.task_type, WarehouseTask.status)
Index("ix_task_order", WarehouseTask.order_id, WarehouseTask.order_type)
Index("ix_task_priority", WarehouseTask.priority.desc(), WarehouseTask.created_at.asc())

class PickListItem(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "wms_pick_list_item"
    task_id: Mapped[str] = mapped_column(ForeignKey("wms_warehouse_task.id"), nullable=False, index=True)
    outbound_item_id: Mapped[str | None] = mapped_column(ForeignKey("wms_outbound_order_line.id"), nullable=True, index=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("wms_product.id"), nullable=False)
    lot_id: Mapped[str | None] = mapped_column(ForeignKey("wms_lot.id"), nullable=True)
    location_id: Mapped[str] = mapped_column(ForeignKey("wms_location.id"), nullable=False)
    sublocation_id: Mapped[str | None] = mapped_column(ForeignKey("wms_sublocation.id"), nullable=True)
    qty_allocated: Mapped[float] = mapped_column(QTY, default=0, nullable=False)
    qty_picked: Mapped[float] = mapped_column(QTY, default=0, nullable=False)
    qty_short: Mapped[float] = mapped_column(QTY, default=0, nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(24), default="pending", nullable=False, index=True)
    picked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    picked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(512), nullable=True)

    task: Mapped[WarehouseTask] = relationship()

Index("ix_pick_items_task_seq", PickListItem.task_id, PickListItem.sequence_number, unique=True)

class InspectionResult(Base, HasId, HasCreatedAt):
    __tablename__ = "wms_inspection_result"
    task_id: Mapped[str] = mapped_column(ForeignKey("wms_warehouse_task.id"), unique=True, nullable=False, index=True)
    results: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    overall_result: Mapped[str] = mapped_column(String(16), nullable=False)  # pass|fail|conditional
    inspector_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    inspected_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    inspected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    task: Mapped[WarehouseTask] = relationship()

class TaskSequence(Base):
    __tablename__ = "wms_task_sequence"
    key: Mapped[str] = mapped_column(String(32), primary_key=True)  # e.g. PCK-2026
    value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
