from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import String, Date, DateTime, JSON, ForeignKey, Numeric, Integer, Boolean, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.wms.common import HasId, HasCreatedAt, HasUpdatedAt


# NOTE:
# Master data and stock tables are owned by the surrounding application. They live
# here so the task engine reads and mutates one inventory truth in the database.

QTY = Numeric(18, 6, asdecimal=False)


class WorkflowProfile(Base, HasId, HasCreatedAt):
    __tablename__ = "wms_workflow_profile"

    name: Mapped[str] = mapped_column(String(128), nullable=False)
    inspection_criteria: Mapped[list] = mapped_column(JSON, default=list, nullable=False)


class Client(Base, HasId, HasCreatedAt):
    __tablename__ = "wms_client"

    company_name: Mapped[str] = mapped_column(String(256), nullable=False)
    workflow_profile_id: Mapped[str | None] = mapped_column(ForeignKey("wms_workflow_profile.id"), nullable=True, index=True)

    workflow_profile: Mapped[WorkflowProfile | None] = relationship()


class Product(Base, HasId, HasCreatedAt):
    __tablename__ = "wms_product"

    client_id: Mapped[str | None] = mapped_column(ForeignKey("wms_client.id"), nullable=True, index=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    product_type: Mapped[str | None] = mapped_column(String(32), nullable=True)  # general|food|pharma|...


class Location(Base, HasId, HasCreatedAt):
    __tablename__ = "wms_location"

    name: Mapped[str] = mapped_column(String(128), nullable=False)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)


class Sublocation(Base, HasId, HasCreatedAt):
    __tablename__ = "wms_sublocation"

    location_id: Mapped[str] = mapped_column(ForeignKey("wms_location.id"), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    zone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    aisle: Mapped[str | None] = mapped_column(String(32), nullable=True)
    rack: Mapped[str | None] = mapped_column(String(32), nullable=True)
    capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_pickable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    location: Mapped[Location] = relationship()


Index("ix_sublocation_walk", Sublocation.location_id, Sublocation.zone, Sublocation.aisle, Sublocation.rack)


class Lot(Base, HasId, HasCreatedAt):
    __tablename__ = "wms_lot"

    product_id: Mapped[str] = mapped_column(ForeignKey("wms_product.id"), nullable=False, index=True)
    lot_number: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    expiration_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    product: Mapped[Product] = relationship()


class InventoryLine(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "wms_inventory_line"

    product_id: Mapped[str] = mapped_column(ForeignKey("wms_product.id"), nullable=False, index=True)
    location_id: Mapped[str] = mapped_column(ForeignKey("wms_location.id"), nullable=False, index=True)
    sublocation_id: Mapped[str | None] = mapped_column(ForeignKey("wms_sublocation.id"), nullable=True, index=True)
    lot_id: Mapped[str | None] = mapped_column(ForeignKey("wms_lot.id"), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(24), default="available", nullable=False, index=True)  # available|quarantine|damaged|hold
    status_notes: Mapped[str | None] = mapped_column(String(512), nullable=True)
    qty_on_hand: Mapped[float] = mapped_column(QTY, default=0, nullable=False)
    qty_reserved: Mapped[float] = mapped_column(QTY, default=0, nullable=False)

    sublocation: Mapped[Sublocation | None] = relationship()
    lot: Mapped[Lot | None] = relationship()


Index("ix_inventory_line_key", InventoryLine.product_id, InventoryLine.location_id, InventoryLine.sublocation_id, InventoryLine.lot_id)


class InventoryTxn(Base, HasId, HasCreatedAt):
    __tablename__ = "wms_inventory_txn"

    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)  # pick|putaway|cycle_count|adjustment|receive
    product_id: Mapped[str] = mapped_column(ForeignKey("wms_product.id"), nullable=False, index=True)
    location_id: Mapped[str] = mapped_column(ForeignKey("wms_location.id"), nullable=False, index=True)
    sublocation_id: Mapped[str | None] = mapped_column(ForeignKey("wms_sublocation.id"), nullable=True)
    lot_id: Mapped[str | None] = mapped_column(ForeignKey("wms_lot.id"), nullable=True)

    qty_change: Mapped[float] = mapped_column(QTY, nullable=False)
    qty_after: Mapped[float | None] = mapped_column(QTY, nullable=True)

    reference_type: Mapped[str | None] = mapped_column(String(32), nullable=True)  # warehouse_task|cycle_count
    reference_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(512), nullable=True)
    performed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)


Index("ix_txn_reference", InventoryTxn.reference_type, InventoryTxn.reference_id)
