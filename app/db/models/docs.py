from __future__ import annotations
from sqlalchemy import String, DateTime, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime

from app.db.base import Base
from app.db.models.wms.common import HasId, HasCreatedAt
from app.db.models.inventory_exec import QTY, Product

class OutboundOrder(Base, HasId, HasCreatedAt):
    __tablename__ = "wms_outbound_order"
    order_number: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    client_id: Mapped[str | None] = mapped_column(ForeignKey("wms_client.id"), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(24), default="confirmed", nullable=False)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

class OutboundOrderLine(Base, HasId, HasCreatedAt):
    __tablename__ = "wms_outbound_order_line"
    order_id: Mapped[str] = mapped_column(ForeignKey("wms_outbound_order.id"), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("wms_product.id"), nullable=False, index=True)
    qty_requested: Mapped[float] = mapped_column(QTY, nullable=False)
    qty_shipped: Mapped[float] = mapped_column(QTY, default=0, nullable=False)

    order: Mapped[OutboundOrder] = relationship()
    product: Mapped[Product] = relationship()

class DamageReport(Base, HasId, HasCreatedAt):
    __tablename__ = "wms_damage_report"
    reference_type: Mapped[str] = mapped_column(String(32), nullable=False)  # inbound_order
    reference_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("wms_product.id"), nullable=False, index=True)
    quantity: Mapped[float] = mapped_column(QTY, nullable=False)
    damage_type: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    reported_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution: Mapped[str] = mapped_column(String(24), default="pending", nullable=False)

Index("ix_outbound_line_order_product", OutboundOrderLine.order_id, OutboundOrderLine.product_id)
