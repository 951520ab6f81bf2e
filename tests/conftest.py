"""
Pytest fixtures for the warehouse task engine.

Provides:
- An in-memory SQLite database per test (StaticPool, one shared connection)
- A master-data factory for products, locations, lots, stock and orders
- Fake collaborators (damage reporter, workflow profiles, notifier)
- A FastAPI TestClient bound to the same database
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.logging_config import LogContext, reset_logging
from app.db.base import Base
from app.db import models  # noqa: F401
from app.db.models.docs import OutboundOrder, OutboundOrderLine
from app.db.models.inventory_exec import (
    Client,
    InventoryLine,
    Location,
    Lot,
    Product,
    Sublocation,
    WorkflowProfile,
)
from services.wms.integrations import InspectionCriterion
from services.wms.tasking.service import TaskLifecycleController

T0 = datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _clean_logging():
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class Factory:
    """Builds and commits master data and stock rows."""

    def __init__(self, db):
        self.db = db
        self._n = 0

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        return obj

    def _next(self) -> int:
        self._n += 1
        return self._n

    def client(self, *, profile: WorkflowProfile | None = None) -> Client:
        return self._save(Client(company_name=f"Client {self._next()}",
                                 workflow_profile_id=profile.id if profile else None))

    def profile(self, criteria: list[dict]) -> WorkflowProfile:
        return self._save(WorkflowProfile(name=f"Profile {self._next()}", inspection_criteria=criteria))

    def product(self, *, product_type: str | None = "general", client: Client | None = None) -> Product:
        n = self._next()
        return self._save(Product(sku=f"SKU-{n:04d}", name=f"Product {n}", product_type=product_type,
                                  client_id=client.id if client else None))

    def location(self) -> Location:
        return self._save(Location(name=f"Warehouse {self._next()}", meta={}))

    def sublocation(self, location: Location, code: str, *, capacity: int | None = None, zone: str = "A",
                    aisle: str = "01", rack: str = "01", is_active: bool = True) -> Sublocation:
        return self._save(Sublocation(location_id=location.id, code=code, zone=zone, aisle=aisle, rack=rack,
                                      capacity=capacity, is_active=is_active, is_pickable=True))

    def lot(self, product: Product, *, expires: date | None) -> Lot:
        return self._save(Lot(product_id=product.id, lot_number=f"LOT-{self._next()}", expiration_date=expires))

    def stock(self, product: Product, location: Location, qty: float, *, sublocation: Sublocation | None = None,
              lot: Lot | None = None, status: str = "available", reserved: float = 0,
              age_days: int = 0) -> InventoryLine:
        return self._save(InventoryLine(
            product_id=product.id, location_id=location.id,
            sublocation_id=sublocation.id if sublocation else None,
            lot_id=lot.id if lot else None, status=status,
            qty_on_hand=qty, qty_reserved=reserved,
            created_at=T0 - timedelta(days=age_days),
        ))

    def order(self, lines: list[tuple[Product, float]], *, client: Client | None = None) -> OutboundOrder:
        order = OutboundOrder(order_number=f"SO-{self._next()}", client_id=client.id if client else None,
                              status="confirmed", meta={})
        self.db.add(order)
        self.db.flush()
        for i, (product, qty) in enumerate(lines):
            self.db.add(OutboundOrderLine(order_id=order.id, product_id=product.id, qty_requested=qty,
                                          qty_shipped=0, created_at=T0 + timedelta(seconds=i)))
        self.db.commit()
        return order


@pytest.fixture
def make(db) -> Factory:
    return Factory(db)


class FakeDamageReporter:
    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None

    def report_damage(self, order_id, product_id, qty, cause, notes, *, actor):
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append({"order_id": order_id, "product_id": product_id, "qty": qty,
                           "cause": cause, "notes": notes, "actor": actor})
        return {"order_id": order_id}


class FakeProfiles:
    def __init__(self):
        self.by_client: dict[str, list[InspectionCriterion]] = {}

    def get_inspection_criteria(self, client_id):
        return self.by_client.get(client_id)


class FakeNotifier:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []
        self.fail_with: Exception | None = None

    def notify(self, topic, payload):
        if self.fail_with is not None:
            raise self.fail_with
        self.events.append((topic, payload))

    def topics(self) -> list[str]:
        return [t for t, _ in self.events]


@pytest.fixture
def damage_reporter() -> FakeDamageReporter:
    return FakeDamageReporter()


@pytest.fixture
def profiles() -> FakeProfiles:
    return FakeProfiles()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def controller(db, damage_reporter, profiles, notifier) -> TaskLifecycleController:
    return TaskLifecycleController(db, damage_reporter=damage_reporter, profiles=profiles, notifier=notifier)


@pytest.fixture
def client(session_factory):
    from fastapi.testclient import TestClient

    from app.db.session import get_db
    from main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
