"""Collaborators the task engine consumes but does not own.

Each port is a Protocol so callers (and tests) can inject their own adapter.
The SQL adapters below are the defaults wired by the HTTP layer.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Protocol

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.db.models.docs import DamageReport
from app.db.models.inventory_exec import Client, WorkflowProfile
from app.db.models.wms.common import utcnow
from app.events.bus import publish


@dataclass(frozen=True)
class InspectionCriterion:
    id: str
    label: str
    type: str = "pass_fail"  # pass_fail|numeric|text
    required: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InspectionCriterion":
        return cls(
            id=str(data["id"]),
            label=str(data.get("label") or data["id"]),
            type=str(data.get("type") or "pass_fail"),
            required=bool(data.get("required", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class DamageReporter(Protocol):
    def report_damage(
        self, order_id: str, product_id: str, qty: float, cause: str, notes: str | None, *, actor: str | None
    ) -> Any: ...


class WorkflowProfileLookup(Protocol):
    def get_inspection_criteria(self, client_id: str) -> list[InspectionCriterion] | None: ...


class Notifier(Protocol):
    def notify(self, topic: str, payload: dict[str, Any]) -> None: ...


class SqlDamageReporter:
    def __init__(self, db: Session):
        self.db = db

    def report_damage(
        self, order_id: str, product_id: str, qty: float, cause: str, notes: str | None, *, actor: str | None
    ) -> DamageReport:
        report = DamageReport(
            reference_type="inbound_order",
            reference_id=order_id,
            product_id=product_id,
            quantity=float(qty),
            damage_type=cause,
            description=notes,
            reported_by=actor,
            reported_at=utcnow(),
            resolution="pending",
        )
        self.db.add(report)
        self.db.flush()
        audit(self.db, actor=actor, action="DAMAGE_REPORTED", entity_type="DamageReport", entity_id=report.id,
              payload={"reference_id": order_id, "product_id": product_id, "quantity": float(qty), "damage_type": cause})
        return report


class SqlWorkflowProfileLookup:
    def __init__(self, db: Session):
        self.db = db

    def get_inspection_criteria(self, client_id: str) -> list[InspectionCriterion] | None:
        client = self.db.get(Client, client_id)
        if not client or not client.workflow_profile_id:
            return None
        profile = self.db.get(WorkflowProfile, client.workflow_profile_id)
        if not profile or not profile.inspection_criteria:
            return None
        return [InspectionCriterion.from_dict(c) for c in profile.inspection_criteria]


class OutboxNotifier:
    """Alerts become outbox rows in the caller's transaction; a relay delivers them."""

    def __init__(self, db: Session):
        self.db = db

    def notify(self, topic: str, payload: dict[str, Any]) -> None:
        publish(self.db, topic, payload)
