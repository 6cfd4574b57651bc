from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.models.audit import AuditLog
from app.platform.tenancy import TenantPartition


@dataclass
class AuditEntry:
    entity_type: str
    entity_id: str
    action: str
    performed_by: str
    changes: dict[str, Any] = field(default_factory=dict)
    previous_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None


class AuditLogWriter(Protocol):
    def log(self, session: Session, tenant: TenantPartition, entry: AuditEntry) -> None: ...

    def calculate_changes(
        self,
        previous: dict[str, Any],
        current: dict[str, Any],
        tracked_fields: Iterable[str],
    ) -> dict[str, Any]: ...


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def calculate_changes(
    previous: dict[str, Any],
    current: dict[str, Any],
    tracked_fields: Iterable[str],
) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for field_name in tracked_fields:
        before = previous.get(field_name)
        after = current.get(field_name)
        if _canonical(before) != _canonical(after):
            changes[field_name] = {"from": before, "to": after}
    return changes


class DbAuditLog:
    """Writes audit rows in the caller's transaction; the caller commits."""

    def log(self, session: Session, tenant: TenantPartition, entry: AuditEntry) -> None:
        session.add(
            tenant.stamp(
                AuditLog(
                    actor_id=entry.performed_by,
                    action=entry.action,
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    changes=json.loads(_canonical(entry.changes)),
                    previous_values=json.loads(_canonical(entry.previous_values)) if entry.previous_values is not None else None,
                    new_values=json.loads(_canonical(entry.new_values)) if entry.new_values is not None else None,
                    event_metadata=entry.metadata or {},
                    correlation_id=get_correlation_id(),
                )
            )
        )

    def calculate_changes(
        self,
        previous: dict[str, Any],
        current: dict[str, Any],
        tracked_fields: Iterable[str],
    ) -> dict[str, Any]:
        return calculate_changes(previous, current, tracked_fields)
