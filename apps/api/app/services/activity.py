from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy.orm import Session

from app.crm.models import CRMActivity, CRMLead
from app.platform.tenancy import TenantPartition


@dataclass
class ActivityEntry:
    entity_type: str
    entity_id: uuid.UUID
    activity_type: str
    title: str
    performed_by: str
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ActivityTimeline(Protocol):
    def create(self, session: Session, tenant: TenantPartition, entry: ActivityEntry) -> CRMActivity: ...


class DbActivityTimeline:
    def create(self, session: Session, tenant: TenantPartition, entry: ActivityEntry) -> CRMActivity:
        now = datetime.now(timezone.utc)
        activity = tenant.add(
            session,
            CRMActivity(
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                activity_type=entry.activity_type,
                title=entry.title,
                description=entry.description,
                activity_metadata=entry.metadata,
                performed_by=entry.performed_by,
                created_at=now,
            ),
        )
        if entry.entity_type == "lead":
            lead = tenant.get(session, CRMLead, entry.entity_id)
            if lead is not None:
                lead.last_activity_at = now
        session.flush()
        return activity
