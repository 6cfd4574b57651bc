from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

from sqlalchemy import Boolean, DateTime, Select, String, select
from sqlalchemy.orm import Mapped, Session, mapped_column

from app.core.config import get_settings
from app.core.database import Base
from app.platform.errors import TenantNotAllowedError

TENANT_KEY_RE = re.compile(r"^[a-z][a-z0-9_]{1,62}$")

RowT = TypeVar("RowT")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlatformTenant(Base):
    __tablename__ = "platform_tenant"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


@dataclass(frozen=True, slots=True)
class TenantPartition:
    """A validated tenant. Every tenant-owned query and insert goes through one of these."""

    tenant_id: str

    def scope(self, stmt: Select[Any], *models: Any) -> Select[Any]:
        for model in models:
            stmt = stmt.where(model.tenant_id == self.tenant_id)
        return stmt

    def select(self, model: Any) -> Select[Any]:
        stmt = select(model).where(model.tenant_id == self.tenant_id)
        if hasattr(model, "deleted_at"):
            stmt = stmt.where(model.deleted_at.is_(None))
        return stmt

    def get(self, session: Session, model: type[RowT], entity_id: Any) -> RowT | None:
        return session.scalar(self.select(model).where(model.id == entity_id))  # type: ignore[attr-defined]

    def stamp(self, row: RowT) -> RowT:
        row.tenant_id = self.tenant_id  # type: ignore[attr-defined]
        return row

    def add(self, session: Session, row: RowT) -> RowT:
        session.add(self.stamp(row))
        return row


def normalize_tenant_key(raw: str | None) -> str | None:
    """Return the canonical tenant key for a header value, or None when it can never be admitted."""
    key = (raw or "").strip()
    if not TENANT_KEY_RE.match(key):
        return None
    allowlist = get_settings().tenant_allowlist
    if allowlist and key not in allowlist:
        return None
    return key


def resolve_tenant(session: Session, raw: str | None) -> TenantPartition:
    key = normalize_tenant_key(raw)
    if key is None:
        raise TenantNotAllowedError(raw)

    tenant = session.scalar(
        select(PlatformTenant).where(PlatformTenant.key == key, PlatformTenant.is_active.is_(True))
    )
    if tenant is None:
        raise TenantNotAllowedError(raw)
    return TenantPartition(tenant_id=tenant.key)


def register_tenant(session: Session, key: str, name: str | None = None) -> TenantPartition:
    if not TENANT_KEY_RE.match(key):
        raise TenantNotAllowedError(key)
    existing = session.get(PlatformTenant, key)
    if existing is None:
        session.add(PlatformTenant(key=key, name=name or key))
    elif not existing.is_active:
        existing.is_active = True
    session.flush()
    return TenantPartition(tenant_id=key)
