from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.crm.models import CRMDisqualificationReason, CRMLeadPriority, CRMLeadStage, CRMRecordTeamRole
from app.platform.tenancy import TenantPartition, register_tenant

logger = logging.getLogger("app.crm.seed")

DEFAULT_STAGES = (
    {"name": "New", "slug": "new", "color": "#3b82f6", "sort_order": 1},
    {"name": "Contacted", "slug": "contacted", "color": "#8b5cf6", "sort_order": 2},
    {"name": "Qualified", "slug": "qualified", "color": "#f59e0b", "sort_order": 3},
    {"name": "Converted", "slug": "converted", "color": "#10b981", "sort_order": 4, "is_won": True},
    {"name": "Disqualified", "slug": "disqualified", "color": "#ef4444", "sort_order": 5, "is_lost": True},
)

DEFAULT_PRIORITIES = (
    {"name": "Low", "color": "#9ca3af", "score_min": 0, "score_max": 24, "sort_order": 1},
    {"name": "Medium", "color": "#3b82f6", "score_min": 25, "score_max": 49, "sort_order": 2, "is_default": True},
    {"name": "High", "color": "#f59e0b", "score_min": 50, "score_max": 74, "sort_order": 3},
    {"name": "Hot", "color": "#ef4444", "score_min": 75, "score_max": 100, "sort_order": 4},
)

DEFAULT_DISQUALIFICATION_REASONS = (
    "No budget",
    "No authority",
    "No need",
    "Bad timing",
    "Went with competitor",
    "Unresponsive",
)

DEFAULT_RECORD_TEAM_ROLES = ("Lead Generator",)


def seed_tenant_defaults(session: Session, key: str, name: str | None = None) -> TenantPartition:
    """Register ``key`` and give it the default lead configuration.

    Each catalogue is only seeded while the tenant has none of that kind, so
    calling this twice is harmless. The caller owns the commit.
    """
    tenant = register_tenant(session, key, name)

    if not _has_rows(session, tenant, CRMLeadStage):
        for stage in DEFAULT_STAGES:
            tenant.add(session, CRMLeadStage(**stage))

    if not _has_rows(session, tenant, CRMLeadPriority):
        for priority in DEFAULT_PRIORITIES:
            tenant.add(session, CRMLeadPriority(**priority))

    if not _has_rows(session, tenant, CRMDisqualificationReason):
        for index, reason in enumerate(DEFAULT_DISQUALIFICATION_REASONS, start=1):
            tenant.add(session, CRMDisqualificationReason(name=reason, sort_order=index))

    if not _has_rows(session, tenant, CRMRecordTeamRole):
        for role in DEFAULT_RECORD_TEAM_ROLES:
            tenant.add(session, CRMRecordTeamRole(name=role))

    session.flush()
    logger.info("tenant.seeded", extra={"tenant_id": tenant.tenant_id})
    return tenant


def _has_rows(session: Session, tenant: TenantPartition, model: type) -> bool:
    return session.scalar(tenant.scope(select(model.id), model).limit(1)) is not None
