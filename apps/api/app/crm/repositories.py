from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Select, String, cast, func, or_, select
from sqlalchemy.orm import Session

from app.crm.models import CRMLead, CRMLeadStage, CRMRecordTeamMember
from app.crm.schemas import ConvertedStatus, LeadSortField, OwnershipScope
from app.platform.tenancy import TenantPartition

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass
class LeadListFilters:
    search: str | None = None
    stage_id: uuid.UUID | None = None
    stage_slug: str | None = None
    priority_id: uuid.UUID | None = None
    source: str | None = None
    owner_id: str | None = None
    tag: str | None = None
    company: str | None = None
    score_min: int | None = None
    score_max: int | None = None
    converted_status: ConvertedStatus | None = None
    ownership: OwnershipScope | None = None


@dataclass
class LeadPage:
    rows: list[CRMLead]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class LeadRepository:
    """Tenant-scoped lead queries for list and board views."""

    def __init__(self, tenant: TenantPartition) -> None:
        self.tenant = tenant

    def base_query(self, filters: LeadListFilters, user_id: str) -> Select[Any]:
        stmt = self.tenant.select(CRMLead).outerjoin(CRMLeadStage, CRMLeadStage.id == CRMLead.stage_id)

        if filters.search:
            pattern = f"%{filters.search.strip()}%"
            full_name = func.coalesce(CRMLead.first_name, "") + " " + CRMLead.last_name
            stmt = stmt.where(
                or_(
                    CRMLead.first_name.ilike(pattern),
                    CRMLead.last_name.ilike(pattern),
                    CRMLead.email.ilike(pattern),
                    CRMLead.company.ilike(pattern),
                    CRMLead.phone.ilike(pattern),
                    full_name.ilike(pattern),
                )
            )
        if filters.stage_id is not None:
            stmt = stmt.where(CRMLead.stage_id == filters.stage_id)
        if filters.stage_slug:
            stmt = stmt.where(CRMLeadStage.slug == filters.stage_slug)
        if filters.priority_id is not None:
            stmt = stmt.where(CRMLead.priority_id == filters.priority_id)
        if filters.source:
            stmt = stmt.where(CRMLead.source == filters.source)
        if filters.owner_id:
            stmt = stmt.where(CRMLead.owner_id == filters.owner_id)
        if filters.tag:
            # tags are a JSON array; match the quoted element in its text form
            stmt = stmt.where(cast(CRMLead.tags, String).like(f'%"{filters.tag}"%'))
        if filters.company:
            stmt = stmt.where(CRMLead.company.ilike(f"%{filters.company}%"))
        if filters.score_min is not None:
            stmt = stmt.where(CRMLead.score >= filters.score_min)
        if filters.score_max is not None:
            stmt = stmt.where(CRMLead.score <= filters.score_max)

        if filters.converted_status == "converted":
            stmt = stmt.where(CRMLead.converted_at.is_not(None))
        elif filters.converted_status == "disqualified":
            stmt = stmt.where(CRMLead.disqualified_at.is_not(None))
        elif filters.converted_status == "active":
            stmt = stmt.where(CRMLead.converted_at.is_(None), CRMLead.disqualified_at.is_(None))

        if filters.ownership == "my_leads":
            stmt = stmt.where(CRMLead.owner_id == user_id)
        elif filters.ownership == "created_by_me":
            stmt = stmt.where(CRMLead.created_by == user_id)
        elif filters.ownership == "my_team":
            collaborator_of = self.tenant.scope(select(CRMRecordTeamMember.entity_id), CRMRecordTeamMember).where(
                CRMRecordTeamMember.entity_type == "lead",
                CRMRecordTeamMember.user_id == user_id,
            )
            stmt = stmt.where(
                or_(
                    CRMLead.owner_id == user_id,
                    CRMLead.created_by == user_id,
                    CRMLead.id.in_(collaborator_of),
                )
            )
        return stmt

    def page(
        self,
        session: Session,
        filters: LeadListFilters,
        user_id: str,
        *,
        sort_by: LeadSortField = "created_at",
        sort_order: str = "DESC",
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> LeadPage:
        page = max(1, page)
        limit = max(1, min(MAX_PAGE_SIZE, limit))
        stmt = self.base_query(filters, user_id)
        total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0

        column = self._sort_column(sort_by)
        ordering = column.asc() if sort_order.upper() == "ASC" else column.desc()
        rows = session.scalars(
            stmt.order_by(ordering, CRMLead.id.asc()).offset((page - 1) * limit).limit(limit)
        ).all()
        return LeadPage(rows=list(rows), total=int(total), page=page, limit=limit)

    def stage_column(
        self,
        session: Session,
        filters: LeadListFilters,
        user_id: str,
        stage_id: uuid.UUID,
        limit: int,
    ) -> tuple[int, list[CRMLead]]:
        stmt = self.base_query(filters, user_id).where(CRMLead.stage_id == stage_id)
        count = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        rows = session.scalars(
            stmt.order_by(CRMLead.score.desc(), CRMLead.created_at.desc(), CRMLead.id.asc()).limit(limit)
        ).all()
        return int(count), list(rows)

    @staticmethod
    def _sort_column(sort_by: str) -> Any:
        return {
            "created_at": CRMLead.created_at,
            "updated_at": CRMLead.updated_at,
            "name": CRMLead.last_name,
            "company": CRMLead.company,
            "score": CRMLead.score,
            "source": CRMLead.source,
            "last_activity_at": CRMLead.last_activity_at,
            "stage": CRMLeadStage.sort_order,
        }.get(sort_by, CRMLead.created_at)
