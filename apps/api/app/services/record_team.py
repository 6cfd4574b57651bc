from __future__ import annotations

import uuid
from typing import Protocol

from sqlalchemy.orm import Session

from app.crm.models import CRMRecordTeamMember
from app.platform.tenancy import TenantPartition


class RecordTeam(Protocol):
    def get_members(
        self,
        session: Session,
        tenant: TenantPartition,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> list[CRMRecordTeamMember]: ...

    def add_member(
        self,
        session: Session,
        tenant: TenantPartition,
        *,
        entity_type: str,
        entity_id: uuid.UUID,
        user_id: str,
        role_id: uuid.UUID | None,
        role_name: str | None,
        access_level: str,
        added_by: str,
    ) -> CRMRecordTeamMember: ...


class DbRecordTeam:
    def get_members(
        self,
        session: Session,
        tenant: TenantPartition,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> list[CRMRecordTeamMember]:
        return list(
            session.scalars(
                tenant.select(CRMRecordTeamMember)
                .where(
                    CRMRecordTeamMember.entity_type == entity_type,
                    CRMRecordTeamMember.entity_id == entity_id,
                )
                .order_by(CRMRecordTeamMember.created_at.asc())
            ).all()
        )

    def add_member(
        self,
        session: Session,
        tenant: TenantPartition,
        *,
        entity_type: str,
        entity_id: uuid.UUID,
        user_id: str,
        role_id: uuid.UUID | None,
        role_name: str | None,
        access_level: str,
        added_by: str,
    ) -> CRMRecordTeamMember:
        member = session.scalar(
            tenant.select(CRMRecordTeamMember).where(
                CRMRecordTeamMember.entity_type == entity_type,
                CRMRecordTeamMember.entity_id == entity_id,
                CRMRecordTeamMember.user_id == user_id,
            )
        )
        if member is None:
            member = tenant.add(
                session,
                CRMRecordTeamMember(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    user_id=user_id,
                    role_id=role_id,
                    role_name=role_name,
                    access_level=access_level,
                    added_by=added_by,
                ),
            )
        else:
            member.role_id = role_id
            member.role_name = role_name
            member.access_level = access_level
        session.flush()
        return member
