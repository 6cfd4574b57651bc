from __future__ import annotations

import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.crm.models import CRMLead, CRMRecordTeamRole
from app.crm.settings import OwnershipSettings
from app.platform.tenancy import TenantPartition
from app.services.activity import ActivityEntry, ActivityTimeline
from app.services.record_team import RecordTeam

logger = logging.getLogger("app.crm.ownership")


class OwnershipTransferHandler:
    def __init__(self, activity: ActivityTimeline, record_team: RecordTeam) -> None:
        self.activity = activity
        self.record_team = record_team

    def transfer(
        self,
        session: Session,
        tenant: TenantPartition,
        config: OwnershipSettings,
        lead: CRMLead,
        *,
        previous_owner_id: str | None,
        new_owner_id: str | None,
        performed_by: str,
    ) -> bool:
        if not new_owner_id or previous_owner_id == new_owner_id:
            return False

        if previous_owner_id and config.add_previous_owner_to_team:
            role_id = self._resolve_role_id(session, tenant, config.previous_owner_role)
            self.record_team.add_member(
                session,
                tenant,
                entity_type="lead",
                entity_id=lead.id,
                user_id=previous_owner_id,
                role_id=role_id,
                role_name=config.previous_owner_role,
                access_level=config.previous_owner_access,
                added_by=performed_by,
            )

        self.activity.create(
            session,
            tenant,
            ActivityEntry(
                entity_type="lead",
                entity_id=lead.id,
                activity_type="owner_changed",
                title="Owner changed",
                performed_by=performed_by,
                metadata={"previous_owner_id": previous_owner_id, "new_owner_id": new_owner_id},
            ),
        )
        logger.info(
            "lead.owner_changed",
            extra={"tenant_id": tenant.tenant_id, "lead_id": str(lead.id), "owner_id": new_owner_id},
        )
        return True

    def _resolve_role_id(self, session: Session, tenant: TenantPartition, role_name: str) -> uuid.UUID | None:
        # A failed lookup rolls back only the savepoint, leaving the update's transaction usable.
        try:
            with session.begin_nested():
                role = session.scalar(
                    tenant.select(CRMRecordTeamRole).where(
                        CRMRecordTeamRole.name == role_name,
                        CRMRecordTeamRole.is_active.is_(True),
                    )
                )
        except SQLAlchemyError as exc:
            logger.warning(
                "lead.owner_changed.role_lookup_failed",
                extra={"tenant_id": tenant.tenant_id, "role": role_name, "error": str(exc)},
            )
            return None
        if role is None:
            logger.warning("lead.owner_changed.role_missing", extra={"tenant_id": tenant.tenant_id, "role": role_name})
            return None
        return role.id
