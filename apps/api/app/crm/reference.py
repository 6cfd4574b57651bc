from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.crm.models import (
    CRMDisqualificationReason,
    CRMLeadPriority,
    CRMLeadStage,
    CRMQualificationField,
    CRMQualificationFramework,
)
from app.crm.settings import LeadSettings, load_lead_settings
from app.platform.tenancy import TenantPartition


@dataclass(frozen=True)
class LeadReferenceData:
    """Tenant lead configuration resolved once per engine operation."""

    tenant: TenantPartition
    stages: tuple[CRMLeadStage, ...]
    priorities: tuple[CRMLeadPriority, ...]
    framework: CRMQualificationFramework | None
    framework_fields: tuple[CRMQualificationField, ...]
    reasons: tuple[CRMDisqualificationReason, ...]
    settings: LeadSettings

    @classmethod
    def load(cls, session: Session, tenant: TenantPartition) -> LeadReferenceData:
        settings = load_lead_settings(session, tenant)
        stages = session.scalars(
            tenant.select(CRMLeadStage).order_by(CRMLeadStage.sort_order.asc(), CRMLeadStage.name.asc())
        ).all()
        priorities = session.scalars(
            tenant.select(CRMLeadPriority).order_by(CRMLeadPriority.sort_order.asc(), CRMLeadPriority.name.asc())
        ).all()
        reasons = session.scalars(
            tenant.select(CRMDisqualificationReason).order_by(CRMDisqualificationReason.sort_order.asc())
        ).all()

        framework = None
        framework_fields: list[CRMQualificationField] = []
        slug = settings.general.active_qualification_framework
        if slug:
            framework = session.scalar(
                tenant.select(CRMQualificationFramework).where(
                    CRMQualificationFramework.slug == slug,
                    CRMQualificationFramework.is_active.is_(True),
                )
            )
        if framework is not None:
            framework_fields = list(
                session.scalars(
                    tenant.select(CRMQualificationField)
                    .where(CRMQualificationField.framework_id == framework.id)
                    .order_by(CRMQualificationField.sort_order.asc())
                ).all()
            )

        return cls(
            tenant=tenant,
            stages=tuple(stages),
            priorities=tuple(priorities),
            framework=framework,
            framework_fields=tuple(framework_fields),
            reasons=tuple(reasons),
            settings=settings,
        )

    @property
    def active_stages(self) -> list[CRMLeadStage]:
        return [stage for stage in self.stages if stage.is_active]

    @property
    def default_stage(self) -> CRMLeadStage | None:
        return next((stage for stage in self.active_stages if not stage.is_won and not stage.is_lost), None)

    @property
    def won_stage(self) -> CRMLeadStage | None:
        return next((stage for stage in self.active_stages if stage.is_won), None)

    @property
    def lost_stage(self) -> CRMLeadStage | None:
        return next((stage for stage in self.active_stages if stage.is_lost), None)

    @property
    def default_priority(self) -> CRMLeadPriority | None:
        return next((item for item in self.priorities if item.is_default and item.is_active), None)

    def stage(self, stage_id: uuid.UUID | None) -> CRMLeadStage | None:
        if stage_id is None:
            return None
        return next((stage for stage in self.stages if stage.id == stage_id), None)

    def active_stage(self, stage_id: uuid.UUID | None) -> CRMLeadStage | None:
        stage = self.stage(stage_id)
        if stage is None or not stage.is_active:
            return None
        return stage

    def priority(self, priority_id: uuid.UUID | None) -> CRMLeadPriority | None:
        if priority_id is None:
            return None
        return next((item for item in self.priorities if item.id == priority_id), None)

    def active_reason(self, reason_id: uuid.UUID) -> CRMDisqualificationReason | None:
        return next((item for item in self.reasons if item.id == reason_id and item.is_active), None)
