from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

from app.crm.errors import InvalidStateError, NotFoundError
from app.crm.models import CRMLeadSetting
from app.crm.schemas import DuplicatePolicy
from app.platform.tenancy import TenantPartition


class _SettingsSection(BaseModel):
    model_config = ConfigDict(extra="ignore")


class GeneralSettings(_SettingsSection):
    active_qualification_framework: str | None = None
    auto_priority_from_score: bool = False


class StageSettings(_SettingsSection):
    lock_previous_stages: bool = False


class DuplicateDetectionSettings(_SettingsSection):
    enabled: bool = False
    check_leads: bool = True
    check_contacts: bool = True
    exact_email_match: DuplicatePolicy = "warn"
    exact_phone_match: DuplicatePolicy = "warn"


class OwnershipSettings(_SettingsSection):
    add_previous_owner_to_team: bool = False
    previous_owner_role: str = "Lead Generator"
    previous_owner_access: Literal["read", "write"] = "read"


class ConversionSettings(_SettingsSection):
    copy_activities: bool = True
    copy_notes: bool = True
    copy_documents: bool = True
    make_read_only: bool = False
    allow_field_edit: bool = False


class LeadSettings(BaseModel):
    general: GeneralSettings = Field(default_factory=GeneralSettings)
    stages: StageSettings = Field(default_factory=StageSettings)
    duplicate_detection: DuplicateDetectionSettings = Field(default_factory=DuplicateDetectionSettings)
    ownership: OwnershipSettings = Field(default_factory=OwnershipSettings)
    conversion: ConversionSettings = Field(default_factory=ConversionSettings)


SETTING_KEYS = tuple(LeadSettings.model_fields.keys())


def load_lead_settings(session: Session, tenant: TenantPartition) -> LeadSettings:
    rows = session.scalars(tenant.select(CRMLeadSetting)).all()
    raw: dict[str, Any] = {row.setting_key: row.setting_value or {} for row in rows if row.setting_key in SETTING_KEYS}
    return LeadSettings.model_validate(raw)


def update_lead_setting(session: Session, tenant: TenantPartition, key: str, patch: dict[str, Any]) -> dict[str, Any]:
    """Shallow-merge ``patch`` into the stored document for ``key``; unknown keys are kept verbatim."""
    if key not in SETTING_KEYS:
        raise NotFoundError("lead setting")

    row = session.scalar(tenant.select(CRMLeadSetting).where(CRMLeadSetting.setting_key == key))
    merged = {**(row.setting_value if row is not None else {}), **patch}
    try:
        LeadSettings.model_validate({key: merged})
    except ValidationError as exc:
        raise InvalidStateError("invalid_setting", f"Invalid value for lead setting '{key}': {exc.errors()[0]['msg']}")
    if row is None:
        row = tenant.add(session, CRMLeadSetting(setting_key=key, setting_value=merged))
    else:
        row.setting_value = merged
    session.flush()
    return merged
