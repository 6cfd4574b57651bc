from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from app.crm.duplicates import normalize_email
from app.crm.errors import InvalidStateError, NotFoundError, ValidationFailedError
from app.crm.models import CRMLead, CRMLeadStage, CRMLeadStageField
from app.crm.reference import LeadReferenceData
from app.platform.tenancy import TenantPartition
from app.services.activity import ActivityEntry, ActivityTimeline
from app.services.audit import AuditEntry, AuditLogWriter

SYSTEM_COLUMNS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "mobile",
    "company",
    "job_title",
    "website",
    "address_line1",
    "address_line2",
    "city",
    "state",
    "postal_code",
    "country",
    "source",
)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


SYSTEM_FIELD_MAP = {**{column: column for column in SYSTEM_COLUMNS}, **{_camel(column): column for column in SYSTEM_COLUMNS}}


@dataclass(frozen=True)
class SystemColumn:
    column: str


@dataclass(frozen=True)
class QualificationKey:
    key: str


@dataclass(frozen=True)
class CustomKey:
    key: str


FieldTarget = SystemColumn | QualificationKey | CustomKey


def classify_field(key: str) -> FieldTarget:
    if key.startswith("qualification."):
        return QualificationKey(key.split(".", 1)[1])
    if key in SYSTEM_FIELD_MAP:
        return SystemColumn(SYSTEM_FIELD_MAP[key])
    if key.startswith("custom."):
        return CustomKey(key.split(".", 1)[1])
    return CustomKey(key)


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return str(value).strip() == ""


def append_stage_history(
    lead: CRMLead,
    *,
    stage_id: uuid.UUID | None,
    stage_name: str | None,
    entered_by: str,
    entered_at: datetime,
    previous_stage_id: uuid.UUID | None = None,
    unlock_reason: str | None = None,
) -> dict[str, Any]:
    entry = {
        "stage_id": str(stage_id) if stage_id else None,
        "stage_name": stage_name,
        "entered_at": entered_at.isoformat(),
        "entered_by": entered_by,
        "previous_stage_id": str(previous_stage_id) if previous_stage_id else None,
        "unlock_reason": unlock_reason,
    }
    lead.stage_history = [*(lead.stage_history or []), entry]
    return entry


def ensure_not_terminal(lead: CRMLead, operation: str) -> None:
    if lead.converted_at is not None:
        raise InvalidStateError("lead_converted", f"Cannot {operation} a converted lead")
    if lead.disqualified_at is not None:
        raise InvalidStateError("lead_disqualified", f"Cannot {operation} a disqualified lead")


@dataclass
class StageTransition:
    previous_stage_id: uuid.UUID | None
    stage: CRMLeadStage
    changed_fields: set[str] = field(default_factory=set)


class StageTransitionMachine:
    """Moves leads between stages, enforcing backward locks and required-field gates."""

    def __init__(self, activity: ActivityTimeline, audit: AuditLogWriter) -> None:
        self.activity = activity
        self.audit = audit

    def required_fields(
        self,
        session: Session,
        tenant: TenantPartition,
        stage: CRMLeadStage,
    ) -> tuple[list[str], dict[str, str]]:
        rows = session.scalars(
            tenant.select(CRMLeadStageField)
            .where(CRMLeadStageField.stage_id == stage.id)
            .order_by(CRMLeadStageField.sort_order.asc())
        ).all()
        labels = {row.field_key: row.field_label for row in rows}
        keys = list(dict.fromkeys([*(stage.required_fields or []), *(row.field_key for row in rows if row.is_required)]))
        return keys, labels

    def missing_fields(
        self,
        lead: CRMLead,
        required: Iterable[str],
        provided: Mapping[str, Any],
        labels: Mapping[str, str],
    ) -> list[dict[str, str]]:
        provided_by_target = {classify_field(key): value for key, value in provided.items()}
        missing: list[dict[str, str]] = []
        for requirement in required:
            alternatives = [item.strip() for item in requirement.split("||") if item.strip()]
            if any(not is_blank(self._field_value(lead, key, provided_by_target)) for key in alternatives):
                continue
            label = " or ".join(labels.get(key, key) for key in alternatives) if "||" in requirement else labels.get(requirement, requirement)
            missing.append({"field_key": requirement, "field_label": label})
        return missing

    def apply_field_updates(self, lead: CRMLead, updates: Mapping[str, Any]) -> set[str]:
        changed: set[str] = set()
        qualification = dict(lead.qualification or {})
        custom_fields = dict(lead.custom_fields or {})
        for key, value in updates.items():
            target = classify_field(key)
            if isinstance(target, SystemColumn):
                if target.column == "email":
                    value = normalize_email(value)
                elif value is not None and not isinstance(value, str):
                    value = str(value)
                setattr(lead, target.column, value)
                changed.add(target.column)
            elif isinstance(target, QualificationKey):
                qualification[target.key] = value
                changed.add("qualification")
            else:
                custom_fields[target.key] = value
                changed.add("custom_fields")
        if "qualification" in changed:
            lead.qualification = qualification
        if "custom_fields" in changed:
            lead.custom_fields = custom_fields
        return changed

    def change_stage(
        self,
        session: Session,
        reference: LeadReferenceData,
        lead: CRMLead,
        target_stage_id: uuid.UUID,
        *,
        performed_by: str,
        field_updates: Mapping[str, Any] | None = None,
        unlock_reason: str | None = None,
    ) -> StageTransition:
        tenant = reference.tenant
        ensure_not_terminal(lead, "change the stage of")

        target = reference.active_stage(target_stage_id)
        if target is None:
            raise NotFoundError("stage", "Target stage not found")

        current = reference.stage(lead.stage_id)
        if (
            current is not None
            and target.sort_order < current.sort_order
            and reference.settings.stages.lock_previous_stages
            and is_blank(unlock_reason)
        ):
            raise InvalidStateError(
                "stage_locked",
                "Moving backward requires an unlock reason. Previous stages are locked.",
            )

        updates = dict(field_updates or {})
        required, labels = self.required_fields(session, tenant, target)
        missing = self.missing_fields(lead, required, updates, labels)
        if missing:
            raise ValidationFailedError(missing)

        changed = self.apply_field_updates(lead, updates) if updates else set()
        now = datetime.now(timezone.utc)
        previous_stage_id = lead.stage_id
        lead.stage_id = target.id
        lead.stage_entered_at = now
        lead.updated_by = performed_by
        append_stage_history(
            lead,
            stage_id=target.id,
            stage_name=target.name,
            entered_by=performed_by,
            entered_at=now,
            previous_stage_id=previous_stage_id,
            unlock_reason=unlock_reason or None,
        )
        session.flush()

        self.activity.create(
            session,
            tenant,
            ActivityEntry(
                entity_type="lead",
                entity_id=lead.id,
                activity_type="stage_changed",
                title=f"Stage changed to {target.name}",
                performed_by=performed_by,
                metadata={
                    "previous_stage_id": str(previous_stage_id) if previous_stage_id else None,
                    "stage_id": str(target.id),
                    "unlock_reason": unlock_reason or None,
                },
            ),
        )
        self.audit.log(
            session,
            tenant,
            AuditEntry(
                entity_type="lead",
                entity_id=str(lead.id),
                action="stage_change",
                performed_by=performed_by,
                changes={
                    "stage_id": {
                        "from": str(previous_stage_id) if previous_stage_id else None,
                        "to": str(target.id),
                    }
                },
                metadata={"unlock_reason": unlock_reason} if unlock_reason else None,
            ),
        )
        return StageTransition(previous_stage_id=previous_stage_id, stage=target, changed_fields=changed)

    def disqualify(
        self,
        session: Session,
        reference: LeadReferenceData,
        lead: CRMLead,
        reason_id: uuid.UUID,
        *,
        performed_by: str,
        notes: str | None = None,
    ) -> None:
        tenant = reference.tenant
        ensure_not_terminal(lead, "disqualify")
        reason = reference.active_reason(reason_id)
        if reason is None:
            raise NotFoundError("disqualification reason")

        now = datetime.now(timezone.utc)
        previous_stage_id = lead.stage_id
        lost_stage = reference.lost_stage
        if lost_stage is not None:
            lead.stage_id = lost_stage.id
            lead.stage_entered_at = now
        lead.disqualified_at = now
        lead.disqualified_by = performed_by
        lead.disqualification_reason_id = reason.id
        lead.disqualification_notes = notes
        lead.updated_by = performed_by
        append_stage_history(
            lead,
            stage_id=lead.stage_id,
            stage_name="Disqualified",
            entered_by=performed_by,
            entered_at=now,
            previous_stage_id=previous_stage_id,
        )
        session.flush()

        self.activity.create(
            session,
            tenant,
            ActivityEntry(
                entity_type="lead",
                entity_id=lead.id,
                activity_type="disqualified",
                title=f"Lead disqualified: {reason.name}",
                description=notes,
                performed_by=performed_by,
                metadata={"reason_id": str(reason.id), "reason": reason.name},
            ),
        )
        self.audit.log(
            session,
            tenant,
            AuditEntry(
                entity_type="lead",
                entity_id=str(lead.id),
                action="disqualify",
                performed_by=performed_by,
                changes={"disqualification_reason_id": {"from": None, "to": str(reason.id)}},
                new_values={"notes": notes},
            ),
        )

    @staticmethod
    def _field_value(lead: CRMLead, key: str, provided: Mapping[FieldTarget, Any]) -> Any:
        target = classify_field(key)
        if target in provided:
            return provided[target]
        if isinstance(target, SystemColumn):
            return getattr(lead, target.column, None)
        if isinstance(target, QualificationKey):
            return (lead.qualification or {}).get(target.key)
        value = (lead.custom_fields or {}).get(target.key)
        if is_blank(value) and not key.startswith("custom."):
            value = (lead.qualification or {}).get(key)
            if is_blank(value):
                value = provided.get(QualificationKey(key))
        return value
