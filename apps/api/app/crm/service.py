from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import events
from app.crm.conversion import ConversionOrchestrator, OpportunityCapability, opportunities_table_present
from app.crm.duplicates import DuplicateDetector, normalize_email, normalize_phone
from app.crm.errors import ConcurrencyConflictError, InvalidStateError, NotFoundError
from app.crm.models import (
    CRMDisqualificationReason,
    CRMIdempotencyKey,
    CRMLead,
    CRMLeadPriority,
    CRMLeadStage,
    CRMLeadStageField,
    CRMQualificationField,
    CRMQualificationFramework,
    CRMRoutingRule,
)
from app.crm.ownership import OwnershipTransferHandler
from app.crm.reference import LeadReferenceData
from app.crm.repositories import LeadListFilters, LeadRepository
from app.crm.routing import RoutingEvaluator
from app.crm.schemas import (
    DisqualificationReasonRead,
    KanbanColumn,
    LeadConvertRequest,
    LeadConvertResult,
    LeadCreate,
    LeadDetailRead,
    LeadDisqualifyRequest,
    LeadKanbanBoard,
    LeadListMeta,
    LeadListPage,
    LeadRead,
    LeadSortField,
    LeadStageChangeRequest,
    LeadUpdate,
    PrioritySummary,
    PriorityRead,
    QualificationFieldRead,
    RecordTeamMemberRead,
    RoutingRuleRead,
    StageFieldRead,
    StageRead,
    StageSummary,
)
from app.crm.scoring import SCORING_INPUT_FIELDS, LeadScorer, PriorityResolver, ScoringService
from app.crm.settings import SETTING_KEYS, load_lead_settings, update_lead_setting
from app.crm.stages import StageTransitionMachine, append_stage_history
from app.core.config import get_settings
from app.metrics import observe_lead_operation
from app.platform.errors import PlatformError
from app.platform.tenancy import TenantPartition
from app.services.activity import ActivityEntry, ActivityTimeline, DbActivityTimeline
from app.services.audit import AuditEntry, AuditLogWriter, DbAuditLog
from app.services.record_team import DbRecordTeam, RecordTeam

logger = logging.getLogger("app.crm.leads")
tracer = trace.get_tracer("app.crm.leads")

TRACKED_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "mobile",
    "company",
    "job_title",
    "website",
    "source",
    "stage_id",
    "priority_id",
    "score",
    "qualification",
    "owner_id",
    "tags",
    "do_not_contact",
    "do_not_email",
    "do_not_call",
)

# columns that reject NULL; an explicit null in a patch leaves them untouched
_NON_NULLABLE_UPDATE_FIELDS = frozenset(
    {
        "last_name",
        "emails",
        "phones",
        "addresses",
        "social_profiles",
        "source_details",
        "qualification",
        "custom_fields",
        "tags",
        "do_not_contact",
        "do_not_email",
        "do_not_call",
    }
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


class LeadService:
    """Orchestrates the lead lifecycle: every public operation commits once or not at all."""

    entity_type = "lead"

    def __init__(
        self,
        *,
        audit_log: AuditLogWriter | None = None,
        activity: ActivityTimeline | None = None,
        record_team: RecordTeam | None = None,
        scorer: LeadScorer | None = None,
        opportunity_capability: OpportunityCapability = opportunities_table_present,
    ) -> None:
        self.audit_log = audit_log or DbAuditLog()
        self.activity = activity or DbActivityTimeline()
        self.record_team = record_team or DbRecordTeam()
        self.scorer = scorer or ScoringService()
        self.priorities = PriorityResolver()
        self.duplicates = DuplicateDetector()
        self.routing = RoutingEvaluator()
        self.stages = StageTransitionMachine(self.activity, self.audit_log)
        self.conversion = ConversionOrchestrator(self.activity, self.audit_log, opportunity_capability)
        self.ownership = OwnershipTransferHandler(self.activity, self.record_team)

    # ------------------------------------------------------------------ create

    def create_lead(self, session: Session, tenant: TenantPartition, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        with self._operation(session, "create", tenant, actor_user) as span:
            reference = LeadReferenceData.load(session, tenant)
            email = normalize_email(str(dto.email) if dto.email is not None else None)
            phone = normalize_phone(dto.phone)
            self.duplicates.check(
                session,
                tenant,
                reference.settings.duplicate_detection,
                email=email,
                phone=phone,
            )

            stage = self._initial_stage(reference, dto.stage_id)
            priority_id = self._resolve_priority_id(reference, dto.priority_id)
            framework_id = self._resolve_framework_id(session, tenant, reference, dto.qualification_framework_id)

            routing_values = {**dto.model_dump(mode="json"), "email": email, "phone": phone}
            decision = self.routing.resolve_owner(session, tenant, routing_values)
            owner_id = decision.owner_id if decision is not None else (dto.owner_id or actor_user.user_id)

            now = utcnow()
            payload = dto.model_dump(
                exclude={"email", "phone", "stage_id", "priority_id", "owner_id", "qualification_framework_id"}
            )
            lead = tenant.add(
                session,
                CRMLead(
                    **payload,
                    email=email,
                    phone=phone,
                    stage_id=stage.id if stage is not None else None,
                    stage_entered_at=now,
                    priority_id=priority_id,
                    qualification_framework_id=framework_id,
                    owner_id=owner_id,
                    created_by=actor_user.user_id,
                    updated_by=actor_user.user_id,
                    stage_history=[],
                    created_at=now,
                    updated_at=now,
                ),
            )
            append_stage_history(
                lead,
                stage_id=lead.stage_id,
                stage_name=stage.name if stage is not None else None,
                entered_by=actor_user.user_id,
                entered_at=now,
            )
            session.flush()
            span.set_attribute("lead_id", str(lead.id))

            self._rescore(session, reference, lead)
            created = self._to_read(lead, reference)
            self.activity.create(
                session,
                tenant,
                ActivityEntry(
                    entity_type=self.entity_type,
                    entity_id=lead.id,
                    activity_type="created",
                    title="Lead created",
                    description=f'Lead "{lead.full_name}" was created',
                    performed_by=actor_user.user_id,
                    metadata={"routing_rule_id": str(decision.rule_id)} if decision is not None else {},
                ),
            )
            self.audit_log.log(
                session,
                tenant,
                AuditEntry(
                    entity_type=self.entity_type,
                    entity_id=str(lead.id),
                    action="create",
                    performed_by=actor_user.user_id,
                    new_values=created.model_dump(mode="json"),
                ),
            )
            session.commit()

        self._publish(
            "crm.lead.created",
            tenant,
            actor_user,
            {"lead_id": str(lead.id), "owner_id": lead.owner_id, "stage_id": _str_or_none(lead.stage_id)},
        )
        logger.info(
            "lead.created",
            extra={"tenant_id": tenant.tenant_id, "lead_id": str(lead.id), "owner_id": lead.owner_id},
        )
        return self._to_read(lead, reference)

    # ------------------------------------------------------------------ reads

    def list_leads(
        self,
        session: Session,
        tenant: TenantPartition,
        actor_user: ActorUser,
        filters: LeadListFilters,
        *,
        sort_by: LeadSortField = "created_at",
        sort_order: str = "DESC",
        page: int = 1,
        limit: int = 20,
    ) -> LeadListPage:
        reference = LeadReferenceData.load(session, tenant)
        result = LeadRepository(tenant).page(
            session,
            filters,
            actor_user.user_id,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )
        return LeadListPage(
            data=[self._to_read(lead, reference) for lead in result.rows],
            meta=LeadListMeta(
                total=result.total,
                page=result.page,
                limit=result.limit,
                total_pages=result.total_pages,
            ),
        )

    def kanban(
        self,
        session: Session,
        tenant: TenantPartition,
        actor_user: ActorUser,
        filters: LeadListFilters,
    ) -> LeadKanbanBoard:
        reference = LeadReferenceData.load(session, tenant)
        repository = LeadRepository(tenant)
        column_limit = get_settings().kanban_column_limit
        columns: list[KanbanColumn] = []
        for stage in reference.active_stages:
            count, rows = repository.stage_column(session, filters, actor_user.user_id, stage.id, column_limit)
            columns.append(
                KanbanColumn(
                    **StageSummary.model_validate(stage).model_dump(),
                    count=count,
                    leads=[self._to_read(lead, reference) for lead in rows],
                )
            )
        return LeadKanbanBoard(stages=columns)

    def get_lead(
        self,
        session: Session,
        tenant: TenantPartition,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
    ) -> LeadDetailRead:
        reference = LeadReferenceData.load(session, tenant)
        lead = self._get_lead(session, tenant, lead_id)

        qualification_fields: list[CRMQualificationField] = []
        if lead.qualification_framework_id is not None:
            qualification_fields = list(
                session.scalars(
                    tenant.select(CRMQualificationField)
                    .where(CRMQualificationField.framework_id == lead.qualification_framework_id)
                    .order_by(CRMQualificationField.sort_order.asc())
                ).all()
            )
        stage_fields: list[CRMLeadStageField] = []
        if lead.stage_id is not None:
            stage_fields = list(
                session.scalars(
                    tenant.select(CRMLeadStageField)
                    .where(CRMLeadStageField.stage_id == lead.stage_id, CRMLeadStageField.is_visible.is_(True))
                    .order_by(CRMLeadStageField.sort_order.asc())
                ).all()
            )

        members = self.record_team.get_members(session, tenant, self.entity_type, lead.id)
        duplicates = self.duplicates.find_duplicates(
            session,
            tenant,
            email=lead.email,
            phone=lead.phone,
            exclude_id=lead.id,
        )
        base = self._to_read(lead, reference)
        return LeadDetailRead(
            **dict(base),
            team_members=[RecordTeamMemberRead.model_validate(item) for item in members],
            qualification_fields=[QualificationFieldRead.model_validate(item) for item in qualification_fields],
            stage_fields=[StageFieldRead.model_validate(item) for item in stage_fields],
            all_stages=[StageRead.model_validate(item) for item in reference.active_stages],
            stage_settings=reference.settings.stages.model_dump(),
            duplicates=duplicates,
        )

    # ------------------------------------------------------------------ update

    def update_lead(
        self,
        session: Session,
        tenant: TenantPartition,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadUpdate,
    ) -> LeadRead:
        with self._operation(session, "update", tenant, actor_user, lead_id):
            reference = LeadReferenceData.load(session, tenant)
            lead = self._get_lead(session, tenant, lead_id)
            self._check_row_version(lead, dto.row_version)

            conversion = reference.settings.conversion
            if lead.converted_at is not None and conversion.make_read_only and not conversion.allow_field_edit:
                raise InvalidStateError("lead_read_only", "This lead has been converted and is read-only")

            payload = dto.model_dump(exclude_unset=True, exclude={"row_version"})
            payload = {
                key: value
                for key, value in payload.items()
                if value is not None or key not in _NON_NULLABLE_UPDATE_FIELDS
            }
            if "email" in payload:
                payload["email"] = normalize_email(payload["email"])
            if "phone" in payload:
                payload["phone"] = normalize_phone(payload["phone"])
            if not payload:
                return self._to_read(lead, reference)

            detection = reference.settings.duplicate_detection
            if payload.get("email") and payload["email"] != lead.email:
                self.duplicates.check(session, tenant, detection, email=payload["email"], phone=None, exclude_id=lead.id)
            if payload.get("phone") and payload["phone"] != lead.phone:
                self.duplicates.check(session, tenant, detection, email=None, phone=payload["phone"], exclude_id=lead.id)

            if "priority_id" in payload and payload["priority_id"] is not None:
                self._resolve_priority_id(reference, payload["priority_id"])
            if payload.get("qualification_framework_id") is not None:
                self._resolve_framework_id(session, tenant, reference, payload["qualification_framework_id"])

            before = self._snapshot(lead)
            previous_owner_id = lead.owner_id
            new_owner_id = payload.get("owner_id")
            if new_owner_id and new_owner_id != previous_owner_id:
                self.ownership.transfer(
                    session,
                    tenant,
                    reference.settings.ownership,
                    lead,
                    previous_owner_id=previous_owner_id,
                    new_owner_id=new_owner_id,
                    performed_by=actor_user.user_id,
                )

            for key, value in payload.items():
                setattr(lead, key, value)
            lead.updated_by = actor_user.user_id
            lead.updated_at = utcnow()
            lead.row_version += 1
            session.flush()

            if SCORING_INPUT_FIELDS.intersection(payload):
                self._rescore(session, reference, lead)

            after = self._snapshot(lead)
            changes = self.audit_log.calculate_changes(before, after, TRACKED_FIELDS)
            if changes:
                self.activity.create(
                    session,
                    tenant,
                    ActivityEntry(
                        entity_type=self.entity_type,
                        entity_id=lead.id,
                        activity_type="updated",
                        title="Lead updated",
                        description=f"Updated: {', '.join(changes)}",
                        performed_by=actor_user.user_id,
                        metadata={"changed_fields": list(changes)},
                    ),
                )
                self.audit_log.log(
                    session,
                    tenant,
                    AuditEntry(
                        entity_type=self.entity_type,
                        entity_id=str(lead.id),
                        action="update",
                        performed_by=actor_user.user_id,
                        changes=changes,
                        previous_values=before,
                        new_values=after,
                    ),
                )
            session.commit()

        self._publish(
            "crm.lead.updated",
            tenant,
            actor_user,
            {"lead_id": str(lead.id), "changed_fields": sorted(changes)},
        )
        logger.info("lead.updated", extra={"tenant_id": tenant.tenant_id, "lead_id": str(lead.id)})
        return self._to_read(lead, reference)

    # ------------------------------------------------------------------ transitions

    def change_stage(
        self,
        session: Session,
        tenant: TenantPartition,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadStageChangeRequest,
    ) -> LeadRead:
        with self._operation(session, "change_stage", tenant, actor_user, lead_id):
            reference = LeadReferenceData.load(session, tenant)
            lead = self._get_lead(session, tenant, lead_id)
            transition = self.stages.change_stage(
                session,
                reference,
                lead,
                dto.stage_id,
                performed_by=actor_user.user_id,
                field_updates=dto.stage_fields,
                unlock_reason=dto.unlock_reason,
            )
            if SCORING_INPUT_FIELDS.intersection(transition.changed_fields):
                self._rescore(session, reference, lead)
            lead.row_version += 1
            session.commit()

        self._publish(
            "crm.lead.stage_changed",
            tenant,
            actor_user,
            {
                "lead_id": str(lead.id),
                "previous_stage_id": _str_or_none(transition.previous_stage_id),
                "stage_id": str(transition.stage.id),
            },
        )
        logger.info(
            "lead.stage_changed",
            extra={"tenant_id": tenant.tenant_id, "lead_id": str(lead.id), "stage_id": str(transition.stage.id)},
        )
        return self._to_read(lead, reference)

    def disqualify_lead(
        self,
        session: Session,
        tenant: TenantPartition,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadDisqualifyRequest,
    ) -> LeadRead:
        with self._operation(session, "disqualify", tenant, actor_user, lead_id):
            reference = LeadReferenceData.load(session, tenant)
            lead = self._get_lead(session, tenant, lead_id)
            self.stages.disqualify(
                session,
                reference,
                lead,
                dto.reason_id,
                performed_by=actor_user.user_id,
                notes=dto.notes,
            )
            lead.row_version += 1
            session.commit()

        self._publish(
            "crm.lead.disqualified",
            tenant,
            actor_user,
            {"lead_id": str(lead.id), "reason_id": str(dto.reason_id)},
        )
        logger.info("lead.disqualified", extra={"tenant_id": tenant.tenant_id, "lead_id": str(lead.id)})
        return self._to_read(lead, reference)

    def convert_lead(
        self,
        session: Session,
        tenant: TenantPartition,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadConvertRequest,
        idempotency_key: str | None = None,
    ) -> LeadConvertResult:
        endpoint = f"crm.lead.convert:{lead_id}"
        request_hash = hashlib.sha256(
            json.dumps(dto.model_dump(mode="json"), sort_keys=True).encode("utf-8")
        ).hexdigest()

        if idempotency_key:
            replay = self._replay(session, tenant, endpoint, idempotency_key, request_hash)
            if replay is not None:
                return replay

        with self._operation(session, "convert", tenant, actor_user, lead_id):
            reference = LeadReferenceData.load(session, tenant)
            lead = self._get_lead(session, tenant, lead_id)
            outcome = self.conversion.convert(session, reference, lead, dto, performed_by=actor_user.user_id)
            lead.row_version += 1
            session.flush()

            result = LeadConvertResult(
                lead=self._to_read(lead, reference),
                contact_id=outcome.contact_id,
                account_id=outcome.account_id,
                opportunity_id=outcome.opportunity_id,
            )
            if idempotency_key:
                tenant.add(
                    session,
                    CRMIdempotencyKey(
                        endpoint=endpoint,
                        key=idempotency_key,
                        request_hash=request_hash,
                        response_json=result.model_dump_json(),
                    ),
                )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if idempotency_key:
                    replay = self._replay(session, tenant, endpoint, idempotency_key, request_hash)
                    if replay is not None:
                        return replay
                raise ConcurrencyConflictError("lead", "Lead conversion conflicted with a concurrent request")

        self._publish(
            "crm.lead.converted",
            tenant,
            actor_user,
            {
                "lead_id": str(lead_id),
                "contact_id": _str_or_none(result.contact_id),
                "account_id": _str_or_none(result.account_id),
                "opportunity_id": _str_or_none(result.opportunity_id),
            },
        )
        logger.info(
            "lead.converted",
            extra={"tenant_id": tenant.tenant_id, "lead_id": str(lead_id), "contact_id": _str_or_none(result.contact_id)},
        )
        return result

    def soft_delete_lead(
        self,
        session: Session,
        tenant: TenantPartition,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
    ) -> None:
        with self._operation(session, "delete", tenant, actor_user, lead_id):
            lead = self._get_lead(session, tenant, lead_id)
            before = self._snapshot(lead)
            self.activity.create(
                session,
                tenant,
                ActivityEntry(
                    entity_type=self.entity_type,
                    entity_id=lead.id,
                    activity_type="deleted",
                    title="Lead deleted",
                    description=f'Lead "{lead.full_name}" was deleted',
                    performed_by=actor_user.user_id,
                ),
            )
            self.audit_log.log(
                session,
                tenant,
                AuditEntry(
                    entity_type=self.entity_type,
                    entity_id=str(lead.id),
                    action="delete",
                    performed_by=actor_user.user_id,
                    previous_values=before,
                ),
            )
            lead.deleted_at = utcnow()
            lead.updated_by = actor_user.user_id
            lead.row_version += 1
            session.commit()

        self._publish("crm.lead.deleted", tenant, actor_user, {"lead_id": str(lead_id)})
        logger.info("lead.deleted", extra={"tenant_id": tenant.tenant_id, "lead_id": str(lead_id)})

    # ------------------------------------------------------------------ helpers

    @contextmanager
    def _operation(
        self,
        session: Session,
        operation: str,
        tenant: TenantPartition,
        actor_user: ActorUser,
        lead_id: uuid.UUID | None = None,
    ) -> Iterator[Span]:
        started = time.perf_counter()
        with tracer.start_as_current_span(f"crm.lead.{operation}") as span:
            span.set_attribute("tenant_id", tenant.tenant_id)
            if lead_id is not None:
                span.set_attribute("lead_id", str(lead_id))
            if actor_user.correlation_id:
                span.set_attribute("correlation_id", actor_user.correlation_id)
            try:
                yield span
            except Exception as exc:
                session.rollback()
                outcome = exc.code if isinstance(exc, PlatformError) else "error"
                span.set_status(Status(StatusCode.ERROR, outcome))
                observe_lead_operation(operation, outcome, time.perf_counter() - started)
                raise
        observe_lead_operation(operation, "success", time.perf_counter() - started)

    def _get_lead(self, session: Session, tenant: TenantPartition, lead_id: uuid.UUID) -> CRMLead:
        lead = tenant.get(session, CRMLead, lead_id)
        if lead is None:
            raise NotFoundError("lead", "Lead not found")
        return lead

    @staticmethod
    def _check_row_version(lead: CRMLead, expected: int | None) -> None:
        if expected is not None and expected != lead.row_version:
            raise ConcurrencyConflictError("lead", "row_version conflict")

    @staticmethod
    def _initial_stage(reference: LeadReferenceData, stage_id: uuid.UUID | None) -> CRMLeadStage | None:
        if stage_id is None:
            return reference.default_stage
        stage = reference.active_stage(stage_id)
        if stage is None:
            raise NotFoundError("stage", "Stage not found")
        return stage

    @staticmethod
    def _resolve_priority_id(reference: LeadReferenceData, priority_id: uuid.UUID | None) -> uuid.UUID | None:
        if priority_id is None:
            default = reference.default_priority
            return default.id if default is not None else None
        priority = reference.priority(priority_id)
        if priority is None or not priority.is_active:
            raise NotFoundError("priority", "Priority not found")
        return priority.id

    @staticmethod
    def _resolve_framework_id(
        session: Session,
        tenant: TenantPartition,
        reference: LeadReferenceData,
        framework_id: uuid.UUID | None,
    ) -> uuid.UUID | None:
        if framework_id is None:
            return reference.framework.id if reference.framework is not None else None
        framework = tenant.get(session, CRMQualificationFramework, framework_id)
        if framework is None:
            raise NotFoundError("qualification framework")
        return framework.id

    def _rescore(self, session: Session, reference: LeadReferenceData, lead: CRMLead) -> None:
        self.scorer.score_lead(session, reference.tenant, lead.id)
        if self.priorities.apply(lead, reference.priorities, reference.settings.general.auto_priority_from_score):
            session.flush()

    def _replay(
        self,
        session: Session,
        tenant: TenantPartition,
        endpoint: str,
        key: str,
        request_hash: str,
    ) -> LeadConvertResult | None:
        existing = session.scalar(
            tenant.select(CRMIdempotencyKey).where(
                CRMIdempotencyKey.endpoint == endpoint,
                CRMIdempotencyKey.key == key,
            )
        )
        if existing is None:
            return None
        if existing.request_hash != request_hash:
            raise ConcurrencyConflictError("idempotency key", "Idempotency key was reused with a different payload")
        return LeadConvertResult.model_validate_json(existing.response_json)

    def _snapshot(self, lead: CRMLead) -> dict[str, Any]:
        return json.loads(json.dumps({name: getattr(lead, name) for name in TRACKED_FIELDS}, default=str))

    def _to_read(self, lead: CRMLead, reference: LeadReferenceData) -> LeadRead:
        stage = reference.stage(lead.stage_id)
        priority = reference.priority(lead.priority_id)
        return LeadRead.model_validate(lead).model_copy(
            update={
                "stage": StageSummary.model_validate(stage) if stage is not None else None,
                "priority": PrioritySummary.model_validate(priority) if priority is not None else None,
            }
        )

    @staticmethod
    def _publish(event_type: str, tenant: TenantPartition, actor_user: ActorUser, payload: dict[str, Any]) -> None:
        envelope = events.build_envelope(
            event_type,
            tenant_id=tenant.tenant_id,
            actor_user_id=actor_user.user_id,
            payload=payload,
        )
        envelope["correlation_id"] = actor_user.correlation_id
        events.publish(envelope)


class LeadConfigurationService:
    """Read access to a tenant's lead reference data plus lead-settings updates."""

    def list_stages(self, session: Session, tenant: TenantPartition) -> list[StageRead]:
        rows = session.scalars(tenant.select(CRMLeadStage).order_by(CRMLeadStage.sort_order.asc())).all()
        return [StageRead.model_validate(row) for row in rows]

    def list_stage_fields(self, session: Session, tenant: TenantPartition, stage_id: uuid.UUID) -> list[StageFieldRead]:
        if tenant.get(session, CRMLeadStage, stage_id) is None:
            raise NotFoundError("stage", "Stage not found")
        rows = session.scalars(
            tenant.select(CRMLeadStageField)
            .where(CRMLeadStageField.stage_id == stage_id)
            .order_by(CRMLeadStageField.sort_order.asc())
        ).all()
        return [StageFieldRead.model_validate(row) for row in rows]

    def list_priorities(self, session: Session, tenant: TenantPartition) -> list[PriorityRead]:
        rows = session.scalars(tenant.select(CRMLeadPriority).order_by(CRMLeadPriority.sort_order.asc())).all()
        return [PriorityRead.model_validate(row) for row in rows]

    def list_disqualification_reasons(self, session: Session, tenant: TenantPartition) -> list[DisqualificationReasonRead]:
        rows = session.scalars(
            tenant.select(CRMDisqualificationReason).order_by(CRMDisqualificationReason.sort_order.asc())
        ).all()
        return [DisqualificationReasonRead.model_validate(row) for row in rows]

    def list_routing_rules(self, session: Session, tenant: TenantPartition) -> list[RoutingRuleRead]:
        rows = session.scalars(
            tenant.select(CRMRoutingRule).order_by(CRMRoutingRule.priority.desc(), CRMRoutingRule.created_at.asc())
        ).all()
        return [RoutingRuleRead.model_validate(row) for row in rows]

    def get_settings(self, session: Session, tenant: TenantPartition) -> dict[str, Any]:
        return load_lead_settings(session, tenant).model_dump()

    def update_setting(
        self,
        session: Session,
        tenant: TenantPartition,
        actor_user: ActorUser,
        key: str,
        patch: dict[str, Any],
    ) -> dict[str, Any]:
        try:
            merged = update_lead_setting(session, tenant, key, patch)
            session.commit()
        except Exception:
            session.rollback()
            raise
        logger.info(
            "lead.settings_updated",
            extra={"tenant_id": tenant.tenant_id, "operation": f"settings.{key}"},
        )
        return merged

    @staticmethod
    def setting_keys() -> tuple[str, ...]:
        return SETTING_KEYS


def _str_or_none(value: Any) -> str | None:
    return str(value) if value is not None else None
