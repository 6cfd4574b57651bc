from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.database import Base
from app.crm.errors import InvalidStateError, NotFoundError, ValidationFailedError
from app.crm.models import (
    CRMActivity,
    CRMDisqualificationReason,
    CRMLead,
    CRMLeadStage,
    CRMLeadStageField,
    CRMScoringRule,
    CRMScoringTemplate,
)
from app.crm.schemas import LeadConvertRequest, LeadCreate, LeadDisqualifyRequest, LeadStageChangeRequest
from app.crm.seed import seed_tenant_defaults
from app.crm.service import ActorUser, LeadService
from app.crm.settings import update_lead_setting
from app.models.audit import AuditLog
from app.platform.tenancy import TenantPartition


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


@pytest.fixture()
def tenant(db_session: Session) -> TenantPartition:
    partition = seed_tenant_defaults(db_session, "acme", "Acme")
    db_session.commit()
    return partition


@pytest.fixture()
def service() -> LeadService:
    return LeadService()


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id="user-1", correlation_id="corr-stage")


def _stage(session: Session, tenant: TenantPartition, slug: str) -> CRMLeadStage:
    return session.scalar(tenant.select(CRMLeadStage).where(CRMLeadStage.slug == slug))


def _reason(session: Session, tenant: TenantPartition, name: str = "No budget") -> CRMDisqualificationReason:
    return session.scalar(tenant.select(CRMDisqualificationReason).where(CRMDisqualificationReason.name == name))


def _move(
    service: LeadService,
    session: Session,
    tenant: TenantPartition,
    actor: ActorUser,
    lead_id: uuid.UUID,
    slug: str,
    **kwargs: object,
):
    stage = _stage(session, tenant, slug)
    return service.change_stage(session, tenant, actor, lead_id, LeadStageChangeRequest(stage_id=stage.id, **kwargs))


def test_new_leads_start_in_the_first_open_stage(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Fresh"))

    assert created.stage is not None
    assert created.stage.slug == "new"
    assert len(created.stage_history) == 1
    assert created.stage_history[0].stage_id == created.stage_id
    assert created.stage_history[0].previous_stage_id is None


def test_explicit_initial_stage_must_be_active(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    qualified = _stage(db_session, tenant, "qualified")
    qualified.is_active = False
    db_session.commit()

    with pytest.raises(NotFoundError):
        service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Bad stage", stage_id=qualified.id))


def test_forward_move_appends_history_and_records_side_effects(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Mover"))

    moved = _move(service, db_session, tenant, actor, created.id, "contacted")

    assert moved.stage.slug == "contacted"
    assert moved.row_version == created.row_version + 1
    assert [entry.stage_name for entry in moved.stage_history] == ["New", "Contacted"]
    assert moved.stage_history[1].previous_stage_id == created.stage_id

    activity = db_session.scalar(
        tenant.select(CRMActivity).where(CRMActivity.entity_id == created.id, CRMActivity.activity_type == "stage_changed")
    )
    assert activity is not None
    assert activity.activity_metadata["stage_id"] == str(moved.stage_id)

    audit = db_session.scalar(select(AuditLog).where(AuditLog.entity_id == str(created.id), AuditLog.action == "stage_change"))
    assert audit is not None
    assert audit.changes["stage_id"] == {"from": str(created.stage_id), "to": str(moved.stage_id)}

    stage_events = [item for item in events.published_events if item["event_type"] == "crm.lead.stage_changed"]
    assert stage_events
    assert stage_events[-1]["payload"]["stage_id"] == str(moved.stage_id)
    assert stage_events[-1]["correlation_id"] == "corr-stage"


def test_missing_required_fields_block_the_move_without_writing(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    qualified = _stage(db_session, tenant, "qualified")
    qualified.required_fields = ["company"]
    tenant.add(
        db_session,
        CRMLeadStageField(stage_id=qualified.id, field_key="company", field_label="Company name", is_required=False),
    )
    tenant.add(
        db_session,
        CRMLeadStageField(stage_id=qualified.id, field_key="qualification.budget", field_label="Budget", is_required=True),
    )
    db_session.commit()
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Gated"))

    with pytest.raises(ValidationFailedError) as exc_info:
        _move(service, db_session, tenant, actor, created.id, "qualified")

    assert exc_info.value.missing_fields == [
        {"field_key": "company", "field_label": "Company name"},
        {"field_key": "qualification.budget", "field_label": "Budget"},
    ]
    lead = tenant.get(db_session, CRMLead, created.id)
    assert lead.stage_id == created.stage_id
    assert len(lead.stage_history) == 1
    assert lead.row_version == created.row_version


def test_supplied_stage_fields_satisfy_requirements_and_are_applied(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    qualified = _stage(db_session, tenant, "qualified")
    qualified.required_fields = ["company", "qualification.budget", "jobTitle"]
    db_session.commit()
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Supplied"))

    moved = _move(
        service,
        db_session,
        tenant,
        actor,
        created.id,
        "qualified",
        stage_fields={
            "company": "Acme",
            "qualification.budget": "10k",
            "jobTitle": "CTO",
            "custom.region": "EMEA",
        },
    )

    assert moved.stage.slug == "qualified"
    assert moved.company == "Acme"
    assert moved.job_title == "CTO"
    assert moved.qualification == {"budget": "10k"}
    assert moved.custom_fields == {"region": "EMEA"}


def test_or_group_passes_when_any_alternative_is_present(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    contacted = _stage(db_session, tenant, "contacted")
    contacted.required_fields = ["email||phone"]
    tenant.add(db_session, CRMLeadStageField(stage_id=contacted.id, field_key="email", field_label="Email"))
    tenant.add(db_session, CRMLeadStageField(stage_id=contacted.id, field_key="phone", field_label="Phone"))
    db_session.commit()

    unreachable = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Unreachable"))
    with pytest.raises(ValidationFailedError) as exc_info:
        _move(service, db_session, tenant, actor, unreachable.id, "contacted")
    assert exc_info.value.missing_fields == [{"field_key": "email||phone", "field_label": "Email or Phone"}]

    reachable = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Reachable", phone="+1-555-0100"))
    assert _move(service, db_session, tenant, actor, reachable.id, "contacted").stage.slug == "contacted"


def test_bare_requirement_falls_back_to_qualification_answers(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    qualified = _stage(db_session, tenant, "qualified")
    qualified.required_fields = ["budget"]
    db_session.commit()
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Answered", qualification={"budget": "5k"}))

    assert _move(service, db_session, tenant, actor, created.id, "qualified").stage.slug == "qualified"


def test_backward_move_needs_unlock_reason_when_stages_are_locked(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    update_lead_setting(db_session, tenant, "stages", {"lock_previous_stages": True})
    db_session.commit()
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Locked"))
    _move(service, db_session, tenant, actor, created.id, "qualified")

    with pytest.raises(InvalidStateError) as exc_info:
        _move(service, db_session, tenant, actor, created.id, "new")
    assert exc_info.value.reason == "stage_locked"

    with pytest.raises(InvalidStateError):
        _move(service, db_session, tenant, actor, created.id, "new", unlock_reason="   ")

    moved = _move(service, db_session, tenant, actor, created.id, "new", unlock_reason="Customer went quiet")
    assert moved.stage.slug == "new"
    assert moved.stage_history[-1].unlock_reason == "Customer went quiet"
    assert [entry.stage_name for entry in moved.stage_history] == ["New", "Qualified", "New"]


def test_backward_move_is_free_when_stages_are_unlocked(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Free"))
    _move(service, db_session, tenant, actor, created.id, "qualified")

    assert _move(service, db_session, tenant, actor, created.id, "contacted").stage.slug == "contacted"


def test_inactive_or_unknown_target_stage_is_not_found(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Nowhere"))
    contacted = _stage(db_session, tenant, "contacted")
    contacted.is_active = False
    db_session.commit()

    with pytest.raises(NotFoundError):
        _move(service, db_session, tenant, actor, created.id, "contacted")
    with pytest.raises(NotFoundError):
        service.change_stage(db_session, tenant, actor, created.id, LeadStageChangeRequest(stage_id=uuid.uuid4()))


def test_stage_field_updates_trigger_rescoring(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    template = tenant.add(db_session, CRMScoringTemplate(name="Default", max_score=100, is_default=True))
    db_session.flush()
    tenant.add(
        db_session,
        CRMScoringRule(
            template_id=template.id,
            name="Director",
            field_key="job_title",
            operator="contains",
            value="director",
            score_delta=30,
        ),
    )
    db_session.commit()
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Rescored"))
    assert created.score == 0

    moved = _move(service, db_session, tenant, actor, created.id, "contacted", stage_fields={"jobTitle": "Director"})
    assert moved.score == 30


def test_disqualify_moves_to_lost_stage_and_blocks_further_transitions(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Lost"))
    reason = _reason(db_session, tenant)

    disqualified = service.disqualify_lead(
        db_session, tenant, actor, created.id, LeadDisqualifyRequest(reason_id=reason.id, notes="No funding this year")
    )

    assert disqualified.stage.slug == "disqualified"
    assert disqualified.disqualified_at is not None
    assert disqualified.disqualified_by == "user-1"
    assert disqualified.disqualification_reason_id == reason.id
    assert disqualified.disqualification_notes == "No funding this year"
    assert disqualified.stage_history[-1].stage_name == "Disqualified"
    assert any(item["event_type"] == "crm.lead.disqualified" for item in events.published_events)

    with pytest.raises(InvalidStateError) as exc_info:
        _move(service, db_session, tenant, actor, created.id, "contacted")
    assert exc_info.value.reason == "lead_disqualified"

    with pytest.raises(InvalidStateError):
        service.disqualify_lead(db_session, tenant, actor, created.id, LeadDisqualifyRequest(reason_id=reason.id))


def test_disqualify_requires_an_active_reason(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Kept"))
    reason = _reason(db_session, tenant, "Bad timing")
    reason.is_active = False
    db_session.commit()

    with pytest.raises(NotFoundError):
        service.disqualify_lead(db_session, tenant, actor, created.id, LeadDisqualifyRequest(reason_id=reason.id))
    with pytest.raises(NotFoundError):
        service.disqualify_lead(db_session, tenant, actor, created.id, LeadDisqualifyRequest(reason_id=uuid.uuid4()))

    lead = tenant.get(db_session, CRMLead, created.id)
    assert lead.disqualified_at is None


def test_blanking_a_required_field_in_stage_fields_blocks_the_move(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    contacted = _stage(db_session, tenant, "contacted")
    contacted.required_fields = ["company"]
    db_session.commit()
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Blanked", company="Acme"))

    with pytest.raises(ValidationFailedError) as exc_info:
        _move(service, db_session, tenant, actor, created.id, "contacted", stage_fields={"company": "  "})

    assert exc_info.value.missing_fields == [{"field_key": "company", "field_label": "company"}]
    lead = tenant.get(db_session, CRMLead, created.id)
    assert lead.stage_id == created.stage_id
    assert lead.company == "Acme"


def test_converted_lead_rejects_stage_changes_and_disqualification(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Won", company="Acme"))
    service.convert_lead(db_session, tenant, actor, created.id, LeadConvertRequest())
    reason = _reason(db_session, tenant)

    with pytest.raises(InvalidStateError) as exc_info:
        _move(service, db_session, tenant, actor, created.id, "contacted")
    assert exc_info.value.reason == "lead_converted"

    with pytest.raises(InvalidStateError) as exc_info:
        service.disqualify_lead(db_session, tenant, actor, created.id, LeadDisqualifyRequest(reason_id=reason.id))
    assert exc_info.value.reason == "lead_converted"

    lead = tenant.get(db_session, CRMLead, created.id)
    assert lead.disqualified_at is None
    assert len(lead.stage_history) == 2


@pytest.mark.parametrize("operation", ["change_stage", "disqualify", "convert"])
def test_each_transition_appends_exactly_one_history_entry(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser, operation: str
) -> None:
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Tracked", company="Acme"))
    before = _move(service, db_session, tenant, actor, created.id, "contacted")
    earlier = [entry.model_dump() for entry in before.stage_history]

    if operation == "change_stage":
        after = _move(service, db_session, tenant, actor, created.id, "qualified")
    elif operation == "disqualify":
        after = service.disqualify_lead(
            db_session, tenant, actor, created.id, LeadDisqualifyRequest(reason_id=_reason(db_session, tenant).id)
        )
    else:
        after = service.convert_lead(db_session, tenant, actor, created.id, LeadConvertRequest()).lead

    assert len(after.stage_history) == len(earlier) + 1
    assert [entry.model_dump() for entry in after.stage_history[:-1]] == earlier
    assert after.stage_history[-1].previous_stage_id == before.stage_id
