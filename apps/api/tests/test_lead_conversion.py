from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.database import Base
from app.crm.errors import ConcurrencyConflictError, InvalidStateError, NotFoundError
from app.crm.models import (
    CRMAccount,
    CRMActivity,
    CRMContact,
    CRMContactAccount,
    CRMDisqualificationReason,
    CRMDocument,
    CRMLead,
    CRMNote,
    CRMOpportunity,
)
from app.crm.schemas import LeadConvertRequest, LeadCreate, LeadDisqualifyRequest, LeadUpdate
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
    return ActorUser(user_id="user-1", correlation_id="corr-convert")


def _lead(service: LeadService, session: Session, tenant: TenantPartition, actor: ActorUser, **values: object):
    payload = {
        "first_name": "Jamie",
        "last_name": "Smith",
        "email": "jamie@acme.io",
        "phone": "+1-555-0100",
        "company": "Acme Widgets",
        "job_title": "CTO",
        "website": "https://acme.io",
        "city": "Austin",
        "country": "US",
        "source": "web",
        "tags": ["vip"],
        "custom_fields": {"employees": 120},
        "do_not_call": True,
        **values,
    }
    return service.create_lead(session, tenant, actor, LeadCreate(**payload))


def _rows(session: Session, tenant: TenantPartition, model: type) -> list:
    return list(session.scalars(tenant.select(model)).all())


def test_convert_creates_contact_and_account_and_closes_the_lead(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    created = _lead(service, db_session, tenant, actor)

    result = service.convert_lead(db_session, tenant, actor, created.id, LeadConvertRequest(notes="Signed pilot"))

    contact = tenant.get(db_session, CRMContact, result.contact_id)
    account = tenant.get(db_session, CRMAccount, result.account_id)
    assert result.opportunity_id is None
    assert contact.first_name == "Jamie"
    assert contact.email == "jamie@acme.io"
    assert contact.city == "Austin"
    assert contact.tags == ["vip"]
    assert contact.custom_fields == {"employees": 120}
    assert contact.do_not_call is True
    assert contact.owner_id == created.owner_id
    assert account.name == "Acme Widgets"
    assert account.website == "https://acme.io"

    link = db_session.scalar(tenant.select(CRMContactAccount))
    assert link.contact_id == contact.id
    assert link.account_id == account.id
    assert link.is_primary is True
    assert link.role == "Primary Contact"

    lead = result.lead
    assert lead.converted_at is not None
    assert lead.converted_by == "user-1"
    assert lead.converted_contact_id == contact.id
    assert lead.converted_account_id == account.id
    assert lead.conversion_notes == "Signed pilot"
    assert lead.stage.slug == "converted"
    assert lead.stage_history[-1].stage_name == "Converted"

    audit = db_session.scalar(select(AuditLog).where(AuditLog.entity_id == str(created.id), AuditLog.action == "convert"))
    assert audit.new_values["contact_id"] == str(contact.id)
    converted_events = [item for item in events.published_events if item["event_type"] == "crm.lead.converted"]
    assert converted_events[-1]["payload"]["account_id"] == str(account.id)
    assert converted_events[-1]["correlation_id"] == "corr-convert"


def test_convert_with_opportunity(db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser) -> None:
    created = _lead(service, db_session, tenant, actor)

    result = service.convert_lead(
        db_session,
        tenant,
        actor,
        created.id,
        LeadConvertRequest(
            create_opportunity=True,
            amount=Decimal("12000.50"),
            close_date=date(2026, 12, 31),
            pipeline_id="default",
            opportunity_stage_id="discovery",
            new_owner_id="closer",
        ),
    )

    opportunity = tenant.get(db_session, CRMOpportunity, result.opportunity_id)
    assert opportunity.name == "Acme Widgets - Opportunity"
    assert opportunity.lead_id == created.id
    assert opportunity.account_id == result.account_id
    assert opportunity.primary_contact_id == result.contact_id
    assert opportunity.amount == Decimal("12000.50")
    assert opportunity.lead_source == "web"
    assert opportunity.owner_id == "closer"
    assert tenant.get(db_session, CRMContact, result.contact_id).owner_id == "closer"
    assert result.lead.converted_opportunity_id == opportunity.id


def test_opportunity_is_skipped_when_capability_is_missing(
    db_session: Session, tenant: TenantPartition, actor: ActorUser
) -> None:
    service = LeadService(opportunity_capability=lambda session: False)
    created = _lead(service, db_session, tenant, actor)

    result = service.convert_lead(db_session, tenant, actor, created.id, LeadConvertRequest(create_opportunity=True))

    assert result.opportunity_id is None
    assert result.contact_id is not None
    assert _rows(db_session, tenant, CRMOpportunity) == []


def test_existing_contact_and_account_are_linked(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    contact = tenant.add(db_session, CRMContact(last_name="Existing", created_by="user-1"))
    account = tenant.add(db_session, CRMAccount(name="Existing Co", created_by="user-1"))
    db_session.commit()
    created = _lead(service, db_session, tenant, actor)

    result = service.convert_lead(
        db_session,
        tenant,
        actor,
        created.id,
        LeadConvertRequest(
            contact_action="merge_existing",
            existing_contact_id=contact.id,
            account_action="link_existing",
            existing_account_id=account.id,
        ),
    )

    assert result.contact_id == contact.id
    assert result.account_id == account.id
    assert len(_rows(db_session, tenant, CRMContact)) == 1
    assert len(_rows(db_session, tenant, CRMAccount)) == 1
    assert len(_rows(db_session, tenant, CRMContactAccount)) == 1


def test_skip_actions_create_nothing(db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser) -> None:
    created = _lead(service, db_session, tenant, actor)

    result = service.convert_lead(
        db_session, tenant, actor, created.id, LeadConvertRequest(contact_action="skip", account_action="skip")
    )

    assert result.contact_id is None
    assert result.account_id is None
    assert result.lead.converted_at is not None
    assert _rows(db_session, tenant, CRMContact) == []
    assert _rows(db_session, tenant, CRMAccount) == []


def test_failed_conversion_leaves_no_partial_records(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    created = _lead(service, db_session, tenant, actor)

    with pytest.raises(NotFoundError):
        service.convert_lead(
            db_session,
            tenant,
            actor,
            created.id,
            LeadConvertRequest(account_action="link_existing", existing_account_id=uuid.uuid4()),
        )

    lead = tenant.get(db_session, CRMLead, created.id)
    assert lead.converted_at is None
    assert lead.converted_contact_id is None
    assert lead.stage_id == created.stage_id
    assert _rows(db_session, tenant, CRMContact) == []
    assert _rows(db_session, tenant, CRMAccount) == []


def test_terminal_leads_cannot_be_converted(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    converted = _lead(service, db_session, tenant, actor)
    service.convert_lead(db_session, tenant, actor, converted.id, LeadConvertRequest())
    with pytest.raises(InvalidStateError) as exc_info:
        service.convert_lead(db_session, tenant, actor, converted.id, LeadConvertRequest())
    assert exc_info.value.reason == "lead_converted"

    disqualified = _lead(service, db_session, tenant, actor, email="other@acme.io")
    reason = db_session.scalar(tenant.select(CRMDisqualificationReason))
    service.disqualify_lead(db_session, tenant, actor, disqualified.id, LeadDisqualifyRequest(reason_id=reason.id))
    with pytest.raises(InvalidStateError) as exc_info:
        service.convert_lead(db_session, tenant, actor, disqualified.id, LeadConvertRequest())
    assert exc_info.value.reason == "lead_disqualified"

    assert len(_rows(db_session, tenant, CRMContact)) == 1


def test_idempotency_key_replays_the_first_result(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    created = _lead(service, db_session, tenant, actor)
    request = LeadConvertRequest(create_opportunity=True, account_name="Acme Holdings")

    first = service.convert_lead(db_session, tenant, actor, created.id, request, idempotency_key="convert-1")
    replay = service.convert_lead(db_session, tenant, actor, created.id, request, idempotency_key="convert-1")

    assert (replay.contact_id, replay.account_id, replay.opportunity_id) == (
        first.contact_id,
        first.account_id,
        first.opportunity_id,
    )
    assert replay.lead.id == first.lead.id
    assert len(_rows(db_session, tenant, CRMContact)) == 1
    assert len(_rows(db_session, tenant, CRMAccount)) == 1
    assert len([item for item in events.published_events if item["event_type"] == "crm.lead.converted"]) == 1

    with pytest.raises(ConcurrencyConflictError):
        service.convert_lead(
            db_session,
            tenant,
            actor,
            created.id,
            LeadConvertRequest(create_opportunity=False),
            idempotency_key="convert-1",
        )


def test_lead_history_is_copied_to_the_new_contact(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    created = _lead(service, db_session, tenant, actor)
    tenant.add(db_session, CRMNote(entity_type="lead", entity_id=created.id, content="Call back Tuesday", created_by="user-1"))
    tenant.add(
        db_session,
        CRMDocument(
            entity_type="lead",
            entity_id=created.id,
            file_name="proposal.pdf",
            storage_key="docs/proposal.pdf",
            uploaded_by="user-1",
        ),
    )
    db_session.commit()

    result = service.convert_lead(db_session, tenant, actor, created.id, LeadConvertRequest())

    contact_activities = db_session.scalars(
        tenant.select(CRMActivity).where(CRMActivity.entity_type == "contact", CRMActivity.entity_id == result.contact_id)
    ).all()
    assert [item.activity_type for item in contact_activities] == ["created"]
    assert contact_activities[0].activity_metadata["copied_from_lead_id"] == str(created.id)

    notes = db_session.scalars(tenant.select(CRMNote).where(CRMNote.entity_type == "contact")).all()
    assert [note.content for note in notes] == ["Call back Tuesday"]
    documents = db_session.scalars(tenant.select(CRMDocument).where(CRMDocument.entity_type == "contact")).all()
    assert [document.storage_key for document in documents] == ["docs/proposal.pdf"]


def test_copy_forward_respects_settings(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    update_lead_setting(
        db_session,
        tenant,
        "conversion",
        {"copy_activities": False, "copy_notes": False, "copy_documents": False},
    )
    db_session.commit()
    created = _lead(service, db_session, tenant, actor)
    tenant.add(db_session, CRMNote(entity_type="lead", entity_id=created.id, content="Private", created_by="user-1"))
    db_session.commit()

    result = service.convert_lead(db_session, tenant, actor, created.id, LeadConvertRequest())

    copied = db_session.scalars(
        tenant.select(CRMActivity).where(CRMActivity.entity_type == "contact", CRMActivity.entity_id == result.contact_id)
    ).all()
    assert copied == []
    assert db_session.scalars(tenant.select(CRMNote).where(CRMNote.entity_type == "contact")).all() == []


def test_converted_lead_read_only_setting(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    update_lead_setting(db_session, tenant, "conversion", {"make_read_only": True})
    db_session.commit()
    created = _lead(service, db_session, tenant, actor)
    service.convert_lead(db_session, tenant, actor, created.id, LeadConvertRequest())

    with pytest.raises(InvalidStateError) as exc_info:
        service.update_lead(db_session, tenant, actor, created.id, LeadUpdate(company="Renamed"))
    assert exc_info.value.reason == "lead_read_only"

    update_lead_setting(db_session, tenant, "conversion", {"allow_field_edit": True})
    db_session.commit()
    updated = service.update_lead(db_session, tenant, actor, created.id, LeadUpdate(company="Renamed"))
    assert updated.company == "Renamed"
