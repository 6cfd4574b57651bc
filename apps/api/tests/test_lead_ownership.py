from __future__ import annotations

import logging
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.crm.models import CRMActivity, CRMRecordTeamMember, CRMRecordTeamRole
from app.crm.repositories import LeadListFilters
from app.crm.schemas import LeadCreate, LeadUpdate
from app.crm.seed import seed_tenant_defaults
from app.crm.service import ActorUser, LeadService
from app.crm.settings import update_lead_setting
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
    return ActorUser(user_id="manager")


def _keep_previous_owner(session: Session, tenant: TenantPartition, **values: object) -> None:
    update_lead_setting(session, tenant, "ownership", {"add_previous_owner_to_team": True, **values})
    session.commit()


def _owner_changes(session: Session, tenant: TenantPartition) -> list[CRMActivity]:
    return list(
        session.scalars(tenant.select(CRMActivity).where(CRMActivity.activity_type == "owner_changed")).all()
    )


def test_reassignment_adds_previous_owner_to_record_team(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    _keep_previous_owner(db_session, tenant, previous_owner_access="write")
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Handoff", owner_id="sdr-1"))

    updated = service.update_lead(db_session, tenant, actor, created.id, LeadUpdate(owner_id="ae-1"))

    assert updated.owner_id == "ae-1"
    role = db_session.scalar(tenant.select(CRMRecordTeamRole).where(CRMRecordTeamRole.name == "Lead Generator"))
    member = db_session.scalar(tenant.select(CRMRecordTeamMember))
    assert member.user_id == "sdr-1"
    assert member.entity_id == created.id
    assert member.role_id == role.id
    assert member.role_name == "Lead Generator"
    assert member.access_level == "write"
    assert member.added_by == "manager"

    changes = _owner_changes(db_session, tenant)
    assert len(changes) == 1
    assert changes[0].activity_metadata == {"previous_owner_id": "sdr-1", "new_owner_id": "ae-1"}

    detail = service.get_lead(db_session, tenant, actor, created.id)
    assert [item.user_id for item in detail.team_members] == ["sdr-1"]


def test_previous_owner_not_kept_by_default(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Handoff", owner_id="sdr-1"))

    service.update_lead(db_session, tenant, actor, created.id, LeadUpdate(owner_id="ae-1"))

    assert db_session.scalars(tenant.select(CRMRecordTeamMember)).all() == []
    assert len(_owner_changes(db_session, tenant)) == 1


def test_missing_role_still_adds_member_without_role(
    db_session: Session,
    tenant: TenantPartition,
    service: LeadService,
    actor: ActorUser,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING)
    _keep_previous_owner(db_session, tenant, previous_owner_role="Original Hunter")
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Handoff", owner_id="sdr-1"))

    service.update_lead(db_session, tenant, actor, created.id, LeadUpdate(owner_id="ae-1"))

    member = db_session.scalar(tenant.select(CRMRecordTeamMember))
    assert member.user_id == "sdr-1"
    assert member.role_id is None
    assert member.role_name == "Original Hunter"
    assert any(record.getMessage() == "lead.owner_changed.role_missing" for record in caplog.records)


def test_repeated_handoff_keeps_one_membership_per_user(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    _keep_previous_owner(db_session, tenant)
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Pingpong", owner_id="sdr-1"))

    service.update_lead(db_session, tenant, actor, created.id, LeadUpdate(owner_id="ae-1"))
    service.update_lead(db_session, tenant, actor, created.id, LeadUpdate(owner_id="sdr-1"))
    service.update_lead(db_session, tenant, actor, created.id, LeadUpdate(owner_id="ae-2"))

    members = db_session.scalars(tenant.select(CRMRecordTeamMember)).all()
    assert sorted(member.user_id for member in members) == ["ae-1", "sdr-1"]
    assert len(_owner_changes(db_session, tenant)) == 3


def test_same_owner_is_not_a_transfer(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    _keep_previous_owner(db_session, tenant)
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Steady", owner_id="sdr-1"))

    service.update_lead(db_session, tenant, actor, created.id, LeadUpdate(owner_id="sdr-1", company="Acme"))

    assert _owner_changes(db_session, tenant) == []
    assert db_session.scalars(tenant.select(CRMRecordTeamMember)).all() == []


def test_my_team_filter_includes_leads_shared_through_record_team(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    _keep_previous_owner(db_session, tenant)
    shared = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Shared", owner_id="sdr-1"))
    service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Unrelated", owner_id="ae-9"))
    service.update_lead(db_session, tenant, actor, shared.id, LeadUpdate(owner_id="ae-1"))

    sdr = ActorUser(user_id="sdr-1")
    mine = service.list_leads(db_session, tenant, sdr, LeadListFilters(ownership="my_leads"))
    team = service.list_leads(db_session, tenant, sdr, LeadListFilters(ownership="my_team"))

    assert mine.meta.total == 0
    assert [item.id for item in team.data] == [shared.id]


def test_assigning_an_unowned_lead_records_the_change(
    db_session: Session, tenant: TenantPartition, service: LeadService, actor: ActorUser
) -> None:
    _keep_previous_owner(db_session, tenant)
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Orphan", owner_id="sdr-1"))
    service.update_lead(db_session, tenant, actor, created.id, LeadUpdate(owner_id=None))

    updated = service.update_lead(db_session, tenant, actor, created.id, LeadUpdate(owner_id="rep-2"))

    assert updated.owner_id == "rep-2"
    changes = _owner_changes(db_session, tenant)
    assert [change.activity_metadata for change in changes] == [{"previous_owner_id": None, "new_owner_id": "rep-2"}]
    assert db_session.scalars(tenant.select(CRMRecordTeamMember)).all() == []


def test_failed_role_lookup_does_not_block_the_transfer(
    db_session: Session,
    tenant: TenantPartition,
    service: LeadService,
    actor: ActorUser,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING)
    _keep_previous_owner(db_session, tenant)
    created = service.create_lead(db_session, tenant, actor, LeadCreate(last_name="Flaky", owner_id="sdr-1"))
    engine = db_session.get_bind()

    def fail_role_lookup(conn, cursor, statement, parameters, context, executemany) -> None:
        if statement.lstrip().upper().startswith("SELECT") and "FROM crm_record_team_role" in statement:
            raise OperationalError(statement, parameters, Exception("role catalog unavailable"))

    event.listen(engine, "before_cursor_execute", fail_role_lookup)
    try:
        updated = service.update_lead(db_session, tenant, actor, created.id, LeadUpdate(owner_id="ae-1"))
    finally:
        event.remove(engine, "before_cursor_execute", fail_role_lookup)

    assert updated.owner_id == "ae-1"
    member = db_session.scalar(tenant.select(CRMRecordTeamMember))
    assert member.user_id == "sdr-1"
    assert member.role_id is None
    assert member.role_name == "Lead Generator"
    assert len(_owner_changes(db_session, tenant)) == 1
    assert any(record.getMessage() == "lead.owner_changed.role_lookup_failed" for record in caplog.records)
