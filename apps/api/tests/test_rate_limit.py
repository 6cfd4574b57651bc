from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.seed import seed_tenant_defaults
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
    seed_tenant_defaults(session, "acme", "Acme")
    seed_tenant_defaults(session, "globex", "Globex")
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CRM_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions={"crm.leads.read", "crm.leads.create"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _post_lead(client: TestClient, tenant: str, index: int):  # type: ignore[no-untyped-def]
    return client.post(
        "/api/crm/leads",
        json={"last_name": f"Rate Limit Lead {index}"},
        headers={"x-tenant-id": tenant},
    )


def test_mutating_crm_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = [_post_lead(client, "acme", index) for index in range(5)]

    assert [response.status_code for response in responses[:3]] == [201, 201, 201]
    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_buckets_are_separate_per_tenant(client: TestClient) -> None:
    for index in range(3):
        assert _post_lead(client, "acme", index).status_code == 201
    assert _post_lead(client, "acme", 3).status_code == 429

    assert _post_lead(client, "globex", 0).status_code == 201


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    create = _post_lead(client, "acme", 0)
    assert create.status_code == 201

    responses = [client.get("/api/crm/leads", headers={"x-tenant-id": "acme"}) for _ in range(10)]
    assert all(response.status_code == 200 for response in responses)


def test_padded_tenant_header_shares_the_canonical_bucket(client: TestClient) -> None:
    for index in range(3):
        assert _post_lead(client, "acme", index).status_code == 201

    padded = _post_lead(client, "  acme ", 3)

    assert padded.status_code == 429


@pytest.mark.parametrize("tenant", ["", "Bad-Key!", "x" * 200])
def test_malformed_tenant_is_rejected_without_spending_tokens(client: TestClient, tenant: str) -> None:
    rejected = [_post_lead(client, tenant, index) for index in range(5)]

    assert {response.status_code for response in rejected} == {403}
    body = rejected[0].json()
    assert body["code"] == "tenant_not_allowed"
    assert body["correlation_id"] == rejected[0].headers["x-correlation-id"]
    assert _post_lead(client, "acme", 0).status_code == 201
