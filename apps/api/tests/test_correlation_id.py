from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app


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
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get("/api/accounts/12345")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert response.json()["correlationId"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get("/api/accounts/12345", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.headers.get("x-request-id") == "abc-123"
    assert response.json()["correlationId"] == "abc-123"


def test_oversized_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "x" * 500})
    assert response.status_code == 200
    assert response.headers.get("x-correlation-id") != "x" * 500


def test_request_validation_envelope_carries_correlation_id(client: TestClient) -> None:
    response = client.post("/api/accounts", json={}, headers={"X-Correlation-Id": "corr-validation-1"})
    assert response.status_code == 422
    body = response.json()
    assert body["correlationId"] == "corr-validation-1"
    assert body["details"][0]["field"] == "companyName"


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    response = client.post(
        "/api/accounts",
        json={"companyName": "Corr Account"},
        headers={"X-Correlation-Id": "corr-audit-1", "X-User-Id": "3"},
    )
    assert response.status_code == 201

    account_audits = audit.entries_for("crm.account", response.json()["id"])
    assert account_audits
    assert account_audits[-1]["correlation_id"] == "corr-audit-1"
    assert account_audits[-1]["actor_user_id"] == 3


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    opportunity = client.post("/api/opportunities", json={"name": "Corr Deal"}).json()
    response = client.post(
        f"/api/opportunities/{opportunity['id']}/stage",
        json={"stage": "qualification", "reason": "budget confirmed"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 200

    stage_events = [item for item in events.published_events if item["event_type"] == "crm.opportunity.stage_changed"]
    assert stage_events
    assert stage_events[-1]["correlation_id"] == "corr-event-1"
