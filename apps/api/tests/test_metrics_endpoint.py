from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_domain_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    product = client.post("/api/products", json={"name": "Metrics Widget", "type": "onetime", "price": "5"})
    assert product.status_code == 201
    opportunity = client.post("/api/opportunities", json={"name": "Metrics Opportunity"})
    assert opportunity.status_code == 201
    order = client.post(
        "/api/orders",
        json={
            "opportunityId": opportunity.json()["id"],
            "items": [{"productId": product.json()["id"], "costValue": "1", "proposalValue": "5"}],
        },
    )
    assert order.status_code == 201

    won = client.post(
        f"/api/opportunities/{opportunity.json()['id']}/stage",
        json={"stage": "closed-won", "reason": "signed"},
    )
    assert won.status_code == 200
    rejected = client.post(
        f"/api/opportunities/{opportunity.json()['id']}/stage",
        json={"stage": "negotiation", "reason": "reopen"},
    )
    assert rejected.status_code == 409

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_stage_transitions_total" in body
    assert "crm_rejected_mutations_total" in body
    assert "revenue_order_recomputes_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/opportunities/{id}/stage"' in body
    assert 'from_stage="prospecting",to_stage="closed-won"' in body
    assert 'reason="stage_change_closed"' in body
    assert 'operation="create_order"' in body


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404


def test_health_reports_environment(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_ENV", "staging")
    get_settings.cache_clear()

    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "Salesdesk API", "environment": "staging"}
