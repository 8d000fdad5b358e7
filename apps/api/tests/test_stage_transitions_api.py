from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.database import Base, get_db
from app.crm.errors import ValidationError
from app.crm.models import CRMActivity, CRMStageChangeLog, CRMUser
from app.crm.stages import stage_position
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
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def rep_id(db_session: Session) -> int:
    user = CRMUser(username="rep", first_name="Rita", last_name="Rep", email="rep@example.com")
    db_session.add(user)
    db_session.commit()
    return user.id


def _create_opportunity(client: TestClient, **overrides) -> dict:
    body = {"name": "Stage Deal", "stage": "prospecting", "probability": 20}
    body.update(overrides)
    response = client.post("/api/opportunities", json=body)
    assert response.status_code == 201
    return response.json()


def _transition(client: TestClient, opportunity_id: int, stage: str, reason: str | None = "moving on", **extra):
    body = {"stage": stage, "reason": reason}
    body.update(extra)
    return client.post(f"/api/opportunities/{opportunity_id}/stage", json=body)


def test_transition_writes_stage_log_and_activity(client: TestClient, db_session: Session, rep_id: int) -> None:
    opportunity = _create_opportunity(client)

    response = _transition(
        client,
        opportunity["id"],
        "proposal",
        "Client requested formal quote",
        changedBy=rep_id,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["stage"] == "proposal"
    assert body["rowVersion"] == opportunity["rowVersion"] + 1

    logs = client.get(f"/api/opportunities/{opportunity['id']}/stage-logs").json()
    assert len(logs) == 1
    assert logs[0]["fromStage"] == "prospecting"
    assert logs[0]["toStage"] == "proposal"
    assert logs[0]["reason"] == "Client requested formal quote"
    assert logs[0]["changedBy"] == rep_id

    activities = db_session.scalars(
        select(CRMActivity).where(CRMActivity.opportunity_id == opportunity["id"])
    ).all()
    assert len(activities) == 1
    assert activities[0].type == "stage_change"
    assert activities[0].subject == "Stage changed from prospecting to proposal"
    assert activities[0].description == "Client requested formal quote"
    assert activities[0].completed is True
    assert activities[0].created_by == rep_id


def test_closed_opportunity_cannot_change_stage(client: TestClient, db_session: Session) -> None:
    opportunity = _create_opportunity(client)
    won = _transition(client, opportunity["id"], "closed-won", "signed")
    assert won.status_code == 200

    response = _transition(client, opportunity["id"], "negotiation", "reopen")
    assert response.status_code == 409
    assert response.json()["code"] == "opportunity_closed"
    assert response.json()["message"] == "cannot change stage of closed opportunity"

    current = client.get(f"/api/opportunities/{opportunity['id']}").json()
    assert current["stage"] == "closed-won"
    assert current["rowVersion"] == won.json()["rowVersion"]
    log_count = db_session.scalar(
        select(func.count()).select_from(CRMStageChangeLog).where(CRMStageChangeLog.opportunity_id == opportunity["id"])
    )
    assert log_count == 1


def test_same_stage_transition_is_rejected(client: TestClient) -> None:
    opportunity = _create_opportunity(client, stage="qualification")

    response = _transition(client, opportunity["id"], "qualification", "again")
    assert response.status_code == 409
    assert response.json()["code"] == "same_stage"


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_transition_requires_reason(client: TestClient, reason: str | None) -> None:
    opportunity = _create_opportunity(client)

    response = _transition(client, opportunity["id"], "qualification", reason)
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "validation_error"
    assert body["details"][0]["field"] == "reason"

    assert client.get(f"/api/opportunities/{opportunity['id']}/stage-logs").json() == []


def test_unknown_stage_is_rejected(client: TestClient) -> None:
    opportunity = _create_opportunity(client)

    response = _transition(client, opportunity["id"], "won-ish", "because")
    assert response.status_code == 422
    assert response.json()["details"][0]["field"] == "stage"


def test_transition_on_missing_opportunity_is_not_found(client: TestClient) -> None:
    response = _transition(client, 9999, "proposal", "missing")
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_open_stages_may_regress_and_every_move_is_logged(client: TestClient) -> None:
    opportunity = _create_opportunity(client)
    path = ["negotiation", "qualification", "proposal", "prospecting", "closed-lost"]

    for stage in path:
        response = _transition(client, opportunity["id"], stage, f"to {stage}")
        assert response.status_code == 200

    logs = client.get(f"/api/opportunities/{opportunity['id']}/stage-logs").json()
    assert len(logs) == len(path)
    assert [log["toStage"] for log in logs] == path
    assert [log["fromStage"] for log in logs] == ["prospecting", *path[:-1]]
    assert all(log["reason"] == f"to {log['toStage']}" for log in logs)


def test_transition_publishes_stage_events(client: TestClient) -> None:
    opportunity = _create_opportunity(client)
    response = _transition(client, opportunity["id"], "closed-won", "signed", changedBy=None)
    assert response.status_code == 200

    event_types = [item["event_type"] for item in events.published_events]
    assert "crm.opportunity.stage_changed" in event_types
    assert "crm.opportunity.closed_won" in event_types
    closed = next(item for item in events.published_events if item["event_type"] == "crm.opportunity.closed_won")
    assert closed["payload"]["from_stage"] == "prospecting"
    assert closed["payload"]["to_stage"] == "closed-won"

    stage_audits = audit.entries_for("crm.opportunity", opportunity["id"])
    assert [entry["action"] for entry in stage_audits] == ["create", "change_stage"]


def test_patch_with_stage_runs_the_transition(client: TestClient) -> None:
    opportunity = _create_opportunity(client)

    response = client.patch(
        f"/api/opportunities/{opportunity['id']}",
        json={"stage": "negotiation", "reason": "pricing agreed", "description": "Updated scope"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["stage"] == "negotiation"
    assert body["description"] == "Updated scope"

    logs = client.get(f"/api/opportunities/{opportunity['id']}/stage-logs").json()
    assert len(logs) == 1
    assert logs[0]["reason"] == "pricing agreed"


def test_patch_with_stage_requires_reason(client: TestClient) -> None:
    opportunity = _create_opportunity(client)

    response = client.patch(f"/api/opportunities/{opportunity['id']}", json={"stage": "proposal"})
    assert response.status_code == 422
    assert response.json()["details"][0]["field"] == "reason"
    assert client.get(f"/api/opportunities/{opportunity['id']}").json()["stage"] == "prospecting"


def test_patch_with_stale_row_version_conflicts(client: TestClient) -> None:
    opportunity = _create_opportunity(client)
    first = client.patch(
        f"/api/opportunities/{opportunity['id']}",
        json={"description": "first edit", "rowVersion": opportunity["rowVersion"]},
    )
    assert first.status_code == 200

    stale = client.patch(
        f"/api/opportunities/{opportunity['id']}",
        json={"description": "second edit", "rowVersion": opportunity["rowVersion"]},
    )
    assert stale.status_code == 409
    assert stale.json()["message"] == "row_version conflict"
    assert client.get(f"/api/opportunities/{opportunity['id']}").json()["description"] == "first edit"


def test_with_relations_embeds_logs_and_activities(client: TestClient, rep_id: int) -> None:
    opportunity = _create_opportunity(client, ownerId=rep_id)
    _transition(client, opportunity["id"], "qualification", "discovery done", changedBy=rep_id)

    response = client.get(f"/api/opportunities/{opportunity['id']}/with-relations")
    assert response.status_code == 200
    body = response.json()
    assert body["owner"]["username"] == "rep"
    assert body["stageLogs"][0]["user"]["id"] == rep_id
    assert body["activities"][0]["type"] == "stage_change"
    assert body["orders"] == []


def test_stage_position_is_one_based() -> None:
    assert stage_position("prospecting") == 1
    assert stage_position("closed-lost") == 6
    with pytest.raises(ValidationError):
        stage_position("won")
