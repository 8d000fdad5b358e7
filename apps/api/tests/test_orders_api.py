from __future__ import annotations

import threading
from collections.abc import Generator
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.business.revenue.models import RevenueOrder, RevenueOrderItem
from app.business.revenue.service import OrderNumberGenerator, order_service
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
def products(client: TestClient) -> dict[str, int]:
    created = {}
    for name, product_type in (
        ("Platform Licence", "subscription"),
        ("Setup Fee", "onetime"),
        ("Consulting Day", "service-based"),
    ):
        response = client.post("/api/products", json={"name": name, "type": product_type, "price": "100"})
        assert response.status_code == 201
        created[product_type] = response.json()["id"]
    return created


@pytest.fixture()
def opportunity(client: TestClient) -> dict:
    response = client.post("/api/opportunities", json={"name": "Order Deal", "stage": "prospecting", "probability": 25})
    assert response.status_code == 201
    return response.json()


def _money(value: str) -> Decimal:
    return Decimal(str(value))


def _create_order(client: TestClient, opportunity_id: int, items: list[dict] | None = None, **extra) -> dict:
    body = {"opportunityId": opportunity_id, "items": items or []}
    body.update(extra)
    response = client.post("/api/orders", json=body)
    assert response.status_code == 201, response.json()
    return response.json()


def _get_opportunity(client: TestClient, opportunity_id: int) -> dict:
    response = client.get(f"/api/opportunities/{opportunity_id}")
    assert response.status_code == 200
    return response.json()


def _assert_rollup_consistent(client: TestClient, opportunity_id: int) -> None:
    opportunity = _get_opportunity(client, opportunity_id)
    orders = client.get("/api/orders", params={"opportunityId": opportunity_id}).json()
    order_total = sum((_money(order["totalAmount"]) for order in orders), Decimal("0"))
    item_total = sum(
        (_money(item["totalProposal"]) for order in orders for item in order["items"]),
        Decimal("0"),
    )
    item_cost = sum(
        (_money(item["totalCost"]) for order in orders for item in order["items"]),
        Decimal("0"),
    )
    assert _money(opportunity["value"]) == order_total == item_total
    assert _money(opportunity["grossProfit"]) == item_total - item_cost
    if item_total > 0:
        expected_margin = int(((item_total - item_cost) / item_total * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    else:
        expected_margin = 0
    assert opportunity["grossProfitMargin"] == expected_margin


def test_subscription_order_rolls_up_into_opportunity(
    client: TestClient,
    products: dict[str, int],
    opportunity: dict,
) -> None:
    order = _create_order(
        client,
        opportunity["id"],
        [
            {
                "productId": products["subscription"],
                "quantity": 1,
                "costValue": "50",
                "proposalValue": "80",
                "discount": "10",
                "startDate": "2024-01-01",
                "endDate": "2024-12-31",
            }
        ],
    )

    assert order["status"] == "draft"
    assert order["orderNumber"].startswith("ORD-")
    assert len(order["items"]) == 1
    assert _money(order["items"][0]["totalCost"]) == Decimal("540.00")
    assert _money(order["items"][0]["totalProposal"]) == Decimal("864.00")
    assert _money(order["totalAmount"]) == Decimal("864.00")

    updated = _get_opportunity(client, opportunity["id"])
    assert _money(updated["value"]) == Decimal("864.00")
    assert _money(updated["grossProfit"]) == Decimal("324.00")
    assert updated["grossProfitMargin"] == 38
    assert _money(updated["weightedValue"]) == Decimal("216.00")
    assert updated["rowVersion"] == opportunity["rowVersion"] + 1


def test_item_add_update_delete_keep_rollup_consistent(
    client: TestClient,
    products: dict[str, int],
    opportunity: dict,
) -> None:
    first = _create_order(client, opportunity["id"])
    second = _create_order(
        client,
        opportunity["id"],
        [{"productId": products["onetime"], "quantity": 2, "costValue": "100", "proposalValue": "150"}],
    )
    _assert_rollup_consistent(client, opportunity["id"])

    added = client.post(
        "/api/order-items",
        json={
            "orderId": first["id"],
            "productId": products["service-based"],
            "quantity": 3,
            "costValue": "200",
            "proposalValue": "350",
            "discount": "5",
        },
    )
    assert added.status_code == 201
    assert _money(added.json()["totalCost"]) == Decimal("570.00")
    assert _money(added.json()["totalProposal"]) == Decimal("997.50")
    _assert_rollup_consistent(client, opportunity["id"])

    changed = client.patch(
        f"/api/order-items/{added.json()['id']}",
        json={"quantity": 1, "discount": "0"},
    )
    assert changed.status_code == 200
    assert _money(changed.json()["totalProposal"]) == Decimal("350.00")
    _assert_rollup_consistent(client, opportunity["id"])

    switched = client.patch(
        f"/api/order-items/{added.json()['id']}",
        json={
            "productId": products["subscription"],
            "startDate": "2024-01-15",
            "endDate": "2024-03-10",
        },
    )
    assert switched.status_code == 200
    assert _money(switched.json()["totalProposal"]) == Decimal("1050.00")
    _assert_rollup_consistent(client, opportunity["id"])

    removed = client.delete(f"/api/order-items/{second['items'][0]['id']}")
    assert removed.status_code == 204
    _assert_rollup_consistent(client, opportunity["id"])

    final = _get_opportunity(client, opportunity["id"])
    assert _money(final["value"]) == Decimal("1050.00")
    assert client.get(f"/api/orders/{second['id']}").json()["totalAmount"] in {"0.00", "0"}


def test_order_detail_embeds_products(client: TestClient, products: dict[str, int], opportunity: dict) -> None:
    order = _create_order(
        client,
        opportunity["id"],
        [{"productId": products["onetime"], "quantity": 1, "costValue": "10", "proposalValue": "12"}],
    )

    detail = client.get(f"/api/orders/{order['id']}")
    assert detail.status_code == 200
    assert detail.json()["items"][0]["product"]["name"] == "Setup Fee"

    relations = client.get(f"/api/opportunities/{opportunity['id']}/with-relations").json()
    assert relations["orders"][0]["items"][0]["product"]["type"] == "onetime"


def test_delete_order_cascades_items_and_recomputes(
    client: TestClient,
    db_session: Session,
    products: dict[str, int],
    opportunity: dict,
) -> None:
    order = _create_order(
        client,
        opportunity["id"],
        [
            {"productId": products["onetime"], "quantity": 1, "costValue": "10", "proposalValue": "40"},
            {"productId": products["service-based"], "quantity": 2, "costValue": "5", "proposalValue": "30"},
        ],
    )
    assert _money(_get_opportunity(client, opportunity["id"])["value"]) == Decimal("100.00")

    response = client.delete(f"/api/orders/{order['id']}")
    assert response.status_code == 204

    remaining = db_session.scalar(
        select(func.count()).select_from(RevenueOrderItem).where(RevenueOrderItem.order_id == order["id"])
    )
    assert remaining == 0
    assert client.get(f"/api/orders/{order['id']}").status_code == 404

    updated = _get_opportunity(client, opportunity["id"])
    assert _money(updated["value"]) == Decimal("0.00")
    assert updated["grossProfitMargin"] == 0


def test_status_update_and_order_date(client: TestClient, opportunity: dict) -> None:
    order = _create_order(client, opportunity["id"], orderDate="2024-06-01")
    assert order["orderDate"] == "2024-06-01"

    response = client.patch(f"/api/orders/{order['id']}", json={"status": "confirmed"})
    assert response.status_code == 200
    assert response.json()["status"] == "confirmed"
    assert response.json()["orderDate"] == "2024-06-01"

    invalid = client.patch(f"/api/orders/{order['id']}", json={"status": "teleported"})
    assert invalid.status_code == 422
    assert invalid.json()["details"][0]["field"] == "status"


def test_duplicate_order_number_conflicts(client: TestClient, opportunity: dict) -> None:
    _create_order(client, opportunity["id"], orderNumber="ORD-CUSTOM-1")

    response = client.post(
        "/api/orders",
        json={"opportunityId": opportunity["id"], "orderNumber": "ORD-CUSTOM-1", "items": []},
    )
    assert response.status_code == 409
    assert response.json()["code"] == "conflict"


def test_blank_order_number_is_rejected(client: TestClient, opportunity: dict) -> None:
    response = client.post(
        "/api/orders",
        json={"opportunityId": opportunity["id"], "orderNumber": "   ", "items": []},
    )
    assert response.status_code == 422
    assert response.json()["details"][0]["field"] == "orderNumber"
    assert client.get("/api/orders", params={"opportunityId": opportunity["id"]}).json() == []


def test_supplied_order_number_is_trimmed(client: TestClient, opportunity: dict) -> None:
    order = _create_order(client, opportunity["id"], orderNumber="  ORD-PADDED-1 ")
    assert order["orderNumber"] == "ORD-PADDED-1"


def test_exhausted_order_numbers_fail_with_fatal_error(
    client: TestClient,
    opportunity: dict,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _create_order(client, opportunity["id"], orderNumber="ORD-TAKEN")
    monkeypatch.setattr(order_service.number_generator, "next_candidate", lambda: "ORD-TAKEN")

    response = client.post("/api/orders", json={"opportunityId": opportunity["id"], "items": []})
    assert response.status_code == 500
    body = response.json()
    assert body["code"] == "order_number_exhausted"
    assert body["details"] == {"attempts": order_service.max_number_attempts}


def test_order_number_generator_format_and_collision(db_session: Session, opportunity: dict) -> None:
    generator = OrderNumberGenerator("ORD", clock=lambda: datetime(2026, 10, 17, 9, 30, 5, tzinfo=timezone.utc))
    db_session.add(RevenueOrder(opportunity_id=opportunity["id"], order_number="ORD-20261017093005-0001"))
    db_session.commit()

    assert generator.generate(db_session, max_attempts=3) == "ORD-20261017093005-0002"
    assert generator.next_candidate() == "ORD-20261017093005-0003"


def test_order_number_generator_is_unique_across_threads() -> None:
    generator = OrderNumberGenerator("ORD")
    results: list[str] = []
    lock = threading.Lock()

    def worker() -> None:
        for _ in range(25):
            candidate = generator.next_candidate()
            with lock:
                results.append(candidate)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    sequences = [candidate.rsplit("-", 1)[1] for candidate in results]
    assert len(set(sequences)) == 200


@pytest.mark.parametrize(
    ("item", "field"),
    [
        ({"quantity": 0}, "quantity"),
        ({"discount": "120"}, "discount"),
        ({"costValue": "-1"}, "costValue"),
        ({"startDate": "2024-05-01", "endDate": "2024-04-01"}, "endDate"),
    ],
)
def test_invalid_item_is_rejected_without_writes(
    client: TestClient,
    db_session: Session,
    products: dict[str, int],
    opportunity: dict,
    item: dict,
    field: str,
) -> None:
    order = _create_order(client, opportunity["id"])
    before = _get_opportunity(client, opportunity["id"])
    body = {"orderId": order["id"], "productId": products["subscription"], "costValue": "10", "proposalValue": "20"}
    body.update(item)

    response = client.post("/api/order-items", json=body)
    assert response.status_code == 422
    assert response.json()["details"][0]["field"] == field
    assert db_session.scalar(select(func.count()).select_from(RevenueOrderItem)) == 0
    assert _get_opportunity(client, opportunity["id"]) == before


def test_unknown_product_and_order_are_not_found(client: TestClient, opportunity: dict) -> None:
    order = _create_order(client, opportunity["id"])

    missing_product = client.post("/api/order-items", json={"orderId": order["id"], "productId": 999})
    assert missing_product.status_code == 404
    assert missing_product.json()["details"]["entity"] == "product"

    missing_order = client.post("/api/order-items", json={"orderId": 999, "productId": 1})
    assert missing_order.status_code == 404

    missing_opportunity = client.post("/api/orders", json={"opportunityId": 999})
    assert missing_opportunity.status_code == 404


def test_closed_opportunity_freezes_orders_and_items(
    client: TestClient,
    products: dict[str, int],
    opportunity: dict,
) -> None:
    order = _create_order(
        client,
        opportunity["id"],
        [{"productId": products["onetime"], "quantity": 1, "costValue": "60", "proposalValue": "100"}],
    )
    item_id = order["items"][0]["id"]
    closed = client.post(
        f"/api/opportunities/{opportunity['id']}/stage",
        json={"stage": "closed-lost", "reason": "budget cut"},
    )
    assert closed.status_code == 200
    frozen = _get_opportunity(client, opportunity["id"])
    frozen_order = client.get(f"/api/orders/{order['id']}").json()

    attempts = [
        client.post("/api/orders", json={"opportunityId": opportunity["id"], "items": []}),
        client.patch(f"/api/orders/{order['id']}", json={"status": "cancelled"}),
        client.delete(f"/api/orders/{order['id']}"),
        client.post(
            "/api/order-items",
            json={"orderId": order["id"], "productId": products["onetime"], "costValue": "1", "proposalValue": "2"},
        ),
        client.patch(f"/api/order-items/{item_id}", json={"quantity": 5}),
        client.delete(f"/api/order-items/{item_id}"),
        client.patch(f"/api/opportunities/{opportunity['id']}", json={"value": "5000"}),
        client.patch(f"/api/opportunities/{opportunity['id']}", json={"grossProfit": "10"}),
        client.post(
            f"/api/opportunities/{opportunity['id']}/stage",
            json={"stage": "negotiation", "reason": "reopen"},
        ),
    ]
    for response in attempts:
        assert response.status_code == 409
        assert response.json()["code"] == "opportunity_closed"

    assert _get_opportunity(client, opportunity["id"]) == frozen
    assert client.get(f"/api/orders/{order['id']}").json() == frozen_order


def test_order_mutations_publish_events(client: TestClient, products: dict[str, int], opportunity: dict) -> None:
    order = _create_order(client, opportunity["id"])
    item = client.post(
        "/api/order-items",
        json={"orderId": order["id"], "productId": products["onetime"], "costValue": "1", "proposalValue": "3"},
    ).json()
    client.delete(f"/api/order-items/{item['id']}")

    event_types = [entry["event_type"] for entry in events.published_events]
    assert "revenue.order.created" in event_types
    assert "revenue.order_item.created" in event_types
    assert "revenue.order_item.deleted" in event_types
    deleted = next(entry for entry in events.published_events if entry["event_type"] == "revenue.order_item.deleted")
    assert deleted["payload"] == {"order_item_id": item["id"], "order_id": order["id"], "product_id": products["onetime"]}
