from decimal import Decimal

import pytest
from dependency_injector import providers
from fastapi.testclient import TestClient

from api.main import create_app
from app.containers import AppContainer
from core.utils.circuit_breaker import CircuitState
from services.portfolio_ledger.store.memory_store import InMemoryLedgerStore

pytestmark = pytest.mark.integration


@pytest.fixture
def container(test_settings, price_feed, portfolio):
    container = AppContainer()
    container.settings.override(providers.Object(test_settings))
    container.price_feed.override(providers.Object(price_feed))
    container.ledger_store.override(providers.Object(InMemoryLedgerStore([portfolio])))
    yield container
    container.unwire()
    container.reset_override()


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as client:
        yield client


def invest(client, user_id="alice", amount="100", portfolio_id="blue-chip", **kwargs):
    return client.post(
        f"/api/v1/portfolios/{portfolio_id}/invest",
        json={"user_id": user_id, "amount": amount},
        **kwargs,
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["store_backend"] == "memory"
    assert body["open_circuits"] == []
    assert response.headers["X-Correlation-ID"]


def test_health_reports_open_circuits(client, price_feed):
    price_feed.breaker_for("SOL").state = CircuitState.OPEN

    body = client.get("/health").json()
    assert body["status"] == "degraded"
    assert body["open_circuits"] == ["SOL"]


def test_invest_then_read_back(client):
    response = invest(client)
    assert response.status_code == 200
    assert Decimal(response.json()["shares"]) == Decimal("100")

    view = client.get("/api/v1/portfolios/blue-chip").json()
    assert Decimal(view["total_value"]) == Decimal("100")
    assert Decimal(view["portfolio"]["cash_balance"]) == Decimal("100")

    positions = client.get("/api/v1/users/alice/positions").json()
    assert [p["portfolio_id"] for p in positions] == ["blue-chip"]

    transactions = client.get("/api/v1/users/alice/transactions", params={"limit": 5}).json()
    assert [t["transaction_type"] for t in transactions] == ["invest"]


def test_withdraw(client):
    invest(client)
    response = client.post(
        "/api/v1/portfolios/blue-chip/withdraw",
        json={"user_id": "alice", "shares": "40"},
    )
    assert response.status_code == 200
    body = response.json()
    assert Decimal(body["payout"]) == Decimal("40")
    assert Decimal(body["remaining_shares"]) == Decimal("60")


def test_validation_error_maps_to_422(client):
    response = invest(client, amount="-5")
    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "ValidationError"
    assert body["details"]["field"] == "amount"


def test_malformed_request_is_rejected(client):
    response = client.post("/api/v1/portfolios/blue-chip/invest", json={"amount": "100"})
    assert response.status_code == 422


def test_unknown_portfolio_maps_to_404_with_correlation_id(client):
    response = invest(client, portfolio_id="nope", headers={"X-Correlation-ID": "req-123"})
    assert response.status_code == 404
    assert response.headers["X-Correlation-ID"] == "req-123"
    body = response.json()
    assert body["error"] == "NotFoundError"
    assert body["correlation_id"] == "req-123"


def test_overdraw_maps_to_409(client):
    invest(client, amount="50")
    response = client.post(
        "/api/v1/portfolios/blue-chip/withdraw",
        json={"user_id": "alice", "shares": "80"},
    )
    assert response.status_code == 409
    assert response.json()["details"]["available"] == "50"


def test_rebalance_run_and_history(client):
    invest(client)

    response = client.post("/api/v1/rebalance/run")
    assert response.status_code == 200
    summary = response.json()
    assert summary["success"] is True
    assert summary["rebalanced_count"] == 1

    history = client.get("/api/v1/portfolios/blue-chip/rebalances", params={"limit": 5}).json()
    assert len(history) == 1
    assert {t["symbol"] for t in history[0]["trades"]} == {"BTC", "ETH"}


def test_list_portfolios(client):
    invest(client)

    response = client.get("/api/v1/portfolios")
    assert response.status_code == 200
    [view] = response.json()
    assert view["portfolio"]["portfolio_id"] == "blue-chip"
    assert Decimal(view["total_value"]) == Decimal("100")
    assert set(view["prices"]) == {"BTC", "ETH"}


def test_performance_after_rebalance(client):
    invest(client)
    client.post("/api/v1/rebalance/run")

    response = client.get("/api/v1/portfolios/blue-chip/performance")
    assert response.status_code == 200
    body = response.json()
    assert Decimal(body["current"]["nav"]) == Decimal("100")
    assert Decimal(body["current"]["roi_percent"]) == Decimal("0")
    assert len(body["history"]) == 1
    assert Decimal(body["history"][0]["token_prices"]["BTC"]) == Decimal("50000")

    assert client.get("/api/v1/portfolios/nope/performance").status_code == 404


def test_metrics_endpoint(client):
    invest(client)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert 'ledger_operations_total{operation="invest",outcome="success"} 1.0' in response.text
