"""
Tests for revshare/api.py

Tests cover:
- Public advisory reads (stats, eligibility, estimate)
- Operator key gate (missing / wrong / disabled)
- Preview and dry-run distribution leave state untouched
- Error envelopes for configuration and unknown plans
- Metrics export and health
"""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from revshare.api import create_app
from revshare.config import RevshareConfig
from revshare.service import RevshareEngine
from tests.helpers import cycle, snapshots_at

OPERATOR = {"X-Operator-Key": "op-key"}


def _config(operator_key="op-key"):
    config = RevshareConfig()
    config.solana.token_mint = "Mint1111"
    config.operator.operator_key = operator_key
    return config


def _seed(engine):
    for n in range(3):
        snaps = snapshots_at(cycle(n), {"alice": 300, "bob": 100, "dust": Decimal("0.5")})
        engine.store.save_snapshots(snaps)
        engine.accumulator.apply_cycle(snaps)
    engine.ledger.record_revenue(Decimal("40"), "platform")


@pytest.fixture
def engine(store, fake_rpc, price_oracle):
    engine = RevshareEngine(_config(), store=store, rpc=fake_rpc, price_oracle=price_oracle)
    _seed(engine)
    return engine


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine)) as c:
        yield c


class TestPublicEndpoints:
    """Advisory reads need no key."""

    def test_stats(self, client):
        response = client.get("/api/revshare/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["holders"] == 3
        assert data["eligible_holders"] == 2
        assert data["cycles_applied"] == 3
        assert Decimal(data["ledger"]["pool_balance"]) == Decimal("40")
        assert Decimal(data["price"]["price"]) == Decimal("100")
        assert data["as_of"] == cycle(2).isoformat()

    def test_eligibility(self, client):
        eligible = client.get("/api/revshare/eligibility/alice").json()
        dust = client.get("/api/revshare/eligibility/dust").json()
        unknown = client.get("/api/revshare/eligibility/nobody").json()

        assert eligible["eligible"] is True
        assert eligible["tier"] == "BRONZE"
        assert dust["eligible"] is False
        assert unknown["balance"] == "0"
        assert unknown["eligible"] is False

    def test_estimate(self, client):
        data = client.get("/api/revshare/estimate/alice").json()

        assert Decimal(data["credit_share"]) == Decimal("0.75")
        assert Decimal(data["estimated_value"]) == Decimal("30")
        assert data["price"] is not None

    def test_estimate_survives_price_outage(self, client, price_oracle):
        from revshare.errors import ProviderError

        price_oracle._fetch.side_effect = ProviderError("coingecko down", provider="coingecko")

        response = client.get("/api/revshare/estimate/alice")

        assert response.status_code == 200
        assert response.json()["price"] is None


class TestOperatorGate:
    """X-Operator-Key handling."""

    def test_missing_key(self, client):
        assert client.get("/api/revshare/admin/preview").status_code == 401

    def test_wrong_key(self, client):
        response = client.get("/api/revshare/admin/preview", headers={"X-Operator-Key": "guess"})
        assert response.status_code == 403

    def test_disabled_without_configured_key(self, store, fake_rpc, price_oracle):
        engine = RevshareEngine(_config(operator_key=""), store=store, rpc=fake_rpc, price_oracle=price_oracle)
        with TestClient(create_app(engine)) as c:
            response = c.get("/api/revshare/admin/preview", headers=OPERATOR)
        assert response.status_code == 503

    def test_metrics_gated(self, client):
        assert client.get("/api/revshare/metrics").status_code == 401


class TestOperatorActions:
    """Preview, distribute, plans."""

    def test_preview_returns_plan(self, client, store):
        response = client.get("/api/revshare/admin/preview", headers=OPERATOR)

        assert response.status_code == 200
        plan = response.json()
        assert [e["address"] for e in plan["entries"]] == ["alice", "bob"]
        assert plan["total_pool_converted"] == 400_000_000
        assert store.list_plans() == []

    def test_dry_run_changes_nothing(self, client, engine, store):
        response = client.post(
            "/api/revshare/admin/distribute", json={"dry_run": True}, headers=OPERATOR
        )

        assert response.status_code == 200
        assert response.json()["entries"]
        assert engine.ledger.state().pool_balance == Decimal("40")
        assert engine.accumulator.record("alice").accumulated_credit > 0
        assert store.list_plans() == []

    def test_distribute_without_executor(self, client):
        response = client.post("/api/revshare/admin/distribute", json={}, headers=OPERATOR)

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "CFG_001"

    def test_distribute_with_empty_pool(self, client, engine):
        engine.ledger.commit_distribution(Decimal("40"))

        response = client.post(
            "/api/revshare/admin/distribute", json={"dry_run": True}, headers=OPERATOR
        )

        assert response.status_code == 200
        assert response.json()["nothing_to_distribute"] is True

    def test_unknown_plan(self, client):
        response = client.get("/api/revshare/admin/plans/missing", headers=OPERATOR)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "LEDGER_003"


class TestMetricsAndHealth:

    def test_prometheus_text(self, client):
        response = client.get("/api/revshare/metrics", headers=OPERATOR)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "revshare_cycles_applied_total 3.0" in response.text

    def test_json_format(self, client):
        response = client.get("/api/revshare/metrics?format=json", headers=OPERATOR)
        assert response.status_code == 200
        assert isinstance(response.json(), dict)

    def test_bad_format_rejected(self, client):
        response = client.get("/api/revshare/metrics?format=xml", headers=OPERATOR)
        assert response.status_code == 422

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "ok"
        assert {t["name"] for t in data["tasks"]} == {"ingestion", "snapshot"}
