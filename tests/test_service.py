"""
Tests for revshare/service.py

Engine wiring: config validation, ledger baselines, the distribute / dry-run
split, plan lookup and the status summary.
"""

from decimal import Decimal

import pytest

from revshare.config import RevshareConfig
from revshare.errors import ConfigurationError
from revshare.executor import DryRunPayoutExecutor
from revshare.models import NothingToDistribute
from revshare.service import RevshareEngine, describe_result
from tests.helpers import cycle, snapshots_at


@pytest.fixture
def config():
    config = RevshareConfig()
    config.solana.token_mint = "Mint1111"
    config.revenue.platform_volume_baseline = Decimal("10000")
    return config


@pytest.fixture
def engine(config, store, fake_rpc, price_oracle):
    engine = RevshareEngine(config, store=store, rpc=fake_rpc, price_oracle=price_oracle)
    engine.initialize()
    snaps = snapshots_at(cycle(0), {"alice": 50, "bob": 150})
    store.save_snapshots(snaps)
    engine.accumulator.apply_cycle(snaps)
    return engine


class TestEngineWiring:

    def test_from_config_rejects_invalid(self):
        with pytest.raises(ConfigurationError) as exc_info:
            RevshareEngine.from_config(RevshareConfig())
        assert "REVSHARE_TOKEN_MINT is not set" in exc_info.value.details["problems"]

    def test_initialize_seeds_baseline_once(self, engine):
        # 10,000 platform volume at the 0.4% platform fee
        assert engine.ledger.state().pool_balance == Decimal("40")

        engine.initialize()

        assert engine.ledger.state().pool_balance == Decimal("40")

    def test_periodic_tasks_registered(self, engine):
        assert {t["name"] for t in engine.scheduler.status()} == {"ingestion", "snapshot"}


class TestOperatorActions:

    @pytest.mark.asyncio
    async def test_distribute_requires_executor(self, engine):
        with pytest.raises(ConfigurationError):
            await engine.distribute()

    @pytest.mark.asyncio
    async def test_distribute_with_injected_executor(self, engine, store):
        executor = DryRunPayoutExecutor()

        outcome = await engine.distribute(executor)

        assert outcome.status == "committed"
        plan = engine.get_plan(outcome.plan.distribution_id)
        assert plan["status"] == "committed"
        assert [e["address"] for e in plan["entries"]] == ["alice", "bob"]
        assert engine.ledger.state().pool_balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_dry_run_is_side_effect_free(self, engine, store):
        before = engine.ledger.state()

        result = await engine.dry_run()

        assert Decimal(result["total_paid_value"]) == Decimal("40")
        assert engine.ledger.state() == before
        assert store.list_plans() == []

    @pytest.mark.asyncio
    async def test_close_releases_resources(self, engine, fake_rpc, price_oracle, monkeypatch):
        closed = []

        async def record_close():
            closed.append("oracle")

        monkeypatch.setattr(price_oracle, "close", record_close)

        await engine.close()

        assert closed == ["oracle"]


class TestStatus:

    def test_status_summary(self, engine):
        status = engine.status()

        assert status["config"]["token_mint"] == "Mint1111"
        assert Decimal(status["ledger"]["locked_volume_baselines"]["platform"]) == Decimal("10000")
        assert status["plans"] == []

    def test_describe_result(self):
        data = describe_result(NothingToDistribute("pool is empty"))
        assert data["nothing_to_distribute"] is True

        with pytest.raises(TypeError):
            describe_result({"status": "ok"})
