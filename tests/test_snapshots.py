"""
Tests for revshare/snapshots.py

Tests cover:
- Holder index aggregation, exclusions, pagination
- Cycle alignment and idempotent application
- Missed cycle detection
"""

from decimal import Decimal

import pytest

from revshare import metrics
from revshare.accumulator import BalanceTimeAccumulator
from revshare.snapshots import HolderIndexClient, SnapshotService
from tests.helpers import cycle


def _account(owner, amount, address=None):
    return {"owner": owner, "amount": amount, "address": address or f"ata-{owner}"}


@pytest.fixture
def index(fake_rpc):
    return HolderIndexClient(fake_rpc, "Mint1111", token_decimals=6, page_size=2, max_pages=3,
                             excluded_wallets=["treasury"])


@pytest.fixture
def service(index, store, clock):
    return SnapshotService(index, store, BalanceTimeAccumulator(store, clock=clock),
                           interval_seconds=600, clock=clock)


class TestHolderIndex:
    """Balance aggregation from token accounts."""

    @pytest.mark.asyncio
    async def test_aggregates_by_owner(self, index, fake_rpc):
        fake_rpc.holder_pages = [
            [_account("alice", 1_500_000), _account("alice", 500_000, "ata-2")],
            [_account("bob", 250_000)],
        ]

        balances = await index.fetch_balances()

        assert balances == {"alice": Decimal("2"), "bob": Decimal("0.25")}

    @pytest.mark.asyncio
    async def test_skips_zero_excluded_and_bad_accounts(self, index, fake_rpc):
        fake_rpc.holder_pages = [
            [_account("treasury", 9_000_000), _account("empty", 0)],
            [_account("bad", "abc"), _account(None, 1_000_000)],
            [_account("carol", 3_000_000)],
        ]

        balances = await index.fetch_balances()

        assert balances == {"carol": Decimal("3")}

    @pytest.mark.asyncio
    async def test_truncates_at_max_pages(self, index, fake_rpc):
        fake_rpc.holder_pages = [[_account(f"h{p}{i}", 1_000_000) for i in range(2)] for p in range(5)]

        balances = await index.fetch_balances()

        assert len(balances) == 6


class TestSnapshotService:
    """Snapshot cycles."""

    @pytest.mark.asyncio
    async def test_snapshots_aligned_to_cycle(self, service, fake_rpc, clock):
        fake_rpc.holder_pages = [[_account("alice", 1_000_000)]]
        clock.advance(725)

        snaps = await service.snapshot()

        assert snaps[0].observed_at == clock.now
        assert snaps[0].cycle_at == cycle(1)

    @pytest.mark.asyncio
    async def test_run_cycle_persists_and_credits(self, service, fake_rpc, store):
        fake_rpc.holder_pages = [[_account("alice", 4_000_000), _account("bob", 1_000_000)]]

        result = await service.run_cycle()

        assert result.applied is True
        assert result.holders == 2
        assert store.latest_balances() == {"alice": Decimal("4"), "bob": Decimal("1")}
        assert store.get_record("alice").accumulated_credit == Decimal("4")

    @pytest.mark.asyncio
    async def test_second_run_in_same_cycle_skipped(self, service, fake_rpc, store, clock):
        fake_rpc.holder_pages = [[_account("alice", 4_000_000)]]
        await service.run_cycle()
        clock.advance(60)

        result = await service.run_cycle()

        assert result.applied is False
        assert store.get_record("alice").accumulated_credit == Decimal("4")

    @pytest.mark.asyncio
    async def test_empty_index_skips_cycle(self, service, store):
        result = await service.run_cycle()

        assert result.applied is False
        assert store.applied_cycle_count() == 0
        assert metrics.cycles_skipped_total().get() == 1

    @pytest.mark.asyncio
    async def test_missed_cycles_counted_not_backfilled(self, service, fake_rpc, store, clock):
        fake_rpc.holder_pages = [[_account("alice", 1_000_000)]]
        await service.run_cycle()
        clock.advance(600 * 4)

        await service.run_cycle()

        assert store.applied_cycle_count() == 2
        assert store.get_record("alice").accumulated_credit == Decimal("2")
        assert metrics.cycles_skipped_total().get() == 3
        assert store.last_applied_cycle() == cycle(4)

    @pytest.mark.asyncio
    async def test_index_failure_leaves_state(self, service, fake_rpc, store):
        async def boom(*args, **kwargs):
            raise ConnectionError("indexer down")

        fake_rpc.get_token_accounts = boom

        with pytest.raises(ConnectionError):
            await service.run_cycle()
        assert store.applied_cycle_count() == 0
        assert store.latest_cycle_at() is None

    @pytest.mark.asyncio
    async def test_compact_old_snapshots(self, service, fake_rpc, store, clock):
        fake_rpc.holder_pages = [[_account("alice", 1_000_000)]]
        await service.run_cycle()
        clock.advance(600)
        await service.run_cycle()

        removed = store.compact_snapshots(before=cycle(1))

        assert removed == 1
        assert store.get_record("alice").accumulated_credit == Decimal("2")
        assert len(store.snapshots_for("alice")) == 1
