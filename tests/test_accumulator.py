"""
Tests for revshare/accumulator.py

Tests cover:
- Credit grows by balance per applied cycle
- Replaying a cycle is a no-op
- Credit is monotonic in holding duration and in balance
- Validation of malformed cycles
- Settlement after a committed payout
"""

from decimal import Decimal

import pytest

from revshare import metrics
from revshare.accumulator import BalanceTimeAccumulator
from revshare.errors import StateCorruptionError
from revshare.models import PayoutEntry, PayoutPlan
from tests.helpers import START, cycle, snapshots_at


@pytest.fixture
def accumulator(store, clock):
    return BalanceTimeAccumulator(store, clock=clock)


def _plan(entries):
    return PayoutPlan(
        distribution_id="dist-test",
        generated_at=START,
        pair="SOL/USD",
        price=Decimal("100"),
        price_as_of=START,
        pool_balance=Decimal("10"),
        total_credit=sum((e.credit for e in entries), Decimal("0")),
        total_pool_converted=0,
        total_converted=0,
        total_paid_value=Decimal("0"),
        remainder_value=Decimal("10"),
        entries=tuple(entries),
    )


class TestApplyCycle:
    """Folding snapshots into credit."""

    def test_credit_is_sum_of_balances(self, accumulator):
        """Each cycle adds the observed balance once."""
        for n in range(3):
            accumulator.apply_cycle(snapshots_at(cycle(n), {"alice": 100}))

        record = accumulator.record("alice")
        assert record.accumulated_credit == Decimal("300")
        assert record.cycles_counted == 3
        assert record.first_seen_at == cycle(0)
        assert record.last_updated_at == cycle(2)

    def test_replayed_cycle_is_noop(self, accumulator, store):
        """Applying the same cycle twice leaves credit unchanged."""
        snaps = snapshots_at(cycle(0), {"alice": 100, "bob": 5})
        first = accumulator.apply_cycle(snaps)
        second = accumulator.apply_cycle(snaps)

        assert first.applied is True
        assert second.applied is False
        assert accumulator.record("alice").accumulated_credit == Decimal("100")
        assert accumulator.record("bob").cycles_counted == 1
        assert store.applied_cycle_count() == 1
        assert metrics.cycles_skipped_total().get() == 1
        assert metrics.cycles_applied_total().get() == 1

    def test_absent_holder_accrues_nothing(self, accumulator):
        accumulator.apply_cycle(snapshots_at(cycle(0), {"alice": 100, "bob": 50}))
        accumulator.apply_cycle(snapshots_at(cycle(1), {"alice": 100}))

        assert accumulator.record("bob").accumulated_credit == Decimal("50")
        assert accumulator.record("bob").cycles_counted == 1

    def test_zero_balance_creates_no_record(self, accumulator):
        result = accumulator.apply_cycle(snapshots_at(cycle(0), {"alice": 0, "bob": 1}))

        assert result.holders == 1
        assert accumulator.record("alice") is None

    def test_empty_cycle_is_not_applied(self, accumulator, store):
        result = accumulator.apply_cycle([])

        assert result.applied is False
        assert store.applied_cycle_count() == 0

    def test_mixed_cycles_rejected(self, accumulator):
        snaps = snapshots_at(cycle(0), {"alice": 1}) + snapshots_at(cycle(1), {"bob": 1})
        with pytest.raises(ValueError):
            accumulator.apply_cycle(snaps)

    def test_duplicate_address_rejected(self, accumulator):
        snaps = snapshots_at(cycle(0), {"alice": 1}) * 2
        with pytest.raises(ValueError):
            accumulator.apply_cycle(snaps)

    def test_negative_balance_rejected(self, accumulator, store):
        with pytest.raises(ValueError):
            accumulator.apply_cycle(snapshots_at(cycle(0), {"alice": -1}))
        assert store.applied_cycle_count() == 0


class TestMonotonicity:
    """Credit ordering by duration and by size."""

    def test_longer_holding_earns_more(self, accumulator):
        """Same balance, more cycles -> strictly more credit."""
        for n in range(10):
            holders = {"early": 1000}
            if n >= 7:
                holders["late"] = 1000
            accumulator.apply_cycle(snapshots_at(cycle(n), holders))

        assert accumulator.record("early").accumulated_credit > accumulator.record("late").accumulated_credit

    def test_larger_balance_earns_more(self, accumulator):
        """Same duration, larger balance -> strictly more credit."""
        for n in range(5):
            accumulator.apply_cycle(snapshots_at(cycle(n), {"whale": 5000, "shrimp": 50}))

        assert accumulator.record("whale").accumulated_credit > accumulator.record("shrimp").accumulated_credit


class TestSettle:
    """Credit removal on commit."""

    def test_settle_subtracts_plan_credit(self, accumulator):
        accumulator.apply_cycle(snapshots_at(cycle(0), {"alice": 100}))
        accumulator.apply_cycle(snapshots_at(cycle(1), {"alice": 100}))
        plan = _plan([PayoutEntry("alice", Decimal("100"), Decimal("1"), Decimal("10"), 1)])

        assert accumulator.settle(plan) == 1
        record = accumulator.record("alice")
        assert record.accumulated_credit == Decimal("100")
        assert record.cycles_counted == 2

    def test_settle_rejects_missing_credit(self, accumulator):
        accumulator.apply_cycle(snapshots_at(cycle(0), {"alice": 10}))
        plan = _plan([PayoutEntry("alice", Decimal("100"), Decimal("1"), Decimal("10"), 1)])

        with pytest.raises(StateCorruptionError):
            accumulator.settle(plan)
        assert accumulator.record("alice").accumulated_credit == Decimal("10")
