"""
Tests for revshare/storage.py

Tests cover:
- Transaction commit / rollback and nesting
- Round trips for cursor, ledger, plans
- Corrupt decimal columns surface as StateCorruptionError
- Plan outcomes are recorded once
"""

from decimal import Decimal

import pytest

from revshare.errors import PlanAlreadyCommittedError, PlanNotFoundError, StateCorruptionError
from revshare.models import (
    IngestionCursor,
    PayoutEntry,
    PayoutPlan,
    PlanStatus,
    RevenueLedgerState,
)
from revshare.storage import SQLiteStateStore
from tests.helpers import START


def _plan(distribution_id="dist-1"):
    return PayoutPlan(
        distribution_id=distribution_id,
        generated_at=START,
        pair="SOL/USD",
        price=Decimal("150.25"),
        price_as_of=START,
        pool_balance=Decimal("100"),
        total_credit=Decimal("40"),
        total_pool_converted=665_557_404,
        total_converted=665_557_403,
        total_paid_value=Decimal("99.999999800750"),
        remainder_value=Decimal("0.000000199250"),
        entries=(
            PayoutEntry("a", Decimal("30"), Decimal("0.75"), Decimal("75"), 499_168_053),
            PayoutEntry("b", Decimal("10"), Decimal("0.25"), Decimal("25"), 166_389_350),
        ),
    )


class TestTransactions:

    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.save_cursor(IngestionCursor("sig-1"))
                raise RuntimeError("abort")

        assert store.get_cursor() is None

    def test_nested_joins_outer(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                with store.transaction():
                    store.save_cursor(IngestionCursor("sig-1"))
                assert store.in_transaction
                raise RuntimeError("outer fails")

        assert store.get_cursor() is None
        assert store.in_transaction is False

    def test_file_database_persists(self, tmp_path):
        path = str(tmp_path / "state" / "revshare.db")
        first = SQLiteStateStore(path)
        first.save_cursor(IngestionCursor("sig-9", 1_700_000_000, START, 2))
        first.close()

        second = SQLiteStateStore(path)
        cursor = second.get_cursor()
        second.close()

        assert cursor == IngestionCursor("sig-9", 1_700_000_000, START, 2)


class TestLedgerState:

    def test_round_trip(self, store):
        state = RevenueLedgerState(
            pool_balance=Decimal("12.345678901234"),
            cumulative_revenue=Decimal("20"),
            cumulative_distributed=Decimal("7.654321098766"),
            last_reset_at=START,
            locked_volume_baselines={"dex": Decimal("1000")},
            volume_totals={"dex": Decimal("5.5")},
        )
        store.save_ledger_state(state)

        assert store.get_ledger_state() == state

    def test_corrupt_decimal_detected(self, store):
        store.save_ledger_state(RevenueLedgerState(pool_balance=Decimal("1")))
        with store.transaction() as conn:
            conn.execute("UPDATE revenue_ledger SET pool_balance = 'NaN-ish' WHERE id = 1")

        with pytest.raises(StateCorruptionError):
            store.get_ledger_state()


class TestPlans:

    def test_plan_round_trip(self, store):
        plan = _plan()
        store.save_plan(plan)

        assert store.get_plan("dist-1") == plan
        assert store.plan_status("dist-1") == PlanStatus.PENDING
        assert store.list_plans()[0]["status"] == "pending"

    def test_unknown_plan(self, store):
        with pytest.raises(PlanNotFoundError):
            store.get_plan("nope")
        with pytest.raises(PlanNotFoundError):
            store.plan_status("nope")

    def test_outcome_recorded_once(self, store):
        store.save_plan(_plan())
        store.record_plan_outcome("dist-1", PlanStatus.COMMITTED, ["sig-a"])

        with pytest.raises(PlanAlreadyCommittedError):
            store.record_plan_outcome("dist-1", PlanStatus.FAILED, [])
        assert store.plan_status("dist-1") == PlanStatus.COMMITTED

    def test_duplicate_plan_id_rejected(self, store):
        import sqlite3

        store.save_plan(_plan())
        with pytest.raises(sqlite3.IntegrityError):
            store.save_plan(_plan())
