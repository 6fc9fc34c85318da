"""
Revenue Ledger

Owns RevenueLedgerState. Two revenue streams feed one pool:
- DEX trading fees, derived from ingested swap volume at the DEX fee rate
- Platform fees, reported externally (as volume at the platform rate, or as
  a direct revenue amount)

Locked volume baselines are seeded once by ``initialize()`` and count toward
the pool like any other volume.

The ledger does not deduplicate revenue. Ingestion avoids re-recording volume
through its cursor.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from . import metrics
from .config import RevenueConfig
from .errors import PlanExceedsPoolError
from .models import RevenueLedgerState, RevenueSource, utcnow
from .storage import LedgerStore

logger = logging.getLogger(__name__)


class RevenueLedger:
    """Pool balance and cumulative totals, mutated only through this class."""

    def __init__(
        self,
        store: LedgerStore,
        config: Optional[RevenueConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config or RevenueConfig()
        self._clock = clock

    def fee_rate(self, source: str) -> Decimal:
        source = RevenueSource(source)
        if source == RevenueSource.DEX:
            return self.config.dex_fee_rate
        return self.config.platform_fee_rate

    def _load(self) -> RevenueLedgerState:
        return self.store.get_ledger_state() or RevenueLedgerState()

    def _save(self, state: RevenueLedgerState) -> None:
        self.store.save_ledger_state(state)

    def publish(self, state: Optional[RevenueLedgerState] = None) -> None:
        """
        Set the pool gauge from committed state.

        A no-op inside an enclosing transaction; whoever opened it publishes
        after it commits.
        """
        if self.store.in_transaction:
            return
        state = state or self._load()
        metrics.pool_balance_gauge().set(float(state.pool_balance))

    def state(self) -> RevenueLedgerState:
        """Read-only snapshot of the ledger."""
        return self._load()

    def initialize(self) -> RevenueLedgerState:
        """
        Seed locked volume baselines and their revenue into the pool.

        Runs once per database; later calls return the existing state.
        """
        with self.store.transaction():
            state = self._load()
            if state.initialized_at is not None:
                return state

            baselines = {
                RevenueSource.DEX.value: self.config.dex_volume_baseline,
                RevenueSource.PLATFORM.value: self.config.platform_volume_baseline,
            }
            seeded = Decimal("0")
            for source, volume in baselines.items():
                if volume < 0:
                    raise ValueError(f"Volume baseline for {source} must not be negative")
                revenue = volume * self.fee_rate(source)
                if revenue:
                    self.store.append_revenue_event(
                        "baseline", revenue, source=source, volume=volume, reference="locked-baseline"
                    )
                seeded += revenue

            state.locked_volume_baselines = baselines
            state.pool_balance += seeded
            state.cumulative_revenue += seeded
            state.initialized_at = self._clock()
            self._save(state)

        self.publish(state)
        logger.info(f"Revenue ledger initialized (baseline revenue ${seeded})")
        return state

    def record_revenue(
        self, amount: Decimal, source: str, reference: Optional[str] = None
    ) -> RevenueLedgerState:
        """Add revenue to the pool. Amounts are additive and never negative."""
        amount = Decimal(amount)
        if amount < 0:
            raise ValueError(f"Revenue amount must not be negative: {amount}")
        source = RevenueSource(source).value

        with self.store.transaction():
            state = self._load()
            if amount == 0:
                return state
            state.pool_balance += amount
            state.cumulative_revenue += amount
            self.store.append_revenue_event("revenue", amount, source=source, reference=reference)
            self._save(state)

        self.publish(state)
        logger.info(f"Recorded ${amount} {source} revenue (pool ${state.pool_balance})")
        return state

    def record_volume(
        self, volume_usd: Decimal, source: str, reference: Optional[str] = None
    ) -> Decimal:
        """
        Convert trading volume into fee revenue at the source's fee rate.

        Returns:
            The revenue added to the pool.
        """
        volume_usd = Decimal(volume_usd)
        if volume_usd < 0:
            raise ValueError(f"Volume must not be negative: {volume_usd}")
        source = RevenueSource(source).value
        revenue = volume_usd * self.fee_rate(source)

        with self.store.transaction():
            state = self._load()
            if volume_usd == 0:
                return Decimal("0")
            state.volume_totals[source] = state.volume_totals.get(source, Decimal("0")) + volume_usd
            state.pool_balance += revenue
            state.cumulative_revenue += revenue
            self.store.append_revenue_event(
                "volume", revenue, source=source, volume=volume_usd, reference=reference
            )
            self._save(state)

        self.publish(state)
        logger.info(f"Recorded ${volume_usd} {source} volume -> ${revenue} revenue")
        return revenue

    def commit_distribution(
        self, amount_paid: Decimal, distribution_id: Optional[str] = None
    ) -> RevenueLedgerState:
        """
        Debit a completed payout from the pool.

        Atomically: pool -= paid, cumulative_distributed += paid, last_reset_at = now.

        Raises:
            PlanExceedsPoolError: ``amount_paid`` exceeds the current pool.
            ValueError: negative amount.
        """
        amount_paid = Decimal(amount_paid)
        if amount_paid < 0:
            raise ValueError(f"Amount paid must not be negative: {amount_paid}")

        with self.store.transaction():
            state = self._load()
            if amount_paid > state.pool_balance:
                raise PlanExceedsPoolError(amount_paid, state.pool_balance)
            state.pool_balance -= amount_paid
            state.cumulative_distributed += amount_paid
            state.last_reset_at = self._clock()
            self.store.append_revenue_event("distribution", amount_paid, reference=distribution_id)
            self._save(state)

        self.publish(state)
        logger.info(
            f"Committed distribution {distribution_id or '-'}: paid ${amount_paid}, "
            f"pool now ${state.pool_balance}"
        )
        return state
