"""
Revshare Engine - wires every component from one RevshareConfig.

    engine = RevshareEngine.from_config(get_config())
    await engine.run_forever()        # ingestion + snapshot loops until SIGTERM

Operator actions (preview, distribute) and advisory reads (stats,
eligibility, estimates) go through the same instance.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from .accumulator import BalanceTimeAccumulator
from .config import RevshareConfig
from .distribution import DistributionCalculator, DistributionService
from .eligibility import EligibilityRule
from .errors import ConfigurationError, RevshareError
from .executor import DryRunPayoutExecutor, PayoutExecutor
from .ingestion import TransactionIngestor
from .ledger import RevenueLedger
from .models import DistributionOutcome, NothingToDistribute, PayoutPlan
from .price_oracle import PriceOracle
from .scheduler import PeriodicTask, TaskScheduler
from .shutdown import GracefulShutdown
from .snapshots import HolderIndexClient, SnapshotService
from .solana_rpc import SolanaRpcClient
from .storage import SQLiteStateStore

logger = logging.getLogger(__name__)


class RevshareEngine:
    """One running instance of the revenue share engine."""

    def __init__(
        self,
        config: RevshareConfig,
        store: Optional[SQLiteStateStore] = None,
        rpc: Optional[SolanaRpcClient] = None,
        price_oracle: Optional[PriceOracle] = None,
        executor: Optional[PayoutExecutor] = None,
    ):
        self.config = config
        self.store = store or SQLiteStateStore(config.storage.resolved_path)
        self.rpc = rpc or SolanaRpcClient.from_config(config.solana, config.retry)
        self.price_oracle = price_oracle or PriceOracle.from_config(config.price, config.retry)
        self.executor = executor

        mint = config.solana.token_mint
        self.ledger = RevenueLedger(self.store, config.revenue)
        self.accumulator = BalanceTimeAccumulator(self.store)
        self.eligibility = EligibilityRule.from_config(config.eligibility)

        self.ingestor = TransactionIngestor(
            self.rpc,
            mint,
            self.store,
            self.ledger,
            self.price_oracle,
            config=config.ingestion,
            price_pair=config.price.payout_pair,
        )
        self.holder_index = HolderIndexClient(
            self.rpc,
            mint,
            token_decimals=config.snapshot.token_decimals,
            page_size=config.snapshot.page_size,
            max_pages=config.snapshot.max_pages,
            excluded_wallets=config.snapshot.excluded_wallets,
        )
        self.snapshots = SnapshotService(
            self.holder_index,
            self.store,
            self.accumulator,
            interval_seconds=config.snapshot.interval_seconds,
        )

        self.scheduler = TaskScheduler()
        self.scheduler.add(PeriodicTask("ingestion", self.ingestor.run_pass, config.ingestion.interval_seconds))
        self.scheduler.add(PeriodicTask("snapshot", self.snapshots.run_cycle, config.snapshot.interval_seconds))

        self.calculator = DistributionCalculator(
            self.store,
            self.ledger,
            self.accumulator,
            self.eligibility,
            self.price_oracle,
            total_supply=config.eligibility.total_supply,
            payout_pair=config.price.payout_pair,
            max_price_age_seconds=config.price.max_payout_age_seconds,
        )
        self.distributions = DistributionService(
            self.calculator, self.ledger, self.accumulator, self.store, scheduler=self.scheduler
        )

    @classmethod
    def from_config(cls, config: RevshareConfig, **overrides) -> "RevshareEngine":
        problems = config.validate()
        if problems:
            raise ConfigurationError("Invalid configuration: " + "; ".join(problems), {"problems": problems})
        return cls(config, **overrides)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(self) -> None:
        self.ledger.initialize()

    def start(self) -> None:
        self.initialize()
        self.scheduler.start()

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.rpc.close()
        await self.price_oracle.close()
        self.store.close()

    async def run_forever(self) -> None:
        """Run the periodic tasks until SIGINT/SIGTERM."""
        shutdown = GracefulShutdown()
        shutdown.register("scheduler", self.scheduler.stop, priority=10)
        shutdown.register("rpc", self.rpc.close, priority=50)
        shutdown.register("price_oracle", self.price_oracle.close, priority=50)
        shutdown.register("store", self.store.close, priority=90)
        shutdown.install_signal_handlers()

        self.start()
        logger.info(f"Revshare engine running for mint {self.config.solana.token_mint}")
        await shutdown.wait_for_shutdown()

    # =========================================================================
    # Operator actions
    # =========================================================================

    async def preview(self):
        return await self.calculator.preview()

    async def distribute(self, executor: Optional[PayoutExecutor] = None) -> DistributionOutcome:
        executor = executor or self.executor
        if executor is None:
            raise ConfigurationError("No payout executor configured")
        return await self.distributions.execute(executor)

    async def dry_run(self) -> Dict[str, Any]:
        """Compute a plan and log the transfers it would make. Nothing is persisted or committed."""
        result = await self.calculator.preview()
        if isinstance(result, PayoutPlan):
            await DryRunPayoutExecutor().execute(result)
        return describe_result(result)

    def get_plan(self, distribution_id: str) -> Dict[str, Any]:
        plan = self.store.get_plan(distribution_id)
        data = plan.to_dict()
        data["status"] = self.store.plan_status(distribution_id).value
        return data

    # =========================================================================
    # Advisory reads
    # =========================================================================

    async def stats(self) -> Dict[str, Any]:
        """Pool, holder and ingestion summary. Never fails on upstream errors."""
        view = self.calculator.frozen_view()
        supply = self.config.eligibility.total_supply
        balances = list(view.balances.values())
        eligible = [b for b in balances if self.eligibility.evaluate(b, supply).eligible]
        cursor = self.store.get_cursor()

        price = None
        try:
            quote = await self.price_oracle.get_display_price(self.config.price.payout_pair)
            price = {"pair": quote.pair, "price": str(quote.price),
                     "as_of": quote.fetched_at.isoformat(), "stale": quote.stale}
        except RevshareError as e:
            logger.info(f"Stats without price: {e}")

        return {
            "ledger": view.ledger.to_dict(),
            "holders": len(balances),
            "eligible_holders": len(eligible),
            "eligible_supply": str(sum(eligible, Decimal("0"))),
            "tiers": self.eligibility.tier_breakdown(balances, supply),
            "last_cycle_at": view.as_of.isoformat() if view.as_of else None,
            "cycles_applied": self.store.applied_cycle_count(),
            "cursor": {
                "signature": cursor.last_processed_signature,
                "updated_at": cursor.updated_at.isoformat() if cursor.updated_at else None,
                "reset_count": cursor.reset_count,
            } if cursor else None,
            "price": price,
            "as_of": view.as_of.isoformat() if view.as_of else None,
        }

    def eligibility_for(self, address: str) -> Dict[str, Any]:
        balances = self.store.latest_balances()
        balance = balances.get(address, Decimal("0"))
        result = self.eligibility.evaluate(balance, self.config.eligibility.total_supply)
        as_of = self.store.latest_cycle_at()
        return {
            "address": address,
            "balance": str(balance),
            "eligible": result.eligible,
            "tier": result.tier,
            "percentage": str(result.percentage),
            "min_balance": str(self.eligibility.min_balance),
            "as_of": as_of.isoformat() if as_of else None,
        }

    async def estimate(self, address: str) -> Dict[str, Any]:
        return await self.calculator.estimate(address)

    def status(self) -> Dict[str, Any]:
        return {
            "config": self.config.to_safe_dict(),
            "tasks": self.scheduler.status(),
            "ledger": self.ledger.state().to_dict(),
            "plans": self.store.list_plans(limit=5),
            "cursor_events": self.store.cursor_events(limit=5),
        }


def describe_result(result) -> Dict[str, Any]:
    """JSON-ready view of a PayoutPlan or NothingToDistribute."""
    if isinstance(result, (PayoutPlan, NothingToDistribute)):
        return result.to_dict()
    raise TypeError(f"Unexpected distribution result {type(result).__name__}")