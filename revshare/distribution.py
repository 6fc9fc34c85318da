"""
Distribution Calculator

Turns the revenue pool into an immutable per-holder payout plan:
1. Read ledger state, accumulation records and current balances in one
   storage transaction (one frozen view).
2. Keep holders whose *current* balance passes the eligibility rule.
   Credit earned earlier is honoured only while the holder is still eligible.
3. Split the pool by credit share and convert to payout base units
   (lamports) at a non-stale payout price, rounding every entry down.
4. Persist the plan. Ledger and accumulator are not touched until the
   executor reports success and ``DistributionService`` commits it.

All payout arithmetic is exact (``Fraction``), so the sum of entry amounts
never exceeds ``total_pool_converted``. Rounding leftovers stay in the pool.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from fractions import Fraction
from math import floor
from typing import Callable, Dict, List, Optional, Union
from uuid import uuid4

from . import metrics
from .accumulator import BalanceTimeAccumulator
from .eligibility import EligibilityRule
from .errors import (
    PlanAlreadyCommittedError,
    PlanExceedsPoolError,
    RevshareError,
    TaskAlreadyRunningError,
)
from .executor import PayoutExecutor
from .ledger import RevenueLedger
from .logging_config import RunContext
from .models import (
    AccumulationRecord,
    DistributionOutcome,
    NothingToDistribute,
    PayoutEntry,
    PayoutPlan,
    PlanStatus,
    PriceQuote,
    RevenueLedgerState,
    utcnow,
)
from .price_oracle import PriceOracle

logger = logging.getLogger(__name__)

VALUE_QUANTUM = Decimal("0.000000000001")


def _to_decimal(value: Fraction, quantum: Decimal = VALUE_QUANTUM) -> Decimal:
    """Exact fraction -> Decimal, rounded down to ``quantum``."""
    scaled = floor(value / Fraction(quantum))
    return Decimal(scaled) * quantum


def new_distribution_id(now: datetime) -> str:
    return f"dist-{now.strftime('%Y%m%dT%H%M%S')}-{uuid4().hex[:8]}"


@dataclass
class FrozenView:
    """Ledger, credit and balances read under one transaction."""
    ledger: RevenueLedgerState
    records: List[AccumulationRecord]
    balances: Dict[str, Decimal]
    as_of: Optional[datetime]


class DistributionCalculator:
    """Computes payout plans; never mutates ledger or credit."""

    def __init__(
        self,
        store,
        ledger: RevenueLedger,
        accumulator: BalanceTimeAccumulator,
        eligibility: EligibilityRule,
        price_oracle: PriceOracle,
        total_supply: Decimal = Decimal("1000000000"),
        payout_pair: str = "SOL/USD",
        max_price_age_seconds: float = 300,
        payout_decimals: int = 9,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.accumulator = accumulator
        self.eligibility = eligibility
        self.price_oracle = price_oracle
        self.total_supply = total_supply
        self.payout_pair = payout_pair
        self.max_price_age_seconds = max_price_age_seconds
        self.payout_unit = 10 ** payout_decimals
        self._clock = clock

    def frozen_view(self) -> FrozenView:
        with self.store.transaction():
            return FrozenView(
                ledger=self.ledger.state(),
                records=self.accumulator.records(),
                balances=self.store.latest_balances(),
                as_of=self.store.latest_cycle_at(),
            )

    def eligible_records(self, view: FrozenView) -> List[AccumulationRecord]:
        eligible = []
        for record in view.records:
            if record.accumulated_credit <= 0:
                continue
            balance = view.balances.get(record.address, Decimal("0"))
            if self.eligibility.evaluate(balance, self.total_supply).eligible:
                eligible.append(record)
        return eligible

    def build_plan(
        self,
        pool: Decimal,
        records: List[AccumulationRecord],
        quote: PriceQuote,
        distribution_id: Optional[str] = None,
    ) -> PayoutPlan:
        """Pure plan arithmetic for an eligible record set and a payout price."""
        now = self._clock()
        total_credit = sum((r.accumulated_credit for r in records), Decimal("0"))
        price = Fraction(quote.price)
        pool_units = Fraction(pool) * self.payout_unit / price
        total_pool_converted = floor(pool_units)

        entries = []
        dropped = 0
        for record in sorted(records, key=lambda r: r.address):
            share = Fraction(record.accumulated_credit) / Fraction(total_credit)
            converted = floor(pool_units * share)
            if converted <= 0:
                dropped += 1
                continue
            entries.append(
                PayoutEntry(
                    address=record.address,
                    credit=record.accumulated_credit,
                    credit_share=_to_decimal(share),
                    amount_value=_to_decimal(Fraction(pool) * share),
                    amount_converted=converted,
                )
            )

        total_converted = sum(e.amount_converted for e in entries)
        total_paid_value = _to_decimal(Fraction(total_converted) * price / self.payout_unit)
        if dropped:
            logger.info(f"{dropped} holders round to zero payout; their credit carries over")

        return PayoutPlan(
            distribution_id=distribution_id or new_distribution_id(now),
            generated_at=now,
            pair=quote.pair,
            price=quote.price,
            price_as_of=quote.fetched_at,
            pool_balance=pool,
            total_credit=total_credit,
            total_pool_converted=total_pool_converted,
            total_converted=total_converted,
            total_paid_value=total_paid_value,
            remainder_value=pool - total_paid_value,
            entries=tuple(entries),
        )

    async def compute_distribution(self, persist: bool = True) -> Union[PayoutPlan, NothingToDistribute]:
        """
        Compute a payout plan from one frozen view.

        Raises:
            StalePriceError: payout price older than the configured maximum.
            PriceUnavailableError: no payout price at all.
        """
        view = self.frozen_view()
        pool = view.ledger.pool_balance
        records = self.eligible_records(view)
        total_credit = sum((r.accumulated_credit for r in records), Decimal("0"))

        if pool <= 0:
            return NothingToDistribute("pool is empty", pool, total_credit)
        if total_credit <= 0:
            return NothingToDistribute("no eligible credit", pool, total_credit)

        quote = await self.price_oracle.get_payout_price(self.payout_pair, self.max_price_age_seconds)
        plan = self.build_plan(pool, records, quote)
        if not plan.entries:
            return NothingToDistribute("every payout rounds to zero", pool, total_credit)

        if persist:
            self.store.save_plan(plan)
        logger.info(
            f"Plan {plan.distribution_id}: {len(plan.entries)} holders, "
            f"{plan.total_converted}/{plan.total_pool_converted} units, "
            f"${plan.total_paid_value} of ${pool} at {quote.price}"
        )
        return plan

    async def preview(self) -> Union[PayoutPlan, NothingToDistribute]:
        """Same computation, nothing persisted."""
        return await self.compute_distribution(persist=False)

    async def estimate(self, address: str) -> dict:
        """
        Advisory payout estimate for one holder if a distribution ran now.

        Never raises for upstream failure: the price fields are None when no
        price is available, and ``as_of`` is the latest snapshot cycle.
        """
        view = self.frozen_view()
        balance = view.balances.get(address, Decimal("0"))
        eligibility = self.eligibility.evaluate(balance, self.total_supply)
        record = next((r for r in view.records if r.address == address), None)
        credit = record.accumulated_credit if record else Decimal("0")

        eligible = self.eligible_records(view)
        total_credit = sum((r.accumulated_credit for r in eligible), Decimal("0"))
        share = Decimal("0")
        if eligibility.eligible and credit > 0 and total_credit > 0:
            share = _to_decimal(Fraction(credit) / Fraction(total_credit))
        amount_value = _to_decimal(Fraction(view.ledger.pool_balance) * Fraction(share))

        estimate = {
            "address": address,
            "balance": str(balance),
            "eligible": eligibility.eligible,
            "tier": eligibility.tier,
            "accumulated_credit": str(credit),
            "credit_share": str(share),
            "estimated_value": str(amount_value),
            "pool_balance": str(view.ledger.pool_balance),
            "as_of": view.as_of.isoformat() if view.as_of else None,
            "estimated_converted": None,
            "price": None,
            "price_as_of": None,
            "price_stale": None,
        }
        try:
            quote = await self.price_oracle.get_display_price(self.payout_pair)
        except RevshareError as e:
            logger.info(f"Estimate for {address} without price: {e}")
            return estimate

        estimate.update(
            estimated_converted=floor(Fraction(amount_value) * self.payout_unit / Fraction(quote.price)),
            price=str(quote.price),
            price_as_of=quote.fetched_at.isoformat(),
            price_stale=quote.stale,
        )
        return estimate


class DistributionService:
    """
    Operator-triggered distribution: compute, execute, commit.

    Commit happens only after a plan-level success report, in one transaction:
    ledger debit, credit settlement, plan status.
    """

    def __init__(
        self,
        calculator: DistributionCalculator,
        ledger: RevenueLedger,
        accumulator: BalanceTimeAccumulator,
        store,
        scheduler=None,
    ):
        self.calculator = calculator
        self.ledger = ledger
        self.accumulator = accumulator
        self.store = store
        self.scheduler = scheduler
        self._lock = asyncio.Lock()

    def _paused(self):
        if self.scheduler is None:
            return contextlib.AsyncExitStack()
        return self.scheduler.paused()

    def commit(self, plan: PayoutPlan, tx_signatures: List[str]) -> RevenueLedgerState:
        """
        Settle an executed plan.

        Raises:
            PlanAlreadyCommittedError: the plan already has an outcome.
            PlanExceedsPoolError: the pool shrank below the plan's paid value.
        """
        with self.store.transaction():
            if self.store.plan_status(plan.distribution_id) != PlanStatus.PENDING:
                raise PlanAlreadyCommittedError(plan.distribution_id)
            state = self.ledger.commit_distribution(plan.total_paid_value, plan.distribution_id)
            self.accumulator.settle(plan)
            self.store.record_plan_outcome(plan.distribution_id, PlanStatus.COMMITTED, tx_signatures)
        self.ledger.publish(state)
        metrics.distributions_committed_total().inc()
        return state

    async def execute(self, executor: PayoutExecutor) -> DistributionOutcome:
        """
        Run one distribution end to end.

        Raises:
            TaskAlreadyRunningError: another distribution is in progress.
            StalePriceError: payout price too old; nothing is mutated.
            PlanExceedsPoolError: rejected at commit; compute a fresh plan.
        """
        if self._lock.locked():
            raise TaskAlreadyRunningError("A distribution is already running")

        async with self._lock:
            with RunContext(task_name="distribution") as ctx:
                async with self._paused():
                    result = await self.calculator.compute_distribution()

                if isinstance(result, NothingToDistribute):
                    logger.info(f"Nothing to distribute: {result.reason}")
                    return DistributionOutcome(status="nothing_to_distribute", reason=result.reason)

                plan = result
                with RunContext(
                    task_name="distribution", cycle_id=ctx.cycle_id, distribution_id=plan.distribution_id
                ):
                    return await self._execute_plan(plan, executor)

    async def _execute_plan(self, plan: PayoutPlan, executor: PayoutExecutor) -> DistributionOutcome:
        logger.info(f"Handing plan {plan.distribution_id} to executor")
        report = await executor.execute(plan)

        if not report.success:
            self.store.record_plan_outcome(
                plan.distribution_id, PlanStatus.FAILED, report.tx_signatures,
                detail=report.error or "executor reported failure",
            )
            logger.error(f"Plan {plan.distribution_id} failed in executor: {report.error}")
            return DistributionOutcome(
                status="failed", plan=plan, report=report, reason=report.error
            )

        try:
            state = self.commit(plan, report.tx_signatures)
        except PlanExceedsPoolError as e:
            self.store.record_plan_outcome(
                plan.distribution_id, PlanStatus.FAILED, report.tx_signatures,
                detail=f"rejected at commit: {e.message}",
            )
            logger.error(f"Plan {plan.distribution_id} rejected at commit: {e.message}")
            raise

        logger.info(
            f"Distribution {plan.distribution_id} committed: ${plan.total_paid_value} paid, "
            f"${state.pool_balance} left in pool"
        )
        return DistributionOutcome(status="committed", plan=plan, report=report, ledger=state)
