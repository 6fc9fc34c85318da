"""
Balance-Time Accumulator

Each applied cycle adds every present holder's balance to their credit.
Holders missing from a cycle accrue nothing for it.

A cycle is identified by its aligned ``cycle_at`` timestamp and is applied at
most once; replaying it is a no-op. Credit only changes through
``apply_cycle`` (additions) and ``settle`` (the commit of a payout plan).
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Sequence

from . import metrics
from .errors import StateCorruptionError
from .models import AccumulationRecord, CycleResult, HolderSnapshot, PayoutPlan, utcnow
from .storage import AccumulatorStore

logger = logging.getLogger(__name__)


class BalanceTimeAccumulator:
    """Owner of AccumulationRecord state."""

    def __init__(self, store: AccumulatorStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self._clock = clock

    def apply_cycle(self, snapshots: Sequence[HolderSnapshot]) -> CycleResult:
        """
        Fold one cycle of snapshots into credit.

        Raises:
            ValueError: snapshots from more than one cycle, duplicate
                addresses, or a negative balance.
        """
        if not snapshots:
            return CycleResult(applied=False, cycle_at=None)

        cycles = {s.cycle_at for s in snapshots}
        if len(cycles) != 1:
            raise ValueError(f"Snapshots span {len(cycles)} cycles; apply one cycle at a time")
        cycle_at = cycles.pop()

        seen = set()
        for snap in snapshots:
            if snap.address in seen:
                raise ValueError(f"Duplicate snapshot for {snap.address} in cycle {cycle_at.isoformat()}")
            if snap.balance < 0:
                raise ValueError(f"Negative balance for {snap.address}: {snap.balance}")
            seen.add(snap.address)

        with self.store.transaction():
            if self.store.is_cycle_applied(cycle_at):
                metrics.cycles_skipped_total().inc()
                logger.info(f"Cycle {cycle_at.isoformat()} already applied; skipping")
                return CycleResult(applied=False, cycle_at=cycle_at)

            credited = 0
            total = Decimal("0")
            for snap in snapshots:
                if snap.balance == 0:
                    continue
                record = self.store.get_record(snap.address) or AccumulationRecord(
                    address=snap.address, first_seen_at=cycle_at
                )
                record.accumulated_credit += snap.balance
                record.cycles_counted += 1
                record.last_updated_at = cycle_at
                self.store.save_record(record)
                credited += 1
                total += snap.balance

            self.store.mark_cycle_applied(cycle_at, credited, total)

        metrics.cycles_applied_total().inc()
        logger.info(f"Applied cycle {cycle_at.isoformat()}: {credited} holders, {total} tokens")
        return CycleResult(applied=True, cycle_at=cycle_at, holders=credited, total_balance=total)

    def settle(self, plan: PayoutPlan) -> int:
        """
        Remove the credit a committed plan paid out.

        Each paid holder loses exactly the credit recorded in the plan; credit
        earned after the plan was computed is kept. Only the distribution
        commit path calls this, inside its transaction.

        Raises:
            StateCorruptionError: a paid holder has less credit than the plan used.
        """
        settled = 0
        with self.store.transaction():
            for entry in plan.entries:
                record = self.store.get_record(entry.address)
                if record is None or record.accumulated_credit < entry.credit:
                    raise StateCorruptionError(
                        f"Credit for {entry.address} is below the amount plan "
                        f"{plan.distribution_id} paid",
                        {"address": entry.address, "distribution_id": plan.distribution_id},
                    )
                record.accumulated_credit -= entry.credit
                record.last_updated_at = self._clock()
                self.store.save_record(record)
                settled += 1

        logger.info(f"Settled credit for {settled} holders (plan {plan.distribution_id})")
        return settled

    def record(self, address: str) -> Optional[AccumulationRecord]:
        return self.store.get_record(address)

    def records(self) -> List[AccumulationRecord]:
        return self.store.all_records()
