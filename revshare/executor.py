"""
Payout Executor boundary.

The engine hands an immutable PayoutPlan to an executor and commits the
ledger only on a plan-level success report. On-chain transfer execution lives
outside this package; ``DryRunPayoutExecutor`` stands in for it in operator
previews and tests.
"""

import logging
from typing import Protocol

from .models import ExecutionReport, PayoutPlan

logger = logging.getLogger(__name__)


class PayoutExecutor(Protocol):
    async def execute(self, plan: PayoutPlan) -> ExecutionReport: ...


class DryRunPayoutExecutor:
    """Logs each transfer it would make and reports success."""

    def __init__(self, payout_unit: str = "lamports"):
        self.payout_unit = payout_unit
        self.executed = []

    async def execute(self, plan: PayoutPlan) -> ExecutionReport:
        entries = {}
        for entry in plan.entries:
            logger.info(
                f"[dry-run] {entry.address}: {entry.amount_converted} {self.payout_unit} "
                f"(${entry.amount_value:.6f}, share {entry.credit_share:.6%})"
            )
            entries[entry.address] = "ok"
        self.executed.append(plan.distribution_id)
        logger.info(
            f"[dry-run] plan {plan.distribution_id}: {len(plan.entries)} transfers, "
            f"{plan.total_converted} {self.payout_unit} total"
        )
        return ExecutionReport(success=True, entries=entries, tx_signatures=[])
