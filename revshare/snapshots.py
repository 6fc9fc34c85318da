"""
Balance Snapshot Service

On a fixed cadence, reads every holder's current balance from the token
indexer (Helius DAS ``getTokenAccounts``) and feeds it to the accumulator.

Snapshots are aligned to the cadence: all rows of one run share a
``cycle_at``. A late or missed boundary is logged and counted as a gap; it is
never back-filled, so holders are credited only for cycles that ran.
"""

import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Iterable, List, Optional

from . import metrics
from .accumulator import BalanceTimeAccumulator
from .logging_config import RunContext
from .models import CycleResult, HolderSnapshot, align_to_cycle, utcnow
from .solana_rpc import SolanaRpcClient
from .storage import SnapshotStore

logger = logging.getLogger(__name__)


class HolderIndexClient:
    """Current holder balances for one mint, aggregated by owner."""

    def __init__(
        self,
        rpc: SolanaRpcClient,
        mint: str,
        token_decimals: int = 6,
        page_size: int = 1000,
        max_pages: int = 100,
        excluded_wallets: Optional[Iterable[str]] = None,
    ):
        self.rpc = rpc
        self.mint = mint
        self.token_decimals = token_decimals
        self.page_size = page_size
        self.max_pages = max_pages
        self.excluded_wallets = set(excluded_wallets or ())

    async def fetch_balances(self) -> Dict[str, Decimal]:
        """Owner -> UI balance, zero balances and excluded wallets removed."""
        scale = Decimal(10) ** self.token_decimals
        balances: Dict[str, Decimal] = defaultdict(Decimal)
        page = 1
        accounts_seen = 0

        while True:
            result = await self.rpc.get_token_accounts(self.mint, page=page, limit=self.page_size)
            accounts = result.get("token_accounts") or []
            for account in accounts:
                owner = account.get("owner")
                try:
                    raw = Decimal(str(account.get("amount", 0)))
                except InvalidOperation:
                    logger.warning(f"Ignoring token account with bad amount: {account.get('address')}")
                    continue
                if not owner or raw <= 0 or owner in self.excluded_wallets:
                    continue
                balances[owner] += raw / scale
            accounts_seen += len(accounts)

            if len(accounts) < self.page_size:
                break
            if page >= self.max_pages:
                logger.warning(
                    f"Holder index truncated at {page} pages ({accounts_seen} accounts); "
                    f"holders beyond this are not snapshotted"
                )
                break
            page += 1

        logger.debug(f"Indexed {accounts_seen} token accounts into {len(balances)} holders")
        return dict(balances)


class SnapshotService:
    """Takes holder snapshots and applies them as accumulation cycles."""

    def __init__(
        self,
        index: HolderIndexClient,
        store: SnapshotStore,
        accumulator: BalanceTimeAccumulator,
        interval_seconds: int = 600,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.index = index
        self.store = store
        self.accumulator = accumulator
        self.interval_seconds = interval_seconds
        self._clock = clock

    async def snapshot(self) -> List[HolderSnapshot]:
        """Current balance of every holder, stamped with this cycle's boundary."""
        observed_at = self._clock()
        cycle_at = align_to_cycle(observed_at, self.interval_seconds)
        balances = await self.index.fetch_balances()
        return [
            HolderSnapshot(address=address, balance=balance, observed_at=observed_at, cycle_at=cycle_at)
            for address, balance in sorted(balances.items())
        ]

    def _check_gap(self, cycle_at: datetime) -> None:
        last = self.accumulator.store.last_applied_cycle()
        if last is None:
            return
        missed = int((cycle_at - last).total_seconds() // self.interval_seconds) - 1
        if missed > 0:
            metrics.cycles_skipped_total().inc(missed)
            logger.warning(
                f"{missed} snapshot cycle(s) missed between {last.isoformat()} and "
                f"{cycle_at.isoformat()}; not back-filled"
            )

    async def run_cycle(self) -> CycleResult:
        """Snapshot, persist, and apply one cycle atomically."""
        with RunContext(task_name="snapshot"):
            snapshots = await self.snapshot()
            if not snapshots:
                metrics.cycles_skipped_total().inc()
                logger.warning("Holder index returned no holders; cycle skipped")
                return CycleResult(applied=False, cycle_at=None)

            cycle_at = snapshots[0].cycle_at
            if self.accumulator.store.is_cycle_applied(cycle_at):
                metrics.cycles_skipped_total().inc()
                logger.info(f"Cycle {cycle_at.isoformat()} already applied; skipping")
                return CycleResult(applied=False, cycle_at=cycle_at)

            self._check_gap(cycle_at)
            with self.store.transaction():
                self.store.save_snapshots(snapshots)
                return self.accumulator.apply_cycle(snapshots)
