"""
Data model for the revenue share engine.

State records (persisted):
- HolderSnapshot: one holder's balance at one accumulation cycle
- AccumulationRecord: running balance-time credit per holder
- IngestionCursor: last fully processed signature (singleton)
- RevenueLedgerState: pool balance and cumulative totals (singleton)
- PayoutPlan: immutable per-distribution payout list

Amounts are Decimal throughout. Converted payout amounts are integer base
units (lamports for SOL).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


LAMPORTS_PER_SOL = 1_000_000_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def align_to_cycle(moment: datetime, interval_seconds: int) -> datetime:
    """Floor ``moment`` to the start of its accumulation cycle."""
    epoch = int(moment.timestamp())
    return datetime.fromtimestamp(epoch - epoch % interval_seconds, tz=timezone.utc)


class RevenueSource(str, Enum):
    """Revenue streams feeding the pool."""
    DEX = "dex"              # trading fees derived from ingested swap volume
    PLATFORM = "platform"    # externally reported platform fees


class PlanStatus(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    FAILED = "failed"


# =============================================================================
# STATE RECORDS
# =============================================================================

@dataclass(frozen=True)
class HolderSnapshot:
    """A holder's balance observed in one cycle. Never mutated."""
    address: str
    balance: Decimal
    observed_at: datetime
    cycle_at: datetime


@dataclass
class AccumulationRecord:
    """Balance-time credit for one holder since their last payout."""
    address: str
    accumulated_credit: Decimal = Decimal("0")
    cycles_counted: int = 0  # lifetime; payouts do not reset it
    first_seen_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "accumulated_credit": str(self.accumulated_credit),
            "cycles_counted": self.cycles_counted,
            "first_seen_at": self.first_seen_at.isoformat() if self.first_seen_at else None,
            "last_updated_at": self.last_updated_at.isoformat() if self.last_updated_at else None,
        }


@dataclass(frozen=True)
class IngestionCursor:
    """Durable marker of the newest fully processed transaction."""
    last_processed_signature: str
    last_processed_timestamp: Optional[int] = None
    updated_at: Optional[datetime] = None
    reset_count: int = 0


@dataclass
class RevenueLedgerState:
    """Pool balance and lifetime totals."""
    pool_balance: Decimal = Decimal("0")
    cumulative_distributed: Decimal = Decimal("0")
    cumulative_revenue: Decimal = Decimal("0")
    last_reset_at: Optional[datetime] = None
    initialized_at: Optional[datetime] = None
    locked_volume_baselines: Dict[str, Decimal] = field(default_factory=dict)
    volume_totals: Dict[str, Decimal] = field(default_factory=dict)

    def total_volume(self, source: str) -> Decimal:
        """Locked baseline plus volume observed since."""
        return self.locked_volume_baselines.get(source, Decimal("0")) + self.volume_totals.get(
            source, Decimal("0")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pool_balance": str(self.pool_balance),
            "cumulative_distributed": str(self.cumulative_distributed),
            "cumulative_revenue": str(self.cumulative_revenue),
            "last_reset_at": self.last_reset_at.isoformat() if self.last_reset_at else None,
            "initialized_at": self.initialized_at.isoformat() if self.initialized_at else None,
            "locked_volume_baselines": {k: str(v) for k, v in self.locked_volume_baselines.items()},
            "volume_totals": {k: str(v) for k, v in self.volume_totals.items()},
        }


# =============================================================================
# RESULTS
# =============================================================================

@dataclass(frozen=True)
class PriceQuote:
    """A spot price. ``stale`` is set when served from cache after a failed refresh."""
    pair: str
    price: Decimal
    fetched_at: datetime
    stale: bool = False
    source: str = "coingecko"

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.fetched_at).total_seconds()


@dataclass(frozen=True)
class ChainTransaction:
    """A swap transaction with its extracted volume."""
    signature: str
    block_time: int
    slot: Optional[int]
    volume_sol: Decimal


@dataclass
class FetchResult:
    """Outcome of one ``fetch_new_transactions`` call."""
    transactions: List[ChainTransaction]
    new_cursor: Optional[IngestionCursor]
    cursor_found: bool
    pages_fetched: int = 0
    parse_failures: int = 0


@dataclass
class IngestionReport:
    """Outcome of one ingestion pass."""
    transactions: int
    volume_sol: Decimal
    volume_usd: Decimal
    revenue_usd: Decimal
    cursor_found: bool
    cursor_reset: bool
    cursor: Optional[str]


@dataclass
class CycleResult:
    """Outcome of applying one snapshot cycle."""
    applied: bool
    cycle_at: Optional[datetime]
    holders: int = 0
    total_balance: Decimal = Decimal("0")


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    tier: Optional[str]
    percentage: Decimal


# =============================================================================
# PAYOUT PLAN
# =============================================================================

@dataclass(frozen=True)
class PayoutEntry:
    """One holder's line in a payout plan."""
    address: str
    credit: Decimal
    credit_share: Decimal
    amount_value: Decimal
    amount_converted: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "credit": str(self.credit),
            "credit_share": str(self.credit_share),
            "amount_value": str(self.amount_value),
            "amount_converted": self.amount_converted,
        }


@dataclass(frozen=True)
class PayoutPlan:
    """
    Point-in-time payout commitment.

    ``total_paid_value`` is what the ledger is debited on commit. The
    difference to ``pool_balance`` (``remainder_value``) stays in the pool.
    """
    distribution_id: str
    generated_at: datetime
    pair: str
    price: Decimal
    price_as_of: datetime
    pool_balance: Decimal
    total_credit: Decimal
    total_pool_converted: int
    total_converted: int
    total_paid_value: Decimal
    remainder_value: Decimal
    entries: Tuple[PayoutEntry, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "distribution_id": self.distribution_id,
            "generated_at": self.generated_at.isoformat(),
            "pair": self.pair,
            "price": str(self.price),
            "price_as_of": self.price_as_of.isoformat(),
            "pool_balance": str(self.pool_balance),
            "total_credit": str(self.total_credit),
            "total_pool_converted": self.total_pool_converted,
            "total_converted": self.total_converted,
            "total_paid_value": str(self.total_paid_value),
            "remainder_value": str(self.remainder_value),
            "entries": [e.to_dict() for e in self.entries],
        }


@dataclass(frozen=True)
class NothingToDistribute:
    """Defined no-op outcome: empty pool or no eligible credit."""
    reason: str
    pool_balance: Decimal = Decimal("0")
    total_credit: Decimal = Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nothing_to_distribute": True,
            "reason": self.reason,
            "pool_balance": str(self.pool_balance),
            "total_credit": str(self.total_credit),
        }


@dataclass
class ExecutionReport:
    """What the payout executor reports back for a plan."""
    success: bool
    entries: Dict[str, str] = field(default_factory=dict)
    tx_signatures: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class DistributionOutcome:
    """Result of ``DistributionService.execute``."""
    status: str
    plan: Optional[PayoutPlan] = None
    report: Optional[ExecutionReport] = None
    ledger: Optional[RevenueLedgerState] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "reason": self.reason,
            "plan": self.plan.to_dict() if self.plan else None,
            "tx_signatures": self.report.tx_signatures if self.report else [],
            "ledger": self.ledger.to_dict() if self.ledger else None,
        }
