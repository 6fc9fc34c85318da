"""
Holder eligibility and tiers.

Eligibility is a pure function of (current balance, total supply). The
minimum balance and the tier table are configuration; tiers are reported
for display and do not weight payouts.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Optional, Sequence, Tuple

from .models import Eligibility


@dataclass(frozen=True)
class Tier:
    name: str
    min_balance: Decimal


DEFAULT_TIERS: Tuple[Tier, ...] = (
    Tier("BRONZE", Decimal("1")),
    Tier("SILVER", Decimal("100000")),
    Tier("GOLD", Decimal("500000")),
    Tier("DIAMOND", Decimal("1000000")),
    Tier("ELITE", Decimal("2000000")),
    Tier("LEGEND", Decimal("5000000")),
    Tier("MASTER", Decimal("10000000")),
    Tier("WHALE", Decimal("20000000")),
)


class EligibilityRule:
    """Minimum-balance gate plus tier lookup."""

    def __init__(self, min_balance: Decimal = Decimal("1"), tiers: Sequence[Tier] = DEFAULT_TIERS):
        if min_balance < 0:
            raise ValueError("min_balance must not be negative")
        self.min_balance = Decimal(min_balance)
        self.tiers = tuple(sorted(tiers, key=lambda t: t.min_balance))

    @classmethod
    def from_config(cls, config) -> "EligibilityRule":
        return cls(min_balance=config.min_balance)

    def tier_for(self, balance: Decimal) -> Optional[str]:
        tier = None
        for candidate in self.tiers:
            if balance >= candidate.min_balance:
                tier = candidate.name
        return tier

    def evaluate(self, balance: Decimal, total_supply: Decimal) -> Eligibility:
        balance = Decimal(balance)
        percentage = (balance / Decimal(total_supply) * 100) if total_supply else Decimal("0")
        if balance < self.min_balance or balance <= 0:
            return Eligibility(eligible=False, tier=None, percentage=percentage)
        return Eligibility(eligible=True, tier=self.tier_for(balance), percentage=percentage)

    def tier_breakdown(self, balances: Iterable[Decimal], total_supply: Decimal) -> Dict[str, int]:
        """Count of eligible holders per tier."""
        counts = {tier.name: 0 for tier in self.tiers}
        for balance in balances:
            result = self.evaluate(balance, total_supply)
            if result.eligible and result.tier:
                counts[result.tier] += 1
        return counts
