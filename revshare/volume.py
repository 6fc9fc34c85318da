"""
Swap volume extraction.

The volume of a transaction is approximated as the largest absolute change in
any account's SOL balance (``postBalances[i] - preBalances[i]``). This is a
heuristic proxy for "funds moved", not an instruction-level swap parse: fees,
rent, and multi-hop routes are not separated out. Replace
``extract_swap_volume`` to plug in a precise parser; nothing else depends on
how the number is produced.
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from .models import LAMPORTS_PER_SOL


class VolumeParseError(ValueError):
    """Transaction is missing the data needed to extract volume."""


def max_balance_delta(pre_balances, post_balances) -> int:
    """Largest absolute lamport delta across paired balances."""
    if len(pre_balances) != len(post_balances):
        raise VolumeParseError(
            f"Balance arrays differ in length ({len(pre_balances)} vs {len(post_balances)})"
        )
    largest = 0
    for pre, post in zip(pre_balances, post_balances):
        try:
            delta = abs(int(post) - int(pre))
        except (TypeError, ValueError) as e:
            raise VolumeParseError(f"Balance arrays are malformed: {e}") from e
        if delta > largest:
            largest = delta
    return largest


def extract_swap_volume(tx: Optional[Dict[str, Any]]) -> Decimal:
    """
    Swap volume of a parsed transaction, in SOL.

    Raises:
        VolumeParseError: the transaction has no usable balance metadata.
    """
    if not tx:
        raise VolumeParseError("Transaction not available")
    meta = tx.get("meta")
    if not isinstance(meta, dict):
        raise VolumeParseError("Transaction has no meta")
    pre = meta.get("preBalances")
    post = meta.get("postBalances")
    if not isinstance(pre, list) or not isinstance(post, list):
        raise VolumeParseError("Transaction has no balance arrays")
    lamports = max_balance_delta(pre, post)
    return Decimal(lamports) / Decimal(LAMPORTS_PER_SOL)
