"""Test doubles shared across the suite."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from revshare.models import HolderSnapshot, align_to_cycle


START = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeRpc:
    """
    In-memory stand-in for SolanaRpcClient.

    ``signatures`` is the mint's history, newest first. ``transactions`` maps
    signature -> parsed transaction. ``holder_pages`` is a list of
    token-account pages for getTokenAccounts.
    """

    def __init__(self):
        self.signatures: List[Dict[str, Any]] = []
        self.transactions: Dict[str, Optional[Dict[str, Any]]] = {}
        self.holder_pages: List[List[Dict[str, Any]]] = []
        self.signature_calls: List[Optional[str]] = []
        self.fetched: List[str] = []
        self.tx_error: Optional[Exception] = None

    def add_swap(self, signature: str, lamports: int, block_time: int = 1_700_000_000, err=None):
        """Prepend a newer transaction moving ``lamports``."""
        self.signatures.insert(0, {"signature": signature, "blockTime": block_time, "slot": 1, "err": err})
        self.transactions[signature] = {
            "meta": {"preBalances": [lamports, 0], "postBalances": [0, lamports]}
        }

    async def get_signatures_for_address(self, address: str, limit: int = 100, before: Optional[str] = None):
        self.signature_calls.append(before)
        start = 0
        if before is not None:
            start = next(i for i, s in enumerate(self.signatures) if s["signature"] == before) + 1
        return self.signatures[start:start + limit]

    async def get_parsed_transaction(self, signature: str):
        if self.tx_error:
            raise self.tx_error
        self.fetched.append(signature)
        return self.transactions.get(signature)

    async def get_token_accounts(self, mint: str, page: int = 1, limit: int = 1000):
        if page > len(self.holder_pages):
            return {"token_accounts": []}
        return {"token_accounts": self.holder_pages[page - 1]}

    async def close(self):
        pass


def snapshots_at(cycle_at: datetime, balances: Dict[str, Any]) -> List[HolderSnapshot]:
    return [
        HolderSnapshot(address=a, balance=Decimal(str(b)), observed_at=cycle_at, cycle_at=cycle_at)
        for a, b in balances.items()
    ]


def cycle(n: int, interval: int = 600) -> datetime:
    """Boundary of the n-th cycle after START."""
    return align_to_cycle(START + timedelta(seconds=n * interval), interval)
