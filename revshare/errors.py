"""Custom exception hierarchy for the revenue share engine.

Conditions the engine treats as normal outcomes (cursor not found, nothing to
distribute, a stale display price) are returned as values, not raised.
"""
from decimal import Decimal
from typing import Any, Dict, Optional


class RevshareError(Exception):
    """Base exception for all revshare errors."""
    code: str = "SYS_001"
    status_code: int = 500

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigurationError(RevshareError):
    """Configuration error."""
    code = "CFG_001"
    status_code = 500


class ProviderError(RevshareError):
    """External provider/service error (transient)."""
    code = "PROV_001"
    status_code = 503

    def __init__(self, message: str, provider: str = None):
        super().__init__(message, {"provider": provider})
        self.provider = provider


class RpcError(ProviderError):
    """Chain RPC call failed."""
    code = "RPC_001"

    def __init__(self, message: str, method: str = None):
        super().__init__(message, provider="solana-rpc")
        self.method = method
        self.details["method"] = method


class RpcRateLimitError(RpcError):
    """RPC provider answered 429."""
    code = "RPC_429"
    status_code = 429

    def __init__(self, retry_after: Optional[int] = None, method: str = None):
        message = f"Rate limited. Retry after {retry_after}s" if retry_after else "Rate limited"
        super().__init__(message, method=method)
        self.retry_after = retry_after
        self.details["retry_after"] = retry_after


class PriceUnavailableError(ProviderError):
    """No price could be fetched and nothing is cached."""
    code = "PRICE_001"

    def __init__(self, pair: str, reason: str = ""):
        super().__init__(f"No price available for {pair}: {reason}".rstrip(": "), provider="price-oracle")
        self.pair = pair
        self.details["pair"] = pair


class StalePriceError(RevshareError):
    """Best available price is older than the payout staleness window."""
    code = "PRICE_002"
    status_code = 409

    def __init__(self, pair: str, age_seconds: float, max_age_seconds: float):
        super().__init__(
            f"Price for {pair} is {age_seconds:.0f}s old (max {max_age_seconds:.0f}s)",
            {"pair": pair, "age_seconds": age_seconds, "max_age_seconds": max_age_seconds},
        )
        self.pair = pair
        self.age_seconds = age_seconds
        self.max_age_seconds = max_age_seconds


class PlanExceedsPoolError(RevshareError):
    """A payout would drive the pool negative."""
    code = "LEDGER_001"
    status_code = 409

    def __init__(self, amount_paid: Decimal, pool_balance: Decimal):
        super().__init__(
            f"Payout {amount_paid} exceeds pool balance {pool_balance}",
            {"amount_paid": str(amount_paid), "pool_balance": str(pool_balance)},
        )
        self.amount_paid = amount_paid
        self.pool_balance = pool_balance


class PlanAlreadyCommittedError(RevshareError):
    """A payout plan was committed to the ledger once already."""
    code = "LEDGER_002"
    status_code = 409

    def __init__(self, distribution_id: str):
        super().__init__(f"Plan {distribution_id} already committed", {"distribution_id": distribution_id})
        self.distribution_id = distribution_id


class PlanNotFoundError(RevshareError):
    """Payout plan id is unknown."""
    code = "LEDGER_003"
    status_code = 404


class StateCorruptionError(RevshareError):
    """Persisted state failed a consistency check. Needs an operator."""
    code = "DB_002"
    status_code = 500


class TaskAlreadyRunningError(RevshareError):
    """A periodic task was triggered while its previous run is still active."""
    code = "TASK_001"
    status_code = 409


class RetryExhaustedError(RevshareError):
    """Bounded retry budget spent without success."""
    code = "RETRY_001"
    status_code = 503

    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}",
            {"operation": operation, "attempts": attempts},
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
