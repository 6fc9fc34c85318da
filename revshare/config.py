"""
Revshare Configuration Loader - Single Source of Truth

Consolidates configuration for the revenue share engine:
- Environment variables (.env loaded without overriding real env)
- Typed dataclass sections with defaults
- Validation

Usage:
    from revshare.config import get_config

    config = get_config()
    mint = config.solana.token_mint
    cadence = config.snapshot.interval_seconds
"""

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import List, Optional, Type, TypeVar

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[1]
ENV_FILE = ROOT / ".env"

T = TypeVar("T")


def _get_env(key: str, default: T = None, cast: Type[T] = str) -> T:
    """Get environment variable with type casting."""
    value = os.environ.get(key)

    if value is None or value == "":
        return default

    if cast == bool:
        return value.lower() in ('true', '1', 'yes', 'on')

    if cast == int:
        try:
            return int(value)
        except ValueError:
            return default

    if cast == float:
        try:
            return float(value)
        except ValueError:
            return default

    if cast == Decimal:
        try:
            return Decimal(value)
        except InvalidOperation:
            return default

    if cast == list:
        return [v.strip() for v in value.split(',') if v.strip()]

    return value


@dataclass
class SolanaConfig:
    """Chain RPC and token configuration."""
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    helius_rpc_url: str = ""
    helius_api_key: str = ""
    token_mint: str = ""
    timeout_seconds: int = 30

    @property
    def effective_rpc_url(self) -> str:
        """Helius when configured, public RPC otherwise."""
        if self.helius_rpc_url:
            return self.helius_rpc_url
        if self.helius_api_key:
            return f"https://mainnet.helius-rpc.com/?api-key={self.helius_api_key}"
        return self.rpc_url

    @classmethod
    def from_env(cls) -> 'SolanaConfig':
        return cls(
            rpc_url=_get_env("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com"),
            helius_rpc_url=_get_env("HELIUS_RPC_URL", ""),
            helius_api_key=_get_env("HELIUS_API_KEY", ""),
            token_mint=_get_env("REVSHARE_TOKEN_MINT", ""),
            timeout_seconds=_get_env("RPC_TIMEOUT_SECONDS", 30, int),
        )


@dataclass
class IngestionConfig:
    """Chain transaction ingestion settings."""
    page_size: int = 100
    max_pages_warning: int = 50
    tx_delay_seconds: float = 0.05
    interval_seconds: int = 60

    @classmethod
    def from_env(cls) -> 'IngestionConfig':
        return cls(
            page_size=_get_env("INGEST_PAGE_SIZE", 100, int),
            max_pages_warning=_get_env("INGEST_MAX_PAGES_WARNING", 50, int),
            tx_delay_seconds=_get_env("INGEST_TX_DELAY_SECONDS", 0.05, float),
            interval_seconds=_get_env("INGEST_INTERVAL_SECONDS", 60, int),
        )


@dataclass
class SnapshotConfig:
    """Holder balance snapshot settings."""
    interval_seconds: int = 600
    page_size: int = 1000
    max_pages: int = 100
    token_decimals: int = 6
    excluded_wallets: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> 'SnapshotConfig':
        return cls(
            interval_seconds=_get_env("SNAPSHOT_INTERVAL_SECONDS", 600, int),
            page_size=_get_env("SNAPSHOT_PAGE_SIZE", 1000, int),
            max_pages=_get_env("SNAPSHOT_MAX_PAGES", 100, int),
            token_decimals=_get_env("TOKEN_DECIMALS", 6, int),
            excluded_wallets=_get_env("REVSHARE_EXCLUDED_WALLETS", [], list),
        )


@dataclass
class EligibilityConfig:
    """Holder eligibility gate."""
    min_balance: Decimal = Decimal("1")
    total_supply: Decimal = Decimal("1000000000")

    @classmethod
    def from_env(cls) -> 'EligibilityConfig':
        return cls(
            min_balance=_get_env("REVSHARE_MIN_BALANCE", Decimal("1"), Decimal),
            total_supply=_get_env("REVSHARE_TOTAL_SUPPLY", Decimal("1000000000"), Decimal),
        )


@dataclass
class RevenueConfig:
    """Fee rates and locked volume baselines."""
    dex_fee_rate: Decimal = Decimal("0.002")
    platform_fee_rate: Decimal = Decimal("0.004")
    dex_volume_baseline: Decimal = Decimal("0")
    platform_volume_baseline: Decimal = Decimal("0")

    @classmethod
    def from_env(cls) -> 'RevenueConfig':
        return cls(
            dex_fee_rate=_get_env("REVSHARE_DEX_FEE_RATE", Decimal("0.002"), Decimal),
            platform_fee_rate=_get_env("REVSHARE_PLATFORM_FEE_RATE", Decimal("0.004"), Decimal),
            dex_volume_baseline=_get_env("REVSHARE_DEX_VOLUME_BASELINE", Decimal("0"), Decimal),
            platform_volume_baseline=_get_env("REVSHARE_PLATFORM_VOLUME_BASELINE", Decimal("0"), Decimal),
        )


@dataclass
class PriceConfig:
    """Price oracle settings."""
    api_url: str = "https://api.coingecko.com/api/v3"
    payout_pair: str = "SOL/USD"
    cache_ttl_seconds: int = 30
    max_payout_age_seconds: int = 300
    timeout_seconds: int = 10

    @classmethod
    def from_env(cls) -> 'PriceConfig':
        return cls(
            api_url=_get_env("PRICE_API_URL", "https://api.coingecko.com/api/v3"),
            payout_pair=_get_env("REVSHARE_PAYOUT_PAIR", "SOL/USD"),
            cache_ttl_seconds=_get_env("PRICE_CACHE_TTL_SECONDS", 30, int),
            max_payout_age_seconds=_get_env("PRICE_MAX_PAYOUT_AGE_SECONDS", 300, int),
            timeout_seconds=_get_env("PRICE_TIMEOUT_SECONDS", 10, int),
        )


@dataclass
class RetrySettings:
    """Bounded retry budget for upstream calls."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_env(cls) -> 'RetrySettings':
        return cls(
            max_attempts=_get_env("RETRY_MAX_ATTEMPTS", 3, int),
            base_delay=_get_env("RETRY_BASE_DELAY", 1.0, float),
            max_delay=_get_env("RETRY_MAX_DELAY", 30.0, float),
        )


@dataclass
class StorageConfig:
    """State database location."""
    db_path: str = "~/.revshare/revshare.db"

    @property
    def resolved_path(self) -> str:
        if self.db_path == ":memory:":
            return self.db_path
        return str(Path(self.db_path).expanduser())

    @classmethod
    def from_env(cls) -> 'StorageConfig':
        return cls(db_path=_get_env("REVSHARE_DB_PATH", "~/.revshare/revshare.db"))


@dataclass
class OperatorConfig:
    """Operator control plane."""
    operator_key: str = ""
    api_host: str = "127.0.0.1"
    api_port: int = 8780

    @classmethod
    def from_env(cls) -> 'OperatorConfig':
        return cls(
            operator_key=_get_env("REVSHARE_OPERATOR_KEY", ""),
            api_host=_get_env("REVSHARE_API_HOST", "127.0.0.1"),
            api_port=_get_env("REVSHARE_API_PORT", 8780, int),
        )


@dataclass
class MonitoringConfig:
    """Logging configuration."""
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> 'MonitoringConfig':
        return cls(
            log_level=_get_env("LOG_LEVEL", "INFO"),
            log_dir=_get_env("LOG_DIR", "logs"),
            log_json=_get_env("LOG_JSON", True, bool),
        )


@dataclass
class RevshareConfig:
    """Complete revshare configuration."""
    solana: SolanaConfig = field(default_factory=SolanaConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    eligibility: EligibilityConfig = field(default_factory=EligibilityConfig)
    revenue: RevenueConfig = field(default_factory=RevenueConfig)
    price: PriceConfig = field(default_factory=PriceConfig)
    retry: RetrySettings = field(default_factory=RetrySettings)
    storage: StorageConfig = field(default_factory=StorageConfig)
    operator: OperatorConfig = field(default_factory=OperatorConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def load(cls, env_path: Optional[Path] = None) -> 'RevshareConfig':
        """Load configuration from environment (and .env if present)."""
        env_path = Path(_get_env("REVSHARE_ENV_FILE", str(env_path or ENV_FILE)))
        env_loaded = False
        if env_path.exists():
            # never overwrites variables already set in the process
            env_loaded = load_dotenv(env_path, override=False)

        config = cls(
            solana=SolanaConfig.from_env(),
            ingestion=IngestionConfig.from_env(),
            snapshot=SnapshotConfig.from_env(),
            eligibility=EligibilityConfig.from_env(),
            revenue=RevenueConfig.from_env(),
            price=PriceConfig.from_env(),
            retry=RetrySettings.from_env(),
            storage=StorageConfig.from_env(),
            operator=OperatorConfig.from_env(),
            monitoring=MonitoringConfig.from_env(),
        )
        logger.info(f"Configuration loaded (.env: {env_loaded})")
        return config

    def validate(self) -> List[str]:
        """Return a list of configuration problems (empty when valid)."""
        problems = []
        if not self.solana.token_mint:
            problems.append("REVSHARE_TOKEN_MINT is not set")
        if self.snapshot.interval_seconds <= 0:
            problems.append("SNAPSHOT_INTERVAL_SECONDS must be positive")
        if self.eligibility.min_balance < 0:
            problems.append("REVSHARE_MIN_BALANCE must not be negative")
        if self.eligibility.total_supply <= 0:
            problems.append("REVSHARE_TOTAL_SUPPLY must be positive")
        for name in ("dex_fee_rate", "platform_fee_rate"):
            rate = getattr(self.revenue, name)
            if rate < 0 or rate > 1:
                problems.append(f"{name} must be between 0 and 1")
        if "/" not in self.price.payout_pair:
            problems.append("REVSHARE_PAYOUT_PAIR must look like BASE/QUOTE")
        if self.retry.max_attempts < 1:
            problems.append("RETRY_MAX_ATTEMPTS must be at least 1")
        return problems

    def to_safe_dict(self) -> dict:
        """Summary without secrets, for status output."""
        return {
            "token_mint": self.solana.token_mint,
            "rpc": "helius" if (self.solana.helius_rpc_url or self.solana.helius_api_key) else "public",
            "snapshot_interval_seconds": self.snapshot.interval_seconds,
            "ingest_interval_seconds": self.ingestion.interval_seconds,
            "min_balance": str(self.eligibility.min_balance),
            "payout_pair": self.price.payout_pair,
            "max_payout_age_seconds": self.price.max_payout_age_seconds,
            "db_path": self.storage.resolved_path,
            "operator_gate": bool(self.operator.operator_key),
        }


_config: Optional[RevshareConfig] = None


def get_config(reload: bool = False) -> RevshareConfig:
    """Get the process-wide configuration, loading it on first use."""
    global _config
    if _config is None or reload:
        _config = RevshareConfig.load()
    return _config


def reset_config() -> None:
    """Drop the cached configuration (tests)."""
    global _config
    _config = None
