"""
Revshare - revenue accumulation and time-weighted distribution engine.

Accrues protocol fee revenue into a pool, accumulates balance x time credit
for token holders on a fixed snapshot cadence, and turns the pool into
immutable per-holder payout plans for an external executor.
"""

from .config import RevshareConfig, get_config
from .errors import RevshareError
from .service import RevshareEngine

__version__ = "0.1.0"

__all__ = ["RevshareConfig", "RevshareEngine", "RevshareError", "get_config", "__version__"]
