"""
Solana JSON-RPC client (Helius or public RPC).

Supports:
- Signature history for an address (``getSignaturesForAddress``)
- Parsed transaction details (``getParsedTransaction``)
- DAS token account listing (``getTokenAccounts``, Helius only)

Every call has a bounded timeout and goes through ``retry_async``; a 429
carries ``Retry-After`` into the backoff.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import ConfigurationError, RpcError, RpcRateLimitError
from .retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


class SolanaRpcClient:
    """Async JSON-RPC client with bounded retry."""

    def __init__(
        self,
        rpc_url: str,
        timeout: int = 30,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        if not rpc_url:
            raise ConfigurationError("Solana RPC URL is required")
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._session: Optional[aiohttp.ClientSession] = None
        self._request_id = 0

        # Rate limiting: fallback Retry-After when the server sends none
        self._rate_limit_backoff = 0

    @classmethod
    def from_config(cls, solana_config, retry_settings=None) -> "SolanaRpcClient":
        return cls(
            rpc_url=solana_config.effective_rpc_url,
            timeout=solana_config.timeout_seconds,
            retry_policy=RetryPolicy.from_settings(retry_settings) if retry_settings else None,
        )

    # =========================================================================
    # Session Management
    # =========================================================================

    async def connect(self) -> None:
        """Create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "SolanaRpcClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # Rate Limiting
    # =========================================================================

    def _rate_limit_delay(self, method: str, retry_after: Optional[str]) -> int:
        """Seconds to wait after a 429: the server's Retry-After, else 5s doubling up to 60s."""
        if self._rate_limit_backoff == 0:
            self._rate_limit_backoff = 5
        else:
            self._rate_limit_backoff = min(self._rate_limit_backoff * 2, 60)
        if retry_after and retry_after.isdigit():
            delay = int(retry_after)
        else:
            delay = self._rate_limit_backoff
        logger.warning(f"RPC rate limit hit on {method}, retry after {delay}s")
        return delay

    # =========================================================================
    # JSON-RPC
    # =========================================================================

    async def _post(self, method: str, params: Any) -> Any:
        """One JSON-RPC round trip. Raises RpcError on any transport or protocol failure."""
        await self.connect()
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        try:
            async with self._session.post(self.rpc_url, json=payload) as resp:
                if resp.status == 429:
                    delay = self._rate_limit_delay(method, resp.headers.get("Retry-After"))
                    raise RpcRateLimitError(retry_after=delay, method=method)
                if resp.status in (401, 403):
                    raise ConfigurationError(
                        f"RPC rejected credentials for {method} (HTTP {resp.status})"
                    )
                if resp.status != 200:
                    raise RpcError(f"{method} returned HTTP {resp.status}", method=method)
                data = await resp.json(content_type=None)
                self._rate_limit_backoff = 0
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RpcError(f"{method} transport error: {e!r}", method=method) from e
        except json.JSONDecodeError as e:
            raise RpcError(f"{method} returned invalid JSON", method=method) from e

        if not isinstance(data, dict):
            raise RpcError(f"{method} returned a malformed response", method=method)
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise RpcError(f"{method} failed: {message}", method=method)
        return data.get("result")

    async def call(self, method: str, params: Any) -> Any:
        """JSON-RPC call with bounded retry."""
        return await retry_async(
            lambda: self._post(method, params), self.retry_policy, name=f"rpc:{method}"
        )

    # =========================================================================
    # Methods
    # =========================================================================

    async def get_signatures_for_address(
        self, address: str, limit: int = 100, before: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Newest-first signature page for ``address``."""
        options: Dict[str, Any] = {"limit": limit}
        if before:
            options["before"] = before
        result = await self.call("getSignaturesForAddress", [address, options])
        return result or []

    async def get_parsed_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """Parsed transaction, or None when the node does not have it."""
        return await self.call(
            "getParsedTransaction",
            [signature, {"maxSupportedTransactionVersion": 0, "commitment": "confirmed"}],
        )

    async def get_token_accounts(self, mint: str, page: int = 1, limit: int = 1000) -> Dict[str, Any]:
        """One page of token accounts for ``mint`` (Helius DAS)."""
        result = await self.call("getTokenAccounts", {"mint": mint, "page": page, "limit": limit})
        return result or {}
