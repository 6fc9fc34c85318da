"""
Chain Transaction Ingestor

Walks a token mint's signature history backward from the chain head until it
meets the stored cursor, resolves each new signature to a parsed transaction,
extracts swap volume, and records the batch as DEX fee revenue.

Guarantees:
- Only transactions strictly newer than the cursor are returned.
- First run (no cursor) reads a single page as a baseline; no backfill.
- Cursor not found (pruned history): the reset is logged, counted and stored
  as a cursor event, and the pass continues as a first run: the head page is
  the new baseline and its volume is recorded. Volume in the gap between the
  lost cursor and that page is not counted.
- An empty signature page while a cursor is held is treated as a transient
  RPC gap: nothing is returned and the cursor stays put.
- Revenue for a batch and the cursor advance are written in one transaction.
- A page-level RPC failure aborts the pass with the cursor untouched.
"""

import asyncio
import logging
from dataclasses import replace
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

from . import metrics
from .config import IngestionConfig
from .ledger import RevenueLedger
from .logging_config import RunContext
from .models import ChainTransaction, FetchResult, IngestionCursor, IngestionReport, RevenueSource, utcnow
from .price_oracle import PriceOracle
from .solana_rpc import SolanaRpcClient
from .storage import CursorStore
from .volume import VolumeParseError, extract_swap_volume

logger = logging.getLogger(__name__)


class TransactionIngestor:
    """Incremental, resumable ingestion of swap volume for one mint."""

    def __init__(
        self,
        rpc: SolanaRpcClient,
        mint: str,
        store: CursorStore,
        ledger: RevenueLedger,
        price_oracle: PriceOracle,
        config: Optional[IngestionConfig] = None,
        price_pair: str = "SOL/USD",
        volume_extractor: Callable[[Dict[str, Any]], Decimal] = extract_swap_volume,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rpc = rpc
        self.mint = mint
        self.store = store
        self.ledger = ledger
        self.price_oracle = price_oracle
        self.config = config or IngestionConfig()
        self.price_pair = price_pair
        self.volume_extractor = volume_extractor
        self._sleep = sleep

    # =========================================================================
    # Fetch
    # =========================================================================

    async def _collect_signatures(self, cursor: Optional[IngestionCursor]):
        """Paginate backward until the cursor, history end, or (first run) one page."""
        collected: List[Dict[str, Any]] = []
        head: Optional[Dict[str, Any]] = None
        before: Optional[str] = None
        pages = 0
        found = False
        anomaly_logged = False

        while True:
            page = await self.rpc.get_signatures_for_address(
                self.mint, limit=self.config.page_size, before=before
            )
            pages += 1
            if not page:
                break
            if head is None:
                head = page[0]

            for entry in page:
                if cursor and entry.get("signature") == cursor.last_processed_signature:
                    found = True
                    break
                collected.append(entry)

            if found or cursor is None or len(page) < self.config.page_size:
                break

            if pages > self.config.max_pages_warning and not anomaly_logged:
                anomaly_logged = True
                metrics.pagination_anomalies_total().inc()
                logger.warning(
                    f"Pagination depth anomaly: {pages} pages walked without reaching cursor "
                    f"{cursor.last_processed_signature[:16]}..."
                )
            before = page[-1].get("signature")

        return collected, head, found, pages

    async def fetch_new_transactions(self, cursor: Optional[IngestionCursor]) -> FetchResult:
        """
        Transactions strictly newer than ``cursor``, newest first.

        ``cursor_found`` is False only when a cursor was supplied and the
        available history ran out before reaching it. The head page is then
        returned as a first-run baseline.
        """
        signatures, head, found, pages = await self._collect_signatures(cursor)
        cursor_found = cursor is None or found

        if head is None:
            if cursor is not None:
                logger.warning(
                    f"Empty signature page while holding cursor {cursor.last_processed_signature[:16]}...; "
                    f"keeping the cursor until the next pass"
                )
            return FetchResult(transactions=[], new_cursor=cursor, cursor_found=True, pages_fetched=pages)

        if cursor and head.get("signature") == cursor.last_processed_signature:
            new_cursor = cursor
        else:
            new_cursor = IngestionCursor(
                last_processed_signature=head["signature"],
                last_processed_timestamp=head.get("blockTime"),
                updated_at=utcnow(),
                reset_count=cursor.reset_count if cursor else 0,
            )

        if not cursor_found:
            metrics.cursor_not_found_total().inc()
            logger.warning(
                f"Cursor {cursor.last_processed_signature[:16]}... not found after {pages} pages; "
                f"resuming from head {new_cursor.last_processed_signature[:16]}... "
                f"(volume older than the head page is not counted)"
            )
            signatures = signatures[: self.config.page_size]

        transactions: List[ChainTransaction] = []
        parse_failures = 0
        for entry in signatures:
            signature = entry.get("signature")
            if not signature or entry.get("err") is not None or not entry.get("blockTime"):
                continue

            await self._sleep(self.config.tx_delay_seconds)
            tx = await self.rpc.get_parsed_transaction(signature)
            try:
                volume = self.volume_extractor(tx)
            except VolumeParseError as e:
                parse_failures += 1
                metrics.tx_parse_failures_total().inc()
                logger.warning(f"Skipping transaction {signature[:16]}...: {e}")
                continue

            if volume > 0:
                transactions.append(
                    ChainTransaction(
                        signature=signature,
                        block_time=entry["blockTime"],
                        slot=entry.get("slot"),
                        volume_sol=volume,
                    )
                )

        logger.info(
            f"Fetched {len(transactions)} swap transactions from {len(signatures)} new signatures "
            f"({pages} pages, {parse_failures} parse failures)"
        )
        return FetchResult(
            transactions=transactions,
            new_cursor=new_cursor,
            cursor_found=cursor_found,
            pages_fetched=pages,
            parse_failures=parse_failures,
        )

    # =========================================================================
    # Pass
    # =========================================================================

    async def run_pass(self) -> IngestionReport:
        """One ingestion pass: fetch, value, record revenue and advance the cursor atomically."""
        with RunContext(task_name="ingestion"):
            cursor = self.store.get_cursor()
            result = await self.fetch_new_transactions(cursor)
            cursor_reset = cursor is not None and not result.cursor_found

            volume_sol = sum((tx.volume_sol for tx in result.transactions), Decimal("0"))
            volume_usd = Decimal("0")
            if volume_sol > 0:
                quote = await self.price_oracle.get_display_price(self.price_pair)
                volume_usd = volume_sol * quote.price

            new_cursor = result.new_cursor
            if cursor_reset:
                new_cursor = replace(new_cursor, reset_count=cursor.reset_count + 1)

            revenue = Decimal("0")
            with self.store.transaction():
                if volume_usd > 0:
                    revenue = self.ledger.record_volume(
                        volume_usd,
                        RevenueSource.DEX,
                        reference=f"ingest:{new_cursor.last_processed_signature}",
                    )
                if cursor_reset:
                    self.store.record_cursor_event(
                        "cursor_not_found",
                        cursor.last_processed_signature,
                        new_cursor.last_processed_signature,
                        detail=f"{result.pages_fetched} pages walked",
                    )
                if new_cursor is not None and new_cursor != cursor:
                    self.store.save_cursor(new_cursor)

            if revenue > 0:
                self.ledger.publish()

            metrics.ingested_transactions_total().inc(len(result.transactions))
            return IngestionReport(
                transactions=len(result.transactions),
                volume_sol=volume_sol,
                volume_usd=volume_usd,
                revenue_usd=revenue,
                cursor_found=result.cursor_found,
                cursor_reset=cursor_reset,
                cursor=new_cursor.last_processed_signature if new_cursor else None,
            )
