"""
Indexes inbound payments to the receiving wallet into the ledger.

Each sync resumes from the stored watermark (the newest signature already
indexed), so verification does not depend on a fixed lookback window.
"""

from typing import Any, Optional

import structlog

from .ledger import PaymentLedger
from .rpc import SolanaRPC
from .verifier import InboundTransactionRecord, parse_inbound_transaction

logger = structlog.get_logger()


class InboundIndexer:
    """Pages through the receiving wallet's signature history since the watermark."""

    def __init__(
        self,
        rpc: SolanaRPC,
        ledger: PaymentLedger,
        address: str,
        page_size: int = 100,
        max_pages: int = 10,
        commitment: str = "confirmed",
    ):
        self.rpc = rpc
        self.ledger = ledger
        self.address = address
        self.page_size = page_size
        self.max_pages = max_pages
        self.commitment = commitment

    async def _new_signatures(
        self, watermark: Optional[str], before: Optional[str] = None
    ) -> tuple[list[dict[str, Any]], bool]:
        """
        Fetch signatures newer than the watermark, newest first.

        Returns the entries and whether paging reached the watermark (or the
        start of history). Paging starts below `before` when it is given.
        """
        entries: list[dict[str, Any]] = []
        cursor = before
        seen_cursors: set[str] = set()

        for _ in range(self.max_pages):
            page = await self.rpc.get_signatures_for_address(
                self.address,
                limit=self.page_size,
                before=cursor,
                until=watermark,
                commitment=self.commitment,
            )
            if not page:
                return entries, True
            if not isinstance(page, list):
                raise ValueError(f"Malformed signature page: {page!r}")

            entries.extend(page)

            # Shorter page means we reached the watermark (or the start of history).
            if len(page) < self.page_size:
                return entries, True

            last_signature = page[-1].get("signature") if isinstance(page[-1], dict) else None
            if not last_signature:
                raise ValueError(f"Malformed signature entry: {page[-1]!r}")
            # Guard against accidental cursor loops from upstream responses.
            if last_signature in seen_cursors:
                logger.warning("signature_cursor_loop", address=self.address, cursor=last_signature)
                return entries, False
            seen_cursors.add(last_signature)
            cursor = last_signature

        logger.warning(
            "index_history_truncated",
            address=self.address,
            max_pages=self.max_pages,
            indexed=len(entries),
        )
        return entries, False

    async def sync(self) -> int:
        """
        Index new inbound payments.

        Signatures are processed oldest first and the watermark only advances
        past transactions that were fetched and stored. A transaction the node
        cannot return yet stops the pass; the next sync resumes from it.

        When a pass runs out of pages before reaching the watermark, the gap
        below the oldest fetched page is recorded as a backfill. Later passes
        page down through the gap first and only then move the watermark to
        the newest signature seen when the gap opened.

        Returns:
            Number of newly stored payments
        """
        watermark = self.ledger.get_watermark(self.address)
        backfill = self.ledger.get_backfill(self.address)
        before, head = backfill if backfill else (None, None)

        entries, complete = await self._new_signatures(watermark, before=before)
        if not entries:
            if head is not None:
                self.ledger.set_watermark(self.address, head)
            return 0

        records: list[InboundTransactionRecord] = []
        indexed_through: Optional[str] = None
        stalled = False

        for entry in reversed(entries):
            signature = entry.get("signature") if isinstance(entry, dict) else None
            if not signature:
                raise ValueError(f"Malformed signature entry: {entry!r}")

            if entry.get("err") is None:
                tx = await self.rpc.get_transaction(signature, commitment=self.commitment)
                if tx is None:
                    logger.warning("transaction_not_available", signature=signature)
                    stalled = True
                    break
                records.append(
                    parse_inbound_transaction(
                        signature,
                        tx,
                        self.address,
                        confirmation_status=entry.get("confirmationStatus"),
                    )
                )
            indexed_through = signature

        stored = self.ledger.store_inbound(records)
        newest = head or entries[0]["signature"]

        if not complete:
            # A stalled pass leaves the state alone and retries the same range.
            if not stalled:
                self.ledger.save_scan_state(
                    self.address,
                    watermark,
                    backfill_before=entries[-1]["signature"],
                    backfill_head=newest,
                )
                logger.warning(
                    "index_backfill_pending",
                    address=self.address,
                    before=entries[-1]["signature"],
                    head=newest,
                )
        elif not stalled:
            self.ledger.set_watermark(self.address, newest)
        elif indexed_through:
            # Everything below the stall is stored; page down from the top again.
            self.ledger.set_watermark(self.address, indexed_through)

        logger.info(
            "index_synced",
            address=self.address,
            signatures=len(entries),
            stored=stored,
            complete=complete,
            watermark=self.ledger.get_watermark(self.address),
        )
        return stored
