"""
Inbound SOL payment verification.

A payment is genuine when a transaction on the receiving wallet was signed by
the claimed sender and its first instruction moved the claimed amount of SOL
(within a tolerance) into the receiving wallet.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

import httpx
import structlog

from .amounts import lamports_to_sol
from .errors import PaymentAlreadyClaimed, PaymentNotVerified, VerificationInfrastructureError
from .rpc import SolanaRPC, SolanaRPCError

if TYPE_CHECKING:
    from .indexer import InboundIndexer
    from .ledger import PaymentLedger

logger = structlog.get_logger()

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
SYSTEM_TRANSFER_TYPES = ("transfer", "transferWithSeed")

# Errors that mean "could not ask the chain", as opposed to "no payment"
CHAIN_QUERY_ERRORS = (SolanaRPCError, httpx.HTTPError)


@dataclass
class InboundTransactionRecord:
    """Read-only view of a transaction on the receiving wallet."""

    signature: str
    sender: str  # First account key (fee payer)
    lamports: Optional[int]  # Credited by the first instruction, None if not a SOL transfer in
    confirmation_status: Optional[str] = None
    slot: Optional[int] = None
    block_time: Optional[int] = None

    @property
    def amount_sol(self) -> Optional[Decimal]:
        if self.lamports is None:
            return None
        return lamports_to_sol(self.lamports)

    def matches(self, amount: Decimal, tolerance: Decimal) -> bool:
        """True if this record paid `amount` SOL, within `tolerance` (exclusive)."""
        received = self.amount_sol
        return received is not None and abs(received - amount) < tolerance


def parse_inbound_transaction(
    signature: str,
    tx: dict[str, Any],
    receiving_address: str,
    confirmation_status: Optional[str] = None,
) -> InboundTransactionRecord:
    """
    Parse a jsonParsed getTransaction result.

    Only the first instruction is inspected for the amount, and only when it
    is a system transfer into `receiving_address` of a transaction that
    did not fail.

    Raises:
        ValueError: if the transaction payload is malformed
    """
    try:
        message = tx["transaction"]["message"]
        account_keys = message["accountKeys"]
        instructions = message["instructions"]
        first_key = account_keys[0]
    except (KeyError, IndexError, TypeError) as e:
        raise ValueError(f"Malformed transaction {signature}: {e!r}") from e

    sender = first_key["pubkey"] if isinstance(first_key, dict) else first_key

    lamports: Optional[int] = None
    meta = tx.get("meta") or {}
    if instructions and meta.get("err") is None:
        first = instructions[0]
        parsed = first.get("parsed")
        if (
            first.get("programId") == SYSTEM_PROGRAM_ID
            and isinstance(parsed, dict)
            and parsed.get("type") in SYSTEM_TRANSFER_TYPES
        ):
            info = parsed.get("info") or {}
            if info.get("destination") == receiving_address:
                try:
                    lamports = int(info["lamports"])
                except (KeyError, TypeError, ValueError) as e:
                    raise ValueError(f"Malformed transfer in {signature}: {e!r}") from e

    return InboundTransactionRecord(
        signature=signature,
        sender=sender,
        lamports=lamports,
        confirmation_status=confirmation_status,
        slot=tx.get("slot"),
        block_time=tx.get("blockTime"),
    )


class PaymentVerifier:
    """
    Base verifier: matches candidate records against a claimed payment.

    Subclasses supply the candidate records.
    """

    def __init__(
        self,
        receiving_address: str,
        tolerance: Decimal = Decimal("0.01"),
        ledger: Optional["PaymentLedger"] = None,
    ):
        self.receiving_address = receiving_address
        self.tolerance = tolerance
        self.ledger = ledger

    def _records(self, sender: str) -> AsyncIterator[InboundTransactionRecord]:
        raise NotImplementedError

    async def verify_payment(self, sender: str, amount: Decimal) -> InboundTransactionRecord:
        """
        Find the inbound payment matching sender and amount.

        Returns:
            The newest matching, unconsumed record

        Raises:
            PaymentNotVerified: no such payment (PaymentAlreadyClaimed if the
                only matches were already paid out)
            VerificationInfrastructureError: chain queries failed
        """
        sender_seen = False
        claimed = False

        async for record in self._records(sender):
            if record.sender != sender:
                continue
            sender_seen = True
            if not record.matches(amount, self.tolerance):
                continue
            if self.ledger is not None and self.ledger.is_consumed(record.signature):
                claimed = True
                continue

            logger.info(
                "payment_verified",
                sender=sender,
                amount=str(amount),
                signature=record.signature,
                lamports=record.lamports,
            )
            return record

        logger.info(
            "payment_not_verified",
            sender=sender,
            amount=str(amount),
            sender_seen=sender_seen,
            claimed=claimed,
        )
        if claimed:
            raise PaymentAlreadyClaimed(sender=sender)
        if sender_seen:
            raise PaymentNotVerified("SOL payment amount does not match", sender=sender)
        raise PaymentNotVerified(sender=sender)

    async def find_payment(self, sender: str, amount: Decimal) -> Optional[InboundTransactionRecord]:
        """Like verify_payment, but None when no payment matches."""
        try:
            return await self.verify_payment(sender, amount)
        except PaymentNotVerified:
            return None

    async def verify(self, sender: str, amount: Decimal) -> bool:
        """True if a matching payment exists. Infrastructure errors still raise."""
        return await self.find_payment(sender, amount) is not None


class WindowPaymentVerifier(PaymentVerifier):
    """
    Scans the last `lookback` signatures of the receiving wallet.

    Payments older than the window are not found.
    """

    def __init__(
        self,
        rpc: SolanaRPC,
        receiving_address: str,
        lookback: int = 10,
        tolerance: Decimal = Decimal("0.01"),
        commitment: str = "confirmed",
        ledger: Optional["PaymentLedger"] = None,
    ):
        super().__init__(receiving_address, tolerance, ledger)
        self.rpc = rpc
        self.lookback = lookback
        self.commitment = commitment

    async def _records(self, sender: str) -> AsyncIterator[InboundTransactionRecord]:
        try:
            entries = await self.rpc.get_signatures_for_address(
                self.receiving_address,
                limit=self.lookback,
                commitment=self.commitment,
            )
        except CHAIN_QUERY_ERRORS as e:
            logger.error("signature_fetch_failed", address=self.receiving_address, error=str(e))
            raise VerificationInfrastructureError("Failed to fetch recent payments") from e

        if not isinstance(entries, list):
            raise VerificationInfrastructureError("Malformed signature list from RPC")

        for entry in entries[: self.lookback]:
            if not isinstance(entry, dict):
                raise VerificationInfrastructureError("Malformed signature list from RPC")
            if entry.get("err") is not None:
                continue

            signature = entry.get("signature")
            if not signature:
                raise VerificationInfrastructureError("Malformed signature list from RPC")

            try:
                tx = await self.rpc.get_transaction(signature, commitment=self.commitment)
            except CHAIN_QUERY_ERRORS as e:
                logger.error("transaction_fetch_failed", signature=signature, error=str(e))
                raise VerificationInfrastructureError("Failed to fetch payment transaction") from e

            if tx is None:
                continue

            try:
                yield parse_inbound_transaction(
                    signature,
                    tx,
                    self.receiving_address,
                    confirmation_status=entry.get("confirmationStatus"),
                )
            except ValueError as e:
                logger.error("transaction_malformed", signature=signature, error=str(e))
                raise VerificationInfrastructureError("Malformed transaction from RPC") from e


class IndexedPaymentVerifier(PaymentVerifier):
    """
    Matches against the ledger's index of inbound payments.

    Brings the index up to date first, so there is no lookback window.
    """

    def __init__(
        self,
        indexer: "InboundIndexer",
        ledger: "PaymentLedger",
        tolerance: Decimal = Decimal("0.01"),
    ):
        super().__init__(indexer.address, tolerance, ledger)
        self.indexer = indexer
        self.index = ledger

    async def _records(self, sender: str) -> AsyncIterator[InboundTransactionRecord]:
        try:
            await self.indexer.sync()
        except CHAIN_QUERY_ERRORS + (ValueError,) as e:
            logger.error("index_sync_failed", address=self.receiving_address, error=str(e))
            raise VerificationInfrastructureError("Failed to index recent payments") from e

        for record in self.index.find_inbound(sender):
            yield record
