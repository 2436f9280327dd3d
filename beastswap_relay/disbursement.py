"""
Payout execution - builds, signs, submits and confirms the payout transaction.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence

import httpx
import structlog
from solders.instruction import Instruction
from solders.pubkey import Pubkey

from .amounts import payout_amount
from .errors import (
    AccountResolutionFailed,
    ConfirmationTimeout,
    InsufficientFunds,
    SubmissionFailed,
)
from .rpc import SolanaRPC, SolanaRPCError
from .signer import PayoutSigner
from .strategies import DisbursementStrategy

logger = structlog.get_logger()

COMMITMENT_LEVELS = {"processed": 0, "confirmed": 1, "finalized": 2}

# Send failures where the node never accepted the transaction
RETRYABLE_SEND_ERRORS = (SolanaRPCError, httpx.ConnectError, httpx.ConnectTimeout)


@dataclass
class DisbursementResult:
    """Result of a confirmed payout."""

    transaction_id: str
    amount_disbursed: int  # Payout base units (lamports or token units)
    destination: str
    strategy: str


def is_insufficient_funds(error: SolanaRPCError) -> bool:
    """Check whether a preflight failure was caused by the payer's balance."""
    text = f"{error.message} {error.data}".lower()
    return "insufficient funds" in text or "insufficient lamports" in text


class DisbursementExecutor:
    """
    Pays out `sol_amount * exchange_rate` to a buyer.

    One payout at a time per signer: the signer's lock is held from the
    balance check until the transaction is confirmed.
    """

    def __init__(
        self,
        rpc: SolanaRPC,
        signer: PayoutSigner,
        strategy: DisbursementStrategy,
        exchange_rate: int,
        commitment: str = "confirmed",
        max_retries: int = 3,
        retry_delay: float = 0.5,
        confirm_timeout: float = 60.0,
        poll_interval: float = 0.5,
    ):
        if commitment not in COMMITMENT_LEVELS:
            raise ValueError(f"Unknown commitment level: {commitment}")
        self.rpc = rpc
        self.signer = signer
        self.strategy = strategy
        self.exchange_rate = exchange_rate
        self.commitment = commitment
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval

    async def disburse(self, sender: str, sol_amount: Decimal) -> DisbursementResult:
        """
        Pay the buyer for a verified SOL payment.

        Raises:
            InsufficientFunds, AccountResolutionFailed, SubmissionFailed,
            ConfirmationTimeout
        """
        amount = payout_amount(sol_amount, self.exchange_rate)

        try:
            recipient = Pubkey.from_string(sender)
        except Exception as e:
            raise AccountResolutionFailed("Invalid recipient address") from e

        async with self.signer.exclusive():
            plan = await self.strategy.plan(recipient, amount)
            await self.strategy.ensure_funds(amount)

            signature = await self._submit(plan.instructions)

            logger.info(
                "payout_tx_sent",
                signature=signature,
                recipient=sender,
                destination=str(plan.destination),
                amount=amount,
                strategy=self.strategy.name,
                creates_account=plan.creates_account,
            )

            await self._await_confirmation(signature)

        logger.info(
            "payout_tx_confirmed",
            signature=signature,
            recipient=sender,
            amount=amount,
            commitment=self.commitment,
        )

        return DisbursementResult(
            transaction_id=signature,
            amount_disbursed=amount,
            destination=str(plan.destination),
            strategy=self.strategy.name,
        )

    async def _submit(self, instructions: Sequence[Instruction]) -> str:
        """
        Sign with a fresh blockhash and send, retrying transient failures.

        Only failures where the node did not accept the transaction are
        retried; anything ambiguous (e.g. a read timeout after sending) is
        raised at once since the transaction may already be in flight.
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                blockhash = await self.rpc.get_latest_blockhash(commitment=self.commitment)
            except (SolanaRPCError, httpx.HTTPError) as e:
                last_error = e
            else:
                tx = self.signer.sign_transaction(instructions, blockhash)
                try:
                    return await self.rpc.send_transaction(bytes(tx), preflight_commitment=self.commitment)
                except SolanaRPCError as e:
                    if is_insufficient_funds(e):
                        raise InsufficientFunds("Payout wallet has insufficient funds") from e
                    last_error = e
                except RETRYABLE_SEND_ERRORS as e:
                    last_error = e
                except httpx.HTTPError as e:
                    logger.error("payout_send_ambiguous", signature=str(tx.signatures[0]), error=str(e))
                    raise SubmissionFailed(
                        "Payout submission outcome unknown",
                        signature=str(tx.signatures[0]),
                    ) from e

            logger.warning(
                "payout_send_retry",
                attempt=attempt,
                max_retries=self.max_retries,
                error=str(last_error),
            )
            if attempt < self.max_retries and self.retry_delay:
                await asyncio.sleep(self.retry_delay)

        raise SubmissionFailed(
            f"Payout submission failed after {self.max_retries} attempts",
            broadcast=False,
        ) from last_error

    async def _await_confirmation(self, signature: str) -> None:
        """
        Poll the signature status until it reaches the configured commitment.

        Raises:
            SubmissionFailed: the transaction failed on chain
            ConfirmationTimeout: not confirmed within confirm_timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirm_timeout
        target = COMMITMENT_LEVELS[self.commitment]

        while True:
            try:
                statuses = await self.rpc.get_signature_statuses([signature])
            except (SolanaRPCError, httpx.HTTPError) as e:
                # Keep polling; the transaction is already in flight.
                logger.warning("payout_status_poll_failed", signature=signature, error=str(e))
                statuses = [None]

            status = statuses[0] if statuses else None
            if status is not None:
                if status.get("err") is not None:
                    logger.error("payout_tx_failed", signature=signature, error=status["err"])
                    raise SubmissionFailed(
                        "Payout transaction failed on chain",
                        signature=signature,
                        chain_error=status["err"],
                    )
                level = COMMITMENT_LEVELS.get(status.get("confirmationStatus") or "processed", 0)
                if level >= target:
                    return

            if loop.time() >= deadline:
                logger.error(
                    "payout_confirmation_timeout",
                    signature=signature,
                    commitment=self.commitment,
                    timeout=self.confirm_timeout,
                )
                raise ConfirmationTimeout(
                    f"Payout transaction {signature} not {self.commitment} within {self.confirm_timeout:g}s",
                    signature=signature,
                )

            await asyncio.sleep(self.poll_interval)
