"""
Payment relay service - orchestrates one /pay request end to end.

    RECEIVED -> VALIDATED -> VERIFIED -> DISBURSED -> COMPLETED
        validation / verification failures -> REJECTED
        disbursement failures              -> FAILED

The disbursement runs in its own task shielded from the caller: once a payout
may be broadcast, a request timeout or client disconnect never cancels it.
"""

import asyncio
from enum import Enum
from typing import Any, Optional

import structlog
from solders.pubkey import Pubkey

from . import __version__
from .amounts import payout_amount
from .config import Settings
from .disbursement import DisbursementExecutor, DisbursementResult
from .errors import (
    ConfigurationError,
    DisbursementError,
    DisbursementTimeout,
    PaymentAlreadyClaimed,
    PaymentNotVerified,
    SubmissionFailed,
    ValidationError,
    VerificationInfrastructureError,
)
from .indexer import InboundIndexer
from .ledger import PaymentLedger
from .rpc import SolanaRPC, SolanaRPCConfig
from .signer import PayoutSigner
from .strategies import DisbursementStrategy, NativeTransferStrategy, TokenTransferStrategy
from .validation import DisbursementRequest, RequestValidator
from .verifier import (
    CHAIN_QUERY_ERRORS,
    InboundTransactionRecord,
    IndexedPaymentVerifier,
    PaymentVerifier,
    WindowPaymentVerifier,
)

logger = structlog.get_logger()


class RequestState(str, Enum):
    """Lifecycle of a /pay request."""

    RECEIVED = "received"
    VALIDATED = "validated"
    VERIFIED = "verified"
    DISBURSED = "disbursed"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"


class PaymentRelayService:
    """Validates, verifies and pays out buyer requests."""

    def __init__(
        self,
        rpc: SolanaRPC,
        validator: RequestValidator,
        verifier: PaymentVerifier,
        executor: DisbursementExecutor,
        ledger: Optional[PaymentLedger] = None,
        indexer: Optional[InboundIndexer] = None,
        request_timeout: float = 90.0,
    ):
        self.rpc = rpc
        self.validator = validator
        self.verifier = verifier
        self.executor = executor
        self.ledger = ledger
        self.indexer = indexer
        self.request_timeout = request_timeout
        self._inflight: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "PaymentRelayService":
        """
        Build the service and its chain, wallet and storage clients.

        Raises:
            ConfigurationError: if the payout key is invalid
        """
        signer = PayoutSigner.from_secret(settings.payout_secret_key.get_secret_value())
        ledger = PaymentLedger(settings.database_url) if settings.ledger_enabled else None

        rpc = SolanaRPC(
            SolanaRPCConfig(
                url=settings.solana_rpc_url,
                timeout=settings.rpc_timeout_seconds,
                commitment=settings.commitment,
            )
        )

        strategy: DisbursementStrategy
        if settings.disbursement_mode == "token":
            strategy = TokenTransferStrategy(
                rpc,
                signer,
                mint=Pubkey.from_string(settings.token_mint),
                decimals=settings.token_decimals,
                commitment=settings.commitment,
            )
        else:
            strategy = NativeTransferStrategy(
                rpc,
                signer,
                commitment=settings.commitment,
                fee_reserve_lamports=settings.fee_reserve_lamports,
            )

        executor = DisbursementExecutor(
            rpc,
            signer,
            strategy,
            exchange_rate=settings.exchange_rate,
            commitment=settings.commitment,
            max_retries=settings.submit_max_retries,
            retry_delay=settings.submit_retry_delay_seconds,
            confirm_timeout=settings.confirm_timeout_seconds,
            poll_interval=settings.confirm_poll_interval_seconds,
        )

        indexer = None
        if ledger is not None:
            indexer = InboundIndexer(
                rpc,
                ledger,
                settings.receiving_address,
                max_pages=settings.indexer_max_pages,
                commitment=settings.commitment,
            )

        verifier: PaymentVerifier
        if settings.verification_mode == "indexed":
            verifier = IndexedPaymentVerifier(indexer, ledger, tolerance=settings.payment_tolerance_sol)
        else:
            verifier = WindowPaymentVerifier(
                rpc,
                settings.receiving_address,
                lookback=settings.verification_lookback,
                tolerance=settings.payment_tolerance_sol,
                commitment=settings.commitment,
                ledger=ledger,
            )

        return cls(
            rpc=rpc,
            validator=RequestValidator(settings.min_purchase_sol, settings.exchange_rate),
            verifier=verifier,
            executor=executor,
            ledger=ledger,
            indexer=indexer,
            request_timeout=settings.request_timeout_seconds,
        )

    @property
    def verification_mode(self) -> str:
        return "indexed" if isinstance(self.verifier, IndexedPaymentVerifier) else "window"

    @property
    def inflight(self) -> int:
        """Number of disbursements still running."""
        return len(self._inflight)

    # ========================================================================
    # /pay
    # ========================================================================

    async def process(self, raw_sender: Any, raw_amount: Any) -> DisbursementResult:
        """
        Handle one payout request.

        Raises:
            ValidationError, PaymentNotVerified, PaymentAlreadyClaimed,
            VerificationInfrastructureError, DisbursementError
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.request_timeout
        log = logger.bind(sender=raw_sender if isinstance(raw_sender, str) else None)
        log.info("pay_request", state=RequestState.RECEIVED.value, amount=str(raw_amount))

        try:
            request = self.validator.validate(raw_sender, raw_amount)
        except ValidationError as e:
            log.info("pay_request", state=RequestState.REJECTED.value, reason=e.message)
            raise
        log.info("pay_request", state=RequestState.VALIDATED.value, amount=str(request.amount))

        record = await self._verify(request, deadline, log)

        if self.ledger is not None and not self.ledger.claim(record):
            # A concurrent request claimed this record after we verified it.
            # Verify once more: an older unconsumed match may still exist.
            log.info("payment_claim_lost", payment=record.signature)
            record = await self._verify(request, deadline, log)
            if not self.ledger.claim(record):
                log.info("pay_request", state=RequestState.REJECTED.value, reason="payment already claimed")
                raise PaymentAlreadyClaimed(sender=request.sender, signature=record.signature)

        task = asyncio.create_task(self._disburse(request, record))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

        try:
            result = await asyncio.wait_for(asyncio.shield(task), timeout=max(deadline - loop.time(), 0))
        except asyncio.TimeoutError:
            task.add_done_callback(self._log_detached)
            log.error(
                "pay_request",
                state=RequestState.FAILED.value,
                reason="request deadline reached during disbursement",
                payment=record.signature,
            )
            raise DisbursementTimeout(
                "Payout is still being processed; do not resubmit this payment",
                payment=record.signature,
            ) from None
        except asyncio.CancelledError:
            task.add_done_callback(self._log_detached)
            log.warning("pay_request_abandoned", payment=record.signature)
            raise

        log.info(
            "pay_request",
            state=RequestState.COMPLETED.value,
            payment=record.signature,
            transaction_id=result.transaction_id,
        )
        return result

    async def _verify(
        self, request: DisbursementRequest, deadline: float, log: Any
    ) -> InboundTransactionRecord:
        loop = asyncio.get_running_loop()
        try:
            record = await asyncio.wait_for(
                self.verifier.verify_payment(request.sender, request.amount),
                timeout=max(deadline - loop.time(), 0),
            )
        except asyncio.TimeoutError:
            log.warning("pay_request", state=RequestState.REJECTED.value, reason="verification timed out")
            raise VerificationInfrastructureError("Payment verification timed out") from None
        except (PaymentNotVerified, VerificationInfrastructureError) as e:
            log.info("pay_request", state=RequestState.REJECTED.value, reason=e.message)
            raise
        log.info("pay_request", state=RequestState.VERIFIED.value, payment=record.signature)
        return record

    async def _disburse(self, request: DisbursementRequest, record: InboundTransactionRecord) -> DisbursementResult:
        """Run the payout and record its outcome against the claimed payment."""
        try:
            result = await self.executor.disburse(request.sender, request.amount)
        except DisbursementError as e:
            self._settle_failure(request, record, e)
            raise
        except Exception as e:
            error = SubmissionFailed("Unexpected disbursement failure", error=repr(e))
            self._settle_failure(request, record, error)
            raise error from e

        if self.ledger is not None:
            self.ledger.mark_disbursed(record.signature, result.transaction_id, result.amount_disbursed)

        logger.info(
            "pay_request",
            state=RequestState.DISBURSED.value,
            sender=request.sender,
            payment=record.signature,
            transaction_id=result.transaction_id,
            amount=result.amount_disbursed,
            strategy=result.strategy,
        )
        return result

    def _settle_failure(
        self,
        request: DisbursementRequest,
        record: InboundTransactionRecord,
        error: DisbursementError,
    ) -> None:
        logger.error(
            "pay_request",
            state=RequestState.FAILED.value,
            sender=request.sender,
            payment=record.signature,
            amount=payout_amount(request.amount, self.executor.exchange_rate),
            strategy=self.executor.strategy.name,
            error=error.message,
            error_type=type(error).__name__,
            cause=repr(error.__cause__) if error.__cause__ else None,
            broadcast=error.broadcast,
        )
        if self.ledger is None:
            return
        if error.broadcast:
            # A payout may exist on chain: keep the payment consumed for review.
            self.ledger.mark_failed(record.signature, payout_tx=error.context.get("signature"))
        else:
            self.ledger.release(record.signature)

    def _log_detached(self, task: asyncio.Task) -> None:
        """Report the outcome of a disbursement whose caller is gone."""
        if task.cancelled():
            logger.error("detached_disbursement_cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error("detached_disbursement_failed", error=str(error), error_type=type(error).__name__)
            return
        result = task.result()
        logger.info(
            "detached_disbursement_completed",
            transaction_id=result.transaction_id,
            amount=result.amount_disbursed,
            destination=result.destination,
        )

    # ========================================================================
    # Operator helpers
    # ========================================================================

    async def check(self, raw_sender: Any, raw_amount: Any) -> InboundTransactionRecord:
        """
        Validate and verify without paying out or claiming the payment.

        Raises:
            ValidationError, PaymentNotVerified, VerificationInfrastructureError
        """
        request = self.validator.validate(raw_sender, raw_amount)
        return await self.verifier.verify_payment(request.sender, request.amount)

    async def sync(self) -> int:
        """Run one indexer pass. Returns the number of new inbound payments."""
        if self.indexer is None:
            raise ConfigurationError("Indexing requires LEDGER_ENABLED=true")
        try:
            return await self.indexer.sync()
        except CHAIN_QUERY_ERRORS + (ValueError,) as e:
            raise VerificationInfrastructureError(f"Indexing failed: {e}") from e

    async def status(self) -> dict[str, Any]:
        """Service and RPC status for the /status endpoint."""
        rpc_ok = await self.rpc.check_connectivity()
        return {
            "status": "ok" if rpc_ok else "degraded",
            "version": __version__,
            "rpc": rpc_ok,
            "payout_address": str(self.executor.signer.pubkey),
            "receiving_address": self.verifier.receiving_address,
            "disbursement_mode": self.executor.strategy.name,
            "verification_mode": self.verification_mode,
            "commitment": self.executor.commitment,
        }

    async def aclose(self) -> None:
        """Wait for in-flight disbursements, then release clients."""
        if self._inflight:
            logger.info("waiting_for_disbursements", count=len(self._inflight))
            await asyncio.gather(*self._inflight, return_exceptions=True)
        await self.rpc.close()
        if self.ledger is not None:
            self.ledger.close()
