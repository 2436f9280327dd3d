"""
BeastSwap Relay API - HTTP front for SOL payment verification and payouts.

Provides REST endpoints for:
- Paying out a verified SOL payment (POST /pay)
- Liveness (GET /health)
- Service status (GET /status)
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from . import __version__
from .config import Settings, get_settings, load_settings
from .errors import RelayError, ValidationError
from .log import configure_logging
from .models import ErrorResponse, PayResponse, StatusResponse
from .service import PaymentRelayService
from .validation import INVALID_SENDER_OR_AMOUNT

logger = structlog.get_logger()


def get_service(request: Request) -> PaymentRelayService:
    """Service instance created by the lifespan handler."""
    return request.app.state.service


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[PaymentRelayService] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Settings are loaded from the environment unless given; a missing or
    invalid setting raises ConfigurationError before the server starts.
    """
    if settings is None and service is None:
        settings = load_settings()

    if settings is not None:
        configure_logging(settings.log_level, settings.json_logs)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        relay = service or PaymentRelayService.from_settings(settings)
        app.state.service = relay

        logger.info(
            "API started",
            version=__version__,
            payout_address=str(relay.executor.signer.pubkey),
            receiving_address=relay.verifier.receiving_address,
            disbursement_mode=relay.executor.strategy.name,
            verification_mode=relay.verification_mode,
        )

        yield

        await relay.aclose()
        logger.info("API stopped")

    app = FastAPI(
        title="BeastSwap Relay",
        description="Verifies SOL payments and disburses the matching payout",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.message, context=exc.context)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    # ========================================================================
    # Health Check
    # ========================================================================

    @app.get("/health", response_class=PlainTextResponse)
    async def health_check() -> str:
        """Liveness probe."""
        return "OK"

    @app.get("/status", response_model=StatusResponse)
    async def status(relay: PaymentRelayService = Depends(get_service)) -> StatusResponse:
        """
        Check service status and RPC connectivity.

        Returns the wallets and modes the relay is running with.
        """
        return StatusResponse(**await relay.status())

    # ========================================================================
    # Pay
    # ========================================================================

    @app.post(
        "/pay",
        response_model=PayResponse,
        responses={
            400: {"model": ErrorResponse},
            500: {"model": ErrorResponse},
            503: {"model": ErrorResponse},
        },
    )
    async def pay(request: Request, relay: PaymentRelayService = Depends(get_service)) -> PayResponse:
        """
        Pay out a SOL payment.

        Body: {"sender": <base58 address>, "amount": <SOL>}. The payment must
        already be on chain; the payout is amount x exchange rate.
        """
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("Malformed JSON in request body") from None

        if not isinstance(body, dict):
            raise ValidationError(INVALID_SENDER_OR_AMOUNT)

        result = await relay.process(body.get("sender"), body.get("amount"))

        return PayResponse(
            transaction_id=result.transaction_id,
            amount_received=result.amount_disbursed,
        )

    return app


def run(host: Optional[str] = None, port: Optional[int] = None, reload: bool = False) -> None:
    """Run the API server. Unset options fall back to settings."""
    settings = get_settings()
    uvicorn.run(
        "beastswap_relay.main:create_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        reload=reload or settings.debug,
        log_config=None,
    )


if __name__ == "__main__":
    run()
