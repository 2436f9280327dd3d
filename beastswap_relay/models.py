"""
Pydantic models for API requests and responses.
"""

from pydantic import BaseModel, Field


# ============================================================================
# Pay
# ============================================================================

class PayResponse(BaseModel):
    """Successful payout."""

    message: str = Field("Payment successful", description="Outcome message")
    transaction_id: str = Field(
        ...,
        serialization_alias="transactionId",
        description="Payout transaction signature (base58)",
    )
    amount_received: int = Field(
        ...,
        serialization_alias="amountReceived",
        description="Payout amount in base units (SOL amount x exchange rate)",
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "message": "Payment successful",
                    "transactionId": "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnbJLgp8uirBgmQpjKhoR4tjF3ZpRzrFmBV6UjKdiSZkQUW",
                    "amountReceived": 50000000,
                }
            ]
        }
    }


class ErrorResponse(BaseModel):
    """Error body for every non-2xx /pay response."""

    error: str = Field(..., description="User-facing error message")


# ============================================================================
# Status
# ============================================================================

class StatusResponse(BaseModel):
    """Service status and configuration summary."""

    status: str = Field(..., description="ok or degraded")
    version: str = Field(..., description="Relay version")
    rpc: bool = Field(..., description="Solana RPC reachable")
    payout_address: str = Field(..., description="Payout wallet address")
    receiving_address: str = Field(..., description="Wallet buyers pay into")
    disbursement_mode: str = Field(..., description="native or token")
    verification_mode: str = Field(..., description="window or indexed")
    commitment: str = Field(..., description="Commitment level for reads and confirmation")
