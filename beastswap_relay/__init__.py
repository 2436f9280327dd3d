"""
BeastSwap Relay

Accepts SOL payments for the BEAST MEME token: verifies that a buyer's SOL
transfer landed on the receiving wallet, then disburses the matching payout
from the payout wallet.

Usage:
    # Run the HTTP service
    beastswap-relay serve

    # Check whether a payment would verify (no disbursement)
    beastswap-relay check <sender> 0.5

    # Index inbound payments once (indexed verification mode)
    beastswap-relay sync
"""

__version__ = "0.1.0"

from .config import Settings, get_settings
from .disbursement import DisbursementExecutor, DisbursementResult
from .ledger import PaymentLedger
from .rpc import SolanaRPC, SolanaRPCConfig
from .service import PaymentRelayService
from .validation import DisbursementRequest, RequestValidator
from .verifier import InboundTransactionRecord, PaymentVerifier

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
    "DisbursementExecutor",
    "DisbursementResult",
    "PaymentLedger",
    "SolanaRPC",
    "SolanaRPCConfig",
    "PaymentRelayService",
    "DisbursementRequest",
    "RequestValidator",
    "InboundTransactionRecord",
    "PaymentVerifier",
]
