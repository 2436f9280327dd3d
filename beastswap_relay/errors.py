"""
Error taxonomy for the payment relay.

Every failure the relay can report is a RelayError subclass carrying the
HTTP status it maps to and whether the client may retry the same request.
"""

from typing import Any, Optional


class RelayError(Exception):
    """Base class for all relay failures."""

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)


class ConfigurationError(RelayError):
    """Required configuration is missing or invalid. Aborts startup."""


# ============================================================================
# Request / verification
# ============================================================================


class ValidationError(RelayError):
    """Bad or missing input. User-correctable."""

    status_code = 400


class PaymentNotVerified(RelayError):
    """No matching inbound payment was found."""

    status_code = 400

    def __init__(self, message: str = "SOL payment not found", **context: Any):
        super().__init__(message, **context)


class PaymentAlreadyClaimed(PaymentNotVerified):
    """The matching inbound payment already paid for another disbursement."""

    def __init__(self, message: str = "SOL payment already claimed", **context: Any):
        super().__init__(message, **context)


class VerificationInfrastructureError(RelayError):
    """Chain queries failed while verifying. Safe for the client to retry."""

    status_code = 503
    retryable = True


# ============================================================================
# Disbursement
# ============================================================================


class DisbursementError(RelayError):
    """
    Outbound transfer failed.

    Never retried automatically by the client: a transfer may have been
    broadcast even though the request failed.
    """

    status_code = 500
    # False when the failure happened before any transaction was sent
    broadcast: bool = True

    def __init__(self, message: str, broadcast: Optional[bool] = None, **context: Any):
        super().__init__(message, **context)
        if broadcast is not None:
            self.broadcast = broadcast


class InsufficientFunds(DisbursementError):
    """Payout wallet cannot cover the transfer."""

    broadcast = False


class AccountResolutionFailed(DisbursementError):
    """Destination account could not be resolved or prepared."""

    broadcast = False


class SubmissionFailed(DisbursementError):
    """Transaction was rejected, failed on chain, or could not be sent."""


class DisbursementTimeout(DisbursementError):
    """Disbursement did not finish within the request deadline."""


class ConfirmationTimeout(DisbursementTimeout):
    """Transaction was sent but not confirmed at the requested commitment in time."""
