"""
Exceptions for the SmartPay SDK.
"""
from enum import Enum
from typing import Optional


class PaymentErrorCode(str, Enum):
    """
    Stable error codes callers can map to user-facing messages.
    """
    NO_WALLET_CONNECTED = "NO_WALLET_CONNECTED"
    UNSUPPORTED_OPERATION = "UNSUPPORTED_OPERATION"
    CHALLENGE_MALFORMED = "CHALLENGE_MALFORMED"
    SIGNING_REJECTED = "SIGNING_REJECTED"
    SETTLEMENT_REJECTED = "SETTLEMENT_REJECTED"
    NETWORK_DEGRADED = "NETWORK_DEGRADED"
    USER_CANCELLED = "USER_CANCELLED"


class PaymentError(Exception):
    """Base exception for payment negotiation errors."""
    code: PaymentErrorCode = PaymentErrorCode.SETTLEMENT_REJECTED

    def __init__(self, message: str, network: Optional[str] = None):
        self.network = network
        super().__init__(message)


class NoWalletConnected(PaymentError):
    """Raised when no usable wallet is available for a signing family."""
    code = PaymentErrorCode.NO_WALLET_CONNECTED


class UnsupportedOperation(PaymentError):
    """Raised when a requested capability (e.g. private settlement) is unavailable."""
    code = PaymentErrorCode.UNSUPPORTED_OPERATION


class ChallengeMalformed(PaymentError):
    """Raised when the server's 402 challenge contains no usable scheme."""
    code = PaymentErrorCode.CHALLENGE_MALFORMED


class SigningRejected(PaymentError):
    """Raised when the wallet declines or fails to sign."""
    code = PaymentErrorCode.SIGNING_REJECTED


class SettlementRejected(PaymentError):
    """Raised when the paid resource server does not accept the request."""
    code = PaymentErrorCode.SETTLEMENT_REJECTED

    def __init__(
        self,
        message: str,
        network: Optional[str] = None,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None
    ):
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(message, network=network)


class NetworkDegraded(PaymentError):
    """Raised when degraded health eliminates every routing option."""
    code = PaymentErrorCode.NETWORK_DEGRADED


class UserCancelled(PaymentError):
    """Raised when the user dismisses the payment while it is in flight."""
    code = PaymentErrorCode.USER_CANCELLED
