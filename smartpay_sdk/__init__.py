"""
SmartPay SDK - multi-network payment negotiation for metered HTTP resources.

This package chooses a settlement network per payment, answers HTTP 402
payment challenges with a wallet signature, and records the resulting
access sessions.
"""
from .version import __version__
from .client import PaymentRouter
from .config import Network, NetworkConfig, NetworkRegistry, RouterSettings
from .exceptions import (
    PaymentError, PaymentErrorCode, NoWalletConnected, UnsupportedOperation,
    ChallengeMalformed, SigningRejected, SettlementRejected, NetworkDegraded,
    UserCancelled,
)
from .fees import FeeEstimator, FeeSource, EvmFeeSource, SolanaFeeSource
from .inflight import CancellationToken
from .ledger import SessionLedger
from .models import (
    PaymentRequest, PaymentContext, PaymentResult, FeeEstimate, NetworkHealth,
    RoutingDecision, RoutingReason, Challenge, SignedAuthorization, Session,
    SigningFamily, AttemptRecord,
)
from .protocol import ChallengeResponseClient, ProtocolState, canonical_message
from .routing import RoutingEngine
from .signer import (
    SigningAdapter, AccountSigningAdapter, InstructionSigningAdapter,
    LocalEvmWallet, LocalSolanaWallet, WalletHub, WalletEvent,
)

__all__ = [
    "__version__",
    "PaymentRouter",
    "Network",
    "NetworkConfig",
    "NetworkRegistry",
    "RouterSettings",
    "PaymentError",
    "PaymentErrorCode",
    "NoWalletConnected",
    "UnsupportedOperation",
    "ChallengeMalformed",
    "SigningRejected",
    "SettlementRejected",
    "NetworkDegraded",
    "UserCancelled",
    "FeeEstimator",
    "FeeSource",
    "EvmFeeSource",
    "SolanaFeeSource",
    "CancellationToken",
    "SessionLedger",
    "PaymentRequest",
    "PaymentContext",
    "PaymentResult",
    "FeeEstimate",
    "NetworkHealth",
    "RoutingDecision",
    "RoutingReason",
    "Challenge",
    "SignedAuthorization",
    "Session",
    "SigningFamily",
    "AttemptRecord",
    "ChallengeResponseClient",
    "ProtocolState",
    "canonical_message",
    "RoutingEngine",
    "SigningAdapter",
    "AccountSigningAdapter",
    "InstructionSigningAdapter",
    "LocalEvmWallet",
    "LocalSolanaWallet",
    "WalletHub",
    "WalletEvent",
]
