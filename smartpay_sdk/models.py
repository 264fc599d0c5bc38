"""
Data models for the SmartPay SDK.
"""
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional, List

from pydantic import BaseModel, Field, field_validator


class SigningFamily(str, Enum):
    """Signature scheme class used by a settlement network"""
    ACCOUNT = "account"
    INSTRUCTION = "instruction"


class PaymentContext(str, Enum):
    """What the payment is for"""
    MICRO = "micro"
    PREMIUM = "premium"
    AGENT = "agent"
    BOOKING = "booking"


class NetworkHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNKNOWN = "unknown"


class RoutingReason(str, Enum):
    COST_OPTIMAL = "cost_optimal"
    USER_PREFERENCE = "user_preference"
    FALLBACK = "fallback"
    CONTEXT_DEFAULT = "context_default"


class PaymentRequest(BaseModel):
    """A caller's request to pay for one call to a metered resource"""
    amount: int = Field(..., gt=0)
    context: PaymentContext
    payer_identity: str
    resource_url: str
    body: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=lambda: int(time.time()))
    nonce: str = Field(default_factory=lambda: uuid.uuid4().hex, min_length=1)
    preferred_network: Optional[str] = None
    privacy_requested: bool = False

    class Config:
        frozen = True


class FeeEstimate(BaseModel):
    """Point-in-time fee, latency and health reading for one network"""
    network_id: str
    estimated_fee: Optional[int] = None
    estimated_confirm_seconds: Optional[float] = None
    health: NetworkHealth = NetworkHealth.UNKNOWN
    observed_at: float = Field(default_factory=time.time)
    error: Optional[str] = None

    class Config:
        frozen = True

    def fee_ratio(self, amount: int) -> Optional[float]:
        """Fee as a fraction of ``amount``, or None if the fee is unknown"""
        if self.estimated_fee is None:
            return None
        return self.estimated_fee / amount


class RoutingDecision(BaseModel):
    """The network chosen for a request and why"""
    selected_network: str
    reason: RoutingReason
    chosen_estimate: FeeEstimate
    alternatives: List[FeeEstimate] = Field(default_factory=list)

    class Config:
        frozen = True


class Challenge(BaseModel):
    """One payment option offered by a server in a 402 response"""
    scheme: str = Field(..., min_length=1)
    network: str = Field(..., min_length=1)
    asset: str = Field(..., min_length=1)
    amount: str
    pay_to: str = Field(..., alias="payTo", min_length=1)
    timestamp: int
    nonce: str = Field(..., min_length=1)
    chain_id: Optional[int] = Field(None, alias="chainId")

    class Config:
        populate_by_name = True
        frozen = True

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_as_integer_string(cls, value: Any) -> str:
        if isinstance(value, bool):
            raise ValueError("amount must be an integer")
        if isinstance(value, int):
            value = str(value)
        if not isinstance(value, str) or not (value.isascii() and value.isdigit()):
            raise ValueError(f"amount must be a non-negative integer string, got: {value!r}")
        return value


class SignedAuthorization(Challenge):
    """A Challenge together with the payer's signature over its canonical message"""
    payer: str
    signature: str
    message: str
    privacy: Optional[Dict[str, str]] = None

    def to_wire(self) -> Dict[str, Any]:
        """Serialize using the server's field names; ``from`` repeats the payer for older servers"""
        wire = self.model_dump(by_alias=True, exclude_none=True)
        wire["from"] = self.payer
        return wire


class Session(BaseModel):
    """A time-boxed grant of access recorded after a verified payment"""
    authorization_hash: str
    payer_identity: str
    issued_at: float
    expires_at: float
    amount: int = 0
    network: Optional[str] = None
    transaction_hash: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now


@dataclass
class AttemptRecord:
    """One pass through the challenge/response flow"""
    network: str
    success: bool
    elapsed_seconds: float
    failure_reason: Optional[str] = None


@dataclass
class PaymentResult:
    """
    Outcome of ``PaymentRouter.route_and_pay``.

    ``error`` holds the exception raised by the final attempt, unmodified.
    """
    success: bool
    network: Optional[str] = None
    transaction_hash: Optional[str] = None
    fallback_used: bool = False
    error: Optional[Exception] = None
    data: Any = None
    decision: Optional[RoutingDecision] = None
    attempts: List[AttemptRecord] = field(default_factory=list)
    explorer_url: Optional[str] = None
    authorization_hash: Optional[str] = None

    @property
    def error_code(self) -> Optional[str]:
        code = getattr(self.error, "code", None)
        return code.value if code is not None else None
