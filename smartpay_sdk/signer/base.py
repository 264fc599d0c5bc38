"""
Base signing abstractions.

A signing adapter wraps a wallet capability supplied by the hosting
application. The wallet is checked when the adapter is built so that an
object lacking the capability fails immediately, not halfway through a
payment.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional, Protocol, runtime_checkable

from ..exceptions import PaymentError, NoWalletConnected, SigningRejected
from ..models import SigningFamily


@runtime_checkable
class WalletCapability(Protocol):
    """Protocol for wallets supplied by the hosting application"""

    def sign(self, message: bytes) -> bytes:
        """Sign raw message bytes and return the raw signature"""
        ...

    def public_identity(self) -> str:
        """Return the wallet's public address"""
        ...

    def connected(self) -> bool:
        """Return True while the wallet can sign"""
        ...


class SigningAdapter(ABC):
    """
    Common contract for every signing family.

    Subclasses only decide how a raw signature is rendered on the wire and
    how it can be checked locally.
    """

    family: SigningFamily

    def __init__(self, wallet: WalletCapability, logger: Optional[logging.Logger] = None):
        """
        Args:
            wallet: Wallet capability to delegate signing to
            logger: Optional logger instance

        Raises:
            NoWalletConnected: If ``wallet`` does not provide the wallet capability
        """
        if wallet is None or not isinstance(wallet, WalletCapability):
            raise NoWalletConnected(
                f"{type(wallet).__name__} does not provide sign/public_identity/connected; "
                f"cannot build a {self.family.value}-style signer"
            )
        self._wallet = wallet
        self.logger = logger or logging.getLogger(__name__)

    @property
    def wallet(self) -> WalletCapability:
        return self._wallet

    def is_ready(self) -> bool:
        """True if the wrapped wallet is connected"""
        try:
            return bool(self._wallet.connected())
        except Exception as e:
            self.logger.warning(f"Wallet connection check failed: {e}")
            return False

    def identity(self) -> str:
        """
        Public identity of the wallet.

        Raises:
            NoWalletConnected: If the wallet is not connected
        """
        self._require_ready()
        return self._wallet.public_identity()

    def sign(self, canonical_message: bytes) -> bytes:
        """
        Sign a canonical message.

        Args:
            canonical_message: Exact bytes to sign

        Returns:
            Raw signature bytes

        Raises:
            NoWalletConnected: If the wallet is not connected
            SigningRejected: If the wallet declines or fails
            UserCancelled: If the wallet reports the user dismissed the prompt
        """
        self._require_ready()
        try:
            signature = self._wallet.sign(canonical_message)
        except PaymentError:
            raise
        except Exception as e:
            self.logger.error(f"Wallet signing failed: {e}")
            raise SigningRejected(f"Wallet failed to sign: {e}") from e

        if not signature:
            raise SigningRejected("Wallet returned an empty signature")
        return bytes(signature)

    @abstractmethod
    def encode_signature(self, signature: bytes) -> str:
        """Render a raw signature for the payment header"""

    @abstractmethod
    def verify(self, canonical_message: bytes, signature: bytes) -> bool:
        """Check a signature against this adapter's identity"""

    def _require_ready(self) -> None:
        if not self.is_ready():
            raise NoWalletConnected(f"{self.family.value}-style wallet is not connected")
