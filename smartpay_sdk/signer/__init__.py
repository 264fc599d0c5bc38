"""
Signing adapters for the SmartPay SDK.
"""
from ..models import SigningFamily
from .base import SigningAdapter, WalletCapability
from .account import AccountSigningAdapter
from .instruction import InstructionSigningAdapter
from .local import LocalEvmWallet, LocalSolanaWallet
from .events import WalletHub, WalletEvent

__all__ = [
    "SigningAdapter",
    "WalletCapability",
    "AccountSigningAdapter",
    "InstructionSigningAdapter",
    "LocalEvmWallet",
    "LocalSolanaWallet",
    "WalletHub",
    "WalletEvent",
    "adapter_for_family",
]


def adapter_for_family(family: SigningFamily, wallet: WalletCapability) -> SigningAdapter:
    """Wrap ``wallet`` in the adapter matching ``family``"""
    if family == SigningFamily.ACCOUNT:
        return AccountSigningAdapter(wallet)
    if family == SigningFamily.INSTRUCTION:
        return InstructionSigningAdapter(wallet)
    raise ValueError(f"Unknown signing family: {family}")
