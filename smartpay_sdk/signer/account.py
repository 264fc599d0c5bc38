"""
Account-style signing for EVM networks (EIP-191 personal messages).
"""
from eth_account import Account
from eth_account.messages import encode_defunct

from ..models import SigningFamily
from .base import SigningAdapter


class AccountSigningAdapter(SigningAdapter):
    """
    Signs canonical messages through an EVM wallet.

    The adapter holds nothing but the wallet reference; every call goes
    straight to the wallet.
    """

    family = SigningFamily.ACCOUNT

    def encode_signature(self, signature: bytes) -> str:
        return "0x" + signature.hex()

    def verify(self, canonical_message: bytes, signature: bytes) -> bool:
        """Recover the signer address and compare it with the wallet's"""
        signable = encode_defunct(primitive=canonical_message)
        try:
            recovered = Account.recover_message(signable, signature=signature)
        except Exception as e:
            self.logger.debug(f"Signature recovery failed: {e}")
            return False
        return recovered.lower() == self.identity().lower()
