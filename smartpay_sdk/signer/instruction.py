"""
Instruction-style signing for Solana networks.
"""
import base64

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from ..models import SigningFamily
from .base import SigningAdapter


def decode_pubkey(address: str) -> Pubkey:
    """
    Decode a base58 Solana address.

    Raises:
        ValueError: If the address is not a 32-byte base58 string
    """
    raw = base58.b58decode(address)
    if len(raw) != 32:
        raise ValueError(f"Solana address must decode to 32 bytes, got {len(raw)}")
    return Pubkey(raw)


class InstructionSigningAdapter(SigningAdapter):
    """
    Signs canonical messages with an ed25519 wallet and builds transfers.

    ``build_transfer`` serves the direct value-transfer paths (score
    submission, escrow) in addition to payment challenges.
    """

    family = SigningFamily.INSTRUCTION

    def encode_signature(self, signature: bytes) -> str:
        return base64.b64encode(signature).decode("ascii")

    def verify(self, canonical_message: bytes, signature: bytes) -> bool:
        public_key = Ed25519PublicKey.from_public_bytes(base58.b58decode(self.identity()))
        try:
            public_key.verify(signature, canonical_message)
        except InvalidSignature:
            return False
        return True

    def build_transfer(self, to: str, amount: int) -> Instruction:
        """
        Build a system-program transfer from the wallet to ``to``.

        Args:
            to: Recipient base58 address
            amount: Lamports to transfer

        Returns:
            Unsigned transfer instruction

        Raises:
            NoWalletConnected: If the wallet is not connected
            ValueError: If the amount or an address is invalid
        """
        if amount <= 0:
            raise ValueError(f"Transfer amount must be positive, got {amount}")
        from_pubkey = decode_pubkey(self.identity())
        to_pubkey = decode_pubkey(to)
        self.logger.debug(f"Building transfer of {amount} lamports to {to[:8]}…")
        return transfer(TransferParams(from_pubkey=from_pubkey, to_pubkey=to_pubkey, lamports=amount))
