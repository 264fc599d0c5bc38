"""
In-process wallets backed by local private keys.

These satisfy ``WalletCapability`` for headless agents, scripts and tests.
Browser or hardware wallets are supplied by the hosting application instead.
"""
import logging
from typing import Optional

import base58
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from eth_account import Account
from eth_account.messages import encode_defunct

logger = logging.getLogger(__name__)


class LocalEvmWallet:
    """EVM wallet holding a secp256k1 private key"""

    def __init__(self, private_key: str):
        """
        Args:
            private_key: Hex private key, with or without 0x prefix
        """
        self._account = Account.from_key(private_key)
        self._connected = True

    @classmethod
    def generate(cls) -> "LocalEvmWallet":
        account = Account.create()
        return cls(account.key.hex())

    def sign(self, message: bytes) -> bytes:
        signable = encode_defunct(text=message.decode("utf-8"))
        signed = self._account.sign_message(signable)
        return bytes(signed.signature)

    def public_identity(self) -> str:
        return self._account.address

    def connected(self) -> bool:
        return self._connected

    def disconnect(self) -> None:
        self._connected = False

    def reconnect(self) -> None:
        self._connected = True


class LocalSolanaWallet:
    """Solana wallet holding an ed25519 private key"""

    def __init__(self, private_key: Optional[Ed25519PrivateKey] = None):
        self._private_key = private_key or Ed25519PrivateKey.generate()
        public_bytes = self._private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        self._address = base58.b58encode(public_bytes).decode("ascii")
        self._connected = True
        logger.debug("Loaded Solana wallet %s…", self._address[:6])

    @classmethod
    def from_seed(cls, seed: bytes) -> "LocalSolanaWallet":
        """Build from a 32-byte ed25519 seed"""
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def from_base58(cls, secret_key: str) -> "LocalSolanaWallet":
        """
        Build from a base58 secret key as exported by Solana wallets.

        Accepts the 64-byte keypair form (seed followed by public key) or
        a bare 32-byte seed.

        Raises:
            ValueError: If the decoded key has an unexpected length
        """
        raw = base58.b58decode(secret_key)
        if len(raw) not in (32, 64):
            raise ValueError(f"Solana secret key must be 32 or 64 bytes, got {len(raw)}")
        return cls.from_seed(raw[:32])

    def sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message)

    def public_identity(self) -> str:
        return self._address

    def connected(self) -> bool:
        return self._connected

    def disconnect(self) -> None:
        self._connected = False

    def reconnect(self) -> None:
        self._connected = True
