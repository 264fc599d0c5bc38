"""
Pytest fixtures for the SmartPay SDK tests.
"""
import pytest

from smartpay_sdk._rate_limited_log import reset_rate_limits
from smartpay_sdk.config import NetworkConfig
from smartpay_sdk.ledger import SessionLedger
from smartpay_sdk.signer import (
    AccountSigningAdapter, InstructionSigningAdapter, LocalEvmWallet, LocalSolanaWallet, WalletHub,
)

from test_helpers import TEST_PRIV_KEY, TEST_SOLANA_SEED, make_registry


@pytest.fixture(autouse=True)
def _reset_module_state():
    """Class-level config cache and rate-limit state must not leak between tests"""
    NetworkConfig._networks_cache = None
    reset_rate_limits()
    yield
    NetworkConfig._networks_cache = None
    reset_rate_limits()


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def evm_wallet():
    """Deterministic EVM wallet"""
    return LocalEvmWallet(TEST_PRIV_KEY)


@pytest.fixture
def solana_wallet():
    """Deterministic Solana wallet"""
    return LocalSolanaWallet.from_seed(TEST_SOLANA_SEED)


@pytest.fixture
def evm_adapter(evm_wallet):
    return AccountSigningAdapter(evm_wallet)


@pytest.fixture
def solana_adapter(solana_wallet):
    return InstructionSigningAdapter(solana_wallet)


@pytest.fixture
def wallet_hub(evm_adapter, solana_adapter):
    """Hub with both signing families connected"""
    return WalletHub([evm_adapter, solana_adapter])


@pytest.fixture
def ledger(tmp_path):
    """Ledger backed by a temporary file"""
    store = SessionLedger(str(tmp_path / "sessions.json"))
    yield store
    store.close()
