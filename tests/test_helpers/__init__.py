"""
Shared builders for SmartPay SDK tests.
"""
from .fakes import (
    FakeFeeSource, FakeWallet, BlockingWallet, FakePrivacyProvider,
    make_registry, make_estimator, challenge_option, install_paywall,
    TEST_PRIV_KEY, TEST_SOLANA_SEED, TEST_RESOURCE_URL, TEST_PAY_TO_EVM, TEST_PAY_TO_SOLANA,
)

__all__ = [
    "FakeFeeSource",
    "FakeWallet",
    "BlockingWallet",
    "FakePrivacyProvider",
    "make_registry",
    "make_estimator",
    "challenge_option",
    "install_paywall",
    "TEST_PRIV_KEY",
    "TEST_SOLANA_SEED",
    "TEST_RESOURCE_URL",
    "TEST_PAY_TO_EVM",
    "TEST_PAY_TO_SOLANA",
]
