#!/usr/bin/env python3
"""
Simple example of using the SmartPay SDK.
"""
import logging
import os

from smartpay_sdk import (
    AccountSigningAdapter, InstructionSigningAdapter, LocalEvmWallet, LocalSolanaWallet,
    PaymentContext, PaymentRequest, PaymentRouter, WalletEvent, WalletHub,
)


def main():
    """
    Demonstrate basic usage of the PaymentRouter.

    This example shows how to:
    1. Connect wallets for both signing families
    2. Pay for a call to a 402-protected endpoint
    3. Check the resulting access session
    """
    logging.basicConfig(level=logging.INFO)

    # Read configuration from environment
    RESOURCE_URL = os.environ.get("RESOURCE_URL", "http://localhost:8000/api/analyze")
    EVM_PRIVATE_KEY = os.environ.get("EVM_PRIVATE_KEY")
    SOLANA_SECRET_KEY = os.environ.get("SOLANA_SECRET_KEY")

    if not EVM_PRIVATE_KEY and not SOLANA_SECRET_KEY:
        print("ERROR: set EVM_PRIVATE_KEY and/or SOLANA_SECRET_KEY")
        return

    wallets = WalletHub()
    wallets.on(WalletEvent.CHANGE, lambda event, family, adapter: print(f"Wallet change: {family.value}"))
    if EVM_PRIVATE_KEY:
        wallets.attach(AccountSigningAdapter(LocalEvmWallet(EVM_PRIVATE_KEY)))
    if SOLANA_SECRET_KEY:
        wallets.attach(InstructionSigningAdapter(LocalSolanaWallet.from_base58(SOLANA_SECRET_KEY)))

    router = PaymentRouter.from_config(wallets=wallets)
    try:
        request = PaymentRequest(
            amount=50_000,  # 0.05 USDC
            context=PaymentContext.PREMIUM,
            payer_identity="example-user",
            resource_url=RESOURCE_URL,
            body={"symbol": "SOL-USDC", "depth": 20},
        )
        result = router.route_and_pay(request)

        if not result.success:
            print(f"Payment failed ({result.error_code}): {result.error}")
            return

        print("Payment settled!")
        print(f"Network: {result.network} (fallback used: {result.fallback_used})")
        print(f"Transaction: {result.explorer_url or result.transaction_hash}")
        print(f"Response: {result.data}")

        session = router.ledger.get(result.authorization_hash) if result.authorization_hash else None
        if session is not None:
            print(f"Session active for {router.time_remaining(session.payer_identity)}")
    finally:
        router.close()


if __name__ == "__main__":
    main()
