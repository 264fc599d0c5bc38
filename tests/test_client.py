"""
End-to-end tests for PaymentRouter: routing, negotiation, fallback and sessions.
"""
from unittest.mock import patch

import pytest

from smartpay_sdk.client import PaymentRouter
from smartpay_sdk.config import RouterSettings
from smartpay_sdk.exceptions import (
    NoWalletConnected, SettlementRejected, SigningRejected, UnsupportedOperation, UserCancelled,
)
from smartpay_sdk.inflight import CancellationToken
from smartpay_sdk.models import NetworkHealth, PaymentContext, PaymentRequest, RoutingReason, SigningFamily
from smartpay_sdk.signer import InstructionSigningAdapter, WalletHub

from test_helpers import (
    FakePrivacyProvider, FakeWallet, TEST_PAY_TO_SOLANA, TEST_RESOURCE_URL, install_paywall, make_estimator,
)

# Network A is cheap, network B is the established default
FEES = {
    "solana-devnet": 5_000,
    "base-sepolia": 200_000,
    "avalanche-fuji": (None, NetworkHealth.UNKNOWN),
}


def make_request(**kwargs):
    defaults = dict(
        amount=50_000,
        context=PaymentContext.PREMIUM,
        payer_identity="player-1",
        resource_url=TEST_RESOURCE_URL,
    )
    defaults.update(kwargs)
    return PaymentRequest(**defaults)


@pytest.fixture
def make_router(registry, ledger):
    routers = []

    def factory(wallets, fees=None, privacy_provider=None):
        router = PaymentRouter(
            registry,
            make_estimator(registry, fees or FEES),
            ledger,
            wallets=wallets,
            privacy_provider=privacy_provider,
        )
        routers.append(router)
        return router

    yield factory
    for router in routers:
        router.protocol.close()
        router.fee_estimator.close()


def failing_solana_hub(evm_adapter, error):
    wallet = FakeWallet(identity=TEST_PAY_TO_SOLANA, signature=b"\x22" * 64, error=error)
    return WalletHub([evm_adapter, InstructionSigningAdapter(wallet)])


class TestEndToEnd:

    def test_cheapest_network_settles(self, make_router, wallet_hub, solana_adapter, requests_mock):
        received = install_paywall(requests_mock, tx_hash="5jTxSig")
        router = make_router(wallet_hub)

        result = router.route_and_pay(make_request())

        assert result.success is True
        assert result.network == "solana-devnet"
        assert result.fallback_used is False
        assert result.error is None
        assert result.decision.reason == RoutingReason.COST_OPTIMAL
        assert result.transaction_hash == "5jTxSig"
        assert result.explorer_url == "https://explorer.solana.com/tx/5jTxSig?cluster=devnet"
        assert result.data == {"result": "analysis complete", "transactionHash": "5jTxSig"}
        assert len(result.attempts) == 1 and result.attempts[0].success

        assert received[0].network == "solana-devnet"
        assert router.can_submit(solana_adapter.identity())
        assert router.time_remaining(solana_adapter.identity()).total_seconds() > 0
        session = router.ledger.get(result.authorization_hash)
        assert session.amount == 50_000
        assert session.network == "solana-devnet"
        assert session.transaction_hash == "5jTxSig"

    def test_signing_rejected_falls_back_to_default(self, make_router, evm_adapter, requests_mock):
        received = install_paywall(requests_mock)
        router = make_router(failing_solana_hub(evm_adapter, SigningRejected("user declined")))

        result = router.route_and_pay(make_request())

        assert result.success is True
        assert result.fallback_used is True
        assert result.network == "base-sepolia"
        assert result.decision.reason == RoutingReason.FALLBACK
        assert [a.network for a in result.attempts] == ["solana-devnet", "base-sepolia"]
        assert "SigningRejected" in result.attempts[0].failure_reason
        assert [a.network for a in received] == ["base-sepolia"]
        assert router.can_submit(evm_adapter.identity())
        assert not router.can_submit(TEST_PAY_TO_SOLANA)


class TestFallbackPolicy:

    def test_exactly_one_hop(self, make_router, wallet_hub, requests_mock):
        install_paywall(requests_mock, reject_payment=True)
        router = make_router(wallet_hub)

        result = router.route_and_pay(make_request())

        assert result.success is False
        assert result.fallback_used is True
        assert len(result.attempts) == 2
        assert result.network == "base-sepolia"
        assert isinstance(result.error, SettlementRejected)
        assert result.error.status_code == 402
        assert result.error_code == "SETTLEMENT_REJECTED"
        assert requests_mock.call_count == 4
        assert result.authorization_hash is None

    def test_no_hop_from_preferred_network(self, make_router, wallet_hub, requests_mock):
        install_paywall(requests_mock, reject_payment=True)
        router = make_router(wallet_hub)

        result = router.route_and_pay(make_request(amount=500_000, preferred_network="solana"))

        assert result.decision.reason == RoutingReason.USER_PREFERENCE
        assert result.success is False
        assert result.fallback_used is False
        assert len(result.attempts) == 1
        assert result.network == "solana-devnet"

    def test_no_hop_from_default_network(self, make_router, wallet_hub, requests_mock):
        install_paywall(requests_mock, reject_payment=True)
        router = make_router(wallet_hub)

        result = router.route_and_pay(make_request(amount=5_000_000, context=PaymentContext.AGENT))

        assert result.decision.reason == RoutingReason.CONTEXT_DEFAULT
        assert result.fallback_used is False
        assert len(result.attempts) == 1

    def test_no_hop_after_user_cancelled(self, make_router, evm_adapter, requests_mock):
        install_paywall(requests_mock)
        router = make_router(failing_solana_hub(evm_adapter, UserCancelled("prompt dismissed")))

        result = router.route_and_pay(make_request())

        assert isinstance(result.error, UserCancelled)
        assert result.fallback_used is False
        assert len(result.attempts) == 1

    def test_error_is_surfaced_unmodified(self, make_router, evm_adapter, requests_mock):
        install_paywall(requests_mock, reject_payment=True)
        error = SigningRejected("user declined")
        router = make_router(failing_solana_hub(evm_adapter, error))

        result = router.route_and_pay(make_request(amount=500_000, preferred_network="solana-devnet"))

        assert result.error is error


class TestRoutingFailures:

    def test_no_wallet_at_all(self, make_router, requests_mock):
        router = make_router(WalletHub())

        result = router.route_and_pay(make_request())

        assert result.success is False
        assert isinstance(result.error, NoWalletConnected)
        assert result.attempts == []
        assert requests_mock.call_count == 0

    def test_disconnected_wallets_do_not_count(self, make_router, evm_wallet, evm_adapter):
        router = make_router(WalletHub([evm_adapter]))
        evm_wallet.disconnect()

        with pytest.raises(NoWalletConnected):
            router.select_network(make_request())

    def test_privacy_unavailable(self, make_router, evm_adapter, requests_mock):
        router = make_router(WalletHub([evm_adapter]))

        result = router.route_and_pay(make_request(amount=500_000, privacy_requested=True))

        assert isinstance(result.error, UnsupportedOperation)
        assert requests_mock.call_count == 0

    def test_only_wallet_families_are_candidates(self, make_router, evm_adapter, requests_mock):
        install_paywall(requests_mock)
        router = make_router({SigningFamily.ACCOUNT: evm_adapter})

        result = router.route_and_pay(make_request())

        assert result.success is True
        assert result.network == "base-sepolia"


class TestPrivacy:

    def test_private_payment_settles_on_confidential_network(self, make_router, wallet_hub, requests_mock):
        received = install_paywall(requests_mock)
        pool = FakePrivacyProvider()
        router = make_router(wallet_hub, privacy_provider=pool)

        result = router.route_and_pay(make_request(amount=500_000, privacy_requested=True))

        assert result.success is True
        assert result.network == "solana-devnet"
        assert len(pool.settled) == 1
        assert received[0].privacy == {"PrivacyProtocol": "shielded-pool", "TxHash": "5xPrivate"}

    def test_private_payment_without_provider_is_unsupported(self, make_router, wallet_hub, requests_mock):
        install_paywall(requests_mock)
        router = make_router(wallet_hub)

        result = router.route_and_pay(make_request(amount=500_000, privacy_requested=True))

        assert result.success is False
        assert isinstance(result.error, UnsupportedOperation)
        assert result.attempts == []
        assert requests_mock.call_count == 0

    def test_private_payment_never_falls_back_to_public_default(self, make_router, evm_adapter, requests_mock):
        received = install_paywall(requests_mock)
        error = SigningRejected("wallet unavailable")
        pool = FakePrivacyProvider()
        router = make_router(failing_solana_hub(evm_adapter, error), privacy_provider=pool)

        result = router.route_and_pay(make_request(amount=500_000, privacy_requested=True))

        assert result.success is False
        assert result.error is error
        assert result.fallback_used is False
        assert len(result.attempts) == 1
        assert result.attempts[0].network == "solana-devnet"
        assert received == []


class TestIdempotency:

    def test_same_nonce_pays_once(self, make_router, wallet_hub, requests_mock):
        install_paywall(requests_mock)
        router = make_router(wallet_hub)
        request = make_request()

        first = router.route_and_pay(request)
        second = router.route_and_pay(request)

        assert first.success and second is first
        assert requests_mock.call_count == 2

    def test_failed_nonce_can_be_retried(self, make_router, wallet_hub, requests_mock):
        router = make_router(wallet_hub)
        request = make_request()
        install_paywall(requests_mock, reject_payment=True)
        assert not router.route_and_pay(request).success

        install_paywall(requests_mock)
        assert router.route_and_pay(request).success

    def test_cancelled_token(self, make_router, wallet_hub, requests_mock):
        install_paywall(requests_mock)
        router = make_router(wallet_hub)
        token_request = make_request()

        token = CancellationToken()
        token.cancel()
        result = router.route_and_pay(token_request, cancel_token=token)

        assert isinstance(result.error, UserCancelled)
        assert result.fallback_used is False
        assert requests_mock.call_count == 0


class TestSessionRecording:

    def test_ledger_failure_does_not_fail_payment(self, make_router, wallet_hub, requests_mock, caplog):
        install_paywall(requests_mock)
        router = make_router(wallet_hub)

        with patch.object(router.ledger, "record", side_effect=OSError("disk full")):
            result = router.route_and_pay(make_request())

        assert result.success is True
        assert "disk full" in caplog.text

    def test_free_resource_records_nothing(self, make_router, wallet_hub, solana_adapter, requests_mock):
        requests_mock.post(TEST_RESOURCE_URL, json={"result": "free"})
        router = make_router(wallet_hub)

        result = router.route_and_pay(make_request())

        assert result.success is True
        assert result.authorization_hash is None
        assert not router.can_submit(solana_adapter.identity())


def test_plain_http_resource_rejected(make_router, wallet_hub):
    router = make_router(wallet_hub)
    with pytest.raises(ValueError):
        router.route_and_pay(make_request(resource_url="http://api.example.com/analyze"))


def test_from_config(tmp_path, wallet_hub):
    settings = RouterSettings(ledger_path=str(tmp_path / "sessions.json"), fee_timeout=1.0)

    router = PaymentRouter.from_config(wallets=wallet_hub, settings=settings, start_sweeper=False)
    try:
        assert router.registry.default.id == "base-sepolia"
        assert set(router.registry.ids()) == {"base-sepolia", "avalanche-fuji", "solana-devnet"}
        assert router.ledger.store_path == tmp_path / "sessions.json"
        assert router.fee_estimator.timeout == 1.0
    finally:
        router.close()
