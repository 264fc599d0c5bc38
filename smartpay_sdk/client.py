"""
PaymentRouter - Main entry point of the SmartPay SDK.
"""
import logging
import time
from typing import Mapping, Optional, Set, Tuple, Union

import portalocker

from .config import NetworkRegistry, RouterSettings, validate_endpoint_url
from .exceptions import PaymentError, NoWalletConnected, UnsupportedOperation, UserCancelled
from .fees import FeeEstimator
from .inflight import CancellationToken, InFlightRegistry
from .ledger import SessionLedger
from .models import (
    AttemptRecord, PaymentRequest, PaymentResult, RoutingDecision, SigningFamily,
)
from .protocol import ChallengeResponseClient, Negotiation, PrivacyProvider
from .routing import RoutingEngine
from .signer.base import SigningAdapter
from .signer.events import WalletHub

Wallets = Union[WalletHub, Mapping[SigningFamily, SigningAdapter]]


class PaymentRouter:
    """
    Routes a payment to a settlement network and pays for the request.

    This router handles:
    1. Choosing a network from live fee and health estimates
    2. The 402 challenge/response exchange with the paid resource
    3. One fallback hop onto the default network when an attempt fails
    4. Recording the resulting session in the ledger

    Wallets are injected through a ``WalletHub`` (or a mapping of signing
    family to adapter); there is no global wallet state.
    """

    def __init__(
        self,
        registry: NetworkRegistry,
        fee_estimator: FeeEstimator,
        ledger: SessionLedger,
        wallets: Optional[Wallets] = None,
        protocol_client: Optional[ChallengeResponseClient] = None,
        settings: Optional[RouterSettings] = None,
        privacy_provider: Optional[PrivacyProvider] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the PaymentRouter

        Args:
            registry: Settlement networks available for routing
            fee_estimator: Fee/health estimator over the registry
            ledger: Session ledger that records settled payments
            wallets: Connected wallets (may also be passed per call)
            protocol_client: Optional pre-configured challenge/response client
            settings: Routing thresholds and timeouts
            privacy_provider: Confidential settlement collaborator; privacy
                requests fail with UnsupportedOperation without one
            logger: Optional logger instance to use for debug/info logging
        """
        self.registry = registry
        self.fee_estimator = fee_estimator
        self.ledger = ledger
        self.wallets: Wallets = wallets if wallets is not None else WalletHub()
        self.settings = settings or RouterSettings(default_network=registry.default.id)
        self.logger = logger or logging.getLogger(__name__)
        self.routing = RoutingEngine(registry, fee_estimator, self.settings, logger=self.logger)
        self.protocol = protocol_client or ChallengeResponseClient(
            registry,
            timeout=self.settings.http_timeout,
            retry_count=self.settings.retry_count,
            privacy_provider=privacy_provider,
            logger=self.logger,
        )
        self.inflight = InFlightRegistry()

    @classmethod
    def from_config(
        cls,
        wallets: Optional[Wallets] = None,
        settings: Optional[RouterSettings] = None,
        rpc_overrides: Optional[Mapping[str, str]] = None,
        start_sweeper: bool = True,
        privacy_provider: Optional[PrivacyProvider] = None,
        logger: Optional[logging.Logger] = None
    ) -> "PaymentRouter":
        """
        Build a router from the packaged network configuration.

        Args:
            wallets: Connected wallets
            settings: Router settings (defaults to ``RouterSettings.from_env()``)
            rpc_overrides: RPC URL per network id
            start_sweeper: Start the ledger's expired-session sweeper
            privacy_provider: Optional confidential settlement collaborator
            logger: Optional logger instance

        Returns:
            Configured PaymentRouter instance
        """
        settings = settings or RouterSettings.from_env()
        registry = NetworkRegistry.from_config(
            default_network=settings.default_network,
            rpc_overrides=dict(rpc_overrides or {}),
        )
        fee_estimator = FeeEstimator(
            registry,
            timeout=settings.fee_timeout,
            cache_ttl=settings.fee_cache_ttl,
            logger=logger,
        )
        ledger = SessionLedger(settings.ledger_path, session_ttl=settings.session_ttl, logger=logger)
        if start_sweeper:
            ledger.start_sweeper(settings.sweep_interval)
        return cls(
            registry,
            fee_estimator,
            ledger,
            wallets=wallets,
            settings=settings,
            privacy_provider=privacy_provider,
            logger=logger,
        )

    def select_network(self, request: PaymentRequest, wallets: Optional[Wallets] = None) -> RoutingDecision:
        """
        Choose a network for ``request`` among those with a connected wallet.

        Raises:
            NoWalletConnected: If no wallet is connected at all
            UnsupportedOperation: If privacy is requested but unavailable
            NetworkDegraded: If every option is degraded
        """
        families = self._ready_families(wallets if wallets is not None else self.wallets)
        if not families:
            raise NoWalletConnected("No wallet connected")
        if request.privacy_requested and self.protocol.privacy_provider is None:
            raise UnsupportedOperation("Confidential settlement requested but no privacy provider is configured")
        candidates = [n.id for n in self.registry.all() if n.signing_family in families]
        return self.routing.select_network(request, candidates)

    def route_and_pay(
        self,
        request: PaymentRequest,
        cancel_token: Optional[CancellationToken] = None,
        wallets: Optional[Wallets] = None
    ) -> PaymentResult:
        """
        Route ``request``, pay for it and record the session.

        A second call with the nonce of a request that is still in flight
        waits for it and returns the same result.

        Args:
            request: The payment to make
            cancel_token: Optional token the caller cancels to abort
            wallets: Wallets for this call (defaults to the router's)

        Returns:
            PaymentResult; payment failures are reported in ``error``

        Raises:
            ValueError: If ``resource_url`` is not https (localhost excepted)
        """
        validate_endpoint_url(request.resource_url, "resource_url")
        wallets = wallets if wallets is not None else self.wallets
        try:
            result, reused = self.inflight.run(
                request.nonce,
                lambda: self._route_and_pay(request, wallets, cancel_token),
                remember=lambda r: r.success,
                token=cancel_token,
            )
        except PaymentError as e:
            # cancelled while waiting on another caller's negotiation
            self.logger.info(f"Payment nonce={request.nonce} aborted: {e}")
            return PaymentResult(success=False, error=e)
        if reused:
            self.logger.debug(f"Payment nonce={request.nonce} answered from an earlier negotiation")
        return result

    def _route_and_pay(
        self,
        request: PaymentRequest,
        wallets: Wallets,
        token: Optional[CancellationToken]
    ) -> PaymentResult:
        try:
            decision = self.select_network(request, wallets)
        except PaymentError as e:
            self.logger.warning(f"Routing nonce={request.nonce} failed: {type(e).__name__}: {e}")
            return PaymentResult(success=False, error=e)

        negotiation, attempt = self._attempt(request, decision, wallets, token)
        attempts = [attempt]
        fallback_used = False

        if negotiation.error is not None and self._should_fall_back(request, negotiation):
            decision = self.routing.fallback_decision(request, decision)
            negotiation, attempt = self._attempt(request, decision, wallets, token)
            attempts.append(attempt)
            fallback_used = True

        if negotiation.error is not None:
            return PaymentResult(
                success=False,
                network=negotiation.network,
                fallback_used=fallback_used,
                error=negotiation.error,
                decision=decision,
                attempts=attempts,
            )
        return self._settled(negotiation, decision, attempts, fallback_used)

    def _attempt(
        self,
        request: PaymentRequest,
        decision: RoutingDecision,
        wallets: Wallets,
        token: Optional[CancellationToken]
    ) -> Tuple[Negotiation, AttemptRecord]:
        start = time.monotonic()
        negotiation = self.protocol.negotiate(request, decision, wallets, token)
        elapsed = time.monotonic() - start

        network = negotiation.network or decision.selected_network
        error = negotiation.error
        attempt = AttemptRecord(
            network=network,
            success=error is None,
            elapsed_seconds=elapsed,
            failure_reason=f"{type(error).__name__}: {error}" if error is not None else None,
        )
        if error is None:
            self.logger.info(f"Attempt on {network} succeeded in {elapsed:.2f}s")
        else:
            self.logger.warning(f"Attempt on {network} failed after {elapsed:.2f}s: {attempt.failure_reason}")
        return negotiation, attempt

    def _should_fall_back(self, request: PaymentRequest, negotiation: Negotiation) -> bool:
        """One hop to the default network, unless the user chose this network or cancelled"""
        if isinstance(negotiation.error, UserCancelled):
            return False
        if request.privacy_requested and not self.registry.default.supports_privacy:
            self.logger.info(f"Not falling back to {self.registry.default.id}: it cannot settle privately")
            return False
        attempted = negotiation.network or negotiation.decision.selected_network
        if attempted == self.registry.default.id:
            return False
        if request.preferred_network:
            preferred = self.registry.resolve(request.preferred_network)
            if preferred is not None and preferred.id == attempted:
                self.logger.info(f"Not falling back from preferred network {attempted}")
                return False
        return True

    def _settled(
        self,
        negotiation: Negotiation,
        decision: RoutingDecision,
        attempts: list,
        fallback_used: bool
    ) -> PaymentResult:
        network_id = negotiation.network
        tx_hash = negotiation.transaction_hash
        explorer_url = None
        if tx_hash and network_id in self.registry:
            explorer_url = self.registry.get(network_id).explorer_url(tx_hash)

        authorization = negotiation.authorization
        if negotiation.paid and authorization is not None:
            try:
                self.ledger.record(
                    negotiation.authorization_hash,
                    payer=authorization.payer,
                    amount=int(authorization.amount),
                    network=network_id,
                    transaction_hash=tx_hash,
                )
            except (OSError, portalocker.LockException) as e:
                # the payment itself went through; only the bookkeeping failed
                self.logger.error(f"Failed to record session {negotiation.authorization_hash}: {e}")

        return PaymentResult(
            success=True,
            network=network_id,
            transaction_hash=tx_hash,
            fallback_used=fallback_used,
            data=negotiation.data,
            decision=decision,
            attempts=attempts,
            explorer_url=explorer_url,
            authorization_hash=negotiation.authorization_hash,
        )

    def can_submit(self, payer: str) -> bool:
        """True if ``payer`` holds an active session"""
        return self.ledger.can_submit(payer)

    def time_remaining(self, payer: str):
        """Remaining session time for ``payer`` as a ``timedelta``"""
        return self.ledger.time_remaining(payer)

    @staticmethod
    def _ready_families(wallets: Wallets) -> Set[SigningFamily]:
        if isinstance(wallets, WalletHub):
            return wallets.ready_families()
        return {family for family, adapter in wallets.items() if adapter.is_ready()}

    def close(self) -> None:
        """Stop background work and release connections"""
        self.ledger.close()
        self.protocol.close()
        self.fee_estimator.close()
