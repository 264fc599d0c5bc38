"""
Routing decision engine: picks the settlement network for a payment.
"""
import logging
from typing import Dict, Iterable, List, Optional

from .config import NetworkRegistry, RouterSettings
from .exceptions import NetworkDegraded, UnsupportedOperation
from .fees import FeeEstimator
from .models import (
    FeeEstimate, NetworkHealth, PaymentContext, PaymentRequest,
    RoutingDecision, RoutingReason,
)

logger = logging.getLogger(__name__)


class RoutingEngine:
    """
    Chooses one network per request from fresh fee estimates.

    Rules are evaluated in order and the first match wins:

    1. micro-payment: cheapest healthy network
    2. the caller's preferred network, if viable
    3. privacy requested: the confidential-settlement network
    4. agent context: the default network, if healthy
    5. cheapest viable network, else the default network as last resort
    """

    def __init__(
        self,
        registry: NetworkRegistry,
        fee_estimator: FeeEstimator,
        settings: Optional[RouterSettings] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.registry = registry
        self.fee_estimator = fee_estimator
        self.settings = settings or RouterSettings(default_network=registry.default.id)
        self.logger = logger or logging.getLogger(__name__)

    def is_viable(self, estimate: FeeEstimate, amount: int) -> bool:
        """Healthy, with a known fee below the configured share of ``amount``"""
        if estimate.health != NetworkHealth.HEALTHY:
            return False
        ratio = estimate.fee_ratio(amount)
        return ratio is not None and ratio < self.settings.max_fee_ratio

    def select_network(
        self,
        request: PaymentRequest,
        candidates: Optional[Iterable[str]] = None
    ) -> RoutingDecision:
        """
        Select a network for ``request``.

        Args:
            request: The payment being routed
            candidates: Network ids eligible for selection, e.g. those with a
                connected wallet (defaults to every registered network)

        Returns:
            The routing decision with the alternatives considered

        Raises:
            UnsupportedOperation: If privacy is requested but no candidate offers it
            NetworkDegraded: If every option, including the default, is degraded
        """
        candidate_ids = [n for n in (candidates if candidates is not None else self.registry.ids())
                         if n in self.registry]
        default_id = self.registry.default.id
        # the default is always estimated so it can serve as last resort
        estimate_ids = list(dict.fromkeys(candidate_ids + [default_id]))
        estimates = self.fee_estimator.estimate_all(estimate_ids)

        def decide(network_id: str, reason: RoutingReason) -> RoutingDecision:
            decision = RoutingDecision(
                selected_network=network_id,
                reason=reason,
                chosen_estimate=estimates[network_id],
                alternatives=[e for n, e in estimates.items() if n != network_id],
            )
            self.logger.info(
                f"Routing nonce={request.nonce} amount={request.amount} "
                f"-> {network_id} ({reason.value})"
            )
            return decision

        candidate_estimates = [estimates[n] for n in candidate_ids]
        amount = request.amount

        # 1. micro-payments go to the cheapest healthy network
        if amount < self.settings.micro_threshold:
            cheapest = self._cheapest(
                e for e in candidate_estimates if e.health == NetworkHealth.HEALTHY
            )
            if cheapest is not None:
                return decide(cheapest.network_id, RoutingReason.COST_OPTIMAL)

        # 2. explicit preference, when it is viable
        preferred = self._resolve_preferred(request.preferred_network)
        if preferred is not None and preferred in candidate_ids:
            if self.is_viable(estimates[preferred], amount):
                return decide(preferred, RoutingReason.USER_PREFERENCE)
            self.logger.info(f"Preferred network {preferred} is not viable; continuing")

        # 3. confidential settlement
        if request.privacy_requested:
            private = [n for n in candidate_ids if self.registry.get(n).supports_privacy]
            if not private:
                raise UnsupportedOperation("Private settlement requested but no connected network supports it")
            return decide(private[0], RoutingReason.USER_PREFERENCE)

        # 4. agents default to the established network
        if request.context == PaymentContext.AGENT and default_id in candidate_ids:
            if estimates[default_id].health == NetworkHealth.HEALTHY:
                return decide(default_id, RoutingReason.CONTEXT_DEFAULT)

        # 5. cheapest viable, else last resort
        cheapest = self._cheapest(e for e in candidate_estimates if self.is_viable(e, amount))
        if cheapest is not None:
            return decide(cheapest.network_id, RoutingReason.COST_OPTIMAL)

        if estimates[default_id].health == NetworkHealth.DEGRADED:
            raise NetworkDegraded(
                "No viable network and the default network is degraded",
                network=default_id,
            )
        return decide(default_id, RoutingReason.FALLBACK)

    def fallback_decision(self, request: PaymentRequest, failed: RoutingDecision) -> RoutingDecision:
        """Decision for the single fallback hop onto the default network"""
        default_id = self.registry.default.id
        known: Dict[str, FeeEstimate] = {e.network_id: e for e in failed.alternatives}
        known[failed.selected_network] = failed.chosen_estimate
        chosen = known.get(default_id) or self.fee_estimator.estimate(default_id)
        self.logger.info(
            f"Routing nonce={request.nonce} fallback {failed.selected_network} -> {default_id}"
        )
        return RoutingDecision(
            selected_network=default_id,
            reason=RoutingReason.FALLBACK,
            chosen_estimate=chosen,
            alternatives=[e for n, e in known.items() if n != default_id],
        )

    def _resolve_preferred(self, preferred: Optional[str]) -> Optional[str]:
        if not preferred:
            return None
        network = self.registry.resolve(preferred)
        if network is None:
            self.logger.warning(f"Unknown preferred network: {preferred}")
            return None
        return network.id

    @staticmethod
    def _cheapest(estimates: Iterable[FeeEstimate]) -> Optional[FeeEstimate]:
        priced: List[FeeEstimate] = [e for e in estimates if e.estimated_fee is not None]
        if not priced:
            return None
        # stable: ties keep registry order
        return min(priced, key=lambda e: e.estimated_fee)
