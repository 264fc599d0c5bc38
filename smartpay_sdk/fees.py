"""
Fee, latency and health estimation for settlement networks.

Each network is queried through a ``FeeSource``. ``FeeEstimator`` fans the
queries out concurrently, bounds them with a per-network timeout and keeps
results for a short window. A source that fails or times out yields an
estimate with ``health=unknown`` rather than an error.
"""
import logging
import statistics
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, Iterable, Mapping, Optional, List, Any

import requests
from cachetools import TTLCache
from web3 import Web3

from ._rate_limited_log import rate_limited_log
from .config import Network, NetworkRegistry
from .models import FeeEstimate, NetworkHealth, SigningFamily

logger = logging.getLogger(__name__)


def native_to_asset_units(native_amount: int, network: Network) -> int:
    """
    Convert a fee in the network's smallest native unit into the payment
    asset's smallest unit, rounding up.
    """
    numerator = native_amount * network.native_price_in_asset
    denominator = 10 ** network.native_decimals
    return -(-numerator // denominator)


class FeeSourceError(Exception):
    """Raised by a fee source when the RPC endpoint returns an error."""
    pass


class FeeSource(ABC):
    """
    Abstract base class for per-network fee/health queries.
    """

    @abstractmethod
    def estimate(self, network: Network) -> FeeEstimate:
        """
        Query the network for its current fee and health.

        Raises:
            Exception: Any failure; the estimator downgrades it to unknown health
        """
        pass

    def close(self) -> None:
        """Release any open connections."""
        pass


class EvmFeeSource(FeeSource):
    """
    Fee source for EVM networks using JSON-RPC through web3.

    The fee is ``gas_price * gas_limit``; a network whose latest block is
    older than ``stale_after`` seconds is reported as degraded.
    """

    def __init__(self, rpc_url: str, timeout: float = 3.0, stale_after: float = 60.0):
        self.rpc_url = rpc_url
        self.stale_after = stale_after
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))

    def estimate(self, network: Network) -> FeeEstimate:
        gas_price = int(self.w3.eth.gas_price)
        latest = self.w3.eth.get_block("latest")
        block_age = max(0.0, time.time() - float(latest["timestamp"]))

        health = NetworkHealth.HEALTHY if block_age <= self.stale_after else NetworkHealth.DEGRADED
        fee = native_to_asset_units(gas_price * network.gas_limit, network)
        confirm_seconds = network.confirm_seconds if health == NetworkHealth.HEALTHY else block_age

        logger.debug(
            f"{network.id}: gas_price={gas_price} block_age={block_age:.1f}s fee={fee}"
        )
        return FeeEstimate(
            network_id=network.id,
            estimated_fee=fee,
            estimated_confirm_seconds=confirm_seconds,
            health=health,
        )


class SolanaFeeSource(FeeSource):
    """
    Fee source for Solana networks using raw JSON-RPC.

    The fee is the base signature fee plus the median recent prioritization
    fee for the network's compute budget. ``getHealth`` decides health.
    """

    BASE_FEE_LAMPORTS = 5000

    def __init__(self, rpc_url: str, timeout: float = 3.0, session: Optional[requests.Session] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._request_id = 0
        self._id_lock = threading.Lock()

    def _rpc(self, method: str, params: Optional[List[Any]] = None) -> Any:
        with self._id_lock:
            self._request_id += 1
            request_id = self._request_id

        response = self.session.post(
            self.rpc_url,
            json={"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or []},
            timeout=self.timeout,
        )
        response.raise_for_status()
        body = response.json()
        if "error" in body:
            error = body["error"]
            raise FeeSourceError(f"{method} failed: {error.get('message', error)}")
        return body.get("result")

    def estimate(self, network: Network) -> FeeEstimate:
        try:
            health = NetworkHealth.HEALTHY if self._rpc("getHealth") == "ok" else NetworkHealth.DEGRADED
        except FeeSourceError as e:
            # an unhealthy node answers getHealth with an RPC error
            logger.debug(f"{network.id}: getHealth reported {e}")
            health = NetworkHealth.DEGRADED

        samples = self._rpc("getRecentPrioritizationFees") or []
        fees = [int(s.get("prioritizationFee", 0)) for s in samples]
        micro_lamports_per_cu = statistics.median(fees) if fees else 0
        priority_lamports = -(-int(micro_lamports_per_cu * network.compute_units) // 1_000_000)
        lamports = self.BASE_FEE_LAMPORTS + priority_lamports

        return FeeEstimate(
            network_id=network.id,
            estimated_fee=native_to_asset_units(lamports, network),
            estimated_confirm_seconds=network.confirm_seconds,
            health=health,
        )

    def close(self) -> None:
        self.session.close()


def default_fee_source(network: Network, timeout: float = 3.0) -> FeeSource:
    """
    Get the fee source matching a network's signing family.
    """
    if network.signing_family == SigningFamily.ACCOUNT:
        return EvmFeeSource(network.rpc_endpoint, timeout=timeout)
    return SolanaFeeSource(network.rpc_endpoint, timeout=timeout)


class FeeEstimator:
    """
    Concurrent, cached fee estimation across the registry.
    """

    def __init__(
        self,
        registry: NetworkRegistry,
        sources: Optional[Mapping[str, FeeSource]] = None,
        timeout: float = 3.0,
        cache_ttl: float = 30.0,
        logger: Optional[logging.Logger] = None
    ):
        """
        Args:
            registry: Networks to estimate
            sources: Fee source per network id (defaults by signing family)
            timeout: Per-network timeout in seconds
            cache_ttl: Seconds an estimate is reused
            logger: Optional logger instance
        """
        self.registry = registry
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        if sources is None:
            sources = {n.id: default_fee_source(n, timeout) for n in registry.all()}
        self._sources: Dict[str, FeeSource] = dict(sources)
        self._cache: TTLCache = TTLCache(maxsize=max(len(registry), 1) * 2, ttl=cache_ttl)
        self._cache_lock = threading.RLock()
        # headroom for sources still stuck after an earlier timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max(len(self._sources), 1) * 2,
            thread_name_prefix="fee-estimate",
        )

    def estimate(self, network_id: str) -> FeeEstimate:
        return self.estimate_all([network_id])[network_id]

    def estimate_all(self, network_ids: Optional[Iterable[str]] = None) -> Dict[str, FeeEstimate]:
        """
        Estimate every requested network concurrently.

        Args:
            network_ids: Networks to estimate (defaults to the whole registry)

        Returns:
            Estimate per network id, in the order requested
        """
        ids = list(network_ids) if network_ids is not None else self.registry.ids()
        results: Dict[str, FeeEstimate] = {}
        missing: List[str] = []

        with self._cache_lock:
            for network_id in ids:
                cached = self._cache.get(network_id)
                if cached is not None:
                    results[network_id] = cached
                else:
                    missing.append(network_id)

        if missing:
            futures = {self._executor.submit(self._query, n): n for n in missing}
            done, not_done = wait(futures, timeout=self.timeout)

            for future in done:
                results[futures[future]] = future.result()
            for future in not_done:
                future.cancel()
                network_id = futures[future]
                rate_limited_log(
                    f"Fee estimate for {network_id} timed out after {self.timeout}s",
                    level="warning",
                    logger_instance=self.logger,
                )
                results[network_id] = FeeEstimate(
                    network_id=network_id,
                    health=NetworkHealth.UNKNOWN,
                    error=f"timed out after {self.timeout}s",
                )

            with self._cache_lock:
                for network_id in missing:
                    estimate = results[network_id]
                    if estimate.health != NetworkHealth.UNKNOWN:
                        self._cache[network_id] = estimate

        return {n: results[n] for n in ids}

    def _query(self, network_id: str) -> FeeEstimate:
        source = self._sources.get(network_id)
        if source is None or network_id not in self.registry:
            return FeeEstimate(network_id=network_id, error="no fee source configured")
        try:
            return source.estimate(self.registry.get(network_id))
        except Exception as e:
            rate_limited_log(
                f"Fee estimate for {network_id} failed: {e}",
                level="warning",
                logger_instance=self.logger,
            )
            return FeeEstimate(network_id=network_id, health=NetworkHealth.UNKNOWN, error=str(e))

    def invalidate(self, network_id: Optional[str] = None) -> None:
        """Drop cached estimates for one network, or all of them"""
        with self._cache_lock:
            if network_id is None:
                self._cache.clear()
            else:
                self._cache.pop(network_id, None)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        for source in self._sources.values():
            source.close()
