"""
Network and router configuration for the SmartPay SDK.
"""
import os
import json
import logging
import urllib.parse
import importlib.resources
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Any, Optional, List, Iterable, Mapping, Tuple

from .models import SigningFamily

logger = logging.getLogger(__name__)


def validate_endpoint_url(url: str, name: str = "url") -> str:
    """
    Require https for remote endpoints; plain http is allowed for localhost.

    Raises:
        ValueError: If the URL uses another scheme on a remote host
    """
    parsed = urllib.parse.urlparse(url)
    host = parsed.hostname or ""
    is_local = host in ("localhost", "127.0.0.1")
    if parsed.scheme != "https" and not (is_local and parsed.scheme == "http"):
        raise ValueError(f"{name} must use https:// for security (got: {parsed.scheme}://)")
    return url


@dataclass(frozen=True)
class Network:
    """Immutable descriptor of one settlement network"""
    id: str
    display_name: str
    asset_symbol: str
    signing_family: SigningFamily
    rpc_endpoint: str
    explorer_url_template: str
    chain_id: Optional[int] = None
    asset_address: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    supports_privacy: bool = False
    native_decimals: int = 18
    native_price_in_asset: int = 0
    gas_limit: int = 65000
    compute_units: int = 200000
    confirm_seconds: float = 2.0

    def explorer_url(self, tx_hash: str) -> str:
        return self.explorer_url_template.format(tx=tx_hash)

    def matches(self, name: str) -> bool:
        """True if ``name`` is this network's id or one of its aliases"""
        lowered = name.lower()
        return lowered == self.id.lower() or lowered in (a.lower() for a in self.aliases)


class NetworkConfig:
    """
    Loads network definitions from the packaged ``networks.json``.

    Set ``SMARTPAY_NETWORKS_PATH`` to load a different file.
    """
    _networks_cache: Optional[Dict[str, Dict[str, Any]]] = None

    @classmethod
    def load_networks(cls) -> Dict[str, Dict[str, Any]]:
        """
        Load raw network definitions, caching them after the first read.

        Returns:
            Mapping of network id to its raw configuration
        """
        if cls._networks_cache is not None:
            return cls._networks_cache

        override_path = os.environ.get("SMARTPAY_NETWORKS_PATH")
        if override_path:
            with open(override_path, "r") as f:
                networks = json.load(f)
            logger.info("Loaded %d networks from %s", len(networks), override_path)
        else:
            resource = importlib.resources.files("smartpay_sdk").joinpath("networks.json")
            networks = json.loads(resource.read_text(encoding="utf-8"))

        cls._networks_cache = networks
        return networks

    @classmethod
    def get_network(cls, network: str) -> Dict[str, Any]:
        """
        Get the raw configuration for a network.

        Raises:
            ValueError: If the network is not defined
        """
        networks = cls.load_networks()
        if network not in networks:
            available = ", ".join(sorted(networks.keys()))
            raise ValueError(f"Network '{network}' not found. Available networks: {available}")
        return networks[network]

    @classmethod
    def get_rpc_url(cls, network: str, override: Optional[str] = None) -> str:
        """
        Resolve the RPC URL for a network.

        Priority: explicit override, then ``<NETWORK_ID>_RPC_URL`` from the
        environment, then the configured default.
        """
        if override:
            return override
        env_name = network.upper().replace("-", "_") + "_RPC_URL"
        env_value = os.environ.get(env_name)
        if env_value:
            return env_value
        return cls.get_network(network)["rpc"]

    @classmethod
    def build_network(cls, network: str, rpc_override: Optional[str] = None) -> Network:
        """Build an immutable Network from its configuration entry"""
        raw = cls.get_network(network)
        rpc_url = cls.get_rpc_url(network, override=rpc_override)
        validate_endpoint_url(rpc_url, f"{network} rpc")
        return Network(
            id=network,
            display_name=raw.get("displayName", network),
            asset_symbol=raw["assetSymbol"],
            signing_family=SigningFamily(raw["signingFamily"]),
            rpc_endpoint=rpc_url,
            explorer_url_template=raw["explorerUrlTemplate"],
            chain_id=raw.get("chainId"),
            asset_address=raw.get("assetAddress"),
            aliases=tuple(raw.get("aliases", ())),
            supports_privacy=bool(raw.get("supportsPrivacy", False)),
            native_decimals=int(raw.get("nativeDecimals", 18)),
            native_price_in_asset=int(raw.get("nativePriceInAsset", 0)),
            gas_limit=int(raw.get("gasLimit", 65000)),
            compute_units=int(raw.get("computeUnits", 200000)),
            confirm_seconds=float(raw.get("confirmSeconds", 2.0)),
        )


class NetworkRegistry:
    """Read-only catalog of settlement networks"""

    def __init__(self, networks: Iterable[Network], default_network: str):
        by_id: Dict[str, Network] = {}
        for network in networks:
            if network.id in by_id:
                raise ValueError(f"Duplicate network id: {network.id}")
            by_id[network.id] = network
        if default_network not in by_id:
            raise ValueError(
                f"Default network '{default_network}' is not registered "
                f"(registered: {', '.join(sorted(by_id))})"
            )
        self._networks: Mapping[str, Network] = MappingProxyType(by_id)
        self._default_id = default_network

    @classmethod
    def from_config(
        cls,
        default_network: str = "base-sepolia",
        network_ids: Optional[List[str]] = None,
        rpc_overrides: Optional[Dict[str, str]] = None
    ) -> "NetworkRegistry":
        """Build a registry from ``NetworkConfig``"""
        rpc_overrides = rpc_overrides or {}
        ids = network_ids or list(NetworkConfig.load_networks().keys())
        networks = [NetworkConfig.build_network(n, rpc_overrides.get(n)) for n in ids]
        return cls(networks, default_network)

    @property
    def default(self) -> Network:
        return self._networks[self._default_id]

    def get(self, network_id: str) -> Network:
        """
        Raises:
            KeyError: If the network id is not registered
        """
        return self._networks[network_id]

    def resolve(self, name: str) -> Optional[Network]:
        """Find a network by id or alias"""
        if name in self._networks:
            return self._networks[name]
        for network in self._networks.values():
            if network.matches(name):
                return network
        return None

    def all(self) -> List[Network]:
        return list(self._networks.values())

    def ids(self) -> List[str]:
        return list(self._networks.keys())

    def __contains__(self, network_id: object) -> bool:
        return network_id in self._networks

    def __len__(self) -> int:
        return len(self._networks)


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got: {value!r}")


@dataclass
class RouterSettings:
    """
    Tunables for routing, negotiation and session bookkeeping.

    Attributes:
        default_network: Established network used for agents and fallback
        micro_threshold: Amounts below this (asset units) are micro-payments
        max_fee_ratio: A network is viable only if fee/amount is below this
        fee_timeout: Per-network fee estimate timeout in seconds
        fee_cache_ttl: How long fee estimates are reused, in seconds
        session_ttl: Lifetime of a recorded session, in seconds
        sweep_interval: Period of the ledger's expired-session sweep
        http_timeout: Timeout for requests to the paid resource
        retry_count: Connection retries for HTTP requests
        ledger_path: Session ledger file (None uses the default location)
    """
    default_network: str = "base-sepolia"
    micro_threshold: int = 100_000
    max_fee_ratio: float = 0.2
    fee_timeout: float = 3.0
    fee_cache_ttl: float = 30.0
    session_ttl: float = 24 * 60 * 60
    sweep_interval: float = 60.0
    http_timeout: float = 30.0
    retry_count: int = 3
    ledger_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RouterSettings":
        """Read ``SMARTPAY_*`` environment variables over the defaults"""
        defaults = cls()
        return cls(
            default_network=os.environ.get("SMARTPAY_DEFAULT_NETWORK", defaults.default_network),
            micro_threshold=int(_env_float("SMARTPAY_MICRO_THRESHOLD", defaults.micro_threshold)),
            max_fee_ratio=_env_float("SMARTPAY_MAX_FEE_RATIO", defaults.max_fee_ratio),
            fee_timeout=_env_float("SMARTPAY_FEE_TIMEOUT", defaults.fee_timeout),
            fee_cache_ttl=_env_float("SMARTPAY_FEE_CACHE_TTL", defaults.fee_cache_ttl),
            session_ttl=_env_float("SMARTPAY_SESSION_TTL", defaults.session_ttl),
            sweep_interval=_env_float("SMARTPAY_SWEEP_INTERVAL", defaults.sweep_interval),
            http_timeout=_env_float("SMARTPAY_HTTP_TIMEOUT", defaults.http_timeout),
            retry_count=int(_env_float("SMARTPAY_RETRY_COUNT", defaults.retry_count)),
            ledger_path=os.environ.get("SMARTPAY_LEDGER_PATH") or None,
        )
