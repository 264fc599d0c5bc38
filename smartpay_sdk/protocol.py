"""
Challenge/response payment protocol (HTTP 402).

One negotiation runs strictly in sequence::

    Idle -> Requesting -> ChallengeReceived -> Signing -> Retrying -> Settled
                                                                   \\-> Failed

The request is sent with an ``X-Chain`` hint. A 402 answer carries one or
more payment options; the client signs the option matching the routing
decision and resends the request once with an ``X-Payment`` header. There
is never a second retry.
"""
import base64
import hashlib
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, Union

import requests
from pydantic import ValidationError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import Network, NetworkRegistry, validate_endpoint_url
from .exceptions import (
    PaymentError, ChallengeMalformed, NoWalletConnected, SettlementRejected, UnsupportedOperation,
)
from .inflight import CancellationToken, wait_for
from .models import Challenge, PaymentRequest, RoutingDecision, SignedAuthorization, SigningFamily
from .signer.base import SigningAdapter
from .signer.events import WalletHub

logger = logging.getLogger(__name__)

CHAIN_HEADER = "X-Chain"
PAYMENT_HEADER = "X-Payment"
PAYMENT_RESPONSE_HEADER = "X-Payment-Response"
PAYMENT_REQUIRED_STATUS = 402

CANONICAL_TITLE = "x402 Payment Authorization"


def canonical_message(challenge: Challenge, payer: str, privacy: Optional[Mapping[str, str]] = None) -> bytes:
    """
    Build the exact bytes a payer signs to authorize ``challenge``.

    Field order is fixed. Privacy metadata, when present, is appended in
    sorted key order.
    """
    lines = [
        CANONICAL_TITLE,
        f"Scheme: {challenge.scheme}",
        f"Network: {challenge.network}",
        f"Asset: {challenge.asset}",
        f"Amount: {challenge.amount}",
        f"PayTo: {challenge.pay_to}",
        f"Payer: {payer}",
        f"Timestamp: {challenge.timestamp}",
        f"Nonce: {challenge.nonce}",
    ]
    for key in sorted(privacy or {}):
        lines.append(f"{key}: {privacy[key]}")
    return "\n".join(lines).encode("utf-8")


def encode_payment_header(authorization: SignedAuthorization) -> str:
    """base64(json(authorization)) for the ``X-Payment`` header"""
    payload = json.dumps(authorization.to_wire(), separators=(",", ":"))
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def decode_payment_header(header: str) -> SignedAuthorization:
    """
    Raises:
        ValueError: If the header is not base64 JSON of a signed authorization
    """
    try:
        data = json.loads(base64.b64decode(header, validate=True))
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid payment header: {e}") from e
    return SignedAuthorization.model_validate(data)


def authorization_hash(header: str) -> str:
    """Stable identifier of one signed authorization"""
    return hashlib.sha256(header.encode("ascii")).hexdigest()


def parse_challenges(body: Any) -> List[Challenge]:
    """
    Extract usable payment options from a 402 body.

    Accepts ``{"accepts": [...]}`` or the legacy ``{"schemes": [...]}``.
    Options that fail validation are skipped.

    Raises:
        ChallengeMalformed: If no usable option remains
    """
    if not isinstance(body, dict):
        raise ChallengeMalformed(f"Payment challenge must be a JSON object, got {type(body).__name__}")

    options = body.get("accepts")
    if not options:
        options = body.get("schemes")
    if isinstance(options, dict):
        options = [options]
    if not options or not isinstance(options, list):
        raise ChallengeMalformed("Invalid payment challenge: no schemes provided by server")

    challenges: List[Challenge] = []
    for index, option in enumerate(options):
        try:
            challenges.append(Challenge.model_validate(option))
        except ValidationError as e:
            logger.warning(f"Skipping unusable payment option #{index}: {e.error_count()} invalid field(s)")
    if not challenges:
        raise ChallengeMalformed("Invalid payment challenge: no usable scheme in server response")
    return challenges


class PrivacyProvider(Protocol):
    """
    Collaborator that settles a challenge through a confidential channel.

    Returns metadata (e.g. ``{"PrivacyProtocol": ..., "TxHash": ...}``) that
    is bound into the signed message.
    """

    def settle_privately(self, challenge: Challenge) -> Dict[str, str]:
        ...


class ProtocolState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    CHALLENGE_RECEIVED = "challenge_received"
    SIGNING = "signing"
    RETRYING = "retrying"
    SETTLED = "settled"
    FAILED = "failed"


@dataclass
class Negotiation:
    """State and outcome of one pass through the protocol"""
    url: str
    decision: RoutingDecision
    nonce: str
    state: ProtocolState = ProtocolState.IDLE
    history: List[ProtocolState] = field(default_factory=lambda: [ProtocolState.IDLE])
    network: Optional[str] = None
    challenge: Optional[Challenge] = None
    authorization: Optional[SignedAuthorization] = None
    authorization_hash: Optional[str] = None
    paid: bool = False
    status_code: Optional[int] = None
    data: Any = None
    transaction_hash: Optional[str] = None
    error: Optional[PaymentError] = None

    @property
    def settled(self) -> bool:
        return self.state == ProtocolState.SETTLED

    def transition(self, state: ProtocolState) -> None:
        logger.debug(f"nonce={self.nonce} {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)


WalletSource = Union[WalletHub, Mapping[SigningFamily, SigningAdapter]]


class ChallengeResponseClient:
    """
    HTTP client that performs the 402 negotiation for one request at a time.
    """

    def __init__(
        self,
        registry: NetworkRegistry,
        timeout: float = 30.0,
        retry_count: int = 3,
        session: Optional[requests.Session] = None,
        privacy_provider: Optional[PrivacyProvider] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Args:
            registry: Known networks, used to resolve challenge networks
            timeout: Timeout for each HTTP request in seconds
            retry_count: Retries for connection failures
            session: Optional pre-configured requests session
            privacy_provider: Optional confidential settlement collaborator
            logger: Optional logger instance
        """
        self.registry = registry
        self.timeout = timeout
        self.privacy_provider = privacy_provider
        self.logger = logger or logging.getLogger(__name__)

        if session is None:
            session = requests.Session()
            # connection failures only; a status code is never retried
            retries = Retry(
                total=retry_count,
                connect=retry_count,
                read=0,
                status=0,
                other=0,
                backoff_factor=0.5,
                allowed_methods=["GET", "POST"],
                raise_on_status=False,
            )
            session.mount("http://", HTTPAdapter(max_retries=retries))
            session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session = session
        self._signing_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="wallet-sign")

    def negotiate(
        self,
        request: PaymentRequest,
        decision: RoutingDecision,
        wallets: WalletSource,
        token: Optional[CancellationToken] = None
    ) -> Negotiation:
        """
        Run the full request/challenge/sign/retry flow.

        Failures are reported on the returned negotiation (``state`` is
        FAILED and ``error`` holds the PaymentError) rather than raised.
        """
        validate_endpoint_url(request.resource_url, "resource_url")
        negotiation = Negotiation(url=request.resource_url, decision=decision, nonce=request.nonce)
        try:
            self._run(negotiation, request, wallets, token)
        except PaymentError as e:
            negotiation.error = e
            negotiation.transition(ProtocolState.FAILED)
            self.logger.warning(
                f"Negotiation nonce={request.nonce} on {negotiation.network or decision.selected_network} "
                f"failed: {type(e).__name__}: {e}"
            )
        return negotiation

    def _run(
        self,
        negotiation: Negotiation,
        request: PaymentRequest,
        wallets: WalletSource,
        token: Optional[CancellationToken]
    ) -> None:
        hinted = negotiation.decision.selected_network
        negotiation.network = hinted

        self._check(token)
        negotiation.transition(ProtocolState.REQUESTING)
        response = self._post(request, {CHAIN_HEADER: hinted}, hinted)

        if response.status_code != PAYMENT_REQUIRED_STATUS:
            self._settle(negotiation, response, hinted)
            return

        negotiation.transition(ProtocolState.CHALLENGE_RECEIVED)
        challenge, network = self.select_challenge(parse_challenges(self._json(response, hinted)), hinted)
        negotiation.challenge = challenge
        negotiation.network = network.id
        adapter = self._adapter(wallets, network.signing_family)

        self._check(token)
        negotiation.transition(ProtocolState.SIGNING)
        authorization = self.authorize(challenge, adapter, request, network, token)
        header = encode_payment_header(authorization)
        negotiation.authorization = authorization
        negotiation.authorization_hash = authorization_hash(header)
        self.logger.debug(
            f"Sending authorization {negotiation.authorization_hash[:12]}…: "
            f"{self._sanitize_authorization(authorization.to_wire())}"
        )

        self._check(token)
        negotiation.transition(ProtocolState.RETRYING)
        response = self._post(request, {CHAIN_HEADER: network.id, PAYMENT_HEADER: header}, network.id)
        if response.status_code == PAYMENT_REQUIRED_STATUS:
            raise SettlementRejected(
                "Server rejected the payment authorization",
                network=network.id,
                status_code=response.status_code,
                response_text=response.text[:500],
            )
        negotiation.paid = True
        self._settle(negotiation, response, network.id)

    def select_challenge(self, challenges: List[Challenge], network_id: str) -> Tuple[Challenge, Network]:
        """
        Pick the option for ``network_id``, else the server's first option.

        Raises:
            ChallengeMalformed: If the chosen option's network is unknown
        """
        for challenge in challenges:
            network = self.registry.resolve(challenge.network)
            if network is not None and network.id == network_id:
                return challenge, network

        challenge = challenges[0]
        self.logger.warning(
            f"Server offered no option for {network_id}; falling back to {challenge.network}"
        )
        network = self.registry.resolve(challenge.network)
        if network is None:
            raise ChallengeMalformed(
                f"Server requested payment on unsupported network {challenge.network}",
                network=challenge.network,
            )
        return challenge, network

    def authorize(
        self,
        challenge: Challenge,
        adapter: SigningAdapter,
        request: PaymentRequest,
        network: Network,
        token: Optional[CancellationToken] = None
    ) -> SignedAuthorization:
        """
        Sign ``challenge`` and check the result before it is transmitted.

        Raises:
            NoWalletConnected: If the adapter's wallet is not connected
            SigningRejected: If the wallet fails to sign
            UserCancelled: If the token is cancelled while waiting on the wallet
            ChallengeMalformed: If the signed message cannot be re-derived
            UnsupportedOperation: If privacy was requested but cannot be provided
        """
        payer = adapter.identity()
        privacy = None
        if request.privacy_requested:
            if not network.supports_privacy:
                raise UnsupportedOperation(
                    f"Network {network.id} does not support confidential settlement",
                    network=network.id,
                )
            if self.privacy_provider is None:
                raise UnsupportedOperation(
                    "Confidential settlement requested but no privacy provider is configured",
                    network=network.id,
                )
            privacy = self._settle_privately(challenge, token)

        message = canonical_message(challenge, payer, privacy)
        if token is None:
            signature = adapter.sign(message)
        else:
            signature = wait_for(self._signing_pool.submit(adapter.sign, message), token)

        authorization = SignedAuthorization(
            **challenge.model_dump(),
            payer=payer,
            signature=adapter.encode_signature(signature),
            message=message.decode("utf-8"),
            privacy=privacy,
        )

        rederived = canonical_message(authorization, authorization.payer, authorization.privacy)
        if rederived != message or authorization.message.encode("utf-8") != message:
            raise ChallengeMalformed(
                "Challenge fields do not serialize back to the signed message",
                network=network.id,
            )
        return authorization

    def _settle_privately(self, challenge: Challenge, token: Optional[CancellationToken]) -> Dict[str, str]:
        self.logger.info(f"Settling {challenge.amount} on {challenge.network} through privacy provider")
        if token is None:
            return dict(self.privacy_provider.settle_privately(challenge))
        future = self._signing_pool.submit(self.privacy_provider.settle_privately, challenge)
        return dict(wait_for(future, token))

    def _settle(self, negotiation: Negotiation, response: requests.Response, network_id: str) -> None:
        negotiation.status_code = response.status_code
        if not 200 <= response.status_code < 300:
            raise SettlementRejected(
                f"Request failed with status {response.status_code}",
                network=network_id,
                status_code=response.status_code,
                response_text=response.text[:500],
            )
        data = self._json(response, network_id)
        negotiation.data = data
        negotiation.transaction_hash = self._transaction_hash(response, data)
        negotiation.transition(ProtocolState.SETTLED)
        self.logger.info(
            f"Settled nonce={negotiation.nonce} on {network_id} "
            f"paid={negotiation.paid} tx={negotiation.transaction_hash}"
        )

    def _transaction_hash(self, response: requests.Response, data: Any) -> Optional[str]:
        if isinstance(data, dict) and data.get("transactionHash"):
            return str(data["transactionHash"])
        header = response.headers.get(PAYMENT_RESPONSE_HEADER)
        if not header:
            return None
        try:
            settlement = json.loads(base64.b64decode(header))
        except (ValueError, TypeError) as e:
            self.logger.debug(f"Ignoring undecodable {PAYMENT_RESPONSE_HEADER} header: {e}")
            return None
        if not isinstance(settlement, dict):
            return None
        reference = settlement.get("transaction") or settlement.get("transactionHash")
        return str(reference) if reference else None

    def _post(self, request: PaymentRequest, headers: Dict[str, str], network_id: str) -> requests.Response:
        try:
            return self.session.post(
                request.resource_url,
                json=request.body,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            self.logger.error(f"Request to {request.resource_url} failed: {e}")
            raise SettlementRejected(f"Request to paid resource failed: {e}", network=network_id) from e

    def _json(self, response: requests.Response, network_id: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            if response.status_code == PAYMENT_REQUIRED_STATUS:
                raise ChallengeMalformed(f"Payment challenge is not valid JSON: {e}", network=network_id) from e
            raise SettlementRejected(
                f"Response body could not be parsed: {e}",
                network=network_id,
                status_code=response.status_code,
            ) from e

    @staticmethod
    def _sanitize_authorization(wire: Dict[str, Any]) -> Dict[str, Any]:
        """
        Remove sensitive data from an authorization for logging

        Args:
            wire: Authorization in wire form

        Returns:
            Copy with the signature and signed message redacted
        """
        result = dict(wire)
        for key in ("signature", "message"):
            if key in result:
                result[key] = f"[REDACTED - {len(str(result[key]))} chars]"
        return result

    @staticmethod
    def _adapter(wallets: WalletSource, family: SigningFamily) -> SigningAdapter:
        if isinstance(wallets, WalletHub):
            return wallets.adapter_for(family)
        adapter = wallets.get(family)
        if adapter is None or not adapter.is_ready():
            raise NoWalletConnected(f"No {family.value}-style wallet connected")
        return adapter

    @staticmethod
    def _check(token: Optional[CancellationToken]) -> None:
        if token is not None:
            token.raise_if_cancelled()

    def close(self) -> None:
        self._signing_pool.shutdown(wait=False)
        self.session.close()
