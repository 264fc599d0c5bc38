"""
Cancellation and per-nonce coalescing for payment negotiations.
"""
import logging
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from typing import Callable, Dict, Optional, Tuple, TypeVar

from cachetools import TTLCache

from .exceptions import UserCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

POLL_INTERVAL = 0.1


class CancellationToken:
    """
    Cooperative cancellation flag shared between the caller and a negotiation.

    The caller calls ``cancel()`` (e.g. when the user dismisses a wallet
    prompt); the negotiation checks the token between steps and while it is
    blocked waiting on the wallet.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """
        Raises:
            UserCancelled: If ``cancel()`` has been called
        """
        if self._event.is_set():
            raise UserCancelled("Payment cancelled by user")

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


def wait_for(future: "Future[T]", token: Optional[CancellationToken] = None) -> T:
    """
    Block on ``future`` while honouring ``token``.

    Raises:
        UserCancelled: If the token is cancelled before the future completes
    """
    if token is None:
        return future.result()
    while True:
        token.raise_if_cancelled()
        try:
            return future.result(timeout=POLL_INTERVAL)
        except FutureTimeoutError:
            continue


class InFlightRegistry:
    """
    Ensures one negotiation per nonce.

    A second call for a nonce that is already in flight waits for the first
    and receives its result. Results accepted by ``remember`` are kept for
    ``completed_ttl`` seconds and handed back to later callers instead of
    paying again.
    """

    def __init__(self, completed_ttl: float = 300.0, maxsize: int = 1024):
        self._lock = threading.Lock()
        self._inflight: Dict[str, Future] = {}
        self._completed: TTLCache = TTLCache(maxsize=maxsize, ttl=completed_ttl)

    def run(
        self,
        key: str,
        fn: Callable[[], T],
        remember: Callable[[T], bool] = lambda _result: True,
        token: Optional[CancellationToken] = None
    ) -> Tuple[T, bool]:
        """
        Run ``fn`` unless a call for ``key`` is in flight or recently finished.

        Returns:
            Tuple of (result, reused) where ``reused`` is True if the result
            came from another caller's negotiation
        """
        with self._lock:
            if key in self._completed:
                logger.info(f"Reusing completed result for nonce {key}")
                return self._completed[key], True
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future

        if not owner:
            logger.info(f"Nonce {key} already in flight; waiting for it")
            return wait_for(future, token), True

        try:
            result = fn()
        except BaseException as e:
            with self._lock:
                self._inflight.pop(key, None)
            future.set_exception(e)
            raise

        with self._lock:
            self._inflight.pop(key, None)
            if remember(result):
                self._completed[key] = result
        future.set_result(result)
        return result, False

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._inflight
