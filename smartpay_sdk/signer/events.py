"""
Wallet registry with explicit event subscriptions.

The hosting application attaches one adapter per signing family and tells
the hub when wallets come and go; anything interested subscribes with
``on`` instead of polling shared wallet state.
"""
import logging
import threading
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set

from ..exceptions import NoWalletConnected
from ..models import SigningFamily
from .base import SigningAdapter

logger = logging.getLogger(__name__)


class WalletEvent(str, Enum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    CHANGE = "change"


WalletListener = Callable[[WalletEvent, SigningFamily, Optional[SigningAdapter]], None]


class WalletHub:
    """Thread-safe holder of the current signing adapter for each family"""

    def __init__(self, adapters: Optional[Iterable[SigningAdapter]] = None):
        self._lock = threading.RLock()
        self._adapters: Dict[SigningFamily, SigningAdapter] = {}
        self._listeners: Dict[WalletEvent, List[WalletListener]] = {e: [] for e in WalletEvent}
        for adapter in adapters or ():
            self.attach(adapter)

    def attach(self, adapter: SigningAdapter) -> None:
        """Register ``adapter`` for its family, replacing any previous one"""
        with self._lock:
            self._adapters[adapter.family] = adapter
        logger.info(f"Attached {adapter.family.value}-style wallet")
        self._emit(WalletEvent.CONNECT, adapter.family, adapter)
        self._emit(WalletEvent.CHANGE, adapter.family, adapter)

    def detach(self, family: SigningFamily) -> Optional[SigningAdapter]:
        """Remove the adapter for ``family``; returns it, or None if absent"""
        with self._lock:
            removed = self._adapters.pop(family, None)
        if removed is not None:
            logger.info(f"Detached {family.value}-style wallet")
            self._emit(WalletEvent.DISCONNECT, family, None)
            self._emit(WalletEvent.CHANGE, family, None)
        return removed

    def get(self, family: SigningFamily) -> Optional[SigningAdapter]:
        with self._lock:
            return self._adapters.get(family)

    def adapter_for(self, family: SigningFamily) -> SigningAdapter:
        """
        Raises:
            NoWalletConnected: If no ready adapter is attached for ``family``
        """
        adapter = self.get(family)
        if adapter is None or not adapter.is_ready():
            raise NoWalletConnected(f"No {family.value}-style wallet connected")
        return adapter

    def ready_families(self) -> Set[SigningFamily]:
        with self._lock:
            adapters = list(self._adapters.values())
        return {a.family for a in adapters if a.is_ready()}

    def snapshot(self) -> Dict[SigningFamily, SigningAdapter]:
        with self._lock:
            return dict(self._adapters)

    def on(self, event: WalletEvent, listener: WalletListener) -> Callable[[], None]:
        """
        Subscribe to a wallet event.

        Returns:
            A function that removes the subscription
        """
        with self._lock:
            self._listeners[event].append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners[event]:
                    self._listeners[event].remove(listener)

        return unsubscribe

    def _emit(self, event: WalletEvent, family: SigningFamily, adapter: Optional[SigningAdapter]) -> None:
        with self._lock:
            listeners = list(self._listeners[event])
        for listener in listeners:
            try:
                listener(event, family, adapter)
            except Exception:
                logger.exception(f"Error in wallet listener for {event.value}")
