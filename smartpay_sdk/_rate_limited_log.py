"""
Thread-safe rate-limited logging utilities.

Fee sources are polled every few seconds; when an RPC endpoint is down the
same failure would otherwise be logged on every poll.
"""
import logging
import threading
import time
from typing import Optional

from cachetools import TTLCache

logger = logging.getLogger(__name__)

# Keys expire after an hour regardless of the per-call interval
_log_cache: TTLCache = TTLCache(maxsize=256, ttl=3600)
_log_cache_lock = threading.RLock()


def rate_limited_log(
    message: str,
    level: str = "warning",
    interval: float = 60,
    logger_instance: Optional[logging.Logger] = None
) -> bool:
    """
    Log a message at most once per ``interval`` seconds.

    Args:
        message: Message to log
        level: Log level (debug, info, warning, error, critical)
        interval: Minimum interval between identical messages, in seconds
        logger_instance: Logger to use (defaults to module logger)

    Returns:
        True if the message was emitted, False if it was suppressed
    """
    log_instance = logger_instance or logger
    log_method = getattr(log_instance, level.lower(), log_instance.warning)
    key = f"{level}:{message}"

    with _log_cache_lock:
        now = time.monotonic()
        last = _log_cache.get(key)
        if last is not None and now - last < interval:
            return False
        log_method(message)
        _log_cache[key] = now
        return True


def reset_rate_limits() -> None:
    """Forget every suppressed message (used by tests)"""
    with _log_cache_lock:
        _log_cache.clear()
