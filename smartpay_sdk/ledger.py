"""
Session ledger: idempotent record of settled payments.

Sessions are kept in a JSON file guarded by a file lock so that several
processes (e.g. a game server and its workers) share one view. Each
authorization hash is recorded at most once.
"""
import json
import logging
import os
import stat
import threading
import time
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

import portalocker

from .models import Session

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = 24 * 60 * 60


def normalize_identity(payer: str) -> str:
    """Hex addresses compare case-insensitively; base58 identities do not"""
    if payer.startswith("0x") or payer.startswith("0X"):
        return payer.lower()
    return payer


class SessionLedger:
    """Thread-safe and process-safe session store"""

    def __init__(
        self,
        store_path: Optional[str] = None,
        session_ttl: float = DEFAULT_SESSION_TTL,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the ledger.

        Args:
            store_path: Optional custom path for the ledger file
            session_ttl: Default session lifetime in seconds
            clock: Source of the current time (epoch seconds)
            logger: Optional logger instance
        """
        # Use SMARTPAY_LEDGER_PATH env var or default to ~/.smartpay/sessions.json
        if store_path:
            self.store_path = Path(store_path)
        else:
            default_path = os.environ.get(
                "SMARTPAY_LEDGER_PATH",
                os.path.expanduser("~/.smartpay/sessions.json")
            )
            self.store_path = Path(default_path)

        self.session_ttl = session_ttl
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._thread_lock = threading.Lock()
        self._sweeper: Optional[threading.Thread] = None
        self._stop_sweeping = threading.Event()
        self._ensure_dir()

    def _ensure_dir(self) -> None:
        directory = self.store_path.parent
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            if os.name == 'posix':
                os.chmod(directory, stat.S_IRUSR | stat.S_IWUSR | stat.S_IXUSR)  # 0700

        if not self.store_path.exists():
            with open(self.store_path, 'w') as f:
                json.dump({"sessions": {}}, f)
            if os.name == 'posix':
                os.chmod(self.store_path, stat.S_IRUSR | stat.S_IWUSR)  # 0600

    def _get_lock_path(self) -> str:
        return str(self.store_path) + '.lock'

    @contextmanager
    def _locked(self) -> Iterator[Dict[str, Any]]:
        """Hold both locks and yield the store; changes are written back on exit"""
        with self._thread_lock, portalocker.Lock(self._get_lock_path(), timeout=10):
            data = self._read_unlocked()
            before = json.dumps(data, sort_keys=True)
            yield data
            if json.dumps(data, sort_keys=True) != before:
                with open(self.store_path, 'w') as f:
                    json.dump(data, f, indent=2)

    def _snapshot(self) -> Dict[str, Any]:
        """Read the store under a shared file lock; readers do not block each other"""
        with portalocker.Lock(
            self._get_lock_path(),
            flags=portalocker.LOCK_SH | portalocker.LOCK_NB,
            timeout=10,
        ):
            return self._read_unlocked()

    def _read_unlocked(self) -> Dict[str, Any]:
        try:
            with open(self.store_path, 'r') as f:
                data = json.load(f)
        except (json.JSONDecodeError, FileNotFoundError):
            return {"sessions": {}}
        data.setdefault("sessions", {})
        return data

    def _sessions(self) -> List[Session]:
        data = self._snapshot()
        return [Session.model_validate(s) for s in data["sessions"].values()]

    def record(
        self,
        authorization_hash: str,
        payer: str,
        amount: int = 0,
        network: Optional[str] = None,
        transaction_hash: Optional[str] = None,
        issued_at: Optional[float] = None,
        expires_at: Optional[float] = None
    ) -> Session:
        """
        Record a session for a settled authorization.

        Recording the same authorization hash again changes nothing and
        returns the session created the first time.

        Args:
            authorization_hash: Identifier of the signed authorization
            payer: Payer identity the session is granted to
            amount: Amount paid, in asset units
            network: Network the payment settled on
            transaction_hash: Settlement reference, if known
            issued_at: Issue time (defaults to now)
            expires_at: Expiry time (defaults to issue time plus the ledger TTL)

        Returns:
            The recorded session
        """
        issued = self.clock() if issued_at is None else issued_at
        expires = issued + self.session_ttl if expires_at is None else expires_at

        with self._locked() as data:
            existing = data["sessions"].get(authorization_hash)
            if existing is not None:
                self.logger.info(f"Authorization {authorization_hash[:12]}… already recorded")
                return Session.model_validate(existing)

            session = Session(
                authorization_hash=authorization_hash,
                payer_identity=payer,
                issued_at=issued,
                expires_at=expires,
                amount=amount,
                network=network,
                transaction_hash=transaction_hash,
            )
            data["sessions"][authorization_hash] = session.model_dump()

        self.logger.info(
            f"Recorded session {authorization_hash[:12]}… for {payer} until {expires:.0f}"
        )
        return session

    def get(self, authorization_hash: str) -> Optional[Session]:
        raw = self._snapshot()["sessions"].get(authorization_hash)
        return Session.model_validate(raw) if raw is not None else None

    def active_sessions(self, payer: str) -> List[Session]:
        """Unexpired sessions of ``payer``, soonest expiry first"""
        now = self.clock()
        wanted = normalize_identity(payer)
        active = [
            s for s in self._sessions()
            if normalize_identity(s.payer_identity) == wanted and not s.is_expired(now)
        ]
        return sorted(active, key=lambda s: s.expires_at)

    def is_active(self, payer: str) -> bool:
        return bool(self.active_sessions(payer))

    def can_submit(self, payer: str) -> bool:
        """True if ``payer`` holds an active session (required to submit scores)"""
        return self.is_active(payer)

    def time_remaining(self, payer: str) -> timedelta:
        """Time until the payer's last session expires; zero if none is active"""
        sessions = self.active_sessions(payer)
        if not sessions:
            return timedelta(0)
        return timedelta(seconds=sessions[-1].expires_at - self.clock())

    def purge_expired(self) -> int:
        """
        Delete expired sessions.

        Returns:
            Number of sessions removed
        """
        now = self.clock()
        with self._locked() as data:
            expired = [
                key for key, raw in data["sessions"].items()
                if Session.model_validate(raw).is_expired(now)
            ]
            for key in expired:
                del data["sessions"][key]
        if expired:
            self.logger.info(f"Purged {len(expired)} expired session(s)")
        return len(expired)

    def start_sweeper(self, interval: float = 60.0) -> None:
        """Purge expired sessions every ``interval`` seconds on a daemon thread"""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_sweeping.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            args=(interval,),
            name="session-sweeper",
            daemon=True,
        )
        self._sweeper.start()

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop_sweeping.wait(interval):
            try:
                self.purge_expired()
            except (OSError, portalocker.LockException) as e:
                self.logger.warning(f"Session sweep failed: {e}")

    def stop_sweeper(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_sweeping.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
            self._sweeper = None

    def clear(self) -> None:
        """Remove all sessions (for testing)"""
        with self._locked() as data:
            data["sessions"] = {}

    def close(self) -> None:
        self.stop_sweeper()
