"""
1.0 Rate Limiter
Suppresses repeat notifications for the same problem inside a cooldown window.

Key features:
- Atomic check-and-set (acquire) so concurrent requests for one broken URL
  produce at most one notification
- In-memory store for a single process
- JSON file store that survives restarts (expiry timestamps only)
- Pluggable policies: hourly cooldown (default) or no rate limiting
"""

import json
import logging
import os
import threading
import time
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 3600

Clock = Callable[[], float]


class InMemoryRateLimitStore:
    """
    2.0 Suppression keys held in process memory.

    Each key maps to an expiry timestamp (epoch seconds). Expired keys are
    treated as absent and pruned lazily.
    """

    def __init__(self, clock: Clock = time.time):
        self.clock = clock
        self._expiries: Dict[str, float] = {}
        self._lock = threading.Lock()

    def acquire(self, key: str, ttl_seconds: float) -> bool:
        """
        2.1 Set the key if it is absent or expired.

        Returns True if the caller now holds the key (and may notify),
        False if the key is still active.
        """
        with self._lock:
            now = self.clock()
            expires_at = self._expiries.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._expiries[key] = now + ttl_seconds
            self._on_change()
            return True

    def release(self, key: str) -> None:
        """2.2 Drop a key so the next occurrence is reported again."""
        with self._lock:
            if self._expiries.pop(key, None) is not None:
                self._on_change()

    def is_active(self, key: str) -> bool:
        with self._lock:
            expires_at = self._expiries.get(key)
            return expires_at is not None and expires_at > self.clock()

    def clear(self) -> None:
        """2.3 Drop every key."""
        with self._lock:
            self._expiries.clear()
            self._on_change()

    def _on_change(self) -> None:
        """Hook called with the lock held after every mutation."""
        now = self.clock()
        for key in [k for k, expires_at in self._expiries.items() if expires_at <= now]:
            del self._expiries[key]


class JsonFileRateLimitStore(InMemoryRateLimitStore):
    """
    3.0 Suppression keys persisted to a JSON file.

    Only expiry timestamps are written. The file is read once at startup
    and rewritten on every change, so a restart does not re-send alerts
    that are still inside their cooldown window.
    """

    def __init__(self, state_file: str, clock: Clock = time.time):
        super().__init__(clock=clock)
        self.state_file = state_file
        self._expiries = self._load_state()

    def _load_state(self) -> Dict[str, float]:
        """3.1 Load suppression state from file."""
        if not os.path.exists(self.state_file):
            return {}
        try:
            with open(self.state_file, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load rate limit state from {self.state_file}: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring rate limit state in {self.state_file}: expected a JSON object")
            return {}

        now = self.clock()
        return {
            str(key): float(expires_at)
            for key, expires_at in data.items()
            if isinstance(expires_at, (int, float)) and expires_at > now
        }

    def _save_state(self) -> None:
        """3.2 Save suppression state to file."""
        directory = os.path.dirname(self.state_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.state_file}.tmp"
        try:
            with open(tmp_path, 'w') as f:
                json.dump(self._expiries, f, indent=2)
            os.replace(tmp_path, self.state_file)
        except OSError as e:
            logger.error(f"Could not save rate limit state to {self.state_file}: {e}")

    def _on_change(self) -> None:
        super()._on_change()
        self._save_state()


class CooldownPolicy:
    """
    4.0 One notification per key per cooldown window.

    A repeat inside the window is suppressed; a new, distinct key is
    reported immediately.
    """

    name = "cooldown"

    def __init__(self, store: Optional[InMemoryRateLimitStore] = None,
                 cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS):
        self.store = store if store is not None else InMemoryRateLimitStore()
        self.cooldown_seconds = cooldown_seconds

    def try_acquire(self, key: str) -> bool:
        return self.store.acquire(key, self.cooldown_seconds)

    def release(self, key: str) -> None:
        self.store.release(key)


class NoRateLimitPolicy:
    """4.1 Every qualifying event is reported."""

    name = "none"

    def try_acquire(self, key: str) -> bool:
        return True

    def release(self, key: str) -> None:
        pass


def build_policy(policy_name: str, cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
                 state_file: str = "", clock: Clock = time.time):
    """
    5.0 Create the rate-limit policy named in configuration.

    Args:
        policy_name: "cooldown" or "none"
        cooldown_seconds: Window length for the cooldown policy
        state_file: Optional JSON path; empty keeps state in memory
        clock: Time source (epoch seconds)
    """
    if policy_name == "none":
        logger.info("Rate limiting disabled: every qualifying error is reported")
        return NoRateLimitPolicy()

    if state_file:
        store = JsonFileRateLimitStore(state_file, clock=clock)
    else:
        store = InMemoryRateLimitStore(clock=clock)
    logger.info(f"Rate limiting: {cooldown_seconds}s cooldown per distinct error")
    return CooldownPolicy(store, cooldown_seconds=cooldown_seconds)
