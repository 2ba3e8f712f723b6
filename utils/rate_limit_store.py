"""
Keyed Rate Limit Store
Sliding-window request counting and cooldowns, keyed by (account, action)
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from config import Config
from utils.exceptions import RateLimited

logger = logging.getLogger(__name__)


# Rate limiting configurations for different actions
RATE_LIMIT_POLICIES = {
    "withdrawal": {
        "max_requests": 20,
        "window_seconds": 3600,
    },  # 20 withdrawal requests per hour
    "deposit": {
        "max_requests": 20,
        "window_seconds": 3600,
    },  # 20 deposit requests per hour
    "login": {
        "max_requests": 10,
        "window_seconds": 900,
    },  # 10 login attempts per 15 minutes
    "password_reset": {
        "max_requests": 5,
        "window_seconds": 3600,
    },  # 5 password resets per hour
    # Default
    "general": {
        "max_requests": 200,
        "window_seconds": 900,
    },  # 200 general actions per 15 minutes
}


def get_rate_limit_policy(action: str) -> dict:
    """Get rate limit configuration for an action"""
    return RATE_LIMIT_POLICIES.get(action, RATE_LIMIT_POLICIES["general"])


class KeyedRateLimitStore:
    """
    In-memory rate limiter with an injectable clock.

    Tracks request timestamps per key for sliding windows and a separate
    expiry per key for cooldowns. The number of tracked keys is bounded by
    max_keys; stale keys are evicted first, then the oldest.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None, max_keys: Optional[int] = None):
        self.clock = clock or time.monotonic
        self.max_keys = max_keys or Config.RATE_LIMIT_MAX_KEYS
        self._requests: Dict[str, List[float]] = {}  # key -> [timestamp, ...]
        self._windows: Dict[str, float] = {}  # key -> window seconds last used
        self._cooldowns: Dict[str, float] = {}  # key -> expiry timestamp

    def check_and_hit(self, key: str, limit: int, window_seconds: float) -> Tuple[bool, Optional[float]]:
        """
        Count one request against key.

        Returns:
            Tuple of (allowed, seconds_until_reset). A rejected request is not counted.
        """
        now = self.clock()
        cutoff = now - window_seconds

        # Remove expired requests
        requests = [req_time for req_time in self._requests.get(key, []) if req_time > cutoff]

        if len(requests) >= limit:
            self._requests[key] = requests
            reset_time = min(requests) + window_seconds - now
            logger.warning(f"Rate limit exceeded for {key}: {len(requests)}/{limit} in {window_seconds}s")
            return False, max(reset_time, 0.0)

        requests.append(now)
        self._requests[key] = requests
        self._windows[key] = window_seconds
        self._enforce_capacity()
        return True, None

    def cooldown(self, key: str, seconds: float) -> Tuple[bool, Optional[float]]:
        """
        Allow one action per cooldown period.

        Returns:
            Tuple of (allowed, seconds_remaining). Starting a cooldown only happens when allowed.
        """
        now = self.clock()
        expires_at = self._cooldowns.get(key)
        if expires_at is not None and expires_at > now:
            return False, expires_at - now

        self._cooldowns[key] = now + seconds
        self._enforce_capacity()
        return True, None

    def enforce(self, key: str, action: str) -> None:
        """Apply the named policy to key, raising RateLimited when exceeded"""
        policy = get_rate_limit_policy(action)
        allowed, retry_after = self.check_and_hit(key, policy["max_requests"], policy["window_seconds"])
        if not allowed:
            raise RateLimited(
                retry_after,
                f"Too many {action} requests. Please wait {int(retry_after) + 1} seconds and try again.",
            )

    def enforce_cooldown(self, key: str, seconds: Optional[float] = None) -> None:
        allowed, retry_after = self.cooldown(key, seconds if seconds is not None else Config.CONTACT_COOLDOWN_SECONDS)
        if not allowed:
            raise RateLimited(retry_after, f"Please wait {int(retry_after) + 1} seconds before trying again.")

    def evict_stale(self) -> int:
        """Drop keys whose windows and cooldowns have fully expired"""
        now = self.clock()
        removed = 0

        for key in list(self._requests):
            window = self._windows.get(key, 0)
            if not any(req_time > now - window for req_time in self._requests[key]):
                del self._requests[key]
                self._windows.pop(key, None)
                removed += 1

        for key in list(self._cooldowns):
            if self._cooldowns[key] <= now:
                del self._cooldowns[key]
                removed += 1

        if removed:
            logger.debug(f"Evicted {removed} stale rate limit keys")
        return removed

    def _enforce_capacity(self) -> None:
        if self.key_count() <= self.max_keys:
            return

        self.evict_stale()
        overflow = self.key_count() - self.max_keys
        if overflow <= 0:
            return

        # Still over capacity: drop the keys with the oldest last activity
        activity = [(max(times), 'requests', key) for key, times in self._requests.items() if times]
        activity += [(expiry, 'cooldowns', key) for key, expiry in self._cooldowns.items()]
        activity.sort()
        for _, kind, key in activity[:overflow]:
            if kind == 'requests':
                self._requests.pop(key, None)
                self._windows.pop(key, None)
            else:
                self._cooldowns.pop(key, None)
        logger.warning(f"⚠️ Rate limit store over capacity, evicted {overflow} keys")

    def key_count(self) -> int:
        return len(self._requests) + len(self._cooldowns)

    def reset(self, key_prefix: str) -> None:
        """Reset all limits for keys starting with key_prefix (admin function)"""
        for store in (self._requests, self._cooldowns):
            for key in [k for k in store if k.startswith(key_prefix)]:
                del store[key]


def rate_limit_key(account_id: int, action: str) -> str:
    return f"{account_id}:{action}"
