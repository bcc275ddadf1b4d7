"""
Rate Limiter for the Program Engine.

Fixed-window counters keyed by (user, action), kept in a ``limits``
memory storage. Windows and maximums come from RATE_LIMITS, overridable
through the engine config either as ``{"max_actions", "window_seconds"}``
dicts or as rate strings such as ``"10/hour"``.
"""

import logging
import math
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from limits import RateLimitItem, RateLimitItemPerSecond, parse
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

from ..exceptions import RateLimitedError

logger = logging.getLogger(__name__)

HOUR_SECONDS = 60 * 60

RATE_LIMITS: Dict[str, Dict[str, int]] = {
    "process.create": {"max_actions": 10, "window_seconds": HOUR_SECONDS},
    "notification.create": {"max_actions": 50, "window_seconds": HOUR_SECONDS},
    "event.create": {"max_actions": 20, "window_seconds": HOUR_SECONDS},
    "access_gate.attempt": {"max_actions": 5, "window_seconds": HOUR_SECONDS},
    "default": {"max_actions": 100, "window_seconds": HOUR_SECONDS},
}


def _to_item(limit: Any) -> RateLimitItem:
    if isinstance(limit, str):
        return parse(limit)
    return RateLimitItemPerSecond(int(limit["max_actions"]), int(limit["window_seconds"]))


class RateLimitStatus:
    """Result of a rate limit check."""

    def __init__(self, allowed: bool, remaining: int, reset_at: float):
        self.allowed = allowed
        self.remaining = remaining
        self.reset_at = reset_at

    @property
    def reset_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.reset_at, tz=timezone.utc)

    def __bool__(self):
        return self.allowed

    def __repr__(self):
        return f"RateLimitStatus(allowed={self.allowed}, remaining={self.remaining})"


class RateLimiter:
    """
    In-process fixed-window rate limiter.

    Action keys may carry a suffix after the last dot-separated family
    (``access_gate.attempt.<block_id>``); limits are looked up by the
    longest configured prefix, falling back to ``default``. Expired
    windows are evicted by the storage.
    """

    def __init__(self, limits: Optional[Dict[str, Any]] = None):
        self.limits = dict(RATE_LIMITS)
        if limits:
            self.limits.update(limits)
        self._items: Dict[str, RateLimitItem] = {
            name: _to_item(limit) for name, limit in self.limits.items()
        }
        self.storage = MemoryStorage()
        self.strategy = FixedWindowRateLimiter(self.storage)
        self._actions: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def _item_for(self, action: str) -> RateLimitItem:
        key = action
        while key:
            if key in self._items:
                return self._items[key]
            key = key.rpartition(".")[0]
        return self._items["default"]

    def _status(self, item: RateLimitItem, user_id: str, action: str, allowed: bool) -> RateLimitStatus:
        reset_at, remaining = self.strategy.get_window_stats(item, user_id, action)
        return RateLimitStatus(allowed, int(remaining) if allowed else 0, float(reset_at))

    def _track(self, user_id: str, action: str):
        with self._lock:
            self._actions.setdefault(user_id, set()).add(action)

    def check_limit(self, user_id: str, action: str) -> RateLimitStatus:
        """
        Count one action against the window.

        Args:
            user_id: User performing the action
            action: Action key, e.g. "process.create"

        Returns:
            RateLimitStatus with allowed flag, remaining count and reset time
        """
        item = self._item_for(action)
        self._track(user_id, action)
        allowed = self.strategy.hit(item, user_id, action)
        if not allowed:
            logger.warning(f"Rate limit hit for user {user_id} on {action}")
        return self._status(item, user_id, action, allowed)

    def get_status(self, user_id: str, action: str) -> RateLimitStatus:
        """Inspect the current window without counting an action."""
        item = self._item_for(action)
        return self._status(item, user_id, action, self.strategy.test(item, user_id, action))

    def record(self, user_id: str, action: str):
        """Count an action unconditionally."""
        self._track(user_id, action)
        self.strategy.hit(self._item_for(action), user_id, action)

    def require(self, user_id: str, action: str):
        """
        Count an action, raising when the window is exhausted.

        Raises:
            RateLimitedError: If the user has no actions left in the window
        """
        status = self.check_limit(user_id, action)
        if not status.allowed:
            raise self._limited_error(action, status)

    def ensure_available(self, user_id: str, action: str):
        """Raise if the window is exhausted, without counting an action."""
        status = self.get_status(user_id, action)
        if not status.allowed:
            raise self._limited_error(action, status)

    def _limited_error(self, action: str, status: RateLimitStatus) -> RateLimitedError:
        reset_in = max(1, math.ceil((status.reset_at - time.time()) / 60))
        return RateLimitedError(
            f"Rate limit exceeded for {action}. Try again in {reset_in} minutes.",
            reset_at=status.reset_at_datetime,
        )

    def reset(self, user_id: Optional[str] = None):
        """Clear counters for one user, or for everyone."""
        with self._lock:
            if user_id is None:
                self.storage.reset()
                self._actions.clear()
                return
            actions = self._actions.pop(user_id, set())
        for action in actions:
            self.strategy.clear(self._item_for(action), user_id, action)
