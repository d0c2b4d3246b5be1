"""
Fixed-window rate limiter for destructive actions.

Each destructive action name gets its own window. A window starts on the
first call, counts up to max_calls, and is replaced (not reset in place)
once the clock reaches its reset time. Non-destructive actions never touch
the limiter state.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from ulyssesmcp.actions import ActionRegistry
from ulyssesmcp.config import RateLimitConfig
from ulyssesmcp.errors import RateLimited

logger = logging.getLogger(__name__)


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass
class RateWindow:
    """Counter for one action within one fixed window."""
    count: int
    reset_at_ms: float


class FixedWindowRateLimiter:
    """Per-action fixed-window limiter, mutated only from the event loop thread."""

    def __init__(
        self,
        registry: ActionRegistry,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self.registry = registry
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._windows: dict[str, RateWindow] = {}

    def check_and_consume(self, action_name: str) -> None:
        """
        Consume one slot for ``action_name`` or raise RateLimited.

        A rejected call leaves the window untouched.
        """
        action = self.registry.get(action_name)
        if action is None or not action.is_destructive:
            return

        now = self._clock()
        window = self._windows.get(action_name)

        if window is None or now >= window.reset_at_ms:
            self._windows[action_name] = RateWindow(
                count=1,
                reset_at_ms=now + self.config.window_ms,
            )
            return

        if window.count >= self.config.max_calls:
            retry_after = max(0, int(window.reset_at_ms - now))
            logger.warning(
                f"Rate limit exceeded for {action_name}: "
                f"{window.count}/{self.config.max_calls}, retry in {retry_after} ms"
            )
            raise RateLimited(action_name, retry_after)

        window.count += 1

    def window_for(self, action_name: str) -> RateWindow | None:
        """Current window for ``action_name``, if one was ever opened."""
        return self._windows.get(action_name)
