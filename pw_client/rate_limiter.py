# =============================================================================
# PW Client -- Token Bucket
# =============================================================================
#
# Queue-based token bucket with lazy refill.  Tokens are never refilled by a
# timer: every check rolls the window forward if it has expired, then drains
# as many queued thunks as the remaining capacity allows.  At most one timer
# is armed at a time to retry the drain.
# =============================================================================

from __future__ import annotations

import asyncio
import inspect
import math
import time

from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

from ._logging import logger
from .constants import BUCKET_INTERVAL
from .types import LatencyRef


@dataclass(slots=True)
class _QueuedSend:
    fn: Callable[[], Any]
    priority: bool


class TokenBucket:
    """Token bucket that paces queued thunks.

    At most *token_limit* thunks run per window of *interval* seconds.
    Both values may be changed while items are queued; the change applies
    to the next drain.

    Args:
        token_limit: Thunks allowed per window.
        interval: Window length in seconds (default 1.0).
        latency_ref: Shared simulated latency; sends are spaced at least
            ``latency_ref.latency`` seconds apart.
        reserved_tokens: Tokens at the top of the window that only
            priority items may use.
    """

    def __init__(
        self,
        token_limit: int,
        interval: float = BUCKET_INTERVAL,
        *,
        latency_ref: LatencyRef | None = None,
        reserved_tokens: int = 0,
    ) -> None:
        self.token_limit = token_limit
        self.interval = interval
        self.latency_ref = latency_ref or LatencyRef()
        self.reserved_tokens = reserved_tokens

        self.tokens = 0
        self.last_reset = -math.inf
        self.last_send = 0.0

        self._queue: deque[_QueuedSend] = deque()
        self._timer: asyncio.TimerHandle | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()

    # -- Properties -----------------------------------------------------------

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    # -- Public API -----------------------------------------------------------

    def queue(self, fn: Callable[[], Any], priority: bool = False) -> None:
        """Queue *fn* to run once capacity allows.

        *fn* only runs inside this call when a token is free and latency
        is zero; otherwise it is deferred to the event loop. Priority items
        go behind earlier priority items but ahead of all normal ones.
        """
        item = _QueuedSend(fn, priority)
        if priority:
            index = next(
                (i for i, queued in enumerate(self._queue) if not queued.priority),
                len(self._queue),
            )
            self._queue.insert(index, item)
        else:
            self._queue.append(item)
        self._check()

    def clear(self) -> None:
        """Drop every pending item and cancel the timer."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        dropped = len(self._queue)
        self._queue.clear()
        if dropped:
            logger.debug("Bucket cleared, dropped %d pending sends", dropped)

    def get_stats(self) -> dict[str, Any]:
        return {
            "tokens": self.tokens,
            "token_limit": self.token_limit,
            "interval": self.interval,
            "reserved_tokens": self.reserved_tokens,
            "pending": len(self._queue),
        }

    # -- Internal -------------------------------------------------------------

    def _window_end(self) -> float:
        return self.last_reset + self.interval + self.token_limit * self.latency_ref.latency

    def _check(self) -> None:
        if self._timer is not None or not self._queue:
            return

        now = time.monotonic()
        if now >= self._window_end():
            self.last_reset = now
            self.tokens = max(0, self.tokens - self.token_limit)

        latency = self.latency_ref.latency
        while self._queue and (
            self.tokens < self.token_limit - self.reserved_tokens
            or (self.tokens < self.token_limit and self._queue[0].priority)
        ):
            self.tokens += 1
            item = self._queue.popleft()
            now = time.monotonic()
            wait = latency - now + self.last_send
            if latency == 0 or wait <= 0:
                self._run(item.fn)
                self.last_send = now
            else:
                asyncio.get_running_loop().call_later(wait, self._run, item.fn)
                self.last_send = now + wait

        if self._queue:
            if self.tokens < self.token_limit and latency > 0:
                delay = latency
            else:
                delay = max(0.0, self._window_end() - time.monotonic())
            self._timer = asyncio.get_running_loop().call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._check()

    def _run(self, fn: Callable[[], Any]) -> None:
        try:
            result = fn()
        except Exception:
            logger.exception("Queued send failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)
