import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional

from warprelease.logger import get_console
from warprelease.src.core.errors import CancelledError
from warprelease.src.models.timestamps import utcnow

console = get_console()


class CancellationToken:
    """Cooperative cancellation shared between a deployment and its external calls.

    Long-running adapters register callbacks (e.g. to terminate a child
    process) and every wait goes through ``wait`` so a cancel request wakes
    it immediately.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], Any]] = []
        self.reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled by request") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                console.log(f"[yellow]Cancellation callback failed: {e}")

    def add_callback(self, callback: Callable[[], Any]) -> None:
        """Run ``callback`` on cancel, or right away if already cancelled"""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], Any]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block up to ``timeout`` seconds; True if cancelled meanwhile"""
        return self._event.wait(timeout)

    def raise_if_cancelled(self, context: Optional[dict] = None) -> None:
        if self.is_cancelled:
            raise CancelledError(self.reason or "Cancelled by request", context)


class Clock:
    """Time source for everything that waits. Tests substitute a fake."""

    def now(self) -> datetime:
        raise NotImplementedError

    def monotonic(self) -> float:
        raise NotImplementedError

    def sleep(self, seconds: float, token: Optional[CancellationToken] = None) -> bool:
        """Wait ``seconds``; returns False when interrupted by cancellation"""
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return utcnow()

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, token: Optional[CancellationToken] = None) -> bool:
        if token is None:
            time.sleep(max(seconds, 0))
            return True
        return not token.wait(max(seconds, 0))


@dataclass(frozen=True)
class PollResult:
    value: Any
    finished: bool
    elapsed: float
    polls: int

    @property
    def timed_out(self) -> bool:
        return not self.finished


def poll_until(
    fetch: Callable[[], Any],
    is_done: Callable[[Any], bool],
    interval: float,
    budget: float,
    clock: Clock,
    token: Optional[CancellationToken] = None,
    on_change: Optional[Callable[[Any], None]] = None,
) -> PollResult:
    """Call ``fetch`` every ``interval`` seconds until ``is_done`` or the budget runs out.

    The interval is fixed (no backoff) and no poll is scheduled past
    ``budget``. Raises ``CancelledError`` if ``token`` fires.
    """
    if interval <= 0:
        raise ValueError("Poll interval must be positive")
    if budget < 0:
        raise ValueError("Poll budget cannot be negative")

    start = clock.monotonic()
    polls = 0
    last_value = object()

    while True:
        if token is not None:
            token.raise_if_cancelled({"polls": polls})

        value = fetch()
        polls += 1
        if value != last_value:
            if on_change:
                on_change(value)
            last_value = value

        elapsed = clock.monotonic() - start
        if is_done(value):
            return PollResult(value=value, finished=True, elapsed=elapsed, polls=polls)
        if elapsed + interval > budget:
            return PollResult(value=value, finished=False, elapsed=elapsed, polls=polls)

        if not clock.sleep(interval, token):
            raise CancelledError(
                token.reason if token and token.reason else "Cancelled while polling",
                {"polls": polls, "last_value": value},
            )
