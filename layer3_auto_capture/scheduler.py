"""
Layer 3 — Scheduling
One-shot delayed callbacks with explicit cancellation.

ThreadingScheduler runs callbacks on timer threads in production.
VirtualScheduler keeps a virtual clock that only moves when advance() is
called, so tests and offline replays never wait on real delays.
"""
import heapq
import itertools
import logging
import threading
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

PENDING = 'pending'
FIRED = 'fired'
CANCELLED = 'cancelled'


class TimerHandle:
    """
    Handle for one scheduled callback.
    A handle leaves PENDING exactly once, either by firing or by cancellation.
    """

    def __init__(self, callback: Callable[[], None], due: float = 0.0):
        self._callback = callback
        self._status = PENDING
        self._lock = threading.Lock()
        self.due = due

    @property
    def status(self) -> str:
        return self._status

    @property
    def pending(self) -> bool:
        return self._status == PENDING

    @property
    def fired(self) -> bool:
        return self._status == FIRED

    @property
    def cancelled(self) -> bool:
        return self._status == CANCELLED

    def cancel(self) -> bool:
        """
        Cancel the callback if it has not started.

        Returns:
            bool: True if this call cancelled it, False if it had already
            fired or been cancelled
        """
        with self._lock:
            if self._status != PENDING:
                return False
            self._status = CANCELLED
        return True

    def run(self):
        """Fire the callback unless the handle was cancelled first."""
        with self._lock:
            if self._status != PENDING:
                return
            self._status = FIRED
        self._callback()

    def __repr__(self):
        return f"TimerHandle(status={self._status!r}, due={self.due:.3f})"


class _ThreadTimerHandle(TimerHandle):
    """TimerHandle backed by a threading.Timer."""

    def __init__(self, callback: Callable[[], None], due: float = 0.0):
        super().__init__(callback, due)
        self.timer: Optional[threading.Timer] = None

    def cancel(self) -> bool:
        cancelled = super().cancel()
        if cancelled and self.timer is not None:
            self.timer.cancel()
        return cancelled


class ThreadingScheduler:
    """Schedules callbacks on daemon timer threads."""

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        """
        Run ``callback`` once after ``delay_seconds``.

        Returns:
            TimerHandle: Handle used to cancel the callback
        """
        handle = _ThreadTimerHandle(callback)
        timer = threading.Timer(delay_seconds, handle.run)
        timer.daemon = True
        handle.timer = timer
        timer.start()
        logger.debug(f"Scheduled callback in {delay_seconds * 1000:.0f} ms")
        return handle


class VirtualScheduler:
    """
    Scheduler driven by a virtual clock.
    Callbacks run synchronously inside advance(), in due-time order.
    """

    def __init__(self, start: float = 0.0):
        self.now = start
        self._queue: List[Tuple[float, int, TimerHandle]] = []
        self._sequence = itertools.count()

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        """Queue ``callback`` to fire once the clock reaches now + delay."""
        due = self.now + delay_seconds
        handle = TimerHandle(callback, due)
        heapq.heappush(self._queue, (due, next(self._sequence), handle))
        return handle

    def advance(self, seconds: float) -> int:
        """
        Move the clock forward, firing every callback that falls due.

        Returns:
            int: Number of callbacks that actually ran
        """
        target = self.now + seconds
        ran = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, handle = heapq.heappop(self._queue)
            self.now = due
            if handle.pending:
                handle.run()
                ran += 1
        self.now = target
        return ran

    @property
    def pending_count(self) -> int:
        """Number of scheduled callbacks still waiting to fire."""
        return sum(1 for _, _, handle in self._queue if handle.pending)
