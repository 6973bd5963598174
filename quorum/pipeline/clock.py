# quorum/pipeline/clock.py
"""
Timer facility used by the stage pipeline.

ThreadingClock fires callbacks on background threading.Timer threads.
ManualClock keeps a min-heap of due callbacks and only fires them when the
caller advances simulated time, which makes stage timing deterministic.
"""
import heapq
import itertools
import threading
from datetime import datetime, timedelta, timezone


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimerHandle:
    """Cancellable reference to one scheduled callback."""

    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class _ThreadTimerHandle(TimerHandle):
    def __init__(self, timer: threading.Timer):
        super().__init__()
        self._timer = timer

    def cancel(self) -> None:
        super().cancel()
        self._timer.cancel()


class ThreadingClock:
    def now(self) -> datetime:
        return _utc_now()

    def call_later(self, delay: float, callback) -> TimerHandle:
        timer = threading.Timer(max(0.0, float(delay)), callback)
        timer.daemon = True
        handle = _ThreadTimerHandle(timer)
        timer.start()
        return handle


class ManualClock:
    """
    Simulated clock. Callbacks run synchronously inside advance()/run_all(),
    ordered by due time and then by scheduling order.
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._heap = []
        self._seq = itertools.count()
        self._lock = threading.RLock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def call_later(self, delay: float, callback) -> TimerHandle:
        handle = TimerHandle()
        with self._lock:
            due = self._now + timedelta(seconds=max(0.0, float(delay)))
            heapq.heappush(self._heap, (due, next(self._seq), handle, callback))
        return handle

    @property
    def pending(self) -> int:
        with self._lock:
            return sum(1 for (_, _, h, _) in self._heap if not h.cancelled)

    def _pop_due(self, until: datetime | None):
        with self._lock:
            while self._heap:
                due, _, handle, callback = self._heap[0]
                if until is not None and due > until:
                    return None
                heapq.heappop(self._heap)
                if handle.cancelled:
                    continue
                if due > self._now:
                    self._now = due
                return callback
            return None

    def advance(self, seconds: float) -> int:
        """Move time forward, firing every callback that falls due. Returns the count fired."""
        with self._lock:
            target = self._now + timedelta(seconds=float(seconds))
        fired = 0
        while True:
            callback = self._pop_due(target)
            if callback is None:
                break
            callback()
            fired += 1
        with self._lock:
            if target > self._now:
                self._now = target
        return fired

    def run_all(self, limit: int = 10000) -> int:
        """Fire callbacks until none are pending."""
        fired = 0
        while fired < limit:
            callback = self._pop_due(None)
            if callback is None:
                break
            callback()
            fired += 1
        return fired
