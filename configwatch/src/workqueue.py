from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable

from configwatch.src.metrics import METRICS
from configwatch.src.model import WorkloadRef

# Exponent ceiling for the backoff; 2**1024 no longer converts to float.
_MAX_BACKOFF_EXPONENT = 32


class ReconcileQueue:
    """De-duplicating queue of workloads waiting for reconciliation.

    Semantics mirror a controller work queue:

    - A ref is queued at most once; adding a queued ref is a no-op.
    - A ref handed out by :meth:`get` is *processing* until :meth:`done`.
      Adding it meanwhile marks it dirty, and it is queued again on ``done``,
      so two workers never reconcile the same workload at once.
    - :meth:`add_after` parks a ref until a monotonic due-at time.
    - :meth:`add_rate_limited` delays by a per-ref exponential backoff
      (``base * 2**(failures-1)`` capped at ``max_delay``) which
      :meth:`forget` resets after a success.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[WorkloadRef] = deque()
        self._dirty: set[WorkloadRef] = set()
        self._processing: set[WorkloadRef] = set()
        self._delayed: list[tuple[float, int, WorkloadRef]] = []
        self._sequence = itertools.count()
        self._failures: dict[WorkloadRef, int] = {}
        self._shutting_down = False

    def _update_depth(self) -> None:
        METRICS.queue_depth.set(len(self._queue) + len(self._delayed))

    def _enqueue_locked(self, ref: WorkloadRef) -> None:
        if self._shutting_down or ref in self._dirty:
            return
        self._dirty.add(ref)
        if ref in self._processing:
            return
        self._queue.append(ref)
        self._update_depth()
        self._cond.notify()

    def _promote_due_locked(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, ref = heapq.heappop(self._delayed)
            self._enqueue_locked(ref)
        self._update_depth()

    def add(self, ref: WorkloadRef) -> None:
        with self._cond:
            self._enqueue_locked(ref)

    def add_after(self, ref: WorkloadRef, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(ref)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(
                self._delayed, (self._clock() + delay_seconds, next(self._sequence), ref)
            )
            self._update_depth()
            self._cond.notify()

    def backoff_delay(self, ref: WorkloadRef) -> float:
        with self._cond:
            failures = self._failures.get(ref, 0)
        if failures == 0:
            return 0.0
        exponent = min(failures - 1, _MAX_BACKOFF_EXPONENT)
        return min(self.max_delay, self.base_delay * float(2**exponent))

    def add_rate_limited(self, ref: WorkloadRef) -> float:
        """Requeue *ref* after its next backoff delay and return that delay."""
        with self._cond:
            self._failures[ref] = self._failures.get(ref, 0) + 1
        delay = self.backoff_delay(ref)
        self.add_after(ref, delay)
        return delay

    def forget(self, ref: WorkloadRef) -> None:
        with self._cond:
            self._failures.pop(ref, None)

    def failures(self, ref: WorkloadRef) -> int:
        with self._cond:
            return self._failures.get(ref, 0)

    def get(self, timeout: float | None = None) -> WorkloadRef | None:
        """Block until a ref is ready, the timeout elapses, or the queue shuts down."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_due_locked()
                if self._queue:
                    ref = self._queue.popleft()
                    self._dirty.discard(ref)
                    self._processing.add(ref)
                    self._update_depth()
                    return ref
                if self._shutting_down:
                    return None

                waits = []
                if self._delayed:
                    waits.append(max(0.0, self._delayed[0][0] - self._clock()))
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    waits.append(remaining)
                self._cond.wait(timeout=min(waits) if waits else None)

    def done(self, ref: WorkloadRef) -> None:
        with self._cond:
            self._processing.discard(ref)
            if ref in self._dirty and not self._shutting_down:
                self._queue.append(ref)
                self._update_depth()
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._queue.clear()
            self._delayed.clear()
            self._dirty.clear()
            self._update_depth()
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue) + len(self._delayed)
