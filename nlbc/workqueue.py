from __future__ import annotations

import heapq
import time
from dataclasses import dataclass
from threading import Condition


@dataclass(frozen=True)
class RetryPolicy:
    base_delay_s: float = 1.0
    max_delay_s: float = 120.0
    max_attempts: int = 0  # 0 = retry forever

    def delay(self, attempt: int) -> float:
        attempt = max(1, int(attempt))
        return min(self.max_delay_s, self.base_delay_s * (2 ** (attempt - 1)))

    def gives_up(self, attempt: int) -> bool:
        return self.max_attempts > 0 and attempt >= self.max_attempts


class WorkQueue:
    """Deduplicating queue of keys with delayed adds.

    A key is queued at most once and is never handed to two workers at the
    same time. Adding a key that is being processed re-queues it after done().
    """

    def __init__(self, clock=time.monotonic) -> None:
        self._cond = Condition()
        self._clock = clock
        self._queue: list[str] = []
        self._queued: set[str] = set()
        self._processing: set[str] = set()
        self._dirty: set[str] = set()
        self._delayed: list[tuple[float, int, str]] = []
        self._seq = 0
        self._shutdown = False

    def add(self, key: str, delay_s: float = 0) -> None:
        with self._cond:
            if self._shutdown:
                return
            if delay_s > 0:
                self._seq += 1
                heapq.heappush(self._delayed, (self._clock() + delay_s, self._seq, key))
            else:
                self._enqueue(key)
            self._cond.notify_all()

    def get(self, timeout: float | None = None) -> str | None:
        """Next key to process, or None on timeout/shutdown."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_due()
                if self._shutdown:
                    return None
                if self._queue:
                    key = self._queue.pop(0)
                    self._queued.discard(key)
                    self._processing.add(key)
                    return key
                now = self._clock()
                waits = []
                if deadline is not None:
                    if now >= deadline:
                        return None
                    waits.append(deadline - now)
                if self._delayed:
                    waits.append(max(0.0, self._delayed[0][0] - now))
                self._cond.wait(min(waits) if waits else None)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self._enqueue(key)
                self._cond.notify_all()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    # Callers must hold self._cond.
    def _enqueue(self, key: str) -> None:
        if key in self._processing:
            self._dirty.add(key)
            return
        if key not in self._queued:
            self._queued.add(key)
            self._queue.append(key)

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._enqueue(key)
