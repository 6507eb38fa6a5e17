# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Deduplicating, rate-limited work queue.

A key is queued at most once. A key that is being processed is not handed
to a second worker: enqueueing it again marks it dirty, and it is requeued
when the current worker calls `done`. This both serializes passes per key
and collapses bursts of events into a single pass.
"""

from __future__ import annotations

import collections
import heapq
import itertools
import logging
import threading
import time
from typing import Callable, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class WorkQueue(Generic[K]):
    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._clock = clock

        self._cond = threading.Condition()
        self._queue: collections.deque[K] = collections.deque()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._failures: dict[K, int] = {}
        # (ready_at, seq, key); `_ready_at` holds the live deadline per key.
        self._waiting: list[tuple[float, int, K]] = []
        self._ready_at: dict[K, float] = {}
        self._seq = itertools.count()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutdown

    def enqueue(self, key: K) -> None:
        with self._cond:
            self._add(key)

    def _add(self, key: K) -> None:
        if self._shutdown or key in self._dirty:
            return
        self._dirty.add(key)
        self._ready_at.pop(key, None)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def enqueue_after(self, key: K, delay: float) -> None:
        """Enqueue `key` once `delay` seconds have passed.

        If the key is already waiting with an earlier deadline, the earlier
        deadline is kept. A key that is backing off after failures keeps
        the later deadline instead, so events cannot cut its backoff short.
        """
        with self._cond:
            backing_off = self._failures.get(key, 0) > 0
            if delay <= 0 and not backing_off:
                self._add(key)
                return
            if self._shutdown or key in self._dirty:
                return
            ready_at = self._clock() + max(delay, 0)
            current = self._ready_at.get(key)
            if current is not None and (current >= ready_at if backing_off else current <= ready_at):
                return
            self._schedule(key, ready_at)

    def _schedule(self, key: K, ready_at: float) -> None:
        self._ready_at[key] = ready_at
        heapq.heappush(self._waiting, (ready_at, next(self._seq), key))
        self._cond.notify_all()

    def enqueue_rate_limited(self, key: K) -> float:
        """Requeue a failed key after an exponential backoff. Returns the delay.

        The backoff replaces any deadline the key is already waiting for.
        """
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
            delay = min(self._base_delay * (2**failures), self._max_delay)
            if not (self._shutdown or key in self._dirty):
                self._schedule(key, self._clock() + delay)
        return delay

    def forget(self, key: K) -> None:
        """Reset the failure count of `key`."""
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: K) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_ready(self) -> float | None:
        """Move due keys to the queue; return seconds until the next deadline."""
        now = self._clock()
        while self._waiting:
            ready_at, _, key = self._waiting[0]
            if self._ready_at.get(key) != ready_at:
                heapq.heappop(self._waiting)
                continue
            if ready_at > now:
                return ready_at - now
            heapq.heappop(self._waiting)
            self._ready_at.pop(key, None)
            self._add(key)
        return None

    def dequeue(self, timeout: float | None = None) -> K | None:
        """Block until a key is ready and mark it as being processed.

        Returns None after shutdown, or when `timeout` expires.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                wait = self._promote_ready()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutdown:
                    return None
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: K) -> None:
        """Finish processing `key`, requeueing it if it was enqueued meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()
