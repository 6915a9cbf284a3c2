"""Single-owner execution loops for a peer process.

All transport callbacks are marshaled onto one logical thread before any
shared state is touched:

- ThreadLoop: a worker thread draining a FIFO queue; timers are
  threading.Timer objects that post their callback back onto the worker.
- ManualLoop: deterministic; posts run inline (FIFO, never nested) and timers
  fire only when the virtual clock is advanced. Used by tests and `simulate`.

KeyedTimers layers generation counters on top of either loop so a superseded
timer can detect that it is stale and no-op.
"""
from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple


logger = logging.getLogger("pairlink.loop")


class TimerHandle:
    def __init__(self, when: float) -> None:
        self.when = when
        self._cancelled = False
        self._timer: Optional[threading.Timer] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()


class Loop(ABC):
    @abstractmethod
    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        """Run fn(*args) on the owner thread, after everything already posted."""

    @abstractmethod
    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> TimerHandle:
        """Post fn(*args) once `delay` seconds have elapsed."""

    @abstractmethod
    def now(self) -> float:
        """Monotonic seconds."""

    def _run(self, fn: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("loop callback failed: %r", fn)


class ThreadLoop(Loop):
    """Owner thread fed by a queue. Start it before posting."""

    def __init__(self, name: str = "pairlink-loop") -> None:
        self._name = name
        self._queue: "queue.Queue[Optional[Tuple[Callable[..., Any], Tuple[Any, ...]]]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._timers: List[TimerHandle] = []

    def start(self) -> "ThreadLoop":
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return self
            self._thread = threading.Thread(target=self._worker, name=self._name, daemon=True)
            self._thread.start()
        return self

    def stop(self, timeout: float = 2.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
            timers, self._timers = self._timers, []
        for h in timers:
            h.cancel()
        if thread is None:
            return
        self._queue.put(None)
        if thread is not threading.current_thread():
            thread.join(timeout)

    def is_owner_thread(self) -> bool:
        return self._thread is threading.current_thread()

    def _worker(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                return
            fn, args = item
            self._run(fn, args)

    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        self._queue.put((fn, args))

    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> TimerHandle:
        delay = max(0.0, float(delay))
        handle = TimerHandle(self.now() + delay)

        def _fire() -> None:
            with self._lock:
                if handle in self._timers:
                    self._timers.remove(handle)
            if not handle.cancelled:
                self.post(fn, *args)

        timer = threading.Timer(delay, _fire)
        timer.daemon = True
        handle._timer = timer
        with self._lock:
            self._timers.append(handle)
        timer.start()
        return handle

    def now(self) -> float:
        return time.monotonic()


class ManualLoop(Loop):
    """Deterministic loop with a virtual clock."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self._pending: Deque[Tuple[Callable[..., Any], Tuple[Any, ...]]] = deque()
        self._timers: List[Tuple[float, int, TimerHandle, Callable[..., Any], Tuple[Any, ...]]] = []
        self._seq = itertools.count()
        self._draining = False

    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        self._pending.append((fn, args))
        if not self._draining:
            self.run_pending()

    def run_pending(self) -> int:
        ran = 0
        self._draining = True
        try:
            while self._pending:
                fn, args = self._pending.popleft()
                self._run(fn, args)
                ran += 1
        finally:
            self._draining = False
        return ran

    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> TimerHandle:
        when = self._now + max(0.0, float(delay))
        handle = TimerHandle(when)
        heapq.heappush(self._timers, (when, next(self._seq), handle, fn, args))
        return handle

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due timers in order. Returns how many fired."""
        target = self._now + max(0.0, float(seconds))
        fired = 0
        while self._timers and self._timers[0][0] <= target:
            when, _, handle, fn, args = heapq.heappop(self._timers)
            self._now = max(self._now, when)
            if handle.cancelled:
                continue
            fired += 1
            self.post(fn, *args)
        self._now = target
        return fired

    def pending_timers(self) -> int:
        return sum(1 for t in self._timers if not t[2].cancelled)


class KeyedTimers:
    """Single-shot timers keyed by name with a generation counter per key.

    With `supersede=True` scheduling a key again makes older timers for that
    key stale: they still fire but no-op. With `supersede=False` every timer
    runs, so a late one may clobber newer state.
    """

    def __init__(self, loop: Loop, *, supersede: bool = True) -> None:
        self._loop = loop
        self._supersede = supersede
        self._generations: Dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def loop(self) -> Loop:
        return self._loop

    @property
    def supersede(self) -> bool:
        return self._supersede

    def schedule(self, key: str, delay: float, fn: Callable[[], Any]) -> int:
        with self._lock:
            gen = self._generations.get(key, 0) + 1
            self._generations[key] = gen

        def _fire() -> None:
            if self._supersede and not self.is_current(key, gen):
                logger.debug("stale timer skipped: %s gen=%s", key, gen)
                return
            fn()

        self._loop.call_later(delay, _fire)
        return gen

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._generations[key] = self._generations.get(key, 0) + 1

    def is_current(self, key: str, gen: int) -> bool:
        with self._lock:
            return self._generations.get(key, 0) == gen
