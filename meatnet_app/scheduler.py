#!/usr/bin/env python3
"""
Sequential Reactor

All engine state is owned by one execution context. Transport events, API
calls and timers are funnelled through a Scheduler so nothing is mutated
concurrently:

    transport thread ──┐
    API thread ────────┼── submit() ──► reactor thread ──► engine
    timers (heap) ─────┘

Scheduler holds the timer heap and guarded callback execution; subclasses
decide what "now" is and where submitted work runs. ThreadedScheduler runs a
dedicated daemon thread on the wall clock.
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from typing import Any, Callable, List, Optional


class TimerHandle:
    """Cancellable one-shot or repeating timer."""

    def __init__(self, when: float, callback: Callable, args: tuple,
                 interval: Optional[float], seq: int):
        self.when = when
        self.callback = callback
        self.args = args
        self.interval = interval
        self.cancelled = False
        self._seq = seq

    def cancel(self):
        self.cancelled = True

    def __lt__(self, other: "TimerHandle") -> bool:
        return (self.when, self._seq) < (other.when, other._seq)

    def __repr__(self) -> str:
        name = getattr(self.callback, "__name__", repr(self.callback))
        state = "cancelled" if self.cancelled else f"at {self.when:.3f}"
        return f"<TimerHandle {name} {state}>"


class Scheduler:
    """Base reactor: timer heap plus guarded execution of callbacks."""

    def __init__(self):
        self.logger = logging.getLogger("Scheduler")
        self._lock = threading.RLock()
        self._timers: List[TimerHandle] = []
        self._counter = itertools.count()

    # -------------------------------------------------------------------------
    # Interface
    # -------------------------------------------------------------------------

    def now(self) -> float:
        raise NotImplementedError

    def submit(self, callback: Callable, *args):
        """Run callback(*args) on the reactor. Safe to call from any thread."""
        raise NotImplementedError

    def start(self):
        pass

    def stop(self):
        pass

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    def call_later(self, delay: float, callback: Callable, *args) -> TimerHandle:
        """Run callback once after delay seconds."""
        handle = TimerHandle(self.now() + max(delay, 0.0), callback, args, None, next(self._counter))
        self._push(handle)
        return handle

    def call_every(self, interval: float, callback: Callable, *args) -> TimerHandle:
        """Run callback every interval seconds until cancelled."""
        if interval <= 0:
            raise ValueError(f"Interval must be positive: {interval}")
        handle = TimerHandle(self.now() + interval, callback, args, interval, next(self._counter))
        self._push(handle)
        return handle

    def call(self, callback: Callable, *args) -> Future:
        """Run callback on the reactor and return a Future with its result."""
        future: Future = Future()

        def run():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(callback(*args))
            except Exception as e:
                future.set_exception(e)

        self.submit(run)
        return future

    def pending_timers(self) -> int:
        with self._lock:
            return sum(1 for t in self._timers if not t.cancelled)

    def _push(self, handle: TimerHandle):
        with self._lock:
            heapq.heappush(self._timers, handle)
            self._wakeup()

    def _wakeup(self):
        pass

    def _next_deadline(self) -> Optional[float]:
        with self._lock:
            while self._timers and self._timers[0].cancelled:
                heapq.heappop(self._timers)
            return self._timers[0].when if self._timers else None

    def _pop_due(self, now: float) -> Optional[TimerHandle]:
        with self._lock:
            while self._timers:
                handle = self._timers[0]
                if handle.cancelled:
                    heapq.heappop(self._timers)
                    continue
                if handle.when > now:
                    return None
                heapq.heappop(self._timers)
                if handle.interval is not None:
                    handle.when = max(handle.when + handle.interval, now)
                    heapq.heappush(self._timers, handle)
                return handle
            return None

    def _run_timer(self, handle: TimerHandle):
        if handle.cancelled:
            return
        self._run(handle.callback, *handle.args)

    def _run(self, callback: Callable, *args) -> Any:
        try:
            return callback(*args)
        except Exception:
            self.logger.exception(f"Scheduled callback {getattr(callback, '__name__', callback)} failed")
            return None


class ThreadedScheduler(Scheduler):
    """Reactor running on a dedicated daemon thread."""

    def __init__(self, name: str = "meatnet-reactor"):
        super().__init__()
        self.name = name
        self.running = False
        self._queue: deque = deque()
        self._cond = threading.Condition(self._lock)
        self._thread: Optional[threading.Thread] = None

    def now(self) -> float:
        return time.time()

    def submit(self, callback: Callable, *args):
        with self._cond:
            self._queue.append((callback, args))
            self._cond.notify()

    def _wakeup(self):
        self._cond.notify()

    def start(self):
        if self.running:
            return
        self.running = True
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        self.logger.debug(f"Reactor {self.name} started")

    def stop(self, timeout: float = 2.0):
        with self._cond:
            self.running = False
            self._cond.notify()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None
        self.logger.debug(f"Reactor {self.name} stopped")

    def in_reactor(self) -> bool:
        return threading.current_thread() is self._thread

    def _loop(self):
        while True:
            with self._cond:
                while self.running and not self._queue:
                    deadline = self._next_deadline()
                    if deadline is None:
                        self._cond.wait()
                        continue
                    delay = deadline - self.now()
                    if delay <= 0:
                        break
                    self._cond.wait(delay)
                if not self.running:
                    return
                work = list(self._queue)
                self._queue.clear()

            for callback, args in work:
                self._run(callback, *args)

            now = self.now()
            while True:
                handle = self._pop_due(now)
                if handle is None:
                    break
                self._run_timer(handle)
