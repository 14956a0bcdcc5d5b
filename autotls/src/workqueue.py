from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Hashable


class WorkQueue:
    """Thread-safe queue of object keys with delayed adds.

    Semantics follow the client-go rate-limited work queue:

    * a key is queued at most once no matter how often it is added;
    * a key handed out by :meth:`get` is not handed out again until
      :meth:`done` is called for it, so one object is never processed by two
      workers at the same time;
    * a key added while it is being processed is queued again on
      :meth:`done`;
    * :meth:`add_after` keeps the earliest pending deadline per key.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._delayed: dict[Hashable, float] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._dirty.union(self._delayed))

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _add_locked(self, key: Hashable) -> None:
        self._delayed.pop(key, None)
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def _promote_due_locked(self, now: float) -> None:
        due = [key for key, due_at in self._delayed.items() if due_at <= now]
        for key in due:
            self._add_locked(key)

    def add(self, key: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(key)

    def add_after(self, key: Hashable, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay_seconds
            existing = self._delayed.get(key)
            if existing is None or due_at < existing:
                self._delayed[key] = due_at
                self._cond.notify()

    def discard(self, key: Hashable) -> None:
        """Cancel a pending delayed add for *key*."""
        with self._cond:
            self._delayed.pop(key, None)

    def pending_delay(self, key: Hashable) -> float | None:
        """Seconds until the delayed add for *key* fires, or ``None``."""
        with self._cond:
            due_at = self._delayed.get(key)
            if due_at is None:
                return None
            return max(0.0, due_at - self._clock())

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is ready and mark it as processing.

        Returns ``None`` when *timeout* expires or the queue is shut down.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                now = self._clock()
                self._promote_due_locked(now)
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutting_down:
                    return None

                waits = [due_at - now for due_at in self._delayed.values()]
                if deadline is not None:
                    if deadline <= now:
                        return None
                    waits.append(deadline - now)
                self._cond.wait(timeout=min(waits) if waits else None)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        """Wake every waiting worker; queued and delayed keys are dropped."""
        with self._cond:
            self._shutting_down = True
            self._queue.clear()
            self._dirty.clear()
            self._delayed.clear()
            self._cond.notify_all()
