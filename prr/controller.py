from __future__ import annotations

import heapq
import itertools
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Condition, Event, Lock, Thread
from typing import Callable, Iterator

from . import db
from .errors import ErrorKind
from .reconciler import ReconcileResult, Reconciler
from .settings import settings
from .workloads import WorkloadKey, WorkloadStore


class WorkQueue:
    """Coalescing work queue keyed by workload.

    - a key is queued at most once, however often it is added
    - a key handed out by get() is not handed out again until done(); adds
      arriving meanwhile mark it dirty and re-queue it on done()
    - add_after() keeps only the earliest pending due time per key
    """

    def __init__(self, now_fn: Callable[[], float] = time.monotonic):
        self._now = now_fn
        self._cond = Condition()
        self._queue: deque[WorkloadKey] = deque()
        self._queued: set[WorkloadKey] = set()
        self._processing: set[WorkloadKey] = set()
        self._dirty: set[WorkloadKey] = set()
        self._delayed: list[tuple[float, int, WorkloadKey]] = []
        self._due: dict[WorkloadKey, float] = {}
        self._seq = itertools.count()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutdown

    def _enqueue(self, key: WorkloadKey) -> None:
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(key)
        self._cond.notify()

    def add(self, key: WorkloadKey) -> None:
        with self._cond:
            if self._shutdown:
                return
            self._enqueue(key)

    def add_after(self, key: WorkloadKey, delay_s: float) -> None:
        if delay_s <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            due = self._now() + delay_s
            current = self._due.get(key)
            if current is not None and current <= due:
                return
            self._due[key] = due
            heapq.heappush(self._delayed, (due, next(self._seq), key))
            self._cond.notify()

    def _promote_due(self) -> float | None:
        """Move due keys onto the queue; return seconds until the next one."""
        now = self._now()
        while self._delayed:
            due, _, key = self._delayed[0]
            if self._due.get(key) != due:
                # superseded by an earlier add_after
                heapq.heappop(self._delayed)
                continue
            if due > now:
                return due - now
            heapq.heappop(self._delayed)
            del self._due[key]
            self._enqueue(key)
        return None

    def get(self, timeout: float | None = None) -> WorkloadKey | None:
        """Block until a key is ready; None on shutdown or timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                wait_s = self._promote_due()
                if self._queue:
                    key = self._queue.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutdown:
                    return None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait_s = remaining if wait_s is None else min(wait_s, remaining)
                self._cond.wait(wait_s)

    def done(self, key: WorkloadKey) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                if not self._shutdown:
                    self._enqueue(key)

    def shut_down(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()


@dataclass
class _KeyLock:
    lock: Lock = field(default_factory=Lock)
    users: int = 0


class Controller:
    """Feeds workload keys to the reconciler from a bounded pool of workers.

    A poller lists the managed workloads every ``poll_interval_s`` and queues
    them; results decide when a key comes back (requested delay, or
    exponential backoff on errors).
    Stores that can stream changes (a ``watch(on_change, stop)`` method) get
    a watcher thread as well, and the poll becomes a periodic resync.
    """

    def __init__(
        self,
        store: WorkloadStore,
        reconciler: Reconciler,
        workers: int | None = None,
        poll_interval_s: float | None = None,
        backoff_base_s: float | None = None,
        backoff_max_s: float | None = None,
    ):
        self.store = store
        self.reconciler = reconciler
        self.workers = max(1, int(settings.workers if workers is None else workers))
        self.poll_interval_s = max(0.1, float(settings.poll_interval_s if poll_interval_s is None else poll_interval_s))
        self.backoff_base_s = float(settings.backoff_base_s if backoff_base_s is None else backoff_base_s)
        self.backoff_max_s = float(settings.backoff_max_s if backoff_max_s is None else backoff_max_s)
        self.queue = WorkQueue()
        self._failures: dict[WorkloadKey, int] = {}
        self._key_locks: dict[WorkloadKey, _KeyLock] = {}
        self._lock = Lock()
        self._stop = Event()
        self._threads: list[Thread] = []

    def start(self) -> None:
        if self.running:
            if not self._stop.is_set():
                return
            # Still winding down from stop().
            self.join()
        self._stop.clear()
        if self.queue.shutting_down:
            self.queue = WorkQueue()
        self._threads = [Thread(target=self._poll_loop, name="prr-poller", daemon=True)]
        if hasattr(self.store, "watch"):
            self._threads.append(Thread(target=self._watch_loop, name="prr-watcher", daemon=True))
        for i in range(self.workers):
            self._threads.append(Thread(target=self._worker, name=f"prr-worker-{i}", daemon=True))
        for t in self._threads:
            t.start()
        db.log_event("INFO", f"Controller started with {self.workers} worker(s)")

    def stop(self) -> None:
        self._stop.set()
        self.queue.shut_down()
        stop_watch = getattr(self.store, "stop_watch", None)
        if stop_watch is not None:
            stop_watch()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def join(self, timeout: float | None = None) -> None:
        for t in self._threads:
            t.join(timeout)

    def enqueue(self, key: WorkloadKey) -> None:
        self.queue.add(key)

    def poll_once(self) -> int:
        keys = self.store.list_keys()
        for key in keys:
            self.queue.add(key)
        return len(keys)

    def _poll_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception as e:
                db.log_event("ERROR", f"Listing workloads failed: {type(e).__name__}: {e}")
            self._stop.wait(self.poll_interval_s)

    def _watch_loop(self) -> None:
        try:
            self.store.watch(self.enqueue, self._stop)
        except Exception as e:
            db.log_event("ERROR", f"Watching workloads failed: {type(e).__name__}: {e}")

    def _worker(self) -> None:
        while True:
            key = self.queue.get()
            if key is None:
                return
            try:
                self.process(key)
            finally:
                self.queue.done(key)

    @contextmanager
    def _exclusive(self, key: WorkloadKey) -> Iterator[None]:
        """Hold the per-key lock; the entry is dropped once no caller uses it."""
        with self._lock:
            entry = self._key_locks.setdefault(key, _KeyLock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._key_locks[key]

    def process(self, key: WorkloadKey) -> ReconcileResult | None:
        """Run one pass for ``key`` and schedule its next one.

        Passes for the same key never overlap, including ones requested
        directly rather than through the queue.
        """
        try:
            with self._exclusive(key):
                result = self.reconciler.reconcile(key)
        except Exception as e:
            db.log_event("ERROR", f"Reconcile pass crashed: {type(e).__name__}: {e}", workload=str(key))
            self.queue.add_after(key, self._next_backoff(key))
            return None
        self._schedule(key, result)
        return result

    def _schedule(self, key: WorkloadKey, result: ReconcileResult) -> None:
        err = result.error
        if err is None:
            self._forget(key)
            if result.requeue_after is not None:
                self.queue.add_after(key, result.requeue_after)
            return

        kind = err.kind
        if kind is ErrorKind.TRANSIENT_WAITING:
            self._forget(key)
            self.queue.add_after(key, result.requeue_after or self.reconciler.retry_delay_s)
        elif kind is ErrorKind.MALFORMED_PLAN:
            self.queue.add_after(key, self._next_backoff(key))
        elif kind is ErrorKind.MISSING_REPLICAS:
            self.queue.add_after(key, self._next_backoff(key))
        elif kind is ErrorKind.PERSISTENCE:
            self.queue.add_after(key, self._next_backoff(key))
        elif kind is ErrorKind.NOT_MANAGED:
            self._forget(key)
        else:
            raise AssertionError(f"unhandled error kind {kind!r}")

    def _next_backoff(self, key: WorkloadKey) -> float:
        with self._lock:
            n = self._failures.get(key, 0) + 1
            self._failures[key] = n
        return min(self.backoff_max_s, self.backoff_base_s * (2 ** min(n - 1, 30)))

    def _forget(self, key: WorkloadKey) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def failures(self, key: WorkloadKey) -> int:
        with self._lock:
            return self._failures.get(key, 0)
