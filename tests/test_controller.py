import threading
import time

from prr.controller import Controller, WorkQueue
from prr.errors import ErrorKind, ReconcileError
from prr.reconciler import ReconcileResult, Reconciler
from prr.workloads import InMemoryWorkloadStore, WorkloadKey

A = WorkloadKey("default", "a")
B = WorkloadKey("default", "b")


class Ticker:
    def __init__(self):
        self.t = 100.0

    def __call__(self):
        return self.t


def test_queue_coalesces_duplicate_adds():
    q = WorkQueue()
    q.add(A)
    q.add(B)
    q.add(A)
    assert len(q) == 2
    assert q.get(timeout=0) == A
    assert q.get(timeout=0) == B
    assert q.get(timeout=0) is None


def test_key_in_flight_is_not_handed_out_twice():
    q = WorkQueue()
    q.add(A)
    assert q.get(timeout=0) == A
    q.add(A)
    assert q.get(timeout=0) is None
    q.done(A)
    assert q.get(timeout=0) == A
    q.done(A)
    assert q.get(timeout=0) is None


def test_add_after_waits_until_due_and_keeps_earliest():
    tick = Ticker()
    q = WorkQueue(now_fn=tick)
    q.add_after(A, 10)
    q.add_after(A, 30)
    assert q.get(timeout=0) is None
    tick.t += 9
    assert q.get(timeout=0) is None
    tick.t += 1
    assert q.get(timeout=0) == A
    q.done(A)
    tick.t += 60
    assert q.get(timeout=0) is None


def test_add_after_earlier_due_supersedes_later():
    tick = Ticker()
    q = WorkQueue(now_fn=tick)
    q.add_after(A, 30)
    q.add_after(A, 5)
    tick.t += 5
    assert q.get(timeout=0) == A


def test_shutdown_releases_waiting_getters():
    q = WorkQueue()
    q.shut_down()
    assert q.get() is None
    q.add(A)
    assert len(q) == 0


class ScriptedReconciler:
    """Returns canned results in order."""

    retry_delay_s = 5.0

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def reconcile(self, key):
        self.calls.append(key)
        res = self.results.pop(0)
        if isinstance(res, Exception):
            raise res
        return res


def _controller(rec, store=None):
    c = Controller(store, rec, workers=1, poll_interval_s=1, backoff_base_s=1, backoff_max_s=8)
    c.queue = WorkQueue(now_fn=Ticker())
    return c


def _pending_due(c, key):
    return c.queue._due.get(key)


def test_requeue_after_success_schedules_delay():
    c = _controller(ScriptedReconciler(ReconcileResult(requeue_after=5.0, mutated=True)))
    c.process(A)
    assert _pending_due(c, A) == 105.0
    assert c.failures(A) == 0


def test_transient_waiting_uses_requested_delay():
    err = ReconcileError(ErrorKind.TRANSIENT_WAITING, "waiting for rollout to finish")
    c = _controller(ScriptedReconciler(ReconcileResult(requeue_after=5.0, error=err)))
    c.process(A)
    assert _pending_due(c, A) == 105.0
    assert c.failures(A) == 0


def test_errors_back_off_exponentially_and_reset_on_success():
    err = ReconcileError(ErrorKind.PERSISTENCE, "patch failed")
    c = _controller(
        ScriptedReconciler(
            ReconcileResult(error=err),
            ReconcileResult(error=err),
            ReconcileResult(error=err),
            ReconcileResult(error=err),
            ReconcileResult(error=err),
            ReconcileResult(),
        )
    )
    delays = []
    for _ in range(5):
        c.queue = WorkQueue(now_fn=Ticker())
        c.process(A)
        delays.append(_pending_due(c, A) - 100.0)
    assert delays == [1.0, 2.0, 4.0, 8.0, 8.0]
    assert c.failures(A) == 5

    c.process(A)
    assert c.failures(A) == 0


def test_malformed_and_missing_replicas_back_off():
    c = _controller(
        ScriptedReconciler(
            ReconcileResult(error=ReconcileError(ErrorKind.MALFORMED_PLAN, "bad steps")),
            ReconcileResult(error=ReconcileError(ErrorKind.MISSING_REPLICAS, "no replicas")),
        )
    )
    c.process(A)
    c.process(B)
    assert c.failures(A) == 1
    assert c.failures(B) == 1


def test_crashing_pass_is_journaled_and_backed_off(journal):
    c = _controller(ScriptedReconciler(RuntimeError("boom")))
    assert c.process(A) is None
    assert c.failures(A) == 1
    assert any("boom" in e["message"] for e in journal.latest_events())


def test_poll_once_queues_label_selected_workloads(managed, key, clock):
    from prr.workloads import WorkloadSnapshot

    managed.selector = {"app.kubernetes.io/managed-by": "annotationscale"}
    managed.put(WorkloadSnapshot(key=WorkloadKey("default", "other"), replicas=1))
    c = Controller(managed, Reconciler(managed, clock=clock), workers=1)
    assert c.poll_once() == 1
    assert c.queue.get(timeout=0) == key


def test_controller_drives_rollout_in_background(managed, key, clock):
    rec = Reconciler(managed, clock=clock, retry_delay_s=0.01)
    c = Controller(managed, rec, workers=2, poll_interval_s=0.1)
    c.start()
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            if managed.get(key).replicas == 2:
                break
            time.sleep(0.02)
    finally:
        c.stop()
        c.join(timeout=2)
    assert managed.get(key).replicas == 2
    assert not c.running


class SlowReconciler:
    """Records how many passes overlap."""

    retry_delay_s = 5.0

    def __init__(self):
        self.active = 0
        self.peak = 0
        self.calls = []
        self._lock = threading.Lock()

    def reconcile(self, key):
        with self._lock:
            self.calls.append(key)
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.05)
        with self._lock:
            self.active -= 1
        return ReconcileResult(managed=False)


def test_passes_for_one_key_never_overlap_and_locks_are_released():
    rec = SlowReconciler()
    c = _controller(rec)
    threads = [threading.Thread(target=c.process, args=(A,)) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)
    assert len(rec.calls) == 4
    assert rec.peak == 1
    assert c._key_locks == {}


def test_key_lock_entry_dropped_after_each_pass():
    c = _controller(ScriptedReconciler(ReconcileResult(managed=False), RuntimeError("boom")))
    c.process(A)
    assert c._key_locks == {}
    c.process(B)
    assert c._key_locks == {}


class WatchingStore(InMemoryWorkloadStore):
    """Reports one change as soon as the watch opens."""

    def __init__(self, changed):
        super().__init__()
        self.changed = changed
        self.stopped = False

    def watch(self, on_change, stop):
        on_change(self.changed)
        stop.wait()

    def stop_watch(self):
        self.stopped = True


def test_watch_feed_triggers_passes_without_listing():
    store = WatchingStore(A)
    rec = SlowReconciler()
    c = Controller(store, rec, workers=1, poll_interval_s=60)
    c.start()
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and A not in rec.calls:
            time.sleep(0.02)
    finally:
        c.stop()
        c.join(timeout=2)
    assert rec.calls[0] == A
    assert store.stopped
    assert not c.running


def test_start_right_after_stop_restarts_workers(managed, key, clock):
    rec = Reconciler(managed, clock=clock, retry_delay_s=0.01)
    c = Controller(managed, rec, workers=1, poll_interval_s=0.1)
    c.start()
    c.stop()
    c.start()
    try:
        assert c.running
        assert not c.queue.shutting_down
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and managed.get(key).replicas != 2:
            time.sleep(0.02)
        assert managed.get(key).replicas == 2
    finally:
        c.stop()
        c.join(timeout=2)
    assert not c.running
