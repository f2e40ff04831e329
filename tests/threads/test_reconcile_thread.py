"""
Tests for the ReconcileThread
"""
# Standard
from threading import Event, Lock
import time

# Third Party
import pytest

# Local
from strata.test_helpers.helpers import library_config, wait_for
from strata.threads import ReconcileThread
from strata.threads.reconcile import backoff_delay
from strata.types import ObjectId, ReconcileRequest, ReconcileRequestType

## Helpers #####################################################################

OBJ_A = ObjectId("test", "a")
OBJ_B = ObjectId("test", "b")


class RecordingReconciler:
    """Reconcile function that records calls, optionally blocks until
    released, and fails on demand
    """

    def __init__(self, fail_times=0, block=False):
        self.calls = []
        self.fail_times = fail_times
        self.release = Event()
        if not block:
            self.release.set()
        self.running = 0
        self.max_running = 0
        self._lock = Lock()

    def __call__(self, object_id, retry_attempts):
        with self._lock:
            self.calls.append((object_id, retry_attempts))
            self.running += 1
            self.max_running = max(self.max_running, self.running)
            fail = len(self.calls) <= self.fail_times
        try:
            self.release.wait(5)
            if fail:
                raise RuntimeError("reconcile failed")
            return object_id
        finally:
            with self._lock:
                self.running -= 1

    def calls_for(self, object_id):
        with self._lock:
            return [call for call in self.calls if call[0] == object_id]


def request(object_id, request_type=ReconcileRequestType.SOURCE_CHANGED):
    return ReconcileRequest(object_id, request_type)


## backoff_delay ###############################################################


def test_backoff_delay_doubles_and_caps():
    """Make sure the delay doubles per attempt up to the maximum"""
    with library_config(
        reconcile={"backoff_base_seconds": 1.0, "backoff_max_seconds": 10.0}
    ):
        assert [backoff_delay(attempt) for attempt in range(1, 6)] == [
            1.0,
            2.0,
            4.0,
            8.0,
            10.0,
        ]
        assert backoff_delay(10_000) == 10.0


def test_backoff_delay_zero_base():
    """Make sure a zero base means immediate retries"""
    with library_config(reconcile={"backoff_base_seconds": 0.0}):
        assert backoff_delay(3) == 0.0


## Dispatch ####################################################################


@pytest.mark.timeout(10)
def test_reconcile_thread_happy_path():
    """Make sure a pushed request is reconciled once"""
    reconciler = RecordingReconciler()
    reconcile_thread = ReconcileThread(reconciler, max_concurrent_reconciles=2)
    reconcile_thread.start_thread()

    reconcile_thread.push_request(request(OBJ_A))
    assert reconcile_thread.wait_until_idle(5)
    assert reconciler.calls == [(OBJ_A, 0)]
    assert reconcile_thread.attempts(OBJ_A) == 0
    reconcile_thread.stop_thread()


@pytest.mark.timeout(10)
def test_reconcile_thread_serializes_and_coalesces():
    """Make sure requests for a running object are coalesced into a single
    follow-up reconcile and never run concurrently
    """
    reconciler = RecordingReconciler(block=True)
    reconcile_thread = ReconcileThread(reconciler, max_concurrent_reconciles=4)
    reconcile_thread.start_thread()

    reconcile_thread.push_request(request(OBJ_A))
    assert wait_for(lambda: len(reconciler.calls) == 1)
    for _ in range(5):
        reconcile_thread.push_request(request(OBJ_A))
    assert wait_for(lambda: OBJ_A in reconcile_thread.pending_reconciles)
    time.sleep(0.2)

    reconciler.release.set()
    assert reconcile_thread.wait_until_idle(5)
    assert len(reconciler.calls_for(OBJ_A)) == 2
    assert reconciler.max_running == 1
    reconcile_thread.stop_thread()


@pytest.mark.timeout(10)
def test_reconcile_thread_parallel_objects():
    """Make sure independent objects reconcile concurrently"""
    reconciler = RecordingReconciler(block=True)
    reconcile_thread = ReconcileThread(reconciler, max_concurrent_reconciles=2)
    reconcile_thread.start_thread()

    reconcile_thread.push_request(request(OBJ_A))
    reconcile_thread.push_request(request(OBJ_B))
    assert wait_for(lambda: reconciler.max_running == 2)
    reconciler.release.set()
    assert reconcile_thread.wait_until_idle(5)
    reconcile_thread.stop_thread()


## Retries #####################################################################


@pytest.mark.timeout(10)
def test_reconcile_thread_retries_with_attempts():
    """Make sure failures are retried with an increasing attempt count that
    resets after success
    """
    reconciler = RecordingReconciler(fail_times=2)
    with library_config(
        reconcile={"backoff_base_seconds": 0.05, "backoff_max_seconds": 0.2}
    ):
        reconcile_thread = ReconcileThread(reconciler, max_concurrent_reconciles=1)
        reconcile_thread.start_thread()
        reconcile_thread.push_request(request(OBJ_A))

        assert wait_for(lambda: len(reconciler.calls) == 3)
        assert reconciler.calls == [(OBJ_A, 0), (OBJ_A, 1), (OBJ_A, 2)]
        assert wait_for(lambda: reconcile_thread.attempts(OBJ_A) == 0)

        # A later failure starts counting from the beginning again
        reconciler.fail_times = 4
        reconcile_thread.push_request(request(OBJ_A))
        assert wait_for(lambda: len(reconciler.calls) == 5)
        assert reconciler.calls[3:] == [(OBJ_A, 0), (OBJ_A, 1)]
        reconcile_thread.stop_thread()


@pytest.mark.timeout(10)
def test_reconcile_thread_new_request_supersedes_retry():
    """Make sure a fresh request cancels the scheduled retry"""
    reconciler = RecordingReconciler(fail_times=1)
    with library_config(
        reconcile={"backoff_base_seconds": 60.0, "backoff_max_seconds": 60.0}
    ):
        reconcile_thread = ReconcileThread(reconciler, max_concurrent_reconciles=1)
        reconcile_thread.start_thread()
        reconcile_thread.push_request(request(OBJ_A))
        assert wait_for(lambda: OBJ_A in reconcile_thread.event_map)
        retry_event = reconcile_thread.event_map[OBJ_A]

        reconcile_thread.push_request(request(OBJ_A))
        assert wait_for(lambda: len(reconciler.calls) == 2)
        assert reconciler.calls[1] == (OBJ_A, 1)
        assert retry_event.stale
        assert reconcile_thread.wait_until_idle(5)
        reconcile_thread.stop_thread()


@pytest.mark.timeout(10)
def test_reconcile_thread_failure_isolated():
    """Make sure one failing object does not block another"""
    calls = []

    def reconcile(object_id, _):
        calls.append(object_id)
        if object_id == OBJ_A:
            raise RuntimeError("broken")

    with library_config(
        reconcile={"backoff_base_seconds": 60.0, "backoff_max_seconds": 60.0}
    ):
        reconcile_thread = ReconcileThread(reconcile, max_concurrent_reconciles=1)
        reconcile_thread.start_thread()
        reconcile_thread.push_request(request(OBJ_A))
        reconcile_thread.push_request(request(OBJ_B))
        assert reconcile_thread.wait_until_idle(5)
        assert sorted(calls) == [OBJ_A, OBJ_B]
        assert reconcile_thread.attempts(OBJ_A) == 1
        assert reconcile_thread.attempts(OBJ_B) == 0
        reconcile_thread.stop_thread()


@pytest.mark.timeout(10)
def test_reconcile_thread_stop_waits_for_running():
    """Make sure stopping lets running reconciles finish and drops pending
    ones
    """
    reconciler = RecordingReconciler(block=True)
    reconcile_thread = ReconcileThread(reconciler, max_concurrent_reconciles=1)
    reconcile_thread.start_thread()
    reconcile_thread.push_request(request(OBJ_A))
    assert wait_for(lambda: reconciler.running == 1)
    reconcile_thread.push_request(request(OBJ_A))
    assert wait_for(lambda: OBJ_A in reconcile_thread.pending_reconciles)

    reconciler.release.set()
    reconcile_thread.stop_thread()
    assert not reconcile_thread.is_alive()
    assert reconciler.running == 0
    assert reconcile_thread.pending_reconciles == {}
