"""
Tests for the source and ManagedObject watch threads
"""
# Standard
from threading import Lock
import time

# Third Party
import pytest

# Local
from strata.managed_object import global_source_id
from strata.store import DryRunObjectStore, KubeEventType
from strata.test_helpers.helpers import (
    FailOnce,
    MockObjectStore,
    RecordingSink,
    TEST_NAMESPACE,
    library_config,
    make_config_map,
    make_global_source,
    make_managed_object,
    wait_for,
)
from strata.threads import ManagedObjectWatchThread, SourceWatchThread
from strata.types import ObjectId, SourceId, SourceKind

## Helpers #####################################################################


class ChangeRecorder:
    """Records the changes reported by a SourceWatchThread"""

    def __init__(self):
        self.changes = []
        self._lock = Lock()

    def __call__(self, source_id, event):
        with self._lock:
            self.changes.append((source_id, event.type, event.resource.name))
        return 1


def selector_source(selector="team=x"):
    return SourceId(
        kind=SourceKind.REFERENCED,
        api_version="v1",
        resource_kind="ConfigMap",
        namespace=TEST_NAMESPACE,
        selector=selector,
    )


## SourceWatchThread ###########################################################


@pytest.mark.timeout(5)
def test_source_watch_drops_replayed_events():
    """Make sure the initial replay of a primed source is not reported and a
    real change is reported once
    """
    store = DryRunObjectStore(resources=[make_global_source({"a": "1"})])
    recorder = ChangeRecorder()
    watch_thread = SourceWatchThread(global_source_id(), store, recorder)
    assert watch_thread.prime()
    watch_thread.start_thread()
    assert wait_for(lambda: store.open_watches == 1)
    time.sleep(0.2)
    assert recorder.changes == []

    store.deploy([make_global_source({"a": "2"})])
    assert wait_for(lambda: len(recorder.changes) == 1)
    time.sleep(0.2)
    assert recorder.changes == [
        (global_source_id(), KubeEventType.MODIFIED, "strata-global")
    ]
    watch_thread.stop_thread()
    watch_thread.join(2)
    assert not watch_thread.is_alive()


@pytest.mark.timeout(5)
def test_source_watch_reports_creation_and_deletion():
    """Make sure a missing source reports its creation and deletion"""
    store = DryRunObjectStore()
    recorder = ChangeRecorder()
    watch_thread = SourceWatchThread(global_source_id(), store, recorder)
    assert watch_thread.prime()
    assert watch_thread.observed_versions == {}
    watch_thread.start_thread()
    assert wait_for(lambda: store.open_watches == 1)

    store.deploy([make_global_source({"a": "1"})])
    assert wait_for(lambda: len(recorder.changes) == 1)
    store.disable([make_global_source()])
    assert wait_for(lambda: len(recorder.changes) == 2)
    assert [change[1] for change in recorder.changes] == [
        KubeEventType.ADDED,
        KubeEventType.DELETED,
    ]
    watch_thread.stop_thread()


@pytest.mark.timeout(5)
def test_source_watch_selector_scope():
    """Make sure objects entering and leaving a selector are reported"""
    store = DryRunObjectStore()
    recorder = ChangeRecorder()
    watch_thread = SourceWatchThread(selector_source(), store, recorder)
    watch_thread.prime()
    watch_thread.start_thread()
    assert wait_for(lambda: store.open_watches == 1)

    store.deploy([make_config_map("other", labels={"team": "y"})])
    store.deploy([make_config_map("member", labels={"team": "x"})])
    store.deploy([make_config_map("member", labels={"team": "y"})])
    assert wait_for(lambda: len(recorder.changes) == 2)
    time.sleep(0.2)
    assert [change[1:] for change in recorder.changes] == [
        (KubeEventType.ADDED, "member"),
        (KubeEventType.DELETED, "member"),
    ]
    watch_thread.stop_thread()


@pytest.mark.timeout(5)
def test_source_watch_relists_after_severed_watch():
    """Make sure a change made while the watch was down is reported exactly
    once after the watch recovers
    """
    with library_config(watch={"retry_delay": "0.5s"}):
        store = MockObjectStore(
            resources=[make_global_source({"a": "1"})],
            watch_fail=FailOnce(RuntimeError),
        )
        recorder = ChangeRecorder()
        watch_thread = SourceWatchThread(global_source_id(), store, recorder)
        watch_thread.prime()
        watch_thread.start_thread()

        # The first watch fails, so this change happens during the gap
        assert wait_for(lambda: store.watch_objects.call_count == 1)
        store.deploy([make_global_source({"a": "2"})])

        assert wait_for(lambda: store.watch_objects.call_count == 2)
        assert wait_for(lambda: len(recorder.changes) == 1)
        time.sleep(0.3)
        assert recorder.changes == [
            (global_source_id(), KubeEventType.MODIFIED, "strata-global")
        ]
        watch_thread.stop_thread()


@pytest.mark.timeout(5)
def test_source_watch_clean_sever_no_duplicates():
    """Make sure re-establishing a severed watch replays nothing"""
    store = DryRunObjectStore(resources=[make_global_source({"a": "1"})])
    recorder = ChangeRecorder()
    watch_thread = SourceWatchThread(global_source_id(), store, recorder)
    watch_thread.prime()
    watch_thread.start_thread()
    assert wait_for(lambda: store.open_watches == 1)

    store.sever_watches()
    time.sleep(0.3)
    assert wait_for(lambda: store.open_watches == 1)
    assert recorder.changes == []
    watch_thread.stop_thread()


def test_source_watch_prime_failure():
    """Make sure a failed prime is reported without raising"""
    store = MockObjectStore(get_state_fail=True)
    watch_thread = SourceWatchThread(global_source_id(), store, ChangeRecorder())
    assert not watch_thread.prime()


## ManagedObjectWatchThread ####################################################


@pytest.mark.timeout(5)
def test_managed_object_watch_filters_unchanged_generation():
    """Make sure only generation changes and deletions request reconciles"""
    resource = make_managed_object(name="mo", metadata={"generation": 1})
    store = DryRunObjectStore(resources=[resource])
    sink = RecordingSink()
    watch_thread = ManagedObjectWatchThread(store, sink)
    watch_thread.prime([store.get_object_current_state(
        resource["kind"], "mo", TEST_NAMESPACE
    )[1]])
    watch_thread.start_thread()
    assert wait_for(lambda: store.open_watches == 1)
    time.sleep(0.2)
    assert sink.requests == []

    # Metadata-only change at the same generation
    labeled = make_managed_object(
        name="mo", metadata={"generation": 1, "labels": {"x": "y"}}
    )
    store.deploy([labeled])
    time.sleep(0.3)
    assert sink.requests == []

    # Spec change bumps the generation
    updated = make_managed_object(
        name="mo", config={"a": "b"}, metadata={"generation": 2}
    )
    store.deploy([updated])
    assert wait_for(lambda: len(sink.requests) == 1)

    store.disable([updated])
    assert wait_for(lambda: len(sink.requests) == 2)
    assert sink.object_ids == [ObjectId(TEST_NAMESPACE, "mo")] * 2
    assert [request.type for request in sink.requests] == [
        KubeEventType.MODIFIED,
        KubeEventType.DELETED,
    ]
    watch_thread.stop_thread()


def test_managed_object_watch_relist_finds_recreated_object():
    """Make sure an object deleted and re-created at the same generation while
    the watch was down is reconciled after the re-list
    """
    old = make_managed_object(name="mo", uid="old-uid", metadata={"generation": 1})
    store = DryRunObjectStore(resources=[old])
    sink = RecordingSink()
    watch_thread = ManagedObjectWatchThread(store, sink, namespace=TEST_NAMESPACE)
    watch_thread.prime([old])

    # Unchanged state requests nothing
    watch_thread._relist()
    assert sink.requests == []

    store.disable([old])
    store.deploy(
        [make_managed_object(name="mo", uid="new-uid", metadata={"generation": 1})]
    )
    watch_thread._relist()
    assert sink.object_ids == [ObjectId(TEST_NAMESPACE, "mo")]
    assert sink.requests[0].type == KubeEventType.MODIFIED


@pytest.mark.timeout(5)
def test_managed_object_watch_new_object():
    """Make sure a new object requests a reconcile"""
    store = DryRunObjectStore()
    sink = RecordingSink()
    watch_thread = ManagedObjectWatchThread(store, sink, namespace=TEST_NAMESPACE)
    watch_thread.prime([])
    watch_thread.start_thread()
    assert wait_for(lambda: store.open_watches == 1)

    store.deploy([make_managed_object(name="new")])
    store.deploy([make_managed_object(name="elsewhere", namespace="other")])
    assert wait_for(lambda: len(sink.requests) == 1)
    time.sleep(0.2)
    assert sink.object_ids == [ObjectId(TEST_NAMESPACE, "new")]
    assert sink.requests[0].type == KubeEventType.ADDED
    watch_thread.stop_thread()
