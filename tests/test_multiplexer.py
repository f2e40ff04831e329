"""
Tests for the WatchMultiplexer
"""
# Standard
import threading
import time

# Third Party
import pytest

# Local
from strata.managed_object import ManagedObject, global_source_id
from strata.multiplexer import WatchMultiplexer
from strata.resolver import EffectiveConfigCache, merge_sources
from strata.store import DryRunObjectStore, KubeEventType, KubeObject, KubeWatchEvent
from strata.test_helpers.helpers import (
    RecordingSink,
    TEST_NAMESPACE,
    make_config_map,
    make_global_source,
    make_managed_object,
    wait_for,
)
from strata.types import ConfigSource, ObjectId, ReconcileRequestType, SourceKind

## Helpers #####################################################################


def parsed(name, refs):
    return ManagedObject.from_resource(make_managed_object(name=name, config_refs=refs))


def track(multiplexer, managed_object):
    multiplexer.track(managed_object.object_id, managed_object.dependencies())


def event(name="throttled"):
    return KubeWatchEvent(
        type=KubeEventType.MODIFIED, resource=KubeObject(make_config_map(name))
    )


## Tracking ####################################################################


def test_one_watch_per_source():
    """Make sure many dependents of a source share one watch"""
    store = DryRunObjectStore()
    multiplexer = WatchMultiplexer(store, RecordingSink())
    for idx in range(5):
        track(multiplexer, parsed(f"obj-{idx}", ["shared"]))

    # global, namespaced, and the shared reference
    assert len(multiplexer.active_watches()) == 3
    assert multiplexer.is_watching(global_source_id())
    assert multiplexer.registry.dependents_of(global_source_id()) == {
        ObjectId(TEST_NAMESPACE, f"obj-{idx}") for idx in range(5)
    }


def test_watch_closed_with_last_dependent():
    """Make sure a watch is closed when its last dependent goes away and when
    a dependent stops referencing it
    """
    store = DryRunObjectStore()
    multiplexer = WatchMultiplexer(store, RecordingSink())
    first = parsed("first", ["only-first"])
    second = parsed("second", ["changing"])
    track(multiplexer, first)
    track(multiplexer, second)
    only_first = first.references[0].source_id()
    changing = second.references[0].source_id()
    assert multiplexer.is_watching(only_first)
    assert multiplexer.is_watching(changing)

    multiplexer.untrack(first.object_id)
    assert not multiplexer.is_watching(only_first)
    assert multiplexer.is_watching(global_source_id())

    track(multiplexer, parsed("second", []))
    assert not multiplexer.is_watching(changing)

    multiplexer.untrack(second.object_id)
    assert multiplexer.active_watches() == set()


## Fan Out #####################################################################


def test_fan_out_exactly_n():
    """Make sure a change fans out one request per dependent"""
    sink = RecordingSink()
    multiplexer = WatchMultiplexer(DryRunObjectStore(), sink)
    objs = [parsed(f"obj-{idx}", ["throttled"]) for idx in range(4)]
    for managed_object in objs:
        track(multiplexer, managed_object)
    track(multiplexer, parsed("other", ["unlimited"]))

    source_id = objs[0].references[0].source_id()
    assert multiplexer.fan_out(source_id, event()) == 4
    assert sorted(sink.object_ids) == sorted(obj.object_id for obj in objs)
    assert all(
        request.type == ReconcileRequestType.SOURCE_CHANGED
        and request.source == source_id
        for request in sink.requests
    )


def test_fan_out_invalidates_cache():
    """Make sure dependents' cached configs are invalidated"""
    cache = EffectiveConfigCache()
    multiplexer = WatchMultiplexer(DryRunObjectStore(), RecordingSink(), cache=cache)
    managed_object = parsed("obj", ["throttled"])
    track(multiplexer, managed_object)
    cache.put(
        merge_sources(
            ConfigSource(SourceKind.GLOBAL_SHARED, "g", "ns", {"a": "b"}, "1"),
            None,
            [],
            {},
            managed_object.object_id,
        )
    )
    multiplexer.fan_out(managed_object.references[0].source_id(), event())
    assert managed_object.object_id not in cache


def test_fan_out_no_dependents():
    """Make sure a source with no dependents fans out nothing"""
    sink = RecordingSink()
    multiplexer = WatchMultiplexer(DryRunObjectStore(), sink)
    assert multiplexer.fan_out(global_source_id(), event()) == 0
    assert sink.requests == []


@pytest.mark.timeout(10)
def test_throttled_change_reaches_only_its_dependents():
    """Two objects reference throttled and a third references unlimited.
    Updating throttled reconciles the first two and leaves the third alone.
    """
    store = DryRunObjectStore(
        resources=[
            make_global_source({"a": "1"}),
            make_config_map("throttled", data={"rate": "10"}),
            make_config_map("unlimited", data={"rate": "0"}),
        ]
    )
    sink = RecordingSink()
    multiplexer = WatchMultiplexer(store, sink)
    first = parsed("first", ["throttled"])
    second = parsed("second", ["throttled"])
    third = parsed("third", ["unlimited"])
    for managed_object in (first, second, third):
        track(multiplexer, managed_object)
    multiplexer.start()
    assert wait_for(lambda: store.open_watches == 4)
    time.sleep(0.2)
    assert sink.requests == []

    store.deploy([make_config_map("throttled", data={"rate": "20"})])
    assert wait_for(lambda: len(sink.requests) == 2)
    time.sleep(0.3)
    assert sorted(sink.object_ids) == [first.object_id, second.object_id]
    multiplexer.stop()
    assert multiplexer.active_watches() == set()


## Slow Stores #################################################################


class BlockingStore(DryRunObjectStore):
    """In-memory store whose reads in the "slow" namespace block until
    released
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_object_current_state(self, kind, name, namespace=None, api_version=None):
        if namespace == "slow":
            self.entered.set()
            self.release.wait(5)
        return super().get_object_current_state(kind, name, namespace, api_version)


def parsed_in(name, namespace, refs=None):
    return ManagedObject.from_resource(
        make_managed_object(name=name, namespace=namespace, config_refs=refs or [])
    )


def track_in_thread(multiplexer, managed_object):
    tracker = threading.Thread(target=track, args=(multiplexer, managed_object))
    tracker.start()
    return tracker


@pytest.mark.timeout(10)
def test_slow_source_does_not_block_other_objects():
    """Make sure a slow read while opening one object's watch does not hold up
    tracking an unrelated object
    """
    store = BlockingStore()
    multiplexer = WatchMultiplexer(store, RecordingSink())
    # Open the shared global watch up front
    track(multiplexer, parsed_in("warmup", TEST_NAMESPACE))

    slow = parsed_in("slow-obj", "slow")
    slow_tracker = track_in_thread(multiplexer, slow)
    assert store.entered.wait(5)

    start = time.time()
    fast = parsed_in("fast-obj", "fast")
    track(multiplexer, fast)
    assert time.time() - start < 0.5
    assert multiplexer.is_watching(fast.namespaced_source_id())
    assert slow_tracker.is_alive()
    assert not multiplexer.is_watching(slow.namespaced_source_id())

    store.release.set()
    slow_tracker.join(5)
    assert not slow_tracker.is_alive()
    assert multiplexer.is_watching(slow.namespaced_source_id())


@pytest.mark.timeout(10)
def test_second_dependent_waits_for_opening_watch():
    """Make sure an object sharing a source that is still being opened only
    returns once the watch is in place
    """
    store = BlockingStore()
    multiplexer = WatchMultiplexer(store, RecordingSink())
    track(multiplexer, parsed_in("warmup", TEST_NAMESPACE))

    first = parsed_in("first", "slow")
    first_tracker = track_in_thread(multiplexer, first)
    assert store.entered.wait(5)
    second_tracker = track_in_thread(multiplexer, parsed_in("second", "slow"))
    time.sleep(0.2)
    assert second_tracker.is_alive()

    store.release.set()
    first_tracker.join(5)
    second_tracker.join(5)
    assert not second_tracker.is_alive()
    assert multiplexer.is_watching(first.namespaced_source_id())
    # global, the warmup namespace, and the slow namespace
    assert len(multiplexer.active_watches()) == 3


@pytest.mark.timeout(10)
def test_opening_watch_discarded_without_dependents():
    """Make sure a watch whose only dependent went away while it was being
    opened is not put in place
    """
    store = BlockingStore()
    multiplexer = WatchMultiplexer(store, RecordingSink())
    track(multiplexer, parsed_in("warmup", TEST_NAMESPACE))

    slow = parsed_in("slow-obj", "slow")
    slow_tracker = track_in_thread(multiplexer, slow)
    assert store.entered.wait(5)
    multiplexer.untrack(slow.object_id)

    store.release.set()
    slow_tracker.join(5)
    assert not multiplexer.is_watching(slow.namespaced_source_id())
    assert multiplexer.active_watches() == {global_source_id()} | {
        parsed_in("warmup", TEST_NAMESPACE).namespaced_source_id()
    }


@pytest.mark.timeout(10)
def test_stop_joins_closed_watches():
    """Make sure watches closed before stop are joined by stop"""
    store = DryRunObjectStore(resources=[make_global_source({"a": "1"})])
    multiplexer = WatchMultiplexer(store, RecordingSink())
    managed_object = parsed("obj", ["throttled"])
    track(multiplexer, managed_object)
    multiplexer.start()
    assert wait_for(lambda: store.open_watches == 3)

    source_id = managed_object.references[0].source_id()
    closed_thread = multiplexer.watch_thread(source_id)
    track(multiplexer, parsed("obj", []))
    assert not multiplexer.is_watching(source_id)

    multiplexer.stop()
    assert not closed_thread.is_alive()
