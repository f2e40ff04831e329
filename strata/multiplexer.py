"""
The WatchMultiplexer keeps exactly one live watch per distinct config source
no matter how many ManagedObjects depend on it, and fans every change out to
all current dependents.
"""
# Standard
from threading import Event, RLock
from typing import Callable, Dict, Iterable, List, Optional, Set

# First Party
import alog

# Local
from .constants import JOIN_THREAD_TIMEOUT
from .registry import SourceRegistry
from .resolver import EffectiveConfigCache
from .store import KubeWatchEvent, ObjectStoreBase
from .threads.watch import SourceWatchThread
from .types import ObjectId, ReconcileRequest, ReconcileRequestType, SourceId

log = alog.use_channel("MLTPLXR")

REQUEST_SINK = Callable[[ReconcileRequest], None]


class WatchMultiplexer:
    """Manage the SourceWatchThreads for every source in the registry"""

    def __init__(
        self,
        store: ObjectStoreBase,
        request_sink: REQUEST_SINK,
        registry: Optional[SourceRegistry] = None,
        cache: Optional[EffectiveConfigCache] = None,
    ):
        """Construct with the collaborators

        Args:
            store:  ObjectStoreBase
                The store that source watches read from
            request_sink:  Callable[[ReconcileRequest], None]
                Where fanned-out reconcile requests are pushed
            registry:  Optional[SourceRegistry]
                The dependency registry
            cache:  Optional[EffectiveConfigCache]
                The cache to invalidate for every dependent of a changed source
        """
        self.store = store
        self.request_sink = request_sink
        self.registry = registry if registry is not None else SourceRegistry()
        self.cache = cache

        self._watch_threads: Dict[SourceId, SourceWatchThread] = {}
        # Sources whose watch is being primed, set once the watch is in place
        self._opening: Dict[SourceId, Event] = {}
        # Stopped watches that may still be winding down
        self._closed_threads: List[SourceWatchThread] = []
        self._lock = RLock()
        self._started = False
        self._stopped = False

    ## Lifecycle ###############################################################

    def start(self):
        """Start the watch thread of every tracked source. Sources tracked
        after this are started immediately.
        """
        with self._lock:
            self._started = True
            for watch_thread in self._watch_threads.values():
                watch_thread.start_thread()

    def stop(self):
        """Stop every watch thread"""
        with self._lock:
            self._started = False
            self._stopped = True
            watch_threads = list(self._watch_threads.values())
            self._watch_threads.clear()
            closed_threads = self._closed_threads
            self._closed_threads = []
        for watch_thread in watch_threads:
            watch_thread.stop_thread()
        for watch_thread in watch_threads + closed_threads:
            if watch_thread.is_alive():
                watch_thread.join(JOIN_THREAD_TIMEOUT)

    ## Tracking ################################################################

    def track(self, object_id: ObjectId, sources: Iterable[SourceId]):
        """Update the dependencies of an object, opening a watch for every
        source that gained its first dependent and closing the watch of every
        source that lost its last one. New watches are primed outside the lock
        so that a slow store read only holds up the objects that depend on the
        source being opened.
        """
        sources = set(sources)
        with self._lock:
            added, orphaned = self.registry.update_dependencies(object_id, sources)
            for source_id in orphaned:
                self._close(source_id)
            to_open = [
                source_id
                for source_id in sorted(added, key=str)
                if source_id not in self._watch_threads
                and source_id not in self._opening
            ]
            for source_id in to_open:
                self._opening[source_id] = Event()
            # Sources another object is still opening
            in_progress = [
                opened
                for source_id, opened in self._opening.items()
                if source_id in sources and source_id not in to_open
            ]

        for source_id in to_open:
            self._open(source_id)
        for opened in in_progress:
            opened.wait()

    def untrack(self, object_id: ObjectId):
        """Remove an object and close the watches nothing depends on any more"""
        with self._lock:
            for source_id in self.registry.unregister_managed_object(object_id):
                self._close(source_id)

    ## Fan Out #################################################################

    def fan_out(self, source_id: SourceId, event: KubeWatchEvent) -> int:
        """Push one reconcile request for every current dependent of the
        source

        Returns:
            n_requests:  int
                The number of requests pushed
        """
        dependents = self.registry.dependents_of(source_id)
        log.debug(
            "Fanning out %s of %s to %d dependents",
            event.type.value,
            source_id,
            len(dependents),
        )
        for object_id in sorted(dependents):
            if self.cache is not None:
                self.cache.invalidate(object_id)
            self.request_sink(
                ReconcileRequest(
                    object_id, ReconcileRequestType.SOURCE_CHANGED, source=source_id
                )
            )
        return len(dependents)

    ## Queries #################################################################

    def is_watching(self, source_id: SourceId) -> bool:
        """True if a watch is open for the given source"""
        with self._lock:
            return source_id in self._watch_threads

    def active_watches(self) -> Set[SourceId]:
        """The set of sources with an open watch"""
        with self._lock:
            return set(self._watch_threads)

    def watch_thread(self, source_id: SourceId) -> Optional[SourceWatchThread]:
        """Get the watch thread of a source"""
        with self._lock:
            return self._watch_threads.get(source_id)

    ## Implementation Details ##################################################

    def _open(self, source_id: SourceId):
        """Prime a new watch without holding the lock, then put it in place
        unless every dependent went away in the meantime
        """
        log.info("Opening watch for %s", source_id)
        watch_thread = SourceWatchThread(source_id, self.store, self.fan_out)
        watch_thread.prime()
        with self._lock:
            opened = self._opening.pop(source_id)
            if (
                self._stopped
                or source_id in self._watch_threads
                or not self.registry.dependents_of(source_id)
            ):
                log.debug("Discarding unneeded watch for %s", source_id)
            else:
                self._watch_threads[source_id] = watch_thread
                if self._started:
                    watch_thread.start_thread()
        opened.set()

    def _close(self, source_id: SourceId):
        watch_thread = self._watch_threads.pop(source_id, None)
        if watch_thread is None:
            return
        log.info("Closing watch for %s", source_id)
        watch_thread.stop_thread()
        self._closed_threads = [
            closed for closed in self._closed_threads if closed.is_alive()
        ]
        self._closed_threads.append(watch_thread)
