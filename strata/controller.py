"""
The Controller wires the object store, registry, multiplexer, resolver, and
reconciler together and runs the threads of the controller loop
"""

# Standard
from typing import List, Optional
import threading

# First Party
import alog

# Local
from . import config
from .exceptions import assert_store
from .managed_object import managed_object_api_version
from .multiplexer import WatchMultiplexer
from .reconcile import Reconciler
from .registry import SourceRegistry
from .resolver import ConfigResolver, EffectiveConfigCache
from .store import KubeObjectStore, ObjectStoreBase
from .threads import ManagedObjectWatchThread, ReconcileThread
from .types import ReconcileRequest, ReconcileRequestType

log = alog.use_channel("CTRLR")


class Controller:
    """The Controller keeps one EffectiveConfig and one DerivedInstance per
    ManagedObject up to date. It does the following:

    1. List every ManagedObject and register its dependencies
    2. Start one watch per config source and one per watched namespace of
       ManagedObjects
    3. Reconcile every ManagedObject once and again whenever it or one of its
       sources changes
    """

    def __init__(
        self,
        store: Optional[ObjectStoreBase] = None,
        namespace_list: Optional[List[str]] = None,
        max_concurrent_reconciles: Optional[int] = None,
    ):
        """Construct the collaborators and threads

        Args:
            store:  Optional[ObjectStoreBase]
                The object store. Defaults to a KubeObjectStore
            namespace_list:  Optional[List[str]]
                The namespaces to watch for ManagedObjects. Defaults to the
                comma separated managed_object.namespace config, where empty
                means all namespaces
            max_concurrent_reconciles:  Optional[int]
                Override for the number of reconcile workers
        """
        if store is None:
            log.debug("Using KubeObjectStore")
            store = KubeObjectStore()
        self.store = store

        self.namespace_list = namespace_list
        if self.namespace_list is None:
            self.namespace_list = [
                namespace.strip()
                for namespace in (config.managed_object.namespace or "").split(",")
                if namespace.strip()
            ]

        # Setup control variables
        self.shutdown = threading.Event()

        # Setup the shared state and the components that use it
        self.registry = SourceRegistry()
        self.cache = EffectiveConfigCache()
        self.reconcile_thread = ReconcileThread(
            self._reconcile, max_concurrent_reconciles=max_concurrent_reconciles
        )
        self.multiplexer = WatchMultiplexer(
            store,
            self.reconcile_thread.push_request,
            registry=self.registry,
            cache=self.cache,
        )
        self.resolver = ConfigResolver(store, self.cache)
        self.reconciler = Reconciler(
            store, self.multiplexer, cache=self.cache, resolver=self.resolver
        )

        # One watch for all namespaces, or one per listed namespace
        self.managed_object_watches: List[ManagedObjectWatchThread] = [
            ManagedObjectWatchThread(
                store, self.reconcile_thread.push_request, namespace=namespace
            )
            for namespace in (self.namespace_list or [None])
        ]

    ## Interface ###############################################################

    def start(self) -> bool:
        """Prime the dependencies of every existing ManagedObject, start all
        threads, and request one reconcile per object

        Returns:
            success:  bool
                False if the controller was already stopped
        """
        log.info("Starting Controller for %s", config.managed_object.kind)
        if self.shutdown.is_set():
            return False

        object_ids = []
        for watch_thread in self.managed_object_watches:
            resources = self._list_managed_objects(watch_thread.namespace)
            watch_thread.prime(resources)
            object_ids.extend(self.reconciler.prime(resources))

        self.reconcile_thread.start_thread()
        self.multiplexer.start()
        for watch_thread in self.managed_object_watches:
            watch_thread.start_thread()

        for object_id in sorted(object_ids):
            self.reconcile_thread.push_request(
                ReconcileRequest(object_id, ReconcileRequestType.STARTUP)
            )
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for shutdown to be signaled

        Returns:
            stopped:  bool
                True if the controller was stopped
        """
        return self.shutdown.wait(timeout)

    def stop(self):
        """Stop all threads. This waits for running reconciles to finish"""
        log.info("Stopping Controller for %s", config.managed_object.kind)
        self.shutdown.set()
        for watch_thread in self.managed_object_watches:
            watch_thread.stop_thread()
        self.multiplexer.stop()
        self.reconcile_thread.stop_thread()
        stop_watches = getattr(self.store, "stop_watches", None)
        if stop_watches is not None:
            stop_watches()

    ## Implementation Details ##################################################

    def _list_managed_objects(self, namespace: Optional[str]) -> List[dict]:
        success, resources = self.store.filter_objects_current_state(
            kind=config.managed_object.kind,
            namespace=namespace,
            api_version=managed_object_api_version(),
        )
        assert_store(success, f"Failed to list {config.managed_object.kind}")
        return resources

    def _reconcile(self, object_id, retry_attempts: int = 0):
        return self.reconciler.reconcile(object_id, retry_attempts)
