"""The watch threads are responsible for monitoring the object store for
changes to config sources and to ManagedObjects
"""
# Standard
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

# First Party
import alog

# Local
from .. import config
from ..exceptions import assert_store
from ..managed_object import managed_object_api_version
from ..store import KubeEventType, KubeObject, KubeWatchEvent, ObjectStoreBase
from ..types import ObjectId, ReconcileRequest, SourceId
from ..utils import parse_time_delta
from .base import ThreadBase

log = alog.use_channel("WTCHTHRD")

# Callback signatures
SOURCE_CHANGE_CALLBACK = Callable[[SourceId, KubeWatchEvent], int]
PUSH_REQUEST_CALLBACK = Callable[[ReconcileRequest], None]


class StoreWatchThread(ThreadBase):
    """Shared control loop for threads that list a set of objects and then
    watch them. Whenever the watch stream is severed the thread re-lists so
    that changes made during the gap are not lost, then re-establishes the
    watch. Exceptions are retried forever after the configured delay.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        name: str,
        store: ObjectStoreBase,
        kind: str,
        api_version: str,
        namespace: Optional[str] = None,
        resource_name: Optional[str] = None,
        label_selector: Optional[str] = None,
    ):
        super().__init__(name=name, daemon=True, store=store)
        self.kind = kind
        self.api_version = api_version
        self.namespace = namespace
        self.resource_name = resource_name
        self.label_selector = label_selector

        self.retry_delay = parse_time_delta(config.watch.retry_delay or "")
        self.retry_delay_seconds = (
            self.retry_delay.total_seconds() if self.retry_delay else 0
        )

    def run(self):
        """Re-list, then stream events until the watch ends, forever"""
        while not self.should_stop():
            try:
                self._relist()
                for event in self.store.watch_objects(
                    self.kind,
                    api_version=self.api_version,
                    namespace=self.namespace,
                    name=self.resource_name,
                    label_selector=self.label_selector,
                    stop_event=self.shutdown,
                ):
                    if self.should_stop():
                        return
                    self._handle_event(event)
                log.debug("Watch stream for %s ended", self.name)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log.info(
                    "Exception raised when watching %s: %s",
                    self.name,
                    repr(exc),
                    exc_info=exc,
                )
                if not self.wait_on_shutdown(self.retry_delay_seconds):
                    log.debug("Shutdown requested during retry of %s", self.name)
                    return
                log.info("Restarting watch for %s", self.name)

    ## Abstract Interface ######################################################

    def _relist(self):
        """Catch up with the current state of the watched objects"""
        raise NotImplementedError()

    def _handle_event(self, event: KubeWatchEvent):
        """Process a single watch event"""
        raise NotImplementedError()

    ## Helpers #################################################################

    def _list_current_state(self) -> List[dict]:
        """List the watched objects

        Raises:
            StoreUnavailable: If the store could not be read
        """
        if self.resource_name is not None:
            success, obj = self.store.get_object_current_state(
                kind=self.kind,
                name=self.resource_name,
                namespace=self.namespace,
                api_version=self.api_version,
            )
            assert_store(success, f"Failed to fetch {self.name}")
            return [obj] if obj else []

        success, objs = self.store.filter_objects_current_state(
            kind=self.kind,
            namespace=self.namespace,
            api_version=self.api_version,
            label_selector=self.label_selector,
        )
        assert_store(success, f"Failed to list {self.name}")
        return objs


class SourceWatchThread(StoreWatchThread):
    """The SourceWatchThread watches a single config source, either a single
    named object or the set of objects matched by a label selector. It keeps
    the last observed version of each object so that replayed or duplicated
    events are dropped, and reports every real change to the on_change
    callback.
    """

    def __init__(
        self,
        source_id: SourceId,
        store: ObjectStoreBase,
        on_change: SOURCE_CHANGE_CALLBACK,
    ):
        """Initialize the thread for one source

        Args:
            source_id:  SourceId
                The source to watch
            store:  ObjectStoreBase
                The store to list and watch
            on_change:  Callable[[SourceId, KubeWatchEvent], int]
                Called once for every change to the source
        """
        super().__init__(
            name=f"source_watch_{source_id}",
            store=store,
            kind=source_id.resource_kind,
            api_version=source_id.api_version,
            namespace=source_id.namespace,
            resource_name=source_id.name,
            label_selector=source_id.selector,
        )
        self.source_id = source_id
        self.on_change = on_change

        # Map from object name to the last observed resourceVersion
        self._observed: Dict[str, Optional[str]] = {}
        self._primed = False
        self._observed_lock = Lock()

    ## Public Interface ########################################################

    def prime(self) -> bool:
        """List the source and record the observed versions without reporting
        a change. This is called before the first resolution that depends on
        the source so that any later change is detected.

        Returns:
            primed:  bool
                False if the store could not be read. The thread will prime
                itself once it can.
        """
        try:
            current = self._observed_state(self._list_current_state())
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log.debug("Unable to prime %s: %s", self.source_id, exc)
            return False
        with self._observed_lock:
            self._observed = current
            self._primed = True
        log.debug2("Primed %s with %s", self.source_id, current)
        return True

    @property
    def observed_versions(self) -> Dict[str, Optional[str]]:
        """Copy of the last observed version of each object in the source"""
        with self._observed_lock:
            return dict(self._observed)

    ## Implementation Details ##################################################

    @staticmethod
    def _observed_state(objs: List[dict]) -> Dict[str, Optional[str]]:
        state = {}
        for obj in objs:
            kube_obj = KubeObject(obj)
            state[kube_obj.name] = kube_obj.resource_version
        return state

    def _relist(self):
        """Compare the listed state to the observed state and report a single
        implicit change if anything happened while the watch was down
        """
        objs = self._list_current_state()
        current = self._observed_state(objs)
        with self._observed_lock:
            if not self._primed:
                self._observed = current
                self._primed = True
                log.debug2("Primed %s with %s", self.source_id, current)
                return
            previous = self._observed
            self._observed = current

        changed_names = sorted(
            name
            for name in set(previous) | set(current)
            if previous.get(name, None) != current.get(name, None)
            or (name in previous) != (name in current)
        )
        if not changed_names:
            log.debug2("No changes to %s found on re-list", self.source_id)
            return

        log.info(
            "Found changes to %s on re-list: %s", self.source_id, changed_names
        )
        changed = changed_names[0]
        resource = next(
            (obj for obj in objs if KubeObject(obj).name == changed),
            {
                "kind": self.kind,
                "apiVersion": self.api_version,
                "metadata": {"name": changed, "namespace": self.namespace},
            },
        )
        self.on_change(
            self.source_id,
            KubeWatchEvent(type=KubeEventType.MODIFIED, resource=KubeObject(resource)),
        )

    def _handle_event(self, event: KubeWatchEvent):
        """Deduplicate the event against the observed versions and report it"""
        name = event.resource.name
        version = event.resource.resource_version
        with self._observed_lock:
            if event.type == KubeEventType.DELETED:
                if name not in self._observed:
                    log.debug3("Dropping delete of unobserved %s", name)
                    return
                self._observed.pop(name)
            else:
                if name in self._observed and self._observed[name] == version:
                    log.debug3("Dropping duplicate event for %s@%s", name, version)
                    return
                self._observed[name] = version

        log.debug("Source %s changed: %s %s", self.source_id, event.type.value, name)
        self.on_change(self.source_id, event)


class ManagedObjectWatchThread(StoreWatchThread):
    """The ManagedObjectWatchThread watches the configured ManagedObject kind
    and pushes a ReconcileRequest for every change. Modifications that do not
    change the object's generation (i.e. status updates) are filtered out.
    """

    def __init__(
        self,
        store: ObjectStoreBase,
        push_request: PUSH_REQUEST_CALLBACK,
        namespace: Optional[str] = None,
    ):
        super().__init__(
            name="managed_object_watch",
            store=store,
            kind=config.managed_object.kind,
            api_version=managed_object_api_version(),
            namespace=namespace,
        )
        self.push_request = push_request

        # Map from ObjectId to (uid, generation, deleting) of the last passed event
        self._observed: Dict[
            ObjectId, Tuple[Optional[str], Optional[str], bool]
        ] = {}
        self._primed = False

    ## Public Interface ########################################################

    def prime(self, resources: List[dict]):
        """Record the given objects as already seen so that the initial watch
        replay does not trigger duplicate reconciles
        """
        self._observed = {
            self._object_id(KubeObject(resource)): self._observed_key(
                KubeObject(resource)
            )
            for resource in resources
        }
        self._primed = True

    ## Implementation Details ##################################################

    @staticmethod
    def _object_id(resource: KubeObject) -> ObjectId:
        return ObjectId(resource.namespace, resource.name)

    @staticmethod
    def _observed_key(
        resource: KubeObject,
    ) -> Tuple[Optional[str], Optional[str], bool]:
        # A re-created object starts over at the same generation
        generation = resource.metadata.get("generation")
        if generation is None:
            generation = resource.resource_version
        return resource.uid, str(generation), resource.deleting

    def _relist(self):
        objs = self._list_current_state()
        current = {
            self._object_id(KubeObject(obj)): self._observed_key(KubeObject(obj))
            for obj in objs
        }
        if not self._primed:
            self._observed = current
            self._primed = True
            return

        previous = self._observed
        self._observed = current
        for object_id in sorted(set(previous) | set(current)):
            if object_id not in current:
                self._request(object_id, KubeEventType.DELETED)
            elif previous.get(object_id) != current[object_id]:
                self._request(object_id, KubeEventType.MODIFIED)

    def _handle_event(self, event: KubeWatchEvent):
        object_id = self._object_id(event.resource)
        if event.type == KubeEventType.DELETED:
            self._observed.pop(object_id, None)
            self._request(object_id, event.type)
            return

        key = self._observed_key(event.resource)
        if self._observed.get(object_id) == key:
            log.debug3("Skipping %s event for %s", event.type.value, object_id)
            return
        self._observed[object_id] = key
        self._request(object_id, event.type)

    def _request(self, object_id: ObjectId, event_type: KubeEventType):
        log.debug2("Requesting reconcile of %s for %s", object_id, event_type.value)
        self.push_request(ReconcileRequest(object_id, event_type))
