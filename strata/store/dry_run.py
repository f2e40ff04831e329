"""
The DryRunObjectStore implements the ObjectStore interface but does not
interact with a cluster and instead holds the state of the cluster in a local
map. It is used for dry-run mode, for one-shot resolution from manifest files,
and for tests.
"""

# Standard
from datetime import datetime, timedelta
from itertools import count
from queue import Empty, Queue
from threading import Event, RLock
from typing import Iterator, List, Optional, Tuple
import copy
import uuid

# First Party
import alog

# Local
from ..exceptions import ConflictError
from .base import ObjectStoreBase
from .kube_event import KubeEventType, KubeWatchEvent
from .kube_object import KubeObject
from .selectors import matches_selector

log = alog.use_channel("DRY-RUN")

# Sentinel pushed onto a watch queue to end the stream
_SEVERED = object()

# How often an idle watch stream rechecks its stop conditions
WATCH_POLL_TIME = 0.1


class _Watcher:  # pylint: disable=too-few-public-methods
    """A single registered watch stream"""

    def __init__(self, api_version, kind, namespace, name, label_selector):
        self.api_version = api_version
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.label_selector = label_selector
        self.queue = Queue()

    def matches(self, resource: dict) -> bool:
        """Check whether an object falls within the scope of this watch"""
        metadata = resource.get("metadata", {})
        return (
            resource.get("kind") == self.kind
            and (self.api_version is None or resource.get("apiVersion") == self.api_version)
            and (self.namespace is None or metadata.get("namespace") == self.namespace)
            and (self.name is None or metadata.get("name") == self.name)
            and (
                self.label_selector is None
                or matches_selector(metadata.get("labels"), self.label_selector)
            )
        )


class DryRunObjectStore(ObjectStoreBase):
    """
    Object store which keeps all content in memory
    """

    def __init__(
        self,
        resources: Optional[List[dict]] = None,
        strict_resource_version: bool = True,
    ):
        """Construct with an optional list of initial resources

        Args:
            resources:  Optional[List[dict]]
                Objects that exist in the store from the start
            strict_resource_version:  bool
                If true, writes that carry a stale metadata.resourceVersion
                raise a ConflictError
        """
        self.strict_resource_version = strict_resource_version
        self._cluster_content = {}
        self._watchers: List[_Watcher] = []
        self._lock = RLock()
        self._version_counter = count(1)

        self._deploy(resources or [], notify=False)

    ## Interface ###############################################################

    def deploy(self, resource_definitions, **_):
        log.info("DRY RUN deploy")
        return self._deploy(resource_definitions)

    def disable(self, resource_definitions):
        log.info("DRY RUN disable")
        changed = False
        for resource in resource_definitions:
            api_version, kind, name, namespace = self._identifiers(resource)
            with self._lock:
                current = self._entries(namespace, kind, api_version).get(name)
                if current is None:
                    continue
                changed = True

                # Objects holding finalizers are only marked for deletion
                if current["metadata"].get("finalizers"):
                    if not current["metadata"].get("deletionTimestamp"):
                        current["metadata"]["deletionTimestamp"] = datetime.now().strftime(
                            "%Y-%m-%dT%H:%M:%SZ"
                        )
                        current["metadata"]["resourceVersion"] = self._next_version()
                        self._notify(KubeEventType.MODIFIED, current)
                    continue

                self._delete_key(namespace, kind, api_version, name)
                current["metadata"]["resourceVersion"] = self._next_version()
                self._notify(KubeEventType.DELETED, current)
        return True, changed

    def get_object_current_state(self, kind, name, namespace=None, api_version=None):
        log.debug2(
            "DRY RUN get_object_current_state of [%s/%s] in [%s]", kind, name, namespace
        )
        with self._lock:
            kind_entries = self._cluster_content.get(namespace, {}).get(kind, {})
            matches = [
                entries[name]
                for api_ver, entries in kind_entries.items()
                if name in entries and api_version in (None, api_ver)
            ]
            if len(matches) == 1:
                return True, copy.deepcopy(matches[0])
        return True, None

    def filter_objects_current_state(
        self,
        kind,
        namespace=None,
        api_version=None,
        label_selector=None,
        field_selector=None,
    ):  # pylint: disable=too-many-arguments
        log.debug2(
            "DRY RUN filter_objects_current_state of [%s] in [%s] matching [%s]",
            kind,
            namespace,
            label_selector,
        )
        matches = []
        with self._lock:
            namespaces = (
                [namespace] if namespace is not None else list(self._cluster_content)
            )
            for ns in namespaces:
                kind_entries = self._cluster_content.get(ns, {}).get(kind, {})
                for api_ver, entries in kind_entries.items():
                    if api_version not in (None, api_ver):
                        continue
                    for resource in entries.values():
                        labels = resource.get("metadata", {}).get("labels")
                        if label_selector and not matches_selector(
                            labels, label_selector
                        ):
                            continue
                        if field_selector and not matches_selector(
                            _flatten(resource), field_selector
                        ):
                            continue
                        matches.append(copy.deepcopy(resource))
        return True, matches

    def set_status(
        self,
        kind,
        name,
        namespace,
        status,
        api_version=None,
    ):  # pylint: disable=too-many-arguments
        log.debug2("DRY RUN set_status of [%s/%s] in %s", kind, name, namespace)
        with self._lock:
            for api_ver, entries in (
                self._cluster_content.get(namespace, {}).get(kind, {}).items()
            ):
                if name in entries and api_version in (None, api_ver):
                    current = entries[name]
                    if current.get("status") == status:
                        return True, False

                    # Status writes bump the version but do not notify watches
                    # as the status subresource is not a spec change
                    current["status"] = copy.deepcopy(status)
                    current["metadata"]["resourceVersion"] = self._next_version()
                    return True, True
        log.debug("Did not find [%s/%s] in %s", kind, name, namespace)
        return False, False

    def watch_objects(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        name: Optional[str] = None,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
        resource_version: Optional[str] = None,
        stop_event: Optional[Event] = None,
        timeout: Optional[float] = None,
        **_,
    ) -> Iterator[KubeWatchEvent]:
        """Watch the store for changes by registering a queue that every write
        pushes events into. The stream ends when the timeout expires, when the
        stop_event is set, or when sever_watches is called.
        """
        watcher = _Watcher(api_version, kind, namespace, name, label_selector)
        with self._lock:
            # Without a starting version, replay the current state as ADDED
            if not resource_version:
                _, manifests = self.filter_objects_current_state(
                    kind=kind,
                    api_version=api_version,
                    namespace=namespace,
                    label_selector=label_selector,
                    field_selector=field_selector,
                )
                for manifest in manifests:
                    if watcher.matches(manifest):
                        watcher.queue.put((KubeEventType.ADDED, manifest))
            self._watchers.append(watcher)

        end_time = datetime.max
        if timeout:
            end_time = datetime.now() + timedelta(seconds=timeout)

        try:
            while datetime.now() < end_time:
                if stop_event is not None and stop_event.is_set():
                    log.debug2("Watch on %s stopped", kind)
                    return
                wait_time = min(
                    (end_time - datetime.now()).total_seconds(), WATCH_POLL_TIME
                )
                try:
                    item = watcher.queue.get(timeout=max(wait_time, 0.001))
                except Empty:
                    continue
                if item is _SEVERED:
                    log.debug("Watch on %s severed", kind)
                    return
                event_type, manifest = item
                event = KubeWatchEvent(type=event_type, resource=KubeObject(manifest))
                log.debug3("Yielding event %s", event)
                yield event
        finally:
            with self._lock:
                if watcher in self._watchers:
                    self._watchers.remove(watcher)

    ## Dry Run Methods #########################################################

    def sever_watches(self):
        """End every open watch stream as if the connection was reset"""
        with self._lock:
            for watcher in self._watchers:
                watcher.queue.put(_SEVERED)

    @property
    def open_watches(self) -> int:
        """The number of watch streams currently registered"""
        with self._lock:
            return len(self._watchers)

    ## Implementation Details ##################################################

    @staticmethod
    def _identifiers(resource: dict) -> Tuple[str, str, str, Optional[str]]:
        metadata = resource.get("metadata", {})
        return (
            resource.get("apiVersion"),
            resource.get("kind"),
            metadata.get("name"),
            metadata.get("namespace"),
        )

    def _next_version(self) -> str:
        return str(next(self._version_counter))

    def _entries(self, namespace, kind, api_version) -> dict:
        return self._cluster_content.get(namespace, {}).get(kind, {}).get(api_version, {})

    def _delete_key(self, namespace, kind, api_version, name):
        del self._cluster_content[namespace][kind][api_version][name]
        if not self._cluster_content[namespace][kind][api_version]:
            del self._cluster_content[namespace][kind][api_version]
        if not self._cluster_content[namespace][kind]:
            del self._cluster_content[namespace][kind]
        if not self._cluster_content[namespace]:
            del self._cluster_content[namespace]

    def _notify(
        self,
        event_type: KubeEventType,
        resource: dict,
        previous: Optional[dict] = None,
    ):
        """Push an event to every matching watcher. An update that moves an
        object into or out of a watcher's scope is seen by that watcher as an
        ADDED or DELETED event respectively.
        """
        for watcher in self._watchers:
            matched_before = previous is not None and watcher.matches(previous)
            if watcher.matches(resource):
                watcher_event = event_type
                if event_type == KubeEventType.MODIFIED and not matched_before:
                    watcher_event = KubeEventType.ADDED
            elif event_type == KubeEventType.MODIFIED and matched_before:
                watcher_event = KubeEventType.DELETED
            else:
                continue
            watcher.queue.put((watcher_event, copy.deepcopy(resource)))

    def _deploy(self, resource_definitions, notify=True):
        changes = False
        for resource in resource_definitions:
            resource = copy.deepcopy(dict(resource))
            api_version, kind, name, namespace = self._identifiers(resource)
            log.debug("DRY RUN deploy [%s/%s/%s/%s]", namespace, kind, api_version, name)
            with self._lock:
                entries = (
                    self._cluster_content.setdefault(namespace, {})
                    .setdefault(kind, {})
                    .setdefault(api_version, {})
                )
                current = copy.deepcopy(entries.get(name))
                metadata = resource.setdefault("metadata", {})
                requested_version = metadata.get("resourceVersion")

                if current is not None:
                    current_version = current["metadata"].get("resourceVersion")
                    if (
                        self.strict_resource_version
                        and requested_version
                        and str(requested_version) != str(current_version)
                    ):
                        raise ConflictError(
                            f"resourceVersion {requested_version} of "
                            f"{namespace}/{kind}/{name} is out of date "
                            f"(current {current_version})"
                        )

                    # Writes to the main resource never touch the status
                    if "status" in current and "status" not in resource:
                        resource["status"] = copy.deepcopy(current["status"])

                    # Compare ignoring the server-managed metadata
                    comparable = copy.deepcopy(current)
                    for key in ("resourceVersion", "uid", "creationTimestamp"):
                        comparable["metadata"].pop(key, None)
                        metadata.pop(key, None)
                    if comparable == resource:
                        resource["metadata"].update(
                            {
                                key: current["metadata"][key]
                                for key in ("resourceVersion", "uid", "creationTimestamp")
                                if key in current["metadata"]
                            }
                        )
                        continue

                    metadata["uid"] = current["metadata"].get("uid")
                    metadata["creationTimestamp"] = current["metadata"].get(
                        "creationTimestamp"
                    )
                    event_type = KubeEventType.MODIFIED
                else:
                    metadata.setdefault("uid", str(uuid.uuid4()))
                    metadata.setdefault("creationTimestamp", datetime.now().isoformat())
                    event_type = KubeEventType.ADDED

                changes = True
                metadata["resourceVersion"] = self._next_version()
                entries[name] = resource

                # An object that was marked for deletion is removed as soon as
                # its finalizers are cleared
                if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
                    self._delete_key(namespace, kind, api_version, name)
                    event_type = KubeEventType.DELETED

                if notify:
                    self._notify(event_type, resource, previous=current)

        return True, changes


def _flatten(dictionary, prefix=""):
    """Convert a nested dict to a flat map of dotted keys so that field
    selectors like metadata.name=foo can be matched like labels
    """
    if not isinstance(dictionary, dict):
        return {prefix: dictionary}
    output = {}
    for key, value in dictionary.items():
        output.update(_flatten(value, key if not prefix else f"{prefix}.{key}"))
    return output
