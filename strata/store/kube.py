"""
This ObjectStore is responsible for delegating store operations to the
openshift dynamic client. It is the one that will be used when the controller
is running in the cluster or outside the cluster making live changes.
"""
# Standard
from collections import namedtuple
from typing import Iterator, List, Optional, Tuple
import copy
import threading

# Third Party
from kubernetes import client
from kubernetes.watch import Watch
from openshift.dynamic import DynamicClient
from openshift.dynamic.exceptions import (
    ConflictError as ApiConflictError,
    ForbiddenError,
    NotFoundError,
    ResourceNotFoundError,
    ResourceNotUniqueError,
)
from openshift.dynamic.resource import Resource
import kubernetes
import urllib3

# First Party
import alog

# Local
from ..exceptions import ConflictError, assert_store
from .base import ObjectStoreBase
from .kube_event import KubeEventType, KubeWatchEvent
from .kube_object import KubeObject

log = alog.use_channel("KUBST")

# See this document for value reasonings
# https://github.com/kubernetes-client/python/blob/master/examples/watch/timeout-settings.md
SERVER_WATCH_TIMEOUT = 3600
CLIENT_WATCH_TIMEOUT = 30

# The field manager recorded on every write
FIELD_MANAGER = "strata"

# Errors that mean the connection to the api server was interrupted
_TRANSIENT_ERRORS = (
    client.exceptions.ApiException,
    urllib3.exceptions.HTTPError,
    ConnectionError,
)


class KubeObjectStore(ObjectStoreBase):
    """This ObjectStore uses the openshift DynamicClient to interact with the
    cluster
    """

    # Internal struct to hold the key resource identifier elements
    _ResourceIdentifiers = namedtuple(
        "ResourceIdentifiers", ["api_version", "kind", "name", "namespace"]
    )

    def __init__(self):
        log.debug("Initializing openshift client")
        self._client = None

        # Status updates are serialized to avoid 409 conflicts between
        # concurrent workers writing status for the same object
        self._status_lock = threading.Lock()

        # Open watches so that they can be stopped on shutdown
        self._watches: List[Watch] = []
        self._watches_lock = threading.Lock()

    @property
    def client(self):
        """Lazy property access to the client"""
        if self._client is None:
            self._client = self._setup_client()
        return self._client

    ## Interface ###############################################################

    @alog.logged_function(log.debug)
    def deploy(self, resource_definitions: List[dict], **_) -> Tuple[bool, bool]:
        """Create or replace each resource. A resource carrying a
        metadata.resourceVersion is replaced with that precondition so that a
        concurrent writer causes a ConflictError.
        """
        return self._run_operation(resource_definitions, self._apply)

    @alog.logged_function(log.debug)
    def disable(self, resource_definitions: List[dict]) -> Tuple[bool, bool]:
        return self._run_operation(resource_definitions, self._disable)

    def get_object_current_state(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        try:
            resources = self._get_resource_handle(kind, api_version)
            if not resources:
                return True, None
            if not namespace:
                resources.namespaced = False
            return True, resources.get(name=name, namespace=namespace).to_dict()
        except NotFoundError:
            log.debug(
                "No object named [%s/%s] found in namespace [%s]", kind, name, namespace
            )
            return True, None
        except ForbiddenError:
            log.warning(
                "Fetching [%s/%s] forbidden in namespace [%s]", kind, name, namespace
            )
            return False, None
        except _TRANSIENT_ERRORS as err:
            log.warning("Failed to fetch [%s/%s]: %s", kind, name, err)
            return False, None

    def filter_objects_current_state(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
    ) -> Tuple[bool, List[dict]]:
        try:
            resources = self._get_resource_handle(kind, api_version)
            if not resources:
                return True, []
            list_obj = resources.get(
                label_selector=label_selector,
                field_selector=field_selector,
                namespace=namespace,
            )
        except NotFoundError:
            log.debug(
                "No objects of kind [%s] found in namespace [%s]", kind, namespace
            )
            return True, []
        except ForbiddenError:
            log.warning(
                "Listing objects of kind [%s] forbidden in namespace [%s]",
                kind,
                namespace,
            )
            return False, []
        except _TRANSIENT_ERRORS as err:
            log.warning("Failed to list [%s] in [%s]: %s", kind, namespace, err)
            return False, []

        return True, list_obj.to_dict().get("items", [])

    def watch_objects(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        name: Optional[str] = None,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
        resource_version: Optional[str] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> Iterator[KubeWatchEvent]:
        """Stream events until the server or the connection ends the watch.
        Returning (rather than silently reconnecting) lets the caller re-list
        and catch up on anything that happened during the gap.
        """
        resource_handle = self._get_resource_handle(kind, api_version)
        assert_store(
            resource_handle,
            f"Failed to fetch resource handle for {namespace}/{api_version}/{kind}",
        )
        if name:
            name_selector = f"metadata.name={name}"
            field_selector = (
                f"{field_selector},{name_selector}" if field_selector else name_selector
            )

        watch_manager = Watch()
        with self._watches_lock:
            self._watches.append(watch_manager)
        try:
            for event_obj in watch_manager.stream(
                resource_handle.get,
                resource_version=resource_version or None,
                namespace=namespace,
                label_selector=label_selector,
                field_selector=field_selector,
                serialize=False,
                timeout_seconds=SERVER_WATCH_TIMEOUT,
                _request_timeout=CLIENT_WATCH_TIMEOUT,
            ):
                if stop_event is not None and stop_event.is_set():
                    watch_manager.stop()
                    return
                event_type = event_obj.get("type")
                if event_type not in KubeEventType.__members__:
                    log.debug2("Skipping watch event of type %s", event_type)
                    continue
                yield KubeWatchEvent(
                    KubeEventType(event_type), KubeObject(event_obj["object"])
                )
        except client.exceptions.ApiException as exception:
            # 410 Gone: the requested resource_version has expired
            if exception.status != 410:
                raise
            log.debug2("Resource version expired for %s/%s", kind, api_version)
        except (urllib3.exceptions.ReadTimeoutError, urllib3.exceptions.ProtocolError):
            log.debug2("Watch socket closed for %s/%s", kind, api_version)
        finally:
            with self._watches_lock:
                if watch_manager in self._watches:
                    self._watches.remove(watch_manager)

    def set_status(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        status: dict,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, bool]:
        resource_definition = {
            "kind": kind,
            "apiVersion": api_version,
            "metadata": {"name": name, "namespace": namespace},
        }
        return self._run_operation(
            [resource_definition], self._set_status, status=status
        )

    ## Public Utilities ########################################################

    def stop_watches(self):
        """Stop every open watch stream"""
        with self._watches_lock:
            for watch_manager in self._watches:
                watch_manager.stop()

    ## Implementation Helpers ##################################################

    @staticmethod
    def _setup_client():
        """Create a DynamicClient that will work based on where the controller
        is running
        """
        try:
            log.debug2("Running with in-cluster config")
            kube_config = kubernetes.client.Configuration()
            kubernetes.config.load_incluster_config(client_configuration=kube_config)
            return DynamicClient(kubernetes.client.ApiClient(kube_config))
        except kubernetes.config.ConfigException:
            log.debug2("Running with out-of-cluster config")
            return DynamicClient(kubernetes.config.new_client_from_config())

    def _get_resource_handle(self, kind: str, api_version: str) -> Optional[Resource]:
        """Get the openshift resource handle for a specified kind and api_version"""
        try:
            return self.client.resources.get(kind=kind, api_version=api_version)
        except (ResourceNotFoundError, ResourceNotUniqueError):
            log.debug(
                "No resource kind [%s/%s] found or multiple kinds matched",
                api_version,
                kind,
            )
            return None

    @classmethod
    def _get_resource_identifiers(cls, resource_definition, require_api_version=True):
        """Helper for getting the required parts of a single resource definition"""
        api_version = resource_definition.get("apiVersion")
        kind = resource_definition.get("kind")
        name = resource_definition.get("metadata", {}).get("name")
        namespace = resource_definition.get("metadata", {}).get("namespace")
        assert None not in [kind, name], "Cannot apply resource without kind or name"
        assert (
            not require_api_version or api_version is not None
        ), "Cannot apply resource without apiVersion"
        return cls._ResourceIdentifiers(api_version, kind, name, namespace)

    def _run_operation(self, resource_definitions, operation, **kwargs):
        """Shared wrapper that runs an operation for each resource, converting
        api conflicts into ConflictError and any other failure into an
        unsuccessful result
        """
        assert isinstance(
            resource_definitions, list
        ), "Programming Error: resource_definitions is not a list"

        changed = False
        for resource_definition in resource_definitions:
            try:
                changed = (
                    operation(resource_definition=resource_definition, **kwargs)
                    or changed
                )
            except ApiConflictError as err:
                raise ConflictError(str(err)) from err
            except Exception as err:  # pylint: disable=broad-except
                log.warning(
                    "Operation [%s] failed to execute: %s",
                    operation.__name__,
                    err,
                    exc_info=True,
                )
                return False, changed
        return True, changed

    ################
    ## Operations ##
    ################

    def _apply(self, resource_definition: dict) -> bool:
        """Create the resource if it does not exist, otherwise replace it

        Returns:
            changed:  bool
                Whether or not a write was issued
        """
        res_id = self._get_resource_identifiers(resource_definition)
        resource_handle = self._get_resource_handle(res_id.kind, res_id.api_version)
        assert_store(
            resource_handle,
            f"Failed to fetch resource handle for {res_id.api_version}/{res_id.kind}",
        )
        resource_definition = copy.deepcopy(resource_definition)
        resource_definition["metadata"].pop("managedFields", None)

        if resource_definition["metadata"].get("resourceVersion"):
            log.debug2(
                "Replacing [%s/%s/%s] in %s",
                res_id.api_version,
                res_id.kind,
                res_id.name,
                res_id.namespace,
            )
            resource_handle.replace(
                resource_definition,
                name=res_id.name,
                namespace=res_id.namespace,
                field_manager=FIELD_MANAGER,
            )
        else:
            log.debug2(
                "Creating [%s/%s/%s] in %s",
                res_id.api_version,
                res_id.kind,
                res_id.name,
                res_id.namespace,
            )
            resource_handle.create(
                resource_definition,
                namespace=res_id.namespace,
                field_manager=FIELD_MANAGER,
            )
        return True

    def _disable(self, resource_definition: dict) -> bool:
        """Delete a single resource from the cluster if it exists

        Returns:
            changed:  bool
                Whether or not the resource existed
        """
        res_id = self._get_resource_identifiers(resource_definition)
        try:
            resource_handle = self.client.resources.get(
                api_version=res_id.api_version, kind=res_id.kind
            )
            if not res_id.namespace:
                resource_handle.namespaced = False
            log.debug2(
                "Attempting to delete [%s/%s/%s] from %s",
                res_id.api_version,
                res_id.kind,
                res_id.name,
                res_id.namespace,
            )
            resource_handle.delete(name=res_id.name, namespace=res_id.namespace)
            return True

        # If the kind or instance is not found, that's a success without change
        except (ResourceNotFoundError, NotFoundError) as err:
            log.debug2("Valid error caught when deleting %s: %s", res_id.name, err)
            return False

    def _set_status(self, resource_definition: dict, status: dict) -> bool:
        """Replace the status subresource of a single resource

        Returns:
            changed:  bool
                Whether or not the status was different
        """
        res_id = self._get_resource_identifiers(
            resource_definition, require_api_version=False
        )
        resource_handle = self.client.resources.get(
            api_version=res_id.api_version, kind=res_id.kind
        )
        if not res_id.namespace:
            resource_handle.namespaced = False

        with self._status_lock:
            resource = resource_handle.get(
                name=res_id.name, namespace=res_id.namespace
            ).to_dict()
            if resource.get("status") == status:
                log.debug("Status has not changed. No update")
                return False
            resource["status"] = status
            resource_handle.status.replace(body=resource)
            log.debug2(
                "Successfully set the status for [%s/%s] in %s",
                res_id.kind,
                res_id.name,
                res_id.namespace,
            )
            return True
