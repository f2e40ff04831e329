"""
The Reconciler drives the DerivedInstance of a single ManagedObject toward its
current EffectiveConfig and reports the outcome on the ManagedObject's status
"""

# Standard
from dataclasses import dataclass
from threading import Lock
from typing import Dict, List, Optional
import base64
import json
import uuid

# First Party
import alog

# Local
from . import config, constants, status
from .exceptions import (
    ConflictError,
    ErrorKind,
    StrataError,
    assert_store,
)
from .managed_object import ManagedObject, managed_object_api_version
from .multiplexer import WatchMultiplexer
from .resolver import ConfigResolver, EffectiveConfigCache
from .store import KubeObject, ObjectStoreBase
from .types import EffectiveConfig, ObjectId, ResolutionState

log = alog.use_channel("RECONCILE")


## Data models #################################################################


@dataclass
class ReconcileResult:
    """ReconcileResult is the outcome of a single successful reconcile"""

    object_id: ObjectId
    # The ManagedObject is gone and its DerivedInstance was removed
    deleted: bool = False
    # The DerivedInstance was created or updated
    changed: bool = False
    # The version of the EffectiveConfig now in effect
    effective_version: Optional[str] = None
    reconciliation_id: Optional[str] = None


## Derived Instance ############################################################


def derived_instance_name(managed_object_name: str) -> str:
    """Get the name of the DerivedInstance for a ManagedObject"""
    return f"{managed_object_name}{config.derived_instance.name_suffix}"


def render_derived_instance(
    managed_object: ManagedObject, effective_config: EffectiveConfig
) -> dict:
    """Render the desired DerivedInstance of a ManagedObject. The instance is
    owned by the ManagedObject so that it is garbage collected with it.
    """
    metadata = {
        "name": derived_instance_name(managed_object.name),
        "namespace": managed_object.namespace,
        "labels": {
            constants.MANAGED_BY_LABEL_NAME: constants.MANAGED_BY_LABEL_VALUE,
            constants.OWNER_NAME_LABEL_NAME: managed_object.name,
        },
        "annotations": {
            constants.EFFECTIVE_CONFIG_VERSION_ANNOTATION_NAME: effective_config.version,
            constants.SOURCE_VERSIONS_ANNOTATION_NAME: json.dumps(
                effective_config.source_versions, sort_keys=True
            ),
        },
    }
    if managed_object.uid:
        metadata["ownerReferences"] = [
            {
                "apiVersion": managed_object_api_version(),
                "kind": config.managed_object.kind,
                "name": managed_object.name,
                "uid": managed_object.uid,
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ]
    return {
        "apiVersion": config.derived_instance.api_version,
        "kind": config.derived_instance.kind,
        "metadata": metadata,
        "data": effective_config.data,
    }


def derived_instance_matches(current: dict, desired: dict) -> bool:
    """Check whether the current DerivedInstance already carries the desired
    content
    """
    current_annotations = current.get("metadata", {}).get("annotations") or {}
    desired_annotations = desired["metadata"]["annotations"]
    current_owners = [
        owner.get("uid")
        for owner in current.get("metadata", {}).get("ownerReferences") or []
    ]
    desired_owners = [
        owner.get("uid") for owner in desired["metadata"].get("ownerReferences") or []
    ]
    if current_owners != desired_owners:
        return False
    return current_annotations.get(
        constants.EFFECTIVE_CONFIG_VERSION_ANNOTATION_NAME
    ) == desired_annotations.get(
        constants.EFFECTIVE_CONFIG_VERSION_ANNOTATION_NAME
    ) and (current.get("data") or {}) == desired["data"]


## Reconciler ##################################################################


class Reconciler:
    """The Reconciler runs the reconcile of one ManagedObject at a time. It is
    safe to call concurrently for different objects. Serialization per object
    is the caller's job.
    """

    def __init__(
        self,
        store: ObjectStoreBase,
        multiplexer: WatchMultiplexer,
        cache: Optional[EffectiveConfigCache] = None,
        resolver: Optional[ConfigResolver] = None,
    ):
        """Construct with the collaborators

        Args:
            store:  ObjectStoreBase
                The store holding ManagedObjects, sources, and DerivedInstances
            multiplexer:  WatchMultiplexer
                The multiplexer tracking the dependencies of each object
            cache:  Optional[EffectiveConfigCache]
                The EffectiveConfig cache. Defaults to the multiplexer's cache
            resolver:  Optional[ConfigResolver]
                The resolver. Defaults to one reading from the store
        """
        self.store = store
        self.multiplexer = multiplexer
        self.cache = cache or multiplexer.cache or EffectiveConfigCache()
        self.resolver = resolver or ConfigResolver(store, self.cache)

        # Resolution state of every object seen since startup
        self._states: Dict[ObjectId, ResolutionState] = {}
        self._states_lock = Lock()

    ## Public Interface ########################################################

    def prime(self, resources: List[dict]) -> List[ObjectId]:
        """Register the dependencies of a list of ManagedObjects without
        reconciling them. Malformed objects are skipped and reported when they
        are reconciled.

        Returns:
            object_ids:  List[ObjectId]
                The objects that were primed
        """
        object_ids = []
        for resource in resources:
            try:
                managed_object = ManagedObject.from_resource(resource)
            except StrataError as err:
                log.warning(
                    "Skipping priming of malformed object: %s",
                    err,
                    extra={"resource": resource},
                )
                continue
            if managed_object.deleting:
                continue
            self.multiplexer.track(
                managed_object.object_id, managed_object.dependencies()
            )
            with self._states_lock:
                self._states.setdefault(
                    managed_object.object_id, ResolutionState.UNRESOLVED
                )
            object_ids.append(managed_object.object_id)
        log.info("Primed %d managed objects", len(object_ids))
        return object_ids

    def reconcile(self, object_id: ObjectId, retry_attempts: int = 0) -> ReconcileResult:
        """This is the main entrypoint for reconciliations. The reconcile path
        is as follows:

            1. Fetch the ManagedObject. If it is gone or being deleted, remove
               the DerivedInstance and stop tracking it
            2. Parse the ManagedObject and track its dependencies
            3. Get the EffectiveConfig from the cache or resolve it
            4. Re-check for deletion, then create or update the
               DerivedInstance if it differs
            5. Write the status if it changed

        Args:
            object_id:  ObjectId
                The ManagedObject to reconcile
            retry_attempts:  int
                The number of consecutive failed attempts before this one

        Returns:
            result:  ReconcileResult
                The result of the reconcile

        Raises:
            Exception: Any failure, so that the caller can retry with backoff
        """
        reconciliation_id = self.generate_id()
        resource = self._fetch_managed_object(object_id)
        if resource is None or KubeObject(resource).deleting:
            return self._cleanup(object_id, reconciliation_id)

        log_extra = {"resource": resource, "reconciliationId": reconciliation_id}
        log.info("Reconciling %s", object_id, extra=log_extra)

        try:
            managed_object = ManagedObject.from_resource(resource)
            self.multiplexer.track(object_id, managed_object.dependencies())

            effective_config = self.cache.get(
                object_id, fingerprint=managed_object.fingerprint()
            )
            if effective_config is None:
                effective_config = self.resolver.resolve(managed_object)
            else:
                log.debug2("Using cached config for %s", object_id, extra=log_extra)

            changed = self._apply(managed_object, effective_config, log_extra)
        except Exception as err:
            if isinstance(err, StrataError):
                log.warning(
                    "Reconcile of %s failed with %s: %s",
                    object_id,
                    err.kind.value,
                    err,
                    extra=log_extra,
                )
            else:
                log.error(
                    "Unexpected error reconciling %s: %s",
                    object_id,
                    err,
                    exc_info=True,
                    extra=log_extra,
                )
            state = self._record_failure(object_id, err)
            self._update_error_status(resource, err, retry_attempts + 1, state)
            raise

        if changed is None:
            return self._cleanup(object_id, reconciliation_id)

        with self._states_lock:
            self._states[object_id] = ResolutionState.RESOLVED
        self._update_resource_status(
            resource,
            resolved=True,
            effective_version=effective_config.version,
            retry_attempts=0,
            state=ResolutionState.RESOLVED,
        )
        return ReconcileResult(
            object_id=object_id,
            changed=changed,
            effective_version=effective_config.version,
            reconciliation_id=reconciliation_id,
        )

    def resolution_state(self, object_id: ObjectId) -> ResolutionState:
        """Get the resolution state of an object. Objects that have not been
        reconciled yet are Unresolved.
        """
        with self._states_lock:
            return self._states.get(object_id, ResolutionState.UNRESOLVED)

    @classmethod
    def generate_id(cls) -> str:
        """Generates a unique human readable id for this reconciliation

        Returns:
            id: str
                A unique base32 encoded id
        """
        uuid4 = uuid.uuid4()
        base32_str = base64.b32encode(uuid4.bytes).decode("utf-8")
        return base32_str[:22]

    ## Implementation Details ##################################################

    def _fetch_managed_object(self, object_id: ObjectId) -> Optional[dict]:
        success, resource = self.store.get_object_current_state(
            kind=config.managed_object.kind,
            name=object_id.name,
            namespace=object_id.namespace,
            api_version=managed_object_api_version(),
        )
        assert_store(success, f"Failed to fetch managed object {object_id}")
        return resource

    def _cleanup(self, object_id: ObjectId, reconciliation_id: str) -> ReconcileResult:
        """Remove the DerivedInstance of a deleted ManagedObject and forget it"""
        log.info("Cleaning up deleted managed object %s", object_id)
        success, changed = self.store.disable(
            [
                {
                    "apiVersion": config.derived_instance.api_version,
                    "kind": config.derived_instance.kind,
                    "metadata": {
                        "name": derived_instance_name(object_id.name),
                        "namespace": object_id.namespace,
                    },
                }
            ]
        )
        assert_store(success, f"Failed to delete the derived instance of {object_id}")
        self.multiplexer.untrack(object_id)
        self.cache.drop(object_id)
        with self._states_lock:
            self._states.pop(object_id, None)
        return ReconcileResult(
            object_id=object_id,
            deleted=True,
            changed=changed,
            reconciliation_id=reconciliation_id,
        )

    def _apply(
        self,
        managed_object: ManagedObject,
        effective_config: EffectiveConfig,
        log_extra: dict,
    ) -> Optional[bool]:
        """Create or update the DerivedInstance. Write conflicts are retried
        immediately with fresh state up to the configured limit.

        Returns:
            changed:  Optional[bool]
                Whether the DerivedInstance was written, or None if the
                ManagedObject was deleted in the meantime

        Raises:
            ConflictError: If the retries are exhausted
        """
        object_id = managed_object.object_id
        desired = render_derived_instance(managed_object, effective_config)
        max_attempts = int(config.reconcile.conflict_retries) + 1

        for attempt in range(1, max_attempts + 1):
            # Never write for an object that is already gone
            resource = self._fetch_managed_object(object_id)
            if (
                resource is None
                or KubeObject(resource).deleting
                or KubeObject(resource).uid != managed_object.uid
            ):
                log.info("%s was deleted during reconcile", object_id, extra=log_extra)
                return None

            success, current = self.store.get_object_current_state(
                kind=desired["kind"],
                name=desired["metadata"]["name"],
                namespace=desired["metadata"]["namespace"],
                api_version=desired["apiVersion"],
            )
            assert_store(success, f"Failed to fetch the derived instance of {object_id}")

            if current is not None and derived_instance_matches(current, desired):
                log.debug("Derived instance of %s is up to date", object_id, extra=log_extra)
                return False

            to_apply = dict(desired, metadata=dict(desired["metadata"]))
            if current is not None:
                to_apply["metadata"]["resourceVersion"] = KubeObject(
                    current
                ).resource_version
            try:
                success, _ = self.store.deploy([to_apply])
            except ConflictError as err:
                log.debug(
                    "Conflict writing derived instance of %s (attempt %d/%d): %s",
                    object_id,
                    attempt,
                    max_attempts,
                    err,
                    extra=log_extra,
                )
                continue
            assert_store(success, f"Failed to write the derived instance of {object_id}")
            log.info(
                "%s derived instance of %s at version %s",
                "Updated" if current is not None else "Created",
                object_id,
                effective_config.version,
                extra=log_extra,
            )
            return True

        raise ConflictError(
            f"Derived instance of {object_id} still conflicted after "
            f"{max_attempts} attempts"
        )

    def _update_error_status(
        self,
        resource: dict,
        error: Exception,
        retry_attempts: int,
        state: ResolutionState,
    ):
        """Report a failed reconcile on the ManagedObject's status. Errors that
        are not strata errors are reported as StoreUnavailable.
        """
        error_kind = (
            error.kind if isinstance(error, StrataError) else ErrorKind.STORE_UNAVAILABLE
        )
        self._update_resource_status(
            resource,
            resolved=False,
            error_kind=error_kind,
            error_message=str(error),
            retry_attempts=retry_attempts,
            state=state,
        )

    def _record_failure(self, object_id: ObjectId, error: Exception) -> ResolutionState:
        """Move an object to Failed if the error means it cannot be resolved
        until a source changes. Transient errors keep the current state.
        """
        with self._states_lock:
            if isinstance(error, StrataError) and error.blocks_resolution:
                self._states[object_id] = ResolutionState.FAILED
            return self._states.setdefault(object_id, ResolutionState.UNRESOLVED)

    def _update_resource_status(self, resource: dict, **kwargs) -> dict:
        """Merge the given values into the current status and write it if it
        changed. Status failures are logged but never fail the reconcile.
        """
        if not config.status_updates:
            return {}

        kube_obj = KubeObject(resource)
        current_status = resource.get("status") or {}
        status_object = status.update_resolution_status(current_status, **kwargs)
        if not status.status_changed(current_status, status_object):
            log.debug2("No status change for %s", kube_obj)
            return status_object

        log.debug("Found meaningful change. Updating status of %s", kube_obj)
        try:
            success, _ = self.store.set_status(
                kind=kube_obj.kind,
                name=kube_obj.name,
                namespace=kube_obj.namespace,
                status=status_object,
                api_version=kube_obj.api_version,
            )
        except StrataError as err:
            log.warning("Failed to update status for %s: %s", kube_obj, err)
            return {}
        if not success:
            log.warning("Failed to update status for %s", kube_obj)
            return {}
        return status_object
