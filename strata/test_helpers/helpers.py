"""
This module holds common helper functions for making testing easy
"""

# Standard
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional
from unittest import mock
import copy
import inspect
import os
import threading
import time
import uuid

# First Party
import aconfig
import alog

# Local
from strata.config import library_config as config_detail_dict
from strata.store import DryRunObjectStore
from strata.types import ObjectId, ReconcileRequest

log = alog.use_channel("TEST")


def configure_logging():
    alog.configure(
        os.environ.get("LOG_LEVEL", "off"),
        os.environ.get("LOG_FILTERS", ""),
        formatter="json"
        if os.environ.get("LOG_JSON", "").lower() == "true"
        else "pretty",
        thread_id=os.environ.get("LOG_THREAD_ID", "").lower() == "true",
    )


configure_logging()

TEST_NAMESPACE = "test"
SOME_OTHER_NAMESPACE = "somewhere"
TEST_INSTANCE_NAME = "test-instance"

GLOBAL_NAMESPACE = "strata-system"
GLOBAL_NAME = "strata-global"
NAMESPACED_NAME = "strata-config"

MANAGED_OBJECT_KIND = "ConfigConsumer"
MANAGED_OBJECT_API_VERSION = "strata.io/v1alpha1"

## Config ######################################################################


@contextmanager
def library_config(**config_overrides):
    """This context manager sets library config values temporarily and reverts
    them on completion. Dict values are merged into the current nested value
    so that a single nested key can be overridden.
    """
    # Override the configs and hang onto the old values
    old_vals = {}
    for key, val in config_overrides.items():
        if key in config_detail_dict:
            old_vals[key] = config_detail_dict[key]
            if isinstance(val, dict) and isinstance(old_vals[key], dict):
                merged = dict(old_vals[key])
                merged.update(val)
                val = aconfig.Config(merged, override_env_vars=False)
        config_detail_dict[key] = val

    # Yield to the context
    try:
        yield
    finally:
        # Revert to the old values
        for key in config_overrides:
            if key in old_vals:
                config_detail_dict[key] = old_vals[key]
            else:
                del config_detail_dict[key]


## Builders ####################################################################


def make_resource(
    kind: str = "ConfigMap",
    name: str = TEST_INSTANCE_NAME,
    namespace: Optional[str] = TEST_NAMESPACE,
    api_version: str = "v1",
    labels: Optional[Dict[str, str]] = None,
    **kwargs,
) -> dict:
    """Make the dict representation of a store object"""
    resource = copy.deepcopy(kwargs)
    resource.setdefault("kind", kind)
    resource.setdefault("apiVersion", api_version)
    metadata = resource.setdefault("metadata", {})
    metadata.setdefault("name", name)
    if namespace is not None:
        metadata.setdefault("namespace", namespace)
    if labels:
        metadata.setdefault("labels", {}).update(labels)
    return resource


def make_config_map(
    name: str,
    namespace: str = TEST_NAMESPACE,
    data: Optional[Dict[str, Any]] = None,
    labels: Optional[Dict[str, str]] = None,
) -> dict:
    """Make a ConfigMap holding the given data"""
    return make_resource(
        kind="ConfigMap",
        name=name,
        namespace=namespace,
        labels=labels,
        data=dict(data or {}),
    )


def make_global_source(data: Optional[Dict[str, Any]] = None) -> dict:
    """Make the cluster-global config source"""
    return make_config_map(GLOBAL_NAME, GLOBAL_NAMESPACE, data)


def make_namespaced_source(
    data: Optional[Dict[str, Any]] = None, namespace: str = TEST_NAMESPACE
) -> dict:
    """Make the namespace-local config source"""
    return make_config_map(NAMESPACED_NAME, namespace, data)


def make_managed_object(
    name: str = TEST_INSTANCE_NAME,
    namespace: str = TEST_NAMESPACE,
    config: Optional[Dict[str, Any]] = None,
    config_refs: Optional[List[Any]] = None,
    uid: Optional[str] = None,
    **kwargs,
) -> dict:
    """Make a ManagedObject custom resource"""
    resource = make_resource(
        kind=MANAGED_OBJECT_KIND,
        api_version=MANAGED_OBJECT_API_VERSION,
        name=name,
        namespace=namespace,
        **kwargs,
    )
    resource["metadata"].setdefault("uid", uid or str(uuid.uuid4()))
    spec = resource.setdefault("spec", {})
    if config is not None:
        spec["config"] = dict(config)
    if config_refs is not None:
        spec["configRefs"] = list(config_refs)
    return resource


## Failure Injection ###########################################################


def get_failable_method(fail_flag, method, failure_return=False):
    log.debug4(
        "Setting up failable mock of [%s] with fail flag: %s", str(method), fail_flag
    )

    def failable_method(*args, **kwargs):
        log.debug4(
            "Running failable mock of [%s] with fail flag: %s", str(method), fail_flag
        )
        if isinstance(fail_flag, Exception) or (
            inspect.isclass(fail_flag) and issubclass(fail_flag, Exception)
        ):
            log.debug4("Raising in failable mock")
            raise fail_flag
        if callable(fail_flag):
            log.debug4("Calling callable fail flag")
            res = fail_flag()
            if res is not None:
                return res
        elif fail_flag:
            log.debug4("Returning %s", failure_return)
            return failure_return
        return method(*args, **kwargs)

    return failable_method


class FailOnce:
    """Helper callable that will fail once on the N'th call"""

    def __init__(self, fail_val, fail_number=1):
        self.call_count = 0
        self.fail_number = fail_number
        self.fail_val = fail_val

    def __call__(self, *_, **__):
        self.call_count += 1
        if self.call_count == self.fail_number:
            log.debug("Failing on call %d with %s", self.call_count, self.fail_val)
            if isinstance(self.fail_val, type) and issubclass(self.fail_val, Exception):
                raise self.fail_val("Raising!")
            return self.fail_val
        log.debug("Not failing on call %d", self.call_count)
        return None


class FailTimes(FailOnce):
    """Helper callable that fails on each of the first N calls"""

    def __call__(self, *_, **__):
        self.call_count += 1
        if self.call_count <= self.fail_number:
            log.debug("Failing on call %d with %s", self.call_count, self.fail_val)
            if isinstance(self.fail_val, type) and issubclass(self.fail_val, Exception):
                raise self.fail_val("Raising!")
            return self.fail_val
        return None


class MockObjectStore(DryRunObjectStore):
    """The MockObjectStore wraps a standard DryRunObjectStore and adds
    configuration options to simulate failures in each of its operations.
    Every operation is a mock.Mock so that calls can be counted.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        deploy_fail=False,
        disable_fail=False,
        get_state_fail=False,
        filter_fail=False,
        watch_fail=False,
        set_status_fail=False,
        auto_enable=True,
        resources=None,
        **kwargs,
    ):
        """This store can be configured to have various failure cases. A fail
        flag may be a bool (return the failure value), an exception (raise
        it), or a callable (return its result if not None).
        """
        super().__init__(resources=resources, **kwargs)

        self.deploy_fail = deploy_fail
        self.disable_fail = disable_fail
        self.get_state_fail = get_state_fail
        self.filter_fail = filter_fail
        self.watch_fail = watch_fail
        self.set_status_fail = set_status_fail

        # If auto-enabling, turn the mocks on now
        if auto_enable:
            self.enable_mocks()

    ## Helpers for Tests #######################################################

    def enable_mocks(self):
        """Turn the mocks on"""
        self.deploy = mock.Mock(
            side_effect=get_failable_method(
                self.deploy_fail, super().deploy, (False, False)
            )
        )
        self.disable = mock.Mock(
            side_effect=get_failable_method(
                self.disable_fail, super().disable, (False, False)
            )
        )
        self.get_object_current_state = mock.Mock(
            side_effect=get_failable_method(
                self.get_state_fail, super().get_object_current_state, (False, None)
            )
        )
        self.filter_objects_current_state = mock.Mock(
            side_effect=get_failable_method(
                self.filter_fail, super().filter_objects_current_state, (False, [])
            )
        )
        self.set_status = mock.Mock(
            side_effect=get_failable_method(
                self.set_status_fail, super().set_status, (False, False)
            )
        )
        self.watch_objects = mock.Mock(
            side_effect=get_failable_method(self.watch_fail, super().watch_objects, [])
        )

    def get_obj(self, kind, name, namespace=None, api_version=None):
        return DryRunObjectStore.get_object_current_state(
            self, kind, name, namespace, api_version
        )[1]

    def has_obj(self, *args, **kwargs):
        return self.get_obj(*args, **kwargs) is not None

    def derived_instance(self, name=TEST_INSTANCE_NAME, namespace=TEST_NAMESPACE):
        """Get the DerivedInstance of a ManagedObject"""
        return self.get_obj("ConfigMap", f"{name}-effective", namespace, "v1")

    def managed_object(self, name=TEST_INSTANCE_NAME, namespace=TEST_NAMESPACE):
        """Get a ManagedObject"""
        return self.get_obj(
            MANAGED_OBJECT_KIND, name, namespace, MANAGED_OBJECT_API_VERSION
        )

    def derived_writes(self) -> int:
        """The number of deploy calls that wrote a DerivedInstance"""
        return len(
            [
                call
                for call in self.deploy.call_args_list
                if any(
                    resource.get("metadata", {}).get("name", "").endswith("-effective")
                    for resource in call.args[0]
                )
            ]
        )


## Recording ###################################################################


class RecordingSink:
    """Callable that records every ReconcileRequest pushed to it"""

    def __init__(self):
        self.requests: List[ReconcileRequest] = []
        self._lock = threading.Lock()

    def __call__(self, request: ReconcileRequest):
        with self._lock:
            self.requests.append(request)

    @property
    def object_ids(self) -> List[ObjectId]:
        with self._lock:
            return [request.object_id for request in self.requests]

    def clear(self):
        with self._lock:
            self.requests.clear()


def wait_for(condition: Callable[[], Any], timeout: float = 5, poll: float = 0.01):
    """Poll until the condition is truthy. Returns the last value of the
    condition so that callers can assert on it.
    """
    end_time = time.time() + timeout
    result = condition()
    while not result and time.time() < end_time:
        time.sleep(poll)
        result = condition()
    return result
