"""
This module holds the common functionality used to represent the resolution
status of ManagedObjects

strata supports a single status condition:

* Resolved: True if the latest EffectiveConfig was computed and applied to the
    DerivedInstance

Additionally, strata reports top-level status elements. The schema is:
{
    "resolved": bool,
    "lastError": ErrorKind value or null,
    "lastErrorMessage": str,
    "effectiveConfigVersion": version of the EffectiveConfig in effect,
    "retryAttempts": number of consecutive failed reconciles,
    "state": ResolutionState value,
    "conditions": [...],
}

The state is Failed only when the content of a source blocks resolution. A
transient store error leaves the state where it was, so a Resolved object
keeps its last-known-good config.
"""

# Standard
from datetime import datetime
from typing import List, Optional, Union
import copy

# Third Party
from deepdiff import DeepDiff

# First Party
import alog

# Local
from . import constants
from .exceptions import ErrorKind
from .types import ResolutionState

log = alog.use_channel("STTUS")

## Public ######################################################################

# The "type" value in the condition
RESOLVED_CONDITION = "Resolved"

# The reason of the condition when resolution succeeded. Failures use the
# ErrorKind value as the reason.
RESOLVED_REASON = "Resolved"

# The key in the condition used for the timestamp
TIMESTAMP_KEY = "lastTransactionTime"

# Keys owned by strata in the top level of status
MANAGED_STATUS_KEYS = [
    constants.STATUS_RESOLVED,
    constants.STATUS_LAST_ERROR,
    constants.STATUS_LAST_ERROR_MESSAGE,
    constants.STATUS_EFFECTIVE_CONFIG_VERSION,
    constants.STATUS_RETRY_ATTEMPTS,
    constants.STATUS_STATE,
]


def make_resolution_status(  # pylint: disable=too-many-arguments
    resolved: bool,
    error_kind: Optional[Union[ErrorKind, str]] = None,
    error_message: str = "",
    effective_version: Optional[str] = None,
    retry_attempts: int = 0,
    state: Optional[Union[ResolutionState, str]] = None,
    external_conditions: Optional[List[dict]] = None,
    external_status: Optional[dict] = None,
    last_transaction_time: Optional[datetime] = None,
) -> dict:
    """Create a full status object for a ManagedObject

    Args:
        resolved:  bool
            Whether the latest resolution succeeded
        error_kind:  Optional[ErrorKind or str]
            The kind of the last error, if any
        error_message:  str
            Plain-text message explaining the error
        effective_version:  Optional[str]
            The version of the EffectiveConfig currently in effect
        retry_attempts:  int
            The number of consecutive failed attempts
        state:  Optional[ResolutionState or str]
            The resolution state of the object. Defaults to Resolved, Failed,
            or Unresolved based on resolved and error_kind.
        external_conditions:  Optional[List[dict]]
            Additional conditions to include in the update
        external_status:  Optional[dict]
            Additional key/value status elements that should be preserved
        last_transaction_time:  Optional[datetime]
            Timestamp to put on the condition. Defaults to now.

    Returns:
        status:  dict
            Dict representation of the status for the ManagedObject
    """
    if isinstance(error_kind, str):
        error_kind = ErrorKind(error_kind)
    if isinstance(state, str):
        state = ResolutionState(state)
    if state is None:
        if resolved:
            state = ResolutionState.RESOLVED
        elif error_kind:
            state = ResolutionState.FAILED
        else:
            state = ResolutionState.UNRESOLVED

    status = copy.deepcopy(external_status or {})
    status.update(
        {
            constants.STATUS_RESOLVED: resolved,
            constants.STATUS_LAST_ERROR: error_kind.value if error_kind else None,
            constants.STATUS_LAST_ERROR_MESSAGE: error_message or "",
            constants.STATUS_EFFECTIVE_CONFIG_VERSION: effective_version,
            constants.STATUS_RETRY_ATTEMPTS: retry_attempts,
            constants.STATUS_STATE: state.value,
        }
    )

    conditions = [
        _make_resolved_condition(
            resolved,
            error_kind,
            error_message,
            last_transaction_time or datetime.now(),
        )
    ]
    conditions.extend(external_conditions or [])
    status["conditions"] = conditions
    return status


def update_resolution_status(current_status: Optional[dict], **kwargs) -> dict:
    """Create an updated status based on the values in the current status.
    External keys and conditions are preserved. The Resolved condition keeps
    its timestamp if its status, reason, and message did not change.

    Args:
        current_status:  Optional[dict]
            The dict representation of the current status
        **kwargs:
            Keyword args to pass to make_resolution_status

    Returns:
        updated_status:  dict
            Updated dict representation of the status
    """
    current_status = copy.deepcopy(current_status or {})
    current_conditions = current_status.get("conditions", [])

    kwargs.setdefault(
        "effective_version",
        current_status.get(constants.STATUS_EFFECTIVE_CONFIG_VERSION),
    )
    kwargs["external_conditions"] = [
        cond for cond in current_conditions if cond.get("type") != RESOLVED_CONDITION
    ]
    kwargs["external_status"] = {
        key: val
        for key, val in current_status.items()
        if key != "conditions" and key not in MANAGED_STATUS_KEYS
    }
    log.debug3("Merged status kwargs: %s", kwargs)

    status = make_resolution_status(**kwargs)

    # Keep the previous transition time if the condition did not transition
    previous = get_condition(RESOLVED_CONDITION, current_status)
    current = get_condition(RESOLVED_CONDITION, status)
    if previous and all(
        previous.get(key) == current.get(key) for key in ("status", "reason", "message")
    ):
        current[TIMESTAMP_KEY] = previous.get(TIMESTAMP_KEY, current[TIMESTAMP_KEY])
    return status


def status_changed(current_status: dict, new_status: dict) -> bool:
    """Compare two status objects to determine if there is a meaningful change
    between the current status and the proposed new status. A meaningful change
    is defined as any change besides a timestamp.

    Args:
        current_status:  dict
            The raw status dict from the current ManagedObject
        new_status:  dict
            The proposed new status

    Returns:
        status_changed:  bool
            True if there is a meaningful change between the current status and
            the new status
    """
    if not isinstance(current_status, dict) or not isinstance(new_status, dict):
        return True

    return bool(
        DeepDiff(
            current_status,
            new_status,
            exclude_obj_callback=lambda _, path: path.endswith(f"{TIMESTAMP_KEY}']"),
        )
    )


def get_condition(type_name: str, current_status: dict) -> dict:
    """Extract the given condition type from a status object

    Returns:
        condition:  dict
            The condition object if found, empty dict otherwise
    """
    cond = [
        cond
        for cond in (current_status or {}).get("conditions", [])
        if cond.get("type") == type_name
    ]
    if cond:
        assert len(cond) == 1, f"Found multiple condition entries for {type_name}"
        return cond[0]
    return {}


## Implementation Details ######################################################


def _make_resolved_condition(
    resolved: bool,
    error_kind: Optional[ErrorKind],
    message: str,
    last_transaction_time: datetime,
) -> dict:
    reason = RESOLVED_REASON if resolved or error_kind is None else error_kind.value
    log.debug2("%s status %s: %s", RESOLVED_CONDITION, resolved, reason)
    return {
        "type": RESOLVED_CONDITION,
        "status": str(resolved),
        "reason": reason,
        "message": message or "",
        TIMESTAMP_KEY: last_transaction_time.isoformat(),
    }
