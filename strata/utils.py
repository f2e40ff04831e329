"""
Common utilities shared across components in the library
"""

# Standard
from datetime import timedelta
from typing import Any, Optional
import hashlib
import json
import re

# Local
from . import constants

# Sentinel for missing dict values
__MISSING__ = "__MISSING__"

## Dicts #######################################################################


def nested_set(dct: dict, key: str, val: Any):
    """Helper to set values in a dict using 'foo.bar' key notation

    Args:
        dct:  dict
            The dict into which the key will be set
        key:  str
            Key that may contain '.' notation indicating dict nesting
        val:  Any
            The value to place at the nested key
    """
    parts = key.split(constants.NESTED_DICT_DELIM)
    for i, part in enumerate(parts[:-1]):
        dct = dct.setdefault(part, {})
        if not isinstance(dct, dict):
            raise TypeError(
                f"Intermediate key {constants.NESTED_DICT_DELIM.join(parts[:i + 1])} is not a dict"
            )
    dct[parts[-1]] = val


def nested_get(dct: dict, key: str, dflt=None) -> Any:
    """Helper to get values from a dict using 'foo.bar' key notation

    Args:
        dct:  dict
            The dict to read from
        key:  str
            Key that may contain '.' notation indicating dict nesting

    Returns:
        val:  Any
            Whatever is found at the given key or dflt if the key is not found.
            This includes missing intermediate dicts.
    """
    parts = key.split(constants.NESTED_DICT_DELIM)
    for i, part in enumerate(parts[:-1]):
        dct = dct.get(part, __MISSING__)
        if dct is __MISSING__:
            return dflt
        if not isinstance(dct, dict):
            raise TypeError(
                f"Intermediate key {constants.NESTED_DICT_DELIM.join(parts[:i + 1])} is not a dict"
            )
    return dct.get(parts[-1], dflt)


## Values ######################################################################


def stringify_value(value: Any) -> Optional[str]:
    """Convert a scalar config value to the string form stored in a config
    source. Returns None for values that have no scalar string form (mappings,
    lists, etc).
    """
    if isinstance(value, bool):
        return constants.TRUE_STRING if value else constants.FALSE_STRING
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    return None


def digest(obj: Any, length: int = 16) -> str:
    """Get a stable hex digest of any jsonable python object. Unlike the
    builtin hash, this is the same across processes and restarts.

    Args:
        obj:  Any
            The object to hash
        length:  int
            The number of hex characters to keep

    Returns:
        digest:  str
            The truncated sha256 hex digest
    """
    content = json.dumps(obj, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(content).hexdigest()[:length]


## Time ########################################################################

_TIME_DELTA_REGEX = re.compile(
    r"^((?P<hours>\d+?)hr)?((?P<minutes>\d+?)m)?((?P<seconds>\d*\.?\d+?)s)?$"
)


def parse_time_delta(time_str: str) -> Optional[timedelta]:
    """Parse a string into a timedelta. Accepts values in the following
    formats: 1hr, 5m, 10s, 1hr30m, 2.5s

    Args:
        time_str:  str
            The string representation of a timedelta

    Returns:
        result:  Optional[timedelta]
            The parsed timedelta if one could be found
    """
    parts = _TIME_DELTA_REGEX.match(time_str or "")
    if not parts or all(part is None for part in parts.groupdict().values()):
        return None
    return timedelta(
        **{name: float(param) for name, param in parts.groupdict().items() if param}
    )
