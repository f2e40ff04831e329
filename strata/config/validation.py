"""
Module to validate values in a loaded config against a parallel validation
config. Each leaf of the validation config is a dict with a "type" key naming
one of the registered validators and any keyword args that validator accepts.
"""

# Standard
from typing import Any, Dict, List, Optional, Type, Union
import builtins

# First Party
import aconfig
import alog

# Local
from .. import constants
from ..utils import nested_get

log = alog.use_channel("CONFG")

# Map from the "type" key in the validation file to the validator class
_VALIDATORS: Dict[str, Type["_Validator"]] = {}


def _register(type_key: str):
    """Decorator to register a validator class under a type key"""

    def decorator(cls):
        _VALIDATORS[type_key] = cls
        return cls

    return decorator


## Public ######################################################################


def get_invalid_params(
    config: aconfig.Config,
    validation_config: aconfig.Config,
) -> List[str]:
    """Get a list of any params that are invalid

    Args:
        config:  aconfig.Config
            The parsed config with any override values
        validation_config:  aconfig.Config
            The parallel config holding validation setup

    Returns:
        invalid_params:  List[str]
            A list of the dotted keys for parameters that fail validation
    """
    invalid_params = []
    for key, validator in _parse_validation_config(validation_config).items():
        if not validator.validate(nested_get(config, key)):
            log.warning("Found invalid config key [%s]", key)
            invalid_params.append(key)
    return invalid_params


## Validators ##################################################################

# pylint: disable=too-few-public-methods


class _Validator:
    """Base validator that checks a value's type, then its content"""

    TYPES: List[type] = []

    def __init__(self, optional: bool = False):
        self.optional = optional

    def validate(self, value: Any) -> bool:
        """Run the validation for a read value"""
        if value is None and self.optional:
            return True
        # NOTE: bool is a subclass of int, so it must be rejected explicitly
        #   for the numeric validators
        if isinstance(value, bool) and bool not in self.TYPES:
            log.warning("Invalid type <%s>", type(value))
            return False
        if not isinstance(value, tuple(self.TYPES)):
            log.warning("Invalid type <%s>", type(value))
            return False
        if not self._validate_value(value):
            log.warning("Invalid value [%s]", value)
            return False
        return True

    def _validate_value(self, value: Any) -> bool:
        return True


@_register("number")
class _NumberValidator(_Validator):
    """A number with optional inclusive bounds"""

    TYPES = [int, float]

    def __init__(
        self,
        *,
        min: Optional[Union[int, float]] = None,  # pylint: disable=redefined-builtin
        max: Optional[Union[int, float]] = None,  # pylint: disable=redefined-builtin
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._min = min
        self._max = max

    def _validate_value(self, value: Union[int, float]) -> bool:
        return (self._min is None or value >= self._min) and (
            self._max is None or value <= self._max
        )


@_register("int")
class _IntValidator(_NumberValidator):
    TYPES = [int]


@_register("float")
class _FloatValidator(_NumberValidator):
    TYPES = [float]


@_register("str")
class _StrValidator(_Validator):
    """A string with optional inclusive length bounds"""

    TYPES = [str]

    def __init__(
        self,
        *,
        min_len: Optional[int] = None,
        max_len: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._min_len = min_len
        self._max_len = max_len

    def _validate_value(self, value: str) -> bool:
        return (self._min_len is None or len(value) >= self._min_len) and (
            self._max_len is None or len(value) <= self._max_len
        )


@_register("bool")
class _BoolValidator(_Validator):
    TYPES = [bool]


@_register("enum")
class _EnumValidator(_Validator):
    """A value from a fixed set"""

    TYPES = [str, int, type(None)]

    def __init__(self, *, values: List[Union[str, int, None]], **kwargs):
        super().__init__(**kwargs)
        assert isinstance(values, list) and values, "Must specify enum values!"
        self.values = values

    def _validate_value(self, value: Union[str, int, None]) -> bool:
        return value in self.values


@_register("list")
class _ListValidator(_StrValidator):
    """A list with optional length bounds and item type"""

    TYPES = [list]

    def __init__(self, *, item_type: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self._item_type = None
        if item_type is not None:
            assert hasattr(builtins, item_type), f"Unsupported item_type: {item_type}"
            self._item_type = getattr(builtins, item_type)

    def _validate_value(self, value: list) -> bool:
        return super()._validate_value(value) and (
            self._item_type is None
            or all(isinstance(item, self._item_type) for item in value)
        )


# pylint: enable=too-few-public-methods

## Parsing #####################################################################


def _parse_validation_config(
    validation_config: dict,
    prefix_parts: Optional[List[str]] = None,
) -> Dict[str, _Validator]:
    """Recursively parse the validation config into a flat dict from dotted
    keys to validator instances
    """
    validators = {}
    prefix_parts = prefix_parts or []
    for key, val in validation_config.items():
        if not isinstance(val, dict):
            continue
        key_parts = prefix_parts + [key]
        nested_key = constants.NESTED_DICT_DELIM.join(key_parts)
        type_key = val.get("type")
        if isinstance(type_key, str) and type_key in _VALIDATORS:
            kwargs = {k: v for k, v in val.items() if k != "type"}
            log.debug3("Found %s parameter at %s", type_key, nested_key)
            validators[nested_key] = _VALIDATORS[type_key](**kwargs)
        else:
            validators.update(_parse_validation_config(val, key_parts))
    return validators
