"""
This module implements custom exceptions
"""

# Standard
from enum import Enum

## Error Kinds #################################################################


class ErrorKind(Enum):
    """The kinds of failure that can be surfaced on a ManagedObject's status"""

    MISSING_MANDATORY_SOURCE = "MissingMandatorySource"
    REFERENCE_UNRESOLVED = "ReferenceUnresolved"
    STORE_UNAVAILABLE = "StoreUnavailable"
    CONFLICT = "Conflict"
    MALFORMED_SOURCE = "MalformedSource"


## Base Error ##################################################################


class StrataError(Exception):
    """Base class for all strata exceptions"""

    def __init__(self, message: str, kind: ErrorKind, blocks_resolution: bool):
        """Construct with the error kind and a flag indicating whether the
        error means that no EffectiveConfig can be produced until a source
        changes. This will be a static property of all children.
        """
        super().__init__(message)
        self._kind = kind
        self._blocks_resolution = blocks_resolution

    @property
    def kind(self) -> ErrorKind:
        """The ErrorKind reported in status for this error"""
        return self._kind

    @property
    def blocks_resolution(self) -> bool:
        """Property indicating whether or not this error is caused by the
        content of a source rather than by a transient store problem
        """
        return self._blocks_resolution


## Resolution Errors ###########################################################


class MissingMandatorySource(StrataError):
    """The cluster-global config source could not be found. Resolution is
    blocked until it exists.
    """

    def __init__(self, message: str = ""):
        super().__init__(
            message=message,
            kind=ErrorKind.MISSING_MANDATORY_SOURCE,
            blocks_resolution=True,
        )


class ReferenceUnresolved(StrataError):
    """A referenced source name or selector matched nothing"""

    def __init__(self, message: str = ""):
        super().__init__(
            message=message,
            kind=ErrorKind.REFERENCE_UNRESOLVED,
            blocks_resolution=True,
        )


class MalformedSource(StrataError):
    """A source's data could not be parsed into key/value form"""

    def __init__(self, message: str = ""):
        super().__init__(
            message=message,
            kind=ErrorKind.MALFORMED_SOURCE,
            blocks_resolution=True,
        )


## Store Errors ################################################################


class StoreUnavailable(StrataError):
    """A transient failure talking to the object store"""

    def __init__(self, message: str = ""):
        super().__init__(
            message=message,
            kind=ErrorKind.STORE_UNAVAILABLE,
            blocks_resolution=False,
        )


class ConflictError(StrataError):
    """An optimistic-concurrency collision when writing an object"""

    def __init__(self, message: str = ""):
        super().__init__(
            message=message,
            kind=ErrorKind.CONFLICT,
            blocks_resolution=False,
        )


## Assertions ##################################################################


def assert_store(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a StoreUnavailable. This
    should be used when an operation against the object store (such as fetching
    a source) does not succeed.
    """
    if not condition:
        raise StoreUnavailable(message)


def assert_source(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a MalformedSource. This should
    be used when the content of a source does not have the expected shape.
    """
    if not condition:
        raise MalformedSource(message)
