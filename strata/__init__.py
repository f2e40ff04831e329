"""
Package exports
"""

# Local
from . import config, status
from .controller import Controller
from .exceptions import (
    ConflictError,
    ErrorKind,
    MalformedSource,
    MissingMandatorySource,
    ReferenceUnresolved,
    StoreUnavailable,
    StrataError,
    assert_source,
    assert_store,
)
from .managed_object import ManagedObject, SourceReference
from .multiplexer import WatchMultiplexer
from .reconcile import ReconcileResult, Reconciler
from .registry import SourceRegistry
from .resolver import ConfigResolver, EffectiveConfigCache, merge_sources
from .store import DryRunObjectStore, KubeObjectStore, ObjectStoreBase
from .types import (
    ConfigSource,
    ConfigValue,
    EffectiveConfig,
    ObjectId,
    SourceId,
    SourceKind,
)
