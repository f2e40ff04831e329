"""Standard data types used throughout strata"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional, Union

# Local
from .utils import digest

# Forward Declarations
KUBE_EVENT_TYPE_TYPE = "KubeEventType"


### Identity Classes


@dataclass(eq=True, frozen=True, order=True)
class ObjectId:
    """Identity of a single ManagedObject"""

    namespace: str
    name: str

    def __str__(self):
        return f"{self.namespace}/{self.name}"


class SourceKind(Enum):
    """The kinds of config source in increasing order of precedence. Note that
    NAMESPACED_SHARED and REFERENCED share a precedence tier and REFERENCED is
    applied after NAMESPACED_SHARED within it.
    """

    GLOBAL_SHARED = "GlobalShared"
    NAMESPACED_SHARED = "NamespacedShared"
    REFERENCED = "Referenced"
    INLINE = "Inline"


@dataclass(eq=True, frozen=True)
class SourceId:
    """Identity of a single watched config source. A source is identified
    either by an exact name or by a label selector, never both.
    """

    kind: SourceKind
    api_version: str
    resource_kind: str
    namespace: Optional[str] = None
    name: Optional[str] = None
    selector: Optional[str] = None

    def __post_init__(self):
        if (self.name is None) == (self.selector is None):
            raise ValueError("A SourceId needs exactly one of name or selector")

    @property
    def is_selector(self) -> bool:
        """True if this source selects objects by label"""
        return self.selector is not None

    def __str__(self):
        target = self.name if self.name is not None else f"[{self.selector}]"
        return f"{self.kind.value}:{self.resource_kind}/{self.namespace}/{target}"


### Source Content Classes


@dataclass(frozen=True)
class ConfigSource:
    """The content of a single config object at one version"""

    kind: SourceKind
    name: str
    namespace: Optional[str]
    data: Dict[str, str]
    version: Optional[str] = None

    @property
    def version_key(self) -> str:
        """Key under which this source's version is recorded"""
        return f"{self.kind.value}:{self.namespace or ''}/{self.name}"


@dataclass(frozen=True)
class ConfigValue:
    """A single resolved value along with where it came from"""

    value: str
    source_kind: SourceKind
    origin: str


@dataclass
class EffectiveConfig:
    """The precedence-resolved configuration for one ManagedObject"""

    object_id: ObjectId
    values: Dict[str, ConfigValue] = field(default_factory=dict)
    source_versions: Dict[str, Optional[str]] = field(default_factory=dict)
    resolved_at: datetime = field(default_factory=datetime.now)

    @property
    def data(self) -> Dict[str, str]:
        """The plain key -> value mapping"""
        return {key: val.value for key, val in self.values.items()}

    @property
    def provenance(self) -> Dict[str, SourceKind]:
        """The key -> contributing source kind mapping"""
        return {key: val.source_kind for key, val in self.values.items()}

    @property
    def version(self) -> str:
        """Deterministic token identifying the content of this config"""
        return digest({"data": self.data, "versions": self.source_versions})


class ResolutionState(Enum):
    """Per-ManagedObject resolution state"""

    UNRESOLVED = "Unresolved"
    RESOLVED = "Resolved"
    FAILED = "Failed"


### Reconcile Classes


class ReconcileRequestType(Enum):
    """Why a reconcile was requested, beyond the raw KubeEventTypes"""

    # A config source that the object depends on changed
    SOURCE_CHANGED = "SOURCE_CHANGED"

    # A retry of a previously failed reconcile
    RETRY = "RETRY"

    # The initial reconcile of an object found at startup
    STARTUP = "STARTUP"

    # Used as a sentinel to alert threads to stop
    STOPPED = "STOPPED"


@dataclass
class ReconcileRequest:
    """One request to reconcile a single ManagedObject"""

    object_id: Optional[ObjectId]
    type: Union[ReconcileRequestType, KUBE_EVENT_TYPE_TYPE]
    source: Optional[SourceId] = None
    timestamp: datetime = field(default_factory=datetime.now)


### Timer Classes


@dataclass(order=True)
class TimerEvent:
    """An item in the timer queue. Time is the only comparable field so that
    events can be kept in a heap
    """

    time: datetime
    action: Callable = field(compare=False)
    args: tuple = field(default_factory=tuple, compare=False)
    kwargs: dict = field(default_factory=dict, compare=False)
    stale: bool = field(default=False, compare=False)

    def cancel(self):
        """Cancel this event. It will not be executed when read from the
        queue"""
        self.stale = True
