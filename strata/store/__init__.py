"""
The ObjectStore is the abstraction in charge of interacting with the cluster to
read config sources and ManagedObjects and to write DerivedInstances and status.
"""

# Local
from .base import ObjectStoreBase
from .dry_run import DryRunObjectStore
from .kube import KubeObjectStore
from .kube_event import KubeEventType, KubeWatchEvent
from .kube_object import KubeObject
