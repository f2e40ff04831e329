"""
Helper module to define shared types related to store watch events
"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

# Local
from .kube_object import KubeObject


class KubeEventType(Enum):
    """Enum for all possible watch event types"""

    DELETED = "DELETED"
    MODIFIED = "MODIFIED"
    ADDED = "ADDED"


@dataclass
class KubeWatchEvent:
    """DataClass containing the type, resource, and timestamp of a
    particular event"""

    type: KubeEventType
    resource: KubeObject
    timestamp: datetime = field(default_factory=datetime.now)
