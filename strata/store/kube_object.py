"""
Helper object to represent a single object read from the object store
"""
# Standard
from typing import Optional

KUBE_LIST_IDENTIFIER = "List"


class KubeObject:
    """Thin read-only view over the dict representation of a store object"""

    def __init__(self, definition: dict):
        self.definition = definition
        self.kind = definition.get("kind")
        self.api_version = definition.get("apiVersion")
        self.metadata = definition.get("metadata") or {}
        self.name = self.metadata.get("name")
        self.namespace = self.metadata.get("namespace")
        self.uid = self.metadata.get("uid")
        self.labels = self.metadata.get("labels") or {}

        # If resource is not a list then it must be named
        assert self.kind is not None, "No kind found"
        if KUBE_LIST_IDENTIFIER not in self.kind:
            assert self.name is not None, "No name found"

    @property
    def resource_version(self) -> Optional[str]:
        """The store-supplied version token of this object"""
        version = self.metadata.get("resourceVersion")
        return str(version) if version is not None else None

    @property
    def deleting(self) -> bool:
        """True if the object has been marked for deletion"""
        return bool(self.metadata.get("deletionTimestamp"))

    def get(self, *args, **kwargs):
        """Pass get calls to the object's definition"""
        return self.definition.get(*args, **kwargs)

    def __str__(self):
        return f"{self.api_version}/{self.kind}/{self.namespace}/{self.name}"

    def __repr__(self):
        return str(self)

    def __hash__(self):
        return hash(self.uid or str(self))

    def __eq__(self, other):
        return hash(self) == hash(other)
