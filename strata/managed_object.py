"""
The ManagedObject is the parsed form of one custom resource instance that the
controller administers. It knows its identity, its inline config fields, and
the set of config sources it depends on.
"""
# Standard
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

# First Party
import alog

# Local
from . import config, constants
from .exceptions import assert_source
from .store.kube_object import KubeObject
from .store.selectors import canonical_selector, match_labels_to_selector, parse_selector
from .types import ObjectId, SourceId, SourceKind
from .utils import digest

log = alog.use_channel("MNGOBJ")


@dataclass(frozen=True)
class SourceReference:
    """A single entry of a ManagedObject's configRefs. Exactly one of name or
    selector is set.
    """

    namespace: str
    name: Optional[str] = None
    selector: Optional[str] = None

    def source_id(self) -> SourceId:
        """Get the watched source identity for this reference"""
        return SourceId(
            kind=SourceKind.REFERENCED,
            api_version=config.sources.referenced.api_version,
            resource_kind=config.sources.referenced.kind,
            namespace=self.namespace,
            name=self.name,
            selector=self.selector,
        )


@dataclass
class ManagedObject:
    """One custom resource instance administered by the controller"""

    object_id: ObjectId
    uid: Optional[str]
    resource_version: Optional[str]
    inline: Dict[str, Any] = field(default_factory=dict)
    references: List[SourceReference] = field(default_factory=list)
    deleting: bool = False
    definition: dict = field(default_factory=dict)

    @property
    def namespace(self) -> str:
        return self.object_id.namespace

    @property
    def name(self) -> str:
        return self.object_id.name

    ## Construction ############################################################

    @classmethod
    def from_resource(cls, resource: dict) -> "ManagedObject":
        """Parse a ManagedObject from its dict representation

        Raises:
            MalformedSource: If the inline config or the references do not
                have the expected shape
        """
        kube_obj = KubeObject(resource)
        spec = resource.get("spec") or {}

        inline = spec.get(constants.INLINE_CONFIG_FIELD) or {}
        assert_source(
            isinstance(inline, dict),
            f"{kube_obj}: spec.{constants.INLINE_CONFIG_FIELD} must be a mapping",
        )

        raw_refs = spec.get(constants.CONFIG_REFS_FIELD) or []
        assert_source(
            isinstance(raw_refs, list),
            f"{kube_obj}: spec.{constants.CONFIG_REFS_FIELD} must be a list",
        )
        references = [
            cls._parse_reference(raw_ref, kube_obj.namespace, str(kube_obj))
            for raw_ref in raw_refs
        ]

        return cls(
            object_id=ObjectId(kube_obj.namespace, kube_obj.name),
            uid=kube_obj.uid,
            resource_version=kube_obj.resource_version,
            inline=dict(inline),
            references=references,
            deleting=kube_obj.deleting,
            definition=resource,
        )

    @staticmethod
    def _parse_reference(raw_ref: Any, default_namespace: str, owner: str):
        """Parse one entry of configRefs. The entry may be a plain string
        (a name in the same namespace), {name, namespace?}, or
        {selector, namespace?} where selector is a selector string or a
        {matchLabels: {...}} mapping.
        """
        if isinstance(raw_ref, str):
            raw_ref = {constants.REF_NAME_KEY: raw_ref}
        assert_source(
            isinstance(raw_ref, dict), f"{owner}: invalid config reference {raw_ref}"
        )

        namespace = raw_ref.get(constants.REF_NAMESPACE_KEY) or default_namespace
        name = raw_ref.get(constants.REF_NAME_KEY)
        selector = raw_ref.get(constants.REF_SELECTOR_KEY)
        assert_source(
            (name is None) != (selector is None),
            f"{owner}: config reference needs exactly one of name or selector",
        )

        if name is not None:
            assert_source(
                isinstance(name, str) and name,
                f"{owner}: invalid reference name {name}",
            )
            return SourceReference(namespace=namespace, name=name)

        if isinstance(selector, dict):
            match_labels = selector.get(constants.REF_MATCH_LABELS_KEY, selector)
            assert_source(
                isinstance(match_labels, dict) and match_labels,
                f"{owner}: invalid reference selector {selector}",
            )
            selector = match_labels_to_selector(match_labels)

        assert_source(
            isinstance(selector, str) and selector.strip(),
            f"{owner}: invalid reference selector {selector}",
        )
        try:
            parse_selector(selector)
        except ValueError as err:
            assert_source(False, f"{owner}: {err}")
        return SourceReference(namespace=namespace, selector=canonical_selector(selector))

    ## Dependencies ############################################################

    def global_source_id(self) -> SourceId:
        """The cluster-global source every ManagedObject depends on"""
        return global_source_id()

    def namespaced_source_id(self) -> SourceId:
        """The namespace-local override source for this object"""
        return SourceId(
            kind=SourceKind.NAMESPACED_SHARED,
            api_version=config.sources.namespaced.api_version,
            resource_kind=config.sources.namespaced.kind,
            namespace=self.namespace,
            name=config.sources.namespaced.name,
        )

    def dependencies(self) -> Set[SourceId]:
        """The full set of shared sources this object depends on"""
        sources = {self.global_source_id(), self.namespaced_source_id()}
        sources.update(ref.source_id() for ref in self.references)
        return sources

    def fingerprint(self) -> str:
        """Digest of the parts of the object that feed into resolution. A
        cached EffectiveConfig is only valid for the same fingerprint.
        """
        return digest(
            {
                "inline": self.inline,
                "references": sorted(str(ref.source_id()) for ref in self.references),
            }
        )


def global_source_id() -> SourceId:
    """Get the identity of the cluster-global source from the library config"""
    return SourceId(
        kind=SourceKind.GLOBAL_SHARED,
        api_version=config.sources["global"].api_version,
        resource_kind=config.sources["global"].kind,
        namespace=config.sources["global"].namespace,
        name=config.sources["global"].name,
    )


def managed_object_api_version() -> str:
    """The apiVersion of the configured ManagedObject kind"""
    group = config.managed_object.group
    version = config.managed_object.version
    return f"{group}/{version}" if group else version
