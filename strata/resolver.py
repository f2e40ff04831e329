"""
The resolver turns the set of config sources of a ManagedObject into a single
EffectiveConfig. The merge itself is a pure function. The ConfigResolver
reads the sources from the store and publishes results into the
EffectiveConfigCache.
"""
# Standard
from dataclasses import dataclass, field
from datetime import datetime
from itertools import count
from threading import RLock
from typing import Any, Dict, Iterable, List, Optional, Tuple

# Third Party
import yaml

# First Party
import alog

# Local
from . import config
from .exceptions import (
    MalformedSource,
    MissingMandatorySource,
    ReferenceUnresolved,
    assert_source,
    assert_store,
)
from .managed_object import ManagedObject
from .store import KubeObject, ObjectStoreBase
from .types import (
    ConfigSource,
    ConfigValue,
    EffectiveConfig,
    ObjectId,
    SourceId,
    SourceKind,
)
from .utils import digest, stringify_value

log = alog.use_channel("RESOLVR")

## Merge #######################################################################


def merge_sources(
    global_source: Optional[ConfigSource],
    namespaced_source: Optional[ConfigSource],
    referenced_sources: Iterable[ConfigSource],
    inline: Optional[Dict[str, Any]],
    object_id: Optional[ObjectId] = None,
) -> EffectiveConfig:
    """Merge the sources of one ManagedObject in precedence order. Later
    layers overwrite earlier ones key by key:

    1. GLOBAL_SHARED (mandatory)
    2. NAMESPACED_SHARED (optional)
    3. REFERENCED, ordered by (name, namespace), each object applied once
    4. INLINE

    Args:
        global_source:  Optional[ConfigSource]
            The cluster-global source
        namespaced_source:  Optional[ConfigSource]
            The namespace-local override, if present
        referenced_sources:  Iterable[ConfigSource]
            The objects matched by the ManagedObject's references
        inline:  Optional[Dict[str, Any]]
            The inline config of the ManagedObject
        object_id:  Optional[ObjectId]
            The identity recorded on the result

    Returns:
        effective_config:  EffectiveConfig
            The resolved values with provenance and source versions

    Raises:
        MissingMandatorySource: If there is no global source
        MalformedSource: If an inline value is not a scalar
    """
    if global_source is None:
        raise MissingMandatorySource(
            f"Global config source {config.sources['global'].namespace}/"
            f"{config.sources['global'].name} not found"
        )

    values: Dict[str, ConfigValue] = {}
    versions: Dict[str, Optional[str]] = {}

    def apply(source: ConfigSource, origin: str):
        for key, value in source.data.items():
            values[key] = ConfigValue(value, source.kind, origin)
        versions[source.version_key] = source.version

    apply(global_source, _origin(global_source))
    if namespaced_source is not None:
        apply(namespaced_source, _origin(namespaced_source))

    applied = set()
    for source in sorted(referenced_sources, key=lambda src: (src.name, src.namespace or "")):
        identity = (source.namespace, source.name)
        if identity in applied:
            log.debug3("Skipping duplicate referenced source %s", identity)
            continue
        applied.add(identity)
        apply(source, _origin(source))

    inline_data = parse_inline_config(inline or {}, object_id)
    if inline_data:
        inline_source = ConfigSource(
            kind=SourceKind.INLINE,
            name=object_id.name if object_id else "",
            namespace=object_id.namespace if object_id else None,
            data=inline_data,
            version=digest(inline_data),
        )
        apply(inline_source, _origin(inline_source))

    return EffectiveConfig(
        object_id=object_id,
        values=values,
        source_versions=versions,
        resolved_at=datetime.now(),
    )


def parse_inline_config(
    inline: Dict[str, Any], object_id: Optional[ObjectId] = None
) -> Dict[str, str]:
    """Stringify the inline config of a ManagedObject

    Raises:
        MalformedSource: If a value is not a scalar
    """
    data = {}
    for key, value in inline.items():
        str_value = stringify_value(value)
        assert_source(
            str_value is not None,
            f"Inline config key {key} of {object_id} is not a scalar value",
        )
        data[str(key)] = str_value
    return data


def _origin(source: ConfigSource) -> str:
    if source.namespace:
        return f"{source.namespace}/{source.name}"
    return source.name


## Source Parsing ##############################################################


def parse_source_data(obj: dict, source_id: Optional[SourceId] = None) -> Dict[str, str]:
    """Convert the data of a config object into key/value strings

    If sources.data_key is configured and the object holds that key, its
    value is parsed as a YAML mapping and merged over the remaining keys.

    Args:
        obj:  dict
            The dict representation of the config object
        source_id:  Optional[SourceId]
            The source the object was read for, used in error messages

    Returns:
        data:  Dict[str, str]
            The parsed key/value mapping

    Raises:
        MalformedSource: If the data is not a flat mapping of scalars
    """
    kube_obj = KubeObject(obj)
    description = f"{kube_obj} ({source_id})" if source_id else str(kube_obj)
    raw_data = obj.get("data")
    if raw_data is None:
        raw_data = {}
    assert_source(isinstance(raw_data, dict), f"{description}: data is not a mapping")
    raw_data = dict(raw_data)

    data_key = config.sources.data_key
    if data_key and data_key in raw_data:
        document = raw_data.pop(data_key)
        try:
            parsed = yaml.safe_load(document) if isinstance(document, str) else document
        except yaml.YAMLError as err:
            raise MalformedSource(
                f"{description}: key {data_key} is not valid YAML: {err}"
            ) from err
        if parsed is None:
            parsed = {}
        assert_source(
            isinstance(parsed, dict),
            f"{description}: key {data_key} does not hold a YAML mapping",
        )
        raw_data.update(parsed)

    data = {}
    for key, value in raw_data.items():
        str_value = stringify_value(value)
        assert_source(
            str_value is not None,
            f"{description}: value of key {key} is not a scalar",
        )
        data[str(key)] = str_value
    return data


def make_config_source(obj: dict, kind: SourceKind, source_id=None) -> ConfigSource:
    """Build a ConfigSource from a config object read from the store"""
    kube_obj = KubeObject(obj)
    return ConfigSource(
        kind=kind,
        name=kube_obj.name,
        namespace=kube_obj.namespace,
        data=parse_source_data(obj, source_id),
        version=kube_obj.resource_version,
    )


## Resolver ####################################################################


@dataclass
class ResolvedSources:
    """The content of every source of one ManagedObject as read from the
    store
    """

    object_id: ObjectId
    global_source: Optional[ConfigSource]
    namespaced_source: Optional[ConfigSource]
    referenced_sources: List[ConfigSource] = field(default_factory=list)
    inline: Dict[str, Any] = field(default_factory=dict)

    def merge(self) -> EffectiveConfig:
        """Merge the sources into an EffectiveConfig"""
        return merge_sources(
            self.global_source,
            self.namespaced_source,
            self.referenced_sources,
            self.inline,
            object_id=self.object_id,
        )


class ConfigResolver:
    """Read the sources of ManagedObjects from the store and resolve them"""

    def __init__(
        self,
        store: ObjectStoreBase,
        cache: Optional["EffectiveConfigCache"] = None,
    ):
        self.store = store
        self.cache = cache

    def resolve(self, managed_object: ManagedObject) -> EffectiveConfig:
        """Fetch and merge the sources of a ManagedObject and publish the
        result into the cache. Nothing is published on failure.

        Raises:
            StrataError: If any source could not be read or resolved
        """
        epoch = self.cache.epoch(managed_object.object_id) if self.cache else None
        effective_config = self.fetch_sources(managed_object).merge()
        log.debug(
            "Resolved %s to version %s",
            managed_object.object_id,
            effective_config.version,
        )
        if self.cache is not None:
            self.cache.put(
                effective_config,
                fingerprint=managed_object.fingerprint(),
                epoch=epoch,
            )
        return effective_config

    def fetch_sources(self, managed_object: ManagedObject) -> ResolvedSources:
        """Read every source of a ManagedObject from the store

        Raises:
            StoreUnavailable: If the store could not be read
            ReferenceUnresolved: If a reference matched nothing
            MalformedSource: If a source's data could not be parsed
        """
        global_objs = self._fetch(managed_object.global_source_id())
        namespaced_objs = self._fetch(managed_object.namespaced_source_id())

        referenced_sources = []
        for reference in managed_object.references:
            source_id = reference.source_id()
            objs = self._fetch(source_id)
            if not objs:
                raise ReferenceUnresolved(
                    f"Config reference {source_id} of {managed_object.object_id} "
                    "matched nothing"
                )
            referenced_sources.extend(
                make_config_source(obj, SourceKind.REFERENCED, source_id)
                for obj in objs
            )

        return ResolvedSources(
            object_id=managed_object.object_id,
            global_source=(
                make_config_source(
                    global_objs[0],
                    SourceKind.GLOBAL_SHARED,
                    managed_object.global_source_id(),
                )
                if global_objs
                else None
            ),
            namespaced_source=(
                make_config_source(
                    namespaced_objs[0],
                    SourceKind.NAMESPACED_SHARED,
                    managed_object.namespaced_source_id(),
                )
                if namespaced_objs
                else None
            ),
            referenced_sources=referenced_sources,
            inline=managed_object.inline,
        )

    def _fetch(self, source_id: SourceId) -> List[dict]:
        """Read the objects of a source. A named source yields zero or one
        objects.
        """
        log.debug3("Fetching %s", source_id)
        if source_id.is_selector:
            success, objs = self.store.filter_objects_current_state(
                kind=source_id.resource_kind,
                namespace=source_id.namespace,
                api_version=source_id.api_version,
                label_selector=source_id.selector,
            )
            assert_store(success, f"Failed to list {source_id}")
            return objs

        success, obj = self.store.get_object_current_state(
            kind=source_id.resource_kind,
            name=source_id.name,
            namespace=source_id.namespace,
            api_version=source_id.api_version,
        )
        assert_store(success, f"Failed to fetch {source_id}")
        return [obj] if obj else []


## Cache #######################################################################


class EffectiveConfigCache:
    """Thread-safe in-memory cache of the EffectiveConfig of each
    ManagedObject.

    Every invalidation moves the object to a new epoch. A resolve captures the
    epoch before reading its sources and its result is only stored if no
    invalidation happened in between.
    """

    def __init__(self):
        self._entries: Dict[ObjectId, Tuple[EffectiveConfig, Optional[str]]] = {}
        self._epochs: Dict[ObjectId, int] = {}
        self._counter = count(1)
        self._lock = RLock()

    def __contains__(self, object_id: ObjectId) -> bool:
        with self._lock:
            return object_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def epoch(self, object_id: ObjectId) -> int:
        """Get the current epoch of an object"""
        with self._lock:
            if object_id not in self._epochs:
                self._epochs[object_id] = next(self._counter)
            return self._epochs[object_id]

    def get(
        self, object_id: ObjectId, fingerprint: Optional[str] = None
    ) -> Optional[EffectiveConfig]:
        """Get the cached config. If a fingerprint is given, the entry is only
        returned if it was stored with the same one.
        """
        with self._lock:
            entry = self._entries.get(object_id)
        if entry is None:
            return None
        effective_config, entry_fingerprint = entry
        if fingerprint is not None and fingerprint != entry_fingerprint:
            log.debug3("Cached config for %s has a different fingerprint", object_id)
            return None
        return effective_config

    def put(
        self,
        effective_config: EffectiveConfig,
        fingerprint: Optional[str] = None,
        epoch: Optional[int] = None,
    ) -> bool:
        """Store a config. If an epoch is given and the object was invalidated
        since, nothing is stored.

        Returns:
            stored:  bool
                Whether the config was stored
        """
        object_id = effective_config.object_id
        with self._lock:
            if epoch is not None and self._epochs.get(object_id) != epoch:
                log.debug2("Discarding config for %s from an old epoch", object_id)
                return False
            self._entries[object_id] = (effective_config, fingerprint)
            self._epochs.setdefault(object_id, next(self._counter))
            return True

    def invalidate(self, object_id: ObjectId):
        """Mark the cached config of an object as out of date"""
        with self._lock:
            self._entries.pop(object_id, None)
            self._epochs[object_id] = next(self._counter)

    def drop(self, object_id: ObjectId):
        """Forget an object entirely"""
        with self._lock:
            self._entries.pop(object_id, None)
            self._epochs.pop(object_id, None)
