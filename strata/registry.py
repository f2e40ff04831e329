"""
The SourceRegistry tracks which config sources each ManagedObject depends on
(the forward index) and which ManagedObjects depend on each source (the
reverse index). Both indices are only ever mutated together under a single
lock so that they stay symmetric.
"""

# Standard
from threading import RLock
from typing import Dict, Iterable, Set, Tuple

# First Party
import alog

# Local
from .types import ObjectId, SourceId

log = alog.use_channel("REGSTRY")


class SourceRegistry:
    """In-memory bookkeeping of the dependencies between ManagedObjects and
    config sources
    """

    def __init__(self):
        self._forward: Dict[ObjectId, Set[SourceId]] = {}
        self._reverse: Dict[SourceId, Set[ObjectId]] = {}
        self._lock = RLock()

    ## Mutations ###############################################################

    def register_dependency(self, object_id: ObjectId, source_id: SourceId) -> bool:
        """Record that object_id depends on source_id. This is idempotent.

        Returns:
            first_dependent:  bool
                True if the source had no dependents before this call
        """
        with self._lock:
            self._forward.setdefault(object_id, set()).add(source_id)
            dependents = self._reverse.setdefault(source_id, set())
            first_dependent = not dependents
            dependents.add(object_id)
        if first_dependent:
            log.debug2("Source %s gained its first dependent %s", source_id, object_id)
        return first_dependent

    def unregister_managed_object(self, object_id: ObjectId) -> Set[SourceId]:
        """Remove the object and all of its dependencies

        Returns:
            orphaned:  Set[SourceId]
                The sources that no longer have any dependents
        """
        with self._lock:
            sources = self._forward.pop(object_id, set())
            orphaned = self._remove_reverse_entries(object_id, sources)
        log.debug2("Unregistered %s, orphaning %s", object_id, orphaned)
        return orphaned

    def update_dependencies(
        self,
        object_id: ObjectId,
        sources: Iterable[SourceId],
    ) -> Tuple[Set[SourceId], Set[SourceId]]:
        """Replace the full dependency set of an object, diffing the old and
        new sets

        Returns:
            added:  Set[SourceId]
                Sources that gained their first dependent
            orphaned:  Set[SourceId]
                Sources that no longer have any dependents
        """
        new_sources = set(sources)
        with self._lock:
            old_sources = set(self._forward.get(object_id, ()))
            added = {
                source_id
                for source_id in new_sources - old_sources
                if self.register_dependency(object_id, source_id)
            }
            removed = old_sources - new_sources
            self._forward[object_id] = new_sources
            orphaned = self._remove_reverse_entries(object_id, removed)
        if added or orphaned:
            log.debug(
                "Dependencies of %s changed: added %s, orphaned %s",
                object_id,
                added,
                orphaned,
            )
        return added, orphaned

    ## Queries #################################################################

    def dependents_of(self, source_id: SourceId) -> Set[ObjectId]:
        """Get a copy of the set of objects that depend on the source"""
        with self._lock:
            return set(self._reverse.get(source_id, ()))

    def sources_of(self, object_id: ObjectId) -> Set[SourceId]:
        """Get a copy of the set of sources the object depends on"""
        with self._lock:
            return set(self._forward.get(object_id, ()))

    def watched_sources(self) -> Set[SourceId]:
        """All sources with at least one dependent"""
        with self._lock:
            return set(self._reverse)

    def managed_objects(self) -> Set[ObjectId]:
        """All objects with registered dependencies"""
        with self._lock:
            return set(self._forward)

    ## Implementation Details ##################################################

    def _remove_reverse_entries(
        self, object_id: ObjectId, sources: Iterable[SourceId]
    ) -> Set[SourceId]:
        """Remove object_id from the reverse entry of each source, dropping
        entries that become empty. Must be called with the lock held.
        """
        orphaned = set()
        for source_id in sources:
            dependents = self._reverse.get(source_id)
            if dependents is None:
                continue
            dependents.discard(object_id)
            if not dependents:
                del self._reverse[source_id]
                orphaned.add(source_id)
        return orphaned
