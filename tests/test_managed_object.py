"""
Tests for parsing ManagedObjects and computing their dependencies
"""

# Third Party
import pytest

# Local
from strata.exceptions import MalformedSource
from strata.managed_object import (
    ManagedObject,
    SourceReference,
    global_source_id,
    managed_object_api_version,
)
from strata.test_helpers.helpers import (
    GLOBAL_NAME,
    GLOBAL_NAMESPACE,
    NAMESPACED_NAME,
    TEST_NAMESPACE,
    library_config,
    make_managed_object,
)
from strata.types import ObjectId, SourceKind

## from_resource ###############################################################


def test_from_resource_minimal():
    """Make sure an object with no spec parses with no inline config or
    references
    """
    resource = make_managed_object(uid="1234")
    managed_object = ManagedObject.from_resource(resource)
    assert managed_object.object_id == ObjectId(TEST_NAMESPACE, "test-instance")
    assert managed_object.uid == "1234"
    assert managed_object.inline == {}
    assert managed_object.references == []
    assert not managed_object.deleting


def test_from_resource_reference_forms():
    """Make sure every supported reference form parses"""
    resource = make_managed_object(
        config={"a": 1},
        config_refs=[
            "plain",
            {"name": "named", "namespace": "other"},
            {"selector": "tier = db ,app=x"},
            {"selector": {"matchLabels": {"b": "2", "a": "1"}}},
        ],
    )
    managed_object = ManagedObject.from_resource(resource)
    assert managed_object.inline == {"a": 1}
    assert managed_object.references == [
        SourceReference(namespace=TEST_NAMESPACE, name="plain"),
        SourceReference(namespace="other", name="named"),
        SourceReference(namespace=TEST_NAMESPACE, selector="app=x,tier = db"),
        SourceReference(namespace=TEST_NAMESPACE, selector="a=1,b=2"),
    ]


@pytest.mark.parametrize(
    "spec",
    [
        {"config": ["not", "a", "mapping"]},
        {"configRefs": "not-a-list"},
        {"configRefs": [{"name": "a", "selector": "b=c"}]},
        {"configRefs": [{}]},
        {"configRefs": [{"name": ""}]},
        {"configRefs": [{"selector": {"matchLabels": {}}}]},
        {"configRefs": [{"selector": "a in (b"}]},
        {"configRefs": [42]},
    ],
)
def test_from_resource_malformed(spec):
    """Make sure malformed specs raise MalformedSource"""
    resource = make_managed_object()
    resource["spec"] = spec
    with pytest.raises(MalformedSource):
        ManagedObject.from_resource(resource)


def test_from_resource_deleting():
    """Make sure an object marked for deletion is flagged"""
    resource = make_managed_object()
    resource["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    assert ManagedObject.from_resource(resource).deleting


## Dependencies ################################################################


def test_dependencies():
    """Make sure the dependencies are the global, namespaced, and referenced
    sources
    """
    managed_object = ManagedObject.from_resource(
        make_managed_object(config_refs=["ref-a", {"selector": "team=x"}])
    )
    dependencies = managed_object.dependencies()
    assert len(dependencies) == 4
    assert global_source_id() in dependencies

    by_kind = {}
    for source_id in dependencies:
        by_kind.setdefault(source_id.kind, []).append(source_id)
    assert by_kind[SourceKind.GLOBAL_SHARED][0].name == GLOBAL_NAME
    assert by_kind[SourceKind.GLOBAL_SHARED][0].namespace == GLOBAL_NAMESPACE
    assert by_kind[SourceKind.NAMESPACED_SHARED][0].name == NAMESPACED_NAME
    assert by_kind[SourceKind.NAMESPACED_SHARED][0].namespace == TEST_NAMESPACE
    assert sorted(
        str(source_id.name or source_id.selector)
        for source_id in by_kind[SourceKind.REFERENCED]
    ) == ["ref-a", "team=x"]


def test_equivalent_selectors_share_a_source():
    """Make sure selectors that differ only in order or whitespace map to the
    same source identity
    """
    first = ManagedObject.from_resource(
        make_managed_object(name="a", config_refs=[{"selector": "x=1,y=2"}])
    )
    second = ManagedObject.from_resource(
        make_managed_object(name="b", config_refs=[{"selector": " y=2 , x=1"}])
    )
    assert first.references[0].source_id() == second.references[0].source_id()


def test_fingerprint():
    """Make sure the fingerprint follows the inline config and references and
    nothing else
    """
    base = ManagedObject.from_resource(
        make_managed_object(config={"a": "1"}, config_refs=["r1", "r2"], uid="1")
    )
    same = ManagedObject.from_resource(
        make_managed_object(config={"a": "1"}, config_refs=["r2", "r1"], uid="2")
    )
    other_inline = ManagedObject.from_resource(
        make_managed_object(config={"a": "2"}, config_refs=["r1", "r2"])
    )
    other_refs = ManagedObject.from_resource(
        make_managed_object(config={"a": "1"}, config_refs=["r1"])
    )
    assert base.fingerprint() == same.fingerprint()
    assert base.fingerprint() != other_inline.fingerprint()
    assert base.fingerprint() != other_refs.fingerprint()


def test_managed_object_api_version():
    """Make sure the group is optional in the api version"""
    assert managed_object_api_version() == "strata.io/v1alpha1"
    with library_config(managed_object={"group": ""}):
        assert managed_object_api_version() == "v1alpha1"
