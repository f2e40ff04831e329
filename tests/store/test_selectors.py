"""
Tests for the label selector helpers
"""

# Third Party
import pytest

# Local
from strata.store.selectors import (
    canonical_selector,
    match_labels_to_selector,
    matches_selector,
    parse_selector,
    split_selector,
)


def test_split_selector_respects_parentheses():
    """Make sure commas inside a set are not split on"""
    assert split_selector("app, tier in (a, b),!beta") == [
        "app",
        "tier in (a, b)",
        "!beta",
    ]
    assert split_selector("") == []


@pytest.mark.parametrize(
    ["selector", "labels", "expected"],
    [
        ("app=web", {"app": "web"}, True),
        ("app==web", {"app": "web"}, True),
        ("app=web", {"app": "db"}, False),
        ("app!=web", {"app": "db"}, True),
        ("app!=web", {}, True),
        ("tier in (a, b)", {"tier": "b"}, True),
        ("tier in (a, b)", {"tier": "c"}, False),
        ("tier notin (a, b)", {"tier": "c"}, True),
        ("app", {"app": "x"}, True),
        ("app", {}, False),
        ("!app", {}, True),
        ("app=web,tier in (a)", {"app": "web", "tier": "a"}, True),
        ("app=web,tier in (a)", {"app": "web", "tier": "b"}, False),
        ("", {"app": "web"}, True),
    ],
)
def test_matches_selector(selector, labels, expected):
    """Make sure each requirement form matches as kubernetes does"""
    assert matches_selector(labels, selector) == expected


def test_parse_selector_invalid():
    """Make sure an unparseable requirement raises"""
    with pytest.raises(ValueError):
        parse_selector("a in (b")


def test_match_labels_to_selector_sorted():
    """Make sure equal mappings produce equal selectors"""
    assert match_labels_to_selector({"b": "2", "a": "1"}) == "a=1,b=2"


def test_canonical_selector():
    """Make sure whitespace and ordering are normalized"""
    assert canonical_selector(" b=2 ,a=1") == canonical_selector("a=1,b=2")
