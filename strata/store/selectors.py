"""
Kubernetes label selector helpers. These implement the string selector syntax
for the in-memory store and convert the structured form used in ManagedObject
references into the string form understood by every store.

https://kubernetes.io/docs/concepts/overview/working-with-objects/labels/#label-selectors
"""

# Standard
from typing import Callable, Dict, List, Optional, Tuple
import re

# First Party
import alog

log = alog.use_channel("SELECT")

# A single parsed requirement: (key, predicate on the label value or None)
Requirement = Tuple[str, Callable[[Optional[str]], bool]]

_SET_REQUIREMENT = re.compile(r"^\s*([^\s!=]+)\s+(in|notin)\s+\((.*)\)\s*$")
_EQUALITY_REQUIREMENT = re.compile(r"^\s*([^\s!=]+)\s*(==|!=|=)\s*(\S*)\s*$")
_EXISTENCE_REQUIREMENT = re.compile(r"^\s*(!?)\s*([^\s!=]+)\s*$")


def split_selector(selector: str) -> List[str]:
    """Split a selector on commas that are not inside parentheses, e.g.
    'app,tier in (a, b)' becomes ['app', 'tier in (a, b)']
    """
    parts = []
    current = ""
    depth = 0
    for char in selector or "":
        if char == "," and depth == 0:
            parts.append(current)
            current = ""
            continue
        if char == "(":
            depth += 1
        elif char == ")" and depth:
            depth -= 1
        current += char
    if current.strip():
        parts.append(current)
    return [part.strip() for part in parts if part.strip()]


def parse_selector(selector: str) -> List[Requirement]:
    """Parse a selector string into a list of requirements

    Raises:
        ValueError: If any requirement cannot be parsed
    """
    requirements = []
    for part in split_selector(selector):
        match = _SET_REQUIREMENT.match(part)
        if match:
            key, operator, raw_values = match.groups()
            values = {val.strip() for val in raw_values.split(",") if val.strip()}
            if operator == "in":
                requirements.append((key, lambda val, vals=values: val in vals))
            else:
                requirements.append((key, lambda val, vals=values: val not in vals))
            continue

        match = _EQUALITY_REQUIREMENT.match(part)
        if match:
            key, operator, expected = match.groups()
            if operator == "!=":
                requirements.append((key, lambda val, exp=expected: val != exp))
            else:
                requirements.append((key, lambda val, exp=expected: val == exp))
            continue

        match = _EXISTENCE_REQUIREMENT.match(part)
        if match:
            negated, key = match.groups()
            if negated:
                requirements.append((key, lambda val: val is None))
            else:
                requirements.append((key, lambda val: val is not None))
            continue

        raise ValueError(f"Invalid selector requirement: {part}")
    return requirements


def matches_selector(labels: Optional[Dict[str, str]], selector: str) -> bool:
    """Determine whether a set of labels satisfies every requirement of the
    given selector. An empty selector matches everything.
    """
    labels = labels or {}
    for key, predicate in parse_selector(selector):
        value = labels.get(key)
        value = str(value).strip() if value is not None else None
        if not predicate(value):
            log.debug4("Labels %s do not match requirement on %s", labels, key)
            return False
    return True


def match_labels_to_selector(match_labels: Dict[str, str]) -> str:
    """Convert a matchLabels mapping to its canonical selector string. Keys are
    sorted so that equal mappings always produce equal strings.
    """
    return ",".join(f"{key}={match_labels[key]}" for key in sorted(match_labels))


def canonical_selector(selector: str) -> str:
    """Normalize a selector string so that equivalent selectors written with
    different whitespace or ordering share a single watch
    """
    return ",".join(sorted(" ".join(part.split()) for part in split_selector(selector)))
