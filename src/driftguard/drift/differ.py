"""Structural differ for policy spec subtrees.

Compares parsed values (dicts, lists, scalars), never serialized strings,
so key ordering cannot produce false positives.
"""

from __future__ import annotations

from typing import Any

from driftguard.models import DriftDiff, Modification


def compute_diff(expected: Any, actual: Any) -> DriftDiff:
    """Compute a recursive diff from *expected* to *actual*.

    Returns a DriftDiff whose keys are dotted paths:
    - added: present in actual but not expected
    - removed: present in expected but not actual
    - modified: present in both with differing scalar values (old/new)

    Lists are compared index by index; rules are lists of dicts, so a rule
    appended on the cluster shows up as ``rules[N]`` under ``added``.
    """
    diff = DriftDiff()
    _walk(expected, actual, "", diff)
    return diff


def specs_equal(expected: Any, actual: Any) -> bool:
    return compute_diff(expected, actual).is_empty()


def _join(prefix: str, key: str) -> str:
    return f"{prefix}.{key}" if prefix else key


def _walk(expected: Any, actual: Any, path: str, diff: DriftDiff) -> None:
    if isinstance(expected, dict) and isinstance(actual, dict):
        for key in sorted(set(expected) | set(actual), key=str):
            sub = _join(path, str(key))
            if key not in actual:
                diff.removed[sub] = expected[key]
            elif key not in expected:
                diff.added[sub] = actual[key]
            else:
                _walk(expected[key], actual[key], sub, diff)
        return

    if isinstance(expected, list) and isinstance(actual, list):
        for i in range(max(len(expected), len(actual))):
            sub = f"{path}[{i}]"
            if i >= len(actual):
                diff.removed[sub] = expected[i]
            elif i >= len(expected):
                diff.added[sub] = actual[i]
            else:
                _walk(expected[i], actual[i], sub, diff)
        return

    if expected != actual or type(expected) is not type(actual):
        diff.modified[path or "."] = Modification(old_value=expected, new_value=actual)
