#!/usr/bin/env python3
"""
Tag normalisation.

Tags reach the system as an absent value, a comma-separated string, a JSON
array string or a native list. Every reader funnels them through
``parse_tags`` so there is exactly one interpretation.
"""

import json
from typing import Any, FrozenSet, Iterable

from .errors import ValidationError


def _clean(values: Iterable[Any]) -> FrozenSet[str]:
    return frozenset(
        str(v).strip() for v in values if v is not None and str(v).strip()
    )


def parse_tags(value: Any) -> FrozenSet[str]:
    """Normalise a tag field into a set of trimmed, non-empty strings.

    Args:
        value: None, "", "a, b", '["a","b"]' or an iterable of strings

    Returns:
        Frozen set of tag names

    Raises:
        ValidationError: for scalars such as numbers or booleans
    """
    if value is None:
        return frozenset()

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return frozenset()
        if text.startswith("["):
            try:
                decoded = json.loads(text)
            except ValueError:
                decoded = None
            if isinstance(decoded, list):
                return _clean(decoded)
        return _clean(text.split(","))

    if isinstance(value, (list, tuple, set, frozenset)):
        return _clean(value)

    raise ValidationError(
        f"Tags must be a string or a list, got {type(value).__name__}",
        details={"field": "tags"},
    )
