#!/usr/bin/env python3
"""
Parameter binding.

Translates stored parameter values (keyed by parameter ID) or ad-hoc values
(keyed by parameter name) into typed ``ParameterBinding`` objects keyed by
the transport name. This is the only place the ID to name translation
happens.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import MissingRequiredParameter
from .models import ApiParameter, ParameterBinding

logger = logging.getLogger(__name__)


def clean_value(value: Any) -> Optional[str]:
    """Stringify and trim a raw value; empty results become None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _bind(schema: Iterable[ApiParameter], lookup) -> List[ParameterBinding]:
    bindings = []
    for param in schema:
        value = clean_value(lookup(param))
        if value is None:
            if param.required:
                raise MissingRequiredParameter(param.name)
            continue
        bindings.append(ParameterBinding(name=param.name, placement=param.placement, value=value))
    return bindings


def bind_stored_values(
    schema: Iterable[ApiParameter],
    values_by_id: Mapping[Any, Any],
) -> List[ParameterBinding]:
    """Bind a test's stored values against the API parameter schema.

    Args:
        schema: API parameter definitions
        values_by_id: Values keyed by parameter ID (int or numeric string)

    Returns:
        Bindings in schema order

    Raises:
        MissingRequiredParameter: if a required parameter has no value
    """
    normalized: Dict[int, Any] = {}
    for key, value in (values_by_id or {}).items():
        try:
            normalized[int(key)] = value
        except (TypeError, ValueError):
            logger.debug(f"Ignoring non-numeric parameter key: {key!r}")
    return _bind(schema, lambda p: normalized.get(p.id))


def bind_named_values(
    schema: Iterable[ApiParameter],
    values_by_name: Mapping[str, Any],
) -> List[ParameterBinding]:
    """Bind ad-hoc values keyed by parameter name. Unknown names are dropped."""
    values = values_by_name or {}
    return _bind(schema, lambda p: values.get(p.name))


def bindings_to_mapping(bindings: Iterable[ParameterBinding]) -> Dict[str, str]:
    return {b.name: b.value for b in bindings}
