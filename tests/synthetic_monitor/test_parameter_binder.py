#!/usr/bin/env python3
"""
Unit tests for parameter binding and the required-parameter gate.
"""

import pytest

from src.synthetic_monitor.errors import MissingRequiredParameter
from src.synthetic_monitor.models import ApiParameter, ParameterBinding, ParameterPlacement
from src.synthetic_monitor.parameter_binder import (
    bind_named_values,
    bind_stored_values,
    bindings_to_mapping,
    clean_value,
)


@pytest.fixture
def schema():
    return [
        ApiParameter(id=1, name="userId", placement=ParameterPlacement.QUERY, required=True),
        ApiParameter(id=2, name="verbose", placement=ParameterPlacement.QUERY),
        ApiParameter(id=3, name="payload", placement=ParameterPlacement.BODY),
    ]


class TestRequiredGate:
    """Required parameters must have a non-empty value."""

    def test_missing_value_fails(self):
        schema = [ApiParameter(id=1, name="userId", required=True)]
        with pytest.raises(MissingRequiredParameter) as exc_info:
            bind_named_values(schema, {})
        assert exc_info.value.parameter_name == "userId"
        assert exc_info.value.details == {"field": "userId"}

    def test_whitespace_value_fails(self):
        schema = [ApiParameter(id=1, name="userId", required=True)]
        with pytest.raises(MissingRequiredParameter):
            bind_named_values(schema, {"userId": "  "})

    def test_present_value_binds(self):
        schema = [ApiParameter(id=1, name="userId", required=True)]
        bindings = bind_named_values(schema, {"userId": "42"})
        assert bindings_to_mapping(bindings) == {"userId": "42"}


class TestBindStoredValues:
    """Stored values are keyed by parameter ID and translated to names."""

    def test_translates_ids_to_names(self, schema):
        bindings = bind_stored_values(schema, {1: "42", 3: "data"})
        assert bindings == [
            ParameterBinding("userId", ParameterPlacement.QUERY, "42"),
            ParameterBinding("payload", ParameterPlacement.BODY, "data"),
        ]

    def test_accepts_numeric_string_keys(self, schema):
        bindings = bind_stored_values(schema, {"1": " 7 ", "2": "true"})
        assert bindings_to_mapping(bindings) == {"userId": "7", "verbose": "true"}

    def test_drops_unknown_and_empty_values(self, schema):
        bindings = bind_stored_values(schema, {1: "42", 2: "", 99: "x", "abc": "y"})
        assert bindings_to_mapping(bindings) == {"userId": "42"}

    def test_required_gate_applies(self, schema):
        with pytest.raises(MissingRequiredParameter) as exc_info:
            bind_stored_values(schema, {2: "true"})
        assert exc_info.value.parameter_name == "userId"

    def test_none_values_map(self):
        assert bind_stored_values([ApiParameter(id=1, name="q")], None) == []


class TestBindNamedValues:

    def test_unknown_names_dropped(self, schema):
        bindings = bind_named_values(schema, {"userId": 5, "other": "x"})
        assert bindings_to_mapping(bindings) == {"userId": "5"}


class TestCleanValue:

    @pytest.mark.parametrize("raw,expected", [
        (None, None),
        ("", None),
        ("  ", None),
        (" a ", "a"),
        (0, "0"),
        (False, "False"),
    ])
    def test_clean_value(self, raw, expected):
        assert clean_value(raw) == expected
