#!/usr/bin/env python3
"""
YAML catalog import.

Seeds nodes, groups, APIs and synthetic tests from a file so a fresh
database can be brought up without the management UI. References between
entries use names; parameter values of tests are keyed by parameter name.

Example::

    nodes:
      - {name: web-1, host: 10.0.0.11, port: 8080, tags: [prod]}
    groups:
      - {name: web, nodes: [web-1]}
    apis:
      - name: get-user
        uri: /api/users
        method: GET
        parameters:
          - {name: userId, placement: query, required: true}
    tests:
      - name: user lookup
        api: get-user
        target: {type: group, name: web}
        parameters: {userId: "42"}
        alertThresholdMs: 500
        tags: prod, users
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

import yaml

from .errors import ConfigError, ValidationError
from .interfaces import Catalog
from .models import ParameterPlacement, TargetType
from .tags import parse_tags

logger = logging.getLogger(__name__)


def _require(entry: Mapping[str, Any], key: str, section: str) -> Any:
    value = entry.get(key)
    if value is None or value == "":
        raise ValidationError(f"{section} entry is missing '{key}'", details={"field": f"{section}.{key}"})
    return value


def load_catalog_file(path: str) -> Dict[str, Any]:
    """Read and minimally check a catalog YAML file."""
    catalog_file = Path(path)
    if not catalog_file.exists():
        raise ConfigError(f"Catalog file not found: {path}")
    try:
        with open(catalog_file, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse catalog file: {e}")
    if not isinstance(data, dict):
        raise ConfigError("Catalog file must contain a mapping")
    return data


def _section(data: Mapping[str, Any], section: str) -> List[Mapping[str, Any]]:
    entries = data.get(section) or []
    if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
        raise ValidationError(f"{section} must be a list of mappings", details={"field": section})
    return entries


def _unique_names(entries: List[Mapping[str, Any]], section: str) -> List[str]:
    names = [_require(entry, "name", section) for entry in entries]
    duplicates = sorted({str(n) for n in names if names.count(n) > 1})
    if duplicates:
        raise ValidationError(
            f"Duplicate {section} names in catalog: {', '.join(duplicates)}",
            details={"field": f"{section}.name"},
        )
    return names


def _as_int(value: Any, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer, got {value!r}", details={"field": field})


def _target(entry: Mapping[str, Any], name: str) -> Tuple[TargetType, str]:
    target = _require(entry, "target", "tests")
    if not isinstance(target, dict):
        raise ValidationError(f"Test {name} target must be a mapping with type and name")
    try:
        target_type = TargetType(target.get("type"))
    except ValueError:
        raise ValidationError(
            f"Test {name} has invalid target type {target.get('type')!r}",
            details={"field": "tests.target.type"},
        )
    return target_type, _require(target, "name", "tests.target")


def validate_catalog(catalog: Catalog, data: Mapping[str, Any]) -> None:
    """
    Check every entry and name reference of a catalog mapping without writing.

    Names resolve against entries of the same file and entities already in
    the catalog.

    Raises:
        ValidationError: on missing fields, bad values or unresolved references
    """
    nodes = _section(data, "nodes")
    groups = _section(data, "groups")
    apis = _section(data, "apis")
    tests = _section(data, "tests")

    node_names = {node.name for node in catalog.list_nodes()} | set(_unique_names(nodes, "nodes"))
    group_names = {group.name for group in catalog.list_groups()} | set(_unique_names(groups, "groups"))
    api_names = {api.name for api in catalog.list_apis()} | set(_unique_names(apis, "apis"))
    _unique_names(tests, "tests")

    for entry in nodes:
        _require(entry, "host", "nodes")
        _as_int(_require(entry, "port", "nodes"), "nodes.port")
        parse_tags(entry.get("tags"))

    for entry in groups:
        for member in entry.get("nodes") or []:
            if not isinstance(member, int) and member not in node_names:
                raise ValidationError(
                    f"Group {entry['name']} references unknown node {member}",
                    details={"field": "groups.nodes"},
                )

    for entry in apis:
        _require(entry, "uri", "apis")
        _require(entry, "method", "apis")
        parse_tags(entry.get("tags"))
        for param in entry.get("parameters") or []:
            if not isinstance(param, dict) or not str(param.get("name", "")).strip():
                raise ValidationError(
                    f"API {entry['name']} has a parameter without a name",
                    details={"field": "apis.parameters.name"},
                )
            try:
                ParameterPlacement(param.get("placement", param.get("type", "query")))
            except ValueError:
                raise ValidationError(
                    f"API {entry['name']} parameter {param['name']} has invalid placement",
                    details={"field": "apis.parameters.placement"},
                )

    for entry in tests:
        name = entry["name"]
        api_name = _require(entry, "api", "tests")
        if api_name not in api_names:
            raise ValidationError(f"Test {name} references unknown API {api_name}", details={"field": "tests.api"})
        target_type, target_name = _target(entry, name)
        if target_name not in (node_names if target_type is TargetType.NODE else group_names):
            raise ValidationError(
                f"Test {name} targets unknown {target_type.value} {target_name}",
                details={"field": "tests.target.name"},
            )
        if not isinstance(entry.get("parameters") or {}, dict):
            raise ValidationError(f"Test {name} parameters must be a mapping", details={"field": "tests.parameters"})
        if _as_int(entry.get("intervalSeconds", 60), "tests.intervalSeconds") < 1:
            raise ValidationError("intervalSeconds must be positive", details={"field": "tests.intervalSeconds"})
        if _as_int(entry.get("alertThresholdMs", 1000), "tests.alertThresholdMs") < 0:
            raise ValidationError(
                "alertThresholdMs must not be negative", details={"field": "tests.alertThresholdMs"}
            )
        parse_tags(entry.get("tags"))


def import_catalog(catalog: Catalog, data: Mapping[str, Any]) -> Dict[str, int]:
    """
    Create every entry of a catalog mapping.

    The whole mapping is validated first, so a bad entry anywhere leaves the
    catalog untouched.

    Args:
        catalog: Target repositories
        data: Parsed catalog with optional nodes, groups, apis and tests lists

    Returns:
        Number of created entries per section

    Raises:
        ValidationError: on missing fields or unresolved name references
    """
    validate_catalog(catalog, data)

    node_ids: Dict[str, int] = {node.name: node.id for node in catalog.list_nodes()}
    group_ids: Dict[str, int] = {group.name: group.id for group in catalog.list_groups()}
    apis = {api.name: api for api in catalog.list_apis()}
    created = {"nodes": 0, "groups": 0, "apis": 0, "tests": 0}

    for entry in data.get("nodes") or []:
        node = catalog.create_node(
            name=entry["name"],
            host=entry["host"],
            port=int(entry["port"]),
            tags=entry.get("tags"),
        )
        node_ids[node.name] = node.id
        created["nodes"] += 1

    for entry in data.get("groups") or []:
        members = [
            member if isinstance(member, int) else node_ids[member]
            for member in entry.get("nodes") or []
        ]
        group = catalog.create_group(entry["name"], members)
        group_ids[group.name] = group.id
        created["groups"] += 1

    for entry in data.get("apis") or []:
        api = catalog.create_api(
            name=entry["name"],
            uri=entry["uri"],
            http_method=entry["method"],
            parameters=entry.get("parameters") or [],
            tags=entry.get("tags"),
        )
        apis[api.name] = api
        created["apis"] += 1

    for entry in data.get("tests") or []:
        name = entry["name"]
        api = apis[entry["api"]]
        target_type, target_name = _target(entry, name)
        lookup = node_ids if target_type is TargetType.NODE else group_ids

        params_by_name = {p.name: p.id for p in api.parameters}
        values = {}
        for param_name, value in (entry.get("parameters") or {}).items():
            if param_name not in params_by_name:
                logger.warning(f"Test {name}: ignoring unknown parameter {param_name}")
                continue
            values[params_by_name[param_name]] = str(value)

        catalog.create_test(
            name=name,
            target_type=target_type,
            target_id=lookup[target_name],
            api_id=api.id,
            parameter_values=values,
            interval_seconds=int(entry.get("intervalSeconds", 60)),
            alert_threshold_ms=int(entry.get("alertThresholdMs", 1000)),
            tags=entry.get("tags"),
            enabled=bool(entry.get("enabled", True)),
        )
        created["tests"] += 1

    logger.info(f"Imported catalog: {created}")
    return created
