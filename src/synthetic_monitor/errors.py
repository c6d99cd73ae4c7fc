#!/usr/bin/env python3
"""
Error taxonomy for the synthetic monitor.

Every error raised across a component boundary derives from
SyntheticMonitorError and knows its error code and HTTP status, so the API
layer can turn it into the standard ``{success, error, message}`` envelope
without a lookup table.

Transport failures against probed nodes are NOT errors: the probe executor
converts them into failed ProbeOutcome values.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """Stable error codes exposed in API error envelopes."""

    VALIDATION = "ERR_VALIDATION"
    MISSING_PARAMETER = "ERR_MISSING_REQUIRED_PARAMETER"
    UNSUPPORTED_METHOD = "ERR_UNSUPPORTED_HTTP_METHOD"
    NOT_FOUND = "ERR_NOT_FOUND"
    REFERENTIAL_INTEGRITY = "ERR_REFERENTIAL_INTEGRITY"
    PERSISTENCE = "ERR_PERSISTENCE"
    CONFIG = "ERR_CONFIG"


class SyntheticMonitorError(Exception):
    """Base class for all synthetic monitor errors."""

    error_code: ErrorCode = ErrorCode.VALIDATION
    http_status: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self) -> Dict[str, Any]:
        """Build the JSON error envelope for this error."""
        response = {
            "success": False,
            "error": self.error_code.value,
            "message": self.message,
        }
        if self.details:
            response["details"] = self.details
        return response


class ConfigError(SyntheticMonitorError):
    """Invalid configuration value."""

    error_code = ErrorCode.CONFIG
    http_status = 500


class ValidationError(SyntheticMonitorError):
    """Request rejected before any network call was made."""

    error_code = ErrorCode.VALIDATION
    http_status = 400


class MissingRequiredParameter(ValidationError):
    """A parameter marked required has no non-empty value."""

    error_code = ErrorCode.MISSING_PARAMETER

    def __init__(self, parameter_name: str):
        super().__init__(
            f"Missing required parameter: {parameter_name}",
            details={"field": parameter_name},
        )
        self.parameter_name = parameter_name


class UnsupportedHttpMethod(ValidationError):
    """The API definition uses an HTTP method the executor cannot dispatch."""

    error_code = ErrorCode.UNSUPPORTED_METHOD

    def __init__(self, method: str):
        super().__init__(f"Unsupported HTTP method: {method}", details={"method": method})
        self.method = method


class NotFoundError(SyntheticMonitorError):
    """A referenced entity does not exist."""

    error_code = ErrorCode.NOT_FOUND
    http_status = 404
    entity = "entity"

    def __init__(self, entity_id: Any):
        super().__init__(f"{self.entity} {entity_id} not found", details={"id": entity_id})
        self.entity_id = entity_id


class TestNotFoundError(NotFoundError):
    __test__ = False  # keep pytest from collecting this class
    entity = "Synthetic test"


class ApiNotFoundError(NotFoundError):
    entity = "API"


class NodeNotFoundError(NotFoundError):
    entity = "Node"


class ReferentialIntegrityError(SyntheticMonitorError):
    """A test references an entity that has been deleted (e.g. its API)."""

    error_code = ErrorCode.REFERENTIAL_INTEGRITY
    http_status = 409


class HistoryPersistenceError(SyntheticMonitorError):
    """
    One or more probe outcomes of a run could not be appended to history.

    The run itself (with every per-node outcome) travels with the error so
    the caller can still render or retry it.
    """

    error_code = ErrorCode.PERSISTENCE
    http_status = 500

    def __init__(self, run: Any, unpersisted: List[Any], cause: Optional[BaseException] = None):
        super().__init__(
            f"Failed to persist {len(unpersisted)} of {len(run.outcomes)} probe outcomes",
            details={"unpersisted_node_ids": [o.node_id for o in unpersisted]},
        )
        self.run = run
        self.unpersisted = unpersisted
        self.cause = cause
