"""
FieldLog Backend: Custom Exception Hierarchy
==============================================

What:  Application-specific exceptions for every failure the API can report.
How:   Each exception carries a message and optional context dict, plus the
       HTTP status and machine-readable code the global handlers (main.py)
       use to build the structured error body.
Who:   Raised by services, the store and the replication engine.

Exception Hierarchy:
    FieldLogError (base)
    ├── ValidationError          → 400 Bad Request
    │   ├── MalformedInputError  → 400 (body is not valid JSON)
    │   ├── InvalidFieldsError   → 400 (observation failed the validation gate)
    │   └── UsageError           → 400 (sync request without a target)
    ├── TypeMismatchError        → 400 (path id and record id disagree)
    ├── NoVersionError           → 409 Conflict (parent version missing or stale)
    ├── NotFoundError            → 404 Not Found
    ├── ReplicationError         → 503 Service Unavailable
    └── StoreError               → 500 Internal Server Error
        ├── StoreNotFoundError   (version lookup missed)
        └── StoreConflictError   (conditional write lost the race)

    StoreNotFoundError and StoreConflictError are store-level signals; the
    observation service translates both into NoVersionError.
"""

from typing import Any, Dict, Optional


class FieldLogError(Exception):
    """
    Base exception for all FieldLog application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info
    """

    status_code = 500
    error_code = "server_error"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(FieldLogError):
    """Raised when client input is rejected and can be corrected by the client."""

    status_code = 400
    error_code = "validation_error"

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class MalformedInputError(ValidationError):
    """The request body could not be parsed as JSON."""

    error_code = "json_parse_error"

    def __init__(
        self,
        message: str = "Could not parse the request body as JSON",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class InvalidFieldsError(ValidationError):
    """
    The observation did not pass the validation gate.

    The message is the first failed rule, e.g.
    "one of lat and lon are undefined".
    """

    error_code = "invalid_fields"

    def __init__(
        self,
        message: str = "Observation has invalid fields",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, field=field, context=context)


class UsageError(ValidationError):
    """A sync request named neither a filename nor a complete host/port pair."""

    error_code = "usage_error"

    def __init__(
        self,
        message: str = "Requires filename or host and port",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class TypeMismatchError(FieldLogError):
    """
    The id in the request path does not match the id in the payload, or the
    id of the record the payload's version resolves to.
    """

    status_code = 400
    error_code = "type_mismatch"

    def __init__(
        self,
        actual: Any = None,
        expected: Any = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"Id mismatch: got '{actual}', expected '{expected}'"
        ctx = context or {}
        ctx["actual"] = actual
        ctx["expected"] = expected
        super().__init__(message=message, context=ctx)
        self.actual = actual
        self.expected = expected


class NoVersionError(FieldLogError):
    """
    The version an update names is unknown or no longer a head.

    The client must re-fetch the observation and retry against the
    current version.
    """

    status_code = 409
    error_code = "no_version"

    def __init__(
        self,
        version: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = "The given version does not exist or has been superseded"
        ctx = context or {}
        if version:
            ctx["version"] = version
        super().__init__(message=message, context=ctx)
        self.version = version


class NotFoundError(FieldLogError):
    """Raised when a requested resource does not exist."""

    status_code = 404
    error_code = "not_found"

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class ReplicationError(FieldLogError):
    """The replication engine refused or failed a request."""

    status_code = 503
    error_code = "replication_error"

    def __init__(
        self,
        message: str = "Replication failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class StoreError(FieldLogError):
    """
    Raised when the version store fails.

    The message returned to the client is always generic; details stay in
    the server log.
    """

    status_code = 500
    error_code = "store_error"

    def __init__(
        self,
        message: str = "A storage error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class StoreNotFoundError(StoreError):
    """No version with the requested identifier exists in the store."""

    def __init__(self, version: str, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["version"] = version
        super().__init__(message=f"Version '{version}' not found", context=ctx)
        self.version = version


class StoreConflictError(StoreError):
    """A conditional write named a parent that is not a current head."""

    def __init__(self, key: str, stale: list, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["key"] = key
        ctx["stale_links"] = stale
        super().__init__(message=f"Stale parent versions for '{key}'", context=ctx)
        self.key = key
        self.stale = stale
