"""
Error taxonomy: validation, resolution, execution.
Audit persistence failures never surface as exceptions to callers.
"""

from typing import Iterable, Optional


class GrantstageError(Exception):
    """Base class for all engine errors."""


class ChangeValidationError(GrantstageError):
    """Rejected input; raised before any statement is built."""

    def __init__(self, entity_name: str, field: str, message: str):
        self.entity_name = entity_name
        self.field = field
        self.message = message
        target = entity_name or "<unnamed>"
        super().__init__(f"{target}: {field}: {message}")


class InvalidScope(ChangeValidationError):
    """Scope is missing a required database or table name."""

    def __init__(self, message: str):
        super().__init__("", "scope", message)


class InvalidScopeKind(ChangeValidationError):
    """Scope kind is not allowed for the capability."""

    def __init__(self, permission_id: str, kind: str, allowed: Iterable[str]):
        self.permission_id = permission_id
        self.kind = kind
        self.allowed = list(allowed)
        super().__init__(
            permission_id,
            "scope",
            f"scope '{kind}' not allowed (allowed: {', '.join(self.allowed)})"
        )


class UnknownPermission(ChangeValidationError):
    """Permission id is not present in the catalog."""

    def __init__(self, permission_id: str):
        self.permission_id = permission_id
        super().__init__(permission_id, "permission_id", "unknown permission")


class ImportValidationError(ChangeValidationError):
    """Export/import document failed validation."""

    def __init__(self, message: str):
        super().__init__("import", "document", message)


class CatalogError(GrantstageError):
    """Static privilege catalog violates its tree invariants."""


class ResolutionError(GrantstageError):
    """Effective grants could not be fully resolved."""

    def __init__(self, identity: str, cause: Optional[BaseException] = None):
        self.identity = identity
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Failed to resolve effective grants for {identity}{detail}")


class StatementExecutionError(GrantstageError):
    """A single administrative statement failed against the server."""

    def __init__(self, statement: str, message: str, status_code: Optional[int] = None):
        self.statement = statement
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class QueueBusyError(GrantstageError):
    """Queue mutated or executed while an execution pass is in flight."""
