"""
Structured logging for change staging, execution and auditing.
Every payload passes through the redaction helpers before it is written.
"""

import logging
import re
from typing import Any, Dict, List

_SECRET_CLAUSE = re.compile(r"(\bBY\s+)'(?:[^'\\]|\\.|'')*'", re.IGNORECASE)

DEFAULT_SENSITIVE_FIELDS = ['password', 'secret', 'token', 'auth_token', 'api_key']


class StructuredLogger:
    """Structured logger for access-control planning and execution."""

    def __init__(self, name: str = "grantstage"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        if status in ("failed", "error"):
            self.logger.error(message)
        else:
            self.logger.info(message)

    # Queue lifecycle
    def log_change_staged(self, change_id: str, change_type: str, entity_type: str, entity_name: str,
                          statement_count: int):
        """Log a change entering the queue."""
        self.log_operation("queue.staged", "pending", {
            "change_id": change_id,
            "change_type": change_type,
            "entity_type": entity_type,
            "entity_name": entity_name,
            "statements": statement_count
        })

    def log_change_removed(self, change_id: str, found: bool):
        """Log removal of a staged change."""
        self.log_operation("queue.removed", "success" if found else "noop", {"change_id": change_id})

    def log_queue_cleared(self, count: int):
        """Log clearing of the queue."""
        self.log_operation("queue.cleared", "success", {"removed": count})

    def log_execution_started(self, change_count: int, actor: str):
        """Log the start of an execution pass."""
        self.log_operation("queue.execute", "started", {"changes": change_count, "actor": actor})

    def log_change_executed(self, change_id: str, entity_name: str, success: bool, statements_executed: int,
                            error: str = None):
        """Log the outcome of one change."""
        details = {
            "change_id": change_id,
            "entity_name": entity_name,
            "statements_executed": statements_executed
        }
        if error:
            details["error"] = error[:200]
        self.log_operation("queue.change", "success" if success else "failed", details)

    def log_statement_failed(self, change_id: str, statement: str, error: str):
        """Log the statement that stopped an execution pass."""
        self.log_operation("transport.statement", "failed", {
            "change_id": change_id,
            "statement": redact_statement(statement),
            "error": error[:200]
        })

    def log_execution_finished(self, succeeded: int, attempted: int, total: int):
        """Log the end of an execution pass."""
        status = "success" if succeeded == attempted == total else "partial"
        self.log_operation("queue.execute", status, {
            "succeeded": succeeded,
            "attempted": attempted,
            "total": total
        })

    # Planning
    def log_stale_permission(self, permission_id: str, entity_name: str, direction: str):
        """Log a grant skipped because its permission id is not in the catalog."""
        self.logger.warning(
            f"Skipping unknown permission '{permission_id}' for {entity_name} ({direction})"
        )

    def log_resolution(self, identity: str, direct_count: int, role_count: int, effective_count: int):
        """Log a completed effective-grants resolution."""
        self.log_operation("grants.resolve", "success", {
            "identity": identity,
            "direct": direct_count,
            "roles": role_count,
            "effective": effective_count
        })

    def log_resolution_failed(self, identity: str, error: Exception):
        """Log a failed effective-grants resolution."""
        self.log_operation("grants.resolve", "failed", {"identity": identity, "error": str(error)[:200]})

    # Audit
    def log_audit_recorded(self, entry_id: str, change_id: str, success: bool):
        """Log an audit entry write."""
        self.logger.debug(f"Audit entry {entry_id} recorded for change {change_id} (success={success})")

    def log_audit_failure(self, change_id: str, error: Exception):
        """Log an audit write that could not be persisted."""
        self.log_operation("audit.record", "failed", {"change_id": change_id, "error": str(error)[:200]})

    def log_audit_purge(self, removed: int, retention_days: int):
        """Log retention cleanup."""
        self.log_operation("audit.purge", "success", {"removed": removed, "retention_days": retention_days})

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def redact_statement(statement: str) -> str:
    """Mask quoted secrets following BY (passwords in CREATE/ALTER USER)."""
    if not statement:
        return statement
    return _SECRET_CLAUSE.sub(r"\1'[REDACTED]'", statement)


def redact_statements(statements: List[str]) -> List[str]:
    """Redact every statement in a list."""
    return [redact_statement(s) for s in statements]


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None,
                sensitive_fields: List[str] = None):
    """General audit event logging with privacy controls."""
    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    logger.log_operation(event_type.replace(".", "_"), "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads (before/after state snapshots) for logging and auditing."""
    if sensitive_fields is None:
        sensitive_fields = DEFAULT_SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            elif v:
                sanitized[k] = "[REDACTED]"
            else:
                sanitized[k] = v
        return sanitized
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    elif isinstance(payload, str) and not reveal_sensitive:
        return redact_statement(payload)
    else:
        return payload
