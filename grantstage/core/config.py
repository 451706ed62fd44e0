"""
Runtime configuration read from the environment.
Defaults target a local ClickHouse server and a local sqlite audit file.
"""

import os
from pathlib import Path
from typing import List

# Audit database path (sqlite backend)
DB_PATH = os.getenv("DB_PATH", "./data/audit.db")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# ClickHouse HTTP interface
CLICKHOUSE_URL = os.getenv("CLICKHOUSE_URL", "http://localhost:8123")
CLICKHOUSE_USER = os.getenv("CLICKHOUSE_USER", "default")
CLICKHOUSE_PASSWORD = os.getenv("CLICKHOUSE_PASSWORD", "")
CLICKHOUSE_DATABASE = os.getenv("CLICKHOUSE_DATABASE", "default")
TRANSPORT_TIMEOUT_SEC = float(os.getenv("TRANSPORT_TIMEOUT_SEC", "30"))

# Audit trail
AUDIT_BACKEND = os.getenv("AUDIT_BACKEND", "sqlite")  # sqlite|clickhouse
AUDIT_TABLE = os.getenv("AUDIT_TABLE", "ch_ui_audit_log")
AUDIT_RETENTION_DAYS = int(os.getenv("AUDIT_RETENTION_DAYS", "90"))
AUDIT_REDACT_SECRETS = os.getenv("AUDIT_REDACT_SECRETS", "true").lower() == "true"

# Effective grants resolution
RESOLVER_MAX_WORKERS = int(os.getenv("RESOLVER_MAX_WORKERS", "4"))

# Actor recorded in the audit trail when none is supplied
DEFAULT_ACTOR = os.getenv("DEFAULT_ACTOR", "unknown")

# Privilege presets
PRESETS_PATH = os.getenv("PRESETS_PATH", "./data/presets.json")

# Export/import document version; imports must match exactly
EXPORT_VERSION = "1.0"

VERSION = "0.3.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(path: str = None):
    """Ensure the directory for a data file exists."""
    Path(path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def get_audit_backend():
    """Get audit backend (sqlite|clickhouse)."""
    return AUDIT_BACKEND


def get_retention_days():
    """Get audit retention window in days."""
    return AUDIT_RETENTION_DAYS


def get_default_actor():
    """Get the actor name used when the caller does not supply one."""
    return os.getenv("DEFAULT_ACTOR", DEFAULT_ACTOR) or "unknown"


def validate_config() -> List[str]:
    """Validate configuration and return any issues."""
    issues = []

    if AUDIT_BACKEND not in ["sqlite", "clickhouse"]:
        issues.append(f"Invalid AUDIT_BACKEND: {AUDIT_BACKEND}")

    if AUDIT_RETENTION_DAYS < 1:
        issues.append("AUDIT_RETENTION_DAYS must be >= 1")

    if RESOLVER_MAX_WORKERS < 1:
        issues.append("RESOLVER_MAX_WORKERS must be >= 1")

    if TRANSPORT_TIMEOUT_SEC <= 0:
        issues.append("TRANSPORT_TIMEOUT_SEC must be > 0")

    if not CLICKHOUSE_URL.startswith(("http://", "https://")):
        issues.append(f"CLICKHOUSE_URL must be an http(s) URL: {CLICKHOUSE_URL}")

    return issues
