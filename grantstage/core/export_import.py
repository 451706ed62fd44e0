"""
Export/import of access-control entities as a versioned JSON document.

Imports are validated for an exact version match and compared against
the current state by entity name.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from . import config
from .errors import ImportValidationError
from .transport import Transport
from ..util.logging import logger

ENTITY_SCOPES = ("users", "roles", "quotas", "row_policies", "settings_profiles")

EXPORT_QUERIES = {
    "users": """
        SELECT
          name, id, auth_type, host_ip, host_names,
          host_names_regexp, host_names_like,
          default_roles_all, default_roles_list,
          default_database, grantees_any, grantees_list
        FROM system.users
        WHERE storage = 'local directory'
        ORDER BY name
    """,
    "roles": """
        SELECT name, id
        FROM system.roles
        WHERE storage = 'local directory'
        ORDER BY name
    """,
    "quotas": """
        SELECT
          name, id, key_names, durations,
          max_queries, max_query_selects, max_query_inserts,
          max_errors, max_result_rows, max_result_bytes,
          max_read_rows, max_read_bytes, max_execution_time
        FROM system.quotas
        WHERE storage = 'local directory'
        ORDER BY name
    """,
    "row_policies": """
        SELECT
          name, short_name, database, table,
          id, source, restrictive, is_restrictive
        FROM system.row_policies
        WHERE storage = 'local directory'
        ORDER BY database, table, name
    """,
    "settings_profiles": """
        SELECT name, id
        FROM system.settings_profiles
        WHERE storage = 'local directory'
        ORDER BY name
    """,
}


def export_permissions(transport: Transport, scope: str = "all", exported_by: str = None) -> Dict[str, Any]:
    """Snapshot entities into an export document; scope is "all" or one entity type."""
    if scope != "all" and scope not in ENTITY_SCOPES:
        raise ImportValidationError(f"Unknown export scope: {scope}")

    data: Dict[str, Any] = {
        "version": config.EXPORT_VERSION,
        "exportedAt": datetime.now(timezone.utc).isoformat(),
        "exportedBy": exported_by or config.get_default_actor(),
    }
    for entity_type in ENTITY_SCOPES:
        if scope in ("all", entity_type):
            data[entity_type] = transport.query(EXPORT_QUERIES[entity_type])

    logger.log_operation("export", "success", {
        "scope": scope,
        "counts": {k: len(data[k]) for k in ENTITY_SCOPES if k in data}
    })
    return data


def validate_import(data: Any) -> Dict[str, Any]:
    """Raise ImportValidationError unless data is an importable document."""
    if not isinstance(data, dict):
        raise ImportValidationError("Import data must be a JSON object")

    version = data.get("version")
    if not version:
        raise ImportValidationError("Import data has no version")
    if version != config.EXPORT_VERSION:
        raise ImportValidationError(f"Incompatible version: {version}. Expected: {config.EXPORT_VERSION}")

    present = [k for k in ENTITY_SCOPES if data.get(k)]
    if not present:
        raise ImportValidationError("Import data contains no entities")
    for key in ENTITY_SCOPES:
        if key in data and data[key] is not None and not isinstance(data[key], list):
            raise ImportValidationError(f"'{key}' must be a list")
        for item in data.get(key) or []:
            if not isinstance(item, dict) or not item.get("name"):
                raise ImportValidationError(f"Every entry in '{key}' must have a name")
    return data


def _diff_by_name(current: Optional[List[Dict[str, Any]]],
                  imported: Optional[List[Dict[str, Any]]]) -> Dict[str, List[Dict[str, Any]]]:
    current_by_name = {item["name"]: item for item in current or []}
    imported_by_name = {item["name"]: item for item in imported or []}

    return {
        "to_add": [item for name, item in imported_by_name.items() if name not in current_by_name],
        "to_remove": [item for name, item in current_by_name.items() if name not in imported_by_name],
        "to_update": [
            item for name, item in imported_by_name.items()
            if name in current_by_name and current_by_name[name] != item
        ],
    }


def calculate_diff(current: Dict[str, Any], imported: Dict[str, Any]) -> Dict[str, Dict[str, List]]:
    """Per entity type present in the import: entries to add, remove and update."""
    diff = {}
    for entity_type in ENTITY_SCOPES:
        if imported.get(entity_type) is not None:
            diff[entity_type] = _diff_by_name(current.get(entity_type), imported.get(entity_type))
    return diff
