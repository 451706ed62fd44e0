"""
Read side: current grants, role assignments and user attributes from
ClickHouse system tables.
"""

from typing import Any, Dict, List, Optional

from .catalog import CATALOG, PermissionCatalog
from .diff import UserAttributes
from .planner import RoleDraft, UserDraft
from .schema import GrantedPermission, RoleAssignment
from .scope import scope_from_columns
from .statements import HostRestriction
from .transport import Transport

GRANTS_BY_USER_SQL = """
SELECT access_type, database, table
FROM system.grants
WHERE user_name = {name:String}
ORDER BY access_type, database, table
"""

GRANTS_BY_ROLE_SQL = """
SELECT access_type, database, table
FROM system.grants
WHERE role_name = {name:String}
ORDER BY access_type, database, table
"""

ROLE_ASSIGNMENTS_SQL = """
SELECT granted_role_name, with_admin_option
FROM system.role_grants
WHERE user_name = {name:String}
ORDER BY granted_role_name
"""

USER_SQL = """
SELECT name, host_ip, host_names, host_names_regexp, host_names_like,
       default_database, grantees_any, grantees_list
FROM system.users
WHERE name = {name:String}
"""

USER_PROFILE_SQL = """
SELECT inherit_profile
FROM system.settings_profile_elements
WHERE user_name = {name:String} AND inherit_profile IS NOT NULL
LIMIT 1
"""

USER_READONLY_SQL = """
SELECT value
FROM system.settings_profile_elements
WHERE user_name = {name:String} AND setting_name = 'readonly'
LIMIT 1
"""


def _is_true(value: Any) -> bool:
    return value in (1, True, "1", "true")


def host_from_row(row: Dict[str, Any]) -> HostRestriction:
    """Host restriction from a system.users row; checked as IP, NAME, REGEXP, LIKE."""
    host_ips = [h for h in row.get("host_ip") or [] if h not in ("::/0", "0.0.0.0/0")]
    if host_ips:
        return HostRestriction("IP", tuple(host_ips))
    host_names = row.get("host_names") or []
    # HOST LOCAL is stored as the single name 'localhost'
    if list(host_names) == ["localhost"]:
        return HostRestriction("LOCAL")
    if host_names:
        return HostRestriction("NAME", tuple(host_names))
    if row.get("host_names_regexp"):
        return HostRestriction("REGEXP", tuple(row["host_names_regexp"]))
    if row.get("host_names_like"):
        return HostRestriction("LIKE", tuple(row["host_names_like"]))
    return HostRestriction()


class ClickHouseAccessSource:
    """Grants source and role-assignment source backed by system tables."""

    def __init__(self, transport: Transport, catalog: PermissionCatalog = CATALOG):
        self.transport = transport
        self.catalog = catalog

    def _rows_to_grants(self, rows: List[Dict[str, Any]]) -> List[GrantedPermission]:
        grants = []
        for row in rows:
            permission_id = self.catalog.from_access_type(row["access_type"])
            scope = scope_from_columns(row.get("database"), row.get("table"))
            grants.append(GrantedPermission(permission_id, scope))
        return grants

    def fetch_user_grants(self, user_name: str) -> List[GrantedPermission]:
        return self._rows_to_grants(self.transport.query(GRANTS_BY_USER_SQL, {"name": user_name}))

    def fetch_role_grants(self, role_name: str) -> List[GrantedPermission]:
        return self._rows_to_grants(self.transport.query(GRANTS_BY_ROLE_SQL, {"name": role_name}))

    def fetch_role_assignments(self, user_name: str) -> List[RoleAssignment]:
        rows = self.transport.query(ROLE_ASSIGNMENTS_SQL, {"name": user_name})
        return [RoleAssignment(row["granted_role_name"], _is_true(row.get("with_admin_option")))
                for row in rows]

    def fetch_user(self, user_name: str) -> Optional[UserDraft]:
        """Current state of a user as an editor draft; None when absent."""
        rows = self.transport.query(USER_SQL, {"name": user_name})
        if not rows:
            return None
        row = rows[0]

        host = host_from_row(row)

        if _is_true(row.get("grantees_any")):
            grantees = "ANY"
        else:
            grantees = ", ".join(row.get("grantees_list") or []) or "NONE"

        profile_rows = self.transport.query(USER_PROFILE_SQL, {"name": user_name})
        readonly_rows = self.transport.query(USER_READONLY_SQL, {"name": user_name})

        attributes = UserAttributes(
            host=host,
            default_database=row.get("default_database") or None,
            settings_profile=profile_rows[0]["inherit_profile"] if profile_rows else None,
            readonly=bool(readonly_rows) and str(readonly_rows[0].get("value")) not in ("0", ""),
            grantees=grantees,
        )
        return UserDraft(
            name=row["name"],
            attributes=attributes,
            roles=self.fetch_role_assignments(user_name),
            grants=self.fetch_user_grants(user_name),
        )

    def fetch_role(self, role_name: str) -> RoleDraft:
        return RoleDraft(name=role_name, grants=self.fetch_role_grants(role_name))
