"""
Diff engine - turns before/after snapshots into ordered administrative statements.

All functions here are pure over their inputs and the static catalog.
Revokes always precede grants so that narrowing a scope never transiently
leaves broader access than either the before or the after state.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from . import statements as sql
from .catalog import CATALOG, PermissionCatalog
from .schema import GrantedPermission, RoleAssignment
from .scope import format_scope
from .statements import HostRestriction
from ..util.logging import logger


def _ordered_unique(grants: Iterable[GrantedPermission]) -> List[GrantedPermission]:
    # Set semantics keyed on (permission_id, scope), first occurrence wins
    return list(dict.fromkeys(grants))


def grants_match(a: Iterable[GrantedPermission], b: Iterable[GrantedPermission]) -> bool:
    """Order-independent equality of two grant collections."""
    return set(a) == set(b)


def _grant_statements(candidates: Sequence[GrantedPermission], desired_ids: set, entity_name: str,
                      catalog: PermissionCatalog) -> List[str]:
    """GRANTs for candidates, skipping those whose direct parent or coverer is desired."""
    result = []
    emitted = set()
    for grant in candidates:
        permission = catalog.get(grant.permission_id)
        if permission is None:
            logger.log_stale_permission(grant.permission_id, entity_name, "grant")
            continue

        # Single-level suppression: the direct parent or a covering sibling, at any scope
        if any(s in desired_ids for s in catalog.suppressors_of(grant.permission_id)):
            continue

        scope_str = format_scope(grant.scope)
        key = f"{permission.sql_privilege}:{scope_str}"
        if key in emitted:
            continue
        emitted.add(key)
        result.append(sql.grant_privilege(permission, grant.scope, entity_name))
    return result


def grant_statements(grants: Iterable[GrantedPermission], entity_name: str,
                     catalog: PermissionCatalog = CATALOG) -> List[str]:
    """GRANT statements for a fresh entity (nothing granted yet)."""
    grants = _ordered_unique(grants)
    desired_ids = {g.permission_id for g in grants}
    return _grant_statements(grants, desired_ids, entity_name, catalog)


def diff_grants(original: Iterable[GrantedPermission], desired: Iterable[GrantedPermission],
                entity_name: str, catalog: PermissionCatalog = CATALOG) -> List[str]:
    """
    Statements moving an entity from its original grants to the desired grants.

    Revokes (original - desired) come first in original order, then grants
    (desired - original) in desired order. A grant is suppressed when its
    direct parent (or a sibling that covers it, such as ALTER_COLUMN) appears
    anywhere in the desired set; grandparents do not suppress. Revokes are
    never suppressed.
    """
    original = _ordered_unique(original)
    desired = _ordered_unique(desired)
    original_set = set(original)
    desired_set = set(desired)

    statements = []
    for grant in original:
        if grant in desired_set:
            continue
        permission = catalog.get(grant.permission_id)
        if permission is None:
            logger.log_stale_permission(grant.permission_id, entity_name, "revoke")
            continue
        statements.append(sql.revoke_privilege(permission, grant.scope, entity_name))

    to_grant = [g for g in desired if g not in original_set]
    desired_ids = {g.permission_id for g in desired}
    statements.extend(_grant_statements(to_grant, desired_ids, entity_name, catalog))
    return statements


def diff_role_assignments(original: Iterable[RoleAssignment], desired: Iterable[RoleAssignment],
                          entity_name: str) -> List[str]:
    """
    Role membership statements: revokes, grants, admin-option adjustments,
    then a default-role reset when the desired set is non-empty and changed.
    """
    original_by_name: Dict[str, RoleAssignment] = {}
    for assignment in original:
        original_by_name.setdefault(assignment.role_name, assignment)
    desired_by_name: Dict[str, RoleAssignment] = {}
    for assignment in desired:
        desired_by_name.setdefault(assignment.role_name, assignment)

    statements = []
    for name in original_by_name:
        if name not in desired_by_name:
            statements.append(sql.revoke_role(name, entity_name))

    for name, assignment in desired_by_name.items():
        previous = original_by_name.get(name)
        if previous is None:
            statements.append(sql.grant_role(name, entity_name, assignment.admin_option))
        elif assignment.admin_option and not previous.admin_option:
            statements.append(sql.grant_role(name, entity_name, admin_option=True))
        elif previous.admin_option and not assignment.admin_option:
            statements.append(sql.revoke_admin_option(name, entity_name))

    if desired_by_name and set(desired_by_name) != set(original_by_name):
        statements.append(sql.set_default_roles(desired_by_name, entity_name))
    return statements


@dataclass
class UserAttributes:
    """Scalar user attributes compared by the attribute diff."""
    password: Optional[str] = None
    host: HostRestriction = field(default_factory=HostRestriction)
    default_database: Optional[str] = None
    settings_profile: Optional[str] = None
    readonly: bool = False
    grantees: str = "ANY"

    def to_dict(self, reveal_password: bool = False) -> Dict:
        return {
            "password": self.password if reveal_password else ("[REDACTED]" if self.password else None),
            "host_type": self.host.kind,
            "host_values": list(self.host.values),
            "default_database": self.default_database,
            "settings_profile": self.settings_profile,
            "readonly": self.readonly,
            "grantees": self.grantees,
        }


def diff_user_attributes(name: str, original: UserAttributes, desired: UserAttributes) -> List[str]:
    """
    One ALTER USER statement per changed scalar field.

    Order: password, host, default database, settings profile, readonly,
    grantees. A password is only ever set, never compared; an empty desired
    password means "unchanged". Clearing a settings profile emits nothing.
    """
    statements = []

    if desired.password:
        statements.append(sql.alter_user_password(name, desired.password))

    if desired.host != original.host:
        statements.append(sql.alter_user_host(name, desired.host))

    if (desired.default_database or "") != (original.default_database or ""):
        statements.append(sql.alter_user_default_database(name, desired.default_database))

    new_profile = desired.settings_profile or ""
    if new_profile and new_profile != (original.settings_profile or ""):
        statements.append(sql.alter_user_settings_profile(name, new_profile))

    if bool(desired.readonly) != bool(original.readonly):
        statements.append(sql.alter_user_readonly(name, desired.readonly))

    if (desired.grantees or "ANY") != (original.grantees or "ANY"):
        statements.append(sql.alter_user_grantees(name, desired.grantees or "ANY"))

    return statements
