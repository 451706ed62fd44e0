"""
Change planning - validated editor input in, PendingChange out.

Validation runs before any statement is built; invalid input raises a
ChangeValidationError and never reaches the queue.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import statements as sql
from .catalog import CATALOG, PermissionCatalog
from .diff import UserAttributes, diff_grants, diff_role_assignments, diff_user_attributes, grant_statements
from .errors import ChangeValidationError
from .schema import ChangeType, EntityType, GrantedPermission, PendingChange, RoleAssignment
from ..util.logging import sanitize_payload

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_\-]*$")
_INTERVAL_PATTERN = re.compile(r"^\d+\s+(SECOND|MINUTE|HOUR|DAY|WEEK|MONTH|QUARTER|YEAR)S?$", re.IGNORECASE)
_SETTING_VALUE_PATTERN = re.compile(r"^(-?\d+(\.\d+)?|'(?:[^'\\]|\\.)*')$")
_EXCEPT_PATTERN = re.compile(r"\s+EXCEPT\s+", re.IGNORECASE)


@dataclass
class UserDraft:
    name: str
    attributes: UserAttributes = field(default_factory=UserAttributes)
    roles: List[RoleAssignment] = field(default_factory=list)
    grants: List[GrantedPermission] = field(default_factory=list)

    def to_state(self) -> Dict[str, Any]:
        state = {"name": self.name}
        state.update(self.attributes.to_dict())
        state["roles"] = [{"role_name": r.role_name, "admin_option": r.admin_option} for r in self.roles]
        state["grants"] = [g.to_dict() for g in self.grants]
        return state


@dataclass
class RoleDraft:
    name: str
    grants: List[GrantedPermission] = field(default_factory=list)

    def to_state(self) -> Dict[str, Any]:
        return {"name": self.name, "grants": [g.to_dict() for g in self.grants]}


@dataclass
class QuotaDraft:
    name: str
    duration: str = "1 HOUR"
    limits: Dict[str, Optional[int]] = field(default_factory=dict)
    assignees: List[str] = field(default_factory=list)

    def to_state(self) -> Dict[str, Any]:
        return {"name": self.name, "duration": self.duration, "limits": dict(self.limits),
                "assignees": list(self.assignees)}


@dataclass
class RowPolicyDraft:
    name: str
    database: str
    table: str
    filter_clause: str
    restrictive: bool = False
    assignees: List[str] = field(default_factory=list)

    def to_state(self) -> Dict[str, Any]:
        return {"name": self.name, "database": self.database, "table": self.table,
                "filter_clause": self.filter_clause, "restrictive": self.restrictive,
                "assignees": list(self.assignees)}


@dataclass
class SettingsProfileDraft:
    name: str
    settings: List[Tuple[str, str]] = field(default_factory=list)

    def to_state(self) -> Dict[str, Any]:
        return {"name": self.name, "settings": [{"name": k, "value": v} for k, v in self.settings]}


# Validation

def validate_name(name: str, field_name: str = "name", entity_name: str = None) -> str:
    """Reject empty or non-identifier entity names."""
    name = (name or "").strip()
    if not name:
        raise ChangeValidationError(entity_name or "", field_name, "is required")
    if not _NAME_PATTERN.match(name):
        raise ChangeValidationError(entity_name or name, field_name,
                                    "may only contain letters, digits, '_' and '-'")
    return name


def validate_grants(grants: Sequence[GrantedPermission],
                    catalog: PermissionCatalog = CATALOG) -> List[GrantedPermission]:
    """Check every grant against the catalog; raises on the first invalid one."""
    validated = []
    for grant in grants:
        catalog.resolve_scope(grant.permission_id, grant.scope)
        validated.append(grant)
    return validated


def _validate_roles(roles: Sequence[RoleAssignment], entity_name: str):
    for assignment in roles:
        validate_name(assignment.role_name, "roles", entity_name)


def _validate_assignees(assignees: Sequence[str], entity_name: str):
    for assignee in assignees:
        validate_name(assignee, "assignees", entity_name)


def _validate_grantees(grantees: Optional[str], entity_name: str):
    """ANY, NONE or a name list, optionally followed by EXCEPT <names>."""
    if not grantees or not grantees.strip():
        return
    parts = _EXCEPT_PATTERN.split(grantees.strip())
    if len(parts) > 2:
        raise ChangeValidationError(entity_name, "grantees", "EXCEPT may appear only once")
    for index, part in enumerate(parts):
        for item in part.split(","):
            item = item.strip()
            keyword = item.upper() in ("ANY", "NONE")
            if keyword and index == 0:
                continue
            if keyword or not _NAME_PATTERN.match(item):
                raise ChangeValidationError(entity_name, "grantees", f"invalid grantee '{item}'")


# Users

def plan_create_user(draft: UserDraft, catalog: PermissionCatalog = CATALOG) -> PendingChange:
    name = validate_name(draft.name)
    _validate_roles(draft.roles, name)
    validate_grants(draft.grants, catalog)
    attrs = draft.attributes
    _validate_grantees(attrs.grantees, name)
    if attrs.default_database:
        validate_name(attrs.default_database, "default_database", name)

    statements = [sql.create_user(
        name,
        password=attrs.password,
        host=attrs.host,
        default_database=attrs.default_database,
        grantees=attrs.grantees if attrs.grantees and attrs.grantees != "ANY" else None,
        settings_profile=attrs.settings_profile,
    )]
    statements.extend(diff_role_assignments([], draft.roles, name))
    statements.extend(grant_statements(draft.grants, name, catalog))
    if attrs.readonly:
        statements.append(sql.alter_user_readonly(name, True))

    return PendingChange(
        change_type=ChangeType.CREATE,
        entity_type=EntityType.USER,
        entity_name=name,
        description=f"Create user {name}",
        statements=statements,
        before_state=None,
        after_state=sanitize_payload(draft.to_state()),
    )


def plan_update_user(original: UserDraft, desired: UserDraft,
                     catalog: PermissionCatalog = CATALOG) -> Optional[PendingChange]:
    """ALTER change for an existing user, or None when nothing differs."""
    name = validate_name(original.name)
    if desired.name and desired.name.strip() != name:
        raise ChangeValidationError(name, "name", "users cannot be renamed")
    _validate_roles(desired.roles, name)
    validate_grants(desired.grants, catalog)
    _validate_grantees(desired.attributes.grantees, name)
    if desired.attributes.default_database:
        validate_name(desired.attributes.default_database, "default_database", name)

    statements = diff_user_attributes(name, original.attributes, desired.attributes)
    statements.extend(diff_role_assignments(original.roles, desired.roles, name))
    statements.extend(diff_grants(original.grants, desired.grants, name, catalog))
    if not statements:
        return None

    return PendingChange(
        change_type=ChangeType.ALTER,
        entity_type=EntityType.USER,
        entity_name=name,
        description=f"Update user {name}",
        statements=statements,
        before_state=sanitize_payload(original.to_state()),
        after_state=sanitize_payload(desired.to_state()),
    )


def plan_drop_user(name: str, before_state: Dict[str, Any] = None) -> PendingChange:
    name = validate_name(name)
    return PendingChange(
        change_type=ChangeType.DROP,
        entity_type=EntityType.USER,
        entity_name=name,
        description=f"Delete user {name}",
        statements=[sql.drop_user(name)],
        before_state=sanitize_payload(before_state) if before_state else None,
    )


# Roles

def plan_create_role(draft: RoleDraft, catalog: PermissionCatalog = CATALOG) -> PendingChange:
    name = validate_name(draft.name)
    validate_grants(draft.grants, catalog)
    statements = [sql.create_role(name)]
    statements.extend(grant_statements(draft.grants, name, catalog))
    return PendingChange(
        change_type=ChangeType.CREATE,
        entity_type=EntityType.ROLE,
        entity_name=name,
        description=f"Create role {name}",
        statements=statements,
        after_state=draft.to_state(),
    )


def plan_update_role(original: RoleDraft, desired: RoleDraft,
                     catalog: PermissionCatalog = CATALOG) -> Optional[PendingChange]:
    name = validate_name(original.name)
    validate_grants(desired.grants, catalog)
    statements = diff_grants(original.grants, desired.grants, name, catalog)
    if not statements:
        return None

    # Pure revokes/grants are labelled by their direction
    has_revoke = any(s.startswith("REVOKE") for s in statements)
    has_grant = any(s.startswith("GRANT") for s in statements)
    if has_grant and not has_revoke:
        change_type = ChangeType.GRANT
    elif has_revoke and not has_grant:
        change_type = ChangeType.REVOKE
    else:
        change_type = ChangeType.ALTER

    return PendingChange(
        change_type=change_type,
        entity_type=EntityType.ROLE,
        entity_name=name,
        description=f"Update permissions for role {name}",
        statements=statements,
        before_state=original.to_state(),
        after_state=desired.to_state(),
    )


def plan_drop_role(name: str, before_state: Dict[str, Any] = None) -> PendingChange:
    name = validate_name(name)
    return PendingChange(
        change_type=ChangeType.DROP,
        entity_type=EntityType.ROLE,
        entity_name=name,
        description=f"Delete role {name}",
        statements=[sql.drop_role(name)],
        before_state=before_state,
    )


# Quotas

def _validate_quota(draft: QuotaDraft) -> str:
    name = validate_name(draft.name)
    duration = (draft.duration or "").strip()
    if not _INTERVAL_PATTERN.match(duration):
        raise ChangeValidationError(name, "duration", f"invalid interval '{draft.duration}'")
    known = {key for key, _ in sql.QUOTA_LIMITS}
    for key, value in draft.limits.items():
        if key not in known:
            raise ChangeValidationError(name, "limits", f"unknown limit '{key}'")
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
            raise ChangeValidationError(name, key, "must be a non-negative integer")
    _validate_assignees(draft.assignees, name)
    return name


def plan_quota(draft: QuotaDraft, original: QuotaDraft = None) -> PendingChange:
    """CREATE, or drop-and-recreate when an original is supplied."""
    name = _validate_quota(draft)
    create = sql.create_quota(name, draft.duration.strip().upper(), draft.limits, draft.assignees)
    if original is None:
        return PendingChange(
            change_type=ChangeType.CREATE,
            entity_type=EntityType.QUOTA,
            entity_name=name,
            description=f"Create quota {name}",
            statements=[create],
            after_state=draft.to_state(),
        )
    return PendingChange(
        change_type=ChangeType.ALTER,
        entity_type=EntityType.QUOTA,
        entity_name=name,
        description=f"Update quota {name}",
        statements=[sql.drop_quota(validate_name(original.name)), create],
        before_state=original.to_state(),
        after_state=draft.to_state(),
    )


def plan_drop_quota(name: str, before_state: Dict[str, Any] = None) -> PendingChange:
    name = validate_name(name)
    return PendingChange(
        change_type=ChangeType.DROP,
        entity_type=EntityType.QUOTA,
        entity_name=name,
        description=f"Delete quota {name}",
        statements=[sql.drop_quota(name)],
        before_state=before_state,
    )


# Row policies

def _validate_row_policy(draft: RowPolicyDraft) -> str:
    name = validate_name(draft.name)
    validate_name(draft.database, "database", name)
    validate_name(draft.table, "table", name)
    if not (draft.filter_clause or "").strip():
        raise ChangeValidationError(name, "filter_clause", "is required")
    _validate_assignees(draft.assignees, name)
    return name


def plan_row_policy(draft: RowPolicyDraft, original: RowPolicyDraft = None) -> PendingChange:
    name = _validate_row_policy(draft)
    create = sql.create_row_policy(name, draft.database.strip(), draft.table.strip(),
                                   draft.filter_clause.strip(), draft.restrictive, draft.assignees)
    if original is None:
        return PendingChange(
            change_type=ChangeType.CREATE,
            entity_type=EntityType.ROW_POLICY,
            entity_name=name,
            description=f"Create row policy {name} on {draft.database}.{draft.table}",
            statements=[create],
            after_state=draft.to_state(),
        )
    drop = sql.drop_row_policy(original.name, original.database, original.table)
    return PendingChange(
        change_type=ChangeType.ALTER,
        entity_type=EntityType.ROW_POLICY,
        entity_name=name,
        description=f"Update row policy {name}",
        statements=[drop, create],
        before_state=original.to_state(),
        after_state=draft.to_state(),
    )


def plan_drop_row_policy(name: str, database: str, table: str,
                         before_state: Dict[str, Any] = None) -> PendingChange:
    name = validate_name(name)
    validate_name(database, "database", name)
    validate_name(table, "table", name)
    return PendingChange(
        change_type=ChangeType.DROP,
        entity_type=EntityType.ROW_POLICY,
        entity_name=name,
        description=f"Delete row policy {name} on {database}.{table}",
        statements=[sql.drop_row_policy(name, database, table)],
        before_state=before_state,
    )


# Settings profiles

def plan_settings_profile(draft: SettingsProfileDraft,
                          original: SettingsProfileDraft = None) -> PendingChange:
    name = validate_name(draft.name)
    settings = []
    for key, value in draft.settings:
        key = validate_name(key, "settings", name)
        if value is None or not str(value).strip():
            raise ChangeValidationError(name, key, "value is required")
        value = str(value).strip()
        if not _SETTING_VALUE_PATTERN.match(value):
            raise ChangeValidationError(name, key, "value must be a number or a quoted string literal")
        settings.append((key, value))

    create = sql.create_settings_profile(name, settings)
    if original is None:
        return PendingChange(
            change_type=ChangeType.CREATE,
            entity_type=EntityType.SETTINGS_PROFILE,
            entity_name=name,
            description=f"Create settings profile {name}",
            statements=[create],
            after_state=draft.to_state(),
        )
    return PendingChange(
        change_type=ChangeType.ALTER,
        entity_type=EntityType.SETTINGS_PROFILE,
        entity_name=name,
        description=f"Update settings profile {name}",
        statements=[sql.drop_settings_profile(validate_name(original.name)), create],
        before_state=original.to_state(),
        after_state=draft.to_state(),
    )


def plan_drop_settings_profile(name: str, before_state: Dict[str, Any] = None) -> PendingChange:
    name = validate_name(name)
    return PendingChange(
        change_type=ChangeType.DROP,
        entity_type=EntityType.SETTINGS_PROFILE,
        entity_name=name,
        description=f"Delete settings profile {name}",
        statements=[sql.drop_settings_profile(name)],
        before_state=before_state,
    )
