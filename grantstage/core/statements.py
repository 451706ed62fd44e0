"""
Administrative statement builders for the ClickHouse access-control grammar.

Builders are pure string functions. Entity names are emitted as given;
string literals (passwords, hosts, profile names) are quoted and escaped.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Sequence, Tuple

from .catalog import PermissionNode
from .scope import Scope, format_scope

HOST_KINDS = ("ANY", "IP", "NAME", "REGEXP", "LIKE", "LOCAL")
QUOTA_LIMITS = (
    ("queries", "QUERIES"),
    ("errors", "ERRORS"),
    ("result_rows", "RESULT ROWS"),
    ("read_rows", "READ ROWS"),
    ("execution_time", "EXECUTION TIME"),
)


def quote_literal(value: str) -> str:
    """Single-quote a string literal."""
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


@dataclass(frozen=True)
class HostRestriction:
    kind: str = "ANY"
    values: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, kind: Optional[str], raw: Optional[str]) -> 'HostRestriction':
        """Build from an editor value: kind plus comma-separated host list."""
        kind = (kind or "ANY").upper()
        values = tuple(v.strip() for v in (raw or "").split(",") if v.strip())
        if kind not in ("ANY", "LOCAL") and not values:
            return cls("ANY")
        return cls(kind, values)

    def clause(self) -> str:
        if self.kind in ("ANY", "LOCAL"):
            return f"HOST {self.kind}"
        return f"HOST {self.kind} " + ", ".join(quote_literal(v) for v in self.values)


# Privileges

def grant_privilege(permission: PermissionNode, scope: Scope, entity: str) -> str:
    return f"GRANT {permission.sql_privilege} ON {format_scope(scope)} TO {entity}"


def revoke_privilege(permission: PermissionNode, scope: Scope, entity: str) -> str:
    return f"REVOKE {permission.sql_privilege} ON {format_scope(scope)} FROM {entity}"


# Users

def identified_clause(password: str) -> str:
    return f"IDENTIFIED WITH sha256_password BY {quote_literal(password)}"


def create_user(name: str, password: Optional[str] = None, host: Optional[HostRestriction] = None,
                default_roles: Sequence[str] = (), default_database: Optional[str] = None,
                grantees: Optional[str] = None, settings_profile: Optional[str] = None) -> str:
    stmt = f"CREATE USER IF NOT EXISTS {name}"
    if password:
        stmt += f" {identified_clause(password)}"
    if host and host.kind != "ANY":
        stmt += f" {host.clause()}"
    if default_roles:
        stmt += f" DEFAULT ROLE {', '.join(default_roles)}"
    if default_database:
        stmt += f" DEFAULT DATABASE {default_database}"
    if grantees:
        stmt += f" GRANTEES {grantees}"
    if settings_profile:
        stmt += f" SETTINGS PROFILE {quote_literal(settings_profile)}"
    return stmt


def alter_user_password(name: str, password: str) -> str:
    return f"ALTER USER {name} {identified_clause(password)}"


def alter_user_host(name: str, host: HostRestriction) -> str:
    return f"ALTER USER {name} {host.clause()}"


def alter_user_default_database(name: str, database: Optional[str]) -> str:
    return f"ALTER USER {name} DEFAULT DATABASE {database or 'NONE'}"


def alter_user_settings_profile(name: str, profile: str) -> str:
    return f"ALTER USER {name} SETTINGS PROFILE {quote_literal(profile)}"


def alter_user_readonly(name: str, readonly: bool) -> str:
    return f"ALTER USER {name} SETTINGS READONLY={1 if readonly else 0}"


def alter_user_grantees(name: str, grantees: str) -> str:
    return f"ALTER USER {name} GRANTEES {grantees}"


def drop_user(name: str) -> str:
    return f"DROP USER IF EXISTS {name}"


# Roles

def create_role(name: str) -> str:
    return f"CREATE ROLE {name}"


def drop_role(name: str) -> str:
    return f"DROP ROLE IF EXISTS {name}"


def grant_role(role: str, entity: str, admin_option: bool = False) -> str:
    stmt = f"GRANT {role} TO {entity}"
    if admin_option:
        stmt += " WITH ADMIN OPTION"
    return stmt


def revoke_role(role: str, entity: str) -> str:
    return f"REVOKE {role} FROM {entity}"


def revoke_admin_option(role: str, entity: str) -> str:
    return f"REVOKE ADMIN OPTION FOR {role} FROM {entity}"


def set_default_roles(roles: Iterable[str], entity: str) -> str:
    return f"SET DEFAULT ROLE {', '.join(roles)} TO {entity}"


# Quotas

def create_quota(name: str, duration: str, limits: Dict[str, Optional[int]] = None,
                 assignees: Sequence[str] = ()) -> str:
    stmt = f"CREATE QUOTA {name} FOR INTERVAL {duration}"
    limits = limits or {}
    for key, keyword in QUOTA_LIMITS:
        if limits.get(key) is not None:
            stmt += f" {keyword} {limits[key]}"
    if assignees:
        stmt += f" TO {', '.join(assignees)}"
    return stmt


def drop_quota(name: str) -> str:
    return f"DROP QUOTA IF EXISTS {name}"


# Row policies

def create_row_policy(name: str, database: str, table: str, filter_clause: str, restrictive: bool = False,
                      assignees: Sequence[str] = ()) -> str:
    mode = "AS RESTRICTIVE" if restrictive else "AS PERMISSIVE"
    stmt = f"CREATE ROW POLICY {name} ON {database}.{table} {mode} FOR SELECT USING {filter_clause}"
    if assignees:
        stmt += f" TO {', '.join(assignees)}"
    return stmt


def drop_row_policy(name: str, database: str, table: str) -> str:
    return f"DROP ROW POLICY IF EXISTS {name} ON {database}.{table}"


# Settings profiles

def create_settings_profile(name: str, settings: Sequence[Tuple[str, str]] = ()) -> str:
    stmt = f"CREATE SETTINGS PROFILE {name}"
    if settings:
        stmt += " SETTINGS " + ", ".join(f"{k} = {v}" for k, v in settings)
    return stmt


def drop_settings_profile(name: str) -> str:
    return f"DROP SETTINGS PROFILE IF EXISTS {name}"
