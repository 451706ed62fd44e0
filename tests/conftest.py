"""
Shared fixtures: temporary data files and in-memory collaborators.
"""

import os
import tempfile

# Data files must point somewhere disposable before grantstage is imported
TEST_DATA_DIR = tempfile.mkdtemp(prefix="grantstage-test-")
os.environ['DB_PATH'] = os.path.join(TEST_DATA_DIR, "audit.db")
os.environ['PRESETS_PATH'] = os.path.join(TEST_DATA_DIR, "presets.json")
os.environ['AUDIT_BACKEND'] = "sqlite"

import pytest

from grantstage.core.audit import AuditRecorder, SqliteAuditStore
from grantstage.core.errors import StatementExecutionError
from grantstage.core.planner import RoleDraft
from grantstage.core.schema import GrantedPermission, RoleAssignment
from grantstage.core.scope import Scope


class FakeTransport:
    """Records executed statements; fails any statement containing a marker."""

    def __init__(self, fail_markers=None, rows=None):
        self.fail_markers = list(fail_markers or [])
        self.rows = rows or {}
        self.executed = []
        self.queries = []

    def execute(self, statement):
        for marker in self.fail_markers:
            if marker in statement:
                raise StatementExecutionError(statement, f"Code: 497. DB::Exception: {marker} denied")
        self.executed.append(statement)

    def query(self, sql, params=None):
        self.queries.append((sql, params))
        for marker, rows in self.rows.items():
            if marker in sql:
                return rows(params) if callable(rows) else rows
        return []


class FakeAccessSource:
    """In-memory grants and role-assignment source."""

    def __init__(self, user_grants=None, role_grants=None, assignments=None, fail_roles=None, users=None):
        self.user_grants = user_grants or {}
        self.users = users or {}
        self.role_grants = role_grants or {}
        self.assignments = assignments or {}
        self.fail_roles = set(fail_roles or [])
        self.calls = []

    def fetch_user_grants(self, user_name):
        self.calls.append(("user", user_name))
        return list(self.user_grants.get(user_name, []))

    def fetch_role_grants(self, role_name):
        self.calls.append(("role", role_name))
        if role_name in self.fail_roles:
            raise ConnectionError(f"timeout reading grants for {role_name}")
        return list(self.role_grants.get(role_name, []))

    def fetch_role_assignments(self, user_name):
        self.calls.append(("assignments", user_name))
        return list(self.assignments.get(user_name, []))

    def fetch_user(self, user_name):
        return self.users.get(user_name)

    def fetch_role(self, role_name):
        return RoleDraft(role_name, self.fetch_role_grants(role_name))


def grant(permission_id, database=None, table=None):
    """Shorthand for a GrantedPermission at the narrowest scope the names imply."""
    if database and table:
        scope = Scope.for_table(database, table)
    elif database:
        scope = Scope.for_database(database)
    else:
        scope = Scope.global_scope()
    return GrantedPermission(permission_id, scope)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def audit_store(tmp_path):
    return SqliteAuditStore(str(tmp_path / "audit.db"))


@pytest.fixture
def recorder(audit_store):
    return AuditRecorder(audit_store, redact_secrets=True)


@pytest.fixture
def analyst_source():
    """alice: SELECT on sales.* directly, INSERT on sales.* via analyst."""
    return FakeAccessSource(
        user_grants={"alice": [grant("SELECT", "sales")]},
        role_grants={"analyst": [grant("INSERT", "sales")]},
        assignments={"alice": [RoleAssignment("analyst")]},
    )
