"""
Change planning tests - validation and statement assembly per entity type.
"""

import pytest

from conftest import grant
from grantstage.core.diff import UserAttributes
from grantstage.core.errors import ChangeValidationError, InvalidScopeKind, UnknownPermission
from grantstage.core.planner import (
    QuotaDraft,
    RoleDraft,
    RowPolicyDraft,
    SettingsProfileDraft,
    UserDraft,
    plan_create_role,
    plan_create_user,
    plan_drop_row_policy,
    plan_drop_user,
    plan_quota,
    plan_row_policy,
    plan_settings_profile,
    plan_update_role,
    plan_update_user,
    validate_name,
)
from grantstage.core.schema import ChangeType, EntityType, RoleAssignment
from grantstage.core.statements import HostRestriction


class TestValidation:
    def test_name_is_stripped(self):
        assert validate_name("  bob ") == "bob"

    def test_empty_name(self):
        with pytest.raises(ChangeValidationError) as exc_info:
            validate_name("   ")
        assert exc_info.value.field == "name"
        assert exc_info.value.message == "is required"

    @pytest.mark.parametrize("name", ["bad name", "x;DROP", "-lead", "a.b"])
    def test_rejected_names(self, name):
        with pytest.raises(ChangeValidationError):
            validate_name(name)

    def test_unknown_permission_rejected_before_planning(self):
        draft = UserDraft("bob", grants=[grant("TELEPORT")])
        with pytest.raises(UnknownPermission):
            plan_create_user(draft)

    def test_disallowed_scope_rejected(self):
        draft = RoleDraft("ops", grants=[grant("KILL_QUERY", "sales")])
        with pytest.raises(InvalidScopeKind):
            plan_create_role(draft)


class TestUserPlans:
    def test_create_user_statement_order(self):
        draft = UserDraft(
            "bob",
            attributes=UserAttributes(password="pw", default_database="sales", readonly=True),
            roles=[RoleAssignment("reader")],
            grants=[grant("SELECT", "sales")],
        )
        change = plan_create_user(draft)

        assert change.change_type == ChangeType.CREATE
        assert change.entity_type == EntityType.USER
        assert change.statements == [
            "CREATE USER IF NOT EXISTS bob IDENTIFIED WITH sha256_password BY 'pw' DEFAULT DATABASE sales",
            "GRANT reader TO bob",
            "SET DEFAULT ROLE reader TO bob",
            "GRANT SELECT ON sales.* TO bob",
            "ALTER USER bob SETTINGS READONLY=1",
        ]
        assert change.before_state is None
        assert change.after_state["password"] == "[REDACTED]"

    def test_create_user_with_host_and_profile(self):
        draft = UserDraft("bob", attributes=UserAttributes(
            host=HostRestriction("IP", ("10.0.0.1", "10.0.0.2")),
            settings_profile="analysts",
            grantees="NONE",
        ))
        assert plan_create_user(draft).statements == [
            "CREATE USER IF NOT EXISTS bob HOST IP '10.0.0.1', '10.0.0.2' GRANTEES NONE "
            "SETTINGS PROFILE 'analysts'"
        ]

    def test_grantees_list_with_except(self):
        draft = UserDraft("bob", attributes=UserAttributes(grantees="alice, etl EXCEPT intern"))
        assert plan_create_user(draft).statements == [
            "CREATE USER IF NOT EXISTS bob GRANTEES alice, etl EXCEPT intern"
        ]

    @pytest.mark.parametrize("grantees", [
        "ANY; DROP USER admin",
        "alice,,etl",
        "ANY EXCEPT NONE",
        "alice EXCEPT bob EXCEPT carol",
    ])
    def test_invalid_grantees_rejected(self, grantees):
        with pytest.raises(ChangeValidationError) as exc_info:
            plan_create_user(UserDraft("bob", attributes=UserAttributes(grantees=grantees)))
        assert exc_info.value.field == "grantees"

    def test_update_with_invalid_grantees_rejected(self):
        desired = UserDraft("bob", attributes=UserAttributes(grantees="NONE SETTINGS readonly=0"))
        with pytest.raises(ChangeValidationError) as exc_info:
            plan_update_user(UserDraft("bob"), desired)
        assert exc_info.value.field == "grantees"

    def test_update_user_combines_diffs(self):
        original = UserDraft("bob", grants=[grant("SELECT", "sales")])
        desired = UserDraft("bob", attributes=UserAttributes(readonly=True),
                            grants=[grant("SELECT", "sales", "orders")])
        change = plan_update_user(original, desired)

        assert change.change_type == ChangeType.ALTER
        assert change.statements == [
            "ALTER USER bob SETTINGS READONLY=1",
            "REVOKE SELECT ON sales.* FROM bob",
            "GRANT SELECT ON sales.orders TO bob",
        ]
        assert change.before_state["readonly"] is False
        assert change.after_state["readonly"] is True

    def test_update_user_without_changes(self):
        draft = UserDraft("bob", roles=[RoleAssignment("reader")], grants=[grant("SHOW")])
        assert plan_update_user(draft, draft) is None

    def test_update_user_rename_rejected(self):
        with pytest.raises(ChangeValidationError) as exc_info:
            plan_update_user(UserDraft("bob"), UserDraft("robert"))
        assert exc_info.value.field == "name"

    def test_drop_user_sanitizes_snapshot(self):
        change = plan_drop_user("bob", before_state={"name": "bob", "password": "pw"})
        assert change.statements == ["DROP USER IF EXISTS bob"]
        assert change.before_state == {"name": "bob", "password": "[REDACTED]"}


class TestRolePlans:
    def test_create_role(self):
        change = plan_create_role(RoleDraft("etl", [grant("INSERT", "logs"), grant("CREATE"), grant("CREATE_TABLE")]))
        assert change.statements == [
            "CREATE ROLE etl",
            "GRANT INSERT ON logs.* TO etl",
            "GRANT CREATE ON *.* TO etl",
        ]

    def test_pure_grant_is_labelled_grant(self):
        change = plan_update_role(RoleDraft("etl"), RoleDraft("etl", [grant("SHOW")]))
        assert change.change_type == ChangeType.GRANT

    def test_pure_revoke_is_labelled_revoke(self):
        change = plan_update_role(RoleDraft("etl", [grant("SHOW")]), RoleDraft("etl"))
        assert change.change_type == ChangeType.REVOKE

    def test_mixed_is_alter(self):
        change = plan_update_role(RoleDraft("etl", [grant("SHOW")]), RoleDraft("etl", [grant("SELECT", "logs")]))
        assert change.change_type == ChangeType.ALTER
        assert change.statements[0].startswith("REVOKE")

    def test_unchanged_role(self):
        role = RoleDraft("etl", [grant("SHOW")])
        assert plan_update_role(role, role) is None


class TestQuotaPlans:
    def test_create(self):
        change = plan_quota(QuotaDraft("q", "1 hour", {"queries": 100, "errors": None}, ["bob"]))
        assert change.statements == ["CREATE QUOTA q FOR INTERVAL 1 HOUR QUERIES 100 TO bob"]

    def test_update_is_drop_and_create(self):
        change = plan_quota(QuotaDraft("q", "1 DAY", {"read_rows": 5}), original=QuotaDraft("q"))
        assert change.change_type == ChangeType.ALTER
        assert change.statements == [
            "DROP QUOTA IF EXISTS q",
            "CREATE QUOTA q FOR INTERVAL 1 DAY READ ROWS 5",
        ]

    def test_bad_interval(self):
        with pytest.raises(ChangeValidationError) as exc_info:
            plan_quota(QuotaDraft("q", "soon"))
        assert exc_info.value.field == "duration"

    def test_negative_limit(self):
        with pytest.raises(ChangeValidationError) as exc_info:
            plan_quota(QuotaDraft("q", limits={"queries": -1}))
        assert exc_info.value.field == "queries"

    def test_unknown_limit(self):
        with pytest.raises(ChangeValidationError):
            plan_quota(QuotaDraft("q", limits={"bananas": 3}))


class TestRowPolicyPlans:
    def test_create(self):
        change = plan_row_policy(RowPolicyDraft("eu_only", "sales", "orders", "region = 'eu'", assignees=["bob"]))
        assert change.statements == [
            "CREATE ROW POLICY eu_only ON sales.orders AS PERMISSIVE FOR SELECT USING region = 'eu' TO bob"
        ]

    def test_restrictive_update(self):
        original = RowPolicyDraft("eu_only", "sales", "orders", "1")
        change = plan_row_policy(RowPolicyDraft("eu_only", "sales", "orders", "region = 'eu'", restrictive=True),
                                 original=original)
        assert change.statements[0] == "DROP ROW POLICY IF EXISTS eu_only ON sales.orders"
        assert "AS RESTRICTIVE" in change.statements[1]

    def test_filter_required(self):
        with pytest.raises(ChangeValidationError) as exc_info:
            plan_row_policy(RowPolicyDraft("p", "sales", "orders", "  "))
        assert exc_info.value.field == "filter_clause"

    def test_drop(self):
        change = plan_drop_row_policy("eu_only", "sales", "orders")
        assert change.statements == ["DROP ROW POLICY IF EXISTS eu_only ON sales.orders"]


class TestSettingsProfilePlans:
    def test_create(self):
        change = plan_settings_profile(SettingsProfileDraft("analysts", [("max_memory_usage", "10000000000"),
                                                                         ("readonly", "1")]))
        assert change.statements == [
            "CREATE SETTINGS PROFILE analysts SETTINGS max_memory_usage = 10000000000, readonly = 1"
        ]

    def test_update_recreates(self):
        change = plan_settings_profile(SettingsProfileDraft("analysts"), original=SettingsProfileDraft("analysts"))
        assert change.statements == [
            "DROP SETTINGS PROFILE IF EXISTS analysts",
            "CREATE SETTINGS PROFILE analysts",
        ]

    def test_empty_value_rejected(self):
        with pytest.raises(ChangeValidationError):
            plan_settings_profile(SettingsProfileDraft("analysts", [("readonly", " ")]))

    def test_quoted_string_value(self):
        change = plan_settings_profile(SettingsProfileDraft("analysts", [("load_balancing", "'random'")]))
        assert change.statements == ["CREATE SETTINGS PROFILE analysts SETTINGS load_balancing = 'random'"]

    @pytest.mark.parametrize("value", ["1; DROP USER admin", "random", "'open", "1 READONLY"])
    def test_unquoted_or_trailing_value_rejected(self, value):
        with pytest.raises(ChangeValidationError) as exc_info:
            plan_settings_profile(SettingsProfileDraft("analysts", [("load_balancing", value)]))
        assert exc_info.value.field == "load_balancing"
