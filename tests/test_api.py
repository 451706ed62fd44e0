"""
HTTP API tests with injected in-memory collaborators.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import FakeAccessSource, FakeTransport, grant
from grantstage.api.main import create_app
from grantstage.core.planner import UserDraft
from grantstage.core.presets import PresetStore
from grantstage.core.queue import StagedChangeQueue
from grantstage.core.schema import RoleAssignment


def _grant_json(permission_id, scope_type="global", database=None, table=None):
    scope = {"type": scope_type}
    if database:
        scope["database"] = database
    if table:
        scope["table"] = table
    return {"permission_id": permission_id, "scope": scope}


@pytest.fixture
def server():
    return FakeTransport()


@pytest.fixture
def source():
    return FakeAccessSource(
        user_grants={"alice": [grant("SELECT", "sales")]},
        role_grants={"analyst": [grant("INSERT", "sales")]},
        assignments={"alice": [RoleAssignment("analyst")]},
        users={"bob": UserDraft("bob", grants=[grant("SELECT", "sales")])},
    )


@pytest.fixture
def queue(server, recorder):
    return StagedChangeQueue(server, recorder)


@pytest.fixture
def client(server, source, recorder, queue, tmp_path):
    app = create_app(transport=server, source=source, recorder=recorder, queue=queue,
                     presets=PresetStore(str(tmp_path / "presets.json")))
    return TestClient(app)


class TestHealthAndCatalog:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["audit_backend"] == "sqlite"

    def test_catalog_tree(self, client):
        data = client.get("/catalog").json()
        assert any(node["id"] == "ALTER" for node in data)

    def test_permission_detail(self, client):
        data = client.get("/catalog/ALTER_ADD_COLUMN").json()
        assert data["parent"] == "ALTER_TABLE"
        assert data["ancestors"] == ["ALTER_TABLE", "ALTER"]

    def test_unknown_permission_is_404(self, client):
        response = client.get("/catalog/TELEPORT")
        assert response.status_code == 404

    def test_resolve_scope(self, client):
        response = client.post("/scope/resolve", json={
            "permission_id": "SELECT", "scope": {"type": "table", "database": "sales", "table": "orders"}
        })
        assert response.status_code == 200
        assert response.json()["formatted"] == "sales.orders"

    def test_resolve_disallowed_scope(self, client):
        response = client.post("/scope/resolve", json={
            "permission_id": "KILL_QUERY", "scope": {"type": "database", "database": "sales"}
        })
        assert response.status_code == 400
        assert response.json()["field"] == "scope"

    def test_resolve_bad_scope_type(self, client):
        response = client.post("/scope/resolve", json={"permission_id": "SELECT", "scope": {"type": "cluster"}})
        assert response.status_code == 422


class TestEffectiveGrantsEndpoint:
    def test_resolve(self, client):
        data = client.get("/identities/alice/effective-grants").json()
        assert [g["source"] for g in data["effective"]] == ["direct", "role"]

    def test_resolution_failure_is_502(self, client, source):
        source.fail_roles.add("analyst")
        response = client.get("/identities/alice/effective-grants")
        assert response.status_code == 502
        assert response.json()["identity"] == "alice"


class TestPlanPreview:
    def test_grant_diff_preview(self, client, queue):
        response = client.post("/plan/grants", json={
            "entity_name": "bob",
            "original": [_grant_json("SELECT", "database", "sales")],
            "desired": [_grant_json("SELECT", "table", "sales", "orders")],
        })
        assert response.json()["statements"] == [
            "REVOKE SELECT ON sales.* FROM bob",
            "GRANT SELECT ON sales.orders TO bob",
        ]
        assert len(queue) == 0


class TestStaging:
    def test_create_user(self, client):
        response = client.post("/changes/users", json={
            "name": "carol",
            "password": "pw",
            "roles": [{"role_name": "analyst"}],
            "grants": [_grant_json("SHOW")],
        })
        assert response.status_code == 200
        data = response.json()
        assert data["staged"] is True
        assert data["change"]["change_type"] == "CREATE"
        assert data["change"]["statements"][1:] == [
            "GRANT analyst TO carol",
            "SET DEFAULT ROLE analyst TO carol",
            "GRANT SHOW ON *.* TO carol",
        ]
        assert data["change"]["after_state"]["password"] == "[REDACTED]"

        listing = client.get("/changes").json()
        assert listing["count"] == 1
        assert listing["is_executing"] is False

    def test_password_redacted_in_responses_but_executed(self, client, server):
        change_id = client.post("/changes/users", json={"name": "carol", "password": "s3cret"}).json()["change"]["id"]

        shown = client.get(f"/changes/{change_id}").json()["statements"][0]
        listed = client.get("/changes").json()["changes"][0]["statements"][0]
        assert shown == listed == "CREATE USER IF NOT EXISTS carol IDENTIFIED WITH sha256_password BY '[REDACTED]'"

        client.post("/changes/execute")
        assert server.executed == [
            "CREATE USER IF NOT EXISTS carol IDENTIFIED WITH sha256_password BY 's3cret'"
        ]

    def test_invalid_name_is_400(self, client, queue):
        response = client.post("/changes/users", json={"name": "bad name"})
        assert response.status_code == 400
        assert response.json()["field"] == "name"
        assert len(queue) == 0

    def test_update_user_reads_current_state(self, client):
        response = client.put("/changes/users/bob", json={"desired": {
            "name": "bob", "readonly": True, "grants": [_grant_json("SELECT", "database", "sales")]
        }})
        assert response.json()["change"]["statements"] == ["ALTER USER bob SETTINGS READONLY=1"]

    def test_update_user_without_changes(self, client, queue):
        response = client.put("/changes/users/bob", json={"desired": {
            "name": "bob", "grants": [_grant_json("SELECT", "database", "sales")]
        }})
        data = response.json()
        assert data["staged"] is False
        assert data["message"] == "No changes detected"
        assert len(queue) == 0

    def test_update_missing_user(self, client):
        response = client.put("/changes/users/ghost", json={"desired": {"name": "ghost"}})
        assert response.status_code == 404

    def test_update_role_against_current_grants(self, client):
        response = client.put("/changes/roles/analyst", json={"grants": [
            _grant_json("INSERT", "database", "sales"), _grant_json("SHOW")
        ]})
        change = response.json()["change"]
        assert change["change_type"] == "GRANT"
        assert change["statements"] == ["GRANT SHOW ON *.* TO analyst"]

    def test_quota_create_and_update(self, client):
        created = client.post("/changes/quotas", json={"name": "q1", "duration": "1 hour", "limits": {"queries": 10}})
        assert created.json()["change"]["statements"] == ["CREATE QUOTA q1 FOR INTERVAL 1 HOUR QUERIES 10"]

        updated = client.put("/changes/quotas/q1", json={"name": "q1", "limits": {"queries": 20}})
        assert updated.json()["change"]["statements"][0] == "DROP QUOTA IF EXISTS q1"

    def test_row_policy_update(self, client):
        response = client.put("/changes/row-policies/sales/orders/eu_only", json={
            "name": "eu_only", "database": "sales", "table": "orders", "filter_clause": "region = 'eu'"
        })
        assert response.json()["change"]["statements"] == [
            "DROP ROW POLICY IF EXISTS eu_only ON sales.orders",
            "CREATE ROW POLICY eu_only ON sales.orders AS PERMISSIVE FOR SELECT USING region = 'eu'",
        ]

    def test_settings_profile_drop(self, client):
        response = client.delete("/changes/settings-profiles/analysts")
        assert response.json()["change"]["statements"] == ["DROP SETTINGS PROFILE IF EXISTS analysts"]

    def test_busy_queue_is_409(self, client, queue):
        queue._executing = True
        response = client.post("/changes/roles", json={"name": "etl"})
        assert response.status_code == 409


class TestQueueEndpoints:
    def test_get_and_remove(self, client):
        change_id = client.delete("/changes/users/bob").json()["change"]["id"]

        assert client.get(f"/changes/{change_id}").json()["entity_name"] == "bob"
        assert client.delete(f"/changes/{change_id}").json()["removed"] is True
        assert client.get(f"/changes/{change_id}").status_code == 404

    def test_clear(self, client):
        client.delete("/changes/users/bob")
        client.delete("/changes/roles/analyst")
        assert client.delete("/changes").json() == {"cleared": 2}

    def test_execute_all(self, client, server):
        client.post("/changes/roles", json={"name": "etl", "grants": [_grant_json("SHOW")]})

        response = client.post("/changes/execute", json={"actor": "admin"})

        data = response.json()
        assert data["summary"]["message"] == "Successfully executed 1 change(s)"
        assert data["remaining"] == 0
        assert server.executed == ["CREATE ROLE etl", "GRANT SHOW ON *.* TO etl"]

        audit = client.get("/audit", params={"actor": "admin"}).json()
        assert audit["count"] == 1
        assert audit["entries"][0]["entity_name"] == "etl"

    def test_execute_partial_failure(self, client, server):
        server.fail_markers = ["ROLE broken"]
        client.post("/changes/roles", json={"name": "etl"})
        client.post("/changes/roles", json={"name": "broken"})
        client.post("/changes/roles", json={"name": "later"})

        data = client.post("/changes/execute").json()

        assert [r["success"] for r in data["results"]] == [True, False]
        assert data["summary"]["message"].startswith("Executed 1 of 3 changes. Failed: Code: 497")
        assert data["summary"]["failed_statement"] == "CREATE ROLE broken"
        assert data["remaining"] == 2

        failed = client.get("/audit", params={"success": False}).json()["entries"]
        assert len(failed) == 1
        assert failed[0]["error_message"]

    def test_execute_single(self, client, server):
        client.post("/changes/roles", json={"name": "first"})
        second = client.post("/changes/roles", json={"name": "second"}).json()["change"]["id"]

        data = client.post(f"/changes/{second}/execute").json()

        assert data["results"][0]["change_id"] == second
        assert server.executed == ["CREATE ROLE second"]
        assert data["remaining"] == 1

    def test_execute_single_unknown(self, client):
        assert client.post("/changes/change-missing/execute").status_code == 404


class TestAuditEndpoints:
    def test_stats(self, client):
        client.post("/changes/roles", json={"name": "etl"})
        client.post("/changes/execute", json={"actor": "admin"})

        data = client.get("/audit/stats").json()
        assert data["total"] == 1
        assert data["by_actor"] == {"admin": 1}
        assert data["by_change_type"] == {"CREATE": 1}


class TestExportImportEndpoints:
    def test_export(self, client):
        data = client.get("/export", params={"scope": "roles", "exported_by": "admin"}).json()
        assert data["version"] == "1.0"
        assert data["roles"] == []

    def test_validate_import(self, client):
        response = client.post("/import/validate", json={"version": "1.0", "roles": [{"name": "analyst"}]},
                               params={"with_diff": True})
        data = response.json()
        assert data["valid"] is True
        assert data["diff"]["roles"]["to_add"] == [{"name": "analyst"}]

    def test_validate_import_wrong_version(self, client):
        response = client.post("/import/validate", json={"version": "2.0", "roles": [{"name": "analyst"}]})
        assert response.status_code == 400
        assert response.json()["detail"] == "Incompatible version: 2.0. Expected: 1.0"


class TestPresetEndpoints:
    def test_crud(self, client):
        created = client.post("/presets/prod", json={"name": "Ops", "grants": [_grant_json("SHOW")]}).json()
        preset_id = created["id"]

        assert [p["name"] for p in client.get("/presets/prod").json()] == ["Ops"]

        updated = client.put(f"/presets/prod/{preset_id}", json={"grants": [_grant_json("SYSTEM")]}).json()
        assert updated["grants"][0]["permission_id"] == "SYSTEM"

        assert client.delete(f"/presets/prod/{preset_id}").json() == {"deleted": preset_id}
        assert client.delete(f"/presets/prod/{preset_id}").status_code == 404

    def test_invalid_grant_rejected(self, client):
        response = client.post("/presets/prod", json={
            "name": "Bad", "grants": [_grant_json("KILL_QUERY", "database", "sales")]
        })
        assert response.status_code == 400

    def test_export_and_import(self, client):
        client.post("/presets/prod", json={"name": "Ops", "grants": [_grant_json("SHOW")]})
        exported = client.get("/presets/prod/export").json()

        assert client.post("/presets/staging/import", json=exported).json() == {"imported": 1}
        assert client.post("/presets/staging/import", json=exported).json() == {"imported": 0}
        assert client.post("/presets/staging/import", json={"version": 9}).status_code == 400

    def test_import_malformed_presets_is_400(self, client):
        assert client.post("/presets/prod/import", json={"version": 1, "presets": [{"grants": []}]}).status_code == 400
        response = client.post("/presets/prod/import", json={"version": 1, "presets": [
            {"name": "Bad", "grants": [_grant_json("TELEPORT")]}
        ]})
        assert response.status_code == 400
        assert client.get("/presets/prod").json() == []
