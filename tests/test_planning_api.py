"""HTTP tests for the planning blueprint.

Exercises the JSON envelope and the status codes the error handlers map to:
400 missing input, 404 unknown ids, 422 invalid hierarchy, 423 baseline
lock, 503 store outage.
"""

from datetime import date
from unittest.mock import patch

from planbridge.core.exceptions import StoreUnavailableError
from planbridge.integrations.governance_store import governance_store
from planbridge.models import db
from planbridge.models.governance import Milestone
from planbridge.utils.errors import E


def _post_item(client, project_id, **body):
    res = client.post(f"/api/v1/projects/{project_id}/plan/items", json=body)
    assert res.status_code == 201, res.get_json()
    return res.get_json()


def _seed_locked_milestone(project_id):
    m = Milestone(project_id=project_id, name="Locked", baseline_locked=True,
                  start_date=date(2026, 1, 1), end_date=date(2026, 3, 31))
    db.session.add(m)
    db.session.commit()
    return m


class TestHealth:

    def test_health(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json() == {"status": "ok", "app": "planbridge"}

    def test_request_id_is_echoed(self, client):
        res = client.get("/api/v1/health", headers={"X-Request-ID": "abc123"})
        assert res.headers["X-Request-ID"] == "abc123"
        assert "X-Request-Duration-Ms" in res.headers


class TestSyncEndpoints:

    def test_sync_then_log(self, client, project_id):
        _seed_locked_milestone(project_id)

        res = client.post(f"/api/v1/projects/{project_id}/plan/sync", json={"silent": True})
        assert res.status_code == 200
        body = res.get_json()
        assert body["result"]["imported"] == 1
        assert body["snapshot"] is None

        log = client.get(f"/api/v1/projects/{project_id}/plan/sync-log").get_json()
        assert log[0]["status"] == "success"

    def test_visible_sync_returns_snapshot(self, client, project_id):
        res = client.post(f"/api/v1/projects/{project_id}/plan/sync",
                          headers={"X-Actor-Id": "u1"})
        body = res.get_json()
        assert body["snapshot"]["created_by"] == "u1"
        snaps = client.get(f"/api/v1/projects/{project_id}/plan/snapshots").get_json()
        assert [s["id"] for s in snaps] == [body["snapshot"]["id"]]

    def test_store_outage_is_503(self, client, project_id):
        outage = StoreUnavailableError("governance", "list_active_milestones", "timeout")
        with patch.object(governance_store, "list_active_milestones", side_effect=outage):
            res = client.post(f"/api/v1/projects/{project_id}/plan/sync", json={"silent": True})
        assert res.status_code == 503
        assert res.get_json()["code"] == E.STORE_UNAVAILABLE


class TestCommitEndpoints:

    def test_item_ids_are_required(self, client, project_id):
        res = client.post(f"/api/v1/projects/{project_id}/plan/commit", json={})
        assert res.status_code == 400
        assert res.get_json()["code"] == E.VALIDATION_REQUIRED

    def test_commit_reports_blocked_and_foreign_ids(self, client, project_id):
        m = _post_item(client, project_id, item_type="milestone", name="M1")
        d = _post_item(client, project_id, item_type="deliverable", name="D1", parent_id=m["id"])
        other = _post_item(client, 2, item_type="milestone", name="Other")

        res = client.post(f"/api/v1/projects/{project_id}/plan/commit",
                          json={"item_ids": [d["id"], other["id"]]})

        body = res.get_json()
        assert res.status_code == 200
        assert body["committed"] == 0
        reasons = {e["id"]: e["reason"] for e in body["errors"]}
        assert reasons[d["id"]] == "Parent 'M1' must be committed first"
        assert reasons[other["id"]] == "Item not found in this project"

    def test_readiness_and_summary(self, client, project_id):
        m = _post_item(client, project_id, item_type="milestone", name="M1",
                       start_date="2026-01-01", end_date="2026-06-30")
        _post_item(client, project_id, item_type="deliverable", name="D1", parent_id=m["id"])

        readiness = client.get(f"/api/v1/projects/{project_id}/plan/commit-readiness").get_json()
        assert readiness == {"uncommitted": 2, "can_commit": 1, "blocked": 1}

        client.post(f"/api/v1/projects/{project_id}/plan/commit", json={"item_ids": [m["id"]]})
        summary = client.get(f"/api/v1/projects/{project_id}/plan/commit-summary").get_json()
        assert summary == {"committed": 1, "uncommitted": 1, "baseline_locked": 0}


class TestItemEndpoints:

    def test_invalid_hierarchy_is_422(self, client, project_id):
        res = client.post(f"/api/v1/projects/{project_id}/plan/items",
                          json={"item_type": "task", "name": "orphan"})
        assert res.status_code == 422
        assert res.get_json()["code"] == E.HIERARCHY_VIOLATION

    def test_unknown_item_is_404(self, client):
        res = client.put("/api/v1/plan-items/does-not-exist", json={"name": "x"})
        assert res.status_code == 404
        assert res.get_json()["code"] == E.NOT_FOUND

    def test_locked_field_write_is_423(self, client, project_id):
        _seed_locked_milestone(project_id)
        client.post(f"/api/v1/projects/{project_id}/plan/sync", json={"silent": True})
        item = client.get(f"/api/v1/projects/{project_id}/plan/items").get_json()[0]
        assert item["edit_state"]["state"] == "locked"

        res = client.put(f"/api/v1/plan-items/{item['id']}", json={"end_date": "2026-04-30"})

        assert res.status_code == 423
        body = res.get_json()
        assert body["code"] == E.BASELINE_LOCKED
        assert body["details"]["fields"] == ["end_date"]

    def test_edit_state_endpoint(self, client, project_id):
        m = _post_item(client, project_id, item_type="milestone", name="M1")
        res = client.get(f"/api/v1/plan-items/{m['id']}/edit-state")
        assert res.status_code == 200
        assert res.get_json()["state"] == "unlinked"

    def test_move_requires_parent_id(self, client, project_id):
        m = _post_item(client, project_id, item_type="milestone", name="M1")
        res = client.post(f"/api/v1/plan-items/{m['id']}/move", json={})
        assert res.status_code == 400

    def test_delete_then_list_deleted(self, client, project_id):
        m = _post_item(client, project_id, item_type="milestone", name="M1")
        res = client.delete(f"/api/v1/plan-items/{m['id']}")
        assert res.get_json() == {"deleted": 1, "authority_deleted": 0}

        assert client.get(f"/api/v1/projects/{project_id}/plan/items").get_json() == []
        raw = client.get(f"/api/v1/projects/{project_id}/plan/items?include_deleted=1").get_json()
        assert raw[0]["is_deleted"] is True
