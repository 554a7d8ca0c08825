"""HTTP-level tests for the records and sync blueprints."""

import json
from unittest.mock import patch

from sqlalchemy.orm.exc import StaleDataError

import review_hub.integrations.acc_gateway as gw_module
from review_hub.integrations.acc_gateway import GatewayResult
from review_hub.models.records import STATUS_ASSIGNED_FOR_REVIEW, STATUS_READY_FOR_RESPONSE
from review_hub.services import record_lifecycle
from review_hub.services.scheduler_service import SchedulerService


def _as(user):
    return {"X-User": user}


def _manual_record(make_record):
    return make_record(
        has_manual_response=True,
        manual_response_data=json.dumps({"status": "answered", "text": "Approved"}),
    )


class TestRecordEndpoints:
    def test_health(self, client):
        assert client.get("/api/v1/health").get_json()["status"] == "ok"

    def test_pending_queue_and_confirm(self, client, project, make_record):
        record = _manual_record(make_record)

        res = client.get(f"/api/v1/projects/{project.id}/manual-responses", headers=_as("alice"))
        assert res.status_code == 200
        assert res.get_json()["total"] == 1

        res = client.post(f"/api/v1/records/request/{record.id}/manual-response/confirm", headers=_as("alice"))
        assert res.status_code == 200
        assert res.get_json()["internal_status"] == "CLOSED"

        res = client.post(f"/api/v1/records/request/{record.id}/manual-response/confirm", headers=_as("alice"))
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_confirm_forbidden_for_reviewer(self, client, make_record):
        record = _manual_record(make_record)
        res = client.post(f"/api/v1/records/request/{record.id}/manual-response/confirm", headers=_as("bob"))
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_send_response_validation(self, client, make_record):
        record = make_record(internal_status=STATUS_READY_FOR_RESPONSE)
        res = client.post(
            f"/api/v1/records/request/{record.id}/response",
            json={"response_status": "answered", "response_text": "ok", "file_paths": []},
            headers=_as("alice"),
        )
        assert res.status_code == 422
        assert res.get_json()["details"] == {"file_paths": "required"}

    def test_send_response_upstream_failure(self, client, project, make_record, tmp_path):
        (tmp_path / "a.pdf").write_bytes(b"a")
        project.network_base_path = str(tmp_path)
        record = make_record(internal_status=STATUS_READY_FOR_RESPONSE)
        failed = GatewayResult(ok=False, status_code=503, data=None, error="HTTP 503", duration_ms=1)

        with patch.object(gw_module.acc_gateway, "update_status", return_value=failed):
            res = client.post(
                f"/api/v1/records/request/{record.id}/response",
                json={"response_status": "answered", "response_text": "ok", "file_paths": ["a.pdf"]},
                headers=_as("alice"),
            )
        assert res.status_code == 502
        assert res.get_json()["details"] == {"status_code": 503}

    def test_assign_transition_and_history(self, client, make_record):
        record = make_record()
        base = f"/api/v1/records/request/{record.id}"

        res = client.post(f"{base}/assign", json={"user_id": "bob", "role": "REVIEWER"}, headers=_as("alice"))
        assert res.status_code == 201
        assert res.get_json()["record"]["internal_status"] == STATUS_ASSIGNED_FOR_REVIEW

        res = client.get(f"{base}/transitions", headers=_as("bob"))
        assert "UNDER_REVIEW" in res.get_json()["available"]

        res = client.post(f"{base}/transition", json={"status": "UNDER_REVIEW"}, headers=_as("bob"))
        assert res.status_code == 200

        res = client.post(f"{base}/transition", json={"status": "CLOSED"}, headers=_as("bob"))
        assert res.status_code == 409

        res = client.post(f"{base}/transition", json={}, headers=_as("bob"))
        assert res.status_code == 400

        history = client.get(f"{base}/history", headers=_as("bob")).get_json()
        assert history[0]["new_value"] == "UNDER_REVIEW"

    def test_acknowledge_and_comments(self, client, make_record):
        record = make_record("submittal", has_unacknowledged_change=True)
        base = f"/api/v1/records/submittal/{record.id}"

        res = client.post(f"{base}/acknowledge", headers=_as("carol"))
        assert res.get_json()["has_unacknowledged_change"] is False

        res = client.post(f"{base}/comments", json={"text": "Ping @bob"}, headers=_as("carol"))
        assert res.status_code == 201
        assert client.get(f"{base}/comments", headers=_as("carol")).get_json()[0]["mentions"] == ["bob"]

    def test_unknown_record(self, client, project):
        res = client.get("/api/v1/records/request/999/history")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


class TestSyncEndpoints:
    def test_create_project_and_link(self, client):
        res = client.post("/api/v1/projects", json={"name": "Depot"}, headers=_as("zoe"))
        assert res.status_code == 201
        pid = res.get_json()["id"]

        res = client.post(f"/api/v1/projects/{pid}/links",
                          json={"acc_project_id": "b.depot", "access_token": "t"}, headers=_as("zoe"))
        assert res.status_code == 201
        assert res.get_json()["has_token"] is True

        res = client.post(f"/api/v1/projects/{pid}/links",
                          json={"acc_project_id": "b.depot"}, headers=_as("zoe"))
        assert res.status_code == 409

        links = client.get(f"/api/v1/projects/{pid}/links", headers=_as("zoe")).get_json()
        assert links[0]["record_counts"] == {"request": 0, "submittal": 0}

    def test_settings_need_permission(self, client, project):
        res = client.put(f"/api/v1/projects/{project.id}", json={"name": "x"}, headers=_as("bob"))
        assert res.status_code == 403

    def test_trigger_sync_and_logs(self, client, project, link, acc_item):
        ok = GatewayResult(ok=True, status_code=200, data=[acc_item()], error=None, duration_ms=1)
        with patch.object(gw_module.acc_gateway, "list_items", return_value=ok):
            res = client.post(f"/api/v1/projects/{project.id}/sync", headers=_as("bob"))
        assert res.status_code == 200
        assert len(res.get_json()["runs"]) == 2

        logs = client.get(f"/api/v1/projects/{project.id}/sync/logs?module=request",
                          headers=_as("dave")).get_json()
        assert logs[0]["status"] == "COMPLETED"
        assert logs[0]["triggered_by"] == "API"

        cursor = client.get(f"/api/v1/projects/{project.id}/sync/cursor/request",
                            headers=_as("dave")).get_json()
        assert cursor["items_seen"] == 1

    def test_remove_link_with_records_is_conflict(self, client, link, make_record):
        make_record()
        res = client.delete(f"/api/v1/links/{link.id}", headers=_as("alice"))
        assert res.status_code == 409


class TestJobEndpoints:
    def test_pause_and_force_run(self, client, project):
        SchedulerService.ensure_jobs_registered()

        res = client.put("/api/v1/jobs/sync_log_cleanup", json={"enabled": False}, headers=_as("alice"))
        assert res.get_json()["status"] == "paused"

        res = client.post("/api/v1/jobs/sync_log_cleanup/run", headers=_as("alice"))
        assert res.status_code == 200
        assert res.get_json()["result"] == {"deleted_logs": 0, "purged_leases": 0}

        jobs = {j["job_name"]: j for j in client.get("/api/v1/jobs", headers=_as("alice")).get_json()}
        assert jobs["sync_log_cleanup"]["run_count"] == 1

    def test_unknown_job(self, client, project):
        assert client.post("/api/v1/jobs/nope/run", headers=_as("alice")).status_code == 404
        assert client.put("/api/v1/jobs/nope", json={"enabled": True}, headers=_as("alice")).status_code == 404

    def test_jobs_need_settings_rights_somewhere(self, client, project):
        SchedulerService.ensure_jobs_registered()
        for headers in ({}, _as("bob"), _as("mallory")):
            assert client.get("/api/v1/jobs", headers=headers).status_code == 403
            assert client.post("/api/v1/jobs/sync_log_cleanup/run", headers=headers).status_code == 403
            res = client.put("/api/v1/jobs/sync_log_cleanup", json={"enabled": False}, headers=headers)
            assert res.status_code == 403

        jobs = {j["job_name"]: j for j in client.get("/api/v1/jobs", headers=_as("alice")).get_json()}
        assert jobs["sync_log_cleanup"]["run_count"] == 0
        assert jobs["sync_log_cleanup"]["is_enabled"] is True


class TestProjectReadsNeedMembership:
    def test_outsider_is_refused(self, client, project, link, make_record):
        record = make_record()
        urls = [
            f"/api/v1/projects/{project.id}",
            f"/api/v1/projects/{project.id}/members",
            f"/api/v1/projects/{project.id}/links",
            f"/api/v1/projects/{project.id}/sync/logs",
            f"/api/v1/projects/{project.id}/sync/cursor/request",
            f"/api/v1/projects/{project.id}/records",
            f"/api/v1/records/request/{record.id}",
            f"/api/v1/records/request/{record.id}/history",
            f"/api/v1/records/request/{record.id}/comments",
            f"/api/v1/records/request/{record.id}/assignments",
        ]
        for url in urls:
            res = client.get(url, headers=_as("mallory"))
            assert res.status_code == 403, url
            assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_viewer_can_read_members(self, client, project):
        res = client.get(f"/api/v1/projects/{project.id}/members", headers=_as("dave"))
        assert res.status_code == 200
        assert {m["user_id"] for m in res.get_json()} >= {"alice", "dave"}

    def test_project_list_is_scoped_to_caller(self, client, project):
        client.post("/api/v1/projects", json={"name": "Depot"}, headers=_as("zoe"))

        names = [p["name"] for p in client.get("/api/v1/projects", headers=_as("bob")).get_json()]
        assert names == ["Harbour Tower"]
        assert client.get("/api/v1/projects").status_code == 403


class TestRecordReads:
    def test_list_filters_and_paginates(self, client, project, make_record):
        make_record(title="Beam clash", priority="high")
        make_record(title="Duct routing")
        make_record(title="Old beam query", internal_status="CLOSED")
        base = f"/api/v1/projects/{project.id}/records"

        body = client.get(f"{base}?kind=request&search=beam", headers=_as("dave")).get_json()
        assert [r["title"] for r in body["items"]] == ["Beam clash"]
        assert body["total"] == 1

        body = client.get(f"{base}?search=beam&show_closed=true", headers=_as("dave")).get_json()
        assert body["total"] == 2

        body = client.get(f"{base}?per_page=1&page=2", headers=_as("dave")).get_json()
        assert (body["total"], body["page"], body["pages"], len(body["items"])) == (2, 2, 2, 1)

        assert client.get(f"{base}?status=NOPE", headers=_as("dave")).status_code == 422
        assert client.get(f"{base}?kind=drawing", headers=_as("dave")).status_code == 422

    def test_detail_and_my_records(self, client, project, make_record):
        record = make_record("submittal")
        base = f"/api/v1/records/submittal/{record.id}"
        client.post(f"{base}/assign", json={"user_id": "bob", "role": "REVIEWER"}, headers=_as("alice"))
        client.post(f"{base}/comments", json={"text": "Check the fire rating"}, headers=_as("bob"))

        detail = client.get(base, headers=_as("bob")).get_json()
        assert detail["project"]["name"] == "Harbour Tower"
        assert [a["user_id"] for a in detail["assignments"]] == ["bob"]
        assert detail["comment_count"] == 1
        assert "UNDER_REVIEW" in detail["available_transitions"]

        mine = client.get(f"/api/v1/projects/{project.id}/my-records", headers=_as("bob")).get_json()
        assert mine["total"] == 1
        assert mine["items"][0]["kind"] == "submittal"
        assert mine["items"][0]["my_assignments"][0]["role"] == "REVIEWER"

        others = client.get(f"/api/v1/projects/{project.id}/my-records", headers=_as("carol")).get_json()
        assert others["total"] == 0

    def test_version_conflict_maps_to_409(self, client, make_record):
        record = make_record(has_unacknowledged_change=True)
        with patch.object(record_lifecycle, "acknowledge_change",
                          side_effect=StaleDataError("UPDATE statement matched 0 row(s)")):
            res = client.post(f"/api/v1/records/request/{record.id}/acknowledge", headers=_as("bob"))
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"
