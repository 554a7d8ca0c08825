"""Tests for review_hub.services.sync_service.

All outbound HTTP is mocked via patch.object on the module-level
``acc_gateway`` singleton; no ACC tenant is needed.
"""

import json
from datetime import timedelta
from unittest.mock import patch

import pytest

import review_hub.integrations.acc_gateway as gw_module
from review_hub.core.exceptions import NotFoundError
from review_hub.integrations.acc_gateway import GatewayResult
from review_hub.models import db
from review_hub.models.project import ExternalProjectLink, Project
from review_hub.models.records import RequestRecord, SubmittalRecord
from review_hub.models.sync import Lease, SyncCursor, SyncRunLog
from review_hub.services import sync_service
from review_hub.services.locks import dispatch_lease_key, sync_lease_key
from review_hub.utils.crypto import encrypt_secret
from review_hub.utils.helpers import utcnow


def _ok(items):
    return GatewayResult(ok=True, status_code=200, data=items, error=None, duration_ms=3)


def _failed(error="HTTP 503: unavailable", status_code=503):
    return GatewayResult(ok=False, status_code=status_code, data=None, error=error, duration_ms=3)


def _by_module(requests=None, submittals=None):
    """side_effect for list_items returning per-module payloads."""
    payloads = {"request": requests or [], "submittal": submittals or []}

    def _list_items(link, module):
        value = payloads[module]
        return value if isinstance(value, GatewayResult) else _ok(value)

    return _list_items


class TestScenarios:
    def test_scenario_a_new_item_into_empty_store(self, project, link):
        item = {"id": "R-1", "status": "open", "title": "Clarify beam size", "dueDate": "2026-02-01"}
        with patch.object(gw_module.acc_gateway, "list_items", side_effect=_by_module([item])):
            result = sync_service.sync_project(project.id)

        records = RequestRecord.query.all()
        assert len(records) == 1
        assert records[0].has_unacknowledged_change is False
        assert records[0].acc_data_hash
        request_run = next(r for r in result["runs"] if r["module"] == "request")
        assert request_run["status"] == "COMPLETED"
        assert request_run["new_items"] == 1
        assert request_run["updated_items"] == 0

    def test_scenario_b_status_change_flags_record(self, project, link):
        item = {"id": "R-1", "status": "open", "title": "Clarify beam size", "dueDate": "2026-02-01"}
        with patch.object(gw_module.acc_gateway, "list_items", side_effect=_by_module([item])):
            sync_service.sync_project(project.id)
        with patch.object(gw_module.acc_gateway, "list_items",
                          side_effect=_by_module([{**item, "status": "closed"}])):
            result = sync_service.sync_project(project.id)

        record = RequestRecord.query.one()
        assert record.has_unacknowledged_change is True
        assert record.changes == {"status": {"old": "open", "new": "closed"}}
        request_run = next(r for r in result["runs"] if r["module"] == "request")
        assert request_run["updated_items"] == 1

    def test_scenario_c_manual_response_detected(self, project, link):
        item = {"id": "R-1", "status": "answered", "response": {"text": "Approved", "respondedBy": "ext-user"}}
        with patch.object(gw_module.acc_gateway, "list_items", side_effect=_by_module([item])):
            sync_service.sync_project(project.id)

        record = RequestRecord.query.one()
        assert record.has_manual_response is True
        assert json.loads(record.manual_response_data)["respondedBy"] == "ext-user"


class TestRunBookkeeping:
    def test_run_log_and_cursor_written_per_module(self, project, link, acc_item):
        with patch.object(gw_module.acc_gateway, "list_items",
                          side_effect=_by_module([acc_item("r1"), acc_item("r2")], [acc_item("s1")])):
            sync_service.sync_project(project.id, trigger="MANUAL")

        runs = {r.module: r for r in SyncRunLog.query.all()}
        assert set(runs) == {"request", "submittal"}
        assert runs["request"].status == "COMPLETED"
        assert runs["request"].items_processed == 2
        assert runs["request"].triggered_by == "MANUAL"
        assert runs["request"].duration_ms is not None
        assert runs["request"].completed_at is not None
        assert runs["submittal"].new_items == 1
        assert SubmittalRecord.query.count() == 1

        cursor = SyncCursor.query.filter_by(project_id=project.id, module="request").one()
        assert cursor.last_run_id == runs["request"].id
        assert cursor.items_seen == 2

        db.session.refresh(link)
        assert link.last_sync_status == "success"
        assert db.session.get(Project, project.id).last_sync_at is not None

    def test_disabled_module_is_not_synced(self, project, link):
        link.sync_submittals = False
        db.session.commit()
        with patch.object(gw_module.acc_gateway, "list_items", side_effect=_by_module()) as mocked:
            sync_service.sync_project(project.id)

        assert [c.args[1] for c in mocked.call_args_list] == ["request"]

    def test_lease_is_released_after_run(self, project, link):
        with patch.object(gw_module.acc_gateway, "list_items", side_effect=_by_module()):
            sync_service.sync_project(project.id)
        assert Lease.query.count() == 0

    def test_unknown_project_raises(self):
        with pytest.raises(NotFoundError):
            sync_service.sync_project(999)


class TestIsolation:
    def test_bad_item_does_not_stop_the_batch(self, project, link, acc_item):
        items = [acc_item("good-1"), acc_item("bad", dueDate="not-a-date"), acc_item("good-2")]
        with patch.object(gw_module.acc_gateway, "list_items", side_effect=_by_module(items)):
            result = sync_service.sync_project(project.id)

        assert {r.external_id for r in RequestRecord.query.all()} == {"good-1", "good-2"}
        run = SyncRunLog.query.filter_by(module="request").one()
        assert run.status == "COMPLETED"
        assert run.items_processed == 3
        assert run.new_items == 2
        assert len(run.error_list) == 1
        assert "bad" in run.error_list[0]

        request_run = next(r for r in result["runs"] if r["module"] == "request")
        assert len(request_run["errors"]) == 1
        db.session.refresh(link)
        assert link.last_sync_status == "partial"

    def test_failed_module_does_not_block_other_module(self, project, link, acc_item):
        with patch.object(gw_module.acc_gateway, "list_items",
                          side_effect=_by_module(_failed(), [acc_item("s1")])):
            sync_service.sync_project(project.id)

        runs = {r.module: r for r in SyncRunLog.query.all()}
        assert runs["request"].status == "FAILED"
        assert "503" in runs["request"].error_list[0]
        assert runs["submittal"].status == "COMPLETED"
        assert SubmittalRecord.query.count() == 1

    def test_link_keeps_failure_when_a_later_module_succeeds(self, project, link, acc_item):
        with patch.object(gw_module.acc_gateway, "list_items",
                          side_effect=_by_module(_failed(), [acc_item("s1")])):
            sync_service.sync_project(project.id)

        db.session.refresh(link)
        assert link.last_sync_status == "failed"
        assert link.last_sync_error.startswith("request: ")
        assert "503" in link.last_sync_error

    def test_link_is_partial_when_one_module_has_item_errors(self, project, link, acc_item):
        with patch.object(gw_module.acc_gateway, "list_items",
                          side_effect=_by_module([acc_item("r1")], [acc_item("bad", dueDate="nope")])):
            sync_service.sync_project(project.id)

        db.session.refresh(link)
        assert link.last_sync_status == "partial"
        assert "submittal" in link.last_sync_error

    def test_failed_link_does_not_block_other_link(self, project, link, acc_item):
        second = ExternalProjectLink(
            project_id=project.id, acc_project_id="b.acc-project-2",
            encrypted_token=encrypt_secret("token-456"),
        )
        db.session.add(second)
        db.session.commit()
        first_id, second_id = link.id, second.id

        def _list_items(lnk, module):
            if lnk.id == first_id:
                return _failed("HTTP 401: unauthorized", 401)
            return _ok([acc_item(f"{module}-1")])

        with patch.object(gw_module.acc_gateway, "list_items", side_effect=_list_items):
            sync_service.sync_project(project.id)

        assert db.session.get(ExternalProjectLink, first_id).last_sync_status == "failed"
        assert db.session.get(ExternalProjectLink, second_id).last_sync_status == "success"
        assert RequestRecord.query.filter_by(link_id=second_id).count() == 1

    def test_link_without_token_fails_its_runs(self, project, link):
        link.encrypted_token = None
        db.session.commit()
        with patch.object(gw_module.acc_gateway, "list_items") as mocked:
            sync_service.sync_project(project.id)

        mocked.assert_not_called()
        assert {r.status for r in SyncRunLog.query.all()} == {"FAILED"}

    def test_sync_all_isolates_projects(self, project, link, acc_item):
        broken = Project(name="Broken")
        db.session.add(broken)
        db.session.commit()

        real_sync_project = sync_service.sync_project

        def _sync_project(project_id, trigger):
            if project_id == broken.id:
                raise RuntimeError("boom")
            return real_sync_project(project_id, trigger=trigger)

        with patch.object(gw_module.acc_gateway, "list_items", side_effect=_by_module([acc_item()])), \
                patch.object(sync_service, "sync_project", side_effect=_sync_project):
            summary = sync_service.sync_all_projects()

        assert summary["projects"] == 2
        assert summary["failed"] == 1
        assert summary["succeeded"] == 1
        assert RequestRecord.query.count() == 1

    def test_inactive_project_is_skipped(self, project, link):
        project.sync_enabled = False
        db.session.commit()
        with patch.object(gw_module.acc_gateway, "list_items") as mocked:
            summary = sync_service.sync_all_projects()
        assert summary["projects"] == 0
        mocked.assert_not_called()


class TestSingleFlight:
    def test_held_lease_skips_cycle(self, project, link):
        db.session.add(Lease(
            lease_key=sync_lease_key(project.id, "request"),
            holder="other-worker",
            acquired_at=utcnow(),
            expires_at=utcnow() + timedelta(minutes=5),
        ))
        db.session.commit()

        with patch.object(gw_module.acc_gateway, "list_items", side_effect=_by_module()) as mocked:
            result = sync_service.sync_project(project.id)

        assert [r["module"] for r in result["runs"]] == ["submittal"]
        assert [c.args[1] for c in mocked.call_args_list] == ["submittal"]
        assert SyncRunLog.query.filter_by(module="request").count() == 0
        assert Lease.query.filter_by(holder="other-worker").count() == 1

    def test_expired_lease_is_taken_over(self, project, link):
        db.session.add(Lease(
            lease_key=sync_lease_key(project.id, "request"),
            holder="crashed-worker",
            acquired_at=utcnow() - timedelta(hours=2),
            expires_at=utcnow() - timedelta(hours=1),
        ))
        db.session.commit()

        with patch.object(gw_module.acc_gateway, "list_items", side_effect=_by_module()):
            result = sync_service.sync_project(project.id)

        assert {r["module"] for r in result["runs"]} == {"request", "submittal"}
        assert Lease.query.count() == 0

    def test_record_with_dispatch_in_flight_is_deferred(self, project, link, make_record, acc_item):
        record = make_record(external_id="rfi-1", title="Before")
        version = record.version_id
        db.session.add(Lease(
            lease_key=dispatch_lease_key("request", record.id),
            holder="dispatch-worker",
            acquired_at=utcnow(),
            expires_at=utcnow() + timedelta(minutes=2),
        ))
        db.session.commit()

        items = [acc_item("rfi-1", title="After", response={"text": "Answered in ACC"}), acc_item("rfi-2")]
        with patch.object(gw_module.acc_gateway, "list_items", side_effect=_by_module(items)):
            result = sync_service.sync_project(project.id)

        request_run = next(r for r in result["runs"] if r["module"] == "request")
        assert request_run["deferred_items"] == 1
        assert request_run["new_items"] == 1
        assert request_run["errors"] == []

        record = db.session.get(RequestRecord, record.id)
        assert record.title == "Before"
        assert record.version_id == version
        assert record.has_manual_response is False
        db.session.refresh(link)
        assert link.last_sync_status == "success"


class TestLogsAndCleanup:
    def test_get_sync_logs_newest_first(self, project, link):
        with patch.object(gw_module.acc_gateway, "list_items", side_effect=_by_module()):
            sync_service.sync_project(project.id)
            sync_service.sync_project(project.id)

        logs = sync_service.get_sync_logs(project.id, module="request")
        assert len(logs) == 2
        assert logs[0]["id"] > logs[1]["id"]

    def test_cleanup_removes_old_logs_and_expired_leases(self, project, link):
        old = SyncRunLog(project_id=project.id, link_id=link.id, module="request",
                         status="COMPLETED", triggered_by="CRON",
                         started_at=utcnow() - timedelta(days=40))
        recent = SyncRunLog(project_id=project.id, link_id=link.id, module="request",
                            status="COMPLETED", triggered_by="CRON", started_at=utcnow())
        stale = Lease(lease_key="sync:99:request", holder="x",
                      acquired_at=utcnow() - timedelta(hours=2),
                      expires_at=utcnow() - timedelta(hours=1))
        db.session.add_all([old, recent, stale])
        db.session.commit()

        result = sync_service.cleanup_sync_logs(retention_days=30)

        assert result == {"deleted_logs": 1, "purged_leases": 1}
        assert SyncRunLog.query.count() == 1
        assert Lease.query.count() == 0
