"""Tests for review_hub.services.response_service.

Outbound ACC calls are mocked via patch.object on the ``acc_gateway``
singleton; attachments are real files under pytest's ``tmp_path``.

Coverage
--------
    1. send_response happy path: ACC call order, local state, audit, history
    2. authorization gate (Scenario D) for send and confirm
    3. distinct validation errors
    4. upload / file-read / ACC failures audited as "send-failed"
    5. dispatch lease blocks a concurrent send; version races after ACC accepted
    6. confirm_manual_response (Scenario C), confirm-once, corrupt payload, races
    7. pending manual-response queue ordering
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import text

import review_hub.integrations.acc_gateway as gw_module
from review_hub.core.exceptions import (
    ConflictError,
    DataCorruptionError,
    ExternalCallError,
    PermissionDenied,
    ValidationError,
)
from review_hub.integrations.acc_gateway import GatewayResult
from review_hub.models import db
from review_hub.models.audit import AuditLog, StatusHistory
from review_hub.models.records import (
    STATUS_CLOSED,
    STATUS_READY_FOR_RESPONSE,
    STATUS_SENT_TO_ACC,
    STATUS_UNDER_REVIEW,
    RequestRecord,
)
from review_hub.models.sync import Lease
from review_hub.services import response_service
from review_hub.services.external_item import ExternalItem
from review_hub.services.locks import dispatch_lease_key
from review_hub.services.merge_engine import merge_item
from review_hub.utils.helpers import as_utc, utcnow


def _ok():
    return GatewayResult(ok=True, status_code=200, data={}, error=None, duration_ms=1)


def _failed(status_code=500):
    return GatewayResult(ok=False, status_code=status_code, data=None,
                         error=f"HTTP {status_code}: error", duration_ms=1)


@pytest.fixture()
def share(project, tmp_path):
    """Project network share with two attachment files."""
    (tmp_path / "answer.pdf").write_bytes(b"%PDF-1.7 answer")
    (tmp_path / "markup.png").write_bytes(b"\x89PNG markup")
    project.network_base_path = str(tmp_path)
    db.session.commit()
    return tmp_path


@pytest.fixture()
def gateway():
    """Mock the three dispatch calls on the gateway singleton, all succeeding."""
    calls = MagicMock()
    with patch.object(gw_module.acc_gateway, "update_status", return_value=_ok()) as update_status, \
            patch.object(gw_module.acc_gateway, "post_response", return_value=_ok()) as post_response, \
            patch.object(gw_module.acc_gateway, "upload_attachment", return_value=_ok()) as upload:
        calls.attach_mock(update_status, "update_status")
        calls.attach_mock(post_response, "post_response")
        calls.attach_mock(upload, "upload_attachment")
        yield calls


def _send(record, user="alice", **overrides):
    payload = {
        "response_status": "answered",
        "response_text": "Use HEB 300 at grid C4.",
        "file_paths": ["answer.pdf", "markup.png"],
    }
    payload.update(overrides)
    return response_service.send_response(record.record_kind, record.id, user, **payload)


# ═════════════════════════════════════════════════════════════════════════════
# send_response
# ═════════════════════════════════════════════════════════════════════════════


class TestSendResponse:
    def test_success_updates_record_and_audits(self, make_record, share, gateway):
        record = make_record(internal_status=STATUS_READY_FOR_RESPONSE)
        result = _send(record)

        assert [c[0] for c in gateway.mock_calls] == [
            "update_status", "post_response", "upload_attachment", "upload_attachment",
        ]
        _, kind, external_id, file_name, content = gateway.upload_attachment.call_args_list[0].args
        assert (kind, external_id, file_name, content) == ("request", record.external_id, "answer.pdf",
                                                           b"%PDF-1.7 answer")

        assert result["internal_status"] == STATUS_SENT_TO_ACC
        assert result["response_status"] == "answered"
        assert result["response_sent_by"] == "alice"
        assert result["response_sent_at"] is not None

        audit = AuditLog.query.one()
        assert audit.action == "send"
        assert audit.actor == "alice"
        assert audit.detail == {
            "responseStatus": "answered",
            "fileCount": 2,
            "files": ["answer.pdf", "markup.png"],
        }
        fields = {h.field_name for h in StatusHistory.query.all()}
        assert fields == {"internal_status", "response_status"}
        assert Lease.query.count() == 0

    def test_token_is_decrypted_only_for_the_calls(self, make_record, share, gateway):
        seen = []

        def _update_status(link, kind, item_id, status):
            seen.append(link._plaintext_token)
            return _ok()

        gateway.update_status.side_effect = _update_status
        record = make_record(internal_status=STATUS_READY_FOR_RESPONSE)
        _send(record)

        assert seen == ["token-123"]
        assert gateway.update_status.call_args.args[0]._plaintext_token is None

    def test_flagged_non_admin_may_send(self, make_record, share, gateway):
        record = make_record(internal_status=STATUS_READY_FOR_RESPONSE)
        assert _send(record, user="erin")["response_sent_by"] == "erin"

    def test_link_folder_is_the_share_root(self, make_record, share, link, gateway):
        (share / "Tower A").mkdir()
        (share / "Tower A" / "answer.pdf").write_bytes(b"tower a")
        link.folder_name = "Tower A"
        db.session.commit()

        record = make_record(internal_status=STATUS_READY_FOR_RESPONSE)
        _send(record, file_paths=["answer.pdf"])
        assert gateway.upload_attachment.call_args.args[4] == b"tower a"


class TestSendAuthorization:
    def test_scenario_d_reviewer_cannot_send(self, make_record, share, gateway, caplog):
        record = make_record(internal_status=STATUS_READY_FOR_RESPONSE)
        with caplog.at_level(logging.WARNING, logger="review_hub.services.permission"):
            with pytest.raises(PermissionDenied):
                _send(record, user="bob")

        assert gateway.mock_calls == []
        assert any("bob" in r.getMessage() and "REVIEWER" in r.getMessage() for r in caplog.records)
        record = db.session.get(RequestRecord, record.id)
        assert record.internal_status == STATUS_READY_FOR_RESPONSE
        assert record.response_sent_at is None
        assert AuditLog.query.count() == 0

    def test_non_member_cannot_send(self, make_record, share, gateway):
        record = make_record()
        with pytest.raises(PermissionDenied):
            _send(record, user="mallory")
        assert gateway.mock_calls == []


class TestSendValidation:
    @pytest.mark.parametrize("overrides,field", [
        ({"response_status": None}, "response_status"),
        ({"response_text": "   "}, "response_text"),
        ({"file_paths": []}, "file_paths"),
    ])
    def test_each_missing_input_is_its_own_error(self, make_record, share, gateway, overrides, field):
        record = make_record(internal_status=STATUS_READY_FOR_RESPONSE)
        with pytest.raises(ValidationError) as exc:
            _send(record, **overrides)
        assert field in exc.value.details
        assert gateway.mock_calls == []

    def test_closed_record_is_conflict(self, make_record, share, gateway):
        record = make_record(internal_status=STATUS_CLOSED)
        with pytest.raises(ConflictError):
            _send(record)
        assert gateway.mock_calls == []


class TestSendFailure:
    def test_upload_failure_aborts_and_audits(self, make_record, share, gateway):
        gateway.upload_attachment.side_effect = [_ok(), _failed(502)]
        record = make_record(internal_status=STATUS_READY_FOR_RESPONSE)

        with pytest.raises(ExternalCallError, match="Failed to upload file: markup.png"):
            _send(record)

        record = db.session.get(RequestRecord, record.id)
        assert record.internal_status == STATUS_READY_FOR_RESPONSE
        assert record.response_sent_at is None
        audit = AuditLog.query.one()
        assert audit.action == "send-failed"
        assert "markup.png" in audit.detail["error"]
        assert StatusHistory.query.count() == 0
        assert Lease.query.count() == 0

    def test_missing_file_aborts_before_upload(self, make_record, share, gateway):
        record = make_record(internal_status=STATUS_READY_FOR_RESPONSE)
        with pytest.raises(ExternalCallError, match="ghost.pdf"):
            _send(record, file_paths=["ghost.pdf"])
        gateway.upload_attachment.assert_not_called()
        assert AuditLog.query.one().action == "send-failed"

    def test_path_outside_share_is_refused(self, make_record, share, gateway):
        record = make_record(internal_status=STATUS_READY_FOR_RESPONSE)
        with pytest.raises(ExternalCallError):
            _send(record, file_paths=["../../etc/passwd"])
        gateway.upload_attachment.assert_not_called()

    def test_status_update_failure_stops_dispatch(self, make_record, share, gateway):
        gateway.update_status.return_value = _failed(400)
        record = make_record(internal_status=STATUS_READY_FOR_RESPONSE)
        with pytest.raises(ExternalCallError) as exc:
            _send(record)
        assert exc.value.status_code == 400
        gateway.post_response.assert_not_called()
        assert AuditLog.query.one().action == "send-failed"

    def test_concurrent_dispatch_is_rejected(self, make_record, share, gateway):
        record = make_record(internal_status=STATUS_READY_FOR_RESPONSE)
        db.session.add(Lease(
            lease_key=dispatch_lease_key("request", record.id),
            holder="other-worker",
            acquired_at=utcnow(),
            expires_at=utcnow() + timedelta(minutes=1),
        ))
        db.session.commit()

        with pytest.raises(ConflictError):
            _send(record)
        assert gateway.mock_calls == []


def _bump_version(record_id):
    """Another writer touching the row between our load and our commit."""
    db.session.execute(
        text("UPDATE acc_requests SET version_id = version_id + 1 WHERE id = :id"), {"id": record_id},
    )


class TestSendLocalCommit:
    def test_version_bump_during_upload_still_records_the_send(self, make_record, link, share, gateway,
                                                               acc_item):
        record = make_record(internal_status=STATUS_READY_FOR_RESPONSE, external_id="rfi-1")
        record_id = record.id
        bumped = []

        def _upload(*args):
            if not bumped:
                _bump_version(record_id)
                bumped.append(True)
            return _ok()

        gateway.upload_attachment.side_effect = _upload
        result = _send(record)

        assert result["internal_status"] == STATUS_SENT_TO_ACC
        assert result["response_sent_at"] is not None
        assert [a.action for a in AuditLog.query.all()] == ["send"]
        assert Lease.query.count() == 0

        # next sync sees our own answer in ACC
        outcome = merge_item(link, RequestRecord,
                             ExternalItem.from_api(acc_item(response={"text": "Use HEB 300 at grid C4."})))
        db.session.commit()
        assert outcome.manual_response_flagged is False
        assert db.session.get(RequestRecord, record_id).has_manual_response is False

    def test_persistent_conflict_is_not_reported_as_send_failure(self, make_record, share, gateway):
        record = make_record(internal_status=STATUS_READY_FOR_RESPONSE)
        record_id = record.id
        mark_sent = response_service._mark_sent

        def _bump_then_mark(rec, *args):
            _bump_version(record_id)
            mark_sent(rec, *args)

        with patch.object(response_service, "_mark_sent", side_effect=_bump_then_mark) as marked:
            with pytest.raises(ConflictError, match="reached ACC"):
                _send(record)

        assert marked.call_count == response_service._SENT_COMMIT_ATTEMPTS
        assert AuditLog.query.filter_by(action="send-failed").count() == 0
        assert db.session.get(RequestRecord, record_id).response_sent_at is None
        assert Lease.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# confirm_manual_response
# ═════════════════════════════════════════════════════════════════════════════


def _manual(make_record, detected_at=None, **overrides):
    detected_at = detected_at or datetime(2026, 1, 10, 8, 0, tzinfo=timezone.utc)
    data = {
        "status": "answered",
        "text": "Approved",
        "respondedBy": "ext-user",
        "respondedAt": "2026-01-10T07:55:00Z",
        "detectedAt": detected_at.isoformat(),
    }
    values = {
        "internal_status": STATUS_UNDER_REVIEW,
        "has_manual_response": True,
        "manual_response_data": json.dumps(data),
        "manual_response_detected_at": detected_at,
    }
    values.update(overrides)
    return make_record(**values)


class TestConfirmManualResponse:
    def test_scenario_c_confirm_closes_record(self, make_record):
        record = _manual(make_record)
        result = response_service.confirm_manual_response("request", record.id, "alice")

        assert result["internal_status"] == STATUS_CLOSED
        assert result["response_status"] == "answered"
        assert result["response_text"] == "Approved"
        assert result["manual_response_confirmed_by"] == "alice"

        audit = AuditLog.query.one()
        assert audit.action == "confirm-manual"
        assert audit.detail["respondedBy"] == "ext-user"
        assert audit.detail["manualResponseStatus"] == "answered"

        entry = StatusHistory.query.one()
        assert (entry.old_value, entry.new_value) == (STATUS_UNDER_REVIEW, STATUS_CLOSED)

    def test_confirm_once(self, make_record):
        record = _manual(make_record)
        response_service.confirm_manual_response("request", record.id, "alice")
        confirmed_at = db.session.get(RequestRecord, record.id).manual_response_confirmed_at

        with pytest.raises(ConflictError):
            response_service.confirm_manual_response("request", record.id, "alice")

        record = db.session.get(RequestRecord, record.id)
        assert record.manual_response_confirmed_at == confirmed_at
        assert record.internal_status == STATUS_CLOSED
        assert AuditLog.query.count() == 1
        assert StatusHistory.query.count() == 1

    def test_no_pending_manual_response(self, make_record):
        record = make_record()
        with pytest.raises(ConflictError):
            response_service.confirm_manual_response("request", record.id, "alice")

    def test_reviewer_cannot_confirm(self, make_record):
        record = _manual(make_record)
        with pytest.raises(PermissionDenied):
            response_service.confirm_manual_response("request", record.id, "bob")

        record = db.session.get(RequestRecord, record.id)
        assert record.manual_response_confirmed_at is None
        assert record.internal_status == STATUS_UNDER_REVIEW

    def test_corrupt_payload_is_surfaced(self, make_record):
        record = _manual(make_record, manual_response_data="{broken")
        with pytest.raises(DataCorruptionError):
            response_service.confirm_manual_response("request", record.id, "alice")
        assert db.session.get(RequestRecord, record.id).internal_status == STATUS_UNDER_REVIEW
        assert Lease.query.count() == 0

    def test_busy_record_is_conflict(self, make_record):
        record = _manual(make_record)
        db.session.add(Lease(
            lease_key=dispatch_lease_key("request", record.id),
            holder="other-admin",
            acquired_at=utcnow(),
            expires_at=utcnow() + timedelta(minutes=1),
        ))
        db.session.commit()

        with pytest.raises(ConflictError):
            response_service.confirm_manual_response("request", record.id, "alice")
        assert db.session.get(RequestRecord, record.id).manual_response_confirmed_at is None

    def test_concurrent_write_becomes_conflict(self, make_record):
        record = _manual(make_record)
        record_id = record.id
        apply_forced_status = response_service.apply_forced_status

        def _close_after_other_writer(*args):
            _bump_version(record_id)
            return apply_forced_status(*args)

        with patch.object(response_service, "apply_forced_status", side_effect=_close_after_other_writer):
            with pytest.raises(ConflictError, match="reload and retry"):
                response_service.confirm_manual_response("request", record_id, "alice")

        record = db.session.get(RequestRecord, record_id)
        assert record.manual_response_confirmed_at is None
        assert record.internal_status == STATUS_UNDER_REVIEW
        assert AuditLog.query.count() == 0
        assert Lease.query.count() == 0


class TestPendingQueue:
    def test_newest_detection_first_across_kinds(self, make_record, project):
        base = datetime(2026, 1, 10, tzinfo=timezone.utc)
        oldest = _manual(make_record, detected_at=base)
        newest = _manual(make_record, kind="submittal", detected_at=base + timedelta(days=2))
        middle = _manual(make_record, detected_at=base + timedelta(days=1))
        _manual(make_record, manual_response_confirmed_at=base)
        make_record()

        items = response_service.list_pending_manual_responses(project.id)
        assert [(i["kind"], i["id"]) for i in items] == [
            ("submittal", newest.id), ("request", middle.id), ("request", oldest.id),
        ]
        assert items[0]["acc_project_name"] == "Harbour Tower ACC"
        assert as_utc(datetime.fromisoformat(items[-1]["manual_response_detected_at"])) == base

    def test_kind_filter(self, make_record, project):
        _manual(make_record)
        _manual(make_record, kind="submittal")
        items = response_service.list_pending_manual_responses(project.id, "submittal")
        assert [i["kind"] for i in items] == ["submittal"]
