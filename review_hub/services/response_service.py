"""
Response Service — official responses back to ACC.

send_response
    1. Authorization: PROJECT_ADMIN or ``can_send_to_acc``; refusals are
       logged as warnings.
    2. Validation: response status, response text and at least one file,
       each a distinct ValidationError.
    3. ACC calls in order: status update, response text, then one upload
       per file (read from the project network share).  The first failure
       aborts the dispatch.
    4. Success: response fields + SENT_TO_ACC on the record, audit "send",
       status history, one commit.  A version conflict at this point is
       retried on a reloaded record; ACC already has the response.
    5. ACC or file-share failure: rollback, audit "send-failed" with the
       error, re-raise.  The record is left as it was.

Only one dispatch or confirmation per record runs at a time (dispatch
lease); sync defers records while that lease is held.

confirm_manual_response
    Same authorization.  Requires a pending, unconfirmed manual response;
    copies the captured status/text, forces CLOSED, audit "confirm-manual",
    status history.

list_pending_manual_responses
    Admin review queue, newest detection first.
"""

import logging
import os
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from review_hub.core.exceptions import (
    ConflictError,
    ExternalCallError,
    ValidationError,
)
from review_hub.integrations import acc_gateway as gw_module
from review_hub.integrations.file_share import read_file_bytes
from review_hub.models import db
from review_hub.models.audit import (
    ACTION_CONFIRM_MANUAL,
    ACTION_SEND,
    ACTION_SEND_FAILED,
    write_audit,
    write_status_history,
)
from review_hub.models.project import ExternalProjectLink, Project
from review_hub.models.records import RECORD_MODELS, STATUS_CLOSED, STATUS_SENT_TO_ACC
from review_hub.services.helpers.records import get_record, record_model
from review_hub.services.locks import dispatch_lease_key, lease
from review_hub.services.manual_response import parse_manual_response
from review_hub.services.permission import check_can_send
from review_hub.services.record_lifecycle import apply_forced_status
from review_hub.utils.crypto import unsealed_token
from review_hub.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_SENT_COMMIT_ATTEMPTS = 3


def _validate_send_payload(status, text, file_paths) -> list[str]:
    if not status:
        raise ValidationError("Response status is required", details={"response_status": "required"})
    if not text or not str(text).strip():
        raise ValidationError("Response text is required", details={"response_text": "required"})
    if not file_paths:
        raise ValidationError("At least one file must be selected", details={"file_paths": "required"})
    if isinstance(file_paths, str) or not all(isinstance(p, str) and p for p in file_paths):
        raise ValidationError("file_paths must be a list of paths", details={"file_paths": "invalid"})
    return list(file_paths)


def _share_root(project: Project, link: ExternalProjectLink) -> str | None:
    """Network folder the link's attachments are picked from."""
    if not project.network_base_path:
        return None
    if link.folder_name:
        return os.path.join(project.network_base_path, link.folder_name)
    return project.network_base_path


def _checked(result, what: str):
    if not result.ok:
        raise ExternalCallError(f"{what} failed: {result.error}", status_code=result.status_code)
    return result


def _push_to_acc(record, link, status: str, text: str, file_paths: list[str], share_root: str | None) -> None:
    gateway = gw_module.acc_gateway
    kind = record.record_kind

    _checked(gateway.update_status(link, kind, record.external_id, status), "ACC status update")
    _checked(gateway.post_response(link, kind, record.external_id, text, status), "ACC response post")

    for path in file_paths:
        file_name = os.path.basename(path)
        try:
            content = read_file_bytes(path, share_root)
            _checked(
                gateway.upload_attachment(link, kind, record.external_id, file_name, content),
                "ACC attachment upload",
            )
        except ExternalCallError as exc:
            logger.error(
                "Failed to upload file %s for %s: %s", file_name, record.ref, exc,
                extra={"record_id": record.id},
            )
            raise ExternalCallError(
                f"Failed to upload file: {file_name}", status_code=exc.status_code,
            ) from exc
        logger.info("File %s uploaded to ACC for %s", file_name, record.ref)


def send_response(
    kind: str,
    record_id: int,
    user_id: str,
    *,
    response_status: str | None,
    response_text: str | None,
    file_paths: list[str] | None,
) -> dict:
    """
    Send the official response for a record to ACC.

    Raises:
        NotFoundError: Record missing.
        PermissionDenied: Caller may not send.
        ValidationError: Missing status, text or files.
        ConflictError: Record closed, or another dispatch is running.
        ExternalCallError: ACC or file share failure (audited as "send-failed").
    """
    record = get_record(kind, record_id)
    logger.info("Sending %s response to ACC", record.ref, extra={"actor": user_id, "record_id": record.id})

    check_can_send(record.project_id, user_id, "send_response")
    paths = _validate_send_payload(response_status, response_text, file_paths)

    if record.internal_status == STATUS_CLOSED:
        raise ConflictError(f"{record.ref} is closed", resource=kind, field="internal_status")

    ttl = current_app.config.get("DISPATCH_LEASE_SECONDS", 120)
    with lease(dispatch_lease_key(kind, record.id), ttl) as acquired:
        if not acquired:
            raise ConflictError(f"A response for {record.ref} is already being sent", resource=kind)

        record = get_record(kind, record_id)
        project_id = record.project_id
        try:
            link = db.session.get(ExternalProjectLink, record.link_id)
            project = db.session.get(Project, project_id)
            with unsealed_token(link):
                _push_to_acc(record, link, response_status, response_text, paths, _share_root(project, link))
        except Exception as exc:
            db.session.rollback()
            logger.error(
                "Failed to send response for %s: %s", f"{kind}/{record_id}", exc,
                extra={"actor": user_id, "record_id": record_id},
            )
            write_audit(
                entity_type=kind,
                entity_id=record_id,
                action=ACTION_SEND_FAILED,
                actor=user_id,
                project_id=project_id,
                detail={"error": str(exc)},
            )
            db.session.commit()
            raise

        record = _commit_sent(kind, record_id, user_id, response_status, response_text, paths)

    logger.info("%s response sent to ACC", record.ref, extra={"actor": user_id, "record_id": record.id})
    return record.to_dict()


def _mark_sent(record, user_id: str, status: str, text: str, paths: list[str]) -> None:
    old_response_status = record.response_status
    record.response_status = status
    record.response_text = text
    record.response_sent_at = utcnow()
    record.response_sent_by = user_id
    apply_forced_status(record, STATUS_SENT_TO_ACC, user_id, "Official response sent to ACC")

    write_audit(
        entity_type=record.record_kind,
        entity_id=record.id,
        action=ACTION_SEND,
        actor=user_id,
        project_id=record.project_id,
        detail={
            "responseStatus": status,
            "fileCount": len(paths),
            "files": [os.path.basename(p) for p in paths],
        },
    )
    write_status_history(
        record_kind=record.record_kind,
        record_id=record.id,
        field_name="response_status",
        old_value=old_response_status,
        new_value=status,
        changed_by=user_id,
        change_reason="Official response sent to ACC",
    )


def _commit_sent(kind: str, record_id: int, user_id: str, status: str, text: str, paths: list[str]):
    """Persist a response ACC has already accepted.

    Another writer may bump the record version between our load and the
    commit.  ACC holds the response by then, so the write is replayed on
    a fresh copy instead of being reported as a failed send.
    """
    for attempt in range(1, _SENT_COMMIT_ATTEMPTS + 1):
        try:
            record = get_record(kind, record_id)
            _mark_sent(record, user_id, status, text, paths)
            db.session.commit()
            return record
        except StaleDataError:
            db.session.rollback()
            logger.warning(
                "Version conflict recording sent response for %s/%s (attempt %d)", kind, record_id, attempt,
                extra={"actor": user_id, "record_id": record_id},
            )
    logger.error(
        "Response for %s/%s is in ACC but the local record could not be updated", kind, record_id,
        extra={"actor": user_id, "record_id": record_id},
    )
    raise ConflictError(
        f"Response for {kind}/{record_id} reached ACC but the record kept changing locally; reload and retry",
        resource=kind,
    )


def confirm_manual_response(kind: str, record_id: int, user_id: str) -> dict:
    """
    Accept a response entered directly in ACC and close the record.

    Runs under the record's dispatch lease, so it cannot interleave with a
    send or a second confirmation; a version conflict with any other
    writer is reported as a ConflictError.

    Raises:
        NotFoundError: Record missing.
        PermissionDenied: Caller may not confirm.
        ConflictError: No pending manual response, already confirmed, or
            the record is busy / changed concurrently.
        DataCorruptionError: Captured payload cannot be parsed.
    """
    record = get_record(kind, record_id)
    logger.info("Confirming manual response on %s", record.ref, extra={"actor": user_id, "record_id": record.id})

    check_can_send(record.project_id, user_id, "confirm_manual_response")

    ttl = current_app.config.get("DISPATCH_LEASE_SECONDS", 120)
    with lease(dispatch_lease_key(kind, record.id), ttl) as acquired:
        if not acquired:
            raise ConflictError(f"{record.ref} is being updated by another request", resource=kind)

        record = get_record(kind, record_id)
        if not record.has_manual_response:
            raise ConflictError(
                f"{record.ref} does not have a manual response to confirm",
                resource=kind, field="has_manual_response",
            )
        if record.manual_response_confirmed_at is not None:
            raise ConflictError(
                "Manual response has already been confirmed",
                resource=kind, field="manual_response_confirmed_at",
            )

        captured = parse_manual_response(record.manual_response_data, record_ref=record.ref)

        try:
            now = utcnow()
            record.manual_response_confirmed_by = user_id
            record.manual_response_confirmed_at = now
            record.response_status = captured.status
            record.response_text = captured.text
            apply_forced_status(record, STATUS_CLOSED, user_id, "Manual response confirmed by admin")

            write_audit(
                entity_type=kind,
                entity_id=record.id,
                action=ACTION_CONFIRM_MANUAL,
                actor=user_id,
                project_id=record.project_id,
                detail={
                    "manualResponseStatus": captured.status,
                    "respondedBy": captured.responded_by,
                    "respondedAt": captured.responded_at,
                    "detectedAt": captured.detected_at,
                    "confirmedAt": now.isoformat(),
                },
            )
            db.session.commit()
        except StaleDataError as exc:
            db.session.rollback()
            logger.warning("Manual response confirmation on %s/%s lost a version race", kind, record_id,
                           extra={"actor": user_id, "record_id": record_id})
            raise ConflictError(
                f"{kind}/{record_id} changed while confirming; reload and retry", resource=kind,
            ) from exc

    logger.info("Manual response on %s confirmed and closed out", record.ref, extra={"actor": user_id})
    return record.to_dict()


def list_pending_manual_responses(project_id: int, kind: str | None = None) -> list[dict]:
    """Records with an unconfirmed manual response, newest detection first."""
    kinds = [kind] if kind else list(RECORD_MODELS)
    rows = []
    for k in kinds:
        model = record_model(k)
        rows.extend(
            model.query
            .filter(
                model.project_id == project_id,
                model.has_manual_response.is_(True),
                model.manual_response_confirmed_at.is_(None),
            )
            .all()
        )
    rows.sort(key=lambda r: as_utc(r.manual_response_detected_at) or _EPOCH, reverse=True)
    return [
        {
            **r.to_dict(),
            "acc_project_name": r.link.acc_project_name if r.link else None,
            "folder_name": r.link.folder_name if r.link else None,
        }
        for r in rows
    ]
