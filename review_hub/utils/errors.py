"""Standardised API error responses.

Usage
-----
    from review_hub.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Request not found")
    return api_error(E.VALIDATION_REQUIRED, "user_id is required")

Blueprints call ``register_error_handlers(bp)`` once so service exceptions
from ``review_hub.core.exceptions`` map to the same codes everywhere.
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from sqlalchemy.orm.exc import StaleDataError

from review_hub.core.exceptions import (
    ConflictError,
    DataCorruptionError,
    ExternalCallError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from review_hub.models import db

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants."""

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Upstream – HTTP 502
    EXTERNAL = "ERR_EXTERNAL"

    # Server – HTTP 500
    DATA_CORRUPTION = "ERR_DATA_CORRUPTION"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.FORBIDDEN: 403,
    E.EXTERNAL: 502,
    E.DATA_CORRUPTION: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(bp) -> None:
    """Attach the service-exception → HTTP mapping to a blueprint."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_STATE, str(error))

    @bp.errorhandler(StaleDataError)
    def _handle_stale(error: StaleDataError):
        db.session.rollback()
        logger.warning("Version conflict in %s endpoint=%s: %s", bp.name, request.endpoint, error)
        return api_error(E.CONFLICT_STATE, "The record was changed by another request; reload and retry")

    @bp.errorhandler(PermissionDenied)
    def _handle_forbidden(error: PermissionDenied):
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(DataCorruptionError)
    def _handle_corruption(error: DataCorruptionError):
        return api_error(E.DATA_CORRUPTION, str(error))

    @bp.errorhandler(ExternalCallError)
    def _handle_external(error: ExternalCallError):
        details = {"status_code": error.status_code} if error.status_code else None
        return api_error(E.EXTERNAL, str(error), details=details)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
