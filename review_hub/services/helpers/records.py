"""
Record lookup helpers.

Requests and submittals live in separate tables; every service that takes
a ``(kind, record_id)`` pair resolves it here so an unknown kind and a
missing row fail the same way everywhere.

Usage:
    record = get_record("request", 42)
    record = get_record("submittal", 7, project_id=3)   # scoped
"""

import logging

from sqlalchemy import select

from review_hub.core.exceptions import NotFoundError, ValidationError
from review_hub.models import db
from review_hub.models.records import RECORD_MODELS

logger = logging.getLogger(__name__)

_RESOURCE_NAMES = {"request": "Request", "submittal": "Submittal"}


def record_model(kind: str):
    """Return the model class for *kind* ('request' | 'submittal')."""
    try:
        return RECORD_MODELS[kind]
    except KeyError:
        raise ValidationError(
            f"Unknown record kind: {kind}",
            details={"kind": "must be 'request' or 'submittal'"},
        ) from None


def get_record(kind: str, record_id: int, *, project_id: int | None = None):
    """Fetch one request/submittal by id.

    When *project_id* is given, a record in another project is reported
    as missing.

    Raises:
        ValidationError: Unknown *kind*.
        NotFoundError: No such record (in the given project).
    """
    model = record_model(kind)
    stmt = select(model).where(model.id == record_id)
    if project_id is not None:
        stmt = stmt.where(model.project_id == project_id)
    record = db.session.execute(stmt).scalar_one_or_none()
    if record is None:
        raise NotFoundError(resource=_RESOURCE_NAMES[kind], resource_id=record_id)
    return record
