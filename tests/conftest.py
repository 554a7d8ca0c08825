"""
Shared pytest fixtures for the ACC Review Hub test suite.

Provides:
    - encryption_key: session-wide Fernet key in ENCRYPTION_KEY
    - app: Flask application (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client
    - project / link: a project with an admin, reviewer, QC reviewer,
      viewer and a sender, plus one active ACC link with a token
    - make_record: factory for RequestRecord / SubmittalRecord rows
    - acc_item: factory for raw ACC item payloads
"""

import os

import pytest
from cryptography.fernet import Fernet

from review_hub import create_app
from review_hub.models import db as _db
from review_hub.models.project import (
    ROLE_PROJECT_ADMIN,
    ROLE_QC_REVIEWER,
    ROLE_REVIEWER,
    ROLE_VIEWER,
    ExternalProjectLink,
    Project,
    ProjectMembership,
)
from review_hub.models.records import RECORD_MODELS

ADMIN = "alice"
REVIEWER = "bob"
QC = "carol"
VIEWER = "dave"
SENDER = "erin"


@pytest.fixture(scope="session", autouse=True)
def encryption_key():
    """Set a stable ENCRYPTION_KEY for the entire test session."""
    key = Fernet.generate_key().decode()
    os.environ["ENCRYPTION_KEY"] = key
    yield key


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app(encryption_key):
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(autouse=True)
def session(app):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        _db.drop_all()
        _db.create_all()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    return app.test_client()


# ── Domain fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def project():
    """Project with one member per role and a non-admin allowed to send."""
    proj = Project(name="Harbour Tower", description="Test project")
    _db.session.add(proj)
    _db.session.flush()
    members = [
        ProjectMembership(project_id=proj.id, user_id=ADMIN, role=ROLE_PROJECT_ADMIN,
                          can_assign=True, can_send_to_acc=True, can_edit_settings=True),
        ProjectMembership(project_id=proj.id, user_id=REVIEWER, role=ROLE_REVIEWER),
        ProjectMembership(project_id=proj.id, user_id=QC, role=ROLE_QC_REVIEWER),
        ProjectMembership(project_id=proj.id, user_id=VIEWER, role=ROLE_VIEWER),
        ProjectMembership(project_id=proj.id, user_id=SENDER, role=ROLE_REVIEWER,
                          can_send_to_acc=True),
    ]
    _db.session.add_all(members)
    _db.session.commit()
    return proj


@pytest.fixture()
def link(project):
    """Active ACC link on ``project`` with an encrypted access token."""
    from review_hub.utils.crypto import encrypt_secret

    lnk = ExternalProjectLink(
        project_id=project.id,
        acc_project_id="b.acc-project-1",
        acc_project_name="Harbour Tower ACC",
        folder_name="",
        encrypted_token=encrypt_secret("token-123"),
    )
    _db.session.add(lnk)
    _db.session.commit()
    return lnk


@pytest.fixture()
def make_record(link):
    """Factory creating a committed record on ``link``."""
    counter = {"n": 0}

    def _make(kind="request", **overrides):
        counter["n"] += 1
        model = RECORD_MODELS[kind]
        values = {
            "project_id": link.project_id,
            "link_id": link.id,
            "external_id": f"ext-{kind}-{counter['n']}",
            "external_number": f"{counter['n']:03d}",
            "title": f"{kind.title()} {counter['n']}",
            "acc_status": "open",
            "priority": "normal",
        }
        values.update(overrides)
        record = model(**values)
        _db.session.add(record)
        _db.session.commit()
        return record

    return _make


@pytest.fixture()
def acc_item():
    """Factory for raw ACC item payloads as the list endpoints return them."""

    def _make(external_id="rfi-1", **overrides):
        payload = {
            "id": external_id,
            "number": "RFI-001",
            "title": "Beam clash at grid C4",
            "status": "open",
            "priority": "High",
            "description": "Steel beam clashes with duct.",
            "assignedTo": ["u2", "u1"],
            "dueDate": "2030-01-31",
            "createdAt": "2029-12-01T09:00:00Z",
            "updatedAt": "2029-12-02T10:30:00Z",
        }
        payload.update(overrides)
        return payload

    return _make
