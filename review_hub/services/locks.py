"""
Database-backed leases.

Serialises work that must not overlap across processes:
    sync:{project_id}:{module}     one sync cycle per (project, module)
    dispatch:{kind}:{record_id}    one response dispatch per record

A lease row is unique per key.  Acquisition either takes over an expired
row with a conditional UPDATE or INSERTs a new one; a unique-key clash
means somebody else holds it.  Both paths commit immediately, so call
these with a clean session.
"""

import logging
import os
import socket
import uuid
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from review_hub.models import db
from review_hub.models.sync import Lease
from review_hub.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def sync_lease_key(project_id: int, module: str) -> str:
    return f"sync:{project_id}:{module}"


def dispatch_lease_key(kind: str, record_id: int) -> str:
    return f"dispatch:{kind}:{record_id}"


def new_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:12]}"


def acquire_lease(key: str, holder: str, ttl_seconds: int) -> bool:
    """Try to take *key* for *ttl_seconds*. Returns False if it is held."""
    now = utcnow()
    expires_at = now + timedelta(seconds=ttl_seconds)

    taken = db.session.execute(
        update(Lease)
        .where(Lease.lease_key == key, Lease.expires_at < now)
        .values(holder=holder, acquired_at=now, expires_at=expires_at)
    ).rowcount
    if taken:
        db.session.commit()
        logger.info("Took over expired lease %s", key)
        return True

    try:
        db.session.add(Lease(lease_key=key, holder=holder, acquired_at=now, expires_at=expires_at))
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.debug("Lease %s is held by another worker", key)
        return False
    return True


def release_lease(key: str, holder: str) -> None:
    """Drop *key* if *holder* still owns it."""
    db.session.execute(delete(Lease).where(Lease.lease_key == key, Lease.holder == holder))
    db.session.commit()


def lease_is_held(key: str) -> bool:
    """True while an unexpired lease exists for *key* (read only)."""
    return db.session.query(
        Lease.query.filter(Lease.lease_key == key, Lease.expires_at >= utcnow()).exists()
    ).scalar()


def purge_expired_leases() -> int:
    result = db.session.execute(delete(Lease).where(Lease.expires_at < utcnow()))
    db.session.commit()
    return result.rowcount or 0


@contextmanager
def lease(key: str, ttl_seconds: int):
    """Context manager yielding True if the lease was taken, False if busy."""
    holder = new_holder()
    acquired = acquire_lease(key, holder, ttl_seconds)
    try:
        yield acquired
    finally:
        if acquired:
            db.session.rollback()
            release_lease(key, holder)
