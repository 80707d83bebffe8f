"""Per-integration serialization of mutating operations.

Two layers: a process-local lock keyed by integration id, and a database
row lock (``SELECT ... FOR UPDATE``) so separate workers also queue up.
The ``version`` column on the row turns any write that slipped past both
into a ``ConflictError`` instead of a silent overwrite.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock, RLock, local

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.logging import get_logger
from app.models.integration import Integration
from app.services.bitrix24.errors import ConflictError, NotFoundError
from app.services.common import coerce_uuid

logger = get_logger(__name__)

_registry_lock = Lock()
_locks: dict[uuid.UUID, RLock] = {}
_waiters: dict[uuid.UUID, int] = {}
_held = local()


@contextmanager
def _hold(integration_id: uuid.UUID) -> Iterator[None]:
    # Entries live only while some thread holds or waits for them
    with _registry_lock:
        lock = _locks.get(integration_id)
        if lock is None:
            lock = _locks[integration_id] = RLock()
        _waiters[integration_id] = _waiters.get(integration_id, 0) + 1
    try:
        with lock:
            yield
    finally:
        with _registry_lock:
            _waiters[integration_id] -= 1
            if not _waiters[integration_id]:
                del _waiters[integration_id]
                del _locks[integration_id]


def load_integration(db: Session, integration_id, *, for_update: bool = False) -> Integration:
    iid = coerce_uuid(integration_id, "integration_id")
    integration = db.get(Integration, iid, with_for_update=for_update)
    if not integration:
        raise NotFoundError("Integration not found", code="integration_not_found")
    return integration


@contextmanager
def integration_lock(db: Session, integration_id) -> Iterator[Integration]:
    """Hold the integration exclusively for the duration of the block.

    Yields the freshly loaded, row-locked Integration. The block is
    expected to commit its own changes; anything left uncommitted is rolled
    back when the block raises.
    """
    iid = coerce_uuid(integration_id, "integration_id")
    held: set = getattr(_held, "ids", None) or set()
    if iid in held:
        # Nested call from the same request; reuse the state already loaded
        yield load_integration(db, iid)
        return

    with _hold(iid):
        integration = load_integration(db, iid, for_update=True)
        db.refresh(integration)
        _held.ids = held | {iid}
        try:
            yield integration
        except StaleDataError as exc:
            db.rollback()
            logger.warning("bitrix24_integration_write_conflict integration_id=%s", iid)
            raise ConflictError(
                "Integration was modified by another request, retry the operation",
                code="integration_version_conflict",
            ) from exc
        except Exception:
            db.rollback()
            raise
        finally:
            _held.ids = held - {iid}


def commit(db: Session, integration: Integration) -> None:
    """Commit pending changes, mapping version mismatches to ``ConflictError``."""
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        logger.warning("bitrix24_integration_write_conflict integration_id=%s", integration.id)
        raise ConflictError(
            "Integration was modified by another request, retry the operation",
            code="integration_version_conflict",
        ) from exc
    db.refresh(integration)
