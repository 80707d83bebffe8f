import threading
from datetime import UTC, datetime, timedelta

from sqlalchemy.orm import sessionmaker

from app.models.integration import Integration
from app.services.bitrix24 import locks, oauth
from app.services.bitrix24.locks import integration_lock


def _run(target, errors: list) -> threading.Thread:
    def _wrapped():
        try:
            target()
        except Exception as exc:
            errors.append(exc)

    thread = threading.Thread(target=_wrapped, daemon=True)
    thread.start()
    return thread


def test_second_holder_waits_for_the_first(engine, integration):
    SessionLocal = sessionmaker(bind=engine)
    first_db, second_db = SessionLocal(), SessionLocal()
    order: list[str] = []
    errors: list = []
    entered = threading.Event()
    release = threading.Event()

    def first():
        with integration_lock(first_db, integration.id):
            order.append("first in")
            entered.set()
            release.wait(5)
            order.append("first out")

    def second():
        with integration_lock(second_db, integration.id):
            order.append("second in")

    try:
        first_thread = _run(first, errors)
        assert entered.wait(5)
        second_thread = _run(second, errors)
        second_thread.join(0.2)
        assert second_thread.is_alive()
        assert order == ["first in"]

        release.set()
        first_thread.join(5)
        second_thread.join(5)
    finally:
        release.set()
        first_db.close()
        second_db.close()

    assert errors == []
    assert order == ["first in", "first out", "second in"]


def test_concurrent_refreshes_hit_the_token_endpoint_once(engine, db_session, integration, portal):
    integration.token_expires_at = datetime.now(UTC) - timedelta(minutes=5)
    db_session.commit()
    SessionLocal = sessionmaker(bind=engine)
    first_db, second_db = SessionLocal(), SessionLocal()
    errors: list = []
    results: dict[str, str] = {}
    token_requested = threading.Event()
    token_gate = threading.Event()
    answer = portal.handler

    def _slow_token_endpoint(request):
        if request.url.path.endswith("/oauth/token/"):
            token_requested.set()
            token_gate.wait(5)
        return answer(request)

    portal.handler = _slow_token_endpoint

    def refresh_with(db, name):
        def _refresh():
            current = db.get(Integration, integration.id)
            results[name] = oauth.ensure_fresh(db, current).access_token

        return _refresh

    try:
        first_thread = _run(refresh_with(first_db, "first"), errors)
        assert token_requested.wait(5)
        second_thread = _run(refresh_with(second_db, "second"), errors)
        second_thread.join(0.2)
        assert second_thread.is_alive()

        token_gate.set()
        first_thread.join(5)
        second_thread.join(5)
    finally:
        token_gate.set()
        first_db.close()
        second_db.close()

    assert errors == []
    assert len(portal.token_requests) == 1
    assert results == {"first": "access-2", "second": "access-2"}


def test_lock_registry_drops_released_entries(db_session, integration):
    with integration_lock(db_session, integration.id):
        assert integration.id in locks._locks
        with integration_lock(db_session, integration.id):
            assert integration.id in locks._locks

    assert integration.id not in locks._locks
    assert integration.id not in locks._waiters
