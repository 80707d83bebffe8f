import json
import os
import sqlite3
import uuid
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs

import httpx
import pytest
from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base

load_dotenv(os.path.join(os.getcwd(), ".env"))

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes  # noqa: E402

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


sqltypes.Uuid.bind_processor = _sqlite_uuid_bind_processor
sqltypes.Uuid.result_processor = _sqlite_uuid_result_processor

import app.models  # noqa: F401,E402
from app.models.instance import Instance, InstanceStatus  # noqa: E402
from app.models.integration import Integration, IntegrationPlatform  # noqa: E402

PORTAL_DOMAIN = "example.bitrix24.com"
PORTAL_MEMBER_ID = "a1b2c3d4e5f6"


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_session(engine):
    # Services commit and roll back on their own, so each test gets empty tables instead of an outer transaction
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        with engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())


@pytest.fixture()
def workspace_id():
    return uuid.uuid4()


@pytest.fixture()
def instance(db_session, workspace_id):
    instance = Instance(
        workspace_id=workspace_id,
        name="Sales WhatsApp",
        phone_number="+5511999990000",
        status=InstanceStatus.connected,
    )
    db_session.add(instance)
    db_session.commit()
    db_session.refresh(instance)
    return instance


@pytest.fixture()
def second_instance(db_session, workspace_id):
    instance = Instance(
        workspace_id=workspace_id,
        name="Support WhatsApp",
        phone_number="+5511999990001",
        status=InstanceStatus.connected,
    )
    db_session.add(instance)
    db_session.commit()
    db_session.refresh(instance)
    return instance


@pytest.fixture()
def integration(db_session, workspace_id):
    integration = Integration(
        platform=IntegrationPlatform.bitrix24,
        workspace_id=workspace_id,
        domain=PORTAL_DOMAIN,
        member_id=PORTAL_MEMBER_ID,
        client_endpoint=f"https://{PORTAL_DOMAIN}/rest/",
        client_id="local.app123",
        client_secret="app-secret",
        access_token="access-1",
        refresh_token="refresh-1",
        token_expires_at=datetime.now(UTC) + timedelta(hours=1),
        is_active=True,
    )
    db_session.add(integration)
    db_session.commit()
    db_session.refresh(integration)
    return integration


class FakePortal:
    """In-memory Bitrix24 portal answering REST, token and callback requests.

    ``fail(method, ...)`` makes every call of that method answer with a
    Bitrix24 error body; ``http_errors[method]`` holds status codes returned
    (one per call) before the method starts answering normally.
    ``token_http_errors`` does the same for the OAuth token endpoint.
    """

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.connectors: dict[str, dict] = {}
        self.activations: dict[tuple[str, int], bool] = {}
        self.connector_data: dict[tuple[str, int], dict] = {}
        self.lines: list[dict] = [{"ID": "1", "LINE_NAME": "Main line", "ACTIVE": "Y"}]
        self.events: list[tuple[str, str]] = []
        self.placements: list[dict] = []
        self.bots: dict[int, dict] = {}
        self.robots: dict[str, dict] = {}
        self.senders: dict[str, dict] = {}
        self.failures: dict[str, tuple[int, str, str]] = {}
        self.http_errors: dict[str, list[int]] = {}
        self.token_requests: list[dict] = []
        self.token_http_errors: list[int] = []
        self.token_response: dict = {
            "access_token": "access-2",
            "refresh_token": "refresh-2",
            "expires_in": 3600,
            "member_id": PORTAL_MEMBER_ID,
        }
        self.placement_requests: list[dict] = []
        self.placement_reply = "successfully"
        self._next_bot_id = 100
        self._next_line_id = 10

    def fail(self, method: str, error: str, description: str = "", status: int = 400) -> None:
        self.failures[method] = (status, error, description)

    def methods(self) -> list[str]:
        return [method for method, _ in self.calls]

    def add_line(self, line_id: int, name: str) -> None:
        self.lines.append({"ID": str(line_id), "LINE_NAME": name, "ACTIVE": "Y"})

    # -- transport -------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/oauth/token/"):
            return self._token(request)
        if path.startswith("/bitrix24/placement"):
            self.placement_requests.append(json.loads(request.content or b"{}"))
            return httpx.Response(200, text=self.placement_reply)
        method = path.rstrip("/").rsplit("/", 1)[-1]
        params = json.loads(request.content or b"{}")
        self.calls.append((method, params))

        queued = self.http_errors.get(method)
        if queued:
            return httpx.Response(queued.pop(0), text="Service Unavailable")
        if method in self.failures:
            status, error, description = self.failures[method]
            return httpx.Response(status, json={"error": error, "error_description": description})
        handler = getattr(self, "_m_" + method.replace(".", "_"), None)
        if handler is None:
            return httpx.Response(400, json={"error": "ERROR_METHOD_NOT_FOUND", "error_description": method})
        return httpx.Response(200, json={"result": handler(params)})

    def _token(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            data = {key: values[0] for key, values in parse_qs(request.url.query.decode()).items()}
        else:
            data = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
        self.token_requests.append(data)
        if self.token_http_errors:
            return httpx.Response(self.token_http_errors.pop(0), text="<html>Bad Gateway</html>")
        if "error" in self.token_response:
            return httpx.Response(400, json=self.token_response)
        return httpx.Response(200, json=self.token_response)

    # -- REST methods ----------------------------------------------------

    def _m_app_info(self, params):
        return {"ID": 1, "CODE": "local.app123", "STATUS": "L", "INSTALLED": True}

    def _m_imconnector_register(self, params):
        self.connectors[params["ID"]] = {"name": params.get("NAME"), "placement": params.get("PLACEMENT_HANDLER")}
        return {"result": True}

    def _m_imconnector_unregister(self, params):
        self.connectors.pop(params["ID"], None)
        return True

    def _m_imconnector_list(self, params):
        return {connector_id: data["name"] for connector_id, data in self.connectors.items()}

    def _m_imconnector_activate(self, params):
        self.activations[(params["CONNECTOR"], int(params["LINE"]))] = bool(int(params["ACTIVE"]))
        return True

    def _m_imconnector_status(self, params):
        active = self.activations.get((params["CONNECTOR"], int(params["LINE"])), False)
        return {"LINE": params["LINE"], "CONNECTOR": params["CONNECTOR"], "STATUS": active, "CONFIGURED": active}

    def _m_imconnector_connector_data_set(self, params):
        self.connector_data[(params["CONNECTOR"], int(params["LINE"]))] = params["DATA"]
        return True

    def _m_event_bind(self, params):
        self.events.append((params["event"], params["handler"]))
        return True

    def _m_placement_bind(self, params):
        self.placements.append(params)
        return True

    def _m_imopenlines_config_list_get(self, params):
        return self.lines

    def _m_imopenlines_config_add(self, params):
        line_id = self._next_line_id
        self._next_line_id += 1
        self.add_line(line_id, params["PARAMS"]["LINE_NAME"])
        return line_id

    def _m_imbot_register(self, params):
        bot_id = self._next_bot_id
        self._next_bot_id += 1
        self.bots[bot_id] = {"ID": bot_id, "CODE": params["CODE"], "NAME": params["PROPERTIES"]["NAME"]}
        return bot_id

    def _m_imbot_unregister(self, params):
        self.bots.pop(int(params["BOT_ID"]), None)
        return True

    def _m_imbot_bot_list(self, params):
        return {str(bot_id): bot for bot_id, bot in self.bots.items()}

    def _m_imbot_update(self, params):
        self.bots[int(params["BOT_ID"])]["NAME"] = params["FIELDS"]["PROPERTIES"]["NAME"]
        return True

    def _m_bizproc_robot_add(self, params):
        self.robots[params["CODE"]] = params
        return True

    def _m_bizproc_robot_delete(self, params):
        self.robots.pop(params["CODE"], None)
        return True

    def _m_messageservice_sender_add(self, params):
        self.senders[params["CODE"]] = params
        return True

    def _m_messageservice_sender_delete(self, params):
        self.senders.pop(params["CODE"], None)
        return True


@pytest.fixture()
def portal(monkeypatch):
    fake = FakePortal()

    def _build_http_client(timeout=None):
        return httpx.Client(transport=httpx.MockTransport(fake.handler), timeout=timeout or 5.0)

    monkeypatch.setattr("app.services.bitrix24.client.build_http_client", _build_http_client)
    monkeypatch.setattr("app.services.bitrix24.client.time.sleep", lambda _seconds: None)
    return fake


@pytest.fixture()
def api_client(db_session):
    from fastapi.testclient import TestClient

    from app.db import get_db
    from app.main import app

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)
