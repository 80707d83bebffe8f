import httpx
import pytest

from app.services.bitrix24.client import Bitrix24Client, is_read_method
from app.services.bitrix24.errors import RemoteApiError

ENDPOINT = "https://example.bitrix24.com/rest/"


def _client(**kwargs) -> Bitrix24Client:
    kwargs.setdefault("max_retries", 2)
    kwargs.setdefault("backoff_seconds", 0)
    return Bitrix24Client(ENDPOINT, "tok-1", **kwargs)


def test_is_read_method():
    assert is_read_method("imconnector.list")
    assert is_read_method("imopenlines.config.list.get")
    assert is_read_method("imconnector.status")
    assert is_read_method("app.info")
    assert not is_read_method("imconnector.register")
    assert not is_read_method("imconnector.activate")
    assert not is_read_method("bizproc.robot.add")


def test_call_sends_auth_and_returns_result(portal):
    portal.connectors["openlines_x"] = {"name": "X"}

    result = _client().call("imconnector.list")

    assert result == {"openlines_x": "X"}
    method, params = portal.calls[0]
    assert method == "imconnector.list"
    assert params["auth"] == "tok-1"


def test_webhook_endpoint_carries_no_auth(portal):
    client = Bitrix24Client("https://example.bitrix24.com/rest/1/abc123", backoff_seconds=0)
    client.call("app.info")
    assert "auth" not in portal.calls[0][1]


def test_read_method_retried_on_server_error(portal):
    portal.http_errors["imconnector.list"] = [503, 502]

    result = _client().call("imconnector.list")

    assert result == {}
    assert portal.methods() == ["imconnector.list"] * 3


def test_read_method_gives_up_after_bound(portal):
    portal.http_errors["imconnector.list"] = [503, 503, 503, 503]

    with pytest.raises(RemoteApiError) as exc_info:
        _client().call("imconnector.list")

    assert exc_info.value.retryable
    assert len(portal.calls) == 3


def test_mutating_method_sent_once(portal):
    portal.http_errors["imconnector.register"] = [503]

    with pytest.raises(RemoteApiError) as exc_info:
        _client().call("imconnector.register", {"ID": "openlines_x"})

    assert exc_info.value.retryable
    assert portal.methods() == ["imconnector.register"]
    assert portal.connectors == {}


def test_error_body_raises_remote_error(portal):
    portal.fail("imbot.register", "WRONG_REQUEST", "Bot code is busy")

    with pytest.raises(RemoteApiError) as exc_info:
        _client().call("imbot.register", {"CODE": "x"})

    assert exc_info.value.remote_error == "WRONG_REQUEST"
    assert exc_info.value.method == "imbot.register"
    assert "Bot code is busy" in exc_info.value.detail
    assert not exc_info.value.retryable


def test_error_body_on_read_method_is_not_retried(portal):
    portal.fail("imconnector.status", "CONNECTOR_NOT_FOUND", "No such connector")

    with pytest.raises(RemoteApiError):
        _client().call("imconnector.status", {"CONNECTOR": "x", "LINE": 1})

    assert len(portal.calls) == 1


def test_transport_error_becomes_retryable_remote_error(monkeypatch):
    attempts = []

    def _refuse(request):
        attempts.append(request.url.path)
        raise httpx.ConnectError("connection refused", request=request)

    monkeypatch.setattr(
        "app.services.bitrix24.client.build_http_client",
        lambda timeout=None: httpx.Client(transport=httpx.MockTransport(_refuse)),
    )

    with pytest.raises(RemoteApiError) as exc_info:
        _client(max_retries=1).call("imconnector.list")

    assert exc_info.value.retryable
    assert len(attempts) == 2
