import json

import httpx

from app.config import settings
from app.services.bitrix24 import setup
from app.services.bitrix24.errors import TokenRefreshFailed

CONNECTOR_ID = "openlines_a1b2c3d4e5f6"


def test_missing_robot_scope_gives_partial_setup(db_session, integration, portal):
    portal.fail("bizproc.robot.add", "insufficient_scope", "The request requires higher privileges", 401)

    report = setup.auto_setup(db_session, integration.id)

    assert report["connector_registered"] is True
    assert report["lines_activated"] == 1
    assert report["lines_total"] == 1
    assert report["robot_registered"] is False
    assert report["sms_provider_registered"] is True
    assert report["errors"] == ["robot scope unavailable"]
    assert report["status"] == "partial"
    assert portal.activations[(CONNECTOR_ID, 1)] is True

    db_session.refresh(integration)
    assert integration.auto_setup_completed is True
    assert integration.robot_error == "robot scope unavailable"
    assert integration.last_setup_report["status"] == "partial"
    assert "ran_at" in integration.last_setup_report


def test_full_success(db_session, integration, portal):
    portal.add_line(2, "Support")

    report = setup.auto_setup(db_session, integration.id)

    assert report["status"] == "success"
    assert report["lines_activated"] == report["lines_total"] == 2
    assert report["state"]["activated"] is True
    step_names = [step["name"] for step in report["steps"]]
    assert step_names[0] == "register_connector"
    assert step_names[-2:] == ["register_robot", "register_sms_provider"]


def test_one_line_failing_does_not_stop_the_others(db_session, integration, portal):
    portal.add_line(2, "Support")
    answer = portal.handler

    def _line_one_locked(request):
        if request.url.path.endswith("/imconnector.activate") and json.loads(request.content)["LINE"] == 1:
            return httpx.Response(400, json={"error": "ERROR_CORE", "error_description": "Line is locked"})
        return answer(request)

    portal.handler = _line_one_locked

    report = setup.auto_setup(db_session, integration.id)

    assert report["lines_total"] == 2
    assert report["lines_activated"] == 1
    assert "line 1 activation failed: imconnector.activate failed: Line is locked" in report["errors"]
    assert report["status"] == "partial"
    assert portal.activations[(CONNECTOR_ID, 2)] is True


def test_unauthorized_portal_fails_entirely(db_session, integration, portal):
    integration.token_refresh_failed = True
    db_session.commit()

    report = setup.auto_setup(db_session, integration.id)

    assert report["status"] == "failed"
    assert report["connector_registered"] is False
    assert report["errors"][0].startswith("authorization:")
    assert portal.calls == []
    db_session.refresh(integration)
    assert integration.auto_setup_completed is False
    assert TokenRefreshFailed().detail in report["errors"][0]


def test_failed_connector_registration_still_runs_optional_steps(db_session, integration, portal):
    portal.add_line(2, "Support")
    portal.fail("imconnector.register", "ACCESS_DENIED", "Access denied")

    report = setup.auto_setup(db_session, integration.id)

    assert report["connector_registered"] is False
    assert report["lines_total"] == 2
    assert report["lines_activated"] == 0
    assert report["robot_registered"] is True
    assert report["sms_provider_registered"] is True
    assert report["status"] == "partial"
    step_names = [step["name"] for step in report["steps"]]
    assert step_names == ["register_connector", "list_lines", "register_robot", "register_sms_provider"]
    assert "imconnector.activate" not in portal.methods()
    assert settings.bitrix24_robot_code in portal.robots
    assert settings.bitrix24_sms_sender_code in portal.senders
    db_session.refresh(integration)
    assert integration.auto_setup_completed is False
