"""Live diagnosis of the connector and targeted repair."""

from __future__ import annotations

import json

import httpx
from sqlalchemy.orm import Session

from app.logging import get_logger
from app.services.bitrix24 import client as rest_client
from app.services.bitrix24 import oauth, state
from app.services.bitrix24.channels import (
    SIMULATION_PARAM,
    apply_activation,
    coerce_line_id,
    fetch_line_status,
    line_status_active,
)
from app.services.bitrix24.connector import (
    connector_id_for,
    fetch_connectors,
    is_owned,
    register_remote,
    remove_connectors,
)
from app.services.bitrix24.errors import Bitrix24Error, TokenExpired, TokenRefreshFailed, ValidationError
from app.services.bitrix24.locks import commit, integration_lock, load_integration
from app.services.bitrix24.urls import placement_url

logger = get_logger(__name__)


def _diagnosis_text(registered: bool, activated: bool, line_id: int) -> str:
    if not registered:
        return "Connector NOT registered - register again"
    if activated:
        return f"Connector registered and ACTIVE on line {line_id}"
    return f"Connector registered but NOT ACTIVE on line {line_id} - check Open Lines settings in Bitrix24"


def _suggest(registered: bool, activated: bool, duplicates: list[str]) -> str:
    if not registered:
        return "register"
    if duplicates:
        return "clean_connectors"
    if not activated:
        return "activate"
    return "none"


def check_connector(db: Session, integration_id, line_id=None) -> dict:
    """Compare what the portal reports with what is stored, without changing either."""
    integration = load_integration(db, integration_id)
    line = coerce_line_id(line_id or integration.activated_line_id or 1)
    try:
        expected_id = integration.connector_id or connector_id_for(integration)
    except ValidationError:
        expected_id = None
    report = {
        "connector_id": expected_id,
        "line_id": line,
        "registered": False,
        "activated": False,
        "stored": state.describe(integration),
        "duplicates": [],
        "all_connectors": [],
        "drift": [],
    }

    try:
        client = oauth.portal_client(db, integration)
        connectors = fetch_connectors(client)
    except (TokenRefreshFailed, TokenExpired) as exc:
        report["diagnosis"] = f"Cannot authenticate with the portal: {exc.detail}"
        report["suggested_action"] = "reauthorize"
        return report
    except Bitrix24Error as exc:
        report["diagnosis"] = f"Cannot reach the portal: {exc.detail}"
        report["suggested_action"] = "retry"
        return report

    report["all_connectors"] = sorted(connectors)
    report["registered"] = bool(expected_id) and expected_id in connectors
    report["duplicates"] = sorted(cid for cid in connectors if is_owned(cid) and cid != expected_id)
    if report["registered"]:
        status = fetch_line_status(client, expected_id, line)
        report["activated"] = line_status_active(status)
        report["activation_status"] = status

    if integration.registered != report["registered"]:
        report["drift"].append(
            f"stored registered={integration.registered} but portal reports registered={report['registered']}"
        )
    if integration.activated and integration.activated_line_id == line and not report["activated"]:
        report["drift"].append(f"stored as active on line {line} but portal reports it inactive")
    if not integration.activated and report["activated"]:
        report["drift"].append(f"portal reports the connector active on line {line} but it is not stored")

    report["diagnosis"] = _diagnosis_text(report["registered"], report["activated"], line)
    report["suggested_action"] = _suggest(report["registered"], report["activated"], report["duplicates"])
    return report


def repair(db: Session, integration_id, line_id=None, auto_fix: bool = True) -> dict:
    """Re-run only the steps the diagnosis calls for and bring stored state in line."""
    before = check_connector(db, integration_id, line_id)
    result = {"before": before, "fixes_applied": [], "errors": [], "auto_fix": auto_fix}
    if not auto_fix or (before["suggested_action"] == "none" and not before["drift"]):
        result["after"] = before
        return result
    if before["suggested_action"] == "reauthorize":
        result["errors"].append("re-authorization required, repair cannot continue")
        result["after"] = before
        return result

    line = before["line_id"]
    with integration_lock(db, integration_id) as integration:
        client = oauth.portal_client(db, integration)
        if before["duplicates"]:
            removed, errors = remove_connectors(client, before["duplicates"])
            if removed:
                result["fixes_applied"].append(f"removed {len(removed)} duplicate connectors")
            result["errors"].extend(errors)

        if not before["registered"]:
            try:
                register_remote(client, integration)
                result["fixes_applied"].append("connector registered")
            except Bitrix24Error as exc:
                result["errors"].append(f"register: {exc.detail}")
        elif not integration.registered:
            state.mark_registered(integration, before["connector_id"])
            result["fixes_applied"].append("stored state synced to registered")

        if integration.registered and not before["activated"]:
            try:
                apply_activation(client, integration, line, True)
                result["fixes_applied"].append(f"connector activated on line {line}")
            except Bitrix24Error as exc:
                result["errors"].append(f"activate line {line}: {exc.detail}")
        elif before["activated"] and not integration.activated:
            state.mark_activated(integration, line)
            result["fixes_applied"].append("stored state synced to activated")
        commit(db, integration)

    logger.info(
        "bitrix24_connector_repaired integration_id=%s fixes=%s errors=%s",
        integration_id,
        len(result["fixes_applied"]),
        len(result["errors"]),
    )
    result["after"] = check_connector(db, integration_id, line)
    return result


def _redacted(payload: dict) -> dict:
    shown = dict(payload)
    if shown.get("AUTH_ID"):
        shown["AUTH_ID"] = "***"
    if isinstance(shown.get("auth"), dict) and shown["auth"].get("access_token"):
        shown["auth"] = {**shown["auth"], "access_token": "***"}
    return shown


def simulate_placement(db: Session, integration_id, line_id=None) -> dict:
    """Send our own placement handler the call the portal makes when the connector is opened.

    Separates "not registered" from "registered but the handler is
    unreachable". The call carries the simulation flag, so the handler
    answers without activating the line. Nothing is stored; the observed
    response is logged.
    """
    integration = load_integration(db, integration_id)
    line = coerce_line_id(line_id or integration.activated_line_id or 1)
    connector_id = integration.connector_id or connector_id_for(integration)
    payload = {
        "PLACEMENT": "SETTING_CONNECTOR",
        SIMULATION_PARAM: "Y",
        "PLACEMENT_OPTIONS": json.dumps({"CONNECTOR": connector_id, "LINE": line, "ACTIVE_STATUS": 1}),
        "AUTH_ID": integration.access_token,
        "DOMAIN": integration.domain,
        "member_id": integration.member_id,
        "auth": {
            "access_token": integration.access_token,
            "domain": integration.domain,
            "member_id": integration.member_id,
        },
    }
    url = placement_url()
    try:
        with rest_client.build_http_client() as http:
            response = http.post(url, json=payload)
    except httpx.RequestError as exc:
        logger.warning("bitrix24_placement_simulation_failed integration_id=%s error=%s", integration.id, exc)
        return {
            "success": False,
            "message": f"Placement handler unreachable: {exc}",
            "http_status": None,
            "handler_response": None,
            "payload_sent": _redacted(payload),
        }
    text = response.text or ""
    success = "successfully" in text.lower()
    logger.info(
        "bitrix24_placement_simulated integration_id=%s status=%s success=%s",
        integration.id,
        response.status_code,
        success,
    )
    return {
        "success": success,
        "message": "Placement handler answered 'successfully'" if success else f"Placement handler answered: {text[:500]}",
        "http_status": response.status_code,
        "handler_response": text[:2000],
        "payload_sent": _redacted(payload),
    }


def verify_connection(db: Session, integration_id) -> dict:
    integration = load_integration(db, integration_id)
    try:
        client = oauth.portal_client(db, integration)
        info = client.call("app.info")
        connectors = fetch_connectors(client)
    except Bitrix24Error as exc:
        return {"success": False, "error": exc.detail, "code": exc.code}
    return {
        "success": True,
        "app_info": info,
        "connectors": sorted(connectors),
        "owned_connectors": sorted(cid for cid in connectors if is_owned(cid)),
    }
