"""Open Lines and per-line connector activation."""

from __future__ import annotations

import json

from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.integration import Integration
from app.services.bitrix24 import identity, oauth, state
from app.services.bitrix24.client import Bitrix24Client
from app.services.bitrix24.connector import fetch_connectors
from app.services.bitrix24.errors import (
    Bitrix24Error,
    IdentityNotFound,
    RemoteApiError,
    ValidationError,
)
from app.services.bitrix24.locks import commit, integration_lock, load_integration
from app.services.bitrix24.urls import events_url

logger = get_logger(__name__)

SIMULATION_PARAM = "SIMULATION"


def _truthy(value) -> bool:
    if isinstance(value, str):
        return value.strip().upper() in {"Y", "YES", "TRUE", "1"}
    return bool(value)


def coerce_line_id(value) -> int:
    try:
        line_id = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid line_id: {value!r}") from exc
    if line_id <= 0:
        raise ValidationError(f"Invalid line_id: {value!r}")
    return line_id


def fetch_lines(client: Bitrix24Client) -> list[dict]:
    result = client.call("imopenlines.config.list.get", {"select": ["ID", "LINE_NAME", "ACTIVE"]})
    if isinstance(result, dict):
        result = list(result.values())
    lines = []
    for item in result or []:
        if not isinstance(item, dict) or item.get("ID") is None:
            continue
        lines.append(
            {
                "id": int(item["ID"]),
                "name": item.get("LINE_NAME") or f"Line {item['ID']}",
                "active": _truthy(item.get("ACTIVE", "Y")),
            }
        )
    return lines


def fetch_line_status(client: Bitrix24Client, connector_id: str, line_id: int) -> dict:
    result = client.call("imconnector.status", {"CONNECTOR": connector_id, "LINE": line_id})
    return result if isinstance(result, dict) else {}


def line_status_active(status: dict) -> bool:
    return _truthy(status.get("STATUS")) or _truthy(status.get("ACTIVE"))


def _require_connector(integration: Integration) -> str:
    if not integration.connector_id or not integration.registered:
        raise ValidationError("Connector is not registered for this integration", code="connector_not_registered")
    return integration.connector_id


def apply_activation(
    client: Bitrix24Client,
    integration: Integration,
    line_id: int,
    active: bool = True,
    *,
    connector_id: str | None = None,
    fresh_urls: bool = False,
) -> dict:
    """Toggle the connector on a line and record it on ``integration`` (uncommitted).

    The remote call happens first; a failure raises ``RemoteApiError`` before
    anything on the integration changes.
    """
    connector_id = connector_id or _require_connector(integration)
    result = client.call(
        "imconnector.activate",
        {"CONNECTOR": connector_id, "LINE": line_id, "ACTIVE": 1 if active else 0},
    )
    if result is False:
        raise RemoteApiError(
            f"imconnector.activate was refused for line {line_id}",
            method="imconnector.activate",
        )

    warnings: list[str] = []
    if active:
        url = events_url(fresh=fresh_urls)
        try:
            client.call(
                "imconnector.connector.data.set",
                {
                    "CONNECTOR": connector_id,
                    "LINE": line_id,
                    "DATA": {
                        "id": f"{connector_id}_line_{line_id}",
                        "url": url,
                        "url_im": url,
                        "name": settings.bitrix24_connector_name,
                    },
                },
            )
        except RemoteApiError as exc:
            warnings.append(f"connector data not set on line {line_id}: {exc.detail}")
        state.mark_activated(integration, line_id)
    else:
        state.mark_deactivated(integration, line_id)

    logger.info(
        "bitrix24_line_activation integration_id=%s connector_id=%s line_id=%s active=%s",
        integration.id,
        connector_id,
        line_id,
        active,
    )
    return {"line_id": line_id, "active": active, "warnings": warnings}


def list_channels(db: Session, integration_id, include_status: bool = False) -> list[dict]:
    integration = load_integration(db, integration_id)
    client = oauth.portal_client(db, integration)
    lines = fetch_lines(client)
    if not include_status:
        return lines
    for line in lines:
        if not integration.connector_id:
            line["connector_active"] = False
            continue
        try:
            status = fetch_line_status(client, integration.connector_id, line["id"])
        except RemoteApiError as exc:
            line["connector_active"] = False
            line["status_error"] = exc.detail
            continue
        line["connector_active"] = line_status_active(status)
    return lines


def activate_for_line(db: Session, integration_id, line_id, active: bool = True) -> dict:
    line_id = coerce_line_id(line_id)
    with integration_lock(db, integration_id) as integration:
        client = oauth.portal_client(db, integration)
        outcome = apply_activation(client, integration, line_id, active)
        commit(db, integration)
    outcome["state"] = state.describe(integration)
    return outcome


def check_status(db: Session, integration_id, line_id) -> dict:
    """Registration, reachability and activation of the connector on one line, read live."""
    line_id = coerce_line_id(line_id)
    integration = load_integration(db, integration_id)
    connector_id = integration.connector_id
    report = {
        "connector_id": connector_id,
        "line_id": line_id,
        "registered": False,
        "connection": False,
        "active": False,
    }
    if not connector_id:
        report["error"] = "Connector has never been registered"
        return report
    try:
        client = oauth.portal_client(db, integration)
        report["registered"] = connector_id in fetch_connectors(client)
        if report["registered"]:
            status = fetch_line_status(client, connector_id, line_id)
            report["active"] = line_status_active(status)
            report["connection"] = _truthy(status.get("CONFIGURED", report["active"])) and not _truthy(
                status.get("ERROR")
            )
            report["raw_status"] = status
    except Bitrix24Error as exc:
        report["error"] = exc.detail
    return report


def create_channel(db: Session, integration_id, name: str) -> dict:
    name = (name or "").strip()
    if not name:
        raise ValidationError("channel_name is required")
    with integration_lock(db, integration_id) as integration:
        client = oauth.portal_client(db, integration)
        result = client.call("imopenlines.config.add", {"PARAMS": {"LINE_NAME": name}})
        if not result:
            raise RemoteApiError("imopenlines.config.add did not return a line id", method="imopenlines.config.add")
        line_id = int(result)
    logger.info("bitrix24_line_created integration_id=%s line_id=%s", integration.id, line_id)
    return {"line_id": line_id, "name": name}


def _placement_options(params: dict) -> dict:
    raw = params.get("PLACEMENT_OPTIONS")
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw:
        try:
            parsed = json.loads(raw)
        except ValueError as exc:
            raise ValidationError("PLACEMENT_OPTIONS is not valid JSON") from exc
        return parsed if isinstance(parsed, dict) else {}
    return {}


def handle_placement(db: Session, params: dict) -> dict:
    """Serve the portal's SETTING_CONNECTOR placement by switching the connector on the line."""
    options = _placement_options(params)
    portal = identity.resolve_by_callback(params)
    integration = identity.find_for_identity(db, portal)
    if not integration:
        raise IdentityNotFound("Placement came from a portal that has not installed the application")

    line_id = coerce_line_id(options.get("LINE") or 1)
    active = str(options.get("ACTIVE_STATUS", 1)) != "0"
    connector_id = options.get("CONNECTOR") or integration.connector_id
    if not connector_id:
        raise ValidationError("Placement did not name a connector", code="connector_not_registered")

    if _truthy(params.get(SIMULATION_PARAM)):
        # Diagnostics call: answer like a real placement without touching the line
        logger.info(
            "bitrix24_placement_simulation_received integration_id=%s connector_id=%s line_id=%s",
            integration.id,
            connector_id,
            line_id,
        )
        return {"simulated": True, "line_id": line_id, "active": active, "connector_id": connector_id}

    with integration_lock(db, integration.id) as locked:
        auth_id = params.get("AUTH_ID")
        if auth_id and portal.domain:
            client = Bitrix24Client(f"https://{portal.domain}/rest/", auth_id)
        else:
            client = oauth.portal_client(db, locked)
        # The portal only opens this placement for a connector it has registered
        state.mark_registered(locked, connector_id)
        outcome = apply_activation(client, locked, line_id, active, connector_id=connector_id)
        state.mark_connection_verified(locked)
        commit(db, locked)
    outcome["connector_id"] = connector_id
    return outcome
