"""Connector registration inside the portal's contact-center registry.

The connector id is derived from the portal identity, so registering twice
always targets the same registry entry. Entries owned by this application
all start with the configured prefix; anything else in the registry
belongs to other apps and is never touched.
"""

from __future__ import annotations

import re

from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.channel_mapping import ChannelMapping
from app.models.integration import Integration
from app.services.bitrix24 import identity, oauth, state
from app.services.bitrix24.client import Bitrix24Client
from app.services.bitrix24.errors import Bitrix24Error, RemoteApiError, ValidationError
from app.services.bitrix24.locks import commit, integration_lock
from app.services.bitrix24.urls import events_url, placement_url

logger = get_logger(__name__)

CONNECTOR_EVENTS = (
    "OnImConnectorMessageAdd",
    "OnImConnectorDialogStart",
    "OnImConnectorDialogFinish",
)

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_NON_IDENT = re.compile(r"[^a-z0-9_]")


def connector_prefix() -> str:
    prefix = _NON_IDENT.sub("", settings.bitrix24_connector_prefix.lower()).strip("_")
    return prefix or "openlines"


def derive_connector_id(member_id: str | None = None, workspace_id=None) -> str:
    """Stable registry id: ``<prefix>_<sanitized identity>`` cut to the portal's length limit."""
    source = member_id or (str(workspace_id) if workspace_id else "")
    suffix = _NON_ALNUM.sub("", source.lower())
    if not suffix:
        raise ValidationError("A member_id or workspace is needed to derive the connector id")
    connector_id = f"{connector_prefix()}_{suffix}"
    return connector_id[: settings.bitrix24_connector_id_max_length]


def connector_id_for(integration: Integration) -> str:
    return derive_connector_id(integration.member_id, integration.workspace_id)


def is_owned(connector_id: str) -> bool:
    prefix = connector_prefix()
    return connector_id == prefix or connector_id.startswith(f"{prefix}_")


def fetch_connectors(client: Bitrix24Client) -> dict[str, dict]:
    result = client.call("imconnector.list")
    if isinstance(result, dict):
        return {str(key): value if isinstance(value, dict) else {"name": value} for key, value in result.items()}
    connectors = {}
    for item in result or []:
        if isinstance(item, dict):
            key = item.get("ID") or item.get("id")
            if key:
                connectors[str(key)] = item
    return connectors


def _icon() -> dict:
    return {
        "DATA_IMAGE": settings.bitrix24_connector_icon,
        "COLOR": settings.bitrix24_connector_color,
        "SIZE": "100%",
        "POSITION": "center",
    }


def bind_events(client: Bitrix24Client, fresh: bool = False) -> tuple[list[str], list[str]]:
    bound, warnings = [], []
    handler = events_url(fresh=fresh)
    for event in CONNECTOR_EVENTS:
        try:
            client.call("event.bind", {"event": event, "handler": handler})
        except RemoteApiError as exc:
            if not exc.is_already_exists:
                warnings.append(f"{event} not bound: {exc.detail}")
                continue
        bound.append(event)
    return bound, warnings


def register_remote(client: Bitrix24Client, integration: Integration, *, fresh: bool = False) -> dict:
    """Register the connector and bind its events; updates ``integration`` without committing."""
    connector_id = integration.connector_id or connector_id_for(integration)
    disabled_icon = _icon()
    disabled_icon["COLOR"] = "#9E9E9E"
    try:
        client.call(
            "imconnector.register",
            {
                "ID": connector_id,
                "NAME": settings.bitrix24_connector_name,
                "ICON": _icon(),
                "ICON_DISABLED": disabled_icon,
                "PLACEMENT_HANDLER": placement_url(fresh=fresh),
            },
        )
    except RemoteApiError as exc:
        if not exc.is_already_exists:
            raise
        logger.info("bitrix24_connector_already_registered connector_id=%s", connector_id)
    bound, warnings = bind_events(client, fresh)
    state.mark_registered(integration, connector_id)
    logger.info(
        "bitrix24_connector_registered integration_id=%s connector_id=%s events=%s",
        integration.id,
        connector_id,
        len(bound),
    )
    return {"connector_id": connector_id, "registered": True, "events_bound": bound, "warnings": warnings}


def register(db: Session, integration_id, instance_id=None) -> dict:
    with integration_lock(db, integration_id) as integration:
        if instance_id:
            instance = identity.get_workspace_instance(db, integration.workspace_id, instance_id)
            integration.instance_id = instance.id
        client = oauth.portal_client(db, integration)
        outcome = register_remote(client, integration)
        commit(db, integration)
    return outcome


def remove_connectors(client: Bitrix24Client, connector_ids: list[str]) -> tuple[list[str], list[str]]:
    removed, errors = [], []
    for connector_id in connector_ids:
        try:
            client.call("imconnector.unregister", {"ID": connector_id})
        except RemoteApiError as exc:
            errors.append(f"{connector_id}: {exc.detail}")
            continue
        removed.append(connector_id)
    return removed, errors


def clean_duplicates(db: Session, integration_id) -> dict:
    """Unregister every owned connector except the one stored on the integration."""
    with integration_lock(db, integration_id) as integration:
        client = oauth.portal_client(db, integration)
        keep = integration.connector_id or connector_id_for(integration)
        remote = fetch_connectors(client)
        stale = sorted(connector_id for connector_id in remote if is_owned(connector_id) and connector_id != keep)
        removed, errors = remove_connectors(client, stale)
    logger.info(
        "bitrix24_connectors_cleaned integration_id=%s removed=%s failed=%s",
        integration.id,
        len(removed),
        len(errors),
    )
    return {
        "kept": keep,
        "kept_present": keep in remote,
        "removed": len(removed),
        "removed_ids": removed,
        "errors": errors,
    }


def reconfigure(db: Session, integration_id, line_id=None) -> dict:
    """Drop every owned connector and register it again with new callback URLs.

    The portal caches handler URLs at registration time; this is the only
    way to make it pick up changed ones. Each step reports on its own, so a
    failed activation still tells the caller the connector is back.
    """
    from app.services.bitrix24 import channels

    errors: list[str] = []
    warnings: list[str] = []
    lines_reactivated: list[int] = []
    lines_left_inactive: list[int] = []
    outcome = {"removed": 0, "connector_registered": False, "connector_activated": False}
    with integration_lock(db, integration_id) as integration:
        client = oauth.portal_client(db, integration)
        target_line = channels.coerce_line_id(line_id or integration.activated_line_id or 1)
        outcome["line_id"] = target_line

        owned = sorted(connector_id for connector_id in fetch_connectors(client) if is_owned(connector_id))
        removed, remove_errors = remove_connectors(client, owned)
        outcome["removed"] = len(removed)
        errors.extend(remove_errors)
        integration.connector_id = connector_id_for(integration)
        state.mark_unregistered(integration)

        try:
            registered = register_remote(client, integration, fresh=True)
            outcome["connector_registered"] = True
            outcome["connector_id"] = registered["connector_id"]
            warnings.extend(registered["warnings"])
        except Bitrix24Error as exc:
            errors.append(f"register: {exc.detail}")

        if outcome["connector_registered"]:
            # Re-registering switches the connector off everywhere; bring back every mapped line
            mapped_lines = sorted(
                {
                    line
                    for (line,) in db.query(ChannelMapping.line_id).filter(
                        ChannelMapping.integration_id == integration.id,
                        ChannelMapping.is_active.is_(True),
                    )
                }
                - {target_line}
            )
            for mapped_line in mapped_lines:
                try:
                    activation = channels.apply_activation(client, integration, mapped_line, True, fresh_urls=True)
                except Bitrix24Error as exc:
                    errors.append(f"activate line {mapped_line}: {exc.detail}")
                    lines_left_inactive.append(mapped_line)
                    continue
                lines_reactivated.append(mapped_line)
                warnings.extend(activation["warnings"])
            try:
                activation = channels.apply_activation(client, integration, target_line, True, fresh_urls=True)
                outcome["connector_activated"] = True
                warnings.extend(activation["warnings"])
            except Bitrix24Error as exc:
                errors.append(f"activate line {target_line}: {exc.detail}")
                lines_left_inactive.append(target_line)
        commit(db, integration)

    logger.info(
        "bitrix24_connector_reconfigured integration_id=%s registered=%s activated=%s",
        integration.id,
        outcome["connector_registered"],
        outcome["connector_activated"],
    )
    outcome.update(
        {
            "lines_reactivated": lines_reactivated,
            "lines_left_inactive": lines_left_inactive,
            "errors": errors,
            "warnings": warnings,
            "state": state.describe(integration),
        }
    )
    return outcome
