"""Application lifecycle callbacks sent by the portal.

``ONAPPINSTALL`` carries a fresh token set in an ``auth`` block; form
posts flatten it into ``auth[access_token]``-style keys, which
``fold_form_fields`` turns back into a nested dict.
"""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.integration import Integration, IntegrationPlatform
from app.services.bitrix24 import identity, oauth
from app.services.bitrix24.client import Bitrix24Client
from app.services.bitrix24.connector import bind_events
from app.services.bitrix24.errors import IdentityNotFound, RemoteApiError
from app.services.bitrix24.locks import commit, integration_lock
from app.services.bitrix24.urls import placement_url
from app.services.common import utcnow

logger = get_logger(__name__)

EVENT_INSTALL = "ONAPPINSTALL"
EVENT_UNINSTALL = "ONAPPUNINSTALL"
EVENT_TEST = "ONAPPTEST"


def fold_form_fields(items: Iterable[tuple[str, str]]) -> dict:
    """Turn ``auth[key]=value`` pairs into ``{"auth": {"key": value}}``."""
    body: dict = {}
    for key, value in items:
        if key.startswith("auth[") and key.endswith("]"):
            body.setdefault("auth", {})[key[5:-1]] = value
        else:
            body[key] = value
    return body


def event_name(params: dict) -> str | None:
    event = params.get("event") or params.get("EVENT")
    if not event and (str(params.get("install")).lower() == "true" or params.get("INSTALL") == "Y"):
        return EVENT_INSTALL
    return str(event).upper() if event else None


def _bind_placement(client: Bitrix24Client) -> str | None:
    try:
        client.call(
            "placement.bind",
            {
                "PLACEMENT": "SETTING_CONNECTOR",
                "HANDLER": placement_url(),
                "TITLE": settings.bitrix24_connector_name,
                "DESCRIPTION": "Configure the WhatsApp connector",
            },
        )
    except RemoteApiError as exc:
        if not exc.is_already_exists:
            return f"placement not bound: {exc.detail}"
    return None


def _install(db: Session, params: dict) -> dict:
    auth = params.get("auth") if isinstance(params.get("auth"), dict) else {}
    portal = identity.resolve_by_callback(params)
    if portal.is_empty:
        raise IdentityNotFound("Install callback carried neither member_id nor domain")

    integration = identity.find_for_identity(db, portal)
    if integration is None:
        integration = Integration(
            platform=IntegrationPlatform.bitrix24,
            name=f"Bitrix24 - {portal.domain or portal.member_id}",
            is_active=True,
        )
        db.add(integration)
        db.commit()
        db.refresh(integration)

    access_token = auth.get("access_token") or params.get("AUTH_ID")
    warnings: list[str] = []
    events_bound: list[str] = []
    with integration_lock(db, integration.id) as locked:
        if portal.domain:
            locked.domain = portal.domain
        if portal.member_id:
            locked.member_id = portal.member_id
        if access_token:
            oauth.apply_tokens(
                locked,
                {
                    "access_token": access_token,
                    "refresh_token": auth.get("refresh_token") or params.get("REFRESH_ID"),
                    "expires_in": auth.get("expires_in") or params.get("AUTH_EXPIRES"),
                },
            )
        locked.application_token = auth.get("application_token") or params.get("APP_SID") or locked.application_token
        locked.is_active = True
        locked.installed_at = utcnow()
        locked.uninstalled_at = None
        commit(db, locked)

        if access_token and locked.client_endpoint:
            client = Bitrix24Client(locked.client_endpoint, access_token)
            placement_warning = _bind_placement(client)
            if placement_warning:
                warnings.append(placement_warning)
            events_bound, event_warnings = bind_events(client)
            warnings.extend(event_warnings)
        else:
            warnings.append("no access token in install callback, placement and events not bound")

    logger.info(
        "bitrix24_app_installed integration_id=%s domain=%s member_id=%s warnings=%s",
        locked.id,
        locked.domain,
        locked.member_id,
        len(warnings),
    )
    return {
        "event": EVENT_INSTALL,
        "integration_id": locked.id,
        "placement_bound": access_token is not None and not any(w.startswith("placement") for w in warnings),
        "events_bound": events_bound,
        "warnings": warnings,
    }


def _uninstall(db: Session, params: dict) -> dict:
    portal = identity.resolve_by_callback(params)
    integration = identity.find_for_identity(db, portal)
    if integration is None:
        logger.info("bitrix24_uninstall_unknown_portal domain=%s member_id=%s", portal.domain, portal.member_id)
        return {"event": EVENT_UNINSTALL, "integration_id": None, "deactivated": False}
    with integration_lock(db, integration.id) as locked:
        # Soft-disable only; mappings keep pointing at the row
        locked.is_active = False
        locked.uninstalled_at = utcnow()
        commit(db, locked)
    logger.info("bitrix24_app_uninstalled integration_id=%s", locked.id)
    return {"event": EVENT_UNINSTALL, "integration_id": locked.id, "deactivated": True}


def handle_install(db: Session, params: dict) -> dict:
    event = event_name(params)
    if event == EVENT_INSTALL:
        return _install(db, params)
    if event == EVENT_UNINSTALL:
        return _uninstall(db, params)
    if event == EVENT_TEST:
        return {"event": EVENT_TEST, "success": True, "message": "Test successful"}
    logger.info("bitrix24_install_callback_ignored event=%s", event)
    return {"event": event, "success": True, "message": "Event received"}
