"""Connector health state machine.

``unregistered -> registered -> activated``; activation can be withdrawn
(``activated -> registered``) and any state can fall back to
``unregistered`` when the portal no longer knows the connector. Whether
the portal can actually reach our callback URLs is a separate fact
(``connection_verified_at``) that does not move the state.
"""

from __future__ import annotations

from datetime import datetime

from app.logging import get_logger
from app.models.integration import ConnectorState, Integration
from app.services.bitrix24.errors import ValidationError
from app.services.common import utcnow

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[ConnectorState, set[ConnectorState]] = {
    ConnectorState.unregistered: {ConnectorState.unregistered, ConnectorState.registered},
    ConnectorState.registered: {
        ConnectorState.unregistered,
        ConnectorState.registered,
        ConnectorState.activated,
    },
    ConnectorState.activated: {
        ConnectorState.unregistered,
        ConnectorState.registered,
        ConnectorState.activated,
    },
}


def can_transition(current: ConnectorState, target: ConnectorState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def transition(integration: Integration, target: ConnectorState) -> ConnectorState:
    current = integration.connector_state or ConnectorState.unregistered
    if not can_transition(current, target):
        raise ValidationError(
            f"Connector must be registered before it can be {target.value}",
            code="invalid_connector_transition",
        )
    if current != target:
        logger.info(
            "bitrix24_connector_state integration_id=%s from=%s to=%s",
            integration.id,
            current.value,
            target.value,
        )
    integration.connector_state = target
    return target


def mark_registered(integration: Integration, connector_id: str) -> None:
    integration.connector_id = connector_id
    if integration.connector_state == ConnectorState.unregistered:
        transition(integration, ConnectorState.registered)
        integration.registered_at = utcnow()


def mark_unregistered(integration: Integration) -> None:
    transition(integration, ConnectorState.unregistered)
    integration.activated_line_id = None
    integration.connection_verified_at = None


def mark_activated(integration: Integration, line_id: int) -> None:
    transition(integration, ConnectorState.activated)
    integration.activated_line_id = line_id


def mark_deactivated(integration: Integration, line_id: int) -> None:
    # Only withdraw activation when the line being switched off is the tracked one
    if integration.connector_state != ConnectorState.activated:
        return
    if integration.activated_line_id not in (None, line_id):
        return
    transition(integration, ConnectorState.registered)
    integration.activated_line_id = None


def mark_connection_verified(integration: Integration, at: datetime | None = None) -> None:
    integration.connection_verified_at = at or utcnow()


def describe(integration: Integration) -> dict:
    return {
        "state": (integration.connector_state or ConnectorState.unregistered).value,
        "registered": integration.registered,
        "activated": integration.activated,
        "connection_verified": integration.connection_verified_at is not None,
        "connection_verified_at": integration.connection_verified_at,
        "connector_id": integration.connector_id,
        "activated_line_id": integration.activated_line_id,
    }
