"""Named actions invoked by the integration settings UI.

Each action takes the request's JSON body (minus ``action``) and returns a
JSON-serializable dict. Failures are raised as ``Bitrix24Error`` and
rendered by the API error handler; orchestrated actions report their own
per-step failures inside the result instead.
"""

from __future__ import annotations

from collections.abc import Callable

from sqlalchemy.orm import Session

from app.logging import get_logger
from app.schemas.bitrix24 import (
    ChannelMappingRead,
    InstanceRead,
    IntegrationRead,
    LinkingTokenRead,
)
from app.services.bitrix24 import (
    automation,
    bots,
    channels,
    connector,
    diagnostics,
    identity,
    mappings,
    oauth,
    setup,
    state,
)
from app.services.bitrix24.errors import ValidationError
from app.services.bitrix24.locks import load_integration
from app.telemetry import get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)

ActionHandler = Callable[[Session, dict], dict]


def _require(params: dict, *keys: str) -> None:
    missing = [key for key in keys if params.get(key) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}", code="missing_fields")


def _flag(params: dict, key: str, default: bool) -> bool:
    value = params.get(key)
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(value)


def _integration_dict(integration) -> dict:
    return IntegrationRead.model_validate(integration).model_dump(mode="json")


def _mapping_dict(mapping) -> dict:
    return ChannelMappingRead.model_validate(mapping).model_dump(mode="json")


def validate_token(db: Session, params: dict) -> dict:
    _require(params, "token")
    linked = identity.resolve_by_token(
        db,
        params["token"],
        member_id=params.get("member_id"),
        domain=params.get("domain"),
    )
    mapped = linked["mapped_instance_ids"]
    return {
        "success": True,
        "workspace_id": str(linked["workspace_id"]),
        "integration": _integration_dict(linked["integration"]),
        "instances": [
            {**InstanceRead.model_validate(instance).model_dump(mode="json"), "mapped": instance.id in mapped}
            for instance in linked["instances"]
        ],
        "mappings": [_mapping_dict(mapping) for mapping in linked["mappings"]],
    }


def oauth_exchange(db: Session, params: dict) -> dict:
    _require(params, "domain")
    code = params.get("code") or params.get("authorization")
    if params.get("client_id") or params.get("client_secret"):
        _require(params, "client_id", "client_secret")
        integration, url = oauth.save_client_credentials(
            db,
            params["domain"],
            params["client_id"],
            params["client_secret"],
            workspace_id=params.get("workspace_id"),
        )
        if not code:
            return {"success": True, "authorize_url": url, "integration": _integration_dict(integration)}
    if not code:
        raise ValidationError("Provide client_id and client_secret or an authorization code", code="missing_fields")
    integration = oauth.exchange_code(db, params["domain"], code)
    return {"success": True, "integration": _integration_dict(integration)}


def save_webhook(db: Session, params: dict) -> dict:
    _require(params, "webhook_url")
    integration = oauth.save_webhook(
        db,
        params["webhook_url"],
        workspace_id=params.get("workspace_id"),
        domain=params.get("domain"),
    )
    return {"success": True, "integration": _integration_dict(integration)}


def link_portal(db: Session, params: dict) -> dict:
    _require(params, "domain", "workspace_id")
    integration = identity.resolve_by_domain(db, params["domain"], params["workspace_id"])
    return {"success": True, "integration": _integration_dict(integration)}


def issue_linking_token(db: Session, params: dict) -> dict:
    _require(params, "workspace_id")
    token = identity.issue_linking_token(db, params["workspace_id"], params.get("ttl_days"))
    return {"success": True, **LinkingTokenRead.model_validate(token).model_dump(mode="json")}


def auto_setup(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    return setup.auto_setup(db, params["integration_id"], params.get("instance_id"))


def complete_setup(db: Session, params: dict) -> dict:
    _require(params, "integration_id", "instance_id", "line_id")
    return mappings.complete_setup(
        db,
        params["integration_id"],
        params["instance_id"],
        params["line_id"],
        params.get("line_name"),
    )


def clean_connectors(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    return connector.clean_duplicates(db, params["integration_id"])


def reconfigure_connector(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    return connector.reconfigure(db, params["integration_id"], params.get("line_id"))


def check_connector_status(db: Session, params: dict) -> dict:
    _require(params, "integration_id", "line_id")
    return channels.check_status(db, params["integration_id"], params["line_id"])


def check_connector(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    return diagnostics.check_connector(db, params["integration_id"], params.get("line_id"))


def diagnose_connector(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    return diagnostics.repair(
        db,
        params["integration_id"],
        params.get("line_id"),
        auto_fix=_flag(params, "auto_fix", False),
    )


def activate_connector_for_line(db: Session, params: dict) -> dict:
    _require(params, "integration_id", "line_id")
    return channels.activate_for_line(
        db,
        params["integration_id"],
        params["line_id"],
        _flag(params, "active", True),
    )


def list_channels(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    lines = channels.list_channels(
        db,
        params["integration_id"],
        include_status=_flag(params, "include_connector_status", False),
    )
    return {"channels": lines, "total": len(lines)}


def create_channel(db: Session, params: dict) -> dict:
    _require(params, "integration_id", "channel_name")
    return channels.create_channel(db, params["integration_id"], params["channel_name"])


def register_bot(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    integration = load_integration(db, params["integration_id"])
    if params.get("workspace_id") and str(integration.workspace_id) != str(params["workspace_id"]):
        raise ValidationError("Integration does not belong to this workspace", code="workspace_mismatch")
    return bots.register_bot(
        db,
        integration.id,
        params.get("name"),
        params.get("description"),
        persona_id=params.get("persona_id"),
        welcome_message=params.get("welcome_message"),
    )


def unregister_bot(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    integration = load_integration(db, params["integration_id"])
    if params.get("workspace_id") and str(integration.workspace_id) != str(params["workspace_id"]):
        raise ValidationError("Integration does not belong to this workspace", code="workspace_mismatch")
    return bots.unregister_bot(db, integration.id)


def bot_status(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    return bots.bot_status(db, params["integration_id"])


def update_bot(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    return bots.update_bot(db, params["integration_id"], params.get("name"), params.get("description"))


def register_robot(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    return automation.register_robot(db, params["integration_id"])


def unregister_robot(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    return automation.unregister_robot(db, params["integration_id"])


def register_sms_provider(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    return automation.register_sms_provider(db, params["integration_id"])


def unregister_sms_provider(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    return automation.unregister_sms_provider(db, params["integration_id"])


def refresh_token(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    integration = load_integration(db, params["integration_id"])
    if integration.uses_webhook:
        return {"refreshed": False, "message": "Webhook integrations do not use OAuth tokens"}
    integration = oauth.refresh(db, integration, force=True)
    return {"refreshed": True, "token_expires_at": integration.token_expires_at}


def simulate_placement(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    return diagnostics.simulate_placement(db, params["integration_id"], params.get("line_id"))


def connection_test(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    return diagnostics.verify_connection(db, params["integration_id"])


def list_mappings(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    rows = mappings.list_mappings(db, params["integration_id"])
    return {"mappings": [_mapping_dict(row) for row in rows], "total": len(rows)}


def add_mapping(db: Session, params: dict) -> dict:
    _require(params, "integration_id", "instance_id", "line_id")
    mapping = mappings.add_mapping(
        db,
        params["integration_id"],
        params["instance_id"],
        params["line_id"],
        params.get("line_name"),
    )
    return {"success": True, "mapping": _mapping_dict(mapping)}


def remove_mapping(db: Session, params: dict) -> dict:
    _require(params, "mapping_id")
    mappings.remove_mapping(db, params["mapping_id"])
    return {"success": True, "mapping_id": str(params["mapping_id"])}


def integration_state(db: Session, params: dict) -> dict:
    _require(params, "integration_id")
    integration = load_integration(db, params["integration_id"])
    return {
        "integration": _integration_dict(integration),
        "connector": state.describe(integration),
        "token_expired": oauth.is_expired(integration) if integration.access_token else None,
    }


ACTIONS: dict[str, ActionHandler] = {
    "validate_token": validate_token,
    "oauth_exchange": oauth_exchange,
    "save_webhook": save_webhook,
    "link_portal": link_portal,
    "issue_linking_token": issue_linking_token,
    "auto_setup": auto_setup,
    "complete_setup": complete_setup,
    "clean_connectors": clean_connectors,
    "reconfigure_connector": reconfigure_connector,
    "check_connector_status": check_connector_status,
    "check_connector": check_connector,
    "diagnose_connector": diagnose_connector,
    "activate_connector_for_line": activate_connector_for_line,
    "list_channels": list_channels,
    "create_channel": create_channel,
    "register": register_bot,
    "unregister": unregister_bot,
    "register_bot": register_bot,
    "unregister_bot": unregister_bot,
    "bot_status": bot_status,
    "update_bot": update_bot,
    "register_robot": register_robot,
    "unregister_robot": unregister_robot,
    "register_sms_provider": register_sms_provider,
    "unregister_sms_provider": unregister_sms_provider,
    "refresh_token": refresh_token,
    "simulate_placement": simulate_placement,
    "test_connection": connection_test,
    "list_mappings": list_mappings,
    "add_mapping": add_mapping,
    "remove_mapping": remove_mapping,
    "integration_state": integration_state,
}


def dispatch(db: Session, action: str, params: dict | None = None) -> dict:
    handler = ACTIONS.get(action)
    if handler is None:
        raise ValidationError(f"Unknown action: {action}", code="unknown_action")
    with tracer.start_as_current_span(f"bitrix24.action {action}"):
        logger.info("bitrix24_action action=%s integration_id=%s", action, (params or {}).get("integration_id"))
        return handler(db, dict(params or {}))
