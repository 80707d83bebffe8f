"""Chat bot registration (``imbot.*``).

The bot is independent of the connector: a registered, active connector
says nothing about whether a bot exists, and the other way round.
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.integration import Integration
from app.services.bitrix24 import oauth
from app.services.bitrix24.client import Bitrix24Client
from app.services.bitrix24.errors import RemoteApiError, ValidationError
from app.services.bitrix24.locks import commit, integration_lock, load_integration
from app.services.bitrix24.urls import BOT_PATH, callback_url
from app.services.common import coerce_optional_uuid

logger = get_logger(__name__)

DEFAULT_BOT_NAME = "WhatsApp Assistant"
DEFAULT_BOT_DESCRIPTION = "Answers WhatsApp conversations in Open Lines"
_GONE_ERRORS = {"BOT_NOT_FOUND", "BOT_ID_ERROR"}


def _bot_properties(name: str, description: str) -> dict:
    return {
        "NAME": name,
        "WORK_POSITION": description,
        "COLOR": "GREEN",
    }


def _fetch_bots(client: Bitrix24Client) -> list[dict]:
    result = client.call("imbot.bot.list")
    if isinstance(result, dict):
        return [bot for bot in result.values() if isinstance(bot, dict)]
    return [bot for bot in result or [] if isinstance(bot, dict)]


def _bot_exists(bots: list[dict], bot_id: int) -> bool:
    return any(str(bot.get("ID") or bot.get("id")) == str(bot_id) for bot in bots)


def _clear_bot(integration: Integration) -> None:
    integration.bot_id = None
    integration.bot_code = None
    integration.bot_name = None
    integration.bot_enabled = False
    integration.bot_persona_id = None
    integration.bot_welcome_message = None


def register_bot(
    db: Session,
    integration_id,
    name: str | None = None,
    description: str | None = None,
    *,
    persona_id=None,
    welcome_message: str | None = None,
) -> dict:
    with integration_lock(db, integration_id) as integration:
        if integration.bot_id:
            return {"registered": True, "already_registered": True, "bot_id": integration.bot_id}
        client = oauth.portal_client(db, integration)
        handler = callback_url(BOT_PATH, integration=str(integration.id))
        bot_name = name or DEFAULT_BOT_NAME
        bot_id = client.call(
            "imbot.register",
            {
                "CODE": settings.bitrix24_bot_code,
                "TYPE": "O",
                "OPENLINE": "Y",
                "EVENT_MESSAGE_ADD": handler,
                "EVENT_WELCOME_MESSAGE": handler,
                "EVENT_BOT_DELETE": handler,
                "PROPERTIES": _bot_properties(bot_name, description or DEFAULT_BOT_DESCRIPTION),
            },
        )
        if not bot_id:
            raise RemoteApiError("imbot.register did not return a bot id", method="imbot.register")
        integration.bot_id = int(bot_id)
        integration.bot_code = settings.bitrix24_bot_code
        integration.bot_name = bot_name
        integration.bot_enabled = True
        integration.bot_persona_id = coerce_optional_uuid(persona_id, "persona_id")
        integration.bot_welcome_message = welcome_message
        commit(db, integration)
    logger.info("bitrix24_bot_registered integration_id=%s bot_id=%s", integration.id, integration.bot_id)
    return {"registered": True, "already_registered": False, "bot_id": integration.bot_id}


def unregister_bot(db: Session, integration_id) -> dict:
    with integration_lock(db, integration_id) as integration:
        bot_id = integration.bot_id
        if not bot_id:
            _clear_bot(integration)
            commit(db, integration)
            return {"removed": False, "bot_id": None, "message": "Bot is not registered"}
        client = oauth.portal_client(db, integration)
        try:
            client.call("imbot.unregister", {"BOT_ID": bot_id})
        except RemoteApiError as exc:
            if exc.remote_error not in _GONE_ERRORS:
                raise
            logger.info("bitrix24_bot_already_removed integration_id=%s bot_id=%s", integration.id, bot_id)
        _clear_bot(integration)
        commit(db, integration)
    logger.info("bitrix24_bot_unregistered integration_id=%s bot_id=%s", integration.id, bot_id)
    return {"removed": True, "bot_id": bot_id}


def bot_status(db: Session, integration_id) -> dict:
    integration = load_integration(db, integration_id)
    status = {
        "registered": False,
        "bot_id": integration.bot_id,
        "bot_name": integration.bot_name,
        "bot_enabled": integration.bot_enabled,
        "bot_persona_id": integration.bot_persona_id,
    }
    if not integration.bot_id:
        return status
    client = oauth.portal_client(db, integration)
    status["registered"] = _bot_exists(_fetch_bots(client), integration.bot_id)
    return status


def update_bot(db: Session, integration_id, name: str | None = None, description: str | None = None) -> dict:
    with integration_lock(db, integration_id) as integration:
        if not integration.bot_id:
            raise ValidationError("Bot is not registered", code="bot_not_registered")
        client = oauth.portal_client(db, integration)
        handler = callback_url(BOT_PATH, integration=str(integration.id))
        bot_name = name or integration.bot_name or DEFAULT_BOT_NAME
        client.call(
            "imbot.update",
            {
                "BOT_ID": integration.bot_id,
                "FIELDS": {
                    "EVENT_MESSAGE_ADD": handler,
                    "EVENT_WELCOME_MESSAGE": handler,
                    "PROPERTIES": _bot_properties(bot_name, description or DEFAULT_BOT_DESCRIPTION),
                },
            },
        )
        integration.bot_name = bot_name
        commit(db, integration)
    return {"updated": True, "bot_id": integration.bot_id, "bot_name": integration.bot_name}
