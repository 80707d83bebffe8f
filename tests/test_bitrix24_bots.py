import uuid

import pytest

from app.services.bitrix24 import bots
from app.services.bitrix24.errors import RemoteApiError, ValidationError


def test_register_bot_stores_identifier(db_session, integration, portal):
    persona_id = uuid.uuid4()

    result = bots.register_bot(
        db_session, integration.id, "Ana", "Sales assistant", persona_id=str(persona_id), welcome_message="Hi!"
    )

    assert result == {"registered": True, "already_registered": False, "bot_id": 100}
    db_session.refresh(integration)
    assert integration.bot_id == 100
    assert integration.bot_enabled is True
    assert integration.bot_persona_id == persona_id
    assert integration.bot_welcome_message == "Hi!"
    register_call = portal.calls[0][1]
    assert register_call["TYPE"] == "O"
    assert register_call["OPENLINE"] == "Y"
    assert register_call["PROPERTIES"]["NAME"] == "Ana"


def test_register_bot_is_idempotent(db_session, integration, portal):
    bots.register_bot(db_session, integration.id)

    result = bots.register_bot(db_session, integration.id)

    assert result["already_registered"] is True
    assert portal.methods().count("imbot.register") == 1


def test_unregister_clears_all_bot_config(db_session, integration, portal):
    bots.register_bot(db_session, integration.id, persona_id=uuid.uuid4(), welcome_message="Hello")

    result = bots.unregister_bot(db_session, integration.id)

    assert result == {"removed": True, "bot_id": 100}
    db_session.refresh(integration)
    assert integration.bot_id is None
    assert integration.bot_enabled is False
    assert integration.bot_persona_id is None
    assert integration.bot_welcome_message is None
    assert portal.bots == {}


def test_unregister_bot_missing_in_portal_counts_as_removed(db_session, integration, portal):
    bots.register_bot(db_session, integration.id)
    portal.fail("imbot.unregister", "BOT_NOT_FOUND", "Bot not found")

    result = bots.unregister_bot(db_session, integration.id)

    assert result["removed"] is True
    db_session.refresh(integration)
    assert integration.bot_id is None


def test_unregister_other_remote_error_propagates(db_session, integration, portal):
    bots.register_bot(db_session, integration.id)
    portal.fail("imbot.unregister", "ACCESS_DENIED", "Access denied")

    with pytest.raises(RemoteApiError):
        bots.unregister_bot(db_session, integration.id)

    db_session.refresh(integration)
    assert integration.bot_id == 100


def test_unregister_without_bot(db_session, integration, portal):
    result = bots.unregister_bot(db_session, integration.id)
    assert result["removed"] is False
    assert portal.calls == []


def test_bot_status_checks_portal(db_session, integration, portal):
    bots.register_bot(db_session, integration.id)
    assert bots.bot_status(db_session, integration.id)["registered"] is True

    portal.bots.clear()
    assert bots.bot_status(db_session, integration.id)["registered"] is False


def test_update_bot(db_session, integration, portal):
    bots.register_bot(db_session, integration.id, "Ana")

    result = bots.update_bot(db_session, integration.id, "Bia")

    assert result["bot_name"] == "Bia"
    assert portal.bots[100]["NAME"] == "Bia"


def test_update_requires_registered_bot(db_session, integration):
    with pytest.raises(ValidationError):
        bots.update_bot(db_session, integration.id, "Bia")


def test_bot_independent_of_connector(db_session, integration, portal):
    bots.register_bot(db_session, integration.id)
    db_session.refresh(integration)
    assert integration.bot_id == 100
    assert integration.registered is False
