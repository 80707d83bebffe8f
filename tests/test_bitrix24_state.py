import pytest

from app.models.integration import ConnectorState, Integration
from app.services.bitrix24 import state
from app.services.bitrix24.errors import ValidationError


def _integration(connector_state=ConnectorState.unregistered) -> Integration:
    return Integration(connector_state=connector_state)


class TestTransitions:
    def test_register_then_activate(self):
        integration = _integration()
        state.mark_registered(integration, "openlines_abc")
        assert integration.registered
        assert not integration.activated
        assert integration.registered_at is not None

        state.mark_activated(integration, 3)
        assert integration.activated
        assert integration.activated_line_id == 3

    def test_cannot_activate_unregistered_connector(self):
        integration = _integration()
        with pytest.raises(ValidationError) as exc_info:
            state.mark_activated(integration, 1)
        assert exc_info.value.code == "invalid_connector_transition"
        assert integration.connector_state == ConnectorState.unregistered

    def test_mark_registered_keeps_activation(self):
        integration = _integration(ConnectorState.activated)
        integration.activated_line_id = 2
        state.mark_registered(integration, "openlines_abc")
        assert integration.activated
        assert integration.activated_line_id == 2

    def test_deactivate_other_line_keeps_tracked_activation(self):
        integration = _integration(ConnectorState.activated)
        integration.activated_line_id = 2
        state.mark_deactivated(integration, 5)
        assert integration.activated

        state.mark_deactivated(integration, 2)
        assert integration.connector_state == ConnectorState.registered
        assert integration.activated_line_id is None

    def test_unregister_clears_connection_fact(self):
        integration = _integration(ConnectorState.activated)
        state.mark_connection_verified(integration)
        state.mark_unregistered(integration)
        assert integration.connector_state == ConnectorState.unregistered
        assert integration.connection_verified_at is None


def test_connection_verification_does_not_move_state():
    integration = _integration(ConnectorState.registered)
    state.mark_connection_verified(integration)
    described = state.describe(integration)
    assert described["state"] == "registered"
    assert described["registered"] is True
    assert described["activated"] is False
    assert described["connection_verified"] is True


def test_allowed_transitions_table():
    assert state.can_transition(ConnectorState.unregistered, ConnectorState.registered)
    assert not state.can_transition(ConnectorState.unregistered, ConnectorState.activated)
    assert state.can_transition(ConnectorState.activated, ConnectorState.unregistered)
