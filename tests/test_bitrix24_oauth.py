from datetime import UTC, datetime, timedelta

import pytest

from app.models.integration import Integration
from app.services.bitrix24 import oauth
from app.services.bitrix24.errors import RemoteApiError, TokenExpired, TokenRefreshFailed, ValidationError
from app.services.common import as_utc


class TestExpiry:
    def test_is_expired_boundary(self, integration):
        expires_at = as_utc(integration.token_expires_at)
        assert not oauth.is_expired(integration, expires_at - timedelta(seconds=1))
        assert oauth.is_expired(integration, expires_at)
        assert oauth.is_expired(integration, expires_at + timedelta(seconds=1))

    def test_missing_expiry_counts_as_expired(self):
        assert oauth.is_expired(Integration(token_expires_at=None))


class TestEnsureFresh:
    def test_token_one_second_from_expiry_is_not_refreshed(self, db_session, integration, portal):
        expires_at = as_utc(integration.token_expires_at)

        oauth.ensure_fresh(db_session, integration, now=expires_at - timedelta(seconds=1))

        assert portal.token_requests == []
        assert integration.access_token == "access-1"

    def test_expired_token_is_refreshed(self, db_session, integration, portal):
        expires_at = as_utc(integration.token_expires_at)

        refreshed = oauth.ensure_fresh(db_session, integration, now=expires_at)

        assert len(portal.token_requests) == 1
        request = portal.token_requests[0]
        assert request["grant_type"] == "refresh_token"
        assert request["refresh_token"] == "refresh-1"
        assert request["client_id"] == "local.app123"
        assert refreshed.access_token == "access-2"
        assert refreshed.refresh_token == "refresh-2"
        assert as_utc(refreshed.token_expires_at) > datetime.now(UTC) + timedelta(minutes=59)

    def test_rejected_refresh_is_sticky(self, db_session, integration, portal):
        integration.token_expires_at = datetime.now(UTC) - timedelta(minutes=5)
        db_session.commit()
        portal.token_response = {"error": "invalid_grant", "error_description": "Refresh token expired"}

        with pytest.raises(TokenRefreshFailed):
            oauth.ensure_fresh(db_session, integration)
        assert integration.token_refresh_failed is True
        assert len(portal.token_requests) == 1

        with pytest.raises(TokenRefreshFailed):
            oauth.ensure_fresh(db_session, integration)
        assert len(portal.token_requests) == 1

    def test_gateway_error_during_refresh_is_not_sticky(self, db_session, integration, portal):
        integration.token_expires_at = datetime.now(UTC) - timedelta(minutes=5)
        db_session.commit()
        portal.token_http_errors = [502]

        with pytest.raises(RemoteApiError) as excinfo:
            oauth.ensure_fresh(db_session, integration)
        assert excinfo.value.retryable is True
        db_session.refresh(integration)
        assert integration.token_refresh_failed is False

        refreshed = oauth.ensure_fresh(db_session, integration)
        assert refreshed.access_token == "access-2"
        assert len(portal.token_requests) == 2

    def test_server_error_body_is_not_a_rejection(self, db_session, integration, portal):
        integration.token_expires_at = datetime.now(UTC) - timedelta(minutes=5)
        db_session.commit()
        portal.token_response = {"error": "internal_error", "error_description": "Try later"}

        with pytest.raises(RemoteApiError) as excinfo:
            oauth.ensure_fresh(db_session, integration)
        assert excinfo.value.remote_error == "internal_error"
        db_session.refresh(integration)
        assert integration.token_refresh_failed is False

    def test_new_exchange_clears_sticky_failure(self, db_session, integration, portal):
        integration.token_refresh_failed = True
        db_session.commit()

        oauth.exchange_code(db_session, integration.domain, "auth-code-1")

        db_session.refresh(integration)
        assert integration.token_refresh_failed is False
        assert portal.token_requests[0]["grant_type"] == "authorization_code"
        assert portal.token_requests[0]["code"] == "auth-code-1"
        oauth.ensure_fresh(db_session, integration)

    def test_unauthorized_integration(self, db_session, integration):
        integration.access_token = None
        db_session.commit()
        with pytest.raises(TokenExpired):
            oauth.ensure_fresh(db_session, integration)

    def test_webhook_integration_never_refreshes(self, db_session, integration, portal):
        integration.access_token = None
        integration.webhook_url = "https://example.bitrix24.com/rest/1/abc123/"
        integration.token_expires_at = datetime.now(UTC) - timedelta(days=1)
        db_session.commit()

        oauth.ensure_fresh(db_session, integration)

        assert portal.token_requests == []


class TestCredentials:
    def test_save_client_credentials_returns_authorize_url(self, db_session, portal, workspace_id):
        integration, url = oauth.save_client_credentials(
            db_session, "https://new.bitrix24.com/", "local.999", "s3cret", workspace_id=workspace_id
        )

        assert integration.domain == "new.bitrix24.com"
        assert integration.oauth_pending is True
        assert integration.workspace_id == workspace_id
        assert url.startswith("https://new.bitrix24.com/oauth/authorize/?")
        assert "client_id=local.999" in url
        assert "state=new.bitrix24.com" in url

    def test_exchange_code_records_member_id(self, db_session, portal):
        oauth.save_client_credentials(db_session, "new.bitrix24.com", "local.999", "s3cret")
        portal.token_response = {
            "access_token": "fresh",
            "refresh_token": "fresh-r",
            "expires_in": 3600,
            "member_id": "member-777",
        }

        integration = oauth.exchange_code(db_session, "new.bitrix24.com", "code-9")

        assert integration.member_id == "member-777"
        assert integration.oauth_pending is False
        assert integration.client_endpoint == "https://new.bitrix24.com/rest/"

    def test_save_webhook_validates_url(self, db_session):
        with pytest.raises(ValidationError):
            oauth.save_webhook(db_session, "http://example.com/hook")

    def test_save_webhook_creates_integration(self, db_session, workspace_id, portal):
        integration = oauth.save_webhook(
            db_session, "https://hooks.bitrix24.com/rest/1/abc123", workspace_id=workspace_id
        )

        assert integration.webhook_url == "https://hooks.bitrix24.com/rest/1/abc123/"
        assert integration.domain == "hooks.bitrix24.com"
        assert integration.uses_webhook

        client = oauth.portal_client(db_session, integration)
        client.call("app.info")
        assert portal.calls[0][1].get("auth") is None
