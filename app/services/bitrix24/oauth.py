"""OAuth token management for Bitrix24 portals.

Tokens live on the Integration row. ``ensure_fresh`` is the precondition
every outbound call goes through: it refreshes exactly when
``now >= token_expires_at`` and refuses to talk to the portal once a
refresh has been rejected (``token_refresh_failed``) until the app is
authorized again.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from urllib.parse import urlencode

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.metrics import observe_token_refresh
from app.models.integration import Integration
from app.services.bitrix24 import client as rest_client
from app.services.bitrix24 import identity
from app.services.bitrix24.errors import (
    RemoteApiError,
    TokenExpired,
    TokenRefreshFailed,
    ValidationError,
)
from app.services.bitrix24.locks import commit, integration_lock
from app.services.common import as_utc, utcnow

logger = get_logger(__name__)

REJECTED_GRANT_ERRORS = frozenset(
    {"invalid_grant", "expired_token", "invalid_token", "invalid_client", "unauthorized_client", "NO_AUTH_FOUND"}
)


def is_expired(integration: Integration, now: datetime | None = None) -> bool:
    expires_at = as_utc(integration.token_expires_at)
    if expires_at is None:
        return True
    now = now or utcnow()
    margin = timedelta(seconds=settings.bitrix24_token_refresh_margin_seconds)
    return now >= expires_at - margin


def _expires_at(data: dict, now: datetime | None = None) -> datetime:
    raw = data.get("expires_in") or settings.bitrix24_default_token_ttl_seconds
    try:
        expires_in = int(raw)
    except (TypeError, ValueError):
        expires_in = settings.bitrix24_default_token_ttl_seconds
    return (now or utcnow()) + timedelta(seconds=expires_in)


def apply_tokens(integration: Integration, data: dict, now: datetime | None = None) -> None:
    """Overwrite stored tokens with a token-endpoint or install payload."""
    integration.access_token = data.get("access_token")
    if data.get("refresh_token"):
        integration.refresh_token = data["refresh_token"]
    integration.token_expires_at = _expires_at(data, now)
    integration.token_refresh_failed = False
    integration.oauth_pending = False
    if data.get("member_id"):
        integration.member_id = str(data["member_id"])
    if integration.domain:
        # Token servers sometimes answer with oauth.bitrix.info; the REST endpoint is always the portal
        integration.client_endpoint = f"https://{integration.domain}/rest/"


def _app_credentials(integration: Integration) -> tuple[str, str]:
    client_id = integration.client_id or settings.bitrix24_client_id
    client_secret = integration.client_secret or settings.bitrix24_client_secret
    if not client_id or not client_secret:
        raise ValidationError(
            "Bitrix24 application credentials are not configured",
            code="missing_app_credentials",
        )
    return client_id, client_secret


def _is_transient(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


def _token_request(method: str, url: str, *, params: dict | None = None, data: dict | None = None) -> dict:
    try:
        with rest_client.build_http_client() as http:
            response = http.request(method, url, params=params, data=data)
    except httpx.RequestError as exc:
        raise RemoteApiError(f"Token endpoint unreachable: {exc}", method="oauth.token", retryable=True) from exc
    try:
        body = response.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        raise RemoteApiError(
            f"Token endpoint returned HTTP {response.status_code} without JSON",
            method="oauth.token",
            retryable=_is_transient(response.status_code),
        )
    if body.get("error") or not body.get("access_token"):
        remote_error = str(body.get("error") or "no_access_token")
        raise RemoteApiError(
            body.get("error_description") or remote_error,
            remote_error=remote_error,
            method="oauth.token",
            retryable=_is_transient(response.status_code),
        )
    return body


def authorize_url(integration: Integration) -> str:
    client_id, _ = _app_credentials(integration)
    query = urlencode({"client_id": client_id, "state": integration.domain})
    return f"https://{integration.domain}/oauth/authorize/?{query}"


def save_client_credentials(
    db: Session,
    domain: str,
    client_id: str,
    client_secret: str,
    workspace_id=None,
) -> tuple[Integration, str]:
    """Store per-portal application credentials and start authorization."""
    if not client_id or not client_secret:
        raise ValidationError("client_id and client_secret are required")
    integration = identity.find_or_create_for_domain(db, domain, workspace_id=workspace_id)
    with integration_lock(db, integration.id) as locked:
        locked.client_id = client_id
        locked.client_secret = client_secret
        locked.oauth_pending = True
        commit(db, locked)
    logger.info("bitrix24_oauth_credentials_saved integration_id=%s domain=%s", locked.id, locked.domain)
    return locked, authorize_url(locked)


def exchange_code(db: Session, domain: str, code: str) -> Integration:
    """Trade an authorization code for tokens at ``https://{domain}/oauth/token/``."""
    if not code:
        raise ValidationError("Authorization code is required")
    integration = identity.resolve_for_oauth(db, domain)
    client_id, client_secret = _app_credentials(integration)
    with integration_lock(db, integration.id) as locked:
        data = _token_request(
            "POST",
            f"https://{locked.domain}/oauth/token/",
            data={
                "grant_type": "authorization_code",
                "client_id": client_id,
                "client_secret": client_secret,
                "code": code,
            },
        )
        apply_tokens(locked, data)
        locked.is_active = True
        commit(db, locked)
    logger.info("bitrix24_oauth_exchanged integration_id=%s member_id=%s", locked.id, locked.member_id)
    return locked


def refresh(
    db: Session,
    integration: Integration,
    *,
    force: bool = False,
    now: datetime | None = None,
) -> Integration:
    """Refresh the access token.

    Expiry is re-checked after the lock is taken so a request that queued
    behind another refresh keeps the newer token instead of replacing it.
    """
    with integration_lock(db, integration.id) as locked:
        if not force and not is_expired(locked, now):
            observe_token_refresh("skipped")
            return locked
        if not locked.refresh_token:
            raise TokenExpired("No refresh token stored, authorize the application again", code="no_refresh_token")
        client_id, client_secret = _app_credentials(locked)
        try:
            data = _token_request(
                "GET",
                settings.bitrix24_oauth_url,
                params={
                    "grant_type": "refresh_token",
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "refresh_token": locked.refresh_token,
                },
            )
        except RemoteApiError as exc:
            if exc.retryable or exc.remote_error not in REJECTED_GRANT_ERRORS:
                # The refresh token itself was not rejected
                observe_token_refresh("failed")
                raise
            locked.token_refresh_failed = True
            commit(db, locked)
            observe_token_refresh("failed")
            logger.warning(
                "bitrix24_token_refresh_failed integration_id=%s error=%s",
                locked.id,
                exc.remote_error,
            )
            raise TokenRefreshFailed(
                f"Token refresh rejected by Bitrix24 ({exc.detail}), re-authorize the application"
            ) from exc
        apply_tokens(locked, data)
        commit(db, locked)
    observe_token_refresh("ok")
    logger.info("bitrix24_token_refreshed integration_id=%s", locked.id)
    return locked


def ensure_fresh(db: Session, integration: Integration, now: datetime | None = None) -> Integration:
    if integration.uses_webhook:
        return integration
    if not integration.access_token:
        raise TokenExpired("Integration is not authorized yet", code="not_authorized")
    if integration.token_refresh_failed:
        raise TokenRefreshFailed()
    if not is_expired(integration, now):
        return integration
    return refresh(db, integration, now=now)


def save_webhook(db: Session, webhook_url: str, workspace_id=None, domain: str | None = None) -> Integration:
    """Store an inbound-webhook URL as the portal credential instead of OAuth."""
    url = (webhook_url or "").strip()
    if not url.startswith("https://") or "/rest/" not in url:
        raise ValidationError("Webhook URL must look like https://<portal>/rest/<user>/<code>/")
    url = url.rstrip("/") + "/"
    webhook_domain = identity.normalize_domain(url)
    if domain and identity.normalize_domain(domain) != webhook_domain:
        raise ValidationError("Webhook URL does not belong to the given portal domain")
    integration = identity.find_or_create_for_domain(db, webhook_domain, workspace_id=workspace_id)
    with integration_lock(db, integration.id) as locked:
        locked.webhook_url = url
        locked.is_active = True
        if workspace_id and not locked.workspace_id:
            locked.workspace_id = workspace_id
        commit(db, locked)
    logger.info("bitrix24_webhook_saved integration_id=%s domain=%s", locked.id, webhook_domain)
    return locked


def portal_client(db: Session, integration: Integration) -> rest_client.Bitrix24Client:
    """REST client for the integration's portal, refreshing OAuth tokens first."""
    if integration.access_token:
        integration = ensure_fresh(db, integration)
        endpoint = integration.client_endpoint or f"https://{integration.domain}/rest/"
        return rest_client.Bitrix24Client(endpoint, integration.access_token)
    if integration.webhook_url:
        return rest_client.Bitrix24Client(integration.webhook_url)
    raise TokenExpired("Integration has no OAuth tokens or webhook configured", code="not_authorized")
