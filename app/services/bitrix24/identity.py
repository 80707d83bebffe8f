"""Portal identity resolution.

A portal is identified by its ``member_id``; the domain is stored alongside
it but is never written into ``member_id``. Lookups prefer ``member_id`` and
only fall back to the domain when none was supplied. A domain lookup that
matches more than one Integration raises ``AmbiguousIdentity`` instead of
picking one.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.channel_mapping import ChannelMapping
from app.models.instance import Instance, InstanceStatus
from app.models.integration import Integration, IntegrationPlatform
from app.models.linking_token import LinkingToken
from app.services.bitrix24.errors import (
    AmbiguousIdentity,
    ConflictError,
    IdentityNotFound,
    NotFoundError,
    TokenInvalid,
    ValidationError,
)
from app.services.common import coerce_uuid, utcnow

logger = get_logger(__name__)

_TOKEN_LENGTH = 8


@dataclass(frozen=True)
class PortalIdentity:
    member_id: str | None
    domain: str | None

    @property
    def is_empty(self) -> bool:
        return not self.member_id and not self.domain


def normalize_domain(value: str | None) -> str | None:
    if not value:
        return None
    domain = str(value).strip().lower()
    for scheme in ("https://", "http://"):
        if domain.startswith(scheme):
            domain = domain[len(scheme):]
    domain = domain.split("/", 1)[0].rstrip("/")
    return domain or None


def _platform_query(db: Session):
    return db.query(Integration).filter(Integration.platform == IntegrationPlatform.bitrix24)


def find_by_member_id(db: Session, member_id: str | None) -> Integration | None:
    if not member_id:
        return None
    return _platform_query(db).filter(Integration.member_id == str(member_id)).first()


def find_by_domain(db: Session, domain: str | None) -> Integration | None:
    normalized = normalize_domain(domain)
    if not normalized:
        return None
    matches = _platform_query(db).filter(Integration.domain == normalized).all()
    if len(matches) > 1:
        raise AmbiguousIdentity(
            f"Domain {normalized} matches {len(matches)} integrations, supply member_id",
        )
    return matches[0] if matches else None


def find_for_identity(db: Session, identity: PortalIdentity) -> Integration | None:
    integration = find_by_member_id(db, identity.member_id)
    if integration:
        return integration
    if identity.member_id:
        # A known member_id that is not stored yet may still match an older row keyed by domain only
        by_domain = find_by_domain(db, identity.domain)
        if by_domain and by_domain.member_id and by_domain.member_id != identity.member_id:
            return None
        return by_domain
    return find_by_domain(db, identity.domain)


def find_for_workspace(db: Session, workspace_id) -> Integration | None:
    return _platform_query(db).filter(Integration.workspace_id == coerce_uuid(workspace_id, "workspace_id")).first()


def find_or_create_for_domain(db: Session, domain: str, workspace_id=None) -> Integration:
    normalized = normalize_domain(domain)
    if not normalized:
        raise ValidationError("Portal domain is required")
    integration = find_by_domain(db, normalized)
    if integration is None and workspace_id:
        integration = find_for_workspace(db, workspace_id)
        if integration and integration.domain not in (None, normalized):
            raise ConflictError(
                f"Workspace is already linked to portal {integration.domain}",
                code="workspace_already_linked",
            )
    if integration is None:
        integration = Integration(
            platform=IntegrationPlatform.bitrix24,
            workspace_id=coerce_uuid(workspace_id, "workspace_id") if workspace_id else None,
            domain=normalized,
            client_endpoint=f"https://{normalized}/rest/",
            is_active=True,
        )
        db.add(integration)
        db.commit()
        db.refresh(integration)
        logger.info("bitrix24_integration_created integration_id=%s domain=%s", integration.id, normalized)
    elif integration.domain is None:
        integration.domain = normalized
        integration.client_endpoint = integration.client_endpoint or f"https://{normalized}/rest/"
        db.commit()
        db.refresh(integration)
    return integration


def resolve_for_oauth(db: Session, state: str) -> Integration:
    """Find the Integration an OAuth redirect belongs to (``state`` is member id or domain)."""
    integration = find_by_member_id(db, state) or find_by_domain(db, state)
    if not integration:
        raise IdentityNotFound(f"No pending authorization for {state}")
    return integration


def resolve_by_callback(params: dict) -> PortalIdentity:
    """Read the portal identity out of an install, event or placement callback."""
    auth = params.get("auth") if isinstance(params.get("auth"), dict) else {}
    member_id = params.get("member_id") or auth.get("member_id") or params.get("MEMBER_ID")
    domain = params.get("DOMAIN") or params.get("domain") or auth.get("domain")
    return PortalIdentity(
        member_id=str(member_id) if member_id else None,
        domain=normalize_domain(domain),
    )


def _ensure_workspace_free(db: Session, workspace_id: uuid.UUID, integration: Integration | None) -> None:
    existing = find_for_workspace(db, workspace_id)
    if existing and (integration is None or existing.id != integration.id):
        raise ConflictError(
            f"Workspace is already linked to portal {existing.domain or existing.member_id}",
            code="workspace_already_linked",
        )


def connected_instances(db: Session, workspace_id) -> list[Instance]:
    return (
        db.query(Instance)
        .filter(Instance.workspace_id == coerce_uuid(workspace_id, "workspace_id"))
        .filter(Instance.status == InstanceStatus.connected)
        .order_by(Instance.name)
        .all()
    )


def get_workspace_instance(db: Session, workspace_id, instance_id) -> Instance:
    instance = db.get(Instance, coerce_uuid(instance_id, "instance_id"))
    if not instance or (workspace_id and instance.workspace_id != coerce_uuid(workspace_id, "workspace_id")):
        raise NotFoundError("Instance not found in this workspace", code="instance_not_found")
    return instance


def generate_token_value() -> str:
    return uuid.uuid4().hex[:_TOKEN_LENGTH].upper()


def issue_linking_token(db: Session, workspace_id, ttl_days: int | None = None) -> LinkingToken:
    """Create a fresh linking token; older unused tokens of the workspace stop working."""
    wid = coerce_uuid(workspace_id, "workspace_id")
    now = utcnow()
    (
        db.query(LinkingToken)
        .filter(LinkingToken.workspace_id == wid)
        .filter(LinkingToken.platform == IntegrationPlatform.bitrix24)
        .filter(LinkingToken.is_used.is_(False))
        .update({LinkingToken.is_used: True, LinkingToken.used_at: now, LinkingToken.used_by: "superseded"})
    )
    value = generate_token_value()
    while db.query(LinkingToken.id).filter(LinkingToken.token == value).first():
        value = generate_token_value()
    token = LinkingToken(
        workspace_id=wid,
        platform=IntegrationPlatform.bitrix24,
        token=value,
        expires_at=now + timedelta(days=ttl_days or settings.linking_token_ttl_days),
    )
    db.add(token)
    db.commit()
    db.refresh(token)
    logger.info("bitrix24_linking_token_issued workspace_id=%s expires_at=%s", wid, token.expires_at)
    return token


def resolve_by_token(db: Session, token: str, member_id: str | None = None, domain: str | None = None) -> dict:
    """Consume a linking token and bind its workspace to the calling portal."""
    value = (token or "").strip().upper()
    identity = PortalIdentity(member_id=str(member_id) if member_id else None, domain=normalize_domain(domain))
    if not value:
        raise ValidationError("Token is required")
    if identity.is_empty:
        raise ValidationError("member_id or domain is required to link a portal")

    now = utcnow()
    record = (
        db.query(LinkingToken)
        .filter(LinkingToken.token == value)
        .filter(LinkingToken.platform == IntegrationPlatform.bitrix24)
        .filter(LinkingToken.is_used.is_(False))
        .filter(LinkingToken.expires_at > now)
        .first()
    )
    if not record:
        raise TokenInvalid()

    integration = find_for_identity(db, identity)
    _ensure_workspace_free(db, record.workspace_id, integration)

    # Conditional update so two concurrent validations cannot both consume the token
    claimed = (
        db.query(LinkingToken)
        .filter(LinkingToken.id == record.id)
        .filter(LinkingToken.is_used.is_(False))
        .update(
            {
                LinkingToken.is_used: True,
                LinkingToken.used_at: now,
                LinkingToken.used_by: identity.member_id or identity.domain,
            },
            synchronize_session=False,
        )
    )
    if claimed != 1:
        db.rollback()
        raise TokenInvalid()

    if integration is None:
        integration = Integration(platform=IntegrationPlatform.bitrix24, is_active=True)
        db.add(integration)
    integration.workspace_id = record.workspace_id
    if identity.member_id:
        integration.member_id = identity.member_id
    if identity.domain:
        integration.domain = identity.domain
        integration.client_endpoint = integration.client_endpoint or f"https://{identity.domain}/rest/"
    db.commit()
    db.refresh(integration)
    logger.info(
        "bitrix24_workspace_linked integration_id=%s workspace_id=%s via=token",
        integration.id,
        integration.workspace_id,
    )

    mappings = (
        db.query(ChannelMapping)
        .filter(ChannelMapping.integration_id == integration.id)
        .filter(ChannelMapping.is_active.is_(True))
        .all()
    )
    mapped_ids = {mapping.instance_id for mapping in mappings}
    return {
        "integration": integration,
        "workspace_id": integration.workspace_id,
        "instances": connected_instances(db, integration.workspace_id),
        "mapped_instance_ids": mapped_ids,
        "mappings": mappings,
    }


def resolve_by_domain(db: Session, domain: str, workspace_id) -> Integration:
    """Bind an already installed portal to the workspace the user picked."""
    normalized = normalize_domain(domain)
    if not normalized:
        raise ValidationError("Portal domain is required")
    wid = coerce_uuid(workspace_id, "workspace_id")
    integration = find_by_domain(db, normalized)
    if not integration:
        raise IdentityNotFound(f"Portal {normalized} has not installed the application")
    _ensure_workspace_free(db, wid, integration)
    previous = integration.workspace_id
    integration.workspace_id = wid
    integration.is_active = True
    db.commit()
    db.refresh(integration)
    logger.info(
        "bitrix24_workspace_linked integration_id=%s workspace_id=%s previous_workspace_id=%s via=domain",
        integration.id,
        wid,
        previous,
    )
    return integration
