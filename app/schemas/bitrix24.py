from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.instance import InstanceStatus
from app.models.integration import ConnectorState, IntegrationPlatform


class IntegrationRead(BaseModel):
    """Integration state as shown to clients. Credentials are never part of it."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID | None = None
    platform: IntegrationPlatform
    name: str
    is_active: bool
    domain: str | None = None
    member_id: str | None = None

    connector_id: str | None = None
    connector_state: ConnectorState
    registered: bool
    activated: bool
    activated_line_id: int | None = None
    connection_verified_at: datetime | None = None
    instance_id: UUID | None = None

    token_expires_at: datetime | None = None
    token_refresh_failed: bool
    oauth_pending: bool
    uses_webhook: bool

    bot_id: int | None = None
    bot_name: str | None = None
    bot_enabled: bool
    bot_persona_id: UUID | None = None
    robot_registered: bool
    robot_error: str | None = None
    sms_provider_registered: bool
    sms_provider_error: str | None = None

    auto_setup_completed: bool
    last_setup_report: dict | None = None
    last_sync_at: datetime | None = None
    installed_at: datetime | None = None
    uninstalled_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class InstanceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    name: str
    phone_number: str | None = None
    status: InstanceStatus


class ChannelMappingCreate(BaseModel):
    instance_id: UUID
    line_id: int = Field(ge=1)
    line_name: str | None = Field(default=None, max_length=255)


class ChannelMappingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    integration_id: UUID
    workspace_id: UUID
    instance_id: UUID
    line_id: int
    line_name: str | None = None
    is_active: bool
    created_at: datetime


class LinkingTokenCreate(BaseModel):
    workspace_id: UUID
    ttl_days: int | None = Field(default=None, ge=1, le=90)


class LinkingTokenRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    token: str
    workspace_id: UUID
    expires_at: datetime


class ActionRequest(BaseModel):
    """Named action plus its inputs; every extra key is passed to the action."""

    model_config = ConfigDict(extra="allow")

    action: str = Field(min_length=1, max_length=80)

    @model_validator(mode="after")
    def _normalize_action(self) -> ActionRequest:
        self.action = self.action.strip()
        if not self.action:
            raise ValueError("action must not be blank")
        return self

    @property
    def params(self) -> dict:
        return dict(self.model_extra or {})
