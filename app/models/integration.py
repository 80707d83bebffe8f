import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class IntegrationPlatform(enum.Enum):
    bitrix24 = "bitrix24"


class ConnectorState(enum.Enum):
    unregistered = "unregistered"
    registered = "registered"
    activated = "activated"


class Integration(Base):
    """Link between one workspace and one remote CRM portal.

    Connector health is ``connector_state`` (unregistered, registered,
    activated). Reachability of the callback URLs is tracked separately in
    ``connection_verified_at`` and can be re-checked at any time.
    """

    __tablename__ = "integrations"
    __table_args__ = (UniqueConstraint("workspace_id", "platform", name="uq_integrations_workspace_platform"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), index=True)
    platform: Mapped[IntegrationPlatform] = mapped_column(
        Enum(IntegrationPlatform), default=IntegrationPlatform.bitrix24, nullable=False
    )
    name: Mapped[str] = mapped_column(String(160), default="Bitrix24", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Portal identity. member_id is the portal's own key; domain is only a lookup aid.
    domain: Mapped[str | None] = mapped_column(String(255), index=True)
    member_id: Mapped[str | None] = mapped_column(String(120), index=True)
    client_endpoint: Mapped[str | None] = mapped_column(String(500))
    application_token: Mapped[str | None] = mapped_column(String(255))

    # Credentials
    client_id: Mapped[str | None] = mapped_column(String(255))
    client_secret: Mapped[str | None] = mapped_column(String(255))
    access_token: Mapped[str | None] = mapped_column(Text)
    refresh_token: Mapped[str | None] = mapped_column(Text)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    token_refresh_failed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    oauth_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    webhook_url: Mapped[str | None] = mapped_column(String(500))

    # Connector
    connector_id: Mapped[str | None] = mapped_column(String(64))
    connector_state: Mapped[ConnectorState] = mapped_column(
        Enum(ConnectorState), default=ConnectorState.unregistered, nullable=False
    )
    registered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    activated_line_id: Mapped[int | None] = mapped_column(Integer)
    connection_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    instance_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))

    # Chat bot
    bot_id: Mapped[int | None] = mapped_column(Integer)
    bot_code: Mapped[str | None] = mapped_column(String(64))
    bot_name: Mapped[str | None] = mapped_column(String(160))
    bot_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    bot_persona_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    bot_welcome_message: Mapped[str | None] = mapped_column(Text)

    # Automation robot and SMS provider
    robot_registered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    robot_error: Mapped[str | None] = mapped_column(Text)
    sms_provider_registered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sms_provider_error: Mapped[str | None] = mapped_column(Text)

    auto_setup_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_setup_report: Mapped[dict | None] = mapped_column(JSON)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    installed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    uninstalled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    channel_mappings = relationship("ChannelMapping", back_populates="integration")

    __mapper_args__ = {"version_id_col": version}

    @property
    def registered(self) -> bool:
        return self.connector_state in (ConnectorState.registered, ConnectorState.activated)

    @property
    def activated(self) -> bool:
        return self.connector_state == ConnectorState.activated

    @property
    def uses_webhook(self) -> bool:
        return bool(self.webhook_url) and not self.access_token
