"""Create instances, integrations, linking_tokens and channel_mappings.

Revision ID: a3f1c2d4e5b6
Revises:
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "a3f1c2d4e5b6"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    instancestatus = sa.Enum("connected", "disconnected", "pending", name="instancestatus")
    integrationplatform = sa.Enum("bitrix24", name="integrationplatform")
    connectorstate = sa.Enum("unregistered", "registered", "activated", name="connectorstate")

    op.create_table(
        "instances",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("phone_number", sa.String(length=40), nullable=True),
        sa.Column("status", instancestatus, nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_instances_workspace_id", "instances", ["workspace_id"])

    op.create_table(
        "integrations",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("platform", integrationplatform, nullable=False, server_default="bitrix24"),
        sa.Column("name", sa.String(length=160), nullable=False, server_default="Bitrix24"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("domain", sa.String(length=255), nullable=True),
        sa.Column("member_id", sa.String(length=120), nullable=True),
        sa.Column("client_endpoint", sa.String(length=500), nullable=True),
        sa.Column("application_token", sa.String(length=255), nullable=True),
        sa.Column("client_id", sa.String(length=255), nullable=True),
        sa.Column("client_secret", sa.String(length=255), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("token_refresh_failed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("oauth_pending", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("webhook_url", sa.String(length=500), nullable=True),
        sa.Column("connector_id", sa.String(length=64), nullable=True),
        sa.Column("connector_state", connectorstate, nullable=False, server_default="unregistered"),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activated_line_id", sa.Integer(), nullable=True),
        sa.Column("connection_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("instance_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("bot_id", sa.Integer(), nullable=True),
        sa.Column("bot_code", sa.String(length=64), nullable=True),
        sa.Column("bot_name", sa.String(length=160), nullable=True),
        sa.Column("bot_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("bot_persona_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("bot_welcome_message", sa.Text(), nullable=True),
        sa.Column("robot_registered", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("robot_error", sa.Text(), nullable=True),
        sa.Column("sms_provider_registered", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("sms_provider_error", sa.Text(), nullable=True),
        sa.Column("auto_setup_completed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("last_setup_report", sa.JSON(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("installed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("uninstalled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("workspace_id", "platform", name="uq_integrations_workspace_platform"),
    )
    op.create_index("ix_integrations_workspace_id", "integrations", ["workspace_id"])
    op.create_index("ix_integrations_domain", "integrations", ["domain"])
    op.create_index("ix_integrations_member_id", "integrations", ["member_id"])

    op.create_table(
        "linking_tokens",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("platform", integrationplatform, nullable=False, server_default="bitrix24"),
        sa.Column("token", sa.String(length=16), nullable=False, unique=True),
        sa.Column("is_used", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_by", sa.String(length=120), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_linking_tokens_workspace_id", "linking_tokens", ["workspace_id"])

    op.create_table(
        "channel_mappings",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "integration_id",
            sa.dialects.postgresql.UUID(as_uuid=True),
            sa.ForeignKey("integrations.id"),
            nullable=False,
        ),
        sa.Column("workspace_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "instance_id",
            sa.dialects.postgresql.UUID(as_uuid=True),
            sa.ForeignKey("instances.id"),
            nullable=False,
        ),
        sa.Column("line_id", sa.Integer(), nullable=False),
        sa.Column("line_name", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("integration_id", "instance_id", name="uq_channel_mappings_integration_instance"),
        sa.UniqueConstraint("integration_id", "line_id", name="uq_channel_mappings_integration_line"),
    )
    op.create_index("ix_channel_mappings_integration_id", "channel_mappings", ["integration_id"])
    op.create_index("ix_channel_mappings_workspace_id", "channel_mappings", ["workspace_id"])


def downgrade() -> None:
    op.drop_index("ix_channel_mappings_workspace_id", table_name="channel_mappings")
    op.drop_index("ix_channel_mappings_integration_id", table_name="channel_mappings")
    op.drop_table("channel_mappings")
    op.drop_index("ix_linking_tokens_workspace_id", table_name="linking_tokens")
    op.drop_table("linking_tokens")
    op.drop_index("ix_integrations_member_id", table_name="integrations")
    op.drop_index("ix_integrations_domain", table_name="integrations")
    op.drop_index("ix_integrations_workspace_id", table_name="integrations")
    op.drop_table("integrations")
    op.drop_index("ix_instances_workspace_id", table_name="instances")
    op.drop_table("instances")
    sa.Enum(name="connectorstate").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="integrationplatform").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="instancestatus").drop(op.get_bind(), checkfirst=True)
