"""Create messaging tables for configs, conversations, messages and rules."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "001_create_messaging_tables"
down_revision = None
branch_labels = None
depends_on = None


_UUID = postgresql.UUID(as_uuid=True)
_JSONB = postgresql.JSONB(astext_type=sa.Text())


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    """Create the ``messaging_*`` tables and their lookup indexes.

    Every table carries ``tenant_id``; the full record is stored in
    ``payload`` and the columns next to it exist for filtering and
    uniqueness.
    """

    op.create_table(
        "messaging_configs",
        sa.Column("id", _UUID, primary_key=True, nullable=False),
        sa.Column("tenant_id", _UUID, nullable=False),
        sa.Column("wa_verify_token", sa.String(length=255), nullable=True),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")
        ),
        sa.Column("payload", _JSONB, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_messaging_configs_tenant_id", "messaging_configs", ["tenant_id"])

    op.create_table(
        "messaging_conversations",
        sa.Column("id", _UUID, primary_key=True, nullable=False),
        sa.Column("tenant_id", _UUID, nullable=False),
        sa.Column(
            "config_id",
            _UUID,
            sa.ForeignKey("messaging_configs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("contact_id", sa.String(length=320), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload", _JSONB, nullable=False),
        *_timestamps(),
    )
    # One conversation per contact and channel within a config.
    op.create_index(
        "ix_messaging_conversations_contact_unique",
        "messaging_conversations",
        ["config_id", "channel", "contact_id"],
        unique=True,
    )
    op.create_index(
        "ix_messaging_conversations_status",
        "messaging_conversations",
        ["config_id", "status", "last_message_at"],
    )
    op.create_index(
        "ix_messaging_conversations_tenant_id", "messaging_conversations", ["tenant_id"]
    )

    op.create_table(
        "messaging_messages",
        sa.Column("id", _UUID, primary_key=True, nullable=False),
        sa.Column("tenant_id", _UUID, nullable=False),
        sa.Column(
            "conversation_id",
            _UUID,
            sa.ForeignKey("messaging_conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("external_message_id", sa.String(length=255), nullable=True),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("payload", _JSONB, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )
    op.create_index(
        "ix_messaging_messages_external_unique",
        "messaging_messages",
        ["channel", "external_message_id"],
        unique=True,
        postgresql_where=sa.text("external_message_id IS NOT NULL"),
    )
    op.create_index(
        "ix_messaging_messages_conversation_sequence",
        "messaging_messages",
        ["conversation_id", "sequence"],
        unique=True,
    )
    op.create_index("ix_messaging_messages_tenant_id", "messaging_messages", ["tenant_id"])

    op.create_table(
        "messaging_templates",
        sa.Column("id", _UUID, primary_key=True, nullable=False),
        sa.Column("tenant_id", _UUID, nullable=False),
        sa.Column(
            "config_id",
            _UUID,
            sa.ForeignKey("messaging_configs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("approval_status", sa.String(length=32), nullable=False),
        sa.Column("payload", _JSONB, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_messaging_templates_config_id", "messaging_templates", ["config_id"])
    op.create_index("ix_messaging_templates_tenant_id", "messaging_templates", ["tenant_id"])

    op.create_table(
        "messaging_quick_replies",
        sa.Column("tenant_id", _UUID, nullable=False),
        sa.Column("shortcut", sa.String(length=128), nullable=False),
        sa.Column("payload", _JSONB, nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("tenant_id", "shortcut"),
    )

    op.create_table(
        "messaging_automations",
        sa.Column("id", _UUID, primary_key=True, nullable=False),
        sa.Column("tenant_id", _UUID, nullable=False),
        sa.Column(
            "config_id",
            _UUID,
            sa.ForeignKey("messaging_configs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("trigger_type", sa.String(length=32), nullable=False),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")
        ),
        sa.Column("payload", _JSONB, nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_messaging_automations_config_trigger",
        "messaging_automations",
        ["config_id", "trigger_type", "is_active"],
    )
    op.create_index(
        "ix_messaging_automations_tenant_id", "messaging_automations", ["tenant_id"]
    )


def downgrade() -> None:
    """Drop the ``messaging_*`` tables and related indexes."""

    op.drop_index("ix_messaging_automations_tenant_id", table_name="messaging_automations")
    op.drop_index(
        "ix_messaging_automations_config_trigger", table_name="messaging_automations"
    )
    op.drop_table("messaging_automations")

    op.drop_table("messaging_quick_replies")

    op.drop_index("ix_messaging_templates_tenant_id", table_name="messaging_templates")
    op.drop_index("ix_messaging_templates_config_id", table_name="messaging_templates")
    op.drop_table("messaging_templates")

    op.drop_index("ix_messaging_messages_tenant_id", table_name="messaging_messages")
    op.drop_index(
        "ix_messaging_messages_conversation_sequence", table_name="messaging_messages"
    )
    op.drop_index("ix_messaging_messages_external_unique", table_name="messaging_messages")
    op.drop_table("messaging_messages")

    op.drop_index(
        "ix_messaging_conversations_tenant_id", table_name="messaging_conversations"
    )
    op.drop_index("ix_messaging_conversations_status", table_name="messaging_conversations")
    op.drop_index(
        "ix_messaging_conversations_contact_unique", table_name="messaging_conversations"
    )
    op.drop_table("messaging_conversations")

    op.drop_index("ix_messaging_configs_tenant_id", table_name="messaging_configs")
    op.drop_table("messaging_configs")
