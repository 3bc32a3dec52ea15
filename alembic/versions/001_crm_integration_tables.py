"""Create CRM integration, sync log and recipient tables.

Revision ID: 001_crm_integration
Revises:
Create Date: 2026-10-19

Creates three tables:
- crm_integrations: one CRM connection per organization
- sync_logs: audit trail of sync work (full, incremental, webhook, push)
- recipients: local canonical recipient, unique per CRM record

No foreign key from sync_logs to crm_integrations: integration rows are
never hard-deleted, and referential integrity stays in the repository.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_crm_integration"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    # ── crm_integrations table ──────────────────────────────────────────

    op.create_table(
        "crm_integrations",
        _id_column(),
        sa.Column("organization_id", sa.String(100), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column(
            "status",
            sa.String(20),
            server_default=sa.text("'CONNECTED'"),
            nullable=False,
        ),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("instance_url", sa.String(500), nullable=True),
        sa.Column("webhook_id", sa.String(200), nullable=True),
        sa.Column("webhook_secret", sa.String(200), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_status", sa.String(20), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("sync_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "is_demo",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", name="uq_crm_integration_organization"),
    )
    op.create_index(
        "ix_crm_integrations_provider_status",
        "crm_integrations",
        ["provider", "status"],
    )

    # ── sync_logs table ─────────────────────────────────────────────────

    op.create_table(
        "sync_logs",
        _id_column(),
        sa.Column("integration_id", UUID(as_uuid=True), nullable=False),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("operation", sa.String(30), nullable=False),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column(
            "status",
            sa.String(20),
            server_default=sa.text("'started'"),
            nullable=False,
        ),
        sa.Column("records_processed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("records_created", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("records_updated", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("records_skipped", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("records_failed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "metadata",
            sa.JSON(),
            server_default=sa.text("'{}'::json"),
            nullable=False,
        ),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_sync_logs_integration_started",
        "sync_logs",
        ["integration_id", "started_at"],
    )

    # ── recipients table ────────────────────────────────────────────────

    op.create_table(
        "recipients",
        _id_column(),
        sa.Column("organization_id", sa.String(100), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("first_name", sa.String(200), nullable=True),
        sa.Column("last_name", sa.String(200), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("company", sa.String(300), nullable=True),
        sa.Column("job_title", sa.String(200), nullable=True),
        sa.Column("linkedin_url", sa.String(500), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("lead_status", sa.String(30), nullable=True),
        sa.Column("lead_source", sa.String(30), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), server_default=sa.text("'[]'::json"), nullable=False),
        sa.Column(
            "custom_fields",
            sa.JSON(),
            server_default=sa.text("'{}'::json"),
            nullable=False,
        ),
        sa.Column(
            "do_not_send",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column("external_id", sa.String(200), nullable=True),
        sa.Column("external_source", sa.String(20), nullable=True),
        sa.Column("external_url", sa.String(500), nullable=True),
        sa.Column("external_entity_type", sa.String(20), nullable=True),
        sa.Column("external_object", sa.String(20), nullable=True),
        sa.Column("sync_status", sa.String(20), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "organization_id",
            "external_source",
            "external_object",
            "external_id",
            name="uq_recipient_org_external",
        ),
    )
    op.create_index("ix_recipients_organization", "recipients", ["organization_id"])


def downgrade() -> None:
    op.drop_index("ix_recipients_organization", table_name="recipients")
    op.drop_table("recipients")
    op.drop_index("ix_sync_logs_integration_started", table_name="sync_logs")
    op.drop_table("sync_logs")
    op.drop_index("ix_crm_integrations_provider_status", table_name="crm_integrations")
    op.drop_table("crm_integrations")
