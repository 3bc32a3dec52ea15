"""Persistence models for the CRM integration layer.

Three SQLAlchemy models:
- IntegrationModel: one CRM connection per organization (unique organization_id)
- SyncLogModel: append-only audit record of one unit of sync work
- RecipientModel: the local canonical entity every CRM record kind lands in

Recipients are unique on (organization_id, external_id, external_source).
Postgres treats NULLs as distinct, so locally created recipients
(external_id IS NULL) never collide.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.crmsync.core.database import Base


class IntegrationModel(Base):
    """An organization's connection to exactly one external CRM.

    Access and refresh tokens are stored Fernet-encrypted. Rows are never
    hard-deleted: disconnect moves the row to DISCONNECTED and clears the
    tokens so the sync log history keeps its owner.
    """

    __tablename__ = "crm_integrations"
    __table_args__ = (
        UniqueConstraint("organization_id", name="uq_crm_integration_organization"),
        Index("ix_crm_integrations_provider_status", "provider", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="CONNECTED", server_default=text("'CONNECTED'")
    )
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    instance_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    webhook_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_sync_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_demo: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class SyncLogModel(Base):
    """Audit record for one unit of sync work.

    Created in ``started`` and finalized exactly once to ``completed`` or
    ``failed``. The repository refuses to touch a finalized row.
    """

    __tablename__ = "sync_logs"
    __table_args__ = (
        Index("ix_sync_logs_integration_started", "integration_id", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    integration_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    operation: Mapped[str] = mapped_column(String(30), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="started", server_default=text("'started'")
    )
    records_processed: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    records_created: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    records_updated: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    records_skipped: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    records_failed: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict] = mapped_column(
        "metadata", JSON, default=dict, server_default=text("'{}'::json")
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class RecipientModel(Base):
    """Local canonical recipient.

    CRM leads, contacts, companies and deals all map onto this table;
    ``external_entity_type`` remembers which CRM object a row came from so
    pushes go back to the right endpoint. ``external_object`` is the id
    namespace (person, company or deal) that makes a provider id unique.
    """

    __tablename__ = "recipients"
    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "external_source",
            "external_object",
            "external_id",
            name="uq_recipient_org_external",
        ),
        Index("ix_recipients_organization", "organization_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    company: Mapped[str | None] = mapped_column(String(300), nullable=True)
    job_title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    linkedin_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    lead_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    lead_source: Mapped[str | None] = mapped_column(String(30), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    custom_fields: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    do_not_send: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    external_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    external_source: Mapped[str | None] = mapped_column(String(20), nullable=True)
    external_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    external_entity_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    external_object: Mapped[str | None] = mapped_column(String(20), nullable=True)
    sync_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
