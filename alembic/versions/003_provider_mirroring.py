"""Provider mirroring: configurations, policies, approvals, provenance, sync history.

Revision ID: 003
Revises: 002
Create Date: 2026-10-08
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    # --- mirror_configurations ---
    op.create_table(
        "mirror_configurations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column(
            "upstream_registry_url",
            sa.String(500),
            nullable=False,
            server_default="https://registry.terraform.io",
        ),
        sa.Column("namespace_filter", postgresql.JSONB, nullable=True),
        sa.Column("provider_filter", postgresql.JSONB, nullable=True),
        sa.Column("version_filter", sa.String(255), nullable=True),
        sa.Column("platform_filter", postgresql.JSONB, nullable=True),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("sync_interval_hours", sa.Integer, nullable=False, server_default="24"),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_status", sa.String(20), nullable=True),
        sa.Column("last_sync_error", sa.Text, nullable=True),
        sa.Column("org_name", sa.String(63), nullable=True),
        sa.Column("requires_approval", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("approval_status", sa.String(20), nullable=False, server_default="approved"),
        sa.Column("created_by", sa.String(255), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_mirror_configurations_enabled", "mirror_configurations", ["enabled"])

    # --- mirror_policies ---
    op.create_table(
        "mirror_policies",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("org_name", sa.String(63), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("policy_type", sa.String(10), nullable=False),
        sa.Column("upstream_registry", sa.String(500), nullable=True),
        sa.Column("namespace_pattern", sa.String(255), nullable=True),
        sa.Column("provider_pattern", sa.String(255), nullable=True),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("requires_approval", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_by", sa.String(255), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("org_name", "name", name="uq_mirror_policies"),
        sa.CheckConstraint("policy_type IN ('allow', 'deny')", name="ck_mirror_policies_type"),
    )
    op.create_index(
        "ix_mirror_policies_active_priority", "mirror_policies", ["is_active", "priority"]
    )

    # --- mirror_approval_requests ---
    op.create_table(
        "mirror_approval_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "mirror_config_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("mirror_configurations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("org_name", sa.String(63), nullable=True),
        sa.Column("requested_by", sa.String(255), nullable=True),
        sa.Column("provider_namespace", sa.String(255), nullable=False),
        sa.Column("provider_name", sa.String(255), nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("reviewed_by", sa.String(255), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_notes", sa.Text, nullable=True),
        sa.Column("auto_approved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index(
        "ix_mirror_approval_requests_lookup",
        "mirror_approval_requests",
        ["mirror_config_id", "provider_namespace", "status"],
    )

    # --- mirrored_providers ---
    op.create_table(
        "mirrored_providers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "mirror_config_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("mirror_configurations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "provider_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("registry_providers.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("upstream_namespace", sa.String(255), nullable=False),
        sa.Column("upstream_type", sa.String(255), nullable=False),
        _ts("last_synced_at"),
        sa.Column("last_sync_version", sa.String(63), nullable=True),
        sa.Column("sync_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("created_at"),
        sa.UniqueConstraint(
            "mirror_config_id",
            "upstream_namespace",
            "upstream_type",
            name="uq_mirrored_providers_upstream",
        ),
    )

    # --- mirrored_provider_versions ---
    op.create_table(
        "mirrored_provider_versions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "mirrored_provider_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("mirrored_providers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "provider_version_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("registry_provider_versions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("upstream_version", sa.String(63), nullable=False),
        _ts("synced_at"),
        sa.Column("shasum_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("gpg_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.UniqueConstraint(
            "mirrored_provider_id", "upstream_version", name="uq_mirrored_provider_versions"
        ),
    )

    # --- mirror_sync_history ---
    op.create_table(
        "mirror_sync_history",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "mirror_config_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("mirror_configurations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _ts("started_at"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("providers_synced", sa.Integer, nullable=False, server_default="0"),
        sa.Column("providers_failed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column(
            "sync_details",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index(
        "ix_mirror_sync_history_mirror", "mirror_sync_history", ["mirror_config_id", "started_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_mirror_sync_history_mirror", table_name="mirror_sync_history")
    op.drop_table("mirror_sync_history")
    op.drop_table("mirrored_provider_versions")
    op.drop_table("mirrored_providers")
    op.drop_index("ix_mirror_approval_requests_lookup", table_name="mirror_approval_requests")
    op.drop_table("mirror_approval_requests")
    op.drop_index("ix_mirror_policies_active_priority", table_name="mirror_policies")
    op.drop_table("mirror_policies")
    op.drop_index("ix_mirror_configurations_enabled", table_name="mirror_configurations")
    op.drop_table("mirror_configurations")
