"""SCM integration: providers, OAuth tokens, repository links, webhook log, tag violations.

Revision ID: 002
Revises: 001
Create Date: 2026-10-03
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "002"
down_revision: Union[str, None] = "001"
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
    # --- scm_providers ---
    op.create_table(
        "scm_providers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("org_name", sa.String(63), nullable=False),
        sa.Column("provider_type", sa.String(20), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("base_url", sa.String(500), nullable=False, server_default=""),
        sa.Column("client_id", sa.String(255), nullable=False),
        sa.Column("client_secret_encrypted", sa.Text, nullable=False, server_default=""),
        sa.Column("webhook_secret", sa.String(255), nullable=False, server_default=""),
        # Azure DevOps
        sa.Column("tenant_id", sa.String(255), nullable=False, server_default=""),
        sa.Column("organization", sa.String(255), nullable=False, server_default=""),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("org_name", "provider_type", "name", name="uq_scm_providers"),
    )

    # --- scm_oauth_tokens ---
    op.create_table(
        "scm_oauth_tokens",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_email", sa.String(255), nullable=False),
        sa.Column(
            "scm_provider_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("scm_providers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("access_token_encrypted", sa.Text, nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text, nullable=False, server_default=""),
        sa.Column("token_type", sa.String(50), nullable=False, server_default="Bearer"),
        sa.Column(
            "scopes", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("user_email", "scm_provider_id", name="uq_scm_oauth_tokens"),
    )

    # --- module_scm_repos ---
    op.create_table(
        "module_scm_repos",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "module_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("registry_modules.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "scm_provider_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("scm_providers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("repository_owner", sa.String(255), nullable=False),
        sa.Column("repository_name", sa.String(255), nullable=False),
        sa.Column("repository_url", sa.String(500), nullable=False, server_default=""),
        sa.Column("default_branch", sa.String(255), nullable=False, server_default="main"),
        sa.Column("module_path", sa.String(500), nullable=False, server_default="/"),
        sa.Column("tag_pattern", sa.String(255), nullable=False, server_default="v*"),
        sa.Column("auto_publish", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("webhook_id", sa.String(255), nullable=True),
        sa.Column("webhook_secret", sa.String(255), nullable=False, server_default=""),
        sa.Column("webhook_url", sa.String(500), nullable=True),
        sa.Column("webhook_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("linked_by", sa.String(255), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_commit", sa.String(40), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_foreign_key(
        "fk_registry_module_versions_scm_repo",
        "registry_module_versions",
        "module_scm_repos",
        ["scm_repo_id"],
        ["id"],
        ondelete="SET NULL",
    )

    # --- scm_webhook_events ---
    op.create_table(
        "scm_webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "module_scm_repo_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("module_scm_repos.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_id", sa.String(255), nullable=False, server_default=""),
        sa.Column("event_type", sa.String(100), nullable=False, server_default=""),
        sa.Column("ref", sa.String(500), nullable=False, server_default=""),
        sa.Column("commit_sha", sa.String(64), nullable=False, server_default=""),
        sa.Column("tag_name", sa.String(255), nullable=False, server_default=""),
        sa.Column(
            "payload", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")
        ),
        sa.Column(
            "headers", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")
        ),
        sa.Column("signature", sa.String(500), nullable=False, server_default=""),
        sa.Column("signature_valid", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("state", sa.String(20), nullable=False, server_default="received"),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "result_version_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("registry_module_versions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("error", sa.Text, nullable=True),
        _ts("created_at"),
    )
    op.create_index(
        "ix_scm_webhook_events_repo", "scm_webhook_events", ["module_scm_repo_id", "created_at"]
    )
    op.create_index("ix_scm_webhook_events_event_id", "scm_webhook_events", ["event_id"])

    # --- version_immutability_violations ---
    op.create_table(
        "version_immutability_violations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "module_version_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("registry_module_versions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tag_name", sa.String(255), nullable=False),
        sa.Column("original_commit_sha", sa.String(64), nullable=False),
        sa.Column("detected_commit_sha", sa.String(64), nullable=False),
        _ts("detected_at"),
        sa.Column("resolved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
    )
    op.create_index(
        "ix_version_immutability_violations_version",
        "version_immutability_violations",
        ["module_version_id", "resolved"],
    )


def downgrade() -> None:
    op.drop_index(
        "ix_version_immutability_violations_version",
        table_name="version_immutability_violations",
    )
    op.drop_table("version_immutability_violations")
    op.drop_index("ix_scm_webhook_events_event_id", table_name="scm_webhook_events")
    op.drop_index("ix_scm_webhook_events_repo", table_name="scm_webhook_events")
    op.drop_table("scm_webhook_events")
    op.drop_constraint(
        "fk_registry_module_versions_scm_repo", "registry_module_versions", type_="foreignkey"
    )
    op.drop_table("module_scm_repos")
    op.drop_table("scm_oauth_tokens")
    op.drop_table("scm_providers")
