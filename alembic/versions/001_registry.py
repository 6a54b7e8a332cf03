"""Registry tables: modules, module versions, providers, provider versions, platforms.

Revision ID: 001
Revises:
Create Date: 2026-10-01
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    # --- Modules ---
    op.create_table(
        "registry_modules",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("org_name", sa.String(63), nullable=False),
        sa.Column("namespace", sa.String(63), nullable=False),
        sa.Column("name", sa.String(63), nullable=False),
        sa.Column("provider", sa.String(63), nullable=False),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
        *_timestamps(),
        sa.UniqueConstraint(
            "org_name", "namespace", "name", "provider", name="uq_registry_modules"
        ),
    )

    op.create_table(
        "registry_module_versions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "module_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("registry_modules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("version", sa.String(63), nullable=False),
        sa.Column("upload_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("storage_path", sa.String(1024), nullable=False, server_default=""),
        sa.Column("storage_backend", sa.String(20), nullable=False, server_default=""),
        sa.Column("size_bytes", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("checksum", sa.String(64), nullable=False, server_default=""),
        # SCM provenance (FK to module_scm_repos added in 002)
        sa.Column("commit_sha", sa.String(40), nullable=True),
        sa.Column("tag_name", sa.String(255), nullable=True),
        sa.Column("scm_repo_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("published_by", sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("module_id", "version", name="uq_registry_module_versions"),
    )
    op.create_index(
        "ix_registry_module_versions_scm_repo", "registry_module_versions", ["scm_repo_id"]
    )

    # --- Providers ---
    op.create_table(
        "registry_providers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("org_name", sa.String(63), nullable=False),
        sa.Column("namespace", sa.String(63), nullable=False),
        sa.Column("name", sa.String(63), nullable=False),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
        *_timestamps(),
        sa.UniqueConstraint("org_name", "namespace", "name", name="uq_registry_providers"),
    )

    op.create_table(
        "registry_provider_versions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "provider_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("registry_providers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("version", sa.String(63), nullable=False),
        sa.Column(
            "protocols",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'[\"5.0\"]'::jsonb"),
        ),
        sa.Column("shasums_path", sa.String(1024), nullable=False, server_default=""),
        sa.Column("shasums_sig_path", sa.String(1024), nullable=False, server_default=""),
        sa.Column("gpg_key_id", sa.String(40), nullable=False, server_default=""),
        sa.Column("gpg_ascii_armor", sa.Text, nullable=False, server_default=""),
        *_timestamps(),
        sa.UniqueConstraint("provider_id", "version", name="uq_registry_provider_versions"),
    )

    op.create_table(
        "registry_provider_platforms",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "version_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("registry_provider_versions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("os", sa.String(20), nullable=False),
        sa.Column("arch", sa.String(20), nullable=False),
        sa.Column("filename", sa.String(255), nullable=False, server_default=""),
        sa.Column("shasum", sa.String(64), nullable=False, server_default=""),
        sa.Column("storage_path", sa.String(1024), nullable=False, server_default=""),
        sa.Column("size_bytes", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("upload_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("version_id", "os", "arch", name="uq_registry_provider_platforms"),
    )


def downgrade() -> None:
    op.drop_table("registry_provider_platforms")
    op.drop_table("registry_provider_versions")
    op.drop_table("registry_providers")
    op.drop_index("ix_registry_module_versions_scm_repo", table_name="registry_module_versions")
    op.drop_table("registry_module_versions")
    op.drop_table("registry_modules")
