"""
SQLAlchemy database models for tfregistry.

All models use:
- UUIDv7 primary keys (time-sortable)
- snake_case column names
- Plural table names
- TIMESTAMPTZ with UTC for all timestamps
- Hard deletes (no soft delete columns)

Organizations are referenced by name; ownership and membership live in
the surrounding platform.
"""

import os
import time
import uuid
from datetime import UTC, datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def generate_uuid7() -> uuid.UUID:
    """Generate a UUIDv7 (time-sortable UUID)."""
    timestamp_ms = int(time.time() * 1000)
    rand = os.urandom(10)

    uuid_bytes = (
        timestamp_ms.to_bytes(6, "big")
        + bytes([0x70 | (rand[0] & 0x0F), rand[1]])  # Version 7
        + bytes([0x80 | (rand[2] & 0x3F)])  # Variant
        + rand[3:]
    )
    return uuid.UUID(bytes=uuid_bytes)


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
    }


def _pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=generate_uuid7)


def _created_at() -> Mapped[datetime]:
    return mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


def _updated_at() -> Mapped[datetime]:
    return mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


# --- Registry Models ---


class RegistryModule(Base):
    """Top-level module entity in the private registry.

    Identified by (org_name, namespace, name, provider). ``provider`` is the
    module's target system (``aws``, ``azurerm``, ...).
    """

    __tablename__ = "registry_modules"

    id: Mapped[uuid.UUID] = _pk()
    org_name: Mapped[str] = mapped_column(String(63), nullable=False)
    namespace: Mapped[str] = mapped_column(String(63), nullable=False)
    name: Mapped[str] = mapped_column(String(63), nullable=False)
    provider: Mapped[str] = mapped_column(String(63), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    versions: Mapped[list["RegistryModuleVersion"]] = relationship(
        back_populates="module", cascade="all, delete-orphan"
    )
    scm_repo: Mapped["ModuleSCMRepo | None"] = relationship(
        back_populates="module", cascade="all, delete-orphan", uselist=False
    )

    __table_args__ = (
        sa.UniqueConstraint("org_name", "namespace", "name", "provider", name="uq_registry_modules"),
    )


class RegistryModuleVersion(Base):
    """Immutable semver version of a module, backed by a tarball in object storage.

    The (module_id, version) unique constraint is what makes concurrent
    publishes of the same tag race safely: the loser's insert fails.
    """

    __tablename__ = "registry_module_versions"

    id: Mapped[uuid.UUID] = _pk()
    module_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("registry_modules.id", ondelete="CASCADE"),
        nullable=False,
    )
    version: Mapped[str] = mapped_column(String(63), nullable=False)
    upload_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, uploaded
    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    storage_backend: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    # SCM provenance
    commit_sha: Mapped[str | None] = mapped_column(String(40), nullable=True)
    tag_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    scm_repo_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("module_scm_repos.id", ondelete="SET NULL"),
        nullable=True,
    )
    published_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    module: Mapped["RegistryModule"] = relationship(back_populates="versions")

    __table_args__ = (
        sa.UniqueConstraint("module_id", "version", name="uq_registry_module_versions"),
        Index("ix_registry_module_versions_scm_repo", "scm_repo_id"),
    )


class RegistryProvider(Base):
    """Top-level provider entity in the private registry."""

    __tablename__ = "registry_providers"

    id: Mapped[uuid.UUID] = _pk()
    org_name: Mapped[str] = mapped_column(String(63), nullable=False)
    namespace: Mapped[str] = mapped_column(String(63), nullable=False)
    name: Mapped[str] = mapped_column(String(63), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    versions: Mapped[list["RegistryProviderVersion"]] = relationship(
        back_populates="provider", cascade="all, delete-orphan"
    )

    __table_args__ = (
        sa.UniqueConstraint("org_name", "namespace", "name", name="uq_registry_providers"),
    )


class RegistryProviderVersion(Base):
    """Version of a registry provider with its checksum list and signing key."""

    __tablename__ = "registry_provider_versions"

    id: Mapped[uuid.UUID] = _pk()
    provider_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("registry_providers.id", ondelete="CASCADE"),
        nullable=False,
    )
    version: Mapped[str] = mapped_column(String(63), nullable=False)
    protocols: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=lambda: ["5.0"])
    shasums_path: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    shasums_sig_path: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    gpg_key_id: Mapped[str] = mapped_column(String(40), nullable=False, default="")
    gpg_ascii_armor: Mapped[str] = mapped_column(Text, nullable=False, default="")

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    provider: Mapped["RegistryProvider"] = relationship(back_populates="versions")
    platforms: Mapped[list["RegistryProviderPlatform"]] = relationship(
        back_populates="version", cascade="all, delete-orphan"
    )

    __table_args__ = (
        sa.UniqueConstraint("provider_id", "version", name="uq_registry_provider_versions"),
    )


class RegistryProviderPlatform(Base):
    """Per-OS/arch binary for a provider version."""

    __tablename__ = "registry_provider_platforms"

    id: Mapped[uuid.UUID] = _pk()
    version_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("registry_provider_versions.id", ondelete="CASCADE"),
        nullable=False,
    )
    os: Mapped[str] = mapped_column(String(20), nullable=False)
    arch: Mapped[str] = mapped_column(String(20), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    shasum: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    upload_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    created_at: Mapped[datetime] = _created_at()

    version: Mapped["RegistryProviderVersion"] = relationship(back_populates="platforms")

    __table_args__ = (
        sa.UniqueConstraint("version_id", "os", "arch", name="uq_registry_provider_platforms"),
    )


# --- SCM Integration ---


class SCMProvider(Base):
    """A configured source-control integration (OAuth application).

    ``client_secret_encrypted`` is sealed with the token cipher.
    """

    __tablename__ = "scm_providers"

    id: Mapped[uuid.UUID] = _pk()
    org_name: Mapped[str] = mapped_column(String(63), nullable=False)
    provider_type: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # github, gitlab, azuredevops, bitbucket_dc
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    base_url: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    client_id: Mapped[str] = mapped_column(String(255), nullable=False)
    client_secret_encrypted: Mapped[str] = mapped_column(Text, nullable=False, default="")
    webhook_secret: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    organization: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    tokens: Mapped[list["SCMOAuthToken"]] = relationship(
        back_populates="provider", cascade="all, delete-orphan"
    )

    __table_args__ = (
        sa.UniqueConstraint("org_name", "provider_type", "name", name="uq_scm_providers"),
    )


class SCMOAuthToken(Base):
    """One user's OAuth token for one SCM provider, sealed at rest."""

    __tablename__ = "scm_oauth_tokens"

    id: Mapped[uuid.UUID] = _pk()
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    scm_provider_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("scm_providers.id", ondelete="CASCADE"),
        nullable=False,
    )
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False, default="")
    token_type: Mapped[str] = mapped_column(String(50), nullable=False, default="Bearer")
    scopes: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    provider: Mapped["SCMProvider"] = relationship(back_populates="tokens")

    __table_args__ = (
        sa.UniqueConstraint("user_email", "scm_provider_id", name="uq_scm_oauth_tokens"),
    )


class ModuleSCMRepo(Base):
    """Binds one registry module to one external repository.

    Exactly one link per module.
    """

    __tablename__ = "module_scm_repos"

    id: Mapped[uuid.UUID] = _pk()
    module_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("registry_modules.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    scm_provider_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("scm_providers.id", ondelete="CASCADE"),
        nullable=False,
    )
    repository_owner: Mapped[str] = mapped_column(String(255), nullable=False)
    repository_name: Mapped[str] = mapped_column(String(255), nullable=False)
    repository_url: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    default_branch: Mapped[str] = mapped_column(String(255), nullable=False, default="main")
    module_path: Mapped[str] = mapped_column(String(500), nullable=False, default="/")
    tag_pattern: Mapped[str] = mapped_column(String(255), nullable=False, default="v*")
    auto_publish: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    webhook_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    webhook_secret: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    webhook_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    webhook_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    linked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_commit: Mapped[str | None] = mapped_column(String(40), nullable=True)

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    module: Mapped["RegistryModule"] = relationship(back_populates="scm_repo")
    provider: Mapped["SCMProvider"] = relationship()


class SCMWebhookEvent(Base):
    """One row per inbound webhook delivery.

    Append-only apart from state transitions:
    received -> logged -> processing -> completed | failed.
    """

    __tablename__ = "scm_webhook_events"

    id: Mapped[uuid.UUID] = _pk()
    module_scm_repo_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("module_scm_repos.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    ref: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    commit_sha: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    tag_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    headers: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    signature: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    signature_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="received")

    processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    result_version_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("registry_module_versions.id", ondelete="SET NULL"),
        nullable=True,
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        Index("ix_scm_webhook_events_repo", "module_scm_repo_id", "created_at"),
        Index("ix_scm_webhook_events_event_id", "event_id"),
    )


class ImmutabilityViolation(Base):
    """A published tag that now resolves to a different commit."""

    __tablename__ = "version_immutability_violations"

    id: Mapped[uuid.UUID] = _pk()
    module_version_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("registry_module_versions.id", ondelete="CASCADE"),
        nullable=False,
    )
    tag_name: Mapped[str] = mapped_column(String(255), nullable=False)
    original_commit_sha: Mapped[str] = mapped_column(String(64), nullable=False)
    detected_commit_sha: Mapped[str] = mapped_column(String(64), nullable=False)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_version_immutability_violations_version", "module_version_id", "resolved"),
    )


# --- Provider Mirroring ---


class MirrorConfiguration(Base):
    """An upstream provider registry to copy releases from."""

    __tablename__ = "mirror_configurations"

    id: Mapped[uuid.UUID] = _pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    upstream_registry_url: Mapped[str] = mapped_column(
        String(500), nullable=False, default="https://registry.terraform.io"
    )
    namespace_filter: Mapped[list[str] | None] = mapped_column(JSONB, nullable=True)
    provider_filter: Mapped[list[str] | None] = mapped_column(JSONB, nullable=True)
    version_filter: Mapped[str | None] = mapped_column(String(255), nullable=True)
    platform_filter: Mapped[list[str] | None] = mapped_column(JSONB, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sync_interval_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=24)

    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_status: Mapped[str | None] = mapped_column(
        String(20), nullable=True
    )  # success, failed, in_progress, partial
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    org_name: Mapped[str | None] = mapped_column(String(63), nullable=True)
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approval_status: Mapped[str] = mapped_column(String(20), nullable=False, default="approved")

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    __table_args__ = (Index("ix_mirror_configurations_enabled", "enabled"),)


class MirrorPolicy(Base):
    """Allow/deny rule gating which upstream namespaces/providers may be mirrored.

    Evaluated in descending priority; the first match wins.
    """

    __tablename__ = "mirror_policies"

    id: Mapped[uuid.UUID] = _pk()
    org_name: Mapped[str | None] = mapped_column(String(63), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    policy_type: Mapped[str] = mapped_column(String(10), nullable=False)  # allow, deny
    upstream_registry: Mapped[str | None] = mapped_column(String(500), nullable=True)
    namespace_pattern: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_pattern: Mapped[str | None] = mapped_column(String(255), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    __table_args__ = (
        sa.UniqueConstraint("org_name", "name", name="uq_mirror_policies"),
        Index("ix_mirror_policies_active_priority", "is_active", "priority"),
    )


class MirrorApprovalRequest(Base):
    """Request to mirror a namespace (or one provider in it) under an approval policy."""

    __tablename__ = "mirror_approval_requests"

    id: Mapped[uuid.UUID] = _pk()
    mirror_config_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("mirror_configurations.id", ondelete="CASCADE"),
        nullable=False,
    )
    org_name: Mapped[str | None] = mapped_column(String(63), nullable=True)
    requested_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_namespace: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, approved, rejected
    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    auto_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    __table_args__ = (
        Index(
            "ix_mirror_approval_requests_lookup",
            "mirror_config_id",
            "provider_namespace",
            "status",
        ),
    )


class MirroredProvider(Base):
    """Provenance: which mirror created a registry provider."""

    __tablename__ = "mirrored_providers"

    id: Mapped[uuid.UUID] = _pk()
    mirror_config_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("mirror_configurations.id", ondelete="CASCADE"),
        nullable=False,
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("registry_providers.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    upstream_namespace: Mapped[str] = mapped_column(String(255), nullable=False)
    upstream_type: Mapped[str] = mapped_column(String(255), nullable=False)
    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    last_sync_version: Mapped[str | None] = mapped_column(String(63), nullable=True)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        sa.UniqueConstraint(
            "mirror_config_id",
            "upstream_namespace",
            "upstream_type",
            name="uq_mirrored_providers_upstream",
        ),
    )


class MirroredProviderVersion(Base):
    """Per-version verification record for a mirrored provider."""

    __tablename__ = "mirrored_provider_versions"

    id: Mapped[uuid.UUID] = _pk()
    mirrored_provider_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("mirrored_providers.id", ondelete="CASCADE"),
        nullable=False,
    )
    provider_version_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("registry_provider_versions.id", ondelete="CASCADE"),
        nullable=False,
    )
    upstream_version: Mapped[str] = mapped_column(String(63), nullable=False)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    shasum_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    gpg_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        sa.UniqueConstraint(
            "mirrored_provider_id", "upstream_version", name="uq_mirrored_provider_versions"
        ),
    )


class MirrorSyncHistory(Base):
    """One row per mirror sync run."""

    __tablename__ = "mirror_sync_history"

    id: Mapped[uuid.UUID] = _pk()
    mirror_config_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("mirror_configurations.id", ondelete="CASCADE"),
        nullable=False,
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="running"
    )  # running, success, failed, cancelled
    providers_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    providers_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_details: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_mirror_sync_history_mirror", "mirror_config_id", "started_at"),
    )
