"""SQLAlchemy ORM models for the quota ledger: QuotaNode, UsageRecord, AuditEntry.

QuotaNode rows are updated in place and soft-deleted. UsageRecord and
AuditEntry rows are append-only and outlive the node they reference.
"""

import uuid
from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, ForeignKey, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from quotaledger.models.base import Base

KIND_ORGANIZATION = "organization"
KIND_TEAM = "team"
QUOTA_KINDS: frozenset[str] = frozenset({KIND_ORGANIZATION, KIND_TEAM})

STATUS_ACTIVE = "active"
STATUS_SUSPENDED = "suspended"
STATUS_DELETED = "deleted"

OPERATION_ALLOCATE = "allocate"
OPERATION_DEALLOCATE = "deallocate"

ACTION_CREATE = "create"
ACTION_ALLOCATE = "allocate"
ACTION_RELEASE = "release"
ACTION_USAGE_ALLOCATE = "usage_allocate"
ACTION_USAGE_DEALLOCATE = "usage_deallocate"
ACTION_GRANT_PERMISSION = "grant_permission"


class QuotaNode(Base):
    __tablename__ = "quota_nodes"
    __table_args__ = (
        CheckConstraint("kind IN ('organization', 'team')", name="ck_quota_nodes_kind"),
        CheckConstraint(
            "status IN ('active', 'suspended', 'deleted')", name="ck_quota_nodes_status"
        ),
        CheckConstraint(
            "total_mb >= 0 AND used_mb >= 0 AND allocated_mb >= 0",
            name="ck_quota_nodes_non_negative",
        ),
        CheckConstraint("used_mb + allocated_mb <= total_mb", name="ck_quota_nodes_balance"),
        CheckConstraint("level >= 0", name="ck_quota_nodes_level"),
    )

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, server_default=text("''"), nullable=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False)

    total_mb: Mapped[int] = mapped_column(BigInteger, nullable=False)
    used_mb: Mapped[int] = mapped_column(BigInteger, server_default=text("0"), nullable=False)
    allocated_mb: Mapped[int] = mapped_column(
        BigInteger, server_default=text("0"), nullable=False
    )

    parent_id: Mapped[str | None] = mapped_column(
        String(50), ForeignKey("quota_nodes.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    level: Mapped[int] = mapped_column(Integer, server_default=text("0"), nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)

    owner_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    team_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)

    status: Mapped[str] = mapped_column(
        Text, server_default=text("'active'"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=text("now()"), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=text("now()"), nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    @property
    def available_mb(self) -> int:
        return self.total_mb - self.used_mb - self.allocated_mb


class UsageRecord(Base):
    __tablename__ = "quota_usage_records"
    __table_args__ = (
        CheckConstraint("usage_mb > 0", name="ck_quota_usage_records_usage_mb"),
        CheckConstraint(
            "operation IN ('allocate', 'deallocate')", name="ck_quota_usage_records_operation"
        ),
    )

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    quota_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("quota_nodes.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    resource_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    usage_mb: Mapped[int] = mapped_column(BigInteger, nullable=False)
    operation: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(Text, server_default=text("''"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=text("now()"), nullable=False, index=True
    )


class AuditEntry(Base):
    """Administrative action on a quota node. Never updated or deleted."""

    __tablename__ = "quota_audit_entries"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    quota_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("quota_nodes.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(Text, nullable=False)
    actor_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    target_actor_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSONB, server_default=text("'{}'::jsonb"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=text("now()"), nullable=False, index=True
    )


def new_id(prefix: str) -> str:
    """Opaque row id: ``<prefix>_`` plus the first 13 chars of a UUID4."""
    return f"{prefix}_{str(uuid.uuid4())[:13].lower()}"
