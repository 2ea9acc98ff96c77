"""Revision 0001: quota ledger tables

Creates quota_nodes (the capacity ledger), quota_usage_records (usage
journal) and quota_audit_entries (audit trail). The two log tables are
append-only and keep their rows after the referenced node is soft-deleted.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "quota_nodes",
        sa.Column("id", sa.String(50), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), server_default=sa.text("''"), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("total_mb", sa.BigInteger(), nullable=False),
        sa.Column("used_mb", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("allocated_mb", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("parent_id", sa.String(50), nullable=True),
        sa.Column("level", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("organization_id", sa.Text(), nullable=False),
        sa.Column("team_id", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), server_default=sa.text("'active'"), nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("deleted_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["parent_id"],
            ["quota_nodes.id"],
            name="fk_quota_nodes_parent_id",
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_quota_nodes"),
        sa.CheckConstraint("kind IN ('organization', 'team')", name="ck_quota_nodes_kind"),
        sa.CheckConstraint(
            "status IN ('active', 'suspended', 'deleted')", name="ck_quota_nodes_status"
        ),
        sa.CheckConstraint(
            "total_mb >= 0 AND used_mb >= 0 AND allocated_mb >= 0",
            name="ck_quota_nodes_non_negative",
        ),
        sa.CheckConstraint("used_mb + allocated_mb <= total_mb", name="ck_quota_nodes_balance"),
        sa.CheckConstraint("level >= 0", name="ck_quota_nodes_level"),
    )
    op.create_index("ix_quota_nodes_parent_id", "quota_nodes", ["parent_id"])
    op.create_index("ix_quota_nodes_organization_id", "quota_nodes", ["organization_id"])
    op.create_index("ix_quota_nodes_team_id", "quota_nodes", ["team_id"])
    op.create_index("ix_quota_nodes_owner_id", "quota_nodes", ["owner_id"])
    op.create_index("ix_quota_nodes_kind_status", "quota_nodes", ["kind", "status"])

    op.create_table(
        "quota_usage_records",
        sa.Column("id", sa.String(50), nullable=False),
        sa.Column("quota_id", sa.String(50), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("resource_id", sa.Text(), nullable=False),
        sa.Column("usage_mb", sa.BigInteger(), nullable=False),
        sa.Column("operation", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text(), server_default=sa.text("''"), nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["quota_id"],
            ["quota_nodes.id"],
            name="fk_quota_usage_records_quota_id",
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_quota_usage_records"),
        sa.CheckConstraint("usage_mb > 0", name="ck_quota_usage_records_usage_mb"),
        sa.CheckConstraint(
            "operation IN ('allocate', 'deallocate')", name="ck_quota_usage_records_operation"
        ),
    )
    op.create_index("ix_quota_usage_records_quota_id", "quota_usage_records", ["quota_id"])
    op.create_index("ix_quota_usage_records_user_id", "quota_usage_records", ["user_id"])
    op.create_index("ix_quota_usage_records_resource_id", "quota_usage_records", ["resource_id"])
    op.create_index("ix_quota_usage_records_created_at", "quota_usage_records", ["created_at"])

    op.create_table(
        "quota_audit_entries",
        sa.Column("id", sa.String(50), nullable=False),
        sa.Column("quota_id", sa.String(50), nullable=False),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("actor_id", sa.Text(), nullable=False),
        sa.Column("target_actor_id", sa.Text(), nullable=True),
        sa.Column(
            "details",
            postgresql.JSONB(),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["quota_id"],
            ["quota_nodes.id"],
            name="fk_quota_audit_entries_quota_id",
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_quota_audit_entries"),
    )
    op.create_index("ix_quota_audit_entries_quota_id", "quota_audit_entries", ["quota_id"])
    op.create_index("ix_quota_audit_entries_actor_id", "quota_audit_entries", ["actor_id"])
    op.create_index("ix_quota_audit_entries_created_at", "quota_audit_entries", ["created_at"])


def downgrade():
    op.drop_index("ix_quota_audit_entries_created_at", table_name="quota_audit_entries")
    op.drop_index("ix_quota_audit_entries_actor_id", table_name="quota_audit_entries")
    op.drop_index("ix_quota_audit_entries_quota_id", table_name="quota_audit_entries")
    op.drop_table("quota_audit_entries")
    op.drop_index("ix_quota_usage_records_created_at", table_name="quota_usage_records")
    op.drop_index("ix_quota_usage_records_resource_id", table_name="quota_usage_records")
    op.drop_index("ix_quota_usage_records_user_id", table_name="quota_usage_records")
    op.drop_index("ix_quota_usage_records_quota_id", table_name="quota_usage_records")
    op.drop_table("quota_usage_records")
    op.drop_index("ix_quota_nodes_kind_status", table_name="quota_nodes")
    op.drop_index("ix_quota_nodes_owner_id", table_name="quota_nodes")
    op.drop_index("ix_quota_nodes_team_id", table_name="quota_nodes")
    op.drop_index("ix_quota_nodes_organization_id", table_name="quota_nodes")
    op.drop_index("ix_quota_nodes_parent_id", table_name="quota_nodes")
    op.drop_table("quota_nodes")
