"""Sync tables: sync_processes and sync_mappings.

Revision ID: 001_sync_tables
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSON

# revision identifiers, used by Alembic.
revision: str = "001_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "sync_processes",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("integration_id", sa.String(100), nullable=False),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("type", sa.String(50), nullable=False, server_default="CRM_SYNC"),
        sa.Column("state", sa.String(32), nullable=False),
        sa.Column("context", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("results", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_sync_processes_integration_state",
        "sync_processes",
        ["integration_id", "state"],
    )

    op.create_table(
        "sync_mappings",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("integration_id", sa.String(100), nullable=False),
        sa.Column("source_key", sa.String(300), nullable=False),
        sa.Column("key_type", sa.String(20), nullable=False),
        sa.Column("external_id", sa.String(300), nullable=True),
        sa.Column("target_id", sa.String(300), nullable=True),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("phone_number", sa.String(32), nullable=True),
        sa.Column("sync_method", sa.String(20), nullable=False),
        sa.Column("action", sa.String(32), nullable=False),
        sa.Column("data", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("integration_id", "source_key", name="uq_mapping_integration_source_key"),
    )
    op.create_index(
        "ix_sync_mappings_external_id",
        "sync_mappings",
        ["integration_id", "external_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_sync_mappings_external_id", table_name="sync_mappings")
    op.drop_table("sync_mappings")
    op.drop_index("ix_sync_processes_integration_state", table_name="sync_processes")
    op.drop_table("sync_processes")
