"""Campaigns and scene assets"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_campaign_ingestion_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    campaign_status_enum = sa.Enum("draft", "processing", "ready", "failed", name="campaign_status")
    json_document = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

    op.create_table(
        "campaigns",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("status", campaign_status_enum, nullable=False, server_default="draft"),
        sa.Column("metadata", json_document, nullable=False),
        sa.Column("idempotency_key", sa.Text(), nullable=True),
        sa.Column("video_url", sa.Text(), nullable=True),
        sa.Column("video_storage_key", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("owner_id", "idempotency_key", name="uq_campaigns_owner_idempotency_key"),
    )
    op.create_index(
        "idx_campaigns_owner_status_updated",
        "campaigns",
        ["owner_id", "status", "updated_at"],
    )

    op.create_table(
        "campaign_scene_assets",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "campaign_id",
            sa.Uuid(),
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("scene_number", sa.Integer(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("storage_key", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("campaign_id", "scene_number", name="uq_campaign_scene_assets_scene"),
    )


def downgrade() -> None:
    op.drop_table("campaign_scene_assets")
    op.drop_index("idx_campaigns_owner_status_updated", table_name="campaigns")
    op.drop_table("campaigns")
    sa.Enum(name="campaign_status").drop(op.get_bind(), checkfirst=True)
