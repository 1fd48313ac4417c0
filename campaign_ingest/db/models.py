from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import DateTime, Enum, ForeignKey, Integer, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from campaign_ingest.db.base import Base
from campaign_ingest.db.enums import CampaignStatusEnum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


JSONDocument = sa.JSON().with_variant(JSONB(), "postgresql")


class Campaign(Base):
    __tablename__ = "campaigns"
    __table_args__ = (
        UniqueConstraint("owner_id", "idempotency_key", name="uq_campaigns_owner_idempotency_key"),
        sa.Index("idx_campaigns_owner_status_updated", "owner_id", "status", "updated_at"),
    )

    id: Mapped[UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    owner_id: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[CampaignStatusEnum] = mapped_column(
        Enum(CampaignStatusEnum, name="campaign_status"),
        nullable=False,
        default=CampaignStatusEnum.draft,
        server_default=CampaignStatusEnum.draft.value,
    )
    campaign_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONDocument, nullable=False, default=dict
    )
    idempotency_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    video_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    video_storage_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    scene_assets: Mapped[list["CampaignSceneAsset"]] = relationship(
        back_populates="campaign",
        order_by="CampaignSceneAsset.scene_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class CampaignSceneAsset(Base):
    __tablename__ = "campaign_scene_assets"
    __table_args__ = (
        UniqueConstraint("campaign_id", "scene_number", name="uq_campaign_scene_assets_scene"),
    )

    id: Mapped[UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    campaign_id: Mapped[UUID] = mapped_column(
        ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    scene_number: Mapped[int] = mapped_column(Integer, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    storage_key: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    campaign: Mapped[Campaign] = relationship(back_populates="scene_assets")
