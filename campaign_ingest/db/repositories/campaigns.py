from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campaign_ingest.db.enums import CampaignStatusEnum
from campaign_ingest.db.models import Campaign, CampaignSceneAsset, utcnow

logger = logging.getLogger(__name__)

REQUIRED_METADATA_FIELDS: tuple[str, ...] = ("productName",)
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 100


class InvalidCampaignInput(ValueError):
    """Campaign metadata failed validation; nothing was persisted."""


class CampaignNotFound(LookupError):
    def __init__(self, campaign_id: Any) -> None:
        self.campaign_id = str(campaign_id)
        super().__init__(f"Campaign not found: {self.campaign_id}")


@dataclass(frozen=True)
class SceneAssetUpdate:
    scene_number: int
    image_url: str
    image_key: str


def _coerce_campaign_id(campaign_id: Any) -> Optional[UUID]:
    if isinstance(campaign_id, UUID):
        return campaign_id
    try:
        return UUID(str(campaign_id))
    except (TypeError, ValueError):
        return None


def _upsert_insert(session: Session):
    dialect_name = session.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql_insert
    if dialect_name == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Scene asset upserts are not supported on dialect {dialect_name!r}")


def validate_campaign_metadata(metadata: Any) -> dict[str, Any]:
    if not isinstance(metadata, dict):
        raise InvalidCampaignInput("Campaign metadata must be a JSON object.")
    missing = [
        field
        for field in REQUIRED_METADATA_FIELDS
        if not isinstance(metadata.get(field), str) or not metadata[field].strip()
    ]
    if missing:
        raise InvalidCampaignInput(f"Missing required campaign fields: {', '.join(missing)}")
    return metadata


class CampaignsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create_campaign(
        self,
        owner_id: str,
        metadata: dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> Tuple[Campaign, bool]:
        """
        Insert a draft campaign and return ``(campaign, created)``.

        A repeated ``idempotency_key`` for the same owner returns the stored record with
        ``created=False`` instead of inserting a duplicate.
        """
        if not owner_id:
            raise InvalidCampaignInput("Campaign owner is required.")
        validate_campaign_metadata(metadata)

        if idempotency_key:
            existing = self.get_by_idempotency_key(owner_id, idempotency_key)
            if existing:
                return existing, False

        now = utcnow()
        campaign = Campaign(
            owner_id=owner_id,
            status=CampaignStatusEnum.draft,
            campaign_metadata=dict(metadata),
            idempotency_key=idempotency_key or None,
            created_at=now,
            updated_at=now,
        )
        self.session.add(campaign)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            if idempotency_key:
                # Lost a race against a concurrent create with the same token.
                existing = self.get_by_idempotency_key(owner_id, idempotency_key)
                if existing:
                    return existing, False
            raise
        self.session.refresh(campaign)
        return campaign, True

    def get_campaign(self, campaign_id: Any, owner_id: Optional[str] = None) -> Optional[Campaign]:
        cid = _coerce_campaign_id(campaign_id)
        if cid is None:
            return None
        stmt = select(Campaign).where(Campaign.id == cid)
        if owner_id is not None:
            stmt = stmt.where(Campaign.owner_id == owner_id)
        stmt = stmt.execution_options(populate_existing=True)
        return self.session.scalars(stmt).first()

    def get_by_idempotency_key(self, owner_id: str, idempotency_key: str) -> Optional[Campaign]:
        stmt = select(Campaign).where(
            Campaign.owner_id == owner_id,
            Campaign.idempotency_key == idempotency_key,
        )
        return self.session.scalars(stmt).first()

    def list_for_owner(
        self,
        owner_id: str,
        status: Optional[CampaignStatusEnum] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[Campaign]:
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        stmt = select(Campaign).where(Campaign.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(Campaign.status == status)
        stmt = stmt.order_by(Campaign.updated_at.desc(), Campaign.created_at.desc()).limit(limit)
        return list(self.session.scalars(stmt).all())

    def attach_scene_assets(self, campaign_id: Any, updates: Sequence[SceneAssetUpdate]) -> None:
        """
        Merge scene index -> asset pointers into the campaign in a single transaction.

        Rows are upserted per (campaign_id, scene_number), so concurrent attaches for
        different scenes never clobber each other; the same scene is last-write-wins.
        """
        if not updates:
            return
        cid = _coerce_campaign_id(campaign_id)
        if cid is None:
            raise CampaignNotFound(campaign_id)

        now = utcnow()
        by_scene: dict[int, SceneAssetUpdate] = {}
        for item in updates:
            by_scene[int(item.scene_number)] = item
        rows = [
            {
                "id": uuid4(),
                "campaign_id": cid,
                "scene_number": scene_number,
                "url": item.image_url,
                "storage_key": item.image_key,
                "updated_at": now,
            }
            for scene_number, item in sorted(by_scene.items())
        ]

        try:
            result = self.session.execute(
                update(Campaign).where(Campaign.id == cid).values(updated_at=now)
            )
            if result.rowcount == 0:
                raise CampaignNotFound(campaign_id)

            insert = _upsert_insert(self.session)
            stmt = insert(CampaignSceneAsset).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=[CampaignSceneAsset.campaign_id, CampaignSceneAsset.scene_number],
                set_={
                    "url": stmt.excluded.url,
                    "storage_key": stmt.excluded.storage_key,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            self.session.execute(stmt)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.debug(
            "campaigns.scene_assets_attached",
            extra={"campaign_id": str(cid), "scene_numbers": sorted(by_scene)},
        )

    def attach_video(self, campaign_id: Any, url: str, key: str) -> None:
        cid = _coerce_campaign_id(campaign_id)
        if cid is None:
            raise CampaignNotFound(campaign_id)
        try:
            result = self.session.execute(
                update(Campaign)
                .where(Campaign.id == cid)
                .values(video_url=url, video_storage_key=key, updated_at=utcnow())
            )
            if result.rowcount == 0:
                raise CampaignNotFound(campaign_id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.debug("campaigns.video_attached", extra={"campaign_id": str(cid), "storage_key": key})

    def update_status(self, campaign_id: Any, owner_id: str, status: CampaignStatusEnum) -> Campaign:
        campaign = self.get_campaign(campaign_id, owner_id=owner_id)
        if not campaign:
            raise CampaignNotFound(campaign_id)
        campaign.status = status
        campaign.updated_at = utcnow()
        self.session.commit()
        self.session.refresh(campaign)
        return campaign
