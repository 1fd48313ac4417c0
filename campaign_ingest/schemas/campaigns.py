from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from campaign_ingest.db.enums import AssetKindEnum, CampaignStatusEnum
from campaign_ingest.db.models import Campaign
from campaign_ingest.services.campaign_ingestion import AssetUploadOutcome, IngestionResult


class StoredAsset(BaseModel):
    url: str
    storageKey: str


class CampaignOut(BaseModel):
    id: str
    ownerId: str
    status: CampaignStatusEnum
    metadata: dict[str, Any]
    sceneAssets: dict[int, StoredAsset]
    video: Optional[StoredAsset] = None
    createdAt: datetime
    updatedAt: datetime

    @classmethod
    def from_model(cls, campaign: Campaign) -> "CampaignOut":
        video = None
        if campaign.video_url and campaign.video_storage_key:
            video = StoredAsset(url=campaign.video_url, storageKey=campaign.video_storage_key)
        return cls(
            id=str(campaign.id),
            ownerId=campaign.owner_id,
            status=campaign.status,
            metadata=dict(campaign.campaign_metadata or {}),
            sceneAssets={
                scene.scene_number: StoredAsset(url=scene.url, storageKey=scene.storage_key)
                for scene in sorted(campaign.scene_assets, key=lambda row: row.scene_number)
            },
            video=video,
            createdAt=campaign.created_at,
            updatedAt=campaign.updated_at,
        )


class AssetUploadFailure(BaseModel):
    kind: AssetKindEnum
    sceneNumber: Optional[int] = None
    filename: Optional[str] = None
    errorType: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: AssetUploadOutcome) -> "AssetUploadFailure":
        return cls(
            kind=outcome.asset_kind,
            sceneNumber=outcome.scene_number,
            filename=outcome.filename,
            errorType=outcome.error_type,
            error=str(outcome.error) if outcome.error is not None else None,
        )


class UnlinkedAsset(BaseModel):
    kind: AssetKindEnum
    sceneNumber: Optional[int] = None
    url: str
    storageKey: str


class CampaignSaveResponse(BaseModel):
    success: bool = True
    campaign: CampaignOut
    failedAssets: list[AssetUploadFailure] = []
    unlinkedAssets: list[UnlinkedAsset] = []
    reconciliationErrors: list[str] = []

    @classmethod
    def from_result(cls, result: IngestionResult) -> "CampaignSaveResponse":
        return cls(
            campaign=CampaignOut.from_model(result.campaign),
            failedAssets=[AssetUploadFailure.from_outcome(outcome) for outcome in result.failed_uploads],
            unlinkedAssets=[
                UnlinkedAsset(
                    kind=outcome.asset_kind,
                    sceneNumber=outcome.scene_number,
                    url=outcome.asset.url,
                    storageKey=outcome.asset.key,
                )
                for outcome in result.unlinked_assets
                if outcome.asset is not None
            ],
            reconciliationErrors=list(result.reconciliation_errors),
        )


class CampaignResponse(BaseModel):
    success: bool = True
    campaign: CampaignOut


class CampaignListResponse(BaseModel):
    success: bool = True
    campaigns: list[CampaignOut]
    count: int


class CampaignStatusUpdateRequest(BaseModel):
    status: CampaignStatusEnum
