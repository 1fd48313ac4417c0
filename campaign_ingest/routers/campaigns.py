from __future__ import annotations

import json
import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from starlette.datastructures import FormData, UploadFile

from campaign_ingest.auth.dependencies import AuthContext, get_current_user
from campaign_ingest.db.deps import get_session
from campaign_ingest.db.enums import CampaignStatusEnum
from campaign_ingest.db.repositories.campaigns import (
    DEFAULT_LIST_LIMIT,
    MAX_LIST_LIMIT,
    CampaignsRepository,
)
from campaign_ingest.schemas.campaigns import (
    CampaignListResponse,
    CampaignOut,
    CampaignResponse,
    CampaignSaveResponse,
    CampaignStatusUpdateRequest,
)
from campaign_ingest.services.campaign_ingestion import (
    CampaignIngestionRequest,
    CampaignIngestionService,
    MalformedRequest,
    SceneImageUpload,
    VideoUpload,
)
from campaign_ingest.services.media_storage import MediaStorage

router = APIRouter(prefix="/campaigns", tags=["campaigns"])
logger = logging.getLogger(__name__)

CAMPAIGN_DATA_FIELD = "campaignData"
IDEMPOTENCY_KEY_FIELD = "idempotencyKey"
VIDEO_FIELD = "video"
_SCENE_IMAGE_PREFIX = "sceneImage_"
_SCENE_IMAGE_FIELD = re.compile(r"sceneImage_(\d{1,10})")


def get_media_storage(request: Request) -> MediaStorage:
    storage = getattr(request.app.state, "media_storage", None)
    if storage is None:
        storage = MediaStorage()
        request.app.state.media_storage = storage
    return storage


async def _read_upload(upload: UploadFile) -> bytes:
    try:
        return await upload.read()
    finally:
        await upload.close()


async def parse_ingestion_form(request: Request, idempotency_header: Optional[str]) -> CampaignIngestionRequest:
    """Turn the multipart body into a typed ingestion request."""
    form = await request.form()

    raw_metadata = form.get(CAMPAIGN_DATA_FIELD)
    if not isinstance(raw_metadata, str) or not raw_metadata.strip():
        raise MalformedRequest("Campaign data is required")
    try:
        metadata = json.loads(raw_metadata)
    except json.JSONDecodeError as exc:
        raise MalformedRequest("Campaign data is not valid JSON") from exc
    if not isinstance(metadata, dict):
        raise MalformedRequest("Campaign data must be a JSON object")

    scene_images, video = await _parse_asset_fields(form)
    idempotency_key = form.get(IDEMPOTENCY_KEY_FIELD)
    if not isinstance(idempotency_key, str) or not idempotency_key.strip():
        idempotency_key = idempotency_header
    return CampaignIngestionRequest(
        metadata=metadata,
        scene_images=scene_images,
        video=video,
        idempotency_key=(idempotency_key or "").strip() or None,
    )


async def _parse_asset_fields(form: FormData) -> tuple[list[SceneImageUpload], Optional[VideoUpload]]:
    scene_images: list[SceneImageUpload] = []
    for field_name, value in form.multi_items():
        if not field_name.startswith(_SCENE_IMAGE_PREFIX):
            continue
        match = _SCENE_IMAGE_FIELD.fullmatch(field_name)
        if not match:
            raise MalformedRequest(f"Invalid scene image field: {field_name}")
        if not isinstance(value, UploadFile):
            raise MalformedRequest(f"Field {field_name} must be a file")
        scene_images.append(
            SceneImageUpload(
                scene_number=int(match.group(1)),
                data=await _read_upload(value),
                filename=value.filename,
                content_type=value.content_type,
            )
        )

    video: Optional[VideoUpload] = None
    raw_video = form.get(VIDEO_FIELD)
    if raw_video is not None:
        if not isinstance(raw_video, UploadFile):
            raise MalformedRequest("Field video must be a file")
        video = VideoUpload(
            data=await _read_upload(raw_video),
            filename=raw_video.filename,
            content_type=raw_video.content_type,
        )
    return scene_images, video


@router.post("/save", response_model=CampaignSaveResponse)
async def save_campaign(
    request: Request,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
    storage: MediaStorage = Depends(get_media_storage),
):
    ingestion_request = await parse_ingestion_form(request, idempotency_key)
    service = CampaignIngestionService(repository=CampaignsRepository(session), storage=storage)
    result = await run_in_threadpool(service.ingest, owner_id=auth.user_id, request=ingestion_request)
    return CampaignSaveResponse.from_result(result)


@router.post("/{campaign_id}/assets", response_model=CampaignSaveResponse)
async def add_campaign_assets(
    campaign_id: str,
    request: Request,
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
    storage: MediaStorage = Depends(get_media_storage),
):
    scene_images, video = await _parse_asset_fields(await request.form())
    service = CampaignIngestionService(repository=CampaignsRepository(session), storage=storage)
    result = await run_in_threadpool(
        service.add_assets,
        owner_id=auth.user_id,
        campaign_id=campaign_id,
        scene_images=scene_images,
        video=video,
    )
    return CampaignSaveResponse.from_result(result)


@router.get("", response_model=CampaignListResponse)
def list_campaigns(
    status_filter: Optional[CampaignStatusEnum] = Query(default=None, alias="status"),
    limit: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    campaigns = CampaignsRepository(session).list_for_owner(auth.user_id, status=status_filter, limit=limit)
    return CampaignListResponse(
        campaigns=[CampaignOut.from_model(campaign) for campaign in campaigns],
        count=len(campaigns),
    )


@router.get("/{campaign_id}", response_model=CampaignResponse)
def get_campaign(
    campaign_id: str,
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    campaign = CampaignsRepository(session).get_campaign(campaign_id, owner_id=auth.user_id)
    if not campaign:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Campaign not found")
    return CampaignResponse(campaign=CampaignOut.from_model(campaign))


@router.patch("/{campaign_id}/status", response_model=CampaignResponse)
def update_campaign_status(
    campaign_id: str,
    payload: CampaignStatusUpdateRequest,
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    campaign = CampaignsRepository(session).update_status(campaign_id, auth.user_id, payload.status)
    logger.info(
        "campaigns.status_updated",
        extra={"campaign_id": str(campaign.id), "status": campaign.status.value},
    )
    return CampaignResponse(campaign=CampaignOut.from_model(campaign))
