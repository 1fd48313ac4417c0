from __future__ import annotations

import concurrent.futures
import logging
import mimetypes
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence
from urllib.parse import quote

from campaign_ingest.config import settings
from campaign_ingest.db.enums import AssetKindEnum, IngestionStateEnum
from campaign_ingest.db.models import Campaign
from campaign_ingest.db.repositories.campaigns import (
    CampaignNotFound,
    CampaignsRepository,
    SceneAssetUpdate,
)
from campaign_ingest.services.asset_keys import build_asset_key, current_timestamp_ms
from campaign_ingest.services.media_storage import (
    MediaStorage,
    MediaStorageError,
    ProgressCallback,
    StoreRejected,
    UploadedAsset,
    UploadProgress,
)

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})
ALLOWED_VIDEO_CONTENT_TYPES = frozenset(
    {"video/mp4", "video/quicktime", "video/x-msvideo", "video/x-matroska", "video/webm"}
)
_DEFAULT_CONTENT_TYPE = {AssetKindEnum.image: "image/jpeg", AssetKindEnum.video: "video/mp4"}
_ALLOWED_CONTENT_TYPES = {
    AssetKindEnum.image: ALLOWED_IMAGE_CONTENT_TYPES,
    AssetKindEnum.video: ALLOWED_VIDEO_CONTENT_TYPES,
}
_GENERIC_CONTENT_TYPES = {"", "application/octet-stream", "binary/octet-stream"}
# scene_number is a 32-bit INTEGER column.
MAX_SCENE_NUMBER = 2**31 - 1


class IngestionError(Exception):
    pass


class Unauthorized(IngestionError):
    pass


class MalformedRequest(IngestionError):
    pass


@dataclass
class SceneImageUpload:
    scene_number: int
    data: bytes
    filename: Optional[str] = None
    content_type: Optional[str] = None


@dataclass
class VideoUpload:
    data: bytes
    filename: Optional[str] = None
    content_type: Optional[str] = None


@dataclass
class CampaignIngestionRequest:
    metadata: Any
    scene_images: list[SceneImageUpload] = field(default_factory=list)
    video: Optional[VideoUpload] = None
    idempotency_key: Optional[str] = None


@dataclass
class AssetUploadOutcome:
    asset_kind: AssetKindEnum
    filename: Optional[str]
    scene_number: Optional[int] = None
    asset: Optional[UploadedAsset] = None
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.asset is not None and self.error is None

    @property
    def error_type(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None


@dataclass
class IngestionResult:
    campaign: Campaign
    state: IngestionStateEnum
    created: bool
    failed_uploads: list[AssetUploadOutcome] = field(default_factory=list)
    unlinked_assets: list[AssetUploadOutcome] = field(default_factory=list)
    reconciliation_errors: list[str] = field(default_factory=list)


def resolve_content_type(asset_kind: AssetKindEnum, content_type: Optional[str], filename: Optional[str]) -> str:
    resolved = (content_type or "").split(";")[0].strip().lower()
    if resolved in _GENERIC_CONTENT_TYPES and filename:
        guessed = mimetypes.guess_type(filename)[0]
        resolved = guessed.lower() if guessed else ""
    if resolved in _GENERIC_CONTENT_TYPES:
        return _DEFAULT_CONTENT_TYPE[asset_kind]
    if resolved not in _ALLOWED_CONTENT_TYPES[asset_kind]:
        raise StoreRejected(
            f"Unsupported {asset_kind.value} type for {filename or 'upload'} ({resolved}).",
            code="UnsupportedContentType",
        )
    return resolved


def _enter(state: IngestionStateEnum, **context: Any) -> IngestionStateEnum:
    logger.debug("campaign_ingestion.state", extra={"state": state.value, **context})
    return state


class CampaignIngestionService:
    """
    Create a campaign record, upload its media, then link the uploaded keys back to it.

    Record creation failures abort before any storage write. Upload failures are isolated
    per file and reported on the result. Reconciliation failures leave the uploads in the
    bucket, unlinked, and are reported rather than raised.
    """

    def __init__(
        self,
        *,
        repository: CampaignsRepository,
        storage: MediaStorage,
        max_upload_concurrency: Optional[int] = None,
        clock: Callable[[], int] = current_timestamp_ms,
    ) -> None:
        self.repository = repository
        self.storage = storage
        self.max_upload_concurrency = int(max_upload_concurrency or settings.INGEST_UPLOAD_MAX_CONCURRENCY)
        self.clock = clock

    def ingest(
        self,
        *,
        owner_id: Optional[str],
        request: CampaignIngestionRequest,
        on_video_progress: Optional[ProgressCallback] = None,
    ) -> IngestionResult:
        _enter(IngestionStateEnum.received, owner_id=owner_id)
        if not owner_id:
            raise Unauthorized("Unauthorized")
        self._validate_request(request)

        try:
            campaign, created = self.repository.create_campaign(
                owner_id,
                request.metadata,
                idempotency_key=request.idempotency_key,
            )
        except Exception:
            logger.warning(
                "campaign_ingestion.create_failed",
                extra={"owner_id": owner_id, "state": IngestionStateEnum.failed.value},
            )
            raise
        campaign_id = str(campaign.id)
        _enter(IngestionStateEnum.record_created, campaign_id=campaign_id)

        if not created:
            logger.info(
                "campaign_ingestion.idempotent_replay",
                extra={"campaign_id": campaign_id, "owner_id": owner_id},
            )
            return IngestionResult(campaign=campaign, state=IngestionStateEnum.completed, created=False)

        return self._upload_and_link(campaign_id, owner_id, request, on_video_progress, created=True)

    def add_assets(
        self,
        *,
        owner_id: Optional[str],
        campaign_id: str,
        scene_images: Sequence[SceneImageUpload] = (),
        video: Optional[VideoUpload] = None,
        on_video_progress: Optional[ProgressCallback] = None,
    ) -> IngestionResult:
        """
        Upload more media for an existing campaign and link it.

        A scene index that already has an image is repointed at the new upload; the
        earlier object stays in the bucket.
        """
        _enter(IngestionStateEnum.received, owner_id=owner_id, campaign_id=campaign_id)
        if not owner_id:
            raise Unauthorized("Unauthorized")
        campaign = self.repository.get_campaign(campaign_id, owner_id=owner_id)
        if campaign is None:
            raise CampaignNotFound(campaign_id)
        request = CampaignIngestionRequest(
            metadata=campaign.campaign_metadata,
            scene_images=list(scene_images),
            video=video,
        )
        self._validate_request(request)
        return self._upload_and_link(str(campaign.id), owner_id, request, on_video_progress, created=False)

    def _upload_and_link(
        self,
        campaign_id: str,
        owner_id: str,
        request: CampaignIngestionRequest,
        on_video_progress: Optional[ProgressCallback],
        *,
        created: bool,
    ) -> IngestionResult:
        _enter(IngestionStateEnum.uploading_assets, campaign_id=campaign_id)
        outcomes = self._upload_assets(campaign_id, request, on_video_progress)
        failed = [outcome for outcome in outcomes if not outcome.succeeded]

        unlinked, reconciliation_errors = self._reconcile(campaign_id, outcomes)
        _enter(IngestionStateEnum.reconciled, campaign_id=campaign_id)

        final = self.repository.get_campaign(campaign_id)
        if final is None:
            logger.error(
                "campaign_ingestion.campaign_missing_after_reconcile",
                extra={"campaign_id": campaign_id, "state": IngestionStateEnum.failed.value},
            )
            raise CampaignNotFound(campaign_id)
        state = _enter(IngestionStateEnum.completed, campaign_id=campaign_id)

        logger.info(
            "campaign_ingestion.completed",
            extra={
                "campaign_id": campaign_id,
                "owner_id": owner_id,
                "state": state.value,
                "uploaded": len(outcomes) - len(failed),
                "failed": len(failed),
                "unlinked": len(unlinked),
            },
        )
        return IngestionResult(
            campaign=final,
            state=state,
            created=created,
            failed_uploads=failed,
            unlinked_assets=unlinked,
            reconciliation_errors=reconciliation_errors,
        )

    def _validate_request(self, request: CampaignIngestionRequest) -> None:
        if not isinstance(request.metadata, dict):
            raise MalformedRequest("Campaign data must be a JSON object.")
        seen: set[int] = set()
        for image in request.scene_images:
            if isinstance(image.scene_number, bool) or not isinstance(image.scene_number, int):
                raise MalformedRequest(f"Invalid scene number: {image.scene_number!r}")
            if image.scene_number < 0:
                raise MalformedRequest(f"Scene number must be non-negative: {image.scene_number}")
            if image.scene_number > MAX_SCENE_NUMBER:
                raise MalformedRequest(f"Scene number must be at most {MAX_SCENE_NUMBER}: {image.scene_number}")
            if image.scene_number in seen:
                raise MalformedRequest(f"Duplicate image for scene {image.scene_number}")
            seen.add(image.scene_number)

    def _upload_assets(
        self,
        campaign_id: str,
        request: CampaignIngestionRequest,
        on_video_progress: Optional[ProgressCallback],
    ) -> list[AssetUploadOutcome]:
        jobs: list[tuple[Callable[[], AssetUploadOutcome], AssetUploadOutcome]] = []
        for image in request.scene_images:
            if not image.data:
                continue
            jobs.append(
                (
                    lambda image=image: self._upload_scene_image(campaign_id, image),
                    AssetUploadOutcome(AssetKindEnum.image, image.filename, image.scene_number),
                )
            )
        video = request.video
        if video is not None and video.data:
            jobs.append(
                (
                    lambda: self._upload_video(campaign_id, video, on_video_progress),
                    AssetUploadOutcome(AssetKindEnum.video, video.filename),
                )
            )
        if not jobs:
            return []

        outcomes: list[AssetUploadOutcome] = []
        max_workers = min(self.max_upload_concurrency, len(jobs))
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="campaign-upload",
        ) as pool:
            futures = {pool.submit(job): placeholder for job, placeholder in jobs}
            for future in concurrent.futures.as_completed(futures):
                placeholder = futures[future]
                try:
                    outcomes.append(future.result())
                except Exception as exc:  # noqa: BLE001
                    logger.exception(
                        "campaign_ingestion.upload_crashed",
                        extra={
                            "campaign_id": campaign_id,
                            "asset_kind": placeholder.asset_kind.value,
                            "scene_number": placeholder.scene_number,
                        },
                    )
                    placeholder.error = exc
                    outcomes.append(placeholder)

        outcomes.sort(
            key=lambda outcome: (
                outcome.asset_kind != AssetKindEnum.image,
                outcome.scene_number if outcome.scene_number is not None else -1,
            )
        )
        return outcomes

    def _object_metadata(self, campaign_id: str, filename: Optional[str], scene_number: Optional[int]) -> dict[str, str]:
        metadata = {
            "campaignId": campaign_id,
            "originalName": quote(filename or "upload", safe=""),
            "uploadedAt": datetime.now(timezone.utc).isoformat(),
        }
        if scene_number is not None:
            metadata["sceneIndex"] = str(scene_number)
        return metadata

    def _upload_scene_image(self, campaign_id: str, image: SceneImageUpload) -> AssetUploadOutcome:
        outcome = AssetUploadOutcome(AssetKindEnum.image, image.filename, image.scene_number)
        try:
            content_type = resolve_content_type(AssetKindEnum.image, image.content_type, image.filename)
            key = build_asset_key(
                campaign_id=campaign_id,
                asset_kind=AssetKindEnum.image,
                original_filename=image.filename,
                timestamp_ms=self.clock(),
                scene_index=image.scene_number,
            )
            outcome.asset = self.storage.put_object(
                data=image.data,
                key=key,
                content_type=content_type,
                metadata=self._object_metadata(campaign_id, image.filename, image.scene_number),
            )
        except MediaStorageError as exc:
            logger.warning(
                "campaign_ingestion.upload_failed",
                extra={
                    "campaign_id": campaign_id,
                    "asset_kind": AssetKindEnum.image.value,
                    "scene_number": image.scene_number,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            outcome.error = exc
        return outcome

    def _upload_video(
        self,
        campaign_id: str,
        video: VideoUpload,
        on_video_progress: Optional[ProgressCallback],
    ) -> AssetUploadOutcome:
        outcome = AssetUploadOutcome(AssetKindEnum.video, video.filename)

        def _report(progress: UploadProgress) -> None:
            logger.debug(
                "campaign_ingestion.video_progress",
                extra={
                    "campaign_id": campaign_id,
                    "loaded": progress.loaded,
                    "total": progress.total,
                    "percentage": round(progress.percentage, 2),
                },
            )
            if on_video_progress:
                on_video_progress(progress)

        try:
            content_type = resolve_content_type(AssetKindEnum.video, video.content_type, video.filename)
            key = build_asset_key(
                campaign_id=campaign_id,
                asset_kind=AssetKindEnum.video,
                original_filename=video.filename,
                timestamp_ms=self.clock(),
            )
            outcome.asset = self.storage.put_object_multipart(
                data=video.data,
                key=key,
                content_type=content_type,
                metadata=self._object_metadata(campaign_id, video.filename, None),
                on_progress=_report,
            )
        except MediaStorageError as exc:
            logger.warning(
                "campaign_ingestion.upload_failed",
                extra={
                    "campaign_id": campaign_id,
                    "asset_kind": AssetKindEnum.video.value,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            outcome.error = exc
        return outcome

    def _reconcile(
        self,
        campaign_id: str,
        outcomes: list[AssetUploadOutcome],
    ) -> tuple[list[AssetUploadOutcome], list[str]]:
        unlinked: list[AssetUploadOutcome] = []
        errors: list[str] = []

        images = [o for o in outcomes if o.succeeded and o.asset_kind == AssetKindEnum.image]
        if images:
            updates = [
                SceneAssetUpdate(
                    scene_number=int(o.scene_number),
                    image_url=o.asset.url,
                    image_key=o.asset.key,
                )
                for o in images
            ]
            try:
                self.repository.attach_scene_assets(campaign_id, updates)
            except Exception as exc:  # noqa: BLE001
                self._log_unlinked(campaign_id, images, exc)
                unlinked.extend(images)
                errors.append(f"Failed to link scene images: {exc}")

        videos = [o for o in outcomes if o.succeeded and o.asset_kind == AssetKindEnum.video]
        for video in videos:
            try:
                self.repository.attach_video(campaign_id, video.asset.url, video.asset.key)
            except Exception as exc:  # noqa: BLE001
                self._log_unlinked(campaign_id, [video], exc)
                unlinked.append(video)
                errors.append(f"Failed to link video: {exc}")

        return unlinked, errors

    def _log_unlinked(self, campaign_id: str, outcomes: list[AssetUploadOutcome], exc: Exception) -> None:
        logger.error(
            "campaign_ingestion.reconcile_failed",
            exc_info=exc,
            extra={
                "campaign_id": campaign_id,
                "unlinked_keys": [o.asset.key for o in outcomes if o.asset],
                "bucket": self.storage.bucket,
            },
        )
