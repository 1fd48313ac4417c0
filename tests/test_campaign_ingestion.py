import pytest
from botocore.exceptions import EndpointConnectionError

from campaign_ingest.db.enums import AssetKindEnum, CampaignStatusEnum, IngestionStateEnum
from campaign_ingest.db.repositories.campaigns import CampaignNotFound, InvalidCampaignInput
from campaign_ingest.services.campaign_ingestion import (
    CampaignIngestionRequest,
    CampaignIngestionService,
    MalformedRequest,
    SceneImageUpload,
    Unauthorized,
    VideoUpload,
    resolve_content_type,
)
from campaign_ingest.services.media_storage import StoreRejected, StoreUnavailable
from tests.conftest import client_error

FIXED_TS = 1700000000000


@pytest.fixture()
def service(repository, media_storage) -> CampaignIngestionService:
    return CampaignIngestionService(repository=repository, storage=media_storage, clock=lambda: FIXED_TS)


def _image(scene_number: int, name: str = "scene.png", data: bytes = b"png-bytes") -> SceneImageUpload:
    return SceneImageUpload(scene_number=scene_number, data=data, filename=name, content_type="image/png")


def _video(name: str = "final.mp4", data: bytes = b"mp4-bytes" * 100) -> VideoUpload:
    return VideoUpload(data=data, filename=name, content_type="video/mp4")


def test_metadata_only_request_creates_draft_without_storage_calls(service, fake_s3):
    result = service.ingest(owner_id="owner-1", request=CampaignIngestionRequest(metadata={"productName": "Widget"}))

    assert result.created is True
    assert result.state == IngestionStateEnum.completed
    assert result.campaign.status == CampaignStatusEnum.draft
    assert result.campaign.scene_assets == []
    assert result.campaign.video_url is None
    assert result.failed_uploads == []
    assert fake_s3.total_calls == 0


def test_scene_images_and_video_are_uploaded_and_linked(service, fake_s3, media_storage):
    request = CampaignIngestionRequest(
        metadata={"productName": "Widget", "headline": "Buy now"},
        scene_images=[_image(0, "opening.png"), _image(2, "closing.png")],
        video=_video(),
    )

    result = service.ingest(owner_id="owner-1", request=request)

    campaign = result.campaign
    campaign_id = str(campaign.id)
    by_scene = {row.scene_number: row for row in campaign.scene_assets}
    assert sorted(by_scene) == [0, 2]
    assert by_scene[0].storage_key == f"campaigns/{campaign_id}/images/scene-0/{FIXED_TS}-opening.png"
    assert by_scene[2].storage_key == f"campaigns/{campaign_id}/images/scene-2/{FIXED_TS}-closing.png"
    for row in by_scene.values():
        assert row.url == media_storage.build_public_url(row.storage_key)
        assert row.storage_key in fake_s3.objects

    assert campaign.video_storage_key == f"campaigns/{campaign_id}/videos/{FIXED_TS}-final.mp4"
    assert campaign.video_url == media_storage.build_public_url(campaign.video_storage_key)
    assert fake_s3.objects[campaign.video_storage_key]["body"] == request.video.data
    assert campaign.status == CampaignStatusEnum.draft
    assert campaign.campaign_metadata == {"productName": "Widget", "headline": "Buy now"}
    assert result.failed_uploads == []
    assert result.unlinked_assets == []


def test_uploaded_objects_carry_campaign_metadata(service, fake_s3):
    result = service.ingest(
        owner_id="owner-1",
        request=CampaignIngestionRequest(metadata={"productName": "W"}, scene_images=[_image(3, "my shot.png")]),
    )

    stored = fake_s3.objects[result.campaign.scene_assets[0].storage_key]
    assert stored["content_type"] == "image/png"
    assert stored["metadata"]["campaignId"] == str(result.campaign.id)
    assert stored["metadata"]["originalName"] == "my%20shot.png"
    assert stored["metadata"]["sceneIndex"] == "3"
    assert "uploadedAt" in stored["metadata"]


def test_invalid_metadata_fails_before_any_upload(service, fake_s3, repository):
    request = CampaignIngestionRequest(metadata={"headline": "no product"}, scene_images=[_image(0)], video=_video())

    with pytest.raises(InvalidCampaignInput):
        service.ingest(owner_id="owner-1", request=request)

    assert fake_s3.total_calls == 0
    assert repository.list_for_owner("owner-1") == []


def test_missing_owner_is_unauthorized(service, fake_s3):
    with pytest.raises(Unauthorized):
        service.ingest(owner_id=None, request=CampaignIngestionRequest(metadata={"productName": "W"}))
    assert fake_s3.total_calls == 0


@pytest.mark.parametrize(
    "request_kwargs",
    [
        {"metadata": ["not", "an", "object"]},
        {"metadata": {"productName": "W"}, "scene_images": [_image(1), _image(1, "again.png")]},
        {"metadata": {"productName": "W"}, "scene_images": [_image(-1)]},
        {"metadata": {"productName": "W"}, "scene_images": [_image(2**31)]},
        {"metadata": {"productName": "W"}, "scene_images": [SceneImageUpload(scene_number=True, data=b"x")]},
    ],
)
def test_malformed_requests_are_rejected(service, fake_s3, repository, request_kwargs):
    with pytest.raises(MalformedRequest):
        service.ingest(owner_id="owner-1", request=CampaignIngestionRequest(**request_kwargs))
    assert fake_s3.total_calls == 0
    assert repository.list_for_owner("owner-1") == []


def test_video_failure_does_not_block_scene_images(service, fake_s3):
    fake_s3.create_multipart_error = EndpointConnectionError(endpoint_url="https://s3.us-east-1.amazonaws.com")
    request = CampaignIngestionRequest(
        metadata={"productName": "W"},
        scene_images=[_image(0), _image(1)],
        video=_video(),
    )

    result = service.ingest(owner_id="owner-1", request=request)

    assert sorted(row.scene_number for row in result.campaign.scene_assets) == [0, 1]
    assert result.campaign.video_url is None
    assert len(result.failed_uploads) == 1
    failure = result.failed_uploads[0]
    assert failure.asset_kind == AssetKindEnum.video
    assert failure.filename == "final.mp4"
    assert isinstance(failure.error, StoreUnavailable)
    assert failure.error_type == "StoreUnavailable"


def test_single_image_failure_is_isolated(service, fake_s3):
    fake_s3.put_failures["scene-1/"] = client_error("InternalError", 500)
    request = CampaignIngestionRequest(
        metadata={"productName": "W"},
        scene_images=[_image(0), _image(1), _image(2)],
    )

    result = service.ingest(owner_id="owner-1", request=request)

    assert sorted(row.scene_number for row in result.campaign.scene_assets) == [0, 2]
    assert [(o.asset_kind, o.scene_number) for o in result.failed_uploads] == [(AssetKindEnum.image, 1)]


def test_unsupported_content_type_is_reported_per_asset(service, fake_s3):
    request = CampaignIngestionRequest(
        metadata={"productName": "W"},
        scene_images=[
            SceneImageUpload(scene_number=0, data=b"%PDF", filename="brief.pdf", content_type="application/pdf"),
            _image(1),
        ],
    )

    result = service.ingest(owner_id="owner-1", request=request)

    assert [row.scene_number for row in result.campaign.scene_assets] == [1]
    assert len(result.failed_uploads) == 1
    assert isinstance(result.failed_uploads[0].error, StoreRejected)
    assert fake_s3.calls["put_object"] == 1


def test_empty_files_are_skipped(service, fake_s3):
    request = CampaignIngestionRequest(
        metadata={"productName": "W"},
        scene_images=[_image(0, data=b"")],
        video=VideoUpload(data=b"", filename="empty.mp4"),
    )
    result = service.ingest(owner_id="owner-1", request=request)
    assert result.campaign.scene_assets == []
    assert fake_s3.total_calls == 0


def test_reconciliation_failure_leaves_uploads_unlinked(service, fake_s3, repository, monkeypatch):
    def fail_attach(campaign_id, updates):
        raise CampaignNotFound(campaign_id)

    monkeypatch.setattr(repository, "attach_scene_assets", fail_attach)
    request = CampaignIngestionRequest(
        metadata={"productName": "W"},
        scene_images=[_image(0), _image(4)],
        video=_video(),
    )

    result = service.ingest(owner_id="owner-1", request=request)

    assert result.created is True
    assert result.campaign.scene_assets == []
    assert result.campaign.video_url is not None
    assert sorted(o.scene_number for o in result.unlinked_assets) == [0, 4]
    for outcome in result.unlinked_assets:
        assert outcome.asset.key in fake_s3.objects
    assert len(result.reconciliation_errors) == 1
    assert result.failed_uploads == []


@pytest.mark.parametrize("error", [OverflowError("int too large"), RuntimeError("unsupported dialect")])
def test_unexpected_attach_errors_are_recorded_not_raised(service, fake_s3, repository, monkeypatch, error):
    def fail_attach(campaign_id, updates):
        raise error

    monkeypatch.setattr(repository, "attach_scene_assets", fail_attach)

    result = service.ingest(
        owner_id="owner-1",
        request=CampaignIngestionRequest(metadata={"productName": "W"}, scene_images=[_image(5)]),
    )

    assert [o.scene_number for o in result.unlinked_assets] == [5]
    assert result.unlinked_assets[0].asset.key in fake_s3.objects
    assert result.reconciliation_errors == [f"Failed to link scene images: {error}"]


def test_campaign_deleted_before_reconcile_raises_not_found(service, repository, monkeypatch):
    def vanish(campaign_id, updates):
        raise CampaignNotFound(campaign_id)

    monkeypatch.setattr(repository, "attach_scene_assets", vanish)
    monkeypatch.setattr(repository, "get_campaign", lambda campaign_id, owner_id=None: None)

    with pytest.raises(CampaignNotFound):
        service.ingest(
            owner_id="owner-1",
            request=CampaignIngestionRequest(metadata={"productName": "W"}, scene_images=[_image(0)]),
        )


def test_repeated_idempotency_key_skips_uploads(service, fake_s3):
    request = CampaignIngestionRequest(
        metadata={"productName": "W"},
        scene_images=[_image(0)],
        idempotency_key="save-42",
    )

    first = service.ingest(owner_id="owner-1", request=request)
    calls_after_first = fake_s3.total_calls
    second = service.ingest(owner_id="owner-1", request=request)

    assert first.created is True
    assert second.created is False
    assert second.campaign.id == first.campaign.id
    assert fake_s3.total_calls == calls_after_first
    assert [row.scene_number for row in second.campaign.scene_assets] == [0]


def test_video_progress_is_forwarded(service):
    progress = []
    service.ingest(
        owner_id="owner-1",
        request=CampaignIngestionRequest(metadata={"productName": "W"}, video=_video()),
        on_video_progress=progress.append,
    )
    assert progress
    assert progress[-1].percentage == pytest.approx(100.0)


def test_uploads_respect_concurrency_bound(repository, media_storage, fake_s3):
    fake_s3.put_delay_seconds = 0.05
    service = CampaignIngestionService(
        repository=repository,
        storage=media_storage,
        max_upload_concurrency=2,
        clock=lambda: FIXED_TS,
    )
    request = CampaignIngestionRequest(
        metadata={"productName": "W"},
        scene_images=[_image(number, f"s{number}.png") for number in range(6)],
    )

    result = service.ingest(owner_id="owner-1", request=request)

    assert len(result.campaign.scene_assets) == 6
    assert 1 <= fake_s3.max_active_puts <= 2


@pytest.mark.parametrize(
    ("kind", "content_type", "filename", "expected"),
    [
        (AssetKindEnum.image, "image/PNG", "a.png", "image/png"),
        (AssetKindEnum.image, "application/octet-stream", "a.gif", "image/gif"),
        (AssetKindEnum.image, None, None, "image/jpeg"),
        (AssetKindEnum.video, "", "clip.mov", "video/quicktime"),
        (AssetKindEnum.video, None, "clip", "video/mp4"),
    ],
)
def test_resolve_content_type(kind, content_type, filename, expected):
    assert resolve_content_type(kind, content_type, filename) == expected


def test_resolve_content_type_rejects_wrong_kind():
    with pytest.raises(StoreRejected):
        resolve_content_type(AssetKindEnum.image, "video/mp4", "clip.mp4")


def test_reuploading_a_scene_repoints_it_and_keeps_the_earlier_object(repository, media_storage, fake_s3):
    first_service = CampaignIngestionService(repository=repository, storage=media_storage, clock=lambda: 1000)
    created = first_service.ingest(
        owner_id="owner-1",
        request=CampaignIngestionRequest(
            metadata={"productName": "W"},
            scene_images=[_image(0, "first.png"), _image(1, "other.png")],
        ),
    )
    campaign_id = str(created.campaign.id)
    first_key = f"campaigns/{campaign_id}/images/scene-0/1000-first.png"

    second_service = CampaignIngestionService(repository=repository, storage=media_storage, clock=lambda: 2000)
    result = second_service.add_assets(
        owner_id="owner-1",
        campaign_id=campaign_id,
        scene_images=[_image(0, "first.png", data=b"new-png")],
    )

    second_key = f"campaigns/{campaign_id}/images/scene-0/2000-first.png"
    assert result.created is False
    assert result.state == IngestionStateEnum.completed
    by_scene = {row.scene_number: row.storage_key for row in result.campaign.scene_assets}
    assert by_scene == {0: second_key, 1: f"campaigns/{campaign_id}/images/scene-1/1000-other.png"}
    assert fake_s3.objects[first_key]["body"] == b"png-bytes"
    assert fake_s3.objects[second_key]["body"] == b"new-png"
    assert fake_s3.calls["abort_multipart_upload"] == 0


def test_add_assets_attaches_a_video_to_an_existing_campaign(service, repository, media_storage):
    campaign, _ = repository.create_campaign("owner-1", {"productName": "W"})

    result = service.add_assets(owner_id="owner-1", campaign_id=str(campaign.id), video=_video("cut.mp4"))

    assert result.campaign.video_storage_key == f"campaigns/{campaign.id}/videos/{FIXED_TS}-cut.mp4"
    assert result.campaign.video_url == media_storage.build_public_url(result.campaign.video_storage_key)


def test_add_assets_requires_an_owned_campaign(service, repository, fake_s3):
    campaign, _ = repository.create_campaign("owner-1", {"productName": "W"})

    with pytest.raises(CampaignNotFound):
        service.add_assets(owner_id="owner-2", campaign_id=str(campaign.id), scene_images=[_image(0)])
    with pytest.raises(Unauthorized):
        service.add_assets(owner_id=None, campaign_id=str(campaign.id), scene_images=[_image(0)])
    assert fake_s3.total_calls == 0
