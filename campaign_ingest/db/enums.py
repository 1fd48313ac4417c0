from enum import Enum


class CampaignStatusEnum(str, Enum):
    draft = "draft"
    processing = "processing"
    ready = "ready"
    failed = "failed"


class AssetKindEnum(str, Enum):
    image = "image"
    video = "video"


class IngestionStateEnum(str, Enum):
    received = "received"
    record_created = "record_created"
    uploading_assets = "uploading_assets"
    reconciled = "reconciled"
    completed = "completed"
    failed = "failed"
