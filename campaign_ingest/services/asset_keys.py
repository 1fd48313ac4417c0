from __future__ import annotations

import time
from typing import Optional
from urllib.parse import quote

from campaign_ingest.db.enums import AssetKindEnum

# Filenames keep only unreserved characters literally; everything else is
# percent-encoded, which keeps distinct filenames distinct.
_FILENAME_SAFE_CHARS = "._-"
DEFAULT_FILENAME = "upload"


def current_timestamp_ms() -> int:
    return time.time_ns() // 1_000_000


def encode_filename(filename: Optional[str]) -> str:
    if not filename:
        return DEFAULT_FILENAME
    return quote(filename, safe=_FILENAME_SAFE_CHARS)


def build_asset_key(
    *,
    campaign_id: str,
    asset_kind: AssetKindEnum,
    original_filename: Optional[str],
    timestamp_ms: int,
    scene_index: Optional[int] = None,
) -> str:
    """
    campaigns/<campaign_id>/<kind>s/[scene-<index>/]<timestamp>-<filename>

    The timestamp keeps re-uploads of the same file to the same scene on distinct keys.
    """
    campaign_id = str(campaign_id or "").strip()
    if not campaign_id or "/" in campaign_id:
        raise ValueError(f"Invalid campaign id for asset key: {campaign_id!r}")
    kind = AssetKindEnum(asset_kind)
    if isinstance(timestamp_ms, bool) or not isinstance(timestamp_ms, int) or timestamp_ms < 0:
        raise ValueError(f"Invalid upload timestamp for asset key: {timestamp_ms!r}")

    parts = ["campaigns", campaign_id, f"{kind.value}s"]
    if scene_index is not None:
        if isinstance(scene_index, bool) or not isinstance(scene_index, int) or scene_index < 0:
            raise ValueError(f"Invalid scene index for asset key: {scene_index!r}")
        parts.append(f"scene-{scene_index}")
    parts.append(f"{timestamp_ms}-{encode_filename(original_filename)}")
    return "/".join(parts)
