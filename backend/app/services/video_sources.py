from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from backend.app.repositories.channel_repository import Channel
from backend.app.repositories.common import parse_iso_utc

YOUTUBE_BASE_URL = "https://www.youtube.com"


@dataclass(frozen=True)
class VideoDetails:
    video_id: str
    title: str
    description: str
    thumbnail_url: str
    published_at: datetime
    channel_id: str
    channel_title: str
    view_count: int | None = None


@dataclass(frozen=True)
class ChannelFetchResult:
    videos: list[VideoDetails] = field(default_factory=list)
    skipped_count: int = 0


class VideoSourceError(Exception):
    """A video source could not enumerate or fetch a channel's videos."""


class VideoSourceUnavailableError(VideoSourceError):
    """The source is not usable at all, e.g. a missing API key or library."""


class VideoSource(Protocol):
    """
    One strategy for reading a channel's uploads.

    `list_video_ids` and `fetch_video` are the two primitive operations.
    `fetch_channel_videos` composes them for one sync pass: newest first,
    bounded by `max_videos`, and stopping at the first video older than
    `cutoff`.
    """

    name: str

    def list_video_ids(self, channel_ref: str) -> list[str]: ...

    def fetch_video(self, video_id: str) -> VideoDetails | None: ...

    def fetch_channel_videos(
        self,
        channel: Channel,
        *,
        max_videos: int,
        cutoff: datetime,
        known_video_ids: set[str],
    ) -> ChannelFetchResult: ...


def channel_url(handle_or_id: str) -> str:
    ref = handle_or_id.strip()
    if ref.startswith("UC"):
        return f"{YOUTUBE_BASE_URL}/channel/{ref}/videos"
    if ref.startswith("@"):
        return f"{YOUTUBE_BASE_URL}/{ref}/videos"
    return f"{YOUTUBE_BASE_URL}/@{ref}/videos"


def video_url(video_id: str) -> str:
    return f"{YOUTUBE_BASE_URL}/watch?v={video_id}"


def parse_upload_date(raw_value: object) -> datetime | None:
    """Parse a `YYYYMMDD` upload date as midnight UTC."""
    if not isinstance(raw_value, str):
        return None
    value = raw_value.strip()
    if len(value) != 8 or not value.isdigit():
        return None
    try:
        return datetime.strptime(value, "%Y%m%d").replace(tzinfo=UTC)
    except ValueError:
        return None


def parse_api_datetime(raw_value: object) -> datetime | None:
    if not isinstance(raw_value, str):
        return None
    normalized = raw_value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    return parse_iso_utc(normalized)
