from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, cast

from yt_dlp import YoutubeDL

from backend.app.repositories.channel_repository import Channel
from backend.app.services.rate_limiter import RequestPacer
from backend.app.services.video_sources import (
    ChannelFetchResult,
    VideoDetails,
    VideoSourceError,
    channel_url,
    parse_upload_date,
    video_url,
)

LOGGER = logging.getLogger("mangan.video_sources.ytdlp")

YoutubeDLFactory = Callable[[dict[str, Any]], Any]
_PROGRESS_LOG_EVERY = 10


class YtDlpVideoSource:
    """Primary video source backed by the `yt-dlp` extractor.

    Channel listings use flat extraction, which returns ids without
    descriptions, so every new video costs one more extraction for its full
    metadata. Those per-video requests go through a `RequestPacer`.
    """

    name = "yt-dlp"

    def __init__(
        self,
        *,
        cookies_path: Path | None = None,
        pacer: RequestPacer | None = None,
        ydl_factory: YoutubeDLFactory | None = None,
    ) -> None:
        self._cookies_path = cookies_path
        self._pacer = pacer or RequestPacer(min_interval_seconds=0.2)
        self._ydl_factory: YoutubeDLFactory = ydl_factory or YoutubeDL

    def list_video_ids(self, channel_ref: str) -> list[str]:
        url = channel_url(channel_ref)
        options = self._base_options()
        options["extract_flat"] = True
        options["ignoreerrors"] = True
        try:
            with self._ydl_factory(options) as ydl:
                info = ydl.extract_info(url, download=False)
        except Exception as exc:
            raise VideoSourceError(f"yt-dlp could not list {url}: {exc}") from exc

        if not isinstance(info, dict):
            raise VideoSourceError(f"yt-dlp returned no playlist for {url}")

        video_ids: list[str] = []
        seen: set[str] = set()
        for entry in _iter_entries(cast(dict[str, Any], info)):
            raw_id = entry.get("id")
            if not isinstance(raw_id, str) or not raw_id.strip() or raw_id in seen:
                continue
            seen.add(raw_id)
            video_ids.append(raw_id)
        return video_ids

    def fetch_video(self, video_id: str) -> VideoDetails | None:
        url = video_url(video_id)
        try:
            with self._ydl_factory(self._base_options()) as ydl:
                info = ydl.extract_info(url, download=False)
        except Exception:
            LOGGER.warning("ytdlp video fetch failed video_id=%s", video_id, exc_info=True)
            return None

        if not isinstance(info, dict):
            LOGGER.warning("ytdlp video fetch returned no data video_id=%s", video_id)
            return None
        return self._to_video_details(video_id, cast(dict[str, Any], info))

    def fetch_channel_videos(
        self,
        channel: Channel,
        *,
        max_videos: int,
        cutoff: datetime,
        known_video_ids: set[str],
    ) -> ChannelFetchResult:
        all_ids = self.list_video_ids(channel.youtube_id)
        new_ids = [video_id for video_id in all_ids if video_id not in known_video_ids]
        skipped_count = len(all_ids) - len(new_ids)
        to_process = new_ids[: max(0, max_videos)]
        LOGGER.info(
            "ytdlp channel listed channel=%s found=%s new=%s skipped=%s processing=%s",
            channel.youtube_id,
            len(all_ids),
            len(new_ids),
            skipped_count,
            len(to_process),
        )

        videos: list[VideoDetails] = []
        for index, video_id in enumerate(to_process, start=1):
            self._pacer.wait()
            details = self.fetch_video(video_id)
            if details is not None:
                if details.published_at < cutoff:
                    LOGGER.info(
                        "ytdlp cutoff reached channel=%s video_id=%s published_at=%s",
                        channel.youtube_id,
                        video_id,
                        details.published_at.isoformat(),
                    )
                    break
                videos.append(
                    replace(
                        details,
                        channel_id=details.channel_id or channel.youtube_id,
                        channel_title=details.channel_title or channel.name,
                    )
                )

            if index % _PROGRESS_LOG_EVERY == 0 or index == len(to_process):
                LOGGER.debug(
                    "ytdlp detail progress channel=%s current=%s total=%s",
                    channel.youtube_id,
                    index,
                    len(to_process),
                )

        return ChannelFetchResult(videos=videos, skipped_count=skipped_count)

    def _base_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
        }
        if self._cookies_path is not None:
            options["cookiefile"] = str(self._cookies_path)
        return options

    def _to_video_details(self, video_id: str, info: dict[str, Any]) -> VideoDetails | None:
        published_at = parse_upload_date(info.get("upload_date"))
        if published_at is None:
            published_at = _timestamp_to_datetime(info.get("timestamp"))
        if published_at is None:
            # Undated videos cannot be checked against the cutoff.
            LOGGER.warning("ytdlp video has no upload date, skipping video_id=%s", video_id)
            return None

        return VideoDetails(
            video_id=_string_or(info.get("id"), video_id),
            title=_string_or(info.get("title"), ""),
            description=_string_or(info.get("description"), ""),
            thumbnail_url=_thumbnail_url(info),
            published_at=published_at,
            channel_id=_string_or(info.get("channel_id"), _string_or(info.get("uploader_id"), "")),
            channel_title=_string_or(info.get("channel"), _string_or(info.get("uploader"), "")),
            view_count=_coerce_view_count(info.get("view_count")),
        )


def _iter_entries(info: dict[str, Any]) -> list[dict[str, Any]]:
    raw_entries = info.get("entries")
    if raw_entries is None:
        return [info] if isinstance(info.get("id"), str) and info.get("_type") != "playlist" else []

    entries: list[dict[str, Any]] = []
    for raw_entry in cast(list[Any], list(raw_entries)):
        if not isinstance(raw_entry, dict):
            continue
        entry = cast(dict[str, Any], raw_entry)
        # Channel root URLs nest one playlist per tab.
        if entry.get("_type") == "playlist" and entry.get("entries") is not None:
            entries.extend(_iter_entries(entry))
            continue
        entries.append(entry)
    return entries


def _thumbnail_url(info: dict[str, Any]) -> str:
    thumbnail = info.get("thumbnail")
    if isinstance(thumbnail, str) and thumbnail.strip():
        return thumbnail
    thumbnails = info.get("thumbnails")
    if isinstance(thumbnails, list):
        for raw_item in cast(list[Any], thumbnails):
            if isinstance(raw_item, dict):
                url = cast(dict[str, Any], raw_item).get("url")
                if isinstance(url, str) and url.strip():
                    return url
    return ""


def _timestamp_to_datetime(raw_value: object) -> datetime | None:
    if isinstance(raw_value, bool) or not isinstance(raw_value, int | float):
        return None
    try:
        return datetime.fromtimestamp(raw_value, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def _coerce_view_count(raw_value: object) -> int | None:
    if isinstance(raw_value, bool):
        return None
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, float):
        return int(raw_value)
    return None


def _string_or(raw_value: object, default: str) -> str:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value
    return default
