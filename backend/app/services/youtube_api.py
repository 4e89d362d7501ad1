from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from importlib import import_module
from threading import Lock
from typing import Any, cast

from backend.app.repositories.channel_repository import Channel
from backend.app.services.rate_limiter import RequestPacer
from backend.app.services.video_sources import (
    ChannelFetchResult,
    VideoDetails,
    VideoSourceError,
    VideoSourceUnavailableError,
    parse_api_datetime,
)

LOGGER = logging.getLogger("mangan.video_sources.youtube_api")

MAX_PAGE_SIZE = 50
ClientFactory = Callable[[str], Any]


@dataclass(frozen=True)
class ResolvedChannel:
    channel_id: str
    title: str


@dataclass(frozen=True)
class SearchPage:
    video_ids: list[str]
    next_page_token: str | None


class YouTubeQuotaExceededError(VideoSourceError):
    pass


class YouTubeApiClient:
    """Thin wrapper over the YouTube Data API v3 discovery client.

    The discovery client is built on first use so that a missing API key only
    fails the calls that need it.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._api_key = api_key
        self._client_factory = client_factory or _build_youtube_client
        self._client: Any | None = None
        self._lock = Lock()

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def search_channel_videos(
        self,
        channel_id: str,
        *,
        max_results: int,
        page_token: str | None = None,
    ) -> SearchPage:
        query_kwargs: dict[str, object] = {
            "part": "snippet",
            "channelId": channel_id,
            "type": "video",
            "order": "date",
            "maxResults": max(1, min(MAX_PAGE_SIZE, max_results)),
        }
        if page_token is not None:
            query_kwargs["pageToken"] = page_token

        response = self._execute(
            "search.list",
            lambda client: client.search().list(**query_kwargs).execute(),
        )

        video_ids: list[str] = []
        for item in _as_list(response.get("items")):
            raw_video_id = _as_dict(_as_dict(item).get("id")).get("videoId")
            if isinstance(raw_video_id, str) and raw_video_id.strip():
                video_ids.append(raw_video_id)

        raw_next = response.get("nextPageToken")
        next_page_token = raw_next if isinstance(raw_next, str) and raw_next.strip() else None
        return SearchPage(video_ids=video_ids, next_page_token=next_page_token)

    def get_video_details(self, video_ids: list[str]) -> list[VideoDetails]:
        """Full snippet and statistics for `video_ids`, in the order given."""
        details_by_id: dict[str, VideoDetails] = {}
        for index in range(0, len(video_ids), MAX_PAGE_SIZE):
            chunk = video_ids[index : index + MAX_PAGE_SIZE]
            response = self._execute(
                "videos.list",
                lambda client, chunk=chunk: client.videos()
                .list(
                    part="snippet,statistics",
                    id=",".join(chunk),
                    maxResults=len(chunk),
                )
                .execute(),
            )
            for item in _as_list(response.get("items")):
                details = _video_item_to_details(_as_dict(item))
                if details is not None:
                    details_by_id[details.video_id] = details

        return [details_by_id[video_id] for video_id in video_ids if video_id in details_by_id]

    def resolve_channel(self, handle_or_id: str) -> ResolvedChannel | None:
        ref = handle_or_id.strip()
        if not ref:
            return None
        if ref.startswith("UC"):
            lookup: dict[str, object] = {"id": ref}
        else:
            lookup = {"forHandle": ref[1:] if ref.startswith("@") else ref}

        response = self._execute(
            "channels.list",
            lambda client: client.channels().list(part="snippet", **lookup).execute(),
        )
        items = _as_list(response.get("items"))
        if not items:
            return None

        first_item = _as_dict(items[0])
        raw_id = first_item.get("id")
        if not isinstance(raw_id, str) or not raw_id.strip():
            return None
        raw_title = _as_dict(first_item.get("snippet")).get("title")
        title = raw_title.strip() if isinstance(raw_title, str) and raw_title.strip() else raw_id
        return ResolvedChannel(channel_id=raw_id, title=title)

    def fetch_channel_avatar(self, channel_id: str) -> str | None:
        response = self._execute(
            "channels.list",
            lambda client: client.channels().list(part="snippet", id=channel_id).execute(),
        )
        items = _as_list(response.get("items"))
        if not items:
            return None
        snippet = _as_dict(_as_dict(items[0]).get("snippet"))
        return _pick_thumbnail(snippet, ("default", "medium", "high"))

    def _get_client(self) -> Any:
        if not self._api_key:
            raise VideoSourceUnavailableError("YouTube Data API key is not configured")
        with self._lock:
            if self._client is None:
                self._client = self._client_factory(self._api_key)
            return self._client

    def _execute(self, operation: str, call: Callable[[Any], Any]) -> dict[str, Any]:
        client = self._get_client()
        try:
            response = call(client)
        except Exception as exc:
            if _is_youtube_data_api_rate_limit_error(exc):
                LOGGER.warning("youtube api quota exhausted operation=%s", operation)
                raise YouTubeQuotaExceededError(
                    f"YouTube Data API quota exceeded during {operation}"
                ) from exc
            raise VideoSourceError(
                f"YouTube Data API {operation} failed: {_summarize_exception_message(exc)}"
            ) from exc
        return _as_dict(response)


class YouTubeApiVideoSource:
    """Fallback video source on the quota-metered YouTube Data API.

    Search results carry truncated descriptions, so each search page is
    followed by a batched `videos.list` call. There is no up-front listing,
    so already-synced videos are fetched again and upserted.
    """

    name = "youtube-api"

    def __init__(
        self,
        client: YouTubeApiClient,
        *,
        pacer: RequestPacer | None = None,
    ) -> None:
        self._client = client
        self._pacer = pacer or RequestPacer(min_interval_seconds=0.1)

    def list_video_ids(self, channel_ref: str, *, limit: int = MAX_PAGE_SIZE) -> list[str]:
        channel_id = self._resolve_channel_id(channel_ref)
        video_ids: list[str] = []
        page_token: str | None = None
        while len(video_ids) < limit:
            self._pacer.wait()
            page = self._client.search_channel_videos(
                channel_id,
                max_results=min(MAX_PAGE_SIZE, limit - len(video_ids)),
                page_token=page_token,
            )
            video_ids.extend(page.video_ids)
            if not page.video_ids or page.next_page_token is None:
                break
            page_token = page.next_page_token
        return video_ids[:limit]

    def fetch_video(self, video_id: str) -> VideoDetails | None:
        details = self._client.get_video_details([video_id])
        return details[0] if details else None

    def fetch_channel_videos(
        self,
        channel: Channel,
        *,
        max_videos: int,
        cutoff: datetime,
        known_video_ids: set[str],
    ) -> ChannelFetchResult:
        channel_id = self._resolve_channel_id(channel.youtube_id)

        videos: list[VideoDetails] = []
        fetched_count = 0
        page_token: str | None = None
        reached_cutoff = False
        while fetched_count < max_videos and not reached_cutoff:
            self._pacer.wait()
            page = self._client.search_channel_videos(
                channel_id,
                max_results=min(MAX_PAGE_SIZE, max_videos - fetched_count),
                page_token=page_token,
            )
            if not page.video_ids:
                break

            for details in self._client.get_video_details(page.video_ids):
                if details.published_at < cutoff:
                    LOGGER.info(
                        "youtube api cutoff reached channel=%s video_id=%s published_at=%s",
                        channel.youtube_id,
                        details.video_id,
                        details.published_at.isoformat(),
                    )
                    reached_cutoff = True
                    break
                videos.append(details)

            fetched_count += len(page.video_ids)
            LOGGER.debug(
                "youtube api page fetched channel=%s fetched=%s max_videos=%s",
                channel.youtube_id,
                fetched_count,
                max_videos,
            )
            if page.next_page_token is None:
                break
            page_token = page.next_page_token

        return ChannelFetchResult(videos=videos, skipped_count=0)

    def _resolve_channel_id(self, channel_ref: str) -> str:
        if channel_ref.startswith("UC"):
            return channel_ref
        resolved = self._client.resolve_channel(channel_ref)
        if resolved is None:
            raise VideoSourceError(f"YouTube channel not found: {channel_ref}")
        return resolved.channel_id


def _build_youtube_client(api_key: str) -> Any:
    try:
        discovery_module = import_module("googleapiclient.discovery")
    except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
        raise VideoSourceUnavailableError(
            "YouTube Data API access requires the google-api-python-client dependency"
        ) from exc

    build_fn: Any = discovery_module.build
    return build_fn("youtube", "v3", developerKey=api_key, cache_discovery=False)


def _video_item_to_details(item: dict[str, Any]) -> VideoDetails | None:
    raw_video_id = item.get("id")
    if not isinstance(raw_video_id, str) or not raw_video_id.strip():
        return None

    snippet = _as_dict(item.get("snippet"))
    statistics = _as_dict(item.get("statistics"))
    published_at = parse_api_datetime(snippet.get("publishedAt"))
    if published_at is None:
        LOGGER.warning("youtube api video has no publish time, skipping video_id=%s", raw_video_id)
        return None

    return VideoDetails(
        video_id=raw_video_id,
        title=_coerce_string(snippet.get("title")),
        description=_coerce_string(snippet.get("description")),
        thumbnail_url=_pick_thumbnail(snippet, ("high", "medium", "default")) or "",
        published_at=published_at,
        channel_id=_coerce_string(snippet.get("channelId")),
        channel_title=_coerce_string(snippet.get("channelTitle")),
        view_count=_coerce_int(statistics.get("viewCount")),
    )


def _pick_thumbnail(snippet: dict[str, Any], qualities: tuple[str, ...]) -> str | None:
    thumbnails = _as_dict(snippet.get("thumbnails"))
    for quality in qualities:
        url_value = _as_dict(thumbnails.get(quality)).get("url")
        if isinstance(url_value, str) and url_value.strip():
            return url_value
    return None


def _is_youtube_data_api_rate_limit_error(exc: Exception) -> bool:
    class_name = exc.__class__.__name__.lower()
    message = str(exc).lower()
    if "rate" in class_name and "limit" in class_name:
        return True

    markers = (
        "quotaexceeded",
        "dailylimitexceeded",
        "ratelimitexceeded",
        "userratelimitexceeded",
        "quota exceeded",
        "rate limit exceeded",
        "too many requests",
        "http error 429",
        "status code 429",
    )
    return any(marker in message for marker in markers)


def _summarize_exception_message(exc: Exception, *, max_length: int = 400) -> str:
    raw = str(exc).strip()
    if not raw:
        raw = repr(exc)
    if len(raw) <= max_length:
        return raw
    return f"{raw[: max_length - 3]}..."


def _coerce_string(raw_value: object) -> str:
    return raw_value if isinstance(raw_value, str) else ""


def _coerce_int(raw_value: object) -> int | None:
    if isinstance(raw_value, bool):
        return None
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, str):
        try:
            return int(raw_value)
        except ValueError:
            return None
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        raw_list = cast(list[Any], value)
        return list(raw_list)
    return []
