from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from backend.app.repositories.channel_repository import Channel
from backend.app.services.rate_limiter import RequestPacer
from backend.app.services.video_sources import (
    VideoSourceError,
    VideoSourceUnavailableError,
    channel_url,
    parse_api_datetime,
    parse_upload_date,
)
from backend.app.services.youtube_api import (
    YouTubeApiClient,
    YouTubeApiVideoSource,
    YouTubeQuotaExceededError,
)
from backend.app.services.ytdlp_source import YtDlpVideoSource

CUTOFF = datetime(2025, 1, 1, tzinfo=UTC)
CHANNEL = Channel(
    channel_id="chan_1",
    youtube_id="UCfoodie",
    name="Foodie Channel",
    created_at="2025-01-01T00:00:00+00:00",
)
LISTING_URL = "https://www.youtube.com/channel/UCfoodie/videos"


def _watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


class _FakeYoutubeDL:
    def __init__(self, responses: dict[str, Any], options: dict[str, Any], log: list[Any]) -> None:
        self._responses = responses
        self._options = options
        self._log = log

    def __enter__(self) -> _FakeYoutubeDL:
        return self

    def __exit__(self, *_: object) -> bool:
        return False

    def extract_info(self, url: str, download: bool = True) -> Any:
        self._log.append((url, dict(self._options), download))
        response = self._responses.get(url)
        if isinstance(response, Exception):
            raise response
        return response


def _ytdlp_source(
    responses: dict[str, Any],
    *,
    sleeps: list[float] | None = None,
    cookies_path: Path | None = None,
) -> tuple[YtDlpVideoSource, list[Any]]:
    log: list[Any] = []
    sleep_log = sleeps if sleeps is not None else []
    source = YtDlpVideoSource(
        cookies_path=cookies_path,
        pacer=RequestPacer(min_interval_seconds=0.2, clock=lambda: 0.0, sleep=sleep_log.append),
        ydl_factory=lambda options: _FakeYoutubeDL(responses, options, log),
    )
    return source, log


def _video_info(video_id: str, upload_date: str, **extra: Any) -> dict[str, Any]:
    info: dict[str, Any] = {
        "id": video_id,
        "title": f"Title {video_id}",
        "description": f"Description {video_id}",
        "thumbnail": f"https://i.ytimg.com/vi/{video_id}/maxres.jpg",
        "upload_date": upload_date,
        "channel_id": "UCfoodie",
        "channel": "Foodie Channel",
        "view_count": 1234,
    }
    info.update(extra)
    return info


def test_channel_url_variants() -> None:
    assert channel_url("UCabc") == "https://www.youtube.com/channel/UCabc/videos"
    assert channel_url("@kulinerjkt") == "https://www.youtube.com/@kulinerjkt/videos"
    assert channel_url("kulinerjkt") == "https://www.youtube.com/@kulinerjkt/videos"


def test_parse_upload_date_and_api_datetime() -> None:
    assert parse_upload_date("20250301") == datetime(2025, 3, 1, tzinfo=UTC)
    assert parse_upload_date("2025031") is None
    assert parse_upload_date("20251340") is None
    assert parse_upload_date(None) is None
    assert parse_api_datetime("2025-03-01T10:00:00Z") == datetime(2025, 3, 1, 10, tzinfo=UTC)
    assert parse_api_datetime("not-a-date") is None


def test_ytdlp_list_video_ids_uses_flat_extraction_and_dedupes(tmp_path: Path) -> None:
    cookies = tmp_path / "cookies.txt"
    source, log = _ytdlp_source(
        {LISTING_URL: {"_type": "playlist", "entries": [{"id": "a"}, {"id": "b"}, {"id": "a"}]}},
        cookies_path=cookies,
    )

    assert source.list_video_ids("UCfoodie") == ["a", "b"]
    url, options, download = log[0]
    assert url == LISTING_URL
    assert download is False
    assert options["extract_flat"] is True
    assert options["cookiefile"] == str(cookies)


def test_ytdlp_list_video_ids_flattens_tab_playlists() -> None:
    source, _ = _ytdlp_source(
        {
            LISTING_URL: {
                "_type": "playlist",
                "entries": [
                    {"_type": "playlist", "entries": [{"id": "v1"}, {"id": "v2"}]},
                    {"_type": "playlist", "entries": [{"id": "s1"}]},
                ],
            }
        }
    )

    assert source.list_video_ids("UCfoodie") == ["v1", "v2", "s1"]


def test_ytdlp_listing_failure_raises_video_source_error() -> None:
    source, _ = _ytdlp_source({LISTING_URL: RuntimeError("HTTP Error 429")})

    with pytest.raises(VideoSourceError, match="could not list"):
        source.fetch_channel_videos(
            CHANNEL,
            max_videos=10,
            cutoff=CUTOFF,
            known_video_ids=set(),
        )


def test_ytdlp_listing_without_data_raises_video_source_error() -> None:
    source, _ = _ytdlp_source({LISTING_URL: None})

    with pytest.raises(VideoSourceError):
        source.list_video_ids("UCfoodie")


def test_ytdlp_fetch_channel_videos_skips_known_caps_and_stops_at_cutoff() -> None:
    sleeps: list[float] = []
    source, log = _ytdlp_source(
        {
            LISTING_URL: {"entries": [{"id": f"v{index}"} for index in range(1, 6)]},
            _watch_url("v1"): _video_info("v1", "20250501"),
            _watch_url("v3"): _video_info("v3", "20250401"),
            _watch_url("v4"): _video_info("v4", "20241201"),
            _watch_url("v5"): _video_info("v5", "20250301"),
        },
        sleeps=sleeps,
    )

    result = source.fetch_channel_videos(
        CHANNEL,
        max_videos=3,
        cutoff=CUTOFF,
        known_video_ids={"v2"},
    )

    assert [video.video_id for video in result.videos] == ["v1", "v3"]
    assert result.skipped_count == 1
    fetched_urls = [entry[0] for entry in log[1:]]
    assert fetched_urls == [_watch_url("v1"), _watch_url("v3"), _watch_url("v4")]
    assert sleeps == [0.2, 0.2]


def test_ytdlp_failed_detail_fetch_is_skipped() -> None:
    source, _ = _ytdlp_source(
        {
            LISTING_URL: {"entries": [{"id": "v1"}, {"id": "v2"}]},
            _watch_url("v1"): RuntimeError("Video unavailable"),
            _watch_url("v2"): _video_info("v2", "20250501"),
        }
    )

    result = source.fetch_channel_videos(
        CHANNEL,
        max_videos=10,
        cutoff=CUTOFF,
        known_video_ids=set(),
    )

    assert [video.video_id for video in result.videos] == ["v2"]


def test_ytdlp_video_details_fall_back_to_channel_and_thumbnail_list() -> None:
    source, _ = _ytdlp_source(
        {
            LISTING_URL: {"entries": [{"id": "v1"}]},
            _watch_url("v1"): _video_info(
                "v1",
                "20250501",
                thumbnail=None,
                thumbnails=[{"url": "https://i.ytimg.com/vi/v1/default.jpg"}],
                channel_id=None,
                channel=None,
                view_count=None,
            ),
        }
    )

    [video] = source.fetch_channel_videos(
        CHANNEL,
        max_videos=10,
        cutoff=CUTOFF,
        known_video_ids=set(),
    ).videos

    assert video.thumbnail_url == "https://i.ytimg.com/vi/v1/default.jpg"
    assert video.channel_id == "UCfoodie"
    assert video.channel_title == "Foodie Channel"
    assert video.view_count is None
    assert video.published_at == datetime(2025, 5, 1, tzinfo=UTC)


def test_ytdlp_undated_video_is_skipped_instead_of_passing_the_cutoff() -> None:
    undated = _video_info("old", "20240101")
    del undated["upload_date"]
    source, _ = _ytdlp_source(
        {
            LISTING_URL: {"entries": [{"id": "old"}, {"id": "v2"}]},
            _watch_url("old"): undated,
            _watch_url("v2"): _video_info("v2", "20250501"),
        }
    )

    result = source.fetch_channel_videos(
        CHANNEL,
        max_videos=10,
        cutoff=datetime(2024, 6, 1, tzinfo=UTC),
        known_video_ids=set(),
    )

    assert [video.video_id for video in result.videos] == ["v2"]
    assert source.fetch_video("old") is None


def test_ytdlp_uses_timestamp_when_upload_date_is_missing() -> None:
    info = _video_info("ts", "20250501")
    del info["upload_date"]
    info["timestamp"] = 1746057600
    source, _ = _ytdlp_source({_watch_url("ts"): info})

    video = source.fetch_video("ts")

    assert video is not None
    assert video.published_at == datetime(2025, 5, 1, tzinfo=UTC)


class _FakeRequest:
    def __init__(self, response: Any) -> None:
        self._response = response

    def execute(self) -> Any:
        if isinstance(self._response, Exception):
            raise self._response
        return self._response


class _FakeResource:
    def __init__(self, client: _FakeDiscoveryClient, kind: str) -> None:
        self._client = client
        self._kind = kind

    def list(self, **kwargs: Any) -> _FakeRequest:
        self._client.calls.append((self._kind, kwargs))
        return _FakeRequest(self._client.respond(self._kind, kwargs))


class _FakeDiscoveryClient:
    def __init__(
        self,
        *,
        search_pages: dict[str | None, tuple[list[str], str | None]] | None = None,
        videos: dict[str, dict[str, Any]] | None = None,
        channels: dict[str, dict[str, Any]] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.search_pages = search_pages or {}
        self.videos_by_id = videos or {}
        self.channels_by_key = channels or {}
        self.error = error
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def search(self) -> _FakeResource:
        return _FakeResource(self, "search")

    def videos(self) -> _FakeResource:
        return _FakeResource(self, "videos")

    def channels(self) -> _FakeResource:
        return _FakeResource(self, "channels")

    def respond(self, kind: str, kwargs: dict[str, Any]) -> Any:
        if self.error is not None:
            return self.error
        if kind == "search":
            ids, next_token = self.search_pages.get(kwargs.get("pageToken"), ([], None))
            ids = ids[: int(kwargs["maxResults"])]
            payload: dict[str, Any] = {"items": [{"id": {"videoId": item}} for item in ids]}
            if next_token is not None:
                payload["nextPageToken"] = next_token
            return payload
        if kind == "videos":
            requested = str(kwargs["id"]).split(",")
            found = [self.videos_by_id[item] for item in requested if item in self.videos_by_id]
            return {"items": found}
        key = kwargs.get("id") or kwargs.get("forHandle")
        item = self.channels_by_key.get(str(key))
        return {"items": [item] if item is not None else []}


def _api_video(video_id: str, published_at: str, *, views: str = "100") -> dict[str, Any]:
    return {
        "id": video_id,
        "snippet": {
            "title": f"Title {video_id}",
            "description": f"Full description {video_id}",
            "publishedAt": published_at,
            "channelId": "UCfoodie",
            "channelTitle": "Foodie Channel",
            "thumbnails": {
                "default": {"url": f"https://i.ytimg.com/vi/{video_id}/default.jpg"},
                "high": {"url": f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg"},
            },
        },
        "statistics": {"viewCount": views},
    }


def _api_source(
    fake: _FakeDiscoveryClient,
    sleeps: list[float] | None = None,
) -> YouTubeApiVideoSource:
    sleep_log = sleeps if sleeps is not None else []
    client = YouTubeApiClient(api_key="test-key", client_factory=lambda _: fake)
    return YouTubeApiVideoSource(
        client,
        pacer=RequestPacer(min_interval_seconds=0.1, clock=lambda: 0.0, sleep=sleep_log.append),
    )


def test_api_source_pages_until_requested_count_and_reads_view_counts() -> None:
    fake = _FakeDiscoveryClient(
        search_pages={
            None: (["a", "b"], "page-2"),
            "page-2": (["c", "d"], "page-3"),
        },
        videos={
            "a": _api_video("a", "2025-05-03T10:00:00Z", views="50000"),
            "b": _api_video("b", "2025-05-02T10:00:00Z"),
            "c": _api_video("c", "2025-05-01T10:00:00Z"),
        },
    )
    sleeps: list[float] = []
    source = _api_source(fake, sleeps)

    result = source.fetch_channel_videos(
        CHANNEL,
        max_videos=3,
        cutoff=CUTOFF,
        known_video_ids={"a"},
    )

    assert [video.video_id for video in result.videos] == ["a", "b", "c"]
    assert result.skipped_count == 0
    assert result.videos[0].view_count == 50000
    assert result.videos[0].thumbnail_url == "https://i.ytimg.com/vi/a/hqdefault.jpg"
    assert result.videos[0].description == "Full description a"

    search_calls = [kwargs for kind, kwargs in fake.calls if kind == "search"]
    assert [call["maxResults"] for call in search_calls] == [3, 1]
    assert search_calls[0]["order"] == "date"
    assert "pageToken" not in search_calls[0]
    assert search_calls[1]["pageToken"] == "page-2"
    assert sleeps == [0.1]


def test_api_source_stops_at_cutoff_without_requesting_more_pages() -> None:
    fake = _FakeDiscoveryClient(
        search_pages={None: (["new", "old", "newer"], "page-2")},
        videos={
            "new": _api_video("new", "2025-03-01T00:00:00Z"),
            "old": _api_video("old", "2024-06-01T00:00:00Z"),
            "newer": _api_video("newer", "2025-02-01T00:00:00Z"),
        },
    )
    source = _api_source(fake)

    result = source.fetch_channel_videos(
        CHANNEL,
        max_videos=500,
        cutoff=CUTOFF,
        known_video_ids=set(),
    )

    assert [video.video_id for video in result.videos] == ["new"]
    assert len([call for call in fake.calls if call[0] == "search"]) == 1


def test_api_source_stops_without_next_page_token() -> None:
    fake = _FakeDiscoveryClient(
        search_pages={None: (["a"], None)},
        videos={"a": _api_video("a", "2025-03-01T00:00:00Z")},
    )
    source = _api_source(fake)

    result = source.fetch_channel_videos(
        CHANNEL,
        max_videos=500,
        cutoff=CUTOFF,
        known_video_ids=set(),
    )

    assert [video.video_id for video in result.videos] == ["a"]
    assert [kwargs["maxResults"] for kind, kwargs in fake.calls if kind == "search"] == [50]


def test_api_client_batches_video_details_in_chunks_of_fifty() -> None:
    ids = [f"id{index:03d}" for index in range(120)]
    fake = _FakeDiscoveryClient(
        videos={video_id: _api_video(video_id, "2025-03-01T00:00:00Z") for video_id in ids}
    )
    client = YouTubeApiClient(api_key="test-key", client_factory=lambda _: fake)

    details = client.get_video_details(ids)

    assert [video.video_id for video in details] == ids
    chunk_sizes = [len(str(kwargs["id"]).split(",")) for kind, kwargs in fake.calls]
    assert chunk_sizes == [50, 50, 20]


def test_api_quota_errors_raise_typed_video_source_error() -> None:
    fake = _FakeDiscoveryClient(error=RuntimeError('<HttpError 403 "quotaExceeded">'))
    source = _api_source(fake)

    with pytest.raises(YouTubeQuotaExceededError):
        source.fetch_channel_videos(
            CHANNEL,
            max_videos=10,
            cutoff=CUTOFF,
            known_video_ids=set(),
        )


def test_api_other_errors_raise_video_source_error() -> None:
    fake = _FakeDiscoveryClient(error=RuntimeError("backend error"))
    client = YouTubeApiClient(api_key="test-key", client_factory=lambda _: fake)

    with pytest.raises(VideoSourceError, match="search.list failed"):
        client.search_channel_videos("UCfoodie", max_results=5)


def test_api_client_without_key_is_unavailable() -> None:
    client = YouTubeApiClient(api_key=None, client_factory=lambda _: pytest.fail("no client"))

    assert client.configured is False
    with pytest.raises(VideoSourceUnavailableError):
        client.fetch_channel_avatar("UCfoodie")


def test_resolve_channel_by_id_and_handle() -> None:
    fake = _FakeDiscoveryClient(
        channels={
            "UCfoodie": {"id": "UCfoodie", "snippet": {"title": "Foodie Channel"}},
            "kulinerjkt": {"id": "UCkuliner", "snippet": {"title": "Kuliner JKT"}},
        }
    )
    client = YouTubeApiClient(api_key="test-key", client_factory=lambda _: fake)

    by_id = client.resolve_channel("UCfoodie")
    by_handle = client.resolve_channel("@kulinerjkt")

    assert by_id is not None and by_id.channel_id == "UCfoodie"
    assert by_handle is not None and by_handle.title == "Kuliner JKT"
    assert fake.calls[1] == ("channels", {"part": "snippet", "forHandle": "kulinerjkt"})
    assert client.resolve_channel("@missing") is None
    assert client.resolve_channel("   ") is None


def test_fetch_channel_avatar_prefers_default_thumbnail() -> None:
    fake = _FakeDiscoveryClient(
        channels={
            "UCfoodie": {
                "id": "UCfoodie",
                "snippet": {
                    "thumbnails": {
                        "high": {"url": "https://yt3.ggpht.com/high.jpg"},
                        "default": {"url": "https://yt3.ggpht.com/default.jpg"},
                    }
                },
            }
        }
    )
    client = YouTubeApiClient(api_key="test-key", client_factory=lambda _: fake)

    assert client.fetch_channel_avatar("UCfoodie") == "https://yt3.ggpht.com/default.jpg"
    assert client.fetch_channel_avatar("UCmissing") is None


def test_api_source_resolves_handles_before_searching() -> None:
    fake = _FakeDiscoveryClient(
        channels={"kulinerjkt": {"id": "UCkuliner", "snippet": {"title": "Kuliner JKT"}}},
        search_pages={None: (["a"], None)},
    )
    source = _api_source(fake)

    assert source.list_video_ids("@kulinerjkt") == ["a"]
    search_calls = [kwargs for kind, kwargs in fake.calls if kind == "search"]
    assert search_calls[0]["channelId"] == "UCkuliner"


def test_api_source_skips_videos_without_publish_time() -> None:
    undated = _api_video("undated", "2024-01-01T00:00:00Z")
    del undated["snippet"]["publishedAt"]
    fake = _FakeDiscoveryClient(
        search_pages={None: (["undated", "a"], None)},
        videos={"undated": undated, "a": _api_video("a", "2025-03-01T00:00:00Z")},
    )
    source = _api_source(fake)

    result = source.fetch_channel_videos(
        CHANNEL,
        max_videos=10,
        cutoff=CUTOFF,
        known_video_ids=set(),
    )

    assert [video.video_id for video in result.videos] == ["a"]
    assert source.fetch_video("undated") is None


def test_api_source_fetch_video_hit_and_miss() -> None:
    fake = _FakeDiscoveryClient(videos={"a": _api_video("a", "2025-03-01T00:00:00Z", views="42")})
    source = _api_source(fake)

    video = source.fetch_video("a")

    assert video is not None
    assert video.video_id == "a"
    assert video.description == "Full description a"
    assert video.view_count == 42
    assert video.published_at == datetime(2025, 3, 1, tzinfo=UTC)
    assert source.fetch_video("missing") is None
    assert [kwargs["id"] for kind, kwargs in fake.calls] == ["a", "missing"]


def test_api_source_list_video_ids_pages_until_limit() -> None:
    fake = _FakeDiscoveryClient(
        search_pages={
            None: (["a", "b"], "page-2"),
            "page-2": (["c", "d"], "page-3"),
            "page-3": (["e"], None),
        }
    )
    sleeps: list[float] = []
    source = _api_source(fake, sleeps)

    assert source.list_video_ids("UCfoodie", limit=3) == ["a", "b", "c"]
    search_calls = [kwargs for kind, kwargs in fake.calls if kind == "search"]
    assert [call["maxResults"] for call in search_calls] == [3, 1]
    assert search_calls[1]["pageToken"] == "page-2"
    assert sleeps == [0.1]


def test_api_source_list_video_ids_stops_on_last_page() -> None:
    fake = _FakeDiscoveryClient(
        search_pages={
            None: (["a", "b"], "page-2"),
            "page-2": (["c"], None),
        }
    )
    source = _api_source(fake)

    assert source.list_video_ids("UCfoodie", limit=10) == ["a", "b", "c"]
    assert len([call for call in fake.calls if call[0] == "search"]) == 2
