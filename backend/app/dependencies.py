from __future__ import annotations

from functools import lru_cache

from backend.app.config import AppSettings, load_settings
from backend.app.repositories.channel_repository import ChannelRepository
from backend.app.repositories.database import Database
from backend.app.repositories.restaurant_repository import RestaurantRepository
from backend.app.repositories.sync_run_repository import SyncRunRepository
from backend.app.services.map_links import MapLinkResolver
from backend.app.services.rate_limiter import RequestPacer
from backend.app.services.sync_service import SyncRunner, SyncService
from backend.app.services.sync_status import SyncStatusReporter
from backend.app.services.youtube_api import YouTubeApiClient, YouTubeApiVideoSource
from backend.app.services.ytdlp_source import YtDlpVideoSource
from backend.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


def get_channel_repository() -> ChannelRepository:
    return ChannelRepository(get_database())


def get_restaurant_repository() -> RestaurantRepository:
    return RestaurantRepository(get_database())


def get_sync_run_repository() -> SyncRunRepository:
    return SyncRunRepository(get_database())


@lru_cache(maxsize=1)
def get_youtube_api_client() -> YouTubeApiClient:
    return YouTubeApiClient(api_key=get_settings().youtube_api_key)


@lru_cache(maxsize=1)
def get_sync_service() -> SyncService:
    settings = get_settings()
    api_client = get_youtube_api_client()
    return SyncService(
        channel_repository=get_channel_repository(),
        restaurant_repository=get_restaurant_repository(),
        sync_run_repository=get_sync_run_repository(),
        primary_source=YtDlpVideoSource(
            cookies_path=settings.ytdlp_cookies_path,
            pacer=RequestPacer(min_interval_seconds=settings.ytdlp_request_interval_seconds),
        ),
        fallback_source=YouTubeApiVideoSource(
            api_client,
            pacer=RequestPacer(min_interval_seconds=settings.youtube_api_page_interval_seconds),
        ),
        map_link_resolver=MapLinkResolver(
            timeout_seconds=settings.http_timeout_seconds,
            max_hops=settings.short_link_max_hops,
        ),
        avatar_fetcher=api_client.fetch_channel_avatar if api_client.configured else None,
        telemetry=get_telemetry(),
        cutoff_days=settings.sync_cutoff_days,
        max_videos_cap=settings.sync_max_videos_cap,
        progress_flush_every=settings.sync_progress_flush_every,
        stale_run_seconds=settings.sync_stale_run_seconds,
    )


@lru_cache(maxsize=1)
def get_sync_runner() -> SyncRunner:
    return SyncRunner(get_sync_service())


def get_sync_status_reporter() -> SyncStatusReporter:
    return SyncStatusReporter(get_sync_run_repository())


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


def reset_cached_dependencies() -> None:
    get_sync_runner.cache_clear()
    get_sync_service.cache_clear()
    get_youtube_api_client.cache_clear()
    get_database.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
