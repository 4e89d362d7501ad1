from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Literal

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.repositories.channel_repository import Channel, ChannelRepository
from backend.app.repositories.restaurant_repository import (
    RestaurantRepository,
    RestaurantUpsert,
)
from backend.app.repositories.sync_run_repository import (
    SYNC_STATUS_COMPLETED,
    SYNC_STATUS_FAILED,
    SyncRun,
    SyncRunRepository,
    SyncRunStatus,
)
from backend.app.services.map_links import MapLinkResolver, find_map_links
from backend.app.services.video_sources import ChannelFetchResult, VideoDetails, VideoSource
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("mangan.sync")

DEFAULT_MAX_VIDEOS = 500
MAX_VIDEOS_CAP = 5000
DEFAULT_CUTOFF_DAYS = 365
DEFAULT_PROGRESS_FLUSH_EVERY = 5
DEFAULT_STALE_RUN_SECONDS = 6 * 60 * 60
NO_CHANNELS_MESSAGE = "No channels configured"

SyncMethod = Literal["yt-dlp", "API (fallback)", "API (forced)"]
AvatarFetcher = Callable[[str], str | None]


@dataclass(frozen=True)
class SyncOptions:
    max_videos: int = DEFAULT_MAX_VIDEOS
    force_api: bool = False


@dataclass(frozen=True)
class PreparedSync:
    run: SyncRun
    channels: list[Channel]
    options: SyncOptions
    cutoff: datetime


@dataclass(frozen=True)
class SyncOutcome:
    no_op: bool
    message: str
    run_id: str | None = None
    status: SyncRunStatus | None = None
    videos_processed: int = 0
    added: int = 0
    updated: int = 0
    errors: tuple[str, ...] = ()


@dataclass
class _RunTotals:
    total_videos: int = 0
    skipped_videos: int = 0
    added: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)


def clamp_max_videos(value: int | None, *, cap: int = MAX_VIDEOS_CAP) -> int:
    if value is None:
        return min(DEFAULT_MAX_VIDEOS, cap)
    # Zero is a valid request: the run visits every channel and reads no videos.
    return max(0, min(value, cap))


class SyncService:
    """Drives sync runs: channels to videos to map links to restaurants.

    A run walks every configured channel in order. Each channel is read with
    the primary video source, or with the fallback source when the primary
    raises or when the caller forces it. Every map link found in a video
    description is resolved and upserted by `(video_id, maps_url)`. Progress
    goes to the run record as it happens so a client can poll it.

    Failures are contained at the narrowest scope: a bad link skips that link,
    a bad channel is recorded in the run's errors and the next channel starts.
    Only an error outside the channel loop marks the run failed.
    """

    def __init__(
        self,
        *,
        channel_repository: ChannelRepository,
        restaurant_repository: RestaurantRepository,
        sync_run_repository: SyncRunRepository,
        primary_source: VideoSource,
        fallback_source: VideoSource,
        map_link_resolver: MapLinkResolver,
        avatar_fetcher: AvatarFetcher | None = None,
        telemetry: TelemetryClient | None = None,
        clock: Callable[[], datetime] | None = None,
        cutoff_days: int = DEFAULT_CUTOFF_DAYS,
        max_videos_cap: int = MAX_VIDEOS_CAP,
        progress_flush_every: int = DEFAULT_PROGRESS_FLUSH_EVERY,
        stale_run_seconds: int = DEFAULT_STALE_RUN_SECONDS,
    ) -> None:
        self._channels = channel_repository
        self._restaurants = restaurant_repository
        self._runs = sync_run_repository
        self._primary_source = primary_source
        self._fallback_source = fallback_source
        self._resolver = map_link_resolver
        self._avatar_fetcher = avatar_fetcher
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._cutoff_days = max(0, cutoff_days)
        self._max_videos_cap = max(1, max_videos_cap)
        self._progress_flush_every = max(1, progress_flush_every)
        self._stale_run_seconds = max(1, stale_run_seconds)

    def begin_run(self, options: SyncOptions) -> PreparedSync | None:
        """Create the run record, or return None when there is nothing to sync.

        Raises `SyncAlreadyRunningError` while another run is in progress.
        """
        channels = self._channels.list_channels()
        if not channels:
            LOGGER.info("sync skipped; no channels configured")
            return None

        now = self._clock()
        run = self._runs.create_run(
            total_channels=len(channels),
            stale_before=now - timedelta(seconds=self._stale_run_seconds),
        )
        effective = SyncOptions(
            max_videos=clamp_max_videos(options.max_videos, cap=self._max_videos_cap),
            force_api=options.force_api,
        )
        LOGGER.info(
            "sync run created run_id=%s channels=%s max_videos=%s force_api=%s",
            run.run_id,
            len(channels),
            effective.max_videos,
            effective.force_api,
        )
        return PreparedSync(
            run=run,
            channels=channels,
            options=effective,
            cutoff=now - timedelta(days=self._cutoff_days),
        )

    def run(self, options: SyncOptions) -> SyncOutcome:
        prepared = self.begin_run(options)
        if prepared is None:
            return SyncOutcome(no_op=True, message=NO_CHANNELS_MESSAGE)
        return self.execute_run(prepared)

    def execute_run(self, prepared: PreparedSync) -> SyncOutcome:
        run_id = prepared.run.run_id
        context_tokens = bind_contextvars(sync_run_id=run_id)
        started_at = time.perf_counter()
        totals = _RunTotals()
        self._telemetry.emit(
            "sync.run.start",
            run_id=run_id,
            channels=len(prepared.channels),
            max_videos=prepared.options.max_videos,
            force_api=prepared.options.force_api,
        )
        try:
            for index, channel in enumerate(prepared.channels, start=1):
                try:
                    self._sync_channel(prepared, index, channel, totals)
                except Exception as exc:
                    message = f"Failed to sync channel {channel.name}: {exc}"
                    LOGGER.warning(
                        "sync channel failed run_id=%s channel=%s",
                        run_id,
                        channel.youtube_id,
                        exc_info=True,
                    )
                    totals.errors.append(message)
                    self._telemetry.emit(
                        "sync.channel.error",
                        run_id=run_id,
                        channel=channel.youtube_id,
                        error_type=type(exc).__name__,
                    )
                    self._runs.set_errors(run_id, totals.errors)

            self._runs.mark_completed(
                run_id,
                processed_videos=totals.total_videos,
                added=totals.added,
                updated=totals.updated,
                errors=totals.errors,
            )
        except Exception as exc:
            LOGGER.exception("sync run failed run_id=%s", run_id)
            totals.errors.append(str(exc) or type(exc).__name__)
            self._runs.mark_failed(run_id, errors=totals.errors)
            self._telemetry.emit(
                "sync.run.finish",
                run_id=run_id,
                outcome="failed",
                error_type=type(exc).__name__,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
            )
            return self._outcome(run_id, SYNC_STATUS_FAILED, totals)
        finally:
            reset_contextvars(**context_tokens)

        LOGGER.info(
            "sync run completed run_id=%s videos=%s added=%s updated=%s skipped=%s errors=%s",
            run_id,
            totals.total_videos,
            totals.added,
            totals.updated,
            totals.skipped_videos,
            len(totals.errors),
        )
        self._telemetry.emit(
            "sync.run.finish",
            run_id=run_id,
            outcome="ok",
            videos=totals.total_videos,
            added=totals.added,
            updated=totals.updated,
            skipped=totals.skipped_videos,
            errors=len(totals.errors),
            duration_ms=int((time.perf_counter() - started_at) * 1000),
        )
        return self._outcome(run_id, SYNC_STATUS_COMPLETED, totals)

    def _sync_channel(
        self,
        prepared: PreparedSync,
        index: int,
        channel: Channel,
        totals: _RunTotals,
    ) -> None:
        run_id = prepared.run.run_id
        LOGGER.info(
            "sync channel start run_id=%s channel=%s index=%s",
            run_id,
            channel.youtube_id,
            index,
        )
        self._runs.update_progress(run_id, current_channel=index, channel_name=channel.name)

        avatar = self._fetch_avatar(channel)
        known_video_ids = self._restaurants.list_video_ids_for_channel(channel.youtube_id)
        result, method = self._fetch_channel_videos(prepared, channel, known_video_ids)
        videos = result.videos

        totals.total_videos += len(videos)
        totals.skipped_videos += result.skipped_count
        LOGGER.info(
            "sync channel fetched channel=%s method=%s videos=%s skipped=%s known=%s",
            channel.youtube_id,
            method,
            len(videos),
            result.skipped_count,
            len(known_video_ids),
        )
        self._refresh_channel_name(channel, videos)
        self._runs.update_progress(
            run_id,
            total_videos=totals.total_videos,
            skipped_videos=totals.skipped_videos,
        )

        processed_in_channel = 0
        for video in videos:
            for maps_url in find_map_links(video.description):
                self._process_map_link(channel, video, maps_url, avatar, totals)

            processed_in_channel += 1
            if (
                processed_in_channel % self._progress_flush_every == 0
                or processed_in_channel == len(videos)
            ):
                self._runs.update_progress(
                    run_id,
                    processed_videos=totals.total_videos - len(videos) + processed_in_channel,
                    added=totals.added,
                    updated=totals.updated,
                )

        LOGGER.info(
            "sync channel done channel=%s added=%s updated=%s",
            channel.youtube_id,
            totals.added,
            totals.updated,
        )

    def _fetch_channel_videos(
        self,
        prepared: PreparedSync,
        channel: Channel,
        known_video_ids: set[str],
    ) -> tuple[ChannelFetchResult, SyncMethod]:
        max_videos = prepared.options.max_videos
        if prepared.options.force_api:
            result = self._fallback_source.fetch_channel_videos(
                channel,
                max_videos=max_videos,
                cutoff=prepared.cutoff,
                known_video_ids=known_video_ids,
            )
            return result, "API (forced)"

        try:
            result = self._primary_source.fetch_channel_videos(
                channel,
                max_videos=max_videos,
                cutoff=prepared.cutoff,
                known_video_ids=known_video_ids,
            )
        except Exception as exc:
            LOGGER.warning(
                "sync primary source failed; falling back source=%s fallback=%s channel=%s",
                self._primary_source.name,
                self._fallback_source.name,
                channel.youtube_id,
                exc_info=True,
            )
            self._telemetry.emit(
                "sync.channel.fallback",
                run_id=prepared.run.run_id,
                channel=channel.youtube_id,
                error_type=type(exc).__name__,
            )
            result = self._fallback_source.fetch_channel_videos(
                channel,
                max_videos=max_videos,
                cutoff=prepared.cutoff,
                known_video_ids=known_video_ids,
            )
            return result, "API (fallback)"
        return result, "yt-dlp"

    def _refresh_channel_name(self, channel: Channel, videos: list[VideoDetails]) -> None:
        current_title = next((video.channel_title for video in videos if video.channel_title), "")
        if current_title and self._channels.rename_channel(
            youtube_id=channel.youtube_id,
            name=current_title,
        ):
            LOGGER.info(
                "sync channel renamed channel=%s old_name=%s new_name=%s",
                channel.youtube_id,
                channel.name,
                current_title,
            )

    def _fetch_avatar(self, channel: Channel) -> str | None:
        if self._avatar_fetcher is None:
            return None
        try:
            avatar = self._avatar_fetcher(channel.youtube_id)
        except Exception:
            LOGGER.warning(
                "sync channel avatar fetch failed channel=%s",
                channel.youtube_id,
                exc_info=True,
            )
            return None
        LOGGER.debug(
            "sync channel avatar channel=%s found=%s",
            channel.youtube_id,
            avatar is not None,
        )
        return avatar

    def _process_map_link(
        self,
        channel: Channel,
        video: VideoDetails,
        maps_url: str,
        avatar: str | None,
        totals: _RunTotals,
    ) -> None:
        try:
            resolved = self._resolver.resolve(maps_url)
            if resolved is None:
                LOGGER.debug(
                    "sync map link skipped; no coordinates video_id=%s url=%s",
                    video.video_id,
                    maps_url,
                )
                return

            outcome = self._restaurants.upsert(
                RestaurantUpsert(
                    name=resolved.place_name or video.title,
                    lat=resolved.coordinates.lat,
                    lng=resolved.coordinates.lng,
                    maps_url=maps_url,
                    video_id=video.video_id,
                    video_title=video.title,
                    thumbnail_url=video.thumbnail_url,
                    channel_id=channel.youtube_id,
                    channel_name=video.channel_title or channel.name,
                    channel_avatar=avatar,
                    view_count=video.view_count,
                    published_at=video.published_at,
                )
            )
        except Exception:
            LOGGER.warning(
                "sync map link failed video_id=%s url=%s",
                video.video_id,
                maps_url,
                exc_info=True,
            )
            return

        if outcome == "created":
            totals.added += 1
        else:
            totals.updated += 1

    def _outcome(self, run_id: str, status: SyncRunStatus, totals: _RunTotals) -> SyncOutcome:
        message = "Sync complete" if status == SYNC_STATUS_COMPLETED else "Sync failed"
        return SyncOutcome(
            no_op=False,
            message=message,
            run_id=run_id,
            status=status,
            videos_processed=totals.total_videos,
            added=totals.added,
            updated=totals.updated,
            errors=tuple(totals.errors),
        )


class SyncRunner:
    """Executes prepared sync runs on a background daemon thread."""

    def __init__(self, service: SyncService) -> None:
        self._service = service
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._last_outcome: SyncOutcome | None = None

    def start(self, options: SyncOptions) -> PreparedSync | None:
        prepared = self._service.begin_run(options)
        if prepared is None:
            return None

        with self._lock:
            thread = threading.Thread(
                target=self._execute,
                args=(prepared,),
                name=f"mangan-sync-{prepared.run.run_id}",
            )
            thread.daemon = True
            self._thread = thread
            thread.start()
        return prepared

    def join(self, timeout: float | None = None) -> SyncOutcome | None:
        with self._lock:
            thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
        return self._last_outcome

    def _execute(self, prepared: PreparedSync) -> None:
        try:
            self._last_outcome = self._service.execute_run(prepared)
        except Exception:
            LOGGER.exception("sync runner crashed run_id=%s", prepared.run.run_id)
