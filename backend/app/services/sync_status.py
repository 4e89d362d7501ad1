from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from backend.app.repositories.sync_run_repository import SyncRunRepository, SyncRunStatus


@dataclass(frozen=True)
class SyncStatusSnapshot:
    run_id: str
    status: SyncRunStatus
    total_channels: int
    current_channel: int
    channel_name: str | None
    total_videos: int
    processed_videos: int
    skipped_videos: int
    added: int
    updated: int
    errors: tuple[str, ...]
    started_at: datetime
    completed_at: datetime | None
    progress: int


def progress_percent(processed: int, total: int) -> int:
    """Whole-number percentage, rounded half up; 0 when nothing is known yet."""
    if total <= 0:
        return 0
    clamped = max(0, min(processed, total))
    return (clamped * 200 + total) // (2 * total)


class SyncStatusReporter:
    def __init__(self, sync_run_repository: SyncRunRepository) -> None:
        self._runs = sync_run_repository

    def latest(self) -> SyncStatusSnapshot | None:
        run = self._runs.get_latest()
        if run is None:
            return None
        return SyncStatusSnapshot(
            run_id=run.run_id,
            status=run.status,
            total_channels=run.total_channels,
            current_channel=run.current_channel,
            channel_name=run.channel_name,
            total_videos=run.total_videos,
            processed_videos=run.processed_videos,
            skipped_videos=run.skipped_videos,
            added=run.added,
            updated=run.updated,
            errors=run.errors,
            started_at=run.started_at,
            completed_at=run.completed_at,
            progress=progress_percent(run.processed_videos, run.total_videos),
        )
