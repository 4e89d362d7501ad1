from __future__ import annotations

from datetime import datetime
from typing import Literal

from backend.app.models.camel import CamelModel
from backend.app.services.sync_status import SyncStatusSnapshot


class SyncTriggerResponse(CamelModel):
    message: str
    sync_id: str | None = None
    status: Literal["running", "idle"]
    max_videos: int | None = None
    force_api: bool = False


class SyncIdleResponse(CamelModel):
    status: Literal["idle"] = "idle"


class SyncStatusResponse(CamelModel):
    id: str
    status: Literal["running", "completed", "failed"]
    total_channels: int
    current_channel: int
    channel_name: str | None
    total_videos: int
    processed_videos: int
    skipped_videos: int
    added: int
    updated: int
    errors: list[str]
    progress: int
    started_at: datetime
    completed_at: datetime | None

    @classmethod
    def from_snapshot(cls, snapshot: SyncStatusSnapshot) -> SyncStatusResponse:
        return cls(
            id=snapshot.run_id,
            status=snapshot.status,
            total_channels=snapshot.total_channels,
            current_channel=snapshot.current_channel,
            channel_name=snapshot.channel_name,
            total_videos=snapshot.total_videos,
            processed_videos=snapshot.processed_videos,
            skipped_videos=snapshot.skipped_videos,
            added=snapshot.added,
            updated=snapshot.updated,
            errors=list(snapshot.errors),
            progress=snapshot.progress,
            started_at=snapshot.started_at,
            completed_at=snapshot.completed_at,
        )
