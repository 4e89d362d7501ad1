from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal, cast
from uuid import uuid4

from backend.app.repositories.common import parse_iso_utc, to_optional_str, utc_now_iso
from backend.app.repositories.database import Database

SyncRunStatus = Literal["running", "completed", "failed"]
SYNC_STATUS_RUNNING: SyncRunStatus = "running"
SYNC_STATUS_COMPLETED: SyncRunStatus = "completed"
SYNC_STATUS_FAILED: SyncRunStatus = "failed"

STALE_RUN_ERROR_MESSAGE = "Sync run abandoned before completion"


@dataclass(frozen=True)
class SyncRun:
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


class SyncAlreadyRunningError(Exception):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Sync run already in progress: {run_id}")
        self.run_id = run_id


class SyncRunNotFoundError(Exception):
    pass


_SELECT_COLUMNS = """
    id, status, total_channels, current_channel, channel_name, total_videos,
    processed_videos, skipped_videos, added, updated, errors_json, started_at, completed_at
"""


class SyncRunRepository:
    """Persistence for sync run status records.

    Only rows still in `running` accept writes. Completed and failed runs are
    immutable, and the video counters never move backwards.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def create_run(
        self,
        *,
        total_channels: int,
        stale_before: datetime | None = None,
    ) -> SyncRun:
        now_iso = utc_now_iso()
        run_id = f"sync_{uuid4().hex}"
        with self._db.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            running_rows = conn.execute(
                "SELECT id, started_at, errors_json FROM sync_runs WHERE status = ?",
                (SYNC_STATUS_RUNNING,),
            ).fetchall()
            for row in running_rows:
                started_at = parse_iso_utc(row["started_at"])
                is_stale = (
                    stale_before is not None
                    and started_at is not None
                    and started_at < stale_before.astimezone(UTC)
                )
                if not is_stale:
                    raise SyncAlreadyRunningError(str(row["id"]))
                errors = [*_decode_errors(row["errors_json"]), STALE_RUN_ERROR_MESSAGE]
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, errors_json = ?, completed_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        SYNC_STATUS_FAILED,
                        json.dumps(errors),
                        now_iso,
                        str(row["id"]),
                        SYNC_STATUS_RUNNING,
                    ),
                )

            conn.execute(
                """
                INSERT INTO sync_runs (id, status, total_channels, errors_json, started_at)
                VALUES (?, ?, ?, '[]', ?)
                """,
                (run_id, SYNC_STATUS_RUNNING, max(0, total_channels), now_iso),
            )
        return self.get_run(run_id)

    def get_run(self, run_id: str) -> SyncRun:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM sync_runs WHERE id = ?",
                (run_id,),
            ).fetchone()
        if row is None:
            raise SyncRunNotFoundError(f"Unknown sync run: {run_id}")
        return _row_to_run(row)

    def get_latest(self) -> SyncRun | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM sync_runs
                ORDER BY started_at DESC, rowid DESC
                LIMIT 1
                """
            ).fetchone()
        if row is None:
            return None
        return _row_to_run(row)

    def update_progress(
        self,
        run_id: str,
        *,
        current_channel: int | None = None,
        channel_name: str | None = None,
        total_videos: int | None = None,
        processed_videos: int | None = None,
        skipped_videos: int | None = None,
        added: int | None = None,
        updated: int | None = None,
    ) -> bool:
        assignments: list[str] = []
        params: list[object] = []
        for column, value in (
            ("current_channel", current_channel),
            ("channel_name", channel_name),
            ("skipped_videos", skipped_videos),
            ("added", added),
            ("updated", updated),
        ):
            if value is not None:
                assignments.append(f"{column} = ?")
                params.append(value)
        for column, value in (
            ("total_videos", total_videos),
            ("processed_videos", processed_videos),
        ):
            if value is not None:
                assignments.append(f"{column} = MAX({column}, ?)")
                params.append(value)

        if not assignments:
            return False

        with self._db.connection() as conn:
            cursor = conn.execute(
                f"UPDATE sync_runs SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                (*params, run_id, SYNC_STATUS_RUNNING),
            )
        return cursor.rowcount > 0

    def set_errors(self, run_id: str, errors: list[str]) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "UPDATE sync_runs SET errors_json = ? WHERE id = ? AND status = ?",
                (json.dumps(errors), run_id, SYNC_STATUS_RUNNING),
            )
        return cursor.rowcount > 0

    def mark_completed(
        self,
        run_id: str,
        *,
        processed_videos: int,
        added: int,
        updated: int,
        errors: list[str],
    ) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_runs
                SET status = ?,
                    processed_videos = MAX(processed_videos, ?),
                    added = ?,
                    updated = ?,
                    errors_json = ?,
                    completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    SYNC_STATUS_COMPLETED,
                    processed_videos,
                    added,
                    updated,
                    json.dumps(errors),
                    utc_now_iso(),
                    run_id,
                    SYNC_STATUS_RUNNING,
                ),
            )
        return cursor.rowcount > 0

    def mark_failed(self, run_id: str, *, errors: list[str]) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_runs
                SET status = ?, errors_json = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    SYNC_STATUS_FAILED,
                    json.dumps(errors),
                    utc_now_iso(),
                    run_id,
                    SYNC_STATUS_RUNNING,
                ),
            )
        return cursor.rowcount > 0


def _decode_errors(raw: object) -> list[str]:
    if not isinstance(raw, str) or not raw.strip():
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in cast(list[object], parsed)]


def _row_to_run(row: sqlite3.Row) -> SyncRun:
    raw_status = str(row["status"])
    status: SyncRunStatus = (
        cast(SyncRunStatus, raw_status)
        if raw_status in {SYNC_STATUS_RUNNING, SYNC_STATUS_COMPLETED, SYNC_STATUS_FAILED}
        else SYNC_STATUS_FAILED
    )
    started_at = parse_iso_utc(row["started_at"]) or datetime.fromtimestamp(0, tz=UTC)
    return SyncRun(
        run_id=str(row["id"]),
        status=status,
        total_channels=int(row["total_channels"]),
        current_channel=int(row["current_channel"]),
        channel_name=to_optional_str(row["channel_name"]),
        total_videos=int(row["total_videos"]),
        processed_videos=int(row["processed_videos"]),
        skipped_videos=int(row["skipped_videos"]),
        added=int(row["added"]),
        updated=int(row["updated"]),
        errors=tuple(_decode_errors(row["errors_json"])),
        started_at=started_at,
        completed_at=parse_iso_utc(row["completed_at"]),
    )
