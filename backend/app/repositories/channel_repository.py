from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from uuid import uuid4

from backend.app.repositories.common import utc_now_iso
from backend.app.repositories.database import Database


@dataclass(frozen=True)
class Channel:
    channel_id: str
    youtube_id: str
    name: str
    created_at: str


class ChannelAlreadyExistsError(Exception):
    pass


class ChannelRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def list_channels(self) -> list[Channel]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, youtube_id, name, created_at
                FROM channels
                ORDER BY created_at ASC, id ASC
                """
            ).fetchall()
        return [_row_to_channel(row) for row in rows]

    def get_by_youtube_id(self, youtube_id: str) -> Channel | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, youtube_id, name, created_at
                FROM channels
                WHERE youtube_id = ?
                """,
                (youtube_id.strip(),),
            ).fetchone()
        if row is None:
            return None
        return _row_to_channel(row)

    def add_channel(self, *, youtube_id: str, name: str) -> Channel:
        normalized_youtube_id = youtube_id.strip()
        normalized_name = name.strip()
        if not normalized_youtube_id:
            raise ValueError("youtube_id must not be empty")
        if not normalized_name:
            raise ValueError("name must not be empty")

        channel = Channel(
            channel_id=f"chan_{uuid4().hex}",
            youtube_id=normalized_youtube_id,
            name=normalized_name,
            created_at=utc_now_iso(),
        )
        try:
            with self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO channels (id, youtube_id, name, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (channel.channel_id, channel.youtube_id, channel.name, channel.created_at),
                )
        except sqlite3.IntegrityError as exc:
            raise ChannelAlreadyExistsError(
                f"Channel already exists: {normalized_youtube_id}"
            ) from exc
        return channel

    def rename_channel(self, *, youtube_id: str, name: str) -> bool:
        normalized_name = name.strip()
        if not normalized_name:
            return False
        with self._db.connection() as conn:
            cursor = conn.execute(
                "UPDATE channels SET name = ? WHERE youtube_id = ? AND name != ?",
                (normalized_name, youtube_id.strip(), normalized_name),
            )
        return cursor.rowcount > 0

    def delete_channel(self, channel_id: str) -> bool:
        # Extracted restaurants are kept as historical data.
        with self._db.connection() as conn:
            cursor = conn.execute("DELETE FROM channels WHERE id = ?", (channel_id.strip(),))
        return cursor.rowcount > 0


def _row_to_channel(row: sqlite3.Row) -> Channel:
    return Channel(
        channel_id=str(row["id"]),
        youtube_id=str(row["youtube_id"]),
        name=str(row["name"]),
        created_at=str(row["created_at"]),
    )
