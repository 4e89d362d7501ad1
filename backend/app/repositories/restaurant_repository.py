from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal
from uuid import uuid4

from backend.app.repositories.common import (
    parse_iso_utc,
    to_optional_int,
    to_optional_str,
    utc_now_iso,
)
from backend.app.repositories.database import Database
from backend.app.services.geo import BoundingBox

RestaurantSort = Literal["distance", "newest", "views"]
RestaurantAdminSort = Literal["createdAt", "publishedAt", "name", "channelName", "viewCount"]
SortOrder = Literal["asc", "desc"]
UpsertResult = Literal["created", "updated"]

_ADMIN_SORT_COLUMNS: dict[str, str] = {
    "createdAt": "created_at",
    "publishedAt": "published_at",
    "name": "name",
    "channelName": "channel_name",
    "viewCount": "view_count",
}


@dataclass(frozen=True)
class RestaurantUpsert:
    name: str
    lat: float
    lng: float
    maps_url: str
    video_id: str
    video_title: str
    thumbnail_url: str
    channel_id: str
    channel_name: str
    channel_avatar: str | None
    view_count: int | None
    published_at: datetime


@dataclass(frozen=True)
class Restaurant:
    restaurant_id: str
    name: str
    lat: float
    lng: float
    maps_url: str
    video_id: str
    video_title: str
    thumbnail_url: str
    channel_id: str
    channel_name: str
    channel_avatar: str | None
    view_count: int | None
    published_at: datetime
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class RestaurantPage:
    items: list[Restaurant]
    total: int


_SELECT_COLUMNS = """
    id, name, lat, lng, maps_url, video_id, video_title, thumbnail_url,
    channel_id, channel_name, channel_avatar, view_count, published_at,
    created_at, updated_at
"""


class RestaurantRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert(self, record: RestaurantUpsert) -> UpsertResult:
        """
        Create or refresh the restaurant keyed by `(video_id, maps_url)`.

        Rediscovery refreshes the name, coordinates and snapshot fields. The
        stored channel avatar is kept when the new extraction has none.
        """
        _validate_coordinates(record.lat, record.lng)
        now_iso = utc_now_iso()
        published_at = record.published_at.astimezone(UTC).isoformat()

        with self._db.connection() as conn:
            existing = conn.execute(
                "SELECT id FROM restaurants WHERE video_id = ? AND maps_url = ?",
                (record.video_id, record.maps_url),
            ).fetchone()

            if existing is not None:
                conn.execute(
                    """
                    UPDATE restaurants
                    SET name = ?,
                        lat = ?,
                        lng = ?,
                        video_title = ?,
                        thumbnail_url = ?,
                        channel_name = ?,
                        channel_avatar = COALESCE(?, channel_avatar),
                        view_count = ?,
                        published_at = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        record.name,
                        record.lat,
                        record.lng,
                        record.video_title,
                        record.thumbnail_url,
                        record.channel_name,
                        record.channel_avatar,
                        record.view_count,
                        published_at,
                        now_iso,
                        str(existing["id"]),
                    ),
                )
                return "updated"

            conn.execute(
                """
                INSERT INTO restaurants (
                    id, name, lat, lng, maps_url, video_id, video_title, thumbnail_url,
                    channel_id, channel_name, channel_avatar, view_count, published_at,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    f"rest_{uuid4().hex}",
                    record.name,
                    record.lat,
                    record.lng,
                    record.maps_url,
                    record.video_id,
                    record.video_title,
                    record.thumbnail_url,
                    record.channel_id,
                    record.channel_name,
                    record.channel_avatar,
                    record.view_count,
                    published_at,
                    now_iso,
                    now_iso,
                ),
            )
        return "created"

    def get_by_key(self, *, video_id: str, maps_url: str) -> Restaurant | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM restaurants WHERE video_id = ? AND maps_url = ?",
                (video_id, maps_url),
            ).fetchone()
        if row is None:
            return None
        return _row_to_restaurant(row)

    def count(self) -> int:
        with self._db.connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM restaurants").fetchone()
        return int(row["total"]) if row is not None else 0

    def list_video_ids_for_channel(self, channel_youtube_id: str) -> set[str]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT video_id FROM restaurants WHERE channel_id = ?",
                (channel_youtube_id,),
            ).fetchall()
        return {str(row["video_id"]) for row in rows}

    def list_in_bounding_box(
        self,
        box: BoundingBox,
        *,
        channel_id: str | None = None,
        sort: RestaurantSort = "distance",
    ) -> list[Restaurant]:
        clauses = ["lat BETWEEN ? AND ?"]
        params: list[object] = [box.min_lat, box.max_lat]
        if not box.wraps_antimeridian:
            clauses.append("lng BETWEEN ? AND ?")
            params.extend([box.min_lng, box.max_lng])
        if channel_id is not None:
            clauses.append("channel_id = ?")
            params.append(channel_id)

        query = f"SELECT {_SELECT_COLUMNS} FROM restaurants WHERE {' AND '.join(clauses)}"
        if sort == "newest":
            query += " ORDER BY published_at DESC"
        elif sort == "views":
            query += " ORDER BY view_count IS NULL, view_count DESC"

        with self._db.connection() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()

        restaurants = [_row_to_restaurant(row) for row in rows]
        if box.wraps_antimeridian:
            restaurants = [item for item in restaurants if box.contains(item.lat, item.lng)]
        return restaurants

    def get(self, restaurant_id: str) -> Restaurant | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM restaurants WHERE id = ?",
                (restaurant_id.strip(),),
            ).fetchone()
        if row is None:
            return None
        return _row_to_restaurant(row)

    def list_page(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        search: str | None = None,
        channel_id: str | None = None,
        sort_by: RestaurantAdminSort = "createdAt",
        sort_order: SortOrder = "desc",
    ) -> RestaurantPage:
        """One page of restaurants for curation, with the total match count.

        `search` is a case-insensitive substring match on the restaurant name,
        video title and channel name.
        """
        clauses: list[str] = []
        params: list[object] = []
        normalized_search = (search or "").strip()
        if normalized_search:
            pattern = f"%{_escape_like(normalized_search)}%"
            clauses.append(
                "(name LIKE ? ESCAPE '\\' OR video_title LIKE ? ESCAPE '\\' "
                "OR channel_name LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern, pattern])
        if channel_id:
            clauses.append("channel_id = ?")
            params.append(channel_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        column = _ADMIN_SORT_COLUMNS[sort_by]
        direction = "ASC" if sort_order == "asc" else "DESC"
        page_size = max(1, limit)
        offset = (max(1, page) - 1) * page_size

        with self._db.connection() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM restaurants{where}",
                tuple(params),
            ).fetchone()
            rows = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM restaurants{where} "
                f"ORDER BY {column} {direction}, id ASC LIMIT ? OFFSET ?",
                (*params, page_size, offset),
            ).fetchall()

        total = int(total_row["total"]) if total_row is not None else 0
        return RestaurantPage(items=[_row_to_restaurant(row) for row in rows], total=total)

    def update_details(
        self,
        restaurant_id: str,
        *,
        name: str | None = None,
        lat: float | None = None,
        lng: float | None = None,
    ) -> Restaurant | None:
        """Apply a manual correction. Fields left as None keep their value."""
        current = self.get(restaurant_id)
        if current is None:
            return None

        new_name = current.name if name is None else name.strip()
        if not new_name:
            raise ValueError("name must not be blank")
        new_lat = current.lat if lat is None else lat
        new_lng = current.lng if lng is None else lng
        _validate_coordinates(new_lat, new_lng)

        with self._db.connection() as conn:
            conn.execute(
                "UPDATE restaurants SET name = ?, lat = ?, lng = ?, updated_at = ? WHERE id = ?",
                (new_name, new_lat, new_lng, utc_now_iso(), current.restaurant_id),
            )
        return self.get(current.restaurant_id)

    def delete(self, restaurant_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute("DELETE FROM restaurants WHERE id = ?", (restaurant_id.strip(),))
        return cursor.rowcount > 0


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _validate_coordinates(lat: float, lng: float) -> None:
    if not -90.0 <= lat <= 90.0:
        raise ValueError(f"latitude out of range: {lat}")
    if not -180.0 <= lng <= 180.0:
        raise ValueError(f"longitude out of range: {lng}")


def _row_to_restaurant(row: sqlite3.Row) -> Restaurant:
    published_at = parse_iso_utc(row["published_at"]) or datetime.fromtimestamp(0, tz=UTC)
    return Restaurant(
        restaurant_id=str(row["id"]),
        name=str(row["name"]),
        lat=float(row["lat"]),
        lng=float(row["lng"]),
        maps_url=str(row["maps_url"]),
        video_id=str(row["video_id"]),
        video_title=str(row["video_title"]),
        thumbnail_url=str(row["thumbnail_url"]),
        channel_id=str(row["channel_id"]),
        channel_name=str(row["channel_name"]),
        channel_avatar=to_optional_str(row["channel_avatar"]),
        view_count=to_optional_int(row["view_count"]),
        published_at=published_at,
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )
