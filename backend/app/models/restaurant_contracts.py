from __future__ import annotations

import math
from datetime import datetime
from typing import Any

from pydantic import Field, field_validator, model_validator

from backend.app.models.camel import CamelModel
from backend.app.repositories.channel_repository import Channel
from backend.app.repositories.restaurant_repository import Restaurant, RestaurantPage


def _restaurant_fields(restaurant: Restaurant) -> dict[str, Any]:
    return {
        "id": restaurant.restaurant_id,
        "name": restaurant.name,
        "lat": restaurant.lat,
        "lng": restaurant.lng,
        "maps_url": restaurant.maps_url,
        "video_id": restaurant.video_id,
        "video_title": restaurant.video_title,
        "thumbnail": restaurant.thumbnail_url,
        "channel_id": restaurant.channel_id,
        "channel_name": restaurant.channel_name,
        "channel_avatar": restaurant.channel_avatar,
        "view_count": restaurant.view_count,
        "published_at": restaurant.published_at,
    }


class _RestaurantFields(CamelModel):
    id: str
    name: str
    lat: float
    lng: float
    maps_url: str
    video_id: str
    video_title: str
    thumbnail: str
    channel_id: str
    channel_name: str
    channel_avatar: str | None
    view_count: int | None
    published_at: datetime


class RestaurantResponse(_RestaurantFields):
    distance: float

    @classmethod
    def from_restaurant(cls, restaurant: Restaurant, *, distance: float) -> RestaurantResponse:
        return cls(**_restaurant_fields(restaurant), distance=distance)


class AdminRestaurantResponse(_RestaurantFields):
    created_at: str
    updated_at: str

    @classmethod
    def from_restaurant(cls, restaurant: Restaurant) -> AdminRestaurantResponse:
        return cls(
            **_restaurant_fields(restaurant),
            created_at=restaurant.created_at,
            updated_at=restaurant.updated_at,
        )


class PaginationResponse(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class AdminRestaurantPageResponse(CamelModel):
    data: list[AdminRestaurantResponse]
    pagination: PaginationResponse

    @classmethod
    def from_page(
        cls,
        result: RestaurantPage,
        *,
        page: int,
        limit: int,
    ) -> AdminRestaurantPageResponse:
        return cls(
            data=[AdminRestaurantResponse.from_restaurant(item) for item in result.items],
            pagination=PaginationResponse(
                page=page,
                limit=limit,
                total=result.total,
                total_pages=math.ceil(result.total / limit),
            ),
        )


class RestaurantUpdateRequest(CamelModel):
    """Manual correction of an extracted restaurant; omitted fields are kept."""

    name: str | None = Field(default=None, max_length=300)
    lat: float | None = Field(default=None, ge=-90.0, le=90.0)
    lng: float | None = Field(default=None, ge=-180.0, le=180.0)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            raise ValueError("name must not be blank")
        return normalized

    @model_validator(mode="after")
    def _require_a_change(self) -> RestaurantUpdateRequest:
        if self.name is None and self.lat is None and self.lng is None:
            raise ValueError("at least one of name, lat or lng is required")
        return self


class ChannelResponse(CamelModel):
    id: str
    youtube_id: str
    name: str
    created_at: str

    @classmethod
    def from_channel(cls, channel: Channel) -> ChannelResponse:
        return cls(
            id=channel.channel_id,
            youtube_id=channel.youtube_id,
            name=channel.name,
            created_at=channel.created_at,
        )


class ChannelCreateRequest(CamelModel):
    youtube_id: str = Field(min_length=1, max_length=200)

    @field_validator("youtube_id")
    @classmethod
    def _strip_youtube_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("youtubeId is required")
        return normalized


class DeleteResponse(CamelModel):
    success: bool
