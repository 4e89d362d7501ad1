from __future__ import annotations

import logging
import math
import secrets
from typing import Annotated

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Response
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.config import AppSettings
from backend.app.dependencies import (
    get_channel_repository,
    get_restaurant_repository,
    get_settings,
    get_sync_runner,
    get_sync_status_reporter,
    get_youtube_api_client,
)
from backend.app.models.restaurant_contracts import (
    AdminRestaurantPageResponse,
    AdminRestaurantResponse,
    ChannelCreateRequest,
    ChannelResponse,
    DeleteResponse,
    RestaurantResponse,
    RestaurantUpdateRequest,
)
from backend.app.models.sync_contracts import (
    SyncIdleResponse,
    SyncStatusResponse,
    SyncTriggerResponse,
)
from backend.app.repositories.channel_repository import (
    ChannelAlreadyExistsError,
    ChannelRepository,
)
from backend.app.repositories.restaurant_repository import (
    RestaurantAdminSort,
    RestaurantRepository,
    RestaurantSort,
    SortOrder,
)
from backend.app.repositories.sync_run_repository import SyncAlreadyRunningError
from backend.app.services.geo import bounding_box, haversine_distance
from backend.app.services.sync_service import NO_CHANNELS_MESSAGE, SyncOptions, SyncRunner
from backend.app.services.sync_status import SyncStatusReporter
from backend.app.services.video_sources import VideoSourceError, VideoSourceUnavailableError
from backend.app.services.youtube_api import YouTubeApiClient

LOGGER = logging.getLogger("mangan.api")

ADMIN_SESSION_COOKIE = "mangan_admin_session"
CRON_SECRET_HEADER = "X-Cron-Secret"

router = APIRouter()


def _matches_secret(provided: str | None, expected: str | None) -> bool:
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_admin(
    settings: Annotated[AppSettings, Depends(get_settings)],
    admin_session: Annotated[str | None, Cookie(alias=ADMIN_SESSION_COOKIE)] = None,
) -> None:
    if not _matches_secret(admin_session, settings.admin_session_token):
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_admin_or_cron(
    settings: Annotated[AppSettings, Depends(get_settings)],
    admin_session: Annotated[str | None, Cookie(alias=ADMIN_SESSION_COOKIE)] = None,
    cron_secret: Annotated[str | None, Header(alias=CRON_SECRET_HEADER)] = None,
) -> None:
    if _matches_secret(cron_secret, settings.cron_secret):
        return
    if _matches_secret(admin_session, settings.admin_session_token):
        return
    raise HTTPException(status_code=401, detail="Unauthorized")


def _parse_coordinate(raw_value: str | None, *, limit: float) -> float | None:
    if raw_value is None:
        return None
    try:
        value = float(raw_value)
    except ValueError:
        return None
    if math.isnan(value) or not -limit <= value <= limit:
        return None
    return value


@router.post(
    "/admin/sync",
    response_model=SyncTriggerResponse,
    status_code=202,
    tags=["admin"],
    operation_id="trigger_sync",
    dependencies=[Depends(require_admin_or_cron)],
)
def trigger_sync(
    response: Response,
    settings: Annotated[AppSettings, Depends(get_settings)],
    runner: Annotated[SyncRunner, Depends(get_sync_runner)],
    max_videos: Annotated[int | None, Query(alias="maxVideos")] = None,
    use_api: Annotated[bool, Query(alias="useApi")] = False,
) -> SyncTriggerResponse:
    options = SyncOptions(
        max_videos=max_videos if max_videos is not None else settings.sync_default_max_videos,
        force_api=use_api,
    )
    try:
        prepared = runner.start(options)
    except SyncAlreadyRunningError as exc:
        raise HTTPException(
            status_code=409,
            detail=f"Sync already running: {exc.run_id}",
        ) from exc

    if prepared is None:
        response.status_code = 200
        return SyncTriggerResponse(message=NO_CHANNELS_MESSAGE, status="idle")

    LOGGER.info("sync triggered run_id=%s", prepared.run.run_id)
    return SyncTriggerResponse(
        message="Sync started",
        sync_id=prepared.run.run_id,
        status="running",
        max_videos=prepared.options.max_videos,
        force_api=prepared.options.force_api,
    )


@router.get(
    "/admin/sync/status",
    response_model=SyncStatusResponse | SyncIdleResponse,
    tags=["admin"],
    operation_id="get_sync_status",
    dependencies=[Depends(require_admin)],
)
def get_sync_status(
    reporter: Annotated[SyncStatusReporter, Depends(get_sync_status_reporter)],
) -> SyncStatusResponse | SyncIdleResponse:
    snapshot = reporter.latest()
    if snapshot is None:
        return SyncIdleResponse()
    return SyncStatusResponse.from_snapshot(snapshot)


@router.get(
    "/admin/channels",
    response_model=list[ChannelResponse],
    tags=["admin"],
    operation_id="list_channels",
    dependencies=[Depends(require_admin)],
)
def list_channels(
    channels: Annotated[ChannelRepository, Depends(get_channel_repository)],
) -> list[ChannelResponse]:
    return [ChannelResponse.from_channel(channel) for channel in channels.list_channels()]


@router.post(
    "/admin/channels",
    response_model=ChannelResponse,
    status_code=201,
    tags=["admin"],
    operation_id="add_channel",
    dependencies=[Depends(require_admin)],
)
def add_channel(
    request: ChannelCreateRequest,
    channels: Annotated[ChannelRepository, Depends(get_channel_repository)],
    api_client: Annotated[YouTubeApiClient, Depends(get_youtube_api_client)],
) -> ChannelResponse:
    context_tokens = bind_contextvars(channel_ref=request.youtube_id)
    try:
        try:
            resolved = api_client.resolve_channel(request.youtube_id)
        except VideoSourceUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except VideoSourceError as exc:
            LOGGER.warning("channel resolution failed ref=%s", request.youtube_id, exc_info=True)
            raise HTTPException(status_code=502, detail=str(exc)) from exc

        if resolved is None:
            raise HTTPException(status_code=404, detail="Channel not found on YouTube")

        try:
            channel = channels.add_channel(youtube_id=resolved.channel_id, name=resolved.title)
        except ChannelAlreadyExistsError as exc:
            raise HTTPException(status_code=409, detail="Channel already exists") from exc
    finally:
        reset_contextvars(**context_tokens)

    LOGGER.info("channel added youtube_id=%s", channel.youtube_id)
    return ChannelResponse.from_channel(channel)


@router.delete(
    "/admin/channels/{channel_id}",
    response_model=DeleteResponse,
    tags=["admin"],
    operation_id="delete_channel",
    dependencies=[Depends(require_admin)],
)
def delete_channel(
    channel_id: str,
    channels: Annotated[ChannelRepository, Depends(get_channel_repository)],
) -> DeleteResponse:
    if not channels.delete_channel(channel_id):
        raise HTTPException(status_code=404, detail="Channel not found")
    return DeleteResponse(success=True)


@router.get(
    "/admin/restaurants",
    response_model=AdminRestaurantPageResponse,
    tags=["admin"],
    operation_id="list_admin_restaurants",
    dependencies=[Depends(require_admin)],
)
def list_admin_restaurants(
    restaurants: Annotated[RestaurantRepository, Depends(get_restaurant_repository)],
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    search: str | None = None,
    channel_id: Annotated[str | None, Query(alias="channelId")] = None,
    sort_by: Annotated[RestaurantAdminSort, Query(alias="sortBy")] = "createdAt",
    sort_order: Annotated[SortOrder, Query(alias="sortOrder")] = "desc",
) -> AdminRestaurantPageResponse:
    result = restaurants.list_page(
        page=page,
        limit=limit,
        search=search,
        channel_id=channel_id,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return AdminRestaurantPageResponse.from_page(result, page=page, limit=limit)


@router.put(
    "/admin/restaurants/{restaurant_id}",
    response_model=AdminRestaurantResponse,
    tags=["admin"],
    operation_id="update_restaurant",
    dependencies=[Depends(require_admin)],
)
def update_restaurant(
    restaurant_id: str,
    request: RestaurantUpdateRequest,
    restaurants: Annotated[RestaurantRepository, Depends(get_restaurant_repository)],
) -> AdminRestaurantResponse:
    updated = restaurants.update_details(
        restaurant_id,
        name=request.name,
        lat=request.lat,
        lng=request.lng,
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="Restaurant not found")
    LOGGER.info("restaurant corrected restaurant_id=%s", updated.restaurant_id)
    return AdminRestaurantResponse.from_restaurant(updated)


@router.delete(
    "/admin/restaurants/{restaurant_id}",
    response_model=DeleteResponse,
    tags=["admin"],
    operation_id="delete_restaurant",
    dependencies=[Depends(require_admin)],
)
def delete_restaurant(
    restaurant_id: str,
    restaurants: Annotated[RestaurantRepository, Depends(get_restaurant_repository)],
) -> DeleteResponse:
    if not restaurants.delete(restaurant_id):
        raise HTTPException(status_code=404, detail="Restaurant not found")
    LOGGER.info("restaurant deleted restaurant_id=%s", restaurant_id)
    return DeleteResponse(success=True)


@router.get(
    "/restaurants",
    response_model=list[RestaurantResponse],
    tags=["restaurants"],
    operation_id="list_nearby_restaurants",
)
def list_nearby_restaurants(
    restaurants: Annotated[RestaurantRepository, Depends(get_restaurant_repository)],
    lat: str | None = None,
    lng: str | None = None,
    radius: Annotated[float, Query(gt=0, le=20_000)] = 5.0,
    channel_id: Annotated[str | None, Query(alias="channelId")] = None,
    sort: RestaurantSort = "distance",
) -> list[RestaurantResponse]:
    center_lat = _parse_coordinate(lat, limit=90.0)
    center_lng = _parse_coordinate(lng, limit=180.0)
    if center_lat is None or center_lng is None:
        raise HTTPException(status_code=400, detail="lat and lng are required")

    box = bounding_box(center_lat, center_lng, radius)
    candidates = restaurants.list_in_bounding_box(box, channel_id=channel_id, sort=sort)

    results: list[RestaurantResponse] = []
    for restaurant in candidates:
        distance = haversine_distance(center_lat, center_lng, restaurant.lat, restaurant.lng)
        if distance <= radius:
            results.append(RestaurantResponse.from_restaurant(restaurant, distance=distance))

    if sort == "distance":
        results.sort(key=lambda item: item.distance)
    return results
