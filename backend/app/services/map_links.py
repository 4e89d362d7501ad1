from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from urllib.error import HTTPError, URLError
from urllib.parse import unquote, urljoin, urlparse
from urllib.request import HTTPRedirectHandler, Request, build_opener

LOGGER = logging.getLogger("mangan.map_links")

USER_AGENT = "mangan/0.1 (+map-link-resolver)"
DEFAULT_MAX_HOPS = 5

MAP_LINK_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"https?://maps\.app\.goo\.gl/[a-zA-Z0-9]+"),
    re.compile(r"https?://goo\.gl/maps/[a-zA-Z0-9]+"),
    re.compile(r"https?://(?:www\.)?google\.com/maps/[^\s)>\]]+"),
    re.compile(r"https?://maps\.google\.com/[^\s)>\]]+"),
)
_TRAILING_PUNCTUATION = ".,;:!?'\""

_NUMBER = r"(-?\d+\.?\d*)"
# Priority order: the "@" form is the most common and is tried first.
COORDINATE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"@{_NUMBER},{_NUMBER}"),
    re.compile(rf"[?&]q={_NUMBER}(?:,|%2C){_NUMBER}", re.IGNORECASE),
    re.compile(rf"!3d{_NUMBER}!4d{_NUMBER}"),
    re.compile(rf"/place/[^/]+/@{_NUMBER},{_NUMBER}"),
)
PLACE_NAME_PATTERN = re.compile(r"/place/([^/@]+)")

HeadResolver = Callable[[str, float, int], str]
LocationFetcher = Callable[[str, float], str | None]


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float


@dataclass(frozen=True)
class ResolvedMapLink:
    maps_url: str
    resolved_url: str
    coordinates: Coordinates
    place_name: str | None


def find_map_links(text: str | None) -> list[str]:
    """Map URLs in `text`, in first-seen order, without duplicates."""
    if not text:
        return []

    positioned: list[tuple[int, str]] = []
    for pattern in MAP_LINK_PATTERNS:
        for match in pattern.finditer(text):
            url = match.group(0).rstrip(_TRAILING_PUNCTUATION)
            if url:
                positioned.append((match.start(), url))
    positioned.sort(key=lambda item: item[0])

    seen: set[str] = set()
    links: list[str] = []
    for _, url in positioned:
        if url in seen:
            continue
        seen.add(url)
        links.append(url)
    return links


def is_short_link(url: str) -> bool:
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if host == "maps.app.goo.gl":
        return True
    return host == "goo.gl" and parsed.path.startswith("/maps")


def parse_coordinates(url: str) -> Coordinates | None:
    for pattern in COORDINATE_PATTERNS:
        match = pattern.search(url)
        if match is None:
            continue
        try:
            lat = float(match.group(1))
            lng = float(match.group(2))
        except ValueError:
            continue
        if -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0:
            return Coordinates(lat=lat, lng=lng)
    return None


def extract_place_name(url: str) -> str | None:
    match = PLACE_NAME_PATTERN.search(url)
    if match is None:
        return None
    name = unquote(match.group(1)).replace("+", " ").strip()
    return name or None


class MapLinkResolver:
    """Turns map links into coordinates, resolving short links over HTTP.

    Short links are resolved with a redirect-following HEAD request first.
    When that fails, the resolver walks `Location` headers one GET at a time,
    up to `max_hops`, and gives up on cycles. A link that cannot be resolved
    or parsed yields `None` and never raises.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        max_hops: int = DEFAULT_MAX_HOPS,
        head_resolver: HeadResolver | None = None,
        location_fetcher: LocationFetcher | None = None,
    ) -> None:
        self._timeout_seconds = max(0.1, timeout_seconds)
        self._max_hops = max(1, max_hops)
        self._head_resolver = head_resolver or _head_follow_redirects
        self._location_fetcher = location_fetcher or _fetch_redirect_location

    def resolve_short_link(self, url: str) -> str | None:
        try:
            return self._head_resolver(url, self._timeout_seconds, self._max_hops)
        except (HTTPError, URLError, TimeoutError, OSError, ValueError) as exc:
            LOGGER.debug("map link head resolution failed url=%s error=%s", url, exc)

        current = url
        visited = {url}
        for _ in range(self._max_hops):
            try:
                location = self._location_fetcher(current, self._timeout_seconds)
            except (URLError, TimeoutError, OSError, ValueError) as exc:
                LOGGER.debug("map link redirect fetch failed url=%s error=%s", current, exc)
                return None
            if location is None:
                return None

            next_url = urljoin(current, location)
            if not is_short_link(next_url):
                return next_url
            if next_url in visited:
                LOGGER.info("map link redirect cycle detected url=%s", url)
                return None
            visited.add(next_url)
            current = next_url

        LOGGER.info("map link redirect hop limit reached url=%s max_hops=%s", url, self._max_hops)
        return None

    def extract_coordinates(self, url: str) -> Coordinates | None:
        resolved = self.resolve(url)
        return resolved.coordinates if resolved is not None else None

    def resolve(self, url: str) -> ResolvedMapLink | None:
        full_url = url
        if is_short_link(url):
            try:
                resolved_url = self.resolve_short_link(url)
            except Exception:
                LOGGER.warning("map link resolution raised url=%s", url, exc_info=True)
                return None
            if resolved_url is None:
                return None
            full_url = resolved_url

        coordinates = parse_coordinates(full_url)
        if coordinates is None:
            return None
        return ResolvedMapLink(
            maps_url=url,
            resolved_url=full_url,
            coordinates=coordinates,
            place_name=extract_place_name(url) or extract_place_name(full_url),
        )


class _LimitedRedirectHandler(HTTPRedirectHandler):
    def __init__(self, max_redirections: int) -> None:
        super().__init__()
        self.max_redirections = max_redirections


class _NoRedirectHandler(HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[no-untyped-def]
        return None


def _head_follow_redirects(url: str, timeout_seconds: float, max_hops: int) -> str:
    opener = build_opener(_LimitedRedirectHandler(max_hops))
    request = Request(url, headers={"user-agent": USER_AGENT}, method="HEAD")
    with opener.open(request, timeout=timeout_seconds) as response:
        return str(response.geturl())


def _fetch_redirect_location(url: str, timeout_seconds: float) -> str | None:
    opener = build_opener(_NoRedirectHandler())
    request = Request(url, headers={"user-agent": USER_AGENT}, method="GET")
    try:
        with opener.open(request, timeout=timeout_seconds) as response:
            location = response.headers.get("location")
    except HTTPError as exc:
        location = exc.headers.get("location") if exc.headers is not None else None
    if isinstance(location, str) and location.strip():
        return location.strip()
    return None
