from __future__ import annotations

import pytest

from backend.app.services.map_links import (
    Coordinates,
    MapLinkResolver,
    extract_place_name,
    find_map_links,
    is_short_link,
    parse_coordinates,
)


def test_find_map_links_returns_links_in_text_order_without_duplicates() -> None:
    description = (
        "Makan di sini https://maps.app.goo.gl/AbC123 lalu ke "
        "https://www.google.com/maps/place/Warung+Sate/@-6.2,106.8,17z.\n"
        "Alamat lagi: https://maps.app.goo.gl/AbC123\n"
        "Old link https://goo.gl/maps/xyz789 and https://maps.google.com/?q=-6.3,106.9"
    )

    assert find_map_links(description) == [
        "https://maps.app.goo.gl/AbC123",
        "https://www.google.com/maps/place/Warung+Sate/@-6.2,106.8,17z",
        "https://goo.gl/maps/xyz789",
        "https://maps.google.com/?q=-6.3,106.9",
    ]


def test_find_map_links_handles_empty_and_linkless_text() -> None:
    assert find_map_links("") == []
    assert find_map_links(None) == []
    assert find_map_links("no links here, just https://example.com/maps") == []


def test_find_map_links_stops_at_closing_parenthesis() -> None:
    text = "Lokasi (https://google.com/maps/place/Bakmi/@1.5,2.5,15z) enak"

    assert find_map_links(text) == ["https://google.com/maps/place/Bakmi/@1.5,2.5,15z"]


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://maps.app.goo.gl/AbC123", True),
        ("https://goo.gl/maps/xyz789", True),
        ("https://www.google.com/maps/place/X/@1,2", False),
        ("https://goo.gl/other", False),
    ],
)
def test_is_short_link(url: str, expected: bool) -> None:
    assert is_short_link(url) is expected


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://www.google.com/maps/place/Warung/@-6.2088,106.8456,17z", (-6.2088, 106.8456)),
        ("https://maps.google.com/maps?q=-6.2,106.8", (-6.2, 106.8)),
        ("https://maps.google.com/maps?hl=id&q=-6.25%2C106.75", (-6.25, 106.75)),
        ("https://www.google.com/maps/place/X/data=!3d-7.25!4d112.75", (-7.25, 112.75)),
        ("https://www.google.com/maps/@51.5,-0.12,15z", (51.5, -0.12)),
    ],
)
def test_parse_coordinates_supported_dialects(url: str, expected: tuple[float, float]) -> None:
    coordinates = parse_coordinates(url)

    assert coordinates == Coordinates(lat=expected[0], lng=expected[1])


def test_parse_coordinates_prefers_at_form_over_data_params() -> None:
    url = "https://www.google.com/maps/place/X/@-6.1,106.1,17z/data=!3d-6.9!4d107.9"

    assert parse_coordinates(url) == Coordinates(lat=-6.1, lng=106.1)


def test_parse_coordinates_rejects_out_of_range_and_missing_values() -> None:
    assert parse_coordinates("https://www.google.com/maps/@95.0,10.0,15z") is None
    assert parse_coordinates("https://www.google.com/maps/@10.0,190.0,15z") is None
    assert parse_coordinates("https://www.google.com/maps/search/bakso") is None


def test_extract_place_name_decodes_segment() -> None:
    url = "https://www.google.com/maps/place/Warung+Sate+Pak%20Kumis/@-6.2,106.8,17z"

    assert extract_place_name(url) == "Warung Sate Pak Kumis"
    assert extract_place_name("https://maps.google.com/maps?q=-6.2,106.8") is None


def test_resolver_parses_full_urls_without_network() -> None:
    def _unexpected(*_: object) -> str:
        raise AssertionError("full URLs must not hit the network")

    resolver = MapLinkResolver(head_resolver=_unexpected, location_fetcher=_unexpected)
    resolved = resolver.resolve("https://www.google.com/maps/place/Bakso+Solo/@-7.5,110.8,17z")

    assert resolved is not None
    assert resolved.coordinates == Coordinates(lat=-7.5, lng=110.8)
    assert resolved.place_name == "Bakso Solo"


def test_resolver_follows_short_link_with_head_request() -> None:
    seen: list[tuple[str, float, int]] = []

    def _head(url: str, timeout: float, max_hops: int) -> str:
        seen.append((url, timeout, max_hops))
        return "https://www.google.com/maps/place/Mie+Aceh/@5.55,95.32,17z"

    resolver = MapLinkResolver(timeout_seconds=3.0, max_hops=4, head_resolver=_head)
    resolved = resolver.resolve("https://maps.app.goo.gl/AbC123")

    assert seen == [("https://maps.app.goo.gl/AbC123", 3.0, 4)]
    assert resolved is not None
    assert resolved.maps_url == "https://maps.app.goo.gl/AbC123"
    assert resolved.coordinates == Coordinates(lat=5.55, lng=95.32)
    assert resolved.place_name == "Mie Aceh"


def test_resolver_falls_back_to_manual_redirects_when_head_fails() -> None:
    hops = {
        "https://maps.app.goo.gl/AbC123": "https://goo.gl/maps/next1",
        "https://goo.gl/maps/next1": "https://www.google.com/maps?q=-6.2,106.8",
    }

    def _head(url: str, timeout: float, max_hops: int) -> str:
        raise OSError("HEAD not allowed")

    resolver = MapLinkResolver(head_resolver=_head, location_fetcher=lambda url, _: hops.get(url))

    assert resolver.resolve_short_link("https://maps.app.goo.gl/AbC123") == (
        "https://www.google.com/maps?q=-6.2,106.8"
    )
    assert resolver.extract_coordinates("https://maps.app.goo.gl/AbC123") == Coordinates(
        lat=-6.2, lng=106.8
    )


def test_resolver_gives_up_on_redirect_cycles() -> None:
    hops = {
        "https://maps.app.goo.gl/A": "https://maps.app.goo.gl/B",
        "https://maps.app.goo.gl/B": "https://maps.app.goo.gl/A",
    }

    def _head(url: str, timeout: float, max_hops: int) -> str:
        raise OSError("HEAD not allowed")

    resolver = MapLinkResolver(head_resolver=_head, location_fetcher=lambda url, _: hops.get(url))

    assert resolver.resolve_short_link("https://maps.app.goo.gl/A") is None


def test_resolver_enforces_hop_limit() -> None:
    calls: list[str] = []

    def _head(url: str, timeout: float, max_hops: int) -> str:
        raise OSError("HEAD not allowed")

    def _location(url: str, _: float) -> str:
        calls.append(url)
        return f"https://maps.app.goo.gl/hop{len(calls)}"

    resolver = MapLinkResolver(max_hops=3, head_resolver=_head, location_fetcher=_location)

    assert resolver.resolve_short_link("https://maps.app.goo.gl/start") is None
    assert len(calls) == 3


def test_resolver_returns_none_when_everything_fails() -> None:
    def _head(url: str, timeout: float, max_hops: int) -> str:
        raise OSError("offline")

    def _location(url: str, _: float) -> str | None:
        raise TimeoutError("offline")

    resolver = MapLinkResolver(head_resolver=_head, location_fetcher=_location)

    assert resolver.extract_coordinates("https://maps.app.goo.gl/AbC123") is None


def test_resolver_returns_none_for_links_without_coordinates() -> None:
    resolver = MapLinkResolver(
        head_resolver=lambda url, timeout, hops: "https://www.google.com/maps/search/bakso"
    )

    assert resolver.resolve("https://maps.app.goo.gl/AbC123") is None
