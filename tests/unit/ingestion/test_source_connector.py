from __future__ import annotations

from datetime import UTC, datetime, timedelta
from email.utils import format_datetime
from typing import Any

import httpx
import pytest

from src.core.domain import Category
from src.core.errors import (
    PermanentError,
    ReasonCode,
    RetryableError,
    SourceRegistrationError,
)
from src.ingestion.source_connector import (
    ConnectorConfig,
    ExtractedFields,
    GenericConnector,
    SearchDescriptor,
    TicketmasterDescriptor,
    YelpDescriptor,
    dig,
    first_present,
    parse_retry_after,
)

pytestmark = pytest.mark.unit


def _connector(handler: Any, **config: Any) -> GenericConnector:
    return GenericConnector(
        config=ConnectorConfig(
            name="community-feed",
            provider="generic",
            base_url="https://feed.test/events",
            **config,
        ),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        user_agents=["agent-a", "agent-b"],
    )


@pytest.mark.asyncio
async def test_generic_connector_maps_events_and_skips_missing_ids() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "events": [
                    {"id": "evt-1", "title": "Jazz Night"},
                    {"title": "No id here"},
                ],
                "next": "2",
            },
        )

    connector = _connector(handler)
    page = await connector.fetch_page(SearchDescriptor(location="Austin, TX", keyword="jazz"))

    assert [event.provider_event_id for event in page.events] == ["evt-1"]
    assert page.events[0].provider == "community-feed"
    assert page.events[0].descriptor["location"] == "Austin, TX"
    assert page.skipped == ["missing_event_id"]
    assert page.next_page_token == "2"
    assert seen[0].url.params["q"] == "jazz"
    assert "page" not in seen[0].url.params
    assert seen[0].headers["User-Agent"] == "agent-a"


@pytest.mark.asyncio
async def test_user_agents_rotate_between_requests() -> None:
    agents: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        agents.append(request.headers["User-Agent"])
        return httpx.Response(200, json={"events": []})

    connector = _connector(handler)
    for _ in range(3):
        await connector.fetch_page(SearchDescriptor(location="Boston"))

    assert agents == ["agent-a", "agent-b", "agent-a"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "error_type", "reason"),
    [
        (429, RetryableError, ReasonCode.RATE_LIMITED),
        (503, RetryableError, ReasonCode.UPSTREAM_UNAVAILABLE),
        (401, PermanentError, ReasonCode.INVALID_CREDENTIALS),
        (404, PermanentError, ReasonCode.NOT_FOUND),
        (422, PermanentError, ReasonCode.BAD_REQUEST),
    ],
)
async def test_http_status_maps_to_typed_errors(
    status_code: int,
    error_type: type[Exception],
    reason: ReasonCode,
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, headers={"Retry-After": "7"}, json={})

    with pytest.raises(error_type) as exc_info:
        await _connector(handler).fetch_page(SearchDescriptor(location="Boston"))

    assert exc_info.value.reason == reason
    if isinstance(exc_info.value, RetryableError):
        assert exc_info.value.retry_after == 7.0


@pytest.mark.asyncio
async def test_transport_errors_are_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    with pytest.raises(RetryableError) as exc_info:
        await _connector(handler).fetch_page(SearchDescriptor(location="Boston"))

    assert exc_info.value.reason == ReasonCode.TIMEOUT


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error", "reason"),
    [
        (httpx.DecodingError, ReasonCode.MALFORMED_PAYLOAD),
        (httpx.TooManyRedirects, ReasonCode.BAD_REQUEST),
    ],
)
async def test_non_transport_request_errors_are_permanent(
    error: type[httpx.RequestError],
    reason: ReasonCode,
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise error("broken response", request=request)

    with pytest.raises(PermanentError) as exc_info:
        await _connector(handler).fetch_page(SearchDescriptor(location="Boston"))

    assert exc_info.value.reason == reason


@pytest.mark.asyncio
async def test_events_field_that_is_not_a_list_is_malformed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"events": 5})

    with pytest.raises(PermanentError, match="expected a list") as exc_info:
        await _connector(handler).fetch_page(SearchDescriptor(location="Boston"))

    assert exc_info.value.reason == ReasonCode.MALFORMED_PAYLOAD


@pytest.mark.asyncio
async def test_non_json_body_is_a_permanent_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(PermanentError) as exc_info:
        await _connector(handler).fetch_page(SearchDescriptor(location="Boston"))

    assert exc_info.value.reason == ReasonCode.MALFORMED_PAYLOAD


def test_build_descriptor_merges_defaults_and_overrides() -> None:
    connector = _connector(lambda request: httpx.Response(200), defaults={"page_size": 25})

    descriptor = connector.build_descriptor(location="Denver, CO", category="music")

    assert descriptor.page_size == 25
    assert descriptor.category == Category.MUSIC
    assert descriptor.to_dict()["category"] == "music"


def test_build_descriptor_rejects_unknown_fields() -> None:
    connector = _connector(lambda request: httpx.Response(200), defaults={"radius_miles": 10})

    with pytest.raises(SourceRegistrationError, match="Unknown descriptor fields"):
        connector.build_descriptor(location="Denver, CO")


def test_descriptor_validation_rules() -> None:
    start = datetime(2026, 5, 1, tzinfo=UTC)
    with pytest.raises(SourceRegistrationError, match="end must not precede start"):
        SearchDescriptor(start=start, end=start - timedelta(days=1)).validate()
    with pytest.raises(SourceRegistrationError, match="requires a location"):
        TicketmasterDescriptor().validate()
    with pytest.raises(SourceRegistrationError, match="radius_meters"):
        YelpDescriptor(location="Austin", radius_meters=50_000).validate()

    TicketmasterDescriptor().validate(require_location=False)


def test_parse_retry_after_accepts_seconds_and_http_dates() -> None:
    future = datetime.now(tz=UTC) + timedelta(seconds=120)

    assert parse_retry_after("30") == 30.0
    assert parse_retry_after(None) is None
    assert parse_retry_after("-5") is None
    assert parse_retry_after("soon") is None
    assert 100 < (parse_retry_after(format_datetime(future, usegmt=True)) or 0) <= 120


def test_extracted_fields_from_mapping_normalizes_lists() -> None:
    extracted = ExtractedFields.from_mapping(
        {"title": "Jazz Night", "tags": "jazz", "images": ["a.jpg", None], "unknown": 1}
    )

    assert extracted.title == "Jazz Night"
    assert extracted.tags == ["jazz"]
    assert extracted.images == ["a.jpg"]


def test_dig_and_first_present_helpers() -> None:
    payload = {"a": {"b": [{"c": 1}]}}

    assert dig(payload, "a", "b", 0, "c") == 1
    assert dig(payload, "a", "b", 3, "c") is None
    assert dig(payload, "x", "y") is None
    assert first_present(None, "", [], "value") == "value"
