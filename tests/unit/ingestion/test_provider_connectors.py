from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from src.core.domain import Category
from src.core.errors import PermanentError, ReasonCode
from src.ingestion.eventbrite_connector import EventbriteConnector
from src.ingestion.source_connector import (
    ConnectorConfig,
    EventbriteDescriptor,
    TicketmasterDescriptor,
    YelpDescriptor,
)
from src.ingestion.ticketmaster_connector import TicketmasterConnector
from src.ingestion.yelp_connector import YelpConnector

pytestmark = pytest.mark.unit

TEST_API_KEY = "test-key"  # pragma: allowlist secret


def _client(handler: Any) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _config(name: str) -> ConnectorConfig:
    return ConnectorConfig(name=name, provider=name)


TICKETMASTER_EVENT = {
    "id": "tm-1",
    "name": "Jazz Night",
    "url": "https://tm.test/e/tm-1",
    "info": "An evening of standards.",
    "dates": {
        "start": {"localDate": "2026-05-01", "localTime": "20:00:00"},
        "timezone": "America/Chicago",
    },
    "classifications": [
        {"segment": {"name": "Music"}, "genre": {"name": "Jazz"}, "subGenre": {"name": "Undefined"}}
    ],
    "priceRanges": [{"min": 25.0, "max": 60.0, "currency": "USD"}],
    "images": [{"url": "https://img.test/1.jpg"}, {"width": 10}],
    "_embedded": {
        "venues": [
            {
                "id": "KovZ1",
                "name": "Blue Note",
                "timezone": "America/Chicago",
                "postalCode": "78701",
                "address": {"line1": "100 Congress Ave"},
                "city": {"name": "Austin"},
                "state": {"stateCode": "TX"},
                "country": {"countryCode": "US"},
                "location": {"latitude": "30.2672", "longitude": "-97.7431"},
            }
        ]
    },
}


@pytest.mark.asyncio
async def test_ticketmaster_fetch_page_builds_query_and_next_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "_embedded": {"events": [TICKETMASTER_EVENT, {"name": "no id"}]},
                "page": {"totalPages": 3, "number": 0},
            },
        )

    connector = TicketmasterConnector(
        config=_config("ticketmaster"),
        http_client=_client(handler),
        api_key=TEST_API_KEY,
    )
    page = await connector.fetch_page(
        TicketmasterDescriptor(location="Austin, tx", category=Category.MUSIC)
    )

    params = seen[0].url.params
    assert params["city"] == "Austin"
    assert params["stateCode"] == "TX"
    assert params["classificationName"] == "Music"
    assert params["page"] == "0"
    assert [event.provider_event_id for event in page.events] == ["tm-1"]
    assert page.skipped == ["missing_event_id"]
    assert page.next_page_token == "1"


@pytest.mark.asyncio
async def test_ticketmaster_stops_before_deep_paging_limit() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"page": {"totalPages": 50}})

    connector = TicketmasterConnector(
        config=_config("ticketmaster"),
        http_client=_client(handler),
        api_key=TEST_API_KEY,
    )
    page = await connector.fetch_page(TicketmasterDescriptor(location="Austin, TX", page_size=200), "4")

    assert page.next_page_token is None


@pytest.mark.asyncio
async def test_ticketmaster_requires_api_key() -> None:
    connector = TicketmasterConnector(
        config=_config("ticketmaster"),
        http_client=_client(lambda request: httpx.Response(200)),
        api_key="",
    )
    connector.api_key = ""

    with pytest.raises(PermanentError) as exc_info:
        await connector.fetch_page(TicketmasterDescriptor(location="Austin, TX"))

    assert exc_info.value.reason == ReasonCode.INVALID_CREDENTIALS


@pytest.mark.asyncio
async def test_ticketmaster_rejects_non_numeric_page_token() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={})

    connector = TicketmasterConnector(
        config=_config("ticketmaster"),
        http_client=_client(handler),
        api_key=TEST_API_KEY,
    )

    with pytest.raises(PermanentError) as exc_info:
        await connector.fetch_page(TicketmasterDescriptor(location="Austin, TX"), "next")

    assert exc_info.value.reason == ReasonCode.MALFORMED_PAYLOAD
    assert requests == []


@pytest.mark.asyncio
async def test_ticketmaster_embedded_events_must_be_a_list() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"_embedded": {"events": {"id": "tm-1"}}})

    connector = TicketmasterConnector(
        config=_config("ticketmaster"),
        http_client=_client(handler),
        api_key=TEST_API_KEY,
    )

    with pytest.raises(PermanentError) as exc_info:
        await connector.fetch_page(TicketmasterDescriptor(location="Austin, TX"))

    assert exc_info.value.reason == ReasonCode.MALFORMED_PAYLOAD

def test_ticketmaster_extract_fields() -> None:
    extracted = TicketmasterConnector.extract_fields(TICKETMASTER_EVENT)

    assert extracted.title == "Jazz Night"
    assert extracted.start == "2026-05-01T20:00:00"
    assert extracted.description == "An evening of standards."
    assert extracted.venue_name == "Blue Note"
    assert extracted.address_parts["locality"] == "Austin"
    assert extracted.address_parts["region"] == "TX"
    assert extracted.latitude == "30.2672"
    assert extracted.categories == ["Music", "Jazz"]
    assert extracted.images == ["https://img.test/1.jpg"]
    assert (extracted.price_min, extracted.price_max, extracted.currency) == (25.0, 60.0, "USD")


@pytest.mark.asyncio
async def test_yelp_fetch_page_uses_offsets_and_bearer_auth() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"events": [{"id": "y-1", "name": "Food Fest"}], "total": 120})

    connector = YelpConnector(config=_config("yelp"), http_client=_client(handler), api_key=TEST_API_KEY)
    page = await connector.fetch_page(YelpDescriptor(location="Austin, TX", page_size=50), "50")

    assert seen[0].headers["Authorization"] == f"Bearer {TEST_API_KEY}"
    assert seen[0].url.params["offset"] == "50"
    assert seen[0].url.params["limit"] == "50"
    assert page.next_page_token == "100"


def test_yelp_extract_fields() -> None:
    extracted = YelpConnector.extract_fields(
        {
            "id": "y-1",
            "name": "Food Fest",
            "time_start": "2026-06-01T12:00:00-05:00",
            "cost": None,
            "is_free": True,
            "category": "food-and-drink",
            "location": {
                "address1": "1 Park Rd",
                "city": "Austin",
                "state": "TX",
                "display_address": ["1 Park Rd", "Austin, TX 78701"],
            },
            "image_url": "https://img.test/y.jpg",
        }
    )

    assert extracted.address == "1 Park Rd, Austin, TX 78701"
    assert extracted.is_free is True
    assert extracted.categories == ["food-and-drink"]
    assert extracted.venue_name == "1 Park Rd"


@pytest.mark.asyncio
async def test_eventbrite_walks_organizations_and_filters_location() -> None:
    requested_paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested_paths.append(request.url.path)
        return httpx.Response(
            200,
            json={
                "events": [
                    {"id": "eb-1", "venue": {"address": {"city": "Austin"}}},
                    {"id": "eb-2", "venue": {"address": {"city": "Dallas"}}},
                    {"id": "eb-3", "online_event": True},
                ],
                "pagination": {"has_more_items": False},
            },
        )

    connector = EventbriteConnector(
        config=_config("eventbrite"),
        http_client=_client(handler),
        api_token=TEST_API_KEY,
    )
    descriptor = EventbriteDescriptor(location="Austin, TX", organization_ids=("org-1", "org-2"))

    first = await connector.fetch_page(descriptor)
    second = await connector.fetch_page(descriptor, first.next_page_token)

    assert requested_paths == ["/v3/organizations/org-1/events/", "/v3/organizations/org-2/events/"]
    assert [event.provider_event_id for event in first.events] == ["eb-1"]
    assert first.skipped == ["outside_location", "outside_location"]
    assert json.loads(first.next_page_token or "{}") == {"org": 1, "continuation": None}
    assert second.next_page_token is None


@pytest.mark.asyncio
async def test_eventbrite_rejects_malformed_page_token() -> None:
    connector = EventbriteConnector(
        config=_config("eventbrite"),
        http_client=_client(lambda request: httpx.Response(200, json={})),
        api_token=TEST_API_KEY,
    )

    with pytest.raises(PermanentError, match="Malformed Eventbrite page token"):
        await connector.fetch_page(
            EventbriteDescriptor(location="Austin", organization_ids=("org-1",)),
            "not-json",
        )


def test_eventbrite_extract_fields() -> None:
    extracted = EventbriteConnector.extract_fields(
        {
            "name": {"text": "Startup Mixer"},
            "summary": "Meet founders",
            "start": {"local": "2026-07-10T18:00:00", "timezone": "America/Chicago"},
            "venue": {"id": "v-9", "name": "Capital Factory", "address": {"city": "Austin"}},
            "ticket_availability": {
                "minimum_ticket_price": {"major_value": "10.00", "currency": "USD"},
            },
            "category": {"name": "Business & Professional"},
            "logo": {"original": {"url": "https://img.test/logo.png"}},
        }
    )

    assert extracted.title == "Startup Mixer"
    assert extracted.description == "Meet founders"
    assert extracted.timezone == "America/Chicago"
    assert extracted.price_min == "10.00"
    assert extracted.categories == ["Business & Professional"]
    assert extracted.images == ["https://img.test/logo.png"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("page_token", "body"),
    [
        ("-50", {"events": []}),
        (None, {"events": "y-1"}),
    ],
)
async def test_yelp_malformed_paging_is_a_permanent_error(
    page_token: str | None,
    body: dict[str, Any],
) -> None:
    connector = YelpConnector(
        config=_config("yelp"),
        http_client=_client(lambda request: httpx.Response(200, json=body)),
        api_key=TEST_API_KEY,
    )

    with pytest.raises(PermanentError) as exc_info:
        await connector.fetch_page(YelpDescriptor(location="Austin, TX"), page_token)

    assert exc_info.value.reason == ReasonCode.MALFORMED_PAYLOAD
