"""
Ticketmaster Discovery API v2 connector.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, cast

import structlog

from src.core.config import settings
from src.core.domain import Category
from src.core.errors import PermanentError, ReasonCode
from src.ingestion.source_connector import (
    DiscoveryPage,
    ExtractedFields,
    SearchDescriptor,
    SourceConnector,
    TicketmasterDescriptor,
    dig,
    event_items,
    first_present,
    numeric_page_token,
)

logger = structlog.get_logger(__name__)

# Discovery API refuses to page past size * page >= 1000.
_DEEP_PAGING_LIMIT = 1000

_CATEGORY_TO_CLASSIFICATION: dict[Category, str] = {
    Category.MUSIC: "Music",
    Category.SPORTS: "Sports",
    Category.ARTS: "Arts & Theatre",
    Category.FAMILY: "Family",
    Category.ENTERTAINMENT: "Film",
}


class TicketmasterConnector(SourceConnector):
    provider = "ticketmaster"
    descriptor_type = TicketmasterDescriptor
    default_base_url = "https://app.ticketmaster.com/discovery/v2"

    def __init__(self, *, api_key: str | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key or settings.TICKETMASTER_API_KEY

    async def fetch_page(
        self,
        descriptor: SearchDescriptor,
        page_token: str | None = None,
    ) -> DiscoveryPage:
        self.validate_descriptor(descriptor)
        descriptor = cast(TicketmasterDescriptor, descriptor)
        if not self.api_key:
            msg = "TICKETMASTER_API_KEY is not configured"
            raise PermanentError(msg, reason=ReasonCode.INVALID_CREDENTIALS)

        page_number = numeric_page_token(page_token, provider=self.provider)
        city, state_code = _split_location(descriptor.location)
        params: dict[str, Any] = {
            "apikey": self.api_key,
            "city": city,
            "stateCode": state_code,
            "countryCode": descriptor.country_code,
            "radius": descriptor.radius_miles,
            "unit": "miles" if descriptor.radius_miles else None,
            "keyword": descriptor.keyword,
            "classificationName": _CATEGORY_TO_CLASSIFICATION.get(descriptor.category)
            if descriptor.category
            else None,
            "startDateTime": _format_datetime(descriptor.start),
            "endDateTime": _format_datetime(descriptor.end),
            "size": descriptor.page_size,
            "page": page_number,
            "sort": "date,asc",
        }
        payload = await self._get_json(f"{self.base_url}/events.json", params=params)

        page = DiscoveryPage()
        for item in event_items(dig(payload, "_embedded", "events"), provider=self.provider):
            if not isinstance(item, dict) or not item.get("id"):
                page.skipped.append("missing_event_id")
                continue
            page.events.append(
                self._raw_event(provider_event_id=item["id"], payload=item, descriptor=descriptor)
            )

        total_pages = dig(payload, "page", "totalPages")
        next_number = page_number + 1
        if (
            isinstance(total_pages, int)
            and next_number < total_pages
            and (next_number + 1) * descriptor.page_size <= _DEEP_PAGING_LIMIT
        ):
            page.next_page_token = str(next_number)
        logger.debug(
            "Ticketmaster page fetched",
            connector=self.name,
            page=page_number,
            total_pages=total_pages,
            events=len(page.events),
        )
        return page

    @staticmethod
    def extract_fields(payload: dict[str, Any]) -> ExtractedFields:
        venue = dig(payload, "_embedded", "venues", 0) or {}
        start = dig(payload, "dates", "start") or {}
        end = dig(payload, "dates", "end") or {}
        price = dig(payload, "priceRanges", 0) or {}

        start_value = first_present(
            start.get("dateTime"),
            _join_local(start.get("localDate"), start.get("localTime")),
        )
        end_value = first_present(
            end.get("dateTime"),
            _join_local(end.get("localDate"), end.get("localTime")),
        )

        categories = []
        for classification in payload.get("classifications") or []:
            for level in ("segment", "genre", "subGenre"):
                name = dig(classification, level, "name")
                if name and name != "Undefined":
                    categories.append(str(name))

        images = [
            str(image["url"])
            for image in payload.get("images") or []
            if isinstance(image, dict) and image.get("url")
        ]

        return ExtractedFields(
            title=payload.get("name"),
            description=first_present(
                payload.get("description"),
                payload.get("info"),
                payload.get("pleaseNote"),
            ),
            start=start_value,
            end=end_value,
            timezone=dig(payload, "dates", "timezone"),
            venue_name=venue.get("name"),
            venue_id=venue.get("id"),
            venue_timezone=venue.get("timezone"),
            address_parts={
                "line1": dig(venue, "address", "line1"),
                "locality": dig(venue, "city", "name"),
                "region": first_present(dig(venue, "state", "stateCode"), dig(venue, "state", "name")),
                "postal_code": venue.get("postalCode"),
                "country": dig(venue, "country", "countryCode"),
            },
            latitude=dig(venue, "location", "latitude"),
            longitude=dig(venue, "location", "longitude"),
            price_min=price.get("min"),
            price_max=price.get("max"),
            currency=price.get("currency"),
            categories=categories,
            images=images,
            url=payload.get("url"),
        )


def _split_location(location: str | None) -> tuple[str | None, str | None]:
    if not location:
        return None, None
    city, _, region = location.partition(",")
    return city.strip() or None, region.strip().upper() or None


def _format_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _join_local(local_date: str | None, local_time: str | None) -> str | None:
    if not local_date:
        return None
    if not local_time:
        return local_date
    return f"{local_date}T{local_time}"
