"""
Yelp Fusion events connector.
"""

from __future__ import annotations

from datetime import datetime
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
    YelpDescriptor,
    dig,
    event_items,
    numeric_page_token,
)

logger = structlog.get_logger(__name__)

# Yelp rejects offset + limit > 1000.
_MAX_OFFSET = 1000

_CATEGORY_TO_YELP: dict[Category, str] = {
    Category.MUSIC: "music",
    Category.ARTS: "visual-arts",
    Category.FOOD: "food-and-drink",
    Category.SPORTS: "sports-active-life",
    Category.NIGHTLIFE: "nightlife",
    Category.FAMILY: "kids-family",
    Category.FASHION: "fashion",
    Category.EDUCATION: "lectures-books",
    Category.VOLUNTEER: "charities",
    Category.ENTERTAINMENT: "film",
}


class YelpConnector(SourceConnector):
    provider = "yelp"
    descriptor_type = YelpDescriptor
    default_base_url = "https://api.yelp.com/v3"

    def __init__(self, *, api_key: str | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key or settings.YELP_API_KEY

    async def fetch_page(
        self,
        descriptor: SearchDescriptor,
        page_token: str | None = None,
    ) -> DiscoveryPage:
        self.validate_descriptor(descriptor)
        descriptor = cast(YelpDescriptor, descriptor)
        if not self.api_key:
            msg = "YELP_API_KEY is not configured"
            raise PermanentError(msg, reason=ReasonCode.INVALID_CREDENTIALS)

        offset = numeric_page_token(page_token, provider=self.provider)
        limit = min(descriptor.page_size, 50)
        payload = await self._get_json(
            f"{self.base_url}/events",
            params={
                "location": descriptor.location,
                "radius": descriptor.radius_meters,
                "categories": _CATEGORY_TO_YELP.get(descriptor.category)
                if descriptor.category
                else None,
                "is_free": "true" if descriptor.free_only else None,
                "start_date": _unix(descriptor.start),
                "end_date": _unix(descriptor.end),
                "limit": limit,
                "offset": offset,
                "sort_on": "time_start",
                "sort_by": "asc",
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

        page = DiscoveryPage()
        events = event_items(payload.get("events"), provider=self.provider)
        for item in events:
            if not isinstance(item, dict) or not item.get("id"):
                page.skipped.append("missing_event_id")
                continue
            page.events.append(
                self._raw_event(provider_event_id=item["id"], payload=item, descriptor=descriptor)
            )

        total = payload.get("total")
        next_offset = offset + limit
        if (
            events
            and isinstance(total, int)
            and next_offset < total
            and next_offset + limit <= _MAX_OFFSET
        ):
            page.next_page_token = str(next_offset)
        logger.debug(
            "Yelp page fetched",
            connector=self.name,
            offset=offset,
            total=total,
            events=len(page.events),
        )
        return page

    @staticmethod
    def extract_fields(payload: dict[str, Any]) -> ExtractedFields:
        location = payload.get("location") or {}
        display_address = location.get("display_address")
        address = ", ".join(str(part) for part in display_address) if display_address else None
        image = payload.get("image_url")
        category = payload.get("category")

        return ExtractedFields(
            title=payload.get("name"),
            description=payload.get("description"),
            start=payload.get("time_start"),
            end=payload.get("time_end"),
            venue_name=dig(payload, "business", "name") or location.get("address1"),
            venue_id=payload.get("business_id"),
            address=address,
            address_parts={
                "line1": location.get("address1"),
                "locality": location.get("city"),
                "region": location.get("state"),
                "postal_code": location.get("zip_code"),
                "country": location.get("country"),
            },
            latitude=payload.get("latitude"),
            longitude=payload.get("longitude"),
            price_min=payload.get("cost"),
            price_max=payload.get("cost_max"),
            is_free=payload.get("is_free"),
            categories=[str(category)] if category else [],
            images=[str(image)] if image else [],
            url=payload.get("event_site_url"),
        )


def _unix(value: datetime | None) -> int | None:
    if value is None:
        return None
    return int(value.timestamp())
