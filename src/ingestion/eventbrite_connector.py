"""
Eventbrite v3 connector (organization event listings).

Eventbrite no longer offers public location search, so discovery walks the
event lists of configured organizations and filters by location locally.
"""

from __future__ import annotations

import json
from typing import Any, cast

import structlog

from src.core.config import settings
from src.core.errors import PermanentError, ReasonCode
from src.ingestion.source_connector import (
    DiscoveryPage,
    EventbriteDescriptor,
    ExtractedFields,
    SearchDescriptor,
    SourceConnector,
    dig,
    event_items,
    first_present,
)

logger = structlog.get_logger(__name__)


class EventbriteConnector(SourceConnector):
    provider = "eventbrite"
    descriptor_type = EventbriteDescriptor
    default_base_url = "https://www.eventbriteapi.com/v3"

    def __init__(self, *, api_token: str | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_token = api_token or settings.EVENTBRITE_API_TOKEN

    async def fetch_page(
        self,
        descriptor: SearchDescriptor,
        page_token: str | None = None,
    ) -> DiscoveryPage:
        """
        Fetch one page for one organization.

        The page token encodes the organization index and the Eventbrite
        continuation cursor so that paging spans all configured organizations.
        """
        self.validate_descriptor(descriptor)
        descriptor = cast(EventbriteDescriptor, descriptor)
        if not self.api_token:
            msg = "EVENTBRITE_API_TOKEN is not configured"
            raise PermanentError(msg, reason=ReasonCode.INVALID_CREDENTIALS)

        org_index, continuation = _decode_token(page_token)
        if org_index >= len(descriptor.organization_ids):
            return DiscoveryPage()
        organization_id = descriptor.organization_ids[org_index]

        payload = await self._get_json(
            f"{self.base_url}/organizations/{organization_id}/events/",
            params={
                "status": "live",
                "time_filter": "current_future",
                "expand": "venue,ticket_availability,category,logo",
                "page_size": descriptor.page_size,
                "continuation": continuation,
            },
            headers={"Authorization": f"Bearer {self.api_token}"},
        )

        page = DiscoveryPage()
        for item in event_items(payload.get("events"), provider=self.provider):
            if not isinstance(item, dict) or not item.get("id"):
                page.skipped.append("missing_event_id")
                continue
            if not _matches_location(item, descriptor.location):
                page.skipped.append("outside_location")
                continue
            page.events.append(
                self._raw_event(provider_event_id=item["id"], payload=item, descriptor=descriptor)
            )

        pagination = payload.get("pagination") or {}
        if pagination.get("has_more_items") and pagination.get("continuation"):
            page.next_page_token = _encode_token(org_index, str(pagination["continuation"]))
        elif org_index + 1 < len(descriptor.organization_ids):
            page.next_page_token = _encode_token(org_index + 1, None)

        logger.debug(
            "Eventbrite page fetched",
            connector=self.name,
            organization_id=organization_id,
            events=len(page.events),
            skipped=len(page.skipped),
        )
        return page

    @staticmethod
    def extract_fields(payload: dict[str, Any]) -> ExtractedFields:
        venue = payload.get("venue") or {}
        address = venue.get("address") or {}
        minimum = dig(payload, "ticket_availability", "minimum_ticket_price") or {}
        maximum = dig(payload, "ticket_availability", "maximum_ticket_price") or {}

        categories = [
            str(name)
            for name in (dig(payload, "category", "name"), dig(payload, "subcategory", "name"))
            if name
        ]
        logo = dig(payload, "logo", "original", "url") or dig(payload, "logo", "url")

        return ExtractedFields(
            title=dig(payload, "name", "text"),
            description=first_present(dig(payload, "description", "text"), payload.get("summary")),
            start=first_present(dig(payload, "start", "local"), dig(payload, "start", "utc")),
            end=first_present(dig(payload, "end", "local"), dig(payload, "end", "utc")),
            timezone=dig(payload, "start", "timezone"),
            venue_name=venue.get("name"),
            venue_id=venue.get("id"),
            address=address.get("localized_address_display"),
            address_parts={
                "line1": address.get("address_1"),
                "locality": address.get("city"),
                "region": address.get("region"),
                "postal_code": address.get("postal_code"),
                "country": address.get("country"),
            },
            latitude=first_present(address.get("latitude"), venue.get("latitude")),
            longitude=first_present(address.get("longitude"), venue.get("longitude")),
            price_min=minimum.get("major_value"),
            price_max=maximum.get("major_value"),
            currency=first_present(minimum.get("currency"), payload.get("currency")),
            is_free=payload.get("is_free"),
            categories=categories,
            images=[str(logo)] if logo else [],
            url=payload.get("url"),
        )


def _matches_location(item: dict[str, Any], location: str | None) -> bool:
    if not location:
        return True
    if item.get("online_event"):
        return False
    city = dig(item, "venue", "address", "city")
    if not city:
        # Keep events whose venue is unresolved; the geocoder decides later.
        return True
    wanted = location.partition(",")[0].strip().lower()
    return str(city).strip().lower() == wanted


def _encode_token(org_index: int, continuation: str | None) -> str:
    return json.dumps({"org": org_index, "continuation": continuation}, separators=(",", ":"))


def _decode_token(page_token: str | None) -> tuple[int, str | None]:
    if not page_token:
        return 0, None
    try:
        decoded = json.loads(page_token)
        return int(decoded.get("org", 0)), decoded.get("continuation")
    except (ValueError, TypeError, AttributeError) as exc:
        msg = "Malformed Eventbrite page token"
        raise PermanentError(msg, reason=ReasonCode.MALFORMED_PAYLOAD) from exc
