"""
Source reputation helpers with provider-kind multipliers.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

DEFAULT_SOURCE_REPUTATION = 0.5


class SourceKind(StrEnum):
    """Kinds of event providers, from most to least authoritative."""

    VENUE_CALENDAR = "venue_calendar"  # Venue or organizer's own listing
    TICKETING = "ticketing"  # Primary ticket sellers
    GOVERNMENT = "government"  # Municipal / public calendars
    REVIEW_SITE = "review_site"  # Review and local-discovery sites
    SOCIAL_FEED = "social_feed"  # User-generated public event feeds


KIND_MULTIPLIERS: dict[str, float] = {
    SourceKind.VENUE_CALENDAR.value: 1.0,
    SourceKind.TICKETING.value: 0.95,
    SourceKind.GOVERNMENT.value: 0.90,
    SourceKind.REVIEW_SITE.value: 0.75,
    SourceKind.SOCIAL_FEED.value: 0.55,
}


def kind_multiplier(source_kind: str | None) -> float:
    """Return reputation multiplier for a provider kind."""
    if source_kind is None:
        return 1.0
    return KIND_MULTIPLIERS.get(source_kind, 1.0)


def effective_source_reputation(*, base_reputation: Any, source_kind: str | None) -> float:
    """Apply the provider-kind multiplier to a configured base reputation."""
    try:
        base = float(base_reputation)
    except (TypeError, ValueError):
        base = DEFAULT_SOURCE_REPUTATION

    adjusted = base * kind_multiplier(source_kind)
    if adjusted < 0.0:
        return 0.0
    if adjusted > 1.0:
        return 1.0
    return adjusted
