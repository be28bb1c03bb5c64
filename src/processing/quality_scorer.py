"""
Quality scoring for canonical events.

`QualityScorer.score` is a pure function of the event, the caller-supplied
`QualityContext` and the `as_of` instant: six independent dimensions are
weighted into one score, then scaled by how many required fields (a real
title, a start time, a location) are present. Every dimension only ever gains
from an additional valid value, so filling in a missing field never lowers
the score.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime

from src.core.config import settings
from src.core.domain import (
    Category,
    DimensionScore,
    FieldConfidence,
    NormalizedEvent,
    QualityScore,
    QualityTier,
    utc_now,
)

DIMENSIONS = (
    "completeness",
    "accuracy",
    "relevance",
    "freshness",
    "engagement",
    "trustworthiness",
)

# Completeness field weights; they sum to 1.
FIELD_WEIGHTS = {
    "title": 0.20,
    "description": 0.15,
    "start_at": 0.15,
    "end_at": 0.10,
    "venue": 0.10,
    "address": 0.10,
    "price": 0.05,
    "media": 0.08,
    "tags": 0.05,
    "url": 0.02,
}

ACCURACY_ISSUES = frozenset(
    {
        "invalid_url",
        "invalid_email",
        "invalid_phone",
        "invalid_amount",
        "negative_price",
        "price_out_of_range",
        "invalid_currency",
        "invalid_coordinates",
        "coordinates_out_of_range",
        "null_island",
        "unparseable_date",
        "unknown_timezone",
    }
)
MAX_COUNTED_ISSUES = 4

SOCIAL_DOMAINS = (
    "facebook.com",
    "instagram.com",
    "twitter.com",
    "x.com",
    "linkedin.com",
    "tiktok.com",
    "youtube.com",
)
LISTING_DOMAINS = ("facebook.com", "instagram.com", "twitter.com", "eventbrite.com")
EVENT_KEYWORDS = frozenset(
    {
        "event", "music", "art", "food", "entertainment", "show", "concert",
        "festival", "workshop", "seminar", "conference", "meeting", "party",
    }
)

REQUIRED_GATE_FLOOR = 0.4

_WORD_RE = re.compile(r"\b\w+\b")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_SPECIAL_CHAR_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")
_CONTACT_RE = re.compile(r"\b(?:email|phone|call|contact|website|www)\b", re.IGNORECASE)

RECOMMENDATION_HINTS = {
    "completeness": "Add the missing event details (description, images, venue and address)",
    "accuracy": "Review dates, prices and contact information for consistency",
    "relevance": "Assign a category and location so the event can be matched to searches",
    "freshness": "Refresh the listing; the event is past or has not been re-verified recently",
    "engagement": "Add images and contact information (phone, email, website)",
    "trustworthiness": "Provide an official website and complete venue information",
}


@dataclass(slots=True, frozen=True)
class QualityWeights:
    completeness: float
    accuracy: float
    relevance: float
    freshness: float
    engagement: float
    trustworthiness: float

    def __post_init__(self) -> None:
        values = [getattr(self, name) for name in DIMENSIONS]
        if any(value < 0 for value in values):
            msg = "Quality weights must be non-negative"
            raise ValueError(msg)
        if not math.isclose(sum(values), 1.0, abs_tol=1e-6):
            msg = "Quality weights must sum to 1"
            raise ValueError(msg)

    @classmethod
    def from_settings(cls) -> QualityWeights:
        return cls(
            completeness=settings.QUALITY_WEIGHT_COMPLETENESS,
            accuracy=settings.QUALITY_WEIGHT_ACCURACY,
            relevance=settings.QUALITY_WEIGHT_RELEVANCE,
            freshness=settings.QUALITY_WEIGHT_FRESHNESS,
            engagement=settings.QUALITY_WEIGHT_ENGAGEMENT,
            trustworthiness=settings.QUALITY_WEIGHT_TRUSTWORTHINESS,
        )


@dataclass(slots=True, frozen=True)
class QualityThresholds:
    premium: float = 0.8
    standard: float = 0.6
    basic: float = 0.4

    def __post_init__(self) -> None:
        if not 1 >= self.premium > self.standard > self.basic >= 0:
            msg = "Quality tier thresholds must be descending within [0, 1]"
            raise ValueError(msg)

    @classmethod
    def from_settings(cls) -> QualityThresholds:
        return cls(
            premium=settings.QUALITY_TIER_PREMIUM_MIN,
            standard=settings.QUALITY_TIER_STANDARD_MIN,
            basic=settings.QUALITY_TIER_BASIC_MIN,
        )

    def tier_for(self, score: float) -> QualityTier:
        if score >= self.premium:
            return QualityTier.PREMIUM
        if score >= self.standard:
            return QualityTier.STANDARD
        if score >= self.basic:
            return QualityTier.BASIC
        return QualityTier.POOR


@dataclass(slots=True, frozen=True)
class QualityContext:
    """
    Relevance inputs owned by a downstream ranking system.

    `None` means "not supplied" and falls back to the configured defaults;
    `source_reputation` overrides the reputation carried on the event.
    """

    category_competition: float | None = None
    location_popularity: float | None = None
    source_reputation: float | None = None


class QualityScorer:
    """Weighted multi-dimension quality score with a discrete tier."""

    def __init__(
        self,
        *,
        weights: QualityWeights | None = None,
        thresholds: QualityThresholds | None = None,
        max_recommendations: int | None = None,
    ) -> None:
        self.weights = weights or QualityWeights.from_settings()
        self.thresholds = thresholds or QualityThresholds.from_settings()
        self.max_recommendations = max_recommendations or settings.QUALITY_MAX_RECOMMENDATIONS

    def score(
        self,
        event: NormalizedEvent,
        context: QualityContext | None = None,
        *,
        as_of: datetime | None = None,
    ) -> QualityScore:
        context = context or QualityContext()
        as_of = as_of or utc_now()
        dimensions = {
            "completeness": completeness(event, as_of=as_of),
            "accuracy": accuracy(event),
            "relevance": relevance(event, context),
            "freshness": freshness(event, as_of=as_of),
            "engagement": engagement(event),
            "trustworthiness": trustworthiness(event, context),
        }
        breakdown = {
            name: DimensionScore(
                score=round(value, 4),
                weight=getattr(self.weights, name),
                factors=tuple(factors),
            )
            for name, (value, factors) in dimensions.items()
        }
        weighted = sum(item.score * item.weight for item in breakdown.values())
        coverage, missing = required_coverage(event)
        gate = REQUIRED_GATE_FLOOR + (1 - REQUIRED_GATE_FLOOR) * coverage
        overall = round(max(0.0, min(1.0, weighted * gate)), 4)
        return QualityScore(
            score=overall,
            tier=self.thresholds.tier_for(overall),
            breakdown=breakdown,
            recommendations=self._recommendations(breakdown),
            warnings=quality_warnings(event, overall, breakdown, missing),
        )

    def apply(
        self,
        event: NormalizedEvent,
        context: QualityContext | None = None,
        *,
        as_of: datetime | None = None,
    ) -> QualityScore:
        """Score the current state and store it on the event."""
        event.quality = self.score(event, context, as_of=as_of)
        return event.quality

    def _recommendations(self, breakdown: dict[str, DimensionScore]) -> tuple[str, ...]:
        lowest = sorted(
            (item.score, name) for name, item in breakdown.items() if item.score < self.thresholds.premium
        )
        return tuple(
            f"{name}: {RECOMMENDATION_HINTS[name]}"
            for _, name in lowest[: self.max_recommendations]
        )


def required_coverage(event: NormalizedEvent) -> tuple[float, list[str]]:
    """Share of required fields present: a real title, a start, a location."""
    missing: list[str] = []
    if event.has_placeholder_title or not event.title:
        missing.append("title")
    if event.start_at is None:
        missing.append("start")
    if not _has_location(event):
        missing.append("location")
    return (3 - len(missing)) / 3, missing


def completeness(event: NormalizedEvent, *, as_of: datetime) -> tuple[float, list[str]]:
    qualities = {
        "title": 0.0 if event.has_placeholder_title else title_quality(event.title),
        "description": description_quality(event.description),
        "start_at": date_quality(event.start_at, as_of=as_of),
        "end_at": date_quality(event.end_at, as_of=as_of),
        "venue": 1.0 if event.venue is not None and event.venue.name else 0.0,
        "address": 1.0 if event.address is not None and not event.address.is_empty else 0.0,
        "price": price_quality(event),
        "media": count_quality(len(event.media), minimum=1, optimal=3, maximum=10),
        "tags": count_quality(len(event.tags), minimum=2, optimal=5, maximum=15),
        "url": 1.0 if event.url else 0.0,
    }
    score = sum(FIELD_WEIGHTS[name] * value for name, value in qualities.items())
    factors = [f"has_{name}" for name, value in qualities.items() if value > 0]
    return min(1.0, score), factors


def accuracy(event: NormalizedEvent) -> tuple[float, list[str]]:
    score = 1.0
    factors: list[str] = []
    if event.start_at is not None and event.end_at is not None and event.end_at < event.start_at:
        score *= 0.5
        factors.append("end_before_start")
    price = event.price
    if (
        price is not None
        and price.min_amount is not None
        and price.max_amount is not None
        and price.min_amount > price.max_amount
    ):
        score *= 0.5
        factors.append("price_min_above_max")
    if event.has_placeholder_title:
        score *= 0.6
        factors.append("placeholder_title")
    if event.start_at is None:
        score *= 0.8
        factors.append("start_unknown")
    issues = sorted({warning.issue for warning in event.warnings if warning.issue in ACCURACY_ISSUES})
    for issue in issues[:MAX_COUNTED_ISSUES]:
        score *= 0.9
        factors.append(issue)
    return score, factors


def relevance(event: NormalizedEvent, context: QualityContext) -> tuple[float, list[str]]:
    competition = (
        settings.QUALITY_DEFAULT_CATEGORY_COMPETITION
        if context.category_competition is None
        else context.category_competition
    )
    popularity = (
        settings.QUALITY_DEFAULT_LOCATION_POPULARITY
        if context.location_popularity is None
        else context.location_popularity
    )
    score = 0.4 + (1 - _unit(competition)) * 0.1
    factors = ["category_competition"]
    if event.category is not Category.UNCATEGORIZED:
        score += 0.2
        factors.append("categorized")
    if _has_location(event):
        score += 0.1 + _unit(popularity) * 0.1
        factors.append("location_popularity")
    if event.description:
        score += keyword_density(event.description) * 0.05
    score += min(0.05, len(event.tags) * 0.01)
    return min(1.0, score), factors


def freshness(event: NormalizedEvent, *, as_of: datetime) -> tuple[float, list[str]]:
    """Timing of the event (80%) and recency of the last verification (20%)."""
    factors: list[str] = []
    timing = 0.1
    if event.start_at is not None:
        days_until = (event.start_at - as_of).total_seconds() / 86_400
        if days_until > 0:
            factors.append("future_event")
            if days_until <= 7:
                timing = 1.0
                factors.append("within_one_week")
            elif days_until <= 30:
                timing = 0.9
            elif days_until <= 90:
                timing = 0.7
            else:
                timing = 0.5
        else:
            factors.append("past_event")
            days_ago = -days_until
            if days_ago <= 1:
                timing = 0.8
            elif days_ago <= 7:
                timing = 0.5
            elif days_ago <= 30:
                timing = 0.2

    recency = 0.2
    verified_at = event.last_verified_at
    if verified_at is not None:
        age_days = max(0.0, (as_of - verified_at).total_seconds() / 86_400)
        if age_days <= 1:
            recency = 1.0
            factors.append("recently_verified")
        elif age_days <= 7:
            recency = 0.8
        elif age_days <= 30:
            recency = 0.5
    return 0.8 * timing + 0.2 * recency, factors


def engagement(event: NormalizedEvent) -> tuple[float, list[str]]:
    score = 0.5
    factors: list[str] = []
    if event.media:
        score += min(0.2, len(event.media) * 0.05)
        factors.append(f"{len(event.media)}_images")
    if event.description and len(event.description) > 200:
        score += 0.1
        factors.append("rich_description")
    for name in ("email", "phone", "url"):
        if getattr(event, name):
            score += 0.05
            factors.append(f"has_{name}")
    if event.url and any(domain in event.url for domain in LISTING_DOMAINS):
        score += 0.1
    if event.price is not None:
        score += 0.05
        factors.append("price_listed")
    return min(1.0, score), factors


def trustworthiness(event: NormalizedEvent, context: QualityContext) -> tuple[float, list[str]]:
    reputation = (
        event.source_reputation if context.source_reputation is None else context.source_reputation
    )
    score = 0.4 + _unit(reputation) * 0.3
    factors = [f"source_reputation={round(_unit(reputation), 2)}"]
    has_venue = event.venue is not None and bool(event.venue.name)
    has_address = event.address is not None and not event.address.is_empty
    if has_venue and has_address:
        score += 0.1
        factors.append("complete_venue")
    elif has_venue or has_address:
        score += 0.05
    if event.url and not any(domain in event.url for domain in SOCIAL_DOMAINS):
        score += 0.1
        factors.append("official_website")
    if event.description and len(event.description) > 300:
        score += 0.05
        factors.append("detailed_description")
    if len(event.media) >= 3:
        score += 0.05
    if event.price is not None and event.confidence_of("price") == FieldConfidence.PROVIDER_ASSERTED:
        score += 0.05
        factors.append("structured_price")
    return min(1.0, score), factors


def quality_warnings(
    event: NormalizedEvent,
    overall: float,
    breakdown: dict[str, DimensionScore],
    missing: list[str],
) -> tuple[str, ...]:
    warnings: list[str] = []
    if overall < 0.3:
        warnings.append("very_low_quality")
    if "past_event" in breakdown["freshness"].factors and breakdown["freshness"].score < 0.3:
        warnings.append("outdated")
    if breakdown["accuracy"].score < 0.5:
        warnings.append("inconsistent_information")
    warnings.extend(f"missing_{name}" for name in missing)
    if not event.has_placeholder_title and len(event.title) < 10:
        warnings.append("short_title")
    return tuple(warnings)


def title_quality(title: str | None) -> float:
    if not title or not title.strip():
        return 0.0
    score = 1.0
    if len(title) < 10:
        score *= 0.5
    elif len(title) > 150:
        score *= 0.8
    if title == title.upper() and len(title) > 10 and any(char.isalpha() for char in title):
        score *= 0.7
    if len(_SPECIAL_CHAR_RE.findall(title)) > len(title) * 0.1:
        score *= 0.8
    if len(title.split()) < 2:
        score *= 0.6
    return score


def description_quality(description: str | None) -> float:
    if not description or not description.strip():
        return 0.0
    score = 1.0
    if len(description) < 50:
        score *= 0.6
    elif len(description) > 2000:
        score *= 0.9
    sentences = [part for part in _SENTENCE_SPLIT_RE.split(description) if part.strip()]
    if len(sentences) < 2:
        score *= 0.7
    words = _WORD_RE.findall(description.lower())
    if words and len(set(words)) / len(words) < 0.5:
        score *= 0.8
    if _CONTACT_RE.search(description):
        score *= 1.1
    return min(1.0, score)


def date_quality(value: datetime | None, *, as_of: datetime) -> float:
    if value is None:
        return 0.0
    if value >= as_of:
        return 1.0
    days_ago = (as_of - value).total_seconds() / 86_400
    if days_ago <= 30:
        return 0.8
    if days_ago <= 90:
        return 0.4
    return 0.1


def price_quality(event: NormalizedEvent) -> float:
    price = event.price
    if price is None:
        return 0.0
    if price.is_free:
        return 1.0
    if price.min_amount is None and price.max_amount is None:
        return 0.3
    if event.confidence_of("price") == FieldConfidence.PROVIDER_ASSERTED:
        return 1.0
    return 0.8


def count_quality(count: int, *, minimum: int, optimal: int, maximum: int) -> float:
    if count <= 0:
        return 0.0
    if count < minimum:
        return 0.5
    if optimal <= count <= maximum:
        return 1.0
    if count > maximum:
        return 0.8
    return max(0.5, min(1.0, count / optimal))


def keyword_density(text: str) -> float:
    words = _WORD_RE.findall(text.lower())
    if not words:
        return 0.0
    return sum(1 for word in words if word in EVENT_KEYWORDS) / len(words)


def _has_location(event: NormalizedEvent) -> bool:
    return (
        event.coordinates is not None
        or (event.address is not None and not event.address.is_empty)
        or (event.venue is not None and bool(event.venue.name))
    )


def _unit(value: float) -> float:
    return max(0.0, min(1.0, value))
