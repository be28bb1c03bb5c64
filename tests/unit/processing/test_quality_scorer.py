from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from src.core.domain import (
    Address,
    Category,
    Coordinates,
    FieldConfidence,
    FieldWarning,
    NormalizedEvent,
    PriceRange,
    ProvenanceLink,
    QualityTier,
    Venue,
    raw_event_id,
)
from src.processing.quality_scorer import (
    QualityContext,
    QualityScorer,
    QualityThresholds,
    QualityWeights,
    count_quality,
    description_quality,
    required_coverage,
    title_quality,
)

pytestmark = pytest.mark.unit

AS_OF = datetime(2026, 4, 28, 12, 0, tzinfo=UTC)
DESCRIPTION = "An evening of standards with the house trio. Doors open at seven."


def _sparse_event() -> NormalizedEvent:
    event = NormalizedEvent(title="Untitled Event")
    event.record_provenance(
        "title",
        confidence=FieldConfidence.DEFAULTED,
        origin="eventbrite:1",
        verified_at=AS_OF,
    )
    return event


def _rich_event() -> NormalizedEvent:
    event = NormalizedEvent(
        title="Jazz Night at the Blue Note",
        description=DESCRIPTION,
        start_at=AS_OF + timedelta(days=3),
        end_at=AS_OF + timedelta(days=3, hours=3),
        venue=Venue(name="Blue Note"),
        address=Address(line1="131 W 3rd St", locality="New York", region="NY"),
        coordinates=Coordinates(lat=40.7306, lng=-74.0003),
        category=Category.MUSIC,
        tags=["jazz", "live music", "trio", "nightlife", "standards"],
        media=["https://img.test/1.jpg", "https://img.test/2.jpg", "https://img.test/3.jpg"],
        url="https://bluenote.test/jazz-night",
        email="box@bluenote.test",
        phone="+12125550100",
        provenance=[
            ProvenanceLink(
                raw_event_id=raw_event_id("ticketmaster", "1"),
                provider="ticketmaster",
                provider_event_id="1",
                discovered_at=AS_OF,
            )
        ],
        source_reputation=0.8,
    )
    event.set_field(
        "price",
        PriceRange(25.0, 40.0, "USD"),
        confidence=FieldConfidence.PROVIDER_ASSERTED,
        origin="ticketmaster:1",
        verified_at=AS_OF,
    )
    return event


def test_weights_must_sum_to_one() -> None:
    with pytest.raises(ValueError, match="sum to 1"):
        QualityWeights(
            completeness=0.5,
            accuracy=0.5,
            relevance=0.5,
            freshness=0.0,
            engagement=0.0,
            trustworthiness=0.0,
        )


def test_thresholds_must_descend() -> None:
    with pytest.raises(ValueError, match="descending"):
        QualityThresholds(premium=0.5, standard=0.6, basic=0.4)


@pytest.mark.parametrize(
    ("score", "tier"),
    [
        (0.95, QualityTier.PREMIUM),
        (0.8, QualityTier.PREMIUM),
        (0.79, QualityTier.STANDARD),
        (0.6, QualityTier.STANDARD),
        (0.4, QualityTier.BASIC),
        (0.39, QualityTier.POOR),
    ],
)
def test_tier_boundaries(score: float, tier: QualityTier) -> None:
    assert QualityThresholds().tier_for(score) == tier


def test_rich_event_is_premium() -> None:
    result = QualityScorer().score(_rich_event(), as_of=AS_OF)

    assert result.tier == QualityTier.PREMIUM
    assert result.score > 0.9
    assert set(result.breakdown) == {
        "completeness",
        "accuracy",
        "relevance",
        "freshness",
        "engagement",
        "trustworthiness",
    }
    assert result.breakdown["completeness"].score == pytest.approx(1.0)
    assert "within_one_week" in result.breakdown["freshness"].factors
    assert "structured_price" in result.breakdown["trustworthiness"].factors
    assert result.warnings == ()


def test_sparse_event_is_poor_with_missing_field_warnings() -> None:
    result = QualityScorer().score(_sparse_event(), as_of=AS_OF)

    assert result.tier == QualityTier.POOR
    assert "very_low_quality" in result.warnings
    assert "inconsistent_information" in result.warnings
    assert {"missing_title", "missing_start", "missing_location"} <= set(result.warnings)
    assert result.recommendations[0].startswith("completeness:")
    assert len(result.recommendations) == 3


def test_score_is_pure_for_fixed_inputs() -> None:
    scorer = QualityScorer()
    event = _rich_event()

    assert scorer.score(event, as_of=AS_OF) == scorer.score(event, as_of=AS_OF)


def test_adding_fields_never_lowers_the_score() -> None:
    scorer = QualityScorer()
    event = NormalizedEvent(title="Jazz Night at the Blue Note")
    rich = _rich_event()
    steps = [
        ("description", rich.description),
        ("start_at", rich.start_at),
        ("end_at", rich.end_at),
        ("venue", rich.venue),
        ("address", rich.address),
        ("coordinates", rich.coordinates),
        ("category", rich.category),
        ("price", rich.price),
        ("media", rich.media[:1]),
        ("media", rich.media),
        ("tags", rich.tags[:2]),
        ("tags", rich.tags),
        ("url", rich.url),
        ("email", rich.email),
        ("phone", rich.phone),
        ("provenance", rich.provenance),
    ]

    previous = scorer.score(event, as_of=AS_OF).score
    for attribute, value in steps:
        setattr(event, attribute, value)
        current = scorer.score(event, as_of=AS_OF).score
        assert current >= previous, attribute
        previous = current


def test_context_overrides_event_reputation() -> None:
    scorer = QualityScorer()
    event = _rich_event()

    trusted = scorer.score(event, QualityContext(source_reputation=1.0), as_of=AS_OF)
    distrusted = scorer.score(event, QualityContext(source_reputation=0.0), as_of=AS_OF)

    assert trusted.breakdown["trustworthiness"].score > distrusted.breakdown["trustworthiness"].score
    assert trusted.score > distrusted.score


def test_accuracy_penalizes_inconsistencies_and_validation_warnings() -> None:
    scorer = QualityScorer()
    event = _rich_event()
    event.end_at = event.start_at - timedelta(hours=1)
    event.warnings = [FieldWarning("email", "invalid_email", "clean")]

    result = scorer.score(event, as_of=AS_OF)

    assert result.breakdown["accuracy"].score == pytest.approx(0.45)
    assert result.breakdown["accuracy"].factors == ("end_before_start", "invalid_email")
    assert "inconsistent_information" in result.warnings


def test_past_events_lose_freshness() -> None:
    scorer = QualityScorer()
    event = _rich_event()
    event.start_at = AS_OF - timedelta(days=40)
    event.end_at = None

    result = scorer.score(event, as_of=AS_OF)

    assert "past_event" in result.breakdown["freshness"].factors
    assert "outdated" in result.warnings
    assert result.score < scorer.score(_rich_event(), as_of=AS_OF).score


def test_apply_stores_score_on_event() -> None:
    event = _rich_event()

    result = QualityScorer().apply(event, as_of=AS_OF)

    assert event.quality is result


def test_required_coverage_counts_title_start_and_location() -> None:
    assert required_coverage(_rich_event()) == (1.0, [])
    assert required_coverage(_sparse_event()) == (0.0, ["title", "start", "location"])


def test_field_quality_helpers() -> None:
    assert title_quality("JAZZ NIGHT AT THE BLUE NOTE") == pytest.approx(0.7)
    assert title_quality("Jazz") == pytest.approx(0.3)
    assert description_quality("Short one") == pytest.approx(0.42)
    assert count_quality(0, minimum=2, optimal=5, maximum=15) == 0.0
    assert count_quality(4, minimum=2, optimal=5, maximum=15) == pytest.approx(0.8)
    assert count_quality(20, minimum=2, optimal=5, maximum=15) == 0.8
