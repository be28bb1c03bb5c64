from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import httpx
import pytest
from openai import APIConnectionError, APIStatusError, APITimeoutError, RateLimitError

from src.core.domain import Category, FieldConfidence, NormalizedEvent, Venue
from src.core.errors import PermanentError, ReasonCode, RetryableError
from src.core.retry_policy import RetryPolicy
from src.processing.classifier import (
    ClassificationResult,
    ClassificationSource,
    EventClassifier,
    OpenAIClassificationProvider,
    ProviderClassification,
    RuleBasedClassifier,
    clamp_categories,
    clamp_tags,
    classification_text,
    provider_error,
)
from src.processing.result_cache import TTLCache

pytestmark = pytest.mark.unit

VERIFIED = datetime(2026, 4, 1, tzinfo=UTC)


@dataclass
class FakeProvider:
    answers: list[ProviderClassification]
    name: str = "fake"
    calls: list[str] = field(default_factory=list)

    async def classify(self, text: str, allowed_categories: list[Category]) -> ProviderClassification:
        self.calls.append(text)
        return self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]


def _classifier(provider: FakeProvider | None, *, threshold: float = 0.7) -> EventClassifier:
    return EventClassifier(
        provider,
        cache=TTLCache(ttl_seconds=60, max_entries=100),
        confidence_threshold=threshold,
        enabled=provider is not None,
    )


def test_rules_score_keywords_venues_and_order_by_score() -> None:
    result = RuleBasedClassifier(max_categories=3, max_tags=8).classify(
        "Live jazz concert at the arena"
    )

    assert result.categories == (Category.MUSIC, Category.SPORTS)
    assert result.confidence == pytest.approx(0.8)
    assert result.tags == ("concert", "jazz", "arena")
    assert result.source == ClassificationSource.RULES


def test_rules_match_whole_words_only() -> None:
    result = RuleBasedClassifier().classify("Painting workshop")

    assert Category.TECHNOLOGY not in result.categories
    assert Category.ARTS in result.categories


def test_rules_return_empty_result_for_unmatched_text() -> None:
    result = RuleBasedClassifier().classify("Zzyzx qwerty")

    assert result.categories == ()
    assert result.confidence == 0.0


def test_clamp_helpers_filter_vocabulary_and_tags() -> None:
    allowed = Category.assignable()

    assert clamp_categories(["Music", "spaceflight", "music", "food"], allowed, limit=3) == (
        Category.MUSIC,
        Category.FOOD,
    )
    assert clamp_categories(["uncategorized"], allowed, limit=3) == ()
    assert clamp_tags(["Jazz", "ok", "  Late   Night ", "jazz", "x" * 40], limit=5) == (
        "jazz",
        "late night",
    )


@pytest.mark.asyncio
async def test_confident_provider_answer_is_used_and_cached() -> None:
    provider = FakeProvider(
        [ProviderClassification(categories=(Category.MUSIC,), tags=("jazz",), confidence=0.9)]
    )
    classifier = _classifier(provider)

    first = await classifier.classify("Jazz Night")
    second = await classifier.classify("  jazz   night ")

    assert first.source == ClassificationSource.AI
    assert first.categories == (Category.MUSIC,)
    assert second.cached is True
    assert len(provider.calls) == 1
    assert classifier.stats.cache_hits == 1


@pytest.mark.asyncio
async def test_provider_failure_falls_back_to_rules_without_caching() -> None:
    provider = FakeProvider([ProviderClassification(error="rate_limited")])
    classifier = _classifier(provider)

    first = await classifier.classify("Live jazz concert")
    await classifier.classify("Live jazz concert")

    assert first.source == ClassificationSource.RULES
    assert first.fallback_reason == "provider_unavailable"
    assert Category.MUSIC in first.categories
    assert len(provider.calls) == 2
    assert classifier.stats.provider_errors == 2


@pytest.mark.asyncio
async def test_low_confidence_answer_defers_to_rules() -> None:
    provider = FakeProvider(
        [ProviderClassification(categories=(Category.SPORTS,), confidence=0.3)]
    )

    result = await _classifier(provider).classify("Wine tasting dinner")

    assert result.source == ClassificationSource.RULES
    assert result.primary_category == Category.FOOD
    assert result.fallback_reason == "low_confidence"


@pytest.mark.asyncio
async def test_low_confidence_answer_kept_when_rules_find_nothing() -> None:
    provider = FakeProvider(
        [ProviderClassification(categories=(Category.FASHION,), confidence=0.4)]
    )

    result = await _classifier(provider).classify("Zzyzx qwerty")

    assert result.source == ClassificationSource.AI
    assert result.primary_category == Category.FASHION
    assert result.fallback_reason == "low_confidence"


@pytest.mark.asyncio
async def test_disabled_classifier_uses_rules_only() -> None:
    result = await _classifier(None).classify("Yoga in the park")

    assert result.source == ClassificationSource.RULES
    assert result.primary_category is not None


def _event(*, category: Category, confidence: FieldConfidence | None) -> NormalizedEvent:
    event = NormalizedEvent(title="Jazz Night", venue=Venue(name="Blue Note"), tags=["late"])
    if confidence is not None:
        event.set_field(
            "category",
            category,
            confidence=confidence,
            origin="ticketmaster:1",
            verified_at=VERIFIED,
        )
    return event


def _result(category: Category) -> ClassificationResult:
    return ClassificationResult(
        categories=(category,),
        tags=("jazz",),
        confidence=0.9,
        source=ClassificationSource.AI,
    )


def test_apply_never_overrides_provider_asserted_category() -> None:
    event = _event(category=Category.ENTERTAINMENT, confidence=FieldConfidence.PROVIDER_ASSERTED)

    EventClassifier.apply(event, _result(Category.MUSIC))

    assert event.category == Category.ENTERTAINMENT
    assert event.classification_source == "provider"
    assert event.tags == ["jazz", "late"]


def test_apply_fills_defaulted_category_as_derived() -> None:
    event = _event(category=Category.UNCATEGORIZED, confidence=FieldConfidence.DEFAULTED)

    EventClassifier.apply(event, _result(Category.MUSIC))

    assert event.category == Category.MUSIC
    assert event.confidence_of("category") == FieldConfidence.DERIVED
    assert event.classification_source == "ai"
    assert event.field_provenance["category"].origin == "classifier:ai"


def test_apply_warns_on_empty_classification() -> None:
    event = _event(category=Category.UNCATEGORIZED, confidence=None)

    EventClassifier.apply(
        event,
        ClassificationResult(categories=(), tags=(), confidence=0.0, source=ClassificationSource.RULES),
    )

    assert [warning.issue for warning in event.warnings] == ["classification_empty"]


def test_classification_text_skips_placeholder_title() -> None:
    event = NormalizedEvent(title="Untitled Event", description="Outdoor yoga", tags=["wellness"])
    event.record_provenance(
        "title",
        confidence=FieldConfidence.DEFAULTED,
        origin="x:1",
        verified_at=VERIFIED,
    )

    assert classification_text(event) == "Outdoor yoga\nwellness"


class _Completions:
    def __init__(self, outcomes: list[Any]) -> None:
        self.outcomes = outcomes
        self.kwargs: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.kwargs.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _chat_response(content: str) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _openai_provider(outcomes: list[Any]) -> tuple[OpenAIClassificationProvider, _Completions]:
    completions = _Completions(outcomes)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    provider = OpenAIClassificationProvider(
        client=client,
        model="gpt-test",
        max_categories=2,
        max_tags=3,
        retry_policy=RetryPolicy(max_attempts=1, initial_delay=0.0, jitter=0.0),
    )
    return provider, completions


@pytest.mark.asyncio
async def test_openai_provider_clamps_answer_to_vocabulary() -> None:
    provider, completions = _openai_provider(
        [
            _chat_response(
                json.dumps(
                    {
                        "categories": ["music", "spaceflight", "MUSIC", "nightlife", "food"],
                        "tags": ["Jazz", "x", "late night"],
                        "confidence": 1.7,
                    }
                )
            )
        ]
    )

    answer = await provider.classify("Jazz Night", Category.assignable())

    assert answer.categories == (Category.MUSIC, Category.NIGHTLIFE)
    assert answer.tags == ("jazz", "late night")
    assert answer.confidence == 1.0
    assert answer.error is None
    assert completions.kwargs[0]["model"] == "gpt-test"
    assert completions.kwargs[0]["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("outcome", "error"),
    [
        (TimeoutError("slow"), "timeout"),
        (_chat_response("not json"), "malformed_payload"),
        (SimpleNamespace(choices=[]), "malformed_payload"),
        (_chat_response('{"categories": "music"}'), "malformed_payload"),
    ],
)
async def test_openai_provider_degrades_on_failures(outcome: Any, error: str) -> None:
    provider, _completions = _openai_provider([outcome])

    answer = await provider.classify("Jazz Night", Category.assignable())

    assert answer.error == error
    assert answer.categories == ()


def test_openai_provider_requires_api_key_when_no_client(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("src.processing.classifier.settings.OPENAI_API_KEY", "")

    with pytest.raises(ValueError, match="OPENAI_API_KEY is required"):
        OpenAIClassificationProvider()


_REQUEST = httpx.Request("POST", "https://api.openai.test/v1/chat/completions")


def _status_error(status_code: int) -> APIStatusError:
    response = httpx.Response(status_code, request=_REQUEST)
    if status_code == 429:
        return RateLimitError("rate limited", response=response, body=None)
    return APIStatusError(f"status {status_code}", response=response, body=None)


@pytest.mark.parametrize(
    ("exc", "error_type", "reason"),
    [
        (_status_error(429), RetryableError, ReasonCode.RATE_LIMITED),
        (_status_error(503), RetryableError, ReasonCode.UPSTREAM_UNAVAILABLE),
        (_status_error(401), PermanentError, ReasonCode.INVALID_CREDENTIALS),
        (_status_error(400), PermanentError, ReasonCode.BAD_REQUEST),
        (APITimeoutError(request=_REQUEST), RetryableError, ReasonCode.TIMEOUT),
        (APIConnectionError(request=_REQUEST), RetryableError, ReasonCode.NETWORK),
        (ValueError("bad json"), PermanentError, ReasonCode.MALFORMED_PAYLOAD),
    ],
)
def test_provider_errors_map_onto_retry_taxonomy(
    exc: Exception,
    error_type: type[Exception],
    reason: ReasonCode,
) -> None:
    mapped = provider_error(exc)

    assert isinstance(mapped, error_type)
    assert mapped.reason == reason


def _failover_provider(
    primary_outcomes: list[Any],
    secondary_outcomes: list[Any],
) -> tuple[OpenAIClassificationProvider, _Completions, _Completions]:
    primary = _Completions(primary_outcomes)
    secondary = _Completions(secondary_outcomes)
    provider = OpenAIClassificationProvider(
        client=SimpleNamespace(chat=SimpleNamespace(completions=primary)),
        secondary_client=SimpleNamespace(chat=SimpleNamespace(completions=secondary)),
        model="gpt-primary",
        secondary_model="gpt-secondary",
        retry_policy=RetryPolicy(max_attempts=2, initial_delay=0.0, jitter=0.0),
    )
    return provider, primary, secondary


@pytest.mark.asyncio
async def test_openai_provider_fails_over_after_retryable_errors() -> None:
    answer_json = json.dumps({"categories": ["music"], "confidence": 0.9})
    provider, primary, secondary = _failover_provider(
        [_status_error(503), TimeoutError("slow")],
        [_chat_response(answer_json)],
    )

    answer = await provider.classify("Jazz Night", Category.assignable())

    assert answer.categories == (Category.MUSIC,)
    assert answer.error is None
    assert [call["model"] for call in primary.kwargs] == ["gpt-primary", "gpt-primary"]
    assert [call["model"] for call in secondary.kwargs] == ["gpt-secondary"]


@pytest.mark.asyncio
async def test_openai_provider_does_not_fail_over_on_permanent_errors() -> None:
    provider, primary, secondary = _failover_provider([_status_error(401)], [])

    answer = await provider.classify("Jazz Night", Category.assignable())

    assert answer.error == "invalid_credentials"
    assert len(primary.kwargs) == 1
    assert secondary.kwargs == []


@pytest.mark.asyncio
async def test_openai_provider_reports_last_route_error_when_all_routes_fail() -> None:
    provider, _primary, secondary = _failover_provider(
        [_status_error(503), _status_error(503)],
        [_status_error(429), _status_error(429)],
    )

    answer = await provider.classify("Jazz Night", Category.assignable())

    assert answer.error == "rate_limited"
    assert len(secondary.kwargs) == 2


def test_classification_result_round_trips_through_cache_payload() -> None:
    result = _result(Category.MUSIC)

    assert ClassificationResult.from_dict(result.to_dict()) == result
    assert ClassificationResult.from_dict({"categories": ["nope"]}) is None
