"""
Event categorization: external text classification with a keyword fallback.

The external provider is asked for a bounded set of categories from the closed
vocabulary plus free tags. Its answer is validated and clamped; when it is
unavailable, malformed, or below the confidence threshold the deterministic
keyword rules decide instead. Every result carries its source ("ai" or
"rules") and results are cached per normalized-text hash.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from functools import partial
from enum import StrEnum
from typing import Any, ClassVar, Protocol

import structlog
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    OpenAIError,
    RateLimitError,
)
from pydantic import BaseModel, ConfigDict, Field

from src.core.config import settings
from src.core.domain import Category, FieldConfidence, NormalizedEvent, utc_now
from src.core.errors import IngestionError, PermanentError, ReasonCode, RetryableError
from src.core.observability import record_classifier_result
from src.core.retry_policy import RetryPolicy
from src.processing.result_cache import RedisResultCache, TTLCache, text_hash

logger = structlog.get_logger(__name__)

STAGE = "classify"
MAX_PROMPT_DESCRIPTION_CHARS = 500
MIN_TAG_LENGTH = 3
MAX_TAG_LENGTH = 30


class ClassificationSource(StrEnum):
    AI = "ai"
    RULES = "rules"
    NONE = "none"


@dataclass(slots=True, frozen=True)
class ProviderClassification:
    """Answer from a text-classification provider; `error` is set when degraded."""

    categories: tuple[Category, ...] = ()
    tags: tuple[str, ...] = ()
    confidence: float = 0.0
    error: str | None = None


@dataclass(slots=True, frozen=True)
class ClassificationResult:
    categories: tuple[Category, ...]
    tags: tuple[str, ...]
    confidence: float
    source: ClassificationSource
    cached: bool = False
    fallback_reason: str | None = None

    @property
    def primary_category(self) -> Category | None:
        return self.categories[0] if self.categories else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "categories": [str(category) for category in self.categories],
            "tags": list(self.tags),
            "confidence": self.confidence,
            "source": str(self.source),
            "fallback_reason": self.fallback_reason,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ClassificationResult | None:
        try:
            return cls(
                categories=tuple(Category(value) for value in payload.get("categories", [])),
                tags=tuple(str(tag) for tag in payload.get("tags", [])),
                confidence=float(payload.get("confidence", 0.0)),
                source=ClassificationSource(payload.get("source", ClassificationSource.NONE)),
                fallback_reason=payload.get("fallback_reason"),
            )
        except (TypeError, ValueError):
            return None


class TextClassificationProvider(Protocol):
    name: str

    async def classify(
        self,
        text: str,
        allowed_categories: list[Category],
    ) -> ProviderClassification: ...


class _ClassifierOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    categories: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    confidence: float = 0.5


def clamp_categories(
    values: list[str] | tuple[str, ...],
    allowed_categories: list[Category],
    *,
    limit: int,
) -> tuple[Category, ...]:
    """Keep known vocabulary values, in answer order, without duplicates."""
    allowed = {str(category): category for category in allowed_categories}
    kept: list[Category] = []
    for value in values:
        category = allowed.get(str(value).strip().lower())
        if category is not None and category not in kept:
            kept.append(category)
        if len(kept) >= limit:
            break
    return tuple(kept)


def clamp_tags(values: list[str] | tuple[str, ...], *, limit: int) -> tuple[str, ...]:
    kept: list[str] = []
    for value in values:
        tag = " ".join(str(value).lower().split())
        if MIN_TAG_LENGTH <= len(tag) <= MAX_TAG_LENGTH and tag not in kept:
            kept.append(tag)
        if len(kept) >= limit:
            break
    return tuple(kept)


def provider_error(exc: Exception) -> IngestionError:
    """Map a classification client failure onto the retryable/permanent taxonomy."""
    if isinstance(exc, IngestionError):
        return exc
    if isinstance(exc, RateLimitError):
        return RetryableError("Classifier rate limited", reason=ReasonCode.RATE_LIMITED, status_code=429)
    if isinstance(exc, APITimeoutError | TimeoutError):
        return RetryableError("Classifier timed out", reason=ReasonCode.TIMEOUT)
    if isinstance(exc, APIConnectionError | ConnectionError):
        return RetryableError("Classifier unreachable", reason=ReasonCode.NETWORK)
    if isinstance(exc, APIStatusError):
        status_code = int(getattr(exc, "status_code", 0) or 0)
        message = f"Classifier returned HTTP {status_code}"
        if status_code == 429:
            return RetryableError(message, reason=ReasonCode.RATE_LIMITED, status_code=status_code)
        if status_code >= 500:
            return RetryableError(
                message,
                reason=ReasonCode.UPSTREAM_UNAVAILABLE,
                status_code=status_code,
            )
        if status_code in {401, 403}:
            return PermanentError(
                message,
                reason=ReasonCode.INVALID_CREDENTIALS,
                status_code=status_code,
            )
        return PermanentError(message, reason=ReasonCode.BAD_REQUEST, status_code=status_code)
    if isinstance(exc, ValueError):
        return PermanentError(str(exc), reason=ReasonCode.MALFORMED_PAYLOAD)
    return PermanentError(str(exc) or type(exc).__name__, reason=ReasonCode.INTERNAL)


class OpenAIClassificationProvider:
    """
    OpenAI chat-completions classifier returning a JSON object.

    Each model route is retried on retryable errors; the secondary model is
    tried only when the primary exhausted its attempts on a retryable error.
    """

    name = "openai"
    _RESPONSE_FORMAT: ClassVar[dict[str, str]] = {"type": "json_object"}
    _TEMPERATURE: ClassVar[float] = 0.2

    def __init__(
        self,
        *,
        client: AsyncOpenAI | Any | None = None,
        secondary_client: AsyncOpenAI | Any | None = None,
        model: str | None = None,
        secondary_model: str | None = None,
        max_categories: int | None = None,
        max_tags: int | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.model = model or settings.CLASSIFIER_PRIMARY_MODEL
        self.secondary_model = secondary_model or settings.CLASSIFIER_SECONDARY_MODEL
        self.max_categories = max_categories or settings.CLASSIFIER_MAX_CATEGORIES
        self.max_tags = settings.CLASSIFIER_MAX_TAGS if max_tags is None else max_tags
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=2,
            initial_delay=0.25,
            jitter=0.0,
        )
        primary_client = client or self._create_client(api_key=settings.OPENAI_API_KEY)
        self.routes: list[tuple[str, Any]] = [(self.model, primary_client)]
        if self.secondary_model is not None:
            self.routes.append((self.secondary_model, secondary_client or primary_client))

    @staticmethod
    def _create_client(*, api_key: str) -> AsyncOpenAI:
        if not api_key.strip():
            msg = "OPENAI_API_KEY is required when CLASSIFIER_ENABLED is set"
            raise ValueError(msg)
        return AsyncOpenAI(api_key=api_key)

    async def classify(
        self,
        text: str,
        allowed_categories: list[Category],
    ) -> ProviderClassification:
        """Classify `text`; retryable and permanent failures return an empty answer."""
        messages = self._build_messages(text, allowed_categories)
        try:
            output, model_used = await self._complete(messages)
        except IngestionError as exc:
            logger.warning(
                "Classification provider unavailable",
                provider=self.name,
                reason=exc.reason.value,
                retryable=isinstance(exc, RetryableError),
            )
            return ProviderClassification(error=exc.reason.value)

        logger.debug("Classification provider answered", model=model_used)
        return ProviderClassification(
            categories=clamp_categories(
                output.categories,
                allowed_categories,
                limit=self.max_categories,
            ),
            tags=clamp_tags(output.tags, limit=self.max_tags),
            confidence=max(0.0, min(1.0, output.confidence)),
        )

    async def _complete(self, messages: list[dict[str, str]]) -> tuple[_ClassifierOutput, str]:
        for index, (model, client) in enumerate(self.routes):
            try:
                output = await self.retry_policy.run(
                    partial(self._request, client, model, messages),
                    operation=f"{STAGE}:{model}",
                )
                return (output, model)
            except RetryableError as exc:
                if index + 1 >= len(self.routes):
                    raise
                logger.warning(
                    "Classifier failover activated",
                    reason=exc.reason.value,
                    primary_model=model,
                    secondary_model=self.routes[index + 1][0],
                )
        msg = "Classifier has no model routes"
        raise PermanentError(msg, reason=ReasonCode.INTERNAL)

    async def _request(self, client: Any, model: str, messages: list[dict[str, str]]) -> _ClassifierOutput:
        try:
            response = await client.chat.completions.create(
                model=model,
                temperature=self._TEMPERATURE,
                messages=messages,
                response_format=dict(self._RESPONSE_FORMAT),
            )
            return self._parse_output(response)
        except (OpenAIError, OSError, TimeoutError, ValueError) as exc:
            raise provider_error(exc) from exc

    def _build_messages(
        self,
        text: str,
        allowed_categories: list[Category],
    ) -> list[dict[str, str]]:
        vocabulary = ", ".join(str(category) for category in allowed_categories)
        system = (
            "You categorize events. Choose categories only from this list: "
            f"{vocabulary}. Respond with a JSON object with keys "
            '"categories" (at most '
            f"{self.max_categories}), "
            f'"tags" (at most {self.max_tags} short lowercase tags) and '
            '"confidence" (0 to 1).'
        )
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": text},
        ]

    @staticmethod
    def _parse_output(response: Any) -> _ClassifierOutput:
        choices = getattr(response, "choices", None)
        if not isinstance(choices, list) or not choices:
            msg = "Classifier response missing choices"
            raise ValueError(msg)
        message = getattr(choices[0], "message", None)
        raw_content = getattr(message, "content", None)
        if not isinstance(raw_content, str) or not raw_content.strip():
            msg = "Classifier response missing message content"
            raise ValueError(msg)
        try:
            parsed = json.loads(raw_content)
        except json.JSONDecodeError as exc:
            msg = "Classifier response is not valid JSON"
            raise ValueError(msg) from exc
        return _ClassifierOutput.model_validate(parsed)


@dataclass(slots=True, frozen=True)
class KeywordRule:
    keywords: tuple[str, ...]
    venues: tuple[str, ...] = ()
    price_indicators: tuple[str, ...] = ()


KEYWORD_RULES: dict[Category, KeywordRule] = {
    Category.MUSIC: KeywordRule(
        keywords=(
            "concert", "music", "band", "singer", "dj", "festival", "live music",
            "acoustic", "rock", "jazz", "classical", "electronic", "hip hop",
            "country", "pop", "indie", "folk", "blues", "reggae", "opera",
        ),
        venues=("arena", "amphitheater", "concert hall", "club", "bar"),
        price_indicators=("ticket", "admission"),
    ),
    Category.ARTS: KeywordRule(
        keywords=(
            "art", "gallery", "exhibition", "museum", "theater", "theatre", "play",
            "dance", "ballet", "opera", "sculpture", "painting", "photography",
            "craft", "pottery", "drawing",
        ),
        venues=("gallery", "museum", "theater", "theatre", "studio", "center"),
        price_indicators=("admission", "entry"),
    ),
    Category.FOOD: KeywordRule(
        keywords=(
            "food", "restaurant", "dining", "culinary", "cooking", "tasting", "wine",
            "beer", "cocktail", "chef", "cuisine", "brunch", "dinner", "lunch",
            "breakfast", "bbq", "barbecue",
        ),
        venues=("restaurant", "bar", "brewery", "winery", "cafe", "kitchen"),
        price_indicators=("per person", "prix fixe", "tasting menu"),
    ),
    Category.SPORTS: KeywordRule(
        keywords=(
            "sport", "game", "match", "tournament", "athletic", "fitness",
            "basketball", "football", "soccer", "baseball", "tennis", "golf",
            "hockey", "volleyball", "swimming", "running", "cycling", "marathon",
        ),
        venues=("stadium", "arena", "field", "court", "gym", "pool"),
        price_indicators=("ticket", "admission", "entry fee"),
    ),
    Category.BUSINESS: KeywordRule(
        keywords=(
            "conference", "networking", "seminar", "workshop", "meeting", "summit",
            "convention", "expo", "trade show", "startup", "entrepreneur",
            "business", "corporate", "professional",
        ),
        venues=("convention center", "hotel", "conference center", "office"),
        price_indicators=("registration", "ticket", "admission"),
    ),
    Category.ENTERTAINMENT: KeywordRule(
        keywords=(
            "comedy", "show", "performance", "entertainment", "fun", "magic",
            "circus", "carnival", "fair", "amusement", "standup", "improv",
            "variety show",
        ),
        venues=("theater", "club", "venue", "hall"),
        price_indicators=("ticket", "admission"),
    ),
    Category.EDUCATION: KeywordRule(
        keywords=(
            "class", "course", "lesson", "training", "education", "learning",
            "workshop", "tutorial", "lecture", "certification", "skill", "academy",
            "school",
        ),
        venues=("school", "university", "college", "center", "studio"),
        price_indicators=("tuition", "fee", "registration"),
    ),
    Category.COMMUNITY: KeywordRule(
        keywords=(
            "community", "volunteer", "charity", "fundraiser", "social", "meetup",
            "group", "club", "organization", "nonprofit", "civic", "local",
        ),
        venues=("community center", "library", "park", "church"),
        price_indicators=("donation", "contribution"),
    ),
    Category.TECHNOLOGY: KeywordRule(
        keywords=(
            "tech", "technology", "software", "coding", "programming", "ai",
            "blockchain", "startup", "innovation", "digital", "app", "web",
            "mobile", "data",
        ),
        venues=("office", "coworking", "incubator", "lab"),
        price_indicators=("registration", "ticket"),
    ),
    Category.HEALTH: KeywordRule(
        keywords=(
            "health", "wellness", "fitness", "yoga", "meditation", "nutrition",
            "medical", "mental health", "therapy", "healing", "spa", "massage",
        ),
        venues=("studio", "spa", "center", "clinic", "gym"),
        price_indicators=("session", "class fee"),
    ),
    Category.FAMILY: KeywordRule(
        keywords=(
            "family", "kids", "children", "parents", "baby", "toddler",
            "playground", "story time", "craft", "educational",
        ),
        venues=("park", "library", "center", "museum"),
        price_indicators=("per child", "family pass"),
    ),
    Category.OUTDOOR: KeywordRule(
        keywords=(
            "outdoor", "hiking", "camping", "nature", "park", "trail", "adventure",
            "fishing", "hunting", "climbing", "kayaking", "biking",
        ),
        venues=("park", "trail", "lake", "mountain", "forest"),
        price_indicators=("permit", "entry fee"),
    ),
}

_PATTERN_CACHE: dict[str, re.Pattern[str]] = {}


def _phrase_pattern(phrase: str) -> re.Pattern[str]:
    pattern = _PATTERN_CACHE.get(phrase)
    if pattern is None:
        pattern = re.compile(rf"\b{re.escape(phrase)}s?\b")
        _PATTERN_CACHE[phrase] = pattern
    return pattern


class RuleBasedClassifier:
    """
    Deterministic keyword scoring over the closed vocabulary.

    Keywords score 1, venue words 2, price indicators 0.5. Categories are
    ordered by score with vocabulary order breaking ties; confidence is the
    top score over five, capped at 1.
    """

    KEYWORD_WEIGHT: ClassVar[float] = 1.0
    VENUE_WEIGHT: ClassVar[float] = 2.0
    PRICE_WEIGHT: ClassVar[float] = 0.5
    FULL_CONFIDENCE_SCORE: ClassVar[float] = 5.0

    def __init__(
        self,
        rules: dict[Category, KeywordRule] | None = None,
        *,
        max_categories: int | None = None,
        max_tags: int | None = None,
    ) -> None:
        self.rules = rules if rules is not None else KEYWORD_RULES
        self.max_categories = max_categories or settings.CLASSIFIER_MAX_CATEGORIES
        self.max_tags = settings.CLASSIFIER_MAX_TAGS if max_tags is None else max_tags

    def classify(self, text: str) -> ClassificationResult:
        lowered = " ".join(text.lower().split())
        scores: dict[Category, float] = {}
        matched: list[str] = []
        for category, rule in self.rules.items():
            score = 0.0
            for keyword in rule.keywords:
                if _phrase_pattern(keyword).search(lowered):
                    score += self.KEYWORD_WEIGHT
                    matched.append(keyword)
            for venue in rule.venues:
                if _phrase_pattern(venue).search(lowered):
                    score += self.VENUE_WEIGHT
                    matched.append(venue)
            for indicator in rule.price_indicators:
                if _phrase_pattern(indicator).search(lowered):
                    score += self.PRICE_WEIGHT
            if score > 0:
                scores[category] = score

        vocabulary_order = {category: index for index, category in enumerate(Category)}
        ranked = sorted(scores, key=lambda category: (-scores[category], vocabulary_order[category]))
        top_score = max(scores.values(), default=0.0)
        return ClassificationResult(
            categories=tuple(ranked[: self.max_categories]),
            tags=clamp_tags(matched, limit=self.max_tags),
            confidence=round(min(1.0, top_score / self.FULL_CONFIDENCE_SCORE), 4),
            source=ClassificationSource.RULES,
        )


@dataclass(slots=True)
class ClassifierStats:
    ai: int = 0
    rules: int = 0
    cache_hits: int = 0
    provider_errors: int = 0
    by_reason: dict[str, int] = field(default_factory=dict)


class EventClassifier:
    """Provider-first classification with rule fallback and result caching."""

    CACHE_NAMESPACE: ClassVar[str] = "classifier"

    def __init__(
        self,
        provider: TextClassificationProvider | None = None,
        *,
        rules: RuleBasedClassifier | None = None,
        cache: TTLCache[ClassificationResult] | None = None,
        shared_cache: RedisResultCache | None = None,
        confidence_threshold: float | None = None,
        enabled: bool | None = None,
    ) -> None:
        self.enabled = settings.CLASSIFIER_ENABLED if enabled is None else enabled
        if provider is None and self.enabled:
            provider = OpenAIClassificationProvider()
        self.provider = provider if self.enabled else None
        self.rules = rules or RuleBasedClassifier()
        self.cache = cache or TTLCache(
            ttl_seconds=settings.CLASSIFIER_CACHE_TTL_SECONDS,
            max_entries=settings.CLASSIFIER_CACHE_MAX_ENTRIES,
        )
        if shared_cache is None and settings.CLASSIFIER_REDIS_CACHE_PREFIX:
            shared_cache = RedisResultCache(
                prefix=settings.CLASSIFIER_REDIS_CACHE_PREFIX,
                ttl_seconds=settings.CLASSIFIER_CACHE_TTL_SECONDS,
            )
        self.shared_cache = shared_cache
        self.confidence_threshold = (
            settings.CLASSIFIER_CONFIDENCE_THRESHOLD
            if confidence_threshold is None
            else confidence_threshold
        )
        self.stats = ClassifierStats()

    async def classify(self, text: str) -> ClassificationResult:
        """Classify free text. Never raises for provider problems."""
        key = text_hash(text)
        cached = self._cache_get(key)
        if cached is not None:
            self.stats.cache_hits += 1
            return replace(cached, cached=True)

        result, cacheable = await self._classify_uncached(text)
        if cacheable:
            self._cache_set(key, result)
        if result.source == ClassificationSource.AI:
            self.stats.ai += 1
        else:
            self.stats.rules += 1
        if result.fallback_reason:
            self.stats.by_reason[result.fallback_reason] = (
                self.stats.by_reason.get(result.fallback_reason, 0) + 1
            )
        return result

    async def _classify_uncached(self, text: str) -> tuple[ClassificationResult, bool]:
        if self.provider is None:
            return (self.rules.classify(text), True)

        answer = await self.provider.classify(text, Category.assignable())
        if answer.error is not None:
            self.stats.provider_errors += 1
            fallback = replace(self.rules.classify(text), fallback_reason="provider_unavailable")
            # not cached so the provider is asked again once it recovers
            return (fallback, False)

        if answer.categories and answer.confidence >= self.confidence_threshold:
            return (
                ClassificationResult(
                    categories=answer.categories,
                    tags=answer.tags,
                    confidence=answer.confidence,
                    source=ClassificationSource.AI,
                ),
                True,
            )

        reason = "low_confidence" if answer.categories else "empty_answer"
        rules_result = self.rules.classify(text)
        if not rules_result.categories and answer.categories:
            return (
                ClassificationResult(
                    categories=answer.categories,
                    tags=answer.tags,
                    confidence=answer.confidence,
                    source=ClassificationSource.AI,
                    fallback_reason=reason,
                ),
                True,
            )
        return (replace(rules_result, fallback_reason=reason), True)

    def _cache_get(self, key: str) -> ClassificationResult | None:
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        if self.shared_cache is None:
            return None
        payload = self.shared_cache.get(self.CACHE_NAMESPACE, key)
        if payload is None:
            return None
        result = ClassificationResult.from_dict(payload)
        if result is not None:
            self.cache.set(key, result)
        return result

    def _cache_set(self, key: str, result: ClassificationResult) -> None:
        self.cache.set(key, result)
        if self.shared_cache is not None:
            self.shared_cache.set(self.CACHE_NAMESPACE, key, result.to_dict())

    async def classify_event(self, event: NormalizedEvent) -> ClassificationResult:
        """Classify and apply the result to `event`."""
        result = await self.classify(classification_text(event))
        self.apply(event, result)
        return result

    @staticmethod
    def apply(event: NormalizedEvent, result: ClassificationResult) -> None:
        """
        Merge a classification into the event.

        A category asserted by the provider is never replaced; a classifier
        category only fills an uncategorized or defaulted one. Tags are
        unioned.
        """
        metric_source = "cache" if result.cached else str(result.source)
        record_classifier_result(source=metric_source)
        if result.primary_category is None:
            event.warn("category", "classification_empty", stage=STAGE)
            return

        origin = f"classifier:{result.source}"
        verified_at = event.last_verified_at or utc_now()
        current = event.confidence_of("category")
        if current in (None, FieldConfidence.DEFAULTED):
            event.set_field(
                "category",
                result.primary_category,
                confidence=FieldConfidence.DERIVED,
                origin=origin,
                verified_at=verified_at,
            )
            event.classification_source = str(result.source)
        elif event.classification_source is None:
            event.classification_source = "provider"

        new_tags = sorted(set(event.tags) | set(result.tags))
        if new_tags != event.tags:
            if event.confidence_of("tags") is None:
                event.set_field(
                    "tags",
                    new_tags,
                    confidence=FieldConfidence.DERIVED,
                    origin=origin,
                    verified_at=verified_at,
                )
            else:
                event.tags = new_tags


def classification_text(event: NormalizedEvent) -> str:
    """Title, description (truncated), venue name and existing tags."""
    parts = [event.title if not event.has_placeholder_title else ""]
    if event.description:
        parts.append(event.description[:MAX_PROMPT_DESCRIPTION_CHARS])
    if event.venue is not None:
        parts.append(event.venue.name)
    parts.extend(event.tags)
    return "\n".join(part for part in parts if part)
