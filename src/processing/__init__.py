"""Data processing services."""

from src.processing.classifier import ClassificationResult, EventClassifier, RuleBasedClassifier
from src.processing.data_cleaner import CleanedFields, clean_fields
from src.processing.deduplicator import DedupAction, DedupOutcome, Deduplicator
from src.processing.geocoder import Geocoder, GeocodeResult
from src.processing.normalizer import EventNormalizer
from src.processing.pipeline_orchestrator import (
    BatchResult,
    EventOutcome,
    EventPipelineResult,
    PipelineOrchestrator,
    PipelineStage,
)
from src.processing.quality_scorer import QualityContext, QualityScorer

__all__ = [
    "BatchResult",
    "ClassificationResult",
    "CleanedFields",
    "DedupAction",
    "DedupOutcome",
    "Deduplicator",
    "EventClassifier",
    "EventNormalizer",
    "EventOutcome",
    "EventPipelineResult",
    "GeocodeResult",
    "Geocoder",
    "PipelineOrchestrator",
    "PipelineStage",
    "QualityContext",
    "QualityScorer",
    "RuleBasedClassifier",
    "clean_fields",
]
