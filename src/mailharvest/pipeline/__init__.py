"""Batch processing and extraction stages."""

from .batch import (
    BatchOutcome,
    BatchProcessor,
    ErrorCollector,
    ProcessingError,
    ProcessingStage,
    ProcessingSummary,
    ProgressIndicator,
    ProgressInfo,
    process_items_with_resilience,
)

__all__ = [
    "BatchOutcome",
    "BatchProcessor",
    "ErrorCollector",
    "ProcessingError",
    "ProcessingStage",
    "ProcessingSummary",
    "ProgressIndicator",
    "ProgressInfo",
    "process_items_with_resilience",
]
