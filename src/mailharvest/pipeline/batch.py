"""Error-resilient batch processing.

A :class:`BatchProcessor` runs one operation per item and records failures
instead of raising them, so a single malformed message cannot abort an
extraction run. Progress is reported after every item, failed or not.

Example:
    >>> outcome = await process_items_with_resilience(emails, extract, item_id=lambda e: e.uid)
    >>> outcome.summary.failed
    0
"""

from __future__ import annotations

import inspect
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterable,
    List,
    Optional,
    Tuple,
    TypeVar,
    Union,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")
ItemT = TypeVar("ItemT")

ItemId = Union[int, str]


class ProcessingStage(str, Enum):
    FETCH = "fetch"
    PARSE = "parse"
    EXTRACT = "extract"
    EXPORT = "export"


@dataclass(frozen=True)
class ProcessingError:
    """A failure recorded for one item."""

    item_id: ItemId
    stage: ProcessingStage
    error: BaseException
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def message(self) -> str:
        return str(self.error) or type(self.error).__name__


@dataclass(frozen=True)
class ProgressInfo:
    current: int
    total: int
    percentage: float
    elapsed_ms: float
    estimated_remaining_ms: float
    rate: float  # items per second


@dataclass(frozen=True)
class ProcessingSummary:
    total_processed: int
    succeeded: int
    failed: int
    elapsed_ms: float
    errors: Tuple[ProcessingError, ...] = ()


ProgressCallback = Callable[[ProgressInfo], None]


class ErrorCollector:
    """Accumulates :class:`ProcessingError` records in arrival order."""

    def __init__(self) -> None:
        self._errors: List[ProcessingError] = []

    def add(self, error: ProcessingError) -> None:
        self._errors.append(error)

    def add_error(
        self, item_id: ItemId, stage: Union[ProcessingStage, str], error: BaseException
    ) -> ProcessingError:
        record = ProcessingError(item_id=item_id, stage=ProcessingStage(stage), error=error)
        self.add(record)
        return record

    @property
    def errors(self) -> List[ProcessingError]:
        return list(self._errors)

    @property
    def count(self) -> int:
        return len(self._errors)

    def has_errors(self) -> bool:
        return bool(self._errors)

    def clear(self) -> None:
        self._errors = []

    def summary(self) -> Dict[str, Any]:
        """Return ``{"total": n, "by_stage": {stage: n}}``."""
        by_stage = Counter(error.stage.value for error in self._errors)
        return {"total": len(self._errors), "by_stage": dict(by_stage)}

    def by_stage(self, stage: Union[ProcessingStage, str]) -> List[ProcessingError]:
        wanted = ProcessingStage(stage)
        return [error for error in self._errors if error.stage is wanted]

    def format_summary(self) -> str:
        summary = self.summary()
        if not summary["total"]:
            return "No errors occurred."
        lines = [f"Total errors: {summary['total']}"]
        lines.extend(f"  - {stage}: {count}" for stage, count in summary["by_stage"].items())
        return "\n".join(lines)


class ProgressIndicator:
    """Tracks completed items and derives rate and ETA."""

    def __init__(
        self,
        total: int,
        on_progress: Optional[ProgressCallback] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.total = total
        self.current = 0
        self.on_progress = on_progress
        self._clock = clock
        self._started = clock()

    def increment(self) -> None:
        self.current += 1
        self._notify()

    def set_current(self, value: int) -> None:
        self.current = value
        self._notify()

    def set_total(self, value: int) -> None:
        """Update the total once it is known, e.g. after a count query."""
        self.total = value
        self._notify()

    def progress(self) -> ProgressInfo:
        elapsed = max(0.0, self._clock() - self._started)
        percentage = (self.current / self.total) * 100 if self.total > 0 else 0.0
        rate = self.current / elapsed if elapsed > 0 else 0.0
        remaining = max(0, self.total - self.current) / rate if rate > 0 else 0.0
        return ProgressInfo(
            current=self.current,
            total=self.total,
            percentage=percentage,
            elapsed_ms=elapsed * 1000,
            estimated_remaining_ms=remaining * 1000,
            rate=rate,
        )

    def format(self) -> str:
        info = self.progress()
        return f"{info.current}/{info.total} ({info.percentage:.1f}%)"

    def is_complete(self) -> bool:
        return self.current >= self.total

    def _notify(self) -> None:
        if self.on_progress is not None:
            self.on_progress(self.progress())


class BatchProcessor:
    """Runs per-item operations, capturing failures into an :class:`ErrorCollector`."""

    def __init__(
        self,
        total: int,
        on_progress: Optional[ProgressCallback] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.errors = ErrorCollector()
        self.progress = ProgressIndicator(total, on_progress, clock=clock)

    async def process_item(
        self,
        item_id: ItemId,
        stage: Union[ProcessingStage, str],
        operation: Callable[[], Union[T, Awaitable[T]]],
    ) -> Optional[T]:
        """Run ``operation`` and return its value, or ``None`` if it raised.

        ``operation`` may be a plain callable or return an awaitable. Its
        exceptions are recorded and never propagate.
        """
        _, value = await self._run(item_id, stage, operation)
        return value

    async def _run(
        self,
        item_id: ItemId,
        stage: Union[ProcessingStage, str],
        operation: Callable[[], Union[T, Awaitable[T]]],
    ) -> Tuple[bool, Optional[T]]:
        try:
            value = operation()
            if inspect.isawaitable(value):
                value = await value
            return True, value
        except Exception as exc:  # noqa: BLE001 - recorded, never propagated
            record = self.errors.add_error(item_id, stage, exc)
            logger.debug("Item %s failed at %s: %s", item_id, record.stage.value, record.message)
            return False, None
        finally:
            self.progress.increment()

    def record_failure(
        self, item_id: ItemId, stage: Union[ProcessingStage, str], error: BaseException
    ) -> None:
        """Count an item that failed before its operation could run."""
        self.errors.add_error(item_id, stage, error)
        self.progress.increment()

    def get_summary(self) -> ProcessingSummary:
        info = self.progress.progress()
        failed = self.errors.count
        return ProcessingSummary(
            total_processed=info.current,
            succeeded=info.current - failed,
            failed=failed,
            elapsed_ms=info.elapsed_ms,
            errors=tuple(self.errors.errors),
        )

    def format_summary(self) -> str:
        summary = self.get_summary()
        lines = [
            "Processing complete:",
            f"  Total processed: {summary.total_processed}",
            f"  Successful: {summary.succeeded}",
            f"  Failures: {summary.failed}",
            f"  Time: {summary.elapsed_ms / 1000:.2f}s",
        ]
        if summary.failed:
            lines.append("")
            lines.append(self.errors.format_summary())
        return "\n".join(lines)


@dataclass
class BatchOutcome(Generic[T]):
    results: List[T]
    summary: ProcessingSummary


async def process_items_with_resilience(
    items: Iterable[ItemT],
    operation: Callable[[ItemT], Union[T, Awaitable[T]]],
    on_progress: Optional[ProgressCallback] = None,
    *,
    item_id: Optional[Callable[[ItemT], ItemId]] = None,
    stage: Union[ProcessingStage, str] = ProcessingStage.EXTRACT,
) -> BatchOutcome[T]:
    """Apply ``operation`` to every item in order, skipping failures.

    Results of successful items are returned in input order; a successful
    operation that returns ``None`` still contributes its ``None``. Failures
    are recorded under ``item_id(item)``, or under the item's position in
    ``items`` when no ``item_id`` is given.
    """
    items = list(items)
    processor = BatchProcessor(len(items), on_progress)
    results: List[T] = []
    for position, item in enumerate(items):
        key = item_id(item) if item_id is not None else position
        ok, value = await processor._run(key, stage, lambda item=item: operation(item))
        if ok:
            results.append(value)  # type: ignore[arg-type]
    return BatchOutcome(results=results, summary=processor.get_summary())


__all__ = [
    "BatchOutcome",
    "BatchProcessor",
    "ErrorCollector",
    "ProcessingError",
    "ProcessingStage",
    "ProcessingSummary",
    "ProgressCallback",
    "ProgressIndicator",
    "ProgressInfo",
    "process_items_with_resilience",
]
