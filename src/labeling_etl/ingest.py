"""labeling_etl.ingest

Batch ingestion orchestrator.

Records are split into batches of ``batch_size`` and batches into chunks of
``max_concurrency``.  The batches of one chunk are reconciled concurrently;
chunks run strictly one after another, and a progress snapshot is emitted
after each chunk.  Batch failures are contained by reconcile_batch, so an
ingestion run that has started always returns an aggregated BatchOutcome.

Also home to the row-level sweep (normalize_sheet) that turns a decoded
SheetData into CandidateRecords, dropping rows that fail to normalize.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence, TypeVar, Union

from labeling_etl.normalize import trim
from labeling_etl.problem_rows import (
    COLUMN_MAPPING,
    MissingRequiredField,
    NormalizeOptions,
    normalize_row,
)
from labeling_etl.reconcile import (
    SKIP_DUPLICATE_IN_BATCH,
    SKIP_EXAM_CODE_CONFLICT,
    SKIP_UNCHANGED,
    preview_batch,
    reconcile_batch,
)
from labeling_etl.records import CandidateRecord
from labeling_etl.shared import BatchOutcome, ParseError
from labeling_etl.sources import SheetData, iter_raw_rows
from labeling_etl.store import ProblemStore
from labeling_etl.validation_rules import RuleSet, load_default_rule_set

log = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500
DEFAULT_MAX_CONCURRENCY = 5

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IngestProgress:
    processed_count: int
    total_count: int
    success_count: int
    skipped_count: int
    failed_count: int
    batch_index: int
    total_batches: int

    @property
    def percent(self) -> int:
        if not self.total_count:
            return 100
        return round(self.processed_count * 100 / self.total_count)


ProgressCallback = Callable[[IngestProgress], Union[None, Awaitable[None]]]


def partition(items: Sequence[T], size: int) -> list[list[T]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


async def _notify(callback: ProgressCallback | None, progress: IngestProgress) -> None:
    if callback is None:
        return
    result = callback(progress)
    if inspect.isawaitable(result):
        await result


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

async def ingest_records(
    store: ProblemStore,
    records: Sequence[CandidateRecord],
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    on_progress: ProgressCallback | None = None,
    rule_set: RuleSet | None = None,
) -> BatchOutcome:
    """Reconcile ``records`` against ``store`` batch by batch.

    Returns the sum of every batch outcome.  Raises ValueError only for
    non-positive ``batch_size`` / ``max_concurrency``.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    if max_concurrency < 1:
        raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")

    rule_set = rule_set or load_default_rule_set()
    batches = partition(records, batch_size)
    total = BatchOutcome()
    processed = 0

    for chunk_start in range(0, len(batches), max_concurrency):
        chunk = batches[chunk_start:chunk_start + max_concurrency]
        results = await asyncio.gather(
            *(reconcile_batch(store, batch, rule_set) for batch in chunk)
        )
        for result in results:
            total.merge(result)
        processed += sum(len(batch) for batch in chunk)

        progress = IngestProgress(
            processed_count=processed,
            total_count=len(records),
            success_count=total.success_count,
            skipped_count=total.skipped_count,
            failed_count=total.failed_count,
            batch_index=chunk_start + len(chunk),
            total_batches=len(batches),
        )
        log.info(
            "ingested %d/%d records (batches %d/%d): success=%d skipped=%d failed=%d",
            progress.processed_count, progress.total_count,
            progress.batch_index, progress.total_batches,
            progress.success_count, progress.skipped_count, progress.failed_count,
        )
        await _notify(on_progress, progress)

    return total


@dataclass
class PreviewCounts:
    to_create: int = 0
    to_update: int = 0
    unchanged: int = 0
    exam_code_conflicts: int = 0
    duplicates_in_batch: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "to_create": self.to_create,
            "to_update": self.to_update,
            "unchanged": self.unchanged,
            "exam_code_conflicts": self.exam_code_conflicts,
            "duplicates_in_batch": self.duplicates_in_batch,
        }


async def preview_records(
    store: ProblemStore,
    records: Sequence[CandidateRecord],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> PreviewCounts:
    """Dry run: classify every batch without writing anything."""
    counts = PreviewCounts()
    for batch in partition(records, batch_size):
        plan = await preview_batch(store, batch)
        counts.to_create += len(plan.to_create)
        counts.to_update += len(plan.to_update)
        counts.unchanged += plan.skip_count(SKIP_UNCHANGED)
        counts.exam_code_conflicts += plan.skip_count(SKIP_EXAM_CODE_CONFLICT)
        counts.duplicates_in_batch += plan.skip_count(SKIP_DUPLICATE_IN_BATCH)
    return counts


# ---------------------------------------------------------------------------
# Row-level sweep
# ---------------------------------------------------------------------------

@dataclass
class NormalizedRows:
    rows_read: int = 0
    records: list[CandidateRecord] = field(default_factory=list)
    errors: list[ParseError] = field(default_factory=list)
    # (raw row as a dict, reason) for the reject CSV
    rejected: list[tuple[dict[str, Any], str]] = field(default_factory=list)


_SUBJECT_HEADERS = frozenset(h for h, attr in COLUMN_MAPPING.items() if attr == "subject")


def with_fallback_subject(
    cells: list[tuple[str, Any]],
    fallback_subject: str,
) -> list[tuple[str, Any]]:
    """Fill a blank or missing subject cell with ``fallback_subject``."""
    has_subject = any(
        (h or "").strip() in _SUBJECT_HEADERS and trim(v) is not None for h, v in cells
    )
    if has_subject:
        return cells
    return cells + [("과목", fallback_subject)]


def _reject_row(cells: list[tuple[str, Any]]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for header, value in cells:
        key = header or "_blank"
        n = 2
        while key in out:
            key = f"{header or '_blank'}.{n}"
            n += 1
        out[key] = value
    return out


def normalize_sheet(
    sheet: SheetData,
    options: NormalizeOptions | None = None,
    fallback_subject: str | None = None,
) -> NormalizedRows:
    result = NormalizedRows()
    for row_number, cells in iter_raw_rows(sheet):
        result.rows_read += 1
        if fallback_subject:
            cells = with_fallback_subject(cells, fallback_subject)
        try:
            result.records.append(normalize_row(cells, row_number, options))
        except MissingRequiredField as exc:
            result.errors.append(ParseError(row=row_number, field=exc.field, message=str(exc)))
            result.rejected.append((_reject_row(cells), str(exc)))
    if result.errors:
        log.info("%s: %d of %d rows rejected", sheet.title, len(result.errors), result.rows_read)
    return result
