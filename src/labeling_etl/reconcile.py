"""labeling_etl.reconcile

Reconciliation of a batch of CandidateRecords against the problem store.

Classification (plan_batch) is pure and walks the batch in input order:

  existing (subject, index), every field equal       → skip  'unchanged'
  existing, exam-code key moves onto a claimed key    → skip  'exam_code_conflict'
  existing, otherwise                                 → update, claim key
  new, exam-code key already claimed                  → skip  'exam_code_conflict'
  new, otherwise                                      → create, claim key

The claimed exam-code set starts as the keys already in the store and grows
as the batch is walked, so two candidates in one batch can never both take
the same (exam_code, problem_number).  A (subject, index) seen twice in one
batch keeps its first occurrence; later ones are skipped 'duplicate_in_batch'.

reconcile_batch persists the plan, then regenerates validation issues for
exactly the records it created or updated.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from labeling_etl.records import (
    DATE_FIELDS,
    RECORD_FIELDS,
    CandidateRecord,
    ExamCodeKey,
    StoredRecord,
    SubjectIndexKey,
)
from labeling_etl.shared import BatchOutcome, FatalBatchError, WriteError
from labeling_etl.store import ProblemStore
from labeling_etl.validation_rules import RuleSet, regenerate_issues

log = logging.getLogger(__name__)

SKIP_UNCHANGED = "unchanged"
SKIP_EXAM_CODE_CONFLICT = "exam_code_conflict"
SKIP_DUPLICATE_IN_BATCH = "duplicate_in_batch"

IDENTITY_FIELDS = frozenset({"subject", "index"})
COMPARED_FIELDS: tuple[str, ...] = tuple(f for f in RECORD_FIELDS if f not in IDENTITY_FIELDS)


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SkippedCandidate:
    candidate: CandidateRecord
    reason: str


@dataclass
class ReconcilePlan:
    to_create: list[CandidateRecord] = field(default_factory=list)
    to_update: list[tuple[StoredRecord, CandidateRecord]] = field(default_factory=list)
    skipped: list[SkippedCandidate] = field(default_factory=list)

    def skip_count(self, reason: str) -> int:
        return sum(1 for s in self.skipped if s.reason == reason)


def _same_value(name: str, old, new) -> bool:
    if name in DATE_FIELDS:
        if old is None or new is None:
            return old is None and new is None
    return old == new


def has_changes(existing: CandidateRecord, candidate: CandidateRecord) -> bool:
    """True when any non-identity attribute differs."""
    return any(
        not _same_value(name, getattr(existing, name), getattr(candidate, name))
        for name in COMPARED_FIELDS
    )


def plan_batch(
    batch: Sequence[CandidateRecord],
    existing_by_key: Mapping[SubjectIndexKey, StoredRecord],
    claimed_exam_keys: set[ExamCodeKey],
) -> ReconcilePlan:
    """Classify every candidate into create / update / skip.

    ``claimed_exam_keys`` is mutated in place as keys are claimed.
    """
    plan = ReconcilePlan()
    seen: set[SubjectIndexKey] = set()

    for candidate in batch:
        key = candidate.subject_index_key
        if key in seen:
            plan.skipped.append(SkippedCandidate(candidate, SKIP_DUPLICATE_IN_BATCH))
            continue
        seen.add(key)

        new_exam_key = candidate.exam_code_key
        existing = existing_by_key.get(key)

        if existing is not None:
            if not has_changes(existing, candidate):
                plan.skipped.append(SkippedCandidate(candidate, SKIP_UNCHANGED))
                continue
            if (
                new_exam_key is not None
                and new_exam_key != existing.exam_code_key
                and new_exam_key in claimed_exam_keys
            ):
                log.warning(
                    "skipping update due to exam-code conflict: subject=%s index=%s exam_code=%s number=%s",
                    candidate.subject, candidate.index, candidate.exam_code, candidate.problem_number,
                )
                plan.skipped.append(SkippedCandidate(candidate, SKIP_EXAM_CODE_CONFLICT))
                continue
            plan.to_update.append((existing, candidate))
        else:
            if new_exam_key is not None and new_exam_key in claimed_exam_keys:
                log.warning(
                    "skipping create due to exam-code conflict: exam_code=%s number=%s",
                    candidate.exam_code, candidate.problem_number,
                )
                plan.skipped.append(SkippedCandidate(candidate, SKIP_EXAM_CODE_CONFLICT))
                continue
            plan.to_create.append(candidate)

        if new_exam_key is not None:
            claimed_exam_keys.add(new_exam_key)

    return plan


# ---------------------------------------------------------------------------
# Store-backed steps
# ---------------------------------------------------------------------------

async def preview_batch(store: ProblemStore, batch: Sequence[CandidateRecord]) -> ReconcilePlan:
    """Look up existing records for ``batch`` and classify it; never writes."""
    keys: list[SubjectIndexKey | ExamCodeKey] = [c.subject_index_key for c in batch]
    keys.extend(k for k in (c.exam_code_key for c in batch) if k is not None)
    existing = await store.find_by_composite_keys(keys)

    existing_by_key = {r.subject_index_key: r for r in existing}
    claimed = {k for k in (r.exam_code_key for r in existing) if k is not None}
    return plan_batch(batch, existing_by_key, claimed)


async def _apply_update(store: ProblemStore, candidate: CandidateRecord) -> str | WriteError:
    try:
        updated = await store.update_by_composite_key(candidate.subject_index_key, candidate)
    except Exception as exc:
        return WriteError(
            row=candidate.row_label,
            subject=candidate.subject,
            index=candidate.index,
            message=str(exc) or type(exc).__name__,
        )
    return updated.id


async def _persist(
    store: ProblemStore,
    plan: ReconcilePlan,
    outcome: BatchOutcome,
) -> list[str]:
    touched: list[str] = []

    if plan.to_create:
        await store.bulk_insert_ignore_duplicates(plan.to_create)
        created = await store.find_by_composite_keys(
            [c.subject_index_key for c in plan.to_create]
        )
        created_by_key = {r.subject_index_key: r for r in created}
        for candidate in plan.to_create:
            record = created_by_key.get(candidate.subject_index_key)
            if record is None:
                outcome.failed_count += 1
                outcome.add_error(WriteError(
                    row=candidate.row_label,
                    subject=candidate.subject,
                    index=candidate.index,
                    message="insert ignored by a uniqueness constraint",
                ))
                continue
            outcome.created_count += 1
            touched.append(record.id)

    if plan.to_update:
        results = await asyncio.gather(
            *(_apply_update(store, candidate) for _, candidate in plan.to_update)
        )
        for result in results:
            if isinstance(result, WriteError):
                outcome.failed_count += 1
                outcome.add_error(result)
            else:
                outcome.updated_count += 1
                touched.append(result)

    outcome.success_count = outcome.created_count + outcome.updated_count
    return touched


async def reconcile_batch(
    store: ProblemStore,
    batch: Sequence[CandidateRecord],
    rule_set: RuleSet | None = None,
) -> BatchOutcome:
    """Reconcile, persist and revalidate one batch.

    Never raises for store failures: a failed update fails that record, any
    other error before the writes land fails the whole batch with a single
    FatalBatchError.  Once records are written they stay counted as written;
    a failure while regenerating their issues only adds a FatalBatchError
    (the store keeps their previous issues).
    """
    outcome = BatchOutcome()
    if not batch:
        return outcome
    try:
        plan = await preview_batch(store, batch)
        outcome.skipped_count = len(plan.skipped)
        touched = await _persist(store, plan, outcome)
    except Exception as exc:
        log.exception("batch of %d records failed", len(batch))
        fatal = BatchOutcome(failed_count=len(batch))
        fatal.add_error(FatalBatchError(
            batch_size=len(batch),
            message=f"Fatal Batch Error: {exc}",
        ))
        return fatal

    try:
        await regenerate_issues(store, touched, rule_set)
    except Exception as exc:
        log.exception("issue regeneration failed for %d written records", len(touched))
        outcome.add_error(FatalBatchError(
            batch_size=len(batch),
            message=(
                f"Issue regeneration failed for {len(touched)} written records "
                f"(run --mode revalidate): {exc}"
            ),
        ))

    log.debug(
        "batch done: created=%d updated=%d skipped=%d failed=%d",
        outcome.created_count, outcome.updated_count, outcome.skipped_count, outcome.failed_count,
    )
    return outcome
