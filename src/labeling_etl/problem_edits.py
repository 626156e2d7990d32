"""labeling_etl.problem_edits

Manual changes to stored problems outside of ingestion
(--mode manual_edit, --mode manual_create):

  apply_manual_edit       partial patch of the editable fields of one problem
  run_manual_edits        apply a CSV of edits, one change set per problem id
  create_manual_problems  insert empty 'shell' problems with consecutive
                          problem numbers after the subject's last index

All of them regenerate the unresolved validation issues of the records they
touch.

Edit CSV format (comma-delimited, header row required):
    id,field,value

Several rows may share an id; their fields are applied as one patch.  Only
the fields in EDITABLE_FIELDS may be named.
"""

from __future__ import annotations

import csv
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from labeling_etl.normalize import QUESTION_MULTIPLE, normalize_space, parse_bool, parse_numeric, trim
from labeling_etl.records import VALID_QUESTION_KINDS, CandidateRecord, Issue, StoredRecord
from labeling_etl.store import ProblemStore, RecordNotFoundError
from labeling_etl.validation_rules import RuleSet, regenerate_issues

log = logging.getLogger(__name__)


class ManualEditError(ValueError):
    """Raised for an edit or creation request that cannot be applied."""


def _number(name: str, value: Any) -> float | None:
    if trim(value) is None:
        return None
    num = parse_numeric(value)
    if num is None:
        raise ManualEditError(f"'{name}' must be a number, got {value!r}")
    return num


# Field → coercion for the values a manual edit may carry.
EDITABLE_FIELDS: dict[str, Callable[[str, Any], Any]] = {
    "answer": lambda _, v: trim(v),
    "difficulty": lambda _, v: trim(v),
    "score": _number,
    "correct_rate": _number,
    "problem_posted": lambda _, v: parse_bool(v),
    "solution_posted": lambda _, v: parse_bool(v),
}


def coerce_changes(changes: Mapping[str, Any]) -> dict[str, Any]:
    """Coerce raw edit values; raises ManualEditError for anything unusable."""
    not_editable = sorted(set(changes) - set(EDITABLE_FIELDS))
    if not_editable:
        raise ManualEditError(f"fields are not editable: {not_editable}")
    return {name: EDITABLE_FIELDS[name](name, value) for name, value in changes.items()}


@dataclass
class ManualEditResult:
    record: StoredRecord
    issues: list[Issue]


async def apply_manual_edit(
    store: ProblemStore,
    record_id: str,
    changes: Mapping[str, Any],
    rule_set: RuleSet | None = None,
) -> ManualEditResult:
    """Patch ``changes`` onto one problem, then revalidate it.

    Raises:
        ManualEditError: a field is not editable or a value does not coerce.
        RecordNotFoundError: no problem has ``record_id``.
    """
    coerced = coerce_changes(changes)
    record = await store.patch_by_id(record_id, coerced)
    issues = await regenerate_issues(store, [record.id], rule_set)
    log.info("manual edit on %s: %s (%d issues)", record.id, sorted(coerced), len(issues))
    return ManualEditResult(record=record, issues=issues)


async def create_manual_problems(
    store: ProblemStore,
    subject: str,
    exam_year: int,
    organization: str,
    problem_type: str | None,
    start_number: int,
    count: int,
    exam_code: str | None = None,
    question_kind: str = QUESTION_MULTIPLE,
    rule_set: RuleSet | None = None,
) -> list[StoredRecord]:
    """Create ``count`` shell problems for ``subject``.

    Indexes continue from the subject's current maximum; problem numbers run
    from ``start_number``.  Rows that collide with an existing key are
    ignored, so the returned list may be shorter than ``count``.
    """
    subject = normalize_space(subject) or ""
    organization = normalize_space(organization) or ""
    if not subject:
        raise ManualEditError("subject is required")
    if not organization:
        raise ManualEditError("organization is required")
    if count < 1:
        raise ManualEditError(f"count must be >= 1, got {count}")
    if start_number < 1:
        raise ManualEditError(f"start_number must be >= 1, got {start_number}")
    if question_kind not in VALID_QUESTION_KINDS:
        raise ManualEditError(f"unknown question kind '{question_kind}'")

    next_index = (await store.max_index(subject) or 0) + 1
    candidates = [
        CandidateRecord(
            index=next_index + i,
            subject=subject,
            organization=organization,
            exam_year=exam_year,
            problem_number=start_number + i,
            question_kind=question_kind,
            problem_type=normalize_space(problem_type),
            exam_code=trim(exam_code),
        )
        for i in range(count)
    ]
    await store.bulk_insert_ignore_duplicates(candidates)
    created = await store.find_by_composite_keys([c.subject_index_key for c in candidates])
    created.sort(key=lambda r: r.index)
    await regenerate_issues(store, [r.id for r in created], rule_set)
    log.info("created %d of %d manual problems for %s", len(created), count, subject)
    return created


# ---------------------------------------------------------------------------
# CSV-driven edits
# ---------------------------------------------------------------------------

REQUIRED_EDIT_COLUMNS = ("id", "field", "value")


@dataclass(frozen=True)
class EditRow:
    line: int
    record_id: str
    field: str
    value: str | None


@dataclass
class ManualEditCounters:
    rows_read: int = 0
    records_total: int = 0
    records_edited: int = 0
    records_failed: int = 0
    issues_written: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def fail(self, record_id: str, message: str) -> None:
        self.records_failed += 1
        self.errors.append({"id": record_id, "message": message})

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "records_total": self.records_total,
            "records_edited": self.records_edited,
            "records_failed": self.records_failed,
            "issues_written": self.issues_written,
            "errors": self.errors,
        }


def read_edit_rows(path: Path) -> list[EditRow]:
    """Read an edit CSV.

    Raises:
        ManualEditError: a required column is missing, or a row has no field
            or an id that is not a UUID.
    """
    rows: list[EditRow] = []
    with open(path, newline="", encoding="utf-8-sig") as fh:
        reader = csv.DictReader(fh)
        missing = [c for c in REQUIRED_EDIT_COLUMNS if c not in (reader.fieldnames or [])]
        if missing:
            raise ManualEditError(f"edit CSV is missing columns: {missing}")
        for raw in reader:
            record_id = trim(raw.get("id"))
            name = trim(raw.get("field"))
            if record_id is None or name is None:
                raise ManualEditError(f"line {reader.line_num}: id and field are required")
            try:
                uuid.UUID(record_id)
            except ValueError:
                raise ManualEditError(
                    f"line {reader.line_num}: '{record_id}' is not a problem id"
                ) from None
            rows.append(EditRow(reader.line_num, record_id, name, raw.get("value")))
    return rows


def group_edits(rows: Sequence[EditRow]) -> dict[str, dict[str, str | None]]:
    """Merge rows into one change set per id, in first-seen order; later rows win."""
    grouped: dict[str, dict[str, str | None]] = {}
    for row in rows:
        grouped.setdefault(row.record_id, {})[row.field] = row.value
    return grouped


async def run_manual_edits(
    store: ProblemStore | None,
    rows: Sequence[EditRow],
    rule_set: RuleSet | None = None,
    validate_only: bool = False,
) -> ManualEditCounters:
    """Apply every change set in ``rows``; one bad id never stops the others.

    With ``validate_only`` the values are coerced and checked but the store is
    not touched (and may be None).
    """
    counters = ManualEditCounters(rows_read=len(rows))
    grouped = group_edits(rows)
    counters.records_total = len(grouped)
    for record_id, changes in grouped.items():
        if validate_only:
            try:
                coerce_changes(changes)
            except ManualEditError as exc:
                counters.fail(record_id, str(exc))
            continue
        try:
            result = await apply_manual_edit(store, record_id, changes, rule_set)  # type: ignore[arg-type]
        except (ManualEditError, RecordNotFoundError) as exc:
            log.warning("manual edit on %s rejected: %s", record_id, exc)
            counters.fail(record_id, str(exc))
            continue
        counters.records_edited += 1
        counters.issues_written += len(result.issues)
    return counters
