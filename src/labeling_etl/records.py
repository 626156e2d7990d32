"""labeling_etl.records

Data model shared by every stage of the ingestion pipeline.

  CandidateRecord — one normalized, not-yet-persisted source row
  StoredRecord    — the persisted 'problem' row (candidate + generated id)
  Issue           — one validation finding, attached to a problem once stored

Two independent uniqueness scopes exist:
  (subject, index)                 — always present, globally unique
  (exam_code, problem_number)      — unique whenever exam_code is non-null
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import date, datetime
from typing import NamedTuple

from labeling_etl.normalize import QUESTION_MULTIPLE, QUESTION_SUBJECTIVE

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SEVERITY_ERROR = "ERROR"
SEVERITY_WARNING = "WARNING"
SEVERITY_INFO = "INFO"

VALID_SEVERITIES = (SEVERITY_ERROR, SEVERITY_WARNING, SEVERITY_INFO)
VALID_QUESTION_KINDS = (QUESTION_MULTIPLE, QUESTION_SUBJECTIVE)

# Placeholder the labeling sheets use for "not yet classified".
UNCLASSIFIED = "미분류"


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

class SubjectIndexKey(NamedTuple):
    subject: str
    index: int


class ExamCodeKey(NamedTuple):
    exam_code: str
    problem_number: int | None


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class CandidateRecord:
    """A normalized ingestion unit derived from one input row."""

    index: int
    subject: str
    organization: str
    exam_year: int
    problem_number: int | None
    question_kind: str = QUESTION_MULTIPLE
    problem_type: str | None = None
    exam_code: str | None = None
    sub_category: str | None = None
    answer: str | None = None
    difficulty: str | None = None
    score: float | None = None
    correct_rate: float | None = None
    choice_rate_1: float | None = None
    choice_rate_2: float | None = None
    choice_rate_3: float | None = None
    choice_rate_4: float | None = None
    choice_rate_5: float | None = None
    problem_posted: bool = False
    problem_worker: str | None = None
    problem_work_date: date | None = None
    solution_posted: bool = False
    solution_worker: str | None = None
    solution_work_date: date | None = None
    # Where the row came from; never persisted, never compared.
    source_row: int | None = field(default=None, compare=False, repr=False)

    @property
    def subject_index_key(self) -> SubjectIndexKey:
        return SubjectIndexKey(self.subject, self.index)

    @property
    def exam_code_key(self) -> ExamCodeKey | None:
        return exam_code_key(self.exam_code, self.problem_number)

    @property
    def choice_rates(self) -> list[float | None]:
        return [
            self.choice_rate_1,
            self.choice_rate_2,
            self.choice_rate_3,
            self.choice_rate_4,
            self.choice_rate_5,
        ]

    @property
    def row_label(self) -> int:
        """Row number for error reports; falls back to the sequence index."""
        return self.source_row if self.source_row is not None else self.index


@dataclass
class StoredRecord(CandidateRecord):
    """The persisted form of a CandidateRecord."""

    id: str = ""
    created_at: datetime | None = field(default=None, compare=False, repr=False)
    updated_at: datetime | None = field(default=None, compare=False, repr=False)

    def as_candidate(self) -> CandidateRecord:
        return CandidateRecord(**{name: getattr(self, name) for name in RECORD_FIELDS})


@dataclass(frozen=True)
class Issue:
    """One validation finding produced by the rule engine."""

    rule_code: str
    severity: str
    message: str
    field: str | None = None
    problem_id: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "problem_id": self.problem_id,
            "rule_code": self.rule_code,
            "severity": self.severity,
            "field": self.field,
            "message": self.message,
        }


# Every persisted attribute of a candidate, in declaration order.  This is
# the set that is written on create/update and compared for change detection.
RECORD_FIELDS: tuple[str, ...] = tuple(
    f.name for f in fields(CandidateRecord) if f.name != "source_row"
)

DATE_FIELDS = frozenset({"problem_work_date", "solution_work_date"})


def exam_code_key(exam_code: str | None, problem_number: int | None) -> ExamCodeKey | None:
    """Return the exam-code key, or None when the record has no exam code."""
    if exam_code is None or not exam_code.strip():
        return None
    return ExamCodeKey(exam_code, problem_number)
