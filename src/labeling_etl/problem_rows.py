"""labeling_etl.problem_rows

Row Normalizer: turns one raw spreadsheet row into a CandidateRecord.

A raw row is an ordered sequence of (header, value) pairs.  Order matters:
the labeling sheets repeat the generic 'Worker' / 'Work_Date' headers, once
after the problem-posted flag and once after the solution-posted flag, so the
owner of each of those columns is decided by scanning the headers in order
and remembering which posting flag was seen last.  A plain mapping is also
accepted and read in its iteration order.

Two header dialects are mapped onto the same attributes:
  - upload files      (Index, 시험지코드, 출제기관, 문항번호, 문제게시YN, ...)
  - the remote sheets (인덱스, 시험지 코드, 시행 기관, 문제 번호, 문제 탑재, ...)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence, Union

from labeling_etl.exam_codes import canonicalize_organization, generate_exam_code
from labeling_etl.normalize import (
    normalize_space,
    parse_bool,
    parse_date,
    parse_int,
    parse_numeric,
    parse_percent,
    parse_question_kind,
    trim,
)
from labeling_etl.records import CandidateRecord

RawRow = Union[Sequence[tuple[str, Any]], Mapping[str, Any]]

# ---------------------------------------------------------------------------
# Column contracts
# ---------------------------------------------------------------------------

COLUMN_MAPPING: dict[str, str] = {
    # upload-file dialect
    "Index": "index",
    "문제종류": "problem_type",
    "시험지코드": "exam_code",
    "출제기관": "organization",
    "과목": "subject",
    "소분류1": "sub_category",
    "시행년도": "exam_year",
    "문항번호": "problem_number",
    "정답": "answer",
    "난이도": "difficulty",
    "배점": "score",
    "정답률": "correct_rate",
    "1번 선택비율": "choice_rate_1",
    "2번 선택비율": "choice_rate_2",
    "3번 선택비율": "choice_rate_3",
    "4번 선택비율": "choice_rate_4",
    "5번 선택비율": "choice_rate_5",
    "문제게시YN": "problem_posted",
    "해설게시YN": "solution_posted",
    "객관식주관식": "question_kind",
    # remote-sheet dialect
    "인덱스": "index",
    "문제 구분": "problem_type",
    "시험지 코드": "exam_code",
    "시행 기관": "organization",
    "세부 과목": "sub_category",
    "시행 연도": "exam_year",
    "문제 번호": "problem_number",
    "문제 유형": "question_kind",
    "①": "choice_rate_1",
    "②": "choice_rate_2",
    "③": "choice_rate_3",
    "④": "choice_rate_4",
    "⑤": "choice_rate_5",
    "문제 탑재": "problem_posted",
    "문제 작업자": "problem_worker",
    "문제 작업일": "problem_work_date",
    "해설 탑재": "solution_posted",
    "해설 작업자": "solution_worker",
    "해설 작업일": "solution_work_date",
}

# Generic headers whose owner depends on the preceding posting flag.
CONTEXT_HEADERS: dict[str, str] = {
    "Worker": "worker",
    "Work_Date": "work_date",
}

_POSTING_FLAG_CONTEXT = {
    "problem_posted": "problem",
    "solution_posted": "solution",
}

RATE_FIELDS = (
    "correct_rate",
    "choice_rate_1",
    "choice_rate_2",
    "choice_rate_3",
    "choice_rate_4",
    "choice_rate_5",
)


# ---------------------------------------------------------------------------
# Exceptions / options
# ---------------------------------------------------------------------------

class MissingRequiredField(ValueError):
    """Raised when a required column is absent, blank or not a whole number."""

    def __init__(self, field: str, row_number: int, reason: str = "missing") -> None:
        self.field = field
        self.row_number = row_number
        self.reason = reason
        super().__init__(f"row {row_number}: required field '{field}' is {reason}")


@dataclass(frozen=True)
class NormalizeOptions:
    """Source-specific normalization switches.

    canonicalize_organization — fold organization text to 교육청/평가원/EBS/사설
    generate_exam_codes       — derive a missing exam code from the problem type
    """

    canonicalize_organization: bool = False
    generate_exam_codes: bool = False


UPLOAD_FILE_OPTIONS = NormalizeOptions(canonicalize_organization=True, generate_exam_codes=True)
REMOTE_SHEET_OPTIONS = NormalizeOptions()


# ---------------------------------------------------------------------------
# Header scan
# ---------------------------------------------------------------------------

def _cells(raw_row: RawRow) -> Iterable[tuple[str, Any]]:
    if isinstance(raw_row, Mapping):
        return raw_row.items()
    return raw_row


def _assign(values: dict[str, Any], attr: str, value: Any) -> None:
    # First non-blank value wins when a header (or an alias) repeats.
    if trim(values.get(attr)) is None:
        values[attr] = value


def collect_fields(raw_row: RawRow) -> dict[str, Any]:
    """Map a raw row onto attribute names, resolving Worker/Work_Date by position."""
    values: dict[str, Any] = {}
    context = "problem"
    for header, value in _cells(raw_row):
        key = (header or "").strip()
        if key in CONTEXT_HEADERS:
            _assign(values, f"{context}_{CONTEXT_HEADERS[key]}", value)
            continue
        attr = COLUMN_MAPPING.get(key)
        if attr is None:
            continue
        context = _POSTING_FLAG_CONTEXT.get(attr, context)
        _assign(values, attr, value)
    return values


# ---------------------------------------------------------------------------
# Required-field helpers
# ---------------------------------------------------------------------------

def _require_int(values: dict[str, Any], attr: str, row_number: int) -> int:
    raw = values.get(attr)
    if trim(raw) is None:
        raise MissingRequiredField(attr, row_number)
    parsed = parse_int(raw)
    if parsed is None:
        raise MissingRequiredField(attr, row_number, reason="not a whole number")
    return parsed


def _require_text(values: dict[str, Any], attr: str, row_number: int) -> str:
    v = normalize_space(values.get(attr))
    if v is None:
        raise MissingRequiredField(attr, row_number)
    return v


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

def normalize_row(
    raw_row: RawRow,
    row_number: int,
    options: NormalizeOptions | None = None,
) -> CandidateRecord:
    """Convert one raw row into a CandidateRecord.

    Raises:
        MissingRequiredField: index, organization, subject, exam year or
            problem number is absent, or a numeric one is not a whole number.
    """
    options = options or REMOTE_SHEET_OPTIONS
    values = collect_fields(raw_row)

    index = _require_int(values, "index", row_number)
    raw_organization = _require_text(values, "organization", row_number)
    subject = _require_text(values, "subject", row_number)
    exam_year = _require_int(values, "exam_year", row_number)
    problem_number = _require_int(values, "problem_number", row_number)

    organization = (
        canonicalize_organization(raw_organization)
        if options.canonicalize_organization
        else raw_organization
    )
    problem_type = normalize_space(values.get("problem_type"))
    sub_category = trim(values.get("sub_category"))
    exam_code = trim(values.get("exam_code"))
    if exam_code is None and problem_type and options.generate_exam_codes:
        exam_code = generate_exam_code(
            problem_type, subject, raw_organization, exam_year, sub_category
        )

    rates = {name: parse_percent(values.get(name)) for name in RATE_FIELDS}

    return CandidateRecord(
        index=index,
        subject=subject,
        organization=organization,
        exam_year=exam_year,
        problem_number=problem_number,
        question_kind=parse_question_kind(values.get("question_kind")),
        problem_type=problem_type,
        exam_code=exam_code,
        sub_category=sub_category,
        answer=trim(values.get("answer")),
        difficulty=trim(values.get("difficulty")),
        score=parse_numeric(values.get("score")),
        problem_posted=parse_bool(values.get("problem_posted")),
        problem_worker=trim(values.get("problem_worker")),
        problem_work_date=parse_date(values.get("problem_work_date")),
        solution_posted=parse_bool(values.get("solution_posted")),
        solution_worker=trim(values.get("solution_worker")),
        solution_work_date=parse_date(values.get("solution_work_date")),
        source_row=row_number,
        **rates,
    )
