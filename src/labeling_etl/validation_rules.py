"""labeling_etl.validation_rules

YAML-declared validation rules for stored exam problems.

Responsibilities:
  - Load and validate the rule catalogue (labeling_etl/rules/problem_rules.yml)
  - Bind each declared rule code to its Python predicate
  - Evaluate one record into an ordered list of Issues (pure, no I/O)
  - Regenerate the unresolved issue set for a group of stored records
  - Hash YAML content for traceability

Usage:
    from labeling_etl.validation_rules import evaluate, load_default_rule_set

    rule_set = load_default_rule_set()
    issues = evaluate(record, rule_set)
"""

from __future__ import annotations

import functools
import hashlib
import logging
import string
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Sequence

import yaml

from labeling_etl.normalize import QUESTION_MULTIPLE, QUESTION_SUBJECTIVE, is_blank, parse_numeric
from labeling_etl.records import (
    RECORD_FIELDS,
    UNCLASSIFIED,
    VALID_SEVERITIES,
    CandidateRecord,
    Issue,
)

if TYPE_CHECKING:
    from labeling_etl.store import ProblemStore

log = logging.getLogger(__name__)

DEFAULT_RULES_PATH = Path(__file__).with_name("rules") / "problem_rules.yml"

REQUIRED_YAML_KEYS = frozenset({"entity_type", "version", "rules"})
REQUIRED_RULE_KEYS = frozenset({"code", "severity", "message"})

# Extra names a message template may use besides the record's attributes.
DERIVED_MESSAGE_FIELDS = frozenset({"choice_rate_sum"})

MIN_EXAM_YEAR = 1900
MAX_EXAM_YEAR = 2100
CHOICE_RATE_SUM_TOLERANCE = 0.5


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

def _present_rates(r: CandidateRecord) -> list[float]:
    return [rate for rate in r.choice_rates if rate is not None]


def _missing_subject(r: CandidateRecord) -> bool:
    return is_blank(r.subject) or r.subject == UNCLASSIFIED


def _missing_organization(r: CandidateRecord) -> bool:
    return is_blank(r.organization) or r.organization == UNCLASSIFIED


def _missing_problem_number(r: CandidateRecord) -> bool:
    return not r.problem_number


def _missing_exam_code(r: CandidateRecord) -> bool:
    return is_blank(r.exam_code)


def _missing_answer(r: CandidateRecord) -> bool:
    return r.problem_posted and is_blank(r.answer)


def _missing_difficulty(r: CandidateRecord) -> bool:
    return r.solution_posted and is_blank(r.difficulty)


def _missing_score(r: CandidateRecord) -> bool:
    return r.problem_posted and r.score is None


def _invalid_answer_range(r: CandidateRecord) -> bool:
    if r.question_kind != QUESTION_MULTIPLE or is_blank(r.answer):
        return False
    num = parse_numeric(r.answer)
    return num is None or num < 1 or num > 5


def _invalid_year(r: CandidateRecord) -> bool:
    return r.exam_year is None or not MIN_EXAM_YEAR <= r.exam_year <= MAX_EXAM_YEAR


def _invalid_correct_rate(r: CandidateRecord) -> bool:
    if r.correct_rate is None:
        return False
    return r.correct_rate < 0 or r.correct_rate > 100


def _invalid_choice_rate_sum(r: CandidateRecord) -> bool:
    if r.question_kind != QUESTION_MULTIPLE:
        return False
    rates = _present_rates(r)
    if not rates:
        return False
    return abs(sum(rates) - 100) > CHOICE_RATE_SUM_TOLERANCE


def _missing_choice_rate(r: CandidateRecord) -> bool:
    if r.question_kind != QUESTION_MULTIPLE or not r.problem_posted:
        return False
    return not _present_rates(r)


def _unexpected_choice_rate(r: CandidateRecord) -> bool:
    return r.question_kind == QUESTION_SUBJECTIVE and bool(_present_rates(r))


def _posted_without_meta(r: CandidateRecord) -> bool:
    if not r.problem_posted:
        return False
    return is_blank(r.answer) or is_blank(r.organization) or is_blank(r.subject)


def _solution_without_problem(r: CandidateRecord) -> bool:
    return r.solution_posted and not r.problem_posted


PREDICATES: dict[str, Callable[[CandidateRecord], bool]] = {
    "MISSING_SUBJECT": _missing_subject,
    "MISSING_ORGANIZATION": _missing_organization,
    "MISSING_PROBLEM_NUMBER": _missing_problem_number,
    "MISSING_EXAM_CODE": _missing_exam_code,
    "MISSING_ANSWER": _missing_answer,
    "MISSING_DIFFICULTY": _missing_difficulty,
    "MISSING_SCORE": _missing_score,
    "INVALID_ANSWER_RANGE": _invalid_answer_range,
    "INVALID_YEAR_FORMAT": _invalid_year,
    "INVALID_CORRECT_RATE": _invalid_correct_rate,
    "INVALID_CHOICE_RATE_SUM": _invalid_choice_rate_sum,
    "MISSING_CHOICE_RATE": _missing_choice_rate,
    "UNEXPECTED_CHOICE_RATE": _unexpected_choice_rate,
    "POSTED_WITHOUT_META": _posted_without_meta,
    "SOLUTION_WITHOUT_PROBLEM": _solution_without_problem,
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RuleSetValidationError(ValueError):
    """Raised when the YAML rule catalogue fails schema validation."""


# ---------------------------------------------------------------------------
# RuleSet dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Rule:
    code: str
    name: str
    severity: str
    field: str | None
    message: str

    def check(self, record: CandidateRecord) -> bool:
        return PREDICATES[self.code](record)

    def render(self, record: CandidateRecord) -> str:
        context: dict[str, Any] = {name: getattr(record, name) for name in RECORD_FIELDS}
        context["choice_rate_sum"] = sum(_present_rates(record))
        return self.message.format(**context)


@dataclass
class RuleSet:
    """Parsed, validated rule catalogue loaded from a YAML file."""

    entity_type: str
    version: str
    yaml_hash: str
    rules: list[Rule]
    raw_yaml: str = field(repr=False, default="")

    @property
    def codes(self) -> list[str]:
        return [r.code for r in self.rules]


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_rule_set(yaml_path: Path) -> RuleSet:
    """Load, validate, and return a RuleSet from a YAML file.

    Raises:
        RuleSetValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_rule_set(data)
    yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    rules = [
        Rule(
            code=entry["code"],
            name=str(entry.get("name") or entry["code"]),
            severity=entry["severity"],
            field=entry.get("field"),
            message=str(entry["message"]),
        )
        for entry in data["rules"]
    ]
    log.debug("loaded %d validation rules from %s (%s)", len(rules), yaml_path, yaml_hash[:12])
    return RuleSet(
        entity_type=str(data["entity_type"]),
        version=str(data["version"]),
        yaml_hash=yaml_hash,
        rules=rules,
        raw_yaml=raw,
    )


def _template_fields(template: str) -> set[str]:
    names = set()
    for _, field_name, _, _ in string.Formatter().parse(template):
        if field_name:
            names.add(field_name.split(".")[0].split("[")[0])
    return names


def validate_rule_set(data: dict[str, Any]) -> None:
    """Raise RuleSetValidationError if data does not match required schema.

    Validates:
      - Required top-level keys present, rules is a non-empty list
      - each rule has code/severity/message, a known code and severity
      - no rule code declared twice
      - message templates only reference record attributes or derived values
    """
    if not isinstance(data, dict):
        raise RuleSetValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise RuleSetValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    rules = data.get("rules")
    if not isinstance(rules, list) or not rules:
        raise RuleSetValidationError("'rules' must be a non-empty list.")

    allowed_fields = set(RECORD_FIELDS) | DERIVED_MESSAGE_FIELDS
    seen: set[str] = set()
    for pos, entry in enumerate(rules):
        if not isinstance(entry, dict):
            raise RuleSetValidationError(f"Rule #{pos} must be a mapping.")
        missing = REQUIRED_RULE_KEYS - set(entry.keys())
        if missing:
            raise RuleSetValidationError(f"Rule #{pos} missing keys: {sorted(missing)}")
        code = entry["code"]
        if code not in PREDICATES:
            raise RuleSetValidationError(f"Unknown rule code '{code}'.")
        if code in seen:
            raise RuleSetValidationError(f"Rule code '{code}' declared more than once.")
        seen.add(code)
        if entry["severity"] not in VALID_SEVERITIES:
            raise RuleSetValidationError(
                f"Rule '{code}' has invalid severity '{entry['severity']}'. "
                f"Must be one of {list(VALID_SEVERITIES)}."
            )
        try:
            unknown = _template_fields(str(entry["message"])) - allowed_fields
        except ValueError as exc:
            raise RuleSetValidationError(f"Rule '{code}' message is not a valid template: {exc}")
        if unknown:
            raise RuleSetValidationError(
                f"Rule '{code}' message references unknown fields: {sorted(unknown)}"
            )


@functools.lru_cache(maxsize=1)
def load_default_rule_set() -> RuleSet:
    """The rule catalogue shipped with the package, loaded once per process."""
    return load_rule_set(DEFAULT_RULES_PATH)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def evaluate(record: CandidateRecord, rule_set: RuleSet | None = None) -> list[Issue]:
    """Return the issues ``record`` triggers, in rule-declaration order.

    When ``record`` is a StoredRecord the issues carry its id.
    """
    rule_set = rule_set or load_default_rule_set()
    problem_id = getattr(record, "id", None) or None
    return [
        Issue(
            rule_code=rule.code,
            severity=rule.severity,
            message=rule.render(record),
            field=rule.field,
            problem_id=problem_id,
        )
        for rule in rule_set.rules
        if rule.check(record)
    ]


async def regenerate_issues(
    store: ProblemStore,
    record_ids: Sequence[str],
    rule_set: RuleSet | None = None,
) -> list[Issue]:
    """Replace the unresolved issues of exactly ``record_ids``.

    Re-fetches the records, evaluates every rule and swaps the records'
    unresolved issues for the fresh set in one store call.  Resolved issues
    and issues of other records are never touched.
    """
    ids = list(dict.fromkeys(record_ids))
    if not ids:
        return []
    records = await store.find_by_ids(ids)
    issues: list[Issue] = []
    for record in records:
        issues.extend(replace(i, problem_id=record.id) for i in evaluate(record, rule_set))
    await store.replace_unresolved_issues(ids, issues)
    log.debug("regenerated %d issues for %d records", len(issues), len(records))
    return issues


@dataclass
class RevalidationSummary:
    records_checked: int = 0
    issues_written: int = 0
    pages: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "records_checked": self.records_checked,
            "issues_written": self.issues_written,
            "pages": self.pages,
        }


async def revalidate_all(
    store: ProblemStore,
    page_size: int = 500,
    rule_set: RuleSet | None = None,
    dry_run: bool = False,
) -> RevalidationSummary:
    """Regenerate issues for every stored problem, one page of ids at a time.

    With ``dry_run`` the issues are evaluated and counted but nothing is
    deleted or written.
    """
    if page_size < 1:
        raise ValueError(f"page_size must be >= 1, got {page_size}")
    rule_set = rule_set or load_default_rule_set()
    summary = RevalidationSummary()
    after_id: str | None = None
    while True:
        ids = await store.list_ids(after_id, page_size)
        if not ids:
            break
        if dry_run:
            records = await store.find_by_ids(ids)
            summary.issues_written += sum(len(evaluate(r, rule_set)) for r in records)
            summary.records_checked += len(records)
        else:
            summary.issues_written += len(await regenerate_issues(store, ids, rule_set))
            summary.records_checked += len(ids)
        summary.pages += 1
        after_id = ids[-1]
        log.info("revalidated %d records so far", summary.records_checked)
    return summary
