"""labeling_etl.sheet_cache

Read-side cache of the remote labeling spreadsheets.

The cache is an explicit state object rather than module state:

    EMPTY ──refresh──▶ LOADING ──ok──▶ READY ──refresh──▶ STALE ──ok──▶ READY
                          │                                  │
                          └─fail─▶ EMPTY          READY ◀─fail┘ (old data kept)

While STALE the previous snapshot stays readable.  A refresh requested while
one is already running is refused, not queued.  Queries against an EMPTY or
LOADING cache raise CacheNotReadyError.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Sequence, Union

from labeling_etl.config import SyncConfig
from labeling_etl.ingest import IngestProgress, ingest_records, normalize_sheet
from labeling_etl.problem_rows import REMOTE_SHEET_OPTIONS
from labeling_etl.records import RECORD_FIELDS, UNCLASSIFIED, CandidateRecord
from labeling_etl.shared import BatchOutcome, ParseError
from labeling_etl.sources import SheetsClient, resolve_subject
from labeling_etl.store import ProblemStore

log = logging.getLogger(__name__)

STATE_EMPTY = "empty"
STATE_LOADING = "loading"
STATE_READY = "ready"
STATE_STALE = "stale"

STATUS_NOT_STARTED = "not_started"
STATUS_PROBLEM_ONLY = "problem_only"
STATUS_COMPLETED = "completed"
VALID_STATUSES = (STATUS_NOT_STARTED, STATUS_PROBLEM_ONLY, STATUS_COMPLETED)

DEFAULT_PAGE_SIZE = 20

CATEGORIES = ("국어", "수학", "영어", "탐구")


class CacheNotReadyError(RuntimeError):
    """Raised when reading a cache that has never loaded successfully."""


# ---------------------------------------------------------------------------
# Cached rows
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CachedProblem:
    sheet_source: str
    sheet_tab: str
    record: CandidateRecord

    @property
    def id(self) -> str:
        return f"{self.sheet_source}_{self.sheet_tab}_{self.record.index}"


@dataclass
class SheetLoad:
    problems: list[CachedProblem] = field(default_factory=list)
    errors: list[ParseError] = field(default_factory=list)
    rejected: list[tuple[dict[str, Any], str]] = field(default_factory=list)
    rows_read: int = 0
    tabs_read: int = 0


def collect_sheet_records(
    client: SheetsClient,
    config: SyncConfig,
    on_tab: Callable[[str, str], None] | None = None,
) -> SheetLoad:
    """Fetch every configured source and normalize every wanted tab.

    Rows with a blank subject take the tab's subject alias.  Raises
    SourceUnavailableError if any spreadsheet cannot be read.
    """
    load = SheetLoad()
    for source in config.sources:
        for title in client.list_tabs(source.spreadsheet_id):
            if not source.wants(title):
                continue
            if on_tab:
                on_tab(source.label, title)
            sheet = client.fetch_tab(source.spreadsheet_id, title)
            rows = normalize_sheet(
                sheet,
                REMOTE_SHEET_OPTIONS,
                fallback_subject=resolve_subject(title, config.subject_aliases),
            )
            load.tabs_read += 1
            load.rows_read += rows.rows_read
            load.errors.extend(rows.errors)
            load.rejected.extend(rows.rejected)
            load.problems.extend(CachedProblem(source.key, title, r) for r in rows.records)
    return load


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RefreshResult:
    success: bool
    message: str
    count: int


@dataclass(frozen=True)
class CacheStatus:
    state: str
    total_problems: int
    last_updated: datetime | None
    last_error: str | None

    @property
    def is_ready(self) -> bool:
        return self.state in (STATE_READY, STATE_STALE)


@dataclass
class QueryPage:
    problems: list[CachedProblem]
    total: int
    page: int
    limit: int


def subject_category(subject: str) -> str:
    """Fold a subject into one of the four reporting categories."""
    if "국어" in subject:
        return "국어"
    if "수학" in subject:
        return "수학"
    if "영어" in subject or "English" in subject or "ETS" in subject or "LEV" in subject:
        return "영어"
    return "탐구"


Loader = Callable[[], Union[Iterable[CachedProblem], Awaitable[Iterable[CachedProblem]]]]


# ---------------------------------------------------------------------------
# SheetCache
# ---------------------------------------------------------------------------

class SheetCache:
    def __init__(self) -> None:
        self._problems: list[CachedProblem] = []
        self._state = STATE_EMPTY
        self._refreshing = False
        self.last_updated: datetime | None = None
        self.last_error: str | None = None

    @property
    def state(self) -> str:
        return self._state

    def status(self) -> CacheStatus:
        return CacheStatus(
            state=self._state,
            total_problems=len(self._problems),
            last_updated=self.last_updated,
            last_error=self.last_error,
        )

    async def refresh(self, loader: Loader) -> RefreshResult:
        """Replace the snapshot with whatever ``loader`` returns.

        ``loader`` may be sync or async.  Failures are recorded in
        ``last_error`` and reported in the result; the previous snapshot, if
        any, stays in place.
        """
        if self._refreshing:
            return RefreshResult(False, "refresh already in progress", len(self._problems))

        had_data = self._state in (STATE_READY, STATE_STALE)
        self._refreshing = True
        self._state = STATE_STALE if had_data else STATE_LOADING
        self.last_error = None
        try:
            loaded = loader()
            if inspect.isawaitable(loaded):
                loaded = await loaded
            problems = list(loaded)
        except Exception as exc:
            self.last_error = str(exc) or type(exc).__name__
            self._state = STATE_READY if had_data else STATE_EMPTY
            log.warning("sheet cache refresh failed: %s", self.last_error)
            return RefreshResult(False, self.last_error, len(self._problems))
        finally:
            self._refreshing = False

        self._problems = problems
        self._state = STATE_READY
        self.last_updated = datetime.now(timezone.utc)
        log.info("sheet cache loaded %d problems", len(problems))
        return RefreshResult(True, f"loaded {len(problems)} problems", len(problems))

    def _snapshot(self) -> list[CachedProblem]:
        if self._state not in (STATE_READY, STATE_STALE):
            raise CacheNotReadyError(f"sheet cache is {self._state}")
        return list(self._problems)

    # -- reads --------------------------------------------------------------

    def query(
        self,
        subject: str | None = None,
        exam_year: int | str | None = None,
        organization: str | None = None,
        exam_code: str | None = None,
        worker: str | None = None,
        status: str | None = None,
        search: str | None = None,
        sort_by: str = "index",
        sort_order: str = "asc",
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> QueryPage:
        if sort_by not in RECORD_FIELDS:
            raise ValueError(f"cannot sort by unknown field '{sort_by}'")
        if sort_order not in ("asc", "desc"):
            raise ValueError(f"sort_order must be 'asc' or 'desc', got '{sort_order}'")
        if status is not None and status not in VALID_STATUSES:
            raise ValueError(f"unknown status '{status}', expected one of {list(VALID_STATUSES)}")
        page = max(page, 1)
        limit = max(limit, 1)

        rows = self._snapshot()
        if subject:
            rows = [p for p in rows if p.record.subject == subject]
        if exam_year is not None and exam_year != "":
            rows = [p for p in rows if str(p.record.exam_year) == str(exam_year)]
        if organization:
            rows = [p for p in rows if p.record.organization == organization]
        if exam_code:
            rows = [p for p in rows if p.record.exam_code == exam_code]
        if worker:
            rows = [
                p for p in rows
                if worker in (p.record.problem_worker, p.record.solution_worker)
            ]
        if status == STATUS_NOT_STARTED:
            rows = [p for p in rows if not p.record.problem_posted and not p.record.solution_posted]
        elif status == STATUS_PROBLEM_ONLY:
            rows = [p for p in rows if p.record.problem_posted and not p.record.solution_posted]
        elif status == STATUS_COMPLETED:
            rows = [p for p in rows if p.record.problem_posted and p.record.solution_posted]
        if search:
            needle = search.lower()
            rows = [
                p for p in rows
                if needle in (p.record.exam_code or "").lower()
                or needle in p.record.subject.lower()
                or needle in str(p.record.index)
                or needle in str(p.record.problem_number)
            ]

        def sort_key(p: CachedProblem) -> tuple[bool, Any]:
            value = getattr(p.record, sort_by)
            return (value is not None, value if value is not None else 0)

        rows.sort(key=sort_key, reverse=sort_order == "desc")
        start = (page - 1) * limit
        return QueryPage(problems=rows[start:start + limit], total=len(rows), page=page, limit=limit)

    def filter_options(self) -> dict[str, list]:
        rows = self._snapshot()
        workers = {p.record.problem_worker for p in rows} | {p.record.solution_worker for p in rows}
        return {
            "subjects": sorted({p.record.subject for p in rows if p.record.subject}),
            "exam_years": sorted({p.record.exam_year for p in rows}, reverse=True),
            "organizations": sorted({p.record.organization for p in rows if p.record.organization}),
            "workers": sorted(w for w in workers if w),
        }

    def stats(self) -> dict[str, Any]:
        rows = [p.record for p in self._snapshot()]
        total = len(rows)
        completed = sum(1 for r in rows if r.problem_posted and r.solution_posted)
        not_started = sum(1 for r in rows if not r.problem_posted and not r.solution_posted)

        by_subject: dict[str, dict[str, int]] = {}
        by_worker: dict[str, dict[str, Any]] = {}

        def worker_entry(name: str) -> dict[str, Any]:
            if name not in by_worker:
                by_worker[name] = {
                    "problem_count": 0,
                    "solution_count": 0,
                    "by_category": {
                        c: {"problem_count": 0, "solution_count": 0} for c in CATEGORIES
                    },
                }
            return by_worker[name]

        for r in rows:
            subj = by_subject.setdefault(
                r.subject or UNCLASSIFIED,
                {"total": 0, "problem_posted": 0, "solution_posted": 0},
            )
            subj["total"] += 1
            subj["problem_posted"] += int(r.problem_posted)
            subj["solution_posted"] += int(r.solution_posted)

            category = subject_category(r.subject or "")
            if r.problem_worker:
                entry = worker_entry(r.problem_worker)
                entry["problem_count"] += 1
                entry["by_category"][category]["problem_count"] += 1
            if r.solution_worker:
                entry = worker_entry(r.solution_worker)
                entry["solution_count"] += 1
                entry["by_category"][category]["solution_count"] += 1

        return {
            "total": total,
            "problem_posted": sum(1 for r in rows if r.problem_posted),
            "solution_posted": sum(1 for r in rows if r.solution_posted),
            "completed": completed,
            "not_started": not_started,
            "in_progress": total - completed - not_started,
            "by_subject": by_subject,
            "by_worker": by_worker,
        }

    def exam_groups(
        self,
        subject: str | None = None,
        exam_year: int | str | None = None,
        organization: str | None = None,
    ) -> list[dict[str, Any]]:
        """Per-exam-code progress, newest year first then by subject."""
        groups: dict[str, dict[str, Any]] = {}
        for p in self._snapshot():
            r = p.record
            if subject and r.subject != subject:
                continue
            if exam_year is not None and exam_year != "" and str(r.exam_year) != str(exam_year):
                continue
            if organization and r.organization != organization:
                continue
            group = groups.setdefault(r.exam_code or "unknown", {
                "exam_code": r.exam_code or "",
                "subject": r.subject,
                "exam_year": r.exam_year,
                "organization": r.organization,
                "problem_type": r.problem_type or "",
                "total_count": 0,
                "problem_posted_count": 0,
                "solution_posted_count": 0,
            })
            group["total_count"] += 1
            group["problem_posted_count"] += int(r.problem_posted)
            group["solution_posted_count"] += int(r.solution_posted)
        ordered = sorted(groups.values(), key=lambda g: g["subject"])
        return sorted(ordered, key=lambda g: g["exam_year"], reverse=True)

    # -- write-through --------------------------------------------------------

    async def save_to_store(
        self,
        store: ProblemStore,
        batch_size: int,
        max_concurrency: int,
        on_progress: Callable[[IngestProgress], Any] | None = None,
    ) -> BatchOutcome:
        """Route the cached records through the batch ingestion orchestrator."""
        records: Sequence[CandidateRecord] = [p.record for p in self._snapshot()]
        if not records:
            raise CacheNotReadyError("sheet cache is empty")
        return await ingest_records(
            store, records, batch_size=batch_size, max_concurrency=max_concurrency,
            on_progress=on_progress,
        )
