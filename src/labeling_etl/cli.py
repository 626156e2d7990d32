"""labeling_etl.cli

Unified CLI entrypoint for problem ingestion.

Modes (--mode):
  file_upload   — ingest one uploaded .xlsx / .csv labeling sheet (default)
  sheet_sync    — ingest every configured tab of the remote labeling spreadsheets
  revalidate    — regenerate validation issues for every stored problem
  manual_edit   — apply a CSV of (id, field, value) edits to stored problems
  manual_create — create empty shell problems after a subject's last index

Usage (file_upload):
    python -m labeling_etl.cli \\
        --mode file_upload \\
        --db-dsn "$DB_DSN" \\
        --file-path "rawEvidence/2024_math_labeling.xlsx"

Usage (sheet_sync):
    GOOGLE_SHEETS_API_KEY=... python -m labeling_etl.cli \\
        --mode sheet_sync \\
        --db-dsn "$DB_DSN" \\
        --sync-config config/sheet_sync.yml

Usage (revalidate):
    python -m labeling_etl.cli --mode revalidate --db-dsn "$DB_DSN" --dry-run

Usage (manual_edit):
    python -m labeling_etl.cli --mode manual_edit --db-dsn "$DB_DSN" \\
        --edits-path review/edits.csv

Usage (manual_create):
    python -m labeling_etl.cli --mode manual_create --db-dsn "$DB_DSN" \\
        --subject 수학 --exam-year 2025 --organization 사설 --start-number 1 --count 30
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import os
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Sequence

import click

from labeling_etl.config import SyncConfigError, load_sync_config
from labeling_etl.ingest import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_CONCURRENCY,
    IngestProgress,
    NormalizedRows,
    ingest_records,
    normalize_sheet,
    preview_records,
)
from labeling_etl.normalize import QUESTION_MULTIPLE, QUESTION_SUBJECTIVE
from labeling_etl.problem_edits import (
    EditRow,
    ManualEditCounters,
    ManualEditError,
    create_manual_problems,
    read_edit_rows,
    run_manual_edits,
)
from labeling_etl.problem_rows import UPLOAD_FILE_OPTIONS
from labeling_etl.records import CandidateRecord
from labeling_etl.sheet_cache import CachedProblem, SheetCache, SheetLoad, collect_sheet_records
from labeling_etl.shared import (
    ERROR_SAMPLE_LIMIT,
    BatchOutcome,
    RejectWriter,
    utc_now_iso,
    write_run_report,
)
from labeling_etl.sources import (
    SheetsClient,
    SourceUnavailableError,
    UnreadableFileError,
    UnsupportedFileError,
    decode_file,
)
from labeling_etl.store import PostgresProblemStore, ProblemStore, open_pool
from labeling_etl.validation_rules import load_default_rule_set, revalidate_all

log = logging.getLogger(__name__)

UPLOAD_STATUS_COMPLETED = "COMPLETED"
UPLOAD_STATUS_PARTIAL = "PARTIAL"
UPLOAD_STATUS_FAILED = "FAILED"

# Errors copied into the upload_history row.
HISTORY_ERROR_LIMIT = 10


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    rows_read: int = 0
    parse_errors: int = 0
    rejects_written: int = 0
    records_total: int = 0
    success_count: int = 0
    created_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    error_count: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    preview: dict[str, int] | None = None
    revalidation: dict[str, int] | None = None

    def keep_errors(self, errors: Iterable[dict[str, Any]]) -> None:
        """Append to the error sample, which holds at most ERROR_SAMPLE_LIMIT entries."""
        room = ERROR_SAMPLE_LIMIT - len(self.errors)
        if room > 0:
            self.errors.extend(itertools.islice(errors, room))

    def absorb_rows(self, rows: NormalizedRows | SheetLoad) -> None:
        self.rows_read += rows.rows_read
        self.parse_errors += len(rows.errors)
        self.keep_errors(e.to_dict() for e in rows.errors)

    def absorb_outcome(self, outcome: BatchOutcome) -> None:
        self.success_count = outcome.success_count
        self.created_count = outcome.created_count
        self.updated_count = outcome.updated_count
        self.skipped_count = outcome.skipped_count
        self.failed_count = outcome.failed_count
        self.error_count = outcome.error_count
        self.keep_errors(e.to_dict() for e in outcome.errors)

    def absorb_manual_edits(self, summary: ManualEditCounters) -> None:
        self.rows_read = summary.rows_read
        self.records_total = summary.records_total
        self.success_count = self.updated_count = summary.records_edited
        self.failed_count = summary.records_failed
        self.error_count = len(summary.errors)
        self.keep_errors({"kind": "manual_edit", **e} for e in summary.errors)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "rows_read": self.rows_read,
            "parse_errors": self.parse_errors,
            "rejects_written": self.rejects_written,
            "records_total": self.records_total,
            "success_count": self.success_count,
            "created_count": self.created_count,
            "updated_count": self.updated_count,
            "skipped_count": self.skipped_count,
            "failed_count": self.failed_count,
            "error_count": self.error_count,
            "errors": self.errors,
        }
        if self.preview is not None:
            out["preview"] = self.preview
        if self.revalidation is not None:
            out["revalidation"] = self.revalidation
        return out


def _upload_status(counters: RunCounters) -> str:
    if counters.failed_count == 0 and counters.parse_errors == 0 and counters.error_count == 0:
        return UPLOAD_STATUS_COMPLETED
    if counters.success_count > 0 or counters.skipped_count > 0:
        return UPLOAD_STATUS_PARTIAL
    return UPLOAD_STATUS_FAILED


# ---------------------------------------------------------------------------
# Store lifecycle
# ---------------------------------------------------------------------------

@contextlib.asynccontextmanager
async def problem_store(db_dsn: str, pool_size: int) -> AsyncIterator[ProblemStore]:
    pool = await open_pool(db_dsn, max_size=pool_size)
    try:
        yield PostgresProblemStore(pool)
    finally:
        await pool.close()


# ---------------------------------------------------------------------------
# Async runners
# ---------------------------------------------------------------------------

async def _run_ingest(
    run_id: str,
    db_dsn: str,
    pool_size: int,
    records: Sequence[CandidateRecord],
    counters: RunCounters,
    history: dict[str, Any],
    batch_size: int,
    max_concurrency: int,
    dry_run: bool,
    sheet_problems: Sequence[CachedProblem] | None = None,
) -> None:
    def on_progress(p: IngestProgress) -> None:
        click.echo(
            f"[{run_id}] {p.percent}% ({p.processed_count}/{p.total_count}, "
            f"batch {p.batch_index}/{p.total_batches}) success={p.success_count} "
            f"skipped={p.skipped_count} failed={p.failed_count}"
        )

    async with problem_store(db_dsn, pool_size) as store:
        if dry_run:
            preview = await preview_records(store, records, batch_size=batch_size)
            counters.preview = preview.to_dict()
            return

        if sheet_problems:
            # Remote rows go through the sheet cache's write-through path.
            cache = SheetCache()
            refreshed = await cache.refresh(lambda: sheet_problems)
            log.info("sheet_sync cache: %s", refreshed.message)
            outcome = await cache.save_to_store(
                store, batch_size=batch_size, max_concurrency=max_concurrency, on_progress=on_progress,
            )
        else:
            outcome = await ingest_records(
                store, records,
                batch_size=batch_size,
                max_concurrency=max_concurrency,
                on_progress=on_progress,
                rule_set=load_default_rule_set(),
            )
        counters.absorb_outcome(outcome)
        await store.record_upload(
            **history,
            total_rows=counters.rows_read,
            success_rows=counters.success_count,
            failed_rows=counters.failed_count + counters.parse_errors,
            status=_upload_status(counters),
            error_log=counters.errors[:HISTORY_ERROR_LIMIT] or None,
        )


async def _run_revalidate(
    db_dsn: str,
    pool_size: int,
    counters: RunCounters,
    page_size: int,
    dry_run: bool,
) -> None:
    async with problem_store(db_dsn, pool_size) as store:
        summary = await revalidate_all(store, page_size=page_size, dry_run=dry_run)
    counters.revalidation = summary.to_dict()
    counters.records_total = summary.records_checked


async def _run_manual_edits(
    db_dsn: str,
    pool_size: int,
    rows: Sequence[EditRow],
    counters: RunCounters,
    dry_run: bool,
) -> None:
    if dry_run:
        summary = await run_manual_edits(None, rows, validate_only=True)
    else:
        async with problem_store(db_dsn, pool_size) as store:
            summary = await run_manual_edits(store, rows, rule_set=load_default_rule_set())
    counters.absorb_manual_edits(summary)


async def _run_manual_create(
    db_dsn: str,
    pool_size: int,
    counters: RunCounters,
    **request: Any,
) -> None:
    async with problem_store(db_dsn, pool_size) as store:
        created = await create_manual_problems(store, rule_set=load_default_rule_set(), **request)
    counters.records_total = request["count"]
    counters.success_count = counters.created_count = len(created)
    counters.skipped_count = request["count"] - len(created)


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _validate_file_upload_flags(file_path: str | None, run_id: str) -> None:
    if not file_path:
        _fatal(run_id, "file_upload mode requires: --file-path")
    if not Path(file_path).is_file():  # type: ignore[arg-type]
        _fatal(run_id, f"--file-path not found: {file_path}")


def _validate_manual_edit_flags(edits_path: str | None, run_id: str) -> None:
    if not edits_path:
        _fatal(run_id, "manual_edit mode requires: --edits-path")
    if not Path(edits_path).is_file():  # type: ignore[arg-type]
        _fatal(run_id, f"--edits-path not found: {edits_path}")


def _validate_manual_create_flags(
    subject: str | None,
    exam_year: int | None,
    organization: str | None,
    count: int | None,
    run_id: str,
) -> None:
    missing = [
        flag
        for flag, value in (
            ("--subject", subject),
            ("--exam-year", exam_year),
            ("--organization", organization),
            ("--count", count),
        )
        if value is None
    ]
    if missing:
        _fatal(run_id, f"manual_create mode requires: {', '.join(missing)}")


def _validate_sizes(batch_size: int | None, max_concurrency: int | None, pool_size: int, run_id: str) -> None:
    for flag, value in (
        ("--batch-size", batch_size),
        ("--max-concurrency", max_concurrency),
        ("--pool-size", pool_size),
    ):
        if value is not None and value < 1:
            _fatal(run_id, f"{flag} must be >= 1, got {value}")


def _write_rejects(rows: NormalizedRows | SheetLoad, rejects: RejectWriter) -> None:
    for raw, reason in rows.rejected:
        rejects.write(raw, reason)


# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="file_upload",
    type=click.Choice(["file_upload", "sheet_sync", "revalidate", "manual_edit", "manual_create"]),
    show_default=True,
    help="Ingestion mode",
)
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
# file_upload flags
@click.option("--file-path", default=None, type=click.Path(), help="[file_upload] Input .xlsx or .csv")
# sheet_sync flags
@click.option(
    "--sync-config",
    default="config/sheet_sync.yml",
    type=click.Path(),
    show_default=True,
    help="[sheet_sync] YAML listing the spreadsheets and tabs to ingest",
)
@click.option("--api-key-env", default="GOOGLE_SHEETS_API_KEY", show_default=True, help="[sheet_sync] Env var name holding the Sheets API key")
@click.option("--access-token-env", default="GOOGLE_SHEETS_ACCESS_TOKEN", show_default=True, help="[sheet_sync] Env var name holding an OAuth access token")
# manual_edit flags
@click.option("--edits-path", default=None, type=click.Path(), help="[manual_edit] CSV of id,field,value edits")
# manual_create flags
@click.option("--subject", default=None, help="[manual_create] Subject of the new problems")
@click.option("--exam-year", default=None, type=int, help="[manual_create] Exam year")
@click.option("--organization", default=None, help="[manual_create] Organization, e.g. 평가원 or 사설")
@click.option("--problem-type", default=None, help="[manual_create] Free-text problem type")
@click.option("--exam-code", default=None, help="[manual_create] Exam code shared by the new problems")
@click.option("--start-number", default=1, type=int, show_default=True, help="[manual_create] First problem number")
@click.option("--count", default=None, type=int, help="[manual_create] Number of problems to create")
@click.option(
    "--question-kind",
    default=QUESTION_MULTIPLE,
    type=click.Choice([QUESTION_MULTIPLE, QUESTION_SUBJECTIVE]),
    show_default=True,
    help="[manual_create] Question kind of the new problems",
)
# shared flags
@click.option("--batch-size", default=None, type=int, help="Records per batch (file_upload: 500, sheet_sync: from config, revalidate: page size)")
@click.option("--max-concurrency", default=None, type=int, help="Batches reconciled concurrently per chunk")
@click.option("--pool-size", default=10, type=int, show_default=True, help="Max pooled PostgreSQL connections")
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/labeling_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    file_path: str | None,
    sync_config: str,
    api_key_env: str,
    access_token_env: str,
    edits_path: str | None,
    subject: str | None,
    exam_year: int | None,
    organization: str | None,
    problem_type: str | None,
    exam_code: str | None,
    start_number: int,
    count: int | None,
    question_kind: str,
    batch_size: int | None,
    max_concurrency: int | None,
    pool_size: int,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    log_level: str,
) -> None:
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_id = run_id or str(uuid.uuid4())
    started_at = utc_now_iso()
    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")
    _validate_sizes(batch_size, max_concurrency, pool_size, run_id)

    counters = RunCounters()
    rejects = RejectWriter(Path(rejects_path))
    source_paths: dict[str, str] = {}

    try:
        if mode == "revalidate":
            asyncio.run(_run_revalidate(
                db_dsn, pool_size, counters,
                page_size=batch_size or DEFAULT_BATCH_SIZE,
                dry_run=dry_run,
            ))
            click.echo(
                f"[{run_id}] Revalidated {counters.revalidation['records_checked']} problems, "  # type: ignore[index]
                f"{counters.revalidation['issues_written']} issues"  # type: ignore[index]
            )
        elif mode == "manual_edit":
            _validate_manual_edit_flags(edits_path, run_id)
            source_paths = {"edits_path": str(edits_path)}
            try:
                edit_rows = read_edit_rows(Path(edits_path))  # type: ignore[arg-type]
            except (ManualEditError, UnicodeDecodeError) as exc:
                _fatal(run_id, str(exc))
            click.echo(f"[{run_id}] manual_edit edits_path={edits_path} rows={len(edit_rows)}")
            asyncio.run(_run_manual_edits(db_dsn, pool_size, edit_rows, counters, dry_run=dry_run))
            if dry_run:
                click.echo(f"[{run_id}] DRY RUN — edits validated, nothing written")
            click.echo(
                f"[{run_id}] edited={counters.updated_count} failed={counters.failed_count} "
                f"of {counters.records_total} problems"
            )
        elif mode == "manual_create":
            _validate_manual_create_flags(subject, exam_year, organization, count, run_id)
            request = dict(
                subject=subject,
                exam_year=exam_year,
                organization=organization,
                problem_type=problem_type,
                start_number=start_number,
                count=count,
                exam_code=exam_code,
                question_kind=question_kind,
            )
            if dry_run:
                counters.records_total = count  # type: ignore[assignment]
                click.echo(f"[{run_id}] DRY RUN — would create {count} {subject} problems from #{start_number}")
            else:
                try:
                    asyncio.run(_run_manual_create(db_dsn, pool_size, counters, **request))
                except ManualEditError as exc:
                    _fatal(run_id, str(exc))
                click.echo(
                    f"[{run_id}] created={counters.created_count} "
                    f"skipped={counters.skipped_count} (key already taken)"
                )
        else:
            if mode == "file_upload":
                _validate_file_upload_flags(file_path, run_id)
                path = Path(file_path)  # type: ignore[arg-type]
                source_paths = {"file_path": str(path)}
                try:
                    sheet = decode_file(path)
                except (UnsupportedFileError, UnreadableFileError) as exc:
                    _fatal(run_id, str(exc))
                rows = normalize_sheet(sheet, UPLOAD_FILE_OPTIONS)
                counters.absorb_rows(rows)
                _write_rejects(rows, rejects)
                records = rows.records
                history = {
                    "file_name": path.name,
                    "file_size": path.stat().st_size,
                    "source_type": "file",
                }
                effective_batch = batch_size or DEFAULT_BATCH_SIZE
                sheet_problems = None
                effective_concurrency = max_concurrency or DEFAULT_MAX_CONCURRENCY
            else:
                source_paths = {"sync_config": sync_config}
                try:
                    config = load_sync_config(Path(sync_config))
                except SyncConfigError as exc:
                    _fatal(run_id, str(exc))
                api_key = os.environ.get(api_key_env) or None
                access_token = os.environ.get(access_token_env) or None
                if not api_key and not access_token:
                    _fatal(run_id, f"sheet_sync mode requires env var {api_key_env} or {access_token_env}")
                client = SheetsClient(api_key=api_key, access_token=access_token)
                try:
                    load = collect_sheet_records(
                        client, config,
                        on_tab=lambda label, title: click.echo(f"[{run_id}] Reading {label} / {title}"),
                    )
                except SourceUnavailableError as exc:
                    _fatal(run_id, str(exc))
                counters.absorb_rows(load)
                _write_rejects(load, rejects)
                records = [p.record for p in load.problems]
                sheet_problems = load.problems
                history = {
                    "file_name": ",".join(s.spreadsheet_id for s in config.sources),
                    "file_size": None,
                    "source_type": "sheet",
                }
                effective_batch = batch_size or config.batch_size
                effective_concurrency = max_concurrency or config.max_concurrency

            counters.records_total = len(records)
            counters.rejects_written = rejects.count
            click.echo(
                f"[{run_id}] {counters.rows_read} rows read, {len(records)} normalized, "
                f"{counters.parse_errors} rejected"
            )
            asyncio.run(_run_ingest(
                run_id, db_dsn, pool_size, records, counters, history,
                batch_size=effective_batch,
                max_concurrency=effective_concurrency,
                dry_run=dry_run,
                sheet_problems=sheet_problems,
            ))
            if dry_run:
                click.echo(f"[{run_id}] DRY RUN — nothing written. Preview: {counters.preview}")
            else:
                click.echo(
                    f"[{run_id}] created={counters.created_count} updated={counters.updated_count} "
                    f"skipped={counters.skipped_count} failed={counters.failed_count}"
                )
    finally:
        rejects.close()

    report_path = write_run_report(
        run_id, started_at, mode, dry_run, source_paths, counters.to_dict(),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if counters.failed_count > 0:
        click.echo(f"[{run_id}] {counters.failed_count} records failed — exiting non-zero", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
