"""labeling_etl.shared

Shared utilities used by the file-upload, sheet-sync and revalidate modes.
Includes RejectWriter, the typed per-row/per-batch error records, the
additive BatchOutcome counters, and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Union

# Errors beyond this many are counted but not kept.
ERROR_SAMPLE_LIMIT = 100

ERROR_KIND_PARSE = "parse"
ERROR_KIND_WRITE = "write"
ERROR_KIND_FATAL = "fatal"


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# Typed errors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParseError:
    """A source row that could not be normalized; the row is dropped."""

    row: int
    field: str | None
    message: str
    kind: str = field(default=ERROR_KIND_PARSE, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "row": self.row, "field": self.field, "message": self.message}


@dataclass(frozen=True)
class WriteError:
    """A single record whose update (or lookup-after-insert) failed."""

    row: int
    subject: str
    index: int
    message: str
    kind: str = field(default=ERROR_KIND_WRITE, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "row": self.row,
            "subject": self.subject,
            "index": self.index,
            "message": self.message,
        }


@dataclass(frozen=True)
class FatalBatchError:
    """An unexpected failure inside one batch."""

    batch_size: int
    message: str
    row: int = 0
    kind: str = field(default=ERROR_KIND_FATAL, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "row": self.row,
            "batch_size": self.batch_size,
            "message": self.message,
        }


IngestError = Union[ParseError, WriteError, FatalBatchError]


# ---------------------------------------------------------------------------
# BatchOutcome
# ---------------------------------------------------------------------------

@dataclass
class BatchOutcome:
    """Additive result counters for one batch, a chunk or a whole run.

    Counts are exact.  ``errors`` is a bounded sample; ``error_count`` is the
    true number of errors recorded.
    """

    success_count: int = 0
    created_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    error_count: int = 0
    errors: list[IngestError] = field(default_factory=list)

    def add_error(self, error: IngestError) -> None:
        self.error_count += 1
        if len(self.errors) < ERROR_SAMPLE_LIMIT:
            self.errors.append(error)

    def merge(self, other: BatchOutcome) -> BatchOutcome:
        """Fold ``other`` into this outcome in place and return self."""
        self.success_count += other.success_count
        self.created_count += other.created_count
        self.updated_count += other.updated_count
        self.skipped_count += other.skipped_count
        self.failed_count += other.failed_count
        self.error_count += other.error_count
        room = ERROR_SAMPLE_LIMIT - len(self.errors)
        if room > 0:
            self.errors.extend(other.errors[:room])
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "success_count": self.success_count,
            "created_count": self.created_count,
            "updated_count": self.updated_count,
            "skipped_count": self.skipped_count,
            "failed_count": self.failed_count,
            "error_count": self.error_count,
            "errors": [e.to_dict() for e in self.errors],
        }


# ---------------------------------------------------------------------------
# Run report
# ---------------------------------------------------------------------------

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: dict[str, Any],
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": utc_now_iso(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters,
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str, ensure_ascii=False))
    return report_path
