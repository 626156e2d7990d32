"""Unit tests for labeling_etl.shared."""

from __future__ import annotations

import csv
import json

from labeling_etl.shared import (
    ERROR_SAMPLE_LIMIT,
    BatchOutcome,
    FatalBatchError,
    ParseError,
    RejectWriter,
    WriteError,
    write_run_report,
)


class TestRejectWriter:
    def test_lazy_open(self, tmp_path):
        path = tmp_path / "rejects" / "out.csv"
        writer = RejectWriter(path)
        writer.close()
        assert not path.exists()

    def test_writes_reason_column(self, tmp_path):
        path = tmp_path / "rejects" / "out.csv"
        writer = RejectWriter(path)
        writer.write({"인덱스": "", "과목": "수학"}, "row 2: required field 'index' is missing")
        writer.write({"인덱스": "x", "과목": "국어"}, "row 3: required field 'index' is not a whole number")
        writer.close()
        assert writer.count == 2
        with open(path, newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert rows[0]["과목"] == "수학"
        assert rows[1]["_reject_reason"].endswith("not a whole number")


class TestTypedErrors:
    def test_kinds(self):
        assert ParseError(2, "index", "m").kind == "parse"
        assert WriteError(2, "수학", 1, "m").kind == "write"
        assert FatalBatchError(10, "m").kind == "fatal"

    def test_to_dict(self):
        assert WriteError(5, "수학", 3, "boom").to_dict() == {
            "kind": "write", "row": 5, "subject": "수학", "index": 3, "message": "boom",
        }
        assert FatalBatchError(10, "m").to_dict()["batch_size"] == 10


class TestBatchOutcome:
    def test_merge_adds_counts(self):
        a = BatchOutcome(success_count=2, created_count=2, skipped_count=1)
        b = BatchOutcome(success_count=1, updated_count=1, failed_count=3)
        b.add_error(ParseError(2, None, "x"))
        merged = a.merge(b)
        assert merged is a
        assert (a.success_count, a.created_count, a.updated_count) == (3, 2, 1)
        assert (a.skipped_count, a.failed_count, a.error_count) == (1, 3, 1)
        assert len(a.errors) == 1

    def test_error_sample_bounded(self):
        outcome = BatchOutcome()
        for i in range(ERROR_SAMPLE_LIMIT + 5):
            outcome.add_error(ParseError(i, None, "x"))
        assert outcome.error_count == ERROR_SAMPLE_LIMIT + 5
        assert len(outcome.errors) == ERROR_SAMPLE_LIMIT

    def test_merge_keeps_sample_bounded(self):
        a = BatchOutcome()
        b = BatchOutcome()
        for i in range(ERROR_SAMPLE_LIMIT):
            a.add_error(ParseError(i, None, "a"))
            b.add_error(ParseError(i, None, "b"))
        a.merge(b)
        assert a.error_count == 2 * ERROR_SAMPLE_LIMIT
        assert len(a.errors) == ERROR_SAMPLE_LIMIT


class TestWriteRunReport:
    def test_report_contents(self, tmp_path):
        path = write_run_report(
            "run-1", "2024-01-01T00:00:00+00:00", "file_upload", False,
            {"file_path": "x.xlsx"}, {"created_count": 3},
            report_dir=tmp_path,
        )
        assert path == tmp_path / "run-1.json"
        report = json.loads(path.read_text(encoding="utf-8"))
        assert report["mode"] == "file_upload"
        assert report["file_path"] == "x.xlsx"
        assert report["counters"] == {"created_count": 3}
        assert "finished_at" in report
