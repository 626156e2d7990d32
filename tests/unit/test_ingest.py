"""Unit tests for the batch ingestion orchestrator (labeling_etl.ingest)."""

from __future__ import annotations

import asyncio

import pytest

from labeling_etl.ingest import (
    IngestProgress,
    ingest_records,
    normalize_sheet,
    partition,
    preview_records,
    with_fallback_subject,
)
from labeling_etl.problem_rows import UPLOAD_FILE_OPTIONS
from labeling_etl.shared import ERROR_KIND_FATAL
from labeling_etl.sources import SheetData

from fakes import build_candidate

REMOTE_HEADER = ["인덱스", "과목", "시행 연도", "시행 기관", "문제 번호", "정답", "문제 탑재"]


def _math(n: int):
    return build_candidate(index=n, problem_number=n)


def _korean(n: int):
    return build_candidate(index=n, problem_number=n, subject="국어", exam_code="KOR-CODE")


class TestPartition:
    def test_even(self):
        assert partition([1, 2, 3, 4], 2) == [[1, 2], [3, 4]]

    def test_remainder(self):
        assert partition([1, 2, 3], 2) == [[1, 2], [3]]

    def test_empty(self):
        assert partition([], 3) == []


# ---------------------------------------------------------------------------
# ingest_records
# ---------------------------------------------------------------------------

class TestIngestRecords:
    def test_progress_after_every_chunk(self, store):
        seen: list[IngestProgress] = []
        records = [_math(i) for i in range(1, 6)]
        outcome = asyncio.run(ingest_records(
            store, records, batch_size=2, max_concurrency=1, on_progress=seen.append,
        ))
        assert outcome.created_count == 5
        assert [p.processed_count for p in seen] == [2, 4, 5]
        assert [p.batch_index for p in seen] == [1, 2, 3]
        assert all(p.total_batches == 3 and p.total_count == 5 for p in seen)
        assert seen[-1].success_count == 5
        assert seen[-1].percent == 100
        assert seen[0].percent == 40

    def test_chunks_group_batches(self, store):
        seen: list[IngestProgress] = []
        records = [_math(i) for i in range(1, 8)]
        asyncio.run(ingest_records(
            store, records, batch_size=2, max_concurrency=3, on_progress=seen.append,
        ))
        assert [p.processed_count for p in seen] == [6, 7]
        assert [p.batch_index for p in seen] == [3, 4]

    def test_async_callback(self, store):
        seen: list[int] = []

        async def on_progress(p: IngestProgress) -> None:
            await asyncio.sleep(0)
            seen.append(p.processed_count)

        asyncio.run(ingest_records(store, [_math(1)], on_progress=on_progress))
        assert seen == [1]

    def test_fatal_batch_does_not_affect_siblings(self, store):
        subjects = ["수학", "영어", "국어", "과탐 - 화학", "과탐 - 물리"]
        records = [
            build_candidate(index=n, problem_number=n, subject=subject, exam_code=f"CODE-{b}")
            for b, subject in enumerate(subjects, start=1)
            for n in (1, 2)
        ]
        store.fail_lookup_subjects.add("국어")
        store.seed(records[6])

        outcome = asyncio.run(ingest_records(store, records, batch_size=2, max_concurrency=5))

        assert outcome.failed_count == 2
        assert outcome.created_count == 7
        assert outcome.skipped_count == 1
        assert [e.kind for e in outcome.errors] == [ERROR_KIND_FATAL]
        stored = [r.subject for r in store.records.values()]
        assert stored.count("국어") == 0
        for subject in ("수학", "영어", "과탐 - 화학", "과탐 - 물리"):
            assert stored.count(subject) == 2

    def test_counts_add_up(self, store):
        store.seed(_math(1))
        records = [_math(1), _math(2), build_candidate(index=3, problem_number=2)]
        outcome = asyncio.run(ingest_records(store, records, batch_size=10))
        assert outcome.skipped_count == 2
        assert outcome.created_count == 1
        assert outcome.success_count + outcome.skipped_count + outcome.failed_count == 3

    def test_empty_input(self, store):
        seen: list[IngestProgress] = []
        outcome = asyncio.run(ingest_records(store, [], on_progress=seen.append))
        assert outcome.success_count == 0
        assert seen == []

    @pytest.mark.parametrize("kwargs", [{"batch_size": 0}, {"max_concurrency": 0}])
    def test_invalid_sizes(self, store, kwargs):
        with pytest.raises(ValueError):
            asyncio.run(ingest_records(store, [_math(1)], **kwargs))


class TestPreviewRecords:
    def test_counts_without_writes(self, store):
        store.seed(_math(1))
        store.seed(_math(2))
        records = [
            _math(1),                                   # unchanged
            build_candidate(index=2, problem_number=2, answer="5"),  # update
            build_candidate(index=3, problem_number=1),  # conflict
            _math(4),                                   # create
            _math(4),                                   # duplicate
        ]
        counts = asyncio.run(preview_records(store, records, batch_size=10))
        assert counts.to_dict() == {
            "to_create": 1,
            "to_update": 1,
            "unchanged": 1,
            "exam_code_conflicts": 1,
            "duplicates_in_batch": 1,
        }
        assert len(store.records) == 2
        assert store.issues == []


# ---------------------------------------------------------------------------
# normalize_sheet
# ---------------------------------------------------------------------------

class TestNormalizeSheet:
    def _sheet(self, rows):
        return SheetData(title="Math_Labeling", header=list(REMOTE_HEADER), rows=rows)

    def test_bad_rows_dropped_with_parse_errors(self):
        sheet = self._sheet([
            [1, "수학", 2024, "평가원", 1, 3, "Y"],
            ["", "수학", 2024, "평가원", 2, 3, "Y"],
            [None] * 7,
            [3, "수학", "이천", "평가원", 3, 3, "Y"],
            [4, "수학", 2024, "평가원", 4, 3, "Y"],
        ])
        result = normalize_sheet(sheet)
        assert result.rows_read == 4
        assert [r.index for r in result.records] == [1, 4]
        assert [(e.row, e.field) for e in result.errors] == [(3, "index"), (5, "exam_year")]
        assert all(e.kind == "parse" for e in result.errors)
        raw, reason = result.rejected[0]
        assert raw["과목"] == "수학"
        assert reason == "row 3: required field 'index' is missing"

    def test_fallback_subject_fills_blank(self):
        sheet = self._sheet([[1, "", 2024, "평가원", 1, 3, "Y"]])
        result = normalize_sheet(sheet, fallback_subject="수학")
        assert result.records[0].subject == "수학"

    def test_fallback_never_overrides(self):
        sheet = self._sheet([[1, "수학(사설)", 2024, "평가원", 1, 3, "Y"]])
        result = normalize_sheet(sheet, fallback_subject="수학")
        assert result.records[0].subject == "수학(사설)"

    def test_options_forwarded(self):
        sheet = SheetData(
            title="upload",
            header=["Index", "과목", "시행년도", "출제기관", "문항번호"],
            rows=[[1, "국어", 2024, "경기도교육청", 1]],
        )
        result = normalize_sheet(sheet, UPLOAD_FILE_OPTIONS)
        assert result.records[0].organization == "교육청"

    def test_duplicate_headers_kept_in_reject_row(self):
        sheet = SheetData(
            title="upload",
            header=["Index", "Worker", "Worker", ""],
            rows=[["", "a", "b", "c"]],
        )
        result = normalize_sheet(sheet)
        raw, _ = result.rejected[0]
        assert raw == {"Index": "", "Worker": "a", "Worker.2": "b", "_blank": "c"}


class TestWithFallbackSubject:
    def test_appends_when_missing(self):
        cells = [("인덱스", 1)]
        assert with_fallback_subject(cells, "영어") == [("인덱스", 1), ("과목", "영어")]

    def test_keeps_present_subject(self):
        cells = [("과목", "국어")]
        assert with_fallback_subject(cells, "영어") == cells
