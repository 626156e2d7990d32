"""Unit tests for the read-side sheet cache (labeling_etl.sheet_cache)."""

from __future__ import annotations

import asyncio

import pytest

from labeling_etl.config import SheetSource, SyncConfig
from labeling_etl.sheet_cache import (
    STATE_EMPTY,
    STATE_READY,
    STATE_STALE,
    STATUS_COMPLETED,
    STATUS_NOT_STARTED,
    STATUS_PROBLEM_ONLY,
    CachedProblem,
    CacheNotReadyError,
    SheetCache,
    collect_sheet_records,
    subject_category,
)
from labeling_etl.sources import SheetData

from fakes import build_candidate

HEADER = ["인덱스", "과목", "시행 연도", "시행 기관", "문제 번호"]


class FakeSheetsClient:
    def __init__(self, spreadsheets: dict[str, dict[str, SheetData]]) -> None:
        self._spreadsheets = spreadsheets
        self.fetched: list[str] = []

    def list_tabs(self, spreadsheet_id: str) -> list[str]:
        return list(self._spreadsheets[spreadsheet_id])

    def fetch_tab(self, spreadsheet_id: str, title: str) -> SheetData:
        self.fetched.append(title)
        return self._spreadsheets[spreadsheet_id][title]


def _problems() -> list[CachedProblem]:
    p1 = build_candidate(
        index=1, exam_code="A", problem_number=1,
        problem_worker="kim", solution_worker="lee",
    )
    p2 = build_candidate(
        index=2, exam_code="A", problem_number=2, solution_posted=False,
        problem_worker="kim",
    )
    p3 = build_candidate(
        index=1, subject="국어", exam_code="B", problem_number=1, exam_year=2023,
        organization="교육청", problem_posted=False, solution_posted=False, correct_rate=None,
    )
    p4 = build_candidate(
        index=1, subject="영어(사설)", exam_code=None, problem_number=1,
        organization="사설", problem_worker="park", solution_worker="kim",
    )
    return [
        CachedProblem("public", "Math_Labeling", p1),
        CachedProblem("public", "Math_Labeling", p2),
        CachedProblem("public", "Korean_Labeling", p3),
        CachedProblem("private", "IDX_EngPrivQ", p4),
    ]


@pytest.fixture
def cache() -> SheetCache:
    c = SheetCache()
    asyncio.run(c.refresh(_problems))
    return c


def _ids(page) -> list[str]:
    return [p.id for p in page.problems]


# ---------------------------------------------------------------------------
# collect_sheet_records
# ---------------------------------------------------------------------------

class TestCollectSheetRecords:
    def test_reads_wanted_tabs_with_subject_fallback(self):
        client = FakeSheetsClient({
            "S1": {
                "Math_Labeling": SheetData("Math_Labeling", HEADER, [
                    [1, "", 2024, "평가원", 1],
                    ["", "", 2024, "평가원", 2],
                ]),
                "Korean_Labeling": SheetData("Korean_Labeling", HEADER, [[1, "국어", 2024, "평가원", 1]]),
            },
            "S2": {
                "IDX_EngPrivQ": SheetData("IDX_EngPrivQ", HEADER, [[7, None, 2025, "시대인재", 3]]),
                "Notes": SheetData("Notes", ["memo"], [["x"]]),
            },
        })
        config = SyncConfig(sources=[
            SheetSource("public", "공교육", "S1", tabs=("Math_Labeling",)),
            SheetSource("private", "사설", "S2", exclude_tabs=("Notes",)),
        ])
        visited: list[tuple[str, str]] = []

        load = collect_sheet_records(client, config, on_tab=lambda label, tab: visited.append((label, tab)))

        assert client.fetched == ["Math_Labeling", "IDX_EngPrivQ"]
        assert visited == [("공교육", "Math_Labeling"), ("사설", "IDX_EngPrivQ")]
        assert [p.id for p in load.problems] == ["public_Math_Labeling_1", "private_IDX_EngPrivQ_7"]
        assert [p.record.subject for p in load.problems] == ["수학", "영어(사설)"]
        assert load.problems[1].record.organization == "시대인재"
        assert (load.tabs_read, load.rows_read) == (2, 3)
        assert [(e.row, e.field) for e in load.errors] == [(3, "index")]
        assert len(load.rejected) == 1


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    def test_starts_empty(self):
        c = SheetCache()
        assert c.state == STATE_EMPTY
        assert not c.status().is_ready
        with pytest.raises(CacheNotReadyError):
            c.query()

    def test_refresh_ready(self, cache):
        status = cache.status()
        assert status.state == STATE_READY
        assert status.total_problems == 4
        assert status.last_updated is not None
        assert status.last_error is None

    def test_async_loader(self):
        async def loader():
            return _problems()[:1]

        c = SheetCache()
        result = asyncio.run(c.refresh(loader))
        assert result.success
        assert result.count == 1

    def test_failure_from_empty(self):
        def loader():
            raise RuntimeError("sheet gone")

        c = SheetCache()
        result = asyncio.run(c.refresh(loader))
        assert not result.success
        assert result.message == "sheet gone"
        assert c.state == STATE_EMPTY
        assert c.last_error == "sheet gone"

    def test_failure_keeps_previous_snapshot(self, cache):
        def loader():
            raise RuntimeError("quota exceeded")

        result = asyncio.run(cache.refresh(loader))
        assert not result.success
        assert result.count == 4
        assert cache.state == STATE_READY
        assert cache.query().total == 4
        assert cache.status().last_error == "quota exceeded"

    def test_stale_while_refreshing_and_second_refresh_refused(self, cache):
        observed: dict = {}

        async def loader():
            observed["state"] = cache.state
            observed["readable"] = cache.query().total
            observed["inner"] = await cache.refresh(lambda: [])
            return _problems()[:2]

        result = asyncio.run(cache.refresh(loader))
        assert observed["state"] == STATE_STALE
        assert observed["readable"] == 4
        assert not observed["inner"].success
        assert observed["inner"].message == "refresh already in progress"
        assert result.success
        assert cache.state == STATE_READY
        assert cache.query().total == 2


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

class TestQuery:
    def test_default_sort_is_index_ascending(self, cache):
        page = cache.query()
        assert page.total == 4
        assert [p.record.index for p in page.problems] == [1, 1, 1, 2]

    def test_filters(self, cache):
        assert _ids(cache.query(subject="국어")) == ["public_Korean_Labeling_1"]
        assert cache.query(exam_year="2024").total == 3
        assert cache.query(exam_year=2023).total == 1
        assert cache.query(organization="사설").total == 1
        assert cache.query(exam_code="A").total == 2
        assert _ids(cache.query(worker="lee")) == ["public_Math_Labeling_1"]
        assert cache.query(worker="kim").total == 3

    def test_status_filters(self, cache):
        assert _ids(cache.query(status=STATUS_NOT_STARTED)) == ["public_Korean_Labeling_1"]
        assert _ids(cache.query(status=STATUS_PROBLEM_ONLY)) == ["public_Math_Labeling_2"]
        assert cache.query(status=STATUS_COMPLETED).total == 2

    def test_search(self, cache):
        assert _ids(cache.query(search="b")) == ["public_Korean_Labeling_1"]
        assert cache.query(search="영어").total == 1

    def test_sort_desc(self, cache):
        assert cache.query(sort_by="index", sort_order="desc").problems[0].record.index == 2

    def test_nulls_first_ascending(self, cache):
        page = cache.query(sort_by="correct_rate")
        assert page.problems[0].record.correct_rate is None

    def test_pagination(self, cache):
        page = cache.query(page=2, limit=3)
        assert page.total == 4
        assert len(page.problems) == 1
        assert (page.page, page.limit) == (2, 3)

    def test_bad_arguments(self, cache):
        with pytest.raises(ValueError):
            cache.query(sort_by="nope")
        with pytest.raises(ValueError):
            cache.query(sort_order="up")
        with pytest.raises(ValueError):
            cache.query(status="done")


class TestAggregates:
    def test_filter_options(self, cache):
        assert cache.filter_options() == {
            "subjects": ["국어", "수학", "영어(사설)"],
            "exam_years": [2024, 2023],
            "organizations": ["교육청", "사설", "평가원"],
            "workers": ["kim", "lee", "park"],
        }

    def test_stats(self, cache):
        stats = cache.stats()
        assert (stats["total"], stats["problem_posted"], stats["solution_posted"]) == (4, 3, 2)
        assert (stats["completed"], stats["not_started"], stats["in_progress"]) == (2, 1, 1)
        assert stats["by_subject"]["수학"] == {"total": 2, "problem_posted": 2, "solution_posted": 1}
        kim = stats["by_worker"]["kim"]
        assert (kim["problem_count"], kim["solution_count"]) == (2, 1)
        assert kim["by_category"]["수학"] == {"problem_count": 2, "solution_count": 0}
        assert kim["by_category"]["영어"] == {"problem_count": 0, "solution_count": 1}

    def test_exam_groups(self, cache):
        groups = cache.exam_groups()
        assert [g["exam_code"] for g in groups] == ["A", "", "B"]
        a = groups[0]
        assert (a["total_count"], a["problem_posted_count"], a["solution_posted_count"]) == (2, 2, 1)

    def test_exam_groups_filtered(self, cache):
        assert [g["exam_code"] for g in cache.exam_groups(exam_year=2023)] == ["B"]

    @pytest.mark.parametrize("subject,category", [
        ("국어(사설)", "국어"),
        ("수학", "수학"),
        ("ETS(사설)", "영어"),
        ("과탐 - 물리", "탐구"),
    ])
    def test_subject_category(self, subject, category):
        assert subject_category(subject) == category


# ---------------------------------------------------------------------------
# Write-through
# ---------------------------------------------------------------------------

class TestSaveToStore:
    def test_routes_through_orchestrator(self, cache, store):
        outcome = asyncio.run(cache.save_to_store(store, batch_size=2, max_concurrency=2))
        assert outcome.created_count == 4
        assert len(store.records) == 4

        again = asyncio.run(cache.save_to_store(store, batch_size=2, max_concurrency=2))
        assert again.skipped_count == 4

    def test_empty_cache_refused(self, store):
        with pytest.raises(CacheNotReadyError):
            asyncio.run(SheetCache().save_to_store(store, batch_size=2, max_concurrency=1))

    def test_loaded_but_no_records_refused(self, store):
        c = SheetCache()
        asyncio.run(c.refresh(lambda: []))
        with pytest.raises(CacheNotReadyError):
            asyncio.run(c.save_to_store(store, batch_size=2, max_concurrency=1))
