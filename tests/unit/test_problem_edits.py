"""Unit tests for manual edits and manual shell creation (labeling_etl.problem_edits)."""

from __future__ import annotations

import asyncio

import pytest

from labeling_etl.normalize import QUESTION_SUBJECTIVE
from labeling_etl.problem_edits import ManualEditError, apply_manual_edit, create_manual_problems
from labeling_etl.records import Issue
from labeling_etl.store import RecordNotFoundError

from fakes import build_candidate


class TestApplyManualEdit:
    def test_patch_and_revalidate(self, store):
        record = store.seed(build_candidate(answer="6"))
        asyncio.run(store.bulk_insert_issues([
            Issue("INVALID_ANSWER_RANGE", "ERROR", "old", "answer", record.id),
        ]))

        result = asyncio.run(apply_manual_edit(store, record.id, {"answer": " 4 "}))

        assert result.record.answer == "4"
        assert result.issues == []
        assert store.unresolved_issues(record.id) == []

    def test_coercion(self, store):
        record = store.seed(build_candidate())
        result = asyncio.run(apply_manual_edit(store, record.id, {
            "score": "3",
            "correct_rate": "",
            "problem_posted": "N",
            "solution_posted": "완료",
        }))
        assert result.record.score == 3.0
        assert result.record.correct_rate is None
        assert result.record.problem_posted is False
        assert result.record.solution_posted is True
        assert [i.rule_code for i in result.issues] == ["SOLUTION_WITHOUT_PROBLEM"]

    def test_edit_introduces_issue(self, store):
        record = store.seed(build_candidate())
        result = asyncio.run(apply_manual_edit(store, record.id, {"difficulty": None}))
        assert [i.rule_code for i in result.issues] == ["MISSING_DIFFICULTY"]
        assert result.issues[0].problem_id == record.id

    def test_other_records_untouched(self, store):
        record = store.seed(build_candidate(index=1))
        other = store.seed(build_candidate(index=2, exam_code="X"))
        others_issue = Issue("MISSING_SCORE", "ERROR", "keep", "score", other.id)
        asyncio.run(store.bulk_insert_issues([others_issue]))
        asyncio.run(apply_manual_edit(store, record.id, {"answer": "2"}))
        assert store.unresolved_issues(other.id) == [others_issue]

    def test_field_not_editable(self, store):
        record = store.seed(build_candidate())
        with pytest.raises(ManualEditError, match="subject"):
            asyncio.run(apply_manual_edit(store, record.id, {"subject": "국어"}))
        assert store.records[record.id].subject == "수학"

    def test_bad_number(self, store):
        record = store.seed(build_candidate())
        with pytest.raises(ManualEditError, match="score"):
            asyncio.run(apply_manual_edit(store, record.id, {"score": "two"}))

    def test_unknown_record(self, store):
        with pytest.raises(RecordNotFoundError):
            asyncio.run(apply_manual_edit(store, "missing", {"answer": "1"}))


class TestCreateManualProblems:
    def test_continues_after_max_index(self, store):
        store.seed(build_candidate(index=7, exam_code=None))
        created = asyncio.run(create_manual_problems(
            store, subject="수학", exam_year=2025, organization="시대인재",
            problem_type="2026 학년도 시대인재 1회", start_number=1, count=3,
            exam_code="250101_MATH_SDIJ1_G3",
        ))
        assert [r.index for r in created] == [8, 9, 10]
        assert [r.problem_number for r in created] == [1, 2, 3]
        assert all(r.exam_code == "250101_MATH_SDIJ1_G3" for r in created)
        assert all(not r.problem_posted for r in created)

    def test_first_shells_start_at_one(self, store):
        created = asyncio.run(create_manual_problems(
            store, subject="  국어 ", exam_year=2024, organization="교육청",
            problem_type=None, start_number=16, count=2,
        ))
        assert [(r.subject, r.index, r.problem_number) for r in created] == [
            ("국어", 1, 16), ("국어", 2, 17),
        ]

    def test_shells_get_issues(self, store):
        created = asyncio.run(create_manual_problems(
            store, subject="수학", exam_year=2024, organization="평가원",
            problem_type=None, start_number=1, count=1,
        ))
        codes = [i.rule_code for i in store.unresolved_issues(created[0].id)]
        assert codes == ["MISSING_EXAM_CODE"]

    def test_subjective_shells(self, store):
        created = asyncio.run(create_manual_problems(
            store, subject="수학", exam_year=2024, organization="평가원",
            problem_type=None, start_number=22, count=1, question_kind=QUESTION_SUBJECTIVE,
        ))
        assert created[0].question_kind == QUESTION_SUBJECTIVE

    def test_colliding_exam_keys_ignored(self, store):
        store.seed(build_candidate(index=1, exam_code="E", problem_number=2))
        created = asyncio.run(create_manual_problems(
            store, subject="수학", exam_year=2024, organization="평가원",
            problem_type=None, start_number=1, count=3, exam_code="E",
        ))
        assert [r.problem_number for r in created] == [1, 3]

    @pytest.mark.parametrize("kwargs,match", [
        ({"subject": " "}, "subject"),
        ({"organization": ""}, "organization"),
        ({"count": 0}, "count"),
        ({"start_number": 0}, "start_number"),
        ({"question_kind": "ESSAY"}, "question kind"),
    ])
    def test_invalid_requests(self, store, kwargs, match):
        args = {
            "subject": "수학", "exam_year": 2024, "organization": "평가원",
            "problem_type": None, "start_number": 1, "count": 1,
        }
        args.update(kwargs)
        with pytest.raises(ManualEditError, match=match):
            asyncio.run(create_manual_problems(store, **args))
        assert store.records == {}
