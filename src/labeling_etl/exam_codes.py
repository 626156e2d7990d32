"""labeling_etl.exam_codes

Organization canonicalization and exam-code generation for upload files.

Upload spreadsheets often leave the exam code blank but describe the exam in
the free-text problem type column, e.g. "고3 2006.10.12 학력평가" or
"2026 학년도 전국시대인재 1회".  From that text plus subject, sub-category and
the raw organization we derive a code of the form

    [yyMMdd]_[SUBJECT]_[ORG][round]_[grade]      e.g. 240604_MATH_SDIJ_G3
"""

from __future__ import annotations

import re

PRIVATE_ORGANIZATION = "사설"

PRIVATE_ORG_CODES: dict[str, str] = {
    "시대인재": "SDIJ",
    "강남대성": "KNDS",
    "대성": "KNDS",
    "종로": "JONG",
    "이투스": "ETOOS",
    "메가스터디": "MEGA",
}

_FULL_DATE_RE = re.compile(r"(\d{4})\.(\d{1,2})\.(\d{1,2})")
_SCHOOL_YEAR_RE = re.compile(r"(\d{4})\s*학년도")
_ROUND_RE = re.compile(r"(\d+)\s*회")


def canonicalize_organization(value: str) -> str:
    """Fold an organization name to 교육청 / 평가원 / EBS, else 사설."""
    normalized = value.lower().strip()
    if "교육청" in normalized:
        return "교육청"
    if "평가원" in normalized:
        return "평가원"
    if "ebs" in normalized:
        return "EBS"
    return PRIVATE_ORGANIZATION


def subject_code(subject: str, sub_category: str | None = None) -> str:
    sub = (sub_category or "").lower()

    if subject == "국어":
        if "화법" in sub or "작문" in sub:
            return "KOR_SPW"
        if "언어" in sub or "매체" in sub:
            return "KOR_LNM"
        return "KOR"
    if subject == "수학":
        if "확률" in sub or "통계" in sub:
            return "MATH_PS"
        if "미적분" in sub:
            return "MATH_CAL"
        if "기하" in sub:
            return "MATH_GEO"
        if "가형" in sub:
            return "MATH_GA"
        if "나형" in sub:
            return "MATH_NA"
        return "MATH"
    if subject == "영어":
        return "ENG"
    if "물리" in subject:
        return "SCI_PHY"
    if "화학" in subject:
        return "SCI_CHM"
    if "생명" in subject or "생물" in subject:
        return "SCI_BIO"
    if "지구과학" in subject:
        return "SCI_EAS"
    return subject[:3].upper()


def organization_code(raw_organization: str) -> str:
    org = raw_organization.lower()
    if "수능" in org:
        return "S"
    if "평가원" in org:
        return "M"
    if "교육청" in org:
        return "H"
    for name, code in PRIVATE_ORG_CODES.items():
        if name in org:
            return code
    return raw_organization[:4].upper()


def _date_code(problem_type: str, exam_year: int) -> str:
    m = _FULL_DATE_RE.search(problem_type)
    if m:
        year, month, day = m.groups()
        return year[2:] + month.zfill(2) + day.zfill(2)
    m = _SCHOOL_YEAR_RE.search(problem_type)
    if m:
        return m.group(1)[2:] + "0101"
    return str(exam_year)[2:] + "0101"


def _grade_code(problem_type: str) -> str:
    if "고1" in problem_type:
        return "G1"
    if "고2" in problem_type:
        return "G2"
    return "G3"


def generate_exam_code(
    problem_type: str,
    subject: str,
    raw_organization: str,
    exam_year: int,
    sub_category: str | None = None,
) -> str:
    """Build an exam code from the free-text problem type.

    The round number (e.g. '3회') is appended to the organization code when
    present.  Grade defaults to G3.
    """
    date_code = _date_code(problem_type, exam_year)
    m = _ROUND_RE.search(problem_type)
    round_no = m.group(1) if m else ""
    return (
        f"{date_code}_{subject_code(subject, sub_category)}_"
        f"{organization_code(raw_organization)}{round_no}_{_grade_code(problem_type)}"
    )
