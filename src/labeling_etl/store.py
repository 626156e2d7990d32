"""labeling_etl.store

Persistence seam for problems, validation issues and upload history.

ProblemStore is the async protocol the reconciliation engine, the rule-engine
regeneration helper and the manual edit path talk to.  PostgresProblemStore
implements it over psycopg 3 async connections drawn from an injected
psycopg_pool.AsyncConnectionPool; there is no module-level client.

The `problem` table stores the subject-scoped sequence number in the column
`seq_index` (`index` is reserved in SQL); everywhere in Python it is
`CandidateRecord.index`.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol, Sequence, Union

from psycopg import AsyncConnection
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from labeling_etl.records import (
    RECORD_FIELDS,
    CandidateRecord,
    ExamCodeKey,
    Issue,
    StoredRecord,
    SubjectIndexKey,
)

log = logging.getLogger(__name__)

CompositeKey = Union[SubjectIndexKey, ExamCodeKey]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RecordNotFoundError(LookupError):
    """Raised when an update or patch matches no stored problem."""


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class ProblemStore(Protocol):
    async def find_by_composite_keys(self, keys: Sequence[CompositeKey]) -> list[StoredRecord]:
        ...

    async def bulk_insert_ignore_duplicates(self, records: Sequence[CandidateRecord]) -> None:
        ...

    async def update_by_composite_key(
        self, key: SubjectIndexKey, data: CandidateRecord
    ) -> StoredRecord:
        ...

    async def find_by_ids(self, ids: Sequence[str]) -> list[StoredRecord]:
        ...

    async def delete_unresolved_issues(self, record_ids: Sequence[str]) -> None:
        ...

    async def bulk_insert_issues(self, issues: Sequence[Issue]) -> None:
        ...

    async def replace_unresolved_issues(
        self, record_ids: Sequence[str], issues: Sequence[Issue]
    ) -> None:
        ...

    async def patch_by_id(self, record_id: str, changes: Mapping[str, Any]) -> StoredRecord:
        ...

    async def max_index(self, subject: str) -> int | None:
        ...

    async def list_ids(self, after_id: str | None, limit: int) -> list[str]:
        ...

    async def record_upload(self, **fields: Any) -> None:
        ...


# ---------------------------------------------------------------------------
# Column mapping
# ---------------------------------------------------------------------------

def _column(attr: str) -> str:
    return "seq_index" if attr == "index" else attr


DATA_COLUMNS: tuple[str, ...] = tuple(_column(a) for a in RECORD_FIELDS)
SELECT_COLUMNS = ", ".join(("id",) + DATA_COLUMNS + ("created_at", "updated_at"))

UPLOAD_HISTORY_COLUMNS = (
    "file_name",
    "file_size",
    "source_type",
    "total_rows",
    "success_rows",
    "failed_rows",
    "status",
    "error_log",
)


def _row_to_record(row: Mapping[str, Any]) -> StoredRecord:
    values = {attr: row[_column(attr)] for attr in RECORD_FIELDS}
    return StoredRecord(
        id=str(row["id"]),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
        **values,
    )


def _record_params(record: CandidateRecord) -> list[Any]:
    return [getattr(record, attr) for attr in RECORD_FIELDS]


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

async def open_pool(dsn: str, max_size: int = 5) -> AsyncConnectionPool:
    """Open a bounded connection pool; the caller owns closing it."""
    pool = AsyncConnectionPool(dsn, min_size=1, max_size=max_size, open=False)
    await pool.open()
    return pool


class PostgresProblemStore:
    """ProblemStore over a psycopg_pool.AsyncConnectionPool.

    Each call runs in its own pooled connection; the pool commits when the
    connection block exits cleanly and rolls back otherwise.
    """

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    async def _fetch(self, query: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, params)
                return list(await cur.fetchall())

    async def _fetch_one(self, query: str, params: Sequence[Any]) -> dict[str, Any] | None:
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, params)
                return await cur.fetchone()

    # -- lookups ------------------------------------------------------------

    async def find_by_composite_keys(self, keys: Sequence[CompositeKey]) -> list[StoredRecord]:
        subject_keys = [k for k in keys if isinstance(k, SubjectIndexKey)]
        exam_keys = [k for k in keys if isinstance(k, ExamCodeKey)]
        rows: dict[str, StoredRecord] = {}

        if subject_keys:
            for row in await self._fetch(
                f"""
                SELECT {SELECT_COLUMNS}
                FROM problem p
                JOIN unnest(%s::text[], %s::int[]) AS k(subject, seq_index)
                  USING (subject, seq_index)
                """,
                ([k.subject for k in subject_keys], [k.index for k in subject_keys]),
            ):
                record = _row_to_record(row)
                rows[record.id] = record

        if exam_keys:
            for row in await self._fetch(
                f"""
                SELECT {SELECT_COLUMNS}
                FROM problem p
                WHERE EXISTS (
                    SELECT 1
                    FROM unnest(%s::text[], %s::int[]) AS k(exam_code, problem_number)
                    WHERE p.exam_code = k.exam_code
                      AND p.problem_number IS NOT DISTINCT FROM k.problem_number
                )
                """,
                ([k.exam_code for k in exam_keys], [k.problem_number for k in exam_keys]),
            ):
                record = _row_to_record(row)
                rows[record.id] = record

        return list(rows.values())

    async def find_by_ids(self, ids: Sequence[str]) -> list[StoredRecord]:
        if not ids:
            return []
        rows = await self._fetch(
            f"SELECT {SELECT_COLUMNS} FROM problem WHERE id = ANY(%s::uuid[])",
            (list(ids),),
        )
        return [_row_to_record(r) for r in rows]

    async def max_index(self, subject: str) -> int | None:
        row = await self._fetch_one(
            "SELECT max(seq_index) AS max_index FROM problem WHERE subject = %s",
            (subject,),
        )
        return row["max_index"] if row else None

    async def list_ids(self, after_id: str | None, limit: int) -> list[str]:
        rows = await self._fetch(
            """
            SELECT id FROM problem
            WHERE %s::uuid IS NULL OR id > %s::uuid
            ORDER BY id
            LIMIT %s
            """,
            (after_id, after_id, limit),
        )
        return [str(r["id"]) for r in rows]

    # -- writes -------------------------------------------------------------

    async def bulk_insert_ignore_duplicates(self, records: Sequence[CandidateRecord]) -> None:
        if not records:
            return
        placeholders = ", ".join(["%s"] * len(DATA_COLUMNS))
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.executemany(
                    f"""
                    INSERT INTO problem ({", ".join(DATA_COLUMNS)})
                    VALUES ({placeholders})
                    ON CONFLICT DO NOTHING
                    """,
                    [_record_params(r) for r in records],
                )

    async def update_by_composite_key(
        self, key: SubjectIndexKey, data: CandidateRecord
    ) -> StoredRecord:
        assignments = ", ".join(f"{col} = %s" for col in DATA_COLUMNS)
        row = await self._fetch_one(
            f"""
            UPDATE problem
            SET {assignments}, updated_at = now()
            WHERE subject = %s AND seq_index = %s
            RETURNING {SELECT_COLUMNS}
            """,
            _record_params(data) + [key.subject, key.index],
        )
        if row is None:
            raise RecordNotFoundError(f"no problem with subject={key.subject!r} index={key.index}")
        return _row_to_record(row)

    async def patch_by_id(self, record_id: str, changes: Mapping[str, Any]) -> StoredRecord:
        unknown = set(changes) - set(RECORD_FIELDS)
        if unknown:
            raise ValueError(f"unknown problem fields: {sorted(unknown)}")
        if not changes:
            found = await self.find_by_ids([record_id])
            if not found:
                raise RecordNotFoundError(f"no problem with id={record_id}")
            return found[0]
        assignments = ", ".join(f"{_column(attr)} = %s" for attr in changes)
        row = await self._fetch_one(
            f"""
            UPDATE problem
            SET {assignments}, updated_at = now()
            WHERE id = %s::uuid
            RETURNING {SELECT_COLUMNS}
            """,
            list(changes.values()) + [record_id],
        )
        if row is None:
            raise RecordNotFoundError(f"no problem with id={record_id}")
        return _row_to_record(row)

    # -- validation issues --------------------------------------------------

    @staticmethod
    async def _delete_unresolved(conn: AsyncConnection, record_ids: Sequence[str]) -> None:
        await conn.execute(
            """
            DELETE FROM validation_issue
            WHERE problem_id = ANY(%s::uuid[]) AND NOT resolved
            """,
            (list(record_ids),),
        )

    @staticmethod
    async def _insert_issues(conn: AsyncConnection, issues: Sequence[Issue]) -> None:
        async with conn.cursor() as cur:
            await cur.executemany(
                """
                INSERT INTO validation_issue (problem_id, rule_code, severity, field, message)
                VALUES (%s, %s, %s, %s, %s)
                """,
                [(i.problem_id, i.rule_code, i.severity, i.field, i.message) for i in issues],
            )

    async def delete_unresolved_issues(self, record_ids: Sequence[str]) -> None:
        if not record_ids:
            return
        async with self._pool.connection() as conn:
            await self._delete_unresolved(conn, record_ids)

    async def bulk_insert_issues(self, issues: Sequence[Issue]) -> None:
        if not issues:
            return
        async with self._pool.connection() as conn:
            await self._insert_issues(conn, issues)

    async def replace_unresolved_issues(
        self, record_ids: Sequence[str], issues: Sequence[Issue]
    ) -> None:
        """Delete the unresolved issues of ``record_ids`` and insert ``issues``.

        Both statements share one transaction; if the insert fails the old
        unresolved issues are still there.
        """
        if not record_ids:
            return
        async with self._pool.connection() as conn:
            async with conn.transaction():
                await self._delete_unresolved(conn, record_ids)
                if issues:
                    await self._insert_issues(conn, issues)

    async def record_upload(self, **fields: Any) -> None:
        unknown = set(fields) - set(UPLOAD_HISTORY_COLUMNS)
        if unknown:
            raise ValueError(f"unknown upload_history fields: {sorted(unknown)}")
        params = dict(fields)
        if params.get("error_log") is not None:
            params["error_log"] = Jsonb(params["error_log"])
        columns = list(params)
        async with self._pool.connection() as conn:
            await conn.execute(
                f"""
                INSERT INTO upload_history ({", ".join(columns)})
                VALUES ({", ".join(["%s"] * len(columns))})
                """,
                [params[c] for c in columns],
            )
        log.debug("recorded upload history for %s", params.get("file_name"))
