"""DuckDB-backed job store for durable single-process deployments."""
from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

import duckdb

from nfse_sync.core.clock import Clock, utc_now
from nfse_sync.domain import DEFAULT_MAX_RETRIES, Job, JobKind, JobStatus, parse_params
from nfse_sync.domain import jobs as lifecycle
from nfse_sync.domain.errors import JobNotFound

from .jobs import clamp_page, coerce_filters

logger = logging.getLogger(__name__)

COLUMNS = [
    "id",
    "seq",
    "tenant_id",
    "kind",
    "unit_key",
    "status",
    "priority",
    "scheduled_at",
    "retry_count",
    "max_retries",
    "parameters",
    "result",
    "error_message",
    "created_at",
    "updated_at",
    "started_at",
    "completed_at",
]

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id VARCHAR NOT NULL,
    seq BIGINT NOT NULL,
    tenant_id VARCHAR NOT NULL,
    kind VARCHAR NOT NULL,
    unit_key VARCHAR NOT NULL,
    status VARCHAR NOT NULL,
    priority INTEGER NOT NULL,
    scheduled_at TIMESTAMP NOT NULL,
    retry_count INTEGER NOT NULL,
    max_retries INTEGER NOT NULL,
    parameters VARCHAR NOT NULL,
    result VARCHAR,
    error_message VARCHAR,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    started_at TIMESTAMP,
    completed_at TIMESTAMP
)
"""

SELECT_COLUMNS = ", ".join(COLUMNS)
ORDER_CLAUSE = "ORDER BY priority ASC, scheduled_at ASC, seq ASC"


def _to_db(value: datetime | None) -> datetime | None:
    """DuckDB TIMESTAMP columns hold naive UTC values."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class DuckDBJobStore:
    """Job queue persisted in a DuckDB database file.

    A single connection is shared and every statement runs under one lock,
    which keeps ``claim_pending`` mutually exclusive across threads.
    """

    def __init__(
        self,
        path: str | Path = ":memory:",
        *,
        clock: Clock = utc_now,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        database = str(path)
        if database != ":memory:":
            Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self._conn = duckdb.connect(database)
        self._clock = clock
        self._default_max_retries = default_max_retries
        self._lock = threading.Lock()
        self._conn.execute(SCHEMA)
        (max_seq,) = self._conn.execute("SELECT COALESCE(MAX(seq), 0) FROM jobs").fetchone()
        self._sequence = int(max_seq)

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._lock:
            self._conn.begin()
            try:
                yield self._conn
            except BaseException:
                self._conn.rollback()
                raise
            self._conn.commit()

    @staticmethod
    def _row_to_job(row: tuple) -> Job:
        data = dict(zip(COLUMNS, row))
        return Job(
            id=data["id"],
            sequence=data["seq"],
            tenant_id=data["tenant_id"],
            kind=JobKind(data["kind"]),
            unit_key=data["unit_key"],
            status=JobStatus(data["status"]),
            priority=data["priority"],
            scheduled_at=_from_db(data["scheduled_at"]),
            retry_count=data["retry_count"],
            max_retries=data["max_retries"],
            parameters=json.loads(data["parameters"] or "{}"),
            result=json.loads(data["result"]) if data["result"] is not None else None,
            error_message=data["error_message"],
            created_at=_from_db(data["created_at"]),
            updated_at=_from_db(data["updated_at"]),
            started_at=_from_db(data["started_at"]),
            completed_at=_from_db(data["completed_at"]),
        )

    def _select(self, conn: duckdb.DuckDBPyConnection, where: str, params: list[Any]) -> list[Job]:
        rows = conn.execute(f"SELECT {SELECT_COLUMNS} FROM jobs WHERE {where} {ORDER_CLAUSE}", params).fetchall()
        return [self._row_to_job(row) for row in rows]

    def _require(self, conn: duckdb.DuckDBPyConnection, job_id: str) -> Job:
        jobs = self._select(conn, "id = ?", [job_id])
        if not jobs:
            raise JobNotFound(f"job {job_id} not found")
        return jobs[0]

    @staticmethod
    def _insert(conn: duckdb.DuckDBPyConnection, job: Job) -> None:
        placeholders = ", ".join("?" for _ in COLUMNS)
        conn.execute(
            f"INSERT INTO jobs ({SELECT_COLUMNS}) VALUES ({placeholders})",
            [
                job.id,
                job.sequence,
                job.tenant_id,
                job.kind.value,
                job.unit_key,
                job.status.value,
                job.priority,
                _to_db(job.scheduled_at),
                job.retry_count,
                job.max_retries,
                json.dumps(job.parameters),
                json.dumps(job.result) if job.result is not None else None,
                job.error_message,
                _to_db(job.created_at),
                _to_db(job.updated_at),
                _to_db(job.started_at),
                _to_db(job.completed_at),
            ],
        )

    @staticmethod
    def _update(conn: duckdb.DuckDBPyConnection, job: Job) -> None:
        conn.execute(
            """
            UPDATE jobs SET
                status = ?,
                priority = ?,
                scheduled_at = ?,
                retry_count = ?,
                parameters = ?,
                result = ?,
                error_message = ?,
                updated_at = ?,
                started_at = ?,
                completed_at = ?
            WHERE id = ?
            """,
            [
                job.status.value,
                job.priority,
                _to_db(job.scheduled_at),
                job.retry_count,
                json.dumps(job.parameters),
                json.dumps(job.result) if job.result is not None else None,
                job.error_message,
                _to_db(job.updated_at),
                _to_db(job.started_at),
                _to_db(job.completed_at),
                job.id,
            ],
        )

    def _apply(self, job_id: str, transition, *args: Any) -> Job:
        with self._transaction() as conn:
            job = self._require(conn, job_id)
            updated = transition(job, *args, self._clock())
            if updated is not job:
                self._update(conn, updated)
            return updated

    # ------------------------------------------------------------------
    # queue operations
    # ------------------------------------------------------------------
    def enqueue(
        self,
        tenant_id: str,
        kind: JobKind | str,
        priority: int,
        not_before: datetime | None,
        payload: dict[str, Any],
        max_retries: int | None = None,
    ) -> Job:
        params = parse_params(kind, tenant_id, payload)
        job_kind = JobKind(kind)
        with self._transaction() as conn:
            existing = self._select(
                conn,
                "tenant_id = ? AND kind = ? AND unit_key = ? AND status IN (?, ?)",
                [tenant_id, job_kind.value, params.unit_key(), JobStatus.PENDING.value, JobStatus.RUNNING.value],
            )
            now = self._clock()
            if existing:
                merged = lifecycle.merge_request(existing[0], params, priority, now)
                if merged is not existing[0]:
                    self._update(conn, merged)
                    logger.info("job %s upgraded by a repeated request (priority %d)", merged.id, merged.priority)
                return merged
            self._sequence += 1
            job = lifecycle.new_job(
                sequence=self._sequence,
                tenant_id=tenant_id,
                kind=job_kind,
                params=params,
                priority=priority,
                not_before=not_before or now,
                max_retries=self._default_max_retries if max_retries is None else max_retries,
                now=now,
            )
            self._insert(conn, job)
        logger.info("enqueued %s job %s for tenant %s (%s)", job.kind.value, job.id, tenant_id, job.unit_key)
        return job

    def get(self, job_id: str) -> Job:
        with self._lock:
            return self._require(self._conn, job_id)

    def claim_pending(self, limit: int) -> list[Job]:
        if limit <= 0:
            return []
        with self._transaction() as conn:
            now = self._clock()
            rows = conn.execute(
                f"SELECT {SELECT_COLUMNS} FROM jobs WHERE status = ? AND scheduled_at <= ? {ORDER_CLAUSE} LIMIT ?",
                [JobStatus.PENDING.value, _to_db(now), int(limit)],
            ).fetchall()
            claimed = []
            for row in rows:
                running = lifecycle.start(self._row_to_job(row), now)
                self._update(conn, running)
                claimed.append(running)
            return claimed

    def complete(self, job_id: str, result: dict[str, Any] | None = None) -> Job:
        return self._apply(job_id, lifecycle.complete, result)

    def fail(self, job_id: str, error_message: str) -> Job:
        return self._apply(job_id, lifecycle.fail, error_message)

    def retry(self, job_id: str, retry_at: datetime) -> Job:
        return self._apply(job_id, lifecycle.retry, retry_at)

    def cancel(self, job_id: str) -> Job:
        return self._apply(job_id, lifecycle.cancel)

    def requeue_stale(self, started_before: datetime) -> list[Job]:
        with self._transaction() as conn:
            now = self._clock()
            stale = self._select(
                conn,
                "status = ? AND started_at IS NOT NULL AND started_at < ?",
                [JobStatus.RUNNING.value, _to_db(started_before)],
            )
            requeued = []
            for job in stale:
                updated = lifecycle.requeue(job, now)
                self._update(conn, updated)
                requeued.append(updated)
            return requeued

    def cleanup_older_than(self, cutoff: datetime) -> int:
        where = "status IN (?, ?, ?) AND completed_at IS NOT NULL AND completed_at < ?"
        params = [
            JobStatus.COMPLETED.value,
            JobStatus.FAILED.value,
            JobStatus.CANCELLED.value,
            _to_db(cutoff),
        ]
        with self._transaction() as conn:
            (count,) = conn.execute(f"SELECT COUNT(*) FROM jobs WHERE {where}", params).fetchone()
            if count:
                conn.execute(f"DELETE FROM jobs WHERE {where}", params)
            return int(count)

    def list_jobs(
        self,
        *,
        tenant_id: str | None = None,
        status: JobStatus | str | None = None,
        kind: JobKind | str | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[Job], int]:
        page, per_page = clamp_page(page, per_page)
        status_value, kind_value = coerce_filters(status, kind)
        clauses = ["1 = 1"]
        params: list[Any] = []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if status_value is not None:
            clauses.append("status = ?")
            params.append(status_value.value)
        if kind_value is not None:
            clauses.append("kind = ?")
            params.append(kind_value.value)
        where = " AND ".join(clauses)
        with self._lock:
            (total,) = self._conn.execute(f"SELECT COUNT(*) FROM jobs WHERE {where}", params).fetchone()
            rows = self._conn.execute(
                f"SELECT {SELECT_COLUMNS} FROM jobs WHERE {where} {ORDER_CLAUSE} LIMIT ? OFFSET ?",
                [*params, per_page, (page - 1) * per_page],
            ).fetchall()
        return [self._row_to_job(row) for row in rows], int(total)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
