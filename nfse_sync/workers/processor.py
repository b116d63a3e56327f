"""Polling loop that claims due jobs and runs their handlers."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Mapping

from nfse_sync.application import Handler, JobContext
from nfse_sync.core.clock import Clock, utc_now
from nfse_sync.domain import Job, JobKind, JobStatus
from nfse_sync.domain.errors import (
    ClaimConflict,
    InvalidTransition,
    JobCancelled,
    RetryExhausted,
    UnknownJobKind,
    is_retryable,
)
from nfse_sync.infrastructure import JobStore

logger = logging.getLogger(__name__)


def describe_error(exc: BaseException) -> str:
    message = str(exc).strip()
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


class JobProcessor:
    """Claims up to ``batch_size`` jobs per tick and runs them on a bounded pool.

    Successful handlers complete their job. A failing handler marks the job
    failed; transient errors are then rescheduled with a linear backoff of
    ``(retry_count + 1) * base_backoff`` seconds while retries remain.
    """

    def __init__(
        self,
        store: JobStore,
        handlers: Mapping[JobKind, Handler],
        *,
        interval: float = 30.0,
        batch_size: int = 5,
        base_backoff: float = 60.0,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._handlers = dict(handlers)
        self._interval = interval
        self._batch_size = max(1, batch_size)
        self._base_backoff = base_backoff
        self._clock = clock
        self._tokens: dict[str, threading.Event] = {}
        self._tokens_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="job-processor", daemon=True)
        self._thread.start()
        logger.info("job processor started (interval=%ss, batch=%d)", self._interval, self._batch_size)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("job processor stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("job processor tick failed")
            self._stop.wait(self._interval)

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------
    def run_once(self) -> list[Job]:
        """Claim one batch, run it to the end and return the resulting job states."""

        jobs = self._store.claim_pending(self._batch_size)
        if not jobs:
            return []
        logger.debug("claimed %d jobs", len(jobs))
        with ThreadPoolExecutor(max_workers=len(jobs), thread_name_prefix="job-worker") as pool:
            outcomes = list(pool.map(self.execute, jobs))
        return [job for job in outcomes if job is not None]

    def execute(self, job: Job) -> Job | None:
        token = threading.Event()
        with self._tokens_lock:
            self._tokens[job.id] = token
        try:
            handler = self._handlers.get(job.kind)
            if handler is None:
                raise UnknownJobKind(f"no handler registered for {job.kind.value}")
            logger.info("running %s job %s for tenant %s", job.kind.value, job.id, job.tenant_id)
            result = handler(job, JobContext(job=job, cancel_event=token))
        except JobCancelled:
            return self._handle_cancelled(job)
        except Exception as exc:
            return self._handle_failure(job, exc)
        finally:
            with self._tokens_lock:
                self._tokens.pop(job.id, None)
        return self._handle_success(job, result)

    def _handle_success(self, job: Job, result: dict[str, Any] | None) -> Job | None:
        try:
            completed = self._store.complete(job.id, result)
        except ClaimConflict as exc:
            logger.warning("discarding result of job %s: %s", job.id, exc)
            return None
        logger.info("job %s completed", job.id)
        return completed

    def _handle_cancelled(self, job: Job) -> Job | None:
        current = self._store.get(job.id)
        if current.status == JobStatus.RUNNING:
            current = self._store.cancel(job.id)
        logger.info("job %s stopped after cancellation", job.id)
        return current

    def _handle_failure(self, job: Job, exc: Exception) -> Job | None:
        message = describe_error(exc)
        try:
            failed = self._store.fail(job.id, message)
        except ClaimConflict as conflict:
            logger.warning("job %s failed after losing its claim: %s (%s)", job.id, message, conflict)
            return None

        if not is_retryable(exc):
            logger.error("job %s failed permanently: %s", job.id, message)
            return failed
        if not failed.can_retry():
            logger.error("job %s failed after %d retries: %s", job.id, failed.retry_count, message)
            return failed

        retry_at = self._clock() + timedelta(seconds=self._base_backoff * (failed.retry_count + 1))
        try:
            retried = self._store.retry(job.id, retry_at)
        except (RetryExhausted, InvalidTransition) as retry_error:
            logger.error("job %s could not be rescheduled: %s", job.id, retry_error)
            return failed
        logger.warning(
            "job %s failed (%s), retry %d/%d at %s",
            job.id,
            message,
            retried.retry_count,
            retried.max_retries,
            retry_at.isoformat(),
        )
        return retried

    # ------------------------------------------------------------------
    # cancellation
    # ------------------------------------------------------------------
    def signal_cancel(self, job_id: str) -> bool:
        with self._tokens_lock:
            token = self._tokens.get(job_id)
        if token is None:
            return False
        token.set()
        return True

    def cancel(self, job_id: str) -> Job:
        job = self._store.cancel(job_id)
        self.signal_cancel(job_id)
        return job
