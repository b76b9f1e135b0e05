"""Background execution of pending readings.

``WorkerPool`` runs claimed readings through the generation pipeline with a
fixed number of asyncio workers, watches their heartbeats and redelivers
stalled jobs. ``ReadingProcessor`` is the periodic driver that feeds the pool
from the database and sweeps readings left in PROCESSING by a dead process.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Literal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tarot_engine.core.errors import (
    JobStalledError,
    NotFoundError,
    PersistenceError,
    ReadingEngineError,
    get_error_message,
)
from tarot_engine.models.reading import Reading, ReadingStatus
from tarot_engine.models.user import User
from tarot_engine.services.achievements import AchievementNotifier
from tarot_engine.services.credits_engine import grant_reading_reward, refund_reading_credit
from tarot_engine.services.pipeline import GenerationPipeline
from tarot_engine.services.progress import ProgressBroker, ProgressEvent
from tarot_engine.services.reading_status import (
    AlreadyClaimed,
    claim_reading,
    cleanup_old_failed_readings,
    find_stuck_readings,
    get_pending_readings,
    get_reading_by_id,
    mark_reading_completed,
    mark_reading_failed,
    reset_reading_to_pending,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class ReadingJob:
    reading_id: str
    user_id: str
    question: str = ""
    session_id: str | None = None
    attempts_made: int = 0
    stalled_count: int = 0


@dataclass(frozen=True)
class JobError:
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class JobResult:
    reading_id: str
    status: Literal["completed", "failed", "skipped"]
    error: JobError | None = None

    @property
    def success(self) -> bool:
        return self.status == "completed"


@dataclass
class _InFlight:
    job: ReadingJob
    last_heartbeat: float
    task: asyncio.Task | None = None
    stalled: bool = False
    # processing_started_at written by this job's claim; None until it owns the row
    claimed_at: datetime | None = None

    def beat(self) -> None:
        self.last_heartbeat = time.monotonic()


class _TransientFailure(Exception):
    def __init__(self, cause: Exception) -> None:
        super().__init__(str(cause))
        self.cause = cause


class WorkerPool:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        pipeline: GenerationPipeline,
        *,
        concurrency: int = 2,
        stalled_interval_s: float = 90.0,
        max_stalled_count: int = 1,
        max_attempts: int = 3,
        retry_delay_s: float = 2.0,
        broker: ProgressBroker | None = None,
        achievements: AchievementNotifier | None = None,
        locale: str = "th",
    ) -> None:
        self._session_factory = session_factory
        self._pipeline = pipeline
        self._concurrency = max(1, int(concurrency))
        self._stalled_interval_s = float(stalled_interval_s)
        self._max_stalled_count = max(0, int(max_stalled_count))
        self._max_attempts = max(1, int(max_attempts))
        self._retry_delay_s = float(retry_delay_s)
        self._broker = broker
        self._achievements = achievements
        self._locale = locale

        self._queue: asyncio.Queue[ReadingJob] | None = None
        self._futures: dict[str, asyncio.Future] = {}
        self._in_flight: dict[str, _InFlight] = {}
        self._workers: list[asyncio.Task] = []
        self._watcher: asyncio.Task | None = None
        self._timers: set[asyncio.TimerHandle] = set()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._workers = [asyncio.create_task(self._worker_loop(i)) for i in range(self._concurrency)]
        self._watcher = asyncio.create_task(self._watch_stalled())
        logger.info(
            "worker.pool_started concurrency=%s stalled_interval_s=%s max_stalled_count=%s",
            self._concurrency,
            self._stalled_interval_s,
            self._max_stalled_count,
        )

    async def stop(self) -> None:
        """Stop all workers; readings they were holding go back to PENDING."""
        if not self.running:
            return
        interrupted = {rid: e.claimed_at for rid, e in self._in_flight.items() if e.claimed_at is not None}
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()

        tasks = list(self._workers)
        if self._watcher is not None:
            tasks.append(self._watcher)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._watcher = None

        if interrupted:
            db = self._session_factory()
            try:
                for reading_id, claimed_at in interrupted.items():
                    reset_reading_to_pending(db, reading_id, claimed_at=claimed_at)
            except SQLAlchemyError:
                logger.exception("worker.stop_reset_failed reading_ids=%s", list(interrupted))
            finally:
                db.close()

        for future in self._futures.values():
            if not future.done():
                future.cancel()
        self._futures.clear()
        logger.info("worker.pool_stopped interrupted=%s", len(interrupted))

    async def __aenter__(self) -> "WorkerPool":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    def submit(self, job: ReadingJob) -> asyncio.Future:
        """Queue a job; a reading already queued or running shares its future."""
        if not self.running or self._queue is None:
            raise RuntimeError("worker pool is not running")
        existing = self._futures.get(job.reading_id)
        if existing is not None and not existing.done():
            return existing
        future = asyncio.get_running_loop().create_future()
        self._futures[job.reading_id] = future
        self._queue.put_nowait(job)
        logger.info("worker.job_queued reading_id=%s user_id=%s", job.reading_id, job.user_id)
        return future

    async def run_batch(self, jobs: Iterable[ReadingJob]) -> list[JobResult]:
        futures = [self.submit(job) for job in jobs]
        if not futures:
            return []
        return list(await asyncio.gather(*futures))

    def in_flight_ids(self) -> set[str]:
        """Readings this pool has queued, running or waiting for redelivery."""
        return {rid for rid, fut in self._futures.items() if not fut.done()}

    async def _worker_loop(self, worker_id: int) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                await self._run_job(job)
            except Exception:
                logger.exception("worker.loop_error worker_id=%s reading_id=%s", worker_id, job.reading_id)
                self._resolve(JobResult(job.reading_id, "failed", _job_error(ReadingEngineError("worker error"), self._locale)))
            finally:
                self._queue.task_done()

    async def _run_job(self, job: ReadingJob) -> None:
        entry = _InFlight(job=job, last_heartbeat=time.monotonic())
        task = asyncio.create_task(self._execute(job, entry))
        entry.task = task
        self._in_flight[job.reading_id] = entry
        try:
            # wait() keeps a stall cancellation of the job from cancelling this worker
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            self._in_flight.pop(job.reading_id, None)

        if entry.stalled or task.cancelled():
            await self._handle_stalled(job, entry.claimed_at)
            return
        try:
            result = task.result()
        except _TransientFailure as exc:
            await self._handle_transient(job, exc.cause, entry.claimed_at)
            return
        self._resolve(result)

    async def _watch_stalled(self) -> None:
        interval = max(0.01, self._stalled_interval_s / 2)
        while True:
            await asyncio.sleep(interval)
            now = time.monotonic()
            for entry in list(self._in_flight.values()):
                if entry.stalled or entry.task is None:
                    continue
                if now - entry.last_heartbeat > self._stalled_interval_s:
                    entry.stalled = True
                    logger.warning(
                        "worker.job_stalled reading_id=%s silent_s=%.1f stalled_count=%s",
                        entry.job.reading_id,
                        now - entry.last_heartbeat,
                        entry.job.stalled_count + 1,
                    )
                    entry.task.cancel()

    async def _execute(self, job: ReadingJob, entry: _InFlight) -> JobResult:
        db = self._session_factory()
        try:
            reading = get_reading_by_id(db, job.reading_id)
            if reading is None or reading.user_id != job.user_id:
                logger.warning("worker.reading_missing reading_id=%s user_id=%s", job.reading_id, job.user_id)
                return JobResult(job.reading_id, "failed", _job_error(NotFoundError("reading not found"), self._locale))

            if db.get(User, job.user_id) is None:
                return self._fail_and_refund(db, job, NotFoundError(f"user not found: {job.user_id}"))

            claimed = claim_reading(db, job.reading_id)
            if isinstance(claimed, AlreadyClaimed):
                return JobResult(job.reading_id, "skipped")
            entry.claimed_at = claimed.processing_started_at
            entry.beat()

            def on_progress(event: ProgressEvent) -> None:
                entry.beat()
                if self._broker is not None:
                    self._broker.publish(job.reading_id, event)

            try:
                answer = await self._pipeline.run(claimed.question, progress=on_progress)
            except ReadingEngineError as exc:
                return self._fail_and_refund(db, job, exc, claimed_at=entry.claimed_at)
            except SQLAlchemyError:
                raise
            except Exception as exc:
                logger.exception("worker.pipeline_unexpected reading_id=%s", job.reading_id)
                return self._fail_and_refund(
                    db, job, ReadingEngineError(f"{type(exc).__name__}: {exc}"), claimed_at=entry.claimed_at
                )

            completed = mark_reading_completed(db, job.reading_id, answer, claimed_at=entry.claimed_at, commit=False)
            if completed:
                grant_reading_reward(db, job.user_id, job.reading_id, commit=False)
            db.commit()
            if not completed:
                # the row left PROCESSING while we worked (stuck sweep or operator)
                return JobResult(job.reading_id, "skipped")

            if self._broker is not None:
                self._broker.publish(job.reading_id, ProgressEvent.for_step("completed"))
            if self._achievements is not None:
                self._achievements.notify_completed(
                    job.user_id,
                    job.reading_id,
                    {"card_count": len(answer.cards), "topic": answer.question_analysis.topic},
                )
            logger.info(
                "worker.job_done reading_id=%s status=completed attempts=%s",
                job.reading_id,
                answer.generation_attempts,
            )
            return JobResult(job.reading_id, "completed")
        except (SQLAlchemyError, PersistenceError) as exc:
            db.rollback()
            raise _TransientFailure(exc) from exc
        finally:
            db.close()

    def _fail_and_refund(
        self,
        db: Session,
        job: ReadingJob,
        exc: ReadingEngineError,
        *,
        claimed_at: datetime | None = None,
    ) -> JobResult:
        """FAILED transition and refund, committed together.

        Without ``claimed_at`` only a still-PENDING reading is failed; a row
        another worker is processing is left alone and the job is skipped.
        """
        error = _job_error(exc, self._locale)
        moved = mark_reading_failed(
            db,
            job.reading_id,
            error.message,
            error_code=error.code,
            claimed_at=claimed_at,
            pending_only=claimed_at is None,
            commit=False,
        )
        if not moved:
            db.commit()
            terminal = _result_from_row(job.reading_id, get_reading_by_id(db, job.reading_id))
            if terminal is not None:
                return terminal
            logger.info("worker.fail_skipped reading_id=%s reason=not_owner code=%s", job.reading_id, error.code)
            return JobResult(job.reading_id, "skipped")
        try:
            refund_reading_credit(db, job.user_id, job.reading_id, reason=f"Reading failed: {error.code}", commit=False)
        except NotFoundError:
            logger.warning("worker.refund_skipped reading_id=%s user_id=%s reason=user_missing", job.reading_id, job.user_id)
        db.commit()
        logger.warning(
            "worker.job_done reading_id=%s status=failed code=%s detail=%s",
            job.reading_id,
            error.code,
            str(exc),
        )
        return JobResult(job.reading_id, "failed", error)

    def _fail_in_new_session(
        self, job: ReadingJob, exc: ReadingEngineError, *, claimed_at: datetime | None = None
    ) -> JobResult:
        db = self._session_factory()
        try:
            return self._fail_and_refund(db, job, exc, claimed_at=claimed_at)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("worker.fail_write_failed reading_id=%s", job.reading_id)
            return JobResult(job.reading_id, "failed", _job_error(exc, self._locale))
        finally:
            db.close()

    def _terminal_result(self, job: ReadingJob) -> JobResult | None:
        db = self._session_factory()
        try:
            return _result_from_row(job.reading_id, get_reading_by_id(db, job.reading_id))
        finally:
            db.close()

    def _release(self, job: ReadingJob, claimed_at: datetime | None) -> None:
        """Hand a reading this job claimed back to PENDING before redelivery."""
        if claimed_at is None:
            return
        db = self._session_factory()
        try:
            reset_reading_to_pending(db, job.reading_id, claimed_at=claimed_at)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("worker.reset_failed reading_id=%s", job.reading_id)
        finally:
            db.close()

    async def _handle_stalled(self, job: ReadingJob, claimed_at: datetime | None) -> None:
        job.stalled_count += 1
        # the job may have finished its writes right before being cancelled
        terminal = self._terminal_result(job)
        if terminal is not None:
            self._resolve(terminal)
            return

        if job.stalled_count > self._max_stalled_count:
            self._resolve(
                self._fail_in_new_session(
                    job,
                    JobStalledError(
                        f"job stalled {job.stalled_count} times",
                        details={"stalled_count": job.stalled_count},
                    ),
                    claimed_at=claimed_at,
                )
            )
            return

        self._release(job, claimed_at)
        logger.info("worker.job_redelivered reading_id=%s stalled_count=%s", job.reading_id, job.stalled_count)
        self._requeue(job, delay_s=0)

    async def _handle_transient(self, job: ReadingJob, cause: Exception, claimed_at: datetime | None) -> None:
        job.attempts_made += 1
        if job.attempts_made >= self._max_attempts:
            logger.error(
                "worker.transient_exhausted reading_id=%s attempts=%s error=%s",
                job.reading_id,
                job.attempts_made,
                cause,
            )
            self._resolve(
                self._fail_in_new_session(
                    job,
                    PersistenceError(str(cause), details={"attempts": job.attempts_made}),
                    claimed_at=claimed_at,
                )
            )
            return

        self._release(job, claimed_at)
        delay_s = self._retry_delay_s * (2 ** (job.attempts_made - 1))
        logger.warning(
            "worker.job_retry reading_id=%s attempt=%s delay_s=%s error=%s",
            job.reading_id,
            job.attempts_made,
            delay_s,
            cause,
        )
        self._requeue(job, delay_s=delay_s)

    def _requeue(self, job: ReadingJob, *, delay_s: float) -> None:
        assert self._queue is not None
        if delay_s <= 0:
            self._queue.put_nowait(job)
            return

        def put() -> None:
            self._timers.discard(handle)
            if self._queue is not None:
                self._queue.put_nowait(job)

        handle = asyncio.get_running_loop().call_later(delay_s, put)
        self._timers.add(handle)

    def _resolve(self, result: JobResult) -> None:
        future = self._futures.pop(result.reading_id, None)
        if future is not None and not future.done():
            future.set_result(result)
        if self._broker is not None and result.status != "skipped":
            self._broker.forget(result.reading_id)


def _job_error(exc: ReadingEngineError, locale: str) -> JobError:
    return JobError(code=exc.code, message=exc.user_message(locale), details=dict(exc.details))


def _result_from_row(reading_id: str, reading: Reading | None) -> JobResult | None:
    if reading is None:
        return None
    if reading.status == ReadingStatus.COMPLETED:
        return JobResult(reading_id, "completed")
    if reading.status == ReadingStatus.FAILED:
        code = reading.error_code or "INTERNAL_ERROR"
        return JobResult(reading_id, "failed", JobError(code, reading.error_message or ""))
    return None


@dataclass(frozen=True)
class BatchStats:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    recovered: int = 0


class ReadingProcessor:
    """Feeds PENDING readings to the pool in FIFO batches."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        pool: WorkerPool,
        *,
        batch_size: int = 5,
        poll_interval_s: float = 30.0,
        stuck_after_s: float = 600.0,
        failed_retention_days: int = 7,
        cleanup_interval_s: float = 3600.0,
        locale: str = "th",
    ) -> None:
        self._session_factory = session_factory
        self._pool = pool
        self._failed_retention_days = max(1, int(failed_retention_days))
        self._cleanup_interval_s = float(cleanup_interval_s)
        self._last_cleanup: float | None = None
        self._batch_size = max(1, int(batch_size))
        self._poll_interval_s = float(poll_interval_s)
        self._stuck_after_s = float(stuck_after_s)
        self._locale = locale

    @property
    def pool(self) -> WorkerPool:
        return self._pool

    def _pending_jobs(self, limit: int) -> list[ReadingJob]:
        db = self._session_factory()
        try:
            return [
                ReadingJob(reading_id=r.id, user_id=r.user_id, question=r.question)
                for r in get_pending_readings(db, limit)
            ]
        finally:
            db.close()

    def recover_stuck(self) -> int:
        """Fail and refund readings left in PROCESSING past the hard deadline."""
        cutoff = utcnow() - timedelta(seconds=self._stuck_after_s)
        busy = self._pool.in_flight_ids()
        recovered = 0
        db = self._session_factory()
        try:
            for reading in find_stuck_readings(db, cutoff):
                if reading.id in busy:
                    continue
                message = get_error_message(JobStalledError.code, self._locale)
                moved = mark_reading_failed(
                    db,
                    reading.id,
                    message,
                    error_code=JobStalledError.code,
                    claimed_at=reading.processing_started_at,
                    commit=False,
                )
                if moved:
                    try:
                        refund_reading_credit(
                            db, reading.user_id, reading.id, reason="Reading stuck in processing", commit=False
                        )
                    except NotFoundError:
                        logger.warning("worker.refund_skipped reading_id=%s reason=user_missing", reading.id)
                    recovered += 1
                db.commit()
        finally:
            db.close()
        if recovered:
            logger.warning("worker.stuck_recovered count=%s cutoff=%s", recovered, cutoff.isoformat())
        return recovered

    async def process_pending(self, batch_size: int | None = None) -> BatchStats:
        recovered = self.recover_stuck()
        jobs = self._pending_jobs(batch_size or self._batch_size)
        if not jobs:
            return BatchStats(recovered=recovered)

        logger.info("worker.batch_start size=%s", len(jobs))
        results = await self._pool.run_batch(jobs)
        stats = BatchStats(
            processed=len(results),
            successful=sum(1 for r in results if r.status == "completed"),
            failed=sum(1 for r in results if r.status == "failed"),
            skipped=sum(1 for r in results if r.status == "skipped"),
            recovered=recovered,
        )
        logger.info(
            "worker.batch_done processed=%s successful=%s failed=%s skipped=%s recovered=%s",
            stats.processed,
            stats.successful,
            stats.failed,
            stats.skipped,
            stats.recovered,
        )
        return stats

    async def process_one(self, reading_id: str) -> JobResult:
        db = self._session_factory()
        try:
            reading = get_reading_by_id(db, reading_id)
            if reading is None:
                return JobResult(reading_id, "failed", _job_error(NotFoundError("reading not found"), self._locale))
            job = ReadingJob(reading_id=reading.id, user_id=reading.user_id, question=reading.question)
        finally:
            db.close()
        return await self._pool.submit(job)

    def cleanup_failed(self) -> int:
        """Soft delete FAILED readings older than the retention window."""
        db = self._session_factory()
        try:
            return cleanup_old_failed_readings(db, older_than_days=self._failed_retention_days)
        finally:
            db.close()

    def _cleanup_due(self) -> bool:
        now = time.monotonic()
        if self._last_cleanup is not None and now - self._last_cleanup < self._cleanup_interval_s:
            return False
        self._last_cleanup = now
        return True

    async def run_forever(self) -> None:
        delay = self._poll_interval_s
        while True:
            try:
                await self.process_pending()
                if self._cleanup_due():
                    self.cleanup_failed()
                delay = self._poll_interval_s
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("worker.poll_failed")
                delay = min(self._poll_interval_s * 8, max(delay, 1.0) * 2)
            await asyncio.sleep(delay)
