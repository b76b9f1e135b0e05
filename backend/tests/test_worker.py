import asyncio
import random
import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import OperationalError

from tarot_engine.core.errors import AIProviderError, get_error_message
from tarot_engine.models.point_transaction import READING_REFUND, READING_REWARD, READING_SPEND, PointTransaction
from tarot_engine.models.reading import Reading, ReadingStatus
from tarot_engine.models.user import User
from tarot_engine.services.achievements import AchievementNotifier
from tarot_engine.services.credits_engine import get_balance
from tarot_engine.services.pipeline import GenerationPipeline
from tarot_engine.services.progress import ProgressBroker
from tarot_engine.services.reading_status import (
    claim_reading,
    create_pending_reading,
    get_reading_by_id,
    load_answer,
    mark_reading_failed,
)
from tarot_engine.services.submission import SubmissionAccepted, submit_reading
from tarot_engine.services.worker import ReadingJob, ReadingProcessor, WorkerPool

from helpers import HANG, QUESTION, VALID_READING_JSON, FakeLLM, StaticCatalog, add_user, make_session_factory


class RecordingSink:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.events = []

    async def reading_completed(self, user_id, reading_id, details):
        self.events.append((user_id, reading_id, details))
        if self.fail:
            raise RuntimeError("sink down")


class FlakySessions:
    """Session factory whose first ``failures`` sessions fail on every query."""

    def __init__(self, session_factory, failures: int) -> None:
        self.session_factory = session_factory
        self.failures = failures
        self.opened = 0

    def __call__(self):
        db = self.session_factory()
        self.opened += 1
        if self.failures > 0:
            self.failures -= 1

            def locked(*args, **kwargs):
                raise OperationalError("SELECT", {}, Exception("database is locked"))

            db.query = locked
        return db


class WorkerTestCase(unittest.IsolatedAsyncioTestCase):
    stalled_interval_s = 5.0
    generation_timeout_s = 5.0

    async def asyncSetUp(self):
        self.engine, self.session_factory = make_session_factory()
        self.broker = ProgressBroker()
        self.sink = RecordingSink()
        self.achievements = AchievementNotifier(self.sink)
        self.pools = []

    async def asyncTearDown(self):
        for pool in self.pools:
            await pool.stop()
        await self.achievements.drain()
        self.engine.dispose()

    def make_pool(self, llm, **kwargs) -> WorkerPool:
        pipeline = GenerationPipeline(
            llm,
            StaticCatalog(),
            generation_timeout_s=kwargs.pop("generation_timeout_s", self.generation_timeout_s),
            rng=random.Random(3),
        )
        pool = WorkerPool(
            kwargs.pop("session_factory", self.session_factory),
            pipeline,
            concurrency=kwargs.pop("concurrency", 2),
            stalled_interval_s=kwargs.pop("stalled_interval_s", self.stalled_interval_s),
            max_stalled_count=kwargs.pop("max_stalled_count", 1),
            retry_delay_s=0.01,
            broker=self.broker,
            achievements=self.achievements,
            **kwargs,
        )
        self.pools.append(pool)
        return pool

    def submit(self, user_id="user-1", question=QUESTION, **kwargs):
        db = self.session_factory()
        try:
            return submit_reading(db, user_id=user_id, question=question, **kwargs)
        finally:
            db.close()

    def reading(self, reading_id):
        db = self.session_factory()
        try:
            return get_reading_by_id(db, reading_id, include_deleted=True)
        finally:
            db.close()

    def ledger(self, reading_id):
        db = self.session_factory()
        try:
            rows = db.query(PointTransaction).filter(PointTransaction.reading_id == reading_id).all()
            return sorted(r.event_type for r in rows)
        finally:
            db.close()

    def balance(self, user_id="user-1"):
        db = self.session_factory()
        try:
            return get_balance(db, user_id)
        finally:
            db.close()


class TestWorkerPool(WorkerTestCase):
    async def test_submitted_reading_completes(self):
        add_user(self.session_factory, stars=1)
        llm = FakeLLM(VALID_READING_JSON)
        pool = self.make_pool(llm)
        await pool.start()

        futures = []
        accepted = self.submit(enqueue=lambda job: futures.append(pool.submit(job)))
        self.assertIsInstance(accepted, SubmissionAccepted)
        self.assertEqual(accepted.status, ReadingStatus.PENDING)
        self.assertEqual(self.balance(), (0, 0))

        result = await asyncio.wait_for(futures[0], timeout=5)
        self.assertTrue(result.success)

        reading = self.reading(accepted.reading_id)
        self.assertEqual(reading.status, ReadingStatus.COMPLETED)
        answer = load_answer(reading)
        self.assertIn(len(answer.cards), (3, 5))
        self.assertEqual(self.ledger(accepted.reading_id), [READING_REWARD, READING_SPEND])
        self.assertEqual(self.balance(), (0, 0))

        await self.achievements.drain()
        self.assertEqual([e[1] for e in self.sink.events], [accepted.reading_id])

    async def test_generation_failure_is_refunded(self):
        add_user(self.session_factory, free_point=1)
        llm = FakeLLM(AIProviderError("provider down"))
        pool = self.make_pool(llm)
        await pool.start()

        accepted = self.submit()
        result = await asyncio.wait_for(
            pool.submit(ReadingJob(reading_id=accepted.reading_id, user_id="user-1")), timeout=5
        )
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.error.code, "AI_PROVIDER_ERROR")
        self.assertEqual(llm.calls, 3)

        reading = self.reading(accepted.reading_id)
        self.assertEqual(reading.status, ReadingStatus.FAILED)
        self.assertEqual(reading.error_code, "AI_PROVIDER_ERROR")
        self.assertEqual(reading.error_message, get_error_message("AI_PROVIDER_ERROR", "th"))
        self.assertEqual(self.ledger(accepted.reading_id), [READING_REFUND, READING_SPEND])
        self.assertEqual(self.balance(), (1, 0))
        self.assertEqual(self.sink.events, [])

    async def test_stalled_job_is_redelivered_then_failed(self):
        add_user(self.session_factory, stars=1)
        llm = FakeLLM(HANG)
        pool = self.make_pool(llm, stalled_interval_s=0.2, generation_timeout_s=30)
        await pool.start()

        accepted = self.submit()
        result = await asyncio.wait_for(
            pool.submit(ReadingJob(reading_id=accepted.reading_id, user_id="user-1")), timeout=5
        )
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.error.code, "JOB_STALLED")
        # delivered twice: the first stall redelivers, the second one fails
        self.assertEqual(llm.calls, 2)

        reading = self.reading(accepted.reading_id)
        self.assertEqual(reading.status, ReadingStatus.FAILED)
        self.assertEqual(reading.error_code, "JOB_STALLED")
        self.assertEqual(self.ledger(accepted.reading_id), [READING_REFUND, READING_SPEND])
        self.assertEqual(self.balance(), (0, 1))

    async def test_transient_database_error_is_retried(self):
        add_user(self.session_factory, stars=1)
        llm = FakeLLM(VALID_READING_JSON)
        sessions = FlakySessions(self.session_factory, failures=1)
        pool = self.make_pool(llm, session_factory=sessions)
        await pool.start()

        accepted = self.submit()
        result = await asyncio.wait_for(
            pool.submit(ReadingJob(reading_id=accepted.reading_id, user_id="user-1")), timeout=5
        )
        self.assertEqual(result.status, "completed")
        self.assertEqual(llm.calls, 1)
        self.assertEqual(self.reading(accepted.reading_id).status, ReadingStatus.COMPLETED)
        self.assertEqual(self.ledger(accepted.reading_id), [READING_REWARD, READING_SPEND])

    async def test_persistent_database_error_fails_and_refunds_once(self):
        add_user(self.session_factory, stars=1)
        llm = FakeLLM(VALID_READING_JSON)
        sessions = FlakySessions(self.session_factory, failures=3)
        pool = self.make_pool(llm, session_factory=sessions, max_attempts=3)
        await pool.start()

        accepted = self.submit()
        result = await asyncio.wait_for(
            pool.submit(ReadingJob(reading_id=accepted.reading_id, user_id="user-1")), timeout=5
        )
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.error.code, "DATABASE_ERROR")
        self.assertEqual(llm.calls, 0)

        reading = self.reading(accepted.reading_id)
        self.assertEqual(reading.status, ReadingStatus.FAILED)
        self.assertEqual(reading.error_code, "DATABASE_ERROR")
        self.assertEqual(self.ledger(accepted.reading_id), [READING_REFUND, READING_SPEND])
        self.assertEqual(self.balance(), (0, 1))

    async def test_database_error_before_claim_leaves_other_owner_alone(self):
        add_user(self.session_factory, stars=1)
        accepted = self.submit()
        db = self.session_factory()
        try:
            stamp = claim_reading(db, accepted.reading_id).processing_started_at
        finally:
            db.close()

        llm = FakeLLM(VALID_READING_JSON)
        pool = self.make_pool(llm, session_factory=FlakySessions(self.session_factory, failures=1))
        await pool.start()
        result = await asyncio.wait_for(
            pool.submit(ReadingJob(reading_id=accepted.reading_id, user_id="user-1")), timeout=5
        )
        self.assertEqual(result.status, "skipped")
        self.assertEqual(llm.calls, 0)

        reading = self.reading(accepted.reading_id)
        self.assertEqual(reading.status, ReadingStatus.PROCESSING)
        self.assertEqual(reading.processing_started_at, stamp)
        self.assertEqual(self.ledger(accepted.reading_id), [READING_SPEND])

    async def test_exhausted_retries_do_not_fail_a_reading_owned_elsewhere(self):
        add_user(self.session_factory, stars=1)
        accepted = self.submit()
        db = self.session_factory()
        try:
            claim_reading(db, accepted.reading_id)
        finally:
            db.close()

        pool = self.make_pool(
            FakeLLM(VALID_READING_JSON), session_factory=FlakySessions(self.session_factory, failures=2), max_attempts=2
        )
        await pool.start()
        result = await asyncio.wait_for(
            pool.submit(ReadingJob(reading_id=accepted.reading_id, user_id="user-1")), timeout=5
        )
        self.assertEqual(result.status, "skipped")
        self.assertEqual(self.reading(accepted.reading_id).status, ReadingStatus.PROCESSING)
        self.assertEqual(self.ledger(accepted.reading_id), [READING_SPEND])

    async def test_two_pools_race_for_one_reading(self):
        add_user(self.session_factory, stars=1)
        llm = FakeLLM(VALID_READING_JSON)
        first = self.make_pool(llm)
        second = self.make_pool(llm)
        await first.start()
        await second.start()

        accepted = self.submit()
        job = ReadingJob(reading_id=accepted.reading_id, user_id="user-1")
        results = await asyncio.wait_for(
            asyncio.gather(first.submit(job), second.submit(ReadingJob(reading_id=job.reading_id, user_id="user-1"))),
            timeout=5,
        )
        self.assertEqual(sorted(r.status for r in results), ["completed", "skipped"])
        self.assertEqual(llm.calls, 1)
        self.assertEqual(self.ledger(accepted.reading_id), [READING_REWARD, READING_SPEND])

    async def test_duplicate_submit_shares_one_future(self):
        add_user(self.session_factory, stars=1)
        pool = self.make_pool(FakeLLM(VALID_READING_JSON))
        await pool.start()
        accepted = self.submit()
        job = ReadingJob(reading_id=accepted.reading_id, user_id="user-1")
        self.assertIs(pool.submit(job), pool.submit(job))
        await asyncio.wait_for(pool.submit(job), timeout=5)

    async def test_missing_user_fails_reading(self):
        add_user(self.session_factory, stars=1)
        pool = self.make_pool(FakeLLM(VALID_READING_JSON))
        await pool.start()
        accepted = self.submit()

        db = self.session_factory()
        try:
            db.query(User).filter(User.id == "user-1").delete()
            db.commit()
        finally:
            db.close()

        result = await asyncio.wait_for(
            pool.submit(ReadingJob(reading_id=accepted.reading_id, user_id="user-1")), timeout=5
        )
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.error.code, "NOT_FOUND")
        self.assertEqual(self.reading(accepted.reading_id).status, ReadingStatus.FAILED)

    async def test_missing_reading(self):
        pool = self.make_pool(FakeLLM(VALID_READING_JSON))
        await pool.start()
        result = await asyncio.wait_for(pool.submit(ReadingJob(reading_id="ghost", user_id="user-1")), timeout=5)
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.error.code, "NOT_FOUND")

    async def test_stop_returns_running_reading_to_pending(self):
        add_user(self.session_factory, stars=1)
        pool = self.make_pool(FakeLLM(HANG))
        await pool.start()
        accepted = self.submit()
        future = pool.submit(ReadingJob(reading_id=accepted.reading_id, user_id="user-1"))

        for _ in range(100):
            if self.reading(accepted.reading_id).status == ReadingStatus.PROCESSING:
                break
            await asyncio.sleep(0.01)
        await pool.stop()

        self.assertTrue(future.cancelled())
        self.assertEqual(self.reading(accepted.reading_id).status, ReadingStatus.PENDING)
        self.assertEqual(self.ledger(accepted.reading_id), [READING_SPEND])

    async def test_failing_achievement_sink_does_not_affect_reading(self):
        self.sink.fail = True
        add_user(self.session_factory, stars=1)
        pool = self.make_pool(FakeLLM(VALID_READING_JSON))
        await pool.start()
        accepted = self.submit()
        result = await asyncio.wait_for(
            pool.submit(ReadingJob(reading_id=accepted.reading_id, user_id="user-1")), timeout=5
        )
        await self.achievements.drain()
        self.assertTrue(result.success)
        self.assertEqual(len(self.sink.events), 1)
        self.assertEqual(self.reading(accepted.reading_id).status, ReadingStatus.COMPLETED)


class TestReadingProcessor(WorkerTestCase):
    async def test_batch_is_processed_in_order(self):
        add_user(self.session_factory, stars=3)
        llm = FakeLLM(VALID_READING_JSON)
        pool = self.make_pool(llm, concurrency=1)
        await pool.start()
        processor = ReadingProcessor(self.session_factory, pool, batch_size=2)

        ids = [self.submit(question=f"Will my plan number {i} work out?").reading_id for i in range(3)]
        stats = await asyncio.wait_for(processor.process_pending(), timeout=5)
        self.assertEqual((stats.processed, stats.successful, stats.failed), (2, 2, 0))
        self.assertEqual(self.reading(ids[0]).status, ReadingStatus.COMPLETED)
        self.assertEqual(self.reading(ids[1]).status, ReadingStatus.COMPLETED)
        self.assertEqual(self.reading(ids[2]).status, ReadingStatus.PENDING)

        stats = await asyncio.wait_for(processor.process_pending(), timeout=5)
        self.assertEqual(stats.processed, 1)
        stats = await processor.process_pending()
        self.assertEqual(stats.processed, 0)

    async def test_process_one(self):
        add_user(self.session_factory, stars=1)
        pool = self.make_pool(FakeLLM(VALID_READING_JSON))
        await pool.start()
        processor = ReadingProcessor(self.session_factory, pool)
        accepted = self.submit()

        result = await asyncio.wait_for(processor.process_one(accepted.reading_id), timeout=5)
        self.assertTrue(result.success)
        again = await asyncio.wait_for(processor.process_one(accepted.reading_id), timeout=5)
        self.assertEqual(again.status, "skipped")
        missing = await processor.process_one("ghost")
        self.assertEqual(missing.error.code, "NOT_FOUND")

    async def test_stuck_processing_is_failed_and_refunded(self):
        add_user(self.session_factory, stars=1)
        pool = self.make_pool(FakeLLM(VALID_READING_JSON))
        await pool.start()
        processor = ReadingProcessor(self.session_factory, pool, stuck_after_s=60)
        accepted = self.submit()

        db = self.session_factory()
        try:
            claim_reading(db, accepted.reading_id)
            db.query(Reading).filter(Reading.id == accepted.reading_id).update(
                {Reading.processing_started_at: datetime.now(timezone.utc) - timedelta(minutes=5)}
            )
            db.commit()
        finally:
            db.close()

        stats = await processor.process_pending()
        self.assertEqual(stats.recovered, 1)
        reading = self.reading(accepted.reading_id)
        self.assertEqual(reading.status, ReadingStatus.FAILED)
        self.assertEqual(reading.error_code, "JOB_STALLED")
        self.assertEqual(self.ledger(accepted.reading_id), [READING_REFUND, READING_SPEND])
        self.assertEqual(self.balance(), (0, 1))

    async def test_cleanup_soft_deletes_old_failures(self):
        pool = self.make_pool(FakeLLM(VALID_READING_JSON))
        processor = ReadingProcessor(self.session_factory, pool, failed_retention_days=7)
        db = self.session_factory()
        try:
            old = create_pending_reading(db, "user-1", "Question one here")
            recent = create_pending_reading(db, "user-1", "Question two here")
            mark_reading_failed(db, old.id, "bad")
            mark_reading_failed(db, recent.id, "bad")
            db.query(Reading).filter(Reading.id == old.id).update(
                {Reading.processing_completed_at: datetime.now(timezone.utc) - timedelta(days=8)}
            )
            db.commit()
        finally:
            db.close()

        self.assertEqual(processor.cleanup_failed(), 1)
        self.assertTrue(self.reading(old.id).is_deleted)
        self.assertFalse(self.reading(recent.id).is_deleted)


class TestSubmission(WorkerTestCase):
    async def test_insufficient_credits_creates_nothing(self):
        add_user(self.session_factory)
        result = self.submit()
        self.assertEqual(result.required, 1)
        db = self.session_factory()
        try:
            self.assertEqual(db.query(Reading).count(), 0)
            self.assertEqual(db.query(PointTransaction).count(), 0)
        finally:
            db.close()

    async def test_resubmitting_same_reading_id_is_not_charged(self):
        add_user(self.session_factory, stars=2)
        first = self.submit(reading_id="client-key-1")
        second = self.submit(reading_id="client-key-1")
        self.assertEqual(first.reading_id, "client-key-1")
        self.assertTrue(second.replayed)
        self.assertEqual(self.balance(), (0, 1))

    async def test_questions_are_filtered_before_charging(self):
        from tarot_engine.core.errors import ValidationError

        add_user(self.session_factory, stars=1)
        with self.assertRaises(ValidationError):
            self.submit(question="short")
        self.assertEqual(self.balance(), (0, 1))


if __name__ == "__main__":
    unittest.main()
