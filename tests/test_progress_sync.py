"""
Unit tests for WriteScheduler and ProgressSync.

Timings are kept in tens of milliseconds; assertions leave wide margins
around each deadline.
"""
import asyncio
import unittest
from unittest.mock import AsyncMock

from exam_attempt.answer_store import AnswerStateStore
from exam_attempt.exceptions import StorageError
from exam_attempt.models import TimerAnchor
from exam_attempt.progress_sync import ProgressSync, WriteScheduler
from exam_attempt.session_store import SessionStore
from exam_attempt.snapshot import PersistedSnapshot
from tests.test_fixtures import BASE_EPOCH_MS, ExamFixtures, RecordingRemoteStore, async_test


class TestWriteScheduler(unittest.TestCase):
    """Test cases for write coalescing."""

    def setUp(self):
        self.writes = []

    async def _write(self):
        self.writes.append(asyncio.get_running_loop().time())

    @async_test
    async def test_bounded_change_written_within_max_latency(self):
        scheduler = WriteScheduler(self._write, quiet_period=1.0, max_latency=0.03, min_interval=0)
        scheduler.notify(bounded=True)
        self.assertTrue(scheduler.has_pending)
        await asyncio.sleep(0.15)
        self.assertEqual(len(self.writes), 1)
        self.assertFalse(scheduler.has_pending)
        self.assertEqual(scheduler.write_count, 1)

    @async_test
    async def test_burst_is_coalesced(self):
        scheduler = WriteScheduler(self._write, quiet_period=0.05, max_latency=0.05, min_interval=0)
        for _ in range(10):
            scheduler.notify(bounded=True)
        await asyncio.sleep(0.2)
        self.assertEqual(len(self.writes), 1)

    @async_test
    async def test_unbounded_change_waits_for_quiet_period(self):
        scheduler = WriteScheduler(self._write, quiet_period=0.2, max_latency=0.01, min_interval=0)
        scheduler.notify(bounded=False)
        await asyncio.sleep(0.05)
        self.assertEqual(self.writes, [])
        await asyncio.sleep(0.3)
        self.assertEqual(len(self.writes), 1)

    @async_test
    async def test_min_interval_between_writes(self):
        scheduler = WriteScheduler(self._write, quiet_period=0.01, max_latency=0.01, min_interval=0.2)
        scheduler.notify()
        await asyncio.sleep(0.05)
        self.assertEqual(len(self.writes), 1)

        scheduler.notify()
        await asyncio.sleep(0.05)
        self.assertEqual(len(self.writes), 1)
        await asyncio.sleep(0.3)
        self.assertEqual(len(self.writes), 2)
        self.assertGreaterEqual(self.writes[1] - self.writes[0], 0.19)

    @async_test
    async def test_change_during_write_is_written_afterwards(self):
        release = asyncio.Event()
        started = []

        async def slow_write():
            started.append(True)
            if len(started) == 1:
                await release.wait()

        scheduler = WriteScheduler(slow_write, quiet_period=0.01, max_latency=0.01, min_interval=0)
        scheduler.notify()
        await asyncio.sleep(0.05)
        self.assertTrue(scheduler.is_writing)

        scheduler.notify()
        await asyncio.sleep(0.05)
        self.assertEqual(len(started), 1)

        release.set()
        await asyncio.sleep(0.1)
        self.assertEqual(len(started), 2)

    @async_test
    async def test_failed_write_is_counted_and_retried_on_next_change(self):
        calls = []

        async def flaky_write():
            calls.append(True)
            if len(calls) == 1:
                raise StorageError("offline")

        scheduler = WriteScheduler(flaky_write, quiet_period=0.01, max_latency=0.01, min_interval=0)
        scheduler.notify()
        await asyncio.sleep(0.05)
        self.assertEqual(scheduler.failure_count, 1)

        scheduler.notify()
        await asyncio.sleep(0.05)
        self.assertEqual(scheduler.write_count, 1)
        self.assertEqual(len(calls), 2)

    @async_test
    async def test_cancel_drops_pending_write(self):
        scheduler = WriteScheduler(self._write, quiet_period=0.05, max_latency=0.05, min_interval=0)
        scheduler.notify()
        self.assertTrue(scheduler.cancel())
        self.assertFalse(scheduler.cancel())
        await asyncio.sleep(0.1)
        self.assertEqual(self.writes, [])


class TestProgressSync(unittest.TestCase):
    """Test cases for local caching, remote writes and resume."""

    def setUp(self):
        self.questions = ExamFixtures.create_sample_questions()
        self.answer_store = AnswerStateStore(self.questions)
        self.session_store = SessionStore()
        self.remote = RecordingRemoteStore()
        self.session_store.save_anchor(1, "u", TimerAnchor(BASE_EPOCH_MS, 600000, 0))
        self.sync = ProgressSync(
            1, "u", self.answer_store, self.session_store, self.remote,
            self._snapshot, ExamFixtures.create_fast_settings(),
        )
        self.sync.attach()

    def _snapshot(self):
        state = self.answer_store.export_state()
        return PersistedSnapshot(
            quiz_id=1,
            user_id="u",
            answers=state.answers,
            flagged=state.flagged,
            bookmarked=state.bookmarked,
            marked_for_review=state.marked_for_review,
            visited=state.visited,
            time_spent_ms=state.time_spent_ms,
            started_at_epoch_ms=BASE_EPOCH_MS,
            duration_ms=600000,
            revision=self.answer_store.revision,
        )

    def _local(self):
        return PersistedSnapshot.decode(self.session_store.get_snapshot(1, "u"))

    @async_test
    async def test_mutation_saves_local_immediately(self):
        self.answer_store.select_option(1, 1)
        local = self._local()
        self.assertEqual(local.answers, {1: [1]})
        self.assertEqual(local.revision, 1)

    @async_test
    async def test_answer_triggers_partial_remote_write(self):
        self.answer_store.select_option(2, 0)
        await asyncio.gather(*self.sync.pending_tasks)
        partial = self.remote.upsert_calls[0]
        self.assertEqual(partial['answers'], {"2": [0]})
        self.assertEqual(partial['revision'], 1)
        self.assertNotIn('flagged', partial)

    @async_test
    async def test_scheduler_writes_full_snapshot(self):
        self.answer_store.toggle_flag(3)
        await asyncio.sleep(0.15)
        row = await self.remote.get_progress(1, "u")
        self.assertEqual(row['flagged'], {"3": True})
        self.assertEqual(row['revision'], 1)

    @async_test
    async def test_partial_write_failure_is_swallowed(self):
        self.remote.upsert_error = StorageError("offline")
        self.answer_store.select_option(1, 1)
        results = await asyncio.gather(*self.sync.pending_tasks)
        self.assertEqual(results, [False])
        self.assertEqual(self._local().answers, {1: [1]})

    @async_test
    async def test_flush_on_unload(self):
        self.answer_store.select_option(1, 1)
        self.assertTrue(await self.sync.flush_on_unload())
        self.assertFalse(self.sync.scheduler.has_pending)
        row = await self.remote.get_progress(1, "u")
        self.assertEqual(row['answers'], {"1": [1]})

    @async_test
    async def test_flush_on_unload_times_out(self):
        self.remote.upsert_delay = 0.5
        self.assertFalse(await self.sync.flush_on_unload(timeout=0.05))

    @async_test
    async def test_resume_without_prior_progress(self):
        self.assertIsNone(await self.sync.resume(self.questions))

    @async_test
    async def test_resume_prefers_higher_remote_revision(self):
        self.session_store.save_snapshot(1, "u", PersistedSnapshot(1, "u", answers={1: [0]}, revision=2).encode())
        await self.remote.upsert_progress(1, "u", PersistedSnapshot(1, "u", answers={1: [1]}, revision=5).to_dict())

        chosen = await self.sync.resume(self.questions)

        self.assertEqual(chosen.revision, 5)
        self.assertEqual(chosen.answers, {1: [1]})
        self.assertEqual(self._local().revision, 5)

    @async_test
    async def test_resume_prefers_higher_local_revision(self):
        self.session_store.save_snapshot(1, "u", PersistedSnapshot(1, "u", answers={1: [0]}, revision=6).encode())
        await self.remote.upsert_progress(1, "u", PersistedSnapshot(1, "u", answers={1: [1]}, revision=5).to_dict())
        chosen = await self.sync.resume(self.questions)
        self.assertEqual(chosen.answers, {1: [0]})

    @async_test
    async def test_resume_tie_goes_to_local(self):
        self.session_store.save_snapshot(1, "u", PersistedSnapshot(1, "u", answers={1: [0]}, revision=3).encode())
        await self.remote.upsert_progress(1, "u", PersistedSnapshot(1, "u", answers={1: [2]}, revision=3).to_dict())
        chosen = await self.sync.resume(self.questions)
        self.assertEqual(chosen.answers, {1: [0]})

    @async_test
    async def test_resume_discards_unreadable_local(self):
        self.session_store.save_snapshot(1, "u", "{corrupted")
        await self.remote.upsert_progress(1, "u", PersistedSnapshot(1, "u", answers={3: [0]}, revision=1).to_dict())
        chosen = await self.sync.resume(self.questions)
        self.assertEqual(chosen.answers, {3: [0]})

    @async_test
    async def test_resume_survives_remote_failure(self):
        self.session_store.save_snapshot(1, "u", PersistedSnapshot(1, "u", answers={1: [0]}, revision=1).encode())
        self.remote.get_progress = AsyncMock(side_effect=StorageError("offline"))
        chosen = await self.sync.resume(self.questions)
        self.assertEqual(chosen.answers, {1: [0]})

    @async_test
    async def test_discard_removes_everything(self):
        self.answer_store.select_option(1, 1)
        self.session_store.set_pause_start(1, "u", 1234)
        await self.sync.discard()

        self.assertIsNone(self.session_store.get_snapshot(1, "u"))
        self.assertIsNone(self.session_store.get_anchor(1, "u"))
        self.assertIsNone(self.session_store.get_pause_start(1, "u"))
        self.assertIsNone(await self.remote.get_progress(1, "u"))

        # Mutations after discard no longer reach storage
        self.answer_store.select_option(1, 0)
        self.assertIsNone(self.session_store.get_snapshot(1, "u"))
        self.assertFalse(await self.sync.flush_on_unload())


if __name__ == '__main__':
    unittest.main()
