"""
Unit tests for SubmissionOrchestrator and the attempt checks.
"""
import asyncio
import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock

from exam_attempt.answer_store import AnswerStateStore
from exam_attempt.exceptions import (
    MaxAttemptsReachedError,
    QuizClosedError,
    QuizNotOpenError,
    SessionLockedError,
)
from exam_attempt.models import Session, ViolationEvent
from exam_attempt.submission import (
    INTEGRITY,
    MANUAL,
    TIMER_EXPIRY,
    SubmissionOrchestrator,
    SubmissionState,
    check_attempt_allowed,
)
from tests.test_fixtures import BASE_EPOCH_MS, ExamFixtures, FakeClock, RecordingRemoteStore, async_test


class TestCheckAttemptAllowed(unittest.TestCase):

    def test_within_limit_and_window(self):
        quiz = ExamFixtures.create_sample_quiz(
            max_attempts=2,
            start_time=datetime(2025, 12, 31, tzinfo=timezone.utc),
            end_time=datetime(2026, 1, 2, tzinfo=timezone.utc),
        )
        check_attempt_allowed(quiz, 1, BASE_EPOCH_MS)

    def test_max_attempts(self):
        with self.assertRaises(MaxAttemptsReachedError):
            check_attempt_allowed(ExamFixtures.create_sample_quiz(max_attempts=1), 1, BASE_EPOCH_MS)

    def test_zero_max_attempts_means_one(self):
        quiz = ExamFixtures.create_sample_quiz(max_attempts=0)
        check_attempt_allowed(quiz, 0, BASE_EPOCH_MS)
        with self.assertRaises(MaxAttemptsReachedError):
            check_attempt_allowed(quiz, 1, BASE_EPOCH_MS)

    def test_not_open_with_naive_datetime(self):
        quiz = ExamFixtures.create_sample_quiz(start_time=datetime(2026, 1, 1, 0, 5))
        with self.assertRaises(QuizNotOpenError):
            check_attempt_allowed(quiz, 0, BASE_EPOCH_MS)

    def test_closed(self):
        quiz = ExamFixtures.create_sample_quiz(end_time=datetime(2025, 12, 31, 23, 59, tzinfo=timezone.utc))
        with self.assertRaises(QuizClosedError):
            check_attempt_allowed(quiz, 0, BASE_EPOCH_MS)


class TestSubmissionOrchestrator(unittest.TestCase):
    """Test cases for the submission sequence."""

    def setUp(self):
        self.quiz = ExamFixtures.create_sample_quiz()
        self.session = Session(
            quiz_id=1, user_id="u", started_at_epoch_ms=BASE_EPOCH_MS - 60000, duration_ms=1800000
        )
        self.answer_store = AnswerStateStore(self.quiz.questions)
        self.remote = RecordingRemoteStore()
        self.discard = AsyncMock()
        self.on_complete = Mock()
        self.settings = ExamFixtures.create_fast_settings()
        self.history = [ViolationEvent("tab_switch", 1, BASE_EPOCH_MS - 1000)]

    def _orchestrator(self, **kwargs):
        values = dict(
            session=self.session,
            quiz=self.quiz,
            answer_store=self.answer_store,
            remote=self.remote,
            discard=self.discard,
            user_name="Ada",
            settings=self.settings,
            violation_history=lambda: self.history,
            on_complete=self.on_complete,
            clock=FakeClock(),
        )
        values.update(kwargs)
        return SubmissionOrchestrator(**values)

    @async_test
    async def test_successful_submission(self):
        self.answer_store.select_option(1, 1)
        self.answer_store.select_option(2, 0)
        self.answer_store.toggle_flag(3)
        self.session.violation_count = 1
        orchestrator = self._orchestrator()

        result = await orchestrator.submit(MANUAL)

        self.assertTrue(result['success'])
        self.assertEqual(result['trigger'], MANUAL)
        record = result['record']
        self.assertEqual(record['id'], 1)
        self.assertEqual(record['user_name'], "Ada")
        self.assertEqual(record['answers'], {"1": [1], "2": [0]})
        self.assertEqual(record['answers_text'], {"1": ["4"], "2": ["2"]})
        self.assertEqual(record['correct_answers']["2"], ["2", "5"])
        self.assertEqual(record['score'], 2)
        self.assertEqual(record['total_marks'], 4)
        self.assertEqual(record['percentage'], 50)
        self.assertFalse(record['passed'])
        self.assertEqual(record['flagged'], {"3": True})
        self.assertEqual(record['violation_count'], 1)
        self.assertEqual(len(record['violation_history']), 1)
        self.assertEqual(record['submitted_at'], "2026-01-01T00:00:00+00:00")
        self.assertEqual(record['start_time'], "2025-12-31T23:59:00+00:00")

        self.assertEqual(orchestrator.state, SubmissionState.DONE)
        self.assertTrue(orchestrator.is_done)
        self.assertTrue(self.session.submitted)
        self.assertTrue(self.answer_store.is_locked)
        self.discard.assert_awaited_once()
        with self.assertRaises(SessionLockedError):
            self.answer_store.select_option(3, 0)

        self.on_complete.assert_not_called()
        await asyncio.sleep(0.05)
        self.on_complete.assert_called_once_with(record)

    @async_test
    async def test_concurrent_triggers_write_one_record(self):
        orchestrator = self._orchestrator()
        results = await asyncio.gather(
            orchestrator.submit(MANUAL),
            orchestrator.submit(TIMER_EXPIRY),
            orchestrator.submit(INTEGRITY),
        )
        successes = [r for r in results if r['success']]
        duplicates = [r for r in results if r.get('duplicate')]
        self.assertEqual(len(successes), 1)
        self.assertEqual(len(duplicates), 2)
        self.assertEqual(await self.remote.count_attempts(1, "u"), 1)

    @async_test
    async def test_submit_after_done_is_duplicate(self):
        orchestrator = self._orchestrator()
        await orchestrator.submit(MANUAL)
        result = await orchestrator.submit(MANUAL)
        self.assertTrue(result['duplicate'])
        self.assertEqual(result['error'], 'already_submitted')

    @async_test
    async def test_max_attempts_resets_session(self):
        await self.remote.insert_attempt({
            'quiz_id': 1, 'user_id': "u", 'user_name': "Ada", 'answers': {},
            'correct_answers': {}, 'score': 0, 'total_marks': 4, 'submitted_at': "earlier",
        })
        orchestrator = self._orchestrator()

        result = await orchestrator.submit(MANUAL)

        self.assertFalse(result['success'])
        self.assertEqual(result['error'], 'max_attempts_reached')
        self.assertIn("maximum number of attempts", result['user_message'])
        self.assertFalse(self.session.submitted)
        self.assertFalse(self.answer_store.is_locked)
        self.assertEqual(orchestrator.state, SubmissionState.IN_PROGRESS)
        self.discard.assert_not_awaited()

    @async_test
    async def test_quiz_loader_supplies_fresh_limits(self):
        await self.remote.insert_attempt({
            'quiz_id': 1, 'user_id': "u", 'user_name': "Ada", 'answers': {},
            'correct_answers': {}, 'score': 0, 'total_marks': 4, 'submitted_at': "earlier",
        })
        fresh = ExamFixtures.create_sample_quiz(max_attempts=2)
        orchestrator = self._orchestrator(quiz_loader=AsyncMock(return_value=fresh))
        result = await orchestrator.submit(MANUAL)
        self.assertTrue(result['success'])
        self.assertEqual(await self.remote.count_attempts(1, "u"), 2)

    @async_test
    async def test_quiz_loader_failure_is_storage_error(self):
        orchestrator = self._orchestrator(quiz_loader=Mock(side_effect=RuntimeError("db down")))
        result = await orchestrator.submit(MANUAL)
        self.assertEqual(result['error'], 'storage_error')
        self.assertFalse(self.session.submitted)

    @async_test
    async def test_closed_window(self):
        self.quiz.end_time = datetime(2025, 12, 1, tzinfo=timezone.utc)
        result = await self._orchestrator().submit(TIMER_EXPIRY)
        self.assertEqual(result['error'], 'quiz_closed')
        self.assertEqual(result['trigger'], TIMER_EXPIRY)

    @async_test
    async def test_write_failure_allows_retry(self):
        self.remote.insert_error = RuntimeError("connection reset")
        orchestrator = self._orchestrator()

        result = await orchestrator.submit(MANUAL)
        self.assertEqual(result['error'], 'attempt_write_failed')
        self.assertFalse(self.session.submitted)

        self.remote.insert_error = None
        retry = await orchestrator.submit(MANUAL)
        self.assertTrue(retry['success'])

    @async_test
    async def test_write_timeout(self):
        self.settings.write_timeout_seconds = 0.05
        self.remote.insert_delay = 0.2
        orchestrator = self._orchestrator()

        result = await orchestrator.submit(MANUAL)

        self.assertEqual(result['error'], 'submission_timeout')
        self.assertFalse(self.session.submitted)
        self.assertFalse(self.answer_store.is_locked)
        # The shielded write was not cancelled and still lands
        await asyncio.sleep(0.3)
        self.assertEqual(await self.remote.count_attempts(1, "u"), 1)

    @async_test
    async def test_guard_timeout_stops_stale_run_before_writing(self):
        self.settings.submission_timeout_seconds = 0.05
        self.remote.count_delay = 0.2
        orchestrator = self._orchestrator()

        result = await orchestrator.submit(MANUAL)

        self.assertEqual(result['error'], 'submission_timeout')
        self.assertFalse(self.session.submitted)
        await asyncio.sleep(0.3)
        self.assertEqual(await self.remote.count_attempts(1, "u"), 0)
        self.assertFalse(self.session.submitted)
        self.discard.assert_not_awaited()

    @async_test
    async def test_completion_callback_errors_are_logged(self):
        self.on_complete.side_effect = RuntimeError("dm failed")
        orchestrator = self._orchestrator()
        result = await orchestrator.submit(MANUAL)
        self.assertTrue(result['success'])
        await asyncio.sleep(0.05)
        self.on_complete.assert_called_once()


if __name__ == '__main__':
    unittest.main()
