"""
Unit tests for ExamTimer.

Covers anchor creation and adoption, corruption recovery, pause accounting
and the one-shot expiry and warning notifications.
"""
import asyncio
import unittest
from unittest.mock import AsyncMock, Mock

from exam_attempt.models import TimerAnchor
from exam_attempt.session_store import SessionStore
from exam_attempt.timer_engine import ExamTimer, epoch_ms
from tests.test_fixtures import BASE_EPOCH_MS, FakeClock, async_test


class TestExamTimer(unittest.TestCase):
    """Test cases for ExamTimer."""

    def setUp(self):
        self.store = SessionStore()
        self.clock = FakeClock()
        self.timer = ExamTimer(
            quiz_id=1,
            user_id="u",
            store=self.store,
            fallback_duration_minutes=30,
            tick_interval=0.01,
            last_minute_warning_seconds=60,
            clock=self.clock,
        )

    def test_epoch_ms_is_milliseconds(self):
        self.assertGreater(epoch_ms(), 10 ** 12)

    def test_initialize_creates_anchor(self):
        anchor = self.timer.initialize(10)
        self.assertEqual(anchor, TimerAnchor(BASE_EPOCH_MS, 600000, 0))
        self.assertEqual(self.store.get_anchor(1, "u"), anchor)
        self.assertEqual(self.timer.remaining_seconds(), 600)

    def test_initialize_uses_fallback_for_missing_duration(self):
        self.assertEqual(self.timer.initialize(None).duration_ms, 1800000)
        self.store.clear_anchor(1, "u")
        self.assertEqual(self.timer.initialize(0).duration_ms, 1800000)

    def test_initialize_adopts_existing_anchor(self):
        self.store.save_anchor(1, "u", TimerAnchor(BASE_EPOCH_MS - 120000, 600000, 0))
        anchor = self.timer.initialize(45)
        self.assertEqual(anchor.duration_ms, 600000)
        self.assertEqual(self.timer.remaining_seconds(), 480)

    def test_initialize_is_idempotent(self):
        first = self.timer.initialize(10)
        self.clock.advance(5000)
        second = self.timer.initialize(10)
        self.assertEqual(first, second)

    def test_corrupted_anchor_is_reinitialized_with_fallback(self):
        self.store.set_item(SessionStore.key(1, "u", "startTime"), "garbage")
        self.store.set_item(SessionStore.key(1, "u", "duration"), "-5")
        anchor = self.timer.initialize(10)
        self.assertTrue(anchor.is_valid)
        self.assertEqual(anchor.duration_ms, 1800000)
        self.assertEqual(anchor.started_at_epoch_ms, BASE_EPOCH_MS)

    def test_anchor_removed_after_initialize_recovers(self):
        self.timer.initialize(10)
        self.store.clear_anchor(1, "u")
        self.assertEqual(self.timer.remaining_seconds(), 1800)

    def test_remaining_requires_initialize(self):
        with self.assertRaises(RuntimeError):
            self.timer.remaining_seconds()

    def test_remaining_never_negative(self):
        self.timer.initialize(1)
        self.clock.advance(10 * 60000)
        self.assertEqual(self.timer.remaining_seconds(), 0)

    def test_pause_and_resume_extend_deadline(self):
        self.timer.initialize(10)
        self.clock.advance(60000)
        self.timer.pause()
        self.assertTrue(self.timer.is_paused)
        self.clock.advance(30000)
        self.assertEqual(self.timer.remaining_seconds(), 540)

        self.timer.resume()
        self.assertFalse(self.timer.is_paused)
        self.assertEqual(self.store.get_anchor(1, "u").paused_accumulated_ms, 30000)
        self.clock.advance(10000)
        self.assertEqual(self.timer.remaining_seconds(), 530)

    def test_pause_twice_keeps_first_start(self):
        self.timer.initialize(10)
        self.timer.pause()
        start = self.store.get_pause_start(1, "u")
        self.clock.advance(5000)
        self.timer.pause()
        self.assertEqual(self.store.get_pause_start(1, "u"), start)

    def test_resume_without_pause_is_noop(self):
        self.timer.initialize(10)
        self.timer.resume()
        self.assertEqual(self.store.get_anchor(1, "u").paused_accumulated_ms, 0)

    @async_test
    async def test_expiry_fires_once_after_positive_tick(self):
        self.store.save_anchor(1, "u", TimerAnchor(BASE_EPOCH_MS, 5000, 0))
        self.timer.initialize()
        expired = Mock()
        self.timer.on_expired(expired)

        seen = []
        for step in range(6):
            seen.append(await self.timer.tick())
            self.clock.advance(2000)

        self.assertEqual(seen, [5, 3, 1, 0, 0, 0])
        expired.assert_called_once_with()
        self.assertTrue(self.timer.has_expired)

    @async_test
    async def test_expiry_not_fired_without_positive_tick(self):
        self.store.save_anchor(1, "u", TimerAnchor(BASE_EPOCH_MS - 600000, 60000, 0))
        self.timer.initialize()
        expired = Mock()
        self.timer.on_expired(expired)

        self.assertEqual(await self.timer.tick(), 0)
        self.assertEqual(await self.timer.tick(), 0)
        expired.assert_not_called()

    @async_test
    async def test_last_minute_warning_fires_once(self):
        self.timer.initialize(2)
        warning = AsyncMock()
        self.timer.on_last_minute(warning)

        await self.timer.tick()
        warning.assert_not_awaited()

        self.clock.advance(61000)
        await self.timer.tick()
        self.clock.advance(1000)
        await self.timer.tick()
        warning.assert_awaited_once_with(59)

    @async_test
    async def test_update_listeners_receive_remaining(self):
        self.timer.initialize(10)
        updates = []
        self.timer.on_update(updates.append)
        await self.timer.tick()
        self.clock.advance(1000)
        await self.timer.tick()
        self.assertEqual(updates, [600, 599])

    @async_test
    async def test_failing_listener_does_not_stop_tick(self):
        self.timer.initialize(10)
        self.timer.on_update(Mock(side_effect=ValueError("boom")))
        after = Mock()
        self.timer.on_update(after)
        self.assertEqual(await self.timer.tick(), 600)
        after.assert_called_once_with(600)

    @async_test
    async def test_start_and_stop_task(self):
        self.timer.initialize(10)
        updates = []
        self.timer.on_update(updates.append)

        task = self.timer.start()
        self.assertIs(self.timer.start(), task)
        await asyncio.sleep(0.05)
        self.assertTrue(self.timer.is_running)
        self.timer.stop()
        await asyncio.sleep(0)

        self.assertFalse(self.timer.is_running)
        self.assertGreaterEqual(len(updates), 1)
        # Stopping leaves the anchor in place
        self.assertIsNotNone(self.store.get_anchor(1, "u"))

    def test_halted_timer_does_not_recover_missing_anchor(self):
        self.timer.initialize(10)
        self.timer.halt()
        self.store.clear_anchor(1, "u")
        self.assertEqual(self.timer.remaining_seconds(), 0)
        self.assertIsNone(self.store.get_anchor(1, "u"))

    @async_test
    async def test_halt_ends_running_loop_without_writing_anchor(self):
        self.timer.initialize(10)
        updates = []
        self.timer.on_update(updates.append)
        self.timer.start()
        await asyncio.sleep(0.03)

        self.timer.halt()
        self.store.clear_anchor(1, "u")
        seen = len(updates)
        await asyncio.sleep(0.05)

        self.assertFalse(self.timer.is_running)
        self.assertEqual(len(updates), seen)
        self.assertIsNone(self.store.get_anchor(1, "u"))
        self.assertEqual(await self.timer.tick(), 0)

    @async_test
    async def test_start_initializes_when_needed(self):
        self.timer.start()
        await asyncio.sleep(0)
        self.assertIsNotNone(self.store.get_anchor(1, "u"))
        self.timer.stop()


if __name__ == '__main__':
    unittest.main()
