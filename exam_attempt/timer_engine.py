"""
Timer engine for exam attempts.

Remaining time is always derived from the anchor persisted in the
SessionStore, never from an in-memory countdown, so a reload or process
restart resumes at the same wall-clock position.
"""
import asyncio
import inspect
import logging
import time
from typing import Any, Callable, List, Optional

from .models import TimerAnchor
from .session_store import SessionStore

# Set up logger for timer operations
logger = logging.getLogger(__name__)


def epoch_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class TimerLifecycleLogger:
    """Structured logging for timer lifecycle events."""

    @staticmethod
    def log_timer_created(attempt_key: str, duration_ms: int, resumed: bool) -> None:
        """Log anchor creation or adoption."""
        kind = "RESUMED" if resumed else "CREATED"
        logger.info(
            f"Timer lifecycle: {kind} - Attempt {attempt_key}, Duration {duration_ms // 1000}s",
            extra={
                'event_type': 'timer_resumed' if resumed else 'timer_created',
                'attempt_key': attempt_key,
                'duration_ms': duration_ms,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_timer_start(attempt_key: str, interval: float) -> None:
        logger.info(
            f"Timer lifecycle: TICKING_START - Attempt {attempt_key}, Interval {interval}s",
            extra={
                'event_type': 'timer_ticking_start',
                'attempt_key': attempt_key,
                'interval': interval,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_timer_update(attempt_key: str, remaining_seconds: int, duration_ms: int) -> None:
        """Log timer update events (throttled to avoid spam)."""
        # Log only at specific intervals to avoid log spam
        if remaining_seconds % 60 == 0 or remaining_seconds <= 5:
            total_seconds = max(duration_ms // 1000, 1)
            progress_percent = ((total_seconds - remaining_seconds) / total_seconds) * 100
            logger.debug(
                f"Timer lifecycle: UPDATE - Attempt {attempt_key}, Remaining {remaining_seconds}s ({progress_percent:.1f}% elapsed)",
                extra={
                    'event_type': 'timer_update',
                    'attempt_key': attempt_key,
                    'remaining_seconds': remaining_seconds,
                    'duration_ms': duration_ms,
                    'progress_percent': progress_percent,
                    'timestamp': time.time()
                }
            )

    @staticmethod
    def log_timer_expired(attempt_key: str, duration_ms: int) -> None:
        logger.info(
            f"Timer lifecycle: EXPIRED - Attempt {attempt_key}, Duration {duration_ms // 1000}s",
            extra={
                'event_type': 'timer_expired',
                'attempt_key': attempt_key,
                'duration_ms': duration_ms,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_timer_recovered(attempt_key: str, reason: str, fallback_ms: int) -> None:
        """Log reinitialisation after a corrupted anchor was found."""
        logger.warning(
            f"Timer lifecycle: RECOVERED - Attempt {attempt_key}, {reason}; reinitialized with {fallback_ms // 1000}s",
            extra={
                'event_type': 'timer_recovered',
                'attempt_key': attempt_key,
                'reason': reason,
                'fallback_ms': fallback_ms,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_timer_state_transition(attempt_key: str, from_state: str, to_state: str, reason: str = None) -> None:
        """Log timer state transitions."""
        logger.info(
            f"Timer lifecycle: STATE_TRANSITION - Attempt {attempt_key}, {from_state} -> {to_state}" +
            (f" ({reason})" if reason else ""),
            extra={
                'event_type': 'timer_state_transition',
                'attempt_key': attempt_key,
                'from_state': from_state,
                'to_state': to_state,
                'reason': reason,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_timer_error(attempt_key: str, error_type: str, error_message: str, operation: str) -> None:
        """Log timer-related errors with context."""
        logger.error(
            f"Timer lifecycle: ERROR - Attempt {attempt_key}, Operation {operation}, Type {error_type}: {error_message}",
            extra={
                'event_type': 'timer_error',
                'attempt_key': attempt_key,
                'error_type': error_type,
                'error_message': error_message,
                'operation': operation,
                'timestamp': time.time()
            }
        )


async def _notify(attempt_key: str, callbacks: List[Callable[..., Any]], operation: str, *args) -> None:
    for callback in list(callbacks):
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # A failing observer must not stop the countdown
            TimerLifecycleLogger.log_timer_error(attempt_key, type(e).__name__, str(e), operation)


class ExamTimer:
    """Countdown for one attempt, computed from the persisted anchor."""

    def __init__(
        self,
        quiz_id: int,
        user_id: str,
        store: SessionStore,
        fallback_duration_minutes: float = 30,
        tick_interval: float = 1.0,
        last_minute_warning_seconds: int = 60,
        clock: Callable[[], int] = epoch_ms,
    ):
        """
        Initialize the timer.

        Args:
            quiz_id: Quiz identifier
            user_id: Student identifier
            store: Local storage holding the anchor
            fallback_duration_minutes: Duration used when the quiz has none
                or the persisted anchor is corrupted
            tick_interval: Seconds between ticks while running
            last_minute_warning_seconds: Threshold of the one-shot warning
            clock: Callable returning wall-clock epoch milliseconds
        """
        self.quiz_id = quiz_id
        self.user_id = user_id
        self.store = store
        self.fallback_duration_minutes = fallback_duration_minutes
        self.tick_interval = tick_interval
        self.last_minute_warning_seconds = last_minute_warning_seconds
        self.clock = clock

        self._attempt_key = f"{quiz_id}:{user_id}"
        self._initialized = False
        self._seen_positive = False
        self._expiry_fired = False
        self._warning_fired = False
        self._halted = False
        self._task: Optional[asyncio.Task] = None

        self._update_listeners: List[Callable[[int], Any]] = []
        self._expiry_listeners: List[Callable[[], Any]] = []
        self._warning_listeners: List[Callable[[int], Any]] = []

    # Listener registration

    def on_update(self, callback: Callable[[int], Any]) -> None:
        self._update_listeners.append(callback)

    def on_expired(self, callback: Callable[[], Any]) -> None:
        self._expiry_listeners.append(callback)

    def on_last_minute(self, callback: Callable[[int], Any]) -> None:
        self._warning_listeners.append(callback)

    # Anchor handling

    @property
    def fallback_duration_ms(self) -> int:
        return int(self.fallback_duration_minutes * 60000)

    def initialize(self, configured_duration_minutes: Optional[float] = None) -> TimerAnchor:
        """
        Create the anchor on first load or adopt the persisted one.

        An existing valid anchor is never overwritten, so calling this on
        every load is safe.

        Args:
            configured_duration_minutes: Quiz duration; missing or
                non-positive values use the fallback duration

        Returns:
            The anchor in effect
        """
        anchor = self.store.get_anchor(self.quiz_id, self.user_id)
        if anchor is None:
            if configured_duration_minutes and configured_duration_minutes > 0:
                duration_ms = int(configured_duration_minutes * 60000)
            else:
                duration_ms = self.fallback_duration_ms
            anchor = TimerAnchor(started_at_epoch_ms=self.clock(), duration_ms=duration_ms)
            self.store.save_anchor(self.quiz_id, self.user_id, anchor)
            TimerLifecycleLogger.log_timer_created(self._attempt_key, duration_ms, resumed=False)
        elif not anchor.is_valid:
            anchor = self._recover("persisted anchor is malformed")
        else:
            TimerLifecycleLogger.log_timer_created(self._attempt_key, anchor.duration_ms, resumed=True)

        self._initialized = True
        self._halted = False
        self._seen_positive = False
        self._expiry_fired = False
        self._warning_fired = False
        return anchor

    def _recover(self, reason: str) -> TimerAnchor:
        self.store.clear_anchor(self.quiz_id, self.user_id)
        anchor = TimerAnchor(started_at_epoch_ms=self.clock(), duration_ms=self.fallback_duration_ms)
        self.store.save_anchor(self.quiz_id, self.user_id, anchor)
        TimerLifecycleLogger.log_timer_recovered(self._attempt_key, reason, anchor.duration_ms)
        return anchor

    def _current_anchor(self) -> Optional[TimerAnchor]:
        anchor = self.store.get_anchor(self.quiz_id, self.user_id)
        if self._halted:
            # A halted timer never writes an anchor back
            return anchor if anchor is not None and anchor.is_valid else None
        if anchor is None:
            return self._recover("persisted anchor is missing")
        if not anchor.is_valid:
            return self._recover("persisted duration or start is invalid")
        return anchor

    @property
    def anchor(self) -> Optional[TimerAnchor]:
        return self.store.get_anchor(self.quiz_id, self.user_id)

    # Remaining time

    def remaining_seconds(self) -> int:
        """
        Compute remaining whole seconds without notifying listeners.

        Raises:
            RuntimeError: If initialize() has not been called
        """
        if not self._initialized:
            raise RuntimeError(f"Timer for attempt {self._attempt_key} has not been initialized")
        anchor = self._current_anchor()
        if anchor is None:
            return 0
        now = self.clock()
        pause_start = self.store.get_pause_start(self.quiz_id, self.user_id)
        pause_span = max(now - pause_start, 0) if pause_start else 0
        elapsed = now - anchor.started_at_epoch_ms - anchor.paused_accumulated_ms - pause_span
        return max(0, (anchor.duration_ms - elapsed) // 1000)

    async def tick(self) -> int:
        """
        Compute remaining time and notify listeners.

        Expiry fires once, and only if remaining time was positive at some
        earlier tick of this sequence.

        Returns:
            Remaining whole seconds
        """
        if self._halted:
            return self.remaining_seconds()
        remaining = self.remaining_seconds()
        duration_ms = self._current_anchor().duration_ms
        TimerLifecycleLogger.log_timer_update(self._attempt_key, remaining, duration_ms)
        await _notify(self._attempt_key, self._update_listeners, "tick_update", remaining)
        if self._halted:
            return remaining

        if remaining > 0:
            self._seen_positive = True
            if not self._warning_fired and remaining <= self.last_minute_warning_seconds:
                self._warning_fired = True
                logger.info(f"Last-minute warning for attempt {self._attempt_key}: {remaining}s left")
                await _notify(self._attempt_key, self._warning_listeners, "last_minute_warning", remaining)
        elif self._seen_positive and not self._expiry_fired:
            self._expiry_fired = True
            TimerLifecycleLogger.log_timer_expired(self._attempt_key, duration_ms)
            await _notify(self._attempt_key, self._expiry_listeners, "expiry")
        return remaining

    # Pause accounting

    @property
    def is_paused(self) -> bool:
        return self.store.get_pause_start(self.quiz_id, self.user_id) is not None

    @property
    def has_expired(self) -> bool:
        return self._expiry_fired

    def pause(self) -> None:
        """Begin a pause span (connectivity lost)."""
        if self.is_paused:
            return
        self.store.set_pause_start(self.quiz_id, self.user_id, self.clock())
        TimerLifecycleLogger.log_timer_state_transition(self._attempt_key, "running", "paused", "offline")

    def resume(self) -> None:
        """Fold the current pause span into the accumulated pause."""
        pause_start = self.store.get_pause_start(self.quiz_id, self.user_id)
        if pause_start is None:
            return
        anchor = self._current_anchor()
        if anchor is None:
            self.store.set_pause_start(self.quiz_id, self.user_id, None)
            return
        span = max(self.clock() - pause_start, 0)
        self.store.set_paused_accumulated(self.quiz_id, self.user_id, anchor.paused_accumulated_ms + span)
        self.store.set_pause_start(self.quiz_id, self.user_id, None)
        TimerLifecycleLogger.log_timer_state_transition(
            self._attempt_key, "paused", "running", f"online again after {span}ms"
        )

    # Ticking task

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Run tick() every tick_interval seconds as a background task."""
        if self.is_running:
            return self._task
        if not self._initialized:
            self.initialize()
        self._task = asyncio.create_task(self._run())
        TimerLifecycleLogger.log_timer_start(self._attempt_key, self.tick_interval)
        return self._task

    async def _run(self) -> None:
        try:
            while not self._halted:
                await self.tick()
                await asyncio.sleep(self.tick_interval)
        except asyncio.CancelledError:
            TimerLifecycleLogger.log_timer_state_transition(self._attempt_key, "running", "stopped", "task cancelled")
            raise

    def stop(self) -> None:
        """Stop ticking. The persisted anchor is left untouched."""
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    def halt(self) -> None:
        """
        Stop ticking for good once the attempt is submitted.

        The task is not cancelled here, since expiry submits from inside it;
        the loop ends after the current tick. A halted timer never recovers
        a missing anchor.
        """
        self._halted = True
        TimerLifecycleLogger.log_timer_state_transition(self._attempt_key, "running", "halted", "submitted")
