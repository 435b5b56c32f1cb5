"""
Persistence and sync of attempt progress.

Every mutation of the answer store is written to the local SessionStore at
once. Remote writes go through three paths:

* a per-answer partial write, fired as a background task on every selection
* one coalescing ``WriteScheduler`` for full snapshots
* a bounded flush when the surface shuts down

All remote writes are idempotent upserts keyed by ``(quiz_id, user_id)`` and
carry the store revision, so a late write never replaces newer remote state.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

from .answer_store import ANSWER, BOUNDED_KINDS, AnswerStateStore
from .models import ExamSettings, Question
from .remote_store import RemoteStore
from .session_store import SessionStore
from .snapshot import PersistedSnapshot

logger = logging.getLogger(__name__)


class WriteScheduler:
    """
    Coalesces a stream of changes into occasional writes.

    A write happens once changes have been quiet for ``quiet_period``, but
    no later than ``max_latency`` after the first pending bounded change and
    never sooner than ``min_interval`` after the previous write started.
    Unbounded changes only obey the quiet period. At most one write runs at
    a time; changes arriving during a write are picked up afterwards.
    """

    def __init__(
        self,
        write: Callable[[], Awaitable[Any]],
        quiet_period: float = 5.0,
        max_latency: float = 2.0,
        min_interval: float = 2.0,
        name: str = "progress",
    ):
        self._write = write
        self.quiet_period = quiet_period
        self.max_latency = max_latency
        self.min_interval = min_interval
        self.name = name

        self._pending = False
        self._first_bounded_at: Optional[float] = None
        self._quiet_deadline: Optional[float] = None
        self._last_write_at: Optional[float] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self.write_count = 0
        self.failure_count = 0

    @property
    def has_pending(self) -> bool:
        return self._pending

    @property
    def is_writing(self) -> bool:
        return self._task is not None and not self._task.done()

    def notify(self, bounded: bool = True) -> None:
        """Record a change and (re)schedule the next write."""
        loop = asyncio.get_running_loop()
        now = loop.time()
        self._pending = True
        if bounded and self._first_bounded_at is None:
            self._first_bounded_at = now
        self._quiet_deadline = now + self.quiet_period
        self._reschedule(loop)

    def _due_time(self) -> float:
        due = self._quiet_deadline
        if self._first_bounded_at is not None:
            due = min(due, self._first_bounded_at + self.max_latency)
        if self._last_write_at is not None:
            due = max(due, self._last_write_at + self.min_interval)
        return due

    def _reschedule(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._handle is not None:
            self._handle.cancel()
        delay = max(self._due_time() - loop.time(), 0)
        self._handle = loop.call_later(delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        if self.is_writing:
            # Picked up when the running write completes
            return
        loop = asyncio.get_running_loop()
        self._pending = False
        self._first_bounded_at = None
        self._quiet_deadline = None
        self._last_write_at = loop.time()
        self._task = loop.create_task(self._run_write())

    async def _run_write(self) -> None:
        try:
            await self._write()
            self.write_count += 1
        except Exception as e:
            self.failure_count += 1
            logger.warning(f"Background {self.name} write failed, will retry on next change: {e}")
        finally:
            self._task = None
            if self._pending and self._handle is None:
                loop = asyncio.get_running_loop()
                if self._quiet_deadline is None:
                    self._quiet_deadline = loop.time()
                self._reschedule(loop)

    def cancel(self) -> bool:
        """
        Drop the scheduled write.

        Returns:
            True if a change was pending
        """
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        was_pending = self._pending
        self._pending = False
        self._first_bounded_at = None
        self._quiet_deadline = None
        return was_pending

    async def wait_idle(self) -> None:
        """Wait for the running write, if any."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)


class ProgressSync:
    """Keeps local and remote progress in step with the answer store."""

    def __init__(
        self,
        quiz_id: int,
        user_id: str,
        answer_store: AnswerStateStore,
        session_store: SessionStore,
        remote: RemoteStore,
        snapshot_factory: Callable[[], PersistedSnapshot],
        settings: Optional[ExamSettings] = None,
    ):
        """
        Initialize the sync layer.

        Args:
            quiz_id: Quiz identifier
            user_id: Student identifier
            answer_store: Store whose mutations are observed
            session_store: Local storage for the snapshot cache
            remote: Remote progress store
            snapshot_factory: Builds the full current snapshot
            settings: Scheduler timings and flush timeout
        """
        self.quiz_id = quiz_id
        self.user_id = user_id
        self.answer_store = answer_store
        self.session_store = session_store
        self.remote = remote
        self.snapshot_factory = snapshot_factory
        self.settings = settings or ExamSettings()

        self.scheduler = WriteScheduler(
            self.write_full,
            quiet_period=self.settings.sync_quiet_period_seconds,
            max_latency=self.settings.sync_max_latency_seconds,
            min_interval=self.settings.sync_min_interval_seconds,
            name=f"progress {quiz_id}:{user_id}",
        )
        self._tasks: Set[asyncio.Task] = set()
        self._discarded = False

    def attach(self) -> None:
        """Start observing the answer store."""
        self.answer_store.add_listener(self.on_mutation)

    @property
    def pending_tasks(self) -> Set[asyncio.Task]:
        return set(self._tasks)

    # Write paths

    def on_mutation(self, kind: str, question_id: int) -> None:
        if self._discarded:
            return
        self.save_local()
        if kind == ANSWER:
            self.write_answer(question_id)
        self.scheduler.notify(bounded=kind in BOUNDED_KINDS)

    def request_write(self) -> None:
        """Schedule a full write, e.g. after connectivity returns."""
        if not self._discarded:
            self.scheduler.notify(bounded=True)

    def save_local(self) -> None:
        snapshot = self.snapshot_factory()
        self.session_store.save_snapshot(self.quiz_id, self.user_id, snapshot.encode())

    def write_answer(self, question_id: int) -> asyncio.Task:
        """Fire a partial upsert carrying only one question's selection."""
        snapshot = self.snapshot_factory()
        payload = {
            'answers': {str(question_id): self.answer_store.selection(question_id)},
            'started_at_epoch_ms': snapshot.started_at_epoch_ms,
            'revision': snapshot.revision,
        }
        task = asyncio.get_running_loop().create_task(
            self._safe_upsert(payload, f"answer for question {question_id}")
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _safe_upsert(self, payload: Dict[str, Any], description: str) -> bool:
        try:
            await self.remote.upsert_progress(self.quiz_id, self.user_id, payload)
            return True
        except Exception as e:
            logger.warning(
                f"Failed to sync {description} for quiz {self.quiz_id} user {self.user_id}: {e}",
                extra={
                    'event_type': 'progress_sync_failed',
                    'quiz_id': self.quiz_id,
                    'user_id': self.user_id,
                    'timestamp': time.time()
                }
            )
            return False

    async def write_full(self) -> None:
        """
        Upsert the full current snapshot.

        Raises:
            Exception: Whatever the remote store raises
        """
        snapshot = self.snapshot_factory()
        await self.remote.upsert_progress(self.quiz_id, self.user_id, snapshot.to_dict())
        logger.debug(f"Synced progress for quiz {self.quiz_id} user {self.user_id} at revision {snapshot.revision}")

    async def flush_on_unload(self, timeout: Optional[float] = None) -> bool:
        """
        Write the full snapshot immediately, bypassing the scheduler.

        Best effort: the write is bounded by ``timeout`` and failures are
        logged, never raised.

        Returns:
            True if the remote write completed
        """
        if self._discarded:
            return False
        timeout = self.settings.unload_flush_timeout_seconds if timeout is None else timeout
        self.scheduler.cancel()
        try:
            self.save_local()
            await asyncio.wait_for(self.write_full(), timeout=timeout)
            logger.info(f"Flushed progress for quiz {self.quiz_id} user {self.user_id}")
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Progress flush for quiz {self.quiz_id} user {self.user_id} timed out after {timeout}s")
        except Exception as e:
            logger.warning(f"Progress flush for quiz {self.quiz_id} user {self.user_id} failed: {e}")
        return False

    # Resume and cleanup

    def _load_local(self, questions: Iterable[Question]) -> Optional[PersistedSnapshot]:
        encoded = self.session_store.get_snapshot(self.quiz_id, self.user_id)
        if not encoded:
            return None
        try:
            return PersistedSnapshot.decode(encoded, questions)
        except ValueError as e:
            logger.warning(f"Discarding unreadable local snapshot for quiz {self.quiz_id} user {self.user_id}: {e}")
            self.session_store.delete_snapshot(self.quiz_id, self.user_id)
            return None

    async def _load_remote(self, questions: Iterable[Question]) -> Optional[PersistedSnapshot]:
        try:
            row = await self.remote.get_progress(self.quiz_id, self.user_id)
        except Exception as e:
            logger.warning(f"Could not read remote progress for quiz {self.quiz_id} user {self.user_id}: {e}")
            return None
        if not row:
            return None
        try:
            return PersistedSnapshot.from_dict(
                {**row, 'quiz_id': self.quiz_id, 'user_id': self.user_id}, questions
            )
        except ValueError as e:
            logger.warning(f"Ignoring malformed remote progress for quiz {self.quiz_id} user {self.user_id}: {e}")
            return None

    async def resume(self, questions: Iterable[Question]) -> Optional[PersistedSnapshot]:
        """
        Find the prior snapshot of this attempt.

        The local cache is read first, then the remote row; the higher
        revision wins and the local copy wins ties.

        Returns:
            The snapshot to hydrate from, or None for a fresh attempt
        """
        questions = list(questions)
        local = self._load_local(questions)
        remote = await self._load_remote(questions)

        if local is None and remote is None:
            logger.info(f"No prior progress for quiz {self.quiz_id} user {self.user_id}")
            return None
        if remote is not None and (local is None or remote.revision > local.revision):
            chosen, source = remote, "remote"
            self.session_store.save_snapshot(self.quiz_id, self.user_id, remote.encode())
        else:
            chosen, source = local, "local"
        logger.info(
            f"Resuming quiz {self.quiz_id} user {self.user_id} from {source} snapshot at revision {chosen.revision}",
            extra={
                'event_type': 'progress_resumed',
                'quiz_id': self.quiz_id,
                'user_id': self.user_id,
                'source': source,
                'revision': chosen.revision,
                'timestamp': time.time()
            }
        )
        return chosen

    async def discard(self) -> None:
        """Delete remote progress, the local snapshot and the timer anchor."""
        self._discarded = True
        self.scheduler.cancel()
        # Let in-flight writes land before deleting, or they would recreate the row
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.scheduler.wait_idle()

        self.session_store.clear_session(self.quiz_id, self.user_id)
        try:
            await self.remote.delete_progress(self.quiz_id, self.user_id)
        except Exception as e:
            logger.warning(f"Failed to delete remote progress for quiz {self.quiz_id} user {self.user_id}: {e}")
        logger.info(f"Discarded progress for quiz {self.quiz_id} user {self.user_id}")
