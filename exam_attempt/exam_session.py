"""
One student's attempt at one quiz.

ExamSession wires the timer, answer store, sync layer, integrity monitor
and submission orchestrator together and adds navigation with per-question
time accounting. Surfaces talk to this class (through the controller), never
to the components directly.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from .answer_store import AnswerState, AnswerStateStore
from .exceptions import InvalidSelectionError, ReviewNotAvailableError, SessionNotFoundError
from .integrity_monitor import IntegrityMonitor
from .models import ExamSettings, Question, QuizDefinition, Session, TimerAnchor, ViolationEvent
from .progress_sync import ProgressSync
from .remote_store import RemoteStore
from .scoring import build_review
from .session_store import SessionStore
from .snapshot import PersistedSnapshot
from .submission import MANUAL, TIMER_EXPIRY, SubmissionOrchestrator, SubmissionState
from .timer_engine import ExamTimer, epoch_ms

logger = logging.getLogger(__name__)


class ExamSession:
    """Composition root of a single exam attempt."""

    def __init__(
        self,
        quiz: QuizDefinition,
        user_id: str,
        session_store: SessionStore,
        remote: RemoteStore,
        user_name: str = "Anonymous",
        settings: Optional[ExamSettings] = None,
        quiz_loader: Optional[Callable[[int], Any]] = None,
        on_complete: Optional[Callable[[Dict[str, Any]], Any]] = None,
        clock: Callable[[], int] = epoch_ms,
    ):
        """
        Initialize the attempt. Nothing is read or written until start().

        Args:
            quiz: Quiz definition with correctness flags
            user_id: Student identifier
            session_store: Local storage for anchor and snapshot cache
            remote: Remote progress and attempt store
            user_name: Display name stored with the attempt record
            settings: Exam settings
            quiz_loader: Re-fetches the quiz at submission time
            on_complete: Called with the attempt record after submission
            clock: Callable returning wall-clock epoch milliseconds
        """
        self.quiz = quiz
        self.user_id = user_id
        self.user_name = user_name
        self.session_store = session_store
        self.remote = remote
        self.settings = settings or ExamSettings()
        self.quiz_loader = quiz_loader
        self.on_complete = on_complete
        self.clock = clock

        self.answer_store = AnswerStateStore(quiz.questions)
        self.timer = ExamTimer(
            quiz.id,
            user_id,
            session_store,
            fallback_duration_minutes=self.settings.fallback_duration_minutes,
            tick_interval=self.settings.tick_interval_seconds,
            last_minute_warning_seconds=self.settings.last_minute_warning_seconds,
            clock=clock,
        )
        self.sync = ProgressSync(
            quiz.id, user_id, self.answer_store, session_store, remote, self.build_snapshot, self.settings
        )

        self.session: Optional[Session] = None
        self.monitor: Optional[IntegrityMonitor] = None
        self.orchestrator: Optional[SubmissionOrchestrator] = None
        self.current_index = 0
        self.restored = False
        self.online = True
        self._entered_at: Optional[int] = None

    @property
    def key(self):
        return (self.quiz.id, self.user_id)

    @property
    def is_started(self) -> bool:
        return self.session is not None

    @property
    def is_submitted(self) -> bool:
        return self.session is not None and self.session.submitted

    @property
    def is_done(self) -> bool:
        return self.orchestrator is not None and self.orchestrator.is_done

    def _require_started(self) -> Session:
        if self.session is None:
            raise SessionNotFoundError(f"Attempt {self.key} has not been started")
        return self.session

    # Lifecycle

    async def start(self, autostart_timer: bool = True) -> Dict[str, Any]:
        """
        Resume the prior attempt or begin a fresh one.

        Args:
            autostart_timer: Start the background tick task

        Returns:
            Status dictionary (see status())
        """
        if self.session is not None:
            return self.status()

        snapshot = await self.sync.resume(self.quiz.questions)
        if snapshot is not None:
            self._restore_anchor(snapshot)

        anchor = self.timer.initialize(self.quiz.duration_minutes)
        self.session = Session(
            quiz_id=self.quiz.id,
            user_id=self.user_id,
            started_at_epoch_ms=anchor.started_at_epoch_ms,
            duration_ms=anchor.duration_ms,
            paused_accumulated_ms=anchor.paused_accumulated_ms,
            current_pause_started_at_epoch_ms=self.session_store.get_pause_start(self.quiz.id, self.user_id),
        )
        # A pause left by an earlier process stays open until set_online(True)
        self.online = self.session.current_pause_started_at_epoch_ms is None
        self.monitor = IntegrityMonitor(
            self.session,
            self.submit,
            threshold=self.settings.violation_threshold,
            on_violation=self._on_violation,
            clock=self.clock,
        )
        self.orchestrator = SubmissionOrchestrator(
            self.session,
            self.quiz,
            self.answer_store,
            self.remote,
            self._discard,
            user_name=self.user_name,
            settings=self.settings,
            quiz_loader=self.quiz_loader,
            violation_history=lambda: self.monitor.history,
            on_complete=self.on_complete,
            clock=self.clock,
        )

        if snapshot is not None:
            self.answer_store.hydrate(
                AnswerState(
                    answers=snapshot.answers,
                    flagged=snapshot.flagged,
                    bookmarked=snapshot.bookmarked,
                    marked_for_review=snapshot.marked_for_review,
                    visited=snapshot.visited,
                    time_spent_ms=snapshot.time_spent_ms,
                ),
                revision=snapshot.revision,
            )
            self.monitor.restore(snapshot.violation_count, snapshot.violation_history)
            self.current_index = self._index_of(snapshot.current_question_id)
            self.restored = snapshot.has_progress

        self.sync.attach()
        self.timer.on_expired(self._on_timer_expired)
        if self.quiz.questions:
            self._enter(self.current_index)
        if autostart_timer:
            self.timer.start()

        logger.info(
            f"{'Resumed' if snapshot else 'Started'} quiz {self.quiz.id} for user {self.user_id}",
            extra={
                'event_type': 'exam_session_started',
                'quiz_id': self.quiz.id,
                'user_id': self.user_id,
                'restored': self.restored,
                'timestamp': time.time()
            }
        )
        return self.status()

    def _restore_anchor(self, snapshot: PersistedSnapshot) -> None:
        # Only a remote-only resume (new device or wiped cache) needs the anchor back
        if self.session_store.get_anchor(self.quiz.id, self.user_id) is not None:
            return
        anchor = TimerAnchor(
            started_at_epoch_ms=snapshot.started_at_epoch_ms,
            duration_ms=snapshot.duration_ms,
            paused_accumulated_ms=snapshot.paused_accumulated_ms,
        )
        if anchor.is_valid:
            self.session_store.save_anchor(self.quiz.id, self.user_id, anchor)

    def _index_of(self, question_id: Optional[int]) -> int:
        for index, question in enumerate(self.quiz.questions):
            if question.id == question_id:
                return index
        return 0

    async def close(self) -> bool:
        """
        Stop ticking and flush progress (surface shutdown).

        Returns:
            True if the remote flush completed
        """
        self.timer.stop()
        if self.session is None or self.is_done:
            return False
        self._leave_current()
        return await self.sync.flush_on_unload()

    # Snapshot

    def build_snapshot(self) -> PersistedSnapshot:
        anchor = self.timer.anchor
        state = self.answer_store.export_state()
        current = self.quiz.questions[self.current_index].id if self.quiz.questions else None
        return PersistedSnapshot(
            quiz_id=self.quiz.id,
            user_id=self.user_id,
            answers=state.answers,
            flagged=state.flagged,
            bookmarked=state.bookmarked,
            marked_for_review=state.marked_for_review,
            visited=state.visited,
            time_spent_ms=state.time_spent_ms,
            current_question_id=current,
            started_at_epoch_ms=anchor.started_at_epoch_ms if anchor else None,
            duration_ms=anchor.duration_ms if anchor else None,
            paused_accumulated_ms=anchor.paused_accumulated_ms if anchor else 0,
            violation_count=self.session.violation_count if self.session else 0,
            violation_history=list(self.monitor.history) if self.monitor else [],
            revision=self.answer_store.revision,
            updated_at_ms=self.clock(),
        )

    # Navigation

    @property
    def current_question(self) -> Optional[Question]:
        if not self.quiz.questions:
            return None
        return self.quiz.questions[self.current_index]

    def _leave_current(self) -> None:
        if self._entered_at is None or self.answer_store.is_locked or not self.quiz.questions:
            return
        elapsed = self.clock() - self._entered_at
        self._entered_at = None
        self.answer_store.record_time_spent(self.quiz.questions[self.current_index].id, elapsed)

    def _enter(self, index: int) -> None:
        self.current_index = index
        if self.answer_store.is_locked:
            return
        self._entered_at = self.clock()
        self.answer_store.visit(self.quiz.questions[index].id)

    def go_to(self, index: int) -> Question:
        """
        Move to the question at a zero-based position.

        Raises:
            InvalidSelectionError: If the position is out of range
        """
        self._require_started()
        if not 0 <= index < len(self.quiz.questions):
            raise InvalidSelectionError(
                f"Question position {index} out of range",
                f"❌ Choose a question between 1 and {len(self.quiz.questions)}.",
            )
        if index != self.current_index:
            self._leave_current()
            self._enter(index)
        return self.current_question

    def next_question(self) -> Question:
        return self.go_to(min(self.current_index + 1, len(self.quiz.questions) - 1))

    def previous_question(self) -> Question:
        return self.go_to(max(self.current_index - 1, 0))

    def next_section(self) -> Question:
        """Jump to the first question of the next section, if there is one."""
        current_section = self.current_question.section_id if self.current_question else None
        for index in range(self.current_index + 1, len(self.quiz.questions)):
            if self.quiz.questions[index].section_id != current_section:
                return self.go_to(index)
        return self.current_question

    # Answer state

    def _question_id(self, question_id: Optional[int]) -> int:
        if question_id is not None:
            return question_id
        if self.current_question is None:
            raise InvalidSelectionError("Quiz has no questions")
        return self.current_question.id

    def select_option(self, option_index: int, question_id: Optional[int] = None) -> List[int]:
        self._require_started()
        return self.answer_store.select_option(self._question_id(question_id), option_index)

    def toggle_flag(self, question_id: Optional[int] = None) -> bool:
        self._require_started()
        return self.answer_store.toggle_flag(self._question_id(question_id))

    def toggle_bookmark(self, question_id: Optional[int] = None) -> bool:
        self._require_started()
        return self.answer_store.toggle_bookmark(self._question_id(question_id))

    def toggle_mark_for_review(self, question_id: Optional[int] = None) -> bool:
        self._require_started()
        return self.answer_store.toggle_mark_for_review(self._question_id(question_id))

    # Connectivity and integrity

    def set_online(self, online: bool) -> None:
        """Pause the timer while offline; resync when back online."""
        session = self._require_started()
        if online == self.online:
            return
        self.online = online
        if online:
            self.timer.resume()
            self.sync.request_write()
        else:
            self.timer.pause()
        anchor = self.timer.anchor
        if anchor is not None:
            session.paused_accumulated_ms = anchor.paused_accumulated_ms
        session.current_pause_started_at_epoch_ms = self.session_store.get_pause_start(self.quiz.id, self.user_id)

    async def report_visibility_change(self, hidden: bool) -> Optional[Dict[str, Any]]:
        self._require_started()
        return await self.monitor.report_visibility_change(hidden)

    async def report_fullscreen_change(self, is_fullscreen: bool) -> Optional[Dict[str, Any]]:
        self._require_started()
        return await self.monitor.report_fullscreen_change(is_fullscreen)

    def _on_violation(self, event: ViolationEvent) -> None:
        self.answer_store.touch()
        self.sync.save_local()
        self.sync.request_write()

    # Submission

    async def submit(self, trigger: str = MANUAL) -> Dict[str, Any]:
        """Submit through the orchestrator; stops the timer on success."""
        self._require_started()
        if not self.answer_store.is_locked:
            self._leave_current()
        result = await self.orchestrator.submit(trigger)
        if result.get('success'):
            self.timer.stop()
        elif not self.answer_store.is_locked and self._entered_at is None:
            self._entered_at = self.clock()
        return result

    async def _discard(self) -> None:
        # Ticking must not recreate the anchor the discard removes
        self.timer.halt()
        await self.sync.discard()

    async def _on_timer_expired(self) -> None:
        logger.info(f"Time is up for quiz {self.quiz.id} user {self.user_id}, submitting")
        await self.submit(TIMER_EXPIRY)

    # Queries

    def question_view(self, index: Optional[int] = None) -> Dict[str, Any]:
        """Student-facing view of a question; correctness is never included."""
        self._require_started()
        index = self.current_index if index is None else index
        question = self.quiz.questions[index].student_view()
        section = next((s for s in self.quiz.sections if s.id == question.section_id), None)
        return {
            'number': index + 1,
            'total': len(self.quiz.questions),
            'question_id': question.id,
            'text': question.text,
            'type': question.type.value,
            'marks': question.marks,
            'options': [option.text for option in question.options],
            'selected': self.answer_store.selection(question.id),
            'flagged': self.answer_store.flagged.get(question.id, False),
            'bookmarked': self.answer_store.bookmarked.get(question.id, False),
            'marked_for_review': self.answer_store.marked_for_review.get(question.id, False),
            'section': section.name if section else None,
        }

    def remaining_seconds(self) -> int:
        self._require_started()
        return self.timer.remaining_seconds()

    def status(self) -> Dict[str, Any]:
        session = self._require_started()
        store = self.answer_store
        return {
            'quiz_id': self.quiz.id,
            'quiz_title': self.quiz.title,
            'user_id': self.user_id,
            'remaining_seconds': 0 if self.is_done else self.timer.remaining_seconds(),
            'current_question': self.current_index + 1,
            'total_questions': len(self.quiz.questions),
            'answered': store.answered_count,
            'flagged': store.count('flagged'),
            'bookmarked': store.count('bookmarked'),
            'marked_for_review': store.count('marked_for_review'),
            'visited': store.count('visited'),
            'violation_count': session.violation_count,
            'violation_threshold': self.settings.violation_threshold,
            'is_paused': self.timer.is_paused,
            'submitted': session.submitted,
            'state': self.orchestrator.state.value if self.orchestrator else SubmissionState.IN_PROGRESS.value,
            'restored': self.restored,
        }

    def review(self) -> List[Dict[str, Any]]:
        """
        Per-question breakdown with correct answers.

        Raises:
            ReviewNotAvailableError: Before submission unless the quiz
                shows answers
        """
        self._require_started()
        if not (self.is_done or self.quiz.show_answers):
            raise ReviewNotAvailableError(f"Review requested before submission of quiz {self.quiz.id}")
        return build_review(self.quiz.questions, self.answer_store.answers)
