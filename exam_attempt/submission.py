"""
Submission orchestration for exam attempts.

Manual submits, timer expiry and the integrity threshold all end up in
``SubmissionOrchestrator.submit``. The session's ``submitted`` flag is the
only mutex: it is checked and set without yielding to the event loop, so two
triggers in the same tick produce exactly one attempt record.
"""
import asyncio
import inspect
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .answer_store import AnswerStateStore
from .exceptions import (
    AttemptWriteError,
    ExamError,
    MaxAttemptsReachedError,
    QuizClosedError,
    QuizNotOpenError,
    StorageError,
    SubmissionError,
    SubmissionTimeoutError,
)
from .models import AttemptRecord, ExamSettings, QuizDefinition, ScoreResult, Session, ViolationEvent
from .remote_store import RemoteStore
from .scoring import round_half_up, score_attempt
from .timer_engine import epoch_ms

logger = logging.getLogger(__name__)

MANUAL = "manual"
TIMER_EXPIRY = "timer"
INTEGRITY = "integrity"


class SubmissionState(Enum):
    """States of the terminal transition of a session."""
    IN_PROGRESS = "in_progress"
    VALIDATING = "validating"
    WRITING = "writing"
    DONE = "done"


def _to_iso(epoch_milliseconds: Optional[int]) -> Optional[str]:
    if not epoch_milliseconds:
        return None
    return datetime.fromtimestamp(epoch_milliseconds / 1000, tz=timezone.utc).isoformat()


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def check_attempt_allowed(quiz: QuizDefinition, attempts: int, now_ms: int) -> None:
    """
    Check the attempt limit and the quiz window.

    Naive quiz datetimes are taken as UTC.

    Raises:
        MaxAttemptsReachedError: If ``attempts`` already reaches the limit
        QuizNotOpenError: Before the window opens
        QuizClosedError: After the window closes
    """
    max_attempts = quiz.max_attempts or 1
    if attempts >= max_attempts:
        raise MaxAttemptsReachedError(f"{attempts} of {max_attempts} attempts used")

    now = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc)
    if quiz.start_time is not None and now < _aware(quiz.start_time):
        raise QuizNotOpenError(f"Quiz opens at {quiz.start_time.isoformat()}")
    if quiz.end_time is not None and now > _aware(quiz.end_time):
        raise QuizClosedError(f"Quiz closed at {quiz.end_time.isoformat()}")


class SubmissionOrchestrator:
    """Validates, scores and writes the attempt record exactly once."""

    def __init__(
        self,
        session: Session,
        quiz: QuizDefinition,
        answer_store: AnswerStateStore,
        remote: RemoteStore,
        discard: Callable[[], Awaitable[None]],
        user_name: str = "Anonymous",
        settings: Optional[ExamSettings] = None,
        quiz_loader: Optional[Callable[[int], Any]] = None,
        violation_history: Optional[Callable[[], List[ViolationEvent]]] = None,
        on_complete: Optional[Callable[[Dict[str, Any]], Any]] = None,
        clock: Callable[[], int] = epoch_ms,
    ):
        """
        Initialize the orchestrator.

        Args:
            session: Session holding the ``submitted`` flag
            quiz: Quiz definition used for scoring
            answer_store: Source of the final answers
            remote: Attempt record store
            discard: Deletes the persisted progress after a successful write
            user_name: Display name stored with the record
            settings: Guard and write timeouts, redirect delay
            quiz_loader: Re-fetches the quiz for attempt-limit and window
                checks; the given quiz is used when it returns None
            violation_history: Returns the recorded violations
            on_complete: Called with the stored record after the redirect delay
            clock: Callable returning wall-clock epoch milliseconds
        """
        self.session = session
        self.quiz = quiz
        self.answer_store = answer_store
        self.remote = remote
        self.discard = discard
        self.user_name = user_name or "Anonymous"
        self.settings = settings or ExamSettings()
        self.quiz_loader = quiz_loader
        self.violation_history = violation_history or (lambda: [])
        self.on_complete = on_complete
        self.clock = clock

        self.state = SubmissionState.IN_PROGRESS
        self.record: Optional[Dict[str, Any]] = None
        self.last_score: Optional[ScoreResult] = None
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._completion_task: Optional[asyncio.Task] = None

    @property
    def is_done(self) -> bool:
        return self.state == SubmissionState.DONE

    async def submit(self, trigger: str = MANUAL) -> Dict[str, Any]:
        """
        Run the submission sequence.

        Args:
            trigger: What started the submission; recorded and logged only

        Returns:
            Dictionary with ``success`` and either the stored ``record`` or
            ``error`` and ``user_message``
        """
        # Check and set with no await in between
        if self.session.submitted:
            logger.info(
                f"Ignoring {trigger} submit for quiz {self.session.quiz_id} user {self.session.user_id}: already submitted"
            )
            return {
                'success': False,
                'duplicate': True,
                'error': 'already_submitted',
                'user_message': "ℹ️ Your exam is already being submitted.",
            }
        self.session.submitted = True
        self.answer_store.lock()
        self._generation += 1
        generation = self._generation
        self.state = SubmissionState.VALIDATING

        logger.info(
            f"Submitting quiz {self.session.quiz_id} for user {self.session.user_id} ({trigger})",
            extra={
                'event_type': 'submission_started',
                'quiz_id': self.session.quiz_id,
                'user_id': self.session.user_id,
                'trigger': trigger,
                'timestamp': time.time()
            }
        )

        task = asyncio.ensure_future(self._run(generation, trigger))
        self._task = task
        done, _ = await asyncio.wait({task}, timeout=self.settings.submission_timeout_seconds)
        if task in done:
            return task.result()

        # The in-flight run is not cancelled; bumping the generation makes it skip cleanup
        self._generation += 1
        self._reset("overall timeout")
        return self._failure(
            SubmissionTimeoutError(
                f"Submission did not complete within {self.settings.submission_timeout_seconds}s"
            ),
            trigger,
        )

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _reset(self, reason: str) -> None:
        self.session.submitted = False
        self.answer_store.unlock()
        self.state = SubmissionState.IN_PROGRESS
        logger.info(f"Submission reset for quiz {self.session.quiz_id} user {self.session.user_id}: {reason}")

    def _failure(self, error: ExamError, trigger: str) -> Dict[str, Any]:
        logger.warning(
            f"Submission failed for quiz {self.session.quiz_id} user {self.session.user_id}: {error}",
            extra={
                'event_type': 'submission_failed',
                'quiz_id': self.session.quiz_id,
                'user_id': self.session.user_id,
                'error_code': error.code,
                'trigger': trigger,
                'timestamp': time.time()
            }
        )
        return {
            'success': False,
            'error': error.code,
            'message': str(error),
            'user_message': error.user_message,
            'trigger': trigger,
        }

    async def _run(self, generation: int, trigger: str) -> Dict[str, Any]:
        try:
            score = score_attempt(
                self.quiz.questions,
                self.answer_store.answers,
                passing_score=self.quiz.passing_score,
                default_pass_percentage=self.settings.default_pass_percentage,
            )
            self.last_score = score
            quiz = await self._validate()

            if not self._is_current(generation):
                logger.warning(f"Stale submission for quiz {self.session.quiz_id} stopped before writing")
                return {'success': False, 'stale': True, 'error': 'stale', 'user_message': SubmissionTimeoutError.default_user_message}

            self.state = SubmissionState.WRITING
            record = self._build_record(quiz, score, trigger)
            stored = await self._write(record)

            if not self._is_current(generation):
                logger.warning(
                    f"Attempt for quiz {self.session.quiz_id} user {self.session.user_id} written after the submission guard fired"
                )
                return {'success': False, 'stale': True, 'error': 'stale', 'user_message': SubmissionTimeoutError.default_user_message}

            await self.discard()
            self.state = SubmissionState.DONE
            self.record = stored
            self._schedule_completion(stored)
            logger.info(
                f"Quiz {self.session.quiz_id} submitted for user {self.session.user_id}: "
                f"{score.obtained_marks:g}/{score.total_marks:g} ({score.percentage}%)",
                extra={
                    'event_type': 'submission_completed',
                    'quiz_id': self.session.quiz_id,
                    'user_id': self.session.user_id,
                    'trigger': trigger,
                    'percentage': score.percentage,
                    'timestamp': time.time()
                }
            )
            return {
                'success': True,
                'message': "Quiz submitted",
                'user_message': "✅ Quiz submitted! Your answers have been saved.",
                'record': stored,
                'score': score,
                'trigger': trigger,
            }
        except ExamError as e:
            if self._is_current(generation):
                self._reset(e.code)
            return self._failure(e, trigger)
        except Exception as e:
            logger.error(f"Unexpected submission error for quiz {self.session.quiz_id}: {e}", exc_info=True)
            if self._is_current(generation):
                self._reset("unexpected error")
            return self._failure(SubmissionError(str(e)), trigger)

    async def _validate(self) -> QuizDefinition:
        """
        Re-check the attempt limit and the quiz window against stored data.

        Raises:
            MaxAttemptsReachedError, QuizNotOpenError, QuizClosedError,
            StorageError
        """
        quiz = self.quiz
        if self.quiz_loader is not None:
            try:
                fresh = await _maybe_await(self.quiz_loader(self.session.quiz_id))
            except Exception as e:
                raise StorageError(f"Could not re-fetch quiz {self.session.quiz_id}: {e}") from e
            if fresh is not None:
                quiz = fresh

        try:
            attempts = await self.remote.count_attempts(self.session.quiz_id, self.session.user_id)
        except ExamError:
            raise
        except Exception as e:
            raise StorageError(f"Could not count attempts: {e}") from e

        check_attempt_allowed(quiz, attempts, self.clock())
        return quiz

    def _build_record(self, quiz: QuizDefinition, score: ScoreResult, trigger: str) -> AttemptRecord:
        answers: Dict[int, List[int]] = {}
        answers_text: Dict[int, List[str]] = {}
        correct_answers: Dict[int, List[str]] = {}
        for question in self.quiz.questions:
            correct_answers[question.id] = [o.text for o in question.options if o.is_correct]
            selection = self.answer_store.selection(question.id)
            if selection:
                answers[question.id] = selection
                answers_text[question.id] = [
                    question.options[idx].text if idx < len(question.options) else '' for idx in selection
                ]

        return AttemptRecord(
            quiz_id=self.session.quiz_id,
            user_id=self.session.user_id,
            user_name=self.user_name,
            answers=answers,
            answers_text=answers_text,
            correct_answers=correct_answers,
            score=round_half_up(score.obtained_marks),
            obtained_marks=score.obtained_marks,
            total_marks=round_half_up(score.total_marks),
            total_questions=len(self.quiz.questions),
            correct_count=score.correct_count,
            percentage=score.percentage,
            passed=score.passed,
            submitted_at=_to_iso(self.clock()),
            start_time=_to_iso(self.session.started_at_epoch_ms),
            trigger=trigger,
            marked_for_review={qid: True for qid, v in self.answer_store.marked_for_review.items() if v},
            flagged={qid: True for qid, v in self.answer_store.flagged.items() if v},
            violation_count=self.session.violation_count,
            violation_history=list(self.violation_history()),
            breakdown=score.breakdown,
        )

    async def _write(self, record: AttemptRecord) -> Dict[str, Any]:
        write = asyncio.ensure_future(self.remote.insert_attempt(record.to_dict()))
        write.add_done_callback(self._log_late_write)
        try:
            # Shielded so a timeout leaves the request running instead of cancelling it
            return await asyncio.wait_for(asyncio.shield(write), timeout=self.settings.write_timeout_seconds)
        except asyncio.TimeoutError:
            raise SubmissionTimeoutError(
                f"Attempt write exceeded {self.settings.write_timeout_seconds}s",
                "⏱️ Saving your submission timed out. Check your connection and submit again.",
            )
        except ExamError:
            raise
        except Exception as e:
            raise AttemptWriteError(f"Attempt write failed: {e}") from e

    def _log_late_write(self, write: asyncio.Future) -> None:
        if not write.cancelled() and write.exception() is not None:
            logger.debug(f"Attempt write for quiz {self.session.quiz_id} finished with error: {write.exception()}")

    def _schedule_completion(self, record: Dict[str, Any]) -> None:
        if self.on_complete is None:
            return
        self._completion_task = asyncio.ensure_future(self._complete_later(record))

    async def _complete_later(self, record: Dict[str, Any]) -> None:
        await asyncio.sleep(self.settings.redirect_delay_seconds)
        try:
            await _maybe_await(self.on_complete(record))
        except Exception as e:
            logger.error(f"Completion callback failed for quiz {self.session.quiz_id}: {e}", exc_info=True)
