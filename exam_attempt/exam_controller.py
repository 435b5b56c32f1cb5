"""
Exam session controller.
Manages live exam attempts per (quiz, student) and turns every outcome into
a result dictionary the delivery surface can show as-is.
"""
import logging
import inspect
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from enum import Enum

from .config_manager import ConfigManager
from .data_manager import DataManager
from .exam_session import ExamSession
from .exceptions import ExamError, InvalidSelectionError, SessionConflictError, SessionNotFoundError
from .remote_store import RemoteStore
from .session_store import SessionStore
from .submission import MANUAL, check_attempt_allowed
from .timer_engine import epoch_ms

SessionKey = Tuple[int, str]

COMPLETED = "completed"
LAST_MINUTE = "last_minute"


class SessionState(Enum):
    """Enumeration of possible exam session states."""
    INACTIVE = "inactive"
    ACTIVE = "active"
    PAUSED = "paused"
    SUBMITTING = "submitting"
    COMPLETED = "completed"


class ExamController:
    """
    Orchestrates exam attempts for all students.

    Each student runs at most one exam at a time. Finished attempts stay
    registered so their review can still be shown.
    """

    def __init__(
        self,
        data_manager: DataManager,
        config_manager: ConfigManager,
        session_store: SessionStore,
        remote: RemoteStore,
        clock: Callable[[], int] = epoch_ms,
    ):
        """
        Initialize the exam controller.

        Args:
            data_manager: Source of exam definitions
            config_manager: Source of exam settings
            session_store: Local storage shared by all attempts
            remote: Remote progress and attempt store
            clock: Callable returning wall-clock epoch milliseconds
        """
        self.logger = logging.getLogger(__name__)
        self.data_manager = data_manager
        self.config_manager = config_manager
        self.session_store = session_store
        self.remote = remote
        self.clock = clock
        self.online = True

        self._sessions: Dict[SessionKey, ExamSession] = {}
        self._listeners: Dict[str, List[Callable[..., Any]]] = {COMPLETED: [], LAST_MINUTE: []}

        self.logger.info("ExamController initialized")

    # Listeners

    def add_listener(self, event: str, callback: Callable[..., Any]) -> None:
        """
        Register a callback for ``completed`` (user_id, record) or
        ``last_minute`` (user_id, quiz_id, remaining_seconds) events.
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown controller event: {event}")
        self._listeners[event].append(callback)

    async def _emit(self, event: str, *args) -> None:
        for callback in list(self._listeners[event]):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error(f"Listener for {event} failed: {e}", exc_info=True)

    # Registry

    def get_session(self, quiz_id: int, user_id: str) -> Optional[ExamSession]:
        return self._sessions.get((quiz_id, user_id))

    def get_active_session(self, user_id: str) -> Optional[ExamSession]:
        """The student's exam that has not finished submitting, if any."""
        for (_, session_user), session in self._sessions.items():
            if session_user == user_id and not session.is_done:
                return session
        return None

    def _require_active(self, user_id: str) -> ExamSession:
        session = self.get_active_session(user_id)
        if session is None:
            raise SessionNotFoundError(f"No exam in progress for user {user_id}")
        return session

    def get_session_state(self, quiz_id: int, user_id: str) -> SessionState:
        session = self.get_session(quiz_id, user_id)
        if session is None or not session.is_started:
            return SessionState.INACTIVE
        if session.is_done:
            return SessionState.COMPLETED
        if session.is_submitted:
            return SessionState.SUBMITTING
        if session.timer.is_paused:
            return SessionState.PAUSED
        return SessionState.ACTIVE

    # Error handling

    def _handle_session_error(self, key: Any, error: Exception, operation: str) -> Dict[str, Any]:
        """
        Log an error and build the failure result.

        Args:
            key: Session key or user id the operation was for
            error: The exception that occurred
            operation: Description of the operation that failed

        Returns:
            Dictionary with error handling results
        """
        if isinstance(error, ExamError):
            self.logger.warning(f"{operation} failed for {key}: {error}")
        else:
            self.logger.error(f"Error in {operation} for {key}: {error}", exc_info=True)

        return {
            'success': False,
            'error': error.code if isinstance(error, ExamError) else str(error),
            'operation': operation,
            'user_message': self._get_user_friendly_error_message(error, operation)
        }

    def _get_user_friendly_error_message(self, error: Exception, operation: str) -> str:
        if isinstance(error, ExamError):
            return error.user_message
        return f"❌ An unexpected error occurred during {operation.replace('_', ' ')}. Please try again."

    # Lifecycle

    async def start_exam(
        self,
        quiz_id: int,
        user_id: str,
        user_name: str = "Anonymous",
        autostart_timer: bool = True,
    ) -> Dict[str, Any]:
        """
        Start an exam, or resume the student's saved attempt.

        Args:
            quiz_id: Exam identifier
            user_id: Student identifier
            user_name: Display name stored with the attempt record
            autostart_timer: Start the background tick task

        Returns:
            Dictionary with operation results and the first question view
        """
        key = (quiz_id, user_id)
        try:
            quiz = self.data_manager.get_quiz(quiz_id)

            active = self.get_active_session(user_id)
            if active is not None:
                if active.quiz.id == quiz_id:
                    raise SessionConflictError(f"Exam {quiz_id} already in progress for user {user_id}")
                raise SessionConflictError(
                    f"User {user_id} has exam {active.quiz.id} in progress",
                    f"⚠️ You are still taking **{active.quiz.title}**. Submit it before starting another exam.",
                )

            # Friendly pre-check; submission re-validates against stored data
            attempts = await self.remote.count_attempts(quiz_id, user_id)
            check_attempt_allowed(quiz, attempts, self.clock())

            session = ExamSession(
                quiz,
                user_id,
                self.session_store,
                self.remote,
                user_name=user_name,
                settings=self.config_manager.get_exam_settings(),
                quiz_loader=self.data_manager.find_quiz,
                on_complete=lambda record: self._emit(COMPLETED, user_id, record),
                clock=self.clock,
            )
            session.timer.on_last_minute(
                lambda remaining: self._emit(LAST_MINUTE, user_id, quiz_id, remaining)
            )
            status = await session.start(autostart_timer=autostart_timer)
            # Also closes a pause left open by a previous run
            session.set_online(self.online)
            self._sessions[key] = session

            self.logger.info(
                f"Exam {quiz_id} {'resumed' if status['restored'] else 'started'} for user {user_id}",
                extra={
                    'event_type': 'exam_started',
                    'quiz_id': quiz_id,
                    'user_id': user_id,
                    'restored': status['restored'],
                    'timestamp': time.time()
                }
            )
            if status['restored']:
                user_message = f"🔄 Welcome back! Your saved answers for **{quiz.title}** were restored."
            else:
                user_message = f"📝 **{quiz.title}** has started. Good luck!"
            return {
                'success': True,
                'message': "Exam started",
                'user_message': user_message,
                'status': session.status(),
                'question': session.question_view(),
            }

        except Exception as e:
            return self._handle_session_error(key, e, "start_exam")

    async def submit(self, user_id: str) -> Dict[str, Any]:
        """Manually submit the student's exam."""
        try:
            session = self._require_active(user_id)
            result = await session.submit(MANUAL)
            result['status'] = session.status()
            if not result['success'] and not result.get('duplicate'):
                self.logger.warning(f"Submission failed for {session.key}: {result.get('error')}")
            return result
        except Exception as e:
            return self._handle_session_error(user_id, e, "submit")

    async def shutdown(self) -> int:
        """
        Stop all timers and flush every live attempt.

        Returns:
            Number of attempts whose progress reached the remote store
        """
        flushed = 0
        for session in list(self._sessions.values()):
            try:
                if await session.close():
                    flushed += 1
            except Exception as e:
                self.logger.error(f"Failed to close exam session {session.key}: {e}", exc_info=True)
        self.logger.info(f"Controller shutdown: flushed {flushed} of {len(self._sessions)} sessions")
        return flushed

    # Answering and navigation

    def get_question(self, user_id: str) -> Dict[str, Any]:
        try:
            session = self._require_active(user_id)
            return {
                'success': True,
                'message': "Current question",
                'question': session.question_view(),
                'status': session.status(),
            }
        except Exception as e:
            return self._handle_session_error(user_id, e, "get_question")

    def select_option(self, user_id: str, option_index: int, question_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Click an option of the current (or given) question.

        Args:
            user_id: Student identifier
            option_index: Zero-based option index
            question_id: Question to answer; defaults to the current one
        """
        try:
            session = self._require_active(user_id)
            selected = session.select_option(option_index, question_id)
            return {
                'success': True,
                'message': f"Selection is now {selected}",
                'selected': selected,
                'question': session.question_view(),
            }
        except Exception as e:
            return self._handle_session_error(user_id, e, "select_option")

    def navigate(self, user_id: str, action: str, position: Optional[int] = None) -> Dict[str, Any]:
        """
        Move through the exam.

        Args:
            user_id: Student identifier
            action: 'next', 'previous', 'next_section' or 'goto'
            position: One-based question number for 'goto'
        """
        try:
            session = self._require_active(user_id)
            if action == "next":
                session.next_question()
            elif action == "previous":
                session.previous_question()
            elif action == "next_section":
                session.next_section()
            elif action == "goto":
                if position is None:
                    raise InvalidSelectionError("goto requires a position")
                session.go_to(position - 1)
            else:
                raise ValueError(f"Unknown navigation action: {action}")
            return {
                'success': True,
                'message': f"Moved to question {session.current_index + 1}",
                'question': session.question_view(),
            }
        except Exception as e:
            return self._handle_session_error(user_id, e, f"navigate_{action}")

    def toggle_marker(self, user_id: str, marker: str, question_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Toggle 'flag', 'bookmark' or 'review' on the current question.
        """
        labels = {
            'flag': ("flagged", "🚩"),
            'bookmark': ("bookmarked", "🔖"),
            'review': ("marked for review", "👀"),
        }
        try:
            session = self._require_active(user_id)
            if marker == 'flag':
                value = session.toggle_flag(question_id)
            elif marker == 'bookmark':
                value = session.toggle_bookmark(question_id)
            elif marker == 'review':
                value = session.toggle_mark_for_review(question_id)
            else:
                raise ValueError(f"Unknown marker: {marker}")
            label, icon = labels[marker]
            return {
                'success': True,
                'message': f"Question {label}: {value}",
                'user_message': f"{icon} Question {'is now' if value else 'is no longer'} {label}",
                'value': value,
                'question': session.question_view(),
            }
        except Exception as e:
            return self._handle_session_error(user_id, e, f"toggle_{marker}")

    # Status and review

    def get_status(self, user_id: str) -> Dict[str, Any]:
        try:
            session = self._require_active(user_id)
            return {'success': True, 'message': "Exam status", 'status': session.status()}
        except Exception as e:
            return self._handle_session_error(user_id, e, "get_status")

    def review(self, user_id: str, quiz_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Answer review for the student's exam.

        Args:
            user_id: Student identifier
            quiz_id: Exam to review; defaults to the student's most recent one
        """
        try:
            if quiz_id is not None:
                session = self.get_session(quiz_id, user_id)
            else:
                session = next(
                    (s for (_, uid), s in reversed(list(self._sessions.items())) if uid == user_id),
                    None,
                )
            if session is None:
                raise SessionNotFoundError(f"No exam to review for user {user_id}")
            record = session.orchestrator.record if session.orchestrator else None
            return {
                'success': True,
                'message': "Exam review",
                'quiz_title': session.quiz.title,
                'review': session.review(),
                'record': record,
            }
        except Exception as e:
            return self._handle_session_error(user_id, e, "review")

    # Integrity and connectivity

    async def report_visibility_change(self, user_id: str, hidden: bool) -> Dict[str, Any]:
        try:
            session = self._require_active(user_id)
            violation = await session.report_visibility_change(hidden)
            return {'success': True, 'message': "Visibility recorded", 'violation': violation}
        except Exception as e:
            return self._handle_session_error(user_id, e, "report_visibility_change")

    async def report_fullscreen_change(self, user_id: str, is_fullscreen: bool) -> Dict[str, Any]:
        try:
            session = self._require_active(user_id)
            violation = await session.report_fullscreen_change(is_fullscreen)
            return {'success': True, 'message': "Fullscreen state recorded", 'violation': violation}
        except Exception as e:
            return self._handle_session_error(user_id, e, "report_fullscreen_change")

    def set_connectivity(self, online: bool) -> int:
        """
        Propagate connectivity to every live attempt.

        Returns:
            Number of sessions updated
        """
        self.online = online
        updated = 0
        for session in self._sessions.values():
            if session.is_started and not session.is_done:
                session.set_online(online)
                updated += 1
        self.logger.info(
            f"Connectivity {'restored' if online else 'lost'}; updated {updated} sessions",
            extra={
                'event_type': 'connectivity_changed',
                'online': online,
                'sessions': updated,
                'timestamp': time.time()
            }
        )
        return updated

    # Catalogue

    def get_available_quizzes(self) -> List[Dict[str, Any]]:
        return [
            {
                'id': quiz.id,
                'title': quiz.title,
                'questions': len(quiz.questions),
                'duration_minutes': quiz.duration_minutes,
                'max_attempts': quiz.max_attempts,
            }
            for quiz in self.data_manager.get_available_quizzes()
        ]

    async def get_attempt_history(self, user_id: str, quiz_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Stored attempt records of a student, newest first.

        Args:
            user_id: Student identifier
            quiz_id: Restrict to one exam

        Returns:
            Dictionary with operation results and a summary per attempt
        """
        try:
            records = await self.remote.list_attempts(quiz_id=quiz_id, user_id=user_id)
        except Exception as e:
            return self._handle_session_error(user_id, e, "get_attempt_history")

        attempts = []
        for record in sorted(records, key=lambda r: r.get('submitted_at') or "", reverse=True):
            quiz = self.data_manager.find_quiz(record.get('quiz_id'))
            attempts.append({
                'id': record.get('id'),
                'quiz_id': record.get('quiz_id'),
                'quiz_title': quiz.title if quiz else f"Exam #{record.get('quiz_id')}",
                'score': record.get('score'),
                'total_marks': record.get('total_marks'),
                'percentage': record.get('percentage'),
                'passed': record.get('passed'),
                'submitted_at': record.get('submitted_at'),
            })
        return {'success': True, 'message': f"{len(attempts)} attempts", 'attempts': attempts}
