"""
In-memory answer state of one attempt.

The store is the single source of truth for selections and the per-question
side-maps. Every mutation bumps ``revision`` and notifies listeners with the
kind of change, which is how the sync layer learns what to write.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from .exceptions import InvalidSelectionError, SessionLockedError
from .models import Question, QuestionType

logger = logging.getLogger(__name__)

ANSWER = "answer"
FLAG = "flag"
BOOKMARK = "bookmark"
REVIEW = "review"
VISITED = "visited"
TIME_SPENT = "time_spent"

# Changes that must reach the remote store within the max-latency bound
BOUNDED_KINDS = frozenset({ANSWER, FLAG, BOOKMARK, REVIEW})

MutationListener = Callable[[str, int], None]


@dataclass
class AnswerState:
    """Value copy of the store contents."""
    answers: Dict[int, List[int]] = field(default_factory=dict)
    flagged: Dict[int, bool] = field(default_factory=dict)
    bookmarked: Dict[int, bool] = field(default_factory=dict)
    marked_for_review: Dict[int, bool] = field(default_factory=dict)
    visited: Dict[int, bool] = field(default_factory=dict)
    time_spent_ms: Dict[int, int] = field(default_factory=dict)


class AnswerStateStore:
    """Selections and side-flags with single/multiple choice semantics."""

    def __init__(self, questions: Iterable[Question]):
        self._questions: Dict[int, Question] = {q.id: q for q in questions}
        self.answers: Dict[int, List[int]] = {}
        self.flagged: Dict[int, bool] = {}
        self.bookmarked: Dict[int, bool] = {}
        self.marked_for_review: Dict[int, bool] = {}
        self.visited: Dict[int, bool] = {}
        self.time_spent_ms: Dict[int, int] = {}
        self.revision = 0
        self._locked = False
        self._listeners: List[MutationListener] = []

    def add_listener(self, listener: MutationListener) -> None:
        self._listeners.append(listener)

    def lock(self) -> None:
        """Reject every further mutation (session submitted)."""
        self._locked = True

    def unlock(self) -> None:
        self._locked = False

    @property
    def is_locked(self) -> bool:
        return self._locked

    def _question(self, question_id: int) -> Question:
        question = self._questions.get(question_id)
        if question is None:
            raise InvalidSelectionError(f"Unknown question id {question_id}",
                                        "❌ That question is not part of this exam.")
        return question

    def _check_unlocked(self, operation: str) -> None:
        if self._locked:
            raise SessionLockedError(f"Cannot {operation}: session already submitted")

    def touch(self) -> int:
        """Bump the revision for a change held outside the store."""
        self.revision += 1
        return self.revision

    def _changed(self, kind: str, question_id: int) -> None:
        self.revision += 1
        for listener in list(self._listeners):
            listener(kind, question_id)

    # Mutations

    def select_option(
        self,
        question_id: int,
        option_index: int,
        question_type: Optional[QuestionType] = None,
    ) -> List[int]:
        """
        Apply a click on an option.

        Single choice: clicking the sole selected option clears the
        selection, any other option replaces it. Multiple choice: toggles
        membership of the option.

        Args:
            question_id: Question identifier
            option_index: Index into the question's options
            question_type: Overrides the question's own type when given

        Returns:
            The new selection, sorted

        Raises:
            SessionLockedError: If the session has been submitted
            InvalidSelectionError: If the question or option does not exist
        """
        self._check_unlocked("select option")
        question = self._question(question_id)
        if isinstance(option_index, bool) or not isinstance(option_index, int) \
                or not 0 <= option_index < len(question.options):
            raise InvalidSelectionError(
                f"Option {option_index!r} out of range for question {question_id}"
            )

        qtype = question_type or question.type
        current = self.answers.get(question_id, [])
        if qtype == QuestionType.SINGLE:
            selection = [] if current == [option_index] else [option_index]
        elif option_index in current:
            selection = [idx for idx in current if idx != option_index]
        else:
            selection = sorted(current + [option_index])

        if selection:
            self.answers[question_id] = selection
        else:
            self.answers.pop(question_id, None)
        self._changed(ANSWER, question_id)
        return list(selection)

    def _toggle(self, side_map: Dict[int, bool], kind: str, question_id: int) -> bool:
        self._check_unlocked(f"toggle {kind}")
        self._question(question_id)
        side_map[question_id] = not side_map.get(question_id, False)
        self._changed(kind, question_id)
        return side_map[question_id]

    def toggle_flag(self, question_id: int) -> bool:
        return self._toggle(self.flagged, FLAG, question_id)

    def toggle_bookmark(self, question_id: int) -> bool:
        return self._toggle(self.bookmarked, BOOKMARK, question_id)

    def toggle_mark_for_review(self, question_id: int) -> bool:
        return self._toggle(self.marked_for_review, REVIEW, question_id)

    def visit(self, question_id: int) -> None:
        """Mark a question visited; repeated visits change nothing."""
        self._check_unlocked("visit question")
        self._question(question_id)
        if self.visited.get(question_id):
            return
        self.visited[question_id] = True
        self._changed(VISITED, question_id)

    def record_time_spent(self, question_id: int, elapsed_ms: int) -> None:
        self._check_unlocked("record time spent")
        self._question(question_id)
        if elapsed_ms <= 0:
            return
        self.time_spent_ms[question_id] = self.time_spent_ms.get(question_id, 0) + int(elapsed_ms)
        self._changed(TIME_SPENT, question_id)

    # Queries

    def selection(self, question_id: int) -> List[int]:
        return list(self.answers.get(question_id, []))

    @property
    def answered_count(self) -> int:
        return sum(1 for selection in self.answers.values() if selection)

    def count(self, side_map_name: str) -> int:
        """Number of questions with a set side-flag, e.g. ``count('flagged')``."""
        return sum(1 for value in getattr(self, side_map_name).values() if value)

    def export_state(self) -> AnswerState:
        return AnswerState(
            answers={qid: list(sel) for qid, sel in self.answers.items()},
            flagged=dict(self.flagged),
            bookmarked=dict(self.bookmarked),
            marked_for_review=dict(self.marked_for_review),
            visited=dict(self.visited),
            time_spent_ms=dict(self.time_spent_ms),
        )

    def hydrate(self, state: AnswerState, revision: int = 0) -> None:
        """
        Replace the store contents without notifying listeners.

        Selections for unknown questions are dropped.
        """
        self.answers = {
            qid: sorted(set(sel)) for qid, sel in state.answers.items()
            if qid in self._questions and sel
        }
        self.flagged = dict(state.flagged)
        self.bookmarked = dict(state.bookmarked)
        self.marked_for_review = dict(state.marked_for_review)
        self.visited = dict(state.visited)
        self.time_spent_ms = dict(state.time_spent_ms)
        self.revision = max(int(revision), 0)
        logger.debug(f"Hydrated answer state with {len(self.answers)} answers at revision {self.revision}")
