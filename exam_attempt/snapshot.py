"""
Persisted snapshot of an attempt and its JSON codec.

The snapshot is the durable projection of a session's mutable state. It
round-trips through string storage, so question ids become string keys on
the way out and are converted back on the way in. Decoding also accepts the
legacy shapes older clients wrote: index lists stored as strings, whole
maps stored as JSON strings, and selections stored as option text.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .models import Question, QuestionType, ViolationEvent

logger = logging.getLogger(__name__)


def _maybe_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return value
    return value


def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.lstrip("-").isdigit():
            return int(stripped)
    return None


def normalize_selection(raw: Any, question: Optional[Question] = None) -> List[int]:
    """
    Convert a stored selection into a sorted list of unique option indices.

    Args:
        raw: Stored selection (list, JSON string, single value)
        question: Question definition, used to map legacy option text to
            indices and to drop out-of-range indices

    Returns:
        Sorted unique indices; a single-choice question keeps at most one
    """
    raw = _maybe_json(raw)
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raw = [raw]

    ordered: List[int] = []
    for item in raw:
        # Numeric strings are indices first; option text is only a fallback
        index = _to_int(item)
        if index is None and isinstance(item, str) and question is not None:
            for option_idx, option in enumerate(question.options):
                if option.text == item:
                    index = option_idx
                    break
        if index is None:
            logger.debug(f"Dropping unrecognised selection value {item!r}")
            continue
        if index < 0:
            continue
        if question is not None and index >= len(question.options):
            continue
        if index not in ordered:
            ordered.append(index)

    if question is not None and question.type == QuestionType.SINGLE and len(ordered) > 1:
        ordered = ordered[:1]
    return sorted(ordered)


def normalize_answers(raw: Any, questions: Optional[Mapping[int, Question]] = None) -> Dict[int, List[int]]:
    """Normalise a stored ``{question_id: selection}`` map; empty selections are dropped."""
    raw = _maybe_json(raw)
    if not isinstance(raw, dict):
        return {}
    answers: Dict[int, List[int]] = {}
    for key, value in raw.items():
        question_id = _to_int(key)
        if question_id is None:
            continue
        question = questions.get(question_id) if questions else None
        selection = normalize_selection(value, question)
        if selection:
            answers[question_id] = selection
    return answers


def normalize_flags(raw: Any) -> Dict[int, bool]:
    """Normalise a stored ``{question_id: bool}`` side-map."""
    raw = _maybe_json(raw)
    if not isinstance(raw, dict):
        return {}
    flags: Dict[int, bool] = {}
    for key, value in raw.items():
        question_id = _to_int(key)
        if question_id is not None:
            flags[question_id] = bool(value)
    return flags


def _normalize_counts(raw: Any) -> Dict[int, int]:
    raw = _maybe_json(raw)
    if isinstance(raw, dict) and isinstance(raw.get("questions"), dict):
        raw = raw["questions"]
    if not isinstance(raw, dict):
        return {}
    counts: Dict[int, int] = {}
    for key, value in raw.items():
        question_id = _to_int(key)
        amount = _to_int(value) if not isinstance(value, float) else int(value)
        if question_id is not None and amount is not None and amount >= 0:
            counts[question_id] = amount
    return counts


def _string_keys(mapping: Mapping[int, Any]) -> Dict[str, Any]:
    return {str(k): (list(v) if isinstance(v, (list, tuple)) else v) for k, v in mapping.items()}


@dataclass
class PersistedSnapshot:
    """Durable projection of Session, Answer State and side-maps."""
    quiz_id: int
    user_id: str
    answers: Dict[int, List[int]] = field(default_factory=dict)
    flagged: Dict[int, bool] = field(default_factory=dict)
    bookmarked: Dict[int, bool] = field(default_factory=dict)
    marked_for_review: Dict[int, bool] = field(default_factory=dict)
    visited: Dict[int, bool] = field(default_factory=dict)
    time_spent_ms: Dict[int, int] = field(default_factory=dict)
    current_question_id: Optional[int] = None
    started_at_epoch_ms: Optional[int] = None
    duration_ms: Optional[int] = None
    paused_accumulated_ms: int = 0
    violation_count: int = 0
    violation_history: List[ViolationEvent] = field(default_factory=list)
    revision: int = 0
    updated_at_ms: Optional[int] = None

    @property
    def has_progress(self) -> bool:
        """True when the snapshot holds any user-entered state."""
        return bool(
            self.answers
            or any(self.flagged.values())
            or any(self.bookmarked.values())
            or any(self.marked_for_review.values())
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quiz_id": self.quiz_id,
            "user_id": self.user_id,
            "answers": _string_keys(self.answers),
            "flagged": _string_keys(self.flagged),
            "bookmarked": _string_keys(self.bookmarked),
            "marked_for_review": _string_keys(self.marked_for_review),
            "visited": _string_keys(self.visited),
            "question_time_spent": _string_keys(self.time_spent_ms),
            "current_question_id": self.current_question_id,
            "started_at_epoch_ms": self.started_at_epoch_ms,
            "duration_ms": self.duration_ms,
            "paused_accumulated_ms": self.paused_accumulated_ms,
            "violation_count": self.violation_count,
            "violation_history": [event.to_dict() for event in self.violation_history],
            "revision": self.revision,
            "updated_at_ms": self.updated_at_ms,
        }

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        questions: Optional[Iterable[Question]] = None,
    ) -> "PersistedSnapshot":
        """
        Build a snapshot from a stored dictionary.

        Args:
            data: Decoded snapshot (local cache or remote progress row)
            questions: Question definitions used to migrate legacy
                option-text selections

        Raises:
            ValueError: If quiz_id or user_id is missing
        """
        quiz_id = _to_int(data.get("quiz_id"))
        user_id = data.get("user_id")
        if quiz_id is None or user_id in (None, ""):
            raise ValueError("Snapshot requires quiz_id and user_id")

        by_id = {q.id: q for q in questions} if questions else None
        history_raw = _maybe_json(data.get("violation_history") or data.get("tab_switch_history") or [])
        history: List[ViolationEvent] = []
        if isinstance(history_raw, list):
            for item in history_raw:
                if isinstance(item, dict):
                    history.append(ViolationEvent.from_dict(item))

        return cls(
            quiz_id=quiz_id,
            user_id=str(user_id),
            answers=normalize_answers(data.get("answers"), by_id),
            flagged=normalize_flags(data.get("flagged") if "flagged" in data else data.get("flags")),
            bookmarked=normalize_flags(data.get("bookmarked") if "bookmarked" in data else data.get("bookmarks")),
            marked_for_review=normalize_flags(
                data.get("marked_for_review") if "marked_for_review" in data else data.get("reviews")
            ),
            visited=normalize_flags(data.get("visited")),
            time_spent_ms=_normalize_counts(data.get("question_time_spent")),
            current_question_id=_to_int(data.get("current_question_id")),
            started_at_epoch_ms=_to_int(data.get("started_at_epoch_ms")),
            duration_ms=_to_int(data.get("duration_ms")),
            paused_accumulated_ms=max(_to_int(data.get("paused_accumulated_ms")) or 0, 0),
            violation_count=max(
                _to_int(data.get("violation_count")) or _to_int(data.get("tab_switch_count")) or 0, 0
            ),
            violation_history=history,
            revision=max(_to_int(data.get("revision")) or 0, 0),
            updated_at_ms=_to_int(data.get("updated_at_ms")),
        )

    def encode(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True)

    @classmethod
    def decode(cls, encoded: str, questions: Optional[Iterable[Question]] = None) -> "PersistedSnapshot":
        """
        Decode a snapshot from its string form.

        Raises:
            ValueError: If the string is not a valid snapshot
        """
        try:
            data = json.loads(encoded)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Snapshot is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("Snapshot must be a JSON object")
        return cls.from_dict(data, questions)
