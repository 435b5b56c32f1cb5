"""
Core data models for the exam attempt core.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class QuestionType(Enum):
    """Selection semantics of a question."""
    SINGLE = "single"
    MULTIPLE = "multiple"

    @classmethod
    def parse(cls, value) -> "QuestionType":
        """Parse a stored question type, defaulting to single choice."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and value.strip().lower() == cls.MULTIPLE.value:
            return cls.MULTIPLE
        return cls.SINGLE


@dataclass
class Option:
    """A single answer option of a question."""
    text: str
    is_correct: bool = False
    image: Optional[str] = None


@dataclass
class Question:
    """Read-only question definition."""
    id: int
    options: List[Option]
    section_id: Optional[int] = None
    type: QuestionType = QuestionType.SINGLE
    marks: float = 1
    text: str = ""
    explanation: Optional[str] = None

    @property
    def correct_indices(self) -> List[int]:
        return [idx for idx, option in enumerate(self.options) if option.is_correct]

    def student_view(self) -> "Question":
        """Copy of the question with correctness and explanation withheld."""
        return replace(
            self,
            options=[Option(text=o.text, is_correct=False, image=o.image) for o in self.options],
            explanation=None,
        )


@dataclass
class Section:
    """A named group of questions."""
    id: int
    name: str
    description: Optional[str] = None
    instructions: Optional[str] = None


@dataclass
class QuizDefinition:
    """Quiz configuration and its ordered question list."""
    id: int
    title: str
    questions: List[Question]
    sections: List[Section] = field(default_factory=list)
    duration_minutes: Optional[float] = None
    max_attempts: int = 1
    passing_score: Optional[float] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    show_answers: bool = False

    def get_question(self, question_id: int) -> Optional[Question]:
        for question in self.questions:
            if question.id == question_id:
                return question
        return None


@dataclass
class TimerAnchor:
    """Persisted timing state of one attempt."""
    started_at_epoch_ms: Optional[int]
    duration_ms: Optional[int]
    paused_accumulated_ms: int = 0

    @property
    def is_valid(self) -> bool:
        return (
            isinstance(self.started_at_epoch_ms, int)
            and self.started_at_epoch_ms > 0
            and isinstance(self.duration_ms, int)
            and self.duration_ms > 0
        )


@dataclass
class Session:
    """Root aggregate of one student's attempt at one quiz."""
    quiz_id: int
    user_id: str
    started_at_epoch_ms: int
    duration_ms: int
    paused_accumulated_ms: int = 0
    current_pause_started_at_epoch_ms: Optional[int] = None
    violation_count: int = 0
    submitted: bool = False


@dataclass
class ViolationEvent:
    """One recorded integrity-policy breach."""
    kind: str
    count: int
    timestamp_ms: int

    def to_dict(self) -> Dict:
        return {"kind": self.kind, "count": self.count, "timestamp_ms": self.timestamp_ms}

    @classmethod
    def from_dict(cls, data: Dict) -> "ViolationEvent":
        return cls(
            kind=str(data.get("kind", "unknown")),
            count=int(data.get("count", 0)),
            timestamp_ms=int(data.get("timestamp_ms", 0)),
        )


@dataclass
class QuestionScore:
    """Marks awarded for a single question."""
    question_id: int
    marks: float
    obtained: float
    selected_indices: List[int]
    correct_indices: List[int]
    fully_correct: bool

    def to_dict(self) -> Dict:
        return {
            "question_id": self.question_id,
            "marks": self.marks,
            "obtained": self.obtained,
            "selected_indices": list(self.selected_indices),
            "correct_indices": list(self.correct_indices),
            "fully_correct": self.fully_correct,
        }


@dataclass
class ScoreResult:
    """Aggregate marks for an attempt."""
    correct_count: int
    total_marks: float
    obtained_marks: float
    percentage: int
    passed: bool
    breakdown: List[QuestionScore] = field(default_factory=list)


@dataclass
class AttemptRecord:
    """Immutable terminal artifact of a successful submission."""
    quiz_id: int
    user_id: str
    user_name: str
    answers: Dict[int, List[int]]
    answers_text: Dict[int, List[str]]
    correct_answers: Dict[int, List[str]]
    score: int
    obtained_marks: float
    total_marks: float
    total_questions: int
    correct_count: int
    percentage: int
    passed: bool
    submitted_at: str
    start_time: Optional[str] = None
    status: int = 1
    trigger: str = "manual"
    marked_for_review: Dict[int, bool] = field(default_factory=dict)
    flagged: Dict[int, bool] = field(default_factory=dict)
    violation_count: int = 0
    violation_history: List[ViolationEvent] = field(default_factory=list)
    breakdown: List[QuestionScore] = field(default_factory=list)

    def to_dict(self) -> Dict:
        """JSON-ready projection; question ids become string keys."""
        return {
            "quiz_id": self.quiz_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "answers": {str(k): list(v) for k, v in self.answers.items()},
            "answers_text": {str(k): list(v) for k, v in self.answers_text.items()},
            "correct_answers": {str(k): list(v) for k, v in self.correct_answers.items()},
            "score": self.score,
            "obtained_marks": self.obtained_marks,
            "total_marks": self.total_marks,
            "total_questions": self.total_questions,
            "correct_count": self.correct_count,
            "percentage": self.percentage,
            "passed": self.passed,
            "submitted_at": self.submitted_at,
            "start_time": self.start_time,
            "status": self.status,
            "trigger": self.trigger,
            "marked_for_review": {str(k): v for k, v in self.marked_for_review.items()},
            "flagged": {str(k): v for k, v in self.flagged.items()},
            "violation_count": self.violation_count,
            "violation_history": [event.to_dict() for event in self.violation_history],
            "breakdown": [item.to_dict() for item in self.breakdown],
        }


@dataclass
class ExamSettings:
    """Tunable parameters of the exam attempt core."""
    fallback_duration_minutes: int = 30
    tick_interval_seconds: float = 1.0
    sync_quiet_period_seconds: float = 5.0
    sync_max_latency_seconds: float = 2.0
    sync_min_interval_seconds: float = 2.0
    violation_threshold: int = 3
    submission_timeout_seconds: float = 15.0
    write_timeout_seconds: float = 10.0
    redirect_delay_seconds: float = 3.5
    default_pass_percentage: int = 60
    last_minute_warning_seconds: int = 60
    unload_flush_timeout_seconds: float = 2.0
