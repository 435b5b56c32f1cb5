"""
Exception hierarchy for the exam attempt core.

Every error carries a ``user_message`` that says what happened and what to
do next, so surfaces never have to show a raw internal error.
"""


class ExamError(Exception):
    """Base exception for exam attempt errors."""

    code = "exam_error"
    default_user_message = "❌ Something went wrong with your exam. Please try again."

    def __init__(self, message: str = "", user_message: str = None):
        super().__init__(message or self.default_user_message)
        self.user_message = user_message or self.default_user_message


class SessionLockedError(ExamError):
    """Raised when mutating answers of a submitted session."""
    code = "session_locked"
    default_user_message = "🔒 This exam has been submitted. Answers can no longer be changed."


class InvalidSelectionError(ExamError):
    """Raised when an option index or question id does not exist."""
    code = "invalid_selection"
    default_user_message = "❌ That option is not available for this question."


class SessionNotFoundError(ExamError):
    """Raised when operating on an exam that has not been started."""
    code = "session_not_found"
    default_user_message = "❌ You have no exam in progress. Start one with `/start_exam`."


class SessionConflictError(ExamError):
    """Raised when an attempt is already running for the same quiz and user."""
    code = "session_conflict"
    default_user_message = "⚠️ This exam is already in progress. Use `/question` to continue."


class QuizNotFoundError(ExamError):
    """Raised when a quiz id is unknown."""
    code = "quiz_not_found"
    default_user_message = "❌ Exam not found. Use `/exams` to see the available exams."


class StorageError(ExamError):
    """Raised when the progress or attempt store cannot be read or written."""
    code = "storage_error"
    default_user_message = "❌ Could not reach the exam server. Check your connection and try again."


class AttemptValidationError(ExamError):
    """Raised when an attempt record is missing required fields."""
    code = "attempt_invalid"
    default_user_message = "❌ Your submission was incomplete. Please try submitting again."


class ReviewNotAvailableError(ExamError):
    """Raised when correct answers are requested before they may be shown."""
    code = "review_unavailable"
    default_user_message = "🔒 Answers can be reviewed once the exam has been submitted."


class SubmissionError(ExamError):
    """Base class for failures during submission."""
    code = "submission_failed"
    default_user_message = "❌ Failed to submit. Please check your network connection and try again."


class MaxAttemptsReachedError(SubmissionError):
    code = "max_attempts_reached"
    default_user_message = "🚫 You have reached the maximum number of attempts for this quiz."


class QuizNotOpenError(SubmissionError):
    code = "quiz_not_open"
    default_user_message = "⏳ Quiz has not started yet. Please wait until the exam window opens."


class QuizClosedError(SubmissionError):
    code = "quiz_closed"
    default_user_message = "⌛ Quiz time is over. The exam window has closed."


class SubmissionTimeoutError(SubmissionError):
    code = "submission_timeout"
    default_user_message = (
        "⏱️ Submission is taking too long. Please check your connection and try again."
    )


class AttemptWriteError(SubmissionError):
    code = "attempt_write_failed"
    default_user_message = (
        "❌ Failed to save your submission. Your answers are kept; please try again."
    )
