"""
Scoring of exam attempts.

Pure functions only: nothing here touches storage, so scores can be
previewed or recomputed for review at any time.
"""
import math
from typing import Dict, Iterable, List, Mapping, Optional

from .models import Question, QuestionScore, ScoreResult


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from negative infinity."""
    return int(math.floor(value + 0.5))


def score_question(question: Question, selected: Iterable[int]) -> QuestionScore:
    """
    Marks for a single question with proportional partial credit.

    The obtained marks only count correct selections; "fully correct"
    additionally requires that nothing else was selected. A question
    without any correct option awards nothing.
    """
    marks = question.marks if question.marks is not None else 1
    correct = question.correct_indices
    user = sorted(set(selected or []))
    correct_selected = len(set(user) & set(correct))

    if correct:
        obtained = (correct_selected / len(correct)) * marks
        fully_correct = correct_selected == len(correct) and len(user) == len(correct)
    else:
        obtained = 0.0
        fully_correct = False

    return QuestionScore(
        question_id=question.id,
        marks=marks,
        obtained=obtained,
        selected_indices=user,
        correct_indices=list(correct),
        fully_correct=fully_correct,
    )


def score_attempt(
    questions: Iterable[Question],
    answers: Mapping[int, Iterable[int]],
    passing_score: Optional[float] = None,
    default_pass_percentage: int = 60,
) -> ScoreResult:
    """
    Aggregate marks for an attempt.

    Args:
        questions: Question definitions including correctness
        answers: Selected option indices by question id
        passing_score: Marks needed to pass; when unset (or 0) the
            percentage threshold applies
        default_pass_percentage: Percentage needed to pass otherwise

    Returns:
        ScoreResult with the per-question breakdown
    """
    breakdown: List[QuestionScore] = []
    total_marks = 0.0
    obtained_marks = 0.0
    correct_count = 0

    for question in questions:
        item = score_question(question, answers.get(question.id, []))
        breakdown.append(item)
        total_marks += item.marks
        obtained_marks += item.obtained
        if item.fully_correct:
            correct_count += 1

    percentage = round_half_up(obtained_marks / max(total_marks, 1) * 100)
    if passing_score:
        passed = obtained_marks >= passing_score
    else:
        passed = percentage >= default_pass_percentage

    return ScoreResult(
        correct_count=correct_count,
        total_marks=total_marks,
        obtained_marks=obtained_marks,
        percentage=percentage,
        passed=passed,
        breakdown=breakdown,
    )


def build_review(questions: Iterable[Question], answers: Mapping[int, Iterable[int]]) -> List[Dict]:
    """
    Per-question review entries revealing the correct options.

    Only call this once answers may be revealed (after submission, or when
    the quiz shows answers).
    """
    review = []
    for number, question in enumerate(questions, start=1):
        item = score_question(question, answers.get(question.id, []))
        review.append({
            'number': number,
            'question_id': question.id,
            'text': question.text,
            'options': [option.text for option in question.options],
            'selected': [question.options[idx].text for idx in item.selected_indices if idx < len(question.options)],
            'correct': [question.options[idx].text for idx in item.correct_indices],
            'marks': item.marks,
            'obtained': item.obtained,
            'fully_correct': item.fully_correct,
            'explanation': question.explanation,
        })
    return review
