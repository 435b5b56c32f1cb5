"""
Data manager for loading and validating exam definition files.
"""
import json
import os
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from pathlib import Path

from .exceptions import QuizNotFoundError
from .models import Option, Question, QuestionType, QuizDefinition, Section

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _parse_options(raw: Any, answer: Any = None) -> List[Option]:
    """
    Parse the options of one question.

    Options may be a list of objects (``text`` plus ``is_correct`` or
    ``isCorrect``), a list of plain strings, or either of those encoded as a
    JSON string. Plain string options take their correctness from ``answer``
    (a string or list of strings).
    """
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not isinstance(raw, list):
        raise ValueError("'options' must be an array")

    if isinstance(answer, str):
        answer = [answer]
    correct_texts = set(answer or [])

    options = []
    for i, item in enumerate(raw):
        if isinstance(item, str):
            options.append(Option(text=item, is_correct=item in correct_texts))
        elif isinstance(item, dict):
            if "text" not in item:
                raise ValueError(f"Option {i} missing 'text' field")
            is_correct = item.get("is_correct", item.get("isCorrect", False))
            options.append(Option(
                text=str(item["text"]),
                is_correct=bool(is_correct) or item["text"] in correct_texts,
                image=item.get("image"),
            ))
        else:
            raise ValueError(f"Option {i} must be a string or an object")
    return options


class DataManager:
    """Manages loading and validation of JSON exam files."""

    def __init__(self, quiz_directory: str = "./quizzes/"):
        """
        Initialize DataManager with quiz directory path.

        Args:
            quiz_directory: Path to directory containing JSON exam files
        """
        self.quiz_directory = Path(quiz_directory)
        self.loaded_quizzes: Dict[int, QuizDefinition] = {}
        self.logger = logging.getLogger(__name__)
        self.load_errors: List[str] = []

    def load_quiz_files(self) -> Dict[int, QuizDefinition]:
        """
        Load all JSON files from the quiz directory.

        A broken file is reported in ``load_errors`` and skipped; the other
        files still load.

        Returns:
            Dictionary mapping quiz ids to quiz definitions
        """
        self.loaded_quizzes.clear()
        self.load_errors.clear()

        if not self.quiz_directory.exists():
            try:
                self.quiz_directory.mkdir(parents=True, exist_ok=True)
                self.logger.info(f"Created quiz directory: {self.quiz_directory}")
            except OSError as e:
                self.load_errors.append(f"Failed to create quiz directory {self.quiz_directory}: {e}")
                return self.loaded_quizzes

        if not os.access(self.quiz_directory, os.R_OK):
            self.load_errors.append(f"Permission denied: Cannot read from {self.quiz_directory}")
            return self.loaded_quizzes

        try:
            json_files = sorted(self.quiz_directory.glob("*.json"))
        except OSError as e:
            self.load_errors.append(f"System error scanning {self.quiz_directory}: {e}")
            return self.loaded_quizzes

        if not json_files:
            self.logger.warning(f"No JSON files found in {self.quiz_directory}")
            self.load_errors.append(f"No exam files found in {self.quiz_directory}")
            return self.loaded_quizzes

        for json_file in json_files:
            result = self._load_quiz_file_safely(json_file)
            if not result['success']:
                self.load_errors.append(f"{json_file.name}: {result['error']}")

        self.logger.info(f"Successfully loaded {len(self.loaded_quizzes)} exam files")
        if self.load_errors:
            self.logger.warning(f"Encountered {len(self.load_errors)} loading errors")
        return self.loaded_quizzes

    def validate_quiz_structure(self, data: dict) -> bool:
        """
        Validate that JSON data has the expected exam structure.

        Expected structure:
        {
            "id": int,
            "title": str,
            "questions": [
                {
                    "id": int,
                    "question": str,
                    "options": list,
                    "type": "single" | "multiple"   # Optional
                }
            ]
        }

        Returns:
            True if structure is valid, False otherwise
        """
        if not isinstance(data, dict):
            self.logger.error("Exam data must be a JSON object")
            return False

        if not isinstance(data.get("id"), int) or isinstance(data.get("id"), bool):
            self.logger.error("Exam data must contain an integer 'id'")
            return False

        if not isinstance(data.get("title"), str) or not data["title"].strip():
            self.logger.error("Exam data must contain a non-empty 'title'")
            return False

        questions = data.get("questions")
        if not isinstance(questions, list) or not questions:
            self.logger.error("'questions' must be a non-empty array")
            return False

        seen_ids = set()
        for i, question_data in enumerate(questions):
            if not isinstance(question_data, dict):
                self.logger.error(f"Question {i} must be an object")
                return False
            question_id = question_data.get("id")
            if not isinstance(question_id, int) or isinstance(question_id, bool):
                self.logger.error(f"Question {i} must have an integer 'id'")
                return False
            if question_id in seen_ids:
                self.logger.error(f"Question {i} reuses id {question_id}")
                return False
            seen_ids.add(question_id)
            if not isinstance(question_data.get("question"), str):
                self.logger.error(f"Question {i} 'question' field must be a string")
                return False
            if "options" not in question_data:
                self.logger.error(f"Question {i} missing 'options' field")
                return False

        return True

    def parse_quiz(self, data: dict) -> QuizDefinition:
        """
        Parse validated exam data into a QuizDefinition.

        Raises:
            ValueError: If options or dates cannot be parsed
        """
        questions = []
        for question_data in data["questions"]:
            options = _parse_options(question_data["options"], question_data.get("answer"))
            if not options:
                raise ValueError(f"Question {question_data['id']} has no options")
            marks = question_data.get("marks")
            questions.append(Question(
                id=question_data["id"],
                options=options,
                section_id=question_data.get("section_id"),
                type=QuestionType.parse(question_data.get("type")),
                marks=marks if marks is not None else 1,
                text=question_data["question"],
                explanation=question_data.get("explanation"),
            ))

        sections = [
            Section(
                id=section["id"],
                name=section.get("name", f"Section {section['id']}"),
                description=section.get("description"),
                instructions=section.get("instructions"),
            )
            for section in data.get("sections", [])
        ]

        return QuizDefinition(
            id=data["id"],
            title=data["title"].strip(),
            questions=questions,
            sections=sections,
            duration_minutes=data.get("duration_minutes"),
            max_attempts=data.get("max_attempts") or 1,
            passing_score=data.get("passing_score"),
            start_time=_parse_datetime(data.get("start_time")),
            end_time=_parse_datetime(data.get("end_time")),
            show_answers=bool(data.get("show_answers", False)),
        )

    def _load_quiz_file_safely(self, json_file: Path) -> Dict[str, Any]:
        """
        Load a single exam file with error handling.

        Returns:
            Dictionary with success status and error message if applicable
        """
        try:
            if not os.access(json_file, os.R_OK):
                return {'success': False, 'error': "Permission denied: Cannot read file"}

            file_size = json_file.stat().st_size
            if file_size > MAX_FILE_SIZE:
                return {
                    'success': False,
                    'error': f"File too large ({file_size / 1024 / 1024:.1f}MB). Maximum size is {MAX_FILE_SIZE / 1024 / 1024}MB"
                }

            with open(json_file, 'r', encoding='utf-8') as f:
                data = json.load(f)

            if not self.validate_quiz_structure(data):
                return {'success': False, 'error': "Invalid exam structure or validation failed"}

            quiz = self.parse_quiz(data)
            if quiz.id in self.loaded_quizzes:
                return {'success': False, 'error': f"Duplicate exam id {quiz.id}"}

            self.loaded_quizzes[quiz.id] = quiz
            self.logger.info(f"Loaded exam {quiz.id} '{quiz.title}' with {len(quiz.questions)} questions")
            return {'success': True}

        except json.JSONDecodeError as e:
            self.logger.error(f"Invalid JSON in {json_file}: {e}")
            return {'success': False, 'error': f"Invalid JSON: {e}"}
        except (KeyError, TypeError, ValueError) as e:
            self.logger.error(f"Invalid exam data in {json_file}: {e}")
            return {'success': False, 'error': str(e)}
        except OSError as e:
            return {'success': False, 'error': f"System error: {e}"}

    def get_available_quizzes(self) -> List[QuizDefinition]:
        """Loaded exams ordered by id."""
        return [self.loaded_quizzes[quiz_id] for quiz_id in sorted(self.loaded_quizzes)]

    def get_quiz(self, quiz_id: int) -> QuizDefinition:
        """
        Retrieve an exam by id.

        Raises:
            QuizNotFoundError: If no exam with the id was loaded
        """
        quiz = self.loaded_quizzes.get(quiz_id)
        if quiz is None:
            raise QuizNotFoundError(f"Exam {quiz_id} not loaded")
        return quiz

    def find_quiz(self, quiz_id: int) -> Optional[QuizDefinition]:
        """Like get_quiz() but returns None; used as the submission-time quiz loader."""
        return self.loaded_quizzes.get(quiz_id)

    def quiz_exists(self, quiz_id: int) -> bool:
        return quiz_id in self.loaded_quizzes

    def get_quiz_count(self) -> int:
        return len(self.loaded_quizzes)

    def get_load_errors(self) -> List[str]:
        return self.load_errors.copy()

    def has_load_errors(self) -> bool:
        return len(self.load_errors) > 0

    def get_loading_summary(self) -> Dict[str, Any]:
        """
        Get a summary of the loading operation.

        Returns:
            Dictionary with loading statistics and status
        """
        return {
            'total_quizzes': len(self.loaded_quizzes),
            'has_errors': self.has_load_errors(),
            'error_count': len(self.load_errors),
            'errors': self.get_load_errors(),
            'quiz_directory': str(self.quiz_directory),
            'available_quizzes': sorted(self.loaded_quizzes.keys())
        }
