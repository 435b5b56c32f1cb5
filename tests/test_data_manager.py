"""
Unit tests for DataManager class.
"""
import json
import logging
import os
import shutil
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from exam_attempt.data_manager import DataManager
from exam_attempt.exceptions import QuizNotFoundError
from exam_attempt.models import QuestionType
from tests.test_fixtures import ExamFixtures


class TestDataManager(unittest.TestCase):
    """Test cases for DataManager functionality."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.data_manager = DataManager(self.temp_dir)
        logging.disable(logging.CRITICAL)

    def tearDown(self):
        """Clean up test fixtures."""
        logging.disable(logging.NOTSET)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, name, data):
        path = Path(self.temp_dir) / name
        with open(path, 'w', encoding='utf-8') as f:
            if isinstance(data, str):
                f.write(data)
            else:
                json.dump(data, f)
        return path

    def test_load_creates_missing_directory(self):
        """Test that loading creates the exam directory if it doesn't exist."""
        non_existent_dir = os.path.join(self.temp_dir, "new_quiz_dir")
        dm = DataManager(non_existent_dir)
        dm.load_quiz_files()
        self.assertTrue(Path(non_existent_dir).exists())
        self.assertTrue(dm.has_load_errors())

    def test_empty_directory_reports_error(self):
        self.data_manager.load_quiz_files()
        self.assertEqual(self.data_manager.get_quiz_count(), 0)
        self.assertIn("No exam files found", self.data_manager.get_load_errors()[0])

    def test_load_skips_broken_files(self):
        """Broken files are reported while valid ones still load."""
        ExamFixtures.create_temp_quiz_files(self.temp_dir)

        quizzes = self.data_manager.load_quiz_files()

        self.assertEqual(list(quizzes), [1])
        errors = self.data_manager.get_load_errors()
        self.assertEqual(len(errors), 2)
        self.assertTrue(any(e.startswith("invalid.json: Invalid JSON") for e in errors))
        self.assertTrue(any(e.startswith("no_questions.json") for e in errors))

        summary = self.data_manager.get_loading_summary()
        self.assertEqual(summary['total_quizzes'], 1)
        self.assertTrue(summary['has_errors'])
        self.assertEqual(summary['error_count'], 2)
        self.assertEqual(summary['available_quizzes'], [1])
        self.assertEqual(summary['quiz_directory'], self.temp_dir)

    def test_parsed_quiz(self):
        self._write("capitals.json", ExamFixtures.create_valid_quiz_json())
        self.data_manager.load_quiz_files()
        quiz = self.data_manager.get_quiz(1)

        self.assertEqual(quiz.title, "Capitals")
        self.assertEqual(quiz.duration_minutes, 20)
        self.assertEqual(quiz.max_attempts, 2)
        self.assertEqual(quiz.start_time, datetime(2026, 1, 1, tzinfo=timezone.utc))
        self.assertIsNone(quiz.end_time)
        self.assertEqual(quiz.sections[0].name, "Europe")

        france, italy, japan = quiz.questions
        self.assertEqual(france.correct_indices, [0])
        self.assertEqual(france.type, QuestionType.SINGLE)
        self.assertEqual(france.section_id, 1)
        self.assertEqual(italy.type, QuestionType.MULTIPLE)
        self.assertEqual(italy.marks, 2)
        self.assertEqual(italy.correct_indices, [0, 2])
        self.assertEqual(japan.correct_indices, [1])
        self.assertEqual(japan.marks, 1)

    def test_duplicate_exam_id(self):
        self._write("a.json", ExamFixtures.create_valid_quiz_json(5))
        self._write("b.json", ExamFixtures.create_valid_quiz_json(5))
        self.data_manager.load_quiz_files()
        self.assertEqual(self.data_manager.get_quiz_count(), 1)
        self.assertIn("Duplicate exam id 5", self.data_manager.get_load_errors()[0])

    def test_bad_options_and_dates(self):
        data = ExamFixtures.create_valid_quiz_json(1)
        data["questions"][0]["options"] = 42
        self._write("bad_options.json", data)

        data = ExamFixtures.create_valid_quiz_json(2)
        data["questions"][0]["options"] = [{"is_correct": True}]
        self._write("missing_text.json", data)

        data = ExamFixtures.create_valid_quiz_json(3)
        data["end_time"] = "next tuesday"
        self._write("bad_date.json", data)

        data = ExamFixtures.create_valid_quiz_json(4)
        data["questions"][0]["options"] = []
        self._write("no_options.json", data)

        self.data_manager.load_quiz_files()
        self.assertEqual(self.data_manager.get_quiz_count(), 0)
        self.assertEqual(len(self.data_manager.get_load_errors()), 4)

    def test_validate_quiz_structure(self):
        valid = ExamFixtures.create_valid_quiz_json()
        self.assertTrue(self.data_manager.validate_quiz_structure(valid))

        invalid_cases = [
            [],
            {**valid, "id": "1"},
            {**valid, "id": True},
            {**valid, "title": "  "},
            {**valid, "questions": []},
            {**valid, "questions": ["not an object"]},
            {**valid, "questions": [{"id": 1, "question": "Q", "options": []},
                                    {"id": 1, "question": "Q2", "options": []}]},
            {**valid, "questions": [{"id": 1, "question": 5, "options": []}]},
            {**valid, "questions": [{"id": 1, "question": "Q"}]},
        ]
        for data in invalid_cases:
            self.assertFalse(self.data_manager.validate_quiz_structure(data), data)

    def test_lookup(self):
        self._write("capitals.json", ExamFixtures.create_valid_quiz_json(7))
        self.data_manager.load_quiz_files()
        self.assertTrue(self.data_manager.quiz_exists(7))
        self.assertIsNotNone(self.data_manager.find_quiz(7))
        self.assertIsNone(self.data_manager.find_quiz(8))
        with self.assertRaises(QuizNotFoundError):
            self.data_manager.get_quiz(8)

    def test_available_quizzes_sorted_by_id(self):
        self._write("z.json", ExamFixtures.create_valid_quiz_json(2))
        self._write("a.json", ExamFixtures.create_valid_quiz_json(9))
        self._write("m.json", ExamFixtures.create_valid_quiz_json(4))
        self.data_manager.load_quiz_files()
        self.assertEqual([q.id for q in self.data_manager.get_available_quizzes()], [2, 4, 9])

    def test_reload_clears_previous_state(self):
        path = self._write("capitals.json", ExamFixtures.create_valid_quiz_json(1))
        self.data_manager.load_quiz_files()
        path.unlink()
        self._write("broken.json", "{")
        self.data_manager.load_quiz_files()
        self.assertEqual(self.data_manager.get_quiz_count(), 0)
        self.assertEqual(len(self.data_manager.get_load_errors()), 1)

    def test_bundled_exam_file_loads(self):
        quiz_dir = Path(__file__).resolve().parent.parent / "quizzes"
        dm = DataManager(str(quiz_dir))
        dm.load_quiz_files()
        self.assertFalse(dm.has_load_errors(), dm.get_load_errors())
        quiz = dm.get_quiz(1)
        self.assertEqual(quiz.title, "Python Basics")
        self.assertEqual([q.correct_indices for q in quiz.questions], [[1], [0, 2], [1]])


if __name__ == '__main__':
    unittest.main()
