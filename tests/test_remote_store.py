"""
Unit tests for the JSON-file remote store and its server-side rules.
"""
import json
import shutil
import tempfile
import unittest
from pathlib import Path

from exam_attempt.exceptions import AttemptValidationError, StorageError
from exam_attempt.remote_store import JsonFileRemoteStore, RemoteStore, merge_progress, validate_attempt
from tests.test_fixtures import async_test


def make_record(**overrides):
    record = {
        'quiz_id': 1,
        'user_id': "u",
        'user_name': "Student",
        'answers': {"1": [1]},
        'correct_answers': {"1": ["4"]},
        'score': 1,
        'total_marks': 4,
        'submitted_at': "2026-01-01T00:10:00+00:00",
    }
    record.update(overrides)
    return record


class TestValidateAttempt(unittest.TestCase):

    def test_valid_record(self):
        validate_attempt(make_record())

    def test_missing_fields(self):
        for name in ('quiz_id', 'user_name', 'answers', 'submitted_at'):
            record = make_record()
            del record[name]
            with self.assertRaises(AttemptValidationError):
                validate_attempt(record)

    def test_blank_string(self):
        with self.assertRaises(AttemptValidationError):
            validate_attempt(make_record(user_id="  "))

    def test_wrong_types(self):
        with self.assertRaises(AttemptValidationError):
            validate_attempt(make_record(quiz_id="1"))
        with self.assertRaises(AttemptValidationError):
            validate_attempt(make_record(quiz_id=True))
        with self.assertRaises(AttemptValidationError):
            validate_attempt(make_record(answers=[1]))
        with self.assertRaises(AttemptValidationError):
            validate_attempt(make_record(score="10"))


class TestMergeProgress(unittest.TestCase):

    def test_first_write(self):
        row, applied = merge_progress(None, {'quiz_id': 1, 'user_id': "u", 'answers': {"1": [0]}, 'revision': 1}, 5)
        self.assertTrue(applied)
        self.assertEqual(row['answers'], {"1": [0]})
        self.assertEqual(row['revision'], 1)
        self.assertEqual(row['updated_at_ms'], 5)

    def test_partial_write_merges_answers_and_keeps_other_keys(self):
        existing, _ = merge_progress(None, {
            'quiz_id': 1, 'user_id': "u", 'answers': {"1": [0]}, 'flagged': {"1": True}, 'revision': 1,
        })
        row, applied = merge_progress(existing, {'answers': {"2": [1]}, 'revision': 2})
        self.assertTrue(applied)
        self.assertEqual(row['answers'], {"1": [0], "2": [1]})
        self.assertEqual(row['flagged'], {"1": True})
        self.assertEqual(row['revision'], 2)

    def test_stale_revision_is_ignored(self):
        existing, _ = merge_progress(None, {'quiz_id': 1, 'user_id': "u", 'answers': {"1": [0]}, 'revision': 5})
        row, applied = merge_progress(existing, {'answers': {"1": [2]}, 'revision': 3})
        self.assertFalse(applied)
        self.assertEqual(row['answers'], {"1": [0]})

    def test_start_time_is_kept(self):
        existing, _ = merge_progress(None, {'quiz_id': 1, 'user_id': "u", 'started_at_epoch_ms': 100})
        row, _ = merge_progress(existing, {'answers': {}})
        self.assertEqual(row['started_at_epoch_ms'], 100)


class TestRemoteStoreContract(unittest.TestCase):

    def test_backend_must_implement_attempt_listing(self):
        class ProgressOnlyStore(RemoteStore):
            async def upsert_progress(self, quiz_id, user_id, payload):
                return payload

            async def get_progress(self, quiz_id, user_id):
                return None

            async def delete_progress(self, quiz_id, user_id):
                return False

            async def insert_attempt(self, record):
                return record

            async def count_attempts(self, quiz_id, user_id):
                return 0

        with self.assertRaises(TypeError):
            ProgressOnlyStore()


class TestJsonFileRemoteStore(unittest.TestCase):
    """Test cases for the store in memory and on disk."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @async_test
    async def test_progress_upsert_get_delete(self):
        store = JsonFileRemoteStore()
        await store.upsert_progress(1, "u", {'answers': {"1": [1]}, 'revision': 1})
        row = await store.get_progress(1, "u")
        self.assertEqual(row['answers'], {"1": [1]})
        self.assertEqual(row['quiz_id'], 1)
        self.assertIsNone(await store.get_progress(1, "other"))

        self.assertTrue(await store.delete_progress(1, "u"))
        self.assertFalse(await store.delete_progress(1, "u"))
        self.assertIsNone(await store.get_progress(1, "u"))

    @async_test
    async def test_upsert_requires_identity(self):
        store = JsonFileRemoteStore()
        with self.assertRaises(StorageError):
            await store.upsert_progress(1, "", {})

    @async_test
    async def test_attempts(self):
        store = JsonFileRemoteStore()
        first = await store.insert_attempt(make_record())
        second = await store.insert_attempt(make_record(user_id="other"))
        self.assertEqual(first['id'], 1)
        self.assertEqual(second['id'], 2)
        self.assertEqual(await store.count_attempts(1, "u"), 1)
        self.assertEqual(await store.count_attempts(2, "u"), 0)
        self.assertEqual(len(await store.list_attempts(quiz_id=1)), 2)
        self.assertEqual(len(await store.list_attempts(user_id="other")), 1)

    @async_test
    async def test_invalid_attempt_not_stored(self):
        store = JsonFileRemoteStore()
        with self.assertRaises(AttemptValidationError):
            await store.insert_attempt(make_record(score=None))
        self.assertEqual(await store.count_attempts(1, "u"), 0)

    @async_test
    async def test_files_survive_reload(self):
        store = JsonFileRemoteStore(self.temp_dir)
        await store.upsert_progress(1, "u", {'answers': {"1": [1]}, 'revision': 1})
        await store.insert_attempt(make_record())

        reloaded = JsonFileRemoteStore(self.temp_dir)
        self.assertEqual((await reloaded.get_progress(1, "u"))['answers'], {"1": [1]})
        self.assertEqual(await reloaded.count_attempts(1, "u"), 1)

    def test_corrupted_file_raises_storage_error(self):
        (Path(self.temp_dir) / "progress.json").write_text("{ nope", encoding='utf-8')
        with self.assertRaises(StorageError):
            JsonFileRemoteStore(self.temp_dir)

    def test_wrong_shape_raises_storage_error(self):
        (Path(self.temp_dir) / "attempts.json").write_text(json.dumps({}), encoding='utf-8')
        with self.assertRaises(StorageError):
            JsonFileRemoteStore(self.temp_dir)


if __name__ == '__main__':
    unittest.main()
