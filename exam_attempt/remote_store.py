"""
Remote persistence for attempt progress and attempt records.

``RemoteStore`` is the asynchronous contract the sync layer and the
submission orchestrator talk to. ``JsonFileRemoteStore`` implements it on
top of two JSON files (or purely in memory when no directory is given) and
applies the server-side rules: partial progress writes merge into the stored
row, and writes carrying an older revision than the stored one are ignored.
"""
import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .exceptions import AttemptValidationError, StorageError

logger = logging.getLogger(__name__)

REQUIRED_ATTEMPT_FIELDS = (
    'quiz_id', 'user_id', 'user_name', 'answers', 'correct_answers', 'score', 'submitted_at', 'total_marks'
)

# Keys a partial write may omit; the stored value is kept when absent
_REPLACED_KEYS = (
    'flagged', 'bookmarked', 'marked_for_review', 'visited', 'question_time_spent',
    'current_question_id', 'duration_ms', 'paused_accumulated_ms',
    'violation_count', 'violation_history',
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_attempt(record: Mapping[str, Any]) -> None:
    """
    Check required fields and their types before an attempt is inserted.

    Raises:
        AttemptValidationError: If a field is missing, empty or mistyped
    """
    for name in REQUIRED_ATTEMPT_FIELDS:
        value = record.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise AttemptValidationError(f"Missing or null required field: {name}")

    if not isinstance(record['quiz_id'], int) or isinstance(record['quiz_id'], bool):
        raise AttemptValidationError("quiz_id must be a number")
    if not isinstance(record['user_id'], str):
        raise AttemptValidationError("user_id must be a string")
    if not isinstance(record['user_name'], str):
        raise AttemptValidationError("user_name must be a string")
    if not isinstance(record['answers'], dict):
        raise AttemptValidationError("answers must be an object")
    if not isinstance(record['correct_answers'], dict):
        raise AttemptValidationError("correct_answers must be an object")
    if not _is_number(record['score']):
        raise AttemptValidationError("score must be a number")
    if not _is_number(record['total_marks']):
        raise AttemptValidationError("total_marks must be a number")


def merge_progress(
    existing: Optional[Mapping[str, Any]],
    payload: Mapping[str, Any],
    now_ms: Optional[int] = None,
) -> Tuple[Dict[str, Any], bool]:
    """
    Merge a full or partial progress payload into the stored row.

    Args:
        existing: Stored row, or None
        payload: Incoming write; ``answers`` is merged per question, other
            known keys replace the stored value only when present
        now_ms: Timestamp recorded as ``updated_at_ms``

    Returns:
        Tuple of (resulting row, whether the payload was applied)
    """
    existing = dict(existing or {})
    stored_revision = int(existing.get('revision') or 0)
    incoming_revision = payload.get('revision')
    if existing and incoming_revision is not None and int(incoming_revision) < stored_revision:
        return existing, False

    row: Dict[str, Any] = dict(existing)
    row['quiz_id'] = payload.get('quiz_id', existing.get('quiz_id'))
    row['user_id'] = payload.get('user_id', existing.get('user_id'))

    answers = dict(existing.get('answers') or {})
    if isinstance(payload.get('answers'), dict):
        answers.update(payload['answers'])
    row['answers'] = answers

    for key in _REPLACED_KEYS:
        if key in payload:
            row[key] = payload[key]
        else:
            row.setdefault(key, existing.get(key))

    row['started_at_epoch_ms'] = payload.get('started_at_epoch_ms') or existing.get('started_at_epoch_ms')
    if incoming_revision is not None:
        row['revision'] = max(int(incoming_revision), stored_revision)
    else:
        row['revision'] = stored_revision
    row['updated_at_ms'] = now_ms if now_ms is not None else int(time.time() * 1000)
    return row, True


class RemoteStore(ABC):
    """Asynchronous contract of the remote persistence collaborator."""

    @abstractmethod
    async def upsert_progress(self, quiz_id: int, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Idempotent upsert of a full or partial progress snapshot."""

    @abstractmethod
    async def get_progress(self, quiz_id: int, user_id: str) -> Optional[Dict[str, Any]]:
        """Read the stored progress row, or None."""

    @abstractmethod
    async def delete_progress(self, quiz_id: int, user_id: str) -> bool:
        """Delete the stored progress row; returns whether one existed."""

    @abstractmethod
    async def insert_attempt(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert an attempt record and return it with its id."""

    @abstractmethod
    async def count_attempts(self, quiz_id: int, user_id: str) -> int:
        """Number of attempt records for the quiz and user."""

    @abstractmethod
    async def list_attempts(self, quiz_id: Optional[int] = None, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Attempt records filtered by quiz and/or user."""


class JsonFileRemoteStore(RemoteStore):
    """RemoteStore backed by ``progress.json`` and ``attempts.json``."""

    def __init__(self, data_dir: Optional[Union[str, Path]] = None):
        """
        Initialize the store.

        Args:
            data_dir: Directory holding the JSON files; None keeps
                everything in memory
        """
        self.data_dir = Path(data_dir) if data_dir else None
        self._progress: Dict[str, Dict[str, Any]] = {}
        self._attempts: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()
        if self.data_dir is not None:
            self._load()

    @staticmethod
    def _key(quiz_id: int, user_id: str) -> str:
        return f"{quiz_id}:{user_id}"

    @property
    def progress_path(self) -> Optional[Path]:
        return self.data_dir / "progress.json" if self.data_dir else None

    @property
    def attempts_path(self) -> Optional[Path]:
        return self.data_dir / "attempts.json" if self.data_dir else None

    def _load(self) -> None:
        for path, attr, expected in (
            (self.progress_path, '_progress', dict),
            (self.attempts_path, '_attempts', list),
        ):
            if not path.exists():
                continue
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                raise StorageError(f"Invalid JSON in {path}: {e}") from e
            except OSError as e:
                raise StorageError(f"Failed to read {path}: {e}") from e
            if not isinstance(data, expected):
                raise StorageError(f"{path} must contain a JSON {expected.__name__}")
            setattr(self, attr, data)
        logger.info(
            f"Remote store loaded {len(self._progress)} progress rows and {len(self._attempts)} attempts"
        )

    def _write(self, path: Optional[Path], data: Any) -> None:
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            tmp_path.replace(path)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

    async def upsert_progress(self, quiz_id: int, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if quiz_id is None or not user_id:
            raise StorageError("quiz_id and user_id required")
        async with self._lock:
            key = self._key(quiz_id, user_id)
            row, applied = merge_progress(self._progress.get(key), {**payload, 'quiz_id': quiz_id, 'user_id': user_id})
            if not applied:
                logger.debug(
                    f"Ignoring stale progress write for {key}: revision {payload.get('revision')} "
                    f"< stored {row.get('revision')}"
                )
                return row
            self._progress[key] = row
            self._write(self.progress_path, self._progress)
            return row

    async def get_progress(self, quiz_id: int, user_id: str) -> Optional[Dict[str, Any]]:
        row = self._progress.get(self._key(quiz_id, user_id))
        return dict(row) if row is not None else None

    async def delete_progress(self, quiz_id: int, user_id: str) -> bool:
        async with self._lock:
            removed = self._progress.pop(self._key(quiz_id, user_id), None) is not None
            if removed:
                self._write(self.progress_path, self._progress)
            return removed

    async def insert_attempt(self, record: Dict[str, Any]) -> Dict[str, Any]:
        validate_attempt(record)
        async with self._lock:
            stored = dict(record)
            stored['id'] = len(self._attempts) + 1
            self._attempts.append(stored)
            self._write(self.attempts_path, self._attempts)
            logger.info(
                f"Stored attempt {stored['id']} for quiz {stored['quiz_id']} user {stored['user_id']}",
                extra={
                    'event_type': 'attempt_inserted',
                    'quiz_id': stored['quiz_id'],
                    'user_id': stored['user_id'],
                    'timestamp': time.time()
                }
            )
            return dict(stored)

    async def count_attempts(self, quiz_id: int, user_id: str) -> int:
        return sum(
            1 for attempt in self._attempts
            if attempt.get('quiz_id') == quiz_id and attempt.get('user_id') == user_id
        )

    async def list_attempts(self, quiz_id: Optional[int] = None, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            dict(attempt) for attempt in self._attempts
            if (quiz_id is None or attempt.get('quiz_id') == quiz_id)
            and (user_id is None or attempt.get('user_id') == user_id)
        ]
