"""
Local session storage for timer anchors and cached progress snapshots.

Values are kept as strings, the way browser storage keeps them, so every
read goes through the same parsing and tolerates corrupted entries. When a
file path is given the whole key space is mirrored to a JSON file, which
makes a process restart behave like a page reload.
"""
import json
import logging
from pathlib import Path
from typing import Dict, Optional, Union

from .models import TimerAnchor


_START_TIME = "startTime"
_DURATION = "duration"
_PAUSED_DURATION = "pausedDuration"
_PAUSE_START = "pauseStart"
_STATE = "state"


def _parse_int(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return None


class SessionStore:
    """Synchronous key-value store scoped by ``(quiz_id, user_id)``."""

    def __init__(self, file_path: Optional[Union[str, Path]] = None):
        """
        Initialize the store.

        Args:
            file_path: Optional JSON file used to persist the key space
        """
        self.logger = logging.getLogger(__name__)
        self.file_path = Path(file_path) if file_path else None
        self._data: Dict[str, str] = {}
        if self.file_path is not None:
            self._load()

    @staticmethod
    def key(quiz_id: int, user_id: str, name: str) -> str:
        """Build the storage key for one field of one attempt."""
        return f"quiz-{quiz_id}-{user_id}-{name}"

    # Raw access

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = str(value)
        self._persist()

    def remove_item(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._persist()

    # Timer anchor

    def get_anchor(self, quiz_id: int, user_id: str) -> Optional[TimerAnchor]:
        """
        Read the persisted timer anchor.

        Returns:
            TimerAnchor with possibly-invalid fields when any anchor key
            exists, None when nothing was ever stored for the attempt
        """
        start_raw = self.get_item(self.key(quiz_id, user_id, _START_TIME))
        duration_raw = self.get_item(self.key(quiz_id, user_id, _DURATION))
        if start_raw is None and duration_raw is None:
            return None
        paused = _parse_int(self.get_item(self.key(quiz_id, user_id, _PAUSED_DURATION)))
        return TimerAnchor(
            started_at_epoch_ms=_parse_int(start_raw),
            duration_ms=_parse_int(duration_raw),
            paused_accumulated_ms=max(paused or 0, 0),
        )

    def save_anchor(self, quiz_id: int, user_id: str, anchor: TimerAnchor) -> None:
        self._data[self.key(quiz_id, user_id, _START_TIME)] = str(anchor.started_at_epoch_ms)
        self._data[self.key(quiz_id, user_id, _DURATION)] = str(anchor.duration_ms)
        self._data[self.key(quiz_id, user_id, _PAUSED_DURATION)] = str(anchor.paused_accumulated_ms)
        self._persist()

    def clear_anchor(self, quiz_id: int, user_id: str) -> None:
        for name in (_START_TIME, _DURATION, _PAUSED_DURATION, _PAUSE_START):
            self._data.pop(self.key(quiz_id, user_id, name), None)
        self._persist()

    def set_paused_accumulated(self, quiz_id: int, user_id: str, paused_ms: int) -> None:
        self.set_item(self.key(quiz_id, user_id, _PAUSED_DURATION), str(int(paused_ms)))

    def get_pause_start(self, quiz_id: int, user_id: str) -> Optional[int]:
        return _parse_int(self.get_item(self.key(quiz_id, user_id, _PAUSE_START)))

    def set_pause_start(self, quiz_id: int, user_id: str, started_at_ms: Optional[int]) -> None:
        key = self.key(quiz_id, user_id, _PAUSE_START)
        if started_at_ms is None:
            self.remove_item(key)
        else:
            self.set_item(key, str(int(started_at_ms)))

    # Progress snapshot cache

    def get_snapshot(self, quiz_id: int, user_id: str) -> Optional[str]:
        return self.get_item(self.key(quiz_id, user_id, _STATE))

    def save_snapshot(self, quiz_id: int, user_id: str, encoded: str) -> None:
        self.set_item(self.key(quiz_id, user_id, _STATE), encoded)

    def delete_snapshot(self, quiz_id: int, user_id: str) -> None:
        self.remove_item(self.key(quiz_id, user_id, _STATE))

    def clear_session(self, quiz_id: int, user_id: str) -> int:
        """
        Remove every key of one attempt.

        Returns:
            Number of keys removed
        """
        prefix = f"quiz-{quiz_id}-{user_id}-"
        stale = [key for key in self._data if key.startswith(prefix)]
        for key in stale:
            del self._data[key]
        if stale:
            self._persist()
        return len(stale)

    def _load(self) -> None:
        if not self.file_path.exists():
            return
        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                self.logger.error(f"Session store file {self.file_path} is not a JSON object, ignoring it")
                return
            self._data = {str(k): str(v) for k, v in data.items()}
            self.logger.info(f"Loaded {len(self._data)} session keys from {self.file_path}")
        except json.JSONDecodeError as e:
            self.logger.error(f"Invalid JSON in session store {self.file_path}: {e}")
        except OSError as e:
            self.logger.error(f"Failed to read session store {self.file_path}: {e}")

    def _persist(self) -> None:
        if self.file_path is None:
            return
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(self._data, f, indent=2, ensure_ascii=False)
            tmp_path.replace(self.file_path)
        except OSError as e:
            # In-memory state stays authoritative; the next write retries.
            self.logger.error(f"Failed to persist session store to {self.file_path}: {e}")
