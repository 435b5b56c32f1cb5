"""
Integrity monitoring for exam attempts.

Counts tab switches and fullscreen exits and forces submission once the
configured threshold is reached. Forced submission goes through the same
submit path as a manual submit.

The input-suppression policy below is advisory UX for client surfaces: it
discourages copying exam content but does not prevent it, and nothing
should rely on it as a security boundary.
"""
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .models import Session, ViolationEvent
from .timer_engine import epoch_ms

logger = logging.getLogger(__name__)

TAB_SWITCH = "tab_switch"
FULLSCREEN_EXIT = "fullscreen_exit"

VIOLATION_WARNINGS = {
    TAB_SWITCH: "⚠️ You switched tabs/windows. This is not allowed during the exam.",
    FULLSCREEN_EXIT: "⚠️ You exited fullscreen. Please return to fullscreen.",
}

SUPPRESSED_EVENTS = frozenset({"copy", "cut", "paste", "contextmenu", "beforeprint"})
SUPPRESSED_SHORTCUT_KEYS = frozenset({"c", "x", "v", "p"})


def should_suppress_input(event: str, ctrl: bool = False, key: Optional[str] = None) -> bool:
    """
    Whether a client surface should swallow an input event.

    Args:
        event: DOM-style event name ('copy', 'keydown', ...)
        ctrl: True when Ctrl or Meta is held
        key: Key name for keyboard events
    """
    event = (event or "").lower()
    if event in SUPPRESSED_EVENTS:
        return True
    if event == "keydown" and ctrl and key:
        return key.lower() in SUPPRESSED_SHORTCUT_KEYS
    return False


class IntegrityMonitor:
    """Tracks violations for one session and enforces the threshold."""

    def __init__(
        self,
        session: Session,
        submit: Callable[[str], Awaitable[Dict[str, Any]]],
        threshold: int = 3,
        on_violation: Optional[Callable[[ViolationEvent], None]] = None,
        clock: Callable[[], int] = epoch_ms,
    ):
        """
        Initialize the monitor.

        Args:
            session: Session whose violation_count is maintained
            submit: Submission entry point, called with the trigger name
            threshold: Violation count that forces submission
            on_violation: Called after each recorded violation
            clock: Callable returning wall-clock epoch milliseconds
        """
        self.session = session
        self.submit = submit
        self.threshold = threshold
        self.on_violation = on_violation
        self.clock = clock
        self.history: List[ViolationEvent] = []
        self._hidden = False
        self._fullscreen: Optional[bool] = None

    def restore(self, violation_count: int, history: List[ViolationEvent]) -> None:
        """Adopt counts from a resumed snapshot."""
        self.session.violation_count = max(self.session.violation_count, int(violation_count))
        self.history = list(history)

    async def report_visibility_change(self, hidden: bool) -> Optional[Dict[str, Any]]:
        """Record a violation when the exam view becomes hidden."""
        was_hidden = self._hidden
        self._hidden = hidden
        if not hidden or was_hidden:
            return None
        return await self.record_violation(TAB_SWITCH)

    async def report_fullscreen_change(self, is_fullscreen: bool) -> Optional[Dict[str, Any]]:
        """Record a violation when fullscreen is left."""
        previous = self._fullscreen
        self._fullscreen = is_fullscreen
        if is_fullscreen or previous is False:
            return None
        return await self.record_violation(FULLSCREEN_EXIT)

    async def record_violation(self, kind: str) -> Optional[Dict[str, Any]]:
        """
        Count one violation and force submission at the threshold.

        Returns:
            Dictionary with the new count, the warning to show and the
            forced submission result if one was triggered; None once the
            session is submitted
        """
        if self.session.submitted:
            logger.debug(f"Ignoring {kind} for submitted quiz {self.session.quiz_id} user {self.session.user_id}")
            return None

        self.session.violation_count += 1
        count = self.session.violation_count
        event = ViolationEvent(kind=kind, count=count, timestamp_ms=self.clock())
        self.history.append(event)
        logger.warning(
            f"Integrity violation {count}/{self.threshold} ({kind}) for quiz {self.session.quiz_id} user {self.session.user_id}",
            extra={
                'event_type': 'integrity_violation',
                'quiz_id': self.session.quiz_id,
                'user_id': self.session.user_id,
                'kind': kind,
                'violation_count': count,
                'timestamp': time.time()
            }
        )
        if self.on_violation is not None:
            self.on_violation(event)

        result: Dict[str, Any] = {
            'violation_count': count,
            'kind': kind,
            'threshold': self.threshold,
            'user_message': VIOLATION_WARNINGS.get(kind, "⚠️ Exam integrity rule broken."),
            'forced_submission': False,
            'submission': None,
        }
        if count >= self.threshold and not self.session.submitted:
            logger.warning(f"Violation threshold reached for quiz {self.session.quiz_id} user {self.session.user_id}, forcing submission")
            result['forced_submission'] = True
            result['submission'] = await self.submit("integrity")
        return result
