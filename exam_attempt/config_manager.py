"""
Configuration manager for exam attempt settings.
"""
import logging
from dataclasses import asdict, replace
from typing import Any, Dict, List, Optional, Tuple
from pathlib import Path
import os

from .models import ExamSettings


class ConfigManager:
    """Manages exam settings and data directories."""

    DEFAULT_QUIZ_DIRECTORY = "./quizzes/"
    DEFAULT_STORAGE_DIRECTORY = "./data/"

    # Validation limits as (minimum, maximum, unit)
    LIMITS: Dict[str, Tuple[float, float, str]] = {
        'fallback_duration_minutes': (1, 600, "minutes"),
        'tick_interval_seconds': (0.1, 10, "seconds"),
        'sync_quiet_period_seconds': (0.5, 60, "seconds"),
        'sync_max_latency_seconds': (0.5, 60, "seconds"),
        'sync_min_interval_seconds': (0, 60, "seconds"),
        'violation_threshold': (1, 20, "violations"),
        'submission_timeout_seconds': (1, 120, "seconds"),
        'write_timeout_seconds': (1, 120, "seconds"),
        'redirect_delay_seconds': (0, 30, "seconds"),
        'default_pass_percentage': (0, 100, "percent"),
        'last_minute_warning_seconds': (0, 600, "seconds"),
        'unload_flush_timeout_seconds': (0.1, 30, "seconds"),
    }

    # Settings that must be whole numbers
    INTEGER_SETTINGS = frozenset({
        'fallback_duration_minutes', 'violation_threshold', 'default_pass_percentage',
        'last_minute_warning_seconds',
    })

    SYSTEM_DIRECTORIES = ['/bin', '/usr', '/etc', '/sys', '/proc', 'C:\\Windows', 'C:\\Program Files']

    def __init__(self):
        """Initialize ConfigManager with default settings."""
        self.logger = logging.getLogger(__name__)
        self._settings = ExamSettings()
        self._quiz_directory = self.DEFAULT_QUIZ_DIRECTORY
        self._storage_directory = self.DEFAULT_STORAGE_DIRECTORY

    def get_exam_settings(self) -> ExamSettings:
        """
        Get a copy of the current exam settings.

        Returns:
            ExamSettings with the current configuration
        """
        return replace(self._settings)

    def _label(self, name: str) -> str:
        return name.replace('_seconds', '').replace('_minutes', '').replace('_', ' ')

    def set_setting(self, name: str, value: Any) -> Dict[str, Any]:
        """
        Set one numeric exam setting with type and range validation.

        Args:
            name: ExamSettings field name
            value: New value

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        if name not in self.LIMITS:
            error_msg = f"Unknown setting: {name}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Unknown setting: {name}"
            }

        label = self._label(name)
        minimum, maximum, unit = self.LIMITS[name]
        expected = int if name in self.INTEGER_SETTINGS else (int, float)

        if isinstance(value, bool) or not isinstance(value, expected):
            error_msg = f"{label.capitalize()} must be a number, got {type(value).__name__}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Invalid input: Expected a number, got {type(value).__name__}"
            }

        if value < minimum:
            error_msg = f"{label.capitalize()} must be at least {minimum} {unit}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ {label.capitalize()} too low: Minimum is {minimum} {unit}"
            }

        if value > maximum:
            error_msg = f"{label.capitalize()} cannot exceed {maximum} {unit}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ {label.capitalize()} too high: Maximum is {maximum} {unit}"
            }

        setattr(self._settings, name, value)
        self.logger.info(f"{label.capitalize()} set to {value} {unit}")
        return {
            'success': True,
            'message': f"{label.capitalize()} set to {value} {unit}",
            'user_message': f"✅ {label.capitalize()} set to {value} {unit}"
        }

    def set_fallback_duration(self, minutes: int) -> Dict[str, Any]:
        """Duration used when an exam has no configured duration."""
        return self.set_setting('fallback_duration_minutes', minutes)

    def set_violation_threshold(self, threshold: int) -> Dict[str, Any]:
        return self.set_setting('violation_threshold', threshold)

    def set_pass_percentage(self, percentage: int) -> Dict[str, Any]:
        return self.set_setting('default_pass_percentage', percentage)

    def set_submission_timeout(self, seconds: float) -> Dict[str, Any]:
        return self.set_setting('submission_timeout_seconds', seconds)

    def _set_directory(self, attr: str, directory: Any, label: str) -> Dict[str, Any]:
        if not isinstance(directory, str):
            error_msg = f"{label} must be a string, got {type(directory).__name__}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Invalid input: Expected a path string, got {type(directory).__name__}"
            }

        if not directory.strip():
            error_msg = f"{label} cannot be empty"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': "❌ Directory path cannot be empty"
            }

        try:
            normalized_path = str(Path(directory).resolve())
        except (OSError, ValueError) as e:
            error_msg = f"Invalid directory path format: {e}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Invalid path format: {directory}"
            }

        if any(normalized_path.startswith(sys_dir) for sys_dir in self.SYSTEM_DIRECTORIES):
            error_msg = f"Cannot use system directory: {normalized_path}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Cannot use system directory: {directory}"
            }

        setattr(self, attr, normalized_path)
        self.logger.info(f"{label} set to {normalized_path}")
        return {
            'success': True,
            'message': f"{label} set to {normalized_path}",
            'user_message': f"✅ {label} set to {normalized_path}"
        }

    def set_quiz_directory(self, directory: str) -> Dict[str, Any]:
        """Directory holding the exam definition files."""
        return self._set_directory('_quiz_directory', directory, "Quiz directory")

    def set_storage_directory(self, directory: str) -> Dict[str, Any]:
        """Directory holding session, progress and attempt files."""
        return self._set_directory('_storage_directory', directory, "Storage directory")

    def get_quiz_directory(self) -> str:
        return self._quiz_directory

    def get_storage_directory(self) -> str:
        return self._storage_directory

    def apply_config(self, config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Apply the ``exam`` section of a loaded config.json.

        Invalid entries are skipped and reported; valid ones still apply.

        Args:
            config: Parsed configuration file

        Returns:
            Dictionary with success status, applied keys and errors
        """
        exam_config = (config or {}).get('exam', {}) or {}
        applied: List[str] = []
        errors: List[str] = []

        for key, value in exam_config.items():
            if key == 'quiz_directory':
                result = self.set_quiz_directory(value)
            elif key == 'storage_directory':
                result = self.set_storage_directory(value)
            elif key in self.LIMITS:
                result = self.set_setting(key, value)
            else:
                self.logger.warning(f"Ignoring unknown exam setting '{key}'")
                continue

            if result['success']:
                applied.append(key)
            else:
                errors.append(result['user_message'])

        return {
            'success': not errors,
            'applied': applied,
            'errors': errors
        }

    def validate_settings(self) -> Dict[str, Any]:
        """
        Validate current settings and return validation results.

        Returns:
            Dictionary with validation results and any issues found
        """
        validation_result = {
            "valid": True,
            "issues": []
        }

        for name, value in asdict(self._settings).items():
            minimum, maximum, _ = self.LIMITS[name]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not minimum <= value <= maximum:
                validation_result["valid"] = False
                validation_result["issues"].append(f"Invalid {self._label(name)}: {value}")

        if self._settings.sync_max_latency_seconds > self._settings.sync_quiet_period_seconds:
            validation_result["valid"] = False
            validation_result["issues"].append(
                "Invalid sync max latency: must not exceed the sync quiet period"
            )

        for label, directory in (("quiz directory", self._quiz_directory),
                                 ("storage directory", self._storage_directory)):
            if not isinstance(directory, str) or not directory.strip():
                validation_result["valid"] = False
                validation_result["issues"].append(f"Invalid {label}: {directory}")

        return validation_result

    def get_settings_summary(self) -> str:
        """
        Get a formatted summary of current settings.

        Returns:
            Human-readable string describing current settings
        """
        s = self._settings
        return (
            f"Exam Settings:\n"
            f"• Fallback duration: {s.fallback_duration_minutes} minutes\n"
            f"• Violation threshold: {s.violation_threshold}\n"
            f"• Pass percentage: {s.default_pass_percentage}%\n"
            f"• Autosave: quiet {s.sync_quiet_period_seconds:g}s, max latency {s.sync_max_latency_seconds:g}s\n"
            f"• Submission timeout: {s.submission_timeout_seconds:g} seconds\n"
            f"• Quiz Directory: {self._quiz_directory}\n"
            f"• Storage Directory: {self._storage_directory}"
        )

    def get_configuration_health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the configuration.

        Returns:
            Dictionary with health status and recommendations
        """
        health_check = {
            'healthy': True,
            'warnings': [],
            'errors': [],
            'recommendations': []
        }

        validation_result = self.validate_settings()
        if not validation_result['valid']:
            health_check['healthy'] = False
            health_check['errors'].extend(f"❌ {issue}" for issue in validation_result['issues'])

        quiz_dir = Path(self._quiz_directory)
        if not quiz_dir.exists():
            health_check['warnings'].append(
                f"⚠️ Quiz directory does not exist: {self._quiz_directory}"
            )
            health_check['recommendations'].append(
                "The quiz directory will be created automatically when loading exam files."
            )
        elif not os.access(quiz_dir, os.R_OK):
            health_check['healthy'] = False
            health_check['errors'].append(
                f"❌ Cannot read quiz directory: {self._quiz_directory}"
            )
            health_check['recommendations'].append(
                "Check file permissions for the quiz directory."
            )

        if self._settings.violation_threshold == 1:
            health_check['warnings'].append(
                "⚠️ A violation threshold of 1 submits the exam on the first tab switch"
            )
            health_check['recommendations'].append(
                "Consider allowing at least 2 violations before forcing submission."
            )

        if self._settings.submission_timeout_seconds <= self._settings.write_timeout_seconds:
            health_check['warnings'].append(
                "⚠️ Submission timeout does not leave room for the attempt write timeout"
            )
            health_check['recommendations'].append(
                "Keep the submission timeout above the write timeout."
            )

        return health_check
