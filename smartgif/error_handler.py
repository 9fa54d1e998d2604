"""
Error Handling Module
Centralized error categorization and batch failure reporting. Per-file
failures are recorded and summarized; the batch itself always continues.
"""

import logging
import threading
from typing import Dict, Any, List, Optional
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Categories of processing errors for better handling and reporting"""
    STORE_CORRUPTION = "store_corruption"
    PROBE_FAILURE = "probe_failure"
    DUPLICATE_PROPERTY_MISMATCH = "duplicate_property_mismatch"
    TRAINING_OVERFLOW = "training_overflow"
    TIMEOUT = "timeout"
    TRANSCODE = "transcode"
    PERMISSION = "permission"
    GENERAL = "general"


@dataclass
class ProcessingError:
    """Structured representation of a processing error"""
    category: ErrorCategory
    message: str
    file_path: str
    exception_type: str
    severity: str  # 'warning', 'error', 'critical'
    suggestions: List[str]
    retryable: bool = True
    context: Optional[str] = None

    def get_short_description(self) -> str:
        """Get concise error description for logging"""
        return f"{self.category.value}: {self.message}"

    def get_detailed_description(self) -> str:
        """Get detailed error description with suggestions"""
        base = f"Error in {self.file_path}: {self.message}"
        if self.context:
            base += f" (Context: {self.context})"

        if self.suggestions:
            base += "\nSuggestions:\n" + "\n".join(f"  • {s}" for s in self.suggestions)

        return base


# Matched against the exception's class hierarchy, most derived class first.
# (category, severity, retryable)
_TYPE_RULES: Dict[str, tuple] = {
    'StoreCorruptionError': (ErrorCategory.STORE_CORRUPTION, 'warning', False),
    'StoreUnavailableError': (ErrorCategory.PERMISSION, 'critical', False),
    'ProbeFailure': (ErrorCategory.PROBE_FAILURE, 'warning', True),
    'DuplicatePropertyMismatch': (ErrorCategory.DUPLICATE_PROPERTY_MISMATCH, 'warning', False),
    'TrainingDataOverflowError': (ErrorCategory.TRAINING_OVERFLOW, 'warning', False),
    'TranscodeTimeout': (ErrorCategory.TIMEOUT, 'warning', True),
    'TimeoutExpired': (ErrorCategory.TIMEOUT, 'warning', True),
    'TimeoutError': (ErrorCategory.TIMEOUT, 'warning', True),
    'TranscodeError': (ErrorCategory.TRANSCODE, 'error', True),
    'PermissionError': (ErrorCategory.PERMISSION, 'error', False),
}

_SUGGESTIONS: Dict[ErrorCategory, List[str]] = {
    ErrorCategory.STORE_CORRUPTION: [
        "The store was rebuilt from its readable records; a .bak snapshot was kept",
        "Check the disk for write errors if this repeats",
    ],
    ErrorCategory.PROBE_FAILURE: [
        "Check video file integrity",
        "Verify ffprobe is installed and on PATH",
    ],
    ErrorCategory.DUPLICATE_PROPERTY_MISMATCH: [
        "Review the flagged duplicate manually",
        "Check whether the source video was replaced after conversion",
    ],
    ErrorCategory.TRAINING_OVERFLOW: [
        "Raise learning.max_training_payload_bytes if the settings are legitimate",
    ],
    ErrorCategory.TIMEOUT: [
        "Increase workflow.transcode_timeout_seconds",
        "Use a lower quality preset for long videos",
    ],
    ErrorCategory.TRANSCODE: [
        "Check video file integrity",
        "Update FFmpeg installation",
        "Try a lower quality preset",
    ],
    ErrorCategory.PERMISSION: [
        "Check file permissions",
        "Ensure the output and cache directories are writable",
    ],
}


class ErrorHandler:
    """Centralized error handling and categorization for batch processing"""

    def __init__(self):
        self.error_counts = {category: 0 for category in ErrorCategory}
        self.processed_errors: List[ProcessingError] = []
        self._lock = threading.Lock()

    def _snapshot(self):
        with self._lock:
            return list(self.processed_errors), dict(self.error_counts)

    def categorize_error(self, exception: Exception, file_path: str,
                         context: str = None) -> ProcessingError:
        """Categorize an exception into a structured ProcessingError"""
        error_msg = str(exception)
        exception_type = type(exception).__name__

        for klass in type(exception).__mro__:
            rule = _TYPE_RULES.get(klass.__name__)
            if rule is not None:
                category, severity, retryable = rule
                return self._build(category, error_msg, file_path, exception_type,
                                   severity, retryable, context)

        # Pattern-based categorization for foreign exceptions
        error_lower = error_msg.lower()

        if 'timeout' in error_lower or 'timed out' in error_lower:
            return self._build(ErrorCategory.TIMEOUT, error_msg, file_path, exception_type,
                               'warning', True, context)
        elif 'ffmpeg' in error_lower or 'encoder' in error_lower:
            return self._build(ErrorCategory.TRANSCODE, error_msg, file_path, exception_type,
                               'error', True, context)
        elif 'ffprobe' in error_lower:
            return self._build(ErrorCategory.PROBE_FAILURE, error_msg, file_path, exception_type,
                               'warning', True, context)
        elif 'permission' in error_lower or 'access denied' in error_lower:
            return self._build(ErrorCategory.PERMISSION, error_msg, file_path, exception_type,
                               'error', False, context)
        elif 'corrupt' in error_lower:
            return self._build(ErrorCategory.STORE_CORRUPTION, error_msg, file_path, exception_type,
                               'warning', False, context)

        return ProcessingError(
            category=ErrorCategory.GENERAL,
            message=error_msg,
            file_path=file_path,
            exception_type=exception_type,
            severity='error',
            suggestions=[
                "Check system resources",
                "Retry operation",
                "Check logs for more details"
            ],
            retryable=True,
            context=context
        )

    @staticmethod
    def _build(category: ErrorCategory, message: str, file_path: str, exception_type: str,
               severity: str, retryable: bool, context: Optional[str]) -> ProcessingError:
        return ProcessingError(
            category=category,
            message=message,
            file_path=file_path,
            exception_type=exception_type,
            severity=severity,
            suggestions=list(_SUGGESTIONS.get(category, [])),
            retryable=retryable,
            context=context
        )

    def handle_error(self, exception: Exception, file_path: str,
                     context: str = None, continue_processing: bool = True) -> ProcessingError:
        """Handle an error by categorizing it and logging appropriately"""
        error = self.categorize_error(exception, file_path, context)
        with self._lock:
            self.processed_errors.append(error)
            self.error_counts[error.category] += 1

        if error.severity == 'critical':
            logger.error(f"CRITICAL ERROR: {error.get_short_description()}")
            logger.error(f"Details: {error.get_detailed_description()}")
        elif error.severity == 'error':
            logger.error(f"ERROR: {error.get_short_description()}")
            if error.suggestions:
                logger.info(f"Suggestions: {'; '.join(error.suggestions[:2])}")
        else:
            logger.warning(f"WARNING: {error.get_short_description()}")

        if continue_processing:
            logger.info(f"Continuing batch processing despite {error.category.value} error")

        return error

    def get_error_summary(self) -> Dict[str, Any]:
        """Get error summary for batch processing"""
        errors, counts = self._snapshot()
        total_errors = len(errors)
        if total_errors == 0:
            return {'total_errors': 0, 'categories': {}, 'success_rate': 100.0}

        category_counts = {cat.value: count for cat, count in counts.items() if count > 0}

        severity_counts: Dict[str, int] = {}
        for error in errors:
            severity_counts[error.severity] = severity_counts.get(error.severity, 0) + 1
        retryable_count = sum(1 for error in errors if error.retryable)

        return {
            'total_errors': total_errors,
            'categories': category_counts,
            'severity_distribution': severity_counts,
            'most_common_category': max(category_counts.items(), key=lambda x: x[1])[0] if category_counts else None,
            'critical_errors': severity_counts.get('critical', 0),
            'retryable_errors': retryable_count,
            'non_retryable_errors': total_errors - retryable_count
        }

    def get_top_failures(self, limit: int = 3) -> List[Dict[str, Any]]:
        """Return ranked failure categories with a representative message for reporting."""
        errors, _ = self._snapshot()
        if limit <= 0 or not errors:
            return []
        category_counts: Dict[str, int] = {}
        sample_messages: Dict[str, str] = {}
        for error in errors:
            key = error.category.value
            category_counts[key] = category_counts.get(key, 0) + 1
            sample_messages[key] = error.message
        ranked = sorted(category_counts.items(), key=lambda item: item[1], reverse=True)[:limit]
        return [
            {'category': category, 'count': count, 'sample_message': sample_messages.get(category, '')}
            for category, count in ranked
        ]

    def log_batch_summary(self, total_files: int, successful_files: int):
        """Log batch processing summary with error analysis"""
        failed_files = total_files - successful_files
        success_rate = (successful_files / total_files * 100) if total_files > 0 else 0

        logger.info("=== BATCH PROCESSING ERROR ANALYSIS ===")
        logger.info(f"Total files: {total_files}, Successful: {successful_files}, Failed: {failed_files}")
        logger.info(f"Success rate: {success_rate:.1f}%")

        errors, counts = self._snapshot()
        if not errors:
            logger.info("No errors encountered")
            return

        logger.warning("Error breakdown by category:")
        total_errors = len(errors)
        for category, count in counts.items():
            if count > 0:
                percentage = (count / total_errors) * 100
                logger.warning(f"  • {category.value}: {count} ({percentage:.1f}% of errors)")

        for failure in self.get_top_failures():
            category = ErrorCategory(failure['category'])
            suggestions = self.get_category_suggestions(category)
            logger.info(f"For {failure['count']} {category.value} errors: {'; '.join(suggestions[:2])}")

        if failed_files > 0 and successful_files == 0:
            logger.error("Batch processing failed completely - check system configuration")

    def get_category_suggestions(self, category: ErrorCategory) -> List[str]:
        """Get specific suggestions for an error category"""
        return list(_SUGGESTIONS.get(category, ["Check system configuration", "Retry operation"]))

    def reset(self):
        """Reset error tracking for new batch processing session"""
        with self._lock:
            self.error_counts = {category: 0 for category in ErrorCategory}
            self.processed_errors = []
