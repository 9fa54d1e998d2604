import subprocess
import threading

from smartgif.caching.fingerprint_store import StoreCorruptionError, StoreUnavailableError
from smartgif.duplicates import DuplicatePropertyMismatch
from smartgif.error_handler import ErrorCategory, ErrorHandler
from smartgif.learning import TrainingDataOverflowError
from smartgif.media_service import ProbeFailure, TranscodeError, TranscodeTimeout


def test_error_handler_top_failures_and_retryable_summary():
    handler = ErrorHandler()

    handler.handle_error(ValueError("Unexpected frame layout"), "file_a", continue_processing=False)
    handler.handle_error(PermissionError("Permission denied"), "file_b", continue_processing=False)
    handler.handle_error(PermissionError("Permission denied again"), "file_c", continue_processing=False)

    summary = handler.get_error_summary()
    assert summary['retryable_errors'] == 1
    assert summary['non_retryable_errors'] == 2
    assert summary['most_common_category'] == 'permission'

    top_failures = handler.get_top_failures(limit=2)
    categories = [entry['category'] for entry in top_failures]
    assert categories == ['permission', 'general']

    sample_messages = [entry['sample_message'] for entry in top_failures]
    assert any("Permission denied again" in msg for msg in sample_messages)


def test_domain_exceptions_map_to_categories():
    handler = ErrorHandler()
    cases = [
        (StoreCorruptionError("bad header"), ErrorCategory.STORE_CORRUPTION, False),
        (StoreUnavailableError("read-only"), ErrorCategory.PERMISSION, False),
        (ProbeFailure("no streams"), ErrorCategory.PROBE_FAILURE, True),
        (DuplicatePropertyMismatch('a.gif', ['older than its source']),
         ErrorCategory.DUPLICATE_PROPERTY_MISMATCH, False),
        (TrainingDataOverflowError("too big"), ErrorCategory.TRAINING_OVERFLOW, False),
        (TranscodeTimeout("slow"), ErrorCategory.TIMEOUT, True),
        (subprocess.TimeoutExpired(['ffmpeg'], 5), ErrorCategory.TIMEOUT, True),
        (TranscodeError("exit 1"), ErrorCategory.TRANSCODE, True),
    ]

    for exception, category, retryable in cases:
        error = handler.categorize_error(exception, 'x')
        assert error.category == category, exception
        assert error.retryable == retryable, exception


def test_foreign_exceptions_fall_back_to_message_patterns():
    handler = ErrorHandler()

    assert handler.categorize_error(RuntimeError("operation timed out"), 'x').category == ErrorCategory.TIMEOUT
    assert handler.categorize_error(OSError("FFmpeg exited with 1"), 'x').category == ErrorCategory.TRANSCODE
    assert handler.categorize_error(RuntimeError("something odd"), 'x').category == ErrorCategory.GENERAL


def test_handle_error_counts_and_reset():
    handler = ErrorHandler()
    error = handler.handle_error(ProbeFailure("no streams"), 'clip.mp4', context='probe')

    assert error.get_short_description() == 'probe_failure: no streams'
    assert 'Context: probe' in error.get_detailed_description()
    assert handler.error_counts[ErrorCategory.PROBE_FAILURE] == 1

    handler.log_batch_summary(total_files=2, successful_files=1)
    handler.reset()

    assert handler.get_error_summary() == {'total_errors': 0, 'categories': {}, 'success_rate': 100.0}
    assert handler.get_top_failures() == []


def test_concurrent_workers_keep_counts_consistent():
    handler = ErrorHandler()
    start = threading.Barrier(8)

    def worker(index):
        start.wait()
        for attempt in range(50):
            handler.handle_error(TranscodeTimeout(f"worker {index} attempt {attempt}"),
                                 f"file_{index}", continue_processing=False)

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert handler.error_counts[ErrorCategory.TIMEOUT] == 400
    assert len(handler.processed_errors) == 400
    assert handler.get_error_summary()['total_errors'] == 400
    assert handler.get_top_failures() == [
        {'category': 'timeout', 'count': 400, 'sample_message': handler.processed_errors[-1].message}
    ]
