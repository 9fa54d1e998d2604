import logging
import os
import time

import pytest

from smartgif.logger_setup import (
    ColoredFormatter, ROOT_LOGGER_NAME, _cleanup_old_logs, _rotate_previous_logs, get_logger, setup_logging
)


@pytest.fixture
def clean_root_logger():
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    handlers, level, propagate = saved
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = propagate


def test_setup_logging_writes_to_logs_dir(tmp_path, clean_root_logger):
    logs_dir = tmp_path / 'logs'

    logger = setup_logging(config_path=str(tmp_path / 'missing.yaml'), log_level='debug', logs_dir=str(logs_dir))
    get_logger('caching.fingerprint_store').error("store rebuilt")
    for handler in logger.handlers:
        handler.flush()

    assert logger is clean_root_logger
    console = [h for h in logger.handlers if not isinstance(h, logging.FileHandler)]
    assert len(console) == 1
    assert console[0].level == logging.DEBUG
    assert isinstance(console[0].formatter, ColoredFormatter)
    assert "store rebuilt" in (logs_dir / 'smartgif.log').read_text(encoding='utf-8')
    assert "store rebuilt" in (logs_dir / 'errors.log').read_text(encoding='utf-8')


def test_get_logger_nests_under_package_logger():
    assert get_logger().name == ROOT_LOGGER_NAME
    assert get_logger('smartgif.learning').name == 'smartgif.learning'
    assert get_logger('learning').name == 'smartgif.learning'


def test_colored_formatter_leaves_record_untouched():
    record = logging.LogRecord('smartgif', logging.WARNING, __file__, 1, "careful", None, None)

    formatted = ColoredFormatter(fmt='%(levelname)s %(message)s').format(record)

    assert 'WARNING' in formatted
    assert formatted != 'WARNING careful'
    assert record.levelname == 'WARNING'


def test_cleanup_keeps_most_recent_rotated_logs(tmp_path):
    now = time.time()
    for index in range(7):
        path = tmp_path / f'smartgif_20260101_00000{index}.log'
        path.write_text('x', encoding='utf-8')
        os.utime(path, (now - index * 60, now - index * 60))
    (tmp_path / 'errors_20260101_000000.log').write_text('x', encoding='utf-8')

    _cleanup_old_logs([str(tmp_path / 'smartgif.log'), str(tmp_path / 'errors.log')], keep_count=5)

    remaining = sorted(p.name for p in tmp_path.glob('smartgif_*.log'))
    assert remaining == [f'smartgif_20260101_00000{index}.log' for index in range(5)]
    assert (tmp_path / 'errors_20260101_000000.log').exists()


def test_rotate_moves_previous_run_log_aside(tmp_path):
    previous = tmp_path / 'smartgif.log'
    previous.write_text('last run\n', encoding='utf-8')
    (tmp_path / 'errors.log').write_text('', encoding='utf-8')

    _rotate_previous_logs([str(previous), str(tmp_path / 'errors.log'), str(tmp_path / 'absent.log')])

    rotated = list(tmp_path.glob('smartgif_*.log'))
    assert not previous.exists()
    assert len(rotated) == 1
    assert rotated[0].read_text(encoding='utf-8') == 'last run\n'
    assert (tmp_path / 'errors.log').exists()
    assert list(tmp_path.glob('errors_*.log')) == []


def test_setup_logging_starts_each_run_with_a_fresh_log(tmp_path, clean_root_logger):
    logs_dir = tmp_path / 'logs'
    logs_dir.mkdir()
    (logs_dir / 'smartgif.log').write_text('previous run\n', encoding='utf-8')

    logger = setup_logging(config_path=str(tmp_path / 'missing.yaml'), logs_dir=str(logs_dir))
    for handler in logger.handlers:
        handler.flush()

    assert 'previous run' not in (logs_dir / 'smartgif.log').read_text(encoding='utf-8')
    rotated = list(logs_dir.glob('smartgif_*.log'))
    assert len(rotated) == 1
    assert rotated[0].read_text(encoding='utf-8') == 'previous run\n'
