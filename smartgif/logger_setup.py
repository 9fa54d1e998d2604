"""
Logging Setup for Smart GIF Converter
Initializes logging configuration from YAML file
"""

import os
import glob
import logging
import logging.config
from datetime import datetime
from typing import List, Optional

import yaml
from colorama import init, Fore, Style

# Initialize colorama for Windows compatibility
init(autoreset=True)

ROOT_LOGGER_NAME = 'smartgif'


class ColoredFormatter(logging.Formatter):
    """Custom formatter to add colors to console output"""

    COLORS = {
        'DEBUG': Fore.CYAN,
        'INFO': Fore.GREEN,
        'WARNING': Fore.YELLOW,
        'ERROR': Fore.RED,
        'CRITICAL': Fore.MAGENTA + Style.BRIGHT,
    }

    def format(self, record):
        # Color a copy so file handlers sharing the record keep the plain level name
        original = record.levelname
        if original in self.COLORS:
            record.levelname = f"{self.COLORS[original]}{original}{Style.RESET_ALL}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def _default_logging_config(logs_dir: str) -> dict:
    return {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'detailed': {
                'format': '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s',
                'datefmt': '%Y-%m-%d %H:%M:%S'
            },
            'console': {
                'format': '%(asctime)s | %(levelname)-8s | %(message)s',
                'datefmt': '%H:%M:%S'
            }
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'level': 'WARNING',
                'formatter': 'console',
                'stream': 'ext://sys.stdout'
            },
            'file': {
                'class': 'logging.FileHandler',
                'level': 'DEBUG',
                'formatter': 'detailed',
                'filename': os.path.join(logs_dir, 'smartgif.log'),
                'mode': 'a',
                'encoding': 'utf-8'
            },
            'error_file': {
                'class': 'logging.FileHandler',
                'level': 'ERROR',
                'formatter': 'detailed',
                'filename': os.path.join(logs_dir, 'errors.log'),
                'mode': 'a',
                'encoding': 'utf-8'
            }
        },
        'loggers': {
            ROOT_LOGGER_NAME: {
                'level': 'DEBUG',
                'handlers': ['console', 'file', 'error_file'],
                'propagate': False
            }
        }
    }


def _handler_log_files(logging_config: dict) -> List[str]:
    return [handler['filename'] for handler in logging_config.get('handlers', {}).values()
            if handler.get('filename')]


def _rotate_previous_logs(log_files: List[str]):
    """
    Move each non-empty log left by a previous run aside as <stem>_<timestamp><ext>

    Args:
        log_files: Log file paths the handlers are about to open
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    for log_file in log_files:
        try:
            if not os.path.isfile(log_file) or os.path.getsize(log_file) == 0:
                continue
            stem, ext = os.path.splitext(log_file)
            target = f"{stem}_{timestamp}{ext}"
            suffix = 1
            while os.path.exists(target):
                target = f"{stem}_{timestamp}_{suffix}{ext}"
                suffix += 1
            os.replace(log_file, target)
        except OSError as e:
            logging.getLogger(ROOT_LOGGER_NAME).debug(f"Could not rotate log {log_file}: {e}")


def _cleanup_old_logs(log_files: List[str], keep_count: int = 5):
    """
    Clean up old rotated log files, keeping only the last N per log

    Args:
        log_files: Active log file paths whose rotated copies are pruned
        keep_count: Number of most recent rotated files to keep for each log
    """
    for log_file in log_files:
        stem, ext = os.path.splitext(log_file)
        rotated = glob.glob(glob.escape(stem) + "_*" + ext)
        if len(rotated) <= keep_count:
            continue

        rotated.sort(key=os.path.getmtime, reverse=True)
        for old_log in rotated[keep_count:]:
            try:
                os.remove(old_log)
            except OSError as e:
                logging.getLogger(ROOT_LOGGER_NAME).debug(f"Could not remove old log {old_log}: {e}")


def setup_logging(config_path: str = "config/logging.yaml", log_level: Optional[str] = None,
                  logs_dir: str = "logs") -> logging.Logger:
    """
    Setup logging configuration from YAML file

    Args:
        config_path: Path to logging configuration file
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logs_dir: Directory receiving the file handlers' output
    """
    os.makedirs(logs_dir, exist_ok=True)
    default_config = _default_logging_config(logs_dir)

    logging_config = default_config
    if os.path.exists(config_path):
        try:
            with open(config_path, 'r', encoding='utf-8') as file:
                config_data = yaml.safe_load(file) or {}
            logging_config = config_data.get('logging', default_config)
        except (OSError, yaml.YAMLError) as e:
            print(f"Warning: could not read logging config {config_path}: {e}")

    # Relative file handler paths are resolved against logs_dir
    for handler in logging_config.get('handlers', {}).values():
        filename = handler.get('filename')
        if filename and not os.path.isabs(filename) and os.path.dirname(filename) == '':
            handler['filename'] = os.path.join(logs_dir, filename)

    if log_level:
        log_level = log_level.upper()
        console_handler = logging_config.get('handlers', {}).get('console')
        if console_handler:
            console_handler['level'] = log_level

    log_files = _handler_log_files(logging_config)
    _rotate_previous_logs(log_files)
    _cleanup_old_logs(log_files, keep_count=5)

    try:
        logging.config.dictConfig(logging_config)
    except (ValueError, TypeError, AttributeError, ImportError) as config_error:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s | %(levelname)-8s | %(message)s',
            datefmt='%H:%M:%S'
        )
        logger = logging.getLogger(ROOT_LOGGER_NAME)
        logger.error(f"Failed to apply logging configuration: {config_error}")
        logger.info("Using basic logging configuration as fallback")
        return logger

    logger = logging.getLogger(ROOT_LOGGER_NAME)

    # Find console handler and apply colored formatter
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
            handler.setFormatter(ColoredFormatter(
                fmt='%(asctime)s | %(levelname)-8s | %(message)s',
                datefmt='%H:%M:%S'
            ))

    logger.info("Logging initialized")
    return logger


def get_logger(name: str = None) -> logging.Logger:
    """Get a logger instance"""
    if name:
        if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + '.'):
            return logging.getLogger(name)
        return logging.getLogger(f'{ROOT_LOGGER_NAME}.{name}')
    return logging.getLogger(ROOT_LOGGER_NAME)
